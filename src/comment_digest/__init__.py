"""Public comment analysis: condense, discover themes, score and summarize."""

__version__ = "0.1.0"
