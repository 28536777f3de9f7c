from comment_digest.main import comment_digest

comment_digest()
