"""Domain records passed between storage and stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

# CSV header -> attribute key for regulations.gov bulk exports.
CSV_FIELD_MAP: dict[str, str] = {
    "Document ID": "id",
    "Agency ID": "agencyId",
    "Docket ID": "docketId",
    "Document Type": "documentType",
    "Title": "title",
    "Posted Date": "postedDate",
    "Comment": "comment",
    "First Name": "firstName",
    "Last Name": "lastName",
    "Organization Name": "organization",
    "Submitter Representative": "submitterRep",
    "Category": "category",
    "State/Province": "stateProvinceRegion",
    "Country": "country",
    "Received Date": "receiveDate",
    "Page Count": "pageCount",
}


@dataclass(slots=True)
class CommentRecord:
    """Raw public comment with regulations.gov attributes."""

    id: str
    attributes: dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return str(self.attributes.get("comment") or "").strip()

    @property
    def submitter(self) -> str:
        organization = str(self.attributes.get("organization") or "").strip()
        if organization:
            return organization
        name = " ".join(
            part
            for part in (
                str(self.attributes.get("firstName") or "").strip(),
                str(self.attributes.get("lastName") or "").strip(),
            )
            if part
        )
        return name or "Anonymous"

    @property
    def submitter_type(self) -> str:
        return str(self.attributes.get("category") or "Individual")


@dataclass(slots=True)
class CondensedRecord:
    """Condensed comment sections ready for theme work."""

    comment_id: str
    sections: dict[str, str]
    word_count: int


@dataclass(slots=True)
class ThemeNode:
    code: str
    description: str
    level: int
    parent_code: str | None = None
    detailed_guidelines: str | None = None

    @property
    def full_description(self) -> str:
        if self.detailed_guidelines:
            return f"{self.description}. {self.detailed_guidelines}"
        return self.description


@dataclass(slots=True)
class ThemeSummaryRecord:
    theme_code: str
    summary: dict[str, Any]
    comment_count: int
    word_count: int


@dataclass(slots=True)
class ThemeCoverage:
    """Relevance counts for one theme (1 = direct, 2 = touches, 3 = not addressed)."""

    code: str
    description: str
    direct_count: int = 0
    touch_count: int = 0
    not_addressed_count: int = 0

    @property
    def relevant_count(self) -> int:
        return self.direct_count + self.touch_count


@dataclass(slots=True)
class EntityDefinition:
    """Named entity in the docket's domain with the exact strings that refer to it."""

    category: str
    label: str
    definition: str
    terms: list[str] = field(default_factory=list)

    @property
    def key(self) -> tuple[str, str]:
        return (self.category, self.label)


@dataclass(slots=True, frozen=True)
class EntityMention:
    comment_id: str
    category: str
    label: str
