"""Shared data models for the case QA engine."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_pascal

SKELETON_DOC_ID = "skeleton"

PRIORITY_RANK = {"High": 1, "Medium": 2}


class FixAction(str, Enum):
    UPDATE_TIMESTAMP = "UpdateTimestamp"
    REPLACE_TEXT = "ReplaceText"
    MOVE_TO_ADDENDUM = "MoveToAddendum"
    REMOVE_REFERENCE = "RemoveReference"


class _WireModel(BaseModel):
    """Backend answers use PascalCase keys; Python code uses snake_case."""

    model_config = ConfigDict(alias_generator=to_pascal, populate_by_name=True)


class IssueLocation(_WireModel):
    model_config = ConfigDict(frozen=True)

    doc_id: str = Field("", description="Record id (docId or evidenceId).")
    field: str | None = Field(None, description="Dot/bracket path, e.g. sections[2].content.")
    section: str | None = None
    line_pattern: str | None = Field(None, description="Text pattern locating the defect.")
    current_value: str | None = None


class IssueFix(_WireModel):
    model_config = ConfigDict(frozen=True)

    action: str = Field("", description="UpdateTimestamp/ReplaceText/MoveToAddendum/RemoveReference")
    new_value: str | None = None
    old_text: str | None = None
    new_text: str | None = None
    new_section: str | None = None
    reason: str | None = None


class Issue(_WireModel):
    model_config = ConfigDict(frozen=True)

    priority: str = Field("Low", description="High/Medium/Low")
    type: str = "Unknown"
    problem: str = "Unknown issue"
    location: IssueLocation = Field(default_factory=IssueLocation)
    fix: IssueFix = Field(default_factory=IssueFix)

    @property
    def rank(self) -> int:
        return PRIORITY_RANK.get(self.priority, 3)

    @property
    def identifier(self) -> str:
        ident = f"{self.location.doc_id}:{self.fix.action}"
        if self.location.field:
            ident += f"@{self.location.field}"
        return ident

    def dedup_key(self) -> tuple[str, str | None, str | None, str | None]:
        loc = self.location
        return (loc.doc_id, loc.field, loc.section, loc.line_pattern)


class StructuredAnalysis(_WireModel):
    issues: list[Issue] = Field(default_factory=list)
    summary: str = ""
    high_priority_count: int = 0
    medium_priority_count: int = 0
    low_priority_count: int = 0

    @classmethod
    def empty(cls, summary: str) -> StructuredAnalysis:
        return cls(issues=[], summary=summary)

    def to_json(self, *, indent: int | None = 2) -> str:
        return self.model_dump_json(by_alias=True, indent=indent)


class MacroIssue(_WireModel):
    type: str = "Unknown"
    severity: str = Field("Minor", description="Critical/Major/Minor")
    affected_documents: list[str] = Field(default_factory=list)
    description: str = ""
    required_focus_areas: list[str] = Field(default_factory=list)


class GlobalAnalysis(_WireModel):
    macro_issues: list[MacroIssue] = Field(default_factory=list)
    critical_documents: list[str] = Field(default_factory=list)
    focus_areas: list[str] = Field(default_factory=list)
    overall_assessment: str = ""
    requires_detailed_analysis: bool = False

    @classmethod
    def fallback(cls, error_message: str) -> GlobalAnalysis:
        return cls(
            overall_assessment=f"FALLBACK: {error_message}",
            requires_detailed_analysis=False,
        )

    @property
    def is_fallback(self) -> bool:
        return self.overall_assessment.startswith("FALLBACK:")

    def to_json(self, *, indent: int | None = 2) -> str:
        return self.model_dump_json(by_alias=True, indent=indent)
