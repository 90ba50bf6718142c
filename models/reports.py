# models/reports.py
"""Structured evaluator output consumed by the revise-and-recheck loop."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

_SEVERITY_RANK = {"suggestion": 0, "minor": 1, "major": 2, "critical": 3}


class IssueSeverity(str, Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"
    SUGGESTION = "suggestion"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self.value]

    def at_least(self, other: IssueSeverity | str) -> bool:
        return self.rank >= IssueSeverity(other).rank


class Issue(BaseModel):
    """A single problem found in chapter content."""

    model_config = ConfigDict(use_enum_values=False)

    category: str
    description: str
    severity: IssueSeverity = IssueSeverity.MINOR
    suggested_fix: str | None = None
    quote: str | None = None


class EvaluationReport(BaseModel):
    passed: bool = True
    issues: list[Issue] = Field(default_factory=list)
    revision_instructions: list[str] = Field(default_factory=list)

    def issues_at_or_above(self, threshold: IssueSeverity | str) -> list[Issue]:
        return [i for i in self.issues if i.severity.at_least(threshold)]


class QualityReport(EvaluationReport):
    """Overall quality assessment; ``score`` is on a 0-100 scale."""

    score: float | None = Field(default=None, ge=0, le=100)
    summary: str | None = None


class ContinuityReport(EvaluationReport):
    """Consistency of the chapter against prior chapters and character state."""


class StyleReport(EvaluationReport):
    """Local style heuristics: repetition, banned phrases and length drift."""

    repeated_phrases: dict[str, int] = Field(default_factory=dict)
    length_deviation: float | None = None
