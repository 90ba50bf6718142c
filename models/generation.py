# models/generation.py
"""Pipeline output: the generated chapter and its parts."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from core.usage import TokenUsage

from .reports import ContinuityReport, QualityReport, StyleReport


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GeneratedScene(BaseModel):
    order: int
    title: str = ""
    content: str
    word_count: int = 0


class CharacterStateSnapshot(BaseModel):
    """Where a character stands at the end of a chapter."""

    name: str
    chapter_number: int
    location: str | None = None
    emotional_state: str | None = None
    goals: list[str] = Field(default_factory=list)
    knowledge: list[str] = Field(default_factory=list)
    relationships: dict[str, str] = Field(default_factory=dict)


class GeneratedChapter(BaseModel):
    """Terminal artifact of one pipeline run."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    chapter_number: int
    title: str
    content: str
    outline: str | None = None
    scenes: list[GeneratedScene] = Field(default_factory=list)

    word_count: int = 0
    character_count: int = 0
    paragraph_count: int = 0
    dialogue_percentage: float = 0.0

    quality_report: QualityReport | None = None
    continuity_report: ContinuityReport | None = None
    style_report: StyleReport | None = None
    quality_score: float | None = None
    attempt_count: int = 1
    revision_iterations: int = 0
    requires_manual_review: bool = False

    model_used: str | None = None
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    generation_seconds: float = 0.0

    summary: str | None = None
    detailed_summary: str | None = None
    key_events: list[str] = Field(default_factory=list)
    character_states: list[CharacterStateSnapshot] = Field(default_factory=list)

    version: int = 1
    generated_at: datetime = Field(default_factory=utcnow)

    @property
    def cost(self) -> float:
        return self.token_usage.estimated_cost
