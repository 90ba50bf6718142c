# models/statistics.py
"""Derived, read-only statistics views. Never persisted."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from .session import ChapterStatus


class ChapterStatistics(BaseModel):
    model_config = ConfigDict(frozen=True)

    chapter_number: int
    status: ChapterStatus
    word_count: int = 0
    quality_score: float | None = None
    generation_seconds: float = 0.0
    total_tokens: int = 0
    cost: float = 0.0
    attempt_count: int = 0
    retry_count: int = 0
    issues_found: int = 0
    requires_manual_review: bool = False


class GenerationStatistics(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    total_chapters: int = 0
    chapters_completed: int = 0
    chapters_failed: int = 0
    chapters_pending: int = 0
    chapters_requiring_review: int = 0
    total_words: int = 0
    average_words_per_chapter: float = 0.0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    cost_per_word: float = 0.0
    estimated_total_cost: float = 0.0
    total_generation_seconds: float = 0.0
    average_seconds_per_chapter: float = 0.0
    words_per_minute: float = 0.0
    average_quality_score: float | None = None
    total_attempts: int = 0
    total_retries: int = 0
    total_revision_iterations: int = 0
    total_issues: int = 0
    chapters: list[ChapterStatistics] = Field(default_factory=list)
