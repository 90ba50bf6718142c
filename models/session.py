# models/session.py
"""Serializable snapshot of a book-level generation run."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from core.usage import TokenUsage

from .generation import GeneratedChapter, utcnow
from .reports import Issue


class SessionStatus(str, Enum):
    NOT_STARTED = "not_started"
    PLANNING = "planning"
    GENERATING = "generating"
    AWAITING_APPROVAL = "awaiting_approval"
    REVISION_REQUESTED = "revision_requested"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ChapterStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    AWAITING_APPROVAL = "awaiting_approval"
    REVISION_REQUESTED = "revision_requested"
    APPROVED = "approved"
    FAILED = "failed"
    SKIPPED = "skipped"


class AttemptKind(str, Enum):
    GENERATE = "generate"
    REGENERATE = "regenerate"
    REVISION = "revision"


class AttemptOutcome(str, Enum):
    COMPLETED = "completed"
    FLAGGED = "flagged"
    FAILED = "failed"


class GenerationOptions(BaseModel):
    start_from_chapter: int | None = Field(default=None, ge=1)
    end_at_chapter: int | None = Field(default=None, ge=1)
    skip_existing_chapters: bool = True
    dry_run: bool = False
    require_approval: bool = False
    context_window_tokens: int | None = None
    model: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)


class ChapterRegenerationOptions(BaseModel):
    instructions: str | None = None
    keep_elements: list[str] = Field(default_factory=list)
    change_elements: list[str] = Field(default_factory=list)
    use_model: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    preserve_dialogue: bool = False
    preserve_key_scenes: bool = False

    def as_instructions(self) -> list[str]:
        """Flatten the options into free-text instructions for the prompts."""
        lines: list[str] = []
        if self.instructions:
            lines.append(self.instructions)
        lines.extend(f"Keep: {item}" for item in self.keep_elements)
        lines.extend(f"Change: {item}" for item in self.change_elements)
        if self.preserve_dialogue:
            lines.append("Preserve the existing dialogue as closely as possible.")
        if self.preserve_key_scenes:
            lines.append("Preserve the key scenes of the previous version.")
        return lines


class StepRecord(BaseModel):
    """Serialized ``StepResult`` kept in the attempt history."""

    step: str
    order: int
    iteration: int = 0
    success: bool
    execution_seconds: float = 0.0
    retry_count: int = 0
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    error: str | None = None


class ChapterAttempt(BaseModel):
    """One completed or failed pipeline run for a chapter."""

    kind: AttemptKind
    outcome: AttemptOutcome
    started_at: datetime = Field(default_factory=utcnow)
    duration_seconds: float = 0.0
    steps: list[StepRecord] = Field(default_factory=list)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    word_count: int = 0
    quality_score: float | None = None
    issues: list[Issue] = Field(default_factory=list)
    revision_iterations: int = 0
    error: str | None = None

    @property
    def retry_count(self) -> int:
        return sum(step.retry_count for step in self.steps)


class GenerationErrorRecord(BaseModel):
    message: str
    chapter_number: int | None = None
    step: str | None = None
    occurred_at: datetime = Field(default_factory=utcnow)


class ChapterRecord(BaseModel):
    chapter_number: int
    title: str = ""
    status: ChapterStatus = ChapterStatus.PENDING
    chapter: GeneratedChapter | None = None
    attempts: list[ChapterAttempt] = Field(default_factory=list)

    @property
    def is_finished(self) -> bool:
        """Finalized or explicitly skipped; the next chapter may start."""
        return self.status in (ChapterStatus.APPROVED, ChapterStatus.SKIPPED)


class GenerationSession(BaseModel):
    """Durable record of one full-book generation run."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    blueprint_id: str
    blueprint_title: str = ""
    status: SessionStatus = SessionStatus.NOT_STARTED
    current_chapter: int | None = None
    options: GenerationOptions = Field(default_factory=GenerationOptions)
    chapters: list[ChapterRecord] = Field(default_factory=list)
    pause_requested: bool = False
    cancel_requested: bool = False
    errors: list[GenerationErrorRecord] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    last_activity_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def total_chapters(self) -> int:
        return len(self.chapters)

    def get_chapter(self, chapter_number: int) -> ChapterRecord | None:
        for record in self.chapters:
            if record.chapter_number == chapter_number:
                return record
        return None

    def chapters_in_range(self, start: int, end: int) -> list[ChapterRecord]:
        return [r for r in self.chapters if start <= r.chapter_number <= end]

    def touch(self) -> None:
        self.last_activity_at = utcnow()
