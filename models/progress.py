# models/progress.py
"""Ephemeral progress records pushed to a ``ProgressChannel``."""

from __future__ import annotations

from pydantic import BaseModel

from .session import ChapterStatus, SessionStatus


class PipelineProgress(BaseModel):
    """Step-level progress inside one chapter run.

    ``step_index`` and ``overall_percentage`` never decrease within a run;
    recheck passes are identified by ``step_name`` and ``iteration``.
    """

    session_id: str | None = None
    chapter_number: int
    step_index: int
    step_name: str
    total_steps: int
    overall_percentage: float
    step_percentage: float = 100.0
    iteration: int = 0
    partial_text: str | None = None
    word_count: int = 0
    message: str | None = None


class GenerationProgress(BaseModel):
    """Book-level progress."""

    session_id: str
    status: SessionStatus
    current_chapter: int | None = None
    chapters_completed: int = 0
    total_chapters: int = 0
    overall_percentage: float = 0.0
    elapsed_seconds: float = 0.0
    total_tokens: int = 0
    estimated_cost: float = 0.0
    message: str | None = None


class ChapterGenerationProgress(BaseModel):
    """Emitted once a chapter reaches a terminal status within a run."""

    session_id: str
    chapter_number: int
    status: ChapterStatus
    word_count: int = 0
    quality_score: float | None = None
    requires_manual_review: bool = False
    error: str | None = None
