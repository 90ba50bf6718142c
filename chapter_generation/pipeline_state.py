# chapter_generation/pipeline_state.py
"""Mutable per-chapter state threaded through the pipeline steps."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from core.usage import TokenUsage
from models import (
    BookBlueprint,
    ChapterBlueprint,
    ContinuityReport,
    GeneratedChapter,
    GeneratedScene,
    QualityReport,
    StepRecord,
    StyleReport,
)
from orchestration.token_accountant import TokenAccountant

from .context_models import ChapterGenerationContext


@dataclass(frozen=True)
class StepResult:
    """Immutable record of one step execution."""

    step: str
    order: int
    iteration: int
    success: bool
    execution_seconds: float
    retry_count: int = 0
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    error: str | None = None
    output: Any = None

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.iteration, self.order)

    def to_record(self) -> StepRecord:
        return StepRecord(
            step=self.step,
            order=self.order,
            iteration=self.iteration,
            success=self.success,
            execution_seconds=self.execution_seconds,
            retry_count=self.retry_count,
            token_usage=self.token_usage.model_copy(),
            error=self.error,
        )


@dataclass
class GenerationOverrides:
    """Per-run model and prompt overrides (regeneration, session options)."""

    model: str | None = None
    temperature: float | None = None
    instructions: list[str] = field(default_factory=list)


@dataclass
class PipelineState:
    context: ChapterGenerationContext
    chapter: ChapterBlueprint
    book: BookBlueprint
    overrides: GenerationOverrides = field(default_factory=GenerationOverrides)
    session_id: str | None = None

    outline: str | None = None
    scenes: list[GeneratedScene] = field(default_factory=list)
    assembled_content: str | None = None
    revised_content: str | None = None

    continuity_report: ContinuityReport | None = None
    style_report: StyleReport | None = None
    quality_report: QualityReport | None = None
    pending_revision_instructions: list[str] = field(default_factory=list)
    user_instructions: list[str] = field(default_factory=list)
    revision_iterations: int = 0
    requires_manual_review: bool = False
    prior_chapter: GeneratedChapter | None = None

    final_chapter: GeneratedChapter | None = None
    step_results: list[StepResult] = field(default_factory=list)
    tokens: TokenAccountant = field(default_factory=TokenAccountant)
    started_monotonic: float = field(default_factory=time.monotonic)
    on_chunk: Callable[[str, float], Awaitable[None]] | None = field(
        default=None, repr=False
    )
    last_overall_percentage: float = 0.0
    last_step_index: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def chapter_number(self) -> int:
        return self.chapter.chapter_number

    @property
    def token_usage(self) -> TokenUsage:
        return self.tokens.total

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self.started_monotonic

    @property
    def current_content(self) -> str | None:
        return self.revised_content or self.assembled_content

    def record(self, result: StepResult) -> None:
        """Append a step result; results are never reordered or replaced."""
        if self.step_results and result.sort_key < self.step_results[-1].sort_key:
            raise ValueError(
                f"Step result for '{result.step}' is out of order "
                f"({result.sort_key} after {self.step_results[-1].sort_key})"
            )
        self.step_results.append(result)

    def reports(self) -> list[ContinuityReport | StyleReport | QualityReport]:
        return [
            r
            for r in (self.continuity_report, self.style_report, self.quality_report)
            if r is not None
        ]

    def clear_reports(self) -> None:
        self.continuity_report = None
        self.style_report = None
        self.quality_report = None
