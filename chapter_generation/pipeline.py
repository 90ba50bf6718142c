# chapter_generation/pipeline.py
"""Drives the ordered pipeline steps for one chapter.

The driver owns retries, required/optional step policy and the bounded
revise-and-recheck loop; individual steps never loop on their own.
"""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

import structlog
from config import settings
from core.cancellation import CancellationSignal
from core.errors import (
    GenerationCancelled,
    MissingStepInputError,
    PipelineStepError,
    is_transient_error,
)
from core.usage import TokenUsage
from orchestration.progress import ProgressChannel

from models import (
    BookBlueprint,
    ChapterBlueprint,
    GeneratedChapter,
    IssueSeverity,
    PipelineProgress,
)

from .context_models import ChapterGenerationContext
from .pipeline_state import GenerationOverrides, PipelineState, StepResult
from .steps import PipelineServices, PipelineStep, StepKind, default_steps

logger = structlog.get_logger(__name__)


def gate_passes(
    state: PipelineState,
    severity_threshold: IssueSeverity | str,
    min_quality_score: float,
) -> bool:
    """True when no report blocks the chapter from being finalized."""
    for report in state.reports():
        if not report.passed:
            return False
        if report.issues_at_or_above(severity_threshold):
            return False
    quality = state.quality_report
    if quality is not None and quality.score is not None:
        return quality.score >= min_quality_score
    return True


def _usage_delta(before: TokenUsage, after: TokenUsage) -> TokenUsage:
    return TokenUsage(
        input_tokens=after.input_tokens - before.input_tokens,
        output_tokens=after.output_tokens - before.output_tokens,
        estimated_cost=max(after.estimated_cost - before.estimated_cost, 0.0),
    )


def _step_output(state: PipelineState, step: PipelineStep) -> Any:
    outputs = {
        StepKind.GENERATE_OUTLINE.value: lambda: state.outline,
        StepKind.GENERATE_SCENES.value: lambda: len(state.scenes),
        StepKind.CONTINUITY_CHECK.value: lambda: state.continuity_report,
        StepKind.STYLE_CHECK.value: lambda: state.style_report,
        StepKind.QUALITY_EVALUATION.value: lambda: state.quality_report,
        StepKind.REVISION.value: lambda: list(state.pending_revision_instructions),
    }
    getter = outputs.get(step.name)
    return getter() if getter else None


class ChapterGenerationPipeline:
    """Runs the step list against a fresh ``PipelineState`` per chapter."""

    def __init__(
        self,
        services: PipelineServices,
        steps: Iterable[PipelineStep] | None = None,
        *,
        max_revision_iterations: int | None = None,
        severity_threshold: IssueSeverity | str | None = None,
        min_quality_score: float | None = None,
        retry_base_delay: float | None = None,
    ) -> None:
        self.services = services
        self._steps: list[PipelineStep] = sorted(
            steps if steps is not None else default_steps(), key=lambda s: s.order
        )
        self.max_revision_iterations = (
            settings.MAX_REVISION_ITERATIONS
            if max_revision_iterations is None
            else max_revision_iterations
        )
        self.severity_threshold = IssueSeverity(
            severity_threshold or settings.QUALITY_SEVERITY_THRESHOLD
        )
        self.min_quality_score = (
            settings.MIN_QUALITY_SCORE
            if min_quality_score is None
            else min_quality_score
        )
        self.retry_base_delay = (
            settings.STEP_RETRY_DELAY_SECONDS
            if retry_base_delay is None
            else retry_base_delay
        )

    @property
    def steps(self) -> list[PipelineStep]:
        return list(self._steps)

    def add_step(self, step: PipelineStep) -> None:
        """Add ``step``, replacing any existing step with the same name."""
        self._steps = [s for s in self._steps if s.name != step.name]
        self._steps.append(step)
        self._steps.sort(key=lambda s: s.order)

    def remove_step(self, kind: StepKind | str) -> None:
        name = kind.value if isinstance(kind, StepKind) else kind
        self._steps = [s for s in self._steps if s.name != name]

    def _find(self, kind: StepKind) -> PipelineStep | None:
        for step in self._steps:
            if step.name == kind.value:
                return step
        return None

    def _phases(
        self,
    ) -> tuple[list[PipelineStep], list[PipelineStep], PipelineStep | None, list[PipelineStep]]:
        """Split the steps into draft, recheck, revision and closing phases."""
        revision = self._find(StepKind.REVISION)
        assemble = self._find(StepKind.ASSEMBLE_CHAPTER)
        pivot = revision.order if revision is not None else None
        if pivot is None:
            finalize = self._find(StepKind.FINALIZE)
            pivot = finalize.order if finalize is not None else max(
                (s.order for s in self._steps), default=0
            ) + 1

        before = [s for s in self._steps if s.order < pivot and s is not revision]
        closing = [s for s in self._steps if s.order >= pivot and s is not revision]
        recheck_from = assemble.order if assemble is not None else pivot
        recheck = [s for s in before if s.order >= recheck_from]
        return before, recheck, revision, closing

    async def execute(
        self,
        context: ChapterGenerationContext,
        chapter: ChapterBlueprint,
        book: BookBlueprint,
        *,
        overrides: GenerationOverrides | None = None,
        progress: ProgressChannel | None = None,
        signal: CancellationSignal | None = None,
        session_id: str | None = None,
    ) -> PipelineState:
        """Generate one chapter; ``state.final_chapter`` holds the result.

        Raises ``PipelineStepError`` when a required step fails and
        ``GenerationCancelled`` when ``signal`` fires.
        """
        state = PipelineState(
            context=context,
            chapter=chapter,
            book=book,
            overrides=overrides or GenerationOverrides(),
            session_id=session_id,
        )
        signal = signal or CancellationSignal()
        before, recheck, revision, closing = self._phases()

        logger.info(
            "Starting chapter pipeline",
            chapter=chapter.chapter_number,
            steps=[s.name for s in self._steps],
        )
        for step in before:
            await self._run_step(state, step, 0, signal, progress)

        iteration = await self._revise_until_passing(
            state, recheck, revision, 0, signal, progress
        )
        for step in closing:
            await self._run_step(state, step, iteration, signal, progress)
        return self._finish(state)

    async def revise(
        self,
        context: ChapterGenerationContext,
        chapter: ChapterBlueprint,
        book: BookBlueprint,
        prior_chapter: GeneratedChapter,
        instructions: list[str],
        *,
        overrides: GenerationOverrides | None = None,
        progress: ProgressChannel | None = None,
        signal: CancellationSignal | None = None,
        session_id: str | None = None,
    ) -> PipelineState:
        """Re-enter the revision/recheck loop for an existing chapter.

        The requested revision always runs and must succeed; automatic
        follow-up revisions are bounded by the usual iteration cap.
        """
        revision = self._find(StepKind.REVISION)
        if revision is None:
            raise MissingStepInputError(StepKind.REVISION.value, "revision step")

        state = PipelineState(
            context=context.with_extra_instructions(list(instructions)),
            chapter=chapter,
            book=book,
            overrides=overrides or GenerationOverrides(),
            session_id=session_id,
            outline=prior_chapter.outline,
            scenes=list(prior_chapter.scenes),
            assembled_content=prior_chapter.content,
            user_instructions=list(instructions),
            prior_chapter=prior_chapter,
        )
        signal = signal or CancellationSignal()
        _, recheck, _, closing = self._phases()
        build = self._find(StepKind.BUILD_CONTEXT)

        logger.info(
            "Starting requested revision",
            chapter=chapter.chapter_number,
            instructions=len(instructions),
        )
        if build is not None:
            await self._run_step(state, build, 0, signal, progress)
        await self._run_step(state, revision, 0, signal, progress, required=True)
        state.user_instructions = []

        for step in recheck:
            await self._run_step(state, step, 1, signal, progress)
        iteration = await self._revise_until_passing(
            state, recheck, revision, 1, signal, progress
        )
        for step in closing:
            await self._run_step(state, step, iteration, signal, progress)
        return self._finish(state)

    async def _revise_until_passing(
        self,
        state: PipelineState,
        recheck: list[PipelineStep],
        revision: PipelineStep | None,
        iteration: int,
        signal: CancellationSignal,
        progress: ProgressChannel | None,
    ) -> int:
        """Bounded revise-and-recheck loop; returns the final iteration number."""
        while not gate_passes(state, self.severity_threshold, self.min_quality_score):
            if revision is None or state.revision_iterations >= self.max_revision_iterations:
                state.requires_manual_review = True
                message = (
                    f"Chapter {state.chapter_number} still fails quality gates after "
                    f"{state.revision_iterations} revision(s); flagged for manual review"
                )
                state.warnings.append(message)
                logger.warning(
                    "Revision loop exhausted",
                    chapter=state.chapter_number,
                    iterations=state.revision_iterations,
                )
                break

            result = await self._run_step(state, revision, iteration, signal, progress)
            if not result.success:
                state.requires_manual_review = True
                state.warnings.append(
                    f"Chapter {state.chapter_number} revision failed; flagged for manual review"
                )
                break
            state.revision_iterations += 1
            iteration += 1
            logger.info(
                "Rechecking revised chapter",
                chapter=state.chapter_number,
                iteration=state.revision_iterations,
            )
            for step in recheck:
                await self._run_step(state, step, iteration, signal, progress)
        return iteration

    def _finish(self, state: PipelineState) -> PipelineState:
        if state.final_chapter is None:
            raise MissingStepInputError(StepKind.FINALIZE.value, "final_chapter")
        logger.info(
            "Chapter pipeline complete",
            chapter=state.chapter_number,
            words=state.final_chapter.word_count,
            revisions=state.revision_iterations,
            requires_manual_review=state.requires_manual_review,
            tokens=state.token_usage.total_tokens,
            stage_tokens=state.tokens.stage_breakdown(),
        )
        return state

    async def _run_step(
        self,
        state: PipelineState,
        step: PipelineStep,
        iteration: int,
        signal: CancellationSignal,
        progress: ProgressChannel | None,
        *,
        required: bool | None = None,
    ) -> StepResult:
        is_required = step.required if required is None else required
        chapter_number = state.chapter_number
        signal.raise_if_cancelled(chapter_number)

        state.on_chunk = self._chunk_forwarder(state, step, iteration, progress)
        usage_before = state.token_usage.model_copy()
        started = time.monotonic()
        retries = 0
        while True:
            try:
                await step.run(state, signal, self.services)
                break
            except GenerationCancelled:
                raise
            except Exception as exc:
                if step.retryable and retries < step.max_retries and is_transient_error(exc):
                    delay = self._backoff_delay(retries)
                    retries += 1
                    logger.warning(
                        "Step failed; retrying",
                        chapter=chapter_number,
                        step=step.name,
                        attempt=retries,
                        max_retries=step.max_retries,
                        delay=round(delay, 2),
                        error=str(exc),
                    )
                    await signal.guard(asyncio.sleep(delay), chapter_number)
                    continue

                result = StepResult(
                    step=step.name,
                    order=step.order,
                    iteration=iteration,
                    success=False,
                    execution_seconds=time.monotonic() - started,
                    retry_count=retries,
                    token_usage=_usage_delta(usage_before, state.token_usage),
                    error=str(exc),
                )
                state.on_chunk = None
                state.record(result)
                if is_required:
                    state.errors.append(f"{step.name}: {exc}")
                    logger.error(
                        "Required step failed; aborting chapter",
                        chapter=chapter_number,
                        step=step.name,
                        retries=retries,
                        error=str(exc),
                    )
                    raise PipelineStepError(
                        step.name,
                        exc,
                        step_results=list(state.step_results),
                        token_usage=state.token_usage.model_copy(),
                    ) from exc
                state.warnings.append(f"Step '{step.name}' failed and was skipped: {exc}")
                logger.warning(
                    "Optional step failed; continuing",
                    chapter=chapter_number,
                    step=step.name,
                    error=str(exc),
                )
                self._publish(state, step, iteration, progress, message=str(exc))
                return result

        state.on_chunk = None
        result = StepResult(
            step=step.name,
            order=step.order,
            iteration=iteration,
            success=True,
            execution_seconds=time.monotonic() - started,
            retry_count=retries,
            token_usage=_usage_delta(usage_before, state.token_usage),
            output=_step_output(state, step),
        )
        state.record(result)
        self._publish(state, step, iteration, progress)
        return result

    def _backoff_delay(self, attempt: int) -> float:
        """Exponentially increasing delay with jitter."""
        delay = self.retry_base_delay * (2**attempt)
        return delay + random.uniform(0, delay / 2)

    def _step_index(self, step: PipelineStep) -> int:
        for index, candidate in enumerate(self._steps, start=1):
            if candidate.name == step.name:
                return index
        return len(self._steps)

    def _publish(
        self,
        state: PipelineState,
        step: PipelineStep,
        iteration: int,
        progress: ProgressChannel | None,
        *,
        step_percentage: float = 100.0,
        partial_text: str | None = None,
        message: str | None = None,
    ) -> None:
        if progress is None:
            return
        total = len(self._steps)
        index = self._step_index(step)
        overall = 100.0 * ((index - 1) + step_percentage / 100.0) / max(total, 1)
        if step.name == StepKind.FINALIZE.value and step_percentage >= 100.0:
            overall = 100.0
        # Rechecks revisit earlier steps; neither figure moves backwards. The
        # step being rerun is named by step_name and iteration.
        overall = max(overall, state.last_overall_percentage)
        state.last_overall_percentage = overall
        index = max(index, state.last_step_index)
        state.last_step_index = index

        content = state.current_content
        progress.publish(
            PipelineProgress(
                session_id=state.session_id,
                chapter_number=state.chapter_number,
                step_index=index,
                step_name=step.name,
                total_steps=total,
                overall_percentage=round(min(overall, 100.0), 2),
                step_percentage=round(step_percentage, 2),
                iteration=iteration,
                partial_text=partial_text,
                word_count=len((partial_text or content or "").split()),
                message=message,
            )
        )

    def _chunk_forwarder(
        self,
        state: PipelineState,
        step: PipelineStep,
        iteration: int,
        progress: ProgressChannel | None,
    ) -> Callable[[str, float], Awaitable[None]] | None:
        if progress is None:
            return None

        async def forward(partial_text: str, step_percentage: float) -> None:
            self._publish(
                state,
                step,
                iteration,
                progress,
                step_percentage=step_percentage,
                partial_text=partial_text,
            )

        return forward
