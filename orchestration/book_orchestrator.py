# orchestration/book_orchestrator.py
"""Book-level orchestration of chapter generation sessions."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime

import structlog
from chapter_generation import (
    ChapterGenerationContext,
    ChapterGenerationPipeline,
    ContextBuildOptions,
    GenerationOverrides,
    PipelineServices,
    PipelineState,
    PreviousChapterSummary,
    StepKind,
    TokenBudgetAllocator,
    blueprint_sections,
    estimate_context_tokens,
)
from config import settings
from core.cancellation import CancellationSignal
from core.errors import (
    BlueprintValidationError,
    ChapterGenerationError,
    GenerationCancelled,
    MissingStepInputError,
    PipelineStepError,
    SessionNotFoundError,
    SessionStateError,
)
from core.interfaces import (
    ContextBuilder,
    ContinuityChecker,
    ModelProvider,
    QualityEvaluator,
)
from core.usage import TokenUsage
from storage.session_store import SessionStore

from models import (
    AttemptKind,
    AttemptOutcome,
    BookBlueprint,
    ChapterAttempt,
    ChapterBlueprint,
    ChapterGenerationProgress,
    ChapterRecord,
    ChapterRegenerationOptions,
    ChapterStatus,
    GeneratedChapter,
    GenerationErrorRecord,
    GenerationOptions,
    GenerationProgress,
    GenerationSession,
    GenerationStatistics,
    SessionStatus,
)
from models.generation import utcnow

from .progress import ProgressChannel
from .session_machine import (
    BLOCKING_CHAPTER_STATUSES,
    GENERATED_CHAPTER_STATUSES,
    RESUMABLE_STATUSES,
    TERMINAL_STATUSES,
    restore_chapter,
    transition,
    transition_chapter,
)
from .statistics import compute_statistics

logger = structlog.get_logger(__name__)


@dataclass
class _ActiveRun:
    kind: AttemptKind
    signal: CancellationSignal = field(default_factory=CancellationSignal)
    chapter_number: int | None = None
    started: float = field(default_factory=time.monotonic)


@dataclass
class _SessionEntry:
    session: GenerationSession
    blueprint: BookBlueprint
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    run: _ActiveRun | None = None


@dataclass
class _AttemptResult:
    attempt: ChapterAttempt
    chapter: GeneratedChapter | None = None
    error: Exception | None = None


class BookGenerationOrchestrator:
    """Owns the lifecycle of generation sessions.

    Chapters of one session are generated strictly in order. Every mutation of
    a session happens under that session's lock; different sessions never
    share a lock.
    """

    def __init__(
        self,
        provider: ModelProvider,
        context_builder: ContextBuilder | None = None,
        quality_evaluator: QualityEvaluator | None = None,
        continuity_checker: ContinuityChecker | None = None,
        *,
        pipeline: ChapterGenerationPipeline | None = None,
        store: SessionStore | None = None,
        allocator: TokenBudgetAllocator | None = None,
    ) -> None:
        self.services = PipelineServices(
            provider=provider,
            context_builder=context_builder,
            quality_evaluator=quality_evaluator,
            continuity_checker=continuity_checker,
        )
        self.pipeline = pipeline or ChapterGenerationPipeline(self.services)
        self.store = store
        self.allocator = allocator or TokenBudgetAllocator()
        self._sessions: dict[str, _SessionEntry] = {}

    # ------------------------------------------------------------------
    # Session creation and validation
    # ------------------------------------------------------------------

    def validate(
        self, blueprint: BookBlueprint, options: GenerationOptions
    ) -> tuple[int, int]:
        """Check the blueprint, chapter range and budget; returns the range."""
        numbers = [c.chapter_number for c in blueprint.chapters]
        if not numbers:
            raise BlueprintValidationError(f"Blueprint '{blueprint.title}' has no chapters")
        duplicates = sorted({n for n in numbers if numbers.count(n) > 1})
        if duplicates:
            raise BlueprintValidationError(
                f"Duplicate chapter numbers in blueprint: {duplicates}"
            )
        start, end = self._range(options, blueprint)
        if start > end:
            raise BlueprintValidationError(
                f"Start chapter {start} is after end chapter {end}"
            )
        if start < min(numbers) or end > max(numbers):
            raise BlueprintValidationError(
                f"Chapter range {start}-{end} is outside the blueprint "
                f"({min(numbers)}-{max(numbers)})"
            )
        self.allocator.allocate(
            options.context_window_tokens or settings.CONTEXT_WINDOW_TOKENS
        )
        return start, end

    @staticmethod
    def _range(options: GenerationOptions, blueprint: BookBlueprint) -> tuple[int, int]:
        numbers = blueprint.chapter_numbers
        start = options.start_from_chapter or (numbers[0] if numbers else 1)
        end = options.end_at_chapter or (numbers[-1] if numbers else 0)
        return start, end

    @staticmethod
    def _new_session(
        blueprint: BookBlueprint, options: GenerationOptions
    ) -> GenerationSession:
        return GenerationSession(
            blueprint_id=blueprint.id,
            blueprint_title=blueprint.title,
            options=options,
            chapters=[
                ChapterRecord(chapter_number=c.chapter_number, title=c.display_title)
                for c in sorted(blueprint.chapters, key=lambda c: c.chapter_number)
            ],
        )

    async def create_session(
        self, blueprint: BookBlueprint, options: GenerationOptions | None = None
    ) -> GenerationSession:
        """Validate inputs and register a new, not yet started session."""
        options = options or GenerationOptions()
        self.validate(blueprint, options)
        session = self._new_session(blueprint, options)
        entry = _SessionEntry(session=session, blueprint=blueprint)
        self._sessions[session.id] = entry
        await self._persist(entry)
        logger.info(
            "Created generation session",
            session_id=session.id,
            blueprint=blueprint.title,
            chapters=len(session.chapters),
        )
        return session

    async def start_full_generation(
        self,
        blueprint: BookBlueprint,
        options: GenerationOptions | None = None,
        progress: ProgressChannel | None = None,
    ) -> GenerationSession:
        """Create a session and generate its chapter range.

        In dry-run mode the inputs and budget are validated and a
        ``not_started`` session is returned without generating or persisting.
        """
        options = options or GenerationOptions()
        if options.dry_run:
            try:
                start, end = self.validate(blueprint, options)
            finally:
                if progress is not None:
                    progress.close()
            logger.info(
                "Dry run validated",
                blueprint=blueprint.title,
                start=start,
                end=end,
            )
            return self._new_session(blueprint, options)

        session = await self.create_session(blueprint, options)
        return await self.run_session(session.id, progress)

    async def run_session(
        self, session_id: str, progress: ProgressChannel | None = None
    ) -> GenerationSession:
        """Generate the chapter range of a session created by ``create_session``."""
        entry = self._entry(session_id)
        await self._begin_run(entry, frozenset({SessionStatus.NOT_STARTED}), progress)
        return await self._drive(entry, progress)

    async def resume(
        self, session_id: str, progress: ProgressChannel | None = None
    ) -> GenerationSession:
        """Continue generation from the first incomplete chapter in range."""
        entry = self._entry(session_id)
        await self._begin_run(entry, RESUMABLE_STATUSES, progress)
        return await self._drive(entry, progress)

    async def _begin_run(
        self,
        entry: _SessionEntry,
        allowed: frozenset[SessionStatus],
        progress: ProgressChannel | None,
    ) -> None:
        session = entry.session
        async with entry.lock:
            try:
                self._ensure_idle(entry)
                if session.status not in allowed:
                    raise SessionStateError(
                        f"Session {session.id} cannot start generating from "
                        f"'{session.status.value}'"
                    )
                start, end = self._range(session.options, entry.blueprint)
                blocked = [
                    r.chapter_number
                    for r in session.chapters_in_range(start, end)
                    if r.status in BLOCKING_CHAPTER_STATUSES
                ]
                if blocked:
                    raise SessionStateError(
                        f"Chapter {blocked[0]} must be approved before generation continues"
                    )
            except SessionStateError:
                if progress is not None:
                    progress.close()
                raise
            entry.run = _ActiveRun(kind=AttemptKind.GENERATE)
            session.pause_requested = False
            session.started_at = session.started_at or utcnow()
            transition(session, SessionStatus.PLANNING)
            await self._persist(entry)

    async def _drive(
        self, entry: _SessionEntry, progress: ProgressChannel | None
    ) -> GenerationSession:
        run = entry.run
        if run is None:
            raise SessionStateError(f"Session {entry.session.id} has no active run")
        try:
            await self._run_chapters(entry, run, progress)
        finally:
            entry.run = None
            if progress is not None:
                progress.close()
        return entry.session

    async def _run_chapters(
        self,
        entry: _SessionEntry,
        run: _ActiveRun,
        progress: ProgressChannel | None,
    ) -> None:
        session = entry.session
        start, end = self._range(session.options, entry.blueprint)
        halted = False

        for record in session.chapters_in_range(start, end):
            async with entry.lock:
                if session.cancel_requested or run.signal.is_cancelled:
                    break
                if session.pause_requested:
                    session.pause_requested = False
                    transition(session, SessionStatus.PAUSED)
                    await self._persist(entry)
                    self._publish_session(entry, progress, "Paused at chapter boundary")
                    halted = True
                    break
                if record.status == ChapterStatus.SKIPPED or (
                    record.status == ChapterStatus.APPROVED
                    and session.options.skip_existing_chapters
                ):
                    continue
                if record.status in BLOCKING_CHAPTER_STATUSES:
                    transition(session, SessionStatus.AWAITING_APPROVAL)
                    await self._persist(entry)
                    halted = True
                    break
                previous = transition_chapter(record, ChapterStatus.GENERATING)
                transition(
                    session, SessionStatus.GENERATING, current_chapter=record.chapter_number
                )
                run.chapter_number = record.chapter_number
                await self._persist(entry)
                self._publish_session(
                    entry, progress, f"Generating chapter {record.chapter_number}"
                )

            try:
                result = await self._attempt(
                    entry, record, AttemptKind.GENERATE, run.signal, progress
                )
            except GenerationCancelled:
                async with entry.lock:
                    restore_chapter(record, previous)
                    logger.info(
                        "Chapter generation cancelled",
                        session_id=session.id,
                        chapter=record.chapter_number,
                    )
                break
            except asyncio.CancelledError:
                await self._abandon(entry, record, previous, SessionStatus.PAUSED)
                raise

            async with entry.lock:
                self._apply_result(entry, record, result, AttemptKind.GENERATE, previous)
                self._publish_chapter(entry, record, progress, result)
                if result.chapter is None:
                    transition(session, SessionStatus.FAILED)
                    halted = True
                elif record.status == ChapterStatus.AWAITING_APPROVAL:
                    transition(session, SessionStatus.AWAITING_APPROVAL)
                    halted = True
                await self._persist(entry)
            if halted:
                break

        async with entry.lock:
            if session.cancel_requested:
                if session.status != SessionStatus.CANCELLED:
                    transition(session, SessionStatus.CANCELLED)
            elif not halted:
                transition(session, SessionStatus.COMPLETED)
            run.chapter_number = None
            await self._persist(entry)
            self._publish_session(entry, progress, f"Session {session.status.value}")
        logger.info(
            "Generation run finished",
            session_id=session.id,
            status=session.status.value,
        )

    # ------------------------------------------------------------------
    # Chapter-level operations
    # ------------------------------------------------------------------

    async def generate_single_chapter(
        self,
        session_id: str,
        chapter_number: int,
        progress: ProgressChannel | None = None,
    ) -> GeneratedChapter:
        """Run the pipeline for one chapter of the session."""
        entry = self._entry(session_id)
        session = entry.session
        async with entry.lock:
            try:
                self._ensure_idle(entry)
                if session.status in TERMINAL_STATUSES:
                    raise SessionStateError(
                        f"Session {session.id} is {session.status.value}"
                    )
                record = self._record(entry, chapter_number)
                if record.status in BLOCKING_CHAPTER_STATUSES:
                    raise SessionStateError(
                        f"Chapter {chapter_number} is {record.status.value}; "
                        "approve, revise or regenerate it instead"
                    )
            except SessionStateError:
                if progress is not None:
                    progress.close()
                raise
            if session.status == SessionStatus.NOT_STARTED:
                transition(session, SessionStatus.PLANNING)
            previous = transition_chapter(record, ChapterStatus.GENERATING)
            transition(session, SessionStatus.GENERATING, current_chapter=chapter_number)
            run = entry.run = _ActiveRun(
                kind=AttemptKind.GENERATE, chapter_number=chapter_number
            )
            session.started_at = session.started_at or utcnow()
            await self._persist(entry)

        try:
            try:
                result = await self._attempt(
                    entry, record, AttemptKind.GENERATE, run.signal, progress
                )
            except GenerationCancelled:
                async with entry.lock:
                    restore_chapter(record, previous)
                    transition(session, SessionStatus.CANCELLED)
                    await self._persist(entry)
                raise
            except asyncio.CancelledError:
                await self._abandon(entry, record, previous, SessionStatus.PAUSED)
                raise

            async with entry.lock:
                self._apply_result(entry, record, result, AttemptKind.GENERATE, previous)
                self._publish_chapter(entry, record, progress, result)
                if session.cancel_requested:
                    transition(session, SessionStatus.CANCELLED)
                elif result.chapter is None:
                    transition(session, SessionStatus.FAILED)
                elif record.status == ChapterStatus.AWAITING_APPROVAL:
                    transition(session, SessionStatus.AWAITING_APPROVAL)
                elif self._range_finished(entry):
                    transition(session, SessionStatus.COMPLETED)
                else:
                    session.pause_requested = False
                    transition(session, SessionStatus.PAUSED)
                await self._persist(entry)
        finally:
            entry.run = None
            if progress is not None:
                progress.close()

        if result.chapter is None:
            raise ChapterGenerationError(chapter_number, result.error or "unknown error")
        return result.chapter

    async def regenerate_chapter(
        self,
        session_id: str,
        chapter_number: int,
        options: ChapterRegenerationOptions | None = None,
        progress: ProgressChannel | None = None,
    ) -> GeneratedChapter:
        """Produce a new, independent attempt for an already generated chapter."""
        options = options or ChapterRegenerationOptions()
        entry = self._entry(session_id)
        session = entry.session
        async with entry.lock:
            try:
                record = self._generated_record(entry, chapter_number)
            except SessionStateError:
                if progress is not None:
                    progress.close()
                raise
            previous = transition_chapter(record, ChapterStatus.GENERATING)
            run = entry.run = _ActiveRun(
                kind=AttemptKind.REGENERATE, chapter_number=chapter_number
            )
            await self._persist(entry)

        overrides = GenerationOverrides(
            model=options.use_model or session.options.model,
            temperature=(
                options.temperature
                if options.temperature is not None
                else session.options.temperature
            ),
            instructions=options.as_instructions(),
        )
        logger.info(
            "Regenerating chapter",
            session_id=session.id,
            chapter=chapter_number,
            model=overrides.model,
            temperature=overrides.temperature,
        )
        try:
            try:
                result = await self._attempt(
                    entry,
                    record,
                    AttemptKind.REGENERATE,
                    run.signal,
                    progress,
                    overrides=overrides,
                )
            except GenerationCancelled:
                async with entry.lock:
                    restore_chapter(record, previous)
                    transition(session, SessionStatus.CANCELLED)
                    await self._persist(entry)
                raise
            except asyncio.CancelledError:
                await self._abandon(entry, record, previous, None)
                raise

            async with entry.lock:
                self._apply_result(
                    entry, record, result, AttemptKind.REGENERATE, previous
                )
                self._publish_chapter(entry, record, progress, result)
                if session.cancel_requested:
                    transition(session, SessionStatus.CANCELLED)
                await self._persist(entry)
        finally:
            entry.run = None
            if progress is not None:
                progress.close()

        if result.chapter is None:
            raise ChapterGenerationError(chapter_number, result.error or "unknown error")
        return result.chapter

    async def request_revision(
        self,
        session_id: str,
        chapter_number: int,
        instructions: str | Sequence[str],
        progress: ProgressChannel | None = None,
    ) -> GeneratedChapter:
        """Revise a generated chapter with free-text instructions.

        The revised chapter is always left awaiting approval.
        """
        notes = [instructions] if isinstance(instructions, str) else list(instructions)
        notes = [n.strip() for n in notes if n and n.strip()]
        entry = self._entry(session_id)
        session = entry.session
        async with entry.lock:
            try:
                if not notes:
                    raise SessionStateError("Revision instructions must not be empty")
                record = self._generated_record(entry, chapter_number)
            except SessionStateError:
                if progress is not None:
                    progress.close()
                raise
            previous = transition_chapter(record, ChapterStatus.REVISION_REQUESTED)
            previous_session_status = session.status
            transition(session, SessionStatus.REVISION_REQUESTED)
            run = entry.run = _ActiveRun(
                kind=AttemptKind.REVISION, chapter_number=chapter_number
            )
            await self._persist(entry)

        try:
            try:
                result = await self._attempt(
                    entry,
                    record,
                    AttemptKind.REVISION,
                    run.signal,
                    progress,
                    instructions=notes,
                )
            except GenerationCancelled:
                async with entry.lock:
                    restore_chapter(record, previous)
                    transition(session, SessionStatus.CANCELLED)
                    await self._persist(entry)
                raise
            except asyncio.CancelledError:
                await self._abandon(entry, record, previous, previous_session_status)
                raise

            async with entry.lock:
                self._apply_result(entry, record, result, AttemptKind.REVISION, previous)
                self._publish_chapter(entry, record, progress, result)
                if session.cancel_requested:
                    transition(session, SessionStatus.CANCELLED)
                elif result.chapter is not None:
                    transition(session, SessionStatus.AWAITING_APPROVAL)
                else:
                    transition(session, previous_session_status)
                await self._persist(entry)
        finally:
            entry.run = None
            if progress is not None:
                progress.close()

        if result.chapter is None:
            raise ChapterGenerationError(chapter_number, result.error or "unknown error")
        return result.chapter

    async def approve_chapter(self, session_id: str, chapter_number: int) -> ChapterRecord:
        """Finalize a chapter that is awaiting approval."""
        entry = self._entry(session_id)
        session = entry.session
        async with entry.lock:
            record = self._record(entry, chapter_number)
            if record.status != ChapterStatus.AWAITING_APPROVAL:
                raise SessionStateError(
                    f"Chapter {chapter_number} is {record.status.value}, "
                    "not awaiting approval"
                )
            transition_chapter(record, ChapterStatus.APPROVED)
            session.touch()
            if (
                entry.run is None
                and session.status == SessionStatus.AWAITING_APPROVAL
                and self._range_finished(entry)
            ):
                transition(session, SessionStatus.COMPLETED)
            await self._persist(entry)
            logger.info(
                "Chapter approved", session_id=session.id, chapter=chapter_number
            )
            return record.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Session control
    # ------------------------------------------------------------------

    async def pause(self, session_id: str) -> GenerationSession:
        """Request a pause at the next chapter boundary."""
        entry = self._entry(session_id)
        session = entry.session
        async with entry.lock:
            if session.status in (
                SessionStatus.PAUSED,
                SessionStatus.FAILED,
                *TERMINAL_STATUSES,
            ):
                return session.model_copy(deep=True)
            if entry.run is None or session.status not in (
                SessionStatus.PLANNING,
                SessionStatus.GENERATING,
            ):
                raise SessionStateError(
                    f"Session {session.id} is not generating (status "
                    f"'{session.status.value}')"
                )
            session.pause_requested = True
            session.touch()
            await self._persist(entry)
            logger.info(
                "Pause requested",
                session_id=session.id,
                chapter=session.current_chapter,
            )
            return session.model_copy(deep=True)

    async def cancel(self, session_id: str) -> GenerationSession:
        """Cancel the session; an in-flight chapter is abandoned."""
        entry = self._entry(session_id)
        session = entry.session
        async with entry.lock:
            if session.status == SessionStatus.CANCELLED:
                return session.model_copy(deep=True)
            if session.status == SessionStatus.COMPLETED:
                raise SessionStateError(f"Session {session.id} is already completed")
            session.cancel_requested = True
            if entry.run is not None:
                entry.run.signal.cancel(f"Session {session.id} cancelled")
            else:
                transition(session, SessionStatus.CANCELLED)
            await self._persist(entry)
            logger.info("Cancellation requested", session_id=session.id)
            return session.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Read accessors and restart
    # ------------------------------------------------------------------

    def get_session_state(self, session_id: str) -> GenerationSession:
        return self._entry(session_id).session.model_copy(deep=True)

    def get_statistics(self, session_id: str) -> GenerationStatistics:
        entry = self._entry(session_id)
        return compute_statistics(entry.session, len(entry.blueprint.chapters))

    def is_running(self, session_id: str) -> bool:
        return self._entry(session_id).run is not None

    async def load_session(
        self, session_id: str, blueprint: BookBlueprint
    ) -> GenerationSession:
        """Rebuild a session from its persisted snapshot."""
        if session_id in self._sessions:
            return self.get_session_state(session_id)
        if self.store is None:
            raise SessionNotFoundError(session_id)
        session = await self.store.load(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if session.blueprint_id != blueprint.id:
            raise BlueprintValidationError(
                f"Session {session_id} was created from blueprint "
                f"'{session.blueprint_id}', not '{blueprint.id}'"
            )
        self._recover_interrupted(session)
        self._sessions[session.id] = _SessionEntry(session=session, blueprint=blueprint)
        logger.info(
            "Loaded generation session",
            session_id=session.id,
            status=session.status.value,
        )
        return session.model_copy(deep=True)

    @staticmethod
    def _recover_interrupted(session: GenerationSession) -> None:
        """Undo in-flight markers left by a process that stopped mid-run."""
        for record in session.chapters:
            if record.status == ChapterStatus.GENERATING:
                record.status = (
                    ChapterStatus.AWAITING_APPROVAL
                    if record.chapter is not None
                    else ChapterStatus.PENDING
                )
        if session.cancel_requested and session.status != SessionStatus.CANCELLED:
            session.status = SessionStatus.CANCELLED
            session.completed_at = session.completed_at or utcnow()
        elif session.status in (SessionStatus.PLANNING, SessionStatus.GENERATING):
            session.warnings.append("Run was interrupted; session restored as paused")
            session.status = SessionStatus.PAUSED
        session.current_chapter = None
        session.pause_requested = False

    async def list_sessions(self) -> list[dict[str, str]]:
        if self.store is not None:
            return await self.store.list_sessions()
        return [
            {
                "session_id": e.session.id,
                "blueprint_id": e.session.blueprint_id,
                "blueprint_title": e.session.blueprint_title,
                "status": e.session.status.value,
                "updated_at": e.session.last_activity_at.isoformat(),
            }
            for e in self._sessions.values()
        ]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _entry(self, session_id: str) -> _SessionEntry:
        entry = self._sessions.get(session_id)
        if entry is None:
            raise SessionNotFoundError(session_id)
        return entry

    @staticmethod
    def _ensure_idle(entry: _SessionEntry) -> None:
        if entry.run is not None:
            raise SessionStateError(
                f"Session {entry.session.id} already has an active "
                f"{entry.run.kind.value} run"
            )

    @staticmethod
    def _record(entry: _SessionEntry, chapter_number: int) -> ChapterRecord:
        record = entry.session.get_chapter(chapter_number)
        if record is None:
            raise SessionStateError(
                f"Chapter {chapter_number} is not part of session {entry.session.id}"
            )
        return record

    def _generated_record(self, entry: _SessionEntry, chapter_number: int) -> ChapterRecord:
        self._ensure_idle(entry)
        if entry.session.status == SessionStatus.CANCELLED:
            raise SessionStateError(f"Session {entry.session.id} is cancelled")
        record = self._record(entry, chapter_number)
        if record.chapter is None or record.status not in GENERATED_CHAPTER_STATUSES:
            raise SessionStateError(
                f"Chapter {chapter_number} has not been generated "
                f"(status '{record.status.value}')"
            )
        return record

    def _range_finished(self, entry: _SessionEntry) -> bool:
        start, end = self._range(entry.session.options, entry.blueprint)
        return all(r.is_finished for r in entry.session.chapters_in_range(start, end))

    def _chapter_blueprint(self, entry: _SessionEntry, chapter_number: int) -> ChapterBlueprint:
        chapter = entry.blueprint.get_chapter(chapter_number)
        if chapter is None:
            raise BlueprintValidationError(
                f"Chapter {chapter_number} is missing from blueprint '{entry.blueprint.title}'"
            )
        return chapter

    def _build_context(
        self,
        entry: _SessionEntry,
        chapter: ChapterBlueprint,
        model: str | None = None,
    ) -> ChapterGenerationContext:
        """Seed the chapter context from earlier chapters' generated output."""
        session = entry.session
        number = chapter.chapter_number
        earlier = [
            r
            for r in session.chapters
            if r.chapter_number < number and r.chapter is not None
        ]
        recent = earlier[-settings.PREVIOUS_CHAPTERS_IN_CONTEXT :] if earlier else []
        summaries = [
            PreviousChapterSummary(
                chapter_number=r.chapter_number,
                title=r.chapter.title,
                summary=r.chapter.summary or "",
                key_events=list(r.chapter.key_events),
            )
            for r in recent
            if r.chapter is not None
        ]
        options = ContextBuildOptions(
            previous_chapter_count=settings.PREVIOUS_CHAPTERS_IN_CONTEXT
        )

        # Without a context builder the section text is known up front, so
        # sections smaller than their share give the rest back to the others.
        measured: dict[str, int] | None = None
        if self.pipeline.services.context_builder is None:
            measured = {
                section: estimate_context_tokens(text, model or settings.DRAFTING_MODEL)
                for section, text in blueprint_sections(
                    entry.blueprint, chapter, options, summaries
                ).items()
            }
        budget = self.allocator.allocate(
            session.options.context_window_tokens or settings.CONTEXT_WINDOW_TOKENS,
            measured_sizes=measured,
        )

        paid_off = {
            p for c in entry.blueprint.chapters if c.chapter_number < number for p in c.payoffs_due
        }
        open_setups = [
            s
            for c in sorted(entry.blueprint.chapters, key=lambda c: c.chapter_number)
            if c.chapter_number < number
            for s in c.setups
            if s not in paid_off
        ]
        open_setups.extend(s for s in chapter.setups if s not in open_setups)

        return ChapterGenerationContext(
            chapter_number=number,
            budget=budget,
            options=options,
            previous_summaries=summaries,
            character_states=(
                list(earlier[-1].chapter.character_states)
                if earlier and earlier[-1].chapter is not None
                else []
            ),
            open_setups=open_setups,
            payoffs_due=list(chapter.payoffs_due),
        )

    async def _attempt(
        self,
        entry: _SessionEntry,
        record: ChapterRecord,
        kind: AttemptKind,
        signal: CancellationSignal,
        progress: ProgressChannel | None,
        *,
        overrides: GenerationOverrides | None = None,
        instructions: list[str] | None = None,
    ) -> _AttemptResult:
        """Run one pipeline attempt. Cancellation propagates; failures are returned."""
        session = entry.session
        started_at = utcnow()
        started = time.monotonic()
        overrides = overrides or GenerationOverrides(
            model=session.options.model, temperature=session.options.temperature
        )
        prior = record.chapter
        if kind == AttemptKind.REVISION and prior is None:
            raise SessionStateError(
                f"Chapter {record.chapter_number} has no generated text to revise"
            )
        try:
            chapter_bp = self._chapter_blueprint(entry, record.chapter_number)
            context = self._build_context(entry, chapter_bp, overrides.model)
            if prior is not None and kind == AttemptKind.REVISION:
                state = await self.pipeline.revise(
                    context,
                    chapter_bp,
                    entry.blueprint,
                    prior,
                    instructions or [],
                    overrides=overrides,
                    progress=progress,
                    signal=signal,
                    session_id=session.id,
                )
            else:
                state = await self.pipeline.execute(
                    context,
                    chapter_bp,
                    entry.blueprint,
                    overrides=overrides,
                    progress=progress,
                    signal=signal,
                    session_id=session.id,
                )
            chapter = state.final_chapter
            if chapter is None:
                raise MissingStepInputError(StepKind.FINALIZE.value, "final_chapter")
        except GenerationCancelled:
            raise
        except PipelineStepError as exc:
            return _AttemptResult(
                attempt=ChapterAttempt(
                    kind=kind,
                    outcome=AttemptOutcome.FAILED,
                    started_at=started_at,
                    duration_seconds=time.monotonic() - started,
                    steps=[r.to_record() for r in exc.step_results],
                    token_usage=exc.token_usage or TokenUsage(),
                    error=str(exc),
                ),
                error=exc,
            )
        except Exception as exc:
            logger.error(
                "Chapter attempt failed",
                session_id=session.id,
                chapter=record.chapter_number,
                error=str(exc),
                exc_info=True,
            )
            return _AttemptResult(
                attempt=ChapterAttempt(
                    kind=kind,
                    outcome=AttemptOutcome.FAILED,
                    started_at=started_at,
                    duration_seconds=time.monotonic() - started,
                    error=str(exc),
                ),
                error=exc,
            )
        return self._success_result(kind, record, state, chapter, started_at, started)

    @staticmethod
    def _success_result(
        kind: AttemptKind,
        record: ChapterRecord,
        state: PipelineState,
        chapter: GeneratedChapter,
        started_at: datetime,
        started: float,
    ) -> _AttemptResult:
        if kind == AttemptKind.REGENERATE and record.chapter is not None:
            chapter = chapter.model_copy(update={"version": record.chapter.version + 1})
        issues = [i for report in state.reports() for i in report.issues]
        return _AttemptResult(
            attempt=ChapterAttempt(
                kind=kind,
                outcome=(
                    AttemptOutcome.FLAGGED
                    if chapter.requires_manual_review
                    else AttemptOutcome.COMPLETED
                ),
                started_at=started_at,
                duration_seconds=time.monotonic() - started,
                steps=[r.to_record() for r in state.step_results],
                token_usage=state.token_usage.model_copy(),
                word_count=chapter.word_count,
                quality_score=chapter.quality_score,
                issues=issues,
                revision_iterations=state.revision_iterations,
            ),
            chapter=chapter,
        )

    async def _abandon(
        self,
        entry: _SessionEntry,
        record: ChapterRecord,
        previous: ChapterStatus,
        fallback: SessionStatus | None,
    ) -> None:
        """Roll back a chapter whose calling task was cancelled mid-attempt."""
        session = entry.session
        async with entry.lock:
            restore_chapter(record, previous)
            target = SessionStatus.CANCELLED if session.cancel_requested else fallback
            if target is not None and session.status != target:
                transition(session, target)
            await self._persist(entry)
        logger.warning(
            "Chapter attempt interrupted",
            session_id=session.id,
            chapter=record.chapter_number,
            status=session.status.value,
        )

    def _apply_result(
        self,
        entry: _SessionEntry,
        record: ChapterRecord,
        result: _AttemptResult,
        kind: AttemptKind,
        previous: ChapterStatus,
    ) -> None:
        """Record an attempt and move the chapter to its resulting status."""
        session = entry.session
        record.attempts.append(result.attempt)
        session.touch()

        if result.chapter is None:
            error = result.error
            session.errors.append(
                GenerationErrorRecord(
                    message=str(error),
                    chapter_number=record.chapter_number,
                    step=getattr(error, "step", None),
                )
            )
            if kind == AttemptKind.GENERATE:
                transition_chapter(record, ChapterStatus.FAILED)
            else:
                restore_chapter(record, previous)
            logger.error(
                "Chapter attempt failed",
                session_id=session.id,
                chapter=record.chapter_number,
                kind=kind.value,
                error=str(error),
            )
            return

        record.chapter = result.chapter
        needs_review = (
            kind == AttemptKind.REVISION
            or result.chapter.requires_manual_review
            or session.options.require_approval
            or not settings.AUTO_APPROVE_CHAPTERS
        )
        transition_chapter(
            record,
            ChapterStatus.AWAITING_APPROVAL if needs_review else ChapterStatus.APPROVED,
        )
        if result.chapter.requires_manual_review:
            session.warnings.append(
                f"Chapter {record.chapter_number} requires manual review"
            )
        logger.info(
            "Chapter attempt recorded",
            session_id=session.id,
            chapter=record.chapter_number,
            kind=kind.value,
            status=record.status.value,
            words=result.chapter.word_count,
        )

    def _publish_chapter(
        self,
        entry: _SessionEntry,
        record: ChapterRecord,
        progress: ProgressChannel | None,
        result: _AttemptResult,
    ) -> None:
        if progress is None:
            return
        chapter = result.chapter
        progress.publish(
            ChapterGenerationProgress(
                session_id=entry.session.id,
                chapter_number=record.chapter_number,
                status=record.status,
                word_count=chapter.word_count if chapter is not None else 0,
                quality_score=chapter.quality_score if chapter is not None else None,
                requires_manual_review=bool(chapter and chapter.requires_manual_review),
                error=str(result.error) if result.error is not None else None,
            )
        )

    def _publish_session(
        self,
        entry: _SessionEntry,
        progress: ProgressChannel | None,
        message: str | None = None,
    ) -> None:
        if progress is None:
            return
        session = entry.session
        start, end = self._range(session.options, entry.blueprint)
        in_range = session.chapters_in_range(start, end)
        done = sum(
            1
            for r in in_range
            if r.status
            in (ChapterStatus.APPROVED, ChapterStatus.SKIPPED, ChapterStatus.AWAITING_APPROVAL)
        )
        usage = TokenUsage()
        for record in session.chapters:
            for attempt in record.attempts:
                usage.add(attempt.token_usage)
        elapsed = time.monotonic() - entry.run.started if entry.run is not None else 0.0
        progress.publish(
            GenerationProgress(
                session_id=session.id,
                status=session.status,
                current_chapter=session.current_chapter,
                chapters_completed=done,
                total_chapters=len(in_range),
                overall_percentage=round(100.0 * done / len(in_range), 2)
                if in_range
                else 100.0,
                elapsed_seconds=round(elapsed, 2),
                total_tokens=usage.total_tokens,
                estimated_cost=round(usage.estimated_cost, 6),
                message=message,
            )
        )

    async def _persist(self, entry: _SessionEntry) -> None:
        if self.store is not None:
            await self.store.save(entry.session)
