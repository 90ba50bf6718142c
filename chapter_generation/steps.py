# chapter_generation/steps.py
"""Pipeline step table and the registry of step handlers.

Every stage is a ``PipelineStep`` tagged with a ``StepKind``; its behaviour is
the handler registered for that kind. Handlers only mutate the
``PipelineState`` they are given and call out to the injected collaborators.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog
from config import settings
from core.cancellation import CancellationSignal
from core.errors import GenerationCancelled, MissingStepInputError
from core.interfaces import (
    ContextBuilder,
    ContinuityChecker,
    ModelProvider,
    QualityEvaluator,
)
from core.llm_interface import GenerationRequest, call_model, truncate_text_by_tokens
from orchestration.token_accountant import Stage
from prompt_renderer import render_prompt

from models import BookBlueprint, ChapterBlueprint, GeneratedChapter, GeneratedScene
from utils.text import count_words, text_metrics

from .context_models import ContextBuildOptions, PreviousChapterSummary
from .pipeline_state import PipelineState
from .style_analyzer import StyleAnalyzer

logger = structlog.get_logger(__name__)


class StepKind(str, Enum):
    BUILD_CONTEXT = "build-context"
    GENERATE_OUTLINE = "generate-outline"
    GENERATE_SCENES = "generate-scenes"
    ASSEMBLE_CHAPTER = "assemble-chapter"
    CONTINUITY_CHECK = "continuity-check"
    STYLE_CHECK = "style-check"
    QUALITY_EVALUATION = "quality-evaluation"
    REVISION = "revision"
    FINALIZE = "finalize"


@dataclass
class PipelineServices:
    """Collaborators available to step handlers."""

    provider: ModelProvider
    context_builder: ContextBuilder | None = None
    quality_evaluator: QualityEvaluator | None = None
    continuity_checker: ContinuityChecker | None = None
    style_analyzer: StyleAnalyzer = field(default_factory=StyleAnalyzer)


StepHandler = Callable[
    [PipelineState, CancellationSignal, PipelineServices], Awaitable[None]
]

STEP_REGISTRY: dict[StepKind, StepHandler] = {}


def register_step(kind: StepKind) -> Callable[[StepHandler], StepHandler]:
    def decorator(handler: StepHandler) -> StepHandler:
        STEP_REGISTRY[kind] = handler
        return handler

    return decorator


@dataclass(frozen=True)
class PipelineStep:
    """A named, orderable unit of work over ``PipelineState``."""

    kind: StepKind | str
    order: int
    required: bool
    retryable: bool
    max_retries: int = 0
    handler: StepHandler | None = None

    @property
    def name(self) -> str:
        return self.kind.value if isinstance(self.kind, StepKind) else self.kind

    def resolve_handler(self) -> StepHandler:
        if self.handler is not None:
            return self.handler
        try:
            return STEP_REGISTRY[StepKind(self.kind)]
        except (KeyError, ValueError) as exc:
            raise LookupError(f"No handler registered for step '{self.name}'") from exc

    async def run(
        self,
        state: PipelineState,
        signal: CancellationSignal,
        services: PipelineServices,
    ) -> None:
        await self.resolve_handler()(state, signal, services)


# kind, order, required, retryable
_DEFAULT_STEP_TABLE: tuple[tuple[StepKind, int, bool, bool], ...] = (
    (StepKind.BUILD_CONTEXT, 1, True, True),
    (StepKind.GENERATE_OUTLINE, 2, True, True),
    (StepKind.GENERATE_SCENES, 3, True, True),
    (StepKind.ASSEMBLE_CHAPTER, 4, True, False),
    (StepKind.CONTINUITY_CHECK, 5, False, True),
    (StepKind.STYLE_CHECK, 6, False, False),
    (StepKind.QUALITY_EVALUATION, 7, False, True),
    (StepKind.REVISION, 8, False, True),
    (StepKind.FINALIZE, 9, True, False),
)


def default_steps(max_retries: int | None = None) -> list[PipelineStep]:
    retries = settings.STEP_MAX_RETRIES if max_retries is None else max_retries
    return [
        PipelineStep(
            kind=kind,
            order=order,
            required=required,
            retryable=retryable,
            max_retries=retries if retryable else 0,
        )
        for kind, order, required, retryable in _DEFAULT_STEP_TABLE
    ]


def _require(state: PipelineState, step: StepKind, attr: str) -> Any:
    value = getattr(state, attr)
    if value is None or value == [] or value == "":
        raise MissingStepInputError(step.value, attr)
    return value


def _model(state: PipelineState, default: str | None) -> str:
    return state.overrides.model or default or settings.BASE_MODEL


def _temperature(state: PipelineState, default: float) -> float:
    if state.overrides.temperature is not None:
        return state.overrides.temperature
    return default


def _target_words(state: PipelineState) -> int:
    return state.chapter.target_word_count or settings.DEFAULT_CHAPTER_WORDS


def _prompt_vars(state: PipelineState, **extra: Any) -> dict[str, Any]:
    ctx = state.context
    return {
        "book": state.book,
        "chapter": state.chapter,
        "sections": ctx.sections(),
        "previous_summaries": (
            ctx.previous_summaries if ctx.options.include_previous_summaries else []
        ),
        "character_states": (
            ctx.character_states if ctx.options.include_character_context else []
        ),
        "open_setups": ctx.open_setups,
        "payoffs_due": ctx.payoffs_due,
        "instructions": [*ctx.extra_instructions, *state.overrides.instructions],
        **extra,
    }


def blueprint_sections(
    book: BookBlueprint,
    chapter: ChapterBlueprint,
    options: ContextBuildOptions,
    previous_summaries: list[PreviousChapterSummary],
) -> dict[str, str]:
    """Section text derivable from the blueprint alone, honouring the include flags."""
    sections: dict[str, str] = {}
    if book.style_guide:
        sections["style_context"] = book.style_guide
    if chapter.characters and options.include_character_context:
        sections["character_context"] = "\n".join(f"- {name}" for name in chapter.characters)
    if chapter.locations and options.include_location_context:
        sections["world_context"] = "\n".join(f"- {loc}" for loc in chapter.locations)
    if previous_summaries and options.include_previous_summaries:
        sections["narrative_context"] = "\n".join(
            f"Chapter {p.chapter_number}: {p.summary}" for p in previous_summaries
        )
    return sections


def _default_context_sections(state: PipelineState) -> None:
    """Fill sections from the blueprint when no context builder is configured."""
    ctx = state.context
    derived = blueprint_sections(
        state.book, state.chapter, ctx.options, ctx.previous_summaries
    )
    for section, text in derived.items():
        if not getattr(ctx, section):
            setattr(ctx, section, text)
    if not ctx.open_setups:
        ctx.open_setups = list(state.chapter.setups)
    if not ctx.payoffs_due:
        ctx.payoffs_due = list(state.chapter.payoffs_due)


@register_step(StepKind.BUILD_CONTEXT)
async def build_context(
    state: PipelineState, signal: CancellationSignal, services: PipelineServices
) -> None:
    if not state.context.is_built:
        if services.context_builder is not None:
            state.context = await signal.guard(
                services.context_builder.build(
                    state.book, state.chapter, state.context, state.context.options
                ),
                state.chapter_number,
            )
        else:
            _default_context_sections(state)

    ctx = state.context
    model_name = _model(state, settings.DRAFTING_MODEL)
    for section, text in ctx.sections().items():
        if not text:
            continue
        limit = ctx.options.cap_for(section, ctx.budget)
        truncated = truncate_text_by_tokens(text, model_name, limit)
        if truncated != text:
            logger.info(
                "Context section truncated to budget",
                chapter=state.chapter_number,
                section=section,
                max_tokens=limit,
            )
            setattr(ctx, section, truncated)
    ctx.is_built = True


@register_step(StepKind.GENERATE_OUTLINE)
async def generate_outline(
    state: PipelineState, signal: CancellationSignal, services: PipelineServices
) -> None:
    if not state.context.is_built:
        raise MissingStepInputError(StepKind.GENERATE_OUTLINE.value, "context")

    prompt = render_prompt(
        "pipeline/outline.j2", _prompt_vars(state, target_words=_target_words(state))
    )
    request = GenerationRequest(
        prompt=prompt,
        model=_model(state, settings.OUTLINE_MODEL),
        temperature=_temperature(state, settings.TEMPERATURE_OUTLINE),
        max_output_tokens=settings.MAX_OUTLINE_TOKENS,
        purpose=StepKind.GENERATE_OUTLINE.value,
    )
    response = await call_model(
        services.provider, request, signal, chapter_number=state.chapter_number
    )
    state.tokens.record_usage(Stage.OUTLINE, response.usage)
    state.outline = response.text.strip()


@register_step(StepKind.GENERATE_SCENES)
async def generate_scenes(
    state: PipelineState, signal: CancellationSignal, services: PipelineServices
) -> None:
    outline = _require(state, StepKind.GENERATE_SCENES, "outline")
    state.scenes = []
    planned = state.chapter.ordered_scenes()
    chapter_target = _target_words(state)

    if not planned:
        prompt = render_prompt(
            "pipeline/chapter.j2",
            _prompt_vars(state, outline=outline, target_words=chapter_target),
        )
        text = await _draft(
            state,
            signal,
            services,
            prompt,
            max_tokens=int(chapter_target * 2),
            target_words=chapter_target,
            scene_index=0,
            scene_total=1,
        )
        state.scenes.append(
            GeneratedScene(
                order=1,
                title=state.chapter.display_title,
                content=text,
                word_count=count_words(text),
            )
        )
        return

    per_scene_default = max(chapter_target // len(planned), 1)
    for index, scene in enumerate(planned):
        target = scene.target_word_count or per_scene_default
        previous_text = state.scenes[-1].content[-1500:] if state.scenes else None
        prompt = render_prompt(
            "pipeline/scene.j2",
            _prompt_vars(
                state,
                outline=outline,
                scene=scene,
                scene_index=index + 1,
                scene_total=len(planned),
                previous_scene_text=previous_text,
                target_words=target,
            ),
        )
        text = await _draft(
            state,
            signal,
            services,
            prompt,
            max_tokens=max(
                settings.MAX_SCENE_TOKENS, int(target * settings.TOKENS_PER_WORD)
            ),
            target_words=target,
            scene_index=index,
            scene_total=len(planned),
        )
        state.scenes.append(
            GeneratedScene(
                order=scene.order,
                title=scene.title,
                content=text,
                word_count=count_words(text),
            )
        )


async def _draft(
    state: PipelineState,
    signal: CancellationSignal,
    services: PipelineServices,
    prompt: str,
    *,
    max_tokens: int,
    target_words: int,
    scene_index: int,
    scene_total: int,
) -> str:
    request = GenerationRequest(
        prompt=prompt,
        model=_model(state, settings.DRAFTING_MODEL),
        temperature=_temperature(state, settings.TEMPERATURE_DRAFTING),
        max_output_tokens=max_tokens,
        purpose=StepKind.GENERATE_SCENES.value,
    )
    drafted_so_far = "\n\n".join(s.content for s in state.scenes)

    async def forward(_chunk: str, accumulated: str) -> None:
        if state.on_chunk is None:
            return
        scene_fraction = min(count_words(accumulated) / max(target_words, 1), 0.99)
        percentage = 100.0 * (scene_index + scene_fraction) / scene_total
        partial = f"{drafted_so_far}\n\n{accumulated}" if drafted_so_far else accumulated
        await state.on_chunk(partial, percentage)

    response = await call_model(
        services.provider,
        request,
        signal,
        chapter_number=state.chapter_number,
        on_chunk=forward if state.on_chunk is not None else None,
    )
    state.tokens.record_usage(Stage.DRAFTING, response.usage)
    return response.text.strip()


@register_step(StepKind.ASSEMBLE_CHAPTER)
async def assemble_chapter(
    state: PipelineState, signal: CancellationSignal, services: PipelineServices
) -> None:
    if state.revised_content:
        content = state.revised_content
    else:
        scenes = _require(state, StepKind.ASSEMBLE_CHAPTER, "scenes")
        content = "\n\n".join(s.content.strip() for s in scenes if s.content.strip())
    if not content.strip():
        raise MissingStepInputError(StepKind.ASSEMBLE_CHAPTER.value, "content")
    state.assembled_content = content
    state.clear_reports()


@register_step(StepKind.CONTINUITY_CHECK)
async def continuity_check(
    state: PipelineState, signal: CancellationSignal, services: PipelineServices
) -> None:
    content = _require(state, StepKind.CONTINUITY_CHECK, "assembled_content")
    if services.continuity_checker is None:
        logger.debug("No continuity checker configured", chapter=state.chapter_number)
        return
    state.continuity_report = await signal.guard(
        services.continuity_checker.check(content, state.chapter, state.context),
        state.chapter_number,
    )


@register_step(StepKind.STYLE_CHECK)
async def style_check(
    state: PipelineState, signal: CancellationSignal, services: PipelineServices
) -> None:
    content = _require(state, StepKind.STYLE_CHECK, "assembled_content")
    state.style_report = services.style_analyzer.analyze(content, state.chapter)


@register_step(StepKind.QUALITY_EVALUATION)
async def quality_evaluation(
    state: PipelineState, signal: CancellationSignal, services: PipelineServices
) -> None:
    content = _require(state, StepKind.QUALITY_EVALUATION, "assembled_content")
    if services.quality_evaluator is None:
        logger.debug("No quality evaluator configured", chapter=state.chapter_number)
        return
    state.quality_report = await signal.guard(
        services.quality_evaluator.evaluate(content, state.chapter, state.context),
        state.chapter_number,
    )


def collect_revision_instructions(state: PipelineState, limit: int) -> list[str]:
    """Most severe issues first, topped up with the reports' own instructions."""
    issues = [issue for report in state.reports() for issue in report.issues]
    issues.sort(key=lambda i: i.severity.rank, reverse=True)

    instructions: list[str] = []
    for issue in issues:
        line = f"[{issue.severity.value}] {issue.category}: {issue.description}"
        if issue.suggested_fix:
            line += f" Fix: {issue.suggested_fix}"
        if line not in instructions:
            instructions.append(line)
    for report in state.reports():
        for text in report.revision_instructions:
            if text not in instructions:
                instructions.append(text)

    quality = state.quality_report
    if not instructions and quality is not None and quality.score is not None:
        instructions.append(
            quality.summary
            or "Raise the overall quality of the prose, pacing and characterisation."
        )
    return instructions[:limit]


@register_step(StepKind.REVISION)
async def revise_chapter(
    state: PipelineState, signal: CancellationSignal, services: PipelineServices
) -> None:
    content = _require(state, StepKind.REVISION, "assembled_content")
    instructions = collect_revision_instructions(
        state, settings.MAX_REVISION_INSTRUCTIONS
    )
    if not instructions and not state.user_instructions:
        raise MissingStepInputError(StepKind.REVISION.value, "revision instructions")
    state.pending_revision_instructions = instructions

    prompt = render_prompt(
        "pipeline/revision.j2",
        _prompt_vars(
            state,
            content=content,
            revision_instructions=instructions,
        ),
    )
    request = GenerationRequest(
        prompt=prompt,
        model=_model(state, settings.REVISION_MODEL),
        temperature=_temperature(state, settings.TEMPERATURE_REVISION),
        max_output_tokens=max(
            settings.MAX_SCENE_TOKENS,
            int(count_words(content) * settings.TOKENS_PER_WORD * 1.3),
        ),
        purpose=StepKind.REVISION.value,
    )
    response = await call_model(
        services.provider, request, signal, chapter_number=state.chapter_number
    )
    state.tokens.record_usage(Stage.REVISION, response.usage)
    state.revised_content = response.text.strip()


def parse_summary_response(text: str) -> tuple[str, str | None, list[str]]:
    """Split a ``BRIEF:/DETAILED:/- event`` response into its parts."""
    brief: str | None = None
    detailed: str | None = None
    events: list[str] = []
    for raw in text.splitlines():
        line = raw.strip()
        upper = line.upper()
        if upper.startswith("BRIEF:"):
            brief = line[len("BRIEF:") :].strip()
        elif upper.startswith("DETAILED:"):
            detailed = line[len("DETAILED:") :].strip()
        elif line.startswith("- "):
            events.append(line[2:].strip())
    if not brief:
        brief = text.strip()[:500]
    return brief, detailed or None, events


@register_step(StepKind.FINALIZE)
async def finalize_chapter(
    state: PipelineState, signal: CancellationSignal, services: PipelineServices
) -> None:
    content = _require(state, StepKind.FINALIZE, "assembled_content")
    summary, detailed, events = await _summarize(state, signal, services, content)

    character_states = []
    if services.continuity_checker is not None:
        try:
            character_states = await signal.guard(
                services.continuity_checker.extract_character_states(
                    content, state.chapter
                ),
                state.chapter_number,
            )
        except GenerationCancelled:
            raise
        except Exception as exc:
            state.warnings.append(f"Character state extraction failed: {exc}")
            logger.warning(
                "Character state extraction failed",
                chapter=state.chapter_number,
                error=str(exc),
            )

    metrics = text_metrics(content)
    quality = state.quality_report
    prior = state.prior_chapter
    state.final_chapter = GeneratedChapter(
        chapter_number=state.chapter_number,
        title=state.chapter.display_title,
        content=content,
        outline=state.outline,
        scenes=list(state.scenes),
        word_count=int(metrics["word_count"]),
        character_count=int(metrics["character_count"]),
        paragraph_count=int(metrics["paragraph_count"]),
        dialogue_percentage=metrics["dialogue_percentage"],
        quality_report=quality,
        continuity_report=state.continuity_report,
        style_report=state.style_report,
        quality_score=quality.score if quality is not None else None,
        attempt_count=1 + state.revision_iterations,
        revision_iterations=state.revision_iterations,
        requires_manual_review=state.requires_manual_review,
        model_used=_model(state, settings.DRAFTING_MODEL),
        token_usage=state.token_usage.model_copy(),
        generation_seconds=state.elapsed_seconds,
        summary=summary,
        detailed_summary=detailed,
        key_events=events,
        character_states=character_states,
        version=prior.version + 1 if prior is not None else 1,
    )


async def _summarize(
    state: PipelineState,
    signal: CancellationSignal,
    services: PipelineServices,
    content: str,
) -> tuple[str | None, str | None, list[str]]:
    request = GenerationRequest(
        prompt=render_prompt(
            "pipeline/summary.j2",
            {"book": state.book, "chapter": state.chapter, "content": content},
        ),
        model=settings.SUMMARY_MODEL or settings.SMALL_MODEL,
        temperature=settings.TEMPERATURE_SUMMARY,
        max_output_tokens=settings.MAX_SUMMARY_TOKENS,
        purpose="summary",
    )
    try:
        response = await call_model(
            services.provider, request, signal, chapter_number=state.chapter_number
        )
    except GenerationCancelled:
        raise
    except Exception as exc:
        state.warnings.append(f"Chapter summary failed: {exc}")
        logger.warning(
            "Chapter summary generation failed",
            chapter=state.chapter_number,
            error=str(exc),
        )
        return None, None, []
    state.tokens.record_usage(Stage.SUMMARIZATION, response.usage)
    return parse_summary_response(response.text)
