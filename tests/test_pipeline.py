import asyncio
from unittest.mock import AsyncMock

import pytest
from chapter_generation import (
    ChapterGenerationPipeline,
    PipelineServices,
    PipelineStep,
    StepKind,
    default_steps,
)
from chapter_generation.steps import parse_summary_response
from core.cancellation import CancellationSignal
from core.errors import (
    AuthenticationError,
    GenerationCancelled,
    PipelineStepError,
    RateLimitError,
)
from orchestration.progress import ProgressChannel

from models import Issue, IssueSeverity, PipelineProgress, QualityReport
from fakes import REVISED_TEXT, FakeProvider, ScriptedEvaluator

FAILING = QualityReport(
    passed=False,
    score=60.0,
    issues=[
        Issue(
            category="pacing",
            description="The middle drags.",
            severity=IssueSeverity.MAJOR,
            suggested_fix="Cut the second walk through the square.",
        )
    ],
)
PASSING = QualityReport(passed=True, score=88.0)


def _sort_keys(state):
    return [r.sort_key for r in state.step_results]


def _result(state, step):
    return next(r for r in reversed(state.step_results) if r.step == step)


@pytest.mark.asyncio
async def test_execute_happy_path(pipeline, book, make_context, provider):
    chapter = book.get_chapter(1)
    state = await pipeline.execute(make_context(1), chapter, book)

    result = state.final_chapter
    assert result is not None
    assert result.chapter_number == 1
    assert result.attempt_count == 1
    assert result.revision_iterations == 0
    assert not result.requires_manual_review
    assert result.quality_score == 85.0
    assert result.summary == "Mara delivers the sealed letter to Tobin."
    assert result.key_events == ["Mara crosses the square", "Tobin receives the letter"]
    assert result.character_states[0].name == "Mara"
    assert [r.step for r in state.step_results] == [
        "build-context",
        "generate-outline",
        "generate-scenes",
        "assemble-chapter",
        "continuity-check",
        "style-check",
        "quality-evaluation",
        "finalize",
    ]
    assert all(r.success for r in state.step_results)
    # one outline call, one draft per planned scene, one summary
    assert len(provider.calls("generate-scenes")) == 2
    assert state.token_usage.total_tokens == 4 * 150


@pytest.mark.asyncio
async def test_failed_gate_triggers_one_revision(book, make_context, provider, checker):
    evaluator = ScriptedEvaluator([FAILING, PASSING])
    pipeline = ChapterGenerationPipeline(
        _services(provider, evaluator, checker), retry_base_delay=0
    )
    state = await pipeline.execute(make_context(1), book.get_chapter(1), book)

    chapter = state.final_chapter
    assert chapter.attempt_count == 2
    assert chapter.revision_iterations == 1
    assert chapter.requires_manual_review is False
    assert chapter.content == REVISED_TEXT.strip()
    assert chapter.quality_score == 88.0

    revision = _result(state, "revision")
    assert revision.success and revision.iteration == 0
    assert "Cut the second walk" in provider.calls("revision")[0].prompt
    keys = _sort_keys(state)
    assert keys == sorted(keys)
    assert _result(state, "finalize").iteration == 1


@pytest.mark.asyncio
async def test_revision_loop_is_capped(book, make_context, provider, checker):
    evaluator = ScriptedEvaluator([FAILING])
    pipeline = ChapterGenerationPipeline(
        _services(provider, evaluator, checker),
        max_revision_iterations=2,
        retry_base_delay=0,
    )
    state = await pipeline.execute(make_context(1), book.get_chapter(1), book)

    assert state.revision_iterations == 2
    assert len(provider.calls("revision")) == 2
    assert state.final_chapter.requires_manual_review is True
    assert any("manual review" in w for w in state.warnings)
    # initial evaluation plus one per revision
    assert len(evaluator.calls) == 3


@pytest.mark.asyncio
async def test_low_score_alone_fails_gate(book, make_context, provider, checker):
    evaluator = ScriptedEvaluator([QualityReport(passed=True, score=50.0), PASSING])
    pipeline = ChapterGenerationPipeline(
        _services(provider, evaluator, checker), retry_base_delay=0
    )
    state = await pipeline.execute(make_context(1), book.get_chapter(1), book)
    assert state.revision_iterations == 1


@pytest.mark.asyncio
async def test_minor_issues_do_not_trigger_revision(book, make_context, provider, checker):
    report = QualityReport(
        passed=True,
        score=80.0,
        issues=[Issue(category="word choice", description="x", severity="minor")],
    )
    pipeline = ChapterGenerationPipeline(
        _services(provider, ScriptedEvaluator([report]), checker), retry_base_delay=0
    )
    state = await pipeline.execute(make_context(1), book.get_chapter(1), book)
    assert state.revision_iterations == 0
    assert provider.calls("revision") == []


@pytest.mark.asyncio
async def test_transient_errors_are_retried(pipeline, book, make_context, provider):
    provider.failures["generate-outline"] = [RateLimitError("429"), RateLimitError("429")]
    state = await pipeline.execute(make_context(1), book.get_chapter(1), book)

    outline = _result(state, "generate-outline")
    assert outline.success
    assert outline.retry_count == 2
    assert len(provider.calls("generate-outline")) == 3
    assert state.final_chapter is not None


@pytest.mark.asyncio
async def test_retries_exhausted_aborts_pipeline(book, make_context, provider, services):
    pipeline = ChapterGenerationPipeline(
        services, default_steps(max_retries=1), retry_base_delay=0
    )
    provider.failures["generate-outline"] = [RateLimitError("429")] * 3

    with pytest.raises(PipelineStepError) as excinfo:
        await pipeline.execute(make_context(1), book.get_chapter(1), book)

    err = excinfo.value
    assert err.step == "generate-outline"
    assert [r.step for r in err.step_results] == ["build-context", "generate-outline"]
    assert err.step_results[-1].retry_count == 1
    assert not err.step_results[-1].success
    assert len(provider.calls("generate-outline")) == 2


@pytest.mark.asyncio
async def test_permanent_error_is_not_retried(pipeline, book, make_context, provider):
    provider.failures["generate-scenes"] = [AuthenticationError("bad key")]
    with pytest.raises(PipelineStepError) as excinfo:
        await pipeline.execute(make_context(1), book.get_chapter(1), book)
    assert excinfo.value.step == "generate-scenes"
    assert excinfo.value.step_results[-1].retry_count == 0
    assert len(provider.calls("generate-scenes")) == 1


@pytest.mark.asyncio
async def test_optional_step_failure_is_a_warning(book, make_context, provider, checker):
    class BrokenEvaluator(ScriptedEvaluator):
        async def evaluate(self, content, chapter, context):
            raise ValueError("evaluator exploded")

    pipeline = ChapterGenerationPipeline(
        _services(provider, BrokenEvaluator(), checker), retry_base_delay=0
    )
    state = await pipeline.execute(make_context(1), book.get_chapter(1), book)

    evaluation = _result(state, "quality-evaluation")
    assert evaluation.success is False
    assert "evaluator exploded" in evaluation.error
    assert state.final_chapter is not None
    assert state.final_chapter.quality_score is None
    assert any("quality-evaluation" in w for w in state.warnings)


@pytest.mark.asyncio
async def test_summary_failure_does_not_fail_chapter(pipeline, book, make_context, provider):
    provider.failures["summary"] = [AuthenticationError("nope")]
    state = await pipeline.execute(make_context(1), book.get_chapter(1), book)
    assert state.final_chapter.summary is None
    assert any("summary" in w.lower() for w in state.warnings)


@pytest.mark.asyncio
async def test_streaming_publishes_partial_text(book, make_context, evaluator, checker):
    provider = FakeProvider(streaming=True)
    pipeline = ChapterGenerationPipeline(
        _services(provider, evaluator, checker), retry_base_delay=0
    )
    channel = ProgressChannel(capacity=10_000)
    await pipeline.execute(
        make_context(1), book.get_chapter(1), book, progress=channel, session_id="s-1"
    )
    events = [e for e in channel.drain() if isinstance(e, PipelineProgress)]

    assert all(isinstance(e, PipelineProgress) for e in events)
    assert any(e.partial_text for e in events if e.step_name == "generate-scenes")
    overall = [e.overall_percentage for e in events]
    assert overall == sorted(overall)
    assert overall[-1] == 100.0
    assert events[-1].step_name == "finalize"
    assert {e.session_id for e in events} == {"s-1"}


@pytest.mark.asyncio
async def test_cancel_before_start(pipeline, book, make_context, provider):
    signal = CancellationSignal()
    signal.cancel("stop")
    with pytest.raises(GenerationCancelled):
        await pipeline.execute(make_context(1), book.get_chapter(1), book, signal=signal)
    assert provider.requests == []


@pytest.mark.asyncio
async def test_cancel_during_streaming(book, make_context, evaluator, checker):
    provider = FakeProvider(streaming=True, delay=0.01)
    pipeline = ChapterGenerationPipeline(
        _services(provider, evaluator, checker), retry_base_delay=0
    )
    signal = CancellationSignal()

    async def cancel_soon():
        await asyncio.sleep(0.05)
        signal.cancel("user cancelled")

    canceller = asyncio.create_task(cancel_soon())
    with pytest.raises(GenerationCancelled):
        await pipeline.execute(make_context(1), book.get_chapter(1), book, signal=signal)
    await canceller


@pytest.mark.asyncio
async def test_revise_runs_requested_revision(pipeline, book, make_context, provider):
    chapter_bp = book.get_chapter(1)
    first = await pipeline.execute(make_context(1), chapter_bp, book)
    prior = first.final_chapter

    state = await pipeline.revise(
        make_context(1), chapter_bp, book, prior, ["Make Tobin warmer."]
    )

    revised = state.final_chapter
    assert revised.version == prior.version + 1
    assert revised.content == REVISED_TEXT.strip()
    assert "Make Tobin warmer." in provider.calls("revision")[-1].prompt
    assert _result(state, "revision").iteration == 0
    assert state.revision_iterations == 0
    keys = _sort_keys(state)
    assert keys == sorted(keys)
    # no new outline or draft
    assert len(provider.calls("generate-outline")) == 1


@pytest.mark.asyncio
async def test_custom_step_can_replace_default(pipeline, book, make_context):
    seen = []

    async def tag_outline(state, signal, services):
        state.outline = "custom outline"
        seen.append(state.chapter_number)

    pipeline.add_step(
        PipelineStep(
            kind=StepKind.GENERATE_OUTLINE, order=2, required=True, retryable=False,
            handler=tag_outline,
        )
    )
    state = await pipeline.execute(make_context(2), book.get_chapter(2), book)
    assert seen == [2]
    assert state.final_chapter.outline == "custom outline"
    assert len(pipeline.steps) == 9


def test_parse_summary_response_handles_plain_text():
    brief, detailed, events = parse_summary_response("Just a sentence.")
    assert brief == "Just a sentence."
    assert detailed is None
    assert events == []


def _services(provider, evaluator, checker):
    return PipelineServices(
        provider=provider, quality_evaluator=evaluator, continuity_checker=checker
    )


@pytest.mark.asyncio
async def test_context_builder_output_is_truncated_to_budget(
    provider, evaluator, checker, book, make_context
):
    def fill(book_bp, chapter_bp, context, options):
        context.narrative_context = "river " * 60_000
        context.style_context = "Spare."
        return context

    builder = AsyncMock()
    builder.build.side_effect = fill
    pipeline = ChapterGenerationPipeline(
        PipelineServices(
            provider=provider,
            context_builder=builder,
            quality_evaluator=evaluator,
            continuity_checker=checker,
        ),
        retry_base_delay=0,
    )
    state = await pipeline.execute(make_context(1), book.get_chapter(1), book)

    builder.build.assert_awaited_once()
    assert state.context.is_built
    assert state.context.narrative_context.endswith("(truncated)")
    assert state.context.style_context == "Spare."
    assert "Spare." in provider.calls("generate-outline")[0].prompt


@pytest.mark.asyncio
async def test_include_flags_gate_blueprint_sections(pipeline, book, make_context, provider):
    context = make_context(1)
    context.options.include_character_context = False
    context.options.include_location_context = False

    state = await pipeline.execute(context, book.get_chapter(1), book)

    assert state.context.character_context == ""
    assert state.context.world_context == ""
    prompt = provider.calls("generate-outline")[0].prompt
    assert "CHARACTERS:" not in prompt
    assert "WORLD:" not in prompt


@pytest.mark.asyncio
async def test_recheck_progress_never_moves_backwards(book, make_context, provider, checker):
    evaluator = ScriptedEvaluator([FAILING, PASSING])
    pipeline = ChapterGenerationPipeline(
        _services(provider, evaluator, checker), retry_base_delay=0
    )
    channel = ProgressChannel(capacity=10_000)
    await pipeline.execute(make_context(1), book.get_chapter(1), book, progress=channel)

    events = [e for e in channel.drain() if isinstance(e, PipelineProgress)]
    indexes = [e.step_index for e in events]
    assert indexes == sorted(indexes)
    rerun = [e for e in events if e.step_name == "assemble-chapter" and e.iteration == 1]
    assert rerun
    first_assemble = next(e for e in events if e.step_name == "assemble-chapter")
    assert rerun[0].step_index > first_assemble.step_index
