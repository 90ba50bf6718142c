import pytest
from orchestration.progress import ProgressChannel
from ui.rich_display import RichDisplayManager, watch

from models import (
    ChapterGenerationProgress,
    ChapterStatus,
    GenerationProgress,
    PipelineProgress,
    SessionStatus,
)


def test_update_renders_each_event_kind():
    display = RichDisplayManager("The Lantern Road")
    assert display.live is None

    display.update(
        PipelineProgress(
            chapter_number=3,
            step_index=2,
            step_name="generate-scenes",
            total_steps=9,
            overall_percentage=40.0,
            iteration=1,
        )
    )
    assert display.status_text_current_chapter.plain == "Current Chapter: 3"
    assert "generate-scenes (3/9, 40%)" in display.status_text_current_step.plain
    assert "revision pass 1" in display.status_text_current_step.plain

    display.update(
        GenerationProgress(
            session_id="s-9",
            status=SessionStatus.GENERATING,
            chapters_completed=2,
            total_chapters=5,
            total_tokens=12345,
        )
    )
    assert "2/5 chapters" in display.status_text_session.plain
    assert "12,345" in display.status_text_tokens_generated.plain

    display.update(
        ChapterGenerationProgress(
            session_id="s-9",
            chapter_number=3,
            status=ChapterStatus.FAILED,
            error="provider down",
        )
    )
    assert display.status_text_last_chapter.plain.endswith("error: provider down")
    assert display.events_seen == 3


@pytest.mark.asyncio
async def test_watch_consumes_until_closed():
    channel = ProgressChannel(capacity=10)
    channel.publish(
        ChapterGenerationProgress(
            session_id="s-1",
            chapter_number=1,
            status=ChapterStatus.AWAITING_APPROVAL,
            word_count=2100,
            quality_score=82.0,
        )
    )
    channel.close()

    display = await watch(channel, "Book")
    assert display.events_seen == 1
    assert "2,100 words, quality 82" in display.status_text_last_chapter.plain
