from __future__ import annotations

import time
from typing import Optional

from config import settings
from rich.console import Group
from rich.live import Live
from rich.panel import Panel
from rich.text import Text

from models import ChapterGenerationProgress, GenerationProgress, PipelineProgress
from orchestration.progress import ProgressChannel, ProgressEvent


class RichDisplayManager:
    """Renders progress events from a ``ProgressChannel`` in a live panel."""

    def __init__(self, book_title: str = "N/A") -> None:
        self.live: Optional[Live] = None
        self.group: Optional[Group] = None
        self.status_text_book_title: Text = Text(f"Book: {book_title}")
        self.status_text_session: Text = Text("Session: N/A")
        self.status_text_current_chapter: Text = Text("Current Chapter: N/A")
        self.status_text_current_step: Text = Text("Current Step: Initializing...")
        self.status_text_last_chapter: Text = Text("Last Chapter: N/A")
        self.status_text_tokens_generated: Text = Text("Tokens (this run): 0")
        self.status_text_elapsed_time: Text = Text("Elapsed Time: 0s")
        self.run_start_time: float = 0.0
        self.events_seen: int = 0

        if settings.ENABLE_RICH_PROGRESS:
            self.group = Group(
                self.status_text_book_title,
                self.status_text_session,
                self.status_text_current_chapter,
                self.status_text_current_step,
                self.status_text_last_chapter,
                self.status_text_tokens_generated,
                self.status_text_elapsed_time,
            )
            self.live = Live(
                Panel(
                    self.group,
                    title="Book Generation Progress",
                    border_style="blue",
                    expand=True,
                ),
                refresh_per_second=4,
                transient=False,
                redirect_stdout=False,
                redirect_stderr=False,
            )

    def start(self) -> None:
        self.run_start_time = time.time()
        if self.live:
            self.live.start()

    def stop(self) -> None:
        if self.live and self.live.is_started:
            self.live.stop()

    async def consume(self, channel: ProgressChannel) -> None:
        """Render every event until the channel is closed and drained."""
        self.start()
        try:
            async for event in channel:
                self.update(event)
        finally:
            self.stop()

    def update(self, event: ProgressEvent) -> None:
        self.events_seen += 1
        if isinstance(event, PipelineProgress):
            step = (
                f"{event.step_name} ({event.step_index + 1}/{event.total_steps}, "
                f"{event.overall_percentage:.0f}%)"
            )
            if event.iteration:
                step += f" revision pass {event.iteration}"
            self.status_text_current_chapter.plain = (
                f"Current Chapter: {event.chapter_number}"
            )
            self.status_text_current_step.plain = f"Current Step: {step}"
        elif isinstance(event, GenerationProgress):
            self.status_text_session.plain = (
                f"Session: {event.session_id} [{event.status.value}] "
                f"{event.chapters_completed}/{event.total_chapters} chapters"
            )
            if event.current_chapter is not None:
                self.status_text_current_chapter.plain = (
                    f"Current Chapter: {event.current_chapter}"
                )
            self.status_text_tokens_generated.plain = (
                f"Tokens (this run): {event.total_tokens:,} "
                f"(~${event.estimated_cost:.4f})"
            )
        elif isinstance(event, ChapterGenerationProgress):
            detail = f"{event.word_count:,} words"
            if event.quality_score is not None:
                detail += f", quality {event.quality_score:.0f}"
            if event.requires_manual_review:
                detail += ", needs review"
            if event.error:
                detail = f"error: {event.error}"
            self.status_text_last_chapter.plain = (
                f"Last Chapter: {event.chapter_number} [{event.status.value}] {detail}"
            )
        elapsed_seconds = time.time() - self.run_start_time if self.run_start_time else 0
        self.status_text_elapsed_time.plain = (
            f"Elapsed Time: {time.strftime('%H:%M:%S', time.gmtime(elapsed_seconds))}"
        )


async def watch(channel: ProgressChannel, book_title: str = "N/A") -> RichDisplayManager:
    """Convenience wrapper that renders ``channel`` until it closes."""
    display = RichDisplayManager(book_title)
    await display.consume(channel)
    return display


__all__ = ["RichDisplayManager", "watch"]
