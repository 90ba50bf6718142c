# core/cancellation.py
"""Cooperative cancellation shared by the orchestrator, pipeline and steps."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from core.errors import GenerationCancelled

T = TypeVar("T")


class CancellationSignal:
    """One-shot cancellation flag that suspension points can observe or await."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Generation cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self, chapter_number: int | None = None) -> None:
        if self._event.is_set():
            raise GenerationCancelled(
                self.reason or "Generation cancelled", chapter_number=chapter_number
            )

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T], chapter_number: int | None = None) -> T:
        """Await ``awaitable`` unless the signal fires first.

        When cancellation wins the race the in-flight task is cancelled rather
        than left to finish in the background.
        """
        self.raise_if_cancelled(chapter_number)
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        raise GenerationCancelled(
            self.reason or "Generation cancelled", chapter_number=chapter_number
        )
