# orchestration/progress.py
"""Bounded, non-blocking progress channel between the core and its caller."""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Union

import structlog
from config import settings

from models import ChapterGenerationProgress, GenerationProgress, PipelineProgress

logger = structlog.get_logger(__name__)

ProgressEvent = Union[PipelineProgress, GenerationProgress, ChapterGenerationProgress]


class ProgressChannel:
    """Single-consumer progress stream.

    ``publish`` never blocks: when the buffer is full the oldest step-level
    event is dropped (or the oldest event of any kind if none is buffered), so
    a slow reader only loses progress detail and never stalls generation.
    ``close`` ends iteration once the buffer is drained.
    """

    def __init__(self, capacity: int | None = None) -> None:
        self.capacity = max(1, capacity or settings.PROGRESS_CHANNEL_CAPACITY)
        self._items: deque[ProgressEvent] = deque()
        self._ready = asyncio.Event()
        self._closed = False
        self.published = 0
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: ProgressEvent) -> bool:
        """Buffer ``event``; returns False if the channel is closed."""
        if self._closed:
            return False
        if len(self._items) >= self.capacity:
            self._drop_one()
        self._items.append(event)
        self.published += 1
        self._ready.set()
        return True

    def _drop_one(self) -> None:
        for index, item in enumerate(self._items):
            if isinstance(item, PipelineProgress):
                del self._items[index]
                break
        else:
            self._items.popleft()
        self.dropped += 1
        if self.dropped == 1 or self.dropped % 100 == 0:
            logger.debug("Progress channel full; dropping events", dropped=self.dropped)

    def close(self) -> None:
        self._closed = True
        self._ready.set()

    def drain(self) -> list[ProgressEvent]:
        """Return and remove everything currently buffered."""
        items = list(self._items)
        self._items.clear()
        if not self._closed:
            self._ready.clear()
        return items

    def __aiter__(self) -> ProgressChannel:
        return self

    async def __anext__(self) -> ProgressEvent:
        while True:
            if self._items:
                return self._items.popleft()
            if self._closed:
                raise StopAsyncIteration
            self._ready.clear()
            await self._ready.wait()
