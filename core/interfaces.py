# core/interfaces.py
"""Base interfaces for the collaborators the generation core consumes."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - type hint import
    from chapter_generation.context_models import (
        ChapterGenerationContext,
        ContextBuildOptions,
    )
    from core.llm_interface import GenerationRequest, GenerationResponse, StreamChunk
    from models import (
        BookBlueprint,
        ChapterBlueprint,
        CharacterStateSnapshot,
        ContinuityReport,
        QualityReport,
    )


class ModelProvider:
    """Generates text for a prompt.

    Implementations raise subclasses of ``TransientProviderError`` for failures
    that may be retried and ``PermanentProviderError`` for everything else.
    """

    supports_streaming: bool = False

    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        raise NotImplementedError

    def stream(self, request: GenerationRequest) -> AsyncIterator[StreamChunk]:
        """Yield the response incrementally. Only used when ``supports_streaming``."""
        raise NotImplementedError


class ContextBuilder:
    """Assembles the prompt material for one chapter."""

    async def build(
        self,
        book: BookBlueprint,
        chapter: ChapterBlueprint,
        context: ChapterGenerationContext,
        options: ContextBuildOptions,
    ) -> ChapterGenerationContext:
        """Return ``context`` with its section strings filled in.

        Section sizes should respect ``context.budget``; the pipeline truncates
        anything that overflows.
        """
        raise NotImplementedError


class QualityEvaluator:
    async def evaluate(
        self,
        content: str,
        chapter: ChapterBlueprint,
        context: ChapterGenerationContext,
    ) -> QualityReport:
        raise NotImplementedError


class ContinuityChecker:
    async def check(
        self,
        content: str,
        chapter: ChapterBlueprint,
        context: ChapterGenerationContext,
    ) -> ContinuityReport:
        raise NotImplementedError

    async def extract_character_states(
        self, content: str, chapter: ChapterBlueprint
    ) -> list[CharacterStateSnapshot]:
        """Return end-of-chapter character snapshots; empty when unsupported."""
        return []
