# core/llm_interface.py
"""
Contract between the generation core and the model-generation provider.
Includes token counting helpers and a cancellable, optionally streaming,
call wrapper used by the pipeline steps.
"""

from __future__ import annotations

import functools
import math
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import structlog
import tiktoken
from pydantic import BaseModel, Field

from config import settings
from core.errors import StepExecutionError
from core.usage import TokenUsage

if TYPE_CHECKING:  # pragma: no cover - type hint import
    from core.cancellation import CancellationSignal
    from core.interfaces import ModelProvider

logger = structlog.get_logger(__name__)


class GenerationRequest(BaseModel):
    """Prompt and sampling parameters for a single provider call."""

    prompt: str
    model: str
    temperature: float = 0.7
    max_output_tokens: int = 4096
    purpose: str = "generation"


class GenerationResponse(BaseModel):
    """Generated text and its accounting."""

    text: str
    usage: TokenUsage = Field(default_factory=TokenUsage)
    model: str | None = None


class StreamChunk(BaseModel):
    """Incremental piece of a streamed response.

    ``usage`` is only populated on the final chunk by providers that report it.
    """

    text: str = ""
    usage: TokenUsage | None = None


ChunkCallback = Callable[[str, str], Awaitable[None]]


@functools.lru_cache(maxsize=settings.TOKENIZER_CACHE_SIZE)
def _get_tokenizer(model_name: str) -> tiktoken.Encoding | None:
    """
    Gets a tiktoken encoder for the given model name, with caching.
    Tries model-specific encoding, then a default, then returns None.
    """
    try:
        try:
            return tiktoken.encoding_for_model(model_name)
        except KeyError:
            logger.debug(
                "No direct tiktoken encoding for model; using default.",
                model=model_name,
                encoding=settings.TIKTOKEN_DEFAULT_ENCODING,
            )
            return tiktoken.get_encoding(settings.TIKTOKEN_DEFAULT_ENCODING)
    except Exception as e:
        logger.error(
            "Tokenizer unavailable; token counts fall back to a character heuristic.",
            model=model_name,
            error=str(e),
        )
        return None


def count_tokens(text: str, model_name: str) -> int:
    """Counts the number of tokens in a string for a given model."""
    if not text:
        return 0

    encoder = _get_tokenizer(model_name)
    if encoder:
        return len(encoder.encode(text, allowed_special="all"))
    return math.ceil(len(text) / settings.FALLBACK_CHARS_PER_TOKEN)


def truncate_text_by_tokens(
    text: str,
    model_name: str,
    max_tokens: int,
    truncation_marker: str = "\n... (truncated)",
) -> str:
    """
    Truncates text to a maximum number of tokens for a given model.
    Adds a truncation marker if truncation occurs.
    """
    if not text:
        return ""
    if max_tokens <= 0:
        return ""

    encoder = _get_tokenizer(model_name)

    if not encoder:
        max_chars = int(max_tokens * settings.FALLBACK_CHARS_PER_TOKEN)
        if len(text) > max_chars:
            return text[: max(max_chars - len(truncation_marker), 0)] + truncation_marker
        return text

    tokens = encoder.encode(text, allowed_special="all")
    if len(tokens) <= max_tokens:
        return text

    marker_tokens_len = len(encoder.encode(truncation_marker, allowed_special="all"))
    content_tokens_to_keep = max_tokens - marker_tokens_len
    effective_marker = truncation_marker
    if content_tokens_to_keep <= 0:
        content_tokens_to_keep = max_tokens
        effective_marker = ""

    return encoder.decode(tokens[:content_tokens_to_keep]) + effective_marker


async def call_model(
    provider: ModelProvider,
    request: GenerationRequest,
    signal: CancellationSignal,
    *,
    chapter_number: int | None = None,
    on_chunk: ChunkCallback | None = None,
) -> GenerationResponse:
    """Call the provider, streaming when possible, honouring cancellation.

    Streaming is used when the provider supports it and a chunk callback was
    given; cancellation is checked once per chunk and an in-flight call is
    cancelled as soon as the signal fires.
    """
    if on_chunk is not None and getattr(provider, "supports_streaming", False):
        return await signal.guard(
            _consume_stream(provider, request, signal, chapter_number, on_chunk),
            chapter_number,
        )

    response = await signal.guard(provider.generate(request), chapter_number)
    if not response.text or not response.text.strip():
        raise StepExecutionError(request.purpose, "provider returned empty text")
    return response


async def _consume_stream(
    provider: ModelProvider,
    request: GenerationRequest,
    signal: CancellationSignal,
    chapter_number: int | None,
    on_chunk: ChunkCallback,
) -> GenerationResponse:
    parts: list[str] = []
    usage = TokenUsage()
    async for chunk in provider.stream(request):
        signal.raise_if_cancelled(chapter_number)
        if chunk.usage is not None:
            usage.add(chunk.usage)
        if chunk.text:
            parts.append(chunk.text)
            await on_chunk(chunk.text, "".join(parts))

    text = "".join(parts)
    if not text.strip():
        raise StepExecutionError(request.purpose, "provider streamed empty text")
    if not usage:
        usage.input_tokens = count_tokens(request.prompt, request.model)
        usage.output_tokens = count_tokens(text, request.model)
    return GenerationResponse(text=text, usage=usage, model=request.model)
