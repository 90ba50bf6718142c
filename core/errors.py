# core/errors.py
"""Error taxonomy for chapter and book generation."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:  # pragma: no cover - type hint import
    from core.usage import TokenUsage

_TRANSIENT_STATUS_CODES = {408, 409, 425, 429, 500, 502, 503, 504, 529}


class BookGenError(Exception):
    """Base class for all generation core errors."""


class ProviderError(BookGenError):
    """Failure reported by the model-generation provider."""


class TransientProviderError(ProviderError):
    """Provider failure that may succeed when retried."""


class RateLimitError(TransientProviderError):
    pass


class ProviderTimeoutError(TransientProviderError):
    pass


class PermanentProviderError(ProviderError):
    """Provider failure that must never be retried."""


class InvalidRequestError(PermanentProviderError):
    pass


class AuthenticationError(PermanentProviderError):
    pass


class MissingStepInputError(BookGenError):
    """A step ran without an output its predecessors should have produced."""

    def __init__(self, step: str, missing: str) -> None:
        super().__init__(f"Step '{step}' requires '{missing}' which is missing")
        self.step = step
        self.missing = missing


class StepExecutionError(BookGenError):
    """A single step attempt failed."""

    def __init__(self, step: str, cause: str) -> None:
        super().__init__(f"Step '{step}' failed: {cause}")
        self.step = step
        self.cause = cause


class PipelineStepError(BookGenError):
    """A required step exhausted its retries and aborted the chapter pipeline."""

    def __init__(
        self,
        step: str,
        cause: BaseException | str,
        step_results: list[Any] | None = None,
        token_usage: TokenUsage | None = None,
    ) -> None:
        super().__init__(f"Pipeline failed at step '{step}': {cause}")
        self.step = step
        self.cause = cause
        self.step_results = step_results or []
        self.token_usage = token_usage


class ChapterGenerationError(BookGenError):
    """Chapter-level failure reported by the orchestrator."""

    def __init__(self, chapter_number: int, cause: BaseException | str) -> None:
        super().__init__(f"Chapter {chapter_number} generation failed: {cause}")
        self.chapter_number = chapter_number
        self.cause = cause


class GenerationCancelled(BookGenError):
    """Raised when generation is cancelled; reported distinctly from failure."""

    def __init__(
        self, message: str = "Generation cancelled", chapter_number: int | None = None
    ) -> None:
        super().__init__(message)
        self.chapter_number = chapter_number


class SessionStateError(BookGenError):
    """A session control operation was called in the wrong state."""


class SessionNotFoundError(BookGenError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"No generation session with id '{session_id}'")
        self.session_id = session_id


class BudgetConfigurationError(BookGenError):
    """Token budget cannot be allocated from the configured values."""


class BlueprintValidationError(BookGenError):
    """Blueprint or generation options are not usable for generation."""


def is_transient_error(exc: BaseException) -> bool:
    """Return True when ``exc`` is a provider failure worth retrying."""
    if isinstance(exc, TransientProviderError):
        return True
    if isinstance(exc, (PermanentProviderError, MissingStepInputError)):
        return False
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in _TRANSIENT_STATUS_CODES
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(exc, (ConnectionError, StepExecutionError)):
        return True
    return False
