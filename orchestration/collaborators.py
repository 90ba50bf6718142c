# orchestration/collaborators.py
"""Load caller-supplied collaborators named in settings."""

from __future__ import annotations

import importlib
from typing import Any

import structlog
from config import settings
from core.errors import BookGenError

logger = structlog.get_logger(__name__)


def load_object(dotted: str) -> Any:
    """Import ``package.module.Name`` and return ``Name``."""
    module_name, _, attr = dotted.rpartition(".")
    if not module_name:
        raise BookGenError(f"'{dotted}' is not a dotted import path")
    try:
        module = importlib.import_module(module_name)
        return getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise BookGenError(f"Cannot load '{dotted}': {e}") from e


def instantiate(dotted: str | None) -> Any | None:
    """Return an instance of the class at ``dotted``, or None if unset."""
    if not dotted:
        return None
    factory = load_object(dotted)
    instance = factory() if callable(factory) else factory
    logger.info("Loaded collaborator", path=dotted, type=type(instance).__name__)
    return instance


def collaborators_from_settings() -> dict[str, Any]:
    """Instantiate the provider, builder, evaluator and checker configured in settings."""
    provider = instantiate(settings.MODEL_PROVIDER)
    if provider is None:
        raise BookGenError(
            "No model provider configured; set MODEL_PROVIDER to a dotted class path"
        )
    return {
        "provider": provider,
        "context_builder": instantiate(settings.CONTEXT_BUILDER),
        "quality_evaluator": instantiate(settings.QUALITY_EVALUATOR),
        "continuity_checker": instantiate(settings.CONTINUITY_CHECKER),
    }
