# utils/__init__.py
"""General utility functions for the book generation core."""

from __future__ import annotations

from .logging import setup_logging
from .text import (
    count_ngrams,
    count_words,
    dialogue_percentage,
    get_sentences,
    split_paragraphs,
    text_metrics,
)

__all__ = [
    "setup_logging",
    "count_ngrams",
    "count_words",
    "dialogue_percentage",
    "get_sentences",
    "split_paragraphs",
    "text_metrics",
]
