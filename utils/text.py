# utils/text.py
"""Plain-text metrics and segmentation helpers."""

from __future__ import annotations

import re
from collections import Counter

_WORD_RE = re.compile(r"\b[\w'-]+\b")
_DIALOGUE_RE = re.compile(r"[\"“]([^\"”]*)[\"”]")
_SENTENCE_RE = re.compile(r"([^\.!?]+(?:[\.!?]+|$))")


def count_words(text: str | None) -> int:
    if not text:
        return 0
    return len(_WORD_RE.findall(text))


def split_paragraphs(text: str) -> list[str]:
    return [p.strip() for p in re.split(r"\n\s*\n", text) if p.strip()]


def get_sentences(text: str) -> list[tuple[str, int, int]]:
    """Segment ``text`` into sentences with character offsets."""
    segments: list[tuple[str, int, int]] = []
    if not text.strip():
        return segments
    for match in _SENTENCE_RE.finditer(text):
        sentence = match.group(1).strip()
        if sentence:
            segments.append((sentence, match.start(), match.end()))
    if not segments:
        segments.append((text.strip(), 0, len(text)))
    return segments


def dialogue_percentage(text: str) -> float:
    """Share of words (0-100) that appear inside quotation marks."""
    total = count_words(text)
    if total == 0:
        return 0.0
    spoken = sum(count_words(m.group(1)) for m in _DIALOGUE_RE.finditer(text))
    return round(100.0 * spoken / total, 2)


def text_metrics(text: str) -> dict[str, float]:
    return {
        "word_count": count_words(text),
        "character_count": len(text),
        "paragraph_count": len(split_paragraphs(text)),
        "dialogue_percentage": dialogue_percentage(text),
    }


def count_ngrams(text: str, n: int) -> Counter[str]:
    """Count whitespace-token n-grams, case-folded."""
    tokens = text.lower().split()
    counts: Counter[str] = Counter()
    for i in range(len(tokens) - n + 1):
        counts[" ".join(tokens[i : i + n])] += 1
    return counts
