"""Derive generation statistics from a session's recorded history."""

from __future__ import annotations

from config import settings
from core.usage import TokenUsage

from models import (
    AttemptOutcome,
    ChapterRecord,
    ChapterStatistics,
    ChapterStatus,
    GenerationSession,
    GenerationStatistics,
)

from .session_machine import GENERATED_CHAPTER_STATUSES


def _safe_div(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator else 0.0


def _chapter_statistics(record: ChapterRecord) -> ChapterStatistics:
    usage = TokenUsage()
    seconds = 0.0
    for attempt in record.attempts:
        usage.add(attempt.token_usage)
        seconds += attempt.duration_seconds

    chapter = record.chapter
    word_count = chapter.word_count if chapter is not None else 0
    cost = usage.estimated_cost
    if not cost and word_count:
        cost = word_count / 1000 * settings.FALLBACK_COST_PER_1000_WORDS

    latest = next(
        (a for a in reversed(record.attempts) if a.outcome != AttemptOutcome.FAILED),
        None,
    )
    return ChapterStatistics(
        chapter_number=record.chapter_number,
        status=record.status,
        word_count=word_count,
        quality_score=chapter.quality_score if chapter is not None else None,
        generation_seconds=round(seconds, 3),
        total_tokens=usage.total_tokens,
        cost=round(cost, 6),
        attempt_count=len(record.attempts),
        retry_count=sum(a.retry_count for a in record.attempts),
        issues_found=len(latest.issues) if latest is not None else 0,
        requires_manual_review=bool(chapter and chapter.requires_manual_review),
    )


def compute_statistics(
    session: GenerationSession, total_chapters: int | None = None
) -> GenerationStatistics:
    """Pure function of the session snapshot; safe to call at any time.

    ``total_chapters`` overrides the chapter count used to extrapolate the
    total cost (defaults to the number of chapters in the session).
    """
    per_chapter = [_chapter_statistics(r) for r in session.chapters]
    completed_numbers = {
        r.chapter_number
        for r in session.chapters
        if r.chapter is not None and r.status in GENERATED_CHAPTER_STATUSES
    }
    completed = [c for c in per_chapter if c.chapter_number in completed_numbers]

    usage = TokenUsage()
    for record in session.chapters:
        for attempt in record.attempts:
            usage.add(attempt.token_usage)

    total_words = sum(c.word_count for c in completed)
    total_cost = sum(c.cost for c in per_chapter)
    total_seconds = sum(c.generation_seconds for c in per_chapter)
    scores = [c.quality_score for c in completed if c.quality_score is not None]
    book_chapters = total_chapters if total_chapters is not None else session.total_chapters

    return GenerationStatistics(
        session_id=session.id,
        total_chapters=book_chapters,
        chapters_completed=len(completed),
        chapters_failed=sum(1 for c in per_chapter if c.status == ChapterStatus.FAILED),
        chapters_pending=sum(1 for c in per_chapter if c.status == ChapterStatus.PENDING),
        chapters_requiring_review=sum(1 for c in completed if c.requires_manual_review),
        total_words=total_words,
        average_words_per_chapter=round(_safe_div(total_words, len(completed)), 2),
        total_input_tokens=usage.input_tokens,
        total_output_tokens=usage.output_tokens,
        total_tokens=usage.total_tokens,
        total_cost=round(total_cost, 6),
        cost_per_word=round(_safe_div(total_cost, total_words), 8),
        estimated_total_cost=round(
            _safe_div(total_cost, len(completed)) * book_chapters, 6
        ),
        total_generation_seconds=round(total_seconds, 3),
        average_seconds_per_chapter=round(_safe_div(total_seconds, len(completed)), 3),
        words_per_minute=round(_safe_div(total_words, total_seconds / 60), 2),
        average_quality_score=(
            round(sum(scores) / len(scores), 2) if scores else None
        ),
        total_attempts=sum(c.attempt_count for c in per_chapter),
        total_retries=sum(c.retry_count for c in per_chapter),
        total_revision_iterations=sum(
            a.revision_iterations for r in session.chapters for a in r.attempts
        ),
        total_issues=sum(c.issues_found for c in per_chapter),
        chapters=per_chapter,
    )
