from core.usage import TokenUsage
from orchestration.statistics import compute_statistics

from models import (
    AttemptKind,
    AttemptOutcome,
    ChapterAttempt,
    ChapterRecord,
    ChapterStatus,
    GeneratedChapter,
    GenerationSession,
)


def _generated(number: int, words: int, score: float | None = 80.0) -> GeneratedChapter:
    return GeneratedChapter(
        chapter_number=number,
        title=f"Chapter {number}",
        content="text",
        word_count=words,
        quality_score=score,
    )


def test_statistics_for_empty_session():
    stats = compute_statistics(GenerationSession(blueprint_id="b"))
    assert stats.total_chapters == 0
    assert stats.chapters_completed == 0
    assert stats.average_words_per_chapter == 0.0
    assert stats.cost_per_word == 0.0
    assert stats.words_per_minute == 0.0
    assert stats.average_quality_score is None


def test_statistics_aggregate_attempts():
    session = GenerationSession(
        blueprint_id="b",
        chapters=[
            ChapterRecord(
                chapter_number=1,
                status=ChapterStatus.APPROVED,
                chapter=_generated(1, 2000, 90.0),
                attempts=[
                    ChapterAttempt(
                        kind=AttemptKind.GENERATE,
                        outcome=AttemptOutcome.FAILED,
                        duration_seconds=10.0,
                        token_usage=TokenUsage(input_tokens=100, estimated_cost=0.01),
                    ),
                    ChapterAttempt(
                        kind=AttemptKind.GENERATE,
                        outcome=AttemptOutcome.COMPLETED,
                        duration_seconds=50.0,
                        token_usage=TokenUsage(
                            input_tokens=900, output_tokens=3000, estimated_cost=0.09
                        ),
                        revision_iterations=1,
                    ),
                ],
            ),
            ChapterRecord(
                chapter_number=2,
                status=ChapterStatus.AWAITING_APPROVAL,
                chapter=_generated(2, 1000, 70.0),
                attempts=[
                    ChapterAttempt(
                        kind=AttemptKind.GENERATE,
                        outcome=AttemptOutcome.FLAGGED,
                        duration_seconds=60.0,
                    )
                ],
            ),
            ChapterRecord(chapter_number=3, status=ChapterStatus.FAILED),
            ChapterRecord(chapter_number=4),
        ],
    )
    snapshot = session.model_dump()

    stats = compute_statistics(session)

    assert session.model_dump() == snapshot
    assert stats.total_chapters == 4
    assert stats.chapters_completed == 2
    assert stats.chapters_failed == 1
    assert stats.chapters_pending == 1
    assert stats.total_words == 3000
    assert stats.total_tokens == 4000
    assert stats.total_attempts == 3
    assert stats.total_revision_iterations == 1
    assert stats.average_quality_score == 80.0
    # chapter 2 has no usage cost, so its cost falls back to a per-word estimate
    assert stats.chapters[1].cost == 0.01
    assert stats.total_cost == 0.11
    assert stats.estimated_total_cost == 0.22
    assert stats.words_per_minute == 1500.0
    assert compute_statistics(session) == stats
