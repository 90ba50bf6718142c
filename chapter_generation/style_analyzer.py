# chapter_generation/style_analyzer.py
"""Local style checks run on assembled chapter text."""

from __future__ import annotations

import structlog
from config import settings

from models import ChapterBlueprint, Issue, IssueSeverity, StyleReport
from utils.text import count_ngrams, count_words, get_sentences

logger = structlog.get_logger(__name__)


class StyleAnalyzer:
    """Detect repeated n-gram phrases, banned phrases and length drift."""

    def __init__(
        self,
        n: int | None = None,
        threshold: int | None = None,
        length_tolerance: float | None = None,
    ) -> None:
        self.n = n if n is not None else settings.STYLE_NGRAM_SIZE
        self.threshold = (
            threshold if threshold is not None else settings.STYLE_REPETITION_THRESHOLD
        )
        self.length_tolerance = (
            length_tolerance
            if length_tolerance is not None
            else settings.STYLE_LENGTH_TOLERANCE
        )

    def analyze(self, text: str, chapter: ChapterBlueprint) -> StyleReport:
        issues: list[Issue] = []
        if not text.strip():
            return StyleReport(passed=True)

        overused = {
            phrase: count
            for phrase, count in count_ngrams(text, self.n).items()
            if count >= self.threshold
        }
        if overused:
            issues.extend(self._repetition_issues(text, overused))

        lowered = text.lower()
        for phrase in chapter.must_avoid:
            if phrase and phrase.lower() in lowered:
                issues.append(
                    Issue(
                        category="must_avoid",
                        description=f'Chapter contains the avoided element "{phrase}".',
                        severity=IssueSeverity.MAJOR,
                        suggested_fix=f'Remove or rewrite passages involving "{phrase}".',
                    )
                )

        deviation = self._length_deviation(text, chapter)
        if deviation is not None and abs(deviation) > self.length_tolerance:
            direction = "longer" if deviation > 0 else "shorter"
            issues.append(
                Issue(
                    category="length",
                    description=(
                        f"Chapter is {abs(deviation):.0%} {direction} than its "
                        f"target of {chapter.target_word_count} words."
                    ),
                    severity=IssueSeverity.MINOR,
                    suggested_fix=(
                        "Tighten the prose." if deviation > 0 else "Develop scenes further."
                    ),
                )
            )

        if issues:
            logger.info(
                "Style analysis found issues",
                chapter=chapter.chapter_number,
                issues=len(issues),
            )
        return StyleReport(
            passed=not any(i.severity.at_least(IssueSeverity.MAJOR) for i in issues),
            issues=issues,
            revision_instructions=list(
                dict.fromkeys(i.suggested_fix for i in issues if i.suggested_fix)
            ),
            repeated_phrases=overused,
            length_deviation=deviation,
        )

    def _repetition_issues(self, text: str, overused: dict[str, int]) -> list[Issue]:
        issues: list[Issue] = []
        for sentence, _start, _end in get_sentences(text):
            lowered = sentence.lower()
            found = [f'"{p}"' for p in overused if p in lowered]
            if found:
                issues.append(
                    Issue(
                        category="repetition",
                        description=f"Sentence contains overused phrases: {', '.join(found)}.",
                        severity=IssueSeverity.MINOR,
                        suggested_fix=(
                            "Rephrase this sentence to avoid the repeated phrases."
                        ),
                        quote=sentence,
                    )
                )
        return issues

    @staticmethod
    def _length_deviation(text: str, chapter: ChapterBlueprint) -> float | None:
        if not chapter.target_word_count:
            return None
        return (count_words(text) - chapter.target_word_count) / chapter.target_word_count
