from chapter_generation.style_analyzer import StyleAnalyzer

from models import ChapterBlueprint, IssueSeverity


def test_style_analyzer_flags_repeated_phrases():
    text = "hello world again. " * 4
    analyzer = StyleAnalyzer(n=2, threshold=3)
    report = analyzer.analyze(text, ChapterBlueprint(chapter_number=1))
    assert report.issues
    assert report.issues[0].category == "repetition"
    assert report.issues[0].severity == IssueSeverity.MINOR
    assert report.repeated_phrases["hello world"] == 4
    assert report.passed
    # one deduplicated instruction for all repeated sentences
    assert len(report.revision_instructions) == 1


def test_style_analyzer_must_avoid_is_major():
    chapter = ChapterBlueprint(chapter_number=1, must_avoid=("dragon",))
    report = StyleAnalyzer().analyze("A Dragon slept under the bridge.", chapter)
    assert not report.passed
    assert report.issues_at_or_above("major")[0].category == "must_avoid"


def test_style_analyzer_length_deviation():
    chapter = ChapterBlueprint(chapter_number=1, target_word_count=100)
    report = StyleAnalyzer(length_tolerance=0.2).analyze("Too short.", chapter)
    assert report.length_deviation == -0.98
    assert [i.category for i in report.issues] == ["length"]
    assert report.passed


def test_style_analyzer_empty_text():
    report = StyleAnalyzer().analyze("   ", ChapterBlueprint(chapter_number=1))
    assert report.passed and report.issues == []
