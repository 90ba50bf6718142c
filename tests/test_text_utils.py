from utils.text import (
    count_ngrams,
    count_words,
    dialogue_percentage,
    get_sentences,
    text_metrics,
)


def test_count_words_handles_empty():
    assert count_words(None) == 0
    assert count_words("") == 0
    assert count_words("It's a well-known fact.") == 4


def test_get_sentences_offsets():
    text = "First one. Second one! Third?"
    sentences = get_sentences(text)
    assert [s for s, _, _ in sentences] == ["First one.", "Second one!", "Third?"]
    assert text[sentences[1][1] : sentences[1][2]].strip() == "Second one!"


def test_dialogue_percentage():
    assert dialogue_percentage('"Go home," she said.') == 50.0
    assert dialogue_percentage("") == 0.0


def test_text_metrics_and_ngrams():
    metrics = text_metrics("One two.\n\nThree four.")
    assert metrics["paragraph_count"] == 2
    assert metrics["word_count"] == 4
    assert count_ngrams("a b a b", 2)["a b"] == 2
