# tests/orchestration/test_token_accountant.py

from core.usage import TokenUsage
from orchestration.token_accountant import Stage, TokenAccountant


def test_record_usage_with_tokenusage():
    tracker = TokenAccountant()
    usage = TokenUsage(input_tokens=1, output_tokens=4)
    tracker.record_usage(Stage.OUTLINE, usage)
    assert tracker.get_stage_total(Stage.OUTLINE) == 5
    assert tracker.total.total_tokens == 5


def test_record_usage_with_dict_and_accumulation():
    tracker = TokenAccountant()
    tracker.record_usage(Stage.DRAFTING, {"output_tokens": 3})
    tracker.record_usage(Stage.REVISION, TokenUsage(input_tokens=2))
    tracker.record_usage(Stage.DRAFTING, {"output_tokens": 7, "input_tokens": 1})

    assert tracker.get_stage_total(Stage.DRAFTING) == 11
    assert tracker.get_stage_total("Revision") == 2
    assert tracker.total.input_tokens == 3
    assert tracker.total.output_tokens == 10


def test_stage_breakdown_keeps_first_recorded_order():
    tracker = TokenAccountant()
    tracker.record_usage(Stage.OUTLINE, {"input_tokens": 2, "output_tokens": 1})
    tracker.record_usage(Stage.DRAFTING, {"output_tokens": 10})
    tracker.record_usage(Stage.OUTLINE, {"output_tokens": 4})
    assert tracker.stage_breakdown() == {"Outline": 7, "Drafting": 10}
