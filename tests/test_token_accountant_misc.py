import logging

from core.usage import TokenUsage
from orchestration.token_accountant import Stage, TokenAccountant


def test_token_accountant_add_output_tokens(caplog):
    caplog.set_level(logging.INFO)
    tracker = TokenAccountant()
    recorded = tracker.record_usage(Stage.DRAFTING.value, {"output_tokens": 5})
    assert recorded == TokenUsage(output_tokens=5)
    assert tracker.total.total_tokens == 5
    assert any("tokens from" in record.message.lower() for record in caplog.records)


def test_token_accountant_add_invalid_usage(caplog):
    caplog.set_level(logging.WARNING)
    tracker = TokenAccountant()
    assert tracker.record_usage(Stage.DRAFTING.value, {"other": 1}) is None
    assert tracker.total.total_tokens == 0
    assert any("missing" in record.message.lower() for record in caplog.records)


def test_token_accountant_ignores_none():
    tracker = TokenAccountant()
    assert tracker.record_usage(Stage.REVISION, None) is None
    assert tracker.get_stage_total(Stage.REVISION) == 0


def test_token_accountant_accepts_tokenusage(caplog):
    caplog.set_level(logging.INFO)
    tracker = TokenAccountant()
    usage = TokenUsage(input_tokens=1, output_tokens=4, estimated_cost=0.5)
    tracker.record_usage(Stage.SUMMARIZATION, usage)
    assert tracker.total.estimated_cost == 0.5
    assert tracker.get_stage_total(Stage.SUMMARIZATION) == 5
