import pytest
from config import settings
from core.errors import BookGenError
from main import build_parser
from orchestration import collaborators
from orchestration.collaborators import collaborators_from_settings, instantiate


def test_instantiate_loads_dotted_class():
    instance = instantiate("fakes.FakeProvider")
    assert type(instance).__name__ == "FakeProvider"
    assert instantiate(None) is None


def test_instantiate_bad_path():
    with pytest.raises(BookGenError):
        instantiate("fakes.DoesNotExist")
    with pytest.raises(BookGenError):
        instantiate("nodots")


def test_collaborators_from_settings(monkeypatch):
    monkeypatch.setattr(settings, "MODEL_PROVIDER", "fakes.FakeProvider")
    monkeypatch.setattr(settings, "QUALITY_EVALUATOR", "fakes.ScriptedEvaluator")
    monkeypatch.setattr(settings, "CONTEXT_BUILDER", None)
    monkeypatch.setattr(settings, "CONTINUITY_CHECKER", None)
    found = collaborators_from_settings()
    assert type(found["provider"]).__name__ == "FakeProvider"
    assert type(found["quality_evaluator"]).__name__ == "ScriptedEvaluator"
    assert found["context_builder"] is None


def test_missing_provider_is_an_error(monkeypatch):
    monkeypatch.setattr(collaborators.settings, "MODEL_PROVIDER", None)
    with pytest.raises(BookGenError):
        collaborators_from_settings()


def test_cli_parser():
    args = build_parser().parse_args(
        ["revise", "book.json", "abc", "3", "Make", "it", "darker"]
    )
    assert args.command == "revise"
    assert args.chapter == 3
    assert args.instructions == ["Make", "it", "darker"]

    args = build_parser().parse_args(["generate", "book.json", "--start", "2"])
    assert args.start == 2
    assert args.require_approval is False
