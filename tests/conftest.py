# tests/conftest.py
import os
import sys

# Ensure repository root is on PYTHONPATH for tests
repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if repo_root not in sys.path:
    sys.path.insert(0, repo_root)

os.environ.setdefault("ENABLE_RICH_PROGRESS", "false")
os.environ.setdefault("LOG_FILE", "")

import pytest  # noqa: E402
from chapter_generation import (  # noqa: E402
    ChapterGenerationContext,
    ChapterGenerationPipeline,
    PipelineServices,
    TokenBudgetAllocator,
)
from fakes import (  # noqa: E402
    FakeProvider,
    RecordingChecker,
    ScriptedEvaluator,
    make_book,
)

from models import BookBlueprint  # noqa: E402


@pytest.fixture
def book() -> BookBlueprint:
    return make_book()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def evaluator() -> ScriptedEvaluator:
    return ScriptedEvaluator()


@pytest.fixture
def checker() -> RecordingChecker:
    return RecordingChecker()


@pytest.fixture
def services(provider, evaluator, checker) -> PipelineServices:
    return PipelineServices(
        provider=provider,
        quality_evaluator=evaluator,
        continuity_checker=checker,
    )


@pytest.fixture
def pipeline(services) -> ChapterGenerationPipeline:
    return ChapterGenerationPipeline(services, retry_base_delay=0)


@pytest.fixture
def make_context():
    allocator = TokenBudgetAllocator()

    def _make(chapter_number: int = 1, total: int = 100_000) -> ChapterGenerationContext:
        return ChapterGenerationContext(
            chapter_number=chapter_number, budget=allocator.allocate(total)
        )

    return _make
