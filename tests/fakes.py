"""Scripted collaborators and blueprint builders shared by the tests."""

import asyncio
from collections import defaultdict

from core.interfaces import ContinuityChecker, ModelProvider, QualityEvaluator
from core.llm_interface import GenerationRequest, GenerationResponse, StreamChunk
from core.usage import TokenUsage

from models import (
    BookBlueprint,
    ChapterBlueprint,
    CharacterStateSnapshot,
    ContinuityReport,
    QualityReport,
    SceneBlueprint,
)
from chapter_generation import ChapterGenerationContext

DRAFT_TEXT = (
    "Mara crossed the flooded square before dawn. The bells of the old tower "
    "were silent, and she counted the shuttered windows as she walked.\n\n"
    '"You are late," said Tobin from the doorway. She shrugged and handed '
    "him the sealed letter without a word."
)
REVISED_TEXT = (
    "Mara waded through the flooded square while the sky was still grey. "
    "Above her the tower kept its silence.\n\n"
    '"Late again," Tobin said. She pressed the sealed letter into his palm '
    "and turned back toward the river."
)
SUMMARY_TEXT = (
    "BRIEF: Mara delivers the sealed letter to Tobin.\n"
    "DETAILED: Before dawn Mara crosses the flooded square and hands Tobin the letter.\n"
    "KEY EVENTS:\n"
    "- Mara crosses the square\n"
    "- Tobin receives the letter"
)


class FakeProvider(ModelProvider):
    """Scripted provider keyed on ``GenerationRequest.purpose``.

    ``failures[purpose]`` is a list of exceptions raised, in order, before the
    purpose starts succeeding.
    """

    def __init__(self, *, streaming: bool = False, delay: float = 0.0) -> None:
        self.supports_streaming = streaming
        self.delay = delay
        self.requests: list[GenerationRequest] = []
        self.failures: dict[str, list[Exception]] = defaultdict(list)
        self.responses: dict[str, str] = {
            "generate-outline": "1. Mara crosses the square.\n2. Mara meets Tobin.",
            "generate-scenes": DRAFT_TEXT,
            "revision": REVISED_TEXT,
            "summary": SUMMARY_TEXT,
        }

    def calls(self, purpose: str) -> list[GenerationRequest]:
        return [r for r in self.requests if r.purpose == purpose]

    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        pending = self.failures.get(request.purpose)
        if pending:
            raise pending.pop(0)
        return GenerationResponse(
            text=self.responses.get(request.purpose, DRAFT_TEXT),
            usage=TokenUsage(input_tokens=100, output_tokens=50, estimated_cost=0.001),
            model=request.model,
        )

    async def stream(self, request: GenerationRequest):
        self.requests.append(request)
        pending = self.failures.get(request.purpose)
        if pending:
            raise pending.pop(0)
        text = self.responses.get(request.purpose, DRAFT_TEXT)
        words = text.split(" ")
        for index, word in enumerate(words):
            if self.delay:
                await asyncio.sleep(self.delay)
            yield StreamChunk(text=word if index == 0 else " " + word)
        yield StreamChunk(
            text="", usage=TokenUsage(input_tokens=100, output_tokens=len(words))
        )


class ScriptedEvaluator(QualityEvaluator):
    """Returns the queued reports in order, then the last one forever."""

    def __init__(self, reports: list[QualityReport] | None = None) -> None:
        self.reports = reports or [QualityReport(passed=True, score=85.0)]
        self.calls: list[str] = []

    async def evaluate(self, content, chapter, context) -> QualityReport:
        self.calls.append(content)
        index = min(len(self.calls) - 1, len(self.reports) - 1)
        return self.reports[index]


class RecordingChecker(ContinuityChecker):
    def __init__(self, report: ContinuityReport | None = None) -> None:
        self.report = report or ContinuityReport(passed=True)
        self.contexts: list[ChapterGenerationContext] = []

    async def check(self, content, chapter, context) -> ContinuityReport:
        self.contexts.append(context)
        return self.report

    async def extract_character_states(self, content, chapter):
        return [
            CharacterStateSnapshot(
                name="Mara",
                chapter_number=chapter.chapter_number,
                location="the river",
                emotional_state="resolved",
            )
        ]


def make_book(chapter_count: int = 3, **chapter_kwargs) -> BookBlueprint:
    chapters = tuple(
        ChapterBlueprint(
            chapter_number=n,
            title=f"Chapter {n}",
            purpose=f"Move the story forward in part {n}",
            summary=f"Events of chapter {n}",
            characters=("Mara", "Tobin"),
            locations=("the flooded square",),
            setups=(f"setup-{n}",),
            payoffs_due=(f"setup-{n - 1}",) if n > 1 else (),
            scenes=(
                SceneBlueprint(order=1, title="Crossing", characters=("Mara",)),
                SceneBlueprint(order=2, title="Meeting", characters=("Mara", "Tobin")),
            ),
            **chapter_kwargs,
        )
        for n in range(1, chapter_count + 1)
    )
    return BookBlueprint(
        title="The Drowned Bells",
        premise="A courier carries letters through a sinking city.",
        genre="fantasy",
        style_guide="Close third person, past tense.",
        chapters=chapters,
    )


