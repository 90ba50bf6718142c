# chapter_generation/context_models.py
"""Data models used for chapter context assembly."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field

from models import CharacterStateSnapshot

from .token_budget import SECTIONS, TokenBudget


@dataclass
class ContextBuildOptions:
    """Inclusion switches and per-section size caps for the context builder."""

    include_character_context: bool = True
    include_location_context: bool = True
    include_previous_summaries: bool = True
    previous_chapter_count: int = 2
    section_caps: dict[str, int] = field(default_factory=dict)

    def cap_for(self, section: str, budget: TokenBudget) -> int:
        allocated = budget.for_section(section)
        cap = self.section_caps.get(section)
        return allocated if cap is None else min(cap, allocated)


@dataclass
class PreviousChapterSummary:
    chapter_number: int
    title: str
    summary: str
    key_events: list[str] = field(default_factory=list)


@dataclass
class ChapterGenerationContext:
    """Prompt material for one chapter run.

    Built fresh for every generation or regeneration attempt and owned by the
    pipeline invocation that uses it.
    """

    chapter_number: int
    budget: TokenBudget
    options: ContextBuildOptions = field(default_factory=ContextBuildOptions)

    system_prompt: str = ""
    narrative_context: str = ""
    character_context: str = ""
    world_context: str = ""
    plot_context: str = ""
    style_context: str = ""
    chapter_instructions: str = ""

    previous_summaries: list[PreviousChapterSummary] = field(default_factory=list)
    character_states: list[CharacterStateSnapshot] = field(default_factory=list)
    open_setups: list[str] = field(default_factory=list)
    payoffs_due: list[str] = field(default_factory=list)
    extra_instructions: list[str] = field(default_factory=list)
    is_built: bool = False

    def sections(self) -> dict[str, str]:
        return {name: getattr(self, name) for name in SECTIONS}

    def with_extra_instructions(self, instructions: list[str]) -> ChapterGenerationContext:
        """Return a copy with ``instructions`` appended to the extra instructions."""
        return dataclasses.replace(
            self, extra_instructions=[*self.extra_instructions, *instructions]
        )
