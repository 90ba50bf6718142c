# models/blueprint.py
"""Author-approved book and chapter plans. Read-only input to generation."""

from __future__ import annotations

import uuid

from pydantic import BaseModel, ConfigDict, Field


class BlueprintModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class SceneBlueprint(BlueprintModel):
    """A planned scene within a chapter."""

    order: int
    title: str = ""
    location: str | None = None
    characters: tuple[str, ...] = ()
    purpose: str = ""
    target_word_count: int | None = None


class ChapterBlueprint(BlueprintModel):
    """Intent and constraints for one chapter."""

    chapter_number: int = Field(ge=1)
    title: str = ""
    purpose: str = ""
    summary: str = ""
    target_word_count: int | None = None
    scenes: tuple[SceneBlueprint, ...] = ()
    characters: tuple[str, ...] = ()
    locations: tuple[str, ...] = ()
    setups: tuple[str, ...] = ()
    payoffs_due: tuple[str, ...] = ()
    must_include: tuple[str, ...] = ()
    must_avoid: tuple[str, ...] = ()
    tone: str | None = None

    @property
    def display_title(self) -> str:
        return self.title or f"Chapter {self.chapter_number}"

    def ordered_scenes(self) -> list[SceneBlueprint]:
        return sorted(self.scenes, key=lambda s: s.order)


class BookBlueprint(BlueprintModel):
    """The full plan for a book."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    title: str
    premise: str = ""
    genre: str = ""
    target_word_count: int | None = None
    style_guide: str = ""
    characters: tuple[str, ...] = ()
    locations: tuple[str, ...] = ()
    chapters: tuple[ChapterBlueprint, ...] = ()

    @property
    def chapter_numbers(self) -> list[int]:
        return sorted(c.chapter_number for c in self.chapters)

    def get_chapter(self, chapter_number: int) -> ChapterBlueprint | None:
        for chapter in self.chapters:
            if chapter.chapter_number == chapter_number:
                return chapter
        return None
