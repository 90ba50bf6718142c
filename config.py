# config.py
"""Configuration settings for the book generation core.
Uses Pydantic BaseSettings for automatic environment variable loading.
"""

from __future__ import annotations

import os

from dotenv import load_dotenv
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class BookGenSettings(BaseSettings):
    """Full configuration for chapter and book generation."""

    # Base Model Definitions
    BASE_MODEL: str = "claude-sonnet-4-20250514"
    SMALL_MODEL: str = "claude-3-5-haiku-latest"

    # Dynamic Model Assignments (set from base models if not specified in env)
    OUTLINE_MODEL: str | None = None
    DRAFTING_MODEL: str | None = None
    REVISION_MODEL: str | None = None
    SUMMARY_MODEL: str | None = None

    # Temperature Settings
    TEMPERATURE_OUTLINE: float = 0.6
    TEMPERATURE_DRAFTING: float = 0.8
    TEMPERATURE_REVISION: float = 0.6
    TEMPERATURE_SUMMARY: float = 0.3

    # Output token caps
    MAX_OUTLINE_TOKENS: int = 1500
    MAX_SCENE_TOKENS: int = 2000
    MAX_SUMMARY_TOKENS: int = 800
    TOKENS_PER_WORD: float = 1.5
    DEFAULT_CHAPTER_WORDS: int = 3000

    # Tokenizer
    TIKTOKEN_DEFAULT_ENCODING: str = "cl100k_base"
    FALLBACK_CHARS_PER_TOKEN: float = 4.0
    TOKENIZER_CACHE_SIZE: int = 10

    # Token budget
    CONTEXT_WINDOW_TOKENS: int = 128000
    RESERVED_OUTPUT_TOKENS: int = 2000
    MIN_SECTION_TOKENS: int = 64
    TOKEN_BUDGET_WEIGHTS: dict[str, int] = {
        "system_prompt": 1,
        "narrative_context": 3,
        "character_context": 2,
        "world_context": 1,
        "plot_context": 2,
        "style_context": 1,
        "chapter_instructions": 1,
    }

    # Step retries
    STEP_MAX_RETRIES: int = 2
    STEP_RETRY_DELAY_SECONDS: float = 1.0

    # Quality gate
    QUALITY_SEVERITY_THRESHOLD: str = "major"
    MIN_QUALITY_SCORE: float = 70.0
    MAX_REVISION_ITERATIONS: int = 2
    MAX_REVISION_INSTRUCTIONS: int = 5
    AUTO_APPROVE_CHAPTERS: bool = True

    # Style analysis
    STYLE_NGRAM_SIZE: int = 4
    STYLE_REPETITION_THRESHOLD: int = 3
    STYLE_LENGTH_TOLERANCE: float = 0.35

    # Context assembly
    PREVIOUS_CHAPTERS_IN_CONTEXT: int = 2

    # Statistics
    FALLBACK_COST_PER_1000_WORDS: float = 0.01

    # Progress and persistence
    PROGRESS_CHANNEL_CAPACITY: int = 256
    BASE_OUTPUT_DIR: str = "bookgen_output"
    SESSION_DB_FILE: str = "sessions.db"

    # Collaborators (dotted import paths, resolved by the CLI)
    MODEL_PROVIDER: str | None = None
    CONTEXT_BUILDER: str | None = None
    QUALITY_EVALUATOR: str | None = None
    CONTINUITY_CHECKER: str | None = None

    # Logging & UI
    LOG_LEVEL_STR: str = Field("INFO", alias="AGENT_LOG_LEVEL")
    LOG_FORMAT: str = (
        "%(asctime)s - %(levelname)s - [%(name)s:%(funcName)s:%(lineno)d] - %(message)s"
    )
    LOG_DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"
    LOG_FILE: str | None = "bookgen_run.log"
    ENABLE_RICH_PROGRESS: bool = True

    @model_validator(mode="after")
    def set_dynamic_model_defaults(self) -> BookGenSettings:
        if self.OUTLINE_MODEL is None:
            self.OUTLINE_MODEL = self.BASE_MODEL
        if self.DRAFTING_MODEL is None:
            self.DRAFTING_MODEL = self.BASE_MODEL
        if self.REVISION_MODEL is None:
            self.REVISION_MODEL = self.BASE_MODEL
        if self.SUMMARY_MODEL is None:
            self.SUMMARY_MODEL = self.SMALL_MODEL
        return self

    model_config = SettingsConfigDict(
        env_prefix="", env_file=".env", populate_by_name=True
    )


settings = BookGenSettings()

SESSION_DB_PATH = os.path.join(settings.BASE_OUTPUT_DIR, settings.SESSION_DB_FILE)
