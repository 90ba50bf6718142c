from __future__ import annotations

import logging
from enum import Enum

from core.usage import TokenUsage

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    """Stages for token accounting."""

    OUTLINE = "Outline"
    DRAFTING = "Drafting"
    REVISION = "Revision"
    SUMMARIZATION = "Summarization"


class TokenAccountant:
    """Accumulate and log token usage across stages of one chapter run."""

    def __init__(self) -> None:
        self.total = TokenUsage()
        self.stage_totals: dict[str, TokenUsage] = {}

    def record_usage(
        self, stage: Stage | str, usage: dict[str, float] | TokenUsage | None
    ) -> TokenUsage | None:
        """Record token usage for a stage and return it as ``TokenUsage``."""
        stage_name = stage.value if isinstance(stage, Stage) else stage

        if usage is None:
            return None
        if isinstance(usage, TokenUsage):
            recorded = usage
        elif isinstance(usage.get("output_tokens"), int) or isinstance(
            usage.get("input_tokens"), int
        ):
            recorded = TokenUsage()
            recorded.add(usage)
        else:
            logger.warning(
                "'%s' - token counts missing or not int in usage data. Tokens not added. Usage: %s",
                stage_name,
                usage,
            )
            return None

        self.total.add(recorded)
        self.stage_totals.setdefault(stage_name, TokenUsage()).add(recorded)
        logger.info(
            "Tokens from '%s': %s in / %s out. Total this run: %s",
            stage_name,
            recorded.input_tokens,
            recorded.output_tokens,
            self.total.total_tokens,
        )
        return recorded

    def get_stage_total(self, stage: Stage | str) -> int:
        """Return accumulated tokens for a stage."""
        stage_name = stage.value if isinstance(stage, Stage) else stage
        usage = self.stage_totals.get(stage_name)
        return usage.total_tokens if usage else 0

    def stage_breakdown(self) -> dict[str, int]:
        """Tokens per stage, in the order stages were first recorded."""
        return {name: self.get_stage_total(name) for name in self.stage_totals}
