# chapter_generation/token_budget.py
"""Partition a model context window into named context-section budgets."""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import asdict, dataclass

import structlog
from config import settings
from core.errors import BudgetConfigurationError
from core.llm_interface import count_tokens

logger = structlog.get_logger(__name__)

# Declaration order doubles as the tie-break order for remainder assignment.
SECTIONS: tuple[str, ...] = (
    "system_prompt",
    "narrative_context",
    "character_context",
    "world_context",
    "plot_context",
    "style_context",
    "chapter_instructions",
)


@dataclass(frozen=True)
class TokenBudget:
    """Token allocations for each context section plus reserved output headroom."""

    total: int
    reserved: int
    system_prompt: int = 0
    narrative_context: int = 0
    character_context: int = 0
    world_context: int = 0
    plot_context: int = 0
    style_context: int = 0
    chapter_instructions: int = 0

    @property
    def allocated(self) -> int:
        return sum(getattr(self, name) for name in SECTIONS)

    @property
    def unallocated(self) -> int:
        return self.total - self.reserved - self.allocated

    def for_section(self, name: str) -> int:
        if name not in SECTIONS:
            raise KeyError(name)
        return getattr(self, name)

    def sections(self) -> dict[str, int]:
        data = asdict(self)
        return {name: data[name] for name in SECTIONS}


def _split_proportionally(amount: int, weights: Mapping[str, float]) -> dict[str, int]:
    """Floor-divide ``amount`` by weight; the remainder goes to the heaviest section."""
    weight_sum = sum(weights.values())
    shares = {name: int(amount * w // weight_sum) for name, w in weights.items()}
    remainder = amount - sum(shares.values())
    if remainder > 0:
        heaviest = max(weights.values())
        target = next(name for name in SECTIONS if weights.get(name) == heaviest)
        shares[target] += remainder
    return shares


class TokenBudgetAllocator:
    """Pure allocator; safe to share between concurrent chapter runs."""

    def __init__(
        self,
        weights: Mapping[str, float] | None = None,
        reserved_tokens: int | None = None,
        min_section_tokens: int | None = None,
    ) -> None:
        self.weights = dict(
            weights if weights is not None else settings.TOKEN_BUDGET_WEIGHTS
        )
        self.reserved_tokens = (
            settings.RESERVED_OUTPUT_TOKENS
            if reserved_tokens is None
            else reserved_tokens
        )
        self.min_section_tokens = (
            settings.MIN_SECTION_TOKENS
            if min_section_tokens is None
            else min_section_tokens
        )
        self._validate_weights()
        if self.reserved_tokens < 0 or self.min_section_tokens < 0:
            raise BudgetConfigurationError(
                "Reserved and minimum section tokens must be non-negative"
            )

    def _validate_weights(self) -> None:
        if not self.weights:
            raise BudgetConfigurationError("No token budget weights configured")
        unknown = sorted(set(self.weights) - set(SECTIONS))
        if unknown:
            raise BudgetConfigurationError(
                f"Unknown token budget sections: {', '.join(unknown)}"
            )
        if any(w < 0 for w in self.weights.values()):
            raise BudgetConfigurationError("Token budget weights must be non-negative")
        if not any(w > 0 for w in self.weights.values()):
            raise BudgetConfigurationError("At least one section weight must be positive")

    def minimum_viable_total(self) -> int:
        """Smallest total whose proportional split gives every weighted section its minimum."""
        active = [w for w in self.weights.values() if w > 0]
        weight_sum = sum(active)
        pool = max(math.ceil(self.min_section_tokens * weight_sum / w) for w in active)
        return self.reserved_tokens + pool

    def allocate(
        self,
        total_tokens: int,
        measured_sizes: Mapping[str, int] | None = None,
    ) -> TokenBudget:
        """Split ``total_tokens`` into section budgets.

        ``measured_sizes`` caps a section at the size its content was previously
        measured at; tokens freed that way are spread over the remaining sections.
        """
        floor = self.minimum_viable_total()
        if total_tokens < floor:
            raise BudgetConfigurationError(
                f"Token budget {total_tokens} is below the viable floor of {floor} "
                f"({self.reserved_tokens} reserved, at least {self.min_section_tokens} for the "
                "lightest section)"
            )

        measured = dict(measured_sizes or {})
        active = {name: w for name, w in self.weights.items() if w > 0}
        allocations = {name: 0 for name in SECTIONS}
        pool = total_tokens - self.reserved_tokens

        while active and pool > 0:
            for name, tokens in _split_proportionally(pool, active).items():
                allocations[name] += tokens
            pool = 0
            for name in list(active):
                cap = measured.get(name)
                if cap is not None and allocations[name] >= max(cap, 0):
                    pool += allocations[name] - max(cap, 0)
                    allocations[name] = max(cap, 0)
                    del active[name]

        budget = TokenBudget(
            total=total_tokens, reserved=self.reserved_tokens, **allocations
        )
        logger.debug(
            "Allocated token budget",
            total=total_tokens,
            reserved=self.reserved_tokens,
            unallocated=budget.unallocated,
            **budget.sections(),
        )
        return budget


def estimate_context_tokens(text: str, model_name: str | None = None) -> int:
    """Measure a context string with the tokenizer for ``model_name``."""
    return count_tokens(text, model_name or settings.DRAFTING_MODEL)
