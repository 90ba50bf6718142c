# core/usage.py
from __future__ import annotations

from pydantic import BaseModel


class TokenUsage(BaseModel):
    """Model token usage and cost accounting."""

    input_tokens: int = 0
    output_tokens: int = 0
    estimated_cost: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, usage: TokenUsage | dict[str, float] | None) -> None:
        """Accumulate usage values from another instance or dictionary."""
        if not usage:
            return
        if isinstance(usage, TokenUsage):
            self.input_tokens += usage.input_tokens
            self.output_tokens += usage.output_tokens
            self.estimated_cost += usage.estimated_cost
        else:
            self.input_tokens += int(usage.get("input_tokens", 0))
            self.output_tokens += int(usage.get("output_tokens", 0))
            self.estimated_cost += float(usage.get("estimated_cost", 0.0))

    def __bool__(self) -> bool:
        return bool(self.input_tokens or self.output_tokens or self.estimated_cost)

