import pytest
from chapter_generation.token_budget import SECTIONS, TokenBudgetAllocator
from core.errors import BudgetConfigurationError


def test_default_weights_split_100k_window():
    budget = TokenBudgetAllocator().allocate(100_000)
    assert budget.reserved == 2000
    assert budget.narrative_context == 26728
    assert budget.character_context == 17818
    assert budget.system_prompt == 8909
    assert budget.allocated == 98_000
    assert budget.unallocated == 0


def test_allocation_is_pure():
    allocator = TokenBudgetAllocator()
    assert allocator.allocate(50_000) == allocator.allocate(50_000)


def test_budget_below_floor_is_rejected():
    allocator = TokenBudgetAllocator(reserved_tokens=1000, min_section_tokens=100)
    # lightest default weight is 1 of 11
    assert allocator.minimum_viable_total() == 1000 + 1100
    with pytest.raises(BudgetConfigurationError):
        allocator.allocate(2099)
    budget = allocator.allocate(2100)
    assert budget.total == 2100
    assert min(budget.sections().values()) >= 100


def test_floor_guarantees_minimum_for_light_sections():
    allocator = TokenBudgetAllocator()
    budget = allocator.allocate(allocator.minimum_viable_total())
    assert budget.system_prompt >= 64
    assert budget.style_context >= 64


def test_measured_sizes_cap_and_redistribute():
    allocator = TokenBudgetAllocator()
    budget = allocator.allocate(100_000, measured_sizes={"narrative_context": 1000})
    assert budget.narrative_context == 1000
    assert budget.allocated == 98_000
    assert budget.character_context > 17818


def test_all_sections_capped_leaves_tokens_unallocated():
    allocator = TokenBudgetAllocator()
    caps = {name: 10 for name in SECTIONS}
    budget = allocator.allocate(100_000, measured_sizes=caps)
    assert budget.allocated == 70
    assert budget.unallocated == 98_000 - 70


def test_zero_weight_section_gets_nothing():
    weights = {name: 1 for name in SECTIONS}
    weights["plot_context"] = 0
    budget = TokenBudgetAllocator(weights=weights, reserved_tokens=0).allocate(600)
    assert budget.plot_context == 0
    assert budget.allocated == 600


@pytest.mark.parametrize(
    "weights",
    [
        {},
        {"system_prompt": 0},
        {"system_prompt": -1, "narrative_context": 2},
        {"unknown_section": 1},
    ],
)
def test_invalid_weights_raise(weights):
    with pytest.raises(BudgetConfigurationError):
        TokenBudgetAllocator(weights=weights)


def test_unknown_section_lookup():
    budget = TokenBudgetAllocator().allocate(10_000)
    with pytest.raises(KeyError):
        budget.for_section("appendix")
