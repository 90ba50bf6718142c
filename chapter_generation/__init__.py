"""Chapter generation pipeline: token budgets, steps and the pipeline driver."""

from .context_models import (
    ChapterGenerationContext,
    ContextBuildOptions,
    PreviousChapterSummary,
)
from .pipeline import ChapterGenerationPipeline, gate_passes
from .pipeline_state import GenerationOverrides, PipelineState, StepResult
from .steps import (
    STEP_REGISTRY,
    PipelineServices,
    PipelineStep,
    StepKind,
    blueprint_sections,
    default_steps,
    register_step,
)
from .style_analyzer import StyleAnalyzer
from .token_budget import (
    SECTIONS,
    TokenBudget,
    TokenBudgetAllocator,
    estimate_context_tokens,
)

__all__ = [
    "ChapterGenerationContext",
    "ContextBuildOptions",
    "PreviousChapterSummary",
    "ChapterGenerationPipeline",
    "gate_passes",
    "GenerationOverrides",
    "PipelineState",
    "StepResult",
    "STEP_REGISTRY",
    "PipelineServices",
    "PipelineStep",
    "StepKind",
    "blueprint_sections",
    "default_steps",
    "register_step",
    "StyleAnalyzer",
    "SECTIONS",
    "TokenBudget",
    "TokenBudgetAllocator",
    "estimate_context_tokens",
]
