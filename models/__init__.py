"""Central package for book generation data models."""

from .blueprint import BookBlueprint, ChapterBlueprint, SceneBlueprint
from .generation import CharacterStateSnapshot, GeneratedChapter, GeneratedScene
from .progress import ChapterGenerationProgress, GenerationProgress, PipelineProgress
from .reports import (
    ContinuityReport,
    EvaluationReport,
    Issue,
    IssueSeverity,
    QualityReport,
    StyleReport,
)
from .session import (
    AttemptKind,
    AttemptOutcome,
    ChapterAttempt,
    ChapterRecord,
    ChapterRegenerationOptions,
    ChapterStatus,
    GenerationErrorRecord,
    GenerationOptions,
    GenerationSession,
    SessionStatus,
    StepRecord,
)
from .statistics import ChapterStatistics, GenerationStatistics

__all__ = [
    "BookBlueprint",
    "ChapterBlueprint",
    "SceneBlueprint",
    "CharacterStateSnapshot",
    "GeneratedChapter",
    "GeneratedScene",
    "PipelineProgress",
    "GenerationProgress",
    "ChapterGenerationProgress",
    "Issue",
    "IssueSeverity",
    "EvaluationReport",
    "QualityReport",
    "ContinuityReport",
    "StyleReport",
    "AttemptKind",
    "AttemptOutcome",
    "ChapterAttempt",
    "ChapterRecord",
    "ChapterRegenerationOptions",
    "ChapterStatus",
    "GenerationErrorRecord",
    "GenerationOptions",
    "GenerationSession",
    "SessionStatus",
    "StepRecord",
    "ChapterStatistics",
    "GenerationStatistics",
]
