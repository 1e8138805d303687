"""
Memory Mesh - cross-project learning and calibration.

A persistent memory that accumulates patterns, expertise and feedback
across independent projects or teammates:
- MemoryStore: canonical patterns, expertise, preferences and projects per scope
- PatternAggregator: consensus and outlier analysis across projects
- FeedbackCollector: suggestion acceptance tracking
- ConfidenceCalibrator: Beta-Binomial confidence calibration
- TeamSync: export, import and merge with conflict resolution
"""

from .core import Expertise, MemoryStore, Pattern, Preference, Project
from .errors import (
    ExportValidationError,
    MemoryMeshError,
    NotFoundError,
    ParseError,
    UnknownReferenceError,
)
from .feedback import ConfidenceCalibrator, FeedbackCollector, FeedbackKind, SuggestionCategory
from .patterns import AggregatedPattern, ConsensusLevel, PatternAggregator
from .teams import ConflictStrategy, TeamSync

__version__ = "0.1.0"

__all__ = [
    # Store
    "MemoryStore",
    "Pattern",
    "Expertise",
    "Preference",
    "Project",
    # Aggregation
    "PatternAggregator",
    "AggregatedPattern",
    "ConsensusLevel",
    # Feedback
    "FeedbackCollector",
    "FeedbackKind",
    "SuggestionCategory",
    "ConfidenceCalibrator",
    # Teams
    "TeamSync",
    "ConflictStrategy",
    # Errors
    "MemoryMeshError",
    "NotFoundError",
    "ParseError",
    "ExportValidationError",
    "UnknownReferenceError",
]
