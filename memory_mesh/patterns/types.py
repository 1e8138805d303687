"""
Aggregated Pattern Types.

Derived, read-only records the aggregator builds over the store's
patterns. They are recomputed on ``refresh()`` and never written back.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..core.models import format_time


class ConsensusLevel(Enum):
    """How widely a pattern is shared across known projects."""
    STRONG = "strong"        # 80%+ of projects agree
    MODERATE = "moderate"    # 50%+ of projects agree
    WEAK = "weak"            # 25%+ of projects agree
    NONE = "none"

    @property
    def threshold(self) -> float:
        return CONSENSUS_THRESHOLDS[self]

    @classmethod
    def from_ratio(cls, ratio: float) -> "ConsensusLevel":
        for level in (cls.STRONG, cls.MODERATE, cls.WEAK):
            if ratio >= level.threshold:
                return level
        return cls.NONE

    @classmethod
    def parse(cls, value: Any, default: "ConsensusLevel" = None) -> "ConsensusLevel":
        """Accept an enum member or its (case-insensitive) name."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return default or cls.MODERATE


CONSENSUS_THRESHOLDS = {
    ConsensusLevel.STRONG: 0.8,
    ConsensusLevel.MODERATE: 0.5,
    ConsensusLevel.WEAK: 0.25,
    ConsensusLevel.NONE: 0.0,
}


@dataclass
class AggregatedPattern:
    """
    Cross-project view of one (type, value) pattern.

    ``project_ratio`` is the share of registered projects that reported
    the pattern; ``confidence`` is the aggregate confidence including the
    cross-project and consensus boosts.
    """
    pattern_type: str
    value: str
    confidence: float
    project_count: int
    project_ratio: float
    consensus_level: ConsensusLevel
    sources: List[str] = field(default_factory=list)
    total_occurrences: int = 1
    is_outlier: bool = False
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None

    @property
    def key(self):
        return (self.pattern_type, self.value)

    @property
    def is_consensus(self) -> bool:
        return self.consensus_level in (ConsensusLevel.STRONG, ConsensusLevel.MODERATE)

    def summary(self) -> Dict[str, Any]:
        """Short form used in comparisons and recommendations."""
        return {
            "type": self.pattern_type,
            "pattern": self.value,
            "confidence": self.confidence,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.pattern_type,
            "pattern": self.value,
            "confidence": self.confidence,
            "project_count": self.project_count,
            "project_ratio": self.project_ratio,
            "consensus_level": self.consensus_level.value,
            "sources": list(self.sources),
            "total_occurrences": self.total_occurrences,
            "is_consensus": self.is_consensus,
            "is_outlier": self.is_outlier,
            "first_seen": format_time(self.first_seen) if self.first_seen else None,
            "last_seen": format_time(self.last_seen) if self.last_seen else None,
        }
