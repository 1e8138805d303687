"""
Pattern Aggregator - Cross-Project Consensus Analysis.

Builds a derived index over the memory store's patterns and answers
questions about how they are shared across projects:
- Consensus patterns (used consistently across projects)
- Outlier patterns (seen in exactly one project)
- Emerging patterns (new, but already adopted by several projects)
- Per-type diversity, recommendations and project similarity

The index is a cache. It is rebuilt from store snapshots on ``init()``
and ``refresh()``; the aggregator never mutates the store.
"""

import logging
from collections import defaultdict
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import numpy as np

from ..core.models import Pattern, utcnow
from ..core.store import MemoryStore
from .types import AggregatedPattern, ConsensusLevel

logger = logging.getLogger(__name__)

# Confidence boosts
CROSS_PROJECT_BOOST = 0.1        # per additional project
CROSS_PROJECT_BOOST_MAX = 0.3
CONSENSUS_BOOST = 0.2            # at strong consensus
MAX_CONFIDENCE = 0.99

# Recency weight is 1 - age_days / 60, floored at 0.5 (reached at 30 days)
RECENCY_FLOOR = 0.5
RECENCY_SPAN_DAYS = 60.0

RECOMMENDATION_MIN_CONFIDENCE = 0.6

PatternKey = Tuple[str, str]


class PatternAggregator:
    """
    Aggregate patterns across projects.

    Example:
        aggregator = PatternAggregator(store).init()

        # Patterns most projects agree on
        consensus = aggregator.get_consensus_patterns(ConsensusLevel.STRONG)

        # Patterns only one project uses
        outliers = aggregator.get_outlier_patterns()

        # How alike are two projects?
        comparison = aggregator.compare_projects("api", "web")
    """

    def __init__(self, store: Optional[MemoryStore] = None):
        self.store = store if store is not None else MemoryStore()
        self._aggregated: Dict[PatternKey, AggregatedPattern] = {}
        self._project_patterns: Dict[str, Set[PatternKey]] = {}
        self.initialized = False

    def init(self) -> "PatternAggregator":
        self._analyze(self.store.get_patterns())
        self.initialized = True
        logger.info(
            f"PatternAggregator initialized: {len(self._aggregated)} patterns "
            f"across {len(self._project_patterns)} projects"
        )
        return self

    def refresh(self) -> "PatternAggregator":
        """Drop the derived index and rebuild it from the store."""
        self._aggregated = {}
        self._project_patterns = {}
        self._analyze(self.store.get_patterns())
        self.initialized = True
        return self

    def _ensure_init(self) -> None:
        if not self.initialized:
            self.init()

    # =========================================================================
    # Analysis
    # =========================================================================

    def _analyze(self, patterns: Iterable[Pattern]) -> None:
        groups: Dict[PatternKey, List[Pattern]] = defaultdict(list)
        for pattern in patterns:
            groups[pattern.key].append(pattern)

        projects = self.store.get_projects()
        registered = max(len(projects), 1)

        known: List[str] = [p.name for p in projects]
        for instances in groups.values():
            for instance in instances:
                for source in instance.sources:
                    if source not in known:
                        known.append(source)
        multi_project = len(known) > 1

        now = utcnow()
        aggregated: Dict[PatternKey, AggregatedPattern] = {}
        for key, instances in groups.items():
            sources: List[str] = []
            for instance in instances:
                for source in instance.sources:
                    if source not in sources:
                        sources.append(source)

            project_count = len(sources)
            ratio = min(1.0, project_count / registered)
            is_outlier = project_count == 1 and multi_project
            level = ConsensusLevel.NONE if is_outlier else ConsensusLevel.from_ratio(ratio)

            boost = min((project_count - 1) * CROSS_PROJECT_BOOST, CROSS_PROJECT_BOOST_MAX)
            if level == ConsensusLevel.STRONG:
                boost += CONSENSUS_BOOST
            confidence = min(self._aggregate_confidence(instances, now) + boost, MAX_CONFIDENCE)

            aggregated[key] = AggregatedPattern(
                pattern_type=key[0],
                value=key[1],
                confidence=confidence,
                project_count=project_count,
                project_ratio=ratio,
                consensus_level=level,
                sources=sources,
                total_occurrences=sum(p.occurrences for p in instances),
                is_outlier=is_outlier,
                first_seen=min(p.created_at for p in instances),
                last_seen=max(p.last_seen for p in instances),
            )

        project_patterns: Dict[str, Set[PatternKey]] = {name: set() for name in known}
        for key, agg in aggregated.items():
            for source in agg.sources:
                project_patterns[source].add(key)

        self._aggregated = aggregated
        self._project_patterns = project_patterns

    def _aggregate_confidence(self, instances: List[Pattern], now) -> float:
        """Occurrence- and recency-weighted mean confidence."""
        if not instances:
            return 0.0

        confidences = np.array([p.confidence for p in instances], dtype=float)
        occurrences = np.array([p.occurrences for p in instances], dtype=float)
        age_days = np.array(
            [(now - p.last_seen).total_seconds() / 86400.0 for p in instances],
            dtype=float,
        )
        recency = np.clip(1.0 - age_days / RECENCY_SPAN_DAYS, RECENCY_FLOOR, 1.0)
        weights = occurrences * recency

        total = weights.sum()
        if total <= 0:
            return 0.5
        return float(np.dot(confidences, weights) / total)

    def _sorted(self, patterns: Iterable[AggregatedPattern]) -> List[AggregatedPattern]:
        return sorted(patterns, key=lambda p: p.confidence, reverse=True)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_patterns(self) -> List[AggregatedPattern]:
        self._ensure_init()
        return self._sorted(self._aggregated.values())

    def get_consensus_patterns(self, level: Any = ConsensusLevel.MODERATE) -> List[AggregatedPattern]:
        """Patterns whose project ratio meets the level's threshold, best first."""
        self._ensure_init()
        threshold = ConsensusLevel.parse(level).threshold
        return self._sorted(
            p for p in self._aggregated.values()
            if p.project_ratio >= threshold and not p.is_outlier
        )

    def get_outlier_patterns(self) -> List[AggregatedPattern]:
        """Patterns reported by exactly one project (out of several)."""
        self._ensure_init()
        return self._sorted(p for p in self._aggregated.values() if p.is_outlier)

    def get_unique_patterns(self, project: str) -> List[AggregatedPattern]:
        """Patterns whose only source is ``project``."""
        self._ensure_init()
        keys = self._project_patterns.get(project)
        if not keys:
            return []
        return self._sorted(
            self._aggregated[key] for key in keys
            if self._aggregated[key].sources == [project]
        )

    def get_common_patterns(self, projects: List[str]) -> List[AggregatedPattern]:
        """
        Patterns used by every listed project.

        Empty if the list is empty or names a project nobody has seen.
        """
        self._ensure_init()
        if not projects:
            return []
        key_sets = []
        for project in projects:
            keys = self._project_patterns.get(project)
            if keys is None:
                return []
            key_sets.append(keys)
        common = set.intersection(*key_sets)
        return self._sorted(self._aggregated[key] for key in common)

    def get_patterns_by_type(self, pattern_type: str) -> List[AggregatedPattern]:
        self._ensure_init()
        return self._sorted(p for p in self._aggregated.values() if p.pattern_type == pattern_type)

    def get_dominant_pattern(self, pattern_type: str) -> Optional[AggregatedPattern]:
        patterns = self.get_patterns_by_type(pattern_type)
        return patterns[0] if patterns else None

    def get_emerging_patterns(self, min_projects: int = 2, max_days: int = 30) -> List[AggregatedPattern]:
        """Patterns first seen within ``max_days`` that already span several projects."""
        self._ensure_init()
        cutoff = utcnow() - timedelta(days=max_days)
        emerging = [
            p for p in self._aggregated.values()
            if p.project_count >= min_projects and p.first_seen and p.first_seen >= cutoff
        ]
        return sorted(emerging, key=lambda p: (p.project_count, p.confidence), reverse=True)

    # =========================================================================
    # Reports
    # =========================================================================

    def analyze_pattern_diversity(self) -> Dict[str, Any]:
        """Per type: how many distinct values compete, and which one leads."""
        self._ensure_init()
        by_type: Dict[str, List[AggregatedPattern]] = defaultdict(list)
        for pattern in self._aggregated.values():
            by_type[pattern.pattern_type].append(pattern)

        analysis = {
            "total_pattern_types": len(by_type),
            "types_with_consensus": 0,
            "types_without_consensus": 0,
            "type_analysis": {},
        }
        for pattern_type, variations in by_type.items():
            ranked = self._sorted(variations)
            dominant = ranked[0]
            if dominant.is_consensus:
                analysis["types_with_consensus"] += 1
            else:
                analysis["types_without_consensus"] += 1

            analysis["type_analysis"][pattern_type] = {
                "variation_count": len(ranked),
                "has_consensus": dominant.is_consensus,
                "dominant": dominant.value,
                "dominant_confidence": dominant.confidence,
                "alternatives": [
                    {"pattern": p.value, "confidence": p.confidence} for p in ranked[1:]
                ],
            }
        return analysis

    def get_recommendations(self, min_confidence: float = RECOMMENDATION_MIN_CONFIDENCE) -> Dict[str, Dict[str, Any]]:
        """
        Recommended value per type for a new project.

        A type whose dominant value is below ``min_confidence`` is
        reported as undetermined with no recommended value.
        """
        self._ensure_init()
        recommendations: Dict[str, Dict[str, Any]] = {}
        for pattern_type in sorted({p.pattern_type for p in self._aggregated.values()}):
            dominant = self.get_dominant_pattern(pattern_type)
            if dominant.confidence >= min_confidence:
                recommendations[pattern_type] = {
                    "status": "recommended",
                    "recommended": dominant.value,
                    "confidence": dominant.confidence,
                    "adopted_by": dominant.project_count,
                    "consensus_level": dominant.consensus_level.value,
                }
            else:
                recommendations[pattern_type] = {
                    "status": "undetermined",
                    "recommended": None,
                    "confidence": dominant.confidence,
                    "candidates": len(self.get_patterns_by_type(pattern_type)),
                }
        return recommendations

    def compare_projects(self, first: str, second: str) -> Dict[str, Any]:
        """Jaccard similarity of two projects' pattern sets, with the breakdown."""
        self._ensure_init()
        keys_a = self._project_patterns.get(first, set())
        keys_b = self._project_patterns.get(second, set())
        union = keys_a | keys_b

        def details(keys: Set[PatternKey]) -> List[Dict[str, Any]]:
            return [p.summary() for p in self._sorted(self._aggregated[k] for k in keys)]

        return {
            "project1": first,
            "project2": second,
            "similarity": len(keys_a & keys_b) / len(union) if union else 0.0,
            "common": details(keys_a & keys_b),
            "only_in_first": details(keys_a - keys_b),
            "only_in_second": details(keys_b - keys_a),
        }

    def get_stats(self) -> Dict[str, Any]:
        self._ensure_init()
        patterns = list(self._aggregated.values())
        return {
            "total_aggregated_patterns": len(patterns),
            "consensus_patterns": sum(1 for p in patterns if p.is_consensus),
            "outlier_patterns": sum(1 for p in patterns if p.is_outlier),
            "strong_consensus": sum(1 for p in patterns if p.consensus_level == ConsensusLevel.STRONG),
            "moderate_consensus": sum(1 for p in patterns if p.consensus_level == ConsensusLevel.MODERATE),
            "tracked_projects": len(self._project_patterns),
            "pattern_types": sorted({p.pattern_type for p in patterns}),
        }
