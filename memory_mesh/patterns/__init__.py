"""
Cross-project pattern aggregation.

Patterns observed in individual projects are grouped by (type, value)
and classified by how many of the known projects report them.
"""

from .aggregator import PatternAggregator
from .types import AggregatedPattern, ConsensusLevel

__all__ = [
    "PatternAggregator",
    "AggregatedPattern",
    "ConsensusLevel",
]
