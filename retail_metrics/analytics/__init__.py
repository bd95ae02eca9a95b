"""
Profitability Analytics Module
"""
from .aggregator import HierarchicalAggregator, aggregate, count_customers, filter_lines
from .cohorts import CohortBucket, CohortScheme, CohortSegmenter
from .pivot import TimePivotBuilder, monthly_stream
from .ranking import TiePolicy, TopNRanker, top_states

__all__ = [
    "HierarchicalAggregator",
    "aggregate",
    "count_customers",
    "filter_lines",
    "CohortBucket",
    "CohortScheme",
    "CohortSegmenter",
    "TimePivotBuilder",
    "monthly_stream",
    "TiePolicy",
    "TopNRanker",
    "top_states",
]
