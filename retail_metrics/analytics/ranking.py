"""
Top-N Ranking Module

Ranks sub-groups (category, product, state, ...) inside each partition
(cohort bucket, month, ...) by a metric, highest first.

Ranks are competitive ("1224"): equal metric values share a rank. How ties
at the cut-off are resolved is an explicit policy:
- TiePolicy.ALL returns every row ranked within top_n, so a tie for first
  place returns all tied leaders
- TiePolicy.KEY_ASCENDING returns exactly top_n rows per partition, taking
  tied rows in ascending key order
"""

from enum import Enum
from typing import Optional, Sequence, Union

import polars as pl
import structlog

from retail_metrics.analytics.aggregator import count_customers
from retail_metrics.exceptions import ConfigurationError

logger = structlog.get_logger(__name__)


class TiePolicy(str, Enum):
    """Resolution of ties at the top-N cut-off"""
    ALL = "all"
    KEY_ASCENDING = "key_ascending"


class TopNRanker:
    """
    Selects the leading rows per partition.

    Example:
        ranker = TopNRanker(metric="total_revenue", key="category",
                            partition_by="cohort_bucket")
        leaders = ranker.top(category_by_cohort_df)
    """

    def __init__(
        self,
        metric: str,
        key: Union[str, Sequence[str]],
        partition_by: Union[str, Sequence[str], None] = None,
        top_n: int = 1,
        tie_policy: Union[TiePolicy, str] = TiePolicy.ALL,
    ):
        if not metric or not metric.strip():
            raise ConfigurationError("Ranking metric must be a non-empty column name")
        self.key = [key] if isinstance(key, str) else list(key)
        if not self.key:
            raise ConfigurationError("Ranking key must name at least one column")
        if top_n < 1:
            raise ConfigurationError(f"top_n must be >= 1, got {top_n}")
        try:
            self.tie_policy = TiePolicy(tie_policy)
        except ValueError:
            raise ConfigurationError(f"Unknown tie policy: {tie_policy!r}")

        self.metric = metric
        self.top_n = top_n
        if partition_by is None:
            self.partition_by = []
        elif isinstance(partition_by, str):
            self.partition_by = [partition_by]
        else:
            self.partition_by = list(partition_by)

    def _check_columns(self, frame: pl.DataFrame) -> None:
        if self.metric not in frame.columns:
            raise ConfigurationError(f"Ranking metric '{self.metric}' not in {frame.columns}")
        missing = [c for c in self.key + self.partition_by if c not in frame.columns]
        if missing:
            raise ConfigurationError(f"Ranking columns not in frame: {missing}")

    def _over(self, expr: pl.Expr) -> pl.Expr:
        return expr.over(self.partition_by) if self.partition_by else expr

    def _ordered(self, frame: pl.DataFrame) -> pl.DataFrame:
        columns = self.partition_by + [self.metric] + self.key
        descending = [False] * len(self.partition_by) + [True] + [False] * len(self.key)
        return frame.sort(columns, descending=descending, nulls_last=True)

    def rank(self, frame: pl.DataFrame) -> pl.DataFrame:
        """Add a competitive `rank` column within each partition"""
        self._check_columns(frame)
        ranked = frame.with_columns(
            self._over(
                pl.col(self.metric).rank(method="min", descending=True)
            ).cast(pl.Int64).alias("rank")
        )
        return self._ordered(ranked)

    def top(self, frame: pl.DataFrame) -> pl.DataFrame:
        """
        Leading rows per partition under the configured tie policy.

        Rows with a null metric are never selected.
        """
        self._check_columns(frame)
        ranked = self.rank(frame.filter(pl.col(self.metric).is_not_null()))

        if self.tie_policy == TiePolicy.ALL:
            result = ranked.filter(pl.col("rank") <= self.top_n)
        else:
            # ranked is already ordered by metric desc, key asc within each partition
            result = ranked.filter(
                self._over(pl.int_range(0, pl.len())) < self.top_n
            )

        tied = result.filter(pl.col("rank") == 1)
        partitions = tied.select(self.partition_by).n_unique() if self.partition_by else 1
        if len(tied) > partitions:
            logger.info(
                "Tie for first place",
                metric=self.metric,
                policy=self.tie_policy.value,
                tied_rows=len(tied),
            )

        return result


def top_states(
    customers: pl.DataFrame,
    n: int = 4,
    country: Optional[str] = None,
    tie_policy: Union[TiePolicy, str] = TiePolicy.ALL,
) -> pl.DataFrame:
    """
    States with the most customers, optionally inside one country.

    Returns:
        DataFrame of state, customer_count, rank
    """
    filters = {"country": country} if country is not None else {}
    counts = count_customers(customers, by="state", **filters)
    ranker = TopNRanker(metric="customer_count", key="state", top_n=n, tie_policy=tie_policy)
    return ranker.top(counts)
