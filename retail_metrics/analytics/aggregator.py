"""
Hierarchical Aggregation Module

Rolls derived order lines up by any combination of dimension attributes
(category, subcategory, country, state, cohort_bucket, ...).

avg_margin is the mean of per-line profit/revenue ratios, not
total_profit / total_revenue. Zero-revenue lines carry a null ratio: they
count towards item_count but not towards avg_margin. Partial aggregates
carry margin_sum and margin_count so they can be merged without losing
those semantics.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import date
from typing import Any, Iterable, List, Optional, Sequence, Union

import polars as pl
import structlog

logger = structlog.get_logger(__name__)


CURRENCY_TOTALS = ["total_revenue", "total_cost", "total_profit"]

AGGREGATE_COLUMNS = CURRENCY_TOTALS + ["avg_margin", "item_count", "total_quantity"]

PARTIAL_COLUMNS = CURRENCY_TOTALS + ["total_quantity", "item_count", "margin_sum", "margin_count"]


def _as_list(by: Union[str, Sequence[str], None]) -> List[str]:
    if by is None:
        return []
    if isinstance(by, str):
        return [by]
    return list(by)


def _group(frame: pl.DataFrame, by: List[str], aggs: List[pl.Expr]) -> pl.DataFrame:
    if not by:
        return frame.select(aggs)
    return frame.group_by(by).agg(aggs)


def sort_rows(
    frame: pl.DataFrame,
    by: Sequence[str],
    sort_by: Optional[str] = "total_profit",
    descending: bool = True,
) -> pl.DataFrame:
    """Sort by a metric, breaking ties on the key columns ascending"""
    keys = _as_list(by)
    if sort_by is None:
        return frame.sort(keys) if keys else frame
    if sort_by not in frame.columns:
        raise ValueError(f"Sort column '{sort_by}' not in {frame.columns}")

    columns = [sort_by] + [k for k in keys if k != sort_by]
    return frame.sort(
        columns,
        descending=[descending] + [False] * (len(columns) - 1),
        nulls_last=True,
    )


def filter_lines(
    frame: pl.DataFrame,
    start: Optional[date] = None,
    end: Optional[date] = None,
    date_column: str = "order_date",
    **equals: Any,
) -> pl.DataFrame:
    """
    Filter lines by hierarchy values and an inclusive date range.

    Example:
        desktops = filter_lines(lines, category="Computers", subcategory="Desktops")
    """
    predicates = [pl.col(column) == value for column, value in equals.items()]
    if start is not None:
        predicates.append(pl.col(date_column) >= start)
    if end is not None:
        predicates.append(pl.col(date_column) <= end)

    if not predicates:
        return frame
    return frame.filter(pl.all_horizontal(predicates))


class HierarchicalAggregator:
    """
    Aggregates derived lines into AggregateRows.

    Example:
        aggregator = HierarchicalAggregator()
        by_category = aggregator.aggregate(lines, by="category")
        by_state_cohort = aggregator.aggregate(lines, by=["state", "cohort_bucket"],
                                               sort_by="total_revenue")
    """

    def __init__(self, decimals: int = 2, max_workers: int = 1):
        self.decimals = decimals
        self.max_workers = max_workers

    def aggregate_partial(self, frame: pl.DataFrame, by: Union[str, Sequence[str]]) -> pl.DataFrame:
        """Sums and ratio sum/count per key, mergeable across partitions"""
        keys = _as_list(by)
        aggs = [
            pl.col("revenue").sum().alias("total_revenue"),
            pl.col("cost").sum().alias("total_cost"),
            pl.col("profit").sum().alias("total_profit"),
            pl.col("quantity").sum().cast(pl.Int64).alias("total_quantity"),
            pl.len().cast(pl.Int64).alias("item_count"),
            pl.col("margin_ratio").sum().alias("margin_sum"),
            pl.col("margin_ratio").count().cast(pl.Int64).alias("margin_count"),
        ]
        return _group(frame, keys, aggs)

    def merge_partials(
        self,
        partials: Iterable[pl.DataFrame],
        by: Union[str, Sequence[str]],
    ) -> pl.DataFrame:
        """Combine partial aggregates sharing the same key columns"""
        keys = _as_list(by)
        partials = list(partials)
        if not partials:
            raise ValueError("No partial aggregates to merge")

        combined = pl.concat(partials, how="vertical_relaxed")
        return _group(combined, keys, [pl.col(c).sum() for c in PARTIAL_COLUMNS])

    def finalize(
        self,
        partial: pl.DataFrame,
        by: Union[str, Sequence[str]],
        sort_by: Optional[str] = "total_profit",
        descending: bool = True,
    ) -> pl.DataFrame:
        """Turn a partial aggregate into presentation-ready AggregateRows"""
        keys = _as_list(by)
        result = partial.with_columns(
            [pl.col(c).round(self.decimals) for c in CURRENCY_TOTALS]
            + [
                pl.when(pl.col("margin_count") > 0)
                .then(pl.col("margin_sum") / pl.col("margin_count"))
                .otherwise(None)
                .alias("avg_margin")
            ]
        ).select(keys + AGGREGATE_COLUMNS)

        return sort_rows(result, keys, sort_by=sort_by, descending=descending)

    def aggregate(
        self,
        frame: pl.DataFrame,
        by: Union[str, Sequence[str]],
        sort_by: Optional[str] = "total_profit",
        descending: bool = True,
        partition_by: Union[str, Sequence[str], None] = None,
    ) -> pl.DataFrame:
        """
        Aggregate derived lines by one or more dimension columns.

        Args:
            frame: Derived (and enriched) order lines
            by: Key column(s)
            sort_by: Presentation metric, None for key order
            descending: Sort direction of the metric
            partition_by: Column(s) to split on when max_workers > 1;
                ignored by a single-threaded aggregator

        Returns:
            One row per distinct key with total_revenue, total_cost,
            total_profit, avg_margin, item_count and total_quantity
        """
        keys = _as_list(by)
        missing = [k for k in keys if k not in frame.columns]
        if missing:
            raise ValueError(f"Grouping columns not in frame: {missing}")

        if partition_by is not None and self.max_workers > 1:
            return self.aggregate_partitioned(frame, keys, partition_by, sort_by, descending)

        result = self.finalize(self.aggregate_partial(frame, keys), keys, sort_by, descending)
        logger.debug("Aggregated lines", by=keys, lines=len(frame), groups=len(result))
        return result

    def aggregate_partitioned(
        self,
        frame: pl.DataFrame,
        by: Union[str, Sequence[str]],
        partition_by: Union[str, Sequence[str]],
        sort_by: Optional[str] = "total_profit",
        descending: bool = True,
    ) -> pl.DataFrame:
        """
        Aggregate each partition separately and merge the partials.

        Produces the same rows as `aggregate`; partitions run on a thread
        pool of `max_workers`.
        """
        keys = _as_list(by)
        if len(frame) == 0:
            return self.aggregate(frame, keys, sort_by, descending)

        parts = frame.partition_by(_as_list(partition_by))

        if self.max_workers > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                partials = list(executor.map(lambda p: self.aggregate_partial(p, keys), parts))
        else:
            partials = [self.aggregate_partial(p, keys) for p in parts]

        logger.debug("Merging partial aggregates", partitions=len(parts), by=keys)
        return self.finalize(self.merge_partials(partials, keys), keys, sort_by, descending)

    def revenue_summary(
        self,
        frame: pl.DataFrame,
        by: Union[str, Sequence[str]],
    ) -> pl.DataFrame:
        """Revenue-only view: total_items, total_revenue, avg_revenue_per_item"""
        keys = _as_list(by)
        result = _group(frame, keys, [
            pl.len().cast(pl.Int64).alias("total_items"),
            pl.col("revenue").sum().round(self.decimals).alias("total_revenue"),
            pl.col("revenue").mean().round(self.decimals).alias("avg_revenue_per_item"),
        ])
        return sort_rows(result, keys, sort_by="total_revenue")


def count_customers(
    customers: pl.DataFrame,
    by: Union[str, Sequence[str]] = "country",
    **equals: Any,
) -> pl.DataFrame:
    """
    Count distinct customers per key, largest first.

    Example:
        states = count_customers(customers, by="state", country="United States")
    """
    keys = _as_list(by)
    if equals:
        customers = customers.filter(
            pl.all_horizontal([pl.col(c) == v for c, v in equals.items()])
        )

    result = _group(customers, keys, [
        pl.col("customer_id").n_unique().cast(pl.Int64).alias("customer_count"),
    ])
    return sort_rows(result, keys, sort_by="customer_count")


def aggregate(
    frame: pl.DataFrame,
    by: Union[str, Sequence[str]],
    sort_by: Optional[str] = "total_profit",
    descending: bool = True,
    decimals: int = 2,
) -> pl.DataFrame:
    """Convenience function around HierarchicalAggregator.aggregate"""
    return HierarchicalAggregator(decimals=decimals).aggregate(frame, by, sort_by, descending)
