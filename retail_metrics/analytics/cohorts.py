"""
Cohort Segmentation Module

Assigns customers to acquisition-year buckets and rolls their order lines
up per bucket.

Buckets are closed-closed year ranges that must be contiguous and
non-overlapping; a bad scheme is rejected when it is built. Customers whose
acquisition year falls outside every range (or is missing) are tagged with
the unbucketed sentinel and stay in every total.
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import polars as pl
import structlog

from retail_metrics.analytics.aggregator import HierarchicalAggregator, sort_rows
from retail_metrics.config.settings import DEFAULT_COHORT_BUCKETS
from retail_metrics.exceptions import ConfigurationError
from retail_metrics.transformation.enrichers import DataEnricher

logger = structlog.get_logger(__name__)


UNBUCKETED = "unbucketed"

_RANGE_PATTERN = re.compile(r"^\s*(\d{4})\s*-\s*(\d{4})\s*$")


@dataclass(frozen=True)
class CohortBucket:
    """Closed-closed range of acquisition years"""
    start_year: int
    end_year: int

    @property
    def label(self) -> str:
        return f"{self.start_year}-{self.end_year}"

    def contains(self, year: int) -> bool:
        return self.start_year <= year <= self.end_year


class CohortScheme:
    """
    Validated, ordered set of cohort buckets.

    Example:
        scheme = CohortScheme.from_labels(["1980-1985", "1986-1990"])
        scheme.labels  # ['1980-1985', '1986-1990', 'unbucketed']
    """

    def __init__(self, buckets: Sequence[CohortBucket], unbucketed_label: str = UNBUCKETED):
        if not buckets:
            raise ConfigurationError("Cohort scheme needs at least one bucket")

        ordered = sorted(buckets, key=lambda b: (b.start_year, b.end_year))
        for bucket in ordered:
            if bucket.start_year > bucket.end_year:
                raise ConfigurationError(f"Cohort bucket {bucket.label} starts after it ends")

        for previous, current in zip(ordered, ordered[1:]):
            if current.start_year <= previous.end_year:
                raise ConfigurationError(
                    f"Cohort buckets {previous.label} and {current.label} overlap"
                )
            if current.start_year > previous.end_year + 1:
                raise ConfigurationError(
                    f"Gap between cohort buckets {previous.label} and {current.label}"
                )

        if unbucketed_label in {b.label for b in ordered}:
            raise ConfigurationError(f"Sentinel '{unbucketed_label}' collides with a bucket label")

        self.buckets: List[CohortBucket] = ordered
        self.unbucketed_label = unbucketed_label

    @classmethod
    def from_labels(cls, labels: Sequence[str], unbucketed_label: str = UNBUCKETED) -> "CohortScheme":
        """Parse 'start-end' labels such as '1980-1985' or '1980 - 1985'"""
        buckets = []
        for label in labels:
            match = _RANGE_PATTERN.match(label)
            if not match:
                raise ConfigurationError(f"Invalid cohort range '{label}', expected 'YYYY-YYYY'")
            buckets.append(CohortBucket(int(match.group(1)), int(match.group(2))))
        return cls(buckets, unbucketed_label=unbucketed_label)

    @classmethod
    def default(cls) -> "CohortScheme":
        return cls.from_labels(DEFAULT_COHORT_BUCKETS)

    @property
    def labels(self) -> List[str]:
        """Bucket labels in chronological order, sentinel last"""
        return [b.label for b in self.buckets] + [self.unbucketed_label]

    @property
    def first_year(self) -> int:
        return self.buckets[0].start_year

    @property
    def last_year(self) -> int:
        return self.buckets[-1].end_year

    def __len__(self) -> int:
        return len(self.buckets)

    def __repr__(self) -> str:
        return f"CohortScheme({[b.label for b in self.buckets]!r})"


class CohortSegmenter:
    """
    Tags customers with their acquisition cohort.

    Example:
        segmenter = CohortSegmenter(CohortScheme.default())
        tagged = segmenter.assign(customers_df)
        totals = segmenter.cohort_totals(lines_df, customers_df, by=["state"])
    """

    def __init__(
        self,
        scheme: Optional[CohortScheme] = None,
        aggregator: Optional[HierarchicalAggregator] = None,
        unknown_label: str = "Unknown",
    ):
        self.scheme = scheme or CohortScheme.default()
        self.aggregator = aggregator or HierarchicalAggregator()
        self.unknown_label = unknown_label

    def bucket_for(self, year: Optional[int]) -> str:
        """Bucket label for an acquisition year"""
        if year is not None:
            for bucket in self.scheme.buckets:
                if bucket.contains(year):
                    return bucket.label
        return self.scheme.unbucketed_label

    def bucket_expr(self, year_column: str = "cohort_year") -> pl.Expr:
        """Polars expression mapping a year column to bucket labels"""
        buckets = self.scheme.buckets
        expr = pl.when(pl.col(year_column).is_between(buckets[0].start_year, buckets[0].end_year))
        expr = expr.then(pl.lit(buckets[0].label))
        for bucket in buckets[1:]:
            expr = expr.when(
                pl.col(year_column).is_between(bucket.start_year, bucket.end_year)
            ).then(pl.lit(bucket.label))
        return expr.otherwise(pl.lit(self.scheme.unbucketed_label))

    def assign(
        self,
        customers: pl.DataFrame,
        date_column: str = "acquisition_date",
    ) -> pl.DataFrame:
        """
        Add cohort_year and cohort_bucket to a customer frame.

        Args:
            customers: Customer rows with an acquisition date
            date_column: Date or datetime column holding the acquisition date

        Returns:
            Customer frame with cohort_year (null when the date is missing)
            and cohort_bucket
        """
        tagged = customers.with_columns(
            pl.col(date_column).dt.year().cast(pl.Int32).alias("cohort_year")
        ).with_columns(
            self.bucket_expr("cohort_year").alias("cohort_bucket")
        )

        unbucketed = tagged.filter(pl.col("cohort_bucket") == self.scheme.unbucketed_label)
        if len(unbucketed) > 0:
            logger.info(
                "Customers outside configured cohort ranges",
                customers=len(unbucketed),
                label=self.scheme.unbucketed_label,
            )

        return tagged

    def mapping(self, customers: pl.DataFrame, date_column: str = "acquisition_date") -> Dict:
        """customer_id -> cohort bucket"""
        tagged = self.assign(customers, date_column=date_column)
        return dict(zip(tagged["customer_id"].to_list(), tagged["cohort_bucket"].to_list()))

    def order_by_bucket(self, frame: pl.DataFrame, then_by: Sequence[str] = ()) -> pl.DataFrame:
        """Sort rows chronologically by cohort_bucket, sentinel last"""
        order = pl.DataFrame({
            "cohort_bucket": self.scheme.labels,
            "_bucket_order": list(range(len(self.scheme.labels))),
        })
        return (
            frame.join(order, on="cohort_bucket", how="left")
            .sort(["_bucket_order"] + list(then_by), nulls_last=True)
            .drop("_bucket_order")
        )

    def tag_lines(self, lines: pl.DataFrame, customers: pl.DataFrame) -> pl.DataFrame:
        """Join each line with its customer's state, country and cohort"""
        if "cohort_bucket" not in customers.columns:
            customers = self.assign(customers)

        enricher = DataEnricher(unknown_label=self.unknown_label)
        tagged = enricher.attach_customers(lines, customers)

        # Lines of unknown customers have no acquisition date either
        return tagged.with_columns(
            pl.col("cohort_bucket").fill_null(pl.lit(self.scheme.unbucketed_label))
        )

    def cohort_totals(
        self,
        lines: pl.DataFrame,
        customers: Optional[pl.DataFrame] = None,
        by: Sequence[str] = (),
        sort_by: Optional[str] = None,
        descending: bool = True,
    ) -> pl.DataFrame:
        """
        Aggregate derived lines per cohort bucket.

        Args:
            lines: Derived order lines; already cohort-tagged when customers is None
            customers: Customer dimension to tag lines with
            by: Extra key columns, e.g. ["state"]
            sort_by: Metric to sort on; None keeps chronological bucket order

        Returns:
            AggregateRows keyed by cohort_bucket plus the extra keys
        """
        if customers is not None:
            lines = self.tag_lines(lines, customers)
        elif "cohort_bucket" not in lines.columns:
            raise ValueError("Lines are not cohort-tagged and no customers were given")

        keys = ["cohort_bucket"] + list(by)
        result = self.aggregator.aggregate(lines, keys, sort_by=None, partition_by="cohort_bucket")

        if sort_by is None:
            return self.order_by_bucket(result, then_by=list(by))
        return sort_rows(result, keys, sort_by=sort_by, descending=descending)
