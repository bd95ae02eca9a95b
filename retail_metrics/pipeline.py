"""
Profitability Pipeline

Orchestrates validation, derivation, enrichment and the report queries of
one analysis run. Order lines are derived once per run and every report
reads the same derived frame.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import polars as pl
import structlog
from pydantic import ValidationError

from retail_metrics.analytics.aggregator import (
    HierarchicalAggregator,
    count_customers,
    filter_lines,
)
from retail_metrics.analytics.cohorts import CohortScheme, CohortSegmenter
from retail_metrics.analytics.pivot import PivotStats, TimePivotBuilder, monthly_stream
from retail_metrics.analytics.ranking import TiePolicy, TopNRanker, top_states
from retail_metrics.config import Settings, get_settings
from retail_metrics.exceptions import ConfigurationError, MalformedLine
from retail_metrics.ingestion.source import FileFormat, SourceTable, read_table
from retail_metrics.quality.validators import (
    ValidationResult,
    ValidationStatus,
    create_customers_validator,
    create_order_lines_validator,
    create_products_validator,
)
from retail_metrics.transformation.deriver import FinancialLineDeriver
from retail_metrics.transformation.enrichers import enrich_lines
from retail_metrics.transformation.margins import MarginClassifier

logger = structlog.get_logger(__name__)


@dataclass
class LoadResult:
    """Outcome of loading one run's facts"""
    input_rows: int
    derived_rows: int
    rejected: List[MalformedLine]
    started_at: datetime
    completed_at: datetime
    validation: Dict[str, ValidationStatus] = field(default_factory=dict)
    validation_failures: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def rejected_rows(self) -> int:
        return len(self.rejected)

    @property
    def duration_seconds(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()


class ProfitabilityPipeline:
    """
    Main profitability analysis orchestrator.

    Components are built from settings when the pipeline is constructed,
    so invalid cohort ranges or ranking options fail here rather than
    halfway through a run.

    Example:
        pipeline = ProfitabilityPipeline()
        pipeline.load(sales_df, products_df, customers_df)
        pipeline.category_profitability()
        pipeline.top_category_per_cohort(state="California")
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        scheme: Optional[CohortScheme] = None,
        validate_inputs: bool = True,
    ):
        if settings is None:
            try:
                settings = get_settings()
            except ValidationError as e:
                raise ConfigurationError(f"Invalid settings: {e}") from e
        self.settings = settings
        analytics = self.settings.analytics

        self.scheme = scheme or CohortScheme.from_labels(
            analytics.cohort_buckets,
            unbucketed_label=analytics.unbucketed_label,
        )
        self.unknown_label = analytics.unknown_label
        self.strict_lines = analytics.strict_lines
        self.top_n = analytics.top_n
        self.tie_policy = TiePolicy(analytics.tie_policy)
        self.validate_inputs = validate_inputs

        self.classifier = MarginClassifier()
        self.deriver = FinancialLineDeriver(
            decimals=analytics.currency_decimals,
            convert_currency=analytics.convert_currency,
            classifier=self.classifier,
        )
        self.aggregator = HierarchicalAggregator(
            decimals=analytics.currency_decimals,
            max_workers=analytics.aggregation_workers,
        )
        self.segmenter = CohortSegmenter(
            self.scheme,
            aggregator=self.aggregator,
            unknown_label=self.unknown_label,
        )

        self._lines: Optional[pl.DataFrame] = None
        self._customers: Optional[pl.DataFrame] = None

    def _validate(
        self,
        sales: pl.DataFrame,
        products: pl.DataFrame,
        customers: pl.DataFrame,
    ) -> Dict[str, ValidationResult]:
        results = {
            "order_lines": create_order_lines_validator(products, customers).validate(sales),
            "products": create_products_validator().validate(products),
            "customers": create_customers_validator().validate(customers),
        }
        for table, result in results.items():
            if result.status == ValidationStatus.FAILED:
                logger.error(
                    f"Validation failed for {table}",
                    failed=[c.name for c in result.failures()],
                )
        return results

    def load(
        self,
        sales: pl.DataFrame,
        products: pl.DataFrame,
        customers: pl.DataFrame,
    ) -> LoadResult:
        """
        Derive and enrich one run's order lines.

        Pipeline:
        1. Validate fact and dimension frames
        2. Derive revenue/cost/profit and margin bands
        3. Tag customers with cohorts
        4. Join product and customer hierarchies
        """
        started_at = datetime.now(timezone.utc)
        logger.info(f"Starting profitability load with {len(sales)} order lines")

        checks = self._validate(sales, products, customers) if self.validate_inputs else {}

        self.deriver.clear()
        derived, rejected = self.deriver.derive_frame(sales, strict=self.strict_lines)

        self._customers = self.segmenter.assign(customers)
        lines = enrich_lines(
            derived,
            products=products,
            customers=self._customers,
            unknown_label=self.unknown_label,
        )
        self._lines = lines.with_columns(
            pl.col("cohort_bucket").fill_null(pl.lit(self.scheme.unbucketed_label))
        )

        result = LoadResult(
            input_rows=len(sales),
            derived_rows=len(self._lines),
            rejected=rejected,
            started_at=started_at,
            completed_at=datetime.now(timezone.utc),
            validation={table: r.status for table, r in checks.items()},
            validation_failures={table: [c.name for c in r.failures()] for table, r in checks.items()},
        )
        logger.info(
            "Profitability load complete",
            derived=result.derived_rows,
            rejected=result.rejected_rows,
            duration=f"{result.duration_seconds:.2f}s",
        )
        return result

    def load_files(
        self,
        root: Optional[Union[str, Path]] = None,
        file_format: Optional[FileFormat] = None,
    ) -> LoadResult:
        """
        Read sales, product and customer extracts from a directory and load them.

        Files are expected as ``<table>.<format>`` under ``root``, which
        defaults to the configured data lake path.
        """
        root = Path(root or self.settings.data_lake.lake_path)
        file_format = file_format or FileFormat(self.settings.data_lake.default_format)

        tables = {
            table: read_table(root / f"{table.value}.{file_format.value}", table=table, file_format=file_format)
            for table in SourceTable
        }
        return self.load(
            tables[SourceTable.SALES],
            tables[SourceTable.PRODUCT],
            tables[SourceTable.CUSTOMER],
        )

    @property
    def lines(self) -> pl.DataFrame:
        """Derived, enriched order lines of the current run"""
        if self._lines is None:
            raise RuntimeError("No data loaded; call load() first")
        return self._lines

    @property
    def customers(self) -> pl.DataFrame:
        """Cohort-tagged customer dimension of the current run"""
        if self._customers is None:
            raise RuntimeError("No data loaded; call load() first")
        return self._customers

    def _ranker(self, metric: str, key: str, partition_by: Optional[str] = None) -> TopNRanker:
        return TopNRanker(
            metric=metric,
            key=key,
            partition_by=partition_by,
            top_n=self.top_n,
            tie_policy=self.tie_policy,
        )

    # ------------------------------------------------------------------
    # Profitability
    # ------------------------------------------------------------------

    def margin_bands(self) -> pl.DataFrame:
        """Order-line counts per margin band"""
        return self.classifier.band_distribution(self.lines)

    def unprofitable_lines(self, limit: Optional[int] = None) -> pl.DataFrame:
        """
        Lines that made no profit (profit <= 0), worst first.

        Ties are ordered by (order_id, line_no). Pass limit to keep only the
        first rows, e.g. for a spot check of the loss tail.
        """
        losses = self.lines.filter(pl.col("profit") <= 0).sort(["profit", "order_id", "line_no"])
        if limit is not None:
            losses = losses.head(limit)
        logger.info("Unprofitable lines", lines=len(losses), limit=limit)
        return losses

    def profit_range(self) -> pl.DataFrame:
        """Lowest and highest line profit, one row"""
        return self.lines.select(
            pl.col("profit").min().alias("min_profit"),
            pl.col("profit").max().alias("max_profit"),
        )

    def category_profitability(self) -> pl.DataFrame:
        return self.aggregator.aggregate(self.lines, "category", partition_by="category")

    def category_revenue(self) -> pl.DataFrame:
        return self.aggregator.revenue_summary(self.lines, "category")

    def subcategory_profitability(self, category: Optional[str] = None) -> pl.DataFrame:
        """Subcategory rollup, inside one category when given"""
        if category is None:
            return self.aggregator.aggregate(
                self.lines, ["category", "subcategory"], partition_by="category"
            )
        return self.aggregator.aggregate(
            filter_lines(self.lines, category=category), "subcategory", partition_by="subcategory"
        )

    def country_profitability(
        self,
        category: Optional[str] = None,
        subcategory: Optional[str] = None,
    ) -> pl.DataFrame:
        """Country rollup, optionally for one category/subcategory"""
        filters = {}
        if category is not None:
            filters["category"] = category
        if subcategory is not None:
            filters["subcategory"] = subcategory
        return self.aggregator.aggregate(
            filter_lines(self.lines, **filters), "country", partition_by="country"
        )

    # ------------------------------------------------------------------
    # Customers and regions
    # ------------------------------------------------------------------

    def customers_by_country(self) -> pl.DataFrame:
        return count_customers(self.customers, by="country")

    def customers_by_state(self, country: Optional[str] = None) -> pl.DataFrame:
        filters = {"country": country} if country is not None else {}
        return count_customers(self.customers, by="state", **filters)

    def top_states(self, n: int = 4, country: Optional[str] = None) -> pl.DataFrame:
        return top_states(self.customers, n=n, country=country, tie_policy=self.tie_policy)

    def state_category_revenue(
        self,
        states: Optional[Sequence[str]] = None,
        n: int = 4,
        country: Optional[str] = None,
    ) -> pl.DataFrame:
        """
        Category spending per state.

        Without an explicit list, the states are the top n by customer
        count.
        """
        if states is None:
            states = self.top_states(n=n, country=country)["state"].to_list()

        lines = self.lines.filter(pl.col("state").is_in(list(states)))
        result = self.aggregator.aggregate(
            lines, ["state", "category"], sort_by=None, partition_by="state"
        )
        return result.sort(
            ["state", "total_revenue", "category"],
            descending=[False, True, False],
        )

    # ------------------------------------------------------------------
    # Cohorts
    # ------------------------------------------------------------------

    def _cohort_lines(self, state: Optional[str] = None) -> pl.DataFrame:
        return filter_lines(self.lines, state=state) if state is not None else self.lines

    def cohort_summary(self, state: Optional[str] = None) -> pl.DataFrame:
        """Totals per cohort bucket in chronological order"""
        return self.segmenter.cohort_totals(self._cohort_lines(state))

    def state_cohort_revenue(self) -> pl.DataFrame:
        """Totals per state and cohort, highest revenue first"""
        return self.segmenter.cohort_totals(self.lines, by=["state"], sort_by="total_revenue")

    def _top_per_cohort(
        self,
        key: str,
        state: Optional[str] = None,
        metric: str = "total_revenue",
    ) -> pl.DataFrame:
        lines = self._cohort_lines(state)
        groups = self.aggregator.aggregate(
            lines, ["cohort_bucket", key], sort_by=None, partition_by="cohort_bucket"
        )
        leaders = self._ranker(metric, key, partition_by="cohort_bucket").top(groups)

        summary = self.segmenter.cohort_totals(lines).select(
            pl.col("cohort_bucket"),
            pl.col("total_revenue").alias("cohort_revenue"),
            pl.col("total_profit").alias("cohort_profit"),
        )
        result = summary.join(
            leaders.select(["cohort_bucket", key, metric, "rank"]),
            on="cohort_bucket",
            how="inner",
        )
        return self.segmenter.order_by_bucket(result, then_by=[key])

    def top_category_per_cohort(
        self,
        state: Optional[str] = None,
        metric: str = "total_revenue",
    ) -> pl.DataFrame:
        """Leading category of every cohort bucket"""
        return self._top_per_cohort("category", state=state, metric=metric)

    def top_product_per_cohort(
        self,
        state: Optional[str] = None,
        metric: str = "total_revenue",
    ) -> pl.DataFrame:
        """Leading product of every cohort bucket"""
        return self._top_per_cohort("product_name", state=state, metric=metric)

    # ------------------------------------------------------------------
    # Seasonality
    # ------------------------------------------------------------------

    def monthly_pivot(
        self,
        metric: str = "profit",
        periods: Optional[Sequence[int]] = None,
    ) -> pl.DataFrame:
        """Month rows by year columns of a line metric"""
        matrix, _ = self.monthly_pivot_with_stats(metric, periods)
        return matrix

    def monthly_pivot_with_stats(
        self,
        metric: str = "profit",
        periods: Optional[Sequence[int]] = None,
    ) -> Tuple[pl.DataFrame, PivotStats]:
        """Monthly pivot plus the count and total of lines it could not place"""
        builder = TimePivotBuilder(
            periods=periods,
            sub_periods=list(range(1, 13)),
            decimals=self.settings.analytics.currency_decimals,
        )
        return builder.build_with_stats(monthly_stream(self.lines, metric), "year", "month", metric)
