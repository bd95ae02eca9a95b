"""
Unit Tests - Aggregation, Cohorts, Ranking and Pivots
"""
import warnings
from datetime import date

import pytest
import polars as pl

from retail_metrics.analytics.aggregator import (
    HierarchicalAggregator,
    aggregate,
    count_customers,
    filter_lines,
)
from retail_metrics.analytics.cohorts import CohortBucket, CohortScheme, CohortSegmenter
from retail_metrics.analytics.pivot import TimePivotBuilder, monthly_stream, pivot_totals
from retail_metrics.analytics.ranking import TiePolicy, TopNRanker, top_states
from retail_metrics.exceptions import ConfigurationError, UnmappedDimension
from retail_metrics.transformation.deriver import FinancialLineDeriver
from retail_metrics.transformation.enrichers import enrich_lines


@pytest.fixture
def derived_lines(sample_sales_df, sample_products_df, sample_customers_df) -> pl.DataFrame:
    """Derived, enriched, cohort-tagged sample lines"""
    frame, _ = FinancialLineDeriver().derive_frame(sample_sales_df)
    customers = CohortSegmenter().assign(sample_customers_df)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", UnmappedDimension)
        return enrich_lines(frame, sample_products_df, customers)


def rows_by(frame: pl.DataFrame, key: str) -> dict:
    return {row[key]: row for row in frame.iter_rows(named=True)}


class TestHierarchicalAggregator:
    """Tests for HierarchicalAggregator"""

    def test_worked_example(self):
        """Test totals and per-line margin average of the reference lines"""
        lines = pl.DataFrame({
            "category": ["A", "A"],
            "revenue": [200.0, 50.0],
            "cost": [60.0, 45.0],
            "profit": [140.0, 5.0],
            "quantity": [2, 1],
            "margin_ratio": [0.70, 0.10],
        })

        result = aggregate(lines, by="category")
        row = result.row(0, named=True)

        assert row["total_revenue"] == 250.0
        assert row["total_cost"] == 105.0
        assert row["total_profit"] == 145.0
        assert row["avg_margin"] == pytest.approx(0.40)
        assert row["item_count"] == 2
        assert row["total_quantity"] == 3

    def test_avg_margin_is_mean_of_line_ratios(self):
        """Test avg_margin differs from total_profit / total_revenue"""
        lines = pl.DataFrame({
            "category": ["A", "A"],
            "revenue": [1000.0, 10.0],
            "cost": [900.0, 1.0],
            "profit": [100.0, 9.0],
            "quantity": [1, 1],
            "margin_ratio": [0.1, 0.9],
        })

        row = aggregate(lines, by="category").row(0, named=True)

        assert row["avg_margin"] == pytest.approx(0.5)
        assert row["total_profit"] / row["total_revenue"] != pytest.approx(0.5)

    def test_zero_revenue_lines_excluded_from_margin(self):
        """Test null ratios count as items but not in the margin mean"""
        lines = pl.DataFrame({
            "category": ["A", "A", "B"],
            "revenue": [100.0, 0.0, 0.0],
            "cost": [40.0, 5.0, 5.0],
            "profit": [60.0, -5.0, -5.0],
            "quantity": [1, 1, 1],
            "margin_ratio": [0.6, None, None],
        })

        result = rows_by(aggregate(lines, by="category"), "category")

        assert result["A"]["item_count"] == 2
        assert result["A"]["avg_margin"] == pytest.approx(0.6)
        assert result["B"]["avg_margin"] is None

    def test_category_rollup(self, derived_lines):
        """Test category totals sorted by profit"""
        result = HierarchicalAggregator().aggregate(derived_lines, "category")

        assert result["category"].to_list() == ["Computers", "Cameras", "Audio", "Unknown"]
        computers = result.row(0, named=True)
        assert computers["total_revenue"] == 700.0
        assert computers["total_cost"] == 360.0
        assert computers["total_profit"] == 340.0
        assert computers["avg_margin"] == pytest.approx(0.5)
        assert computers["item_count"] == 3

    def test_children_sum_to_parent(self, derived_lines):
        """Test subcategory totals add up to their category"""
        aggregator = HierarchicalAggregator()
        parents = rows_by(aggregator.aggregate(derived_lines, "category"), "category")
        children = aggregator.aggregate(derived_lines, ["category", "subcategory"])

        for category, parent in parents.items():
            subset = children.filter(pl.col("category") == category)
            assert subset["total_revenue"].sum() == pytest.approx(parent["total_revenue"])
            assert subset["total_profit"].sum() == pytest.approx(parent["total_profit"])
            assert subset["item_count"].sum() == parent["item_count"]

    def test_ties_broken_by_key(self):
        """Test equal metrics sort by key ascending"""
        lines = pl.DataFrame({
            "category": ["b", "c", "a"],
            "revenue": [10.0, 10.0, 10.0],
            "cost": [5.0, 5.0, 5.0],
            "profit": [5.0, 5.0, 5.0],
            "quantity": [1, 1, 1],
            "margin_ratio": [0.5, 0.5, 0.5],
        })

        result = aggregate(lines, by="category")

        assert result["category"].to_list() == ["a", "b", "c"]

    def test_partitioned_matches_direct(self, derived_lines):
        """Test partition fan-out and merge preserve line-ratio averaging"""
        aggregator = HierarchicalAggregator(max_workers=3)

        direct = aggregator.aggregate(derived_lines, "category")
        merged = aggregator.aggregate_partitioned(derived_lines, "category", partition_by="country")

        assert merged["category"].to_list() == direct["category"].to_list()
        assert merged["total_revenue"].to_list() == pytest.approx(direct["total_revenue"].to_list())
        assert merged["avg_margin"].to_list() == pytest.approx(direct["avg_margin"].to_list())
        assert merged["item_count"].to_list() == direct["item_count"].to_list()

    def test_partition_hint_uses_workers(self, derived_lines):
        """Test a partition hint fans out only when more than one worker is configured"""
        serial = HierarchicalAggregator().aggregate(derived_lines, ["category", "subcategory"], partition_by="category")
        threaded = HierarchicalAggregator(max_workers=4).aggregate(
            derived_lines, ["category", "subcategory"], partition_by="category"
        )

        assert threaded.columns == serial.columns
        assert threaded["subcategory"].to_list() == serial["subcategory"].to_list()
        assert threaded["total_profit"].to_list() == pytest.approx(serial["total_profit"].to_list())
        assert threaded["avg_margin"].to_list() == pytest.approx(serial["avg_margin"].to_list())

    def test_revenue_summary(self, derived_lines):
        """Test revenue-only view"""
        result = HierarchicalAggregator().revenue_summary(derived_lines, "category")
        computers = rows_by(result, "category")["Computers"]

        assert computers["total_items"] == 3
        assert computers["total_revenue"] == 700.0
        assert computers["avg_revenue_per_item"] == pytest.approx(233.33)

    def test_filter_lines(self, derived_lines):
        """Test hierarchy and date filters"""
        desktops = filter_lines(derived_lines, category="Computers", subcategory="Desktops")
        early = filter_lines(derived_lines, end=date(2023, 12, 31))

        assert sorted(desktops["order_id"].to_list()) == [1, 4]
        assert len(early) == 3

    def test_unknown_grouping_column(self, derived_lines):
        """Test grouping by a missing column fails"""
        with pytest.raises(ValueError):
            aggregate(derived_lines, by="region")

    def test_count_customers(self, sample_customers_df):
        """Test distinct customer counts per state"""
        result = count_customers(sample_customers_df, by="state", country="United States")

        assert result["state"].to_list() == ["California", "Texas"]
        assert result["customer_count"].to_list() == [3, 1]


class TestCohortScheme:
    """Tests for CohortScheme"""

    def test_default_scheme(self):
        """Test default five-year buckets"""
        scheme = CohortScheme.default()

        assert len(scheme) == 8
        assert scheme.first_year == 1980
        assert scheme.last_year == 2020
        assert scheme.labels[-1] == "unbucketed"

    def test_accepts_spaced_labels(self):
        """Test ranges written as '1980 - 1985'"""
        scheme = CohortScheme.from_labels(["1986 - 1990", "1980 - 1985"])

        assert scheme.labels == ["1980-1985", "1986-1990", "unbucketed"]

    @pytest.mark.parametrize("labels", [
        [],
        ["1980-1986", "1986-1990"],
        ["1980-1985", "1987-1990"],
        ["1990-1985"],
        ["eighties"],
    ])
    def test_invalid_schemes(self, labels):
        """Test overlapping, gapped, inverted and malformed ranges"""
        with pytest.raises(ConfigurationError):
            CohortScheme.from_labels(labels)

    def test_sentinel_collision(self):
        """Test the sentinel cannot reuse a bucket label"""
        with pytest.raises(ConfigurationError):
            CohortScheme([CohortBucket(1980, 1985)], unbucketed_label="1980-1985")


class TestCohortSegmenter:
    """Tests for CohortSegmenter"""

    def test_bucket_for(self):
        """Test closed-closed bucket edges and the sentinel"""
        segmenter = CohortSegmenter(CohortScheme.from_labels(["1980-1985", "1986-1990"]))

        assert segmenter.bucket_for(1980) == "1980-1985"
        assert segmenter.bucket_for(1985) == "1980-1985"
        assert segmenter.bucket_for(1986) == "1986-1990"
        assert segmenter.bucket_for(1979) == "unbucketed"
        assert segmenter.bucket_for(None) == "unbucketed"

    def test_assign(self, sample_customers_df):
        """Test every customer gets exactly one bucket"""
        tagged = CohortSegmenter().assign(sample_customers_df)

        assert len(tagged) == len(sample_customers_df)
        assert tagged["cohort_bucket"].null_count() == 0
        assert dict(zip(tagged["customer_id"].to_list(), tagged["cohort_bucket"].to_list())) == {
            100: "1980-1985",
            101: "unbucketed",
            102: "2001-2005",
            103: "2016-2020",
            104: "unbucketed",
        }

    def test_assign_matches_bucket_for(self):
        """Test the frame expression and scalar lookup agree on every year"""
        segmenter = CohortSegmenter()
        years = list(range(1970, 2031))
        customers = pl.DataFrame({
            "customer_id": years,
            "acquisition_date": [date(y, 7, 1) for y in years],
        })

        tagged = segmenter.assign(customers)

        assert tagged["cohort_bucket"].to_list() == [segmenter.bucket_for(y) for y in years]

    def test_cohort_totals(self, sample_sales_df, sample_customers_df):
        """Test per-cohort totals keep unbucketed customers"""
        frame, _ = FinancialLineDeriver().derive_frame(sample_sales_df)

        result = CohortSegmenter().cohort_totals(frame, sample_customers_df)

        assert result["cohort_bucket"].to_list() == ["1980-1985", "2001-2005", "2016-2020", "unbucketed"]
        totals = rows_by(result, "cohort_bucket")
        assert totals["1980-1985"]["total_revenue"] == 260.0
        assert totals["1980-1985"]["total_profit"] == 151.0
        assert totals["1980-1985"]["total_quantity"] == 4
        assert totals["unbucketed"]["total_revenue"] == 500.0
        assert result["total_revenue"].sum() == pytest.approx(frame["revenue"].sum())

    def test_cohort_totals_by_state(self, derived_lines):
        """Test state x cohort rollup sorted by revenue"""
        result = CohortSegmenter().cohort_totals(derived_lines, by=["state"], sort_by="total_revenue")

        first = result.row(0, named=True)
        assert (first["cohort_bucket"], first["state"]) == ("unbucketed", "California")
        assert result["total_revenue"].to_list() == sorted(result["total_revenue"].to_list(), reverse=True)

    def test_untagged_lines_without_customers(self, sample_sales_df):
        """Test cohort totals need tagged lines or a customer frame"""
        frame, _ = FinancialLineDeriver().derive_frame(sample_sales_df)

        with pytest.raises(ValueError):
            CohortSegmenter().cohort_totals(frame)


class TestTopNRanker:
    """Tests for TopNRanker"""

    @pytest.fixture
    def category_by_cohort(self) -> pl.DataFrame:
        return pl.DataFrame({
            "cohort_bucket": ["1980-1985"] * 3 + ["1986-1990"] * 3,
            "category": ["Audio", "Computers", "Cameras", "Audio", "Computers", "Cameras"],
            "total_revenue": [50.0, 300.0, 120.0, 200.0, 200.0, 90.0],
        })

    def test_leader_per_partition(self, category_by_cohort):
        """Test rank 1 beats every other row in its partition"""
        ranker = TopNRanker(metric="total_revenue", key="category", partition_by="cohort_bucket")

        ranked = ranker.rank(category_by_cohort)
        leaders = ranker.top(category_by_cohort)

        for leader in leaders.iter_rows(named=True):
            partition = ranked.filter(pl.col("cohort_bucket") == leader["cohort_bucket"])
            assert leader["total_revenue"] >= partition["total_revenue"].max()
        assert rows_by(leaders.filter(pl.col("cohort_bucket") == "1980-1985"), "category").keys() == {"Computers"}

    def test_competitive_ranks(self, category_by_cohort):
        """Test tied values share a rank and the next rank skips"""
        ranker = TopNRanker(metric="total_revenue", key="category", partition_by="cohort_bucket")

        ranked = ranker.rank(category_by_cohort).filter(pl.col("cohort_bucket") == "1986-1990")

        assert ranked["category"].to_list() == ["Audio", "Computers", "Cameras"]
        assert ranked["rank"].to_list() == [1, 1, 3]

    def test_ties_return_all_leaders(self, category_by_cohort):
        """Test TiePolicy.ALL keeps every tied leader"""
        ranker = TopNRanker(metric="total_revenue", key="category", partition_by="cohort_bucket")

        leaders = ranker.top(category_by_cohort).filter(pl.col("cohort_bucket") == "1986-1990")

        assert leaders["category"].to_list() == ["Audio", "Computers"]

    def test_ties_broken_by_key(self, category_by_cohort):
        """Test TiePolicy.KEY_ASCENDING picks one leader deterministically"""
        ranker = TopNRanker(
            metric="total_revenue",
            key="category",
            partition_by="cohort_bucket",
            tie_policy=TiePolicy.KEY_ASCENDING,
        )

        leaders = ranker.top(category_by_cohort)

        assert leaders["cohort_bucket"].to_list() == ["1980-1985", "1986-1990"]
        assert leaders["category"].to_list() == ["Computers", "Audio"]
        assert leaders["rank"].to_list() == [1, 1]

    def test_global_ranking(self, category_by_cohort):
        """Test ranking without partitions"""
        leaders = TopNRanker(metric="total_revenue", key="category", top_n=2).top(category_by_cohort)

        assert leaders["total_revenue"].to_list() == [300.0, 200.0, 200.0]

    @pytest.mark.parametrize("kwargs", [
        {"metric": "", "key": "category"},
        {"metric": "  ", "key": "category"},
        {"metric": "total_revenue", "key": []},
        {"metric": "total_revenue", "key": "category", "top_n": 0},
        {"metric": "total_revenue", "key": "category", "tie_policy": "random"},
    ])
    def test_invalid_configuration(self, kwargs):
        """Test bad ranking options fail at construction"""
        with pytest.raises(ConfigurationError):
            TopNRanker(**kwargs)

    def test_missing_metric_column(self, category_by_cohort):
        """Test ranking on an absent metric fails"""
        with pytest.raises(ConfigurationError):
            TopNRanker(metric="total_profit", key="category").top(category_by_cohort)

    def test_top_states(self, sample_customers_df):
        """Test data-driven top states"""
        assert top_states(sample_customers_df, n=1)["state"].to_list() == ["California"]

        tied = top_states(sample_customers_df, n=2)
        assert tied["state"].to_list() == ["California", "Bavaria", "Texas"]

        single = top_states(sample_customers_df, n=2, tie_policy="key_ascending")
        assert single["state"].to_list() == ["California", "Bavaria"]


class TestTimePivotBuilder:
    """Tests for TimePivotBuilder"""

    @pytest.fixture
    def stream(self) -> pl.DataFrame:
        return pl.DataFrame({
            "year": [2023, 2023, 2023, 2024, 2024],
            "month": [1, 1, 2, 1, 3],
            "profit": [100.0, 45.0, 0.0, -20.0, 60.0],
        })

    def test_build(self, stream):
        """Test month rows by year columns with summed cells"""
        matrix = TimePivotBuilder().build(stream)

        assert matrix.columns == ["month", "2023", "2024"]
        assert matrix["month"].to_list() == [1, 2, 3]
        assert matrix["2023"].to_list() == [145.0, 0.0, None]
        assert matrix["2024"].to_list() == [-20.0, None, 60.0]

    def test_missing_cells_are_null_not_zero(self, stream):
        """Test absent combinations differ from zero-profit sales"""
        matrix = TimePivotBuilder().build(stream)
        february = matrix.filter(pl.col("month") == 2).row(0, named=True)

        assert february["2023"] == 0.0
        assert february["2024"] is None

    def test_cells_sum_to_input(self, stream):
        """Test the matrix conserves the metric total"""
        matrix = TimePivotBuilder().build(stream)

        assert pivot_totals(matrix) == pytest.approx(stream["profit"].sum())

    def test_explicit_periods(self, stream):
        """Test a fixed column set independent of the data"""
        matrix = TimePivotBuilder(periods=[2022, 2023], sub_periods=range(1, 13)).build(stream)

        assert matrix.columns == ["month", "2022", "2023"]
        assert len(matrix) == 12
        assert matrix["2022"].null_count() == 12
        assert matrix["2023"].to_list()[:3] == [145.0, 0.0, None]

    def test_monthly_stream(self, derived_lines):
        """Test year/month stream from derived lines"""
        stream = monthly_stream(derived_lines)
        matrix = TimePivotBuilder(sub_periods=range(1, 13)).build(stream)

        assert matrix.columns == ["month", "2023", "2024"]
        assert matrix["2023"].to_list()[:2] == [145.0, 160.0]
        assert matrix["2024"].to_list()[:3] == [45.0, None, 106.0]
        assert pivot_totals(matrix) == pytest.approx(456.0)

    def test_rows_without_period_are_counted(self):
        """Test null years and months are reported, keeping the total balanced"""
        stream = pl.DataFrame({
            "year": [2023, None, 2023],
            "month": [1, 1, None],
            "profit": [100.0, 50.0, 7.0],
        })

        matrix, stats = TimePivotBuilder().build_with_stats(stream)

        assert matrix.columns == ["month", "2023"]
        assert matrix["2023"].to_list() == [100.0]
        assert stats.undated_rows == 2
        assert stats.undated_total == pytest.approx(57.0)
        assert pivot_totals(matrix) + stats.dropped_total == pytest.approx(157.0)

    def test_explicit_periods_accounting(self, stream):
        """Test rows outside pinned periods are counted as dropped"""
        matrix, stats = TimePivotBuilder(periods=[2023]).build_with_stats(stream)

        assert stats.out_of_period_rows == 2
        assert stats.placed_total == pytest.approx(145.0)
        assert stats.placed_total + stats.dropped_total == pytest.approx(stats.input_total)
        assert pivot_totals(matrix) == pytest.approx(stats.placed_total)
