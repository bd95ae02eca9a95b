"""
Time Pivot Module

Reshapes a long (period, sub_period, value) stream into a wide matrix with
one row per sub-period and one column per period, e.g. month rows by year
columns for a seasonality heatmap.

A cell with no input rows is null, so a month without sales stays
distinguishable from a month whose sales netted to zero profit.

Rows that cannot be placed (null period or sub-period, or a period outside
an explicit column set) are left out of the matrix, logged, and counted in
PivotStats so that placed_total + dropped_total equals the input total.
"""

from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

import polars as pl
import structlog

logger = structlog.get_logger(__name__)


@dataclass
class PivotStats:
    """Row accounting for one pivot build"""
    input_rows: int
    input_total: float
    placed_rows: int
    placed_total: float
    undated_rows: int = 0
    undated_total: float = 0.0
    out_of_period_rows: int = 0
    out_of_period_total: float = 0.0

    @property
    def dropped_rows(self) -> int:
        return self.undated_rows + self.out_of_period_rows

    @property
    def dropped_total(self) -> float:
        return self.undated_total + self.out_of_period_total


def _value_total(frame: pl.DataFrame, value: str) -> float:
    return float(frame[value].sum() or 0.0)


class TimePivotBuilder:
    """
    Builds period x sub-period matrices.

    Pass `periods` to pin the column set; otherwise columns follow the
    periods observed in the data, which changes as a rolling window moves.

    Example:
        builder = TimePivotBuilder(periods=[2022, 2023, 2024], sub_periods=range(1, 13))
        matrix = builder.build(stream, period="year", sub_period="month", value="profit")
        matrix, stats = builder.build_with_stats(stream)
    """

    def __init__(
        self,
        periods: Optional[Sequence[Any]] = None,
        sub_periods: Optional[Sequence[Any]] = None,
        decimals: Optional[int] = 2,
    ):
        self.periods = list(periods) if periods is not None else None
        self.sub_periods = list(sub_periods) if sub_periods is not None else None
        self.decimals = decimals

    def build(
        self,
        frame: pl.DataFrame,
        period: str = "year",
        sub_period: str = "month",
        value: str = "profit",
    ) -> pl.DataFrame:
        """
        Pivot a long stream into a matrix.

        Args:
            frame: Long-form rows
            period: Column whose values become matrix columns
            sub_period: Column whose values become matrix rows
            value: Metric summed into each cell

        Returns:
            DataFrame with the sub_period column followed by one column per
            period named str(period_value), in period order
        """
        matrix, _ = self.build_with_stats(frame, period, sub_period, value)
        return matrix

    def build_with_stats(
        self,
        frame: pl.DataFrame,
        period: str = "year",
        sub_period: str = "month",
        value: str = "profit",
    ) -> Tuple[pl.DataFrame, PivotStats]:
        """Pivot a long stream and account for every input row"""
        stream = frame.select([period, sub_period, value])
        input_rows, input_total = len(stream), _value_total(stream, value)
        stats = PivotStats(input_rows, input_total, input_rows, input_total)

        undated = stream.filter(pl.col(period).is_null() | pl.col(sub_period).is_null())
        if len(undated) > 0:
            stats.undated_rows = len(undated)
            stats.undated_total = _value_total(undated, value)
            logger.warning(
                "Dropping rows without a period",
                rows=stats.undated_rows,
                total=stats.undated_total,
                period=period,
                sub_period=sub_period,
            )
            stream = stream.filter(pl.col(period).is_not_null() & pl.col(sub_period).is_not_null())

        if self.periods is not None:
            outside = stream.filter(~pl.col(period).is_in(self.periods))
            if len(outside) > 0:
                stats.out_of_period_rows = len(outside)
                stats.out_of_period_total = _value_total(outside, value)
                logger.info(
                    "Dropping rows outside the requested periods",
                    rows=stats.out_of_period_rows,
                    total=stats.out_of_period_total,
                    periods=sorted(set(outside[period].to_list())),
                )
                stream = stream.filter(pl.col(period).is_in(self.periods))
            columns = self.periods
        else:
            columns = sorted(stream[period].unique().to_list())

        if self.sub_periods is not None:
            outside = stream.filter(~pl.col(sub_period).is_in(self.sub_periods))
            if len(outside) > 0:
                stats.out_of_period_rows += len(outside)
                stats.out_of_period_total += _value_total(outside, value)
                logger.info(
                    "Dropping rows outside the requested sub-periods",
                    rows=len(outside),
                    sub_periods=sorted(set(outside[sub_period].to_list())),
                )
                stream = stream.filter(pl.col(sub_period).is_in(self.sub_periods))
            rows: List[Any] = self.sub_periods
        else:
            rows = sorted(stream[sub_period].unique().to_list())

        stats.placed_rows = len(stream)
        stats.placed_total = _value_total(stream, value)

        cells = (
            stream.group_by([sub_period, period])
            .agg(pl.col(value).sum().alias(value))
            .with_columns(pl.col(period).cast(pl.Utf8))
        )
        matrix = pl.DataFrame({sub_period: rows}, schema={sub_period: stream.schema[sub_period]})

        for column in columns:
            cell = cells.filter(pl.col(period) == str(column)).select(
                pl.col(sub_period),
                pl.col(value).alias(str(column)),
            )
            matrix = matrix.join(cell, on=sub_period, how="left")

        if self.decimals is not None:
            matrix = matrix.with_columns(
                [pl.col(str(c)).round(self.decimals) for c in columns]
            )

        logger.debug("Pivot built", rows=len(matrix), columns=len(columns))
        return matrix, stats


def monthly_stream(
    lines: pl.DataFrame,
    metric: str = "profit",
    date_column: str = "order_date",
) -> pl.DataFrame:
    """(year, month, metric) stream from derived lines"""
    return lines.select(
        pl.col(date_column).dt.year().cast(pl.Int32).alias("year"),
        pl.col(date_column).dt.month().cast(pl.Int8).alias("month"),
        pl.col(metric),
    )


def pivot_totals(matrix: pl.DataFrame, sub_period: str = "month") -> float:
    """Sum over every non-null cell"""
    cells = matrix.drop(sub_period)
    if not cells.columns:
        return 0.0
    return float(cells.select(pl.sum_horizontal(pl.all().fill_null(0)).sum()).item())
