"""
Margin Band Classification

Buckets each derived order line by its profit-to-revenue ratio.

Bands are evaluated in order and the first match wins, so every shared edge
belongs to the lower band: a ratio of exactly 0.35 is "25%-35%", exactly
0.75 is "65%-75%". The ratio is the exact Decimal quotient of the rounded
profit and revenue, which keeps edge comparisons free of float error.
"""

from decimal import Decimal
from typing import List, Optional, Tuple

import polars as pl
import structlog

from retail_metrics.models import DerivedLine

logger = structlog.get_logger(__name__)


NO_REVENUE = "No Revenue"

# (inclusive upper edge, label); None marks the open-ended top band
MARGIN_BANDS: List[Tuple[Optional[Decimal], str]] = [
    (None, "< 25%"),
    (Decimal("0.35"), "25%-35%"),
    (Decimal("0.45"), "35%-45%"),
    (Decimal("0.55"), "45%-55%"),
    (Decimal("0.65"), "55%-65%"),
    (Decimal("0.75"), "65%-75%"),
    (None, "> 75%"),
]

LOWEST_EDGE = Decimal("0.25")

BAND_ORDER: List[str] = [NO_REVENUE] + [label for _, label in MARGIN_BANDS]


def margin_ratio(derived: DerivedLine) -> Optional[Decimal]:
    """Profit over revenue, or None when the line has no revenue"""
    if derived.revenue == 0:
        return None
    return derived.profit / derived.revenue


def band_for_ratio(ratio: Optional[Decimal]) -> str:
    """Band label for a ratio; None means the line had no revenue"""
    if ratio is None:
        return NO_REVENUE
    if ratio < LOWEST_EDGE:
        return MARGIN_BANDS[0][1]
    for upper, label in MARGIN_BANDS[1:-1]:
        if ratio <= upper:
            return label
    return MARGIN_BANDS[-1][1]


class MarginClassifier:
    """
    Assigns exactly one margin band per derived line.

    Example:
        classifier = MarginClassifier()
        band = classifier.classify(derived_line)
    """

    bands = BAND_ORDER

    def margin_ratio(self, derived: DerivedLine) -> Optional[Decimal]:
        return margin_ratio(derived)

    def classify(self, derived: DerivedLine) -> str:
        return band_for_ratio(margin_ratio(derived))

    def band_distribution(self, frame: pl.DataFrame) -> pl.DataFrame:
        """
        Count derived lines per margin band.

        Args:
            frame: Derived lines with a margin_band column

        Returns:
            DataFrame of margin_band, item_count in band order; bands with
            no lines are reported with a zero count
        """
        counts = frame.group_by("margin_band").agg(pl.len().alias("item_count"))
        bands = pl.DataFrame({
            "margin_band": BAND_ORDER,
            "band_order": list(range(len(BAND_ORDER))),
        })

        result = (
            bands.join(counts, on="margin_band", how="left")
            .with_columns(pl.col("item_count").fill_null(0).cast(pl.Int64))
            .sort("band_order")
            .drop("band_order")
        )

        logger.debug("Margin band distribution computed", lines=len(frame))
        return result
