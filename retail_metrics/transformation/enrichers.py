"""
Dimension Enrichment Module

Joins derived order lines against the product hierarchy
(product -> subcategory -> category) and the customer hierarchy
(customer -> state -> country).

Facts whose key has no dimension row are kept under the unknown label and
reported as an UnmappedDimension warning; they are never dropped.
"""

import warnings
from typing import List, Optional

import polars as pl
import structlog

from retail_metrics.exceptions import UnmappedDimension
from retail_metrics.models import CUSTOMER_COLUMNS, PRODUCT_COLUMNS

logger = structlog.get_logger(__name__)


class DataEnricher:
    """
    Attaches hierarchy attributes to derived lines.

    Example:
        enricher = DataEnricher()
        lines = enricher.attach_products(lines, products_df)
        lines = enricher.attach_customers(lines, customers_df)
    """

    def __init__(self, unknown_label: str = "Unknown"):
        self.unknown_label = unknown_label

    def _attach(
        self,
        frame: pl.DataFrame,
        dimension: pl.DataFrame,
        key: str,
        label_columns: List[str],
        extra_columns: Optional[List[str]] = None,
        dimension_name: str = "dimension",
    ) -> pl.DataFrame:
        """Left-join a dimension and label unmatched facts"""
        columns = [key] + label_columns + (extra_columns or [])
        present = [c for c in columns if c in dimension.columns]
        dim = dimension.select(present)

        # Re-enrichment replaces earlier attributes
        frame = frame.drop([c for c in present if c != key and c in frame.columns])

        unmatched = frame.join(dim, on=key, how="anti")
        if len(unmatched) > 0:
            missing_keys = unmatched[key].unique().to_list()
            logger.warning(
                f"Unmapped {dimension_name} keys",
                dimension=dimension_name,
                missing_keys=len(missing_keys),
                affected_lines=len(unmatched),
            )
            warnings.warn(
                f"{len(unmatched)} lines reference {len(missing_keys)} unknown "
                f"{dimension_name} keys; grouped under '{self.unknown_label}'",
                UnmappedDimension,
                stacklevel=3,
            )

        # m:1 rejects a dimension that is not a strict tree on its key
        enriched = frame.join(dim, on=key, how="left", validate="m:1")

        fills = [
            pl.col(c).fill_null(pl.lit(self.unknown_label)).alias(c)
            for c in label_columns
            if c in enriched.columns
        ]
        missing = [
            pl.lit(self.unknown_label).alias(c)
            for c in label_columns
            if c not in enriched.columns
        ]
        return enriched.with_columns(fills + missing)

    def attach_products(self, frame: pl.DataFrame, products: pl.DataFrame) -> pl.DataFrame:
        """Add product_name, subcategory and category"""
        return self._attach(
            frame,
            products,
            key="product_id",
            label_columns=PRODUCT_COLUMNS[1:],
            dimension_name="product",
        )

    def attach_customers(self, frame: pl.DataFrame, customers: pl.DataFrame) -> pl.DataFrame:
        """Add state, country and acquisition_date"""
        return self._attach(
            frame,
            customers,
            key="customer_id",
            label_columns=["state", "country"],
            extra_columns=CUSTOMER_COLUMNS[3:] + ["cohort_year", "cohort_bucket"],
            dimension_name="customer",
        )


def enrich_lines(
    frame: pl.DataFrame,
    products: Optional[pl.DataFrame] = None,
    customers: Optional[pl.DataFrame] = None,
    unknown_label: str = "Unknown",
) -> pl.DataFrame:
    """
    Convenience function to attach both hierarchies.

    Args:
        frame: Derived order lines
        products: Product dimension
        customers: Customer dimension (optionally already cohort-tagged)
        unknown_label: Label for unmatched keys

    Returns:
        Enriched frame
    """
    enricher = DataEnricher(unknown_label=unknown_label)

    if products is not None:
        frame = enricher.attach_products(frame, products)
    if customers is not None:
        frame = enricher.attach_customers(frame, customers)

    return frame
