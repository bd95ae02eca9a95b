"""
Source Table Adapter

Reads the sales fact and the product/customer dimensions from CSV or
Parquet extracts and renames the source warehouse columns to the canonical
names used across the pipeline.
"""

from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Union

import polars as pl
import structlog

logger = structlog.get_logger(__name__)


class FileFormat(str, Enum):
    """Supported file formats"""
    CSV = "csv"
    PARQUET = "parquet"


class SourceTable(str, Enum):
    """Source tables consumed by the pipeline"""
    SALES = "sales"
    PRODUCT = "product"
    CUSTOMER = "customer"


COLUMN_MAPS: Dict[SourceTable, Dict[str, str]] = {
    SourceTable.SALES: {
        "orderkey": "order_id",
        "linenumber": "line_no",
        "productkey": "product_id",
        "customerkey": "customer_id",
        "orderdate": "order_date",
        "quantity": "quantity",
        "unitprice": "unit_price",
        "netprice": "net_price",
        "unitcost": "unit_cost",
        "exchangerate": "exchange_rate",
    },
    SourceTable.PRODUCT: {
        "productkey": "product_id",
        "productname": "product_name",
        "subcategoryname": "subcategory",
        "categoryname": "category",
    },
    SourceTable.CUSTOMER: {
        "customerkey": "customer_id",
        "statefull": "state",
        "countryfull": "country",
        "startdt": "acquisition_date",
    },
}

DATE_COLUMNS: Dict[SourceTable, str] = {
    SourceTable.SALES: "order_date",
    SourceTable.CUSTOMER: "acquisition_date",
}


def normalize_columns(df: pl.DataFrame, table: Union[SourceTable, str]) -> pl.DataFrame:
    """
    Rename source columns to canonical names and parse date columns.

    Matching is case-insensitive; columns already in canonical form are
    left alone.
    """
    table = SourceTable(table)
    mapping = COLUMN_MAPS[table]

    renames = {}
    for column in df.columns:
        target = mapping.get(column.lower())
        if target and target != column and target not in df.columns:
            renames[column] = target
    if renames:
        df = df.rename(renames)

    date_column = DATE_COLUMNS.get(table)
    if date_column and date_column in df.columns:
        dtype = df.schema[date_column]
        if dtype == pl.Utf8:
            df = df.with_columns(pl.col(date_column).str.to_date(strict=False))
        elif isinstance(dtype, pl.Datetime):
            df = df.with_columns(pl.col(date_column).dt.date())

    return df


def read_table(
    path: Union[str, Path],
    table: Optional[Union[SourceTable, str]] = None,
    file_format: Optional[FileFormat] = None,
) -> pl.DataFrame:
    """
    Read one extract into a polars frame.

    Args:
        path: CSV or Parquet file
        table: Normalize columns for this source table when given
        file_format: Override format detection by suffix

    Returns:
        Loaded DataFrame
    """
    path = Path(path)
    file_format = file_format or FileFormat(path.suffix.lstrip(".").lower())

    if file_format == FileFormat.CSV:
        df = pl.read_csv(path, try_parse_dates=True)
    else:
        df = pl.read_parquet(path)

    logger.info(f"Loaded {len(df)} rows from {path}", format=file_format.value)

    if table is not None:
        df = normalize_columns(df, table)
    return df
