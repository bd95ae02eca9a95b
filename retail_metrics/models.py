"""
Fact Models

Order-line fact and its derived financial view, plus the canonical column
names shared by every frame in the pipeline.
"""

from dataclasses import MISSING, asdict, dataclass, fields
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional


ORDER_LINE_COLUMNS = [
    "order_id",
    "line_no",
    "product_id",
    "customer_id",
    "order_date",
    "quantity",
    "unit_price",
    "net_price",
    "unit_cost",
    "exchange_rate",
]

DERIVED_COLUMNS = ["revenue", "cost", "profit", "margin_ratio", "margin_band"]

PRODUCT_COLUMNS = ["product_id", "product_name", "subcategory", "category"]

CUSTOMER_COLUMNS = ["customer_id", "state", "country", "acquisition_date"]


@dataclass(frozen=True)
class OrderLine:
    """One product line within a customer order"""
    order_id: Any
    line_no: int
    product_id: Any
    customer_id: Any
    order_date: Optional[date]
    quantity: Optional[int]
    unit_price: Optional[Decimal]
    net_price: Optional[Decimal]
    unit_cost: Optional[Decimal]
    exchange_rate: Optional[Decimal] = Decimal("1")

    @property
    def key(self) -> tuple:
        return (self.order_id, self.line_no)

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "OrderLine":
        """
        Build from a mapping keyed by canonical column names.

        Absent columns with a field default keep it, so a source without
        exchange_rate is read at a rate of 1. Other absent columns are null.
        """
        defaulted = {f.name for f in fields(cls) if f.default is not MISSING}
        return cls(**{
            name: record.get(name)
            for name in ORDER_LINE_COLUMNS
            if name in record or name not in defaulted
        })


@dataclass(frozen=True)
class DerivedLine:
    """Order line with revenue, cost and profit rounded in a single pass"""
    line: OrderLine
    revenue: Decimal
    cost: Decimal
    profit: Decimal

    @property
    def key(self) -> tuple:
        return self.line.key

    def to_record(self) -> Dict[str, Any]:
        record = asdict(self.line)
        record.update(revenue=self.revenue, cost=self.cost, profit=self.profit)
        return record
