"""
Financial Line Derivation

Computes revenue, cost and profit for every order line.

Rules:
- revenue = net_price x quantity, cost = unit_cost x quantity, each rounded
  to the currency precision with ROUND_HALF_UP (half away from zero)
- profit = revenue - cost, taken from the same rounded values
- exchange_rate is carried through unconverted; conversion is the separate
  opt-in pass `to_reporting_currency`
- invalid numeric fields raise MalformedLine, nothing is coerced to zero
"""

import math
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

import polars as pl
import structlog

from retail_metrics.exceptions import MalformedLine
from retail_metrics.models import DerivedLine, OrderLine
from retail_metrics.transformation.margins import MarginClassifier

logger = structlog.get_logger(__name__)


PRICE_FIELDS = ("unit_price", "net_price", "unit_cost")


def to_decimal(value: Any, field_name: str, line: OrderLine) -> Decimal:
    """Convert a numeric field to Decimal, rejecting nulls and non-numbers"""
    if value is None:
        raise MalformedLine(f"{field_name} is null", line.order_id, line.line_no)
    if isinstance(value, bool):
        raise MalformedLine(f"{field_name} is not numeric: {value!r}", line.order_id, line.line_no)
    if isinstance(value, float) and not math.isfinite(value):
        raise MalformedLine(f"{field_name} is not finite: {value!r}", line.order_id, line.line_no)
    try:
        # str() keeps 100.1 as Decimal("100.1") instead of its binary expansion
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise MalformedLine(f"{field_name} is not numeric: {value!r}", line.order_id, line.line_no)
    if not result.is_finite():
        raise MalformedLine(f"{field_name} is not finite: {value!r}", line.order_id, line.line_no)
    return result


def to_quantity(line: OrderLine) -> int:
    """Validate quantity as a non-negative integer"""
    value = line.quantity
    if value is None:
        raise MalformedLine("quantity is null", line.order_id, line.line_no)
    if isinstance(value, bool):
        raise MalformedLine(f"quantity is not an integer: {value!r}", line.order_id, line.line_no)
    if isinstance(value, float):
        if not value.is_integer():
            raise MalformedLine(f"quantity is not an integer: {value!r}", line.order_id, line.line_no)
        value = int(value)
    if not isinstance(value, int):
        raise MalformedLine(f"quantity is not an integer: {value!r}", line.order_id, line.line_no)
    if value < 0:
        raise MalformedLine(f"quantity is negative: {value}", line.order_id, line.line_no)
    return value


def to_reporting_currency(line: OrderLine) -> OrderLine:
    """
    Convert prices into the reporting currency.

    Multiplies unit_price, net_price and unit_cost by exchange_rate and
    resets exchange_rate to 1. Null prices stay null so derivation still
    rejects them.
    """
    rate = to_decimal(line.exchange_rate, "exchange_rate", line)
    if rate <= 0:
        raise MalformedLine(f"exchange_rate must be positive: {rate}", line.order_id, line.line_no)

    converted: Dict[str, Optional[Decimal]] = {}
    for name in PRICE_FIELDS:
        value = getattr(line, name)
        converted[name] = None if value is None else to_decimal(value, name, line) * rate

    return replace(line, exchange_rate=Decimal("1"), **converted)


@dataclass
class DerivationResult:
    """Derived lines plus the malformed lines rejected along the way"""
    lines: List[DerivedLine] = field(default_factory=list)
    rejected: List[MalformedLine] = field(default_factory=list)

    @property
    def rejected_count(self) -> int:
        return len(self.rejected)


class FinancialLineDeriver:
    """
    Derives revenue, cost and profit once per order line.

    Derived lines are memoized by (order_id, line_no) for the life of the
    deriver, so every report in a pipeline run shares one rounding pass.

    Example:
        deriver = FinancialLineDeriver()
        derived = deriver.derive(order_line)
        frame, rejected = deriver.derive_frame(sales_df, strict=False)
    """

    def __init__(
        self,
        decimals: int = 2,
        convert_currency: bool = False,
        classifier: Optional[MarginClassifier] = None,
    ):
        self.quantum = Decimal(1).scaleb(-decimals)
        self.convert_currency = convert_currency
        self.classifier = classifier or MarginClassifier()
        self._cache: Dict[tuple, Tuple[OrderLine, DerivedLine]] = {}

    def __len__(self) -> int:
        return len(self._cache)

    def clear(self) -> None:
        """Drop memoized lines"""
        self._cache.clear()

    def _round(self, value: Decimal) -> Decimal:
        return value.quantize(self.quantum, rounding=ROUND_HALF_UP)

    def _compute(self, line: OrderLine) -> DerivedLine:
        source = to_reporting_currency(line) if self.convert_currency else line

        quantity = to_quantity(source)
        net_price = to_decimal(source.net_price, "net_price", source)
        unit_cost = to_decimal(source.unit_cost, "unit_cost", source)

        revenue = self._round(net_price * quantity)
        cost = self._round(unit_cost * quantity)

        return DerivedLine(line=source, revenue=revenue, cost=cost, profit=revenue - cost)

    def derive(self, line: OrderLine) -> DerivedLine:
        """
        Derive one order line.

        Raises:
            MalformedLine: invalid numeric fields, or a repeated
                (order_id, line_no) key carrying different content
        """
        cached = self._cache.get(line.key)
        if cached is not None:
            original, derived = cached
            if original != line:
                raise MalformedLine("duplicate key with conflicting content", line.order_id, line.line_no)
            return derived

        derived = self._compute(line)
        self._cache[line.key] = (line, derived)
        return derived

    def iter_derived(self, lines: Iterable[OrderLine]) -> Iterator[DerivedLine]:
        """Lazily derive lines; stopping iteration stops consumption"""
        for line in lines:
            yield self.derive(line)

    def derive_many(self, lines: Iterable[OrderLine], strict: bool = True) -> DerivationResult:
        """
        Derive a batch of lines.

        Each (order_id, line_no) key is emitted at most once per batch; a
        repeated key is a MalformedLine even when its content is identical.

        Args:
            lines: Order lines
            strict: Propagate the first MalformedLine instead of collecting it

        Returns:
            DerivationResult with derived and rejected lines
        """
        result = DerivationResult()
        seen = set()

        for line in lines:
            try:
                if line.key in seen:
                    raise MalformedLine("duplicate key in batch", line.order_id, line.line_no)
                derived = self.derive(line)
                seen.add(line.key)
                result.lines.append(derived)
            except MalformedLine as e:
                if strict:
                    raise
                logger.warning(
                    "Rejected malformed order line",
                    order_id=e.order_id,
                    line_no=e.line_no,
                    reason=e.reason,
                )
                result.rejected.append(e)

        if result.rejected:
            logger.warning(
                f"Rejected {result.rejected_count} malformed order lines",
                derived=len(result.lines),
            )

        return result

    def derive_frame(
        self,
        df: pl.DataFrame,
        strict: bool = True,
    ) -> Tuple[pl.DataFrame, List[MalformedLine]]:
        """
        Derive a polars frame of order lines.

        Args:
            df: Frame with canonical order-line columns
            strict: Propagate the first MalformedLine instead of collecting it

        Returns:
            Tuple of (derived frame, rejected lines). The derived frame holds
            the order-line columns plus revenue, cost, profit, margin_ratio
            and margin_band
        """
        lines = (OrderLine.from_record(row) for row in df.iter_rows(named=True))
        result = self.derive_many(lines, strict=strict)

        data: Dict[str, list] = {
            "order_id": [],
            "line_no": [],
            "product_id": [],
            "customer_id": [],
            "order_date": [],
            "quantity": [],
            "unit_price": [],
            "net_price": [],
            "unit_cost": [],
            "exchange_rate": [],
            "revenue": [],
            "cost": [],
            "profit": [],
            "margin_ratio": [],
            "margin_band": [],
        }

        for derived in result.lines:
            line = derived.line
            ratio = self.classifier.margin_ratio(derived)
            data["order_id"].append(line.order_id)
            data["line_no"].append(line.line_no)
            data["product_id"].append(line.product_id)
            data["customer_id"].append(line.customer_id)
            data["order_date"].append(line.order_date)
            data["quantity"].append(int(line.quantity))
            for name in ("unit_price", "net_price", "unit_cost", "exchange_rate"):
                value = getattr(line, name)
                data[name].append(None if value is None else float(value))
            data["revenue"].append(float(derived.revenue))
            data["cost"].append(float(derived.cost))
            data["profit"].append(float(derived.profit))
            data["margin_ratio"].append(None if ratio is None else float(ratio))
            data["margin_band"].append(self.classifier.classify(derived))

        frame = pl.DataFrame(data, schema=self._frame_schema(df))
        logger.info(
            f"Derived {len(frame)} order lines",
            input_rows=len(df),
            rejected=len(result.rejected),
        )
        return frame, result.rejected

    @staticmethod
    def _frame_schema(df: pl.DataFrame) -> Dict[str, pl.DataType]:
        """Output schema; identifier and date columns keep the input dtype"""
        schema = {
            "order_id": df.schema.get("order_id", pl.Utf8),
            "line_no": pl.Int64,
            "product_id": df.schema.get("product_id", pl.Utf8),
            "customer_id": df.schema.get("customer_id", pl.Utf8),
            "order_date": df.schema.get("order_date", pl.Date),
            "quantity": pl.Int64,
        }
        for name in ("unit_price", "net_price", "unit_cost", "exchange_rate",
                     "revenue", "cost", "profit", "margin_ratio"):
            schema[name] = pl.Float64
        schema["margin_band"] = pl.Utf8
        return schema
