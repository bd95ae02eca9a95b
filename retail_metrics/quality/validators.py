"""
Data Validation Module

Rule-based quality checks on the fact and dimension frames before
derivation. Every check counts offending rows; ERROR failures fail the
suite, WARNING failures only degrade it to PARTIAL (or fail it in
strict mode).
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Sequence, Union

import polars as pl
import structlog

logger = structlog.get_logger(__name__)

Check = Callable[[pl.DataFrame], "ValidationCheck"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ValidationSeverity(str, Enum):
    """Severity levels for validation failures"""
    ERROR = "error"  # blocks the load
    WARNING = "warning"


class ValidationStatus(str, Enum):
    """Overall validation status"""
    PASSED = "passed"
    FAILED = "failed"
    PARTIAL = "partial"


@dataclass
class ValidationCheck:
    """Single validation check result"""
    name: str
    passed: bool
    severity: ValidationSeverity
    message: str
    failed_rows: int = 0
    total_rows: int = 0


@dataclass
class ValidationResult:
    """Complete validation suite result"""
    status: ValidationStatus
    total_checks: int
    passed_checks: int
    failed_checks: int
    warning_count: int
    checks: List[ValidationCheck] = field(default_factory=list)
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    def failures(self) -> List[ValidationCheck]:
        return [c for c in self.checks if not c.passed]


def _row_check(
    name: str,
    columns: Sequence[str],
    severity: ValidationSeverity,
    count_bad: Callable[[pl.DataFrame], int],
    describe: Callable[[int], str],
) -> Check:
    """Wrap a bad-row counter into a check that tolerates absent columns"""
    def check(df: pl.DataFrame) -> ValidationCheck:
        missing = [c for c in columns if c not in df.columns]
        if missing:
            return ValidationCheck(
                name=name,
                passed=False,
                severity=severity,
                message=f"Column '{missing[0]}' not found",
            )
        bad = count_bad(df)
        return ValidationCheck(
            name=name,
            passed=bad == 0,
            severity=severity,
            message=describe(bad),
            failed_rows=bad,
            total_rows=len(df),
        )

    return check


class DataValidator:
    """
    Data validator with a fluent check suite.

    Example:
        validator = DataValidator()
        validator.add_not_null_check("net_price")
        validator.add_range_check("quantity", min_value=0)
        result = validator.validate(df)
    """

    def __init__(self, strict_mode: bool = False):
        self.strict_mode = strict_mode  # warnings fail the suite
        self._checks: List[Check] = []

    def add_not_null_check(
        self,
        column: str,
        severity: ValidationSeverity = ValidationSeverity.ERROR,
    ) -> "DataValidator":
        """Add check for null values in column"""
        self._checks.append(_row_check(
            f"not_null_{column}",
            [column],
            severity,
            lambda df: df[column].null_count(),
            lambda bad: f"Column '{column}' has {bad} null values",
        ))
        return self

    def add_unique_check(
        self,
        columns: Union[str, Sequence[str]],
        severity: ValidationSeverity = ValidationSeverity.ERROR,
    ) -> "DataValidator":
        """Add check for uniqueness of a column or composite key"""
        keys = [columns] if isinstance(columns, str) else list(columns)
        self._checks.append(_row_check(
            f"unique_{'_'.join(keys)}",
            keys,
            severity,
            lambda df: len(df) - df.select(keys).n_unique(),
            lambda bad: f"Key {keys} has {bad} duplicate rows",
        ))
        return self

    def add_range_check(
        self,
        column: str,
        min_value: Optional[float] = None,
        max_value: Optional[float] = None,
        severity: ValidationSeverity = ValidationSeverity.ERROR,
    ) -> "DataValidator":
        """Add check for values within [min_value, max_value]; at least one bound is required"""
        conditions = []
        if min_value is not None:
            conditions.append(pl.col(column) < min_value)
        if max_value is not None:
            conditions.append(pl.col(column) > max_value)
        if not conditions:
            raise ValueError(f"Range check on '{column}' needs min_value or max_value")

        self._checks.append(_row_check(
            f"range_{column}",
            [column],
            severity,
            lambda df: df.filter(pl.any_horizontal(conditions)).height,
            lambda bad: f"Column '{column}' has {bad} values outside [{min_value}, {max_value}]",
        ))
        return self

    def add_referential_integrity_check(
        self,
        column: str,
        reference_df: pl.DataFrame,
        reference_column: Optional[str] = None,
        severity: ValidationSeverity = ValidationSeverity.WARNING,
    ) -> "DataValidator":
        """Add check that every key has a row in the reference frame"""
        known = reference_df[reference_column or column].unique().to_list()
        self._checks.append(_row_check(
            f"ref_integrity_{column}",
            [column],
            severity,
            lambda df: df.filter(pl.col(column).is_not_null() & ~pl.col(column).is_in(known)).height,
            lambda bad: f"Column '{column}' has {bad} orphan records",
        ))
        return self

    def validate(self, df: pl.DataFrame) -> ValidationResult:
        """Run every check on df and roll the results up into one status"""
        started_at = _utcnow()
        logger.info(f"Running {len(self._checks)} validation checks on {len(df)} rows")

        results = [check(df) for check in self._checks]
        for result in results:
            if not result.passed:
                logger.warning(
                    f"Validation failed: {result.name}",
                    message=result.message,
                    severity=result.severity.value,
                )

        passed_checks = sum(1 for r in results if r.passed)
        failed_checks = sum(1 for r in results if not r.passed and r.severity == ValidationSeverity.ERROR)
        warning_count = sum(1 for r in results if not r.passed and r.severity == ValidationSeverity.WARNING)

        if failed_checks or (warning_count and self.strict_mode):
            status = ValidationStatus.FAILED
        elif warning_count:
            status = ValidationStatus.PARTIAL
        else:
            status = ValidationStatus.PASSED

        logger.info(
            f"Validation complete: {status.value}",
            passed=passed_checks,
            failed=failed_checks,
            warnings=warning_count,
        )
        return ValidationResult(
            status=status,
            total_checks=len(results),
            passed_checks=passed_checks,
            failed_checks=failed_checks,
            warning_count=warning_count,
            checks=results,
            started_at=started_at,
            completed_at=_utcnow(),
        )


# Pre-built validators for the source tables
def create_order_lines_validator(
    products: Optional[pl.DataFrame] = None,
    customers: Optional[pl.DataFrame] = None,
) -> DataValidator:
    """Create pre-configured validator for the order-line fact table"""
    validator = (
        DataValidator()
        .add_not_null_check("order_id")
        .add_not_null_check("line_no")
        .add_unique_check(["order_id", "line_no"])
        .add_not_null_check("order_date", severity=ValidationSeverity.WARNING)
        .add_not_null_check("quantity")
        .add_range_check("quantity", min_value=0)
        .add_not_null_check("net_price")
        .add_not_null_check("unit_cost")
        .add_range_check("exchange_rate", min_value=0, severity=ValidationSeverity.WARNING)
    )
    if products is not None:
        validator.add_referential_integrity_check("product_id", products)
    if customers is not None:
        validator.add_referential_integrity_check("customer_id", customers)
    return validator


def create_customers_validator() -> DataValidator:
    """Create pre-configured validator for the customer dimension"""
    return (
        DataValidator()
        .add_not_null_check("customer_id")
        .add_unique_check("customer_id")
        .add_not_null_check("acquisition_date", severity=ValidationSeverity.WARNING)
    )


def create_products_validator() -> DataValidator:
    """Create pre-configured validator for the product dimension"""
    return (
        DataValidator()
        .add_not_null_check("product_id")
        .add_unique_check("product_id")
        .add_not_null_check("category", severity=ValidationSeverity.WARNING)
        .add_not_null_check("subcategory", severity=ValidationSeverity.WARNING)
    )
