"""
Data Quality Module
"""
from .validators import (
    DataValidator,
    ValidationResult,
    ValidationSeverity,
    ValidationStatus,
    create_customers_validator,
    create_order_lines_validator,
    create_products_validator,
)

__all__ = [
    "DataValidator",
    "ValidationResult",
    "ValidationSeverity",
    "ValidationStatus",
    "create_customers_validator",
    "create_order_lines_validator",
    "create_products_validator",
]
