"""
Retail Profitability Analytics

Profitability and customer-segment metrics over a retail order-line fact
table.
"""
from .exceptions import ConfigurationError, MalformedLine, UnmappedDimension
from .models import DerivedLine, OrderLine
from .pipeline import ProfitabilityPipeline

__version__ = "1.0.0"

__all__ = [
    "ConfigurationError",
    "MalformedLine",
    "UnmappedDimension",
    "DerivedLine",
    "OrderLine",
    "ProfitabilityPipeline",
]
