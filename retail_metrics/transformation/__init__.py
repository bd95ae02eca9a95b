"""
Data Transformation Module
"""
from .deriver import DerivationResult, FinancialLineDeriver, to_reporting_currency
from .enrichers import DataEnricher, enrich_lines
from .margins import BAND_ORDER, NO_REVENUE, MarginClassifier

__all__ = [
    "DerivationResult",
    "FinancialLineDeriver",
    "to_reporting_currency",
    "DataEnricher",
    "enrich_lines",
    "BAND_ORDER",
    "NO_REVENUE",
    "MarginClassifier",
]
