"""
Source Ingestion Module
"""
from .source import FileFormat, SourceTable, normalize_columns, read_table

__all__ = ["FileFormat", "SourceTable", "normalize_columns", "read_table"]
