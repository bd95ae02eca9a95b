"""
Error taxonomy for the profitability pipeline.
"""

from typing import Any, Optional


class MalformedLine(ValueError):
    """An order line with invalid or missing numeric fields"""

    def __init__(self, reason: str, order_id: Any = None, line_no: Optional[int] = None):
        self.reason = reason
        self.order_id = order_id
        self.line_no = line_no
        super().__init__(f"Malformed order line ({order_id}, {line_no}): {reason}")

    @property
    def key(self) -> tuple:
        return (self.order_id, self.line_no)


class UnmappedDimension(UserWarning):
    """A fact references a dimension key with no matching hierarchy row"""


class ConfigurationError(ValueError):
    """Invalid pipeline configuration, raised at construction time"""
