"""
Exceptions raised by the e-Loran simulation engine.
"""

from typing import Optional


class EloranError(Exception):
    """Base class for all simulator errors."""


class ConfigError(EloranError):
    """Configuration file missing or invalid."""


class AsfExpressionError(EloranError):
    """An ASF expression failed to parse, validate or evaluate."""

    def __init__(self, message: str, expression: Optional[str] = None):
        super().__init__(message)
        self.expression = expression


class AsfTimeoutError(AsfExpressionError):
    """An ASF expression exceeded its evaluation time bound."""


class GridComputeError(EloranError):
    """Grid computation failed."""


class GridComputeTimeout(GridComputeError):
    """Grid computation did not finish in time. The session can continue."""


class GridComputeCancelled(GridComputeError):
    """Grid computation was superseded by a newer request."""


class ImportRowError(EloranError):
    """A single station import row was rejected."""

    def __init__(self, row_index: int, message: str):
        super().__init__(f"Row {row_index}: {message}")
        self.row_index = row_index
        self.reason = message
