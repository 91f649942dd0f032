"""Errors raised by the reconciliation core."""
from __future__ import annotations

from collections.abc import Iterable


class ReconciliationError(Exception):
    """Base class; ``str(exc)`` is safe to show to an operator."""


class PreconditionError(ReconciliationError):
    """Caller supplied input the operation cannot start with. Never retried."""


class ExternalStockParseError(ReconciliationError):
    """The uploaded spreadsheet yielded no usable code/quantity rows."""

    def __init__(self, message: str, seen_headers: Iterable[str] = ()) -> None:
        self.seen_headers = list(seen_headers)
        super().__init__(message)


__all__ = ["ExternalStockParseError", "PreconditionError", "ReconciliationError"]
