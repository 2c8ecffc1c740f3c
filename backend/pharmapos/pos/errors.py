"""
Errors raised by the POS terminal engine.

Local validation (ValidationError, StockExceeded) never reaches the
network. The remaining errors come back from the store and carry enough
structure for the operator to fix only what failed.
"""

from __future__ import annotations

from dataclasses import dataclass


class PosError(Exception):
    """Base class for terminal errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class ValidationError(PosError):
    """Blocked locally: empty cart, missing identity, missing card reference..."""


class CommitInFlight(PosError):
    """An order is being submitted; cart and payment are frozen."""


class StockExceeded(PosError):
    """A cart quantity would exceed the last known stock snapshot."""
    def __init__(self, sku: str, requested: int, available: int):
        super().__init__(
            f"Only {available} units of {sku} available ({requested} requested)",
            details={"sku": sku, "requested": requested, "available": available},
        )
        self.sku = sku
        self.requested = requested
        self.available = available


class StockConflict(PosError):
    """The store rejected the order because stock moved; lines lists each short line."""
    def __init__(self, message: str, lines: list[dict]):
        super().__init__(message, details={"lines": lines})
        self.lines = lines


class SessionError(PosError):
    """No open cash session, or it was closed concurrently. Re-open to continue."""


class SessionConflict(SessionError):
    """Another cash session is open for the pharmacy; holder describes it."""
    def __init__(self, message: str, holder: dict | None = None):
        super().__init__(message, details=holder or {})
        self.holder = holder or {}


class CommitFailure(PosError):
    """Any other store or network failure; cart and payment state are kept for retry."""


@dataclass(frozen=True)
class PartialLoadWarning:
    """A prescribed item that could not be loaded into the cart."""
    item_name: str
    reason: str  # not_found, insufficient_stock, invalid_quantity
    needed: int | None = None
    available: int | None = None

    NOT_FOUND = "not_found"
    INSUFFICIENT_STOCK = "insufficient_stock"
    INVALID_QUANTITY = "invalid_quantity"
