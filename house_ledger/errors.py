"""Error taxonomy for ledger, reconciliation and chain access."""
from decimal import Decimal
from typing import Any, Optional


class LedgerError(Exception):
    """Base exception for the house balance ledger."""

    retryable = False

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(LedgerError):
    """Bad input: non-positive or over-precise amount, malformed address."""


class UserNotFoundError(LedgerError):
    def __init__(self, address: str):
        super().__init__(f"No balance record for {address}", {"address": address})
        self.address = address


class InsufficientBalanceError(LedgerError):
    def __init__(self, address: str, balance: Decimal, requested: Decimal):
        self.address = address
        self.balance = balance
        self.requested = requested
        self.shortfall = requested - balance
        super().__init__(
            f"Insufficient balance: requested {requested}, available {balance}",
            {"balance": str(balance), "requested": str(requested), "shortfall": str(self.shortfall)},
        )


class TransientStoreError(LedgerError):
    """Connection loss, lock wait or transaction timeout. Safe to retry."""

    retryable = True


class ChainOracleError(LedgerError):
    """A chain query or transaction submission failed.

    Never interpreted as a zero balance.
    """

    def __init__(self, message: str, transient: bool = False, details: Optional[dict[str, Any]] = None):
        super().__init__(message, details)
        self.transient = transient

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.transient
