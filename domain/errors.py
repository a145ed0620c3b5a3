from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import LedgerReport


class LedgerError(Exception):
    """Base class for every failure the ledger reports to its callers."""


class InvalidAmount(LedgerError):
    pass


class InsufficientFunds(LedgerError):
    pass


class InvalidTransfer(LedgerError):
    pass


class NoMatchingRequest(LedgerError):
    pass


class InvalidLimit(LedgerError):
    pass


class StoreError(LedgerError):
    """The persistent store failed; the current unit of work was rolled back."""


class StoreUnavailable(StoreError):
    """The persistent store could not be reached at all."""


class LedgerMismatch(LedgerError):
    """Summed balances do not reconcile against approved history."""

    def __init__(self, message: str, report: Optional["LedgerReport"] = None) -> None:
        super().__init__(message)
        self.report = report
