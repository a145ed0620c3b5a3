from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional


SYSTEM = "SYSTEM"
ADMIN = "ADMIN"
NOT_SET = "Not set"

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
# Largest value a NUMERIC(18, 2) balance column holds.
MAX_AMOUNT = Decimal("9999999999999999.99")


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER = "transfer"
    ADMIN_SETBALANCE = "admin_setbalance"
    ADMIN_APPROVE = "admin_approve"
    ADMIN_REJECT = "admin_reject"
    ADMIN_WITHDRAWAL_APPROVE = "admin_withdrawal_approve"
    ADMIN_WITHDRAWAL_REJECT = "admin_withdrawal_reject"


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass
class Balance:
    """
    One account holder's spendable balance plus their profile fields.

    `username` is a display cache only; `user_id` is the stable key.
    """

    user_id: str
    username: Optional[str]
    balance: Decimal
    pirate_name: Optional[str] = None
    real_name: Optional[str] = None
    ship_name: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None


@dataclass
class Transaction:
    """
    Immutable ledger record.

    Either side may be the `SYSTEM` or `ADMIN` sentinel identity. `seq`
    is assigned by the store and orders rows written in the same instant.
    """

    id: str
    type: TransactionType
    from_user_id: Optional[str]
    from_username: Optional[str]
    to_user_id: Optional[str]
    to_username: Optional[str]
    amount: Decimal
    timestamp: datetime
    seq: Optional[int] = None


@dataclass
class DepositRequest:
    id: Optional[int]
    user_id: str
    discord_username: Optional[str]
    nation_username: str
    amount: Decimal
    receipt_url: Optional[str]
    status: RequestStatus
    timestamp: datetime


@dataclass
class WithdrawalRequest:
    """
    A discrete escrow hold awaiting a manual payout.

    `amount` is what the hold currently keeps out of the spendable
    balance; releasing funds reduces it.
    """

    id: Optional[int]
    user_id: str
    amount: Decimal
    nation_name: str
    status: RequestStatus
    timestamp: datetime


@dataclass
class AdminLog:
    id: Optional[int]
    admin_id: Optional[str]
    admin_username: Optional[str]
    action: str
    details: str
    timestamp: datetime


@dataclass
class UserInfo:
    """Profile view returned by the admin lookup; missing fields read `NOT_SET`."""

    user_id: str
    username: Optional[str]
    balance: Decimal
    nation_username: str
    pirate_name: str
    real_name: str
    ship_name: str
    email: str
    phone_number: str


@dataclass
class LedgerReport:
    """Figures behind a reconciliation run."""

    approved_deposits: Decimal
    approved_withdrawals: Decimal
    held_in_escrow: Decimal
    total_balances: Decimal

    @property
    def master_balance(self) -> Decimal:
        return self.approved_deposits - self.approved_withdrawals

    @property
    def balanced(self) -> bool:
        return self.master_balance == self.total_balances + self.held_in_escrow


@dataclass(frozen=True)
class LedgerPolicy:
    """
    Policy switches for the ledger engine.

    `release_escrow_on_reject` returns a rejected withdrawal's held funds
    to the spendable balance in the same unit of work as the rejection.
    When off, `release_escrow` must be called explicitly.
    """

    release_escrow_on_reject: bool = True
