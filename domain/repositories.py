from __future__ import annotations

from decimal import Decimal
from typing import ContextManager, Dict, Iterable, List, Optional, Protocol, Sequence

from .models import (
    AdminLog,
    Balance,
    DepositRequest,
    RequestStatus,
    Transaction,
    WithdrawalRequest,
)


class LedgerSession(Protocol):
    """
    Row-level access to the ledger tables within one unit of work.

    Implementations are responsible for:
    - Mapping between database rows and the domain models.
    - Honouring `for_update`: the row stays locked against concurrent
      writers until the surrounding unit of work ends.
    - Raising `StoreError` for driver failures.
    """

    # Balances

    def get_balance(self, user_id: str, for_update: bool = False) -> Optional[Balance]:
        """Return the balance row, or None if the user has never been credited."""

        ...

    def lock_balances(self, user_ids: Sequence[str]) -> Dict[str, Balance]:
        """
        Lock the existing balance rows for `user_ids`.

        Locks are taken in sorted key order so that two units of work
        locking the same pair cannot deadlock.
        """

        ...

    def get_or_create_balance(self, user_id: str, username: Optional[str]) -> Balance:
        """
        Return the user's row, inserting a zero balance if there is none.

        A non-null `username` refreshes the display cache.
        """

        ...

    def set_balance(self, user_id: str, username: Optional[str], amount: Decimal) -> None:
        ...

    def increment_balance(self, user_id: str, username: Optional[str], delta: Decimal) -> None:
        """
        Apply `delta` to the balance, creating a zero row first if absent.

        Callers debiting funds must hold the row lock and have checked
        the balance first.
        """

        ...

    def update_profile(self, user_id: str, fields: Dict[str, str]) -> None:
        ...

    def sum_balances(self) -> Decimal:
        ...

    # Transactions and admin logs (append-only)

    def add_transaction(self, transaction: Transaction) -> None:
        ...

    def list_transactions(self, limit: int, user_id: Optional[str] = None) -> List[Transaction]:
        """Newest first; with `user_id`, rows where the user is either side."""

        ...

    def add_admin_log(self, entry: AdminLog) -> None:
        ...

    def list_admin_logs(self, limit: int) -> List[AdminLog]:
        ...

    # Deposit requests

    def add_deposit_request(self, request: DepositRequest) -> DepositRequest:
        """Persist a new request and return it with its assigned id."""

        ...

    def get_deposit_request(self, request_id: int, for_update: bool = False) -> Optional[DepositRequest]:
        ...

    def find_pending_deposit(
        self,
        user_id: str,
        amount: Decimal,
        for_update: bool = False,
    ) -> Optional[DepositRequest]:
        """Oldest pending request for `user_id` with exactly `amount`."""

        ...

    def list_deposit_requests(
        self,
        status: Optional[RequestStatus] = None,
        user_id: Optional[str] = None,
    ) -> List[DepositRequest]:
        ...

    def latest_approved_deposit(self, user_id: str) -> Optional[DepositRequest]:
        ...

    def set_deposit_status(self, request_id: int, status: RequestStatus) -> None:
        ...

    def sum_deposits(self, status: RequestStatus) -> Decimal:
        ...

    # Escrow / withdrawal requests

    def add_withdrawal(self, request: WithdrawalRequest) -> WithdrawalRequest:
        ...

    def get_withdrawal(self, withdrawal_id: int, for_update: bool = False) -> Optional[WithdrawalRequest]:
        ...

    def find_pending_withdrawal(
        self,
        user_id: str,
        amount: Decimal,
        for_update: bool = False,
    ) -> Optional[WithdrawalRequest]:
        ...

    def list_withdrawals(
        self,
        status: Optional[RequestStatus] = None,
        user_id: Optional[str] = None,
    ) -> List[WithdrawalRequest]:
        ...

    def lock_releasable_withdrawals(self, user_id: str) -> List[WithdrawalRequest]:
        """
        Lock the user's holds that still keep funds back.

        Those are pending or rejected rows with a positive amount,
        rejected rows first, then oldest first.
        """

        ...

    def update_withdrawal(self, withdrawal_id: int, amount: Decimal, status: RequestStatus) -> None:
        ...

    def sum_withdrawals(self, statuses: Iterable[RequestStatus]) -> Decimal:
        ...


class LedgerStore(Protocol):
    """
    Factory for units of work against the persistent store.

    `atomic()` yields a session whose writes commit together when the
    block exits normally and roll back together on any exception.
    `session()` is for lock-free reads.
    """

    def atomic(self) -> ContextManager[LedgerSession]:
        ...

    def session(self) -> ContextManager[LedgerSession]:
        ...
