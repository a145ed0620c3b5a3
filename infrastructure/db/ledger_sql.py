from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence

from domain.models import (
    AdminLog,
    Balance,
    DepositRequest,
    RequestStatus,
    Transaction,
    TransactionType,
    WithdrawalRequest,
)
from domain.repositories import LedgerSession


PROFILE_COLUMNS = ("pirate_name", "real_name", "ship_name", "email", "phone_number")

_BALANCE_COLUMNS = "user_id, username, balance, " + ", ".join(PROFILE_COLUMNS)
_TRANSACTION_COLUMNS = (
    "id, type, from_user_id, from_username, to_user_id, to_username, amount, timestamp, seq"
)
_DEPOSIT_COLUMNS = (
    "id, user_id, discord_username, nation_username, amount, receipt_url, status, timestamp"
)
_ESCROW_COLUMNS = "id, user_id, amount, nation_name, status, timestamp"
_ADMIN_LOG_COLUMNS = "id, admin_id, admin_username, action, details, timestamp"


class SqlLedgerSession(LedgerSession):
    """
    DB-API implementation of `LedgerSession` shared by the SQLite and
    Postgres stores.

    Queries are written with `?` placeholders; subclasses set
    `placeholder`, the row-lock clause, and how amounts and timestamps
    are represented in their driver.
    """

    placeholder = "?"
    lock_clause = ""

    def __init__(self, conn: Any) -> None:
        self._conn = conn

    # Driver hooks

    def _amount_to_db(self, amount: Decimal) -> Any:
        return amount

    def _amount_from_db(self, value: Any) -> Decimal:
        return Decimal(value)

    def _timestamp_to_db(self, value: datetime) -> Any:
        return value

    def _timestamp_from_db(self, value: Any) -> datetime:
        return value

    def _insert_returning_id(self, query: str, params: Sequence[Any]) -> int:
        cur = self._execute(query + " RETURNING id", params)
        return int(cur.fetchone()[0])

    # Helpers

    def _sql(self, query: str) -> str:
        if self.placeholder == "?":
            return query
        return query.replace("?", self.placeholder)

    def _execute(self, query: str, params: Sequence[Any] = ()):
        cur = self._conn.cursor()
        cur.execute(self._sql(query), tuple(params))
        return cur

    def _lock(self, for_update: bool) -> str:
        return self.lock_clause if for_update else ""

    def _sum(self, query: str, params: Sequence[Any] = ()) -> Decimal:
        row = self._execute(query, params).fetchone()
        return self._amount_from_db(row[0] if row and row[0] is not None else 0)

    def _to_balance(self, row: Sequence[Any]) -> Balance:
        return Balance(
            user_id=str(row[0]),
            username=row[1],
            balance=self._amount_from_db(row[2]),
            pirate_name=row[3],
            real_name=row[4],
            ship_name=row[5],
            email=row[6],
            phone_number=row[7],
        )

    def _to_transaction(self, row: Sequence[Any]) -> Transaction:
        return Transaction(
            id=str(row[0]),
            type=TransactionType(row[1]),
            from_user_id=row[2],
            from_username=row[3],
            to_user_id=row[4],
            to_username=row[5],
            amount=self._amount_from_db(row[6]),
            timestamp=self._timestamp_from_db(row[7]),
            seq=int(row[8]),
        )

    def _to_deposit(self, row: Sequence[Any]) -> DepositRequest:
        return DepositRequest(
            id=int(row[0]),
            user_id=str(row[1]),
            discord_username=row[2],
            nation_username=row[3],
            amount=self._amount_from_db(row[4]),
            receipt_url=row[5],
            status=RequestStatus(row[6]),
            timestamp=self._timestamp_from_db(row[7]),
        )

    def _to_withdrawal(self, row: Sequence[Any]) -> WithdrawalRequest:
        return WithdrawalRequest(
            id=int(row[0]),
            user_id=str(row[1]),
            amount=self._amount_from_db(row[2]),
            nation_name=row[3],
            status=RequestStatus(row[4]),
            timestamp=self._timestamp_from_db(row[5]),
        )

    def _to_admin_log(self, row: Sequence[Any]) -> AdminLog:
        return AdminLog(
            id=int(row[0]),
            admin_id=row[1],
            admin_username=row[2],
            action=row[3],
            details=row[4],
            timestamp=self._timestamp_from_db(row[5]),
        )

    # Balances

    def get_balance(self, user_id: str, for_update: bool = False) -> Optional[Balance]:
        cur = self._execute(
            f"SELECT {_BALANCE_COLUMNS} FROM balances WHERE user_id = ?{self._lock(for_update)}",
            (user_id,),
        )
        row = cur.fetchone()
        if not row:
            return None
        return self._to_balance(row)

    def lock_balances(self, user_ids: Sequence[str]) -> Dict[str, Balance]:
        locked: Dict[str, Balance] = {}
        for user_id in sorted(set(user_ids)):
            row = self.get_balance(user_id, for_update=True)
            if row is not None:
                locked[user_id] = row
        return locked

    def get_or_create_balance(self, user_id: str, username: Optional[str]) -> Balance:
        self._execute(
            """
            INSERT INTO balances (user_id, username, balance)
            VALUES (?, ?, ?)
            ON CONFLICT (user_id)
            DO UPDATE SET username = COALESCE(excluded.username, balances.username)
            """,
            (user_id, username, self._amount_to_db(Decimal("0.00"))),
        )
        return self.get_balance(user_id, for_update=True)

    def set_balance(self, user_id: str, username: Optional[str], amount: Decimal) -> None:
        self._execute(
            """
            INSERT INTO balances (user_id, username, balance)
            VALUES (?, ?, ?)
            ON CONFLICT (user_id)
            DO UPDATE SET balance = excluded.balance,
                          username = COALESCE(excluded.username, balances.username)
            """,
            (user_id, username, self._amount_to_db(amount)),
        )

    def increment_balance(self, user_id: str, username: Optional[str], delta: Decimal) -> None:
        # CHECK constraints apply to the proposed INSERT row before any
        # upsert, so a negative delta must go through a plain UPDATE.
        self.get_or_create_balance(user_id, username)
        self._execute(
            "UPDATE balances SET balance = balance + ? WHERE user_id = ?",
            (self._amount_to_db(delta), user_id),
        )

    def update_profile(self, user_id: str, fields: Dict[str, str]) -> None:
        unknown = set(fields) - set(PROFILE_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown profile fields: {sorted(unknown)}")
        if not fields:
            return
        columns = sorted(fields)
        assignments = ", ".join(f"{column} = ?" for column in columns)
        self._execute(
            f"UPDATE balances SET {assignments} WHERE user_id = ?",
            [fields[column] for column in columns] + [user_id],
        )

    def sum_balances(self) -> Decimal:
        return self._sum("SELECT COALESCE(SUM(balance), 0) FROM balances")

    # Transactions and admin logs

    def add_transaction(self, transaction: Transaction) -> None:
        self._execute(
            """
            INSERT INTO transactions
                (id, type, from_user_id, from_username, to_user_id, to_username, amount, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                transaction.id,
                transaction.type.value,
                transaction.from_user_id,
                transaction.from_username,
                transaction.to_user_id,
                transaction.to_username,
                self._amount_to_db(transaction.amount),
                self._timestamp_to_db(transaction.timestamp),
            ),
        )

    def list_transactions(self, limit: int, user_id: Optional[str] = None) -> List[Transaction]:
        if user_id is None:
            cur = self._execute(
                f"SELECT {_TRANSACTION_COLUMNS} FROM transactions ORDER BY seq DESC LIMIT ?",
                (limit,),
            )
        else:
            cur = self._execute(
                f"""
                SELECT {_TRANSACTION_COLUMNS} FROM transactions
                WHERE from_user_id = ? OR to_user_id = ?
                ORDER BY seq DESC
                LIMIT ?
                """,
                (user_id, user_id, limit),
            )
        return [self._to_transaction(row) for row in cur.fetchall()]

    def add_admin_log(self, entry: AdminLog) -> None:
        self._execute(
            """
            INSERT INTO admin_logs (admin_id, admin_username, action, details, timestamp)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                entry.admin_id,
                entry.admin_username,
                entry.action,
                entry.details,
                self._timestamp_to_db(entry.timestamp),
            ),
        )

    def list_admin_logs(self, limit: int) -> List[AdminLog]:
        cur = self._execute(
            f"SELECT {_ADMIN_LOG_COLUMNS} FROM admin_logs ORDER BY id DESC LIMIT ?",
            (limit,),
        )
        return [self._to_admin_log(row) for row in cur.fetchall()]

    # Deposit requests

    def add_deposit_request(self, request: DepositRequest) -> DepositRequest:
        new_id = self._insert_returning_id(
            """
            INSERT INTO deposit_requests
                (user_id, discord_username, nation_username, amount, receipt_url, status, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                request.user_id,
                request.discord_username,
                request.nation_username,
                self._amount_to_db(request.amount),
                request.receipt_url,
                request.status.value,
                self._timestamp_to_db(request.timestamp),
            ),
        )
        return DepositRequest(
            id=new_id,
            user_id=request.user_id,
            discord_username=request.discord_username,
            nation_username=request.nation_username,
            amount=request.amount,
            receipt_url=request.receipt_url,
            status=request.status,
            timestamp=request.timestamp,
        )

    def get_deposit_request(self, request_id: int, for_update: bool = False) -> Optional[DepositRequest]:
        cur = self._execute(
            f"SELECT {_DEPOSIT_COLUMNS} FROM deposit_requests WHERE id = ?{self._lock(for_update)}",
            (request_id,),
        )
        row = cur.fetchone()
        return self._to_deposit(row) if row else None

    def find_pending_deposit(
        self,
        user_id: str,
        amount: Decimal,
        for_update: bool = False,
    ) -> Optional[DepositRequest]:
        cur = self._execute(
            f"""
            SELECT {_DEPOSIT_COLUMNS} FROM deposit_requests
            WHERE user_id = ? AND amount = ? AND status = ?
            ORDER BY id
            LIMIT 1{self._lock(for_update)}
            """,
            (user_id, self._amount_to_db(amount), RequestStatus.PENDING.value),
        )
        row = cur.fetchone()
        return self._to_deposit(row) if row else None

    def list_deposit_requests(
        self,
        status: Optional[RequestStatus] = None,
        user_id: Optional[str] = None,
    ) -> List[DepositRequest]:
        clauses: List[str] = []
        params: List[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        cur = self._execute(
            f"SELECT {_DEPOSIT_COLUMNS} FROM deposit_requests{where} ORDER BY id DESC",
            params,
        )
        return [self._to_deposit(row) for row in cur.fetchall()]

    def latest_approved_deposit(self, user_id: str) -> Optional[DepositRequest]:
        cur = self._execute(
            f"""
            SELECT {_DEPOSIT_COLUMNS} FROM deposit_requests
            WHERE user_id = ? AND status = ?
            ORDER BY timestamp DESC, id DESC
            LIMIT 1
            """,
            (user_id, RequestStatus.APPROVED.value),
        )
        row = cur.fetchone()
        return self._to_deposit(row) if row else None

    def set_deposit_status(self, request_id: int, status: RequestStatus) -> None:
        self._execute(
            "UPDATE deposit_requests SET status = ? WHERE id = ?",
            (status.value, request_id),
        )

    def sum_deposits(self, status: RequestStatus) -> Decimal:
        return self._sum(
            "SELECT COALESCE(SUM(amount), 0) FROM deposit_requests WHERE status = ?",
            (status.value,),
        )

    # Escrow / withdrawal requests

    def add_withdrawal(self, request: WithdrawalRequest) -> WithdrawalRequest:
        new_id = self._insert_returning_id(
            """
            INSERT INTO escrow (user_id, amount, nation_name, status, timestamp)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                request.user_id,
                self._amount_to_db(request.amount),
                request.nation_name,
                request.status.value,
                self._timestamp_to_db(request.timestamp),
            ),
        )
        return WithdrawalRequest(
            id=new_id,
            user_id=request.user_id,
            amount=request.amount,
            nation_name=request.nation_name,
            status=request.status,
            timestamp=request.timestamp,
        )

    def get_withdrawal(self, withdrawal_id: int, for_update: bool = False) -> Optional[WithdrawalRequest]:
        cur = self._execute(
            f"SELECT {_ESCROW_COLUMNS} FROM escrow WHERE id = ?{self._lock(for_update)}",
            (withdrawal_id,),
        )
        row = cur.fetchone()
        return self._to_withdrawal(row) if row else None

    def find_pending_withdrawal(
        self,
        user_id: str,
        amount: Decimal,
        for_update: bool = False,
    ) -> Optional[WithdrawalRequest]:
        cur = self._execute(
            f"""
            SELECT {_ESCROW_COLUMNS} FROM escrow
            WHERE user_id = ? AND amount = ? AND status = ?
            ORDER BY id
            LIMIT 1{self._lock(for_update)}
            """,
            (user_id, self._amount_to_db(amount), RequestStatus.PENDING.value),
        )
        row = cur.fetchone()
        return self._to_withdrawal(row) if row else None

    def list_withdrawals(
        self,
        status: Optional[RequestStatus] = None,
        user_id: Optional[str] = None,
    ) -> List[WithdrawalRequest]:
        clauses: List[str] = []
        params: List[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        cur = self._execute(f"SELECT {_ESCROW_COLUMNS} FROM escrow{where} ORDER BY id", params)
        return [self._to_withdrawal(row) for row in cur.fetchall()]

    def lock_releasable_withdrawals(self, user_id: str) -> List[WithdrawalRequest]:
        cur = self._execute(
            f"""
            SELECT {_ESCROW_COLUMNS} FROM escrow
            WHERE user_id = ? AND status IN (?, ?) AND amount > ?
            ORDER BY CASE WHEN status = ? THEN 0 ELSE 1 END, id{self._lock(True)}
            """,
            (
                user_id,
                RequestStatus.PENDING.value,
                RequestStatus.REJECTED.value,
                self._amount_to_db(Decimal("0.00")),
                RequestStatus.REJECTED.value,
            ),
        )
        return [self._to_withdrawal(row) for row in cur.fetchall()]

    def update_withdrawal(self, withdrawal_id: int, amount: Decimal, status: RequestStatus) -> None:
        self._execute(
            "UPDATE escrow SET amount = ?, status = ? WHERE id = ?",
            (self._amount_to_db(amount), status.value, withdrawal_id),
        )

    def sum_withdrawals(self, statuses: Iterable[RequestStatus]) -> Decimal:
        values = [status.value for status in statuses]
        if not values:
            return Decimal("0.00")
        marks = ", ".join("?" for _ in values)
        return self._sum(
            f"SELECT COALESCE(SUM(amount), 0) FROM escrow WHERE status IN ({marks})",
            values,
        )
