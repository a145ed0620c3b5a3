from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterator, Sequence

from domain.errors import StoreError, StoreUnavailable
from domain.repositories import LedgerStore
from infrastructure.db.ledger_sql import SqlLedgerSession


logger = logging.getLogger(__name__)


class SqliteLedgerSession(SqlLedgerSession):
    """
    SQLite flavour of the ledger session.

    Amounts are stored as integer cents so that SUM() stays exact, and
    timestamps as ISO-8601 text. Row locks are not needed: every unit of
    work holds the database write lock (`BEGIN IMMEDIATE`).
    """

    def _amount_to_db(self, amount: Decimal) -> int:
        return int(amount.scaleb(2))

    def _amount_from_db(self, value: Any) -> Decimal:
        return Decimal(int(value)).scaleb(-2)

    def _timestamp_to_db(self, value: datetime) -> str:
        return value.isoformat()

    def _timestamp_from_db(self, value: Any) -> datetime:
        return datetime.fromisoformat(value)

    def _insert_returning_id(self, query: str, params: Sequence[Any]) -> int:
        cur = self._execute(query, params)
        return int(cur.lastrowid)


class SqliteLedgerStore(LedgerStore):
    """
    SQLite-backed implementation of `LedgerStore`.

    This store owns the ledger tables and is self-initialising: they are
    created if needed. `db_path` must be a file; each unit of work opens
    its own connection, so `:memory:` would give every call an empty
    database.
    """

    def __init__(self, db_path: str, timeout: float = 30.0) -> None:
        self._db_path = db_path
        self._timeout = timeout
        self._ensure_schema()

    def _get_connection(self) -> sqlite3.Connection:
        try:
            return sqlite3.connect(self._db_path, timeout=self._timeout, isolation_level=None)
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"Cannot open ledger database {self._db_path!r}: {exc}") from exc

    def _ensure_schema(self) -> None:
        conn = self._get_connection()
        try:
            # WAL lets readers proceed while a unit of work holds the write lock.
            conn.execute("PRAGMA journal_mode=WAL")
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"Cannot open ledger database {self._db_path!r}: {exc}") from exc
        finally:
            conn.close()

        with self.atomic() as session:
            cur = session._conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS balances (
                    user_id TEXT PRIMARY KEY,
                    username TEXT,
                    balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
                    pirate_name TEXT,
                    real_name TEXT,
                    ship_name TEXT,
                    email TEXT,
                    phone_number TEXT
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS transactions (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    type TEXT NOT NULL,
                    from_user_id TEXT,
                    from_username TEXT,
                    to_user_id TEXT,
                    to_username TEXT,
                    amount INTEGER NOT NULL CHECK (amount >= 0),
                    timestamp TEXT NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS deposit_requests (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    discord_username TEXT,
                    nation_username TEXT,
                    amount INTEGER NOT NULL,
                    receipt_url TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    timestamp TEXT NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS escrow (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    amount INTEGER NOT NULL DEFAULT 0 CHECK (amount >= 0),
                    nation_name TEXT NOT NULL DEFAULT '',
                    status TEXT NOT NULL DEFAULT 'pending',
                    timestamp TEXT NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS admin_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    admin_id TEXT,
                    admin_username TEXT,
                    action TEXT NOT NULL,
                    details TEXT,
                    timestamp TEXT NOT NULL
                )
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS ix_deposit_requests_user_status "
                "ON deposit_requests (user_id, status)"
            )
            cur.execute("CREATE INDEX IF NOT EXISTS ix_escrow_user_status ON escrow (user_id, status)")
        logger.debug("Ledger schema ready in %s", self._db_path)

    @contextmanager
    def atomic(self) -> Iterator[SqliteLedgerSession]:
        conn = self._get_connection()
        try:
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield SqliteLedgerSession(conn)
                conn.execute("COMMIT")
            except Exception:
                if conn.in_transaction:
                    conn.rollback()
                raise
        except (sqlite3.Error, OverflowError) as exc:
            # sqlite3 raises OverflowError for integers beyond 64 bits.
            raise StoreError(f"Ledger store failure: {exc}") from exc
        finally:
            conn.close()

    @contextmanager
    def session(self) -> Iterator[SqliteLedgerSession]:
        # A deferred transaction gives every read in the block one snapshot.
        conn = self._get_connection()
        try:
            try:
                conn.execute("BEGIN")
                yield SqliteLedgerSession(conn)
            finally:
                if conn.in_transaction:
                    conn.rollback()
        except sqlite3.Error as exc:
            raise StoreError(f"Ledger store failure: {exc}") from exc
        finally:
            conn.close()
