from __future__ import annotations

import logging
from contextlib import contextmanager
from decimal import Decimal
from typing import Any, Iterator

import psycopg2
from psycopg2.pool import PoolError, ThreadedConnectionPool

from domain.errors import StoreError, StoreUnavailable
from domain.models import CENT
from domain.repositories import LedgerStore
from infrastructure.db.ledger_sql import SqlLedgerSession


logger = logging.getLogger(__name__)


class PostgresLedgerSession(SqlLedgerSession):
    """
    Postgres flavour of the ledger session.

    Amounts map to NUMERIC(18,2) (psycopg2 returns `Decimal`) and rows
    read with `for_update=True` are locked with `SELECT ... FOR UPDATE`
    until the unit of work ends.
    """

    placeholder = "%s"
    lock_clause = " FOR UPDATE"

    def _amount_from_db(self, value: Any) -> Decimal:
        return Decimal(value).quantize(CENT)


class PostgresLedgerStore(LedgerStore):
    """
    Postgres-backed implementation of `LedgerStore`.

    Connections come from a thread-safe pool; each unit of work borrows
    one connection and returns it when the block ends.
    """

    def __init__(self, db_params: dict, min_connections: int = 1, max_connections: int = 10) -> None:
        self._db_params = db_params
        try:
            self._pool = ThreadedConnectionPool(min_connections, max_connections, **db_params)
        except psycopg2.OperationalError as exc:
            raise StoreUnavailable(f"Cannot connect to the ledger database: {exc}") from exc
        self._ensure_schema()

    def close(self) -> None:
        self._pool.closeall()

    def _get_connection(self):
        try:
            return self._pool.getconn()
        except (psycopg2.OperationalError, PoolError) as exc:
            raise StoreUnavailable(f"No ledger database connection available: {exc}") from exc

    def _ensure_schema(self) -> None:
        """
        Ensure that the ledger tables exist.

        Schema:
          - balances:         one row per account holder, balance >= 0
          - transactions:     append-only log ordered by `seq`
          - deposit_requests: pending/approved/rejected deposit claims
          - escrow:           one row per withdrawal request
          - admin_logs:       append-only record of privileged actions
        """

        with self.atomic() as session:
            cur = session._conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS balances (
                    user_id VARCHAR(50) PRIMARY KEY,
                    username VARCHAR(100),
                    balance NUMERIC(18, 2) NOT NULL DEFAULT 0 CHECK (balance >= 0),
                    pirate_name VARCHAR(100),
                    real_name VARCHAR(100),
                    ship_name VARCHAR(100),
                    email VARCHAR(255),
                    phone_number VARCHAR(50)
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS transactions (
                    seq BIGSERIAL PRIMARY KEY,
                    id VARCHAR(50) NOT NULL UNIQUE,
                    type VARCHAR(40) NOT NULL,
                    from_user_id VARCHAR(50),
                    from_username VARCHAR(100),
                    to_user_id VARCHAR(50),
                    to_username VARCHAR(100),
                    amount NUMERIC(20, 2) NOT NULL CHECK (amount >= 0),
                    timestamp TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS deposit_requests (
                    id SERIAL PRIMARY KEY,
                    user_id VARCHAR(50) NOT NULL,
                    discord_username VARCHAR(100),
                    nation_username VARCHAR(100),
                    amount NUMERIC(20, 2) NOT NULL,
                    receipt_url TEXT,
                    status VARCHAR(10) NOT NULL DEFAULT 'pending',
                    timestamp TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS escrow (
                    id SERIAL PRIMARY KEY,
                    user_id VARCHAR(50) NOT NULL,
                    amount NUMERIC(20, 2) NOT NULL DEFAULT 0 CHECK (amount >= 0),
                    nation_name VARCHAR(100) NOT NULL DEFAULT '',
                    status VARCHAR(10) NOT NULL DEFAULT 'pending',
                    timestamp TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS admin_logs (
                    id SERIAL PRIMARY KEY,
                    admin_id VARCHAR(50),
                    admin_username VARCHAR(100),
                    action VARCHAR(255) NOT NULL,
                    details TEXT,
                    timestamp TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS ix_deposit_requests_user_status "
                "ON deposit_requests (user_id, status)"
            )
            cur.execute("CREATE INDEX IF NOT EXISTS ix_escrow_user_status ON escrow (user_id, status)")
        logger.debug("Ledger schema ready")

    @contextmanager
    def atomic(self) -> Iterator[PostgresLedgerSession]:
        conn = self._get_connection()
        try:
            try:
                yield PostgresLedgerSession(conn)
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        except psycopg2.OperationalError as exc:
            raise StoreUnavailable(f"Ledger database connection lost: {exc}") from exc
        except psycopg2.Error as exc:
            raise StoreError(f"Ledger store failure: {exc}") from exc
        finally:
            self._pool.putconn(conn, close=bool(conn.closed))

    @contextmanager
    def session(self) -> Iterator[PostgresLedgerSession]:
        conn = self._get_connection()
        try:
            try:
                conn.cursor().execute("SET TRANSACTION ISOLATION LEVEL REPEATABLE READ READ ONLY")
                yield PostgresLedgerSession(conn)
            finally:
                if not conn.closed:
                    conn.rollback()
        except psycopg2.OperationalError as exc:
            raise StoreUnavailable(f"Ledger database connection lost: {exc}") from exc
        except psycopg2.Error as exc:
            raise StoreError(f"Ledger store failure: {exc}") from exc
        finally:
            self._pool.putconn(conn, close=bool(conn.closed))
