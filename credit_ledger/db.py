"""
PostgreSQL access for the points ledger: connections, transactions,
row helpers and the schema DDL.

Every failure surfaces as a DatabaseError subclass; the stores translate
those into StorageError for their callers.

Usage:
    from credit_ledger.db import transaction, fetch_one, Tables

    with transaction() as cur:
        cur.execute(
            f"SELECT * FROM {Tables.ACCOUNTS} WHERE account_id = %s FOR UPDATE",
            (account_id,),
        )
        account = fetch_one(cur)
"""

from contextlib import contextmanager
from typing import Optional, Any, Dict, List
from datetime import datetime, timezone

import psycopg
from psycopg.rows import dict_row

from credit_ledger.config import config

_DATABASE_URL = config.DATABASE_URL
_LEDGER_SCHEMA = config.LEDGER_SCHEMA

USE_DB = bool(_DATABASE_URL) and not config.USE_MEMORY_STORE

print(f"[DB] DATABASE_URL configured: {bool(_DATABASE_URL)}, USE_DB: {USE_DB}")


# ─────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────
class DatabaseError(Exception):
    """Base class; original_error holds the psycopg exception when there is one."""

    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(message)
        self.original_error = original_error


class DatabaseNotConfiguredError(DatabaseError):
    pass


class DatabaseConnectionError(DatabaseError):
    pass


class DatabaseQueryError(DatabaseError):
    pass


class DatabaseIntegrityError(DatabaseError):
    """Unique, foreign key or check constraint violated."""

    def __init__(self, message: str, constraint: str = None, original_error: Exception = None):
        super().__init__(message, original_error)
        self.constraint = constraint


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


# ─────────────────────────────────────────────────────────────
# Connections & Transactions
# ─────────────────────────────────────────────────────────────
def _connect():
    if not _DATABASE_URL:
        raise DatabaseNotConfiguredError("DATABASE_URL is not set")
    try:
        return psycopg.connect(
            _DATABASE_URL,
            connect_timeout=config.DB_CONNECT_TIMEOUT,
            row_factory=dict_row,
        )
    except psycopg.OperationalError as e:
        raise DatabaseConnectionError(f"Failed to connect to database: {e}", original_error=e)


def _close(conn) -> None:
    try:
        conn.close()
    except psycopg.Error as e:
        print(f"[DB] Error closing connection: {e}")


@contextmanager
def get_conn():
    """A raw connection, closed on exit. Nothing is committed for you."""
    conn = _connect()
    try:
        yield conn
    finally:
        _close(conn)


_INTEGRITY_ERRORS = (
    psycopg.errors.UniqueViolation,
    psycopg.errors.ForeignKeyViolation,
    psycopg.errors.CheckViolation,
)


@contextmanager
def transaction():
    """
    Yield a dict_row cursor inside one transaction: commit on success,
    roll back on any exception.

    psycopg errors are re-raised as DatabaseIntegrityError,
    DatabaseConnectionError or DatabaseQueryError. Anything else raised in
    the block (InsufficientBalance, DuplicateOperation, ...) propagates
    unchanged after the rollback.
    """
    conn = _connect()
    try:
        with conn.cursor() as cur:
            yield cur
        conn.commit()
    except _INTEGRITY_ERRORS as e:
        conn.rollback()
        constraint = getattr(e.diag, "constraint_name", None)
        raise DatabaseIntegrityError(
            f"{type(e).__name__} on {constraint}: {e}",
            constraint=constraint,
            original_error=e,
        )
    except psycopg.OperationalError as e:
        conn.rollback()
        raise DatabaseConnectionError(f"Connection lost during transaction: {e}", original_error=e)
    except psycopg.Error as e:
        conn.rollback()
        raise DatabaseQueryError(f"Database error: {e}", original_error=e)
    except Exception:
        conn.rollback()
        raise
    finally:
        _close(conn)


# ─────────────────────────────────────────────────────────────
# Row Helpers (cursors use dict_row)
# ─────────────────────────────────────────────────────────────
def fetch_one(cur) -> Optional[Dict[str, Any]]:
    row = cur.fetchone()
    return dict(row) if row is not None else None


def fetch_all(cur) -> List[Dict[str, Any]]:
    return [dict(row) for row in cur.fetchall()]


def fetch_scalar(cur) -> Any:
    """First column of the next row, or None."""
    row = cur.fetchone()
    if row is None:
        return None
    return next(iter(row.values()), None)


def query_one(sql: str, params: tuple = None) -> Optional[Dict[str, Any]]:
    with transaction() as cur:
        cur.execute(sql, params or ())
        return fetch_one(cur)


def query_all(sql: str, params: tuple = None) -> List[Dict[str, Any]]:
    with transaction() as cur:
        cur.execute(sql, params or ())
        return fetch_all(cur)


# ─────────────────────────────────────────────────────────────
# Tables & Schema
# ─────────────────────────────────────────────────────────────
class Tables:
    """Schema-qualified table names."""

    IDENTITIES = f"{_LEDGER_SCHEMA}.identities"
    IDENTITY_MAPPINGS = f"{_LEDGER_SCHEMA}.identity_mappings"
    IDENTITY_DISCREPANCIES = f"{_LEDGER_SCHEMA}.identity_discrepancies"
    SUBSCRIPTIONS = f"{_LEDGER_SCHEMA}.subscriptions"
    ACCOUNTS = f"{_LEDGER_SCHEMA}.accounts"
    TRANSACTIONS = f"{_LEDGER_SCHEMA}.transactions"
    GENERATION_TASKS = f"{_LEDGER_SCHEMA}.generation_tasks"
    RECONCILIATION_RUNS = f"{_LEDGER_SCHEMA}.reconciliation_runs"


# The idempotency guarantee lives in uq_transactions_idempotency: at most one
# committed transaction per (account_id, type, reference).
SCHEMA_DDL = [
    f"CREATE SCHEMA IF NOT EXISTS {_LEDGER_SCHEMA}",
    f"""
    CREATE TABLE IF NOT EXISTS {Tables.IDENTITIES} (
        primary_id TEXT PRIMARY KEY,
        email TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {Tables.IDENTITY_MAPPINGS} (
        primary_id TEXT PRIMARY KEY,
        secondary_id TEXT NOT NULL,
        sync_status TEXT NOT NULL DEFAULT 'active',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        last_synced_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {Tables.IDENTITY_DISCREPANCIES} (
        id BIGSERIAL PRIMARY KEY,
        presented_id TEXT NOT NULL,
        mapped_id TEXT NOT NULL,
        hinted_id TEXT NOT NULL,
        detected_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CONSTRAINT uq_identity_discrepancy UNIQUE (presented_id, mapped_id, hinted_id)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {Tables.SUBSCRIPTIONS} (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        tier TEXT NOT NULL DEFAULT 'free',
        billing_cycle TEXT,
        status TEXT NOT NULL DEFAULT 'active',
        current_period_start TIMESTAMPTZ,
        current_period_end TIMESTAMPTZ,
        metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    f"""
    CREATE INDEX IF NOT EXISTS ix_subscriptions_user_id
    ON {Tables.SUBSCRIPTIONS} (user_id, updated_at DESC)
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {Tables.ACCOUNTS} (
        account_id TEXT PRIMARY KEY,
        balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
        lifetime_earned INTEGER NOT NULL DEFAULT 0 CHECK (lifetime_earned >= 0),
        lifetime_spent INTEGER NOT NULL DEFAULT 0 CHECK (lifetime_spent >= 0),
        tier TEXT NOT NULL DEFAULT 'free',
        status TEXT NOT NULL DEFAULT 'active',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {Tables.TRANSACTIONS} (
        id BIGSERIAL PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES {Tables.ACCOUNTS} (account_id),
        amount INTEGER NOT NULL,
        balance_after INTEGER NOT NULL,
        type TEXT NOT NULL,
        reference TEXT NOT NULL,
        billing_cycle_id TEXT,
        affects_balance BOOLEAN NOT NULL DEFAULT TRUE,
        metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    f"""
    CREATE UNIQUE INDEX IF NOT EXISTS uq_transactions_idempotency
    ON {Tables.TRANSACTIONS} (account_id, type, reference)
    """,
    f"""
    CREATE INDEX IF NOT EXISTS ix_transactions_billing_cycle
    ON {Tables.TRANSACTIONS} (account_id, billing_cycle_id)
    WHERE type = 'subscription_grant'
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {Tables.GENERATION_TASKS} (
        task_reference TEXT PRIMARY KEY,
        presented_identity TEXT,
        account_id TEXT,
        generation_type TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        completed_at TIMESTAMPTZ
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {Tables.RECONCILIATION_RUNS} (
        id BIGSERIAL PRIMARY KEY,
        mode TEXT NOT NULL,
        started_at TIMESTAMPTZ NOT NULL,
        completed_at TIMESTAMPTZ,
        violations INTEGER NOT NULL DEFAULT 0,
        repairs_applied INTEGER NOT NULL DEFAULT 0,
        summary JSONB NOT NULL DEFAULT '{{}}'::jsonb
    )
    """,
]


def ensure_schema() -> None:
    """Apply SCHEMA_DDL. Every statement is IF NOT EXISTS, so reruns are no-ops."""
    with transaction() as cur:
        for statement in SCHEMA_DDL:
            cur.execute(statement)
    print(f"[DB] Schema ensured ({_LEDGER_SCHEMA})")


def init_db() -> bool:
    """
    Startup hook: check connectivity and apply the schema.

    Returns False when the ledger runs without PostgreSQL.

    Raises:
        DatabaseConnectionError: DATABASE_URL is set but unusable
    """
    if not USE_DB:
        print("[DB] PostgreSQL disabled - ledger state is in memory")
        return False

    row = query_one("SELECT 1 AS ok")
    if not row or row.get("ok") != 1:
        raise DatabaseConnectionError("Connection test query failed")
    print("[DB] Database connection verified")
    ensure_schema()
    return True
