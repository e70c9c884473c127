"""
Postgres access for Animify (psycopg3).

Every helper opens a short-lived connection, runs inside one transaction and
returns plain dicts. Driver errors are re-raised as DatabaseError subclasses
so routes can map them to a single JSON error.

Usage:
    from animify.db import transaction, fetch_one, Tables

    with transaction() as cur:
        cur.execute(f"SELECT * FROM {Tables.JOBS} WHERE job_id = %s", (job_id,))
        job = fetch_one(cur)
"""

import hashlib
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional, Any, Dict, List

import psycopg
from psycopg.rows import dict_row

from animify.config import config

SCHEMA = config.APP_SCHEMA
USE_DB = config.HAS_DATABASE

print(f"[DB] DATABASE_URL set: {USE_DB} (schema={SCHEMA})")


# ─────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────

class DatabaseError(Exception):
    """Any failure talking to Postgres."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error


class DatabaseNotConfiguredError(DatabaseError):
    pass


class DatabaseConnectionError(DatabaseError):
    pass


class DatabaseQueryError(DatabaseError):
    pass


class DatabaseIntegrityError(DatabaseError):
    """Constraint violation. constraint names the violated constraint when Postgres reports it."""

    def __init__(self, message: str, constraint: Optional[str] = None, original_error: Optional[Exception] = None):
        super().__init__(message, original_error)
        self.constraint = constraint


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


# ─────────────────────────────────────────────────────────────
# Connections
# ─────────────────────────────────────────────────────────────

def _connect() -> psycopg.Connection:
    if not USE_DB:
        raise DatabaseNotConfiguredError("DATABASE_URL is not set")
    try:
        conn = psycopg.connect(
            config.DATABASE_URL,
            connect_timeout=config.DB_CONNECT_TIMEOUT,
            row_factory=dict_row,
        )
    except psycopg.OperationalError as e:
        raise DatabaseConnectionError(f"Could not connect to Postgres: {e}", original_error=e) from e
    conn.execute(f"SET search_path TO {SCHEMA}, public")
    return conn


@contextmanager
def get_conn():
    """Raw connection; the caller commits. Closed on exit."""
    conn = _connect()
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction():
    """
    Yield a dict_row cursor inside one transaction.

    Commits when the block exits cleanly, rolls back otherwise.

    Raises:
        DatabaseNotConfiguredError: no DATABASE_URL
        DatabaseConnectionError: connect failed
        DatabaseIntegrityError: unique/check/foreign key violation
        DatabaseQueryError: any other driver error
    """
    conn = _connect()
    try:
        with conn.cursor() as cur:
            yield cur
        conn.commit()
    except psycopg.IntegrityError as e:
        conn.rollback()
        constraint = getattr(e.diag, "constraint_name", None)
        raise DatabaseIntegrityError(
            f"{type(e).__name__}: {e}", constraint=constraint, original_error=e
        ) from e
    except psycopg.Error as e:
        conn.rollback()
        raise DatabaseQueryError(f"Query failed: {e}", original_error=e) from e
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()


# ─────────────────────────────────────────────────────────────
# Row helpers
# ─────────────────────────────────────────────────────────────

def fetch_one(cur) -> Optional[Dict[str, Any]]:
    row = cur.fetchone()
    return dict(row) if row is not None else None


def fetch_all(cur) -> List[Dict[str, Any]]:
    return [dict(row) for row in cur.fetchall()]


def query_one(sql: str, params: tuple = None) -> Optional[Dict[str, Any]]:
    with transaction() as cur:
        cur.execute(sql, params or ())
        return fetch_one(cur)


def query_all(sql: str, params: tuple = None) -> List[Dict[str, Any]]:
    with transaction() as cur:
        cur.execute(sql, params or ())
        return fetch_all(cur)


def execute(sql: str, params: tuple = None) -> int:
    """Run one statement and return the affected row count."""
    with transaction() as cur:
        cur.execute(sql, params or ())
        return cur.rowcount


def execute_returning(sql: str, params: tuple = None) -> Optional[Dict[str, Any]]:
    """
    Run an INSERT/UPDATE ... RETURNING and return the first row.

    None means the WHERE clause matched nothing, which is how a lost
    compare-and-set shows up.
    """
    with transaction() as cur:
        cur.execute(sql, params or ())
        return fetch_one(cur)


class Tables:
    JOBS = f"{SCHEMA}.jobs"
    IDENTITIES = f"{SCHEMA}.identities"
    SESSIONS = f"{SCHEMA}.sessions"
    PENDING_MIGRATIONS = f"{SCHEMA}.pending_migrations"


def hash_string(value: str) -> str:
    """SHA-256 hex digest; client IPs and user agents are stored hashed."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def ping() -> float:
    """Round-trip a trivial query and return the latency in milliseconds."""
    started = time.monotonic()
    row = query_one("SELECT 1 AS ok")
    if not row or row.get("ok") != 1:
        raise DatabaseConnectionError("SELECT 1 returned no row")
    return round((time.monotonic() - started) * 1000, 1)


# ─────────────────────────────────────────────────────────────
# Schema
# ─────────────────────────────────────────────────────────────

SCHEMA_STATEMENTS = [
    f"CREATE SCHEMA IF NOT EXISTS {SCHEMA}",
    f"""
    CREATE TABLE IF NOT EXISTS {Tables.IDENTITIES} (
        id TEXT PRIMARY KEY,
        provider_user_id TEXT UNIQUE,
        is_anonymous BOOLEAN NOT NULL DEFAULT TRUE,
        email TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        last_seen_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {Tables.SESSIONS} (
        id TEXT PRIMARY KEY,
        identity_id TEXT NOT NULL REFERENCES {Tables.IDENTITIES}(id),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ,
        ip_hash TEXT,
        user_agent_hash TEXT
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {Tables.JOBS} (
        job_id TEXT PRIMARY KEY,
        owner_id TEXT,
        state TEXT NOT NULL DEFAULT 'created'
            CHECK (state IN ('created', 'processing', 'completed', 'failed')),
        input_key TEXT NOT NULL,
        input_content_type TEXT,
        output_key TEXT,
        preview_key TEXT,
        error_message TEXT,
        attempts INTEGER NOT NULL DEFAULT 0,
        processing_started_at TIMESTAMPTZ,
        purchased BOOLEAN NOT NULL DEFAULT FALSE,
        charge_intent_id TEXT,
        charge_status TEXT,
        charge_amount INTEGER,
        charge_currency TEXT,
        purchased_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    f"CREATE INDEX IF NOT EXISTS idx_jobs_owner ON {Tables.JOBS}(owner_id)",
    f"CREATE INDEX IF NOT EXISTS idx_jobs_charge_intent ON {Tables.JOBS}(charge_intent_id)",
    f"""
    CREATE TABLE IF NOT EXISTS {Tables.PENDING_MIGRATIONS} (
        from_owner TEXT NOT NULL,
        to_owner TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (from_owner, to_owner)
    )
    """,
]


def ensure_schema() -> None:
    """Create the schema, tables and indexes. Safe to run on every boot."""
    with transaction() as cur:
        for statement in SCHEMA_STATEMENTS:
            cur.execute(statement)
    print(f"[DB] Schema {SCHEMA} ready")


def init_db() -> bool:
    """
    Check connectivity and create the schema.

    Returns False when no database is configured; raises DatabaseError when
    one is configured but unusable.
    """
    if not USE_DB:
        print("[DB] No DATABASE_URL - job, session and payment state will not persist")
        return False

    try:
        latency = ping()
        print(f"[DB] Connected ({latency}ms)")
        ensure_schema()
    except DatabaseError as e:
        print(f"[DB] Startup check failed: {e}")
        raise
    return True
