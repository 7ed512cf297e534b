from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from typing import Any

from . import config
from .utils import now_utc_iso, safe_text

try:
    import psycopg2  # type: ignore
    from psycopg2.extras import RealDictCursor  # type: ignore
except Exception:  # pragma: no cover - optional dependency at runtime
    psycopg2 = None
    RealDictCursor = None

logger = logging.getLogger("fixrez.backend.db")

DB_LOCK = threading.Lock()

DB_INTEGRITY_ERRORS: tuple[type[Exception], ...] = (sqlite3.IntegrityError,)
if psycopg2 is not None:
    DB_INTEGRITY_ERRORS = DB_INTEGRITY_ERRORS + (psycopg2.IntegrityError,)


def is_postgres() -> bool:
    return config.DB_BACKEND == "postgres"


def adapt_query_for_backend(query: str, params: Any = None) -> tuple[str, Any]:
    if not is_postgres() or params is None:
        return query, params
    converted_query = query.replace("?", "%s")
    if isinstance(params, list):
        return converted_query, tuple(params)
    return converted_query, params


class DBCursor:
    def __init__(self, raw_cursor: Any):
        self._raw_cursor = raw_cursor

    def execute(self, query: str, params: Any = None) -> "DBCursor":
        converted_query, converted_params = adapt_query_for_backend(query, params)
        if converted_params is None:
            self._raw_cursor.execute(converted_query)
        else:
            self._raw_cursor.execute(converted_query, converted_params)
        return self

    def fetchone(self) -> Any:
        return self._raw_cursor.fetchone()

    def fetchall(self) -> list[Any]:
        return self._raw_cursor.fetchall()

    def close(self) -> None:
        self._raw_cursor.close()

    @property
    def rowcount(self) -> int:
        return int(getattr(self._raw_cursor, "rowcount", 0))

    @property
    def lastrowid(self) -> Any:
        return getattr(self._raw_cursor, "lastrowid", None)


class DBConnection:
    def __init__(self, raw_connection: Any):
        self._raw_connection = raw_connection

    def cursor(self) -> DBCursor:
        if is_postgres():
            return DBCursor(self._raw_connection.cursor(cursor_factory=RealDictCursor))
        return DBCursor(self._raw_connection.cursor())

    def execute(self, query: str, params: Any = None) -> DBCursor:
        cursor = self.cursor()
        cursor.execute(query, params)
        return cursor

    def commit(self) -> None:
        self._raw_connection.commit()

    def rollback(self) -> None:
        self._raw_connection.rollback()

    def close(self) -> None:
        self._raw_connection.close()

    def __enter__(self) -> "DBConnection":
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.close()


def db_connection() -> DBConnection:
    if is_postgres():
        if psycopg2 is None or RealDictCursor is None:
            raise RuntimeError("DATABASE_URL is configured but psycopg2 is not installed.")
        return DBConnection(psycopg2.connect(config.DATABASE_URL, connect_timeout=10))
    db_dir = os.path.dirname(config.AUTH_DB_PATH)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)
    raw_connection = sqlite3.connect(config.AUTH_DB_PATH, timeout=15, check_same_thread=False)
    raw_connection.row_factory = sqlite3.Row
    return DBConnection(raw_connection)


def begin_write_transaction(cursor: DBCursor) -> None:
    cursor.execute("BEGIN" if is_postgres() else "BEGIN IMMEDIATE")


def inserted_row_id(connection: DBConnection, cursor: DBCursor) -> int:
    raw_id = cursor.lastrowid
    if raw_id not in (None, "", 0):
        return int(raw_id)
    if is_postgres():
        row = connection.execute("SELECT LASTVAL() AS id").fetchone()
        if row and row["id"] is not None:
            return int(row["id"])
    raise RuntimeError("Unable to determine inserted row id for the current transaction.")


def row_to_dict(row: Any) -> dict[str, Any] | None:
    if row is None:
        return None
    return dict(row)


# {pk} and {ref} are filled per backend so both share one schema.
SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id {pk},
        full_name TEXT NOT NULL DEFAULT '',
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        password_salt TEXT NOT NULL,
        email_verified INTEGER NOT NULL DEFAULT 0,
        verified_at TEXT,
        verification_method TEXT,
        verification_token_id {ref},
        is_admin INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_preferences (
        id {pk},
        user_id {ref} NOT NULL UNIQUE REFERENCES users (id),
        notifications INTEGER NOT NULL DEFAULT 1,
        marketing_emails INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS verification_tokens (
        id {pk},
        user_id {ref} NOT NULL REFERENCES users (id),
        type TEXT NOT NULL,
        method TEXT NOT NULL,
        token_hash TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 3,
        used INTEGER NOT NULL DEFAULT 0,
        used_at TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS verification_errors (
        id {pk},
        user_id {ref} NOT NULL REFERENCES users (id),
        error_type TEXT NOT NULL,
        user_message TEXT NOT NULL,
        technical_message TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS optimizations (
        id {pk},
        user_id {ref} NOT NULL REFERENCES users (id),
        optimization_type TEXT NOT NULL,
        filename TEXT,
        job_title TEXT,
        job_description TEXT,
        original_text TEXT NOT NULL,
        optimized_text TEXT,
        status TEXT NOT NULL,
        score INTEGER,
        score_improvement INTEGER,
        model_used TEXT,
        duration_ms INTEGER,
        error_message TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS export_history (
        id {pk},
        user_id {ref} NOT NULL REFERENCES users (id),
        optimization_id {ref} REFERENCES optimizations (id),
        format TEXT NOT NULL,
        template TEXT,
        filename TEXT,
        file_size_bytes INTEGER,
        export_data_hash TEXT,
        ip_address TEXT,
        user_agent TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS contact_messages (
        id {pk},
        user_id {ref} REFERENCES users (id),
        name TEXT NOT NULL,
        email TEXT NOT NULL,
        subject TEXT NOT NULL,
        message TEXT NOT NULL,
        ip_address TEXT,
        user_agent TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS analytics_events (
        id {pk},
        user_id {ref} REFERENCES users (id),
        event_type TEXT NOT NULL,
        event_name TEXT NOT NULL,
        meta_json TEXT,
        created_at TEXT NOT NULL
    )
    """,
]

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_verification_tokens_user_time ON verification_tokens (user_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_verification_errors_user_time ON verification_errors (user_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_optimizations_user_time ON optimizations (user_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_optimizations_status ON optimizations (status)",
    "CREATE INDEX IF NOT EXISTS idx_export_history_user_time ON export_history (user_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_contact_messages_time ON contact_messages (created_at)",
    "CREATE INDEX IF NOT EXISTS idx_events_user_time ON analytics_events (user_id, created_at)",
]


def init_db() -> None:
    if is_postgres():
        column_types = {"pk": "BIGSERIAL PRIMARY KEY", "ref": "BIGINT"}
    else:
        column_types = {"pk": "INTEGER PRIMARY KEY AUTOINCREMENT", "ref": "INTEGER"}
    with DB_LOCK:
        connection = db_connection()
        try:
            cursor = connection.cursor()
            for statement in SCHEMA:
                cursor.execute(statement.format(**column_types))
            for statement in INDEXES:
                cursor.execute(statement)
            connection.commit()
        finally:
            connection.close()


def log_analytics_event(
    event_type: str,
    event_name: str,
    user_id: int | None = None,
    meta: dict[str, Any] | None = None,
) -> None:
    with DB_LOCK:
        connection = db_connection()
        try:
            connection.execute(
                """
                INSERT INTO analytics_events (user_id, event_type, event_name, meta_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    safe_text(event_type) or "system",
                    safe_text(event_name) or "event",
                    json.dumps(meta or {}, separators=(",", ":"), sort_keys=True),
                    now_utc_iso(),
                ),
            )
            connection.commit()
        except Exception:
            logger.exception("Failed to record analytics event %s/%s", event_type, event_name)
            connection.rollback()
        finally:
            connection.close()
