"""Optimization, export and contact records."""

from __future__ import annotations

import hashlib
import logging
from typing import Any

from .db import DB_LOCK, db_connection, inserted_row_id, row_to_dict
from .utils import now_utc_iso

logger = logging.getLogger("fixrez.backend.records")

RECENT_OPTIMIZATIONS_LIMIT = 10


def record_optimization(
    user_id: int,
    optimization_type: str,
    original_text: str,
    optimized_text: str | None,
    status: str,
    score: int | None = None,
    score_improvement: int | None = None,
    filename: str | None = None,
    job_title: str | None = None,
    job_description: str | None = None,
    model_used: str | None = None,
    duration_ms: int | None = None,
    error_message: str | None = None,
) -> int | None:
    """Insert an optimization row; failures are logged and reported as None."""
    with DB_LOCK:
        connection = db_connection()
        try:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO optimizations (
                    user_id, optimization_type, filename, job_title, job_description, original_text,
                    optimized_text, status, score, score_improvement, model_used, duration_ms,
                    error_message, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    optimization_type,
                    filename,
                    job_title,
                    job_description,
                    original_text,
                    optimized_text,
                    status,
                    score,
                    score_improvement,
                    model_used,
                    duration_ms,
                    error_message,
                    now_utc_iso(),
                ),
            )
            optimization_id = inserted_row_id(connection, cursor)
            connection.commit()
            return optimization_id
        except Exception:
            logger.exception("Failed to record %s optimization for user %s", optimization_type, user_id)
            connection.rollback()
            return None
        finally:
            connection.close()


def dashboard_stats(user_id: int) -> dict[str, Any]:
    connection = db_connection()
    try:
        totals = connection.execute(
            """
            SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS completed,
                AVG(CASE WHEN status = 'completed' THEN COALESCE(score, 0) END) AS average_score
            FROM optimizations
            WHERE user_id = ?
            """,
            (user_id,),
        ).fetchone()
        recent_rows = connection.execute(
            """
            SELECT id, filename, score, created_at, status
            FROM optimizations
            WHERE user_id = ?
            ORDER BY id DESC
            LIMIT ?
            """,
            (user_id, RECENT_OPTIMIZATIONS_LIMIT),
        ).fetchall()
    finally:
        connection.close()

    average_score = totals["average_score"] if totals else None
    return {
        "total_optimizations": int(totals["total"] or 0) if totals else 0,
        "successful_optimizations": int(totals["completed"] or 0) if totals else 0,
        "average_score_improvement": int(round(float(average_score))) if average_score is not None else 0,
        "recent_optimizations": [
            {
                "id": int(row["id"]),
                "filename": row["filename"] or "Unknown File",
                "score": int(row["score"] or 0),
                "created_at": row["created_at"],
                "status": row["status"],
            }
            for row in recent_rows
        ],
    }


def list_optimizations(user_id: int, limit: int = 20) -> list[dict[str, Any]]:
    limit = max(1, min(100, int(limit)))
    connection = db_connection()
    try:
        rows = connection.execute(
            """
            SELECT id, optimization_type, filename, job_title, status, score, score_improvement,
                   model_used, duration_ms, created_at
            FROM optimizations
            WHERE user_id = ?
            ORDER BY id DESC
            LIMIT ?
            """,
            (user_id, limit),
        ).fetchall()
    finally:
        connection.close()
    return [dict(row) for row in rows]


def get_optimization(user_id: int, optimization_id: int) -> dict[str, Any] | None:
    connection = db_connection()
    try:
        row = connection.execute(
            """
            SELECT id, user_id, optimization_type, filename, job_title, job_description, original_text,
                   optimized_text, status, score, score_improvement, model_used, duration_ms,
                   error_message, created_at
            FROM optimizations
            WHERE id = ? AND user_id = ?
            """,
            (optimization_id, user_id),
        ).fetchone()
    finally:
        connection.close()
    return row_to_dict(row)


def record_export(
    user_id: int,
    export_format: str,
    payload: bytes,
    filename: str,
    template: str | None = None,
    optimization_id: int | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> None:
    with DB_LOCK:
        connection = db_connection()
        try:
            connection.execute(
                """
                INSERT INTO export_history (
                    user_id, optimization_id, format, template, filename, file_size_bytes,
                    export_data_hash, ip_address, user_agent, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    optimization_id,
                    export_format,
                    template,
                    filename,
                    len(payload),
                    hashlib.sha256(payload).hexdigest(),
                    ip_address,
                    user_agent,
                    now_utc_iso(),
                ),
            )
            connection.commit()
        except Exception:
            logger.exception("Failed to record export for user %s", user_id)
            connection.rollback()
        finally:
            connection.close()


def store_contact_message(
    name: str,
    email: str,
    subject: str,
    message: str,
    user_id: int | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> int:
    with DB_LOCK:
        connection = db_connection()
        try:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO contact_messages (user_id, name, email, subject, message, ip_address, user_agent, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (user_id, name, email, subject, message, ip_address, user_agent, now_utc_iso()),
            )
            message_id = inserted_row_id(connection, cursor)
            connection.commit()
            return message_id
        finally:
            connection.close()
