"""Account verification tokens.

A token is a random hex secret. Only its HMAC digest is stored; the plain
value goes out by email. Verification always checks the newest unused token
of the user, so issuing a new token retires the previous ones.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import timedelta
from typing import Any

from fastapi import HTTPException

from . import config
from .db import DB_LOCK, begin_write_transaction, db_connection, inserted_row_id, log_analytics_event, row_to_dict
from .emailer import send_verification_email
from .utils import now_utc, now_utc_iso, parse_iso_datetime, safe_text

logger = logging.getLogger("fixrez.backend.verification")

VERIFICATION_TYPES = {"email", "phone", "password_reset"}
VERIFICATION_METHODS = {"email", "phone", "admin"}
DELIVERABLE_METHODS = {"email"}

VERIFICATION_ERROR_MESSAGES: dict[str, dict[str, Any]] = {
    "missing_fields": {
        "user_message": "Required information is missing. Please try again.",
        "technical_message": "Missing required fields in verification request",
        "retry_allowed": True,
    },
    "invalid_token": {
        "user_message": "Invalid verification code. Please check and try again.",
        "technical_message": "Token validation failed",
        "retry_allowed": True,
    },
    "expired_token": {
        "user_message": "This verification code has expired. Please request a new one.",
        "technical_message": "Token expired",
        "retry_allowed": True,
    },
    "max_attempts_exceeded": {
        "user_message": "Too many failed attempts. Please request a new verification code.",
        "technical_message": "Maximum verification attempts exceeded",
        "retry_allowed": False,
    },
    "already_verified": {
        "user_message": "Your account is already verified.",
        "technical_message": "User already verified",
        "retry_allowed": False,
    },
    "database_error": {
        "user_message": "System error. Please contact support.",
        "technical_message": "Database operation failed",
        "retry_allowed": False,
    },
    "system_error": {
        "user_message": "System error. Please contact support.",
        "technical_message": "System error occurred",
        "retry_allowed": True,
    },
}

RETRYABLE_ERRORS = {"invalid_token", "expired_token", "system_error"}


def can_retry_error(error_type: str | None) -> bool:
    return safe_text(error_type) in RETRYABLE_ERRORS


def token_hash(user_id: int, plain_token: str) -> str:
    message = f"{user_id}:{safe_text(plain_token).lower()}".encode("utf-8")
    return hmac.new(config.VERIFICATION_TOKEN_SECRET.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verification_failure(error_type: str) -> dict[str, Any]:
    details = VERIFICATION_ERROR_MESSAGES.get(error_type, VERIFICATION_ERROR_MESSAGES["system_error"])
    return {
        "success": False,
        "error": details["user_message"],
        "error_type": error_type,
        "can_retry": can_retry_error(error_type),
    }


def record_verification_error(user_id: int, error_type: str, technical_message: str | None = None) -> None:
    details = VERIFICATION_ERROR_MESSAGES.get(error_type, VERIFICATION_ERROR_MESSAGES["system_error"])
    with DB_LOCK:
        connection = db_connection()
        try:
            connection.execute(
                """
                INSERT INTO verification_errors (user_id, error_type, user_message, technical_message, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (user_id, error_type, details["user_message"], technical_message or details["technical_message"], now_utc_iso()),
            )
            connection.commit()
        except Exception:
            logger.exception("Failed to record verification error for user %s", user_id)
            connection.rollback()
        finally:
            connection.close()


def list_verification_errors(user_id: int, limit: int = 50) -> list[dict[str, Any]]:
    connection = db_connection()
    try:
        rows = connection.execute(
            """
            SELECT id, user_id, error_type, user_message, technical_message, created_at
            FROM verification_errors
            WHERE user_id = ?
            ORDER BY id DESC
            LIMIT ?
            """,
            (user_id, limit),
        ).fetchall()
    finally:
        connection.close()
    return [dict(row) for row in rows]


def latest_token(connection: Any, user_id: int) -> dict[str, Any] | None:
    row = connection.execute(
        """
        SELECT id, user_id, type, method, token_hash, expires_at, attempts, max_attempts, used, used_at, created_at
        FROM verification_tokens
        WHERE user_id = ? AND used = 0
        ORDER BY id DESC
        LIMIT 1
        """,
        (user_id,),
    ).fetchone()
    return row_to_dict(row)


def enforce_resend_cooldown(user_id: int) -> None:
    if config.VERIFICATION_RESEND_COOLDOWN_SECONDS <= 0:
        return
    connection = db_connection()
    try:
        row = connection.execute(
            "SELECT created_at FROM verification_tokens WHERE user_id = ? ORDER BY id DESC LIMIT 1",
            (user_id,),
        ).fetchone()
    finally:
        connection.close()
    if not row:
        return
    elapsed = (now_utc() - parse_iso_datetime(str(row["created_at"]))).total_seconds()
    if elapsed < config.VERIFICATION_RESEND_COOLDOWN_SECONDS:
        wait_seconds = int(config.VERIFICATION_RESEND_COOLDOWN_SECONDS - elapsed) + 1
        raise HTTPException(
            status_code=429,
            detail={
                "message": f"Please wait {wait_seconds}s before requesting another verification code.",
                "retry_after_seconds": wait_seconds,
            },
        )


def cleanup_expired_tokens(user_id: int) -> int:
    with DB_LOCK:
        connection = db_connection()
        try:
            cursor = connection.execute(
                "DELETE FROM verification_tokens WHERE user_id = ? AND used = 0 AND expires_at < ?",
                (user_id, now_utc_iso()),
            )
            connection.commit()
            return cursor.rowcount
        finally:
            connection.close()


def discard_token(token_id: int) -> None:
    with DB_LOCK:
        connection = db_connection()
        try:
            connection.execute("DELETE FROM verification_tokens WHERE id = ? AND used = 0", (token_id,))
            connection.commit()
        finally:
            connection.close()


def validate_token_options(token_type: str, method: str) -> None:
    if token_type not in VERIFICATION_TYPES:
        raise HTTPException(status_code=400, detail=f"Invalid verification type: {token_type}")
    if method not in VERIFICATION_METHODS:
        raise HTTPException(status_code=400, detail=f"Invalid verification method: {method}")


def create_verification_token(
    user_id: int,
    token_type: str = "email",
    method: str = "email",
    expires_in_minutes: int | None = None,
) -> dict[str, Any]:
    validate_token_options(token_type, method)

    minutes = expires_in_minutes or config.VERIFICATION_TOKEN_EXPIRY_MINUTES
    plain_token = secrets.token_hex(32)
    expires_at = (now_utc() + timedelta(minutes=minutes)).isoformat()
    cleanup_expired_tokens(user_id)

    with DB_LOCK:
        connection = db_connection()
        try:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO verification_tokens
                    (user_id, type, method, token_hash, expires_at, attempts, max_attempts, used, created_at)
                VALUES (?, ?, ?, ?, ?, 0, ?, 0, ?)
                """,
                (
                    user_id,
                    token_type,
                    method,
                    token_hash(user_id, plain_token),
                    expires_at,
                    config.VERIFICATION_MAX_ATTEMPTS,
                    now_utc_iso(),
                ),
            )
            token_id = inserted_row_id(connection, cursor)
            connection.commit()
        finally:
            connection.close()

    return {"token_id": token_id, "token": plain_token, "expires_at": expires_at, "expires_in_minutes": minutes}


def issue_and_send_token(user: dict[str, Any], token_type: str = "email", method: str = "email") -> dict[str, Any]:
    """Create a token and deliver it; the token is dropped again when delivery fails."""
    validate_token_options(token_type, method)
    if method not in DELIVERABLE_METHODS:
        raise HTTPException(status_code=400, detail=f"Verification delivery by {method} is not supported")
    issued = create_verification_token(int(user["id"]), token_type, method)
    send_error = send_verification_email(str(user["email"]), issued["token"], issued["expires_in_minutes"])
    if send_error:
        discard_token(issued["token_id"])
        raise HTTPException(
            status_code=502,
            detail={"message": "Unable to send verification email right now.", "details": send_error},
        )
    log_analytics_event("verification", "token_sent", user_id=int(user["id"]), meta={"type": token_type, "method": method})
    return issued


def verify_user_token(user_id: int, plain_token: str, token_type: str = "email") -> dict[str, Any]:
    if not user_id or not safe_text(plain_token):
        return verification_failure("missing_fields")

    now = now_utc()
    with DB_LOCK:
        connection = db_connection()
        try:
            cursor = connection.cursor()
            begin_write_transaction(cursor)
            user = cursor.execute("SELECT id, email_verified FROM users WHERE id = ?", (user_id,)).fetchone()
            if not user:
                connection.rollback()
                return verification_failure("missing_fields")
            if int(user["email_verified"] or 0):
                connection.rollback()
                return verification_failure("already_verified")

            token = latest_token(cursor, user_id)
            if not token or safe_text(token["type"]) != safe_text(token_type or "email"):
                connection.rollback()
                return verification_failure("invalid_token")
            if parse_iso_datetime(str(token["expires_at"])) <= now:
                connection.rollback()
                return verification_failure("expired_token")
            if int(token["attempts"]) >= int(token["max_attempts"]):
                connection.rollback()
                return verification_failure("max_attempts_exceeded")

            if hmac.compare_digest(token_hash(user_id, plain_token), str(token["token_hash"])):
                verified_at = now.isoformat()
                cursor.execute(
                    "UPDATE verification_tokens SET used = 1, used_at = ? WHERE id = ?",
                    (verified_at, token["id"]),
                )
                cursor.execute(
                    """
                    UPDATE users
                    SET email_verified = 1, verified_at = ?, verification_method = ?, verification_token_id = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (verified_at, token["method"], token["id"], verified_at, user_id),
                )
                connection.commit()
                return {
                    "success": True,
                    "user_id": user_id,
                    "verified_at": verified_at,
                    "method": token["method"],
                    "token_id": int(token["id"]),
                }

            cursor.execute("UPDATE verification_tokens SET attempts = attempts + 1 WHERE id = ?", (token["id"],))
            connection.commit()
            attempts_remaining = int(token["max_attempts"]) - int(token["attempts"]) - 1
        except Exception:
            connection.rollback()
            raise
        finally:
            connection.close()

    if attempts_remaining <= 0:
        return verification_failure("max_attempts_exceeded")
    failure = verification_failure("invalid_token")
    failure["attempts_remaining"] = attempts_remaining
    return failure


def get_verification_status(user_id: int) -> dict[str, Any] | None:
    connection = db_connection()
    try:
        user = connection.execute(
            "SELECT id, email_verified, verified_at, verification_method, verification_token_id FROM users WHERE id = ?",
            (user_id,),
        ).fetchone()
        if not user:
            return None
        token = latest_token(connection, user_id)
    finally:
        connection.close()

    verified = bool(int(user["email_verified"] or 0))
    has_valid_token = bool(token and parse_iso_datetime(str(token["expires_at"])) > now_utc())
    if token and has_valid_token:
        attempts_remaining = max(0, int(token["max_attempts"]) - int(token["attempts"]))
    elif verified:
        attempts_remaining = 0
    else:
        attempts_remaining = config.VERIFICATION_MAX_ATTEMPTS
    return {
        "is_verified": verified,
        "verification_timestamp": user["verified_at"],
        "verification_method": user["verification_method"],
        "verification_token_id": user["verification_token_id"],
        "has_valid_token": has_valid_token,
        "token_expires_at": token["expires_at"] if token else None,
        "attempts_remaining": attempts_remaining,
        "can_attempt_verification": (not verified) and has_valid_token and attempts_remaining > 0,
    }


def get_verification_stats() -> dict[str, Any]:
    connection = db_connection()
    try:
        total_row = connection.execute("SELECT COUNT(*) AS count FROM users").fetchone()
        verified_row = connection.execute("SELECT COUNT(*) AS count FROM users WHERE email_verified = 1").fetchone()
        pending_row = connection.execute(
            "SELECT COUNT(*) AS count FROM verification_tokens WHERE used = 0 AND expires_at > ?",
            (now_utc_iso(),),
        ).fetchone()
    finally:
        connection.close()

    total_users = int(total_row["count"] if total_row else 0)
    verified_users = int(verified_row["count"] if verified_row else 0)
    rate = (verified_users / total_users * 100) if total_users else 0.0
    return {
        "total_users": total_users,
        "verified_users": verified_users,
        "pending_verifications": int(pending_row["count"] if pending_row else 0),
        "verification_rate": f"{rate:.1f}",
    }
