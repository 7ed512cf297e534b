from __future__ import annotations

import hashlib
import hmac
import json
import secrets
import time
from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException, Request

from . import config
from .db import DB_INTEGRITY_ERRORS, DB_LOCK, db_connection, inserted_row_id, row_to_dict
from .utils import (
    b64url_decode,
    b64url_encode,
    display_name_from_email,
    normalize_email,
    now_utc_iso,
    safe_text,
)

USER_COLUMNS = (
    "id, full_name, email, password_hash, password_salt, email_verified, verified_at, "
    "verification_method, verification_token_id, is_admin, created_at, updated_at"
)


def hash_password(password: str, salt: str) -> str:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), 190_000).hex()


def verify_password(password: str, user: dict[str, Any]) -> bool:
    expected = hash_password(password, str(user["password_salt"]))
    return hmac.compare_digest(expected, str(user["password_hash"]))


def fetch_user_by_email(email: str) -> dict[str, Any] | None:
    connection = db_connection()
    try:
        row = connection.execute(
            f"SELECT {USER_COLUMNS} FROM users WHERE email = ?",
            (normalize_email(email),),
        ).fetchone()
        return row_to_dict(row)
    finally:
        connection.close()


def fetch_user_by_id(user_id: int) -> dict[str, Any] | None:
    connection = db_connection()
    try:
        row = connection.execute(f"SELECT {USER_COLUMNS} FROM users WHERE id = ?", (user_id,)).fetchone()
        return row_to_dict(row)
    finally:
        connection.close()


def fetch_preferences(user_id: int) -> dict[str, bool]:
    connection = db_connection()
    try:
        row = connection.execute(
            "SELECT notifications, marketing_emails FROM user_preferences WHERE user_id = ?",
            (user_id,),
        ).fetchone()
    finally:
        connection.close()
    if not row:
        return {"notifications": True, "marketing_emails": False}
    return {"notifications": bool(row["notifications"]), "marketing_emails": bool(row["marketing_emails"])}


def create_user(name: str, email: str, password: str) -> dict[str, Any]:
    salt = secrets.token_hex(16)
    password_hash = hash_password(password, salt)
    created_at = now_utc_iso()

    with DB_LOCK:
        connection = db_connection()
        try:
            cursor = connection.cursor()
            try:
                cursor.execute(
                    """
                    INSERT INTO users (full_name, email, password_hash, password_salt, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (name, normalize_email(email), password_hash, salt, created_at, created_at),
                )
                user_id = inserted_row_id(connection, cursor)
                connection.commit()
            except DB_INTEGRITY_ERRORS as exc:
                connection.rollback()
                raise HTTPException(status_code=409, detail="User with this email already exists") from exc
        finally:
            connection.close()

    user = fetch_user_by_id(user_id)
    if not user:
        raise HTTPException(status_code=500, detail="Failed to create user")
    return user


def upsert_preferences(user_id: int, notifications: bool, marketing_emails: bool) -> None:
    timestamp = now_utc_iso()
    with DB_LOCK:
        connection = db_connection()
        try:
            connection.execute(
                """
                INSERT INTO user_preferences (user_id, notifications, marketing_emails, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (user_id) DO UPDATE SET
                    notifications = excluded.notifications,
                    marketing_emails = excluded.marketing_emails,
                    updated_at = excluded.updated_at
                """,
                (user_id, int(notifications), int(marketing_emails), timestamp, timestamp),
            )
            connection.commit()
        finally:
            connection.close()


def update_user_profile(user_id: int, name: str, email: str) -> dict[str, Any]:
    with DB_LOCK:
        connection = db_connection()
        try:
            try:
                connection.execute(
                    "UPDATE users SET full_name = ?, email = ?, updated_at = ? WHERE id = ?",
                    (name, normalize_email(email), now_utc_iso(), user_id),
                )
                connection.commit()
            except DB_INTEGRITY_ERRORS as exc:
                connection.rollback()
                raise HTTPException(status_code=409, detail="Email is already used by another account") from exc
        finally:
            connection.close()

    user = fetch_user_by_id(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


def create_auth_token(user_id: int, email: str) -> tuple[str, int]:
    expires_at = int(time.time()) + config.AUTH_TOKEN_TTL_HOURS * 3600
    payload = {"uid": user_id, "email": normalize_email(email), "exp": expires_at}
    payload_b64 = b64url_encode(json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8"))
    signature = hmac.new(config.AUTH_TOKEN_SECRET.encode("utf-8"), payload_b64.encode("utf-8"), hashlib.sha256).digest()
    return f"{payload_b64}.{b64url_encode(signature)}", expires_at


def decode_auth_token(token: str) -> dict[str, Any]:
    parts = safe_text(token).split(".")
    if len(parts) != 2:
        raise HTTPException(status_code=401, detail="Invalid authentication token.")

    payload_b64, signature_b64 = parts
    expected = hmac.new(config.AUTH_TOKEN_SECRET.encode("utf-8"), payload_b64.encode("utf-8"), hashlib.sha256).digest()
    try:
        provided = b64url_decode(signature_b64)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail="Invalid authentication token.") from exc
    if not hmac.compare_digest(expected, provided):
        raise HTTPException(status_code=401, detail="Invalid authentication token signature.")

    try:
        payload = json.loads(b64url_decode(payload_b64).decode("utf-8"))
    except ValueError as exc:
        raise HTTPException(status_code=401, detail="Invalid authentication token payload.") from exc

    if int(payload.get("exp", 0)) < int(time.time()):
        raise HTTPException(status_code=401, detail="Session expired. Please log in again.")
    return payload


def extract_bearer_token(request: Request) -> str | None:
    auth_header = safe_text(request.headers.get("authorization"))
    if auth_header.lower().startswith("bearer "):
        return safe_text(auth_header[7:])
    return None


def require_authenticated_user(request: Request, explicit_auth_token: str | None = None) -> dict[str, Any]:
    token = safe_text(explicit_auth_token) or safe_text(extract_bearer_token(request))
    if not token:
        raise HTTPException(status_code=401, detail="Authentication required")

    payload = decode_auth_token(token)
    user = fetch_user_by_id(int(payload.get("uid", 0)))
    if not user:
        raise HTTPException(status_code=401, detail="Account not found. Please log in again.")
    if normalize_email(str(user["email"])) != normalize_email(str(payload.get("email", ""))):
        raise HTTPException(status_code=401, detail="Invalid authentication token.")
    return user


def optional_authenticated_user(request: Request) -> dict[str, Any] | None:
    if not extract_bearer_token(request):
        return None
    try:
        return require_authenticated_user(request)
    except HTTPException:
        return None


def is_verified(user: dict[str, Any] | None) -> bool:
    return bool(user and int(user.get("email_verified") or 0))


def require_verified_user(request: Request, explicit_auth_token: str | None = None) -> dict[str, Any]:
    user = require_authenticated_user(request, explicit_auth_token)
    if not is_verified(user):
        raise HTTPException(status_code=403, detail="Account verification required")
    return user


def has_admin_key(request: Request) -> bool:
    header_token = safe_text(request.headers.get("x-admin-key"))
    return bool(header_token and header_token in config.ADMIN_API_KEYS)


def is_admin(request: Request, user: dict[str, Any] | None) -> bool:
    if has_admin_key(request):
        return True
    return bool(user and int(user.get("is_admin") or 0))


def require_admin(request: Request) -> dict[str, Any] | None:
    if has_admin_key(request):
        return None
    user = require_authenticated_user(request)
    if not int(user.get("is_admin") or 0):
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


def user_payload(user: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": int(user["id"]),
        "email": str(user["email"]),
        "name": safe_text(user.get("full_name")) or display_name_from_email(str(user["email"])),
        "verified": is_verified(user),
        "verified_at": user.get("verified_at"),
        "verification_method": user.get("verification_method"),
        "created_at": user.get("created_at"),
    }


def session_payload(user: dict[str, Any], token: str | None = None, expires_at: int | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"success": True, "user": user_payload(user)}
    if token:
        payload["auth_token"] = token
    if expires_at:
        payload["expires_at"] = datetime.fromtimestamp(expires_at, tz=timezone.utc).isoformat()
    return payload
