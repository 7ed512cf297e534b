from __future__ import annotations

import io
import logging
import random
import time
from typing import Any

from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import config, optimizer
from .accounts import (
    create_auth_token,
    create_user,
    fetch_preferences,
    fetch_user_by_email,
    has_admin_key,
    is_verified,
    optional_authenticated_user,
    require_admin,
    require_authenticated_user,
    require_verified_user,
    session_payload,
    update_user_profile,
    upsert_preferences,
    verify_password,
)
from .ats import score_resume_against_job
from .db import init_db, log_analytics_event
from .emailer import email_sending_configured, send_contact_notification
from .extraction import extract_document_text, word_count
from .pdf_export import EXPORT_TEMPLATES, render_resume_pdf, sanitize_download_name
from .rate_limit import enforce_rate_limit
from .records import (
    dashboard_stats,
    get_optimization,
    list_optimizations,
    record_export,
    record_optimization,
    store_contact_message,
)
from .utils import client_ip, is_valid_email, normalize_email, now_utc_iso, safe_text, user_agent
from .verification import (
    VERIFICATION_ERROR_MESSAGES,
    enforce_resend_cooldown,
    get_verification_stats,
    get_verification_status,
    issue_and_send_token,
    list_verification_errors,
    record_verification_error,
    validate_token_options,
    verify_user_token,
)

logger = logging.getLogger("fixrez.backend")

app = FastAPI(title="FixRez API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_origin_regex=config.CORS_ALLOW_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def error_payload(detail: Any) -> dict[str, Any]:
    if isinstance(detail, dict):
        extra = {key: value for key, value in detail.items() if key != "message"}
        return {"success": False, "error": safe_text(detail.get("message")) or "Request failed", **extra}
    return {"success": False, "error": safe_text(detail) or "Request failed"}


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("HTTP %s on %s %s: %s", exc.status_code, request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=error_payload(exc.detail), headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    fields = [" -> ".join(str(part) for part in error.get("loc", ()) if part != "body") for error in errors]
    message = "Invalid request"
    if errors:
        message = f"Invalid request: {fields[0] or 'body'} {errors[0].get('msg', '')}".strip()
    return JSONResponse(status_code=400, content={"success": False, "error": message, "fields": fields})


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})


init_db()


class RegisterRequest(BaseModel):
    name: str | None = None
    email: str | None = None
    password: str | None = None


class LoginRequest(BaseModel):
    email: str | None = None
    password: str | None = None


class SettingsRequest(BaseModel):
    name: str | None = None
    email: str | None = None
    notifications: bool | None = None
    marketing_emails: bool | None = None
    auth_token: str | None = None


class TextOptimizeRequest(BaseModel):
    text: str | None = None
    type: str | None = "seo"
    auth_token: str | None = None


class ResumeOptimizeRequest(BaseModel):
    resume_text: str | None = None
    job_description: str | None = None
    job_title: str | None = None
    filename: str | None = None
    prompt: str | None = None
    auth_token: str | None = None


class ATSScoreRequest(BaseModel):
    resume_text: str | None = None
    job_description: str | None = None
    job_title: str | None = None


class ExportRequest(BaseModel):
    format: str | None = "pdf"
    name: str | None = None
    template: str | None = None
    resume_text: str | None = None
    resume_data: dict[str, Any] | None = None
    optimization_id: int | None = None
    auth_token: str | None = None


class ContactRequest(BaseModel):
    name: str | None = None
    email: str | None = None
    subject: str | None = None
    message: str | None = None
    honey: str | None = None
    elapsed_ms: int | None = None
    challenge_a: int | None = None
    challenge_b: int | None = None
    challenge_answer: int | None = None


class SendTokenRequest(BaseModel):
    type: str | None = "email"
    method: str | None = "email"
    auth_token: str | None = None


class VerifyTokenRequest(BaseModel):
    token: str | None = None
    type: str | None = "email"
    auth_token: str | None = None


def require_self_or_admin(request: Request, user_id: int, auth_token: str | None = None) -> None:
    if has_admin_key(request):
        return
    viewer = require_authenticated_user(request, auth_token)
    if int(viewer["id"]) != user_id and not int(viewer.get("is_admin") or 0):
        raise HTTPException(status_code=403, detail="Access denied")


@app.get("/")
def root() -> dict[str, str]:
    return {"message": "FixRez backend running"}


@app.get("/api/health")
def health(request: Request) -> dict[str, Any]:
    return {
        "success": True,
        "message": "FixRez API is healthy",
        "timestamp": now_utc_iso(),
        "endpoint": "/api/health",
        "method": request.method,
        "env": {
            "has_database_url": bool(config.DATABASE_URL),
            "has_llm_key": bool(config.LLM_API_KEY),
            "has_email_provider": email_sending_configured(),
            "database_backend": config.DB_BACKEND,
        },
    }


@app.post("/api/auth/register")
def register(data: RegisterRequest) -> dict[str, Any]:
    name = safe_text(data.name)
    email = normalize_email(data.email)
    password = data.password or ""

    if not name or not email or not password:
        raise HTTPException(status_code=400, detail="Name, email, and password are required")
    if not is_valid_email(email):
        raise HTTPException(status_code=400, detail="Invalid email format")
    if len(password) < config.PASSWORD_MIN_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"Password must be at least {config.PASSWORD_MIN_LENGTH} characters long",
        )
    if fetch_user_by_email(email):
        log_analytics_event("auth", "register_failed_existing_account", meta={"email": email})
        raise HTTPException(status_code=409, detail="User with this email already exists")

    user = create_user(name, email, password)
    user_id = int(user["id"])
    try:
        upsert_preferences(user_id, notifications=True, marketing_emails=False)
    except Exception:
        logger.exception("Failed to create default preferences for user %s", user_id)

    verification_email_sent = False
    try:
        issue_and_send_token(user)
        verification_email_sent = True
    except HTTPException as exc:
        logger.warning("Verification email not sent for user %s: %s", user_id, exc.detail)
    except Exception:
        logger.exception("Unexpected error sending verification email for user %s", user_id)

    log_analytics_event("auth", "register_success", user_id=user_id, meta={"email": email})
    return {
        "success": True,
        "message": "User created successfully",
        "user": {"id": user_id, "email": str(user["email"]), "name": str(user["full_name"])},
        "verification_email_sent": verification_email_sent,
    }


@app.post("/api/auth/login")
def login(data: LoginRequest) -> dict[str, Any]:
    email = normalize_email(data.email)
    password = data.password or ""
    if not email or not password:
        raise HTTPException(status_code=400, detail="Email and password are required")

    user = fetch_user_by_email(email)
    if not user:
        log_analytics_event("auth", "login_failed_account_not_found", meta={"email": email})
        raise HTTPException(status_code=401, detail="Invalid email or password")
    if not verify_password(password, user):
        log_analytics_event("auth", "login_failed_wrong_password", user_id=int(user["id"]), meta={"email": email})
        raise HTTPException(status_code=401, detail="Invalid email or password")

    token, expires_at = create_auth_token(int(user["id"]), str(user["email"]))
    log_analytics_event("auth", "login_success", user_id=int(user["id"]), meta={"email": email})
    return session_payload(user, token, expires_at)


@app.get("/api/auth/session")
def auth_session(request: Request, auth_token: str | None = None) -> dict[str, Any]:
    user = require_authenticated_user(request, auth_token)
    return session_payload(user)


@app.get("/api/me")
def me(request: Request, auth_token: str | None = None) -> dict[str, Any]:
    user = require_verified_user(request, auth_token)
    payload = session_payload(user)
    payload["preferences"] = fetch_preferences(int(user["id"]))
    return payload


@app.put("/api/user/settings")
def update_settings(data: SettingsRequest, request: Request) -> dict[str, Any]:
    user = require_authenticated_user(request, data.auth_token)
    user_id = int(user["id"])
    name = safe_text(data.name)
    email = normalize_email(data.email)
    if not name or not email:
        raise HTTPException(status_code=400, detail="Name and email are required")
    if not is_valid_email(email):
        raise HTTPException(status_code=400, detail="Invalid email format")

    current = fetch_preferences(user_id)
    notifications = current["notifications"] if data.notifications is None else data.notifications
    marketing_emails = current["marketing_emails"] if data.marketing_emails is None else data.marketing_emails

    updated = update_user_profile(user_id, name, email)
    upsert_preferences(user_id, notifications, marketing_emails)
    log_analytics_event("settings", "profile_updated", user_id=user_id)

    # Sessions are bound to the account email, so an email change needs a fresh token.
    token, expires_at = None, None
    if normalize_email(str(updated["email"])) != normalize_email(str(user["email"])):
        token, expires_at = create_auth_token(user_id, str(updated["email"]))
    payload = session_payload(updated, token, expires_at)
    payload["message"] = "Settings updated successfully"
    payload["preferences"] = {"notifications": bool(notifications), "marketing_emails": bool(marketing_emails)}
    return payload


@app.get("/api/user/dashboard-stats")
def user_dashboard_stats(request: Request, auth_token: str | None = None) -> dict[str, Any]:
    user = require_authenticated_user(request, auth_token)
    try:
        stats = dashboard_stats(int(user["id"]))
    except Exception as exc:
        logger.exception("Failed to load dashboard stats for user %s", user["id"])
        raise HTTPException(status_code=500, detail="Failed to fetch optimization data") from exc
    return {"success": True, **stats}


@app.get("/api/user/optimizations")
def user_optimizations(request: Request, limit: int = 20, auth_token: str | None = None) -> dict[str, Any]:
    user = require_authenticated_user(request, auth_token)
    return {"success": True, "optimizations": list_optimizations(int(user["id"]), limit)}


@app.get("/api/user/optimizations/{optimization_id}")
def user_optimization_detail(optimization_id: int, request: Request, auth_token: str | None = None) -> dict[str, Any]:
    user = require_authenticated_user(request, auth_token)
    record = get_optimization(int(user["id"]), optimization_id)
    if not record:
        raise HTTPException(status_code=404, detail="Optimization not found")
    return {"success": True, "optimization": record}


@app.post("/api/contact")
def contact(data: ContactRequest, request: Request) -> dict[str, Any]:
    enforce_rate_limit(request, "contact")

    if safe_text(data.honey):
        raise HTTPException(status_code=400, detail="Invalid submission")
    if data.elapsed_ms is not None and data.elapsed_ms < config.CONTACT_MIN_ELAPSED_MS:
        raise HTTPException(status_code=400, detail="Please take a moment before submitting the form")

    name = safe_text(data.name)
    email = normalize_email(data.email)
    message = safe_text(data.message)
    if not name:
        raise HTTPException(status_code=400, detail="Name is required")
    if not is_valid_email(email):
        raise HTTPException(status_code=400, detail="A valid email is required")
    if len(message) < 10:
        raise HTTPException(status_code=400, detail="Message must be at least 10 characters")

    challenge_fields = (data.challenge_a, data.challenge_b, data.challenge_answer)
    if any(value is not None for value in challenge_fields):
        if None in challenge_fields or data.challenge_a + data.challenge_b != data.challenge_answer:
            raise HTTPException(status_code=400, detail="Incorrect answer to the verification question")

    subject = " ".join(safe_text(data.subject).split()) or "Contact from FixRez AI"
    viewer = optional_authenticated_user(request)
    viewer_id = int(viewer["id"]) if viewer else None
    message_id = store_contact_message(
        name,
        email,
        subject,
        message,
        user_id=viewer_id,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )

    notified = False
    if email_sending_configured():
        send_error = send_contact_notification(name, email, subject, message)
        if send_error:
            logger.error("Contact notification %s failed: %s", message_id, send_error)
            raise HTTPException(
                status_code=502,
                detail={"message": "Failed to send message", "details": send_error, "id": message_id},
            )
        notified = True

    log_analytics_event("contact", "message_received", user_id=viewer_id, meta={"id": message_id, "notified": notified})
    return {"success": True, "message": "Message sent successfully", "id": message_id, "notified": notified}


@app.post("/api/upload")
async def upload_resume(request: Request, file: UploadFile | None = File(None)) -> dict[str, Any]:
    if file is None or not safe_text(file.filename):
        raise HTTPException(status_code=400, detail="No file uploaded")

    contents = await file.read(config.MAX_UPLOAD_BYTES + 1)
    text, kind = extract_document_text(file.filename or "", file.content_type, contents)
    viewer = optional_authenticated_user(request)
    log_analytics_event(
        "upload",
        "resume_parsed",
        user_id=int(viewer["id"]) if viewer else None,
        meta={"type": kind, "size": len(contents)},
    )
    return {
        "success": True,
        "text": text,
        "filename": file.filename,
        "size": len(contents),
        "type": kind,
        "word_count": word_count(text),
    }


@app.post("/api/optimize")
def optimize_text_route(data: TextOptimizeRequest, request: Request) -> dict[str, Any]:
    user = require_verified_user(request, data.auth_token)
    text = data.text
    if not text:
        raise HTTPException(status_code=400, detail="Text is required")
    if len(text) > config.MAX_OPTIMIZE_TEXT_CHARS:
        raise HTTPException(status_code=400, detail="Text is too long (max 10,000 characters)")

    optimization_type = safe_text(data.type).lower() or "seo"
    optimized_text = optimizer.optimize_text(text, optimization_type)

    score_improvement = random.randint(10, 39)
    record_optimization(
        int(user["id"]),
        optimization_type,
        text,
        optimized_text,
        "completed",
        score=score_improvement,
        score_improvement=score_improvement,
    )
    return {
        "success": True,
        "original_text": text,
        "optimized_text": optimized_text,
        "type": optimization_type,
        "score_improvement": score_improvement,
        "timestamp": now_utc_iso(),
    }


@app.post("/api/optimize/resume")
def optimize_resume_route(data: ResumeOptimizeRequest, request: Request) -> dict[str, Any]:
    user = require_verified_user(request, data.auth_token)
    user_id = int(user["id"])
    enforce_rate_limit(request, "optimize")

    resume_text = safe_text(data.resume_text)
    job_description = safe_text(data.job_description)
    if not resume_text or not job_description:
        raise HTTPException(status_code=400, detail="Missing resume or job description")
    job_title = safe_text(data.job_title)

    before = score_resume_against_job(resume_text, job_description, job_title)
    started = time.monotonic()
    try:
        result = optimizer.optimize_resume(resume_text, job_description, data.prompt)
    except HTTPException as exc:
        detail = exc.detail if isinstance(exc.detail, dict) else {}
        if detail.get("attempted_models"):
            record_optimization(
                user_id,
                "resume",
                resume_text,
                None,
                "failed",
                filename=safe_text(data.filename) or None,
                job_title=job_title or None,
                job_description=job_description,
                model_used=detail.get("last_model"),
                duration_ms=int((time.monotonic() - started) * 1000),
                error_message=safe_text(detail.get("details")) or safe_text(detail.get("message")),
            )
            log_analytics_event("optimize", "resume_failed", user_id=user_id, meta={"status": exc.status_code})
        raise
    except Exception as exc:
        logger.exception("Unhandled resume optimization error for user %s", user_id)
        raise HTTPException(status_code=500, detail="Optimization failed due to a server error.") from exc

    duration_ms = int((time.monotonic() - started) * 1000)
    optimized_text = optimizer.resume_json_to_text(result["data"])
    after = score_resume_against_job(optimized_text, job_description, job_title)
    improvement = after["score"] - before["score"]
    optimization_id = record_optimization(
        user_id,
        "resume",
        resume_text,
        optimized_text,
        "completed",
        score=after["score"],
        score_improvement=improvement,
        filename=safe_text(data.filename) or None,
        job_title=job_title or None,
        job_description=job_description,
        model_used=result["model"],
        duration_ms=duration_ms,
    )
    log_analytics_event(
        "optimize",
        "resume_completed",
        user_id=user_id,
        meta={"model": result["model"], "duration_ms": duration_ms, "improvement": improvement},
    )

    payload: dict[str, Any] = {
        "success": True,
        "data": result["data"],
        "model": result["model"],
        "optimization_id": optimization_id,
        "ats": {"before": before["score"], "after": after["score"], "improvement": improvement},
    }
    if result.get("warning"):
        payload["warning"] = result["warning"]
    return payload


@app.get("/api/optimize/status")
def optimize_status() -> dict[str, Any]:
    return {"success": True, **optimizer.throttle.snapshot()}


@app.post("/api/ats/score")
def ats_score(data: ATSScoreRequest, request: Request) -> dict[str, Any]:
    enforce_rate_limit(request, "ats")
    resume_text = safe_text(data.resume_text)
    job_description = safe_text(data.job_description)
    if not resume_text or not job_description:
        raise HTTPException(status_code=400, detail="Resume text and job description are required")

    result = score_resume_against_job(resume_text, job_description, safe_text(data.job_title))
    viewer = optional_authenticated_user(request)
    log_analytics_event(
        "ats",
        "score_checked",
        user_id=int(viewer["id"]) if viewer else None,
        meta={"score": result["score"]},
    )
    return {"success": True, **result}


@app.post("/api/export")
def export_resume(data: ExportRequest, request: Request) -> StreamingResponse:
    user = require_authenticated_user(request, data.auth_token)
    user_id = int(user["id"])

    export_format = safe_text(data.format).lower() or "pdf"
    if export_format not in {"pdf", "text"}:
        raise HTTPException(status_code=400, detail="Unsupported export format. Use pdf or text.")

    optimization = None
    if data.optimization_id is not None:
        optimization = get_optimization(user_id, data.optimization_id)
        if not optimization:
            raise HTTPException(status_code=404, detail="Optimization not found")

    resume_text = safe_text(data.resume_text)
    if not resume_text and data.resume_data:
        resume_text = optimizer.resume_json_to_text(data.resume_data)
    if not resume_text and optimization:
        resume_text = safe_text(optimization.get("optimized_text"))
    if not resume_text:
        raise HTTPException(status_code=400, detail="Resume content is required for export.")

    name = safe_text(data.name)
    if not name and data.resume_data and isinstance(data.resume_data.get("header"), dict):
        name = safe_text(data.resume_data["header"].get("name"))
    template = safe_text(data.template).lower() or "classic"
    if template not in EXPORT_TEMPLATES:
        template = "classic"
    safe_name = sanitize_download_name(name)

    if export_format == "pdf":
        try:
            payload = render_resume_pdf(name, template, resume_text)
        except Exception as exc:
            logger.exception("PDF render failed for user %s", user_id)
            raise HTTPException(status_code=500, detail="Unable to generate PDF right now.") from exc
        media_type = "application/pdf"
        filename = f"{safe_name}-{template}.pdf"
    else:
        payload = resume_text.encode("utf-8")
        media_type = "text/plain; charset=utf-8"
        filename = f"{safe_name}.txt"

    record_export(
        user_id,
        export_format,
        payload,
        filename,
        template=template if export_format == "pdf" else None,
        optimization_id=data.optimization_id,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )
    log_analytics_event("export", "resume_exported", user_id=user_id, meta={"format": export_format, "template": template})
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    return StreamingResponse(io.BytesIO(payload), media_type=media_type, headers=headers)


@app.post("/api/verification/send-token")
def send_verification_token(data: SendTokenRequest, request: Request) -> dict[str, Any]:
    user = require_authenticated_user(request, data.auth_token)
    user_id = int(user["id"])
    if is_verified(user):
        details = VERIFICATION_ERROR_MESSAGES["already_verified"]
        raise HTTPException(
            status_code=400,
            detail={"message": details["user_message"], "error_type": "already_verified", "can_retry": False},
        )

    token_type = safe_text(data.type).lower() or "email"
    method = safe_text(data.method).lower() or "email"
    validate_token_options(token_type, method)
    enforce_resend_cooldown(user_id)
    issued = issue_and_send_token(user, token_type, method)
    return {
        "success": True,
        "message": f"Verification code sent to {user['email']}",
        "token_id": issued["token_id"],
        "expires_at": issued["expires_at"],
    }


@app.post("/api/verification/verify-token")
def verify_token(data: VerifyTokenRequest, request: Request) -> dict[str, Any]:
    user = require_authenticated_user(request, data.auth_token)
    user_id = int(user["id"])
    token = safe_text(data.token)
    if not token:
        raise HTTPException(status_code=400, detail="Verification token is required")

    try:
        result = verify_user_token(user_id, token, safe_text(data.type).lower() or "email")
    except Exception as exc:
        logger.exception("Verification failed unexpectedly for user %s", user_id)
        record_verification_error(user_id, "system_error", str(exc))
        raise HTTPException(status_code=500, detail="Verification failed due to a server error.") from exc

    if not result["success"]:
        record_verification_error(user_id, result["error_type"])
        log_analytics_event("verification", "verify_failed", user_id=user_id, meta={"error_type": result["error_type"]})
        detail = {key: value for key, value in result.items() if key not in {"success", "error"}}
        detail["message"] = result["error"]
        raise HTTPException(status_code=400, detail=detail)

    log_analytics_event("verification", "verified", user_id=user_id, meta={"method": result["method"]})
    return {
        "success": True,
        "message": "Account verified successfully",
        "verified_at": result["verified_at"],
        "method": result["method"],
    }


@app.get("/api/verification/status/{user_id}")
def verification_status(user_id: int, request: Request, auth_token: str | None = None) -> dict[str, Any]:
    require_self_or_admin(request, user_id, auth_token)
    status = get_verification_status(user_id)
    if status is None:
        raise HTTPException(status_code=404, detail="User not found")
    return {"success": True, **status}


@app.get("/api/verification/errors/{user_id}")
def verification_errors(user_id: int, request: Request, auth_token: str | None = None) -> dict[str, Any]:
    require_self_or_admin(request, user_id, auth_token)
    return {"success": True, "errors": list_verification_errors(user_id)}


@app.get("/api/verification/metrics")
def verification_metrics(request: Request) -> dict[str, Any]:
    require_admin(request)
    return {"success": True, **get_verification_stats()}
