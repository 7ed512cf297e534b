from __future__ import annotations

import json
import logging
import smtplib
import urllib.error
import urllib.request
from email.message import EmailMessage

from . import config
from .utils import normalize_email, safe_text

logger = logging.getLogger("fixrez.backend.email")


def provider_sequence() -> list[str]:
    if config.EMAIL_PROVIDER == "smtp":
        return ["smtp", "resend"]
    if config.EMAIL_PROVIDER == "resend":
        return ["resend", "smtp"]
    sequence: list[str] = []
    if config.RESEND_EMAIL_SENDING_ENABLED:
        sequence.append("resend")
    if config.SMTP_EMAIL_SENDING_ENABLED:
        sequence.append("smtp")
    return sequence


def email_sending_configured() -> bool:
    return config.RESEND_EMAIL_SENDING_ENABLED or config.SMTP_EMAIL_SENDING_ENABLED


def send_email_message_smtp(to_email: str, subject: str, text_body: str) -> str | None:
    if not config.SMTP_EMAIL_SENDING_ENABLED:
        return "SMTP host or credentials are not configured."

    try:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = f"{config.EMAIL_FROM_NAME} <{config.EMAIL_SMTP_FROM}>"
        msg["To"] = normalize_email(to_email)
        msg.set_content(text_body)

        if config.EMAIL_SMTP_PORT == 465 or config.EMAIL_SMTP_USE_SSL:
            with smtplib.SMTP_SSL(
                config.EMAIL_SMTP_HOST, config.EMAIL_SMTP_PORT, timeout=config.EMAIL_SMTP_TIMEOUT_SECONDS
            ) as server:
                server.login(config.EMAIL_SMTP_USERNAME, config.EMAIL_SMTP_PASSWORD)
                server.send_message(msg)
        else:
            with smtplib.SMTP(
                config.EMAIL_SMTP_HOST, config.EMAIL_SMTP_PORT, timeout=config.EMAIL_SMTP_TIMEOUT_SECONDS
            ) as server:
                if config.EMAIL_SMTP_USE_TLS:
                    server.starttls()
                server.login(config.EMAIL_SMTP_USERNAME, config.EMAIL_SMTP_PASSWORD)
                server.send_message(msg)
        return None
    except smtplib.SMTPAuthenticationError:
        logger.exception("SMTP auth failed for %s", config.EMAIL_SMTP_USERNAME)
        return "SMTP authentication failed."
    except TimeoutError:
        logger.exception("SMTP timeout for host %s", config.EMAIL_SMTP_HOST)
        return "SMTP connection timed out."
    except smtplib.SMTPException:
        logger.exception("SMTP error while sending email to %s", to_email)
        return "SMTP rejected the request."
    except OSError:
        logger.exception("SMTP network error while sending email to %s", to_email)
        return "SMTP network error."
    except Exception:
        logger.exception("Unexpected SMTP failure while sending email to %s", to_email)
        return "Unexpected SMTP delivery error. Check server logs for details."


def send_email_message_resend(to_email: str, subject: str, text_body: str) -> str | None:
    if not config.RESEND_EMAIL_SENDING_ENABLED:
        return "RESEND_API_KEY or RESEND_FROM is not configured."
    payload = {
        "from": f"{config.EMAIL_FROM_NAME} <{config.RESEND_FROM}>",
        "to": [normalize_email(to_email)],
        "subject": subject,
        "text": text_body,
    }
    req = urllib.request.Request(
        "https://api.resend.com/emails",
        data=json.dumps(payload).encode("utf-8"),
        method="POST",
        headers={
            "Authorization": f"Bearer {config.RESEND_API_KEY}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": "FixRezBackend/1.0",
        },
    )
    try:
        with urllib.request.urlopen(req, timeout=config.EMAIL_HTTP_TIMEOUT_SECONDS) as resp:
            status_code = int(resp.getcode() or 0)
            if status_code >= 400:
                return f"Resend API rejected the request (HTTP {status_code})."
        return None
    except urllib.error.HTTPError as exc:
        logger.exception("Resend HTTP error while sending email to %s", to_email)
        details = exc.read().decode("utf-8", errors="ignore") if exc.fp else ""
        try:
            parsed = json.loads(details or "{}")
        except ValueError:
            parsed = {}
        error_message = safe_text(parsed.get("message") if isinstance(parsed, dict) else "")
        if error_message:
            return f"Resend API error ({exc.code}): {error_message}"
        if details:
            return f"Resend API error ({exc.code}): {details[:220]}"
        return f"Resend API error ({exc.code})."
    except TimeoutError:
        logger.exception("Resend timeout while sending email to %s", to_email)
        return "Resend API timeout."
    except urllib.error.URLError:
        logger.exception("Resend network error while sending email to %s", to_email)
        return "Resend network error."
    except Exception:
        logger.exception("Unexpected Resend failure while sending email to %s", to_email)
        return "Unexpected Resend delivery error. Check server logs for details."


def send_email_message(to_email: str, subject: str, text_body: str) -> str | None:
    """Send through the configured providers in order; return None or the joined errors."""
    sequence = provider_sequence()
    if not sequence:
        logger.warning("No email provider configured; dropping message to %s", to_email)
        return "Email settings are missing. Configure RESEND_API_KEY or SMTP settings."

    errors: list[str] = []
    for provider in sequence:
        if provider == "resend":
            error = send_email_message_resend(to_email, subject, text_body)
        else:
            error = send_email_message_smtp(to_email, subject, text_body)
        if not error:
            return None
        errors.append(f"{provider.upper()}: {error}")
    return " | ".join(errors)


def send_verification_email(email: str, code: str, expires_minutes: int) -> str | None:
    link = f"{config.APP_BASE_URL}/verify?token={code}"
    return send_email_message(
        email,
        "Verify your FixRez account",
        (
            "Confirm your email address to start optimizing your resume.\n\n"
            f"Verification code: {code}\n"
            f"Or open: {link}\n\n"
            f"This code expires in {expires_minutes} minutes.\n"
            "If you did not create a FixRez account, you can ignore this email."
        ),
    )


def send_contact_notification(name: str, email: str, subject: str, message: str) -> str | None:
    return send_email_message(
        config.CONTACT_TO_EMAIL,
        subject,
        f"New contact submission\n\nName: {name}\nEmail: {email}\nSubject: {subject}\n\nMessage:\n{message}",
    )
