"""Verification token lifecycle tests."""

from datetime import timedelta

from conftest import ADMIN_KEY, auth_headers, latest_code, login, register

from fixrez import config
from fixrez.db import db_connection
from fixrez.utils import now_utc
from fixrez.verification import can_retry_error, create_verification_token, verify_user_token


def verify(client, user, token):
    return client.post("/api/verification/verify-token", json={"token": token}, headers=user.headers)


def expire_tokens(user_id):
    connection = db_connection()
    try:
        connection.execute(
            "UPDATE verification_tokens SET expires_at = ? WHERE user_id = ?",
            ((now_utc() - timedelta(minutes=1)).isoformat(), user_id),
        )
        connection.commit()
    finally:
        connection.close()


class TestSendToken:
    def test_send_token_emails_new_code(self, client, unverified_user, outbox):
        response = client.post("/api/verification/send-token", json={}, headers=unverified_user.headers)

        assert response.status_code == 200
        data = response.json()
        assert data["token_id"]
        assert data["expires_at"]
        assert len(outbox) == 2

    def test_send_token_requires_session(self, client):
        response = client.post("/api/verification/send-token", json={})
        assert response.status_code == 401

    def test_already_verified_returns_400(self, client, verified_user):
        response = client.post("/api/verification/send-token", json={}, headers=verified_user.headers)
        assert response.status_code == 400
        assert response.json()["error_type"] == "already_verified"

    def test_invalid_type_returns_400(self, client, unverified_user):
        response = client.post(
            "/api/verification/send-token",
            json={"type": "carrier_pigeon"},
            headers=unverified_user.headers,
        )
        assert response.status_code == 400

    def test_undeliverable_method_returns_400(self, client, unverified_user):
        response = client.post(
            "/api/verification/send-token",
            json={"method": "phone"},
            headers=unverified_user.headers,
        )
        assert response.status_code == 400

    def test_resend_cooldown_returns_429(self, client, unverified_user, monkeypatch):
        monkeypatch.setattr(config, "VERIFICATION_RESEND_COOLDOWN_SECONDS", 60)
        response = client.post("/api/verification/send-token", json={}, headers=unverified_user.headers)
        assert response.status_code == 429
        assert response.json()["retry_after_seconds"] > 0

    def test_email_failure_returns_502_and_discards_token(self, client, unverified_user, monkeypatch):
        from fixrez import verification

        monkeypatch.setattr(verification, "send_verification_email", lambda *args: "RESEND: boom")
        response = client.post("/api/verification/send-token", json={}, headers=unverified_user.headers)

        assert response.status_code == 502
        connection = db_connection()
        try:
            count = connection.execute(
                "SELECT COUNT(*) AS count FROM verification_tokens WHERE user_id = ?",
                (unverified_user.id,),
            ).fetchone()["count"]
        finally:
            connection.close()
        assert count == 1


class TestVerifyToken:
    def test_right_code_verifies_account(self, client, unverified_user, outbox):
        response = verify(client, unverified_user, latest_code(outbox, unverified_user.email))

        assert response.status_code == 200
        assert response.json()["method"] == "email"
        status = client.get(f"/api/verification/status/{unverified_user.id}", headers=unverified_user.headers).json()
        assert status["is_verified"] is True
        assert status["verification_timestamp"]
        assert status["can_attempt_verification"] is False

    def test_code_is_case_insensitive(self, client, unverified_user, outbox):
        code = latest_code(outbox, unverified_user.email).upper()
        assert verify(client, unverified_user, code).status_code == 200

    def test_wrong_code_counts_attempts_until_exhausted(self, client, unverified_user, outbox):
        first = verify(client, unverified_user, "0" * 64)
        assert first.status_code == 400
        assert first.json()["error_type"] == "invalid_token"
        assert first.json()["attempts_remaining"] == 2
        assert first.json()["can_retry"] is True

        verify(client, unverified_user, "1" * 64)
        third = verify(client, unverified_user, "2" * 64)
        assert third.json()["error_type"] == "max_attempts_exceeded"
        assert third.json()["can_retry"] is False

        # Even the right code is refused once attempts are used up.
        blocked = verify(client, unverified_user, latest_code(outbox, unverified_user.email))
        assert blocked.json()["error_type"] == "max_attempts_exceeded"

    def test_expired_token_reports_expired(self, client, unverified_user, outbox):
        expire_tokens(unverified_user.id)
        response = verify(client, unverified_user, latest_code(outbox, unverified_user.email))

        assert response.status_code == 400
        assert response.json()["error_type"] == "expired_token"
        assert response.json()["can_retry"] is True

    def test_new_token_retires_previous_one(self, client, unverified_user, outbox):
        old_code = latest_code(outbox, unverified_user.email)
        client.post("/api/verification/send-token", json={}, headers=unverified_user.headers)
        new_code = latest_code(outbox, unverified_user.email)

        assert verify(client, unverified_user, old_code).json()["error_type"] == "invalid_token"
        assert verify(client, unverified_user, new_code).status_code == 200

    def test_already_verified_user(self, client, verified_user, outbox):
        response = verify(client, verified_user, latest_code(outbox, verified_user.email))
        assert response.json()["error_type"] == "already_verified"

    def test_missing_token_returns_400(self, client, unverified_user):
        response = client.post("/api/verification/verify-token", json={}, headers=unverified_user.headers)
        assert response.status_code == 400

    def test_failures_are_recorded(self, client, unverified_user):
        verify(client, unverified_user, "bad")
        response = client.get(f"/api/verification/errors/{unverified_user.id}", headers=unverified_user.headers)

        assert response.status_code == 200
        errors = response.json()["errors"]
        assert len(errors) == 1
        assert errors[0]["error_type"] == "invalid_token"


class TestVerificationService:
    def test_issue_purges_expired_tokens(self, unverified_user):
        expire_tokens(unverified_user.id)
        create_verification_token(unverified_user.id)

        connection = db_connection()
        try:
            count = connection.execute(
                "SELECT COUNT(*) AS count FROM verification_tokens WHERE user_id = ?",
                (unverified_user.id,),
            ).fetchone()["count"]
        finally:
            connection.close()
        assert count == 1

    def test_missing_fields(self):
        result = verify_user_token(0, "")
        assert result["error_type"] == "missing_fields"

    def test_retryable_error_types(self):
        assert can_retry_error("invalid_token")
        assert can_retry_error("expired_token")
        assert can_retry_error("system_error")
        assert not can_retry_error("max_attempts_exceeded")
        assert not can_retry_error("already_verified")


class TestVerificationAccess:
    def test_status_of_other_user_is_forbidden(self, client, unverified_user):
        register(client, email="other@example.com", name="Other")
        other_token = login(client, email="other@example.com")
        response = client.get(f"/api/verification/status/{unverified_user.id}", headers=auth_headers(other_token))
        assert response.status_code == 403

    def test_admin_key_reads_any_status(self, client, unverified_user):
        response = client.get(f"/api/verification/status/{unverified_user.id}", headers={"x-admin-key": ADMIN_KEY})
        assert response.status_code == 200
        assert response.json()["has_valid_token"] is True
        assert response.json()["attempts_remaining"] == 3

    def test_unknown_user_status_returns_404(self, client):
        response = client.get("/api/verification/status/999", headers={"x-admin-key": ADMIN_KEY})
        assert response.status_code == 404

    def test_metrics_require_admin(self, client, unverified_user):
        assert client.get("/api/verification/metrics", headers=unverified_user.headers).status_code == 403
        assert client.get("/api/verification/metrics").status_code == 401

    def test_metrics_for_admin(self, client, verified_user):
        register(client, email="pending@example.com", name="Pending")
        response = client.get("/api/verification/metrics", headers={"x-admin-key": ADMIN_KEY})

        assert response.status_code == 200
        data = response.json()
        assert data["total_users"] == 2
        assert data["verified_users"] == 1
        assert data["pending_verifications"] == 1
        assert data["verification_rate"] == "50.0"
