"""
Shared fixtures for the FixRez API tests.

Every test runs against its own SQLite file; outgoing email and the LLM
client are replaced so nothing leaves the process.
"""

import os
import tempfile
from types import SimpleNamespace

os.environ.setdefault("AUTH_DB_PATH", os.path.join(tempfile.mkdtemp(prefix="fixrez-tests-"), "fixrez.db"))
os.environ.setdefault("AUTH_TOKEN_SECRET", "test-auth-secret")
os.environ["DATABASE_URL"] = ""

import pytest
from fastapi.testclient import TestClient

from fixrez import config, optimizer, verification
from fixrez.db import init_db
from fixrez.main import app
from fixrez.rate_limit import limiter

ADMIN_KEY = "test-admin-key"
DEFAULT_PASSWORD = "secret123"


@pytest.fixture(autouse=True)
def app_env(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "DB_BACKEND", "sqlite")
    monkeypatch.setattr(config, "DATABASE_URL", "")
    monkeypatch.setattr(config, "AUTH_DB_PATH", str(tmp_path / "fixrez.db"))
    monkeypatch.setattr(config, "VERIFICATION_RESEND_COOLDOWN_SECONDS", 0)
    monkeypatch.setattr(config, "AI_MIN_SPACING_SECONDS", 0)
    monkeypatch.setattr(config, "AI_PROVIDER_COOLDOWN_SECONDS", 300)
    monkeypatch.setattr(config, "AI_MAX_CONCURRENT", 1)
    monkeypatch.setattr(config, "DEV_AI_MOCK", False)
    monkeypatch.setattr(config, "LLM_MODEL", "test/model-a")
    monkeypatch.setattr(config, "LLM_FALLBACK_MODELS", [])
    monkeypatch.setattr(config, "RESEND_EMAIL_SENDING_ENABLED", False)
    monkeypatch.setattr(config, "SMTP_EMAIL_SENDING_ENABLED", False)
    monkeypatch.setattr(config, "ALLOWED_IPS", set())
    monkeypatch.setattr(config, "RATE_MAX", 10)
    monkeypatch.setattr(config, "ADMIN_API_KEYS", {ADMIN_KEY})
    monkeypatch.setattr(optimizer, "client", None)
    init_db()
    limiter.reset()
    optimizer.throttle.reset()
    yield
    limiter.reset()
    optimizer.throttle.reset()


@pytest.fixture(autouse=True)
def outbox(monkeypatch):
    """Captured verification emails as (email, code) pairs."""
    sent = []

    def fake_send(email, code, expires_minutes):
        sent.append((email, code))
        return None

    monkeypatch.setattr(verification, "send_verification_email", fake_send)
    return sent


@pytest.fixture
def client():
    return TestClient(app)


def auth_headers(token):
    return {"Authorization": f"Bearer {token}"}


def register(client, email="jane@example.com", password=DEFAULT_PASSWORD, name="Jane Doe"):
    return client.post("/api/auth/register", json={"name": name, "email": email, "password": password})


def login(client, email="jane@example.com", password=DEFAULT_PASSWORD):
    response = client.post("/api/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["auth_token"]


def latest_code(outbox, email):
    codes = [code for recipient, code in outbox if recipient == email]
    assert codes, f"no verification email sent to {email}"
    return codes[-1]


@pytest.fixture
def unverified_user(client):
    response = register(client)
    assert response.status_code == 200, response.text
    token = login(client)
    return SimpleNamespace(
        id=response.json()["user"]["id"],
        email="jane@example.com",
        token=token,
        headers=auth_headers(token),
    )


@pytest.fixture
def verified_user(client, unverified_user, outbox):
    code = latest_code(outbox, unverified_user.email)
    response = client.post(
        "/api/verification/verify-token",
        json={"token": code},
        headers=unverified_user.headers,
    )
    assert response.status_code == 200, response.text
    return unverified_user


class FakeCompletions:
    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=reply))])


class FakeLLMClient:
    def __init__(self, replies):
        self.completions = FakeCompletions(replies)
        self.chat = SimpleNamespace(completions=self.completions)


@pytest.fixture
def fake_llm(monkeypatch):
    """Install a fake LLM client that plays back the given replies in order."""

    def install(*replies):
        fake = FakeLLMClient(replies)
        monkeypatch.setattr(optimizer, "client", fake)
        return fake

    return install
