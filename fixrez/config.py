from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

TRUTHY_ENV_VALUES = {"1", "true", "yes", "on"}
logger = logging.getLogger("fixrez.backend")


def env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in TRUTHY_ENV_VALUES


def env_int(name: str, default: int, lower: int | None = None, upper: int | None = None) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        value = int(raw) if raw else default
    except ValueError:
        logger.warning("Ignoring non-integer value for %s: %r", name, raw)
        value = default
    if lower is not None:
        value = max(lower, value)
    if upper is not None:
        value = min(upper, value)
    return value


def env_list(*names: str) -> list[str]:
    for name in names:
        raw = os.getenv(name)
        if raw:
            return [item.strip() for item in raw.split(",") if item.strip()]
    return []


DEFAULT_CORS_ORIGINS = [
    "https://fixrez-ai.com",
    "https://www.fixrez-ai.com",
    "http://localhost:3000",
    "http://localhost:5176",
    "http://127.0.0.1:3000",
]


def parse_cors_origins(value: str | None) -> list[str]:
    if not value:
        return DEFAULT_CORS_ORIGINS
    origins = [origin.strip() for origin in value.split(",") if origin.strip()]
    return origins or DEFAULT_CORS_ORIGINS


def resolve_db_path() -> str:
    explicit = (os.getenv("AUTH_DB_PATH") or "").strip()
    if explicit:
        return explicit
    if os.path.isdir("/var/data"):
        return "/var/data/fixrez.db"
    return os.path.join(os.path.dirname(__file__), "data", "fixrez.db")


def normalize_database_url(value: str | None) -> str:
    raw = (value or "").strip()
    if raw.startswith("postgres://"):
        return "postgresql://" + raw[len("postgres://") :]
    return raw


CORS_ALLOW_ORIGINS = parse_cors_origins(os.getenv("CORS_ALLOW_ORIGINS"))
CORS_ALLOW_ORIGIN_REGEX = os.getenv("CORS_ALLOW_ORIGIN_REGEX")

DATABASE_URL = normalize_database_url(os.getenv("DATABASE_URL") or os.getenv("RENDER_POSTGRESQL_URL"))
DB_BACKEND = "postgres" if DATABASE_URL.startswith("postgresql://") else "sqlite"
AUTH_DB_PATH = resolve_db_path()

AUTH_TOKEN_SECRET = (os.getenv("AUTH_TOKEN_SECRET") or "replace-this-in-production").strip()
AUTH_TOKEN_TTL_HOURS = env_int("AUTH_TOKEN_TTL_HOURS", 720, lower=1)
PASSWORD_MIN_LENGTH = 6
ADMIN_API_KEYS = set(env_list("ADMIN_API_KEYS", "ADMIN_API_KEY"))

VERIFICATION_TOKEN_SECRET = (os.getenv("VERIFICATION_TOKEN_SECRET") or AUTH_TOKEN_SECRET).strip()
VERIFICATION_TOKEN_EXPIRY_MINUTES = env_int("VERIFICATION_TOKEN_EXPIRY_MINUTES", 60, lower=5, upper=1440)
VERIFICATION_MAX_ATTEMPTS = env_int("VERIFICATION_MAX_ATTEMPTS", 3, lower=1, upper=10)
VERIFICATION_RESEND_COOLDOWN_SECONDS = env_int("VERIFICATION_RESEND_COOLDOWN_SECONDS", 60, lower=0, upper=900)
APP_BASE_URL = (os.getenv("APP_BASE_URL") or "https://fixrez-ai.com").strip().rstrip("/")

if AUTH_TOKEN_SECRET == "replace-this-in-production":
    logger.warning("AUTH_TOKEN_SECRET is using a default value. Set AUTH_TOKEN_SECRET in production.")
if DB_BACKEND == "postgres":
    logger.info("Using external Postgres database.")
else:
    logger.info("Using SQLite database path: %s", AUTH_DB_PATH)

EMAIL_SMTP_HOST = (os.getenv("EMAIL_SMTP_HOST") or "").strip()
EMAIL_SMTP_PORT = env_int("EMAIL_SMTP_PORT", 587)
EMAIL_SMTP_USERNAME = (os.getenv("EMAIL_SMTP_USERNAME") or "").strip()
EMAIL_SMTP_PASSWORD = (os.getenv("EMAIL_SMTP_PASSWORD") or "").strip()
EMAIL_SMTP_FROM = (os.getenv("EMAIL_SMTP_FROM") or EMAIL_SMTP_USERNAME).strip()
EMAIL_FROM_NAME = (os.getenv("EMAIL_FROM_NAME") or "FixRez").strip()
EMAIL_SMTP_USE_TLS = env_flag("EMAIL_SMTP_USE_TLS", True)
EMAIL_SMTP_USE_SSL = env_flag("EMAIL_SMTP_USE_SSL", False)
EMAIL_SMTP_TIMEOUT_SECONDS = env_int("EMAIL_SMTP_TIMEOUT_SECONDS", 12, lower=5, upper=30)
SMTP_EMAIL_SENDING_ENABLED = bool(
    EMAIL_SMTP_HOST and EMAIL_SMTP_PORT and EMAIL_SMTP_USERNAME and EMAIL_SMTP_PASSWORD and EMAIL_SMTP_FROM
)
RESEND_API_KEY = (os.getenv("RESEND_API_KEY") or "").strip()
RESEND_FROM = (os.getenv("RESEND_FROM") or EMAIL_SMTP_FROM or "onboarding@resend.dev").strip()
RESEND_EMAIL_SENDING_ENABLED = bool(RESEND_API_KEY and RESEND_FROM)
EMAIL_PROVIDER = (os.getenv("EMAIL_PROVIDER") or "auto").strip().lower()
EMAIL_HTTP_TIMEOUT_SECONDS = env_int("EMAIL_HTTP_TIMEOUT_SECONDS", 12, lower=5, upper=30)
CONTACT_TO_EMAIL = (os.getenv("CONTACT_TO_EMAIL") or "hello@fixrez-ai.com").strip()
CONTACT_MIN_ELAPSED_MS = 2500

LLM_API_KEY = (os.getenv("OPENROUTER_API_KEY") or os.getenv("OPENAI_API_KEY") or "").strip()
LLM_BASE_URL = (
    os.getenv("LLM_BASE_URL") or ("https://openrouter.ai/api/v1" if os.getenv("OPENROUTER_API_KEY") else "")
).strip()
LLM_MODEL = (os.getenv("LLM_MODEL") or os.getenv("OPENROUTER_MODEL") or "meta-llama/llama-4-maverick:free").strip()
LLM_FALLBACK_MODELS = [model for model in env_list("LLM_FALLBACK_MODELS") if model != LLM_MODEL]
LLM_TEMPERATURE = float((os.getenv("LLM_TEMPERATURE") or "0.2").strip())
LLM_MAX_TOKENS = env_int("LLM_MAX_TOKENS", 1000, lower=200, upper=8000)
LLM_REFERER = (os.getenv("LLM_REFERER") or os.getenv("OPENROUTER_REFERER") or APP_BASE_URL).strip()
LLM_TITLE = (os.getenv("LLM_TITLE") or os.getenv("OPENROUTER_TITLE") or "FixRez").strip()
AI_MAX_CONCURRENT = env_int("AI_MAX_CONCURRENT", 1, lower=1, upper=16)
AI_MIN_SPACING_SECONDS = env_int("AI_MIN_SPACING_SECONDS", 30, lower=0)
AI_PROVIDER_COOLDOWN_SECONDS = env_int("AI_PROVIDER_COOLDOWN_SECONDS", 300, lower=0)
DEV_AI_MOCK = env_flag("DEV_AI_MOCK", False)

if not LLM_API_KEY:
    logger.warning("No LLM API key configured. Resume optimization requests will be rejected.")

RATE_WINDOW_SECONDS = env_int("RATE_WINDOW_SECONDS", 60, lower=1)
RATE_MAX = env_int("RATE_MAX", 10, lower=1)
ALLOWED_IPS = set(env_list("ALLOWED_IPS"))

MAX_UPLOAD_BYTES = env_int("MAX_UPLOAD_MB", 10, lower=1, upper=50) * 1024 * 1024
MAX_OPTIMIZE_TEXT_CHARS = 10_000
