"""App settings — loaded from environment."""
from __future__ import annotations

import os
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    # API
    API_HOST = os.getenv("API_HOST", "0.0.0.0")
    API_PORT = int(os.getenv("API_PORT", "8000"))

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///vibeguard.db")

    # Moderation policy
    MODERATION_ENABLED = _flag("MODERATION_ENABLED", "true")
    MODERATION_AUTO_REJECT_THRESHOLD = float(os.getenv("MODERATION_AUTO_REJECT_THRESHOLD", "0.9"))
    MODERATION_REVIEW_THRESHOLD = float(os.getenv("MODERATION_REVIEW_THRESHOLD", "0.5"))

    # Vision classifier (OpenAI-compatible chat/completions endpoint)
    CLASSIFIER_API_KEY = os.getenv("CLASSIFIER_API_KEY") or os.getenv("OPENAI_API_KEY")
    CLASSIFIER_API_BASE = os.getenv("CLASSIFIER_API_BASE", "https://api.openai.com/v1")
    CLASSIFIER_MODEL = os.getenv("CLASSIFIER_MODEL", "gpt-4o-mini")
    CLASSIFIER_TIMEOUT_SECONDS = float(os.getenv("CLASSIFIER_TIMEOUT_SECONDS", "30"))
    CLASSIFIER_MAX_ATTEMPTS = int(os.getenv("CLASSIFIER_MAX_ATTEMPTS", "3"))
    CLASSIFIER_BACKOFF_BASE_SECONDS = float(os.getenv("CLASSIFIER_BACKOFF_BASE_SECONDS", "1.0"))
    CLASSIFIER_STRUCTURED_OUTPUT = _flag("CLASSIFIER_STRUCTURED_OUTPUT", "true")

    # Admin API key (review surface for the admin UI)
    ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "")

    # Stuck-item sweep
    SWEEP_INTERVAL_MINUTES = int(os.getenv("SWEEP_INTERVAL_MINUTES", "10"))
    SWEEP_STALE_AFTER_MINUTES = int(os.getenv("SWEEP_STALE_AFTER_MINUTES", "15"))

    # CORS origins (comma-separated, or * for dev)
    CORS_ORIGINS = [
        o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")
    ]

    # Observability
    SENTRY_DSN = os.getenv("SENTRY_DSN", "")
    SENTRY_ENVIRONMENT = os.getenv("SENTRY_ENVIRONMENT", "development")
    SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.1"))

    # Logging
    LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # "text" or "json"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
