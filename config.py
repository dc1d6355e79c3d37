"""
Application configuration.
This module defines the configuration settings for the approvals service, including database connection and pool
sizing, the Medad ERP bridge, retry/timeout policy and logging. It uses environment variables for sensitive
information and defaults for development. In production, make sure to set the appropriate environment variables
(at least SECRET_KEY, DATABASE_URL and the MEDAD_* credentials).
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _engine_options(database_url: str) -> dict:
    """
    Pool sizing for server databases.

    SQLite (dev) keeps SQLAlchemy defaults: its pools do not accept pool_size.
    """
    if database_url.startswith("sqlite"):
        return {}

    options = {
        "pool_size": _env_int("DB_POOL_SIZE", 20),
        "max_overflow": _env_int("DB_MAX_OVERFLOW", 0),
        "pool_timeout": _env_int("DB_POOL_TIMEOUT", 10),
        "pool_recycle": _env_int("DB_POOL_RECYCLE", 1800),
        "pool_pre_ping": True,
    }

    statement_timeout_ms = _env_int("DB_STATEMENT_TIMEOUT_MS", 10000)
    if database_url.startswith("postgresql") and statement_timeout_ms > 0:
        options["connect_args"] = {"options": f"-c statement_timeout={statement_timeout_ms}"}

    return options


class Config:
    """Base configuration shared by all environments."""

    # IMPORTANT: change this in production
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-change-me-please")

    # Database: SQLite for development (simple file in project folder)
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        f"sqlite:///{BASE_DIR / 'approvals.db'}"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = _engine_options(SQLALCHEMY_DATABASE_URI)

    # Medad ERP bridge
    MEDAD_BASE_URL = os.environ.get("MEDAD_BASE_URL", "")
    MEDAD_USERNAME = os.environ.get("MEDAD_USERNAME", "")
    MEDAD_PASSWORD = os.environ.get("MEDAD_PASSWORD", "")
    MEDAD_SUBSCRIPTION_ID = os.environ.get("MEDAD_SUBSCRIPTION_ID", "")
    MEDAD_BRANCH = _env_int("MEDAD_BRANCH", 1)
    MEDAD_YEAR = os.environ.get("MEDAD_YEAR", "")
    MEDAD_PAYMENT_TYPE = os.environ.get("MEDAD_PAYMENT_TYPE", "1")
    MEDAD_PAYMENT_VERSION = os.environ.get("MEDAD_PAYMENT_VERSION", "1")
    MEDAD_TIMEOUT_SECONDS = _env_float("MEDAD_TIMEOUT_SECONDS", 10.0)
    MEDAD_TOKEN_REFRESH_MARGIN = _env_int("MEDAD_TOKEN_REFRESH_MARGIN", 60)

    # Retry / deadline policy for transient DB and network failures
    RETRY_MAX_ATTEMPTS = _env_int("RETRY_MAX_ATTEMPTS", 3)
    RETRY_BASE_DELAY = _env_float("RETRY_BASE_DELAY", 1.0)
    REQUEST_DEADLINE_SECONDS = _env_float("REQUEST_DEADLINE_SECONDS", 10.0)

    # Notifications are delegated to an external provider; this only toggles dispatch
    NOTIFICATIONS_ENABLED = _env_bool("NOTIFICATIONS_ENABLED", True)

    # Logging
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_DIR = os.environ.get("LOG_DIR", "")

    # Hide exception details from API clients unless debugging
    EXPOSE_ERROR_DETAILS = _env_bool("EXPOSE_ERROR_DETAILS", False)


class TestConfig(Config):
    """Configuration used by the pytest suite."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SQLALCHEMY_ENGINE_OPTIONS = {}

    MEDAD_BASE_URL = "https://medad.test/api"
    MEDAD_USERNAME = "medad-user"
    MEDAD_PASSWORD = "medad-pass"
    MEDAD_SUBSCRIPTION_ID = "sub-1"
    MEDAD_BRANCH = 1
    MEDAD_YEAR = "2025"

    RETRY_BASE_DELAY = 0.0
    LOG_DIR = ""
