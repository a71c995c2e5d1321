from __future__ import annotations

import os


def _env_flag(name: str, default: str = "false") -> bool:
    return (os.getenv(name, default) or "").strip().lower() in {"1", "true", "yes", "on"}


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key")
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///lifeline.db",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Status calculator thresholds (days)
    DAYS_TO_EXPIRE_WARNING = int(os.getenv("DAYS_TO_EXPIRE_WARNING", "30"))
    DAYS_OVERDUE_CRITICAL = int(os.getenv("DAYS_OVERDUE_CRITICAL", "60"))

    # Scheduled jobs
    SCHEDULER_ENABLED = _env_flag("SCHEDULER_ENABLED")
    ALERT_GENERATION_ENABLED = _env_flag("ALERT_GENERATION_ENABLED")
    STATUS_CHECK_ENABLED = _env_flag("STATUS_CHECK_ENABLED")
    ALERT_SCAN_INTERVAL_MINUTES = int(os.getenv("ALERT_SCAN_INTERVAL_MINUTES", "60"))
    AUTH_CODE_CLEANUP_INTERVAL_MINUTES = int(os.getenv("AUTH_CODE_CLEANUP_INTERVAL_MINUTES", "15"))

    # Deletion authorization
    AUTH_CODE_EXPIRY_MINUTES = int(os.getenv("AUTH_CODE_EXPIRY_MINUTES", "10"))
    DIRECT_DELETE_MAX_DAYS = int(os.getenv("DIRECT_DELETE_MAX_DAYS", "3"))

    DEFAULT_PAGE_SIZE = int(os.getenv("DEFAULT_PAGE_SIZE", "10"))
    MAX_PAGE_SIZE = int(os.getenv("MAX_PAGE_SIZE", "100"))
