from __future__ import annotations

import os


def _env_str(name: str, default: str = "") -> str:
    return str(os.getenv(name, default) or default).strip()


def _env_int(name: str, default: int) -> int:
    try:
        return int(str(os.getenv(name, "") or "").strip() or default)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(str(os.getenv(name, "") or "").strip() or default)
    except ValueError:
        return default


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = _env_str(name)
    if not raw:
        return list(default)
    return [p.strip() for p in raw.split(",") if p.strip()]


class Config:
    """Process configuration, read once from the environment (and `.env` via python-dotenv)."""

    def __init__(self):
        self.APP_ENV = _env_str("APP_ENV", "development").lower()
        self.IS_PRODUCTION = self.APP_ENV == "production"
        self.APP_VERSION = _env_str("APP_VERSION", "0.1.0")

        self.HOST = _env_str("HOST", "127.0.0.1")
        self.PORT = _env_int("PORT", 5002)
        self.LOG_LEVEL = _env_str("LOG_LEVEL", "INFO").upper()
        self.ALLOWED_ORIGINS = _env_list("ALLOWED_ORIGINS", ["http://localhost:3000"])

        self.DATABASE_URL = _env_str("DATABASE_URL", "sqlite:///./venue_onboarding.db")
        self.REDIS_URL = _env_str("REDIS_URL", "")
        self.CELERY_RESULT_BACKEND = _env_str("CELERY_RESULT_BACKEND", "")

        # "venueId:userId" pairs seeded as ACTIVE admins at startup.
        self.BOOTSTRAP_ADMINS = _env_list("BOOTSTRAP_ADMINS", [])

        # "<count>/<seconds>"
        self.RATE_LIMIT_GLOBAL = _env_str("RATE_LIMIT_GLOBAL", "600/60")
        self.RATE_LIMIT_DEFAULT = _env_str("RATE_LIMIT_DEFAULT", "120/60")

        self.REQUEST_TIMEOUT_SECONDS = _env_float("REQUEST_TIMEOUT_SECONDS", 15.0)
        self.COMPLIANCE_CHECK_WORKERS = _env_int("COMPLIANCE_CHECK_WORKERS", 4)
        self.AUDIT_RETENTION_DAYS = _env_int("AUDIT_RETENTION_DAYS", 365)

        # Score = BASE - HIGH_WEIGHT * high-severity issues - ISSUE_WEIGHT * all issues, clamped to [0, BASE].
        self.COMPLIANCE_SCORE_BASE = _env_int("COMPLIANCE_SCORE_BASE", 100)
        self.COMPLIANCE_HIGH_SEVERITY_WEIGHT = _env_int("COMPLIANCE_HIGH_SEVERITY_WEIGHT", 10)
        self.COMPLIANCE_ISSUE_WEIGHT = _env_int("COMPLIANCE_ISSUE_WEIGHT", 2)

        self.HOURS_PER_DAY = _env_int("HOURS_PER_DAY", 8)
        self.RECENT_AUDIT_LIMIT = _env_int("RECENT_AUDIT_LIMIT", 50)

    def validate(self) -> None:
        if not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL is required")
        if self.REQUEST_TIMEOUT_SECONDS <= 0:
            raise RuntimeError("REQUEST_TIMEOUT_SECONDS must be positive")
        if self.COMPLIANCE_CHECK_WORKERS < 1:
            raise RuntimeError("COMPLIANCE_CHECK_WORKERS must be >= 1")
        if self.AUDIT_RETENTION_DAYS < 1:
            raise RuntimeError("AUDIT_RETENTION_DAYS must be >= 1")
        if self.COMPLIANCE_SCORE_BASE <= 0:
            raise RuntimeError("COMPLIANCE_SCORE_BASE must be positive")
        if self.COMPLIANCE_HIGH_SEVERITY_WEIGHT < 0 or self.COMPLIANCE_ISSUE_WEIGHT < 0:
            raise RuntimeError("Compliance weights must not be negative")
        if self.HOURS_PER_DAY <= 0:
            raise RuntimeError("HOURS_PER_DAY must be positive")
        for pair in self.BOOTSTRAP_ADMINS:
            venue_id, _, user_id = pair.partition(":")
            if not venue_id.strip() or not user_id.strip():
                raise RuntimeError(f"BOOTSTRAP_ADMINS entry must be venueId:userId, got {pair!r}")
