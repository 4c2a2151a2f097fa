from __future__ import annotations

import os


def _env_str(name: str, default: str = "") -> str:
    return str(os.getenv(name, default) or default).strip()


def _env_int(name: str, default: int) -> int:
    try:
        return int(str(os.getenv(name, "") or "").strip() or default)
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = str(os.getenv(name, "") or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


def _env_csv(name: str, default: str = "") -> list[str]:
    raw = _env_str(name, default)
    return [x.strip() for x in raw.split(",") if x.strip()]


class Config:
    """Runtime settings, read once from the environment at app startup."""

    def __init__(self):
        self.ENV = _env_str("APP_ENV", "development").lower()
        self.IS_PRODUCTION = self.ENV in {"prod", "production"}
        self.APP_VERSION = _env_str("APP_VERSION", "0.1.0")

        self.HOST = _env_str("HOST", "0.0.0.0")
        self.PORT = _env_int("PORT", 5002)
        self.LOG_LEVEL = _env_str("LOG_LEVEL", "INFO").upper()

        self.DATABASE_URL = _env_str("DATABASE_URL", "sqlite:///./hiring.db")
        self.DB_POOL_SIZE = _env_int("DB_POOL_SIZE", 10)
        self.DB_MAX_OVERFLOW = _env_int("DB_MAX_OVERFLOW", 20)

        self.ALLOWED_ORIGINS = _env_csv("ALLOWED_ORIGINS", "http://localhost:5173")

        # Identity is asserted by the upstream gateway; the shared secret is optional.
        self.GATEWAY_TOKEN = _env_str("GATEWAY_TOKEN")
        self.INTERNAL_CRON_TOKEN = _env_str("INTERNAL_CRON_TOKEN")
        self.REQUIRE_PROFILE_COMPLETE = _env_bool("REQUIRE_PROFILE_COMPLETE", True)

        self.DEFAULT_TEST_MINUTES = _env_int("DEFAULT_TEST_MINUTES", 15)
        self.TEST_PASS_PERCENT = _env_int("TEST_PASS_PERCENT", 60)
        self.TEST_MAX_VIOLATIONS = _env_int("TEST_MAX_VIOLATIONS", 3)
        self.TEST_ANSWER_GRACE_SECONDS = _env_int("TEST_ANSWER_GRACE_SECONDS", 30)
        self.TASK_DEFAULT_DUE_DAYS = _env_int("TASK_DEFAULT_DUE_DAYS", 7)

        self.RATE_LIMIT_GLOBAL = _env_int("RATE_LIMIT_GLOBAL", 600)
        self.RATE_LIMIT_DEFAULT = _env_int("RATE_LIMIT_DEFAULT", 120)

        self.ENABLE_SCHEDULER = _env_bool("ENABLE_SCHEDULER", False)
        self.SWEEP_INTERVAL_SECONDS = _env_int("SWEEP_INTERVAL_SECONDS", 60)
        self.REDIS_URL = _env_str("REDIS_URL")

    def validate(self) -> None:
        if not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL is required")
        if not 0 < self.TEST_PASS_PERCENT <= 100:
            raise RuntimeError("TEST_PASS_PERCENT must be within 1..100")
        if self.TEST_MAX_VIOLATIONS < 0:
            raise RuntimeError("TEST_MAX_VIOLATIONS must be >= 0")
        if self.DEFAULT_TEST_MINUTES <= 0:
            raise RuntimeError("DEFAULT_TEST_MINUTES must be > 0")
        if self.TASK_DEFAULT_DUE_DAYS <= 0:
            raise RuntimeError("TASK_DEFAULT_DUE_DAYS must be > 0")
        if self.IS_PRODUCTION and not self.GATEWAY_TOKEN:
            raise RuntimeError("GATEWAY_TOKEN is required in production")
