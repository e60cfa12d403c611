from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _normalize_database_url(value: str | None, fallback: str) -> str:
    raw = (value or fallback).strip() or fallback
    # Some dashboards accidentally store quoted values.
    if (raw.startswith('"') and raw.endswith('"')) or (raw.startswith("'") and raw.endswith("'")):
        raw = raw[1:-1].strip()

    if "://" not in raw:
        return raw

    scheme, suffix = raw.split("://", 1)
    scheme = scheme.lower()

    # Force a driver we install in production image.
    if scheme in {
        "postgres",
        "postgresql",
        "postgresql+psycopg",
        "postgresql+asyncpg",
        "postgresql+pg8000",
        "postgresql+psycopg2",
    }:
        url = f"postgresql+psycopg2://{suffix}"
        if "sslmode" not in url:
            separator = "&" if "?" in url else "?"
            url = f"{url}{separator}sslmode=require"
        return url

    return raw


@dataclass(frozen=True)
class Settings:
    env: str
    secret_key: str
    jwt_algorithm: str
    jwt_exp_minutes: int
    delete_reauth_seconds: int
    database_url: str
    db_pool_size: int
    db_max_overflow: int
    db_pool_timeout: int
    db_pool_recycle: int
    db_lock_timeout_ms: int
    db_statement_timeout_ms: int
    sqlite_busy_timeout_seconds: float
    redis_url: str
    redis_socket_timeout: float
    account_lock_threshold: int
    origin_lock_threshold: int
    lockout_window_seconds: int
    account_throttle_capacity: int
    origin_throttle_capacity: int
    throttle_window_seconds: int
    throttle_fail_open: bool
    free_monthly_uploads: int
    purge_batch_size: int
    identity_url: str
    identity_service_key: str
    storage_url: str
    storage_service_key: str
    storage_bucket: str
    integration_timeout: float
    billing_webhook_secret: str
    billing_webhook_tolerance_seconds: int
    cors_origins: list[str]
    forwarded_allow_ips: list[str]
    enable_prometheus_metrics: bool
    log_level: str

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def is_production(self) -> bool:
        return self.env.lower() not in {"development", "dev", "test", "testing"}

    def validate(self) -> None:
        """Raise early on dangerous mis-configurations in non-dev environments."""
        if self.is_production and self.secret_key == _DEFAULT_SECRET_KEY:
            raise RuntimeError(
                "SECRET_KEY must be explicitly set in production. "
                "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(48))\""
            )
        if self.is_production and not self.billing_webhook_secret:
            raise RuntimeError("BILLING_WEBHOOK_SECRET must be set in production")


_DEFAULT_SECRET_KEY = "change-me-in-production-min-32-bytes-key"


settings = Settings(
    env=os.getenv("ENV", "development"),
    secret_key=os.getenv("SECRET_KEY", _DEFAULT_SECRET_KEY),
    jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
    jwt_exp_minutes=_as_int(os.getenv("JWT_EXP_MINUTES"), 60),
    delete_reauth_seconds=max(60, _as_int(os.getenv("DELETE_REAUTH_SECONDS"), 15 * 60)),
    database_url=_normalize_database_url(
        os.getenv("DATABASE_URL"),
        "sqlite:///./accountguard.db",
    ),
    db_pool_size=max(1, _as_int(os.getenv("DB_POOL_SIZE"), 5)),
    db_max_overflow=max(0, _as_int(os.getenv("DB_MAX_OVERFLOW"), 10)),
    db_pool_timeout=max(1, _as_int(os.getenv("DB_POOL_TIMEOUT"), 30)),
    db_pool_recycle=max(60, _as_int(os.getenv("DB_POOL_RECYCLE"), 1800)),
    db_lock_timeout_ms=max(100, _as_int(os.getenv("DB_LOCK_TIMEOUT_MS"), 5000)),
    db_statement_timeout_ms=max(1000, _as_int(os.getenv("DB_STATEMENT_TIMEOUT_MS"), 15000)),
    sqlite_busy_timeout_seconds=max(1.0, _as_float(os.getenv("SQLITE_BUSY_TIMEOUT_SECONDS"), 30.0)),
    redis_url=os.getenv("REDIS_URL", "").strip(),
    redis_socket_timeout=max(0.1, _as_float(os.getenv("REDIS_SOCKET_TIMEOUT"), 0.5)),
    account_lock_threshold=max(1, _as_int(os.getenv("ACCOUNT_LOCK_THRESHOLD"), 5)),
    origin_lock_threshold=max(1, _as_int(os.getenv("ORIGIN_LOCK_THRESHOLD"), 20)),
    lockout_window_seconds=max(60, _as_int(os.getenv("LOCKOUT_WINDOW_SECONDS"), 15 * 60)),
    account_throttle_capacity=max(1, _as_int(os.getenv("ACCOUNT_THROTTLE_CAPACITY"), 5)),
    origin_throttle_capacity=max(1, _as_int(os.getenv("ORIGIN_THROTTLE_CAPACITY"), 20)),
    throttle_window_seconds=max(1, _as_int(os.getenv("THROTTLE_WINDOW_SECONDS"), 15 * 60)),
    throttle_fail_open=_as_bool(os.getenv("THROTTLE_FAIL_OPEN"), False),
    free_monthly_uploads=max(0, _as_int(os.getenv("FREE_MONTHLY_UPLOADS"), 10)),
    purge_batch_size=max(1, _as_int(os.getenv("PURGE_BATCH_SIZE"), 500)),
    identity_url=os.getenv("IDENTITY_URL", "").strip().rstrip("/"),
    identity_service_key=os.getenv("IDENTITY_SERVICE_KEY", "").strip(),
    storage_url=os.getenv("STORAGE_URL", "").strip().rstrip("/"),
    storage_service_key=os.getenv("STORAGE_SERVICE_KEY", "").strip(),
    storage_bucket=os.getenv("STORAGE_BUCKET", "screenshots").strip(),
    integration_timeout=max(0.5, _as_float(os.getenv("INTEGRATION_TIMEOUT"), 10.0)),
    billing_webhook_secret=os.getenv("BILLING_WEBHOOK_SECRET", "").strip(),
    billing_webhook_tolerance_seconds=max(1, _as_int(os.getenv("BILLING_WEBHOOK_TOLERANCE_SECONDS"), 300)),
    cors_origins=[
        origin.strip()
        for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
        if origin.strip()
    ],
    forwarded_allow_ips=[
        host.strip()
        for host in os.getenv("FORWARDED_ALLOW_IPS", "127.0.0.1").split(",")
        if host.strip()
    ],
    enable_prometheus_metrics=_as_bool(os.getenv("ENABLE_PROMETHEUS_METRICS"), True),
    log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
)

settings.validate()
