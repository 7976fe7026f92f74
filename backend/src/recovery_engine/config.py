from __future__ import annotations

import os
from dataclasses import dataclass

MIN_ENCRYPTION_KEY_LENGTH = 32


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Recovery Engine"
    api_prefix: str = "/api/v1"
    encryption_key: str = ""
    ledger_store_backend: str = "inmemory"
    database_url: str = ""
    tracking_base_url: str = "http://localhost:8000/api/v1/recovery"
    # Mailer delivery settings; an unconfigured mailer runs as dry run.
    mailer_sender_type: str = "stub"
    mailer_api_base_url: str = ""
    mailer_api_key: str = ""
    mailer_from_address: str = "recovery@localhost"
    mailer_timeout_seconds: int = 30
    dispatch_hourly_limit: int = 50
    dispatch_grace_hours: int = 4
    platform_retry_attempts: int = 3
    platform_retry_base_seconds: float = 2.0
    scheduler_enabled: bool = False
    scan_interval_seconds: int = 12 * 60 * 60
    dispatch_interval_seconds: int = 60 * 60
    scan_job_poll_seconds: int = 5
    job_lock_ttl_seconds: int = 30 * 60
    scan_job_stale_seconds: int = 30 * 60
    log_level: str = "INFO"
    runtime_secret_guard_mode: str = "warn"

    def mailer_configured(self) -> bool:
        return bool(self.mailer_api_base_url.strip() and self.mailer_api_key.strip())


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("RECOVERY_APP_NAME", "Recovery Engine"),
        api_prefix=os.getenv("RECOVERY_API_PREFIX", "/api/v1"),
        encryption_key=os.getenv("ENCRYPTION_KEY", ""),
        ledger_store_backend=os.getenv("LEDGER_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        tracking_base_url=os.getenv("TRACKING_BASE_URL", "http://localhost:8000/api/v1/recovery"),
        mailer_sender_type=_normalize_mode(
            os.getenv("MAILER_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        mailer_api_base_url=os.getenv("MAILER_API_BASE_URL", ""),
        mailer_api_key=os.getenv("MAILER_API_KEY", ""),
        mailer_from_address=os.getenv("MAILER_FROM_ADDRESS", "recovery@localhost"),
        mailer_timeout_seconds=_as_int(os.getenv("MAILER_TIMEOUT_SECONDS"), 30),
        dispatch_hourly_limit=_as_int(os.getenv("DISPATCH_HOURLY_LIMIT"), 50),
        dispatch_grace_hours=_as_int(os.getenv("DISPATCH_GRACE_HOURS"), 4),
        platform_retry_attempts=_as_int(os.getenv("PLATFORM_RETRY_ATTEMPTS"), 3),
        platform_retry_base_seconds=_as_float(os.getenv("PLATFORM_RETRY_BASE_SECONDS"), 2.0),
        scheduler_enabled=_as_bool(os.getenv("SCHEDULER_ENABLED"), False),
        scan_interval_seconds=_as_int(os.getenv("SCAN_INTERVAL_SECONDS"), 12 * 60 * 60),
        dispatch_interval_seconds=_as_int(os.getenv("DISPATCH_INTERVAL_SECONDS"), 60 * 60),
        scan_job_poll_seconds=_as_int(os.getenv("SCAN_JOB_POLL_SECONDS"), 5),
        job_lock_ttl_seconds=_as_int(os.getenv("JOB_LOCK_TTL_SECONDS"), 30 * 60),
        scan_job_stale_seconds=_as_int(os.getenv("SCAN_JOB_STALE_SECONDS"), 30 * 60),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(settings.encryption_key, defaults={"dev-encryption-key"}):
        issues.append("ENCRYPTION_KEY is empty or uses a placeholder value")
    elif len(settings.encryption_key) < MIN_ENCRYPTION_KEY_LENGTH:
        issues.append(f"ENCRYPTION_KEY must be at least {MIN_ENCRYPTION_KEY_LENGTH} characters")
    backend = settings.ledger_store_backend.strip().lower()
    if backend == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when LEDGER_STORE_BACKEND=postgres")
    if settings.mailer_sender_type == "http" and not settings.mailer_configured():
        issues.append(
            "MAILER_API_BASE_URL and MAILER_API_KEY are required when MAILER_SENDER_TYPE=http; "
            "outreach will run as dry run"
        )
    return tuple(issues)
