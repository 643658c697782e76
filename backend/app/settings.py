from __future__ import annotations

import os
from dataclasses import dataclass


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class Settings:
    app_env: str
    database_url: str
    auth_enabled: bool
    jwt_secret: str
    jwt_algorithm: str
    webhook_verify_secret: str
    whatsapp_webhook_secret: str
    queue_cron_secret: str
    queue_batch_size: int
    job_max_attempts: int
    job_retry_backoff_seconds: int
    job_retry_backoff_max_seconds: int
    job_claim_timeout_seconds: int
    campaign_send_delay_seconds: float
    campaign_failure_threshold: float
    gateway_timeout_seconds: float
    send_retry_attempts: int
    send_retry_initial_delay_seconds: float
    inbox_default_priority: int
    message_rate_limit_per_minute: int


def load_settings() -> Settings:
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        database_url = "sqlite:///data/whatsapp_inbox.sqlite3"
    backoff_seconds = max(1, _int_env("JOB_RETRY_BACKOFF_SECONDS", 30))
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        database_url=database_url,
        auth_enabled=_bool_env("AUTH_ENABLED", False),
        jwt_secret=os.getenv("JWT_SECRET", "dev-only-secret-change-in-prod").strip(),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256").strip(),
        webhook_verify_secret=os.getenv("WEBHOOK_VERIFY_SECRET", "").strip(),
        whatsapp_webhook_secret=os.getenv("WHATSAPP_WEBHOOK_SECRET", "").strip(),
        queue_cron_secret=os.getenv("QUEUE_CRON_SECRET", "").strip(),
        queue_batch_size=max(1, min(100, _int_env("QUEUE_BATCH_SIZE", 10))),
        job_max_attempts=max(1, _int_env("JOB_MAX_ATTEMPTS", 3)),
        job_retry_backoff_seconds=backoff_seconds,
        job_retry_backoff_max_seconds=max(
            backoff_seconds, _int_env("JOB_RETRY_BACKOFF_MAX_SECONDS", 900)
        ),
        job_claim_timeout_seconds=max(30, _int_env("JOB_CLAIM_TIMEOUT_SECONDS", 600)),
        campaign_send_delay_seconds=max(0.0, _float_env("CAMPAIGN_SEND_DELAY_SECONDS", 1.0)),
        campaign_failure_threshold=max(
            0.0, min(1.0, _float_env("CAMPAIGN_FAILURE_THRESHOLD", 0.5))
        ),
        gateway_timeout_seconds=max(1.0, _float_env("GATEWAY_TIMEOUT_SECONDS", 15.0)),
        send_retry_attempts=max(1, _int_env("SEND_RETRY_ATTEMPTS", 3)),
        send_retry_initial_delay_seconds=max(
            0.0, _float_env("SEND_RETRY_INITIAL_DELAY_SECONDS", 1.0)
        ),
        inbox_default_priority=_int_env("INBOX_DEFAULT_PRIORITY", 0),
        message_rate_limit_per_minute=max(1, _int_env("MESSAGE_RATE_LIMIT_PER_MINUTE", 10)),
    )
