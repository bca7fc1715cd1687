"""Core application configuration & tunable job rules.

Queue connection, job retry/retention defaults, report cadence, reminder quota
and SMTP transport settings are centralized here so they can be adjusted
without diving into worker or service logic. Every value can be overridden by
an environment variable; tests monkeypatch the dicts directly.
"""
from __future__ import annotations

import os


def _env_bool(name: str, default: str = "false") -> bool:
	return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


APP_ENV: str = os.getenv("APP_ENV", "development").strip().lower()

# Shared secret expected from the external cron caller in production
# (Authorization: Bearer <CRON_SECRET>). Ignored outside production.
CRON_SECRET: str | None = os.getenv("CRON_SECRET") or None

# --------------------------------- Queue ---------------------------------- #
QUEUE_SETTINGS: dict[str, str | int | float | bool | None] = {
	"use_redis": _env_bool("USE_REDIS"),
	"redis_host": os.getenv("REDIS_HOST", "localhost"),
	"redis_port": int(os.getenv("REDIS_PORT", "6379")),
	"redis_password": os.getenv("REDIS_PASSWORD") or None,
	"redis_db": int(os.getenv("REDIS_DB", "0")),
	"redis_health_check_timeout": 2.0,
	"key_prefix": os.getenv("QUEUE_KEY_PREFIX", "clinicore"),
	"worker_concurrency": int(os.getenv("REPORT_WORKER_CONCURRENCY", "5")),
	"poll_timeout_seconds": 1.0,
	# Redis has no blocking claim, so an empty wait list is polled at this interval.
	"redis_poll_interval_seconds": 0.2,
	# An active job whose lease is older than this is treated as stalled and retried.
	# Workers renew the lease at half this interval while a job runs.
	"lock_duration_ms": int(os.getenv("JOB_LOCK_DURATION_MS", "30000")),
	# Timezone for repeat patterns (e.g. "Europe/Berlin"); server local time when unset.
	"repeat_timezone": os.getenv("QUEUE_REPEAT_TZ") or None,
	# Run the report worker inside the API process (single-box deployments).
	"embedded_worker": _env_bool("EMBEDDED_WORKER"),
}

QUEUE_NAMES: dict[str, str] = {
	"CLINIC_REPORTS": "clinic-reports",
}

DEFAULT_JOB_OPTIONS: dict[str, object] = {
	"attempts": 3,
	"backoff": {"type": "exponential", "delay_ms": 1000},
	"remove_on_complete": {"count": 100, "age_seconds": 24 * 60 * 60},
	"remove_on_fail": {"count": 500},
}

# --------------------------------- Backoff -------------------------------- #
BACKOFF_POLICY: dict[str, int | float] = {
	"base_seconds": 1,
	"factor": 2,          # Exponential factor
	"max_seconds": 60,
	"jitter_pct": 0.0,
}

# -------------------------------- Reports --------------------------------- #
REPORT_SETTINGS: dict[str, str | int] = {
	"interval_days": int(os.getenv("CLINIC_REPORT_INTERVAL_DAYS", "3")),
	"recurring_job_name": "daily-report-check",
	"recurring_pattern": os.getenv("CLINIC_REPORT_CRON", "0 8 * * *"),  # every day at 08:00
}

# ------------------------------- Reminders -------------------------------- #
REMINDER_SETTINGS: dict[str, int] = {
	"window_hours": 24,
	# Plan limits live with the billing provider; flat ceiling until they are synced.
	"monthly_email_limit": int(os.getenv("MONTHLY_EMAIL_LIMIT", "1000")),
}

# --------------------------------- Email ---------------------------------- #
EMAIL_SETTINGS: dict[str, str | int | bool | None] = {
	"smtp_host": os.getenv("MAIL_HOST", "localhost"),
	"smtp_port": int(os.getenv("MAIL_PORT", "587")),
	"smtp_user": os.getenv("MAIL_USER") or None,
	"smtp_password": os.getenv("MAIL_PASSWORD") or None,
	"use_tls": _env_bool("MAIL_USE_TLS", "true"),
	"timeout_seconds": int(os.getenv("MAIL_TIMEOUT", "15")),
	"from_address": os.getenv("MAIL_FROM") or os.getenv("MAIL_USER") or "no-reply@clinicore.local",
	"dashboard_url": os.getenv("DASHBOARD_URL", "http://localhost:3001"),
}

__all__ = [
	"APP_ENV",
	"CRON_SECRET",
	"QUEUE_SETTINGS",
	"QUEUE_NAMES",
	"DEFAULT_JOB_OPTIONS",
	"BACKOFF_POLICY",
	"REPORT_SETTINGS",
	"REMINDER_SETTINGS",
	"EMAIL_SETTINGS",
]
