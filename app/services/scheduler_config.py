import logging
import os
from datetime import timedelta

from app.config import settings

logger = logging.getLogger(__name__)

BILLING_TASKS = {
    "sweep_expired": ("app.tasks.billing.sweep_expired", "sweep_expired_interval"),
    "trial_ending_reminders": (
        "app.tasks.billing.send_trial_ending_reminders",
        "reminder_interval",
    ),
    "expiry_reminders": ("app.tasks.billing.send_expiry_reminders", "reminder_interval"),
    "auto_renewals": ("app.tasks.billing.process_auto_renewals", "auto_renewal_interval"),
    "reconcile_pending_payments": (
        "app.tasks.billing.reconcile_pending_payments",
        "reconcile_interval",
    ),
}


def _env_value(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value


def _env_int(name: str) -> int | None:
    raw = _env_value(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return None


def get_celery_config() -> dict:
    broker = _env_value("CELERY_BROKER_URL") or settings.redis_url
    backend = _env_value("CELERY_RESULT_BACKEND") or _env_value("REDIS_URL") or "redis://localhost:6379/1"
    return {
        "broker_url": broker,
        "result_backend": backend,
        "timezone": _env_value("CELERY_TIMEZONE") or "UTC",
        "beat_max_loop_interval": _env_int("CELERY_BEAT_MAX_LOOP_INTERVAL") or 5,
    }


def build_beat_schedule() -> dict:
    """Interval schedule for the billing sweeps; a non-positive interval disables a sweep."""
    schedule: dict[str, dict] = {}
    for name, (task_name, interval_attr) in BILLING_TASKS.items():
        interval_seconds = int(getattr(settings, interval_attr))
        if interval_seconds <= 0:
            logger.info("Billing sweep %s disabled", name)
            continue
        schedule[f"billing_{name}"] = {
            "task": task_name,
            "schedule": timedelta(seconds=interval_seconds),
        }
    return schedule
