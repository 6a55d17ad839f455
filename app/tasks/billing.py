"""Celery entry points for the billing sweeps.

Each task opens its own session, runs one sweep and returns its count.
"""
import logging

from app.celery_app import celery_app
from app.db import SessionLocal
from app.services.billing.sweeps import SubscriptionSweeps
from app.services.cache import build_lookup_cache

logger = logging.getLogger(__name__)

_lookup_cache = build_lookup_cache()


def _run_sweep(name: str) -> int:
    db = SessionLocal()
    try:
        count = getattr(SubscriptionSweeps(db, cache=_lookup_cache), name)()
        logger.info("Billing sweep %s handled %s item(s)", name, count)
        return count
    finally:
        db.close()


@celery_app.task(name="app.tasks.billing.sweep_expired")
def sweep_expired() -> int:
    return _run_sweep("sweep_expired")


@celery_app.task(name="app.tasks.billing.send_trial_ending_reminders")
def send_trial_ending_reminders() -> int:
    return _run_sweep("send_trial_ending_reminders")


@celery_app.task(name="app.tasks.billing.send_expiry_reminders")
def send_expiry_reminders() -> int:
    return _run_sweep("send_expiry_reminders")


@celery_app.task(name="app.tasks.billing.process_auto_renewals")
def process_auto_renewals() -> int:
    return _run_sweep("process_auto_renewals")


@celery_app.task(name="app.tasks.billing.reconcile_pending_payments")
def reconcile_pending_payments() -> int:
    return _run_sweep("reconcile_pending_payments")
