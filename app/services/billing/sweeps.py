"""Periodic subscription maintenance.

Each sweep selects candidates, then handles them one at a time in their own
unit of work: a failing subscription is logged and rolled back without
stopping the rest. All sweeps can be re-run safely; flags such as
``reminder_sent`` and ``renewal_attempted_for`` make repeated runs no-ops.
"""
from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import settings
from app.metrics import SWEEP_ITEMS
from app.models.billing import PlanType, Subscription, SubscriptionStatus
from app.services.billing.dates import days_remaining, ensure_utc, utcnow
from app.services.billing.errors import BillingError
from app.services.billing.money import to_money
from app.services.billing.notifications import BillingNotifier
from app.services.billing.settlement import SYSTEM_ACTOR, SettlementCoordinator
from app.services.cache import LookupCache

logger = logging.getLogger(__name__)


class SubscriptionSweeps:
    def __init__(
        self,
        db: Session,
        coordinator: SettlementCoordinator | None = None,
        notifier: BillingNotifier | None = None,
        cache: LookupCache | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.clock = clock
        self.coordinator = coordinator or SettlementCoordinator(
            db, notifier=notifier, cache=cache, clock=clock
        )
        self.subscriptions = self.coordinator.subscriptions
        self.ledger = self.coordinator.ledger
        self.tenants = self.coordinator.tenants
        self.notifier = self.coordinator.notifier

    # ── Expiry ───────────────────────────────────────────

    def sweep_expired(self) -> int:
        now = self.clock()
        ids = self._candidate_ids(
            Subscription.status.in_(
                [SubscriptionStatus.trial, SubscriptionStatus.active, SubscriptionStatus.pending]
            ),
            Subscription.end_date < now,
        )
        changed = 0
        for subscription_id in ids:
            outcome = self._isolated("sweep_expired", subscription_id, self._expire_one, now)
            if outcome in {"trial_ended", "expired"}:
                changed += 1
        if changed:
            logger.info("Expiry sweep changed %s subscription(s)", changed)
        return changed

    def _expire_one(self, subscription_id: uuid.UUID, now: datetime) -> str:
        with self.coordinator._unit_of_work():
            subscription = self.subscriptions.get(subscription_id)
            end_date = ensure_utc(subscription.end_date)
            if subscription.status == SubscriptionStatus.trial and end_date < now:
                self.subscriptions.end_trial(subscription, actor_id=SYSTEM_ACTOR)
                return "trial_ended"
            if self.ledger.has_pending_for_subscription(subscription.id):
                return "skipped"
            if subscription.status == SubscriptionStatus.active and end_date < now:
                self.subscriptions.expire(subscription, actor_id=SYSTEM_ACTOR)
            elif (
                subscription.status == SubscriptionStatus.pending
                and end_date + timedelta(days=settings.pending_grace_days) < now
            ):
                self.subscriptions.expire(
                    subscription, actor_id=SYSTEM_ACTOR, reason="payment_not_received"
                )
            else:
                return "skipped"
        self.notifier.subscription_expired(
            self.tenants.contact_email(subscription.tenant_id),
            self.tenants.display_name(subscription.tenant_id),
            ensure_utc(subscription.data_retention_date),
        )
        return "expired"

    # ── Reminders ────────────────────────────────────────

    def send_trial_ending_reminders(self) -> int:
        now = self.clock()
        ids = self._candidate_ids(
            Subscription.status == SubscriptionStatus.trial,
            Subscription.reminder_sent.is_(False),
            Subscription.end_date > now,
            Subscription.end_date <= now + timedelta(days=settings.trial_reminder_days),
        )
        return self._count(
            self._isolated("trial_reminders", subscription_id, self._remind_trial, now)
            for subscription_id in ids
        )

    def _remind_trial(self, subscription_id: uuid.UUID, now: datetime) -> str:
        subscription = self.subscriptions.get(subscription_id)
        end_date = ensure_utc(subscription.end_date)
        sent = self.notifier.trial_ending(
            self.tenants.contact_email(subscription.tenant_id),
            self.tenants.display_name(subscription.tenant_id),
            end_date,
            days_remaining(end_date, now),
        )
        return self._mark_reminded(subscription, sent)

    def send_expiry_reminders(self) -> int:
        now = self.clock()
        ids = self._candidate_ids(
            Subscription.status == SubscriptionStatus.active,
            Subscription.auto_renew.is_(False),
            Subscription.reminder_sent.is_(False),
            Subscription.end_date > now,
            Subscription.end_date <= now + timedelta(days=settings.expiry_reminder_days),
        )
        return self._count(
            self._isolated("expiry_reminders", subscription_id, self._remind_expiry, now)
            for subscription_id in ids
        )

    def _remind_expiry(self, subscription_id: uuid.UUID, now: datetime) -> str:
        subscription = self.subscriptions.get(subscription_id)
        end_date = ensure_utc(subscription.end_date)
        sent = self.notifier.expiry_reminder(
            self.tenants.contact_email(subscription.tenant_id),
            self.tenants.display_name(subscription.tenant_id),
            self._plan_name(subscription),
            end_date,
            days_remaining(end_date, now),
        )
        return self._mark_reminded(subscription, sent)

    def _mark_reminded(self, subscription: Subscription, sent: bool) -> str:
        if not sent:
            return "not_sent"
        with self.coordinator._unit_of_work():
            subscription.reminder_sent = True
        return "sent"

    # ── Renewals ─────────────────────────────────────────

    def process_auto_renewals(self) -> int:
        now = self.clock()
        ids = self._candidate_ids(
            Subscription.status == SubscriptionStatus.active,
            Subscription.auto_renew.is_(True),
            Subscription.plan_type != PlanType.trial,
            Subscription.end_date > now,
            Subscription.end_date <= now + timedelta(days=settings.renewal_lookahead_days),
        )
        return self._count(
            self._isolated("auto_renewals", subscription_id, self._renew_one)
            for subscription_id in ids
        )

    def _renew_one(self, subscription_id: uuid.UUID) -> str:
        with self.coordinator._unit_of_work():
            subscription = self.subscriptions.get(subscription_id)
            end_date = ensure_utc(subscription.end_date)
            attempted = ensure_utc(subscription.renewal_attempted_for)
            if attempted is not None and attempted == end_date:
                return "skipped"
            if self.ledger.has_pending_for_subscription(subscription.id):
                return "skipped"
            subscription.renewal_attempted_for = end_date
            phone = subscription.payer_phone

        if phone:
            try:
                self.coordinator.pay_with_gateway(subscription_id, phone, actor_id=SYSTEM_ACTOR)
            except BillingError as exc:
                logger.warning(
                    "Automatic renewal charge failed: %s",
                    exc,
                    extra={"subscription_id": subscription_id},
                )
                return "charge_failed"
            return "charged"

        self.notifier.renewal_due(
            self.tenants.contact_email(subscription.tenant_id),
            self.tenants.display_name(subscription.tenant_id),
            self._plan_name(subscription),
            to_money(subscription.base_price),
            subscription.currency,
            end_date,
        )
        return "notified"

    # ── Reconciliation ───────────────────────────────────

    def reconcile_pending_payments(self) -> int:
        counts = self.coordinator.reconcile_stale_payments()
        return counts["settled"] + counts["failed"] + counts["timed_out"]

    # ── Helpers ──────────────────────────────────────────

    def _candidate_ids(self, *conditions) -> list[uuid.UUID]:
        stmt = select(Subscription.id).where(*conditions).order_by(Subscription.end_date)
        return list(self.db.scalars(stmt).all())

    def _isolated(self, sweep: str, subscription_id: uuid.UUID, handler, *args) -> str:
        try:
            outcome = handler(subscription_id, *args)
        except Exception:
            self.db.rollback()
            logger.exception(
                "%s failed for subscription", sweep, extra={"subscription_id": subscription_id}
            )
            outcome = "error"
        SWEEP_ITEMS.labels(sweep, outcome).inc()
        return outcome

    @staticmethod
    def _count(outcomes) -> int:
        return sum(1 for outcome in outcomes if outcome in {"sent", "charged", "notified"})

    def _plan_name(self, subscription: Subscription) -> str:
        plan = self.coordinator.catalog.get_plan(subscription.plan_type)
        return plan.name
