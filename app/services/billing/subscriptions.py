"""Subscription state machine.

Status changes only happen through ``_transition``, which enforces
``VALID_TRANSITIONS`` and appends a history entry. Plan switches
(``upgrade_from_trial``, ``change_plan``) go through
``prorate_on_plan_change`` before the new plan and end date are written.
"""
from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.config import settings
from app.metrics import SUBSCRIPTION_TRANSITIONS
from app.models.billing import (
    OPEN_SUBSCRIPTION_STATUSES,
    CancelReason,
    HistoryAction,
    Payment,
    PaymentMethod,
    PlanType,
    PricingPlan,
    Subscription,
    SubscriptionHistory,
    SubscriptionStatus,
)
from app.schemas.billing import (
    DatesRead,
    HistoryEntryRead,
    PaymentSummaryRead,
    PlanSummary,
    PricingRead,
    RenewalSettingsRead,
    SubscriptionRead,
)
from app.services.billing.dates import (
    calculate_end_date,
    days_remaining,
    ensure_utc,
    percentage_used,
    prorate_on_plan_change,
    utcnow,
    validate_plan_type,
)
from app.services.billing.errors import (
    InvalidExtension,
    InvalidPlanChange,
    InvalidStateTransition,
    OpenSubscriptionExists,
    SubscriptionNotFound,
)
from app.services.billing.money import to_money
from app.services.billing.plans import PlanCatalog
from app.services.common import apply_ordering, apply_pagination, coerce_uuid

logger = logging.getLogger(__name__)

VALID_TRANSITIONS: dict[SubscriptionStatus, set[SubscriptionStatus]] = {
    SubscriptionStatus.trial: {SubscriptionStatus.pending, SubscriptionStatus.canceled},
    SubscriptionStatus.pending: {
        SubscriptionStatus.active,
        SubscriptionStatus.expired,
        SubscriptionStatus.canceled,
    },
    SubscriptionStatus.active: {
        SubscriptionStatus.active,
        SubscriptionStatus.expired,
        SubscriptionStatus.canceled,
    },
    SubscriptionStatus.expired: {SubscriptionStatus.active, SubscriptionStatus.canceled},
    SubscriptionStatus.canceled: set(),
}

_DISPLAY_STATUS = {
    SubscriptionStatus.trial: "Trial",
    SubscriptionStatus.pending: "Pending payment",
    SubscriptionStatus.active: "Active",
    SubscriptionStatus.expired: "Expired",
    SubscriptionStatus.canceled: "Canceled",
}


class SubscriptionStateMachine:
    def __init__(
        self,
        db: Session,
        clock: Callable[[], datetime] = utcnow,
        catalog: PlanCatalog | None = None,
        data_retention_days: int | None = None,
    ) -> None:
        self.db = db
        self.clock = clock
        self.catalog = catalog or PlanCatalog(db)
        self.data_retention_days = (
            settings.data_retention_days if data_retention_days is None else data_retention_days
        )

    # ── Lookup ───────────────────────────────────────────

    def get(self, subscription_id: uuid.UUID | str) -> Subscription:
        try:
            key = coerce_uuid(subscription_id)
        except ValueError as exc:
            raise SubscriptionNotFound() from exc
        subscription = self.db.get(Subscription, key)
        if not subscription:
            raise SubscriptionNotFound()
        return subscription

    def get_current_for_tenant(self, tenant_id: uuid.UUID | str) -> Subscription | None:
        tenant_id = coerce_uuid(tenant_id)
        open_sub = self.db.scalar(
            select(Subscription).where(
                Subscription.tenant_id == tenant_id,
                Subscription.status.in_(OPEN_SUBSCRIPTION_STATUSES),
            )
        )
        if open_sub:
            return open_sub
        return self.db.scalar(
            select(Subscription)
            .where(Subscription.tenant_id == tenant_id)
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )

    def list(
        self,
        status: SubscriptionStatus | None = None,
        plan_type: PlanType | None = None,
        order_by: str = "created_at",
        order_dir: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Subscription], int]:
        stmt = select(Subscription)
        if status is not None:
            stmt = stmt.where(Subscription.status == SubscriptionStatus(status))
        if plan_type is not None:
            stmt = stmt.where(Subscription.plan_type == PlanType(plan_type))
        total = self.db.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        ordered = apply_ordering(
            stmt,
            order_by,
            order_dir,
            {"created_at": Subscription.created_at, "end_date": Subscription.end_date},
        )
        items = list(self.db.scalars(apply_pagination(ordered, limit, offset)).all())
        return items, total

    # ── Creation ─────────────────────────────────────────

    def create(
        self,
        tenant_id: uuid.UUID,
        plan_type: PlanType | str,
        actor_id: str | None = None,
    ) -> Subscription:
        plan_type = validate_plan_type(plan_type)
        self._ensure_no_open(tenant_id)
        plan = self.catalog.get_plan(plan_type)
        now = self.clock()
        is_trial = plan_type == PlanType.trial
        end_date = calculate_end_date(plan_type, now)
        status = SubscriptionStatus.trial if is_trial else SubscriptionStatus.pending

        subscription = Subscription(
            tenant_id=tenant_id,
            plan_type=plan_type,
            status=status,
            start_date=now,
            end_date=end_date,
            trial_ends_at=end_date if is_trial else None,
            payment_method=PaymentMethod.free if is_trial else None,
            auto_renew=True,
            previous_plans=[],
        )
        self._apply_pricing(subscription, plan)
        self.db.add(subscription)
        self.db.flush()
        self._record(
            subscription,
            HistoryAction.trial_started if is_trial else HistoryAction.created,
            from_status=None,
            to_status=status,
            actor_id=actor_id,
            details={"plan_type": plan_type.value},
        )
        logger.info(
            "Created %s subscription",
            status.value,
            extra={"subscription_id": subscription.id, "tenant_id": tenant_id},
        )
        return subscription

    # ── Payment-driven transitions ───────────────────────

    def activate_from_payment(
        self,
        subscription: Subscription,
        payment: Payment,
        actor_id: str | None = None,
    ) -> Subscription:
        now = self.clock()
        target = payment.plan_type or subscription.plan_type
        if target == PlanType.trial:
            raise InvalidPlanChange("A payment cannot activate the trial plan")

        status = subscription.status
        if status == SubscriptionStatus.trial:
            self.upgrade_from_trial(subscription, target, payment_id=payment.id, actor_id=actor_id)
        elif status == SubscriptionStatus.pending:
            self._set_plan(subscription, self.catalog.get_plan(target))
            subscription.start_date = now
            subscription.end_date = calculate_end_date(target, now)
            self._transition(
                subscription,
                SubscriptionStatus.active,
                HistoryAction.activated,
                payment_id=payment.id,
                actor_id=actor_id,
            )
        elif status == SubscriptionStatus.active:
            if target != subscription.plan_type:
                self._apply_plan_change(subscription, target, payment_id=payment.id, actor_id=actor_id)
            else:
                base = max(now, ensure_utc(subscription.end_date))
                subscription.end_date = calculate_end_date(target, base)
                self._transition(
                    subscription,
                    SubscriptionStatus.active,
                    HistoryAction.renewed,
                    payment_id=payment.id,
                    actor_id=actor_id,
                )
        elif status == SubscriptionStatus.expired:
            self._ensure_no_open(subscription.tenant_id, exclude_id=subscription.id)
            self._set_plan(subscription, self.catalog.get_plan(target))
            subscription.start_date = now
            subscription.end_date = calculate_end_date(target, now)
            subscription.data_retention_date = None
            self._transition(
                subscription,
                SubscriptionStatus.active,
                HistoryAction.activated,
                payment_id=payment.id,
                actor_id=actor_id,
                details={"reactivated": True},
            )
        else:
            raise InvalidStateTransition(
                f"Cannot activate a {status.value} subscription",
                details={"subscription_id": str(subscription.id)},
            )

        subscription.payment_method = payment.method
        subscription.payment_verified = True
        subscription.last_payment_date = now
        subscription.next_payment_date = subscription.end_date
        subscription.failed_payment_count = 0
        subscription.reminder_sent = False
        subscription.renewal_attempted_for = None
        subscription.payer_phone = payment.payer_phone or subscription.payer_phone
        subscription.discount_code = payment.discount_code
        subscription.discount_amount = to_money(payment.discount_amount)
        self.db.flush()
        return subscription

    def record_payment_failure(
        self,
        subscription: Subscription,
        payment: Payment,
        reason: str | None = None,
    ) -> Subscription:
        subscription.failed_payment_count = (subscription.failed_payment_count or 0) + 1
        self._record(
            subscription,
            HistoryAction.payment_failed,
            from_status=subscription.status,
            to_status=subscription.status,
            payment_id=payment.id,
            details={"reason": reason} if reason else None,
        )
        return subscription

    def upgrade_from_trial(
        self,
        subscription: Subscription,
        plan_type: PlanType | str,
        payment_id: uuid.UUID | None = None,
        actor_id: str | None = None,
    ) -> Subscription:
        if subscription.status != SubscriptionStatus.trial:
            raise InvalidStateTransition("Only trial subscriptions can be upgraded from trial")
        plan_type = validate_plan_type(plan_type)
        if plan_type == PlanType.trial:
            raise InvalidPlanChange("Choose a paid plan to upgrade from trial")

        now = self.clock()
        plan = self.catalog.get_plan(plan_type)
        proration = prorate_on_plan_change(subscription.plan_type, subscription.end_date, plan_type, now)
        self._transition(
            subscription,
            SubscriptionStatus.pending,
            HistoryAction.trial_ended,
            payment_id=payment_id,
            actor_id=actor_id,
            details={"reason": "upgrade"},
        )
        self._set_plan(subscription, plan)
        subscription.start_date = now
        subscription.end_date = proration.end_date
        self._transition(
            subscription,
            SubscriptionStatus.active,
            HistoryAction.trial_converted,
            payment_id=payment_id,
            actor_id=actor_id,
            details={
                "plan_type": plan_type.value,
                "remaining_days": proration.remaining_days,
                "bonus_days": proration.bonus_days,
            },
        )
        return subscription

    def change_plan(
        self,
        subscription: Subscription,
        new_plan_type: PlanType | str,
        actor_id: str | None = None,
    ) -> Subscription:
        if subscription.status != SubscriptionStatus.active:
            raise InvalidStateTransition("Only active subscriptions can change plans")
        new_plan_type = validate_plan_type(new_plan_type)
        if new_plan_type == PlanType.trial:
            raise InvalidPlanChange("Cannot change to the trial plan")
        if new_plan_type == subscription.plan_type:
            raise InvalidPlanChange(f"Subscription is already on the {new_plan_type.value} plan")
        self._apply_plan_change(subscription, new_plan_type, actor_id=actor_id)
        self.db.flush()
        return subscription

    def _apply_plan_change(
        self,
        subscription: Subscription,
        new_plan_type: PlanType,
        payment_id: uuid.UUID | None = None,
        actor_id: str | None = None,
    ) -> None:
        now = self.clock()
        plan = self.catalog.get_plan(new_plan_type)
        previous = subscription.plan_type
        proration = prorate_on_plan_change(previous, subscription.end_date, new_plan_type, now)
        self._set_plan(subscription, plan)
        subscription.end_date = proration.end_date
        subscription.next_payment_date = proration.end_date
        self._transition(
            subscription,
            SubscriptionStatus.active,
            HistoryAction.plan_changed,
            payment_id=payment_id,
            actor_id=actor_id,
            details={
                "from_plan": previous.value,
                "to_plan": new_plan_type.value,
                "remaining_days": proration.remaining_days,
                "bonus_days": proration.bonus_days,
            },
        )

    # ── Admin / scheduler transitions ────────────────────

    def cancel(
        self,
        subscription: Subscription,
        reason: CancelReason | str = CancelReason.other,
        feedback: str | None = None,
        immediate: bool = False,
        actor_id: str | None = None,
    ) -> Subscription:
        now = self.clock()
        reason = CancelReason(reason)
        self._transition(
            subscription,
            SubscriptionStatus.canceled,
            HistoryAction.canceled,
            actor_id=actor_id,
            details={"reason": reason.value, "immediate": immediate},
        )
        subscription.canceled_at = now
        subscription.cancel_reason = reason
        subscription.cancel_feedback = feedback
        subscription.canceled_by = actor_id
        subscription.auto_renew = False
        if immediate:
            subscription.end_date = now
        self.db.flush()
        return subscription

    def extend(
        self,
        subscription: Subscription,
        days: int,
        reason: str | None = None,
        actor_id: str | None = None,
    ) -> Subscription:
        if isinstance(days, bool) or not isinstance(days, int) or days <= 0:
            raise InvalidExtension(details={"days": days})
        if subscription.status == SubscriptionStatus.canceled:
            raise InvalidStateTransition("Canceled subscriptions cannot be extended")

        previous_end = ensure_utc(subscription.end_date)
        subscription.end_date = previous_end + timedelta(days=days)
        if subscription.status == SubscriptionStatus.trial:
            subscription.trial_ends_at = subscription.end_date
        if subscription.status == SubscriptionStatus.active:
            subscription.next_payment_date = subscription.end_date
        subscription.reminder_sent = False
        self._record(
            subscription,
            HistoryAction.updated,
            from_status=subscription.status,
            to_status=subscription.status,
            actor_id=actor_id,
            details={
                "extended_days": days,
                "reason": reason,
                "previous_end_date": previous_end.isoformat(),
            },
        )
        self.db.flush()
        return subscription

    def set_auto_renew(
        self, subscription: Subscription, enabled: bool, actor_id: str | None = None
    ) -> Subscription:
        if subscription.status == SubscriptionStatus.canceled:
            raise InvalidStateTransition("Auto-renewal cannot be changed on a canceled subscription")
        if subscription.auto_renew == enabled:
            return subscription
        subscription.auto_renew = enabled
        self._record(
            subscription,
            HistoryAction.updated,
            from_status=subscription.status,
            to_status=subscription.status,
            actor_id=actor_id,
            details={"auto_renew": enabled},
        )
        self.db.flush()
        return subscription

    def end_trial(self, subscription: Subscription, actor_id: str | None = None) -> Subscription:
        self._transition(
            subscription,
            SubscriptionStatus.pending,
            HistoryAction.trial_ended,
            actor_id=actor_id,
            details={"reason": "trial_period_over"},
        )
        self.db.flush()
        return subscription

    def expire(
        self,
        subscription: Subscription,
        actor_id: str | None = None,
        reason: str = "end_date_passed",
    ) -> Subscription:
        now = self.clock()
        self._transition(
            subscription,
            SubscriptionStatus.expired,
            HistoryAction.expired,
            actor_id=actor_id,
            details={"reason": reason},
        )
        subscription.data_retention_date = now + timedelta(days=self.data_retention_days)
        self.db.flush()
        return subscription

    # ── Read model ───────────────────────────────────────

    def read_model(self, subscription: Subscription) -> SubscriptionRead:
        now = self.clock()
        plan = self.db.scalar(
            select(PricingPlan).where(PricingPlan.plan_type == subscription.plan_type)
        )
        end_date = ensure_utc(subscription.end_date)
        display = _DISPLAY_STATUS[subscription.status]
        if subscription.status == SubscriptionStatus.canceled and end_date > now:
            display = f"Canceled (access until {end_date:%d %b %Y})"

        return SubscriptionRead(
            subscription_id=subscription.id,
            tenant_id=subscription.tenant_id,
            plan=PlanSummary(
                type=subscription.plan_type,
                name=plan.name if plan else None,
                features=plan.features if plan else {},
                limits=plan.limits if plan else {},
            ),
            status=subscription.status,
            display_status=display,
            pricing=PricingRead(
                base_price=to_money(subscription.base_price),
                currency=subscription.currency,
                billing_cycle=subscription.billing_cycle.value,
                discount_code=subscription.discount_code,
                discount_amount=to_money(subscription.discount_amount),
            ),
            dates=DatesRead(
                start_date=ensure_utc(subscription.start_date),
                end_date=end_date,
                trial_ends_at=ensure_utc(subscription.trial_ends_at),
                canceled_at=ensure_utc(subscription.canceled_at),
                data_retention_date=ensure_utc(subscription.data_retention_date),
            ),
            days_remaining=days_remaining(end_date, now),
            percentage_used=percentage_used(subscription.start_date, end_date, now),
            renewal_settings=RenewalSettingsRead(
                auto_renew=subscription.auto_renew,
                reminder_sent=subscription.reminder_sent,
                next_payment_date=ensure_utc(subscription.next_payment_date),
            ),
            payment=PaymentSummaryRead(
                method=subscription.payment_method,
                verified=subscription.payment_verified,
                last_payment_date=ensure_utc(subscription.last_payment_date),
                next_payment_date=ensure_utc(subscription.next_payment_date),
                failed_payment_count=subscription.failed_payment_count or 0,
            ),
            history=[
                HistoryEntryRead(
                    action=entry.action,
                    from_status=entry.from_status,
                    to_status=entry.to_status,
                    payment_id=entry.payment_id,
                    actor_id=entry.actor_id,
                    details=entry.details,
                    created_at=ensure_utc(entry.created_at),
                )
                for entry in subscription.history
            ],
        )

    # ── Internals ────────────────────────────────────────

    def _transition(
        self,
        subscription: Subscription,
        target: SubscriptionStatus,
        action: HistoryAction,
        payment_id: uuid.UUID | None = None,
        actor_id: str | None = None,
        details: dict | None = None,
    ) -> None:
        current = subscription.status
        if target not in VALID_TRANSITIONS.get(current, set()):
            raise InvalidStateTransition(
                f"Cannot transition from {current.value} to {target.value}",
                details={"subscription_id": str(subscription.id)},
            )
        subscription.status = target
        self._record(
            subscription,
            action,
            from_status=current,
            to_status=target,
            payment_id=payment_id,
            actor_id=actor_id,
            details=details,
        )
        SUBSCRIPTION_TRANSITIONS.labels(current.value, target.value).inc()
        logger.info(
            "Subscription %s -> %s (%s)",
            current.value,
            target.value,
            action.value,
            extra={
                "subscription_id": subscription.id,
                "payment_id": payment_id,
                "actor_id": actor_id,
            },
        )

    def _record(
        self,
        subscription: Subscription,
        action: HistoryAction,
        *,
        from_status: SubscriptionStatus | None,
        to_status: SubscriptionStatus,
        payment_id: uuid.UUID | None = None,
        actor_id: str | None = None,
        details: dict | None = None,
    ) -> SubscriptionHistory:
        entry = SubscriptionHistory(
            sequence=len(subscription.history) + 1,
            action=action,
            from_status=from_status,
            to_status=to_status,
            payment_id=payment_id,
            actor_id=actor_id,
            details=details,
            created_at=self.clock(),
        )
        subscription.history.append(entry)
        return entry

    def _set_plan(self, subscription: Subscription, plan: PricingPlan) -> None:
        if subscription.plan_type != plan.plan_type:
            subscription.previous_plans = [
                *(subscription.previous_plans or []),
                {
                    "plan_type": subscription.plan_type.value,
                    "base_price": str(to_money(subscription.base_price)),
                    "changed_at": self.clock().isoformat(),
                },
            ]
        subscription.plan_type = plan.plan_type
        self._apply_pricing(subscription, plan)

    @staticmethod
    def _apply_pricing(subscription: Subscription, plan: PricingPlan) -> None:
        subscription.base_price = to_money(plan.base_price)
        subscription.currency = plan.currency
        subscription.billing_cycle = plan.billing_cycle

    def _ensure_no_open(
        self, tenant_id: uuid.UUID, exclude_id: uuid.UUID | None = None
    ) -> None:
        stmt = select(Subscription.id).where(
            Subscription.tenant_id == tenant_id,
            Subscription.status.in_(OPEN_SUBSCRIPTION_STATUSES),
        )
        if exclude_id is not None:
            stmt = stmt.where(Subscription.id != exclude_id)
        if self.db.scalar(stmt.limit(1)):
            raise OpenSubscriptionExists(details={"tenant_id": str(tenant_id)})
