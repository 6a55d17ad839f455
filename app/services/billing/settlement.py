"""Settlement coordinator.

Every billing intent (registration, gateway charge, offline proof, callback,
refund, reconciliation) enters here. The coordinator composes the plan
catalog, discount engine, payment ledger, channel adapters and subscription
state machine, and owns the only commit/rollback in the billing services.

Gateway charges span two units of work around the remote call:

1. the pending payment and its discount redemption are committed;
2. the gateway is called with no transaction open;
3. the outcome (settle, keep pending, or fail and release the redemption)
   is committed.

A callback or reconciliation run that settles the payment first simply
wins; step 3 then only records the gateway response.
"""
from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.metrics import GATEWAY_CALLBACKS, SWEEP_ITEMS
from app.models.billing import (
    CallbackStatus,
    GatewayCallback,
    IntegrationStatus,
    Payment,
    PaymentChannel,
    PaymentContext,
    PaymentMethod,
    PaymentStatus,
    PlanType,
    PricingPlan,
    Subscription,
    SubscriptionStatus,
)
from app.models.tenant import AccountRole, Tenant, TenantAccount
from app.schemas.billing import (
    CallbackAck,
    OfflinePaymentRequest,
    RegistrationRead,
    SubscriptionRead,
    TenantRegistration,
)
from app.services.billing.channels import (
    CallbackNotice,
    GatewayChannel,
    OfflineProofChannel,
)
from app.services.billing.dates import ensure_utc, utcnow, validate_plan_type
from app.services.billing.discounts import DiscountDetails, DiscountEngine
from app.services.billing.errors import (
    ForbiddenAction,
    GatewayError,
    GatewayNotConfigured,
    InvalidPlanChange,
    InvalidStateTransition,
    PaymentFailed,
    TenantAlreadyExists,
)
from app.services.billing.ledger import PaymentLedger
from app.services.billing.money import to_money
from app.services.billing.notifications import BillingNotifier
from app.services.billing.plans import PlanCatalog
from app.services.billing.subscriptions import SubscriptionStateMachine
from app.services.cache import LookupCache
from app.services.payment_gateway import format_phone
from app.services.tenants import TenantDirectory

logger = logging.getLogger(__name__)

GATEWAY_ACTOR = "waafipay"
SYSTEM_ACTOR = "system"


class SettlementCoordinator:
    def __init__(
        self,
        db: Session,
        gateway_channel: GatewayChannel | None = None,
        notifier: BillingNotifier | None = None,
        cache: LookupCache | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.clock = clock
        self.gateway_channel = gateway_channel or GatewayChannel()
        self.notifier = notifier or BillingNotifier()
        self.tenants = TenantDirectory(db, cache)
        self.catalog = PlanCatalog(db)
        self.ledger = PaymentLedger(db, clock)
        self.discounts = DiscountEngine(db, clock)
        self.subscriptions = SubscriptionStateMachine(db, clock, catalog=self.catalog)
        self.offline_channel = OfflineProofChannel(self.ledger)

    @contextmanager
    def _unit_of_work(self) -> Iterator[None]:
        try:
            yield
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    # ── Registration ─────────────────────────────────────

    def register_tenant(
        self, payload: TenantRegistration, actor_id: str | None = None
    ) -> RegistrationRead:
        email = payload.email.lower()
        owner_email = (payload.owner_email or payload.email).lower()
        plan_type = validate_plan_type(payload.plan_type)
        try:
            with self._unit_of_work():
                if self.db.scalar(select(Tenant.id).where(func.lower(Tenant.email) == email)):
                    raise TenantAlreadyExists(details={"email": email})
                if self.db.scalar(
                    select(TenantAccount.id).where(func.lower(TenantAccount.email) == owner_email)
                ):
                    raise TenantAlreadyExists(
                        "An account with this email already exists",
                        details={"email": owner_email},
                    )
                tenant = Tenant(
                    business_name=payload.business_name.strip(),
                    email=email,
                    phone=payload.phone,
                    address=payload.address,
                )
                self.db.add(tenant)
                self.db.flush()
                account = TenantAccount(
                    tenant_id=tenant.id,
                    full_name=payload.owner_name.strip(),
                    email=owner_email,
                    phone=payload.owner_phone or payload.phone,
                    role=AccountRole.owner,
                )
                self.db.add(account)
                self.db.flush()
                subscription = self.subscriptions.create(tenant.id, plan_type, actor_id=actor_id)
        except IntegrityError as exc:
            raise TenantAlreadyExists(details={"email": email}) from exc

        logger.info(
            "Registered tenant on %s plan",
            plan_type.value,
            extra={"tenant_id": tenant.id, "subscription_id": subscription.id},
        )
        return RegistrationRead(
            tenant_id=tenant.id,
            account_id=account.id,
            subscription=self.subscriptions.read_model(subscription),
        )

    # ── Reads and admin changes ──────────────────────────

    def get_subscription_view(self, subscription_id: uuid.UUID | str) -> SubscriptionRead:
        return self.subscriptions.read_model(self.subscriptions.get(subscription_id))

    def change_plan(
        self, subscription_id: uuid.UUID | str, plan_type: PlanType | str, actor_id: str | None
    ) -> SubscriptionRead:
        with self._unit_of_work():
            subscription = self.subscriptions.get(subscription_id)
            self.subscriptions.change_plan(subscription, plan_type, actor_id=actor_id)
        return self.subscriptions.read_model(subscription)

    def cancel_subscription(
        self,
        subscription_id: uuid.UUID | str,
        reason: str,
        feedback: str | None,
        immediate: bool,
        actor_id: str | None,
    ) -> SubscriptionRead:
        with self._unit_of_work():
            subscription = self.subscriptions.get(subscription_id)
            self.subscriptions.cancel(
                subscription, reason=reason, feedback=feedback, immediate=immediate, actor_id=actor_id
            )
        return self.subscriptions.read_model(subscription)

    def extend_subscription(
        self,
        subscription_id: uuid.UUID | str,
        days: int,
        reason: str | None,
        actor_id: str | None,
    ) -> SubscriptionRead:
        with self._unit_of_work():
            subscription = self.subscriptions.get(subscription_id)
            self.subscriptions.extend(subscription, days, reason=reason, actor_id=actor_id)
        return self.subscriptions.read_model(subscription)

    def set_auto_renew(
        self, subscription_id: uuid.UUID | str, enabled: bool, actor_id: str | None
    ) -> SubscriptionRead:
        with self._unit_of_work():
            subscription = self.subscriptions.get(subscription_id)
            self.subscriptions.set_auto_renew(subscription, enabled, actor_id=actor_id)
        logger.info(
            "Auto-renewal %s",
            "enabled" if enabled else "disabled",
            extra={"subscription_id": subscription.id, "actor_id": actor_id},
        )
        return self.subscriptions.read_model(subscription)

    # ── Gateway payments ─────────────────────────────────

    def pay_with_gateway(
        self,
        subscription_id: uuid.UUID | str,
        phone: str,
        plan_type: PlanType | str | None = None,
        discount_code: str | None = None,
        actor_id: str | None = None,
    ) -> Payment:
        account = format_phone(phone)
        with self._unit_of_work():
            subscription = self.subscriptions.get(subscription_id)
            self._ensure_payable(subscription)
            plan = self._target_plan(subscription, plan_type)
            base, discount = self._quote(plan, discount_code, subscription.tenant_id)
            amount = discount.final_amount if discount else base

            if amount == 0:
                payment = self._create_payment(
                    subscription, plan, base, discount, discount_code,
                    method=PaymentMethod.free,
                    channel=PaymentChannel.internal,
                    payer_phone=account,
                )
                payment = self._settle(payment.id, actor_id or SYSTEM_ACTOR, notes="Fully discounted")
                free_settled = True
            else:
                if not self.gateway_channel.is_configured():
                    raise GatewayNotConfigured()
                payment = self._create_payment(
                    subscription, plan, base, discount, discount_code,
                    method=PaymentMethod.evc_plus,
                    channel=PaymentChannel.gateway,
                    payer_phone=account,
                    integration_status=IntegrationStatus.requested,
                )
                subscription.payer_phone = account
                free_settled = False
            payment_id = payment.id

        if free_settled:
            self._notify_confirmed(payment)
            return payment

        description = f"{self.tenants.display_name(subscription.tenant_id)} - {plan.name} subscription"
        try:
            result = self.gateway_channel.initiate(payment, account, description)
        except GatewayError as exc:
            timed_out = exc.timed_out or exc.retryable
            with self._unit_of_work():
                payment = self.ledger.get(payment_id)
                current = payment.status
                if current == PaymentStatus.pending:
                    payment = self._fail(
                        payment_id,
                        actor_id or SYSTEM_ACTOR,
                        exc.message,
                        integration_status=(
                            IntegrationStatus.timed_out if timed_out else IntegrationStatus.failed
                        ),
                    )
            if current == PaymentStatus.confirmed:
                # a callback settled it while the request was failing
                logger.warning(
                    "EVC Plus request failed after the payment was confirmed: %s",
                    exc,
                    extra={"payment_id": payment_id, "subscription_id": subscription_id},
                )
                return payment
            logger.error(
                "EVC Plus charge did not complete: %s",
                exc,
                extra={"payment_id": payment_id, "subscription_id": subscription_id},
            )
            raise PaymentFailed(
                status_code=502,
                details={"payment_id": str(payment_id), "reason": exc.code},
            ) from exc

        declined = settled_here = False
        with self._unit_of_work():
            payment = self.ledger.get(payment_id)
            if payment.status != PaymentStatus.pending:
                # already settled by a callback or reconciliation
                self.gateway_channel.record_result(self.ledger, payment, result)
            elif result.pending:
                self.gateway_channel.record_result(self.ledger, payment, result)
            elif result.success:
                payment = self._settle(payment_id, GATEWAY_ACTOR, notes="EVC Plus payment accepted")
                settled_here = True
                self.gateway_channel.record_result(self.ledger, payment, result)
            else:
                declined = True
                payment = self._fail(
                    payment_id,
                    GATEWAY_ACTOR,
                    result.response_message or "Payment declined",
                    integration_status=IntegrationStatus.failed,
                )
                self.gateway_channel.record_result(self.ledger, payment, result)

        if declined:
            raise PaymentFailed(
                result.response_message or PaymentFailed.message,
                details={
                    "payment_id": str(payment_id),
                    "response_code": result.response_code,
                },
            )
        if settled_here:
            self._notify_confirmed(payment)
        return payment

    # ── Offline payments ─────────────────────────────────

    def submit_offline_payment(
        self,
        subscription_id: uuid.UUID | str,
        payload: OfflinePaymentRequest,
        actor_id: str | None = None,
    ) -> Payment:
        with self._unit_of_work():
            subscription = self.subscriptions.get(subscription_id)
            self._ensure_payable(subscription)
            plan = self._target_plan(subscription, payload.plan_type)
            base, discount = self._quote(plan, payload.discount_code, subscription.tenant_id)
            amount = discount.final_amount if discount else base
            notes = payload.notes
            if payload.amount is not None and to_money(payload.amount) != amount:
                logger.warning(
                    "Declared offline amount %s differs from quoted %s",
                    payload.amount,
                    amount,
                    extra={"subscription_id": subscription.id},
                )
                notes = "; ".join(filter(None, [notes, f"Declared amount: {to_money(payload.amount)}"]))
            payment = self.offline_channel.submit(
                tenant_id=subscription.tenant_id,
                subscription_id=subscription.id,
                proof_reference=payload.proof_reference,
                amount=amount,
                method=payload.method,
                original_amount=base,
                currency=plan.currency,
                plan_type=plan.plan_type,
                payer_name=payload.payer_name,
                notes=notes,
            )
            if discount:
                self._redeem(payment, discount_code=payload.discount_code, base=base)
        return payment

    def verify_offline_payment(
        self,
        payment_id: uuid.UUID | str,
        decision: str,
        notes: str | None,
        actor_id: str | None,
        is_privileged: bool,
    ) -> Payment:
        with self._unit_of_work():
            payment = self.offline_channel.verify(payment_id, decision, notes, actor_id, is_privileged)
            if payment.status == PaymentStatus.confirmed:
                self._apply_confirmation(payment, actor_id)
            else:
                self._apply_failure(payment, notes or "Payment proof rejected")

        if payment.status == PaymentStatus.confirmed:
            self._notify_confirmed(payment)
        elif settings.notify_on_offline_rejection:
            self.notifier.payment_rejected(
                self.tenants.contact_email(payment.tenant_id),
                self.tenants.display_name(payment.tenant_id),
                to_money(payment.amount),
                payment.currency,
                notes,
            )
        return payment

    # ── Settlement ───────────────────────────────────────

    def settle_payment(
        self,
        payment_id: uuid.UUID | str,
        actor_id: str | None = None,
        allow_late: bool = False,
    ) -> Payment:
        with self._unit_of_work():
            payment = self._settle(payment_id, actor_id, allow_late=allow_late)
        self._notify_confirmed(payment)
        return payment

    def _settle(
        self,
        payment_id: uuid.UUID | str,
        actor_id: str | None,
        notes: str | None = None,
        allow_late: bool = False,
    ) -> Payment:
        payment = self.ledger.confirm(payment_id, actor_id, notes=notes, allow_late=allow_late)
        self._apply_confirmation(payment, actor_id)
        return payment

    def _apply_confirmation(self, payment: Payment, actor_id: str | None) -> None:
        if payment.context != PaymentContext.subscription or payment.subscription_id is None:
            return
        subscription = self.subscriptions.get(payment.subscription_id)
        if subscription.status == SubscriptionStatus.canceled:
            logger.warning(
                "Payment confirmed for a canceled subscription, refund required",
                extra={"payment_id": payment.id, "subscription_id": subscription.id},
            )
            return
        self.subscriptions.activate_from_payment(subscription, payment, actor_id=actor_id)

    def _fail(
        self,
        payment_id: uuid.UUID | str,
        actor_id: str | None,
        reason: str,
        integration_status: IntegrationStatus | None = None,
    ) -> Payment:
        payment = self.ledger.fail(payment_id, actor_id, reason, integration_status=integration_status)
        self._apply_failure(payment, reason)
        return payment

    def _apply_failure(self, payment: Payment, reason: str) -> None:
        self.discounts.void_redemption(payment.id)
        if payment.subscription_id is None:
            return
        subscription = self.subscriptions.get(payment.subscription_id)
        self.subscriptions.record_payment_failure(subscription, payment, reason)

    # ── Gateway callbacks ────────────────────────────────

    def handle_gateway_callback(self, payload: Any) -> CallbackAck:
        notice = self.gateway_channel.parse_callback(payload)
        if payload is None:
            payload = {}
        elif not isinstance(payload, dict):
            payload = {"body": payload}
        callback_id: uuid.UUID | None = None
        settled: Payment | None = None
        try:
            with self._unit_of_work():
                record = GatewayCallback(
                    reference=notice.reference,
                    transaction_id=notice.transaction_id,
                    result_code=notice.result_code,
                    payload=payload,
                    status=CallbackStatus.pending,
                )
                self.db.add(record)
                self.db.flush()
                callback_id = record.id
            with self._unit_of_work():
                status, settled = self._process_callback(notice)
                self.db.get(GatewayCallback, callback_id).status = status
        except Exception as exc:
            logger.exception(
                "Failed to process gateway callback",
                extra={"payment_id": notice.reference},
            )
            status = CallbackStatus.failed
            settled = None
            if callback_id is not None:
                self._mark_callback_failed(callback_id, exc)

        GATEWAY_CALLBACKS.labels(status.value).inc()
        if settled is not None:
            self._notify_confirmed(settled)
        return CallbackAck()

    def _process_callback(self, notice: CallbackNotice) -> tuple[CallbackStatus, Payment | None]:
        payment = self.ledger.find_by_reference(notice.reference)
        if payment is None or payment.channel != PaymentChannel.gateway:
            logger.warning("Callback received for unknown payment reference %s", notice.reference)
            return CallbackStatus.ignored, None

        late = (
            payment.status == PaymentStatus.failed
            and payment.integration_status == IntegrationStatus.timed_out
            and notice.success
        )
        if payment.status != PaymentStatus.pending and not late:
            logger.info(
                "Callback for already settled payment (%s)",
                payment.status.value,
                extra={"payment_id": payment.id},
            )
            return CallbackStatus.ignored, None

        if notice.success:
            payment = self._settle(
                payment.id,
                GATEWAY_ACTOR,
                notes=notice.description or "EVC Plus callback success",
                allow_late=late,
            )
            integration_status = IntegrationStatus.success
        else:
            payment = self._fail(
                payment.id,
                GATEWAY_ACTOR,
                notice.description or "Payment declined",
                integration_status=IntegrationStatus.failed,
            )
            integration_status = IntegrationStatus.failed
        self.ledger.record_gateway_result(
            payment,
            transaction_id=notice.transaction_id,
            response_code=notice.result_code,
            response_message=notice.description,
            integration_status=integration_status,
        )
        return CallbackStatus.processed, payment if notice.success else None

    def _mark_callback_failed(self, callback_id: uuid.UUID, exc: Exception) -> None:
        try:
            with self._unit_of_work():
                record = self.db.get(GatewayCallback, callback_id)
                if record is not None:
                    record.status = CallbackStatus.failed
                    record.error = str(exc)[:2000]
        except SQLAlchemyError:
            logger.exception("Could not record gateway callback failure")

    # ── Refunds ──────────────────────────────────────────

    def refund_payment(
        self,
        payment_id: uuid.UUID | str,
        amount: Decimal,
        reason: str,
        actor_id: str | None,
        is_privileged: bool,
    ) -> Payment:
        if not is_privileged:
            raise ForbiddenAction("Only administrators can refund payments")
        with self._unit_of_work():
            payment = self.ledger.record_refund(payment_id, amount, reason, actor_id)
        return payment

    # ── Reconciliation ───────────────────────────────────

    def reconcile_stale_payments(self, limit: int = 100) -> dict[str, int]:
        now = self.clock()
        cutoff = now - timedelta(minutes=settings.pending_payment_timeout_minutes)
        max_age_cutoff = now - timedelta(hours=settings.pending_payment_max_age_hours)
        counts = {"settled": 0, "failed": 0, "timed_out": 0, "pending": 0, "errors": 0}

        for stale in self.ledger.list_stale_pending(cutoff, limit=limit):
            payment_id = stale.id
            too_old = ensure_utc(stale.created_at) < max_age_cutoff
            try:
                outcome, settled = self._reconcile_one(payment_id, too_old)
            except Exception:
                logger.exception("Reconciliation failed", extra={"payment_id": payment_id})
                outcome, settled = "errors", None
            counts[outcome] += 1
            SWEEP_ITEMS.labels("reconcile_pending_payments", outcome).inc()
            if settled is not None:
                self._notify_confirmed(settled)
        if any(counts.values()):
            logger.info("Reconciled stale payments: %s", counts)
        return counts

    def _reconcile_one(self, payment_id: uuid.UUID, too_old: bool) -> tuple[str, Payment | None]:
        payment = self.ledger.get(payment_id)
        result = None
        if self.gateway_channel.is_configured():
            try:
                result = self.gateway_channel.query(payment)
            except GatewayError as exc:
                logger.warning(
                    "Gateway status query failed: %s",
                    exc,
                    extra={"payment_id": payment_id},
                )

        with self._unit_of_work():
            payment = self.ledger.get(payment_id)
            if payment.status != PaymentStatus.pending:
                return "pending", None
            if result is not None and result.success and not result.pending:
                payment = self._settle(payment_id, SYSTEM_ACTOR, notes="Confirmed by reconciliation")
                self.gateway_channel.record_result(self.ledger, payment, result)
                return "settled", payment
            if result is not None and not result.success:
                payment = self._fail(
                    payment_id,
                    SYSTEM_ACTOR,
                    result.response_message or "Declined at gateway",
                    integration_status=IntegrationStatus.failed,
                )
                self.gateway_channel.record_result(self.ledger, payment, result)
                return "failed", None
            if too_old:
                self._fail(
                    payment_id,
                    SYSTEM_ACTOR,
                    "No confirmation received from the gateway",
                    integration_status=IntegrationStatus.timed_out,
                )
                return "timed_out", None
        return "pending", None

    # ── Helpers ──────────────────────────────────────────

    @staticmethod
    def _ensure_payable(subscription: Subscription) -> None:
        if subscription.status == SubscriptionStatus.canceled:
            raise InvalidStateTransition(
                "Canceled subscriptions cannot be paid for",
                details={"subscription_id": str(subscription.id)},
            )

    def _target_plan(
        self, subscription: Subscription, plan_type: PlanType | str | None
    ) -> PricingPlan:
        target = validate_plan_type(plan_type) if plan_type else subscription.plan_type
        if target == PlanType.trial:
            raise InvalidPlanChange("Choose a monthly or yearly plan to pay for")
        return self.catalog.get_plan(target)

    def _quote(
        self, plan: PricingPlan, discount_code: str | None, tenant_id: uuid.UUID
    ) -> tuple[Decimal, DiscountDetails | None]:
        base = to_money(plan.base_price)
        if not discount_code:
            return base, None
        return base, self.discounts.validate(
            discount_code, base, PaymentContext.subscription, tenant_id
        )

    def _create_payment(
        self,
        subscription: Subscription,
        plan: PricingPlan,
        base: Decimal,
        discount: DiscountDetails | None,
        discount_code: str | None,
        *,
        method: PaymentMethod,
        channel: PaymentChannel,
        payer_phone: str | None = None,
        integration_status: IntegrationStatus = IntegrationStatus.not_applicable,
    ) -> Payment:
        payment = self.ledger.create_pending(
            tenant_id=subscription.tenant_id,
            context=PaymentContext.subscription,
            subscription_id=subscription.id,
            amount=discount.final_amount if discount else base,
            original_amount=base,
            currency=plan.currency,
            method=method,
            channel=channel,
            plan_type=plan.plan_type,
            payer_phone=payer_phone,
            integration_status=integration_status,
        )
        if discount:
            self._redeem(payment, discount_code=discount_code, base=base)
        return payment

    def _redeem(self, payment: Payment, discount_code: str | None, base: Decimal) -> None:
        applied = self.discounts.apply(
            discount_code,
            base,
            PaymentContext.subscription,
            payment.tenant_id,
            payment_id=payment.id,
        )
        payment.discount_id = applied.discount_id
        payment.discount_code = applied.code
        payment.discount_amount = applied.discount_amount
        payment.amount = applied.final_amount
        self.db.flush()

    def _notify_confirmed(self, payment: Payment) -> None:
        if payment.context != PaymentContext.subscription or payment.subscription_id is None:
            return
        subscription = self.db.get(Subscription, payment.subscription_id)
        if subscription is None or subscription.status != SubscriptionStatus.active:
            return
        self.notifier.payment_confirmed(
            self.tenants.contact_email(payment.tenant_id),
            self.tenants.display_name(payment.tenant_id),
            to_money(payment.amount),
            payment.currency,
            ensure_utc(subscription.end_date),
        )
