"""Payment ledger: the authoritative record of every payment attempt.

Status changes go through ``confirm``, ``fail`` and ``record_refund`` only.
``confirm`` and ``fail`` are conditional updates on the current status so a
duplicated callback or an overlapping sweep cannot settle a payment twice.
"""
from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import exists, func, select, update
from sqlalchemy.orm import Session

from app.metrics import PAYMENTS_SETTLED
from app.models.billing import (
    IntegrationStatus,
    Payment,
    PaymentChannel,
    PaymentContext,
    PaymentMethod,
    PaymentStatus,
    PaymentVerificationAttempt,
    PlanType,
    VerificationOutcome,
)
from app.services.billing.dates import utcnow
from app.services.billing.errors import (
    InvalidRefund,
    InvalidStateTransition,
    MissingContextReference,
    PaymentAlreadyConfirmed,
    PaymentNotFound,
)
from app.services.billing.money import to_money
from app.services.common import apply_ordering, apply_pagination, coerce_uuid

logger = logging.getLogger(__name__)

_CONTEXT_REFERENCES = {
    PaymentContext.subscription: "subscription_id",
    PaymentContext.pos: "pos_order_id",
    PaymentContext.debt: "debt_id",
}


class PaymentLedger:
    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self.clock = clock

    def create_pending(
        self,
        *,
        tenant_id: uuid.UUID,
        context: PaymentContext | str,
        amount,
        method: PaymentMethod,
        channel: PaymentChannel,
        subscription_id: uuid.UUID | None = None,
        pos_order_id: str | None = None,
        debt_id: str | None = None,
        original_amount=None,
        currency: str = "USD",
        plan_type: PlanType | None = None,
        payer_phone: str | None = None,
        payer_name: str | None = None,
        proof_reference: str | None = None,
        notes: str | None = None,
        integration_status: IntegrationStatus = IntegrationStatus.not_applicable,
    ) -> Payment:
        context = PaymentContext(context)
        references = {
            "subscription_id": subscription_id,
            "pos_order_id": pos_order_id,
            "debt_id": debt_id,
        }
        required = _CONTEXT_REFERENCES[context]
        if not references[required]:
            raise MissingContextReference(
                f"{required} is required for {context.value} payments",
                code=f"missing_{required}",
            )
        amount = to_money(amount)
        if amount < 0:
            raise InvalidRefund("Payment amount cannot be negative", code="invalid_amount")

        payment = Payment(
            tenant_id=tenant_id,
            context=context,
            amount=amount,
            original_amount=to_money(original_amount) if original_amount is not None else amount,
            currency=currency,
            method=method,
            channel=channel,
            status=PaymentStatus.pending,
            integration_status=integration_status,
            plan_type=plan_type,
            payer_phone=payer_phone,
            payer_name=payer_name,
            proof_reference=proof_reference,
            notes=notes,
            **references,
        )
        self.db.add(payment)
        self.db.flush()
        logger.info(
            "Created pending %s payment of %s %s",
            channel.value,
            amount,
            currency,
            extra={"payment_id": payment.id, "tenant_id": tenant_id},
        )
        return payment

    # ── Settlement ───────────────────────────────────────

    def confirm(
        self,
        payment_id: uuid.UUID | str,
        actor_id: str | None,
        *,
        notes: str | None = None,
        allow_late: bool = False,
    ) -> Payment:
        payment = self.get(payment_id)
        now = self.clock()
        allowed = [PaymentStatus.pending]
        late = (
            allow_late
            and payment.status == PaymentStatus.failed
            and payment.integration_status == IntegrationStatus.timed_out
        )
        if late:
            allowed.append(PaymentStatus.failed)

        result = self.db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status.in_(allowed))
            .values(
                status=PaymentStatus.confirmed,
                confirmed_by=actor_id,
                confirmed_at=now,
                failure_reason=None,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.refresh(payment)
        if result.rowcount != 1:
            if payment.status == PaymentStatus.confirmed:
                raise PaymentAlreadyConfirmed(details={"payment_id": str(payment.id)})
            raise InvalidStateTransition(
                f"Cannot confirm a payment in status {payment.status.value}",
                details={"payment_id": str(payment.id)},
            )

        self._append_attempt(
            payment,
            attempted_by=actor_id,
            outcome=VerificationOutcome.successful,
            notes=notes or ("Late confirmation after timeout" if late else "Payment confirmed"),
        )
        PAYMENTS_SETTLED.labels(payment.channel.value, PaymentStatus.confirmed.value).inc()
        logger.info(
            "Confirmed payment",
            extra={"payment_id": payment.id, "actor_id": actor_id},
        )
        return payment

    def fail(
        self,
        payment_id: uuid.UUID | str,
        actor_id: str | None,
        reason: str,
        *,
        integration_status: IntegrationStatus | None = None,
    ) -> Payment:
        payment = self.get(payment_id)
        values: dict = {"status": PaymentStatus.failed, "failure_reason": reason}
        if integration_status is not None:
            values["integration_status"] = integration_status
        result = self.db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == PaymentStatus.pending)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.refresh(payment)
        if result.rowcount != 1:
            raise InvalidStateTransition(
                f"Cannot fail a payment in status {payment.status.value}",
                details={"payment_id": str(payment.id)},
            )
        self._append_attempt(
            payment,
            attempted_by=actor_id,
            outcome=VerificationOutcome.failed,
            notes=reason,
        )
        PAYMENTS_SETTLED.labels(payment.channel.value, PaymentStatus.failed.value).inc()
        logger.info(
            "Payment failed: %s",
            reason,
            extra={"payment_id": payment.id, "actor_id": actor_id},
        )
        return payment

    def record_refund(
        self,
        payment_id: uuid.UUID | str,
        amount,
        reason: str,
        actor_id: str | None,
    ) -> Payment:
        payment = self.get(payment_id)
        if payment.status != PaymentStatus.confirmed:
            raise InvalidStateTransition(
                f"Cannot refund a payment in status {payment.status.value}",
                details={"payment_id": str(payment.id)},
            )
        amount = to_money(amount)
        if amount <= 0 or amount > to_money(payment.amount):
            raise InvalidRefund(details={"max_refundable": str(payment.amount)})

        payment.status = (
            PaymentStatus.refunded
            if amount == to_money(payment.amount)
            else PaymentStatus.partially_refunded
        )
        payment.refund_amount = amount
        payment.refund_reason = reason
        payment.refunded_at = self.clock()
        payment.refunded_by = actor_id
        self.db.flush()
        logger.info(
            "Recorded %s refund of %s",
            payment.status.value,
            amount,
            extra={"payment_id": payment.id, "actor_id": actor_id},
        )
        return payment

    def add_verification_attempt(
        self,
        payment_id: uuid.UUID | str,
        attempted_by: str | None,
        outcome: VerificationOutcome,
        notes: str | None = None,
    ) -> PaymentVerificationAttempt:
        payment = self.get(payment_id)
        return self._append_attempt(payment, attempted_by, outcome, notes)

    def record_gateway_result(
        self,
        payment: Payment,
        *,
        transaction_id: str | None,
        response_code: str | None,
        response_message: str | None,
        integration_status: IntegrationStatus,
    ) -> Payment:
        if transaction_id:
            payment.gateway_transaction_id = transaction_id
        payment.gateway_response_code = response_code
        payment.gateway_response_message = response_message
        payment.integration_status = integration_status
        self.db.flush()
        return payment

    def _append_attempt(
        self,
        payment: Payment,
        attempted_by: str | None,
        outcome: VerificationOutcome,
        notes: str | None,
    ) -> PaymentVerificationAttempt:
        attempt = PaymentVerificationAttempt(
            sequence=len(payment.verification_attempts) + 1,
            attempted_by=attempted_by,
            outcome=outcome,
            notes=notes,
            created_at=self.clock(),
        )
        payment.verification_attempts.append(attempt)
        self.db.flush()
        return attempt

    # ── Queries ──────────────────────────────────────────

    def get(self, payment_id: uuid.UUID | str) -> Payment:
        try:
            key = coerce_uuid(payment_id)
        except ValueError as exc:
            raise PaymentNotFound() from exc
        payment = self.db.get(Payment, key)
        if not payment:
            raise PaymentNotFound()
        return payment

    def find_by_reference(self, reference: str | None) -> Payment | None:
        if not reference:
            return None
        try:
            key = coerce_uuid(reference)
        except ValueError:
            return None
        return self.db.get(Payment, key)

    def list_for_subscription(self, subscription_id: uuid.UUID) -> list[Payment]:
        stmt = (
            select(Payment)
            .where(Payment.subscription_id == subscription_id)
            .order_by(Payment.created_at.desc())
        )
        return list(self.db.scalars(stmt).all())

    def list(
        self,
        status: PaymentStatus | None = None,
        channel: PaymentChannel | None = None,
        tenant_id: uuid.UUID | str | None = None,
        order_by: str = "created_at",
        order_dir: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Payment], int]:
        """Admin queue view, e.g. offline proofs still waiting for a verdict."""
        stmt = select(Payment)
        if status is not None:
            stmt = stmt.where(Payment.status == PaymentStatus(status))
        if channel is not None:
            stmt = stmt.where(Payment.channel == PaymentChannel(channel))
        if tenant_id is not None:
            stmt = stmt.where(Payment.tenant_id == coerce_uuid(tenant_id))
        total = self.db.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        ordered = apply_ordering(
            stmt,
            order_by,
            order_dir,
            {"created_at": Payment.created_at, "amount": Payment.amount},
        )
        items = list(self.db.scalars(apply_pagination(ordered, limit, offset)).all())
        return items, total

    def has_pending_for_subscription(self, subscription_id: uuid.UUID) -> bool:
        stmt = select(
            exists().where(
                Payment.subscription_id == subscription_id,
                Payment.status == PaymentStatus.pending,
            )
        )
        return bool(self.db.scalar(stmt))

    def list_stale_pending(self, cutoff: datetime, limit: int = 100) -> list[Payment]:
        stmt = (
            select(Payment)
            .where(
                Payment.status == PaymentStatus.pending,
                Payment.channel == PaymentChannel.gateway,
                Payment.integration_status.in_(
                    [IntegrationStatus.requested, IntegrationStatus.processing]
                ),
                Payment.created_at < cutoff,
            )
            .order_by(Payment.created_at)
            .limit(limit)
        )
        return list(self.db.scalars(stmt).all())

