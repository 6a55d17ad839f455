"""Payment channel adapters.

``GatewayChannel`` drives EVC Plus purchases through WaafiPay and turns
callback payloads into ``CallbackNotice`` values. ``OfflineProofChannel``
records manually submitted proofs and applies an administrator's verdict.
Neither adapter touches subscription state; that is the coordinator's job.
"""
from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from app.models.billing import (
    IntegrationStatus,
    Payment,
    PaymentChannel,
    PaymentContext,
    PaymentMethod,
    PlanType,
)
from app.services.billing.errors import (
    BillingError,
    ForbiddenAction,
    InvalidPaymentMethod,
    MissingPaymentProof,
)
from app.services.billing.ledger import PaymentLedger
from app.services.payment_gateway import (
    SUCCESS_CODE,
    GatewayResult,
    WaafiPayGateway,
    waafipay_gateway,
)

logger = logging.getLogger(__name__)

GATEWAY_METHODS = {PaymentMethod.evc_plus}
OFFLINE_METHODS = {
    PaymentMethod.cash,
    PaymentMethod.bank_transfer,
    PaymentMethod.mobile_money,
    PaymentMethod.other,
}


@dataclass(frozen=True)
class CallbackNotice:
    reference: str | None
    transaction_id: str | None
    result_code: str | None
    description: str | None
    status: str | None
    success: bool


def integration_status_for(result: GatewayResult) -> IntegrationStatus:
    if result.pending:
        return IntegrationStatus.processing
    if result.success:
        return IntegrationStatus.success
    return IntegrationStatus.failed


class GatewayChannel:
    def __init__(self, gateway: WaafiPayGateway | None = None) -> None:
        self.gateway = gateway or waafipay_gateway

    def is_configured(self) -> bool:
        return self.gateway.is_configured()

    def initiate(self, payment: Payment, phone: str, description: str) -> GatewayResult:
        """Ask the payer's wallet for ``payment.amount``; the payment id is the reference."""
        return self.gateway.initiate_with_retry(
            phone,
            payment.amount,
            payment.reference,
            description,
            payment.currency,
        )

    def query(self, payment: Payment) -> GatewayResult:
        return self.gateway.query_status(payment.reference)

    @staticmethod
    def record_result(ledger: PaymentLedger, payment: Payment, result: GatewayResult) -> Payment:
        return ledger.record_gateway_result(
            payment,
            transaction_id=result.transaction_id,
            response_code=result.response_code,
            response_message=result.response_message,
            integration_status=integration_status_for(result),
        )

    @staticmethod
    def parse_callback(payload: Any) -> CallbackNotice:
        if not isinstance(payload, Mapping):
            payload = {}
        reference = payload.get("invoiceId") or payload.get("referenceId")
        result_code = payload.get("resultCode")
        status = payload.get("status")
        success = (
            (result_code is not None and str(result_code) == SUCCESS_CODE)
            or str(status or "").lower() == "success"
        )
        return CallbackNotice(
            reference=str(reference)[:80] if reference else None,
            transaction_id=str(payload["transactionId"])[:120] if payload.get("transactionId") else None,
            result_code=str(result_code)[:20] if result_code is not None else None,
            description=payload.get("resultDesc"),
            status=status,
            success=success,
        )


class OfflineProofChannel:
    def __init__(self, ledger: PaymentLedger) -> None:
        self.ledger = ledger

    def submit(
        self,
        *,
        tenant_id: uuid.UUID,
        subscription_id: uuid.UUID,
        proof_reference: str | None,
        amount: Decimal,
        method: PaymentMethod | str = PaymentMethod.cash,
        original_amount: Decimal | None = None,
        currency: str = "USD",
        plan_type: PlanType | None = None,
        payer_name: str | None = None,
        notes: str | None = None,
    ) -> Payment:
        if not proof_reference or not proof_reference.strip():
            raise MissingPaymentProof()
        method = PaymentMethod(method)
        if method not in OFFLINE_METHODS:
            raise InvalidPaymentMethod(
                f"{method.value} cannot be submitted as an offline payment",
                details={"allowed": sorted(m.value for m in OFFLINE_METHODS)},
            )
        payment = self.ledger.create_pending(
            tenant_id=tenant_id,
            context=PaymentContext.subscription,
            subscription_id=subscription_id,
            amount=amount,
            original_amount=original_amount,
            currency=currency,
            method=method,
            channel=PaymentChannel.offline,
            plan_type=plan_type,
            payer_name=payer_name,
            proof_reference=proof_reference.strip(),
            notes=notes,
            integration_status=IntegrationStatus.not_applicable,
        )
        logger.info(
            "Offline payment proof submitted",
            extra={"payment_id": payment.id, "tenant_id": tenant_id},
        )
        return payment

    def verify(
        self,
        payment_id: uuid.UUID | str,
        decision: str,
        notes: str | None,
        actor_id: str | None,
        is_privileged: bool,
    ) -> Payment:
        if not is_privileged:
            raise ForbiddenAction("Only administrators can verify offline payments")
        payment = self.ledger.get(payment_id)
        if payment.channel != PaymentChannel.offline:
            raise InvalidPaymentMethod("Only offline payments can be verified manually")
        if decision == "approved":
            return self.ledger.confirm(payment.id, actor_id, notes=notes)
        if decision == "rejected":
            return self.ledger.fail(payment.id, actor_id, notes or "Payment proof rejected")
        raise BillingError(
            f"Unknown verification decision: {decision}",
            code="invalid_decision",
            details={"allowed": ["approved", "rejected"]},
        )
