from decimal import Decimal

import pytest

from app.models.billing import (
    IntegrationStatus,
    PaymentChannel,
    PaymentMethod,
    PaymentStatus,
)
from app.services.billing.channels import (
    GatewayChannel,
    OfflineProofChannel,
    integration_status_for,
)
from app.services.billing.errors import (
    BillingError,
    ForbiddenAction,
    InvalidPaymentMethod,
    MissingPaymentProof,
)
from app.services.payment_gateway import GatewayResult


@pytest.fixture()
def offline(coordinator):
    return OfflineProofChannel(coordinator.ledger)


@pytest.fixture()
def submit(offline, pending_subscription):
    def _submit(**overrides):
        values = {
            "tenant_id": pending_subscription.tenant_id,
            "subscription_id": pending_subscription.id,
            "proof_reference": "receipts/2024/0001.jpg",
            "amount": Decimal("10.00"),
            "method": PaymentMethod.bank_transfer,
        }
        values.update(overrides)
        return offline.submit(**values)

    return _submit


class TestParseCallback:
    def test_success_by_result_code(self):
        notice = GatewayChannel.parse_callback(
            {
                "invoiceId": "abc",
                "transactionId": 998877,
                "resultCode": "0",
                "resultDesc": "Approved",
                "status": "COMPLETED",
            }
        )

        assert notice.reference == "abc"
        assert notice.transaction_id == "998877"
        assert notice.result_code == "0"
        assert notice.description == "Approved"
        assert notice.success is True

    def test_success_by_status_and_reference_id(self):
        notice = GatewayChannel.parse_callback({"referenceId": "xyz", "status": "Success"})

        assert notice.reference == "xyz"
        assert notice.success is True

    def test_failure(self):
        notice = GatewayChannel.parse_callback(
            {"invoiceId": "abc", "resultCode": "5206", "resultDesc": "Rejected by payer"}
        )
        assert notice.success is False

    def test_empty_payload(self):
        notice = GatewayChannel.parse_callback(None)

        assert notice.reference is None
        assert notice.success is False

    @pytest.mark.parametrize("payload", [[{"invoiceId": "abc"}], "invoiceId=abc", 42])
    def test_non_object_payload(self, payload):
        notice = GatewayChannel.parse_callback(payload)

        assert notice.reference is None
        assert notice.success is False

    def test_oversized_fields_are_truncated(self):
        notice = GatewayChannel.parse_callback(
            {"invoiceId": "r" * 200, "transactionId": "t" * 200, "resultCode": "9" * 50}
        )

        assert len(notice.reference) == 80
        assert len(notice.transaction_id) == 120
        assert len(notice.result_code) == 20


@pytest.mark.parametrize(
    ("result", "expected"),
    [
        (GatewayResult(True, "T1", "0", pending=True), IntegrationStatus.processing),
        (GatewayResult(True, "T1", "0"), IntegrationStatus.success),
        (GatewayResult(False, None, "5206"), IntegrationStatus.failed),
    ],
)
def test_integration_status_for(result, expected):
    assert integration_status_for(result) == expected


def test_initiate_uses_payment_id_as_reference(gateway, coordinator, pending_subscription):
    payment = coordinator.ledger.create_pending(
        tenant_id=pending_subscription.tenant_id,
        context="subscription",
        subscription_id=pending_subscription.id,
        amount=Decimal("10.00"),
        method=PaymentMethod.evc_plus,
        channel=PaymentChannel.gateway,
    )
    gateway.initiate_with_retry.return_value = GatewayResult(True, "T1", "0")

    GatewayChannel(gateway).initiate(payment, "252615123456", "Monthly")

    gateway.initiate_with_retry.assert_called_once_with(
        "252615123456", Decimal("10.00"), str(payment.id), "Monthly", "USD"
    )


class TestOfflineSubmit:
    def test_submit_creates_pending_offline_payment(self, submit):
        payment = submit(payer_name="Hodan Ali")

        assert payment.status == PaymentStatus.pending
        assert payment.channel == PaymentChannel.offline
        assert payment.method == PaymentMethod.bank_transfer
        assert payment.integration_status == IntegrationStatus.not_applicable
        assert payment.proof_reference == "receipts/2024/0001.jpg"

    @pytest.mark.parametrize("proof", [None, "", "   "])
    def test_proof_is_required(self, submit, proof):
        with pytest.raises(MissingPaymentProof) as exc_info:
            submit(proof_reference=proof)
        assert exc_info.value.code == "missing_proof_file"

    @pytest.mark.parametrize("method", [PaymentMethod.evc_plus, PaymentMethod.free])
    def test_gateway_methods_rejected(self, submit, method):
        with pytest.raises(InvalidPaymentMethod):
            submit(method=method)


class TestOfflineVerify:
    def test_requires_privileged_actor(self, offline, submit):
        payment = submit()

        with pytest.raises(ForbiddenAction) as exc_info:
            offline.verify(payment.id, "approved", None, "owner-1", is_privileged=False)

        assert exc_info.value.status_code == 403
        assert payment.status == PaymentStatus.pending

    def test_approve(self, offline, submit):
        payment = submit()

        offline.verify(payment.id, "approved", "Matches bank slip", "admin-1", is_privileged=True)

        assert payment.status == PaymentStatus.confirmed
        assert payment.confirmed_by == "admin-1"

    def test_reject(self, offline, submit):
        payment = submit()

        offline.verify(payment.id, "rejected", "Blurry photo", "admin-1", is_privileged=True)

        assert payment.status == PaymentStatus.failed
        assert payment.failure_reason == "Blurry photo"

    def test_unknown_decision(self, offline, submit):
        payment = submit()
        with pytest.raises(BillingError) as exc_info:
            offline.verify(payment.id, "maybe", None, "admin-1", is_privileged=True)
        assert exc_info.value.code == "invalid_decision"

    def test_gateway_payments_cannot_be_verified_manually(self, offline, coordinator, pending_subscription):
        payment = coordinator.ledger.create_pending(
            tenant_id=pending_subscription.tenant_id,
            context="subscription",
            subscription_id=pending_subscription.id,
            amount=Decimal("10.00"),
            method=PaymentMethod.evc_plus,
            channel=PaymentChannel.gateway,
        )
        with pytest.raises(InvalidPaymentMethod):
            offline.verify(payment.id, "approved", None, "admin-1", is_privileged=True)
