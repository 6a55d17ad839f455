import uuid
from datetime import timedelta
from decimal import Decimal

import pytest

from app.models.billing import (
    IntegrationStatus,
    PaymentChannel,
    PaymentContext,
    PaymentMethod,
    PaymentStatus,
    VerificationOutcome,
)
from app.services.billing.errors import (
    InvalidRefund,
    InvalidStateTransition,
    MissingContextReference,
    PaymentAlreadyConfirmed,
    PaymentNotFound,
)
from app.services.billing.ledger import PaymentLedger


@pytest.fixture()
def ledger(db_session, clock):
    return PaymentLedger(db_session, clock)


@pytest.fixture()
def make_payment(ledger, pending_subscription):
    def _make(**overrides):
        values = {
            "tenant_id": pending_subscription.tenant_id,
            "context": PaymentContext.subscription,
            "subscription_id": pending_subscription.id,
            "amount": Decimal("10.00"),
            "method": PaymentMethod.evc_plus,
            "channel": PaymentChannel.gateway,
            "integration_status": IntegrationStatus.requested,
        }
        values.update(overrides)
        return ledger.create_pending(**values)

    return _make


class TestCreatePending:
    def test_creates_pending_payment(self, make_payment):
        payment = make_payment(original_amount=Decimal("12.00"))

        assert payment.status == PaymentStatus.pending
        assert payment.amount == Decimal("10.00")
        assert payment.original_amount == Decimal("12.00")
        assert payment.reference == str(payment.id)

    def test_original_amount_defaults_to_amount(self, make_payment):
        assert make_payment().original_amount == Decimal("10.00")

    @pytest.mark.parametrize(
        ("context", "code"),
        [
            (PaymentContext.subscription, "missing_subscription_id"),
            (PaymentContext.pos, "missing_pos_order_id"),
            (PaymentContext.debt, "missing_debt_id"),
        ],
    )
    def test_requires_context_reference(self, make_payment, context, code):
        with pytest.raises(MissingContextReference) as exc_info:
            make_payment(context=context, subscription_id=None)
        assert exc_info.value.code == code

    def test_pos_payment_with_order_reference(self, make_payment):
        payment = make_payment(
            context=PaymentContext.pos, subscription_id=None, pos_order_id="ORD-42"
        )
        assert payment.pos_order_id == "ORD-42"


class TestConfirm:
    def test_confirm_records_actor_and_attempt(self, ledger, make_payment, clock):
        payment = make_payment()

        ledger.confirm(payment.id, "admin-1", notes="Checked wallet statement")

        assert payment.status == PaymentStatus.confirmed
        assert payment.confirmed_by == "admin-1"
        assert payment.confirmed_at is not None
        attempt = payment.verification_attempts[-1]
        assert attempt.outcome == VerificationOutcome.successful
        assert attempt.notes == "Checked wallet statement"
        assert attempt.sequence == 1

    def test_second_confirm_is_rejected(self, ledger, make_payment):
        payment = make_payment()
        ledger.confirm(payment.id, "admin-1")

        with pytest.raises(PaymentAlreadyConfirmed) as exc_info:
            ledger.confirm(payment.id, "admin-2")

        assert exc_info.value.status_code == 409
        assert payment.confirmed_by == "admin-1"
        assert len(payment.verification_attempts) == 1

    def test_failed_payment_cannot_be_confirmed(self, ledger, make_payment):
        payment = make_payment()
        ledger.fail(payment.id, "waafipay", "Declined")

        with pytest.raises(InvalidStateTransition):
            ledger.confirm(payment.id, "waafipay")

    def test_late_confirmation_after_timeout(self, ledger, make_payment):
        payment = make_payment()
        ledger.fail(
            payment.id,
            "system",
            "No confirmation received",
            integration_status=IntegrationStatus.timed_out,
        )

        with pytest.raises(InvalidStateTransition):
            ledger.confirm(payment.id, "waafipay")
        ledger.confirm(payment.id, "waafipay", allow_late=True)

        assert payment.status == PaymentStatus.confirmed
        assert payment.failure_reason is None
        assert [a.outcome for a in payment.verification_attempts] == [
            VerificationOutcome.failed,
            VerificationOutcome.successful,
        ]

    def test_allow_late_does_not_revive_plain_failures(self, ledger, make_payment):
        payment = make_payment()
        ledger.fail(payment.id, "waafipay", "Declined", integration_status=IntegrationStatus.failed)

        with pytest.raises(InvalidStateTransition):
            ledger.confirm(payment.id, "waafipay", allow_late=True)

    def test_unknown_payment(self, ledger):
        with pytest.raises(PaymentNotFound):
            ledger.confirm(uuid.uuid4(), "admin-1")
        with pytest.raises(PaymentNotFound):
            ledger.get("not-a-uuid")


class TestFail:
    def test_fail_sets_reason_and_integration_status(self, ledger, make_payment):
        payment = make_payment()

        ledger.fail(payment.id, "waafipay", "Insufficient balance", integration_status=IntegrationStatus.failed)

        assert payment.status == PaymentStatus.failed
        assert payment.failure_reason == "Insufficient balance"
        assert payment.integration_status == IntegrationStatus.failed
        assert payment.verification_attempts[-1].outcome == VerificationOutcome.failed

    def test_confirmed_payment_cannot_fail(self, ledger, make_payment):
        payment = make_payment()
        ledger.confirm(payment.id, "admin-1")

        with pytest.raises(InvalidStateTransition):
            ledger.fail(payment.id, "waafipay", "Declined")
        assert payment.status == PaymentStatus.confirmed


class TestRefund:
    def test_partial_refund(self, ledger, make_payment):
        payment = make_payment()
        ledger.confirm(payment.id, "admin-1")

        ledger.record_refund(payment.id, Decimal("4.00"), "Goodwill", "admin-1")

        assert payment.status == PaymentStatus.partially_refunded
        assert payment.refund_amount == Decimal("4.00")
        assert payment.refunded_by == "admin-1"

    def test_full_refund(self, ledger, make_payment):
        payment = make_payment()
        ledger.confirm(payment.id, "admin-1")

        ledger.record_refund(payment.id, Decimal("10.00"), "Duplicate charge", "admin-1")

        assert payment.status == PaymentStatus.refunded

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-1"), Decimal("10.01")])
    def test_refund_amount_bounds(self, ledger, make_payment, amount):
        payment = make_payment()
        ledger.confirm(payment.id, "admin-1")

        with pytest.raises(InvalidRefund):
            ledger.record_refund(payment.id, amount, "Bad amount", "admin-1")

    def test_only_confirmed_payments_can_be_refunded(self, ledger, make_payment):
        payment = make_payment()
        with pytest.raises(InvalidStateTransition):
            ledger.record_refund(payment.id, Decimal("1.00"), "Too early", "admin-1")


class TestQueries:
    def test_find_by_reference(self, ledger, make_payment):
        payment = make_payment()

        assert ledger.find_by_reference(payment.reference) is payment
        assert ledger.find_by_reference("garbage") is None
        assert ledger.find_by_reference(None) is None

    def test_has_pending_for_subscription(self, ledger, make_payment, pending_subscription):
        assert ledger.has_pending_for_subscription(pending_subscription.id) is False
        payment = make_payment()
        assert ledger.has_pending_for_subscription(pending_subscription.id) is True
        ledger.confirm(payment.id, "admin-1")
        assert ledger.has_pending_for_subscription(pending_subscription.id) is False

    def test_list_stale_pending_only_returns_requested_gateway_payments(
        self, ledger, make_payment, db_session, clock
    ):
        stale = make_payment()
        make_payment(
            channel=PaymentChannel.offline,
            method=PaymentMethod.cash,
            integration_status=IntegrationStatus.not_applicable,
        )
        fresh = make_payment()
        stale.created_at = clock() - timedelta(hours=1)
        fresh.created_at = clock()
        db_session.flush()

        found = ledger.list_stale_pending(clock() - timedelta(minutes=15))

        assert [payment.id for payment in found] == [stale.id]

    def test_list_filters_the_verification_queue(self, ledger, make_payment, db_session, clock):
        older = make_payment(
            channel=PaymentChannel.offline,
            method=PaymentMethod.cash,
            integration_status=IntegrationStatus.not_applicable,
        )
        newer = make_payment(
            channel=PaymentChannel.offline,
            method=PaymentMethod.bank_transfer,
            integration_status=IntegrationStatus.not_applicable,
        )
        settled = make_payment(
            channel=PaymentChannel.offline,
            method=PaymentMethod.cash,
            integration_status=IntegrationStatus.not_applicable,
        )
        make_payment()
        older.created_at = clock() - timedelta(hours=2)
        newer.created_at = clock() - timedelta(hours=1)
        ledger.confirm(settled.id, "admin-1")
        db_session.flush()

        items, total = ledger.list(
            status=PaymentStatus.pending, channel=PaymentChannel.offline, order_dir="asc"
        )

        assert total == 2
        assert [payment.id for payment in items] == [older.id, newer.id]
        page, total = ledger.list(status=PaymentStatus.pending, limit=1, offset=1, order_dir="asc")
        assert total == 3
        assert len(page) == 1

    def test_manual_verification_attempts_are_sequenced(self, ledger, make_payment):
        payment = make_payment()
        ledger.add_verification_attempt(payment.id, "admin-1", VerificationOutcome.pending, "Called bank")
        ledger.add_verification_attempt(payment.id, "admin-1", VerificationOutcome.pending, "Awaiting slip")

        assert [a.sequence for a in payment.verification_attempts] == [1, 2]
