from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from app.services.billing.notifications import BillingNotifier

ENDS = datetime(2024, 1, 31, tzinfo=UTC)


@pytest.fixture()
def notifier(sender):
    return BillingNotifier(sender=sender)


def test_trial_ending(notifier, sender):
    assert notifier.trial_ending("owner@example.com", "Hodan Store", ENDS, 2) is True

    to_email, subject, html, text = sender.call_args.args
    assert to_email == "owner@example.com"
    assert subject == "Your free trial is ending soon"
    assert "ends in 2 day(s), on 31 Jan 2024" in text
    assert html.startswith("<p>Hi Hodan Store,</p>")


def test_renewal_due_includes_amount(notifier, sender):
    notifier.renewal_due("owner@example.com", "Hodan Store", "Monthly", Decimal("10.00"), "USD", ENDS)

    text = sender.call_args.args[3]
    assert "Please pay 10.00 USD with EVC Plus" in text


def test_subscription_expired_without_retention_date(notifier, sender):
    notifier.subscription_expired("owner@example.com", "Hodan Store", None)

    assert "Your data is kept until -." in sender.call_args.args[3]


def test_payment_rejected_reason_is_optional(notifier, sender):
    notifier.payment_rejected("owner@example.com", "Hodan Store", Decimal("10.00"), "USD", "Blurry slip")
    assert "Reason: Blurry slip" in sender.call_args.args[3]

    notifier.payment_rejected("owner@example.com", "Hodan Store", Decimal("10.00"), "USD", None)
    assert "Reason:" not in sender.call_args.args[3]


def test_shop_name_is_escaped_in_html(notifier, sender):
    notifier.payment_confirmed("owner@example.com", "<b>Shop</b>", Decimal("10.00"), "USD", ENDS)

    html = sender.call_args.args[2]
    assert "&lt;b&gt;Shop&lt;/b&gt;" in html


def test_missing_recipient_is_not_sent(notifier, sender):
    assert notifier.expiry_reminder(None, "Hodan Store", "Monthly", ENDS, 3) is False
    sender.assert_not_called()


def test_delivery_failure_is_reported():
    failing = MagicMock(return_value=False)

    assert BillingNotifier(sender=failing).payment_confirmed(
        "owner@example.com", "Hodan Store", Decimal("10.00"), "USD", ENDS
    ) is False
