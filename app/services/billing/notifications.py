"""Billing emails sent to tenant owners.

Delivery failures are logged by the sender and reported as ``False``; they
never abort the billing operation that triggered them.
"""
import logging
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from html import escape

from app.services.email import send_email

logger = logging.getLogger(__name__)

Sender = Callable[[str, str, str, str | None], bool]


def _date(value: datetime | None) -> str:
    return value.strftime("%d %b %Y") if value else "-"


class BillingNotifier:
    def __init__(self, sender: Sender = send_email) -> None:
        self._send = sender

    def _deliver(self, to_email: str | None, subject: str, lines: list[str]) -> bool:
        if not to_email:
            logger.warning("No recipient for billing notice: %s", subject)
            return False
        body_html = "".join(f"<p>{escape(line)}</p>" for line in lines)
        body_text = "\n\n".join(lines)
        return self._send(to_email, subject, body_html, body_text)

    def trial_ending(self, to_email: str | None, shop_name: str, ends_at: datetime, days_left: int) -> bool:
        return self._deliver(
            to_email,
            "Your free trial is ending soon",
            [
                f"Hi {shop_name},",
                f"Your free trial ends in {days_left} day(s), on {_date(ends_at)}.",
                "Choose a monthly or yearly plan to keep using every feature.",
            ],
        )

    def expiry_reminder(
        self, to_email: str | None, shop_name: str, plan_name: str, ends_at: datetime, days_left: int
    ) -> bool:
        return self._deliver(
            to_email,
            "Your subscription is about to expire",
            [
                f"Hi {shop_name},",
                f"Your {plan_name} subscription expires in {days_left} day(s), on {_date(ends_at)}.",
                "Renew now to avoid interruption.",
            ],
        )

    def renewal_due(
        self, to_email: str | None, shop_name: str, plan_name: str, amount: Decimal, currency: str, ends_at: datetime
    ) -> bool:
        return self._deliver(
            to_email,
            "Subscription renewal due",
            [
                f"Hi {shop_name},",
                f"Your {plan_name} subscription renews on {_date(ends_at)}.",
                f"Please pay {amount} {currency} with EVC Plus or submit an offline payment proof.",
            ],
        )

    def subscription_expired(self, to_email: str | None, shop_name: str, retention_until: datetime | None) -> bool:
        return self._deliver(
            to_email,
            "Your subscription has expired",
            [
                f"Hi {shop_name},",
                "Your subscription has expired and access has been limited.",
                f"Your data is kept until {_date(retention_until)}. Renew to restore access.",
            ],
        )

    def payment_confirmed(
        self, to_email: str | None, shop_name: str, amount: Decimal, currency: str, ends_at: datetime
    ) -> bool:
        return self._deliver(
            to_email,
            "Payment received",
            [
                f"Hi {shop_name},",
                f"We received your payment of {amount} {currency}.",
                f"Your subscription is active until {_date(ends_at)}.",
            ],
        )

    def payment_rejected(self, to_email: str | None, shop_name: str, amount: Decimal, currency: str, notes: str | None) -> bool:
        lines = [
            f"Hi {shop_name},",
            f"Your offline payment of {amount} {currency} could not be verified.",
        ]
        if notes:
            lines.append(f"Reason: {notes}")
        lines.append("Please submit a new proof of payment or pay with EVC Plus.")
        return self._deliver(to_email, "Payment could not be verified", lines)
