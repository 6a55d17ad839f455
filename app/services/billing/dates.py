"""Subscription date and proration arithmetic.

Everything here is pure: callers pass ``now`` explicitly so results are
deterministic and the functions can be exercised without a database.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from app.models.billing import PlanType
from app.services.billing.errors import InvalidPlan

logger = logging.getLogger(__name__)

PLAN_DURATION_DAYS: dict[PlanType, int] = {
    PlanType.trial: 14,
    PlanType.monthly: 30,
    PlanType.yearly: 365,
}

# Ordering used to tell upgrades from downgrades.
PLAN_RANK: dict[PlanType, int] = {
    PlanType.trial: 0,
    PlanType.monthly: 1,
    PlanType.yearly: 2,
}

UPGRADE_BONUS_DAYS: dict[tuple[PlanType, PlanType], int] = {
    (PlanType.monthly, PlanType.yearly): 30,
}


@dataclass(frozen=True)
class Proration:
    end_date: datetime
    bonus_days: int
    remaining_days: int
    is_upgrade: bool


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round-trip)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def validate_plan_type(value: str | PlanType) -> PlanType:
    try:
        return PlanType(value)
    except ValueError as exc:
        raise InvalidPlan(
            f"Unknown plan type '{value}'",
            details={"allowed": [p.value for p in PlanType]},
        ) from exc


def plan_duration_days(plan_type: str | PlanType) -> int:
    try:
        return PLAN_DURATION_DAYS[PlanType(plan_type)]
    except ValueError:
        logger.warning(
            "Unknown plan type %r, falling back to trial length", plan_type
        )
        return PLAN_DURATION_DAYS[PlanType.trial]


def calculate_end_date(plan_type: str | PlanType, start_date: datetime) -> datetime:
    return ensure_utc(start_date) + timedelta(days=plan_duration_days(plan_type))


def days_remaining(end_date: datetime | None, now: datetime) -> int:
    if end_date is None:
        return 0
    delta = ensure_utc(end_date) - ensure_utc(now)
    if delta.total_seconds() <= 0:
        return 0
    return math.ceil(delta.total_seconds() / 86400)


def percentage_used(
    start_date: datetime | None, end_date: datetime | None, now: datetime
) -> int:
    if start_date is None or end_date is None:
        return 0
    start = ensure_utc(start_date)
    total = (ensure_utc(end_date) - start).total_seconds()
    if total <= 0:
        return 100
    used = (ensure_utc(now) - start).total_seconds()
    return max(0, min(100, round(used / total * 100)))


def prorate_on_plan_change(
    current_plan_type: PlanType,
    current_end_date: datetime | None,
    new_plan_type: PlanType,
    now: datetime,
) -> Proration:
    """Compute the new end date when a subscription switches plans.

    Upgrades carry the unused days of the current cycle onto the new cycle
    (plus a fixed bonus for monthly to yearly). Downgrades, lateral moves
    and cycles with nothing left start fresh from ``now``.
    """
    now = ensure_utc(now)
    remaining = days_remaining(current_end_date, now)
    cycle = timedelta(days=plan_duration_days(new_plan_type))
    is_upgrade = PLAN_RANK.get(new_plan_type, 0) > PLAN_RANK.get(current_plan_type, 0)

    if not is_upgrade or remaining <= 0:
        return Proration(
            end_date=now + cycle,
            bonus_days=0,
            remaining_days=remaining,
            is_upgrade=is_upgrade,
        )

    bonus = UPGRADE_BONUS_DAYS.get((current_plan_type, new_plan_type), 0)
    return Proration(
        end_date=now + cycle + timedelta(days=remaining + bonus),
        bonus_days=bonus,
        remaining_days=remaining,
        is_upgrade=True,
    )
