import logging
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.billing import BillingCycle, PlanType, PricingPlan
from app.services.billing.dates import validate_plan_type
from app.services.billing.errors import InvalidPlan, PlanNotFound

logger = logging.getLogger(__name__)

DEFAULT_FEATURES = {
    "debt_tracking": True,
    "customer_payments": True,
    "sms_reminders": True,
    "smart_risk_score": True,
    "product_sales_system": True,
    "business_dashboard": True,
    "export_reports": True,
    "customer_profiles": True,
    "pos_and_receipt": True,
    "offline_support": True,
}

DEFAULT_LIMITS = {
    "max_products": 1000,
    "max_employees": 10,
    "max_storage_mb": 500,
    "max_customers": 1000,
    "max_daily_transactions": 500,
}

DEFAULT_PLANS = [
    {
        "plan_type": PlanType.trial,
        "name": "Free Trial",
        "description": "Try every feature free for 14 days",
        "base_price": Decimal("0.00"),
        "billing_cycle": BillingCycle.one_time,
        "trial_days": 14,
        "display_order": 1,
    },
    {
        "plan_type": PlanType.monthly,
        "name": "Monthly",
        "description": "Standard monthly subscription",
        "base_price": Decimal("10.00"),
        "billing_cycle": BillingCycle.monthly,
        "trial_days": 0,
        "display_order": 2,
    },
    {
        "plan_type": PlanType.yearly,
        "name": "Yearly",
        "description": "Save 20% with yearly billing",
        "base_price": Decimal("96.00"),
        "billing_cycle": BillingCycle.yearly,
        "trial_days": 0,
        "display_order": 3,
    },
]


class PlanCatalog:
    """Read-only lookup of pricing plans."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def get_plan(self, plan_type: str | PlanType) -> PricingPlan:
        try:
            plan_type = validate_plan_type(plan_type)
        except InvalidPlan as exc:
            raise PlanNotFound(f"No plan of type '{plan_type}'") from exc
        plan = self.db.scalar(
            select(PricingPlan).where(
                PricingPlan.plan_type == plan_type,
                PricingPlan.is_active.is_(True),
            )
        )
        if not plan:
            raise PlanNotFound(f"No active plan of type '{plan_type.value}'")
        return plan

    def list_active_plans(self) -> list[PricingPlan]:
        stmt = (
            select(PricingPlan)
            .where(PricingPlan.is_active.is_(True))
            .order_by(PricingPlan.display_order, PricingPlan.plan_type)
        )
        return list(self.db.scalars(stmt).all())

    def seed_default_plans(self, currency: str = "USD") -> list[PricingPlan]:
        """Insert any missing default plans. Existing plans are left untouched."""
        existing = {
            plan.plan_type for plan in self.db.scalars(select(PricingPlan)).all()
        }
        created: list[PricingPlan] = []
        for defaults in DEFAULT_PLANS:
            if defaults["plan_type"] in existing:
                continue
            plan = PricingPlan(
                currency=currency,
                features=dict(DEFAULT_FEATURES),
                limits=dict(DEFAULT_LIMITS),
                **defaults,
            )
            self.db.add(plan)
            created.append(plan)
        if created:
            self.db.flush()
            logger.info(
                "Seeded pricing plans: %s",
                ", ".join(plan.plan_type.value for plan in created),
            )
        return created
