import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.metrics import DISCOUNTS_APPLIED
from app.models.billing import (
    DiscountApplicability,
    DiscountCode,
    DiscountRedemption,
    DiscountType,
    PaymentContext,
)
from app.schemas.billing import DiscountCreate, DiscountUpdate
from app.services.billing.dates import ensure_utc, utcnow
from app.services.billing.errors import (
    DiscountExhausted,
    DiscountNotFound,
    DiscountUsageLimitReached,
    DuplicateDiscountCode,
    InvalidContext,
    InvalidContextDebt,
    InvalidDiscount,
    InvalidShop,
    MinimumPurchaseNotMet,
)
from app.services.billing.money import to_money
from app.services.common import apply_ordering, apply_pagination, coerce_uuid

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiscountDetails:
    discount_id: uuid.UUID
    code: str
    type: DiscountType
    value: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    usage_count: int
    usage_limit: int | None
    description: str | None = None


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def compute_discount_amount(discount: DiscountCode, amount) -> Decimal:
    amount = to_money(amount)
    minimum = to_money(discount.minimum_purchase)
    if amount < minimum:
        raise MinimumPurchaseNotMet(
            f"Minimum purchase amount of {minimum} is required",
            details={"minimum_purchase": str(minimum)},
        )

    value = Decimal(str(discount.value))
    if discount.type == DiscountType.fixed:
        raw = value
    else:
        raw = amount * value / Decimal("100")
    if discount.max_discount_amount is not None:
        raw = min(raw, Decimal(str(discount.max_discount_amount)))

    result = to_money(min(raw, amount))
    if result <= 0 and amount > 0:
        raise MinimumPurchaseNotMet(
            "Discount does not apply to this purchase amount",
            details={"minimum_purchase": str(minimum)},
        )
    return result


class DiscountEngine:
    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self.clock = clock

    # ── Validation & application ─────────────────────────

    def validate(
        self,
        code: str,
        amount,
        context: PaymentContext | str,
        tenant_id: uuid.UUID | str | None = None,
    ) -> DiscountDetails:
        discount = self._lookup(code)
        return self._evaluate(discount, amount, PaymentContext(context), tenant_id)

    def apply(
        self,
        code: str,
        amount,
        context: PaymentContext | str,
        tenant_id: uuid.UUID | str,
        payment_id: uuid.UUID | None = None,
    ) -> DiscountDetails:
        context = PaymentContext(context)
        discount = self._lookup(code)
        details = self._evaluate(discount, amount, context, tenant_id)
        self._claim_usage(discount.id)
        # The claim holds the discount row until commit, so this recount sees
        # every redemption a concurrent apply for the same code committed.
        if discount.per_user_limit:
            if self._tenant_redemptions(discount.id, tenant_id) >= discount.per_user_limit:
                raise DiscountUsageLimitReached()
        self.db.add(
            DiscountRedemption(
                discount_id=discount.id,
                tenant_id=coerce_uuid(tenant_id),
                payment_id=payment_id,
                context=context,
                amount=to_money(amount),
                discount_amount=details.discount_amount,
            )
        )
        self.db.flush()
        self.db.refresh(discount)
        DISCOUNTS_APPLIED.labels(context.value).inc()
        logger.info(
            "Applied discount %s (%s off)",
            discount.code,
            details.discount_amount,
            extra={"tenant_id": tenant_id, "payment_id": payment_id},
        )
        return replace(details, usage_count=discount.usage_count)

    def void_redemption(self, payment_id: uuid.UUID) -> bool:
        """Stop counting a redemption against the tenant's per-user limit.

        The global usage counter only ever grows, so it is left as is.
        """
        redemption = self.db.scalar(
            select(DiscountRedemption).where(
                DiscountRedemption.payment_id == payment_id,
                DiscountRedemption.is_active.is_(True),
            )
        )
        if not redemption:
            return False
        redemption.is_active = False
        self.db.flush()
        return True

    def _lookup(self, code: str) -> DiscountCode:
        normalized = normalize_code(code)
        discount = None
        if normalized:
            discount = self.db.scalar(
                select(DiscountCode).where(
                    DiscountCode.code == normalized,
                    DiscountCode.is_active.is_(True),
                )
            )
        if not discount:
            raise InvalidDiscount(f"Discount code '{normalized}' is invalid or inactive")
        return discount

    def _evaluate(
        self,
        discount: DiscountCode,
        amount,
        context: PaymentContext,
        tenant_id: uuid.UUID | str | None,
    ) -> DiscountDetails:
        now = self.clock()
        if not (ensure_utc(discount.start_date) <= now <= ensure_utc(discount.expiry_date)):
            raise InvalidDiscount("Discount code is expired or not yet active")
        if discount.usage_limit is not None and discount.usage_count >= discount.usage_limit:
            raise DiscountExhausted()

        applicable = set(discount.applicable_for or [])
        if context == PaymentContext.debt:
            if DiscountApplicability.debt.value not in applicable:
                logger.warning(
                    "Rejected discount %s for debt context",
                    discount.code,
                    extra={"tenant_id": tenant_id},
                )
                raise InvalidContextDebt()
        elif context.value not in applicable and DiscountApplicability.all.value not in applicable:
            raise InvalidContext(
                f"Discount code is not applicable for {context.value}",
                details={"applicable_for": sorted(applicable)},
            )

        tenant_uuid = coerce_uuid(tenant_id)
        if discount.tenant_id is not None and discount.tenant_id != tenant_uuid:
            raise InvalidShop()

        if discount.per_user_limit and tenant_uuid is not None:
            if self._tenant_redemptions(discount.id, tenant_uuid) >= discount.per_user_limit:
                raise DiscountUsageLimitReached()

        amount = to_money(amount)
        discount_amount = compute_discount_amount(discount, amount)
        return DiscountDetails(
            discount_id=discount.id,
            code=discount.code,
            type=discount.type,
            value=to_money(discount.value),
            discount_amount=discount_amount,
            final_amount=to_money(amount - discount_amount),
            usage_count=discount.usage_count,
            usage_limit=discount.usage_limit,
            description=discount.description,
        )

    def _tenant_redemptions(self, discount_id: uuid.UUID, tenant_id) -> int:
        used = self.db.scalar(
            select(func.count(DiscountRedemption.id)).where(
                DiscountRedemption.discount_id == discount_id,
                DiscountRedemption.tenant_id == coerce_uuid(tenant_id),
                DiscountRedemption.is_active.is_(True),
            )
        )
        return used or 0

    def _claim_usage(self, discount_id: uuid.UUID) -> None:
        # Increment-and-check in one statement so concurrent applies cannot
        # push usage_count past usage_limit.
        stmt = (
            update(DiscountCode)
            .where(
                DiscountCode.id == discount_id,
                or_(
                    DiscountCode.usage_limit.is_(None),
                    DiscountCode.usage_count < DiscountCode.usage_limit,
                ),
            )
            .values(usage_count=DiscountCode.usage_count + 1)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount != 1:
            raise DiscountExhausted()

    # ── Administration ───────────────────────────────────

    def create(self, payload: DiscountCreate, created_by: str | None = None) -> DiscountCode:
        data = payload.model_dump()
        data["code"] = normalize_code(data["code"])
        data["applicable_for"] = [item.value for item in payload.applicable_for]
        if self.db.scalar(select(DiscountCode.id).where(DiscountCode.code == data["code"])):
            raise DuplicateDiscountCode(details={"code": data["code"]})
        discount = DiscountCode(created_by=created_by, **data)
        self.db.add(discount)
        try:
            self.db.flush()
        except IntegrityError as exc:
            raise DuplicateDiscountCode(details={"code": data["code"]}) from exc
        logger.info("Created discount code %s", discount.code)
        return discount

    def get(self, discount_id: str | uuid.UUID) -> DiscountCode:
        try:
            key = coerce_uuid(discount_id)
        except ValueError as exc:
            raise DiscountNotFound() from exc
        discount = self.db.get(DiscountCode, key)
        if not discount:
            raise DiscountNotFound()
        return discount

    def list(
        self,
        is_active: bool | None = None,
        context: PaymentContext | None = None,
        order_by: str = "created_at",
        order_dir: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[DiscountCode], int]:
        stmt = select(DiscountCode)
        if is_active is not None:
            stmt = stmt.where(DiscountCode.is_active.is_(is_active))
        ordered = apply_ordering(
            stmt,
            order_by,
            order_dir,
            {"created_at": DiscountCode.created_at, "code": DiscountCode.code},
        )
        if context is not None:
            # JSON membership is not portable across backends, filter here.
            context = PaymentContext(context)
            wanted = {context.value, DiscountApplicability.all.value}
            if context == PaymentContext.debt:
                wanted = {DiscountApplicability.debt.value}
            items = [
                item
                for item in self.db.scalars(ordered).all()
                if wanted & set(item.applicable_for or [])
            ]
            return items[offset : offset + limit], len(items)
        total = self.db.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        return list(self.db.scalars(apply_pagination(ordered, limit, offset)).all()), total

    def update(self, discount_id: str | uuid.UUID, payload: DiscountUpdate) -> DiscountCode:
        discount = self.get(discount_id)
        data = payload.model_dump(exclude_unset=True)
        if "applicable_for" in data and data["applicable_for"] is not None:
            data["applicable_for"] = [item.value for item in payload.applicable_for]
        for key, value in data.items():
            setattr(discount, key, value)
        self.db.flush()
        return discount

    def deactivate(self, discount_id: str | uuid.UUID) -> DiscountCode:
        discount = self.get(discount_id)
        discount.is_active = False
        self.db.flush()
        logger.info("Deactivated discount code %s", discount.code)
        return discount
