import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base, TimestampMixin

# ── Enums ────────────────────────────────────────────────


class PlanType(str, enum.Enum):
    trial = "trial"
    monthly = "monthly"
    yearly = "yearly"


class BillingCycle(str, enum.Enum):
    one_time = "one_time"
    monthly = "monthly"
    yearly = "yearly"


class SubscriptionStatus(str, enum.Enum):
    trial = "trial"
    pending = "pending"
    active = "active"
    expired = "expired"
    canceled = "canceled"


OPEN_SUBSCRIPTION_STATUSES = (
    SubscriptionStatus.trial,
    SubscriptionStatus.pending,
    SubscriptionStatus.active,
)


class PaymentMethod(str, enum.Enum):
    evc_plus = "evc_plus"
    cash = "cash"
    bank_transfer = "bank_transfer"
    mobile_money = "mobile_money"
    free = "free"
    other = "other"


class PaymentChannel(str, enum.Enum):
    gateway = "gateway"
    offline = "offline"
    internal = "internal"


class PaymentContext(str, enum.Enum):
    subscription = "subscription"
    pos = "pos"
    debt = "debt"


class PaymentStatus(str, enum.Enum):
    pending = "pending"
    confirmed = "confirmed"
    failed = "failed"
    refunded = "refunded"
    partially_refunded = "partially_refunded"


class IntegrationStatus(str, enum.Enum):
    not_applicable = "not_applicable"
    requested = "requested"
    processing = "processing"
    success = "success"
    failed = "failed"
    timed_out = "timed_out"


class VerificationOutcome(str, enum.Enum):
    successful = "successful"
    failed = "failed"
    pending = "pending"


class DiscountType(str, enum.Enum):
    fixed = "fixed"
    percentage = "percentage"


class DiscountApplicability(str, enum.Enum):
    subscription = "subscription"
    pos = "pos"
    debt = "debt"
    all = "all"


class CancelReason(str, enum.Enum):
    cost = "cost"
    features = "features"
    competitor = "competitor"
    usability = "usability"
    support = "support"
    other = "other"


class HistoryAction(str, enum.Enum):
    created = "created"
    activated = "activated"
    renewed = "renewed"
    updated = "updated"
    payment_failed = "payment_failed"
    payment_succeeded = "payment_succeeded"
    canceled = "canceled"
    expired = "expired"
    plan_changed = "plan_changed"
    trial_started = "trial_started"
    trial_ended = "trial_ended"
    trial_converted = "trial_converted"


class CallbackStatus(str, enum.Enum):
    pending = "pending"
    processed = "processed"
    ignored = "ignored"
    failed = "failed"


# ── Plan Catalog ─────────────────────────────────────────


class PricingPlan(TimestampMixin, Base):
    __tablename__ = "pricing_plans"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    plan_type: Mapped[PlanType] = mapped_column(Enum(PlanType), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(80), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    base_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    billing_cycle: Mapped[BillingCycle] = mapped_column(Enum(BillingCycle), nullable=False)
    trial_days: Mapped[int] = mapped_column(Integer, default=0)
    features: Mapped[dict] = mapped_column(JSON, default=dict)
    limits: Mapped[dict] = mapped_column(JSON, default=dict)
    display_order: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


# ── Subscriptions ────────────────────────────────────────


class Subscription(TimestampMixin, Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index(
            "uq_subscriptions_open_per_tenant",
            "tenant_id",
            unique=True,
            postgresql_where=text("status IN ('trial', 'pending', 'active')"),
            sqlite_where=text("status IN ('trial', 'pending', 'active')"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True
    )
    plan_type: Mapped[PlanType] = mapped_column(Enum(PlanType), nullable=False)
    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus), nullable=False, index=True
    )

    # Pricing snapshot, copied from the catalog when the plan is set.
    base_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    billing_cycle: Mapped[BillingCycle] = mapped_column(Enum(BillingCycle), nullable=False)
    discount_code: Mapped[str | None] = mapped_column(String(40))
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))

    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    trial_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    data_retention_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    payment_method: Mapped[PaymentMethod | None] = mapped_column(Enum(PaymentMethod))
    payment_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    last_payment_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    next_payment_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    failed_payment_count: Mapped[int] = mapped_column(Integer, default=0)
    payer_phone: Mapped[str | None] = mapped_column(String(40))

    auto_renew: Mapped[bool] = mapped_column(Boolean, default=True)
    reminder_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    renewal_attempted_for: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    cancel_reason: Mapped[CancelReason | None] = mapped_column(Enum(CancelReason))
    cancel_feedback: Mapped[str | None] = mapped_column(Text)
    canceled_by: Mapped[str | None] = mapped_column(String(80))

    previous_plans: Mapped[list] = mapped_column(JSON, default=list)

    history: Mapped[list["SubscriptionHistory"]] = relationship(
        back_populates="subscription",
        order_by="SubscriptionHistory.sequence",
        cascade="all, delete-orphan",
    )
    payments: Mapped[list["Payment"]] = relationship(
        back_populates="subscription",
        order_by="Payment.created_at",
    )


class SubscriptionHistory(Base):
    __tablename__ = "subscription_history"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscriptions.id"), nullable=False, index=True
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[HistoryAction] = mapped_column(Enum(HistoryAction), nullable=False)
    from_status: Mapped[SubscriptionStatus | None] = mapped_column(Enum(SubscriptionStatus))
    to_status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus), nullable=False
    )
    payment_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    actor_id: Mapped[str | None] = mapped_column(String(80))
    details: Mapped[dict | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )

    subscription: Mapped[Subscription] = relationship(back_populates="history")


# ── Payment Ledger ───────────────────────────────────────


class Payment(TimestampMixin, Base):
    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True
    )
    context: Mapped[PaymentContext] = mapped_column(Enum(PaymentContext), nullable=False)
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscriptions.id"), index=True
    )
    pos_order_id: Mapped[str | None] = mapped_column(String(80))
    debt_id: Mapped[str | None] = mapped_column(String(80))

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    original_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    method: Mapped[PaymentMethod] = mapped_column(Enum(PaymentMethod), nullable=False)
    channel: Mapped[PaymentChannel] = mapped_column(Enum(PaymentChannel), nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus), default=PaymentStatus.pending, index=True
    )
    integration_status: Mapped[IntegrationStatus] = mapped_column(
        Enum(IntegrationStatus), default=IntegrationStatus.not_applicable
    )
    plan_type: Mapped[PlanType | None] = mapped_column(Enum(PlanType))
    payer_phone: Mapped[str | None] = mapped_column(String(40))
    payer_name: Mapped[str | None] = mapped_column(String(160))

    gateway_transaction_id: Mapped[str | None] = mapped_column(String(120), index=True)
    gateway_response_code: Mapped[str | None] = mapped_column(String(20))
    gateway_response_message: Mapped[str | None] = mapped_column(Text)

    # Discount recorded by value so later edits to the code do not change history.
    discount_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    discount_code: Mapped[str | None] = mapped_column(String(40))
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))

    proof_reference: Mapped[str | None] = mapped_column(String(255))
    notes: Mapped[str | None] = mapped_column(Text)

    confirmed_by: Mapped[str | None] = mapped_column(String(80))
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    failure_reason: Mapped[str | None] = mapped_column(Text)

    refund_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    refund_reason: Mapped[str | None] = mapped_column(Text)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    refunded_by: Mapped[str | None] = mapped_column(String(80))

    subscription: Mapped[Subscription | None] = relationship(back_populates="payments")
    verification_attempts: Mapped[list["PaymentVerificationAttempt"]] = relationship(
        back_populates="payment",
        order_by="PaymentVerificationAttempt.sequence",
        cascade="all, delete-orphan",
    )

    @property
    def reference(self) -> str:
        return str(self.id)


class PaymentVerificationAttempt(Base):
    __tablename__ = "payment_verification_attempts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    payment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("payments.id"), nullable=False, index=True
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    attempted_by: Mapped[str | None] = mapped_column(String(80))
    outcome: Mapped[VerificationOutcome] = mapped_column(
        Enum(VerificationOutcome), nullable=False
    )
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )

    payment: Mapped[Payment] = relationship(back_populates="verification_attempts")


# ── Discounts ────────────────────────────────────────────


class DiscountCode(TimestampMixin, Base):
    __tablename__ = "discount_codes"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    code: Mapped[str] = mapped_column(String(40), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    type: Mapped[DiscountType] = mapped_column(Enum(DiscountType), nullable=False)
    value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    minimum_purchase: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    max_discount_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expiry_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    usage_limit: Mapped[int | None] = mapped_column(Integer)
    per_user_limit: Mapped[int] = mapped_column(Integer, default=0)
    usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    applicable_for: Mapped[list] = mapped_column(JSON, default=lambda: ["all"])
    tenant_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id"), index=True
    )
    created_by: Mapped[str | None] = mapped_column(String(80))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class DiscountRedemption(TimestampMixin, Base):
    __tablename__ = "discount_redemptions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    discount_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("discount_codes.id"), nullable=False, index=True
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True
    )
    payment_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), index=True)
    context: Mapped[PaymentContext] = mapped_column(Enum(PaymentContext), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


# ── Gateway callbacks ────────────────────────────────────


class GatewayCallback(TimestampMixin, Base):
    __tablename__ = "gateway_callbacks"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    reference: Mapped[str | None] = mapped_column(String(80), index=True)
    transaction_id: Mapped[str | None] = mapped_column(String(120))
    result_code: Mapped[str | None] = mapped_column(String(20))
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    status: Mapped[CallbackStatus] = mapped_column(
        Enum(CallbackStatus), default=CallbackStatus.pending
    )
    error: Mapped[str | None] = mapped_column(Text)
