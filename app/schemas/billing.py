from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator

from app.models.billing import (
    CancelReason,
    DiscountApplicability,
    DiscountType,
    HistoryAction,
    PaymentMethod,
    PaymentStatus,
    PlanType,
    SubscriptionStatus,
)

# ── Plans ────────────────────────────────────────────────


class PlanRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)
    plan_type: str
    name: str
    description: str | None = None
    base_price: Decimal
    currency: str
    billing_cycle: str
    trial_days: int
    features: dict
    limits: dict


# ── Registration ─────────────────────────────────────────


class TenantRegistration(BaseModel):
    business_name: str = Field(min_length=2, max_length=160)
    email: EmailStr
    phone: str | None = Field(default=None, max_length=40)
    address: str | None = None
    owner_name: str = Field(min_length=2, max_length=160)
    owner_email: EmailStr | None = None
    owner_phone: str | None = Field(default=None, max_length=40)
    plan_type: PlanType = PlanType.trial


# ── Discounts ────────────────────────────────────────────


class DiscountBase(BaseModel):
    code: str = Field(min_length=3, max_length=40)
    description: str | None = None
    type: DiscountType
    value: Decimal = Field(gt=0)
    minimum_purchase: Decimal = Field(default=Decimal("0"), ge=0)
    max_discount_amount: Decimal | None = Field(default=None, gt=0)
    start_date: datetime
    expiry_date: datetime
    usage_limit: int | None = Field(default=None, ge=1)
    per_user_limit: int = Field(default=0, ge=0)
    applicable_for: list[DiscountApplicability] = Field(
        default_factory=lambda: [DiscountApplicability.all], min_length=1
    )
    tenant_id: UUID | None = None


class DiscountCreate(DiscountBase):
    @model_validator(mode="after")
    def _check_ranges(self) -> "DiscountCreate":
        if self.expiry_date <= self.start_date:
            raise ValueError("expiry_date must be after start_date")
        if self.type == DiscountType.percentage and self.value > 100:
            raise ValueError("percentage discounts cannot exceed 100")
        return self


class DiscountUpdate(BaseModel):
    description: str | None = None
    value: Decimal | None = Field(default=None, gt=0)
    minimum_purchase: Decimal | None = Field(default=None, ge=0)
    max_discount_amount: Decimal | None = Field(default=None, gt=0)
    expiry_date: datetime | None = None
    usage_limit: int | None = Field(default=None, ge=1)
    per_user_limit: int | None = Field(default=None, ge=0)
    applicable_for: list[DiscountApplicability] | None = None
    is_active: bool | None = None


class DiscountRead(DiscountBase):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)
    id: UUID
    usage_count: int
    is_active: bool
    created_at: datetime


class DiscountValidateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=40)
    amount: Decimal = Field(ge=0)
    context: Literal["subscription", "pos", "debt"]
    tenant_id: UUID | None = None


class DiscountApplicationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)
    discount_id: UUID
    code: str
    type: str
    value: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    usage_count: int
    usage_limit: int | None = None


# ── Payments ─────────────────────────────────────────────


class GatewayPaymentRequest(BaseModel):
    phone: str = Field(min_length=7, max_length=20)
    plan_type: PlanType | None = None
    discount_code: str | None = Field(default=None, max_length=40)


class OfflinePaymentRequest(BaseModel):
    proof_reference: str = Field(min_length=1, max_length=255)
    method: PaymentMethod = PaymentMethod.cash
    amount: Decimal | None = Field(default=None, ge=0)
    plan_type: PlanType | None = None
    payer_name: str | None = Field(default=None, max_length=160)
    notes: str | None = None
    discount_code: str | None = Field(default=None, max_length=40)


class VerificationDecision(BaseModel):
    status: Literal["approved", "rejected"]
    notes: str | None = None


class RefundRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    reason: str = Field(min_length=1)


class VerificationAttemptRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)
    attempted_by: str | None = None
    outcome: str
    notes: str | None = None
    created_at: datetime


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)
    id: UUID
    tenant_id: UUID
    context: str
    subscription_id: UUID | None = None
    amount: Decimal
    original_amount: Decimal | None = None
    currency: str
    method: str
    channel: str
    status: PaymentStatus
    integration_status: str
    plan_type: str | None = None
    discount_code: str | None = None
    discount_amount: Decimal
    gateway_transaction_id: str | None = None
    gateway_response_code: str | None = None
    proof_reference: str | None = None
    confirmed_by: str | None = None
    confirmed_at: datetime | None = None
    failure_reason: str | None = None
    refund_amount: Decimal | None = None
    verification_attempts: list[VerificationAttemptRead] = []
    created_at: datetime


# ── Subscriptions ────────────────────────────────────────


class ChangePlanRequest(BaseModel):
    plan_type: PlanType


class CancelRequest(BaseModel):
    reason: CancelReason = CancelReason.other
    feedback: str | None = None
    immediate: bool = False


class ExtendRequest(BaseModel):
    days: int
    reason: str | None = None


class AutoRenewalUpdate(BaseModel):
    auto_renew: bool


class PlanSummary(BaseModel):
    type: PlanType
    name: str | None = None
    features: dict = {}
    limits: dict = {}


class PricingRead(BaseModel):
    base_price: Decimal
    currency: str
    billing_cycle: str
    discount_code: str | None = None
    discount_amount: Decimal


class DatesRead(BaseModel):
    start_date: datetime
    end_date: datetime
    trial_ends_at: datetime | None = None
    canceled_at: datetime | None = None
    data_retention_date: datetime | None = None


class RenewalSettingsRead(BaseModel):
    auto_renew: bool
    reminder_sent: bool
    next_payment_date: datetime | None = None


class PaymentSummaryRead(BaseModel):
    method: PaymentMethod | None = None
    verified: bool
    last_payment_date: datetime | None = None
    next_payment_date: datetime | None = None
    failed_payment_count: int


class HistoryEntryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    action: HistoryAction
    from_status: SubscriptionStatus | None = None
    to_status: SubscriptionStatus
    payment_id: UUID | None = None
    actor_id: str | None = None
    details: dict | None = None
    created_at: datetime


class SubscriptionRead(BaseModel):
    subscription_id: UUID
    tenant_id: UUID
    plan: PlanSummary
    status: SubscriptionStatus
    display_status: str
    pricing: PricingRead
    dates: DatesRead
    days_remaining: int
    percentage_used: int
    renewal_settings: RenewalSettingsRead
    payment: PaymentSummaryRead
    history: list[HistoryEntryRead]


class RegistrationRead(BaseModel):
    tenant_id: UUID
    account_id: UUID
    subscription: SubscriptionRead


class CallbackAck(BaseModel):
    success: bool = True
    message: str = "Callback processed"
