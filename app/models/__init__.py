from app.models.tenant import AccountRole, Tenant, TenantAccount  # noqa: F401
from app.models.billing import (  # noqa: F401
    BillingCycle,
    CallbackStatus,
    CancelReason,
    DiscountApplicability,
    DiscountCode,
    DiscountRedemption,
    DiscountType,
    GatewayCallback,
    HistoryAction,
    IntegrationStatus,
    Payment,
    PaymentChannel,
    PaymentContext,
    PaymentMethod,
    PaymentStatus,
    PaymentVerificationAttempt,
    PlanType,
    PricingPlan,
    Subscription,
    SubscriptionHistory,
    SubscriptionStatus,
    VerificationOutcome,
)
