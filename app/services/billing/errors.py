"""Billing error taxonomy.

Each error is an ``HTTPException`` whose detail carries a stable ``code`` so
``app.errors`` renders it into the standard envelope without translation.
Services raise these directly, the same way the rest of the codebase raises
``HTTPException`` from the service layer.
"""
from __future__ import annotations

from typing import Any

from fastapi import HTTPException


class BillingError(HTTPException):
    status_code_default = 400
    code = "billing_error"
    message = "Billing operation failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
        details: Any = None,
    ) -> None:
        self.code = code or self.code
        self.message = message or self.message
        self.details = details
        super().__init__(
            status_code=status_code or self.status_code_default,
            detail={"code": self.code, "message": self.message, "details": details},
        )

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


# ── Validation (400) ─────────────────────────────────────


class InvalidPlan(BillingError):
    code = "invalid_plan_type"
    message = "Invalid plan type"


class InvalidPlanChange(BillingError):
    code = "invalid_plan_change"
    message = "Plan change is not allowed"


class InvalidExtension(BillingError):
    code = "invalid_extension"
    message = "Extension days must be greater than zero"


class MissingContextReference(BillingError):
    code = "missing_context_reference"
    message = "Payment is missing its context reference"


class InvalidRefund(BillingError):
    code = "invalid_refund_amount"
    message = "Refund amount must be positive and not exceed the payment amount"


class MissingPaymentProof(BillingError):
    code = "missing_proof_file"
    message = "Offline payments require a proof of payment"


class InvalidPaymentMethod(BillingError):
    code = "invalid_payment_method"
    message = "Payment method is not accepted for this channel"


class InvalidDiscount(BillingError):
    code = "invalid_discount"
    message = "Discount code is invalid, expired, or inactive"


class InvalidContext(BillingError):
    code = "invalid_context"
    message = "Discount code is not applicable for this context"


class InvalidContextDebt(InvalidContext):
    code = "invalid_context_debt"
    message = "Discount codes cannot be applied to debts unless explicitly allowed"


class InvalidShop(BillingError):
    code = "invalid_shop"
    message = "Discount code is not valid for this shop"


class MinimumPurchaseNotMet(BillingError):
    code = "minimum_purchase_not_met"
    message = "Purchase amount does not meet the discount minimum"


class InvalidPhoneNumber(BillingError):
    code = "invalid_phone"
    message = "Phone number is not a valid mobile-money number"


# ── Not found (404) ──────────────────────────────────────


class NotFoundError(BillingError):
    status_code_default = 404


class PlanNotFound(NotFoundError):
    code = "plan_not_found"
    message = "Pricing plan not found"


class SubscriptionNotFound(NotFoundError):
    code = "subscription_not_found"
    message = "Subscription not found"


class PaymentNotFound(NotFoundError):
    code = "payment_not_found"
    message = "Payment not found"


class TenantNotFound(NotFoundError):
    code = "tenant_not_found"
    message = "Tenant not found"


class DiscountNotFound(NotFoundError):
    code = "discount_not_found"
    message = "Discount code not found"


# ── Conflict / state (409) ───────────────────────────────


class ConflictError(BillingError):
    status_code_default = 409


class PaymentAlreadyConfirmed(ConflictError):
    code = "payment_already_confirmed"
    message = "Payment has already been confirmed"


class InvalidStateTransition(ConflictError):
    code = "invalid_state_transition"
    message = "Operation is not allowed in the current state"


class DiscountExhausted(ConflictError):
    code = "discount_exhausted"
    message = "Discount code usage limit has been reached"


class DiscountUsageLimitReached(DiscountExhausted):
    code = "discount_user_limit_reached"
    message = "You have already used this discount code the maximum number of times"


class DuplicateDiscountCode(ConflictError):
    code = "duplicate_code"
    message = "A discount with this code already exists"


class TenantAlreadyExists(ConflictError):
    code = "tenant_already_exists"
    message = "A tenant with this email already exists"


class OpenSubscriptionExists(ConflictError):
    code = "subscription_already_open"
    message = "Tenant already has an open subscription"


# ── Authorization (403) ──────────────────────────────────


class ForbiddenAction(BillingError):
    status_code_default = 403
    code = "forbidden"
    message = "You are not allowed to perform this action"


# ── Transient / external ─────────────────────────────────


class GatewayError(BillingError):
    status_code_default = 502
    code = "evc_payment_error"
    message = "Payment gateway request failed"
    retryable = True

    def __init__(
        self,
        message: str | None = None,
        *,
        retryable: bool | None = None,
        timed_out: bool = False,
        response_code: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        if retryable is not None:
            self.retryable = retryable
        self.timed_out = timed_out
        self.response_code = response_code


class GatewayNotConfigured(GatewayError):
    status_code_default = 503
    code = "gateway_not_configured"
    message = "Payment gateway is not configured"
    retryable = False


class PaymentFailed(BillingError):
    code = "payment_failed"
    message = "Payment failed, please retry"
