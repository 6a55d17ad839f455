import json
from typing import Any
from urllib.parse import parse_qsl
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from app.api.deps import Actor, get_actor, get_db, require_privileged
from app.models.billing import (
    PaymentChannel,
    PaymentContext,
    PaymentStatus,
    PlanType,
    SubscriptionStatus,
)
from app.schemas.billing import (
    AutoRenewalUpdate,
    CallbackAck,
    CancelRequest,
    ChangePlanRequest,
    DiscountApplicationRead,
    DiscountCreate,
    DiscountRead,
    DiscountUpdate,
    DiscountValidateRequest,
    ExtendRequest,
    GatewayPaymentRequest,
    OfflinePaymentRequest,
    PaymentRead,
    PlanRead,
    RefundRequest,
    RegistrationRead,
    SubscriptionRead,
    TenantRegistration,
    VerificationDecision,
)
from app.schemas.common import ListResponse, page_envelope
from app.services.billing.discounts import DiscountEngine
from app.services.billing.errors import ForbiddenAction
from app.services.billing.plans import PlanCatalog
from app.services.billing.settlement import SettlementCoordinator
from app.services.cache import build_lookup_cache

router = APIRouter(prefix="/billing", tags=["billing"])

_lookup_cache = build_lookup_cache()


def get_coordinator(db: Session = Depends(get_db)) -> SettlementCoordinator:
    return SettlementCoordinator(db, cache=_lookup_cache)


def _ensure_tenant_access(actor: Actor, tenant_id) -> None:
    if actor.is_anonymous:
        raise ForbiddenAction("Sign in to manage billing")
    if actor.is_privileged or actor.tenant_id is None:
        return
    if actor.tenant_id != tenant_id:
        raise ForbiddenAction("You do not have access to this tenant's billing")


# ── Plans & registration ─────────────────────────────────


@router.get("/plans", response_model=list[PlanRead])
def list_plans(db: Session = Depends(get_db)):
    return PlanCatalog(db).list_active_plans()


@router.post(
    "/tenants", response_model=RegistrationRead, status_code=status.HTTP_201_CREATED
)
def register_tenant(
    payload: TenantRegistration,
    actor: Actor = Depends(get_actor),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
):
    return coordinator.register_tenant(payload, actor_id=actor.id)


# ── Subscriptions ────────────────────────────────────────


@router.get("/subscriptions", response_model=ListResponse[SubscriptionRead])
def list_subscriptions(
    status_filter: SubscriptionStatus | None = Query(default=None, alias="status"),
    plan_type: PlanType | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    actor: Actor = Depends(require_privileged),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
):
    items, total = coordinator.subscriptions.list(
        status_filter, plan_type, order_by, order_dir, limit, offset
    )
    views = [coordinator.subscriptions.read_model(item) for item in items]
    return page_envelope(views, limit, offset, total=total)


@router.get("/subscriptions/{subscription_id}", response_model=SubscriptionRead)
def get_subscription(
    subscription_id: str,
    actor: Actor = Depends(get_actor),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
):
    view = coordinator.get_subscription_view(subscription_id)
    _ensure_tenant_access(actor, view.tenant_id)
    return view


@router.get(
    "/subscriptions/{subscription_id}/payments", response_model=ListResponse[PaymentRead]
)
def list_subscription_payments(
    subscription_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    actor: Actor = Depends(get_actor),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
):
    subscription = coordinator.subscriptions.get(subscription_id)
    _ensure_tenant_access(actor, subscription.tenant_id)
    payments = coordinator.ledger.list_for_subscription(subscription.id)
    return page_envelope(payments, limit, offset)


@router.post(
    "/subscriptions/{subscription_id}/pay",
    response_model=PaymentRead,
    status_code=status.HTTP_201_CREATED,
)
def pay_with_evc(
    subscription_id: str,
    payload: GatewayPaymentRequest,
    actor: Actor = Depends(get_actor),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
):
    subscription = coordinator.subscriptions.get(subscription_id)
    _ensure_tenant_access(actor, subscription.tenant_id)
    return coordinator.pay_with_gateway(
        subscription.id,
        payload.phone,
        plan_type=payload.plan_type,
        discount_code=payload.discount_code,
        actor_id=actor.id,
    )


@router.post(
    "/subscriptions/{subscription_id}/offline-payments",
    response_model=PaymentRead,
    status_code=status.HTTP_201_CREATED,
)
def submit_offline_payment(
    subscription_id: str,
    payload: OfflinePaymentRequest,
    actor: Actor = Depends(get_actor),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
):
    subscription = coordinator.subscriptions.get(subscription_id)
    _ensure_tenant_access(actor, subscription.tenant_id)
    return coordinator.submit_offline_payment(subscription.id, payload, actor_id=actor.id)


@router.post("/subscriptions/{subscription_id}/change-plan", response_model=SubscriptionRead)
def change_plan(
    subscription_id: str,
    payload: ChangePlanRequest,
    actor: Actor = Depends(require_privileged),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
):
    return coordinator.change_plan(subscription_id, payload.plan_type, actor_id=actor.id)


@router.post("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionRead)
def cancel_subscription(
    subscription_id: str,
    payload: CancelRequest,
    actor: Actor = Depends(get_actor),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
):
    subscription = coordinator.subscriptions.get(subscription_id)
    _ensure_tenant_access(actor, subscription.tenant_id)
    return coordinator.cancel_subscription(
        subscription.id,
        reason=payload.reason,
        feedback=payload.feedback,
        immediate=payload.immediate,
        actor_id=actor.id,
    )


@router.patch(
    "/subscriptions/{subscription_id}/auto-renewal", response_model=SubscriptionRead
)
def update_auto_renewal(
    subscription_id: str,
    payload: AutoRenewalUpdate,
    actor: Actor = Depends(get_actor),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
):
    subscription = coordinator.subscriptions.get(subscription_id)
    _ensure_tenant_access(actor, subscription.tenant_id)
    return coordinator.set_auto_renew(subscription.id, payload.auto_renew, actor_id=actor.id)


@router.post("/subscriptions/{subscription_id}/extend", response_model=SubscriptionRead)
def extend_subscription(
    subscription_id: str,
    payload: ExtendRequest,
    actor: Actor = Depends(require_privileged),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
):
    return coordinator.extend_subscription(
        subscription_id, payload.days, reason=payload.reason, actor_id=actor.id
    )


# ── Payments ─────────────────────────────────────────────


@router.get("/payments", response_model=ListResponse[PaymentRead])
def list_payments(
    status_filter: PaymentStatus | None = Query(default=None, alias="status"),
    channel: PaymentChannel | None = None,
    tenant_id: UUID | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    actor: Actor = Depends(require_privileged),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
):
    items, total = coordinator.ledger.list(
        status_filter, channel, tenant_id, order_by, order_dir, limit, offset
    )
    return page_envelope(items, limit, offset, total=total)


@router.get("/payments/{payment_id}", response_model=PaymentRead)
def get_payment(
    payment_id: str,
    actor: Actor = Depends(get_actor),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
):
    payment = coordinator.ledger.get(payment_id)
    _ensure_tenant_access(actor, payment.tenant_id)
    return payment


@router.post("/payments/{payment_id}/verify", response_model=PaymentRead)
def verify_offline_payment(
    payment_id: str,
    payload: VerificationDecision,
    actor: Actor = Depends(get_actor),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
):
    return coordinator.verify_offline_payment(
        payment_id,
        payload.status,
        payload.notes,
        actor_id=actor.id,
        is_privileged=actor.is_privileged,
    )


@router.post("/payments/{payment_id}/refund", response_model=PaymentRead)
def refund_payment(
    payment_id: str,
    payload: RefundRequest,
    actor: Actor = Depends(get_actor),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
):
    return coordinator.refund_payment(
        payment_id,
        payload.amount,
        payload.reason,
        actor_id=actor.id,
        is_privileged=actor.is_privileged,
    )


async def read_callback_payload(request: Request) -> dict[str, Any]:
    """Decode a gateway callback body without ever rejecting it.

    JSON objects pass through. Form-encoded bodies become a flat dict and any
    other JSON value is wrapped under ``body`` so it can still be recorded.
    """
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        data = dict(parse_qsl(raw.decode("utf-8", errors="replace")))
    if isinstance(data, dict):
        return data
    return {"body": data}


@router.post("/callbacks/waafipay", response_model=CallbackAck)
def waafipay_callback(
    payload: dict[str, Any] = Depends(read_callback_payload),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
):
    return coordinator.handle_gateway_callback(payload)


# ── Discounts ────────────────────────────────────────────


@router.post(
    "/discounts", response_model=DiscountRead, status_code=status.HTTP_201_CREATED
)
def create_discount(
    payload: DiscountCreate,
    actor: Actor = Depends(require_privileged),
    db: Session = Depends(get_db),
):
    discount = DiscountEngine(db).create(payload, created_by=actor.id)
    db.commit()
    db.refresh(discount)
    return discount


@router.get("/discounts", response_model=ListResponse[DiscountRead])
def list_discounts(
    is_active: bool | None = None,
    context: PaymentContext | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    actor: Actor = Depends(require_privileged),
    db: Session = Depends(get_db),
):
    items, total = DiscountEngine(db).list(is_active, context, order_by, order_dir, limit, offset)
    return page_envelope(items, limit, offset, total=total)


@router.post("/discounts/validate", response_model=DiscountApplicationRead)
def validate_discount(
    payload: DiscountValidateRequest,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    tenant_id = payload.tenant_id or actor.tenant_id
    return DiscountEngine(db).validate(payload.code, payload.amount, payload.context, tenant_id)


@router.get("/discounts/{discount_id}", response_model=DiscountRead)
def get_discount(
    discount_id: str,
    actor: Actor = Depends(require_privileged),
    db: Session = Depends(get_db),
):
    return DiscountEngine(db).get(discount_id)


@router.patch("/discounts/{discount_id}", response_model=DiscountRead)
def update_discount(
    discount_id: str,
    payload: DiscountUpdate,
    actor: Actor = Depends(require_privileged),
    db: Session = Depends(get_db),
):
    discount = DiscountEngine(db).update(discount_id, payload)
    db.commit()
    db.refresh(discount)
    return discount


@router.delete("/discounts/{discount_id}", response_model=DiscountRead)
def deactivate_discount(
    discount_id: str,
    actor: Actor = Depends(require_privileged),
    db: Session = Depends(get_db),
):
    discount = DiscountEngine(db).deactivate(discount_id)
    db.commit()
    db.refresh(discount)
    return discount
