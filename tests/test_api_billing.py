"""Tests for billing API endpoints."""

import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from app.api.deps import Actor
from app.models.billing import GatewayCallback
from app.services.billing.errors import GatewayError
from app.services.payment_gateway import GatewayResult


def _register(client, **overrides):
    payload = {
        "business_name": "Hodan Store",
        "email": f"shop-{uuid.uuid4().hex[:8]}@example.com",
        "owner_name": "Hodan Ali",
    }
    payload.update(overrides)
    return client.post("/billing/tenants", json=payload)


def _offline(client, subscription_id):
    return client.post(
        f"/billing/subscriptions/{subscription_id}/offline-payments",
        json={"proof_reference": "slips/0001.jpg", "method": "bank_transfer"},
    )


def test_api_list_plans(client):
    resp = client.get("/billing/plans")
    assert resp.status_code == 200
    data = resp.json()
    assert [plan["plan_type"] for plan in data] == ["trial", "monthly", "yearly"]
    assert Decimal(data[1]["base_price"]) == Decimal("10.00")


def test_api_register_tenant(client):
    resp = _register(client)
    assert resp.status_code == 201
    data = resp.json()
    assert data["subscription"]["status"] == "trial"
    assert data["subscription"]["display_status"] == "Trial"
    assert data["subscription"]["days_remaining"] == 14


def test_api_register_duplicate_email(client):
    _register(client, email="dup@example.com")
    resp = _register(client, email="dup@example.com", owner_email="other@example.com")
    assert resp.status_code == 409
    assert resp.json()["code"] == "tenant_already_exists"


def test_api_register_validation_error(client):
    resp = _register(client, email="not-an-email")
    assert resp.status_code == 422
    assert resp.json()["code"] == "validation_error"


def test_api_get_subscription_under_v1_prefix(client, trial_subscription):
    resp = client.get(f"/api/v1/billing/subscriptions/{trial_subscription.id}")
    assert resp.status_code == 200
    data = resp.json()
    assert data["subscription_id"] == str(trial_subscription.id)
    assert data["plan"]["type"] == "trial"


def test_api_get_subscription_not_found(client):
    resp = client.get(f"/billing/subscriptions/{uuid.uuid4()}")
    assert resp.status_code == 404
    assert resp.json()["code"] == "subscription_not_found"


def test_api_other_tenant_is_forbidden(client, actor_holder, trial_subscription):
    actor_holder["actor"] = Actor(id="owner-2", role="owner", tenant_id=uuid.uuid4())
    resp = client.get(f"/billing/subscriptions/{trial_subscription.id}")
    assert resp.status_code == 403
    assert resp.json()["code"] == "forbidden"


def test_api_pay_with_evc(client, gateway, pending_subscription):
    gateway.initiate_with_retry.return_value = GatewayResult(True, "TXN-1", "0")

    resp = client.post(
        f"/billing/subscriptions/{pending_subscription.id}/pay",
        json={"phone": "0615123456"},
    )

    assert resp.status_code == 201
    data = resp.json()
    assert data["status"] == "confirmed"
    assert data["integration_status"] == "success"
    assert data["gateway_transaction_id"] == "TXN-1"

    payments = client.get(f"/billing/subscriptions/{pending_subscription.id}/payments").json()
    assert payments["total"] == 1
    assert payments["items"][0]["id"] == data["id"]


def test_api_pay_declined(client, gateway, pending_subscription):
    gateway.initiate_with_retry.return_value = GatewayResult(False, None, "5206", "Rejected by payer")

    resp = client.post(
        f"/billing/subscriptions/{pending_subscription.id}/pay",
        json={"phone": "0615123456"},
    )

    assert resp.status_code == 400
    body = resp.json()
    assert body["code"] == "payment_failed"
    assert body["message"] == "Rejected by payer"
    assert body["details"]["response_code"] == "5206"


def test_api_pay_gateway_unreachable(client, gateway, pending_subscription):
    gateway.initiate_with_retry.side_effect = GatewayError("timed out", timed_out=True)

    resp = client.post(
        f"/billing/subscriptions/{pending_subscription.id}/pay",
        json={"phone": "0615123456"},
    )

    assert resp.status_code == 502
    assert resp.json()["code"] == "payment_failed"


def test_api_offline_payment_flow(client, actor_holder, pending_subscription, sender):
    resp = _offline(client, pending_subscription.id)
    assert resp.status_code == 201
    payment = resp.json()
    assert payment["status"] == "pending"
    assert payment["channel"] == "offline"

    denied = client.post(f"/billing/payments/{payment['id']}/verify", json={"status": "approved"})
    assert denied.status_code == 403

    actor_holder["actor"] = Actor(id="admin-1", role="admin")
    resp = client.post(
        f"/billing/payments/{payment['id']}/verify",
        json={"status": "approved", "notes": "Matches bank slip"},
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "confirmed"
    assert resp.json()["confirmed_by"] == "admin-1"

    view = client.get(f"/billing/subscriptions/{pending_subscription.id}").json()
    assert view["status"] == "active"
    assert view["payment"]["verified"] is True


def test_api_verify_rejects_unknown_decision(client, as_admin, pending_subscription):
    payment = _offline(client, pending_subscription.id).json()
    resp = client.post(f"/billing/payments/{payment['id']}/verify", json={"status": "maybe"})
    assert resp.status_code == 422


def test_api_refund(client, actor_holder, pending_subscription):
    payment = _offline(client, pending_subscription.id).json()
    actor_holder["actor"] = Actor(id="admin-1", role="admin")
    client.post(f"/billing/payments/{payment['id']}/verify", json={"status": "approved"})

    resp = client.post(
        f"/billing/payments/{payment['id']}/refund",
        json={"amount": "4.00", "reason": "Goodwill"},
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "partially_refunded"

    too_much = client.post(
        f"/billing/payments/{payment['id']}/refund",
        json={"amount": "50.00", "reason": "Oops"},
    )
    assert too_much.status_code == 400
    assert too_much.json()["code"] == "invalid_refund_amount"


def test_api_change_plan_is_privileged(client, actor_holder, pending_subscription):
    url = f"/billing/subscriptions/{pending_subscription.id}/change-plan"
    payment = _offline(client, pending_subscription.id).json()

    assert client.post(url, json={"plan_type": "yearly"}).status_code == 403

    actor_holder["actor"] = Actor(id="admin-1", role="superadmin")
    client.post(f"/billing/payments/{payment['id']}/verify", json={"status": "approved"})
    resp = client.post(url, json={"plan_type": "yearly"})
    assert resp.status_code == 200
    assert resp.json()["plan"]["type"] == "yearly"


def test_api_extend(client, as_admin, trial_subscription):
    url = f"/billing/subscriptions/{trial_subscription.id}/extend"

    resp = client.post(url, json={"days": 7, "reason": "Support goodwill"})
    assert resp.status_code == 200
    assert resp.json()["days_remaining"] == 21

    bad = client.post(url, json={"days": 0})
    assert bad.status_code == 400
    assert bad.json()["code"] == "invalid_extension"


def test_api_cancel(client, trial_subscription):
    resp = client.post(
        f"/billing/subscriptions/{trial_subscription.id}/cancel",
        json={"reason": "cost", "feedback": "Prices went up"},
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "canceled"
    assert data["display_status"] == "Canceled (access until 15 Jan 2024)"
    assert data["renewal_settings"]["auto_renew"] is False


def test_api_waafipay_callback_always_acknowledged(client):
    resp = client.post("/billing/callbacks/waafipay", json={"invoiceId": "unknown"})
    assert resp.status_code == 200
    assert resp.json()["success"] is True

    empty = client.post("/billing/callbacks/waafipay")
    assert empty.status_code == 200


def test_api_discount_admin(client, actor_holder):
    now = datetime.now(UTC)
    payload = {
        "code": "ramadan15",
        "type": "percentage",
        "value": "15",
        "start_date": (now - timedelta(days=1)).isoformat(),
        "expiry_date": (now + timedelta(days=30)).isoformat(),
        "applicable_for": ["subscription"],
    }

    assert client.post("/billing/discounts", json=payload).status_code == 403

    actor_holder["actor"] = Actor(id="admin-1", role="admin")
    created = client.post("/billing/discounts", json=payload)
    assert created.status_code == 201
    discount = created.json()
    assert discount["code"] == "RAMADAN15"

    listed = client.get("/billing/discounts", params={"context": "subscription"}).json()
    assert [item["code"] for item in listed["items"]] == ["RAMADAN15"]

    updated = client.patch(f"/billing/discounts/{discount['id']}", json={"value": "20"})
    assert Decimal(updated.json()["value"]) == Decimal("20")

    actor_holder["actor"] = Actor(id="owner-1", role="owner", tenant_id=uuid.uuid4())
    validated = client.post(
        "/billing/discounts/validate",
        json={"code": "ramadan15", "amount": "96.00", "context": "subscription"},
    )
    assert validated.status_code == 200
    assert Decimal(validated.json()["discount_amount"]) == Decimal("19.20")
    assert Decimal(validated.json()["final_amount"]) == Decimal("76.80")

    actor_holder["actor"] = Actor(id="admin-1", role="admin")
    removed = client.delete(f"/billing/discounts/{discount['id']}")
    assert removed.json()["is_active"] is False

    rejected = client.post(
        "/billing/discounts/validate",
        json={"code": "RAMADAN15", "amount": "96.00", "context": "subscription"},
    )
    assert rejected.status_code == 400
    assert rejected.json()["code"] == "invalid_discount"


def test_health_and_metrics(client):
    assert client.get("/health").json() == {"status": "ok"}
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "billing_" in metrics.text


def test_api_waafipay_callback_accepts_any_body(client, db_session):
    url = "/billing/callbacks/waafipay"

    as_list = client.post(url, json=[{"invoiceId": "x"}])
    as_form = client.post(url, data={"invoiceId": "x", "resultCode": "0"})
    as_garbage = client.post(
        url, content=b"\xff\xfe<xml/>", headers={"content-type": "text/plain"}
    )

    for resp in (as_list, as_form, as_garbage):
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "message": "Callback processed"}
    payloads = [row.payload for row in db_session.query(GatewayCallback).order_by(GatewayCallback.created_at)]
    assert {"body": [{"invoiceId": "x"}]} in payloads
    assert {"invoiceId": "x", "resultCode": "0"} in payloads
    assert len(payloads) == 3


def test_api_anonymous_caller_is_forbidden(client, actor_holder, trial_subscription):
    actor_holder["actor"] = Actor()

    read = client.get(f"/billing/subscriptions/{trial_subscription.id}")
    cancel = client.post(
        f"/billing/subscriptions/{trial_subscription.id}/cancel", json={"reason": "cost"}
    )

    assert read.status_code == 403
    assert cancel.status_code == 403
    assert cancel.json()["code"] == "forbidden"


def test_api_toggle_auto_renewal(client, pending_subscription):
    url = f"/billing/subscriptions/{pending_subscription.id}/auto-renewal"

    resp = client.patch(url, json={"auto_renew": False})

    assert resp.status_code == 200
    data = resp.json()
    assert data["renewal_settings"]["auto_renew"] is False
    assert data["history"][-1]["details"] == {"auto_renew": False}

    again = client.patch(url, json={"auto_renew": True})
    assert again.json()["renewal_settings"]["auto_renew"] is True


def test_api_list_pending_offline_payments(client, actor_holder, pending_subscription, gateway):
    gateway.initiate_with_retry.return_value = GatewayResult(True, None, "0", "Awaiting payer", pending=True)
    offline = _offline(client, pending_subscription.id).json()
    client.post(
        f"/billing/subscriptions/{pending_subscription.id}/pay", json={"phone": "0615123456"}
    )
    url = "/billing/payments?status=pending&channel=offline"

    assert client.get(url).status_code == 403

    actor_holder["actor"] = Actor(id="admin-1", role="admin")
    resp = client.get(url)

    assert resp.status_code == 200
    data = resp.json()
    assert data["total"] == 1
    assert [item["id"] for item in data["items"]] == [offline["id"]]
    assert client.get("/billing/payments?status=pending").json()["total"] == 2
    assert client.get("/billing/payments?order_by=secret").status_code == 400


def test_api_list_subscriptions(client, as_admin, pending_subscription):
    resp = client.get("/billing/subscriptions?status=pending")

    assert resp.status_code == 200
    data = resp.json()
    assert data["total"] == 1
    assert data["items"][0]["subscription_id"] == str(pending_subscription.id)
    assert client.get("/billing/subscriptions?status=active").json()["total"] == 0
    assert client.get("/billing/subscriptions?plan_type=yearly").json()["total"] == 0
