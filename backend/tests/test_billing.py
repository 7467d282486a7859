import json
from datetime import datetime

import pytest

from therapai import billing, config
from therapai.crud import subscription as crud_subscription

SECRET = "whsec_revenuecat_test"

def revenuecat_body(event_type, user_id, product_id="pro_monthly", timestamp_ms=1700000000000, **extra):
    event = {
        "type": event_type,
        "app_user_id": user_id,
        "product_id": product_id,
        "event_timestamp_ms": timestamp_ms,
    }
    event.update(extra)
    return json.dumps({"event": event}).encode()

def post_revenuecat(client, body, secret=SECRET, signature=None):
    if signature is None:
        signature = billing.compute_signature(body, secret)
    return client.post(
        "/api/subscriptions/webhook",
        content=body,
        headers={"X-RevenueCat-Signature": signature, "Content-Type": "application/json"},
    )

@pytest.fixture
def webhook_secret(monkeypatch):
    monkeypatch.setattr(config, "REVENUECAT_WEBHOOK_SECRET", SECRET)
    return SECRET

def test_product_to_plan():
    assert billing.product_to_plan("premium_monthly") == "premium"
    assert billing.product_to_plan("com.app.pro.yearly") == "pro"
    assert billing.product_to_plan("starter") == "free"
    assert billing.product_to_plan(None) == "free"

def test_verify_signature_accepts_prefixed_digest():
    body = b'{"event": {}}'
    digest = billing.compute_signature(body, SECRET)
    assert billing.verify_webhook_signature(body, digest, SECRET) is True
    assert billing.verify_webhook_signature(body, "sha256=" + digest, SECRET) is True

def test_verify_signature_rejects_mismatch_and_missing():
    body = b'{"event": {}}'
    with pytest.raises(billing.WebhookVerificationError):
        billing.verify_webhook_signature(body, "deadbeef", SECRET)
    with pytest.raises(billing.WebhookVerificationError):
        billing.verify_webhook_signature(body, None, SECRET)

def test_verify_signature_skipped_without_secret():
    assert billing.verify_webhook_signature(b"{}", None, None) is False

def test_parse_revenuecat_ignores_unknown_types():
    assert billing.parse_revenuecat_event({"event": {"type": "TRANSFER", "app_user_id": "u1"}}) is None

@pytest.mark.parametrize("payload", [
    None,
    [],
    {},
    {"event": "nope"},
    {"event": {"app_user_id": "u1"}},
    {"event": {"type": "RENEWAL"}},
    {"event": {"type": "RENEWAL", "app_user_id": "u1"}},
    {"event": {"type": "RENEWAL", "app_user_id": "u1", "product_id": "pro", "event_timestamp_ms": "soon"}},
])
def test_parse_revenuecat_rejects_malformed(payload):
    with pytest.raises(billing.InvalidWebhookPayload):
        billing.parse_revenuecat_event(payload)

def test_renewal_activates_pro(client, db, user, webhook_secret):
    response = post_revenuecat(client, revenuecat_body("RENEWAL", user.id, "pro_monthly"))

    assert response.status_code == 200
    assert response.json()["data"] == {"applied": True, "user_id": user.id, "plan": "pro", "status": "active"}

    db.expire_all()
    subscription = crud_subscription.get_subscription(db, user.id)
    assert subscription.plan == "pro"
    assert subscription.status == "active"
    assert subscription.provider == "revenuecat"
    assert user.subscription_tier == "pro"

def test_premium_renewal_for_unknown_user_creates_row(client, db, webhook_secret):
    response = post_revenuecat(client, revenuecat_body("RENEWAL", "u1", "premium_monthly"))

    assert response.status_code == 200
    assert response.json()["data"] == {"applied": True, "user_id": "u1", "plan": "premium", "status": "active"}
    subscription = crud_subscription.get_subscription(db, "u1")
    assert (subscription.user_id, subscription.plan, subscription.status) == ("u1", "premium", "active")

def test_initial_purchase_of_pro(client, db, webhook_secret):
    post_revenuecat(client, revenuecat_body("INITIAL_PURCHASE", "u4", "com.therapai.pro.annual"))
    assert crud_subscription.get_subscription(db, "u4").plan == "pro"

def test_cancellation_downgrades_to_free(client, db, user, webhook_secret):
    post_revenuecat(client, revenuecat_body("INITIAL_PURCHASE", user.id, "premium_monthly", 1000))
    response = post_revenuecat(client, revenuecat_body("CANCELLATION", user.id, "premium_monthly", 2000))

    assert response.json()["data"]["plan"] == "free"
    assert response.json()["data"]["status"] == "cancelled"
    db.expire_all()
    assert user.subscription_tier == "free"

def test_expiration_also_cancels(client, db, user, webhook_secret):
    post_revenuecat(client, revenuecat_body("RENEWAL", user.id, "pro_monthly", 1000))
    response = post_revenuecat(client, revenuecat_body("EXPIRATION", user.id, "pro_monthly", 2000))
    assert response.json()["data"]["status"] == "cancelled"

def test_replayed_event_is_idempotent(client, db, user, webhook_secret):
    body = revenuecat_body("RENEWAL", user.id, "pro_monthly")
    post_revenuecat(client, body)
    db.expire_all()
    first = crud_subscription.get_subscription(db, user.id)
    snapshot = (first.plan, first.status, first.last_event_at)

    response = post_revenuecat(client, body)

    assert response.status_code == 200
    db.expire_all()
    again = crud_subscription.get_subscription(db, user.id)
    assert (again.plan, again.status, again.last_event_at) == snapshot
    assert db.query(type(again)).count() == 1

def test_bad_signature_rejected_without_write(client, db, user, webhook_secret):
    response = post_revenuecat(client, revenuecat_body("RENEWAL", user.id), signature="0" * 64)

    assert response.status_code == 401
    assert response.json() == {"success": False, "message": "Invalid webhook signature"}
    assert crud_subscription.get_subscription(db, user.id) is None

def test_missing_signature_rejected(client, db, user, webhook_secret):
    response = client.post("/api/subscriptions/webhook", content=revenuecat_body("RENEWAL", user.id))
    assert response.status_code == 401

def test_malformed_body_is_bad_request(client, webhook_secret):
    body = b"not json"
    response = post_revenuecat(client, body)
    assert response.status_code == 400
    assert response.json()["success"] is False

def test_unknown_event_type_acknowledged(client, db, webhook_secret):
    response = post_revenuecat(client, revenuecat_body("SUBSCRIBER_ALIAS", "u1"))
    assert response.status_code == 200
    assert response.json()["data"] == {"applied": False}
    assert crud_subscription.get_subscription(db, "u1") is None

def test_billing_issue_only_from_active(client, db, user, webhook_secret):
    response = post_revenuecat(client, revenuecat_body("BILLING_ISSUE", user.id, timestamp_ms=1000))
    assert response.json()["data"]["applied"] is False
    assert crud_subscription.get_subscription(db, user.id) is None

    post_revenuecat(client, revenuecat_body("RENEWAL", user.id, "premium_monthly", 2000))
    response = post_revenuecat(client, revenuecat_body("BILLING_ISSUE", user.id, timestamp_ms=3000))

    assert response.json()["data"]["status"] == "billing_issue"
    assert response.json()["data"]["plan"] == "premium"

def test_stale_event_is_skipped(client, db, user, webhook_secret):
    post_revenuecat(client, revenuecat_body("CANCELLATION", user.id, timestamp_ms=5000))
    response = post_revenuecat(client, revenuecat_body("RENEWAL", user.id, "pro_monthly", 4000))

    assert response.json()["data"]["applied"] is False
    db.expire_all()
    assert crud_subscription.get_subscription(db, user.id).status == "cancelled"

def test_unsigned_webhook_accepted_when_secret_unset(client, db, monkeypatch):
    monkeypatch.setattr(config, "REVENUECAT_WEBHOOK_SECRET", None)
    response = client.post("/api/subscriptions/webhook", content=revenuecat_body("RENEWAL", "u2", "pro_monthly"))
    assert response.status_code == 200
    assert crud_subscription.get_subscription(db, "u2").plan == "pro"

def test_expiration_timestamp_recorded(db):
    event = billing.parse_revenuecat_event({
        "event": {
            "type": "RENEWAL",
            "app_user_id": "u3",
            "product_id": "premium_monthly",
            "event_timestamp_ms": 1700000000000,
            "expiration_at_ms": 1702592000000,
        }
    })
    subscription, applied = billing.apply_billing_event(db, event)

    assert applied
    assert subscription.expires_at == datetime(2023, 12, 14, 22, 13, 20)

def test_stripe_checkout_then_invoice_failure(client, db, user):
    checkout = {
        "type": "checkout.session.completed",
        "created": 1000,
        "data": {"object": {
            "customer": "cus_1",
            "subscription": "sub_1",
            "metadata": {"userId": user.id, "plan": "premium"},
        }},
    }
    response = client.post("/api/subscription/webhook", content=json.dumps(checkout))
    assert response.json()["data"]["plan"] == "premium"

    failed = {"type": "invoice.payment_failed", "created": 2000, "data": {"object": {"customer": "cus_1"}}}
    response = client.post("/api/subscription/webhook", content=json.dumps(failed))
    assert response.json()["data"]["status"] == "billing_issue"

    deleted = {"type": "customer.subscription.deleted", "created": 3000, "data": {"object": {"id": "sub_1"}}}
    response = client.post("/api/subscription/webhook", content=json.dumps(deleted))
    assert response.json()["data"] == {"applied": True, "user_id": user.id, "plan": "free", "status": "cancelled"}

@pytest.mark.parametrize("extra", [
    {"expires_date": 12345},
    {"expiration_at_ms": 10 ** 30},
])
def test_revenuecat_bad_expiry_is_bad_request(client, db, user, webhook_secret, extra):
    response = post_revenuecat(client, revenuecat_body("RENEWAL", user.id, "pro_monthly", **extra))

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert crud_subscription.get_subscription(db, user.id) is None

@pytest.mark.parametrize("payload", [
    {"type": "invoice.payment_failed", "created": "abc", "data": {"object": {"customer": "cus_1"}}},
    {"type": "checkout.session.completed", "created": 1000, "data": {"object": {"metadata": "oops"}}},
    {"type": "checkout.session.completed", "created": 1000,
     "data": {"object": {"client_reference_id": "u1", "metadata": {"plan": {"name": "pro"}}}}},
])
def test_stripe_malformed_event_is_bad_request(client, db, payload):
    response = client.post("/api/subscription/webhook", content=json.dumps(payload))

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert crud_subscription.get_subscription(db, "u1") is None

def test_entitlement_with_numeric_expiry_raises_type_error():
    with pytest.raises(TypeError):
        billing.entitlement_features({"voice": {"expires_date": 12345}})

def test_stripe_bad_signature(client, monkeypatch):
    monkeypatch.setattr(config, "STRIPE_WEBHOOK_SECRET", "whsec_stripe")
    response = client.post(
        "/api/subscription/webhook",
        content=b'{"type": "invoice.payment_failed"}',
        headers={"stripe-signature": "t=1,v1=bad"},
    )
    assert response.status_code == 400
    assert response.json()["success"] is False

def test_checkout_rejects_free_plan(client, headers):
    response = client.post("/api/subscriptions/checkout", json={"plan": "free"}, headers=headers)
    assert response.status_code == 400
    assert response.json()["message"] == "Invalid plan"

def test_checkout_without_stripe_configured(client, headers):
    response = client.post("/api/subscriptions/checkout", json={"plan": "pro"}, headers=headers)
    assert response.status_code == 500

def test_plans_catalogue(client):
    data = client.get("/api/subscriptions/plans").json()["data"]
    assert [plan["id"] for plan in data] == ["free", "premium_monthly", "pro_monthly"]

def test_current_defaults_to_free(client, headers, user):
    data = client.get("/api/subscriptions/current", headers=headers).json()["data"]
    assert data == {"user_id": user.id, "plan": "free", "status": "active"}
