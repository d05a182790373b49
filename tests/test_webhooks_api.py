"""Provider webhook tests — n8n, Stripe, Asaas.

Learn: Signatures are computed here the way each sender does it, so the
real verification code runs: HMAC-SHA256 hex for n8n, the
"t=<ts>,v1=<hmac>" header for Stripe (checked by the stripe SDK), and
a shared token header for Asaas.
"""

import hashlib
import hmac
import json
import time
import uuid

import pytest
from sqlalchemy import select

from artifyme.config import settings
from artifyme.db.models import Order, Transformation, WebhookDelivery
from artifyme.realtime.job_status import job_key

N8N_SECRET = "n8n-test-secret"
STRIPE_SECRET = "whsec_test_secret"
ASAAS_TOKEN = "asaas-test-token"


@pytest.fixture(autouse=True)
def webhook_secrets(monkeypatch):
    monkeypatch.setattr(settings, "n8n_webhook_secret", N8N_SECRET)
    monkeypatch.setattr(settings, "stripe_webhook_secret", STRIPE_SECRET)
    monkeypatch.setattr(settings, "asaas_webhook_token", ASAAS_TOKEN)


def _n8n_headers(body: bytes, secret: str = N8N_SECRET) -> dict:
    signature = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return {"X-N8N-Signature": signature, "Content-Type": "application/json"}


def _stripe_headers(body: bytes, secret: str = STRIPE_SECRET) -> dict:
    ts = int(time.time())
    signed = f"{ts}.{body.decode()}".encode()
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return {"Stripe-Signature": f"t={ts},v1={signature}", "Content-Type": "application/json"}


def _asaas_headers(token: str = ASAAS_TOKEN) -> dict:
    return {"asaas-access-token": token}


async def _deliveries(db_session, provider):
    result = await db_session.execute(
        select(WebhookDelivery).where(WebhookDelivery.provider == provider)
    )
    return list(result.scalars().all())


@pytest.fixture()
async def credits_order(db_session, user):
    order = Order(
        user_id=user.id,
        type="credits",
        status="pending",
        amount=1990,
        currency="BRL",
        payment_provider="asaas",
        payment_id="pay_1",
        meta={"package_id": "small", "credits": 10},
    )
    db_session.add(order)
    await db_session.commit()
    return order


@pytest.fixture()
async def subscription_order(db_session, user, make_subscription):
    subscription = await make_subscription(user, status="inactive", payment_provider="stripe")
    order = Order(
        user_id=user.id,
        type="subscription",
        status="pending",
        amount=1990,
        currency="EUR",
        payment_provider="stripe",
        payment_id="cs_test_sub",
        meta={"plan": "pro", "billing_cycle": "monthly", "subscription_id": str(subscription.id)},
    )
    db_session.add(order)
    await db_session.commit()
    return order, subscription


# ═══════════════════════════════════════════════════════════
# n8n
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_n8n_completion_updates_job_and_relay(client, user, db_session, redis):
    job = Transformation(user_id=user.id, style="anime", status="pending")
    db_session.add(job)
    await db_session.commit()

    body = json.dumps(
        {"jobId": str(job.id), "status": "success", "outputUrl": "https://cdn/out.png"}
    ).encode()
    r = await client.post(
        "/api/webhooks/n8n/transformation-complete", content=body, headers=_n8n_headers(body)
    )
    assert r.status_code == 200
    assert r.json() == {"success": True}

    assert job.status == "completed"
    assert job.output_image_url == "https://cdn/out.png"
    assert job.completed_at is not None

    record = json.loads(await redis.get(job_key(str(job.id))))
    assert record["status"] == "completed"
    assert record["user_id"] == user.keycloak_id
    assert record["output_url"] == "https://cdn/out.png"

    [delivery] = await _deliveries(db_session, "n8n")
    assert delivery.event_type == "transformation.success"
    assert delivery.status == "processed"


@pytest.mark.asyncio
async def test_n8n_error_marks_job_failed(client, user, db_session):
    job = Transformation(user_id=user.id, style="anime", status="pending")
    db_session.add(job)
    await db_session.commit()

    body = json.dumps({"jobId": str(job.id), "status": "error", "error": "GPU timeout"}).encode()
    r = await client.post(
        "/api/webhooks/n8n/transformation-complete", content=body, headers=_n8n_headers(body)
    )
    assert r.status_code == 200
    assert job.status == "failed"
    assert job.error_message == "GPU timeout"


@pytest.mark.asyncio
async def test_n8n_accepts_prefixed_signature(client, user, db_session):
    job = Transformation(user_id=user.id, style="anime", status="pending")
    db_session.add(job)
    await db_session.commit()

    body = json.dumps({"jobId": str(job.id), "status": "success"}).encode()
    headers = _n8n_headers(body)
    headers["X-N8N-Signature"] = "sha256=" + headers["X-N8N-Signature"]
    r = await client.post("/api/webhooks/n8n/transformation-complete", content=body, headers=headers)
    assert r.status_code == 200


@pytest.mark.asyncio
async def test_n8n_bad_signature_is_401(client, db_session):
    body = json.dumps({"jobId": str(uuid.uuid4()), "status": "success"}).encode()
    r = await client.post(
        "/api/webhooks/n8n/transformation-complete",
        content=body,
        headers=_n8n_headers(body, secret="wrong"),
    )
    assert r.status_code == 401
    assert r.json()["detail"] == "Invalid signature"
    assert await _deliveries(db_session, "n8n") == []


@pytest.mark.asyncio
async def test_n8n_missing_fields_is_400(client):
    body = json.dumps({"status": "success"}).encode()
    r = await client.post(
        "/api/webhooks/n8n/transformation-complete", content=body, headers=_n8n_headers(body)
    )
    assert r.status_code == 400
    assert r.json()["code"] == "INVALID_PAYLOAD"


@pytest.mark.asyncio
async def test_n8n_unknown_job_is_404_and_logged_as_failed(client, user, db_session):
    body = json.dumps({"jobId": str(uuid.uuid4()), "status": "success"}).encode()
    r = await client.post(
        "/api/webhooks/n8n/transformation-complete", content=body, headers=_n8n_headers(body)
    )
    assert r.status_code == 404

    [delivery] = await _deliveries(db_session, "n8n")
    await db_session.refresh(delivery)
    assert delivery.status == "failed"


@pytest.mark.asyncio
async def test_n8n_signature_skipped_without_secret(client, user, db_session, monkeypatch):
    monkeypatch.setattr(settings, "n8n_webhook_secret", "")
    job = Transformation(user_id=user.id, style="anime", status="pending")
    db_session.add(job)
    await db_session.commit()

    body = json.dumps({"jobId": str(job.id), "status": "success"}).encode()
    r = await client.post(
        "/api/webhooks/n8n/transformation-complete",
        content=body,
        headers={"Content-Type": "application/json"},
    )
    assert r.status_code == 200


# ═══════════════════════════════════════════════════════════
# Stripe
# ═══════════════════════════════════════════════════════════


def _stripe_event(event_type: str, obj: dict) -> bytes:
    return json.dumps(
        {"id": "evt_1", "type": event_type, "data": {"object": obj}}
    ).encode()


@pytest.mark.asyncio
async def test_stripe_bad_signature_is_400(client):
    body = _stripe_event("checkout.session.completed", {})
    r = await client.post(
        "/api/webhooks/stripe", content=body, headers=_stripe_headers(body, secret="whsec_wrong")
    )
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_stripe_non_utf8_body_is_400(client):
    r = await client.post(
        "/api/webhooks/stripe",
        content=b'{"id": "\xff"}',
        headers={"Stripe-Signature": "t=1,v1=abc", "Content-Type": "application/json"},
    )
    assert r.status_code == 400
    assert r.json()["detail"] == "Invalid Stripe payload"


@pytest.mark.asyncio
async def test_stripe_missing_signature_is_400(client):
    r = await client.post("/api/webhooks/stripe", content=b"{}")
    assert r.status_code == 400
    assert r.json()["detail"] == "Missing Stripe signature"


@pytest.mark.asyncio
async def test_stripe_checkout_grants_credits_once(client, user, credits_order, db_session):
    body = _stripe_event(
        "checkout.session.completed",
        {"id": "cs_1", "metadata": {"order_id": str(credits_order.id)}},
    )
    for _ in range(2):
        r = await client.post("/api/webhooks/stripe", content=body, headers=_stripe_headers(body))
        assert r.status_code == 200
        assert r.json()["received"] is True

    assert credits_order.status == "completed"
    assert user.credits == 13
    assert len(await _deliveries(db_session, "stripe")) == 2


@pytest.mark.asyncio
async def test_stripe_checkout_activates_subscription(client, subscription_order):
    order, subscription = subscription_order
    body = _stripe_event(
        "checkout.session.completed",
        {"id": "cs_test_sub", "subscription": "sub_stripe_1",
         "metadata": {"order_id": str(order.id), "subscription_id": str(subscription.id)}},
    )
    r = await client.post("/api/webhooks/stripe", content=body, headers=_stripe_headers(body))
    assert r.status_code == 200
    assert order.status == "completed"
    assert subscription.status == "active"
    assert subscription.provider_subscription_id == "sub_stripe_1"


@pytest.mark.asyncio
async def test_stripe_invoice_paid_extends_period(client, user, make_subscription):
    subscription = await make_subscription(
        user, status="inactive", payment_provider="stripe", provider_subscription_id="sub_9"
    )
    period_end = int(time.time()) + 30 * 86400
    body = _stripe_event(
        "invoice.paid",
        {
            "parent": {"subscription_details": {"subscription": "sub_9"}},
            "lines": {"data": [{"period": {"end": period_end}}]},
        },
    )
    r = await client.post("/api/webhooks/stripe", content=body, headers=_stripe_headers(body))
    assert r.status_code == 200
    assert subscription.status == "active"
    assert int(subscription.current_period_end.timestamp()) == period_end


@pytest.mark.asyncio
async def test_stripe_subscription_updated_and_deleted(client, user, make_subscription):
    subscription = await make_subscription(
        user, payment_provider="stripe", provider_subscription_id="sub_9"
    )
    body = _stripe_event(
        "customer.subscription.updated",
        {"id": "sub_9", "status": "active", "cancel_at_period_end": True},
    )
    await client.post("/api/webhooks/stripe", content=body, headers=_stripe_headers(body))
    assert subscription.cancel_at_period_end is True
    assert subscription.status == "active"

    body = _stripe_event("customer.subscription.deleted", {"id": "sub_9"})
    await client.post("/api/webhooks/stripe", content=body, headers=_stripe_headers(body))
    assert subscription.status == "cancelled"


@pytest.mark.asyncio
async def test_stripe_unhandled_event_is_ignored(client, db_session):
    body = _stripe_event("charge.refunded", {"id": "ch_1"})
    r = await client.post("/api/webhooks/stripe", content=body, headers=_stripe_headers(body))
    assert r.status_code == 200
    assert r.json()["status"] == "ignored"

    [delivery] = await _deliveries(db_session, "stripe")
    await db_session.refresh(delivery)
    assert delivery.status == "ignored"


# ═══════════════════════════════════════════════════════════
# Asaas
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_asaas_bad_token_is_401(client):
    r = await client.post(
        "/api/webhooks/asaas", json={"event": "PAYMENT_RECEIVED"}, headers=_asaas_headers("nope")
    )
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_asaas_payment_received_grants_credits(client, user, credits_order, redis):
    listener = redis.pubsub()
    await listener.subscribe("notification")
    await listener.get_message(timeout=1)  # subscribe confirmation

    r = await client.post(
        "/api/webhooks/asaas",
        json={
            "event": "PAYMENT_RECEIVED",
            "payment": {"id": "pay_1", "externalReference": str(credits_order.id)},
        },
        headers=_asaas_headers(),
    )
    assert r.status_code == 200
    assert r.json()["status"] == "processed"
    assert user.credits == 13
    assert credits_order.status == "completed"

    message = await listener.get_message(ignore_subscribe_messages=True, timeout=1)
    payload = json.loads(message["data"])
    assert payload["type"] == "credits_added"
    assert payload["credits"] == 10
    assert payload["user_id"] == user.keycloak_id
    await listener.aclose()


@pytest.mark.asyncio
async def test_asaas_subscription_charge_matches_by_subscription_id(
    client, user, make_subscription, db_session
):
    subscription = await make_subscription(
        user, status="inactive", payment_provider="asaas", provider_subscription_id="sub_asaas_1"
    )
    order = Order(
        user_id=user.id,
        type="subscription",
        status="pending",
        amount=2990,
        currency="BRL",
        payment_provider="asaas",
        payment_id="sub_asaas_1",
        meta={"plan": "pro", "billing_cycle": "monthly", "subscription_id": str(subscription.id)},
    )
    db_session.add(order)
    await db_session.commit()

    r = await client.post(
        "/api/webhooks/asaas",
        json={
            "event": "PAYMENT_CONFIRMED",
            "payment": {"id": "pay_77", "subscription": "sub_asaas_1"},
        },
        headers=_asaas_headers(),
    )
    assert r.status_code == 200
    assert order.status == "completed"
    assert subscription.status == "active"


@pytest.mark.asyncio
async def test_asaas_overdue_fails_order(client, user, credits_order):
    r = await client.post(
        "/api/webhooks/asaas",
        json={
            "event": "PAYMENT_OVERDUE",
            "payment": {"id": "pay_1", "externalReference": str(credits_order.id)},
        },
        headers=_asaas_headers(),
    )
    assert r.status_code == 200
    assert credits_order.status == "failed"
    assert user.credits == 3


@pytest.mark.asyncio
async def test_asaas_subscription_deleted_cancels(client, user, make_subscription):
    subscription = await make_subscription(user, payment_provider="asaas")
    r = await client.post(
        "/api/webhooks/asaas",
        json={
            "event": "SUBSCRIPTION_DELETED",
            "subscription": {"id": "sub_asaas_5", "externalReference": str(subscription.id)},
        },
        headers=_asaas_headers(),
    )
    assert r.status_code == 200
    assert subscription.status == "cancelled"
    assert subscription.provider_subscription_id == "sub_asaas_5"


@pytest.mark.asyncio
async def test_asaas_unknown_event_is_ignored(client):
    r = await client.post(
        "/api/webhooks/asaas", json={"event": "PAYMENT_CREATED"}, headers=_asaas_headers()
    )
    assert r.status_code == 200
    assert r.json()["status"] == "ignored"


@pytest.mark.asyncio
async def test_asaas_invalid_json_is_400(client):
    r = await client.post(
        "/api/webhooks/asaas",
        content=b"not json",
        headers={**_asaas_headers(), "Content-Type": "application/json"},
    )
    assert r.status_code == 400
