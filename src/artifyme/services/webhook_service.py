"""Incoming provider webhooks: n8n, Stripe, Asaas.

Learn: Every callback follows the same path:
1. Authenticate the sender (n8n: HMAC-SHA256 of the raw body, Stripe:
   signed header via the SDK, Asaas: shared access token)
2. Log the delivery in webhook_deliveries (status "received")
3. Dispatch on the event type and update orders/subscriptions/jobs
4. Mark the delivery processed, ignored (unknown type) or failed

Deliveries are not deduplicated; a provider retry is logged and processed
again. Order completion is a one-way transition, so a retried payment
confirmation does not grant credits twice.
"""

import hashlib
import hmac
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from artifyme.config import settings
from artifyme.db.models import Order, Subscription, User, WebhookDelivery
from artifyme.errors import AuthenticationError
from artifyme.realtime.pubsub import CHANNEL_NOTIFICATION, CHANNEL_ORDER, publish_event
from artifyme.services.transform_service import TransformService

logger = structlog.get_logger()

ASAAS_PAYMENT_CONFIRMED = {"PAYMENT_CONFIRMED", "PAYMENT_RECEIVED"}
ASAAS_PAYMENT_FAILED = {"PAYMENT_OVERDUE", "PAYMENT_DELETED"}
ASAAS_SUBSCRIPTION_ACTIVE = {"SUBSCRIPTION_CREATED", "SUBSCRIPTION_RENEWED"}
ASAAS_SUBSCRIPTION_CANCELLED = {"SUBSCRIPTION_DELETED", "SUBSCRIPTION_INACTIVE"}


def parse_uuid(value: Any) -> Optional[uuid.UUID]:
    """Lenient UUID parsing for ids echoed back by providers."""
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def from_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class WebhookService:
    def __init__(self, db: AsyncSession):
        self.db = db

    # ─── Sender authentication ─────────────────────────────

    @staticmethod
    def verify_n8n_signature(payload: bytes, signature: Optional[str]) -> None:
        """HMAC-SHA256 over the raw body. Skipped when no secret is configured."""
        secret = settings.n8n_webhook_secret
        if not secret:
            return
        expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
        signature = signature or ""
        if signature.startswith("sha256="):
            signature = signature[7:]
        if not hmac.compare_digest(expected, signature):
            raise AuthenticationError("Invalid signature", code="INVALID_SIGNATURE")

    @staticmethod
    def verify_asaas_token(token: Optional[str]) -> None:
        expected = settings.asaas_webhook_token
        if not expected:
            return
        if not hmac.compare_digest(expected, token or ""):
            raise AuthenticationError("Invalid token", code="INVALID_TOKEN")

    # ─── Delivery log ──────────────────────────────────────

    async def receive_delivery(
        self, provider: str, event_type: str, payload: Optional[dict]
    ) -> WebhookDelivery:
        delivery = WebhookDelivery(
            provider=provider,
            event_type=event_type or "unknown",
            payload=payload,
            status="received",
        )
        self.db.add(delivery)
        await self.db.commit()
        logger.info(
            f"webhook.{provider}.received",
            delivery_id=delivery.id,
            event_type=event_type,
        )
        return delivery

    async def _mark(self, delivery_id: int, status: str, error: Optional[str] = None) -> None:
        await self.db.execute(
            update(WebhookDelivery)
            .where(WebhookDelivery.id == delivery_id)
            .values(status=status, error=error)
        )
        await self.db.commit()

    async def _run(self, provider: str, event_type: str, payload: dict, handler) -> str:
        """Log the delivery, run the handler, and record the outcome.

        handler returns False when the event type is not one we act on.
        """
        delivery = await self.receive_delivery(provider, event_type, payload)
        delivery_id = delivery.id
        try:
            handled = await handler()
        except Exception as e:
            await self.db.rollback()
            await self._mark(delivery_id, "failed", str(e))
            logger.error(
                f"webhook.{provider}.failed",
                delivery_id=delivery_id,
                event_type=event_type,
                error=str(e),
            )
            raise

        status = "processed" if handled is not False else "ignored"
        await self._mark(delivery_id, status)
        logger.info(f"webhook.{provider}.{status}", delivery_id=delivery_id, event_type=event_type)
        return status

    async def list_deliveries(
        self, provider: Optional[str] = None, limit: int = 50
    ) -> list[WebhookDelivery]:
        q = select(WebhookDelivery).order_by(WebhookDelivery.id.desc()).limit(limit)
        if provider:
            q = q.where(WebhookDelivery.provider == provider)
        result = await self.db.execute(q)
        return list(result.scalars().all())

    # ─── Shared state changes ──────────────────────────────

    async def _notify(self, channel: str, data: dict) -> None:
        """Publish after commit. The database is already correct if this fails."""
        try:
            await publish_event(channel, data)
        except (RuntimeError, aioredis.RedisError) as e:
            logger.warning("webhook.publish_failed", channel=channel, error=str(e))

    async def _keycloak_id(self, user_id: uuid.UUID) -> str:
        result = await self.db.execute(select(User.keycloak_id).where(User.id == user_id))
        return result.scalar_one()

    async def _order(self, order_id: Any) -> Optional[Order]:
        oid = parse_uuid(order_id)
        return await self.db.get(Order, oid) if oid else None

    async def _subscription(self, subscription_id: Any) -> Optional[Subscription]:
        sid = parse_uuid(subscription_id)
        return await self.db.get(Subscription, sid) if sid else None

    async def _subscription_by_provider_id(self, provider_id: Optional[str]) -> Optional[Subscription]:
        if not provider_id:
            return None
        result = await self.db.execute(
            select(Subscription).where(Subscription.provider_subscription_id == provider_id)
        )
        return result.scalars().first()

    async def complete_order(
        self,
        order: Order,
        provider_subscription_id: Optional[str] = None,
        period_end: Optional[datetime] = None,
    ) -> None:
        """Mark an order paid and apply its effect (credits or subscription)."""
        if order.status == "completed":
            logger.info("order.already_completed", order_id=str(order.id))
            return

        order.status = "completed"
        credits = 0
        user = await self.db.get(User, order.user_id)

        if order.type == "credits":
            credits = int(order.meta.get("credits") or 0)
            user.credits += credits
        elif order.type == "subscription":
            subscription = await self._subscription(order.meta.get("subscription_id"))
            if subscription is not None:
                subscription.status = "active"
                subscription.payment_provider = order.payment_provider
                if provider_subscription_id:
                    subscription.provider_subscription_id = provider_subscription_id
                if period_end:
                    subscription.current_period_end = period_end

        await self.db.commit()
        logger.info("order.completed", order_id=str(order.id), type=order.type, credits=credits)

        await self._notify(
            CHANNEL_ORDER,
            {
                "user_id": user.keycloak_id,
                "order_id": str(order.id),
                "type": order.type,
                "status": order.status,
            },
        )
        if credits:
            await self._notify(
                CHANNEL_NOTIFICATION,
                {
                    "user_id": user.keycloak_id,
                    "type": "credits_added",
                    "credits": credits,
                    "message": f"{credits} credits added to your account!",
                },
            )

    async def fail_order(self, order: Order) -> None:
        if order.status == "completed":
            return
        order.status = "failed"
        await self.db.commit()
        await self._notify(
            CHANNEL_ORDER,
            {
                "user_id": await self._keycloak_id(order.user_id),
                "order_id": str(order.id),
                "type": order.type,
                "status": order.status,
            },
        )

    # ─── n8n ───────────────────────────────────────────────

    async def process_n8n(
        self,
        payload: dict,
        job_id: uuid.UUID,
        status: str,
        output_url: Optional[str],
        error: Optional[str],
    ) -> str:
        async def handle():
            await TransformService(self.db).complete(job_id, status, output_url, error)

        return await self._run("n8n", f"transformation.{status}", payload, handle)

    # ─── Stripe ────────────────────────────────────────────

    async def process_stripe(self, event: dict) -> str:
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}

        handlers = {
            "checkout.session.completed": self._stripe_checkout_completed,
            "invoice.paid": self._stripe_invoice_paid,
            "customer.subscription.updated": self._stripe_subscription_updated,
            "customer.subscription.deleted": self._stripe_subscription_deleted,
        }
        handler = handlers.get(event_type)

        async def handle():
            if handler is None:
                return False
            await handler(obj)

        return await self._run("stripe", event_type, event, handle)

    async def _stripe_checkout_completed(self, session: dict) -> None:
        metadata = session.get("metadata") or {}
        order = await self._order(metadata.get("order_id"))
        if order is None:
            logger.warning("webhook.stripe.order_missing", session_id=session.get("id"))
            return
        await self.complete_order(order, provider_subscription_id=session.get("subscription"))

    async def _stripe_invoice_paid(self, invoice: dict) -> None:
        # Older API versions put the subscription on the invoice itself,
        # newer ones under parent.subscription_details.
        provider_id = invoice.get("subscription") or (
            ((invoice.get("parent") or {}).get("subscription_details") or {}).get("subscription")
        )
        subscription = await self._subscription_by_provider_id(provider_id)
        if subscription is None:
            return
        lines = (invoice.get("lines") or {}).get("data") or []
        period_end = ((lines[0].get("period") or {}).get("end")) if lines else None

        subscription.status = "active"
        if period_end:
            subscription.current_period_end = from_timestamp(period_end)
        await self.db.commit()

    async def _stripe_subscription_updated(self, stripe_sub: dict) -> None:
        subscription = await self._subscription_by_provider_id(stripe_sub.get("id"))
        if subscription is None:
            return
        period_end = stripe_sub.get("current_period_end")
        if period_end is None:
            items = (stripe_sub.get("items") or {}).get("data") or []
            period_end = items[0].get("current_period_end") if items else None

        subscription.status = "active" if stripe_sub.get("status") == "active" else "inactive"
        subscription.cancel_at_period_end = bool(stripe_sub.get("cancel_at_period_end"))
        if period_end:
            subscription.current_period_end = from_timestamp(period_end)
        await self.db.commit()

    async def _stripe_subscription_deleted(self, stripe_sub: dict) -> None:
        subscription = await self._subscription_by_provider_id(stripe_sub.get("id"))
        if subscription is None:
            return
        subscription.status = "cancelled"
        await self.db.commit()

    # ─── Asaas ─────────────────────────────────────────────

    async def process_asaas(self, body: dict) -> str:
        event_type = body.get("event") or ""
        payment = body.get("payment") or {}
        asaas_sub = body.get("subscription") or {}

        async def handle():
            if event_type in ASAAS_PAYMENT_CONFIRMED:
                await self._asaas_payment_confirmed(payment)
            elif event_type in ASAAS_PAYMENT_FAILED:
                order = await self._order(payment.get("externalReference"))
                if order is not None:
                    await self.fail_order(order)
            elif event_type in ASAAS_SUBSCRIPTION_ACTIVE:
                await self._asaas_subscription_status(asaas_sub, "active")
            elif event_type in ASAAS_SUBSCRIPTION_CANCELLED:
                await self._asaas_subscription_status(asaas_sub, "cancelled")
            else:
                return False

        return await self._run("asaas", event_type, body, handle)

    async def _asaas_payment_confirmed(self, payment: dict) -> None:
        order = await self._order(payment.get("externalReference"))
        if order is None and payment.get("subscription"):
            # Charges generated by a subscription point at the subscription.
            result = await self.db.execute(
                select(Order)
                .where(
                    Order.payment_id == payment["subscription"],
                    Order.status == "pending",
                )
                .order_by(Order.created_at.desc())
            )
            order = result.scalars().first()
        if order is None:
            logger.warning("webhook.asaas.order_missing", payment_id=payment.get("id"))
            return
        await self.complete_order(order)

    async def _asaas_subscription_status(self, asaas_sub: dict, status: str) -> None:
        subscription = await self._subscription(asaas_sub.get("externalReference"))
        if subscription is None:
            subscription = await self._subscription_by_provider_id(asaas_sub.get("id"))
        if subscription is None:
            return
        subscription.status = status
        if asaas_sub.get("id"):
            subscription.provider_subscription_id = asaas_sub["id"]
        await self.db.commit()
