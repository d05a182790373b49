"""Stripe gateway — EUR checkout sessions, subscriptions, webhook verification.

Learn: The stripe SDK is synchronous, so every network call runs in a
worker thread (asyncio.to_thread) to keep the event loop free. The secret
key is passed per call instead of mutating the module-level stripe.api_key.

Checkout sessions carry our ids in metadata (order_id, user_id and, for
subscriptions, subscription_id) so the webhook can find the local rows
without a lookup on the provider side.
"""

import asyncio
import json
from typing import Any, Optional

import stripe
import structlog

from artifyme.config import settings
from artifyme.errors import ProviderError, ValidationError

logger = structlog.get_logger()


class StripeGatewayError(ProviderError):
    """A Stripe API call failed."""


class InvalidStripeSignature(ValidationError):
    """The stripe-signature header did not verify against the payload."""


class StripeGateway:
    async def _call(self, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(
                fn, *args, api_key=settings.stripe_secret_key, **kwargs
            )
        except stripe.StripeError as e:
            logger.error("stripe.call.failed", call=getattr(fn, "__qualname__", str(fn)), error=str(e))
            raise StripeGatewayError(f"Stripe error: {e.user_message or e}") from e

    async def create_credits_checkout(
        self,
        order_id: str,
        user_id: str,
        amount: int,
        description: str,
        customer_email: str,
        success_url: str,
        cancel_url: str,
    ) -> dict[str, str]:
        """One-time payment session. Returns {payment_id, payment_url}."""
        session = await self._call(
            stripe.checkout.Session.create,
            mode="payment",
            payment_method_types=["card"],
            customer_email=customer_email,
            line_items=[
                {
                    "price_data": {
                        "currency": "eur",
                        "product_data": {"name": description},
                        "unit_amount": amount,
                    },
                    "quantity": 1,
                }
            ],
            metadata={"order_id": order_id, "user_id": user_id},
            success_url=success_url,
            cancel_url=cancel_url,
        )
        return {"payment_id": session.id, "payment_url": session.url}

    async def create_subscription_checkout(
        self,
        order_id: str,
        subscription_id: str,
        user_id: str,
        plan: str,
        billing_cycle: str,
        amount: int,
        customer_email: str,
        success_url: str,
        cancel_url: str,
    ) -> dict[str, str]:
        """Subscription-mode session.

        Learn: Uses the configured price id for "<plan>_<cycle>" when one
        exists; otherwise the price is sent inline as recurring price_data.
        """
        price_id = settings.stripe_price_ids.get(f"{plan}_{billing_cycle}")
        if price_id:
            line_item: dict[str, Any] = {"price": price_id, "quantity": 1}
        else:
            line_item = {
                "price_data": {
                    "currency": "eur",
                    "product_data": {"name": f"ArtifyMe - {plan.capitalize()} Plan"},
                    "unit_amount": amount,
                    "recurring": {
                        "interval": "year" if billing_cycle == "yearly" else "month"
                    },
                },
                "quantity": 1,
            }

        metadata = {
            "order_id": order_id,
            "subscription_id": subscription_id,
            "user_id": user_id,
            "plan": plan,
            "billing_cycle": billing_cycle,
        }
        session = await self._call(
            stripe.checkout.Session.create,
            mode="subscription",
            payment_method_types=["card"],
            customer_email=customer_email,
            line_items=[line_item],
            metadata=metadata,
            subscription_data={"metadata": metadata},
            success_url=success_url,
            cancel_url=cancel_url,
        )
        return {"payment_id": session.id, "payment_url": session.url}

    async def cancel_at_period_end(self, provider_subscription_id: str) -> None:
        await self._call(
            stripe.Subscription.modify,
            provider_subscription_id,
            cancel_at_period_end=True,
        )

    def construct_event(self, payload: bytes, signature: Optional[str]) -> dict[str, Any]:
        """Verify the stripe-signature header and return the event as a plain dict."""
        if not signature or not settings.stripe_webhook_secret:
            raise InvalidStripeSignature("Missing Stripe signature")
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidStripeSignature("Invalid Stripe payload") from e
        try:
            stripe.WebhookSignature.verify_header(
                text, signature, settings.stripe_webhook_secret
            )
        except stripe.SignatureVerificationError as e:
            raise InvalidStripeSignature(f"Invalid Stripe signature: {e}") from e
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise InvalidStripeSignature("Invalid Stripe payload") from e


_stripe = StripeGateway()


def get_stripe() -> StripeGateway:
    """FastAPI dependency — the process-wide Stripe gateway."""
    return _stripe
