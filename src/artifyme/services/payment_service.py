"""Payment service — credit purchases and plan subscriptions.

Learn: Region decides the provider: BR → Asaas (BRL), PT → Stripe (EUR).
Every purchase starts as a pending Order written before the provider call,
so a webhook can never arrive for an order we don't know. The provider's
reference is stored once the call succeeds; if it fails, the order is
marked failed and the error surfaces as a 500.

Subscriptions keep one row per user. Subscribing creates (or reuses) that
row in 'inactive' status; it only becomes 'active' when the provider's
webhook confirms payment.
"""

from typing import Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from artifyme.config import settings
from artifyme.db.models import Order, Subscription, User
from artifyme.errors import ConflictError, NotFoundError, ProviderError
from artifyme.services.asaas_service import AsaasClient
from artifyme.services.catalog import (
    CREDIT_PACKAGES,
    REGION_PROVIDER,
    currency_for,
    package_price,
    plan_price,
)
from artifyme.services.stripe_service import StripeGateway

logger = structlog.get_logger()


class PaymentService:
    def __init__(self, db: AsyncSession, asaas: AsaasClient, stripe: StripeGateway):
        self.db = db
        self.asaas = asaas
        self.stripe = stripe

    def _frontend(self, path: str) -> str:
        return f"{settings.frontend_url.rstrip('/')}{path}"

    async def _fail_order(self, order: Order, error: ProviderError) -> None:
        order.status = "failed"
        order.meta = {**order.meta, "error": error.message}
        await self.db.commit()
        logger.error("payment.provider_failed", order_id=str(order.id), error=error.message)

    # ─── Credits ────────────────────────────────────────

    async def purchase_credits(self, user: User, package_id: str, region: str) -> dict:
        package = CREDIT_PACKAGES[package_id]
        provider = REGION_PROVIDER[region]
        amount = package_price(package_id, region)

        order = Order(
            user_id=user.id,
            type="credits",
            status="pending",
            amount=amount,
            currency=currency_for(region),
            payment_provider=provider,
            meta={"package_id": package_id, "credits": package["credits"]},
        )
        self.db.add(order)
        await self.db.commit()

        try:
            if provider == "asaas":
                result = await self.asaas.create_payment(
                    order_id=str(order.id),
                    amount=amount,
                    description=f"ArtifyMe - {package['credits']} Créditos",
                    customer_email=user.email,
                    customer_name=user.name or user.email,
                )
            else:
                result = await self.stripe.create_credits_checkout(
                    order_id=str(order.id),
                    user_id=str(user.id),
                    amount=amount,
                    description=f"ArtifyMe - {package['credits']} Credits",
                    customer_email=user.email,
                    success_url=self._frontend(f"/payment/success?order={order.id}"),
                    cancel_url=self._frontend(f"/payment/cancel?order={order.id}"),
                )
        except ProviderError as e:
            await self._fail_order(order, e)
            raise ProviderError("Failed to process payment", code="PAYMENT_FAILED")

        order.payment_id = result["payment_id"]
        await self.db.commit()

        logger.info(
            "payment.credits.checkout_created",
            order_id=str(order.id),
            provider=provider,
            package=package_id,
        )
        return {
            "order_id": order.id,
            "payment_url": result["payment_url"],
            "payment_id": result["payment_id"],
        }

    # ─── Subscriptions ──────────────────────────────────

    async def get_subscription(self, user: User) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(Subscription.user_id == user.id)
        )
        return result.scalars().first()

    async def subscribe(
        self, user: User, plan: str, billing_cycle: str, region: str
    ) -> dict:
        subscription = await self.get_subscription(user)
        if subscription and subscription.status == "active":
            raise ConflictError(
                "Already subscribed. Please cancel the current subscription "
                "before subscribing to a new plan",
                code="ALREADY_SUBSCRIBED",
            )

        provider = REGION_PROVIDER[region]
        amount = plan_price(plan, billing_cycle, region)

        if subscription is None:
            subscription = Subscription(user_id=user.id, plan=plan, billing_cycle=billing_cycle)
            self.db.add(subscription)
        subscription.plan = plan
        subscription.billing_cycle = billing_cycle
        subscription.status = "inactive"
        subscription.payment_provider = provider
        subscription.cancel_at_period_end = False

        order = Order(
            user_id=user.id,
            type="subscription",
            status="pending",
            amount=amount,
            currency=currency_for(region),
            payment_provider=provider,
            meta={"plan": plan, "billing_cycle": billing_cycle},
        )
        self.db.add(order)
        await self.db.flush()
        order.meta = {**order.meta, "subscription_id": str(subscription.id)}
        await self.db.commit()

        try:
            if provider == "asaas":
                result = await self.asaas.create_subscription(
                    subscription_id=str(subscription.id),
                    plan=plan,
                    billing_cycle=billing_cycle,
                    amount=amount,
                    customer_email=user.email,
                    customer_name=user.name or user.email,
                )
                subscription.provider_subscription_id = result["subscription_id"]
                order.payment_id = result["subscription_id"]
            else:
                result = await self.stripe.create_subscription_checkout(
                    order_id=str(order.id),
                    subscription_id=str(subscription.id),
                    user_id=str(user.id),
                    plan=plan,
                    billing_cycle=billing_cycle,
                    amount=amount,
                    customer_email=user.email,
                    success_url=self._frontend("/subscription/success"),
                    cancel_url=self._frontend("/subscription/cancel"),
                )
                # The Stripe subscription id arrives with checkout.session.completed.
                order.payment_id = result["payment_id"]
        except ProviderError as e:
            await self._fail_order(order, e)
            raise ProviderError("Failed to create subscription", code="SUBSCRIPTION_FAILED")

        await self.db.commit()
        logger.info(
            "payment.subscription.checkout_created",
            subscription_id=str(subscription.id),
            provider=provider,
            plan=plan,
            billing_cycle=billing_cycle,
        )
        return {
            "subscription_id": subscription.id,
            "order_id": order.id,
            "payment_url": result["payment_url"],
        }

    async def cancel_subscription(self, user: User) -> Subscription:
        """Cancel at the end of the paid period.

        Stripe is told to stop renewing at period end. Asaas has no such
        flag, so its subscription is deleted, which stops future charges
        while the local row keeps access until current_period_end.
        """
        subscription = await self.get_subscription(user)
        if subscription is None:
            raise NotFoundError("Subscription")

        if subscription.payment_provider == "stripe" and subscription.provider_subscription_id:
            await self.stripe.cancel_at_period_end(subscription.provider_subscription_id)
        elif subscription.payment_provider == "asaas" and subscription.provider_subscription_id:
            await self.asaas.cancel_subscription(subscription.provider_subscription_id)

        subscription.cancel_at_period_end = True
        await self.db.commit()
        logger.info("payment.subscription.cancel_requested", subscription_id=str(subscription.id))
        return subscription

    # ─── Orders ─────────────────────────────────────────

    async def list_orders(
        self, user: User, page: int = 1, limit: int = 20
    ) -> tuple[list[Order], int]:
        total = await self.db.scalar(
            select(func.count()).select_from(Order).where(Order.user_id == user.id)
        )
        result = await self.db.execute(
            select(Order)
            .where(Order.user_id == user.id)
            .order_by(Order.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars().all()), total or 0

