"""Payment API routes — credit packages, subscriptions, order history.

Learn: These routes only start payments. Nothing is granted here; credits
and plan activation happen when the provider's webhook confirms the
charge (see api/webhooks.py).
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from artifyme.api.deps import PageParams, current_account
from artifyme.db.engine import get_db
from artifyme.db.models import User, as_utc
from artifyme.schemas.common import Pagination
from artifyme.schemas.payment import (
    CancelResponse,
    OrderRead,
    OrdersPage,
    PurchaseCredits,
    PurchaseResponse,
    SubscribeRequest,
    SubscribeResponse,
    SubscriptionRead,
    SubscriptionStatus,
)
from artifyme.services.asaas_service import AsaasClient, get_asaas
from artifyme.services.catalog import plans_for_region
from artifyme.services.payment_service import PaymentService
from artifyme.services.stripe_service import StripeGateway, get_stripe

router = APIRouter(prefix="/payments")


def _svc(
    db: AsyncSession = Depends(get_db),
    asaas: AsaasClient = Depends(get_asaas),
    stripe: StripeGateway = Depends(get_stripe),
) -> PaymentService:
    return PaymentService(db, asaas, stripe)


@router.post("/credits/purchase", response_model=PurchaseResponse)
async def purchase_credits(
    body: PurchaseCredits,
    user: User = Depends(current_account),
    svc: PaymentService = Depends(_svc),
):
    return await svc.purchase_credits(user, body.package, body.region)


@router.post("/subscribe", response_model=SubscribeResponse)
async def subscribe(
    body: SubscribeRequest,
    user: User = Depends(current_account),
    svc: PaymentService = Depends(_svc),
):
    return await svc.subscribe(user, body.plan, body.billing_cycle, body.region)


@router.get("/subscription", response_model=SubscriptionStatus)
async def subscription_status(
    user: User = Depends(current_account),
    svc: PaymentService = Depends(_svc),
):
    subscription = await svc.get_subscription(user)
    if subscription is None:
        return SubscriptionStatus(has_subscription=False)
    return SubscriptionStatus(
        has_subscription=subscription.status == "active",
        subscription=SubscriptionRead.model_validate(subscription),
    )


@router.post("/subscription/cancel", response_model=CancelResponse)
async def cancel_subscription(
    user: User = Depends(current_account),
    svc: PaymentService = Depends(_svc),
):
    subscription = await svc.cancel_subscription(user)
    return CancelResponse(
        message="Subscription will be cancelled at the end of the billing period",
        cancel_at=as_utc(subscription.current_period_end),
    )


@router.get("/orders", response_model=OrdersPage)
async def list_orders(
    paging: PageParams = Depends(),
    user: User = Depends(current_account),
    svc: PaymentService = Depends(_svc),
):
    orders, total = await svc.list_orders(user, paging.page, paging.limit)
    return OrdersPage(
        orders=[OrderRead.model_validate(o) for o in orders],
        pagination=Pagination.build(paging.page, paging.limit, total),
    )


@router.get("/plans")
async def list_plans(region: str = Query("BR", pattern=r"^(BR|PT)$")):
    """Plans and credit packages priced for a region (BR → BRL, PT → EUR)."""
    return plans_for_region(region)
