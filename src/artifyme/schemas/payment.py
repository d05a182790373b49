"""Pydantic schemas for payments: credit packages, subscriptions, orders."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import AliasChoices, BaseModel, Field

from artifyme.schemas.common import Pagination


class PurchaseCredits(BaseModel):
    package: str = Field(..., pattern=r"^(small|medium|large)$")
    region: str = Field(..., pattern=r"^(BR|PT)$")


class PurchaseResponse(BaseModel):
    order_id: uuid.UUID
    payment_url: Optional[str]
    payment_id: Optional[str]


class SubscribeRequest(BaseModel):
    plan: str = Field(..., pattern=r"^(basic|pro|premium)$")
    billing_cycle: str = Field(..., pattern=r"^(monthly|yearly)$")
    region: str = Field(..., pattern=r"^(BR|PT)$")


class SubscribeResponse(BaseModel):
    subscription_id: uuid.UUID
    order_id: uuid.UUID
    payment_url: Optional[str]


class SubscriptionRead(BaseModel):
    plan: str
    status: str
    billing_cycle: str
    payment_provider: Optional[str]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool

    model_config = {"from_attributes": True}


class SubscriptionStatus(BaseModel):
    has_subscription: bool
    subscription: Optional[SubscriptionRead] = None


class CancelResponse(BaseModel):
    message: str
    cancel_at: Optional[datetime]


class OrderRead(BaseModel):
    id: uuid.UUID
    type: str
    status: str
    amount: int
    currency: str
    payment_provider: Optional[str]
    metadata: dict = Field(validation_alias=AliasChoices("meta", "metadata"))
    created_at: datetime

    model_config = {"from_attributes": True}


class OrdersPage(BaseModel):
    orders: list[OrderRead]
    pagination: Pagination
