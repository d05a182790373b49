"""Pydantic schemas for the current user's profile."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class Preferences(BaseModel):
    email_notifications: Optional[bool] = None
    sms_notifications: Optional[bool] = None
    language: Optional[str] = Field(None, pattern=r"^(pt-BR|pt-PT|en)$")


class UserUpdate(BaseModel):
    """Partial update — only fields that were sent are applied."""
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    preferences: Optional[Preferences] = None


class SubscriptionSummary(BaseModel):
    plan: str
    status: str
    billing_cycle: str
    current_period_end: Optional[datetime]

    model_config = {"from_attributes": True}


class UserProfile(BaseModel):
    id: uuid.UUID
    email: str
    name: Optional[str]
    credits: int
    preferences: dict
    is_admin: bool = False
    subscription: Optional[SubscriptionSummary] = None
    created_at: datetime


class CreditsRead(BaseModel):
    credits: int


class UserStats(BaseModel):
    total_transformations: int
    completed_transformations: int
    success_rate: int
    favorite_style: Optional[str]
    credits: int
