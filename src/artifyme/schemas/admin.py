"""Pydantic schemas for the admin back office."""

from typing import Optional

from pydantic import BaseModel, Field


class AddCredits(BaseModel):
    amount: int = Field(..., gt=0)
    reason: Optional[str] = Field(None, max_length=500)


class CreditsAdded(BaseModel):
    message: str
    new_balance: int
