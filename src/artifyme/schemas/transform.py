"""Pydantic schemas for transformation jobs and the n8n callback."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from artifyme.schemas.common import Pagination


class TransformStarted(BaseModel):
    job_id: uuid.UUID
    status: str
    message: str
    estimated_time: str


class JobStatus(BaseModel):
    """A job's status, from the relay record or the database row."""
    job_id: str
    status: str
    style: Optional[str] = None
    output_url: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class TransformationRead(BaseModel):
    id: uuid.UUID
    style: str
    status: str
    output_image_url: Optional[str]
    created_at: datetime
    completed_at: Optional[datetime]

    model_config = {"from_attributes": True}


class HistoryPage(BaseModel):
    transformations: list[TransformationRead]
    pagination: Pagination


class StyleRead(BaseModel):
    id: str
    name: str
    description: str


class StyleList(BaseModel):
    styles: list[StyleRead]


# ─── n8n callback (camelCase on the wire) ────────────────

class N8NCallback(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: uuid.UUID = Field(..., alias="jobId")
    status: str = Field(..., min_length=1)
    output_url: Optional[str] = Field(None, alias="outputUrl")
    error: Optional[str] = None
