"""Transformation API routes.

Learn: Starting a job is asynchronous. POST /start returns 202 with a
job_id as soon as n8n has accepted the work; the outcome arrives later
through the n8n webhook and is pushed to the user's sockets. Clients
without a socket poll GET /status/{job_id}.
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from artifyme.api.deps import PageParams, current_account
from artifyme.auth.dependencies import CurrentUser, get_current_user
from artifyme.db.engine import get_db
from artifyme.db.models import User
from artifyme.errors import ValidationError
from artifyme.schemas.common import Pagination
from artifyme.schemas.transform import (
    HistoryPage,
    JobStatus,
    StyleList,
    TransformStarted,
    TransformationRead,
)
from artifyme.services.catalog import STYLES
from artifyme.services.n8n_service import N8NClient, get_n8n
from artifyme.services.transform_service import ESTIMATED_TIME, TransformService

router = APIRouter(prefix="/transform")


def _svc(db: AsyncSession = Depends(get_db)) -> TransformService:
    return TransformService(db)


@router.post("/start", response_model=TransformStarted, status_code=202)
async def start_transformation(
    style: str = Form(...),
    image: Optional[UploadFile] = File(None),
    identity: CurrentUser = Depends(get_current_user),
    user: User = Depends(current_account),
    n8n: N8NClient = Depends(get_n8n),
    svc: TransformService = Depends(_svc),
):
    """Upload an image and start a style transfer (costs one credit)."""
    if image is None:
        raise ValidationError("No image file provided", code="NO_FILE")
    data = await image.read()
    svc.validate_upload(image.content_type, data, style)

    job = await svc.start(user, identity.id, data, style, n8n)
    return TransformStarted(
        job_id=job.id,
        status="pending",
        message="Transformation started",
        estimated_time=ESTIMATED_TIME,
    )


@router.get("/status/{job_id}", response_model=JobStatus)
async def transformation_status(
    job_id: uuid.UUID,
    identity: CurrentUser = Depends(get_current_user),
    user: User = Depends(current_account),
    svc: TransformService = Depends(_svc),
):
    return await svc.get_status(user, identity.id, job_id)


@router.get("/history", response_model=HistoryPage)
async def transformation_history(
    paging: PageParams = Depends(),
    user: User = Depends(current_account),
    svc: TransformService = Depends(_svc),
):
    items, total = await svc.history(user, paging.page, paging.limit)
    return HistoryPage(
        transformations=[TransformationRead.model_validate(t) for t in items],
        pagination=Pagination.build(paging.page, paging.limit, total),
    )


@router.get("/styles", response_model=StyleList)
async def list_styles():
    return StyleList(styles=STYLES)
