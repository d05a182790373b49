"""Webhooks API — incoming callbacks from n8n, Stripe and Asaas.

Learn: These routes are open (no Keycloak token); each sender is
authenticated by its own mechanism before anything is parsed:
- n8n:    X-N8N-Signature = hex HMAC-SHA256 of the raw body
- Stripe: Stripe-Signature header checked by the SDK
- Asaas:  asaas-access-token header equals the configured token

The raw body is read before JSON parsing because both signatures are
computed over the exact bytes that were sent.
"""

import json
from typing import Optional

import pydantic
import structlog
from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from artifyme.db.engine import get_db
from artifyme.errors import ValidationError
from artifyme.schemas.transform import N8NCallback
from artifyme.services.stripe_service import StripeGateway, get_stripe
from artifyme.services.webhook_service import WebhookService

logger = structlog.get_logger()
router = APIRouter(prefix="/webhooks")


def _svc(db: AsyncSession = Depends(get_db)) -> WebhookService:
    return WebhookService(db)


def _json_body(raw: bytes) -> dict:
    try:
        body = json.loads(raw or b"{}")
    except ValueError:
        raise ValidationError("Invalid JSON payload", code="INVALID_PAYLOAD")
    if not isinstance(body, dict):
        raise ValidationError("Invalid JSON payload", code="INVALID_PAYLOAD")
    return body


@router.post("/n8n/transformation-complete")
async def n8n_transformation_complete(
    request: Request,
    x_n8n_signature: Optional[str] = Header(None),
    svc: WebhookService = Depends(_svc),
):
    """n8n reports a job's outcome: {jobId, status, outputUrl?, error?}."""
    raw = await request.body()
    svc.verify_n8n_signature(raw, x_n8n_signature)

    body = _json_body(raw)
    try:
        callback = N8NCallback.model_validate(body)
    except pydantic.ValidationError:
        raise ValidationError("Missing jobId or status", code="INVALID_PAYLOAD")

    await svc.process_n8n(
        body, callback.job_id, callback.status, callback.output_url, callback.error
    )
    return {"success": True}


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    stripe: StripeGateway = Depends(get_stripe),
    svc: WebhookService = Depends(_svc),
):
    raw = await request.body()
    event = stripe.construct_event(raw, stripe_signature)
    status = await svc.process_stripe(event)
    return {"received": True, "status": status}


@router.post("/asaas")
async def asaas_webhook(
    request: Request,
    asaas_access_token: Optional[str] = Header(None),
    svc: WebhookService = Depends(_svc),
):
    svc.verify_asaas_token(asaas_access_token)
    body = _json_body(await request.body())
    status = await svc.process_asaas(body)
    return {"received": True, "status": status}
