"""Admin API routes — mounted behind require_admin in api/__init__.py."""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from artifyme.api.deps import PageParams
from artifyme.auth.dependencies import CurrentUser, require_admin
from artifyme.db.engine import get_db
from artifyme.db.models import as_utc
from artifyme.schemas.admin import AddCredits, CreditsAdded
from artifyme.schemas.common import Message, Pagination
from artifyme.services.admin_service import AdminService
from artifyme.services.keycloak_service import KeycloakClient, get_keycloak
from artifyme.services.webhook_service import WebhookService

router = APIRouter(prefix="/admin")


def _svc(db: AsyncSession = Depends(get_db)) -> AdminService:
    return AdminService(db)


@router.get("/dashboard")
async def dashboard(svc: AdminService = Depends(_svc)):
    return await svc.dashboard()


@router.get("/users")
async def list_users(
    paging: PageParams = Depends(),
    search: Optional[str] = Query(None, max_length=100),
    svc: AdminService = Depends(_svc),
):
    users, total = await svc.list_users(paging.page, paging.limit, search)
    return {
        "users": users,
        "pagination": Pagination.build(paging.page, paging.limit, total),
    }


@router.get("/orders")
async def list_orders(
    paging: PageParams = Depends(),
    status: Optional[str] = Query(None, pattern=r"^(pending|completed|failed|refunded)$"),
    svc: AdminService = Depends(_svc),
):
    orders, total = await svc.list_orders(paging.page, paging.limit, status)
    return {
        "orders": orders,
        "pagination": Pagination.build(paging.page, paging.limit, total),
    }


@router.get("/transformations")
async def list_transformations(
    paging: PageParams = Depends(),
    status: Optional[str] = Query(None, pattern=r"^(pending|processing|completed|failed)$"),
    style: Optional[str] = Query(None),
    svc: AdminService = Depends(_svc),
):
    items, total = await svc.list_transformations(paging.page, paging.limit, status, style)
    return {
        "transformations": items,
        "pagination": Pagination.build(paging.page, paging.limit, total),
    }


@router.post("/users/{user_id}/credits", response_model=CreditsAdded)
async def add_credits(
    user_id: uuid.UUID,
    body: AddCredits,
    admin: CurrentUser = Depends(require_admin),
    svc: AdminService = Depends(_svc),
):
    user = await svc.add_credits(admin.id, user_id, body.amount, body.reason)
    return CreditsAdded(
        message=f"Added {body.amount} credits to user",
        new_balance=user.credits,
    )


@router.post("/users/{keycloak_id}/reactivate", response_model=Message)
async def reactivate_user(
    keycloak_id: str,
    admin: CurrentUser = Depends(require_admin),
    svc: AdminService = Depends(_svc),
    keycloak: KeycloakClient = Depends(get_keycloak),
):
    await svc.reactivate_user(admin.id, keycloak_id, keycloak)
    return Message(message="User reactivated")


@router.get("/webhooks/deliveries")
async def list_webhook_deliveries(
    provider: Optional[str] = Query(None, pattern=r"^(n8n|stripe|asaas)$"),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    """Recent provider callbacks and how each one was handled."""
    deliveries = await WebhookService(db).list_deliveries(provider, limit)
    return {
        "deliveries": [
            {
                "id": d.id,
                "provider": d.provider,
                "event_type": d.event_type,
                "status": d.status,
                "error": d.error,
                "created_at": as_utc(d.created_at),
            }
            for d in deliveries
        ]
    }
