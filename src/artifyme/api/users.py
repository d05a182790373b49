"""Current-user API routes — profile, credits, stats, account deletion."""

import httpx
import structlog
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from artifyme.api.deps import current_account
from artifyme.auth.dependencies import CurrentUser, forget_token, get_current_user
from artifyme.db.engine import get_db
from artifyme.db.models import User, as_utc
from artifyme.errors import ProviderError
from artifyme.schemas.common import Message
from artifyme.schemas.user import (
    CreditsRead,
    SubscriptionSummary,
    UserProfile,
    UserStats,
    UserUpdate,
)
from artifyme.services.keycloak_service import KeycloakClient, KeycloakError, get_keycloak
from artifyme.services.user_service import UserService

logger = structlog.get_logger()
router = APIRouter(prefix="/users")


def _svc(db: AsyncSession = Depends(get_db)) -> UserService:
    return UserService(db)


async def _profile(user: User, identity: CurrentUser, svc: UserService) -> UserProfile:
    subscription = await svc.get_subscription(user)
    return UserProfile(
        id=user.id,
        email=user.email,
        name=user.name,
        credits=user.credits,
        preferences=user.preferences or {},
        is_admin=identity.is_admin,
        subscription=SubscriptionSummary.model_validate(subscription) if subscription else None,
        created_at=as_utc(user.created_at),
    )


@router.get("/me", response_model=UserProfile)
async def get_me(
    identity: CurrentUser = Depends(get_current_user),
    user: User = Depends(current_account),
    svc: UserService = Depends(_svc),
):
    return await _profile(user, identity, svc)


@router.patch("/me", response_model=UserProfile)
async def update_me(
    body: UserUpdate,
    identity: CurrentUser = Depends(get_current_user),
    user: User = Depends(current_account),
    svc: UserService = Depends(_svc),
):
    preferences = body.preferences.model_dump(exclude_none=True) if body.preferences else None
    await svc.update_profile(user, name=body.name, preferences=preferences)
    return await _profile(user, identity, svc)


@router.get("/credits", response_model=CreditsRead)
async def get_credits(user: User = Depends(current_account)):
    return CreditsRead(credits=user.credits)


@router.get("/stats", response_model=UserStats)
async def get_stats(
    user: User = Depends(current_account),
    svc: UserService = Depends(_svc),
):
    return await svc.stats(user)


@router.delete("/me", response_model=Message)
async def delete_me(
    identity: CurrentUser = Depends(get_current_user),
    svc: UserService = Depends(_svc),
    keycloak: KeycloakClient = Depends(get_keycloak),
):
    """Deactivate the account (soft delete + Keycloak disable).

    Learn: The local row is stamped first so every later request gets a
    403 even if Keycloak is slow to catch up. The caller's cached auth
    result is dropped so the block applies to this token immediately.
    """
    await svc.soft_delete(identity.id)
    try:
        await keycloak.disable_and_logout(identity.id)
    except (KeycloakError, httpx.HTTPError) as e:
        logger.error("user.deactivate.keycloak_failed", keycloak_id=identity.id, error=str(e))
        raise ProviderError("Failed to deactivate account", code="DEACTIVATION_FAILED")
    finally:
        await forget_token(identity.token)

    return Message(message="Account deactivated")
