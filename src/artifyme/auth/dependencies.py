"""FastAPI auth dependencies.

Learn: These are used as Depends() in route handlers to extract and
validate the current user from the request.

Every request carries a Keycloak access token as a Bearer header. The
token is checked by introspection (Keycloak is the only authority, so a
disabled account stops working immediately), and the result is cached in
Redis for a short TTL keyed by the token's SHA-256 so a burst of requests
costs one introspection. The cache entry also remembers whether the local
user row is soft deleted ("blocked"), which turns into a 403.
"""

import hashlib
from typing import Any, Optional

import httpx
import redis.asyncio as aioredis
import structlog
from fastapi import Depends, Header, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from artifyme.auth.jwt import roles_from_claims
from artifyme.config import settings
from artifyme.db.engine import get_db
from artifyme.db.models import User
from artifyme.errors import AuthenticationError, AuthorizationError, ProviderError
from artifyme.realtime.pubsub import delete_cache, get_cache, set_cache
from artifyme.services.keycloak_service import KeycloakClient, KeycloakError, get_keycloak

logger = structlog.get_logger()


class CurrentUser:
    """The authenticated Keycloak identity making the request.

    Learn: id is the Keycloak subject, not the local users.id. Services
    resolve (and lazily create) the local row from it. The raw token is
    kept so account deletion can drop its own cache entry.
    """

    def __init__(
        self,
        id: str,
        email: str = "",
        name: str = "",
        roles: Optional[list[str]] = None,
        token: Optional[str] = None,
    ):
        self.id = id
        self.email = email
        self.name = name
        self.roles = roles or []
        self.token = token

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "roles": self.roles,
            "is_admin": self.is_admin,
        }

    @classmethod
    def from_claims(cls, claims: dict[str, Any], token: Optional[str] = None) -> "CurrentUser":
        return cls(
            id=claims["sub"],
            email=claims.get("email") or "",
            name=claims.get("name") or claims.get("preferred_username") or "",
            roles=roles_from_claims(claims),
            token=token,
        )


def auth_cache_key(token: str) -> str:
    return f"auth:v1:{hashlib.sha256(token.encode()).hexdigest()}"


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        return None
    return token


async def _cache_read(key: str) -> Optional[dict]:
    try:
        return await get_cache(key)
    except (RuntimeError, aioredis.RedisError) as e:
        logger.debug("auth.cache.unavailable", error=str(e))
        return None


async def _cache_write(key: str, value: dict) -> None:
    try:
        await set_cache(key, value, settings.auth_cache_ttl_seconds)
    except (RuntimeError, aioredis.RedisError) as e:
        logger.debug("auth.cache.unavailable", error=str(e))


async def forget_token(token: Optional[str]) -> None:
    """Drop a token's cached auth result (after account deletion)."""
    if not token:
        return
    try:
        await delete_cache(auth_cache_key(token))
    except (RuntimeError, aioredis.RedisError) as e:
        logger.debug("auth.cache.unavailable", error=str(e))


async def authenticate_token(
    token: str, keycloak: KeycloakClient, db: AsyncSession
) -> CurrentUser:
    """Resolve a bearer token to a CurrentUser.

    Raises AuthenticationError (inactive token), AuthorizationError
    (soft-deleted account) or ProviderError (introspection unreachable).
    Shared by the HTTP dependency and the WebSocket handshake.
    """
    key = auth_cache_key(token)
    cached = await _cache_read(key)
    if cached:
        if cached.get("blocked"):
            raise AuthorizationError("Account deactivated")
        u = cached["user"]
        return CurrentUser(u["id"], u.get("email", ""), u.get("name", ""), u.get("roles"), token)

    try:
        claims = await keycloak.introspect(token)
    except (KeycloakError, httpx.HTTPError) as e:
        logger.error("auth.introspection.failed", error=str(e))
        raise ProviderError("Auth error")

    if claims is None:
        raise AuthenticationError("Invalid or expired token")

    user = CurrentUser.from_claims(claims, token)

    result = await db.execute(select(User.deleted_at).where(User.keycloak_id == user.id))
    blocked = result.scalar_one_or_none() is not None

    await _cache_write(key, {"user": user.to_dict(), "blocked": blocked})

    if blocked:
        raise AuthorizationError("Account deactivated")
    return user


async def get_current_user(
    authorization: Optional[str] = Header(None),
    keycloak: KeycloakClient = Depends(get_keycloak),
    db: AsyncSession = Depends(get_db),
) -> CurrentUser:
    """Extract the current user (required — 401 if no valid token)."""
    token = bearer_token(authorization)
    if not token:
        raise HTTPException(
            status_code=401,
            detail="Authorization header missing or invalid",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return await authenticate_token(token, keycloak, db)
    except AuthenticationError as e:
        raise HTTPException(
            status_code=401,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"},
        )
    except AuthorizationError as e:
        raise HTTPException(status_code=403, detail=e.message)
    except ProviderError as e:
        raise HTTPException(status_code=500, detail=e.message)


async def require_admin(
    user: CurrentUser = Depends(get_current_user),
) -> CurrentUser:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
