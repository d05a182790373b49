"""Auth API — Keycloak-backed login, registration, and account recovery.

Learn: The API never stores passwords. Login and registration forward to
Keycloak (password grant, admin user creation) and hand its tokens back
to the frontend. The recovery flows (password reset, reactivation) are
ours: single-use emailed tokens, then an admin call to Keycloak.

All routes here are open; /verify reads its own Bearer header.
"""

from typing import Optional

import httpx
import structlog
from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from artifyme.auth.dependencies import bearer_token
from artifyme.auth.jwt import TokenError, decode_unverified, user_summary
from artifyme.config import settings
from artifyme.db.engine import get_db
from artifyme.errors import ArtifyError
from artifyme.schemas.auth import (
    AuthConfig,
    EmailRequest,
    LoginRequest,
    LogoutRequest,
    PasswordResetConfirm,
    ReactivateConfirm,
    RefreshRequest,
    RegisterRequest,
    SessionTokens,
    TokenExchange,
    UserSummary,
    VerifyResponse,
)
from artifyme.schemas.common import Message
from artifyme.services.account_service import AccountService
from artifyme.services.keycloak_service import KeycloakClient, KeycloakError, get_keycloak
from artifyme.services.mail_service import Mailer, get_mailer

logger = structlog.get_logger()
router = APIRouter(prefix="/auth")

RESET_REQUESTED = "If the email exists, you will receive instructions to reset your password."
REACTIVATION_REQUESTED = "If the email exists, we will send reactivation instructions."


def _accounts(
    db: AsyncSession = Depends(get_db),
    keycloak: KeycloakClient = Depends(get_keycloak),
    mailer: Mailer = Depends(get_mailer),
) -> AccountService:
    return AccountService(db, keycloak, mailer)


def _session_tokens(tokens: dict, fallback_name: Optional[str] = None, **extra) -> SessionTokens:
    try:
        claims = decode_unverified(tokens["access_token"])
    except (KeyError, TokenError):
        claims = {}
    return SessionTokens(
        access_token=tokens.get("access_token"),
        refresh_token=tokens.get("refresh_token"),
        expires_in=tokens.get("expires_in"),
        user=UserSummary(**user_summary(claims, fallback_name)),
        **extra,
    )


# ─── OIDC passthrough ────────────────────────────────────


@router.get("/config", response_model=AuthConfig)
async def auth_config():
    """What the frontend needs to start the Keycloak redirect flow."""
    return AuthConfig(
        url=settings.keycloak_url,
        realm=settings.keycloak_realm,
        client_id=settings.keycloak_client_id,
    )


@router.post("/token")
async def exchange_token(
    body: TokenExchange, keycloak: KeycloakClient = Depends(get_keycloak)
):
    """Exchange an authorization code for Keycloak tokens."""
    try:
        return await keycloak.exchange_code(body.code, body.redirect_uri)
    except KeycloakError as e:
        raise HTTPException(
            status_code=400,
            detail=f"Failed to exchange token: {e.description or e.error or 'unknown error'}",
        )


@router.post("/refresh")
async def refresh_token(
    body: RefreshRequest, keycloak: KeycloakClient = Depends(get_keycloak)
):
    try:
        return await keycloak.refresh(body.refresh_token)
    except KeycloakError as e:
        raise HTTPException(
            status_code=401,
            detail=f"Failed to refresh token: {e.description or e.error or 'unknown error'}",
        )


@router.post("/logout", response_model=Message)
async def logout(
    body: Optional[LogoutRequest] = None,
    keycloak: KeycloakClient = Depends(get_keycloak),
):
    """End the Keycloak session. Always succeeds from the client's view."""
    if body and body.refresh_token:
        try:
            await keycloak.logout(body.refresh_token)
        except (KeycloakError, httpx.HTTPError) as e:
            logger.warning("auth.logout.provider_failed", error=str(e))
    return Message(message="Logged out successfully")


@router.get("/verify", response_model=VerifyResponse)
async def verify(
    authorization: Optional[str] = Header(None),
    keycloak: KeycloakClient = Depends(get_keycloak),
):
    token = bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="No token provided")
    try:
        claims = await keycloak.introspect(token)
    except (KeycloakError, httpx.HTTPError) as e:
        logger.error("auth.verify.failed", error=str(e))
        raise HTTPException(status_code=500, detail="Verification failed")
    if claims is None:
        raise HTTPException(status_code=401, detail="Token is not active")
    return VerifyResponse(valid=True, user=UserSummary(**user_summary(claims)))


# ─── Direct login / registration ─────────────────────────


@router.post("/login", response_model=SessionTokens)
async def login(body: LoginRequest, keycloak: KeycloakClient = Depends(get_keycloak)):
    try:
        tokens = await keycloak.password_grant(body.email, body.password)
    except KeycloakError as e:
        if e.error == "invalid_grant":
            raise HTTPException(status_code=401, detail="Invalid email or password")
        raise HTTPException(
            status_code=400,
            detail=f"Login failed: {e.description or 'unknown error'}",
        )
    logger.info("auth.login.succeeded")
    return _session_tokens(tokens)


@router.post("/register", response_model=SessionTokens, status_code=201)
async def register(
    body: RegisterRequest, keycloak: KeycloakClient = Depends(get_keycloak)
):
    """Create the Keycloak user, then log them straight in.

    Learn: If the automatic login fails (e.g. the realm requires email
    verification), the account still exists, so the answer is 201 without
    tokens.
    """
    email = str(body.email).strip().lower()
    try:
        user_id = await keycloak.create_user(body.name, email, body.password)
    except KeycloakError as e:
        if e.upstream_status == 409:
            raise HTTPException(status_code=409, detail="This email is already registered")
        if e.upstream_status in (400, 403, 422):
            logger.warning("auth.register.rejected", status=e.upstream_status, error=e.description)
            raise HTTPException(status_code=400, detail="Could not create the account")
        logger.error("auth.register.admin_failed", error=str(e))
        raise HTTPException(status_code=500, detail="Failed to create user")

    logger.info("auth.register.created", keycloak_id=user_id)

    try:
        tokens = await keycloak.password_grant(email, body.password)
    except KeycloakError as e:
        logger.info("auth.register.auto_login_failed", error=e.error)
        return SessionTokens(
            user=UserSummary(id=user_id, email=email, name=body.name),
            message="Account created successfully",
        )
    return _session_tokens(tokens, fallback_name=body.name, message="Account created successfully")


# ─── Account recovery ────────────────────────────────────


@router.post("/password-reset", response_model=Message)
async def password_reset(body: EmailRequest, svc: AccountService = Depends(_accounts)):
    """Always the same answer, whether or not the email is known."""
    try:
        await svc.request_password_reset(str(body.email))
    except ArtifyError as e:
        logger.error("auth.password_reset.request_failed", error=e.message)
    return Message(message=RESET_REQUESTED)


@router.post("/password-reset/confirm", response_model=Message)
async def password_reset_confirm(
    body: PasswordResetConfirm, svc: AccountService = Depends(_accounts)
):
    try:
        await svc.confirm_password_reset(body.token, body.new_password)
    except (ArtifyError, httpx.HTTPError) as e:
        logger.info("auth.password_reset.confirm_rejected", error=str(e))
        raise HTTPException(status_code=400, detail="Invalid or expired token")
    return Message(message="Password updated successfully.")


@router.post("/reactivate-request", response_model=Message)
async def reactivate_request(body: EmailRequest, svc: AccountService = Depends(_accounts)):
    try:
        await svc.request_reactivation(str(body.email))
    except ArtifyError as e:
        logger.error("auth.reactivation.request_failed", error=e.message)
    return Message(message=REACTIVATION_REQUESTED)


@router.post("/reactivate-confirm", response_model=Message)
async def reactivate_confirm(body: ReactivateConfirm, svc: AccountService = Depends(_accounts)):
    try:
        await svc.confirm_reactivation(body.token)
    except (ArtifyError, httpx.HTTPError) as e:
        logger.info("auth.reactivation.confirm_rejected", error=str(e))
        raise HTTPException(status_code=400, detail="Invalid or expired token")
    return Message(message="Account reactivated successfully.")
