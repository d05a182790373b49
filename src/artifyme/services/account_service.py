"""Account service — password reset and account reactivation by email link.

Learn: Both flows share one shape:
1. request: look the user up by normalized email, create a token row
   holding a bcrypt hash of a random secret, and email
   "<frontend>/<path>?token=<row id>.<secret>"
2. confirm: fetch the row by id, check unused + unexpired + user state,
   verify the secret, then act

Requests never reveal whether an email exists (the routes always answer
the same message), and confirmations fail with one generic error.
"""

from datetime import timedelta
from typing import Optional, Type, Union
from urllib.parse import quote

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from artifyme.auth.token_hash import compose_token, hash_secret, new_secret, split_token, verify_secret
from artifyme.config import settings
from artifyme.db.models import AccountReactivationToken, PasswordResetToken, User, as_utc, utcnow
from artifyme.errors import ValidationError
from artifyme.services.keycloak_service import KeycloakClient
from artifyme.services.mail_service import Mailer
from artifyme.services.user_service import UserService

logger = structlog.get_logger()

TokenModel = Union[PasswordResetToken, AccountReactivationToken]


class InvalidTokenError(ValidationError):
    def __init__(self):
        super().__init__("Invalid or expired token", code="INVALID_TOKEN")


def _link(path: str, token: str) -> str:
    return f"{settings.frontend_url.rstrip('/')}/{path}?token={quote(token, safe='')}"


class AccountService:
    def __init__(self, db: AsyncSession, keycloak: KeycloakClient, mailer: Mailer):
        self.db = db
        self.keycloak = keycloak
        self.mailer = mailer
        self.users = UserService(db)

    async def _issue(self, model: Type[TokenModel], user: User, ttl_minutes: int) -> str:
        secret = new_secret()
        record = model(
            user_id=user.id,
            token_hash=hash_secret(secret),
            expires_at=utcnow() + timedelta(minutes=ttl_minutes),
        )
        self.db.add(record)
        await self.db.commit()
        return compose_token(record.id, secret)

    async def _redeem(self, model: Type[TokenModel], token: str) -> tuple[TokenModel, User]:
        """Fetch and check a token. Raises InvalidTokenError on any mismatch."""
        parts = split_token(token.strip())
        if parts is None:
            raise InvalidTokenError()
        token_id, secret = parts

        record = await self.db.get(model, token_id)
        if record is None or record.used_at is not None:
            raise InvalidTokenError()
        if as_utc(record.expires_at) < utcnow():
            raise InvalidTokenError()
        if not verify_secret(secret, record.token_hash):
            raise InvalidTokenError()

        user = await self.db.get(User, record.user_id)
        return record, user

    # ─── Password reset ────────────────────────────────────

    async def request_password_reset(self, email: str) -> Optional[str]:
        """Email a reset link. Returns the token (None when nothing was sent)."""
        user = await self.users.get_by_email(email)
        if user is None or user.deleted_at is not None:
            logger.info("account.password_reset.skipped")
            return None

        ttl = settings.password_reset_ttl_minutes
        token = await self._issue(PasswordResetToken, user, ttl)
        link = _link("reset-password", token)
        await self.mailer.send(
            to=user.email,
            subject="Redefinição de senha",
            html=(
                "<p>Recebemos uma solicitação para redefinir sua senha.</p>"
                f"<p>Se foi você, clique no link abaixo (expira em {ttl} minutos):</p>"
                f'<p><a href="{link}">{link}</a></p>'
                "<p>Se você não solicitou, ignore este email.</p>"
            ),
            categories=["password-reset"],
        )
        logger.info("account.password_reset.sent", user_id=str(user.id))
        return token

    async def confirm_password_reset(self, token: str, new_password: str) -> None:
        record, user = await self._redeem(PasswordResetToken, token)
        if user is None or user.deleted_at is not None:
            raise InvalidTokenError()

        # Burn the token before touching Keycloak so it cannot be replayed.
        record.used_at = utcnow()
        await self.db.commit()

        await self.keycloak.reset_password(user.keycloak_id, new_password)
        logger.info("account.password_reset.confirmed", user_id=str(user.id))

    # ─── Reactivation ──────────────────────────────────────

    async def request_reactivation(self, email: str) -> Optional[str]:
        """Email a reactivation link, only for soft-deleted accounts."""
        user = await self.users.get_by_email(email)
        if user is None or user.deleted_at is None:
            logger.info("account.reactivation.skipped")
            return None

        ttl = settings.reactivation_ttl_minutes
        token = await self._issue(AccountReactivationToken, user, ttl)
        link = _link("reactivate", token)
        await self.mailer.send(
            to=user.email,
            subject="Reativação de conta",
            html=(
                "<p>Recebemos uma solicitação para reativar sua conta.</p>"
                f"<p>Se foi você, clique no link (expira em {ttl} minutos):</p>"
                f'<p><a href="{link}">{link}</a></p>'
                "<p>Se você não solicitou, ignore.</p>"
            ),
            categories=["reactivation"],
        )
        logger.info("account.reactivation.sent", user_id=str(user.id))
        return token

    async def confirm_reactivation(self, token: str) -> None:
        """Enable in Keycloak, then burn the token and clear deleted_at together.

        If the database write fails, the Keycloak account is disabled again.
        """
        record, user = await self._redeem(AccountReactivationToken, token)
        if user is None or user.deleted_at is None:
            raise InvalidTokenError()

        # Rollback expires every instance, so read these up front.
        user_id, keycloak_id = str(user.id), user.keycloak_id
        await self.keycloak.enable_user(keycloak_id)

        try:
            record.used_at = utcnow()
            user.deleted_at = None
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.error("account.reactivation.db_failed", user_id=user_id)
            await self.keycloak.disable_user(keycloak_id)
            raise

        logger.info("account.reactivation.confirmed", user_id=user_id)
