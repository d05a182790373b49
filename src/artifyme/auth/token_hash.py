"""Single-use account token secrets (password reset, reactivation).

Learn: The token handed to the user is "<row id>.<secret>". The row id
makes lookup a primary-key fetch; only a bcrypt hash of the secret is
stored, so a leaked table cannot be replayed. bcrypt salts automatically
and truncates at 72 bytes, well above our 64-char secrets.
"""

import secrets
import uuid
from typing import Optional

import bcrypt


def new_secret() -> str:
    """A URL-safe random secret (48 bytes of entropy)."""
    return secrets.token_urlsafe(48)


def hash_secret(secret: str) -> str:
    pw_bytes = secret.encode("utf-8")[:72]
    return bcrypt.hashpw(pw_bytes, bcrypt.gensalt(rounds=10)).decode("utf-8")


def verify_secret(secret: str, secret_hash: str) -> bool:
    try:
        return bcrypt.checkpw(secret.encode("utf-8")[:72], secret_hash.encode("utf-8"))
    except (ValueError, TypeError):
        return False


def compose_token(token_id: uuid.UUID, secret: str) -> str:
    return f"{token_id}.{secret}"


def split_token(token: str) -> Optional[tuple[uuid.UUID, str]]:
    """Split "<id>.<secret>". Returns None when the token is malformed."""
    token_id, sep, secret = token.partition(".")
    if not sep or not secret:
        return None
    try:
        return uuid.UUID(token_id), secret
    except ValueError:
        return None
