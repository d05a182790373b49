"""Access-token claim helpers.

Learn: Keycloak signs the tokens and the API verifies them by
introspection, never locally. After a password grant we already trust the
token (it came straight from Keycloak over TLS), so the claims are read
without signature verification just to build the user summary returned
by /api/auth/login and /api/auth/register.
"""

from typing import Any, Optional

import jwt

from artifyme.config import settings


class TokenError(Exception):
    """Raised when a token cannot be decoded."""


def decode_unverified(token: str) -> dict[str, Any]:
    """Decode a JWT payload without verifying signature or expiry."""
    try:
        return jwt.decode(token, options={"verify_signature": False})
    except jwt.InvalidTokenError as e:
        raise TokenError(f"Invalid token: {e}")


def roles_from_claims(claims: dict[str, Any]) -> list[str]:
    """Realm roles plus this client's roles, deduplicated, order kept."""
    realm_roles = (claims.get("realm_access") or {}).get("roles") or []
    client_roles = (
        (claims.get("resource_access") or {})
        .get(settings.keycloak_client_id, {})
        .get("roles")
        or []
    )
    return list(dict.fromkeys([*realm_roles, *client_roles]))


def user_summary(claims: dict[str, Any], fallback_name: Optional[str] = None) -> dict[str, Any]:
    return {
        "id": claims.get("sub"),
        "email": claims.get("email"),
        "name": claims.get("name") or claims.get("preferred_username") or fallback_name,
        "roles": roles_from_claims(claims),
    }
