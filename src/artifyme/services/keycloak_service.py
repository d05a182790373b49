"""Keycloak client — token introspection, OIDC grants, and admin calls.

Learn: Keycloak speaks two dialects. The OIDC endpoints under
/realms/{realm}/protocol/openid-connect take form-encoded bodies and
client credentials; the admin REST API under /admin/realms/{realm} takes
JSON and a bearer admin token. The admin token is fetched per call (client
credentials first, falling back to the admin user's password grant), which
keeps the client stateless.

Every call uses the configured timeout (8s by default). Non-2xx answers
raise KeycloakError carrying the upstream status and OAuth error code so
routes can tell "invalid_grant" from "user exists" from a real outage.
"""

from typing import Any, Optional

import httpx
import structlog

from artifyme.config import settings
from artifyme.errors import ProviderError

logger = structlog.get_logger()


class KeycloakError(ProviderError):
    """A Keycloak endpoint answered with a non-2xx status."""

    def __init__(
        self,
        message: str,
        upstream_status: int = 0,
        error: Optional[str] = None,
        description: Optional[str] = None,
    ):
        super().__init__(message)
        self.upstream_status = upstream_status
        self.error = error
        self.description = description


class KeycloakClient:
    """Thin async wrapper over the Keycloak HTTP API."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=settings.keycloak_timeout_seconds,
            transport=self._transport,
        )

    @property
    def _oidc_url(self) -> str:
        return f"{settings.keycloak_realm_url}/protocol/openid-connect"

    @staticmethod
    def _raise_for(resp: httpx.Response, what: str) -> None:
        if resp.is_success:
            return
        error = description = None
        try:
            body = resp.json()
            if isinstance(body, dict):
                error = body.get("error")
                description = body.get("error_description") or body.get("errorMessage")
        except ValueError:
            pass
        raise KeycloakError(
            f"Keycloak {what} failed ({resp.status_code})",
            upstream_status=resp.status_code,
            error=error,
            description=description,
        )

    # ─── OIDC ───────────────────────────────────────────

    async def introspect(self, token: str) -> Optional[dict[str, Any]]:
        """Introspect an access token. Returns the claims, or None when inactive."""
        async with self._client() as client:
            resp = await client.post(
                f"{self._oidc_url}/token/introspect",
                data={
                    "token": token,
                    "client_id": settings.keycloak_client_id,
                    "client_secret": settings.keycloak_client_secret,
                },
            )
        self._raise_for(resp, "introspection")
        data = resp.json()
        if not data.get("active") or not data.get("sub"):
            return None
        return data

    async def _token(self, form: dict[str, str], what: str) -> dict[str, Any]:
        async with self._client() as client:
            resp = await client.post(f"{self._oidc_url}/token", data=form)
        self._raise_for(resp, what)
        return resp.json()

    async def exchange_code(self, code: str, redirect_uri: str) -> dict[str, Any]:
        return await self._token(
            {
                "grant_type": "authorization_code",
                "client_id": settings.keycloak_client_id,
                "client_secret": settings.keycloak_client_secret,
                "code": code,
                "redirect_uri": redirect_uri,
            },
            "code exchange",
        )

    async def refresh(self, refresh_token: str) -> dict[str, Any]:
        return await self._token(
            {
                "grant_type": "refresh_token",
                "client_id": settings.keycloak_client_id,
                "client_secret": settings.keycloak_client_secret,
                "refresh_token": refresh_token,
            },
            "token refresh",
        )

    async def password_grant(self, username: str, password: str) -> dict[str, Any]:
        return await self._token(
            {
                "grant_type": "password",
                "client_id": settings.keycloak_client_id,
                "client_secret": settings.keycloak_client_secret,
                "username": username,
                "password": password,
                "scope": "openid profile email",
            },
            "login",
        )

    async def logout(self, refresh_token: str) -> None:
        """End the session that owns this refresh token."""
        async with self._client() as client:
            resp = await client.post(
                f"{self._oidc_url}/logout",
                data={
                    "client_id": settings.keycloak_client_id,
                    "client_secret": settings.keycloak_client_secret,
                    "refresh_token": refresh_token,
                },
            )
        self._raise_for(resp, "logout")

    # ─── Admin API ──────────────────────────────────────

    async def admin_token(self) -> str:
        """Get an admin access token.

        Learn: Tries the service-account (client credentials) grant first.
        Realms without a service account fall back to the admin user's
        password grant on admin-cli.
        """
        try:
            data = await self._token(
                {
                    "grant_type": "client_credentials",
                    "client_id": settings.keycloak_admin_client_id,
                    "client_secret": settings.keycloak_admin_client_secret,
                },
                "admin token",
            )
        except KeycloakError:
            logger.info("keycloak.admin_token.fallback_password_grant")
            data = await self._token(
                {
                    "grant_type": "password",
                    "client_id": "admin-cli",
                    "username": settings.keycloak_admin_user,
                    "password": settings.keycloak_admin_password,
                },
                "admin token",
            )
        return data["access_token"]

    async def _admin(
        self, method: str, path: str, json: Optional[dict] = None, what: str = "admin call"
    ) -> httpx.Response:
        token = await self.admin_token()
        async with self._client() as client:
            resp = await client.request(
                method,
                f"{settings.keycloak_admin_url}{path}",
                json=json,
                headers={"Authorization": f"Bearer {token}"},
            )
        self._raise_for(resp, what)
        return resp

    async def create_user(self, name: str, email: str, password: str) -> Optional[str]:
        """Create an enabled user with a permanent password.

        Returns the new Keycloak user id (from the Location header).
        A 409 KeycloakError means the email is taken.
        """
        first_name, _, last_name = name.partition(" ")
        resp = await self._admin(
            "POST",
            "/users",
            json={
                "username": email,
                "email": email,
                "firstName": first_name,
                "lastName": last_name,
                "enabled": True,
                "emailVerified": True,
                "credentials": [
                    {"type": "password", "value": password, "temporary": False}
                ],
                "realmRoles": ["user"],
            },
            what="create user",
        )
        location = resp.headers.get("Location")
        return location.rstrip("/").rsplit("/", 1)[-1] if location else None

    async def reset_password(self, keycloak_id: str, new_password: str) -> None:
        await self._admin(
            "PUT",
            f"/users/{keycloak_id}/reset-password",
            json={"type": "password", "value": new_password, "temporary": False},
            what="reset password",
        )

    async def logout_user(self, keycloak_id: str) -> None:
        """Kill every session of a user."""
        await self._admin("POST", f"/users/{keycloak_id}/logout", what="logout user")

    async def set_enabled(self, keycloak_id: str, enabled: bool) -> None:
        await self._admin(
            "PUT",
            f"/users/{keycloak_id}",
            json={"enabled": enabled},
            what="enable user" if enabled else "disable user",
        )

    async def disable_user(self, keycloak_id: str) -> None:
        await self.set_enabled(keycloak_id, False)

    async def enable_user(self, keycloak_id: str) -> None:
        await self.set_enabled(keycloak_id, True)

    async def disable_and_logout(self, keycloak_id: str) -> None:
        """Log out (best effort), then disable. Only the disable may fail the call."""
        try:
            await self.logout_user(keycloak_id)
        except (KeycloakError, httpx.HTTPError) as e:
            logger.info("keycloak.logout_user.skipped", keycloak_id=keycloak_id, error=str(e))
        await self.disable_user(keycloak_id)


_keycloak = KeycloakClient()


def get_keycloak() -> KeycloakClient:
    """FastAPI dependency — the process-wide Keycloak client."""
    return _keycloak
