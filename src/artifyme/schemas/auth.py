"""Pydantic schemas for the /api/auth endpoints.

Learn: Keycloak does the real work; these schemas only validate what the
frontend sends before it is forwarded, and shape what comes back. Token
responses from the code exchange and refresh grants are passed through
as-is, since they are Keycloak's own format.
"""

from typing import Optional

from pydantic import BaseModel, EmailStr, Field


class AuthConfig(BaseModel):
    url: str
    realm: str
    client_id: str


class TokenExchange(BaseModel):
    code: str = Field(..., min_length=1)
    redirect_uri: str = Field(..., pattern=r"^https?://")


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=8)


class UserSummary(BaseModel):
    id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    roles: list[str] = Field(default_factory=list)


class SessionTokens(BaseModel):
    """What /login and /register return after a successful password grant."""
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    user: UserSummary
    message: Optional[str] = None


class VerifyResponse(BaseModel):
    valid: bool
    user: Optional[UserSummary] = None


# ─── Account tokens ──────────────────────────────────────

class EmailRequest(BaseModel):
    email: EmailStr


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=10)
    new_password: str = Field(..., min_length=8)


class ReactivateConfirm(BaseModel):
    token: str = Field(..., min_length=10)
