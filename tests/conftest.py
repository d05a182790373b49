"""Test fixtures — in-memory database, fake Redis, fake providers.

Learn: Testing pattern for async SQLAlchemy + FastAPI without services:

1. Each test gets a fresh in-memory SQLite database (aiosqlite + StaticPool
   so every connection sees the same memory), tables built from the models
2. One session is shared by the test and the app (get_db is overridden),
   so rows the app commits are visible to assertions immediately
3. Redis is a fakeredis instance swapped into the pubsub module
4. Keycloak, n8n, Stripe, Asaas and SendGrid are replaced through their
   get_xxx() dependencies with small recording fakes

Nothing leaves the process, and nothing survives a test.
"""

import uuid
from typing import Any, Optional

import fakeredis
import fakeredis.aioredis
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from artifyme.auth.dependencies import CurrentUser, get_current_user
from artifyme.db.engine import get_db
from artifyme.db.models import Base, Subscription, User
from artifyme.main import app
from artifyme.realtime import pubsub
from artifyme.services.asaas_service import AsaasError, get_asaas
from artifyme.services.keycloak_service import KeycloakError, get_keycloak
from artifyme.services.mail_service import get_mailer
from artifyme.services.n8n_service import N8NError, get_n8n
from artifyme.services.stripe_service import StripeGateway, StripeGatewayError, get_stripe

TEST_DB_URL = "sqlite+aiosqlite://"

USER_KEYCLOAK_ID = "kc-user-0001"


# ═══════════════════════════════════════════════════════════
# Provider fakes
# ═══════════════════════════════════════════════════════════


class FakeKeycloak:
    """Records admin calls; tokens map to introspection claims."""

    def __init__(self):
        self.active_tokens: dict[str, dict] = {}
        self.introspect_error: Optional[Exception] = None
        self.login_error: Optional[KeycloakError] = None
        self.create_error: Optional[KeycloakError] = None
        self.disable_error: Optional[KeycloakError] = None
        self.introspect_calls = 0
        self.access_token = "not-a-jwt"
        self.calls: list[tuple] = []

    async def introspect(self, token: str) -> Optional[dict]:
        self.introspect_calls += 1
        if self.introspect_error:
            raise self.introspect_error
        return self.active_tokens.get(token)

    async def exchange_code(self, code: str, redirect_uri: str) -> dict:
        self.calls.append(("exchange_code", code, redirect_uri))
        if code == "bad-code":
            raise KeycloakError("code exchange failed", upstream_status=400, error="invalid_grant")
        return {"access_token": "at", "refresh_token": "rt", "expires_in": 300}

    async def refresh(self, refresh_token: str) -> dict:
        self.calls.append(("refresh", refresh_token))
        return {"access_token": "at2", "refresh_token": "rt2", "expires_in": 300}

    async def password_grant(self, username: str, password: str) -> dict:
        self.calls.append(("password_grant", username))
        if self.login_error:
            raise self.login_error
        return {"access_token": self.access_token, "refresh_token": "rt", "expires_in": 300}

    async def logout(self, refresh_token: str) -> None:
        self.calls.append(("logout", refresh_token))

    async def create_user(self, name: str, email: str, password: str) -> str:
        self.calls.append(("create_user", email))
        if self.create_error:
            raise self.create_error
        return "kc-new-user"

    async def reset_password(self, keycloak_id: str, new_password: str) -> None:
        self.calls.append(("reset_password", keycloak_id))

    async def enable_user(self, keycloak_id: str) -> None:
        self.calls.append(("enable_user", keycloak_id))

    async def disable_user(self, keycloak_id: str) -> None:
        self.calls.append(("disable_user", keycloak_id))

    async def disable_and_logout(self, keycloak_id: str) -> None:
        self.calls.append(("disable_and_logout", keycloak_id))
        if self.disable_error:
            raise self.disable_error


class FakeN8N:
    def __init__(self):
        self.triggered: list[dict] = []
        self.fail = False

    async def trigger_transformation(
        self, job_id: str, image_base64: str, style: str, callback_url: str
    ) -> dict:
        if self.fail:
            raise N8NError("n8n returned 503")
        self.triggered.append(
            {"job_id": job_id, "image": image_base64, "style": style, "callback_url": callback_url}
        )
        return {}


class FakeAsaas:
    def __init__(self):
        self.payments: list[dict] = []
        self.subscriptions: list[dict] = []
        self.cancelled: list[str] = []
        self.fail = False

    async def create_payment(self, **kwargs) -> dict:
        if self.fail:
            raise AsaasError("Asaas is down")
        self.payments.append(kwargs)
        return {"payment_id": "pay_asaas_1", "payment_url": "https://asaas.test/i/pay_asaas_1"}

    async def create_subscription(self, **kwargs) -> dict:
        if self.fail:
            raise AsaasError("Asaas is down")
        self.subscriptions.append(kwargs)
        return {"subscription_id": "sub_asaas_1", "payment_url": "https://asaas.test/s/sub_asaas_1"}

    async def cancel_subscription(self, provider_subscription_id: str) -> None:
        if self.fail:
            raise AsaasError("Asaas is down")
        self.cancelled.append(provider_subscription_id)


class FakeStripe(StripeGateway):
    """Records checkouts; signature checking is the real StripeGateway one."""

    def __init__(self):
        self.checkouts: list[dict] = []
        self.cancelled: list[str] = []
        self.fail = False

    async def create_credits_checkout(self, **kwargs) -> dict:
        if self.fail:
            raise StripeGatewayError("Stripe is down")
        self.checkouts.append(kwargs)
        return {"payment_id": "cs_test_1", "payment_url": "https://checkout.stripe.test/cs_test_1"}

    async def create_subscription_checkout(self, **kwargs) -> dict:
        if self.fail:
            raise StripeGatewayError("Stripe is down")
        self.checkouts.append(kwargs)
        return {"payment_id": "cs_test_sub", "payment_url": "https://checkout.stripe.test/cs_test_sub"}

    async def cancel_at_period_end(self, provider_subscription_id: str) -> None:
        self.cancelled.append(provider_subscription_id)


class FakeMailer:
    def __init__(self):
        self.sent: list[dict[str, Any]] = []

    async def send(self, to, subject, html=None, text=None, categories=None) -> None:
        self.sent.append({"to": to, "subject": subject, "html": html, "text": text})


# ═══════════════════════════════════════════════════════════
# Infrastructure
# ═══════════════════════════════════════════════════════════


@pytest_asyncio.fixture()
async def db_session():
    """Per-test in-memory database with every table created."""
    engine = create_async_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session = AsyncSession(bind=engine, expire_on_commit=False)
    try:
        yield session
    finally:
        await session.close()
        await engine.dispose()


@pytest_asyncio.fixture()
async def redis():
    """A private fakeredis server wired in as the app's Redis pool."""
    r = fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    pubsub._redis = r
    try:
        yield r
    finally:
        pubsub._redis = None
        await r.aclose()


@pytest.fixture()
def keycloak():
    return FakeKeycloak()


@pytest.fixture()
def n8n():
    return FakeN8N()


@pytest.fixture()
def asaas():
    return FakeAsaas()


@pytest.fixture()
def stripe_gateway():
    return FakeStripe()


@pytest.fixture()
def mailer():
    return FakeMailer()


@pytest.fixture()
def identity():
    """The Keycloak identity the overridden get_current_user returns."""
    return CurrentUser(
        id=USER_KEYCLOAK_ID,
        email="ana@example.com",
        name="Ana Souza",
        roles=["user"],
        token="user-token",
    )


def _override_providers(keycloak, n8n, asaas, stripe_gateway, mailer, db_session):
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_keycloak] = lambda: keycloak
    app.dependency_overrides[get_n8n] = lambda: n8n
    app.dependency_overrides[get_asaas] = lambda: asaas
    app.dependency_overrides[get_stripe] = lambda: stripe_gateway
    app.dependency_overrides[get_mailer] = lambda: mailer


@pytest_asyncio.fixture()
async def client(db_session, redis, identity, keycloak, n8n, asaas, stripe_gateway, mailer):
    """HTTP client with the DB, providers and auth overridden.

    Learn: get_current_user returns the `identity` fixture, so protected
    routes work without tokens. Tests that need an admin mutate
    identity.roles before making the request.
    """
    _override_providers(keycloak, n8n, asaas, stripe_gateway, mailer, db_session)
    app.dependency_overrides[get_current_user] = lambda: identity

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def unauthenticated_client(db_session, redis, keycloak, n8n, asaas, stripe_gateway, mailer):
    """HTTP client that runs the real token check against FakeKeycloak."""
    _override_providers(keycloak, n8n, asaas, stripe_gateway, mailer, db_session)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ═══════════════════════════════════════════════════════════
# Seed data
# ═══════════════════════════════════════════════════════════


@pytest_asyncio.fixture()
async def user(db_session, identity):
    """The local row behind `identity`, with 3 credits."""
    row = User(
        id=uuid.uuid4(),
        keycloak_id=identity.id,
        email=identity.email,
        name=identity.name,
        credits=3,
        preferences={},
    )
    db_session.add(row)
    await db_session.commit()
    return row


@pytest.fixture()
def make_user(db_session):
    async def _make(keycloak_id: str, email: str, **fields) -> User:
        row = User(keycloak_id=keycloak_id, email=email, preferences={}, **fields)
        db_session.add(row)
        await db_session.commit()
        return row

    return _make


@pytest.fixture()
def make_subscription(db_session):
    async def _make(owner: User, **fields) -> Subscription:
        values = {"plan": "pro", "billing_cycle": "monthly", "status": "active"}
        values.update(fields)
        row = Subscription(user_id=owner.id, **values)
        db_session.add(row)
        await db_session.commit()
        return row

    return _make
