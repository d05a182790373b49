"""Realtime tests — connection manager, pub/sub dispatch, the /ws endpoint.

Learn: The endpoint tests use Starlette's synchronous TestClient, which
runs the app on its own event loop. The shared aiosqlite session can't
cross loops, so get_db is replaced by a stub whose only query (the
deleted_at lookup) answers from a fixed value. Lifespan is not started,
so there is no Redis and the auth cache is simply skipped.
"""

import json
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect, WebSocketState

from artifyme.db.engine import get_db
from artifyme.realtime.server import create_realtime_app
from artifyme.realtime.websocket import (
    CLOSE_AUTH_REQUIRED,
    CLOSE_DEACTIVATED,
    CLOSE_INVALID_TOKEN,
    ConnectionManager,
    dispatch_message,
    user_websocket,
)
from artifyme.services.keycloak_service import KeycloakError, get_keycloak


class FakeSocket:
    def __init__(self, connected=True, broken=False):
        self.client_state = WebSocketState.CONNECTED if connected else WebSocketState.DISCONNECTED
        self.broken = broken
        self.sent: list[dict] = []

    async def send_text(self, text):
        if self.broken:
            raise RuntimeError("socket is gone")
        self.sent.append(json.loads(text))


# ═══════════════════════════════════════════════════════════
# ConnectionManager + dispatch
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_send_to_user_reaches_every_tab():
    connections = ConnectionManager()
    tab1, tab2, other = FakeSocket(), FakeSocket(), FakeSocket()
    connections.connect("kc-1", tab1)
    connections.connect("kc-1", tab2)
    connections.connect("kc-2", other)

    delivered = await connections.send_to_user("kc-1", {"type": "hello"})
    assert delivered == 2
    assert tab1.sent == tab2.sent == [{"type": "hello"}]
    assert other.sent == []
    assert connections.count() == 2


@pytest.mark.asyncio
async def test_closed_and_broken_sockets_are_dropped():
    connections = ConnectionManager()
    alive, closed, broken = FakeSocket(), FakeSocket(connected=False), FakeSocket(broken=True)
    for socket in (alive, closed, broken):
        connections.connect("kc-1", socket)

    assert await connections.send_to_user("kc-1", {"type": "x"}) == 1
    assert await connections.send_to_user("kc-1", {"type": "y"}) == 1
    assert len(alive.sent) == 2

    connections.disconnect("kc-1", alive)
    assert not connections.is_connected("kc-1")
    assert await connections.send_to_user("kc-1", {"type": "z"}) == 0


@pytest.mark.asyncio
async def test_broadcast():
    connections = ConnectionManager()
    a, b = FakeSocket(), FakeSocket()
    connections.connect("kc-1", a)
    connections.connect("kc-2", b)
    assert await connections.broadcast({"type": "maintenance"}) == 2


@pytest.mark.asyncio
async def test_dispatch_wraps_payload_with_channel():
    connections = ConnectionManager()
    socket = FakeSocket()
    connections.connect("kc-1", socket)

    raw = json.dumps({"user_id": "kc-1", "job_id": "j1", "status": "completed"})
    assert await dispatch_message("transformation:complete", raw, connections) == 1
    assert socket.sent == [
        {
            "type": "transformation:complete",
            "payload": {"user_id": "kc-1", "job_id": "j1", "status": "completed"},
        }
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", ["not json", json.dumps({"job_id": "j1"}), json.dumps([1, 2])])
async def test_dispatch_drops_unroutable_messages(raw):
    connections = ConnectionManager()
    socket = FakeSocket()
    connections.connect("kc-1", socket)
    assert await dispatch_message("order:update", raw, connections) == 0
    assert socket.sent == []


# ═══════════════════════════════════════════════════════════
# /ws endpoint
# ═══════════════════════════════════════════════════════════


class _Result:
    def __init__(self, value):
        self.value = value

    def scalar_one_or_none(self):
        return self.value


class StubSession:
    def __init__(self, deleted_at=None):
        self.deleted_at = deleted_at
        self.closed = False

    async def execute(self, statement):
        return _Result(self.deleted_at)

    async def close(self):
        self.closed = True


class StubKeycloak:
    def __init__(self):
        self.tokens: dict[str, dict] = {}
        self.error = None

    async def introspect(self, token):
        if self.error:
            raise self.error
        return self.tokens.get(token)


@pytest.fixture()
def ws_keycloak():
    kc = StubKeycloak()
    kc.tokens["good"] = {
        "active": True,
        "sub": "kc-ws-1",
        "email": "ws@example.com",
        "name": "Wanda",
        "realm_access": {"roles": ["user"]},
    }
    return kc


@pytest.fixture()
def session():
    return StubSession()


@pytest.fixture()
def realtime(ws_keycloak, session):
    app = create_realtime_app()

    async def override_get_db():
        yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_keycloak] = lambda: ws_keycloak
    return TestClient(app)


def _close_code(client, url):
    """Open the socket, then read until the server closes it."""
    with client.websocket_connect(url) as ws:
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_text()
    return exc.value


def test_missing_token_closes_4001(realtime):
    closed = _close_code(realtime, "/ws")
    assert closed.code == CLOSE_AUTH_REQUIRED
    assert closed.reason == "Authentication required"


def test_invalid_token_closes_4002(realtime):
    assert _close_code(realtime, "/ws?token=bogus").code == CLOSE_INVALID_TOKEN


def test_introspection_failure_closes_4002(realtime, ws_keycloak):
    ws_keycloak.error = KeycloakError("Keycloak introspection failed", upstream_status=503)
    assert _close_code(realtime, "/ws?token=good").code == CLOSE_INVALID_TOKEN


def test_deactivated_account_closes_4003(realtime, session):
    session.deleted_at = datetime.now(timezone.utc)
    closed = _close_code(realtime, "/ws?token=good")
    assert closed.code == CLOSE_DEACTIVATED
    assert closed.reason == "Account deactivated"


class RecordingSocket:
    """Just enough of a WebSocket to see what the handler does, in order."""

    def __init__(self, query=None):
        self.query_params = query or {}
        self.events: list[tuple] = []

    async def accept(self):
        self.events.append(("accept",))

    async def close(self, code=1000, reason=None):
        self.events.append(("close", code))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "query, code",
    [({}, CLOSE_AUTH_REQUIRED), ({"token": "bogus"}, CLOSE_INVALID_TOKEN)],
)
async def test_handshake_is_accepted_before_closing(ws_keycloak, session, query, code):
    socket = RecordingSocket(query)
    await user_websocket(socket, keycloak=ws_keycloak, db=session)
    assert socket.events == [("accept",), ("close", code)]


def test_connect_ping_pong(realtime, session):
    with realtime.websocket_connect("/ws?token=good") as ws:
        hello = ws.receive_json()
        assert hello["type"] == "connected"
        assert hello["user_id"] == "kc-ws-1"
        assert hello["role"] == "user"
        assert session.closed

        ws.send_text("not json")
        ws.send_json({"type": "subscribe", "channel": "order:update"})
        ws.send_json({"type": "ping"})
        pong = ws.receive_json()
        assert pong["type"] == "pong"
        assert "timestamp" in pong


class _Listener:
    def __init__(self, finished):
        self.finished = finished

    def done(self):
        return self.finished


def test_realtime_health_with_running_listener(realtime):
    realtime.app.state.listener = _Listener(finished=False)
    r = realtime.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "healthy", "listener": "running", "connections": 0}


def test_realtime_health_degraded_when_listener_stopped(realtime):
    realtime.app.state.listener = _Listener(finished=True)
    data = realtime.get("/health").json()
    assert data["status"] == "degraded"
    assert data["listener"] == "stopped"


def test_realtime_health_degraded_before_startup(realtime):
    assert realtime.get("/health").json()["status"] == "degraded"
