"""WebSocket endpoint — real-time event delivery to frontend clients.

Learn: Each browser tab connects to /ws?token=<access token>. The handler:
1. Accepts the handshake, then authenticates the token exactly like the
   HTTP API (introspection + short Redis cache), closing with
   4001/4002/4003 on failure. Closing before accept would turn into an
   HTTP 403 and the client would never see the close code.
2. Registers the socket under the Keycloak user id
3. Answers pings until the client goes away

Delivery runs the other way: one Redis listener per process subscribes
to every channel and routes each message to the sockets of the user id
it names. Sockets never subscribe to Redis themselves, so a thousand
open tabs still cost one Redis connection.
"""

import json
from datetime import datetime, timezone
from typing import Any, Optional

import redis.asyncio as aioredis
import structlog
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.websockets import WebSocketState

from artifyme.auth.dependencies import authenticate_token
from artifyme.db.engine import get_db
from artifyme.errors import AuthenticationError, AuthorizationError, ProviderError
from artifyme.realtime.pubsub import CHANNELS, get_redis
from artifyme.services.keycloak_service import KeycloakClient, get_keycloak

logger = structlog.get_logger()

router = APIRouter()

CLOSE_AUTH_REQUIRED = 4001
CLOSE_INVALID_TOKEN = 4002
CLOSE_DEACTIVATED = 4003


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ConnectionManager:
    """Open sockets grouped by Keycloak user id."""

    def __init__(self):
        self._sockets: dict[str, set[WebSocket]] = {}

    def connect(self, user_id: str, websocket: WebSocket) -> None:
        self._sockets.setdefault(user_id, set()).add(websocket)

    def disconnect(self, user_id: str, websocket: WebSocket) -> None:
        sockets = self._sockets.get(user_id)
        if not sockets:
            return
        sockets.discard(websocket)
        if not sockets:
            del self._sockets[user_id]

    def count(self) -> int:
        """Number of users with at least one open socket."""
        return len(self._sockets)

    def is_connected(self, user_id: str) -> bool:
        return user_id in self._sockets

    async def _send(self, user_id: str, websocket: WebSocket, text: str) -> bool:
        if websocket.client_state != WebSocketState.CONNECTED:
            self.disconnect(user_id, websocket)
            return False
        try:
            await websocket.send_text(text)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug("ws.send_failed", user_id=user_id, error=str(e))
            self.disconnect(user_id, websocket)
            return False
        return True

    async def send_to_user(self, user_id: str, message: dict[str, Any]) -> int:
        """Send to every socket of one user. Returns how many received it."""
        text = json.dumps(message, default=str)
        delivered = 0
        for websocket in list(self._sockets.get(user_id, ())):
            if await self._send(user_id, websocket, text):
                delivered += 1
        return delivered

    async def broadcast(self, message: dict[str, Any]) -> int:
        text = json.dumps(message, default=str)
        delivered = 0
        for user_id, sockets in list(self._sockets.items()):
            for websocket in list(sockets):
                if await self._send(user_id, websocket, text):
                    delivered += 1
        return delivered


manager = ConnectionManager()


# ═══════════════════════════════════════════════════════════
# Redis → sockets
# ═══════════════════════════════════════════════════════════


async def dispatch_message(
    channel: str, raw: str, connections: Optional[ConnectionManager] = None
) -> int:
    """Route one pub/sub message to its user's sockets."""
    connections = connections or manager
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("ws.dispatch.invalid_json", channel=channel)
        return 0
    if not isinstance(data, dict) or not data.get("user_id"):
        logger.warning("ws.dispatch.no_user", channel=channel)
        return 0
    return await connections.send_to_user(
        str(data["user_id"]), {"type": channel, "payload": data}
    )


async def listen_for_events(connections: Optional[ConnectionManager] = None) -> None:
    """Subscribe to every channel and dispatch until cancelled."""
    pubsub = get_redis().pubsub()
    await pubsub.subscribe(*CHANNELS)
    logger.info("ws.listener.started", channels=list(CHANNELS))
    try:
        async for message in pubsub.listen():
            if message["type"] != "message":
                continue
            await dispatch_message(message["channel"], message["data"], connections)
    except aioredis.RedisError as e:
        logger.error("ws.listener.failed", error=str(e))
        raise
    finally:
        await pubsub.unsubscribe(*CHANNELS)
        await pubsub.aclose()


# ═══════════════════════════════════════════════════════════
# Client sockets
# ═══════════════════════════════════════════════════════════


async def handle_client_message(websocket: WebSocket, user_id: str, text: str) -> None:
    try:
        msg = json.loads(text)
    except json.JSONDecodeError:
        return
    if not isinstance(msg, dict):
        return

    kind = msg.get("type")
    if kind == "ping":
        await websocket.send_text(json.dumps({"type": "pong", "timestamp": _now()}))
    elif kind == "subscribe":
        logger.info("ws.subscribe", user_id=user_id, channel=msg.get("channel"))
    else:
        logger.info("ws.unknown_message", user_id=user_id, type=kind)


@router.websocket("/ws")
async def user_websocket(
    websocket: WebSocket,
    keycloak: KeycloakClient = Depends(get_keycloak),
    db: AsyncSession = Depends(get_db),
):
    """WebSocket endpoint for one user's job, order and notification events."""
    await websocket.accept()

    # ── Authentication ──────────────────────────────────────
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=CLOSE_AUTH_REQUIRED, reason="Authentication required")
        return

    try:
        user = await authenticate_token(token, keycloak, db)
    except AuthenticationError:
        await websocket.close(code=CLOSE_INVALID_TOKEN, reason="Invalid token")
        return
    except AuthorizationError as e:
        await websocket.close(code=CLOSE_DEACTIVATED, reason=e.message)
        return
    except ProviderError:
        await websocket.close(code=CLOSE_INVALID_TOKEN, reason="Invalid token")
        return
    finally:
        # The socket can stay open for hours; don't hold a connection for it.
        await db.close()

    # ── Connection registered ───────────────────────────────
    manager.connect(user.id, websocket)
    logger.info("ws.connected", user_id=user.id)

    try:
        await websocket.send_text(
            json.dumps(
                {
                    "type": "connected",
                    "user_id": user.id,
                    "role": "admin" if user.is_admin else "user",
                    "timestamp": _now(),
                }
            )
        )
        while True:
            text = await websocket.receive_text()
            await handle_client_message(websocket, user.id, text)
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(user.id, websocket)
        logger.info("ws.disconnected", user_id=user.id)
