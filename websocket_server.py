"""
WebSocket Notification Gateway
==============================
Live connection endpoint for order status notifications.

Handshake:
    1. Accept the socket
    2. Resolve the bearer token (header, then ?token=, then an
       {"type": "auth", "token": ...} first frame)
    3. Verify it with the shared identity resolver
    4. Bind the connection in the session registry

Anything that fails before step 4 closes the socket without binding.

NO BUSINESS LOGIC - Connection orchestration only.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from auth import Identity, IdentityResolver, resolve_handshake_token
from errors import AuthenticationError, ErrorCode
from session_registry import ConnectionHandle, SessionRegistry


logger = logging.getLogger(__name__)


router = APIRouter()


CONNECTED_EVENT = "connected"
CONNECTED_MESSAGE = "Successfully connected to notification service"


# ============================================================================
# HANDSHAKE
# ============================================================================

async def authenticate_connection(
    websocket: WebSocket,
    resolver: IdentityResolver
) -> Identity:
    """
    Resolve and verify the connection's bearer token.

    Raises:
        AuthenticationError: Missing or invalid token
        WebSocketDisconnect: Client left during the handshake
    """
    token = resolve_handshake_token(websocket.headers, websocket.query_params)

    if token is None:
        try:
            frame = await websocket.receive_json()
        except ValueError:
            raise AuthenticationError(
                message="Authentication frame must be JSON",
                code=ErrorCode.INVALID_TOKEN_FORMAT
            )
        token = resolve_handshake_token(
            {}, {}, frame if isinstance(frame, dict) else None
        )

    if token is None:
        raise AuthenticationError(
            message="Authentication token required",
            code=ErrorCode.NO_TOKEN
        )

    return await resolver.resolve(token)


async def _reject(websocket: WebSocket, reason: str):
    try:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=reason)
    except RuntimeError:
        # Already closed by the client
        pass


# ============================================================================
# WEBSOCKET ENDPOINT
# ============================================================================

@router.websocket("/ws")
async def notifications_endpoint(websocket: WebSocket):
    """Authenticated notification channel, one per identity."""
    state = websocket.app.state
    registry: SessionRegistry = state.session_registry
    resolver: IdentityResolver = state.identity_resolver
    handshake_timeout: float = state.config.notifications.handshake_timeout

    await websocket.accept()

    try:
        identity = await asyncio.wait_for(
            authenticate_connection(websocket, resolver),
            timeout=handshake_timeout
        )
    except asyncio.TimeoutError:
        logger.warning("WebSocket handshake timed out")
        await _reject(websocket, "Authentication timeout")
        return
    except AuthenticationError as e:
        logger.warning(f"WebSocket authentication failed: {e.code}")
        await _reject(websocket, e.message)
        return
    except WebSocketDisconnect:
        logger.info("WebSocket closed during handshake")
        return

    handle = ConnectionHandle(websocket, identity.user_id, identity.role)
    await registry.bind(identity.user_id, identity.role, handle)

    try:
        await handle.send({
            "event": CONNECTED_EVENT,
            "data": {
                "message": CONNECTED_MESSAGE,
                "userId": identity.user_id,
                "role": identity.role.value,
            },
        })
        await _receive_loop(websocket, handle)

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected: {identity.user_id}")

    except Exception as e:
        logger.error(f"WebSocket error for {identity.user_id}: {str(e)}", exc_info=True)

    finally:
        await registry.unbind(identity.user_id, handle)


async def _receive_loop(websocket: WebSocket, handle: ConnectionHandle):
    """
    Read client frames until disconnect.

    The channel is push-only; clients may ping to keep it warm.
    """
    while True:
        try:
            message: Optional[Dict[str, Any]] = await websocket.receive_json()
        except ValueError:
            logger.debug(f"Ignoring non-JSON frame from {handle.identity}")
            continue

        handle.touch()

        kind = message.get("type") if isinstance(message, dict) else None
        if kind == "ping":
            await handle.send({"event": "pong"})
        else:
            logger.debug(f"Ignoring client frame: {kind}")
