"""
Session Registry
================
Tracks the live notification connection of each identity.

- At most one handle per identity; a newer bind replaces the older one
- Superseded handles are not closed here
- Only the handshake path binds, only the disconnect path unbinds,
  only the notification dispatcher looks up
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from prometheus_client import Gauge

from auth import Role


logger = logging.getLogger(__name__)


sessions_active = Gauge(
    'notification_sessions_active',
    'Identities with a live notification connection'
)


class ConnectionHandle:
    """
    Addressable reference to one open client connection.

    Wraps any transport exposing an async send_json(payload).
    """

    def __init__(self, transport: Any, identity: str, role: Role):
        self.connection_id = f"conn_{uuid.uuid4().hex[:12]}"
        self.transport = transport
        self.identity = identity
        self.role = role
        self.connected_at = datetime.now(timezone.utc)
        self.last_activity = self.connected_at
        self.sent_count = 0

    async def send(self, payload: Dict[str, Any]):
        """Push one JSON message; transport errors propagate to the caller."""
        await self.transport.send_json(payload)
        self.sent_count += 1
        self.touch()

    def touch(self):
        self.last_activity = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connectionId": self.connection_id,
            "userId": self.identity,
            "role": self.role.value,
            "connectedAt": self.connected_at.isoformat(),
            "lastActivity": self.last_activity.isoformat(),
            "sentCount": self.sent_count,
        }

    def __repr__(self):
        return f"<ConnectionHandle {self.connection_id} identity={self.identity}>"


class SessionRegistry:
    """identity -> ConnectionHandle map guarded by an asyncio lock."""

    def __init__(self):
        self._handles: Dict[str, ConnectionHandle] = {}
        self._lock = asyncio.Lock()

    async def bind(self, identity: str, role: Role, handle: ConnectionHandle) -> Optional[ConnectionHandle]:
        """
        Bind handle to identity, replacing any previous handle.

        Returns:
            The superseded handle, if there was one
        """
        async with self._lock:
            previous = self._handles.get(identity)
            self._handles[identity] = handle
            sessions_active.set(len(self._handles))

        if previous is not None and previous is not handle:
            logger.info(
                f"Connection superseded for {identity}",
                extra={
                    "identity": identity,
                    "previous_connection": previous.connection_id,
                    "connection": handle.connection_id,
                }
            )
        else:
            logger.info(
                f"Connection bound for {identity}",
                extra={
                    "identity": identity,
                    "role": role.value,
                    "connection": handle.connection_id,
                }
            )

        return previous

    async def unbind(self, identity: str, handle: Optional[ConnectionHandle] = None) -> bool:
        """
        Remove identity's entry. Idempotent.

        Args:
            identity: Identity to unbind
            handle: When given, only unbind if it is still the bound handle,
                so a superseded connection closing late leaves its
                successor in place

        Returns:
            True if an entry was removed
        """
        async with self._lock:
            current = self._handles.get(identity)
            if current is None:
                return False
            if handle is not None and current is not handle:
                return False
            del self._handles[identity]
            sessions_active.set(len(self._handles))

        logger.info(
            f"Connection unbound for {identity}",
            extra={"identity": identity, "connection": current.connection_id}
        )
        return True

    async def lookup(self, identity: str) -> Optional[ConnectionHandle]:
        async with self._lock:
            return self._handles.get(identity)

    def count(self) -> int:
        """Number of bound identities (diagnostic)."""
        return len(self._handles)

    def get_status(self) -> Dict[str, Any]:
        return {
            "active_sessions": len(self._handles),
            "identities": list(self._handles.keys()),
        }
