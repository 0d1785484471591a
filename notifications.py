"""
Notification Dispatcher
=======================
Best-effort push of shipping status changes to a customer's live
connection.

Delivery is at most once and only if the customer is connected right
now: no retry, no queue, nothing persisted. Failures come back as
False and a log line, never as an exception.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict

from prometheus_client import Counter

from order import ShippingStatus
from session_registry import SessionRegistry


logger = logging.getLogger(__name__)


STATUS_UPDATE_TITLE = "New shipping status"
STATUS_UPDATE_KIND = "order_status_update"
NOTIFICATION_EVENT = "notification"


notifications_total = Counter(
    'notifications_total',
    'Status change notification attempts',
    ['result']
)


@dataclass(frozen=True)
class Notification:
    """Ephemeral message; exists only for one dispatch attempt."""
    title: str
    body: str
    kind: str
    status: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def status_change(cls, status: Any) -> "Notification":
        value = status.value if isinstance(status, ShippingStatus) else str(status)
        return cls(
            title=STATUS_UPDATE_TITLE,
            body=f"Your last order shipping status has been updated to {value}",
            kind=STATUS_UPDATE_KIND,
            status=value,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Wire payload."""
        return {
            "title": self.title,
            "message": self.body,
            "type": self.kind,
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_event(self) -> Dict[str, Any]:
        return {"event": NOTIFICATION_EVENT, "data": self.to_dict()}


class NotificationDispatcher:
    """Delivers notifications through the session registry."""

    def __init__(
        self,
        registry: SessionRegistry,
        send_timeout: float = 5.0,
        enabled: bool = True
    ):
        self.registry = registry
        self.send_timeout = send_timeout
        self.enabled = enabled

        # Stats
        self.delivered_count = 0
        self.offline_count = 0
        self.failed_count = 0

    async def notify_status_change(self, customer_identity: str, new_status: Any) -> bool:
        """
        Push a status change notification to customer_identity.

        Returns:
            True if the message was handed to a live connection
        """
        notification = Notification.status_change(new_status)
        return await self.dispatch(customer_identity, notification)

    async def dispatch(self, identity: str, notification: Notification) -> bool:
        if not self.enabled:
            notifications_total.labels(result='disabled').inc()
            logger.debug(f"Notifications disabled, skipping {identity}")
            return False

        try:
            handle = await self.registry.lookup(identity)
        except Exception as e:
            self.failed_count += 1
            notifications_total.labels(result='failed').inc()
            logger.error(f"Session lookup failed for {identity}: {str(e)}")
            return False

        if handle is None:
            self.offline_count += 1
            notifications_total.labels(result='offline').inc()
            logger.info(
                f"No live connection for {identity}, notification dropped",
                extra={"identity": identity, "kind": notification.kind}
            )
            return False

        try:
            await asyncio.wait_for(
                handle.send(notification.to_event()),
                timeout=self.send_timeout
            )
        except asyncio.TimeoutError:
            self.failed_count += 1
            notifications_total.labels(result='timeout').inc()
            logger.warning(
                f"Notification send timed out for {identity}",
                extra={"identity": identity, "connection": handle.connection_id}
            )
            return False
        except Exception as e:
            self.failed_count += 1
            notifications_total.labels(result='failed').inc()
            logger.warning(
                f"Notification send failed for {identity}: {str(e)}",
                extra={"identity": identity, "connection": handle.connection_id}
            )
            return False

        self.delivered_count += 1
        notifications_total.labels(result='delivered').inc()
        logger.info(
            f"Notification sent to {identity}",
            extra={
                "identity": identity,
                "connection": handle.connection_id,
                "status": notification.status,
            }
        )
        return True

    def get_stats(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "delivered": self.delivered_count,
            "offline": self.offline_count,
            "failed": self.failed_count,
        }
