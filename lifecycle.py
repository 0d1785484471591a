"""
Order Lifecycle Service
=======================
The only component allowed to mutate order state.

This class:
- Enforces who may place, read and transition orders
- Delegates persistence to the order store
- Fires the status change notification after the write commits

This class does NOT:
- Retry or queue notifications
- Roll back a status write because a notification failed
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

import structlog
from prometheus_client import Counter

from auth import ANY_ROLE, CUSTOMER_ONLY, ELEVATED_ROLES, Role, authorize
from db import OrderStore
from notifications import NotificationDispatcher
from order import Order, ShippingStatus, record_order_value
from order_query import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, Pagination, build_order_query


# Structured logging
logger = structlog.get_logger(__name__)


orders_created_total = Counter(
    'orders_created_total',
    'Orders placed'
)
order_status_transitions = Counter(
    'order_status_transitions_total',
    'Order shipping status transitions',
    ['from_status', 'to_status']
)


@dataclass(frozen=True)
class OrderPage:
    orders: List[Order]
    pagination: Pagination

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orders": [order.to_dict() for order in self.orders],
            "pagination": self.pagination.to_dict(),
        }


class OrderLifecycleService:
    """Validates and executes order operations for authenticated callers."""

    def __init__(
        self,
        store: OrderStore,
        dispatcher: NotificationDispatcher,
        default_page_size: int = DEFAULT_PAGE_SIZE,
        max_page_size: int = MAX_PAGE_SIZE
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    async def place_order(
        self,
        caller_identity: str,
        caller_role: Role,
        items: Any
    ) -> Order:
        """
        Create a pending order owned by the caller.

        Raises:
            ForbiddenError: Caller is not a customer
            ValidationError: Items are empty or invalid
        """
        authorize(caller_role, CUSTOMER_ONLY, actor=caller_identity, action="place_order")

        order = await self.store.create(caller_identity, items)

        orders_created_total.inc()
        record_order_value(order)
        logger.info(
            "order_created",
            order_id=order.id,
            order_number=order.order_number,
            customer_id=caller_identity,
            total_amount=order.total_amount,
            item_count=len(order.items),
        )
        return order

    async def update_status(
        self,
        caller_role: Role,
        order_id: str,
        new_status: Any,
        actor: Optional[str] = None
    ) -> Order:
        """
        Change an order's shipping status, then notify its customer.

        The write is the source of truth; the notification outcome is
        logged and never fails the update.

        Raises:
            ForbiddenError: Caller role is not elevated
            InvalidStatusError: new_status outside pending/shipped/delivered
            NotFoundError: Unknown order id
        """
        authorize(caller_role, ELEVATED_ROLES, actor=actor, action="update_status")
        status = ShippingStatus.parse(new_status)

        previous = await self.store.get(order_id)
        order = await self.store.set_status(order_id, status)

        order_status_transitions.labels(
            from_status=previous.status.value,
            to_status=order.status.value
        ).inc()
        logger.info(
            "order_status_updated",
            order_id=order.id,
            order_number=order.order_number,
            actor=actor,
            old_status=previous.status.value,
            new_status=order.status.value,
        )

        try:
            delivered = await self.dispatcher.notify_status_change(
                order.customer_id, order.status
            )
        except Exception as e:
            delivered = False
            logger.error(
                "order_status_notification_error",
                order_id=order.id,
                customer_id=order.customer_id,
                error=str(e),
            )

        logger.info(
            "order_status_notification",
            order_id=order.id,
            customer_id=order.customer_id,
            delivered=delivered,
        )
        return order

    async def get_order(
        self,
        caller_role: Role,
        order_id: str,
        actor: Optional[str] = None
    ) -> Order:
        """
        Fetch one order (admin only).

        Raises:
            ForbiddenError: Caller role is not elevated
            NotFoundError: Unknown order id
        """
        authorize(caller_role, ELEVATED_ROLES, actor=actor, action="get_order")
        return await self.store.get(order_id)

    async def list_orders(
        self,
        caller_identity: str,
        caller_role: Role,
        params: Optional[Mapping[str, Any]] = None,
        required_roles: Iterable[Role] = ANY_ROLE
    ) -> OrderPage:
        """
        List orders visible to the caller.

        Args:
            caller_identity: Verified user id
            caller_role: Verified role
            params: Raw query parameters
            required_roles: Roles allowed on this entry point

        Raises:
            ForbiddenError: Role not in required_roles
            ValidationError: Bad pagination parameters
        """
        authorize(caller_role, required_roles, actor=caller_identity, action="list_orders")

        query = build_order_query(
            caller_identity,
            caller_role,
            params,
            default_page_size=self.default_page_size,
            max_page_size=self.max_page_size,
        )

        orders, total = await self.store.list(
            query.order_filter,
            page=query.page,
            page_size=query.page_size,
            sort=query.sort,
        )

        logger.info(
            "orders_retrieved",
            actor=caller_identity,
            role=caller_role.value,
            page=query.page,
            page_size=query.page_size,
            returned=len(orders),
            total=total,
        )
        return OrderPage(
            orders=orders,
            pagination=Pagination.from_total(query.page, query.page_size, total),
        )
