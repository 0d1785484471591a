"""
Order Store
===========
Durable CRUD for orders with invariant enforcement.

Backends:
- InMemoryOrderStore: process-local maps guarded by asyncio locks
- SupabaseOrderStore: Supabase/PostgREST table with circuit breaker

Every public call is bounded by a timeout; timeouts and backend failures
surface as SystemFailureError. Writes to the same order are serialized.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Dict, List, Optional, Set, Tuple

from prometheus_client import Counter
from supabase import create_client, Client
from postgrest.exceptions import APIError

from config import StorageConfig
from errors import ErrorCode, NotFoundError, OrderServiceError, SystemFailureError
from order import Order, OrderItem, ShippingStatus, generate_order_number, utcnow, validate_items
from order_query import OrderFilter, OrderSort


logger = logging.getLogger(__name__)


# Configuration
CIRCUIT_BREAKER_THRESHOLD = 5
CIRCUIT_BREAKER_TIMEOUT = 30  # seconds
UNIQUE_VIOLATION = "23505"


store_operation_errors = Counter(
    'order_store_errors_total',
    'Order store operation failures',
    ['operation', 'reason']
)


class DuplicateOrderNumberError(Exception):
    """Raised by a backend when an order number is already taken."""
    pass


class _OrderLock:
    __slots__ = ("lock", "holders")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.holders = 0


# ============================================================================
# BASE STORE
# ============================================================================

class OrderStore:
    """
    Async order store contract.

    Subclasses implement the underscore primitives; this class owns
    validation, order number retries and the timeout policy.
    """

    backend_name = "abstract"

    def __init__(self, timeout: float = 5.0, order_number_max_attempts: int = 5):
        self.timeout = timeout
        self.order_number_max_attempts = order_number_max_attempts
        self._order_locks: Dict[str, _OrderLock] = {}

        # Stats
        self.read_count = 0
        self.write_count = 0
        self.error_count = 0

    # ========================================================================
    # PUBLIC API
    # ========================================================================

    async def create(self, customer_id: str, items: Any) -> Order:
        """
        Persist a new pending order.

        Raises:
            ValidationError: Empty items or an invalid item
            SystemFailureError: Backend failure, timeout or order number exhaustion
        """
        validated = validate_items(items)
        order = Order.new(customer_id, validated)
        order = await self._guard("create", self._create_unique(order))
        self.write_count += 1
        return order

    async def get(self, order_id: str) -> Order:
        """
        Fetch one order.

        Raises:
            NotFoundError: Unknown order id
        """
        order = await self._guard("get", self._fetch(order_id))
        self.read_count += 1
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    async def set_status(self, order_id: str, new_status: Any) -> Order:
        """
        Persist a new shipping status and stamp updated_at.

        Does not notify anyone.

        Raises:
            InvalidStatusError: Status outside the enum
            NotFoundError: Unknown order id
        """
        status = ShippingStatus.parse(new_status)
        order = await self._guard("set_status", self._update_status(order_id, status))
        if order is None:
            raise NotFoundError("Order", order_id)
        self.write_count += 1
        return order

    async def list(
        self,
        order_filter: OrderFilter,
        page: int = 1,
        page_size: int = 10,
        sort: Optional[OrderSort] = None
    ) -> Tuple[List[Order], int]:
        """
        List orders matching order_filter.

        Args:
            order_filter: Predicate built by the query layer
            page: 1-indexed page number
            page_size: Orders per page
            sort: Defaults to created_at descending

        Returns:
            (orders on the page, total matching count)
        """
        sort = sort or OrderSort()
        offset = (page - 1) * page_size
        orders, total = await self._guard(
            "list", self._query(order_filter, offset, page_size, sort)
        )
        self.read_count += 1
        return orders, total

    def is_healthy(self) -> bool:
        return True

    def get_stats(self) -> Dict[str, Any]:
        return {
            "backend": self.backend_name,
            "reads": self.read_count,
            "writes": self.write_count,
            "errors": self.error_count,
        }

    async def close(self):
        pass

    # ========================================================================
    # INTERNALS
    # ========================================================================

    async def _guard(self, operation: str, awaitable: Awaitable):
        """Apply the timeout and translate backend failures."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except OrderServiceError:
            raise
        except asyncio.TimeoutError:
            self.error_count += 1
            store_operation_errors.labels(operation=operation, reason='timeout').inc()
            logger.error(f"Order store {operation} timed out after {self.timeout}s")
            raise SystemFailureError(
                f"Order store {operation} timed out",
                code=ErrorCode.DATABASE_ERROR
            )
        except Exception as e:
            self.error_count += 1
            store_operation_errors.labels(operation=operation, reason='backend').inc()
            logger.error(f"Order store {operation} failed: {str(e)}", exc_info=True)
            raise SystemFailureError(
                f"Order store {operation} failed: {str(e)}",
                code=ErrorCode.DATABASE_ERROR
            )

    @asynccontextmanager
    async def _order_lock(self, order_id: str):
        """Serialize writes to one order; the entry is dropped once unused."""
        entry = self._order_locks.get(order_id)
        if entry is None:
            entry = self._order_locks[order_id] = _OrderLock()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                del self._order_locks[order_id]

    async def _create_unique(self, order: Order) -> Order:
        for attempt in range(self.order_number_max_attempts):
            try:
                return await self._insert(order)
            except DuplicateOrderNumberError:
                logger.warning(
                    f"Order number collision on {order.order_number} "
                    f"(attempt {attempt + 1})"
                )
                order = order.with_order_number(generate_order_number())

        raise SystemFailureError(
            f"Could not allocate a unique order number after "
            f"{self.order_number_max_attempts} attempts"
        )

    async def _insert(self, order: Order) -> Order:
        raise NotImplementedError

    async def _fetch(self, order_id: str) -> Optional[Order]:
        raise NotImplementedError

    async def _update_status(self, order_id: str, status: ShippingStatus) -> Optional[Order]:
        raise NotImplementedError

    async def _query(
        self,
        order_filter: OrderFilter,
        offset: int,
        limit: int,
        sort: OrderSort
    ) -> Tuple[List[Order], int]:
        raise NotImplementedError


# ============================================================================
# IN-MEMORY BACKEND
# ============================================================================

class InMemoryOrderStore(OrderStore):
    """Process-local store; orders are immutable values swapped under lock."""

    backend_name = "memory"

    def __init__(self, timeout: float = 5.0, order_number_max_attempts: int = 5):
        super().__init__(timeout, order_number_max_attempts)
        self._orders: Dict[str, Order] = {}
        self._order_numbers: Set[str] = set()
        self._lock = asyncio.Lock()

    async def _insert(self, order: Order) -> Order:
        async with self._lock:
            if order.order_number in self._order_numbers:
                raise DuplicateOrderNumberError(order.order_number)
            self._orders[order.id] = order
            self._order_numbers.add(order.order_number)

        logger.info(f"Order stored: {order.order_number}")
        return order

    async def _fetch(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            return self._orders.get(order_id)

    async def _update_status(self, order_id: str, status: ShippingStatus) -> Optional[Order]:
        async with self._order_lock(order_id):
            async with self._lock:
                current = self._orders.get(order_id)
                if current is None:
                    return None
                updated = current.with_status(status)
                self._orders[order_id] = updated
            return updated

    async def _query(
        self,
        order_filter: OrderFilter,
        offset: int,
        limit: int,
        sort: OrderSort
    ) -> Tuple[List[Order], int]:
        async with self._lock:
            matched = [o for o in self._orders.values() if order_filter.matches(o)]

        matched.sort(key=sort.key, reverse=sort.descending)
        return matched[offset:offset + limit], len(matched)

    def get_stats(self) -> Dict[str, Any]:
        stats = super().get_stats()
        stats["orders"] = len(self._orders)
        return stats


# ============================================================================
# SUPABASE BACKEND
# ============================================================================

class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"    # Normal operation
    OPEN = "open"        # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitBreaker:
    """Circuit breaker for database operations."""

    def __init__(
        self,
        threshold: int = CIRCUIT_BREAKER_THRESHOLD,
        timeout: int = CIRCUIT_BREAKER_TIMEOUT
    ):
        self.threshold = threshold
        self.timeout = timeout
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[datetime] = None
        self.success_count = 0

    def record_success(self):
        """Record successful operation."""
        self.failure_count = 0

        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= 2:
                self.state = CircuitState.CLOSED
                self.success_count = 0
                logger.info("Circuit breaker closed (recovered)")

    def record_failure(self):
        """Record failed operation."""
        self.failure_count += 1
        self.last_failure_time = utcnow()

        if self.failure_count >= self.threshold:
            self.state = CircuitState.OPEN
            logger.error(
                f"Circuit breaker opened "
                f"(failures: {self.failure_count})"
            )

    def can_execute(self) -> bool:
        """Check if operation can execute."""
        if self.state == CircuitState.CLOSED:
            return True

        if self.state == CircuitState.OPEN:
            if self.last_failure_time:
                elapsed = (utcnow() - self.last_failure_time).total_seconds()
                if elapsed >= self.timeout:
                    self.state = CircuitState.HALF_OPEN
                    self.success_count = 0
                    logger.info("Circuit breaker half-open (testing)")
                    return True
            return False

        # HALF_OPEN - allow test requests
        return True

    def get_state(self) -> str:
        return self.state.value


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def order_to_row(order: Order) -> Dict[str, Any]:
    """Serialize an order into an orders table row."""
    return {
        "id": order.id,
        "customer_id": order.customer_id,
        "order_number": order.order_number,
        "items": [item.to_dict() for item in order.items],
        "total_amount": order.total_amount,
        "status": order.status.value,
        "created_at": order.created_at.isoformat(),
        "updated_at": order.updated_at.isoformat(),
    }


def row_to_order(row: Dict[str, Any]) -> Order:
    """Deserialize an orders table row."""
    items = tuple(
        OrderItem(
            product_name=item["productName"],
            product_id=str(item["productId"]),
            owner_id=str(item["ownerId"]),
            quantity=int(item["quantity"]),
            line_cost=float(item["lineCost"]),
        )
        for item in row.get("items") or []
    )
    return Order(
        id=str(row["id"]),
        customer_id=str(row["customer_id"]),
        order_number=row["order_number"],
        items=items,
        total_amount=float(row["total_amount"]),
        status=ShippingStatus(row["status"]),
        created_at=_parse_timestamp(row["created_at"]),
        updated_at=_parse_timestamp(row["updated_at"]),
    )


class SupabaseOrderStore(OrderStore):
    """
    Supabase-backed store.

    Blocking client calls run in the default executor. Status updates
    write status and updated_at in one statement, serialized per order
    inside this process.
    """

    backend_name = "supabase"

    def __init__(
        self,
        url: str,
        key: str,
        table: str = "orders",
        timeout: float = 5.0,
        order_number_max_attempts: int = 5,
        client: Optional[Client] = None
    ):
        super().__init__(timeout, order_number_max_attempts)
        self.table = table
        self.circuit_breaker = CircuitBreaker()
        self.client: Optional[Client] = client or create_client(url, key)
        logger.info(f"Supabase order store initialized (table: {table})")

    async def _execute(self, build):
        """Run a query builder callable in the executor behind the breaker."""
        if not self.circuit_breaker.can_execute():
            raise SystemFailureError(
                "Database circuit breaker open",
                code=ErrorCode.DATABASE_ERROR
            )

        loop = asyncio.get_event_loop()
        try:
            result = await loop.run_in_executor(None, lambda: build().execute())
        except APIError as e:
            if getattr(e, "code", None) == UNIQUE_VIOLATION:
                self.circuit_breaker.record_success()
                raise
            self.circuit_breaker.record_failure()
            raise
        except Exception:
            self.circuit_breaker.record_failure()
            raise

        self.circuit_breaker.record_success()
        return result

    async def _insert(self, order: Order) -> Order:
        try:
            result = await self._execute(
                lambda: self.client.table(self.table).insert(order_to_row(order))
            )
        except APIError as e:
            if getattr(e, "code", None) == UNIQUE_VIOLATION:
                raise DuplicateOrderNumberError(order.order_number)
            raise

        if result.data:
            return row_to_order(result.data[0])
        return order

    async def _fetch(self, order_id: str) -> Optional[Order]:
        result = await self._execute(
            lambda: self.client.table(self.table).select("*").eq("id", order_id).limit(1)
        )
        if result.data:
            return row_to_order(result.data[0])
        return None

    async def _update_status(self, order_id: str, status: ShippingStatus) -> Optional[Order]:
        async with self._order_lock(order_id):
            result = await self._execute(
                lambda: self.client.table(self.table)
                    .update({"status": status.value, "updated_at": utcnow().isoformat()})
                    .eq("id", order_id)
            )
        if result.data:
            return row_to_order(result.data[0])
        return None

    async def _query(
        self,
        order_filter: OrderFilter,
        offset: int,
        limit: int,
        sort: OrderSort
    ) -> Tuple[List[Order], int]:
        def build():
            query = self.client.table(self.table).select("*", count="exact")
            for column, value in order_filter.equalities().items():
                query = query.eq(column, value)
            return (
                query
                .order(sort.field.column, desc=sort.descending)
                .range(offset, offset + limit - 1)
            )

        result = await self._execute(build)
        orders = [row_to_order(row) for row in result.data or []]
        total = result.count if result.count is not None else len(orders)
        return orders, total

    def is_healthy(self) -> bool:
        return (
            self.client is not None and
            self.circuit_breaker.state != CircuitState.OPEN
        )

    def get_stats(self) -> Dict[str, Any]:
        stats = super().get_stats()
        stats["circuit_breaker"] = self.circuit_breaker.get_state()
        stats["circuit_failures"] = self.circuit_breaker.failure_count
        return stats


# ============================================================================
# FACTORY
# ============================================================================

def create_order_store(config: StorageConfig) -> OrderStore:
    """Build the configured order store backend."""
    if config.backend == "supabase":
        return SupabaseOrderStore(
            url=config.supabase_url,
            key=config.supabase_key,
            table=config.orders_table,
            timeout=config.store_timeout,
            order_number_max_attempts=config.order_number_max_attempts,
        )

    return InMemoryOrderStore(
        timeout=config.store_timeout,
        order_number_max_attempts=config.order_number_max_attempts,
    )
