"""
Order Module
============
Order domain types, item validation and derived totals.

Guarantees:
- Orders always hold at least one item
- Items are immutable (frozen dataclasses)
- total_amount is derived from items, never set independently
- Status changes produce a new Order value (with_status)
"""

import logging
import math
import secrets
import string
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from prometheus_client import Counter, Histogram

from errors import InvalidStatusError, ValidationError


logger = logging.getLogger(__name__)


# ============================================================================
# METRICS
# ============================================================================

order_value = Histogram(
    'order_value_dollars',
    'Order value distribution'
)
order_validation_failures = Counter(
    'order_validation_failures_total',
    'Order validation failures',
    ['reason']
)


# ============================================================================
# LIMITS
# ============================================================================

MIN_PRODUCT_NAME_LENGTH = 2
MAX_PRODUCT_NAME_LENGTH = 200

ORDER_NUMBER_PREFIX = "ORD"
ORDER_NUMBER_SUFFIX_LENGTH = 6
_ORDER_NUMBER_ALPHABET = string.digits + string.ascii_uppercase


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# SHIPPING STATUS
# ============================================================================

class ShippingStatus(Enum):
    """
    Order shipping status.

    Any status may follow any other; only who may change it is restricted.
    """
    PENDING = "pending"
    SHIPPED = "shipped"
    DELIVERED = "delivered"

    @classmethod
    def values(cls) -> List[str]:
        return [s.value for s in cls]

    @classmethod
    def parse(cls, value: Any) -> "ShippingStatus":
        """
        Parse a status string.

        Raises:
            InvalidStatusError: If value is not one of the three statuses
        """
        if isinstance(value, ShippingStatus):
            return value
        if isinstance(value, str):
            try:
                return cls(value)
            except ValueError:
                pass
        order_validation_failures.labels(reason='invalid_status').inc()
        raise InvalidStatusError(value)

    @classmethod
    def try_parse(cls, value: Any) -> Optional["ShippingStatus"]:
        """Parse a status string, returning None instead of raising."""
        if isinstance(value, ShippingStatus):
            return value
        if isinstance(value, str) and value in cls.values():
            return cls(value)
        return None


# ============================================================================
# IMMUTABLE ORDER ITEM
# ============================================================================

@dataclass(frozen=True)
class OrderItem:
    """Immutable order line."""
    product_name: str
    product_id: str
    owner_id: str
    quantity: int
    line_cost: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "productName": self.product_name,
            "productId": self.product_id,
            "ownerId": self.owner_id,
            "quantity": self.quantity,
            "lineCost": self.line_cost,
        }


# ============================================================================
# ORDER
# ============================================================================

@dataclass(frozen=True)
class Order:
    """
    Persisted order.

    Instances are values: the store swaps in a new Order on every write,
    so readers never observe a half-applied status change.
    """
    id: str
    customer_id: str
    order_number: str
    items: Tuple[OrderItem, ...]
    total_amount: float
    status: ShippingStatus = ShippingStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        customer_id: str,
        items: Iterable[OrderItem],
        order_number: Optional[str] = None,
        order_id: Optional[str] = None
    ) -> "Order":
        """
        Build a pending order from already validated items.

        Raises:
            ValidationError: If items is empty
        """
        items = tuple(items)
        if not items:
            order_validation_failures.labels(reason='empty_items').inc()
            raise ValidationError(
                message="Order must contain at least one item",
                details=[{"field": "items", "message": "Order must contain at least one item"}]
            )
        now = utcnow()
        return cls(
            id=order_id or uuid.uuid4().hex,
            customer_id=customer_id,
            order_number=order_number or generate_order_number(),
            items=items,
            total_amount=compute_total(items),
            status=ShippingStatus.PENDING,
            created_at=now,
            updated_at=now,
        )

    def with_status(self, status: ShippingStatus, at: Optional[datetime] = None) -> "Order":
        """Return a copy carrying the new status and a fresh updated_at."""
        return replace(self, status=status, updated_at=at or utcnow())

    def with_order_number(self, order_number: str) -> "Order":
        return replace(self, order_number=order_number)

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)

    def to_dict(self) -> Dict[str, Any]:
        """Export in the API's camelCase shape."""
        return {
            "id": self.id,
            "customerId": self.customer_id,
            "orderNumber": self.order_number,
            "items": [item.to_dict() for item in self.items],
            "totalAmount": self.total_amount,
            "status": self.status.value,
            "itemCount": self.item_count,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


# ============================================================================
# DERIVED VALUES
# ============================================================================

def compute_total(items: Iterable[OrderItem]) -> float:
    """Sum of line costs."""
    return sum(item.line_cost for item in items)


def generate_order_number() -> str:
    """ORD-<epoch millis>-<6 random base36 chars>."""
    timestamp = int(time.time() * 1000)
    suffix = "".join(
        secrets.choice(_ORDER_NUMBER_ALPHABET)
        for _ in range(ORDER_NUMBER_SUFFIX_LENGTH)
    )
    return f"{ORDER_NUMBER_PREFIX}-{timestamp}-{suffix}"


# ============================================================================
# VALIDATION
# ============================================================================

def _normalize_quantity(value: Any) -> Optional[int]:
    """Return an int quantity >= 1, or None if the value is not one."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 1 else None
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return int(value) if value >= 1 else None
    return None


def _normalize_cost(value: Any) -> Optional[float]:
    """Return a finite cost >= 0, or None."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    cost = float(value)
    if not math.isfinite(cost) or cost < 0:
        return None
    return cost


def _normalize_identifier(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def validate_item(raw: Any, index: int = 0) -> Tuple[Optional[OrderItem], List[Dict[str, Any]]]:
    """
    Validate one raw item mapping.

    Returns:
        (item, errors) - item is None when errors is non-empty
    """
    errors: List[Dict[str, Any]] = []
    prefix = f"items[{index}]"

    if isinstance(raw, OrderItem):
        raw = {
            "productName": raw.product_name,
            "productId": raw.product_id,
            "ownerId": raw.owner_id,
            "quantity": raw.quantity,
            "lineCost": raw.line_cost,
        }

    if not isinstance(raw, Mapping):
        return None, [{"field": prefix, "message": "Item must be an object"}]

    name = raw.get("productName")
    name = name.strip() if isinstance(name, str) else None
    if not name or not (MIN_PRODUCT_NAME_LENGTH <= len(name) <= MAX_PRODUCT_NAME_LENGTH):
        errors.append({
            "field": f"{prefix}.productName",
            "message": (
                f"Product name must be between {MIN_PRODUCT_NAME_LENGTH} "
                f"and {MAX_PRODUCT_NAME_LENGTH} characters"
            ),
        })

    product_id = _normalize_identifier(raw.get("productId"))
    if not product_id:
        errors.append({"field": f"{prefix}.productId", "message": "Product ID is required"})

    owner_id = _normalize_identifier(raw.get("ownerId"))
    if not owner_id:
        errors.append({"field": f"{prefix}.ownerId", "message": "Owner ID is required"})

    quantity = _normalize_quantity(raw.get("quantity"))
    if quantity is None:
        errors.append({"field": f"{prefix}.quantity", "message": "Quantity must be a positive integer"})

    line_cost = _normalize_cost(raw.get("lineCost", raw.get("totalCost")))
    if line_cost is None:
        errors.append({
            "field": f"{prefix}.lineCost",
            "message": "Line cost must be a finite number greater than or equal to 0",
        })

    if errors:
        return None, errors

    return OrderItem(
        product_name=name,
        product_id=product_id,
        owner_id=owner_id,
        quantity=quantity,
        line_cost=line_cost,
    ), []


def validate_items(raw_items: Any) -> Tuple[OrderItem, ...]:
    """
    Validate a raw item list into immutable OrderItems.

    Raises:
        ValidationError: With one detail entry per offending field
    """
    if not isinstance(raw_items, (list, tuple)) or len(raw_items) == 0:
        order_validation_failures.labels(reason='empty_items').inc()
        raise ValidationError(
            message="Order must contain at least one item",
            details=[{"field": "items", "message": "Items must be an array with at least one item"}]
        )

    items: List[OrderItem] = []
    errors: List[Dict[str, Any]] = []

    for index, raw in enumerate(raw_items):
        item, item_errors = validate_item(raw, index)
        if item_errors:
            errors.extend(item_errors)
        else:
            items.append(item)

    if errors:
        for error in errors:
            order_validation_failures.labels(
                reason=error["field"].rsplit(".", 1)[-1].split("[")[0]
            ).inc()
        logger.warning(f"Order validation failed: {errors}")
        raise ValidationError(message="Validation failed", details=errors)

    return tuple(items)


def record_order_value(order: Order):
    """Track order value distribution."""
    order_value.observe(order.total_amount)
