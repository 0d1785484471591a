"""
Access-Scoped Order Queries
===========================
Translates (caller identity, caller role, query params) into the filter,
sort and pagination the order store understands.

Customers are always pinned to their own orders; any customerId they
pass is overridden. Admins see everything and may narrow by status or
customer.
"""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from auth import ANY_ROLE, Role, authorize
from errors import ValidationError
from order import Order, ShippingStatus


logger = logging.getLogger(__name__)


DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


# ============================================================================
# FILTER & SORT
# ============================================================================

@dataclass(frozen=True)
class OrderFilter:
    """
    Predicate over orders.

    Stores only call matches() or equalities(); they never inspect the
    fields to make access decisions.
    """
    customer_id: Optional[str] = None
    status: Optional[ShippingStatus] = None

    def matches(self, order: Order) -> bool:
        if self.customer_id is not None and order.customer_id != self.customer_id:
            return False
        if self.status is not None and order.status != self.status:
            return False
        return True

    def equalities(self) -> Dict[str, str]:
        """Column equality constraints for SQL-style backends."""
        constraints = {}
        if self.customer_id is not None:
            constraints["customer_id"] = self.customer_id
        if self.status is not None:
            constraints["status"] = self.status.value
        return constraints

    @property
    def is_unrestricted(self) -> bool:
        return self.customer_id is None and self.status is None


class SortField(Enum):
    """Sortable order fields: (query name, attribute, column)."""
    CREATED_AT = ("createdAt", "created_at")
    UPDATED_AT = ("updatedAt", "updated_at")
    TOTAL_AMOUNT = ("totalAmount", "total_amount")
    ORDER_NUMBER = ("orderNumber", "order_number")
    STATUS = ("status", "status")

    @property
    def query_name(self) -> str:
        return self.value[0]

    @property
    def column(self) -> str:
        return self.value[1]

    @classmethod
    def from_query(cls, name: Any) -> Optional["SortField"]:
        for member in cls:
            if name in (member.query_name, member.column):
                return member
        return None


@dataclass(frozen=True)
class OrderSort:
    field: SortField = SortField.CREATED_AT
    descending: bool = True

    def key(self, order: Order):
        value = getattr(order, self.field.column)
        if isinstance(value, ShippingStatus):
            return value.value
        return value


# ============================================================================
# QUERY & PAGINATION
# ============================================================================

@dataclass(frozen=True)
class OrderQuery:
    order_filter: OrderFilter
    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    sort: OrderSort = field(default_factory=OrderSort)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


@dataclass(frozen=True)
class Pagination:
    current_page: int
    page_size: int
    total_count: int
    total_pages: int
    has_next: bool
    has_prev: bool

    @classmethod
    def from_total(cls, page: int, page_size: int, total_count: int) -> "Pagination":
        total_pages = max(1, math.ceil(total_count / page_size))
        return cls(
            current_page=page,
            page_size=page_size,
            total_count=total_count,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_prev=page > 1,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "currentPage": self.current_page,
            "pageSize": self.page_size,
            "totalPages": self.total_pages,
            "totalCount": self.total_count,
            "hasNext": self.has_next,
            "hasPrev": self.has_prev,
        }


# ============================================================================
# PARAM PARSING
# ============================================================================

def _parse_positive_int(name: str, value: Any, default: int) -> int:
    """
    Parse a positive integer query parameter.

    Raises:
        ValidationError: If present but not a positive integer
    """
    if value is None or (isinstance(value, str) and value.strip() == ""):
        return default

    parsed: Optional[int] = None
    if isinstance(value, bool):
        parsed = None
    elif isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and value.strip().isascii() and value.strip().isdecimal():
        parsed = int(value.strip())

    if parsed is None or parsed < 1:
        raise ValidationError(
            message=f"{name} must be a positive integer",
            details=[{"field": name, "value": value,
                      "message": f"{name} must be a positive integer"}]
        )
    return parsed


def build_order_query(
    caller_identity: str,
    caller_role: Role,
    params: Optional[Mapping[str, Any]] = None,
    default_page_size: int = DEFAULT_PAGE_SIZE,
    max_page_size: int = MAX_PAGE_SIZE
) -> OrderQuery:
    """
    Build the role-scoped store query for a listing request.

    Args:
        caller_identity: Verified user id of the caller
        caller_role: Verified role of the caller
        params: Raw query parameters (page, limit/pageSize, status,
            customerId, sortBy, sortOrder)

    Returns:
        OrderQuery

    Raises:
        ForbiddenError: If the role may not list orders
        ValidationError: If page or page size is not a positive integer
    """
    params = params or {}
    authorize(caller_role, ANY_ROLE, actor=caller_identity, action="list_orders")

    page = _parse_positive_int("page", params.get("page"), DEFAULT_PAGE)
    size_param = params.get("limit")
    if size_param is None or size_param == "":
        size_param = params.get("pageSize")
    page_size = _parse_positive_int("limit", size_param, default_page_size)
    page_size = min(page_size, max_page_size)

    status = ShippingStatus.try_parse(params.get("status"))
    if params.get("status") and status is None:
        logger.debug(f"Ignoring unknown status filter: {params.get('status')!r}")

    if caller_role.is_elevated:
        requested_customer = params.get("customerId")
        customer_id = str(requested_customer).strip() if requested_customer else None
    else:
        if params.get("customerId") and params.get("customerId") != caller_identity:
            logger.info(
                "Overriding customerId filter supplied by customer",
                extra={"actor": caller_identity}
            )
        # str() keeps an empty identity from collapsing into "no filter"
        customer_id = str(caller_identity)

    sort_field = SortField.from_query(params.get("sortBy")) or SortField.CREATED_AT
    descending = str(params.get("sortOrder") or "desc").lower() != "asc"

    return OrderQuery(
        order_filter=OrderFilter(customer_id=customer_id, status=status),
        page=page,
        page_size=page_size,
        sort=OrderSort(field=sort_field, descending=descending),
    )
