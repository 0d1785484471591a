"""
Access-scoped query building and pagination math.
"""

import pytest

from auth import Role
from errors import ValidationError
from order import ShippingStatus
from order_query import (
    OrderFilter,
    OrderSort,
    Pagination,
    SortField,
    build_order_query,
)


# ============================================================================
# Role scoping
# ============================================================================

class TestRoleScoping:

    def test_customer_pinned_to_self(self):
        query = build_order_query("customer-1", Role.CUSTOMER, {})
        assert query.order_filter.customer_id == "customer-1"

    def test_customer_cannot_widen_with_customer_id(self):
        query = build_order_query("customer-1", Role.CUSTOMER, {"customerId": "customer-2"})
        assert query.order_filter.customer_id == "customer-1"

    def test_customer_with_empty_identity_is_still_restricted(self):
        query = build_order_query("", Role.CUSTOMER, {})
        assert query.order_filter.customer_id == ""
        assert not query.order_filter.is_unrestricted

    def test_admin_unrestricted_by_default(self):
        query = build_order_query("admin-1", Role.ADMIN, {})
        assert query.order_filter.is_unrestricted

    def test_admin_may_filter_by_customer(self):
        query = build_order_query("admin-1", Role.ADMIN, {"customerId": "customer-2"})
        assert query.order_filter.customer_id == "customer-2"


# ============================================================================
# Filters and sort
# ============================================================================

class TestFilters:

    def test_status_filter(self):
        query = build_order_query("admin-1", Role.ADMIN, {"status": "shipped"})
        assert query.order_filter.status is ShippingStatus.SHIPPED
        assert query.order_filter.equalities() == {"status": "shipped"}

    def test_unknown_status_ignored(self):
        query = build_order_query("customer-1", Role.CUSTOMER, {"status": "lost"})
        assert query.order_filter.status is None
        assert query.order_filter.equalities() == {"customer_id": "customer-1"}

    def test_default_sort_newest_first(self):
        query = build_order_query("admin-1", Role.ADMIN, {})
        assert query.sort == OrderSort(SortField.CREATED_AT, descending=True)

    def test_sort_params(self):
        query = build_order_query(
            "admin-1", Role.ADMIN, {"sortBy": "totalAmount", "sortOrder": "asc"}
        )
        assert query.sort.field is SortField.TOTAL_AMOUNT
        assert query.sort.descending is False

    def test_unknown_sort_field_falls_back(self):
        query = build_order_query("admin-1", Role.ADMIN, {"sortBy": "password"})
        assert query.sort.field is SortField.CREATED_AT

    def test_filter_matches(self):
        order_filter = OrderFilter(customer_id="customer-1", status=ShippingStatus.PENDING)

        class _Order:
            customer_id = "customer-1"
            status = ShippingStatus.PENDING

        assert order_filter.matches(_Order())
        _Order.status = ShippingStatus.SHIPPED
        assert not order_filter.matches(_Order())


# ============================================================================
# Pagination params
# ============================================================================

class TestPaginationParams:

    def test_defaults(self):
        query = build_order_query("customer-1", Role.CUSTOMER, None)
        assert query.page == 1
        assert query.page_size == 10
        assert query.offset == 0

    def test_limit_and_page(self):
        query = build_order_query("customer-1", Role.CUSTOMER, {"page": "3", "limit": "5"})
        assert query.page == 3
        assert query.page_size == 5
        assert query.offset == 10

    def test_page_size_alias(self):
        query = build_order_query("customer-1", Role.CUSTOMER, {"pageSize": "7"})
        assert query.page_size == 7

    def test_page_size_clamped(self):
        query = build_order_query("admin-1", Role.ADMIN, {"limit": "500"})
        assert query.page_size == 100

    def test_configured_bounds(self):
        query = build_order_query(
            "admin-1", Role.ADMIN, {}, default_page_size=25, max_page_size=50
        )
        assert query.page_size == 25

    @pytest.mark.parametrize("params", [
        {"page": "0"},
        {"page": "-1"},
        {"page": "abc"},
        {"limit": "0"},
        {"limit": "1.5"},
        {"page": "²"},
        {"limit": "①"},
    ])
    def test_invalid_values_rejected(self, params):
        with pytest.raises(ValidationError):
            build_order_query("customer-1", Role.CUSTOMER, params)


class TestPagination:

    def test_empty_result_has_one_page(self):
        pagination = Pagination.from_total(1, 10, 0)
        assert pagination.total_pages == 1
        assert pagination.has_next is False
        assert pagination.has_prev is False

    def test_middle_page(self):
        pagination = Pagination.from_total(2, 10, 25)
        assert pagination.to_dict() == {
            "currentPage": 2,
            "pageSize": 10,
            "totalPages": 3,
            "totalCount": 25,
            "hasNext": True,
            "hasPrev": True,
        }

    def test_exact_multiple(self):
        pagination = Pagination.from_total(2, 10, 20)
        assert pagination.total_pages == 2
        assert pagination.has_next is False
