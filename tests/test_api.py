"""
HTTP surface: envelopes, authentication, role scoping and error mapping.
"""

from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from auth import Role
from conftest import (
    CUSTOMER_ID,
    OTHER_CUSTOMER_ID,
    bearer,
    make_item,
    place_order,
)


# ============================================================================
# Authentication
# ============================================================================

class TestAuthentication:

    def test_missing_token(self, client):
        response = client.get("/orders/order-history")
        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["errorCode"] == "NO_TOKEN"

    def test_non_bearer_header(self, client):
        response = client.get("/orders/order-history", headers={"Authorization": "Basic abc"})
        assert response.status_code == 401
        assert response.json()["errorCode"] == "INVALID_TOKEN_FORMAT"

    def test_garbage_token(self, client):
        response = client.get("/orders/order-history", headers=bearer("a.b.c"))
        assert response.status_code == 401
        assert response.json()["errorCode"] == "INVALID_TOKEN"

    def test_expired_token(self, client, resolver):
        token = resolver.issue_token(CUSTOMER_ID, Role.CUSTOMER, expires_in=-5)
        response = client.get("/orders/order-history", headers=bearer(token))
        assert response.status_code == 401
        assert response.json()["errorCode"] == "TOKEN_EXPIRED"


# ============================================================================
# Placing orders
# ============================================================================

class TestCreateOrder:

    def test_customer_creates(self, client, customer_token):
        response = client.post(
            "/orders",
            json={"items": [make_item(quantity=2, lineCost=10), make_item(productId="prod-2", lineCost=5)]},
            headers=bearer(customer_token),
        )

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["statusCode"] == 201
        assert body["requestId"] == response.headers["X-Request-ID"]
        order = body["data"]["order"]
        assert order["customerId"] == CUSTOMER_ID
        assert order["status"] == "pending"
        assert order["totalAmount"] == 15.0
        assert order["orderNumber"].startswith("ORD-")

    def test_single_line_total(self, client, customer_token):
        order = place_order(client, customer_token, [make_item(quantity=2, lineCost=51.98)])
        assert order["totalAmount"] == 51.98
        assert order["items"][0]["quantity"] == 2

    def test_total_cost_alias(self, client, customer_token):
        item = make_item()
        item["totalCost"] = item.pop("lineCost")
        order = place_order(client, customer_token, [item])
        assert order["items"][0]["lineCost"] == 19.5

    def test_admin_forbidden(self, client, admin_token):
        response = client.post("/orders", json={"items": [make_item()]}, headers=bearer(admin_token))
        assert response.status_code == 403
        assert response.json()["errorCode"] == "INSUFFICIENT_PERMISSIONS"

    def test_empty_items(self, client, customer_token):
        response = client.post("/orders", json={"items": []}, headers=bearer(customer_token))
        assert response.status_code == 400
        assert response.json()["errorCode"] == "VALIDATION_ERROR"

    def test_invalid_quantity(self, client, customer_token):
        response = client.post(
            "/orders", json={"items": [make_item(quantity=0)]}, headers=bearer(customer_token)
        )
        assert response.status_code == 400
        body = response.json()
        assert body["errors"][0]["field"] == "items[0].quantity"

    def test_malformed_body(self, client, customer_token):
        response = client.post("/orders", json={"products": []}, headers=bearer(customer_token))
        assert response.status_code == 400
        body = response.json()
        assert body["errorCode"] == "VALIDATION_ERROR"
        assert body["errors"][0]["field"] == "items"


# ============================================================================
# Listing
# ============================================================================

class TestListing:

    def test_customer_history_scoped(self, client, customer_token, other_customer_token):
        place_order(client, customer_token)
        place_order(client, customer_token)
        place_order(client, other_customer_token)

        response = client.get(
            "/orders/order-history",
            params={"customerId": OTHER_CUSTOMER_ID},
            headers=bearer(customer_token),
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["pagination"]["totalCount"] == 2
        assert {o["customerId"] for o in data["orders"]} == {CUSTOMER_ID}

    def test_admin_history_sees_all(self, client, customer_token, other_customer_token, admin_token):
        place_order(client, customer_token)
        place_order(client, other_customer_token)

        response = client.get("/orders/order-history", headers=bearer(admin_token))
        assert response.json()["data"]["pagination"]["totalCount"] == 2

    def test_admin_list_with_filters(self, client, customer_token, other_customer_token, admin_token):
        first = place_order(client, customer_token)
        place_order(client, other_customer_token)
        client.put(
            f"/orders/{first['id']}/status", json={"status": "shipped"}, headers=bearer(admin_token)
        )

        response = client.get("/orders", params={"status": "shipped"}, headers=bearer(admin_token))
        orders = response.json()["data"]["orders"]
        assert [o["id"] for o in orders] == [first["id"]]

        response = client.get(
            "/orders", params={"customerId": OTHER_CUSTOMER_ID}, headers=bearer(admin_token)
        )
        assert {o["customerId"] for o in response.json()["data"]["orders"]} == {OTHER_CUSTOMER_ID}

    def test_customer_cannot_list_all(self, client, customer_token):
        response = client.get("/orders", headers=bearer(customer_token))
        assert response.status_code == 403

    def test_pagination(self, client, customer_token):
        for _ in range(3):
            place_order(client, customer_token)

        response = client.get(
            "/orders/order-history", params={"page": 2, "limit": 2}, headers=bearer(customer_token)
        )
        data = response.json()["data"]
        assert len(data["orders"]) == 1
        assert data["pagination"] == {
            "currentPage": 2,
            "pageSize": 2,
            "totalPages": 2,
            "totalCount": 3,
            "hasNext": False,
            "hasPrev": True,
        }

    def test_page_size_clamped(self, client, customer_token):
        response = client.get(
            "/orders/order-history", params={"limit": 1000}, headers=bearer(customer_token)
        )
        assert response.json()["data"]["pagination"]["pageSize"] == 100

    @pytest.mark.parametrize("params", [{"page": "0"}, {"limit": "abc"}, {"page": "²"}, {"limit": "①"}])
    def test_bad_pagination(self, client, customer_token, params):
        response = client.get("/orders/order-history", params=params, headers=bearer(customer_token))
        assert response.status_code == 400
        assert response.json()["errorCode"] == "VALIDATION_ERROR"

    def test_empty_history(self, client, customer_token):
        data = client.get("/orders/order-history", headers=bearer(customer_token)).json()["data"]
        assert data["orders"] == []
        assert data["pagination"]["totalPages"] == 1


# ============================================================================
# Single order and status updates
# ============================================================================

class TestOrderDetail:

    def test_admin_reads_order(self, client, customer_token, admin_token):
        order = place_order(client, customer_token)
        response = client.get(f"/orders/{order['id']}", headers=bearer(admin_token))
        assert response.status_code == 200
        assert response.json()["data"]["order"]["id"] == order["id"]

    def test_customer_cannot_read_by_id(self, client, customer_token):
        order = place_order(client, customer_token)
        response = client.get(f"/orders/{order['id']}", headers=bearer(customer_token))
        assert response.status_code == 403

    def test_unknown_order(self, client, admin_token):
        response = client.get("/orders/does-not-exist", headers=bearer(admin_token))
        assert response.status_code == 404
        assert response.json()["errorCode"] == "RESOURCE_NOT_FOUND"


class TestUpdateStatus:

    def test_admin_updates(self, client, customer_token, admin_token):
        order = place_order(client, customer_token)

        response = client.put(
            f"/orders/{order['id']}/status", json={"status": "delivered"}, headers=bearer(admin_token)
        )

        assert response.status_code == 200
        updated = response.json()["data"]["order"]
        assert updated["status"] == "delivered"
        assert datetime.fromisoformat(updated["updatedAt"]) >= datetime.fromisoformat(order["updatedAt"])

    def test_update_visible_only_to_owner(self, client, customer_token, other_customer_token, admin_token):
        order = place_order(client, customer_token)
        place_order(client, other_customer_token)

        client.put(
            f"/orders/{order['id']}/status", json={"status": "delivered"}, headers=bearer(admin_token)
        )

        owner_orders = client.get(
            "/orders/order-history", headers=bearer(customer_token)
        ).json()["data"]["orders"]
        assert [(o["id"], o["status"]) for o in owner_orders] == [(order["id"], "delivered")]

        other_orders = client.get(
            "/orders/order-history", headers=bearer(other_customer_token)
        ).json()["data"]["orders"]
        assert order["id"] not in {o["id"] for o in other_orders}
        assert len(other_orders) == 1

    def test_shipping_status_alias(self, client, customer_token, admin_token):
        order = place_order(client, customer_token)
        response = client.put(
            f"/orders/{order['id']}/status",
            json={"shippingStatus": "shipped"},
            headers=bearer(admin_token),
        )
        assert response.json()["data"]["order"]["status"] == "shipped"

    def test_customer_forbidden(self, client, customer_token, admin_token):
        order = place_order(client, customer_token)

        response = client.put(
            f"/orders/{order['id']}/status", json={"status": "delivered"}, headers=bearer(customer_token)
        )

        assert response.status_code == 403
        detail = client.get(f"/orders/{order['id']}", headers=bearer(admin_token)).json()
        assert detail["data"]["order"]["status"] == "pending"

    def test_invalid_status(self, client, customer_token, admin_token):
        order = place_order(client, customer_token)
        response = client.put(
            f"/orders/{order['id']}/status", json={"status": "cancelled"}, headers=bearer(admin_token)
        )
        assert response.status_code == 400
        assert response.json()["errorCode"] == "INVALID_STATUS"

    def test_unknown_order(self, client, admin_token):
        response = client.put(
            "/orders/missing/status", json={"status": "shipped"}, headers=bearer(admin_token)
        )
        assert response.status_code == 404


# ============================================================================
# Operational endpoints
# ============================================================================

class TestOperational:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["components"]["jwt"]["status"] == "healthy"
        assert body["components"]["database"]["status"] == "healthy"
        assert body["activeSessions"] == 0

    def test_metrics(self, client, customer_token):
        place_order(client, customer_token)
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "orders_created_total" in response.text

    def test_request_id_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_unexpected_error_keeps_request_id(self, app, customer_token):
        async def failing_list_orders(*args, **kwargs):
            raise RuntimeError("listing exploded")

        with TestClient(app, raise_server_exceptions=False) as test_client:
            app.state.lifecycle.list_orders = failing_list_orders
            response = test_client.get(
                "/orders/order-history",
                headers={**bearer(customer_token), "X-Request-ID": "req-500"},
            )

        assert response.status_code == 500
        body = response.json()
        assert body["errorCode"] == "SYSTEM_ERROR"
        assert body["requestId"] == "req-500"
        assert response.headers["X-Request-ID"] == "req-500"
