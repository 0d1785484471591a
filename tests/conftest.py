"""
Shared test fixtures and helpers for the order service test suite.
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from auth import IdentityResolver, Role
from config import Config
from db import InMemoryOrderStore
from lifecycle import OrderLifecycleService
from main import create_app
from notifications import NotificationDispatcher
from session_registry import SessionRegistry


TEST_JWT_SECRET = "test-secret-key-that-is-long-enough-for-hs256-signing"

CUSTOMER_ID = "customer-1"
OTHER_CUSTOMER_ID = "customer-2"
ADMIN_ID = "admin-1"

_MANAGED_ENV = [
    "JWT_SECRET",
    "JWT_ISSUER",
    "JWT_ALGORITHM",
    "JWT_EXPIRES_IN",
    "STORAGE_BACKEND",
    "SUPABASE_URL",
    "SUPABASE_KEY",
    "SUPABASE_ORDERS_TABLE",
    "STORE_TIMEOUT",
    "ORDER_NUMBER_MAX_ATTEMPTS",
    "HANDSHAKE_TIMEOUT",
    "NOTIFICATION_SEND_TIMEOUT",
    "ENABLE_NOTIFICATIONS",
    "ENABLE_METRICS",
    "HOST",
    "PORT",
    "ENVIRONMENT",
    "CORS_ORIGINS",
    "DEFAULT_PAGE_SIZE",
    "MAX_PAGE_SIZE",
    "LOG_LEVEL",
]


# ============================================================================
# Helpers
# ============================================================================


def make_item(**overrides) -> Dict[str, Any]:
    """Valid raw order item; override any field."""
    item = {
        "productName": "Blue Mug",
        "productId": "prod-1",
        "ownerId": "seller-1",
        "quantity": 2,
        "lineCost": 19.5,
    }
    item.update(overrides)
    return item


def bearer(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


class FakeTransport:
    """Stands in for a WebSocket; records every JSON message sent."""

    def __init__(self, fail: bool = False, hang: bool = False):
        self.sent: List[Dict[str, Any]] = []
        self.fail = fail
        self.hang = hang

    async def send_json(self, payload: Dict[str, Any]):
        if self.hang:
            await asyncio.sleep(3600)
        if self.fail:
            raise ConnectionError("transport closed")
        self.sent.append(payload)


# ============================================================================
# Configuration
# ============================================================================


@pytest.fixture
def env(monkeypatch):
    """Clean, valid environment for Config()."""
    for key in _MANAGED_ENV:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "memory")
    return monkeypatch


@pytest.fixture
def config(env) -> Config:
    return Config()


@pytest.fixture
def resolver(config) -> IdentityResolver:
    return IdentityResolver(config.auth)


# ============================================================================
# Core components
# ============================================================================


@pytest.fixture
def store() -> InMemoryOrderStore:
    return InMemoryOrderStore(timeout=1.0)


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry()


@pytest.fixture
def dispatcher(registry) -> NotificationDispatcher:
    return NotificationDispatcher(registry, send_timeout=0.2)


@pytest.fixture
def lifecycle(store, dispatcher) -> OrderLifecycleService:
    return OrderLifecycleService(store, dispatcher)


# ============================================================================
# Application
# ============================================================================


@pytest.fixture
def app(config):
    return create_app(config, store=InMemoryOrderStore(timeout=1.0))


@pytest.fixture
def client(app):
    # Context manager keeps HTTP requests and WebSockets on one event loop
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def customer_token(resolver) -> str:
    return resolver.issue_token(CUSTOMER_ID, Role.CUSTOMER, "customer1@example.com")


@pytest.fixture
def other_customer_token(resolver) -> str:
    return resolver.issue_token(OTHER_CUSTOMER_ID, Role.CUSTOMER, "customer2@example.com")


@pytest.fixture
def admin_token(resolver) -> str:
    return resolver.issue_token(ADMIN_ID, Role.ADMIN, "admin@example.com")


def place_order(client: TestClient, token: str, items: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    """POST /orders and return the created order payload."""
    response = client.post(
        "/orders",
        json={"items": items or [make_item()]},
        headers=bearer(token),
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]["order"]
