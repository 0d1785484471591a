"""
Order HTTP Handlers
===================
FastAPI routes for placing, listing, reading and transitioning orders.

This layer:
- Authenticates the bearer token
- Shapes request bodies and the response envelope
- Calls the lifecycle service

Access rules live in the lifecycle service, not here.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from auth import ELEVATED_ROLES, Identity, IdentityResolver, strip_bearer
from errors import AuthenticationError, ErrorCode, OrderServiceError, SystemFailureError
from lifecycle import OrderLifecycleService


logger = logging.getLogger(__name__)


router = APIRouter(prefix="/orders", tags=["orders"])


# ============================================================================
# RESPONSE ENVELOPE
# ============================================================================

def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


def success_response(
    request: Request,
    data: Any = None,
    message: str = "Success",
    status_code: int = 200
) -> JSONResponse:
    """Standard success envelope."""
    body = {
        "success": True,
        "message": message,
        "data": data,
        "statusCode": status_code,
        "timestamp": _timestamp(),
    }
    request_id = _request_id(request)
    if request_id:
        body["requestId"] = request_id
    return JSONResponse(status_code=status_code, content=body)


def error_response(
    request: Request,
    error: OrderServiceError,
    development: bool = False
) -> JSONResponse:
    """Standard error envelope; SYSTEM_ERROR detail only in development."""
    body = error.to_dict()
    if isinstance(error, SystemFailureError):
        body["message"] = error.public_message(development)
    body["timestamp"] = _timestamp()
    request_id = _request_id(request)
    if request_id:
        body["requestId"] = request_id
    return JSONResponse(status_code=error.status_code, content=body)


# ============================================================================
# REQUEST BODIES
# ============================================================================

class OrderItemPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    productName: str
    productId: str
    ownerId: str
    quantity: int
    lineCost: float = Field(validation_alias=AliasChoices("lineCost", "totalCost"))


class CreateOrderPayload(BaseModel):
    items: List[OrderItemPayload]


class UpdateStatusPayload(BaseModel):
    status: str = Field(validation_alias=AliasChoices("status", "shippingStatus"))


# ============================================================================
# DEPENDENCIES
# ============================================================================

async def get_identity(request: Request) -> Identity:
    """Verify the Authorization header and return the caller identity."""
    header = request.headers.get("authorization")
    if not header:
        logger.info(
            "No authorization header provided",
            extra={"path": request.url.path, "method": request.method}
        )
        raise AuthenticationError(code=ErrorCode.NO_TOKEN)

    token = strip_bearer(header)
    if token is None:
        raise AuthenticationError(code=ErrorCode.INVALID_TOKEN_FORMAT)

    resolver: IdentityResolver = request.app.state.identity_resolver
    return await resolver.resolve(token)


def get_lifecycle(request: Request) -> OrderLifecycleService:
    return request.app.state.lifecycle


# ============================================================================
# ROUTES
# ============================================================================

@router.post("", status_code=201)
async def create_order(
    payload: CreateOrderPayload,
    request: Request,
    identity: Identity = Depends(get_identity),
    lifecycle: OrderLifecycleService = Depends(get_lifecycle)
):
    """Place an order (customers only)."""
    items: List[Dict[str, Any]] = [item.model_dump() for item in payload.items]
    order = await lifecycle.place_order(identity.user_id, identity.role, items)
    return success_response(
        request,
        {"order": order.to_dict()},
        message="Order created successfully",
        status_code=201,
    )


@router.get("")
async def list_all_orders(
    request: Request,
    identity: Identity = Depends(get_identity),
    lifecycle: OrderLifecycleService = Depends(get_lifecycle)
):
    """List every order (admin only)."""
    page = await lifecycle.list_orders(
        identity.user_id,
        identity.role,
        dict(request.query_params),
        required_roles=ELEVATED_ROLES,
    )
    return success_response(request, page.to_dict(), message="Orders retrieved successfully")


@router.get("/order-history")
async def order_history(
    request: Request,
    identity: Identity = Depends(get_identity),
    lifecycle: OrderLifecycleService = Depends(get_lifecycle)
):
    """Customers see their own orders, admins see all."""
    page = await lifecycle.list_orders(
        identity.user_id,
        identity.role,
        dict(request.query_params),
    )
    return success_response(
        request, page.to_dict(), message="Order history retrieved successfully"
    )


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    request: Request,
    identity: Identity = Depends(get_identity),
    lifecycle: OrderLifecycleService = Depends(get_lifecycle)
):
    """Read one order (admin only)."""
    order = await lifecycle.get_order(identity.role, order_id, actor=identity.user_id)
    return success_response(
        request, {"order": order.to_dict()}, message="Order retrieved successfully"
    )


@router.put("/{order_id}/status")
async def update_order_status(
    order_id: str,
    payload: UpdateStatusPayload,
    request: Request,
    identity: Identity = Depends(get_identity),
    lifecycle: OrderLifecycleService = Depends(get_lifecycle)
):
    """Change shipping status (admin only) and notify the customer."""
    order = await lifecycle.update_status(
        identity.role, order_id, payload.status, actor=identity.user_id
    )
    return success_response(
        request, {"order": order.to_dict()}, message="Order status updated successfully"
    )
