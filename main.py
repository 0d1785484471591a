"""
Order Service Application
=========================
Composition root: builds the shared components, wires the HTTP and
WebSocket routes, and maps typed failures to the response envelope.

Shared components (one per process, on app.state):
- config             Validated configuration
- order_store        Persistence backend
- session_registry   Live notification connections
- dispatcher         Status change notifications
- lifecycle          Order operations
- identity_resolver  Bearer token verification (HTTP and WebSocket)
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from auth import IdentityResolver
from config import Config, get_config, validate_configuration
from db import OrderStore, create_order_store
from errors import ErrorCode, OrderServiceError, SystemFailureError, ValidationError
from handlers import error_response, router as orders_router
from lifecycle import OrderLifecycleService
from notifications import NotificationDispatcher
from session_registry import SessionRegistry
from websocket_server import router as websocket_router


logger = logging.getLogger(__name__)


REQUEST_ID_HEADER = "X-Request-ID"


# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


# ============================================================================
# APPLICATION FACTORY
# ============================================================================

def create_app(
    config: Optional[Config] = None,
    store: Optional[OrderStore] = None
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Configuration (defaults to the global instance)
        store: Order store (defaults to the configured backend)
    """
    config = config or get_config()
    if store is None:
        store = create_order_store(config.storage)

    registry = SessionRegistry()
    dispatcher = NotificationDispatcher(
        registry,
        send_timeout=config.notifications.send_timeout,
        enabled=config.features.enable_notifications,
    )
    lifecycle = OrderLifecycleService(
        store,
        dispatcher,
        default_page_size=config.server.default_page_size,
        max_page_size=config.server.max_page_size,
    )
    identity_resolver = IdentityResolver(config.auth)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            f"Order service started ({config.server.environment}, "
            f"storage={config.storage.backend})"
        )
        yield
        logger.info("Shutting down order service...")
        await store.close()
        logger.info("Shutdown complete")

    app = FastAPI(title="Storefront Order Service", lifespan=lifespan)

    app.state.config = config
    app.state.order_store = store
    app.state.session_registry = registry
    app.state.dispatcher = dispatcher
    app.state.lifecycle = lifecycle
    app.state.identity_resolver = identity_resolver
    app.state.started_at = time.monotonic()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_request_id(app)
    _register_exception_handlers(app, config)

    app.include_router(orders_router)
    app.include_router(websocket_router)
    _register_operational_routes(app, config)

    return app


# ============================================================================
# MIDDLEWARE
# ============================================================================

def _register_request_id(app: FastAPI):

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id

        start = time.monotonic()
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id

        logger.debug(
            f"{request.method} {request.url.path} -> {response.status_code} "
            f"in {(time.monotonic() - start) * 1000:.1f}ms",
            extra={"request_id": request_id}
        )
        return response


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

def _register_exception_handlers(app: FastAPI, config: Config):
    development = config.server.is_development

    @app.exception_handler(OrderServiceError)
    async def order_service_error_handler(request: Request, exc: OrderServiceError):
        if isinstance(exc, SystemFailureError):
            logger.error(
                f"System failure on {request.method} {request.url.path}: {exc.detail}",
                extra={"request_id": getattr(request.state, "request_id", None)}
            )
        return error_response(request, exc, development)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        details = [
            {
                "field": ".".join(str(part) for part in error.get("loc", ())[1:]) or "body",
                "message": error.get("msg", "Invalid value"),
            }
            for error in exc.errors()
        ]
        return error_response(request, ValidationError(details=details), development)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(
            f"Unhandled error on {request.method} {request.url.path}: {str(exc)}",
            exc_info=True
        )
        response = error_response(
            request,
            SystemFailureError(str(exc), code=ErrorCode.SYSTEM_ERROR),
            development
        )
        # Runs outside the request-id middleware
        request_id = getattr(request.state, "request_id", None)
        if request_id:
            response.headers[REQUEST_ID_HEADER] = request_id
        return response


# ============================================================================
# HEALTH AND METRICS
# ============================================================================

def _register_operational_routes(app: FastAPI, config: Config):

    @app.get("/health")
    async def health_check(request: Request):
        """Liveness plus component checks."""
        state = request.app.state

        jwt_status = state.identity_resolver.self_test()
        database_status = {
            "status": "healthy" if state.order_store.is_healthy() else "unhealthy",
            "stats": state.order_store.get_stats(),
        }
        healthy = (
            jwt_status["status"] == "healthy"
            and database_status["status"] == "healthy"
        )

        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "degraded",
                "environment": config.server.environment,
                "components": {
                    "jwt": jwt_status,
                    "database": database_status,
                },
                "activeSessions": state.session_registry.count(),
                "notifications": state.dispatcher.get_stats(),
                "uptimeSeconds": round(time.monotonic() - state.started_at, 3),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )

    @app.get("/metrics")
    async def metrics():
        """Prometheus exposition."""
        if not config.features.enable_metrics:
            return JSONResponse(
                status_code=404,
                content={"success": False, "message": "Metrics disabled"}
            )
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def main():
    """Run the order service."""
    config = get_config()
    configure_logging(config.server.log_level)
    validate_configuration(config)

    logger.info(f"Starting server on {config.server.host}:{config.server.port}")

    uvicorn.run(
        create_app(config),
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level.lower(),
        access_log=True
    )


if __name__ == "__main__":
    main()
