"""FastAPI application for the Orders Service."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from libs.common.config import get_settings
from libs.common.logging import get_logger, get_request_id
from libs.common.middleware import add_observability_middleware
from libs.common.rate_limit import limiter, rate_limit_exceeded_handler
from libs.db.session import init_db
from services.orders_service import models  # noqa: F401
from services.orders_service.exceptions import OrderServiceError
from services.orders_service.routers import (
    owner_router,
    storefront_router,
    tracking_router,
    webhooks_router,
)
from services.orders_service.services.notifier import get_notifier
from slowapi.errors import RateLimitExceeded

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    if settings.ENVIRONMENT in ("local", "development"):
        await init_db()
    yield
    await get_notifier().close()


async def order_service_error_handler(
    request: Request, exc: OrderServiceError
) -> JSONResponse:
    """Render domain errors as ``{"detail", "code", "retryable"}``."""
    headers = {}
    request_id = get_request_id()
    if request_id:
        headers["X-Request-ID"] = request_id
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.code, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code, content=exc.to_dict(), headers=headers
    )


def create_app() -> FastAPI:
    """Create and configure the Orders Service FastAPI app."""
    settings = get_settings()
    app = FastAPI(
        title="Orders Service",
        version="0.1.0",
        description="Checkout, order lifecycle and courier dispatch for restaurants.",
        lifespan=lifespan,
    )

    # Add rate limiter state to app
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_exception_handler(OrderServiceError, order_service_error_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            origin.strip()
            for origin in settings.CORS_ORIGINS.split(",")
            if origin.strip()
        ],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    # Add observability (structured logging + request tracing)
    add_observability_middleware(app)

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "orders"}

    app.include_router(storefront_router, prefix="/orders")
    app.include_router(owner_router, prefix="/orders")
    app.include_router(tracking_router, prefix="/orders")
    app.include_router(webhooks_router, prefix="/orders")

    return app


app = create_app()
