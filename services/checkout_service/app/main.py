"""FastAPI application for the Checkout Service."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from libs.common.config import get_settings
from libs.common.errors import register_exception_handlers
from libs.common.logging import get_logger
from libs.common.middleware import add_observability_middleware
from services.checkout_service.routers import (
    currency_router,
    orders_router,
    payments_router,
    shipping_router,
)
from services.checkout_service.services.currency import RateRefresher, get_rate_cache

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    refresher = None
    if settings.RATE_REFRESH_ENABLED:
        refresher = RateRefresher(get_rate_cache())
        refresher.start()
    app.state.rate_refresher = refresher
    try:
        yield
    finally:
        if refresher is not None:
            await refresher.stop()


def create_app() -> FastAPI:
    """Create and configure the Checkout Service FastAPI app."""
    settings = get_settings()
    app = FastAPI(
        title="Checkout Service",
        version="0.1.0",
        description="Order fulfilment, payment and shipping orchestration.",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.FRONTEND_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Structured logging + request tracing
    add_observability_middleware(app)
    register_exception_handlers(app)

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": settings.SERVICE_NAME}

    app.include_router(shipping_router)
    app.include_router(payments_router)
    app.include_router(orders_router)
    app.include_router(currency_router)

    return app


app = create_app()
