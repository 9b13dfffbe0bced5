"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from marketplace.api.middleware.error_handler import error_handler_middleware
from marketplace.api.middleware.latency_logging import latency_logging_middleware
from marketplace.api.routes import admin, carts, checkout, downloads, health, orders, webhooks
from marketplace.core.cache import build_cache
from marketplace.core.config import get_settings
from marketplace.core.database import get_engine, get_session_factory, init_database
from marketplace.core.stripe import build_payment_gateway
from marketplace.services.affiliate_service import register_affiliate_handlers
from marketplace.services.side_effects import EventBus

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    Builds the long-lived collaborators once and stores them on
    ``app.state`` for the request dependencies to pick up.

    Args:
        app: FastAPI application instance.

    Yields:
        None: Control back to the application.
    """
    settings = get_settings()
    logger.info("Starting %s in %s mode", settings.app_name, settings.app_env)

    init_database()

    app.state.cache = build_cache(settings.redis_url, settings.redis_socket_timeout)
    logger.info("Cache initialized")

    app.state.gateway = build_payment_gateway(settings)
    logger.info("Payment gateway initialized (test mode: %s)", settings.is_stripe_test_mode)

    event_bus = EventBus()
    register_affiliate_handlers(event_bus, get_session_factory())
    app.state.event_bus = event_bus
    logger.info("Event bus initialized")

    yield

    get_engine().dispose()
    logger.info("Shutting down %s", settings.app_name)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        FastAPI: Configured application instance.
    """
    settings = get_settings()

    app = FastAPI(
        title="Marketplace API",
        description="Digital goods marketplace: carts, checkout, orders and downloads",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["x-session-token"],
    )

    # Error handler sits inside the latency logger so logged statuses are the final ones
    app.add_middleware(BaseHTTPMiddleware, dispatch=error_handler_middleware)
    app.add_middleware(BaseHTTPMiddleware, dispatch=latency_logging_middleware)

    # Health routes at root level (no prefix)
    app.include_router(health.router)

    api_v1_router = APIRouter(prefix="/api/v1")
    api_v1_router.include_router(carts.router)
    api_v1_router.include_router(checkout.router)
    api_v1_router.include_router(orders.router)
    api_v1_router.include_router(downloads.router)
    api_v1_router.include_router(admin.router)
    api_v1_router.include_router(webhooks.router)
    app.include_router(api_v1_router)

    return app


# Create application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "marketplace.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        proxy_headers=True,
        forwarded_allow_ips=settings.forwarded_allow_ips,
    )
