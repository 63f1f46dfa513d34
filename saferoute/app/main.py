"""
Relay hub application entry point.

Run with:
    uvicorn saferoute.app.main:app --host 0.0.0.0 --port 8765

Or through the console script:
    saferoute relay
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# ── Core infrastructure ──
from saferoute.app.core.config import settings
from saferoute.app.core.logging_config import setup_logging, get_logger
from saferoute.app.core.errors import register_error_handlers
from saferoute.app.core.middleware import RequestLoggingMiddleware

# ── Relay ──
from saferoute.app.api.v1.relay import router as relay_router
from saferoute.app.relay.hub import RelayHub

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup and shutdown events."""
    logger.info(
        "Starting %s v%s [%s] on port %d",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT, settings.RELAY_PORT,
    )
    yield
    hub: RelayHub = app.state.hub
    logger.info(
        "Shutting down %s (%d clients, %d SOS relayed)",
        settings.APP_NAME, hub.client_count, hub.sos_count,
    )


# ── Create application ──

def create_app(hub: Optional[RelayHub] = None) -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "LAN relay hub for SOS alerts. Devices keep one WebSocket open; "
            "every SOS one device sends is rebroadcast to all the others, and "
            "newly connected devices are replayed the recent history."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.hub = hub or RelayHub()

    # ── Middleware stack (order matters — outermost first) ──
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # ── Error handlers ──
    register_error_handlers(app)

    # ── Register routers ──
    app.include_router(relay_router)
    return app


app = create_app()
