"""Main FastAPI application."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from structlog import get_logger

from .. import __version__
from ..config import Settings, get_settings
from ..domain.exceptions import ConfigurationError
from ..logging_setup import configure_logging
from ..services.streamer import Streamer
from .exceptions import setup_exception_handlers
from .middleware.logging import LoggingMiddleware
from .routes import control, health

logger = get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Auto-start the stream on boot and stop it on shutdown."""
    settings: Settings = app.state.settings
    streamer: Streamer = app.state.streamer

    if settings.auto_start:
        try:
            await streamer.start()
        except ConfigurationError as e:
            logger.error("stream_auto_start_failed", error=str(e), retry=False)
        except Exception as e:
            logger.error("stream_auto_start_failed", error=str(e), retry=True)
            streamer.request_restart(f"auto start failed: {e}")

    yield

    await streamer.stop()


def create_app(
    settings: Optional[Settings] = None, streamer: Optional[Streamer] = None
) -> FastAPI:
    """Create FastAPI application."""
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title="Livecast Stream",
        description="24/7 browser-to-RTMP stream control API",
        version=__version__,
        docs_url="/docs" if settings.environment != "production" else None,
        redoc_url=None,
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.streamer = streamer or Streamer(settings)

    # Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )
    app.add_middleware(LoggingMiddleware)

    setup_exception_handlers(app)

    # Routes
    app.include_router(health.router, tags=["health"])
    app.include_router(control.router, tags=["control"])

    def log_state_change(new_state, old_state):
        logger.info("stream_state_changed", state=new_state.value, previous=old_state.value)

    app.state.streamer.add_state_listener(log_state_change)

    return app
