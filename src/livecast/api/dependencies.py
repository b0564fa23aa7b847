"""FastAPI dependency injection."""

from fastapi import Request

from ..config import Settings
from ..services.streamer import Streamer


def get_settings_dep(request: Request) -> Settings:
    """Get the settings the application was created with."""
    return request.app.state.settings


def get_streamer(request: Request) -> Streamer:
    """Get the process-wide orchestrator created by the app factory."""
    return request.app.state.streamer
