"""Stream control endpoints."""

from fastapi import APIRouter, Depends, status
from structlog import get_logger

from ...domain.exceptions import StreamerStateError
from ...domain.models import StreamerState
from ...services.streamer import Streamer
from ..dependencies import get_streamer
from ..exceptions import error_response
from ..schemas.stream import ActionResponse, SceneRequest

logger = get_logger()

router = APIRouter()


def failure(action: str, exc: Exception):
    logger.error("control_action_failed", action=action, error=str(exc))
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))


@router.post("/start", response_model=ActionResponse)
async def start_stream(streamer: Streamer = Depends(get_streamer)):
    """Start the stream."""
    try:
        await streamer.start()
    except StreamerStateError:
        raise
    except Exception as e:
        return failure("start", e)
    return ActionResponse(message="Stream started")


@router.post("/stop", response_model=ActionResponse)
async def stop_stream(streamer: Streamer = Depends(get_streamer)):
    """Stop the stream from any state."""
    if streamer.get_state() == StreamerState.STOPPED:
        raise StreamerStateError("Stream already stopped")
    try:
        await streamer.stop()
    except Exception as e:
        return failure("stop", e)
    return ActionResponse(message="Stream stopped")


@router.post("/scene", response_model=ActionResponse)
async def switch_scene(request: SceneRequest, streamer: Streamer = Depends(get_streamer)):
    """Show a scene regardless of the automation service status."""
    if streamer.get_state() != StreamerState.STREAMING:
        raise StreamerStateError("Stream not running")
    try:
        scene = await streamer.set_scene(request.scene)
    except StreamerStateError:
        raise
    except Exception as e:
        return failure("scene", e)
    return ActionResponse(message=f"Switched to {scene.value}", current_scene=scene)


@router.post("/restart-capture", response_model=ActionResponse)
async def restart_capture(streamer: Streamer = Depends(get_streamer)):
    """Replace the browser while the encoder and destinations stay connected."""
    if streamer.get_state() != StreamerState.STREAMING:
        raise StreamerStateError("Stream not running")
    try:
        await streamer.restart_capture()
    except StreamerStateError:
        raise
    except Exception as e:
        return failure("restart_capture", e)
    return ActionResponse(message="Browser restarted (RTMP maintained)")


@router.post("/refresh", response_model=ActionResponse)
async def refresh_page(streamer: Streamer = Depends(get_streamer)):
    """Reload the captured page to pick up new deployments."""
    try:
        await streamer.refresh_page()
    except Exception as e:
        return failure("refresh", e)
    return ActionResponse(message="Page refreshed")
