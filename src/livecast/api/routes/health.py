"""Health and status endpoints."""

from datetime import datetime, timezone

import psutil
from fastapi import APIRouter, Depends

from ...config import Settings
from ...services.streamer import Streamer
from ..dependencies import get_settings_dep, get_streamer
from ..schemas.stream import (
    AudioHealth,
    ConfigHealth,
    HealthResponse,
    MemoryHealth,
    ScheduleHealth,
    StatusResponse,
    StreamHealth,
)

router = APIRouter()


def format_duration(seconds: float) -> str:
    """Format a duration the way operators read it, e.g. ``2h 5m 3s``."""
    total = int(seconds)
    if total <= 0:
        return "0s"
    minutes, secs = divmod(total, 60)
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)

    if days:
        return f"{days}d {hours}h {minutes}m"
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


@router.get("/health", response_model=HealthResponse)
async def health_check(
    streamer: Streamer = Depends(get_streamer),
    settings: Settings = Depends(get_settings_dep),
):
    """Full stream health report; always 200, the state is in the body."""
    stats = streamer.get_stats()
    memory = psutil.Process().memory_info()

    schedule = None
    if stats.schedule:
        schedule = ScheduleHealth(
            current_phase=stats.schedule.current_phase.value,
            scene=stats.schedule.scene,
            minutes_into_phase=stats.schedule.minutes_into_phase,
            minutes_remaining=stats.schedule.minutes_remaining,
            next_switch=stats.schedule.next_switch,
            pattern=(
                f"{format_duration(settings.schedule_build_minutes * 60)} BUILD -> "
                f"{format_duration(settings.schedule_break_minutes * 60)} BREAK -> repeat"
            ),
        )

    return HealthResponse(
        service=settings.service_name,
        stream=StreamHealth(
            state=stats.state.value,
            current_scene=stats.current_scene,
            frame_count=stats.frame_count,
            uptime_seconds=round(stats.uptime_seconds, 1),
            uptime_formatted=format_duration(stats.uptime_seconds),
            restarts=stats.restarts,
            destinations=stats.destinations,
            last_error=stats.last_error,
        ),
        audio=AudioHealth(
            source=stats.audio_source.value,
            url_ttl_seconds=round(stats.audio_url_ttl_seconds, 1),
            url_ttl_formatted=(
                format_duration(stats.audio_url_ttl_seconds)
                if stats.audio_url_ttl_seconds > 0
                else "N/A"
            ),
        ),
        schedule=schedule,
        config=ConfigHealth(
            watch_url=settings.watch_url,
            vj_url=settings.vj_url,
            brain_url=settings.brain_url,
            resolution=settings.resolution,
            fps=settings.stream_fps,
            bitrate=settings.stream_bitrate,
        ),
        memory=MemoryHealth(
            rss_mb=round(memory.rss / 1024 / 1024),
            vms_mb=round(memory.vms / 1024 / 1024),
        ),
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@router.get("/status", response_model=StatusResponse)
async def stream_status(streamer: Streamer = Depends(get_streamer)):
    """Minimal stream snapshot."""
    stats = streamer.get_stats()
    return StatusResponse(
        state=stats.state.value,
        current_scene=stats.current_scene,
        frame_count=stats.frame_count,
        uptime_seconds=round(stats.uptime_seconds, 1),
        restarts=stats.restarts,
        destinations=stats.destinations,
    )
