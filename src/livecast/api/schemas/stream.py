"""Control API request/response schemas."""

from typing import Optional

from pydantic import BaseModel, Field

from ...domain.models import Scene


class SceneRequest(BaseModel):
    """Manual scene override."""

    scene: Scene = Field(description='Scene to show ("watch" or "vj")')


class ActionResponse(BaseModel):
    """Result of a control action."""

    success: bool = True
    message: str
    current_scene: Optional[Scene] = None


class StatusResponse(BaseModel):
    """Minimal stream snapshot."""

    state: str
    current_scene: Scene
    frame_count: int
    uptime_seconds: float
    restarts: int
    destinations: list[str]


class StreamHealth(BaseModel):
    state: str
    current_scene: Scene
    frame_count: int
    uptime_seconds: float
    uptime_formatted: str
    restarts: int
    destinations: list[str]
    last_error: Optional[str] = None


class AudioHealth(BaseModel):
    source: str
    url_ttl_seconds: float
    url_ttl_formatted: str


class ScheduleHealth(BaseModel):
    current_phase: str
    scene: Scene
    minutes_into_phase: int
    minutes_remaining: int
    next_switch: str
    pattern: str


class ConfigHealth(BaseModel):
    watch_url: str
    vj_url: str
    brain_url: str
    resolution: str
    fps: int
    bitrate: str


class MemoryHealth(BaseModel):
    rss_mb: int
    vms_mb: int


class HealthResponse(BaseModel):
    """Full stream health report."""

    status: str = "ok"
    service: str
    stream: StreamHealth
    audio: AudioHealth
    schedule: Optional[ScheduleHealth] = None
    config: ConfigHealth
    memory: MemoryHealth
    timestamp: str
