"""Application configuration using Pydantic settings.

All values are read once from the environment (or a ``.env`` file) at process
start. Durations are expressed in seconds unless the field name says otherwise.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

AUDIO_DISABLED = "none"
AUDIO_FALLBACK = "fallback"


class Settings(BaseSettings):
    """Stream service settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: str = Field(
        default="development",
        description="Environment (development, staging, production)",
    )
    debug: bool = Field(default=False, description="Debug mode")

    # HTTP control surface
    service_name: str = Field(default="livecast-stream", description="Service name")
    host: str = Field(default="0.0.0.0", description="Control API bind address")
    port: int = Field(default=3002, description="Control API port")
    cors_origins: list[str] = Field(default=["*"], description="Allowed CORS origins")
    auto_start: bool = Field(
        default=True, description="Start streaming as soon as the service boots"
    )

    # Scenes
    watch_url: str = Field(
        default="https://claudecode.wtf/watch?lite=1",
        description="Scene shown while the automation service is working",
    )
    vj_url: str = Field(
        default="https://claudecode.wtf/vj?engine=hydra&mode=auto&hideUI=true",
        description="Scene shown while the automation service is resting",
    )
    brain_url: str = Field(
        default="https://brain.claudecode.wtf",
        description="Base URL of the external status service",
    )
    scene_policy_enabled: bool = Field(
        default=True, description="Switch scenes from the external status document"
    )
    scene_poll_interval: float = Field(default=30.0, description="Status poll interval")
    brain_status_timeout: float = Field(default=5.0, description="Status fetch timeout")
    scene_navigation_timeout: float = Field(
        default=30.0, description="Timeout for a scene navigation"
    )

    # Output
    stream_width: int = Field(default=1280, description="Output width")
    stream_height: int = Field(default=720, description="Output height")
    stream_fps: int = Field(default=30, description="Output frame rate")
    stream_bitrate: str = Field(default="2500k", description="Video bitrate")
    jpeg_quality: int = Field(
        default=80, ge=0, le=100, description="Screencast JPEG quality"
    )

    # Audio
    audio_source_url: str = Field(
        default=AUDIO_DISABLED,
        description="Audio page URL, 'fallback' for the local file or 'none'",
    )
    fallback_audio_path: str = Field(
        default="lofi-fallback.mp3", description="Local audio file looped as fallback"
    )
    audio_format: str = Field(default="91", description="yt-dlp format selector")
    audio_fetch_timeout: float = Field(
        default=30.0, description="Timeout for resolving the remote audio URL"
    )
    audio_url_default_ttl: float = Field(
        default=6 * 3600.0,
        description="Assumed lifetime of a resolved URL without an expire parameter",
    )
    audio_refresh_threshold: float = Field(
        default=2.5 * 3600.0,
        description="Restart with a fresh audio URL when less lifetime than this remains",
    )
    audio_refresh_check_interval: float = Field(
        default=30 * 60.0, description="Audio URL freshness check interval"
    )

    # Browser
    browser_executable_path: Optional[str] = Field(
        default=None, description="Chrome/Chromium binary (bundled Chromium if unset)"
    )
    browser_headless: bool = Field(default=False, description="Run the browser headless")
    browser_launch_timeout: float = Field(default=60.0, description="Browser launch timeout")
    navigation_timeout: float = Field(
        default=120.0, description="Initial navigation timeout"
    )
    reload_timeout: float = Field(default=60.0, description="Page reload timeout")
    page_health_check_interval: float = Field(
        default=60.0, description="Page health check interval"
    )
    max_empty_page_checks: int = Field(
        default=10, description="Consecutive empty-page checks before a forced reload"
    )
    page_auto_refresh_interval: float = Field(
        default=30 * 60.0, description="Scheduled page reload interval"
    )

    # Encoder
    ffmpeg_binary: str = Field(default="ffmpeg", description="FFmpeg executable")
    encoder_stop_grace: float = Field(
        default=5.0, description="Seconds to wait after SIGTERM before SIGKILL"
    )
    encoder_max_pending_bytes: int = Field(
        default=32 * 1024 * 1024,
        description="Encoder stdin buffer size above which frames are dropped",
    )

    # Supervision
    max_restarts: int = Field(default=10, ge=1, description="Restarts before cooldown")
    restart_delay: float = Field(default=5.0, description="Delay between teardown and start")
    restart_cooldown: float = Field(
        default=60.0, description="Pause after max_restarts before counting again"
    )
    restart_reset_after: float = Field(
        default=5 * 60.0, description="Stable streaming time that clears the restart count"
    )
    stream_health_check_interval: float = Field(
        default=3 * 60.0, description="Deep health check interval"
    )
    watchdog_interval: float = Field(default=30.0, description="Frame watchdog interval")
    watchdog_frame_timeout: float = Field(
        default=60.0, description="Seconds without frames before the watchdog restarts"
    )

    # Schedule
    schedule_build_minutes: int = Field(default=120, ge=1, description="BUILD phase length")
    schedule_break_minutes: int = Field(default=60, ge=1, description="BREAK phase length")

    # Destinations
    rtmp_kick_url: str = Field(default="", description="Kick ingest URL")
    rtmp_kick_key: str = Field(default="", description="Kick stream key")
    rtmp_youtube_url: str = Field(default="", description="YouTube ingest URL")
    rtmp_youtube_key: str = Field(default="", description="YouTube stream key")
    rtmp_twitter_url: str = Field(default="", description="Twitter/X ingest URL")
    rtmp_twitter_key: str = Field(default="", description="Twitter/X stream key")
    rtmp_pumpfun_url: str = Field(default="", description="PumpFun ingest URL")
    rtmp_pumpfun_key: str = Field(default="", description="PumpFun stream key")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log format (json or text)")

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Only json and text renderers exist."""
        v = v.lower()
        if v not in ("json", "text"):
            raise ValueError("log_format must be 'json' or 'text'")
        return v

    @model_validator(mode="after")
    def validate_watchdog(self) -> "Settings":
        """The watchdog timeout must span more than one watchdog tick."""
        if self.watchdog_frame_timeout <= self.watchdog_interval:
            raise ValueError(
                "watchdog_frame_timeout must be greater than watchdog_interval"
            )
        return self

    @property
    def audio_disabled(self) -> bool:
        """Check if the stream is video-only."""
        return self.audio_source_url.strip().lower() == AUDIO_DISABLED

    @property
    def audio_forced_fallback(self) -> bool:
        """Check if the local fallback file is requested explicitly."""
        return self.audio_source_url.strip().lower() == AUDIO_FALLBACK

    @property
    def resolution(self) -> str:
        """Output resolution as WIDTHxHEIGHT."""
        return f"{self.stream_width}x{self.stream_height}"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
