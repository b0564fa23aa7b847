"""Stream domain models - configuration snapshots, state and stats."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class StreamerState(str, Enum):
    """Orchestrator state."""

    STOPPED = "stopped"
    STARTING = "starting"
    STREAMING = "streaming"
    RESTARTING = "restarting"
    ERROR = "error"


class Scene(str, Enum):
    """Scenes the frame source can be showing."""

    WATCH = "watch"  # automation service is working
    VJ = "vj"  # automation service is resting or idle


class SchedulePhase(str, Enum):
    """Phase of the fixed build/break cycle."""

    BUILD = "build"
    BREAK = "break"


class AudioSourceKind(str, Enum):
    """Where the encoder takes its audio track from."""

    REMOTE = "remote"
    FALLBACK = "fallback"
    NONE = "none"


class ComponentSource(str, Enum):
    """Component that reported a failure."""

    CAPTURE = "capture"
    ENCODER = "encoder"


@dataclass(frozen=True)
class AudioSource:
    """Audio input for one encoder instance."""

    kind: AudioSourceKind
    url: Optional[str] = None  # remote media URL or local file path

    @classmethod
    def none(cls) -> "AudioSource":
        return cls(kind=AudioSourceKind.NONE)

    @classmethod
    def fallback(cls, path: str) -> "AudioSource":
        return cls(kind=AudioSourceKind.FALLBACK, url=path)

    @classmethod
    def remote(cls, url: str) -> "AudioSource":
        return cls(kind=AudioSourceKind.REMOTE, url=url)


@dataclass(frozen=True)
class CaptureConfig:
    """Browser capture configuration, fixed for one frame source instance."""

    url: str
    width: int
    height: int
    fps: int
    quality: int  # JPEG quality (0-100)
    auto_refresh_interval: float = 30 * 60.0
    launch_timeout: float = 60.0
    navigation_timeout: float = 120.0
    reload_timeout: float = 60.0
    max_empty_page_checks: int = 10
    headless: bool = False
    executable_path: Optional[str] = None

    def __post_init__(self):
        if not 0 <= self.quality <= 100:
            raise ValueError(f"JPEG quality must be within 0-100, got {self.quality}")


@dataclass(frozen=True)
class Destination:
    """One outbound ingest target."""

    name: str
    url: str
    key: str

    @property
    def target(self) -> str:
        """Full publish URL with the stream key appended."""
        if self.url.endswith("/"):
            return f"{self.url}{self.key}"
        return f"{self.url}/{self.key}"


@dataclass(frozen=True)
class DestinationSet:
    """Ordered outbound targets loaded once at startup."""

    destinations: tuple[Destination, ...] = ()

    @property
    def names(self) -> list[str]:
        return [d.name for d in self.destinations]

    @property
    def tee_output(self) -> str:
        """FFmpeg tee muxer output; one failing target does not stop the others."""
        return "|".join(f"[f=flv:onfail=ignore]{d.target}" for d in self.destinations)

    def __len__(self) -> int:
        return len(self.destinations)


@dataclass(frozen=True)
class PipelineConfig:
    """Encoder configuration, fixed for one encode sink instance."""

    width: int
    height: int
    fps: int
    bitrate: str
    audio: AudioSource
    destinations: DestinationSet
    ffmpeg_binary: str = "ffmpeg"
    stop_grace: float = 5.0
    max_pending_bytes: int = 32 * 1024 * 1024


@dataclass(frozen=True)
class FrameProgress:
    """Encoder throughput since the previous check."""

    healthy: bool
    frames_since_last_check: int
    seconds_since_last_frame: float


@dataclass(frozen=True)
class ScheduleInfo:
    """Derived position in the build/break cycle."""

    current_phase: SchedulePhase
    scene: Scene
    minutes_into_phase: int
    minutes_remaining: int
    next_switch: str


@dataclass
class StreamerStats:
    """Read-only snapshot of the orchestrator."""

    state: StreamerState
    frame_count: int
    uptime_seconds: float
    restarts: int
    destinations: list[str] = field(default_factory=list)
    last_error: Optional[str] = None
    current_scene: Scene = Scene.WATCH
    schedule: Optional[ScheduleInfo] = None
    audio_source: AudioSourceKind = AudioSourceKind.NONE
    audio_url_ttl_seconds: float = 0.0
