"""Component interfaces the orchestrator is written against."""

from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from .models import CaptureConfig, FrameProgress, PipelineConfig, Scene


@dataclass(frozen=True)
class FrameSourceEvents:
    """Callbacks a frame source reports through."""

    on_frame: Callable[[bytes], None]
    on_error: Callable[[Exception], None]
    on_disconnect: Callable[[], None]


@dataclass(frozen=True)
class EncodeSinkEvents:
    """Callbacks an encode sink reports through."""

    on_error: Callable[[Exception], None]
    on_exit: Callable[[Optional[int]], None]
    on_stderr: Callable[[str], None] = lambda _line: None


class FrameSource(Protocol):
    """Browser page producing a steady stream of compressed frames."""

    async def start(self) -> None:
        """Launch the browser, open the page and begin the screencast."""
        ...

    async def stop(self) -> None:
        """Stop the screencast, close the page, close the browser."""
        ...

    async def check_page_health(self) -> None:
        """Raise if the page is closed, crashed or persistently empty."""
        ...

    async def refresh_page(self) -> None:
        """Cache-busting reload without tearing down the browser."""
        ...

    def is_running(self) -> bool:
        ...

    def get_frame_count(self) -> int:
        ...

    def get_page(self) -> Optional[Any]:
        ...


class EncodeSink(Protocol):
    """Encoder process publishing one encode to every destination."""

    async def start(self) -> None:
        ...

    async def stop(self) -> None:
        ...

    def write_frame(self, frame: bytes) -> bool:
        """Push one frame; returns False when the sink is not accepting input."""
        ...

    def is_active(self) -> bool:
        ...

    def get_frame_count(self) -> int:
        ...

    def is_rtmp_connected(self) -> bool:
        ...

    def check_frame_progress(self) -> FrameProgress:
        ...


class ScenePolicy(Protocol):
    """Poll-driven scene selection bound to a live page."""

    async def start(self, page: Any) -> None:
        ...

    async def stop(self) -> None:
        ...

    async def check_and_switch(self) -> None:
        ...

    async def force_scene(self, scene: Scene) -> bool:
        ...

    def get_scene(self) -> Scene:
        ...


FrameSourceFactory = Callable[[CaptureConfig, FrameSourceEvents], FrameSource]
EncodeSinkFactory = Callable[[PipelineConfig, EncodeSinkEvents], EncodeSink]
ScenePolicyFactory = Callable[[], ScenePolicy]
