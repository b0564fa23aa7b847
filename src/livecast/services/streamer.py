"""Stream orchestrator.

Owns the frame source, the encode sink and the scene policy, and keeps the
stream alive across component failures:

* a browser failure while streaming is repaired by a hot swap that replaces
  only the browser, keeping every destination connected;
* an encoder failure, a failed hot swap, a stalled stream or an expiring
  audio URL leads to a full restart of every component;
* restarts never give up; after ``max_restarts`` attempts the orchestrator
  cools down, resets its counter and keeps trying.

Recovery is single-flight: at most one hot swap or full restart runs at a time
and requests arriving meanwhile are dropped.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from ..config import Settings
from ..domain.exceptions import (
    CaptureError,
    ConfigurationError,
    HealthCheckError,
    SceneError,
    StreamerStateError,
    is_transient_page_error,
)
from ..domain.models import (
    AudioSource,
    AudioSourceKind,
    CaptureConfig,
    ComponentSource,
    PipelineConfig,
    Scene,
    StreamerState,
    StreamerStats,
)
from ..domain.protocols import (
    EncodeSink,
    EncodeSinkEvents,
    EncodeSinkFactory,
    FrameSource,
    FrameSourceEvents,
    FrameSourceFactory,
    ScenePolicy,
    ScenePolicyFactory,
)
from .audio_source import AudioSourceResolver
from .destinations import load_destinations
from .encode_sink import FFmpegEncodeSink
from .frame_source import BrowserFrameSource
from .scene_policy import BrainScenePolicy
from .schedule import compute_schedule

logger = logging.getLogger(__name__)

StateListener = Callable[[StreamerState, StreamerState], None]


class Streamer:
    """Supervising state machine for the capture, encode and publish loop."""

    def __init__(
        self,
        settings: Settings,
        frame_source_factory: Optional[FrameSourceFactory] = None,
        encode_sink_factory: Optional[EncodeSinkFactory] = None,
        scene_policy_factory: Optional[ScenePolicyFactory] = None,
        audio_resolver: Optional[AudioSourceResolver] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the orchestrator.

        Args:
            settings: Application settings
            frame_source_factory: Builds a frame source per start or hot swap
            encode_sink_factory: Builds an encode sink per start
            scene_policy_factory: Builds a scene policy per frame source
            audio_resolver: Resolves the audio input for each encode sink
            clock: Monotonic clock, replaceable in tests
        """
        self.settings = settings
        self.destinations = load_destinations(settings)
        self.audio_resolver = audio_resolver or AudioSourceResolver(settings)

        self._frame_source_factory = frame_source_factory or BrowserFrameSource
        self._encode_sink_factory = encode_sink_factory or FFmpegEncodeSink
        self._scene_policy_factory = scene_policy_factory or (
            lambda: BrainScenePolicy.from_settings(settings)
        )
        self._clock = clock

        self.frame_source: Optional[FrameSource] = None
        self.encode_sink: Optional[EncodeSink] = None
        self.scene_policy: Optional[ScenePolicy] = None

        self.state = StreamerState.STOPPED
        self.start_time = 0.0
        self.last_frame_time = 0.0
        self.restart_count = 0
        self.last_error: Optional[str] = None

        self.is_shutting_down = False
        self.is_hot_swapping = False
        self._restart_pending = False

        # Bumped whenever a component is replaced; events carrying an older
        # generation come from a discarded instance
        self._capture_generation = 0
        self._sink_generation = 0

        self._timers: list[asyncio.Task] = []
        self._recovery_task: Optional[asyncio.Task] = None
        self._state_listeners: list[StateListener] = []

    # Lifecycle

    async def start(self) -> None:
        """Start streaming.

        Raises:
            StreamerStateError: If the stream is already starting, streaming or
                restarting
            ConfigurationError: If no destination is configured
            LivecastError: If a component failed to start
        """
        if self.state in (
            StreamerState.STARTING,
            StreamerState.STREAMING,
            StreamerState.RESTARTING,
        ):
            raise StreamerStateError(f"Cannot start: already {self.state.value}")

        self.is_shutting_down = False
        try:
            await self._start_pipeline()
        except Exception as e:
            self.last_error = str(e)
            self._set_state(StreamerState.ERROR)
            await self._teardown()
            raise

    async def _start_pipeline(self) -> None:
        self._set_state(StreamerState.STARTING)

        if not len(self.destinations):
            raise ConfigurationError(
                "No RTMP destinations configured. Set RTMP_*_URL and RTMP_*_KEY env vars."
            )
        logger.info(f"Starting stream to: {', '.join(self.destinations.names)}")

        audio = await self.audio_resolver.resolve()
        logger.info(f"Audio source: {audio.kind.value}")

        self._sink_generation += 1
        generation = self._sink_generation
        self.encode_sink = self._encode_sink_factory(
            self._pipeline_config(audio),
            EncodeSinkEvents(
                on_error=lambda error: self.handle_error(
                    ComponentSource.ENCODER, error, generation
                ),
                on_exit=lambda code: self.handle_exit(
                    ComponentSource.ENCODER, code, generation
                ),
            ),
        )
        await self.encode_sink.start()

        await self._start_capture()

        now = self._clock()
        self.start_time = now
        self.last_frame_time = now
        self._set_state(StreamerState.STREAMING)
        logger.info("Stream is live")

        self._arm_timers()

    async def _start_capture(self) -> None:
        """Create and start a frame source, then a scene policy bound to its page."""
        self._capture_generation += 1
        generation = self._capture_generation

        self.frame_source = self._frame_source_factory(
            self._capture_config(),
            FrameSourceEvents(
                on_frame=lambda frame: self._handle_frame(frame, generation),
                on_error=lambda error: self.handle_error(
                    ComponentSource.CAPTURE, error, generation
                ),
                on_disconnect=lambda: self.handle_disconnect(
                    ComponentSource.CAPTURE, generation
                ),
            ),
        )
        await self.frame_source.start()

        if not self.settings.scene_policy_enabled:
            return

        page = self.frame_source.get_page()
        if page is None:
            logger.warning("Frame source has no page, scene policy not started")
            return

        self.scene_policy = self._scene_policy_factory()
        await self.scene_policy.start(page)

    def _capture_config(self) -> CaptureConfig:
        s = self.settings
        return CaptureConfig(
            url=s.watch_url,
            width=s.stream_width,
            height=s.stream_height,
            fps=s.stream_fps,
            quality=s.jpeg_quality,
            auto_refresh_interval=s.page_auto_refresh_interval,
            launch_timeout=s.browser_launch_timeout,
            navigation_timeout=s.navigation_timeout,
            reload_timeout=s.reload_timeout,
            max_empty_page_checks=s.max_empty_page_checks,
            headless=s.browser_headless,
            executable_path=s.browser_executable_path,
        )

    def _pipeline_config(self, audio: AudioSource) -> PipelineConfig:
        s = self.settings
        return PipelineConfig(
            width=s.stream_width,
            height=s.stream_height,
            fps=s.stream_fps,
            bitrate=s.stream_bitrate,
            audio=audio,
            destinations=self.destinations,
            ffmpeg_binary=s.ffmpeg_binary,
            stop_grace=s.encoder_stop_grace,
            max_pending_bytes=s.encoder_max_pending_bytes,
        )

    async def stop(self) -> None:
        """Stop streaming from any state; always ends in ``stopped``."""
        logger.info("Stopping stream")
        self.is_shutting_down = True
        self._cancel_timers()

        task = self._recovery_task
        self._recovery_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self._teardown()
        self.is_hot_swapping = False
        self._restart_pending = False
        self._set_state(StreamerState.STOPPED)
        logger.info("Stream stopped")

    async def _teardown(self) -> None:
        """Stop scene policy, frame source and encode sink, in that order."""
        self._capture_generation += 1
        self._sink_generation += 1
        await self._stop_scene_policy()
        await self._stop_frame_source()
        await self._stop_encode_sink()

    async def _stop_scene_policy(self) -> None:
        policy, self.scene_policy = self.scene_policy, None
        if policy:
            try:
                await policy.stop()
            except Exception as e:
                logger.warning(f"Error stopping scene policy: {e}")

    async def _stop_frame_source(self) -> None:
        source, self.frame_source = self.frame_source, None
        if source:
            try:
                await source.stop()
            except Exception as e:
                logger.warning(f"Error stopping frame source: {e}")

    async def _stop_encode_sink(self) -> None:
        sink, self.encode_sink = self.encode_sink, None
        if sink:
            try:
                await sink.stop()
            except Exception as e:
                logger.warning(f"Error stopping encode sink: {e}")

    # Frames and component events

    def _handle_frame(self, frame: bytes, generation: int) -> None:
        if generation != self._capture_generation:
            return
        sink = self.encode_sink
        if sink and sink.is_active() and sink.write_frame(frame):
            self.last_frame_time = self._clock()

    def _is_stale(self, source: ComponentSource, generation: Optional[int]) -> bool:
        if generation is None:
            return False
        if source == ComponentSource.CAPTURE:
            return generation != self._capture_generation
        return generation != self._sink_generation

    def handle_error(
        self,
        source: ComponentSource,
        error: Exception,
        generation: Optional[int] = None,
    ) -> None:
        """Route a component failure to the matching recovery tier."""
        if self._is_stale(source, generation):
            logger.debug(f"Ignoring error from replaced {source.value}: {error}")
            return

        logger.error(f"Error from {source.value}: {error}")
        self.last_error = f"{source.value}: {error}"

        if self.is_shutting_down:
            return

        if source == ComponentSource.CAPTURE and self.state == StreamerState.STREAMING:
            if self.is_hot_swapping or self._recovery_active():
                logger.info("Recovery already in progress, ignoring capture error")
                return
            self._recovery_task = asyncio.create_task(self._recover_capture())
            return

        self._request_restart(f"{source.value} error")

    def handle_exit(
        self,
        source: ComponentSource,
        code: Optional[int],
        generation: Optional[int] = None,
    ) -> None:
        """An encoder exit while streaming always costs a full restart."""
        if self._is_stale(source, generation):
            return

        logger.info(f"{source.value} exited with code {code}")
        if self.is_shutting_down or self.state != StreamerState.STREAMING:
            return

        self.last_error = f"{source.value} exited with code {code}"
        self._request_restart(self.last_error)

    def handle_disconnect(
        self, source: ComponentSource, generation: Optional[int] = None
    ) -> None:
        if self._is_stale(source, generation):
            return
        self.handle_error(source, CaptureError("Browser disconnected"), generation)

    # Recovery

    def _recovery_active(self) -> bool:
        return self._recovery_task is not None and not self._recovery_task.done()

    def _in_recovery_task(self) -> bool:
        return self._recovery_task is not None and self._recovery_task is asyncio.current_task()

    def request_restart(self, reason: str = "manual restart") -> bool:
        """Schedule a full restart.

        Returns:
            True if a restart was scheduled, False if one is already running,
            deferred behind a hot swap or the stream is shutting down
        """
        return self._request_restart(reason)

    def _request_restart(self, reason: str) -> bool:
        if self.is_shutting_down:
            return False
        if self.is_hot_swapping:
            logger.info(f"Deferring full restart until capture restart finishes: {reason}")
            self._restart_pending = True
            return False
        if self._recovery_active():
            logger.info(f"Restart already in progress, ignoring: {reason}")
            return False
        if self.state == StreamerState.STARTING:
            # start() either fails on its own or the watchdog catches the stall
            logger.info(f"Ignoring restart request while starting: {reason}")
            return False

        logger.warning(f"Full restart requested: {reason}")
        self._recovery_task = asyncio.create_task(self._restart_loop(reason))
        return True

    async def _recover_capture(self) -> None:
        """Hot swap first; fall back to a full restart in the same task."""
        try:
            await self.restart_capture()
        except Exception as e:
            logger.error(f"Capture restart failed, falling back to full restart: {e}")

        if self._restart_pending and not self.is_shutting_down:
            await self._restart_loop("capture recovery needs a full restart")

    async def _restart_loop(self, reason: str) -> None:
        """Tear down and start again until streaming, never giving up."""
        self._restart_pending = False

        while not self.is_shutting_down:
            if self.restart_count >= self.settings.max_restarts:
                logger.error(
                    f"Max restarts ({self.settings.max_restarts}) reached, waiting "
                    f"{self.settings.restart_cooldown}s before resetting the counter"
                )
                await asyncio.sleep(self.settings.restart_cooldown)
                self.restart_count = 0
                if self.is_shutting_down:
                    return

            self.restart_count += 1
            logger.info(
                f"Attempting restart {self.restart_count}/{self.settings.max_restarts} ({reason})"
            )
            self._set_state(StreamerState.RESTARTING)
            self._cancel_timers()
            await self._teardown()

            await asyncio.sleep(self.settings.restart_delay)
            if self.is_shutting_down:
                return

            try:
                await self._start_pipeline()
            except ConfigurationError as e:
                logger.error(f"Restart aborted, configuration error: {e}")
                self.last_error = str(e)
                self._set_state(StreamerState.ERROR)
                await self._teardown()
                return
            except Exception as e:
                logger.error(f"Restart failed: {e}")
                self.last_error = str(e)
                reason = f"restart failed: {e}"
                continue

            logger.info(f"Stream restarted (restart {self.restart_count})")
            return

    async def restart_capture(self) -> None:
        """Hot swap: replace the browser and scene policy, keep the encoder.

        Raises:
            StreamerStateError: If not streaming or a hot swap is already running
            LivecastError: If the new frame source failed to start; a full
                restart is scheduled before raising
        """
        if self.state != StreamerState.STREAMING:
            raise StreamerStateError("Stream not running")
        if self.is_hot_swapping:
            raise StreamerStateError("Capture restart already in progress")

        self.is_hot_swapping = True
        try:
            logger.info("Restarting capture, encoder and destinations stay connected")
            self._capture_generation += 1
            await self._stop_scene_policy()
            await self._stop_frame_source()
            await self._start_capture()
            self.last_frame_time = self._clock()
            logger.info("Capture restarted")
        except Exception:
            self._restart_pending = True
            raise
        finally:
            self.is_hot_swapping = False
            if self._restart_pending and not self._in_recovery_task():
                self._restart_pending = False
                self._request_restart("capture restart could not complete")

    # Timers

    def _arm_timers(self) -> None:
        self._cancel_timers()
        s = self.settings
        self._timers = [
            asyncio.create_task(self._reset_restart_count_after(s.restart_reset_after)),
            asyncio.create_task(
                self._every(s.stream_health_check_interval, self._deep_health_check)
            ),
            asyncio.create_task(
                self._every(s.audio_refresh_check_interval, self._check_audio_freshness)
            ),
            asyncio.create_task(self._every(s.watchdog_interval, self._watchdog_tick)),
            asyncio.create_task(
                self._every(s.page_health_check_interval, self._check_page_health)
            ),
        ]

    def _cancel_timers(self) -> None:
        current = asyncio.current_task()
        for task in self._timers:
            if task is not current:
                task.cancel()
        self._timers = []

    async def _every(self, interval: float, check: Callable[[], Awaitable[None]]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await check()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in {check.__name__}: {e}")

    async def _reset_restart_count_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self.state == StreamerState.STREAMING and self.restart_count > 0:
            logger.info(
                f"Stream stable for {delay:.0f}s, resetting restart counter "
                f"(was {self.restart_count})"
            )
            self.restart_count = 0

    async def _deep_health_check(self) -> None:
        if self.state != StreamerState.STREAMING or self.is_hot_swapping:
            return

        error: Optional[HealthCheckError] = None
        if self.encode_sink is None:
            error = HealthCheckError("Encode sink missing")
        else:
            progress = self.encode_sink.check_frame_progress()
            if not progress.healthy:
                error = HealthCheckError(
                    f"Encoder stalled: {progress.frames_since_last_check} new frames, "
                    f"{progress.seconds_since_last_frame:.0f}s since last progress"
                )
            elif self.frame_source is None or not self.frame_source.is_running():
                error = HealthCheckError("Frame source is not running")
            else:
                logger.info(
                    f"Health check ok: {progress.frames_since_last_check} frames, "
                    f"rtmp_connected={self.encode_sink.is_rtmp_connected()}"
                )

        if error:
            logger.error(f"Health check failed: {error}")
            self.last_error = str(error)
            self._request_restart(str(error))

    async def _watchdog_tick(self) -> None:
        if self.state != StreamerState.STREAMING or self.is_hot_swapping:
            return

        elapsed = self._clock() - self.last_frame_time
        if elapsed > self.settings.watchdog_frame_timeout:
            message = f"Watchdog: no frames for {elapsed:.0f}s"
            logger.error(message)
            self.last_error = message
            self._request_restart(message)

    async def _check_audio_freshness(self) -> None:
        if self.state != StreamerState.STREAMING:
            return
        if self.audio_resolver.current.kind != AudioSourceKind.REMOTE:
            return

        remaining = self.audio_resolver.remaining_ttl()
        if remaining < self.settings.audio_refresh_threshold:
            message = f"Audio URL expires in {remaining / 60:.0f} minutes, refreshing"
            logger.warning(message)
            self.audio_resolver.invalidate()
            self.last_error = message
            self._request_restart(message)

    async def _check_page_health(self) -> None:
        if self.state != StreamerState.STREAMING or self.is_hot_swapping:
            return
        source = self.frame_source
        if source is None:
            return

        generation = self._capture_generation
        try:
            await source.check_page_health()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if is_transient_page_error(e):
                logger.warning(f"Transient page health error (ignoring): {e}")
                return
            self.handle_error(ComponentSource.CAPTURE, e, generation)

    # Control operations

    async def set_scene(self, scene: Scene) -> Scene:
        """Force a scene, bypassing the status-driven decision.

        Raises:
            StreamerStateError: If not streaming
            SceneError: If scene switching is unavailable or the switch failed
        """
        if self.state != StreamerState.STREAMING:
            raise StreamerStateError("Stream not running")
        if self.scene_policy is None:
            raise SceneError("Scene policy is not running")
        await self.scene_policy.force_scene(scene)
        return self.scene_policy.get_scene()

    async def refresh_page(self) -> None:
        """Reload the captured page without restarting the browser.

        Raises:
            StreamerStateError: If there is no frame source
            CaptureError: If the reload failed
        """
        if self.frame_source is None:
            raise StreamerStateError("Stream not running")
        await self.frame_source.refresh_page()

    # State

    def add_state_listener(self, listener: StateListener) -> None:
        """Register a callback invoked with ``(new_state, old_state)``."""
        self._state_listeners.append(listener)

    def _set_state(self, state: StreamerState) -> None:
        old_state = self.state
        self.state = state
        if old_state == state:
            return

        logger.info(f"State: {old_state.value} -> {state.value}")
        for listener in list(self._state_listeners):
            try:
                listener(state, old_state)
            except Exception as e:
                logger.error(f"State listener failed: {e}")

    def get_state(self) -> StreamerState:
        return self.state

    def get_stats(self) -> StreamerStats:
        """Read-only snapshot of the orchestrator."""
        audio = self.audio_resolver.current
        return StreamerStats(
            state=self.state,
            frame_count=self.encode_sink.get_frame_count() if self.encode_sink else 0,
            uptime_seconds=(
                self._clock() - self.start_time
                if self.state == StreamerState.STREAMING
                else 0.0
            ),
            restarts=self.restart_count,
            destinations=self.destinations.names,
            last_error=self.last_error,
            current_scene=self.scene_policy.get_scene() if self.scene_policy else Scene.WATCH,
            schedule=compute_schedule(
                self.settings.schedule_build_minutes,
                self.settings.schedule_break_minutes,
            ),
            audio_source=audio.kind,
            audio_url_ttl_seconds=(
                self.audio_resolver.remaining_ttl()
                if audio.kind == AudioSourceKind.REMOTE
                else 0.0
            ),
        )
