"""FFmpeg encode-and-publish pipeline.

One encoder process takes MJPEG frames on stdin plus one audio input and
publishes a single H.264/AAC encode to every destination at once (tee muxer).
The process is never restarted in place; a failed sink is replaced by the
orchestrator.
"""

import asyncio
import logging
import os
import re
import shlex
import signal
import subprocess
import time
from typing import Callable, Optional

from ..domain.exceptions import PipelineError
from ..domain.models import AudioSourceKind, FrameProgress, PipelineConfig
from ..domain.protocols import EncodeSinkEvents
from .destinations import redact

logger = logging.getLogger(__name__)

RTMP_ERROR_SIGNATURES = (
    "Connection refused",
    "Connection reset",
    "Broken pipe",
    "Connection timed out",
    "Failed to connect",
    "I/O error",
    "RTMP_Connect",
    "Server error",
)
CONNECTED_SIGNATURES = ("Output #0", "Stream mapping")
FRAME_PATTERN = re.compile(r"frame=\s*(\d+)")
STALL_SECONDS = 60.0
PROGRESS_LOG_INTERVAL = 10.0


def build_ffmpeg_command(config: PipelineConfig) -> list[str]:
    """Build the encoder command line for a pipeline configuration."""
    cmd = [config.ffmpeg_binary, "-hide_banner"]

    # Video: JPEG frames from the screencast on stdin
    cmd.extend(["-f", "mjpeg", "-framerate", str(config.fps), "-i", "pipe:0"])

    # Audio
    audio = config.audio
    if audio.kind == AudioSourceKind.NONE:
        # Silent track, some platforms reject video-only streams
        cmd.extend(["-f", "lavfi", "-i", "anullsrc=r=44100:cl=stereo"])
    elif audio.kind == AudioSourceKind.REMOTE:
        cmd.extend(
            [
                "-reconnect", "1",
                "-reconnect_streamed", "1",
                "-reconnect_delay_max", "5",
                "-i", audio.url,
            ]
        )
    else:
        cmd.extend(["-stream_loop", "-1", "-i", audio.url])

    cmd.extend(
        [
            "-vf", f"scale={config.width}:{config.height}",
            "-c:v", "libx264",
            "-preset", "veryfast",
            "-tune", "zerolatency",
            "-b:v", config.bitrate,
            "-maxrate", "6000k",
            "-bufsize", "12000k",
            "-pix_fmt", "yuv420p",
            "-g", str(config.fps * 2),  # keyframe every 2 seconds
            "-profile:v", "high",
            "-level", "4.1",
        ]
    )

    cmd.extend(
        [
            "-map", "0:v",
            "-map", "1:a",
            "-c:a", "aac",
            "-b:a", "128k",
            "-ar", "44100",
        ]
    )

    # Required by the tee muxer with FLV outputs
    cmd.extend(["-flags", "+global_header"])

    destinations = config.destinations.destinations
    if len(destinations) > 1:
        cmd.extend(["-f", "tee", config.destinations.tee_output])
    elif destinations:
        cmd.extend(["-f", "flv", destinations[0].target])
    else:
        raise PipelineError("No destinations to publish to")

    return cmd


class FFmpegEncodeSink:
    """Encoder process wrapper fed frame by frame."""

    def __init__(
        self,
        config: PipelineConfig,
        events: EncodeSinkEvents,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the encode sink.

        Args:
            config: Pipeline configuration, fixed for this instance
            events: Callbacks for errors, exit and raw stderr
            clock: Monotonic clock, replaceable in tests
        """
        self.config = config
        self.events = events
        self._clock = clock

        self._process: Optional[asyncio.subprocess.Process] = None
        self._running = False
        self._stderr_task: Optional[asyncio.Task] = None
        self._exit_task: Optional[asyncio.Task] = None

        self._frame_count = 0
        self._last_checked_count = 0
        self._last_frame_time = 0.0
        self._last_progress_log = 0.0
        self._rtmp_connected = False
        self._frames_dropped = 0

    async def start(self) -> None:
        """Spawn the encoder process.

        Raises:
            PipelineError: If the sink is already running or spawn fails
        """
        if self._running:
            raise PipelineError("Pipeline already running")

        cmd = build_ffmpeg_command(self.config)
        logger.info(
            f"Starting encoder: {redact(shlex.join(cmd), self.config.destinations)}"
        )
        logger.info(
            f"Encoder output {self.config.width}x{self.config.height}@{self.config.fps}fps, "
            f"audio={self.config.audio.kind.value}, "
            f"destinations={', '.join(self.config.destinations.names)}"
        )

        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                preexec_fn=os.setsid if os.name != "nt" else None,
            )
        except (OSError, ValueError) as e:
            logger.error(f"Failed to start encoder: {e}")
            raise PipelineError(f"Failed to start encoder: {e}") from e

        self._running = True
        self._stderr_task = asyncio.create_task(self._read_stderr(self._process))
        self._exit_task = asyncio.create_task(self._watch_exit(self._process))
        logger.info(f"Encoder started with PID: {self._process.pid}")

    def write_frame(self, frame: bytes) -> bool:
        """Push one JPEG frame into the encoder.

        Returns:
            True if the frame was queued, False if the sink is not accepting
            input or its stdin buffer is over the high-water mark
        """
        if not self._running or not self._process or not self._process.stdin:
            return False

        stdin = self._process.stdin
        if stdin.is_closing():
            self._running = False
            return False

        if stdin.transport.get_write_buffer_size() > self.config.max_pending_bytes:
            self._frames_dropped += 1
            if self._frames_dropped % 100 == 1:
                logger.warning(
                    f"Encoder is not keeping up, dropped {self._frames_dropped} frames"
                )
            return False

        try:
            stdin.write(frame)
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.info(f"Encoder stdin closed: {e}")
            self._running = False
            return False

        return True

    async def _read_stderr(self, process: asyncio.subprocess.Process) -> None:
        """Parse encoder stderr; progress lines are separated by carriage returns."""
        buffer = ""
        try:
            while True:
                chunk = await process.stderr.read(4096)
                if not chunk:
                    break
                buffer += chunk.decode("utf-8", errors="replace")
                *lines, buffer = re.split(r"[\r\n]", buffer)
                for line in lines:
                    if line.strip():
                        self.process_stderr_line(line)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Encoder stderr reader stopped: {e}")

        if buffer.strip():
            self.process_stderr_line(buffer)

    def process_stderr_line(self, line: str) -> None:
        """Update connection and progress state from one stderr line."""
        line = line.strip()

        if any(signature in line for signature in RTMP_ERROR_SIGNATURES):
            logger.error(f"RTMP error: {redact(line, self.config.destinations)}")
            self._rtmp_connected = False
            self.events.on_error(PipelineError(f"RTMP connection failed: {line}"))
            return

        if any(signature in line for signature in CONNECTED_SIGNATURES):
            logger.info(f"Encoder: {redact(line, self.config.destinations)}")
            self._rtmp_connected = True
        elif "frame=" in line:
            match = FRAME_PATTERN.search(line)
            if match:
                now = self._clock()
                self._frame_count = int(match.group(1))
                self._last_frame_time = now
                if now - self._last_progress_log >= PROGRESS_LOG_INTERVAL:
                    logger.debug(f"Encoder progress: {line}")
                    self._last_progress_log = now
        elif "rror" in line or "failed" in line:
            logger.warning(f"Encoder: {redact(line, self.config.destinations)}")

        self.events.on_stderr(line)

    async def _watch_exit(self, process: asyncio.subprocess.Process) -> None:
        code = await process.wait()
        self._running = False
        self._rtmp_connected = False
        logger.info(f"Encoder exited with code {code}")
        self.events.on_exit(code)

    async def stop(self) -> None:
        """Terminate the encoder: SIGTERM, then SIGKILL after the grace period."""
        self._running = False
        process = self._process
        if not process:
            return

        logger.info("Stopping encoder")

        if process.stdin and not process.stdin.is_closing():
            try:
                process.stdin.close()
            except (BrokenPipeError, ConnectionResetError):
                pass

        try:
            if process.returncode is None:
                if os.name != "nt":
                    os.killpg(os.getpgid(process.pid), signal.SIGTERM)
                else:
                    process.terminate()

                try:
                    await asyncio.wait_for(process.wait(), timeout=self.config.stop_grace)
                except asyncio.TimeoutError:
                    logger.warning("Encoder didn't exit gracefully, forcing kill")
                    if os.name != "nt":
                        os.killpg(os.getpgid(process.pid), signal.SIGKILL)
                    else:
                        process.kill()
                    await process.wait()
        except ProcessLookupError:
            pass
        except Exception as e:
            logger.error(f"Error stopping encoder: {e}")
        finally:
            if self._stderr_task and not self._stderr_task.done():
                self._stderr_task.cancel()
            self._process = None

    def is_active(self) -> bool:
        return self._running

    def get_frame_count(self) -> int:
        """Frames encoded, as reported by the encoder."""
        return self._frame_count

    def is_rtmp_connected(self) -> bool:
        return self._rtmp_connected

    def check_frame_progress(self) -> FrameProgress:
        """Compare encoded frames with the previous check.

        Healthy iff the encoder reported new frames since the last call and the
        latest report is less than a minute old.
        """
        frames_since_last_check = self._frame_count - self._last_checked_count
        if self._last_frame_time > 0:
            seconds_since_last_frame = self._clock() - self._last_frame_time
        else:
            seconds_since_last_frame = 0.0
        self._last_checked_count = self._frame_count

        return FrameProgress(
            healthy=frames_since_last_check > 0 and seconds_since_last_frame < STALL_SECONDS,
            frames_since_last_check=frames_since_last_check,
            seconds_since_last_frame=seconds_since_last_frame,
        )
