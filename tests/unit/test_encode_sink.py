"""Tests for the FFmpeg encode sink."""

import asyncio
import signal
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import pytest

from livecast.domain.exceptions import PipelineError
from livecast.domain.models import AudioSource, DestinationSet, PipelineConfig
from livecast.domain.protocols import EncodeSinkEvents
from livecast.services.encode_sink import FFmpegEncodeSink, build_ffmpeg_command
from tests.factories import DestinationFactory, FakeClock


def make_config(audio=None, destinations=None, **overrides) -> PipelineConfig:
    if destinations is None:
        destinations = (DestinationFactory(name="Kick", url="rtmp://kick.example/live", key="kickkey"),)
    values = dict(
        width=1280,
        height=720,
        fps=30,
        bitrate="2500k",
        audio=audio or AudioSource.none(),
        destinations=DestinationSet(destinations=tuple(destinations)),
        stop_grace=0.05,
        max_pending_bytes=1024,
    )
    values.update(overrides)
    return PipelineConfig(**values)


def make_events() -> EncodeSinkEvents:
    return EncodeSinkEvents(on_error=Mock(), on_exit=Mock(), on_stderr=Mock())


def make_process(pid: int = 4242):
    """Subprocess double whose wait() blocks until ``exit_event`` is set."""
    exit_event = asyncio.Event()
    process = MagicMock()
    process.pid = pid
    process.returncode = None

    async def wait():
        await exit_event.wait()
        process.returncode = process.exit_code
        return process.exit_code

    process.exit_code = 0
    process.wait = wait
    process.exit_event = exit_event
    process.stdin = MagicMock()
    process.stdin.is_closing.return_value = False
    process.stdin.transport.get_write_buffer_size.return_value = 0
    process.stderr = MagicMock()
    process.stderr.read = AsyncMock(return_value=b"")
    return process


class TestBuildCommand:
    """Test the encoder command line."""

    def test_video_input_and_encoding(self):
        """Test frames come from stdin and are encoded for live ingest."""
        cmd = build_ffmpeg_command(make_config())

        assert cmd[0] == "ffmpeg"
        joined = " ".join(cmd)
        assert "-f mjpeg -framerate 30 -i pipe:0" in joined
        assert "-vf scale=1280:720" in joined
        assert "-c:v libx264 -preset veryfast -tune zerolatency" in joined
        assert "-b:v 2500k -maxrate 6000k -bufsize 12000k" in joined
        assert "-g 60" in joined
        assert "-profile:v high -level 4.1" in joined
        assert "-map 0:v -map 1:a -c:a aac -b:a 128k -ar 44100" in joined
        assert "-flags +global_header" in joined

    def test_silent_audio(self):
        """Test a silent track is generated when audio is disabled."""
        cmd = build_ffmpeg_command(make_config(audio=AudioSource.none()))

        assert "anullsrc=r=44100:cl=stereo" in cmd
        assert cmd[cmd.index("anullsrc=r=44100:cl=stereo") - 2] == "lavfi"

    def test_remote_audio_reconnects(self):
        """Test a remote audio URL is read with reconnection enabled."""
        url = "https://cdn.example/audio.m3u8"
        cmd = build_ffmpeg_command(make_config(audio=AudioSource.remote(url)))

        joined = " ".join(cmd)
        assert f"-reconnect 1 -reconnect_streamed 1 -reconnect_delay_max 5 -i {url}" in joined

    def test_fallback_audio_loops(self):
        """Test the fallback file loops forever."""
        cmd = build_ffmpeg_command(make_config(audio=AudioSource.fallback("/srv/lofi.mp3")))

        assert " ".join(cmd).count("-stream_loop -1 -i /srv/lofi.mp3") == 1

    def test_single_destination_is_plain_flv(self):
        """Test one destination is published without the tee muxer."""
        cmd = build_ffmpeg_command(make_config())

        assert cmd[-3:] == ["-f", "flv", "rtmp://kick.example/live/kickkey"]

    def test_multiple_destinations_use_tee(self):
        """Test one encode is fanned out to every destination."""
        destinations = [
            DestinationFactory(name="Kick", url="rtmp://kick.example/live", key="k1"),
            DestinationFactory(name="YouTube", url="rtmp://yt.example/live2", key="k2"),
        ]
        cmd = build_ffmpeg_command(make_config(destinations=destinations))

        assert cmd[-3:-1] == ["-f", "tee"]
        assert cmd[-1] == (
            "[f=flv:onfail=ignore]rtmp://kick.example/live/k1|"
            "[f=flv:onfail=ignore]rtmp://yt.example/live2/k2"
        )

    def test_no_destinations(self):
        with pytest.raises(PipelineError):
            build_ffmpeg_command(make_config(destinations=[]))


class TestEncodeSinkLifecycle:
    """Test spawning, feeding and stopping the encoder."""

    @patch("livecast.services.encode_sink.asyncio.create_subprocess_exec")
    async def test_start(self, mock_exec):
        """Test the encoder is spawned with stdin and stderr pipes."""
        process = make_process()
        mock_exec.return_value = process
        sink = FFmpegEncodeSink(make_config(), make_events())

        await sink.start()

        assert sink.is_active() is True
        args, kwargs = mock_exec.call_args
        assert args[0] == "ffmpeg"
        assert kwargs["stdin"] is not None
        assert kwargs["stderr"] is not None

        process.exit_event.set()
        await asyncio.sleep(0)

    @patch("livecast.services.encode_sink.asyncio.create_subprocess_exec")
    async def test_start_twice(self, mock_exec):
        process = make_process()
        mock_exec.return_value = process
        sink = FFmpegEncodeSink(make_config(), make_events())
        await sink.start()

        with pytest.raises(PipelineError, match="already running"):
            await sink.start()
        process.exit_event.set()

    @patch("livecast.services.encode_sink.asyncio.create_subprocess_exec")
    async def test_spawn_failure(self, mock_exec):
        """Test a missing binary surfaces as a pipeline error."""
        mock_exec.side_effect = FileNotFoundError("ffmpeg")
        sink = FFmpegEncodeSink(make_config(), make_events())

        with pytest.raises(PipelineError, match="Failed to start encoder"):
            await sink.start()
        assert sink.is_active() is False

    @patch("livecast.services.encode_sink.asyncio.create_subprocess_exec")
    async def test_exit_is_reported(self, mock_exec):
        """Test the exit code reaches on_exit and the sink goes inactive."""
        process = make_process()
        process.exit_code = 1
        mock_exec.return_value = process
        events = make_events()
        sink = FFmpegEncodeSink(make_config(), events)
        await sink.start()

        process.exit_event.set()
        await asyncio.sleep(0.01)

        events.on_exit.assert_called_once_with(1)
        assert sink.is_active() is False

    @patch("livecast.services.encode_sink.asyncio.create_subprocess_exec")
    async def test_write_frame(self, mock_exec):
        """Test frames are written to stdin while active."""
        process = make_process()
        mock_exec.return_value = process
        sink = FFmpegEncodeSink(make_config(), make_events())

        assert sink.write_frame(b"jpeg") is False

        await sink.start()
        assert sink.write_frame(b"jpeg") is True
        process.stdin.write.assert_called_once_with(b"jpeg")

    @patch("livecast.services.encode_sink.asyncio.create_subprocess_exec")
    async def test_write_frame_drops_when_backed_up(self, mock_exec):
        """Test frames are dropped instead of buffered without bound."""
        process = make_process()
        process.stdin.transport.get_write_buffer_size.return_value = 4096
        mock_exec.return_value = process
        sink = FFmpegEncodeSink(make_config(max_pending_bytes=1024), make_events())
        await sink.start()

        assert sink.write_frame(b"jpeg") is False
        process.stdin.write.assert_not_called()
        assert sink.is_active() is True

    @patch("livecast.services.encode_sink.asyncio.create_subprocess_exec")
    async def test_write_frame_broken_pipe(self, mock_exec):
        """Test a dead pipe makes the sink inactive."""
        process = make_process()
        process.stdin.write.side_effect = BrokenPipeError()
        mock_exec.return_value = process
        sink = FFmpegEncodeSink(make_config(), make_events())
        await sink.start()

        assert sink.write_frame(b"jpeg") is False
        assert sink.is_active() is False

    @patch("livecast.services.encode_sink.os.getpgid", return_value=4242)
    @patch("livecast.services.encode_sink.os.killpg")
    @patch("livecast.services.encode_sink.asyncio.create_subprocess_exec")
    async def test_stop_terminates_gracefully(self, mock_exec, mock_killpg, mock_getpgid):
        """Test SIGTERM is enough when the encoder exits in time."""
        process = make_process()
        mock_exec.return_value = process
        mock_killpg.side_effect = lambda pgid, sig: process.exit_event.set()
        sink = FFmpegEncodeSink(make_config(), make_events())
        await sink.start()

        await sink.stop()

        mock_killpg.assert_called_once_with(4242, signal.SIGTERM)
        assert sink.is_active() is False

    @patch("livecast.services.encode_sink.os.getpgid", return_value=4242)
    @patch("livecast.services.encode_sink.os.killpg")
    @patch("livecast.services.encode_sink.asyncio.create_subprocess_exec")
    async def test_stop_kills_after_grace(self, mock_exec, mock_killpg, mock_getpgid):
        """Test SIGKILL follows when SIGTERM is ignored."""
        process = make_process()
        mock_exec.return_value = process

        def killpg(pgid, sig):
            if sig == signal.SIGKILL:
                process.exit_event.set()

        mock_killpg.side_effect = killpg
        sink = FFmpegEncodeSink(make_config(stop_grace=0.05), make_events())
        await sink.start()

        await sink.stop()

        sent = [call.args[1] for call in mock_killpg.call_args_list]
        assert sent == [signal.SIGTERM, signal.SIGKILL]

    async def test_stop_without_process(self):
        sink = FFmpegEncodeSink(make_config(), make_events())

        await sink.stop()

        assert sink.is_active() is False


class TestStderrParsing:
    """Test progress and connection tracking from encoder output."""

    def test_frame_progress(self):
        """Test frame= lines update the encoded frame count."""
        sink = FFmpegEncodeSink(make_config(), make_events(), clock=FakeClock())

        sink.process_stderr_line("frame=  120 fps= 30 q=23.0 size=    1024kB time=00:00:04.00")

        assert sink.get_frame_count() == 120

    def test_connected_on_output(self):
        """Test the outbound connection is marked up once output starts."""
        sink = FFmpegEncodeSink(make_config(), make_events())

        sink.process_stderr_line("Output #0, flv, to 'rtmp://kick.example/live/kickkey':")

        assert sink.is_rtmp_connected() is True

    @pytest.mark.parametrize(
        "line",
        [
            "[rtmp @ 0x1] Connection refused",
            "av_interleaved_write_frame(): Broken pipe",
            "[tcp @ 0x2] Connection timed out",
            "RTMP_Connect0, failed to connect socket",
            "Error writing trailer: I/O error",
        ],
    )
    def test_rtmp_errors(self, line):
        """Test outbound failures are reported and the connection marked down."""
        events = make_events()
        sink = FFmpegEncodeSink(make_config(), events)
        sink.process_stderr_line("Stream mapping:")

        sink.process_stderr_line(line)

        assert sink.is_rtmp_connected() is False
        error = events.on_error.call_args[0][0]
        assert isinstance(error, PipelineError)
        assert "RTMP connection failed" in str(error)

    def test_stderr_forwarded(self):
        events = make_events()
        sink = FFmpegEncodeSink(make_config(), events)

        sink.process_stderr_line("Input #0, mjpeg, from 'pipe:0':")

        events.on_stderr.assert_called_once_with("Input #0, mjpeg, from 'pipe:0':")

    async def test_reader_splits_carriage_returns(self):
        """Test progress lines separated by carriage returns are all parsed."""
        sink = FFmpegEncodeSink(make_config(), make_events(), clock=FakeClock())
        process = make_process()
        process.stderr.read = AsyncMock(
            side_effect=[
                b"Output #0, flv, to 'rtmp://x':\nframe=   10 fps=30\rframe=   2",
                b"0 fps=30\r",
                b"",
            ]
        )

        await sink._read_stderr(process)

        assert sink.get_frame_count() == 20
        assert sink.is_rtmp_connected() is True


class TestFrameProgress:
    """Test the stall detector the orchestrator's deep health check uses."""

    def test_healthy_when_frames_advance(self):
        clock = FakeClock()
        sink = FFmpegEncodeSink(make_config(), make_events(), clock=clock)
        sink.process_stderr_line("frame=  100 fps=30")
        clock.advance(5)

        progress = sink.check_frame_progress()

        assert progress.healthy is True
        assert progress.frames_since_last_check == 100
        assert progress.seconds_since_last_frame == 5

    def test_unhealthy_when_frames_stop(self):
        clock = FakeClock()
        sink = FFmpegEncodeSink(make_config(), make_events(), clock=clock)
        sink.process_stderr_line("frame=  100 fps=30")
        sink.check_frame_progress()

        progress = sink.check_frame_progress()

        assert progress.healthy is False
        assert progress.frames_since_last_check == 0

    def test_unhealthy_when_progress_is_stale(self):
        clock = FakeClock()
        sink = FFmpegEncodeSink(make_config(), make_events(), clock=clock)
        sink.process_stderr_line("frame=  100 fps=30")
        clock.advance(61)

        progress = sink.check_frame_progress()

        assert progress.healthy is False

    def test_unhealthy_before_any_frame(self):
        sink = FFmpegEncodeSink(make_config(), make_events())

        progress = sink.check_frame_progress()

        assert progress.healthy is False
        assert progress.seconds_since_last_frame == 0.0
