"""Unit tests for the ffmpeg RTMP streamer."""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from streamtester.errors import ConfigurationError, RemoteTaskFailedError
from streamtester.simulator import FfmpegStreamer, build_push_command

RTMP_URL = "rtmp://ingest.example.com/live/abcd-1234"


def fake_process(returncode: int = 0, stderr: bytes = b"") -> MagicMock:
    proc = MagicMock()
    proc.pid = 4242
    proc.returncode = returncode
    proc.communicate = AsyncMock(return_value=(None, stderr))
    proc.wait = AsyncMock(return_value=returncode)
    return proc


class TestBuildPushCommand:
    """Tests for build_push_command()."""

    def test_command(self):
        """The file is looped in real time and copied into FLV."""
        cmd = build_push_command("ffmpeg", RTMP_URL, Path("/media/a.mp4"), 30.0)

        assert cmd[0] == "ffmpeg"
        assert cmd[-1] == RTMP_URL
        assert cmd[cmd.index("-i") + 1] == "/media/a.mp4"
        assert cmd[cmd.index("-t") + 1] == "30"
        assert cmd[cmd.index("-stream_loop") + 1] == "-1"
        assert "-re" in cmd

    def test_fractional_duration(self):
        """Fractional durations are passed through."""
        cmd = build_push_command("ffmpeg", RTMP_URL, Path("a.mp4"), 2.5)

        assert cmd[cmd.index("-t") + 1] == "2.5"


@pytest.mark.asyncio
class TestFfmpegStreamer:
    """Tests for FfmpegStreamer.push()."""

    async def test_success(self, monkeypatch):
        """A zero exit status is a successful push."""
        proc = fake_process()
        spawn = AsyncMock(return_value=proc)
        monkeypatch.setattr(asyncio, "create_subprocess_exec", spawn)

        await FfmpegStreamer("/usr/bin/ffmpeg").push(RTMP_URL, Path("a.mp4"), 10)

        args = spawn.await_args.args
        assert args[0] == "/usr/bin/ffmpeg"
        assert args[-1] == RTMP_URL

    async def test_failure_reports_stderr(self, monkeypatch):
        """A non-zero exit is a remote failure carrying the stderr tail."""
        proc = fake_process(returncode=1, stderr=b"Connection refused\n")
        monkeypatch.setattr(asyncio, "create_subprocess_exec", AsyncMock(return_value=proc))

        with pytest.raises(RemoteTaskFailedError) as exc_info:
            await FfmpegStreamer().push(RTMP_URL, Path("a.mp4"), 10)

        assert exc_info.value.reason == "Connection refused"

    async def test_missing_binary(self, monkeypatch):
        """A missing ffmpeg is a configuration error."""
        monkeypatch.setattr(
            asyncio,
            "create_subprocess_exec",
            AsyncMock(side_effect=FileNotFoundError("ffmpeg")),
        )

        with pytest.raises(ConfigurationError, match="ffmpeg"):
            await FfmpegStreamer().push(RTMP_URL, Path("a.mp4"), 10)

    async def test_cancel_terminates_process(self, monkeypatch):
        """Cancelling a push terminates ffmpeg before propagating."""
        proc = fake_process()
        proc.returncode = None

        async def communicate():
            await asyncio.sleep(10)

        proc.communicate = communicate
        monkeypatch.setattr(asyncio, "create_subprocess_exec", AsyncMock(return_value=proc))

        task = asyncio.create_task(FfmpegStreamer().push(RTMP_URL, Path("a.mp4"), 60))
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        proc.terminate.assert_called_once()
        proc.wait.assert_awaited()
        proc.kill.assert_not_called()
