"""RTMP stream simulator backed by the ffmpeg binary."""

from __future__ import annotations

import asyncio
from pathlib import Path

import structlog

from streamtester.errors import ConfigurationError, RemoteTaskFailedError

logger = structlog.get_logger()

# Seconds ffmpeg gets to exit after SIGTERM before it is killed
TERMINATE_GRACE_SECONDS = 5.0
STDERR_TAIL_BYTES = 2000


def build_push_command(
    ffmpeg: str, rtmp_url: str, file_path: Path, duration: float
) -> list[str]:
    """ffmpeg invocation that loops ``file_path`` into ``rtmp_url`` in real time."""
    return [
        ffmpeg,
        "-hide_banner",
        "-loglevel",
        "error",
        "-re",
        "-stream_loop",
        "-1",
        "-i",
        str(file_path),
        "-t",
        f"{duration:g}",
        "-c",
        "copy",
        "-f",
        "flv",
        rtmp_url,
    ]


class FfmpegStreamer:
    """Pushes a local file to an RTMP ingest for a fixed duration."""

    def __init__(self, ffmpeg: str = "ffmpeg") -> None:
        self.ffmpeg = ffmpeg

    async def push(self, rtmp_url: str, file_path: Path, duration: float) -> None:
        """Stream ``file_path`` to ``rtmp_url`` for ``duration`` seconds.

        Cancelling the caller terminates ffmpeg before the cancellation
        propagates.

        Raises:
            ConfigurationError: ffmpeg is not installed.
            RemoteTaskFailedError: ffmpeg exited with a non-zero status.
        """
        cmd = build_push_command(self.ffmpeg, rtmp_url, file_path, duration)
        log = logger.bind(file=str(file_path), duration=duration)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ConfigurationError(f"ffmpeg binary not found: {self.ffmpeg}") from e

        log.info("rtmp_push_started", pid=proc.pid)
        try:
            _, stderr = await proc.communicate()
        except asyncio.CancelledError:
            await self._terminate(proc)
            log.info("rtmp_push_cancelled")
            raise

        if proc.returncode != 0:
            tail = (stderr or b"")[-STDERR_TAIL_BYTES:].decode(errors="replace").strip()
            raise RemoteTaskFailedError(
                f"ffmpeg exited with status {proc.returncode} pushing to RTMP",
                reason=tail or None,
            )
        log.info("rtmp_push_finished")

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=TERMINATE_GRACE_SECONDS)
        except TimeoutError:
            proc.kill()
            await proc.wait()
