"""Test sessions and their results.

A ``TestSession`` is one pass through a tester's phases. It owns an immutable
``SessionConfig`` snapshot and records its outcome (``exit_code``, ``error``)
once the orchestrator returns. Sessions are one-shot: a finished or cancelled
session never runs again, the continuous runner builds a fresh one per cycle.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

import structlog

from streamtester.errors import ErrorKind, classify
from streamtester.phases import Phase, PhaseOrchestrator

logger = structlog.get_logger()

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIGURATION = 2


@dataclass(frozen=True)
class SessionConfig:
    """Configuration snapshot shared by every phase of a session.

    Attributes:
        api_server: Hosted API server the session talks to.
        file_path: Local media file used for uploads and RTMP pushes.
        test_duration: Seconds of media pushed per stream.
        pause_duration: Seconds to pause between two pushes of one stream.
        task_poll_interval: Seconds between remote task status checks.
        task_timeout: Seconds a remote task may take.
        playback_max_wait: Seconds to wait for a manifest to become fetchable.
        phase_deadline: Per-phase deadline in seconds, None for none.
        pipeline_strategy: Processing pipeline requested for new assets.
        vod_import_url: Public media URL used for URL imports and transcodes.
        ignore_gaps: Tolerate segment gaps in recordings.
        ignore_time_drift: Tolerate timestamp drift between renditions.
        ignore_no_codec_error: Tolerate streams reporting no codec.
    """

    api_server: str
    file_path: Path | None
    test_duration: float
    pause_duration: float = 0.0
    task_poll_interval: float = 15.0
    task_timeout: float = 600.0
    playback_max_wait: float = 20.0
    phase_deadline: float | None = None
    pipeline_strategy: str | None = None
    vod_import_url: str = ""
    ignore_gaps: bool = True
    ignore_time_drift: bool = True
    ignore_no_codec_error: bool = True


@dataclass
class CycleResult:
    """Outcome of one session."""

    tester: str
    cycle: int
    exit_code: int
    error: BaseException | None
    started_at: datetime
    duration: float

    @property
    def ok(self) -> bool:
        return self.exit_code == EXIT_OK

    @property
    def error_kind(self) -> ErrorKind | None:
        return classify(self.error)

    @property
    def phase(self) -> str | None:
        return getattr(self.error, "phase", None)

    def to_dict(self) -> dict[str, Any]:
        kind = self.error_kind
        return {
            "tester": self.tester,
            "cycle": self.cycle,
            "exit_code": self.exit_code,
            "ok": self.ok,
            "error": str(self.error) if self.error else None,
            "error_kind": kind.value if kind else None,
            "phase": self.phase,
            "started_at": self.started_at.isoformat(),
            "duration_seconds": round(self.duration, 3),
        }


class TestSession:
    """One run of a tester's phases."""

    __test__ = False

    def __init__(
        self,
        name: str,
        phases: Sequence[Phase],
        config: SessionConfig,
        cycle: int = 1,
    ) -> None:
        self.id = uuid4().hex[:8]
        self.name = name
        self.phases = list(phases)
        self.config = config
        self.cycle = cycle
        self.exit_code: int | None = None
        self.error: BaseException | None = None
        self._started = False

    @property
    def done(self) -> bool:
        return self.exit_code is not None

    async def run(self) -> CycleResult:
        """Run every phase and record the outcome.

        Phase failures are captured in the result. Cancellation is recorded
        as a clean exit and then re-raised to the caller.
        """
        if self._started:
            raise RuntimeError(f"session {self.id} has already run")
        self._started = True

        started_at = datetime.now(UTC)
        t0 = time.monotonic()

        with structlog.contextvars.bound_contextvars(
            session=self.id, tester=self.name, cycle=self.cycle
        ):
            logger.info(
                "session_started",
                phases=[p.name for p in self.phases],
                api_server=self.config.api_server,
            )
            try:
                await PhaseOrchestrator(self.phases, config=self.config).run()
            except asyncio.CancelledError:
                self.exit_code = EXIT_OK
                logger.info("session_cancelled", duration=time.monotonic() - t0)
                raise
            except Exception as e:
                self.exit_code = EXIT_FAILURE
                self.error = e
                kind = classify(e)
                logger.error(
                    "session_failed",
                    error=str(e),
                    error_kind=kind.value if kind else None,
                    failed_phase=getattr(e, "phase", None),
                    duration=round(time.monotonic() - t0, 3),
                )
            else:
                self.exit_code = EXIT_OK
                logger.info(
                    "session_succeeded", duration=round(time.monotonic() - t0, 3)
                )

        return CycleResult(
            tester=self.name,
            cycle=self.cycle,
            exit_code=self.exit_code,
            error=self.error,
            started_at=started_at,
            duration=time.monotonic() - t0,
        )
