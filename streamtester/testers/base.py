"""Shared plumbing for the workflow testers."""

from __future__ import annotations

import socket
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from pathlib import Path
from typing import ClassVar

import httpx

from streamtester.api.client import AsyncStudioClient
from streamtester.api.types import Task
from streamtester.errors import ConfigurationError, TesterError
from streamtester.manifest import ManifestStats
from streamtester.phases import Phase, PhaseFunc
from streamtester.playback import verify_playback
from streamtester.polling import wait_for_task
from streamtester.session import SessionConfig, TestSession


class Tester(ABC):
    """A workflow tester that turns its checks into session phases.

    Subclasses define ``name`` and ``phases()``; every cycle gets a fresh
    ``TestSession`` built from a fresh list of phases.
    """

    name: ClassVar[str]

    def __init__(
        self,
        api: AsyncStudioClient,
        config: SessionConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api = api
        self.config = config
        self.http_client = http_client

    @abstractmethod
    def phases(self) -> list[Phase]:
        """Phases of one cycle."""

    def build_session(self, cycle: int = 1) -> TestSession:
        return TestSession(self.name, self.phases(), self.config, cycle=cycle)

    def phase(self, name: str, run: PhaseFunc) -> Phase:
        return Phase(name=name, run=run, deadline=self.config.phase_deadline)

    @property
    def file_path(self) -> Path:
        if self.config.file_path is None:
            raise ConfigurationError(f"{self.name} tester needs a media file")
        return self.config.file_path

    def asset_name(self, prefix: str) -> str:
        host = socket.gethostname()
        stamp = datetime.now(UTC).isoformat(timespec="seconds")
        return f"{prefix}_{host}_{stamp}"

    async def wait_task(self, task_id: str, asset_id: str | None = None) -> Task:
        try:
            return await wait_for_task(
                self.api,
                task_id,
                poll_interval=self.config.task_poll_interval,
                timeout=self.config.task_timeout,
            )
        except TesterError as e:
            e.with_context(task_id=task_id, asset_id=asset_id)
            raise

    async def check_playback(
        self, asset_id: str, expected_min_duration: float | None = None
    ) -> ManifestStats:
        return await verify_playback(
            self.api,
            asset_id,
            expected_min_duration=expected_min_duration,
            max_wait=self.config.playback_max_wait,
            http_client=self.http_client,
        )
