"""Continuous execution of test cycles with alerting.

``ContinuousRunner`` builds and runs a fresh ``TestSession`` per cycle until
its total duration elapses or it is cancelled. It tracks a two-state health
machine per tester:

    OK --(cycle fails)--> FAILING --(cycle succeeds)--> OK

and raises one FAILING alert per contiguous failing run and one RECOVERED
alert when it ends. Only the runner appends to its cycle history.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

import structlog

from streamtester import metrics
from streamtester.alerts import Alert, AlertDispatcher, AlertTransition
from streamtester.logging import reset_context
from streamtester.session import CycleResult, TestSession

logger = structlog.get_logger()

DEFAULT_HISTORY_SIZE = 100


class HealthState(str, Enum):
    OK = "ok"
    FAILING = "failing"


@dataclass
class RunnerStatus:
    """Snapshot of a runner, as served on /status."""

    tester: str
    state: HealthState
    running: bool
    cycles: int
    failures: int
    consecutive_failures: int
    last_result: CycleResult | None = None
    failing_since: datetime | None = None
    history: list[CycleResult] = field(default_factory=list)

    def to_dict(self, include_history: bool = False) -> dict[str, Any]:
        result: dict[str, Any] = {
            "tester": self.tester,
            "state": self.state.value,
            "running": self.running,
            "cycles": self.cycles,
            "failures": self.failures,
            "consecutive_failures": self.consecutive_failures,
            "last_result": self.last_result.to_dict() if self.last_result else None,
            "failing_since": (
                self.failing_since.isoformat() if self.failing_since else None
            ),
        }
        if include_history:
            result["history"] = [r.to_dict() for r in self.history]
        return result


class ContinuousRunner:
    """Repeats test cycles and alerts on health transitions.

    Args:
        name: Tester name used in logs, alerts and metric labels.
        dispatcher: Alert fan-out; None disables alerting.
        history_size: Cycle results kept in memory.
    """

    def __init__(
        self,
        name: str,
        dispatcher: AlertDispatcher | None = None,
        history_size: int = DEFAULT_HISTORY_SIZE,
    ) -> None:
        self.name = name
        self._dispatcher = dispatcher
        self._history: deque[CycleResult] = deque(maxlen=history_size)
        self._state = HealthState.OK
        self._running = False
        self._cycles = 0
        self._failures = 0
        self._consecutive_failures = 0
        self._failing_since: datetime | None = None
        self._incident_id: str | None = None
        self.alerts: deque[Alert] = deque(maxlen=history_size)

    @property
    def state(self) -> HealthState:
        return self._state

    @property
    def history(self) -> list[CycleResult]:
        return list(self._history)

    def status(self) -> RunnerStatus:
        return RunnerStatus(
            tester=self.name,
            state=self._state,
            running=self._running,
            cycles=self._cycles,
            failures=self._failures,
            consecutive_failures=self._consecutive_failures,
            last_result=self._history[-1] if self._history else None,
            failing_since=self._failing_since,
            history=self.history,
        )

    async def run(
        self,
        build_cycle: Callable[[int], TestSession],
        total_duration: float,
        pause_between: float = 0.0,
    ) -> None:
        """Run cycles until ``total_duration`` seconds have elapsed.

        Args:
            build_cycle: Returns a fresh session for the given cycle number.
            total_duration: Seconds from the start of the loop after which no
                new cycle begins.
            pause_between: Seconds to sleep after each cycle, clipped to the
                remaining time.

        Raises:
            asyncio.CancelledError: The runner was cancelled; the running
                cycle has been cancelled and awaited.
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        self._running = True
        reset_context(tester=self.name)
        metrics.set_failing(self.name, self._state is HealthState.FAILING)
        logger.info(
            "continuous_run_started",
            total_duration=total_duration,
            pause_between=pause_between,
        )

        try:
            while True:
                session = build_cycle(self._cycles + 1)
                result = await session.run()
                await self._record(result)

                remaining = total_duration - (loop.time() - started)
                if remaining <= 0:
                    break
                if pause_between > 0:
                    await asyncio.sleep(min(pause_between, remaining))
                    if loop.time() - started >= total_duration:
                        break
        except asyncio.CancelledError:
            logger.info("continuous_run_cancelled", cycles=self._cycles)
            raise
        finally:
            self._running = False

        logger.info(
            "continuous_run_finished",
            cycles=self._cycles,
            failures=self._failures,
            state=self._state.value,
        )

    async def _record(self, result: CycleResult) -> None:
        self._cycles += 1
        self._history.append(result)

        status = "success" if result.ok else "failure"
        metrics.inc_cycles(self.name, status)
        metrics.observe_cycle_duration(self.name, result.duration)

        if result.ok:
            await self._on_success(result)
        else:
            await self._on_failure(result)
        metrics.set_failing(self.name, self._state is HealthState.FAILING)

    async def _on_success(self, result: CycleResult) -> None:
        if self._state is HealthState.OK:
            return

        alert = Alert(
            transition=AlertTransition.RECOVERED,
            tester=self.name,
            cycle=result.cycle,
            timestamp=result.started_at,
            incident_id=self._incident_id or "",
            failed_cycles=self._consecutive_failures,
        )
        self._state = HealthState.OK
        self._consecutive_failures = 0
        self._failing_since = None
        self._incident_id = None
        logger.info("tester_recovered", tester=self.name, cycle=result.cycle)
        await self._alert(alert)

    async def _on_failure(self, result: CycleResult) -> None:
        self._failures += 1
        self._consecutive_failures += 1
        kind = result.error_kind
        metrics.inc_phase_failures(
            self.name, result.phase or "unknown", kind.value if kind else "unknown"
        )

        if self._state is HealthState.FAILING:
            logger.warning(
                "tester_still_failing",
                tester=self.name,
                cycle=result.cycle,
                consecutive_failures=self._consecutive_failures,
            )
            return

        self._state = HealthState.FAILING
        self._failing_since = result.started_at
        self._incident_id = uuid4().hex
        logger.warning("tester_failing", tester=self.name, cycle=result.cycle)
        await self._alert(
            Alert(
                transition=AlertTransition.FAILING,
                tester=self.name,
                cycle=result.cycle,
                timestamp=result.started_at,
                incident_id=self._incident_id,
                phase=result.phase,
                error=str(result.error) if result.error else None,
                error_kind=kind.value if kind else None,
            )
        )

    async def _alert(self, alert: Alert) -> None:
        self.alerts.append(alert)
        if self._dispatcher is not None:
            await self._dispatcher.dispatch(alert)
