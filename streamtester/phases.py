"""Concurrent execution of test phases.

``PhaseOrchestrator`` runs every phase of a session as its own task. The
first phase to fail (in completion order) cancels its siblings and its error
becomes the session's result; cancelled siblings are not reported as
failures. Cancelling the orchestrator cancels every phase and waits for all
of them before propagating, so no phase task outlives ``run()``.

A phase that has committed a remote side effect can enter
``PhaseContext.committed()``; sibling failures then only set
``stop_requested`` and the cancellation is delivered when the section ends.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from streamtester.errors import (
    DeadlineExceededError,
    TesterError,
    UnexpectedPhaseError,
    classify,
)

if TYPE_CHECKING:
    from streamtester.session import SessionConfig

logger = structlog.get_logger()

PhaseFunc = Callable[["PhaseContext"], Awaitable[None]]


@dataclass(frozen=True)
class Phase:
    """A named unit of work run concurrently with its siblings.

    Attributes:
        name: Phase name, unique within a session.
        run: Coroutine function receiving the phase context.
        deadline: Seconds the phase may run before it is cancelled and
            reported as deadline exceeded. None for no limit.
    """

    name: str
    run: PhaseFunc
    deadline: float | None = None


class PhaseContext:
    """Per-phase view of the session handed to a phase function."""

    def __init__(self, name: str, config: SessionConfig | None = None) -> None:
        self.name = name
        self.config = config
        self.stop_requested = asyncio.Event()
        self.log = logger.bind(phase=name)
        self._committed = False
        self._task: asyncio.Task | None = None

    @property
    def is_committed(self) -> bool:
        return self._committed

    @contextmanager
    def committed(self) -> Iterator[None]:
        """Shield the enclosed section from sibling-failure cancellation.

        Cancellation of the whole session still interrupts the section.
        """
        self._committed = True
        try:
            yield
        finally:
            self._committed = False
            if self.stop_requested.is_set() and self._task is not None:
                self._task.cancel()

    def request_stop(self) -> None:
        """Ask the phase to stop because a sibling failed."""
        self.stop_requested.set()
        if not self._committed and self._task is not None:
            self._task.cancel()


class PhaseOrchestrator:
    """Runs phases concurrently and reports the first failure."""

    def __init__(
        self,
        phases: Sequence[Phase],
        config: SessionConfig | None = None,
    ) -> None:
        names = [p.name for p in phases]
        if len(set(names)) != len(names):
            raise ValueError(f"phase names must be unique: {names}")
        self._phases = list(phases)
        self._config = config

    async def run(self) -> None:
        """Run all phases and wait for every one of them to finish.

        Raises:
            TesterError: The first phase failure observed.
            asyncio.CancelledError: The caller was cancelled; all phases have
                been cancelled and awaited.
        """
        contexts: dict[asyncio.Task, PhaseContext] = {}
        for phase in self._phases:
            ctx = PhaseContext(phase.name, self._config)
            task = asyncio.create_task(
                self._run_phase(phase, ctx), name=f"phase:{phase.name}"
            )
            ctx._task = task
            contexts[task] = ctx

        first_error: BaseException | None = None
        pending = set(contexts)

        try:
            while pending:
                done, pending = await asyncio.wait(
                    pending, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    ctx = contexts[task]
                    if task.cancelled():
                        logger.info("phase_cancelled", phase=ctx.name)
                        continue
                    error = task.exception()
                    if error is None:
                        logger.info("phase_succeeded", phase=ctx.name)
                        continue
                    if first_error is not None:
                        logger.warning(
                            "phase_failed_after_first_failure",
                            phase=ctx.name,
                            error=str(error),
                        )
                        continue

                    first_error = error
                    kind = classify(error)
                    logger.warning(
                        "phase_failed",
                        phase=ctx.name,
                        error=str(error),
                        error_kind=kind.value if kind else None,
                        cancelling=[contexts[t].name for t in pending],
                    )
                    for other in pending:
                        contexts[other].request_stop()
        except asyncio.CancelledError:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            raise

        if first_error is not None:
            raise first_error

    async def _run_phase(self, phase: Phase, ctx: PhaseContext) -> None:
        with structlog.contextvars.bound_contextvars(phase=phase.name):
            ctx.log.info("phase_started", deadline=phase.deadline)
            scope = asyncio.timeout(phase.deadline)
            try:
                async with scope:
                    await phase.run(ctx)
            except TimeoutError as e:
                if not scope.expired():
                    raise UnexpectedPhaseError(
                        f"{type(e).__name__}: {e}", phase=phase.name
                    ) from e
                raise DeadlineExceededError(
                    f"phase exceeded its deadline of {phase.deadline}s",
                    phase=phase.name,
                ) from e
            except TesterError as e:
                e.with_context(phase=phase.name)
                raise
            except asyncio.CancelledError:
                raise
            except Exception as e:
                raise UnexpectedPhaseError(
                    f"{type(e).__name__}: {e}", phase=phase.name
                ) from e
