"""Polling of remote asynchronous work until it settles or a deadline passes.

The first check happens immediately; every later check follows a full
``interval`` sleep, so a call never polls faster than its interval and never
overruns its deadline by more than one interval. Cancelling the calling task
interrupts the sleep and ends the loop with ``asyncio.CancelledError``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from streamtester.api.client import AsyncStudioClient
from streamtester.api.types import Task, TaskStatus
from streamtester.errors import (
    DeadlineExceededError,
    RemoteTaskFailedError,
    TransientNetworkError,
)

logger = structlog.get_logger()

T = TypeVar("T")

DEFAULT_MAX_CONSECUTIVE_ERRORS = 5


async def poll_until(
    check: Callable[[], Awaitable[T | None]],
    *,
    interval: float,
    timeout: float,
    description: str,
    max_consecutive_errors: int = DEFAULT_MAX_CONSECUTIVE_ERRORS,
) -> T:
    """Call ``check`` until it returns a value other than None.

    Args:
        check: Coroutine factory returning the final value, or None to keep
            waiting. Any exception other than a transient network error ends
            the poll immediately.
        interval: Seconds between checks.
        timeout: Seconds after the first check at which to give up.
        description: What is being waited for, used in logs and errors.
        max_consecutive_errors: Transient errors tolerated in a row.

    Returns:
        The first non-None value returned by ``check``.

    Raises:
        DeadlineExceededError: ``timeout`` elapsed before ``check`` settled.
        TransientNetworkError: Too many consecutive network failures.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    errors = 0
    attempt = 0

    while True:
        attempt += 1
        try:
            result = await check()
        except TransientNetworkError as e:
            errors += 1
            if errors >= max_consecutive_errors:
                raise
            logger.warning(
                "poll_check_failed",
                description=description,
                attempt=attempt,
                consecutive_errors=errors,
                error=str(e),
            )
        else:
            errors = 0
            if result is not None:
                return result

        if loop.time() >= deadline:
            raise DeadlineExceededError(
                f"deadline exceeded waiting for {description} after {timeout:.1f}s"
            )
        await asyncio.sleep(interval)


async def wait_for_task(
    api: AsyncStudioClient,
    task_id: str,
    poll_interval: float,
    timeout: float,
    *,
    max_consecutive_errors: int = DEFAULT_MAX_CONSECUTIVE_ERRORS,
) -> Task:
    """Wait for a remote task to reach a terminal status.

    Args:
        api: Client used to fetch the task.
        task_id: Remote task ID.
        poll_interval: Seconds between status checks.
        timeout: Maximum time to wait.
        max_consecutive_errors: Transient errors tolerated in a row.

    Returns:
        The succeeded task.

    Raises:
        RemoteTaskFailedError: The task reported failure.
        DeadlineExceededError: The task did not finish within ``timeout``.
    """
    log = logger.bind(task_id=task_id)
    log.info("waiting_for_task", poll_interval=poll_interval, timeout=timeout)

    async def check() -> Task | None:
        task = await api.get_task(task_id)
        if task.status is TaskStatus.SUCCEEDED:
            log.info("task_succeeded", task_type=task.type)
            return task
        if task.status is TaskStatus.FAILED:
            reason = task.error_message or "unknown error"
            log.warning("task_failed", reason=reason)
            raise RemoteTaskFailedError(
                f"remote task failed: {reason}",
                reason=task.error_message,
                task_id=task_id,
            )
        log.debug("task_in_progress", status=task.status.value, progress=task.progress)
        return None

    try:
        return await poll_until(
            check,
            interval=poll_interval,
            timeout=timeout,
            description=f"task {task_id}",
            max_consecutive_errors=max_consecutive_errors,
        )
    except (DeadlineExceededError, TransientNetworkError) as e:
        e.with_context(task_id=task_id)
        raise
