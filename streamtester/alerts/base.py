"""Alert model and HTTP delivery shared by the alert transports."""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

import httpx
import structlog

logger = structlog.get_logger()

DEFAULT_MAX_RETRIES = 1
DEFAULT_BACKOFF_DELAYS = [1.0]
DELIVERY_TIMEOUT = 10.0


class AlertTransition(str, Enum):
    """Health transition of a continuously running tester."""

    FAILING = "failing"
    RECOVERED = "recovered"


@dataclass(frozen=True)
class Alert:
    """A health transition to report to operators.

    Attributes:
        transition: FAILING on the first failure of a run, RECOVERED on the
            first success after it.
        tester: Tester name.
        cycle: Cycle number that caused the transition.
        timestamp: When the transition cycle started.
        incident_id: Shared by the FAILING and RECOVERED alerts of one
            failing run.
        phase: Phase that failed (FAILING only).
        error: Error detail (FAILING only).
        error_kind: Error kind value (FAILING only).
        failed_cycles: Consecutive failed cycles (RECOVERED only).
    """

    transition: AlertTransition
    tester: str
    cycle: int
    timestamp: datetime
    incident_id: str
    phase: str | None = None
    error: str | None = None
    error_kind: str | None = None
    failed_cycles: int = 0

    @property
    def summary(self) -> str:
        if self.transition is AlertTransition.RECOVERED:
            return (
                f"{self.tester} test recovered at cycle {self.cycle} "
                f"after {self.failed_cycles} failed cycle(s)"
            )
        where = f" in phase {self.phase}" if self.phase else ""
        return (
            f"{self.tester} test failing{where} at cycle {self.cycle}: "
            f"{self.error_kind or 'error'}: {self.error}"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "transition": self.transition.value,
            "tester": self.tester,
            "cycle": self.cycle,
            "timestamp": self.timestamp.isoformat(),
            "incident_id": self.incident_id,
            "phase": self.phase,
            "error": self.error,
            "error_kind": self.error_kind,
            "failed_cycles": self.failed_cycles,
        }


class AlertDeliveryError(Exception):
    """Raised when a transport could not deliver an alert."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class Notifier(ABC):
    """An alert transport."""

    name: str

    @abstractmethod
    async def send(self, alert: Alert) -> None:
        """Deliver an alert.

        Raises:
            AlertDeliveryError: Delivery failed after retries.
        """


async def post_json(
    url: str,
    payload: dict[str, Any],
    *,
    transport: str,
    max_retries: int = DEFAULT_MAX_RETRIES,
    backoff_delays: list[float] | None = None,
    timeout: float = DELIVERY_TIMEOUT,
) -> int:
    """POST a JSON payload, retrying on transport errors and non-2xx replies.

    Args:
        url: Endpoint to POST to.
        payload: JSON body.
        transport: Transport name for logs.
        max_retries: Retries after the first attempt.
        backoff_delays: Seconds to wait before each retry.
        timeout: Per-attempt timeout in seconds.

    Returns:
        The HTTP status code of the successful response.

    Raises:
        AlertDeliveryError: All attempts failed.
    """
    if backoff_delays is None:
        backoff_delays = DEFAULT_BACKOFF_DELAYS

    log = logger.bind(transport=transport)
    body = json.dumps(payload, default=str)
    last_error: str | None = None
    last_status_code: int | None = None

    for attempt in range(max_retries + 1):
        attempt_log = log.bind(attempt=attempt + 1, max_attempts=max_retries + 1)

        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.post(
                    url,
                    content=body,
                    headers={"Content-Type": "application/json"},
                )

            if response.status_code < 300:
                attempt_log.debug("alert_delivered", status_code=response.status_code)
                return response.status_code

            last_status_code = response.status_code
            last_error = f"HTTP {response.status_code}"
            attempt_log.warning(
                "alert_delivery_failed",
                status_code=response.status_code,
                response_body=response.text[:200],
            )

        except httpx.TimeoutException:
            last_error = "timeout"
            attempt_log.warning("alert_delivery_timeout")

        except httpx.RequestError as e:
            last_error = str(e)
            attempt_log.warning("alert_request_error", error=str(e))

        if attempt < max_retries:
            delay = (
                backoff_delays[attempt]
                if attempt < len(backoff_delays)
                else backoff_delays[-1]
            )
            await asyncio.sleep(delay)

    raise AlertDeliveryError(
        f"{transport} delivery failed after {max_retries + 1} attempts: {last_error}",
        status_code=last_status_code,
    )
