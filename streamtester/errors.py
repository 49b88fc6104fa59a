"""Error taxonomy for stream-tester.

Every failure a tester can report is a ``TesterError`` tagged with an
``ErrorKind``. The kind drives exit codes, alert text and metric labels;
nothing downstream inspects error messages.

Cancellation is not part of the hierarchy: it travels as
``asyncio.CancelledError`` and ``classify()`` maps it to
``ErrorKind.CANCELLED``.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, ClassVar


class ErrorKind(str, Enum):
    """Category of a tester failure."""

    CONFIGURATION = "configuration"
    TRANSIENT_NETWORK = "transient_network"
    REMOTE_FAILURE = "remote_failure"
    VERIFICATION_FAILURE = "verification_failure"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    CANCELLED = "cancelled"
    UNEXPECTED = "unexpected"


class TesterError(Exception):
    """Base exception for all tester failures.

    Attributes:
        message: Human-readable error message.
        phase: Name of the phase the error surfaced in, if known.
        task_id: Remote task involved, if any.
        asset_id: Remote asset involved, if any.
    """

    kind: ClassVar[ErrorKind] = ErrorKind.UNEXPECTED

    def __init__(
        self,
        message: str,
        *,
        phase: str | None = None,
        task_id: str | None = None,
        asset_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.phase = phase
        self.task_id = task_id
        self.asset_id = asset_id

    def __str__(self) -> str:
        context = [
            f"{name}={value}"
            for name, value in (
                ("phase", self.phase),
                ("task_id", self.task_id),
                ("asset_id", self.asset_id),
            )
            if value
        ]
        if context:
            return f"{self.message} ({' '.join(context)})"
        return self.message

    def with_context(
        self,
        *,
        phase: str | None = None,
        task_id: str | None = None,
        asset_id: str | None = None,
    ) -> TesterError:
        """Fill in context fields that are still unset and return self.

        Inner layers know the task or asset; outer layers know the phase.
        Values set closer to the failure are never overwritten.
        """
        if self.phase is None:
            self.phase = phase
        if self.task_id is None:
            self.task_id = task_id
        if self.asset_id is None:
            self.asset_id = asset_id
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for alert payloads and status output."""
        result: dict[str, Any] = {
            "error": self.kind.value,
            "message": self.message,
        }
        if self.phase:
            result["phase"] = self.phase
        if self.task_id:
            result["task_id"] = self.task_id
        if self.asset_id:
            result["asset_id"] = self.asset_id
        return result


class ConfigurationError(TesterError):
    """Required parameter missing or invalid. Raised before any cycle starts."""

    kind = ErrorKind.CONFIGURATION


class TransientNetworkError(TesterError):
    """Connection or timeout error talking to a remote service."""

    kind = ErrorKind.TRANSIENT_NETWORK


class RemoteTaskFailedError(TesterError):
    """The remote asynchronous task reported failure.

    Attributes:
        reason: Failure reason as reported by the remote side.
    """

    kind = ErrorKind.REMOTE_FAILURE

    def __init__(self, message: str, *, reason: str | None = None, **context: Any):
        super().__init__(message, **context)
        self.reason = reason


class VerificationError(TesterError):
    """A produced artifact did not pass validation."""

    kind = ErrorKind.VERIFICATION_FAILURE


class DeadlineExceededError(TesterError):
    """Polling or verification did not finish within its bound."""

    kind = ErrorKind.DEADLINE_EXCEEDED


class UnexpectedPhaseError(TesterError):
    """Wraps an exception that is not part of the tester taxonomy."""

    kind = ErrorKind.UNEXPECTED


def classify(error: BaseException | None) -> ErrorKind | None:
    """Return the kind of an error, or None for success."""
    if error is None:
        return None
    if isinstance(error, asyncio.CancelledError):
        return ErrorKind.CANCELLED
    if isinstance(error, TesterError):
        return error.kind
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return ErrorKind.DEADLINE_EXCEEDED
    return ErrorKind.UNEXPECTED


def is_cancellation(error: BaseException | None) -> bool:
    """True when the error only signals that the run was cancelled."""
    return classify(error) is ErrorKind.CANCELLED
