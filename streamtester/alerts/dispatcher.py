"""Fan-out of alerts to every configured transport."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

import structlog

from streamtester import metrics

from .base import Alert, Notifier

logger = structlog.get_logger()

DEFAULT_SEND_TIMEOUT = 15.0


class AlertDispatcher:
    """Sends each alert to all notifiers concurrently.

    A transport that fails or exceeds ``send_timeout`` is logged and counted;
    it never affects the other transports or the caller.
    """

    def __init__(
        self,
        notifiers: Sequence[Notifier],
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
    ) -> None:
        self.notifiers = list(notifiers)
        self.send_timeout = send_timeout

    async def dispatch(self, alert: Alert) -> dict[str, bool]:
        """Deliver ``alert`` everywhere.

        Returns:
            Delivery success per notifier name.
        """
        if not self.notifiers:
            logger.info(
                "alert_not_sent",
                reason="no notifiers configured",
                transition=alert.transition.value,
                tester=alert.tester,
            )
            return {}

        results = await asyncio.gather(
            *(self._send_one(n, alert) for n in self.notifiers)
        )
        return {n.name: ok for n, ok in zip(self.notifiers, results, strict=True)}

    async def _send_one(self, notifier: Notifier, alert: Alert) -> bool:
        log = logger.bind(
            transport=notifier.name,
            transition=alert.transition.value,
            tester=alert.tester,
            cycle=alert.cycle,
        )
        try:
            await asyncio.wait_for(notifier.send(alert), timeout=self.send_timeout)
        except TimeoutError:
            log.error("alert_send_timeout", timeout=self.send_timeout)
            metrics.inc_alerts_sent(notifier.name, "timeout")
            return False
        except Exception as e:
            log.error("alert_send_failed", error=str(e))
            metrics.inc_alerts_sent(notifier.name, "failure")
            return False

        log.info("alert_sent")
        metrics.inc_alerts_sent(notifier.name, "success")
        return True
