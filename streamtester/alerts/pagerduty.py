"""PagerDuty Events API v2 transport."""

from __future__ import annotations

from typing import Any

from .base import Alert, AlertTransition, Notifier, post_json

EVENTS_URL = "https://events.pagerduty.com/v2/enqueue"
SOURCE = "stream-tester"


class PagerDutyNotifier(Notifier):
    """Triggers an incident when a tester starts failing and resolves it on
    recovery.

    Both events carry the same dedup key so PagerDuty folds them into one
    incident. Severity ``error`` pages with high urgency; ``low_urgency``
    sends ``warning`` instead, which services route to low-urgency rules.
    """

    name = "pagerduty"

    def __init__(
        self,
        integration_key: str,
        component: str = "",
        low_urgency: bool = False,
        events_url: str = EVENTS_URL,
        backoff_delays: list[float] | None = None,
    ) -> None:
        self.integration_key = integration_key
        self.component = component
        self.low_urgency = low_urgency
        self.events_url = events_url
        self._backoff_delays = backoff_delays

    def dedup_key(self, alert: Alert) -> str:
        return f"{self.component or SOURCE}:{alert.tester}:{alert.incident_id}"

    def build_payload(self, alert: Alert) -> dict[str, Any]:
        if alert.transition is AlertTransition.RECOVERED:
            return {
                "routing_key": self.integration_key,
                "event_action": "resolve",
                "dedup_key": self.dedup_key(alert),
            }

        return {
            "routing_key": self.integration_key,
            "event_action": "trigger",
            "dedup_key": self.dedup_key(alert),
            "payload": {
                "summary": alert.summary[:1024],
                "source": SOURCE,
                "severity": "warning" if self.low_urgency else "error",
                "timestamp": alert.timestamp.isoformat(),
                "component": self.component or alert.tester,
                "group": alert.tester,
                "class": alert.error_kind or "unknown",
                "custom_details": alert.to_dict(),
            },
        }

    async def send(self, alert: Alert) -> None:
        await post_json(
            self.events_url,
            self.build_payload(alert),
            transport=self.name,
            backoff_delays=self._backoff_delays,
        )
