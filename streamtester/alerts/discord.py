"""Discord webhook transport."""

from __future__ import annotations

from typing import Any

from .base import Alert, AlertTransition, Notifier, post_json

# Discord rejects message content longer than this
MAX_CONTENT_LENGTH = 2000


class DiscordNotifier(Notifier):
    """Posts alerts to a Discord channel through an incoming webhook.

    Args:
        webhook_url: Incoming webhook URL.
        user_name: Name the message is posted under.
        users_to_notify: Discord user IDs mentioned on failure alerts.
    """

    name = "discord"

    def __init__(
        self,
        webhook_url: str,
        user_name: str = "",
        users_to_notify: list[str] | None = None,
        backoff_delays: list[float] | None = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.user_name = user_name
        self.users_to_notify = [u for u in (users_to_notify or []) if u]
        self._backoff_delays = backoff_delays

    def build_payload(self, alert: Alert) -> dict[str, Any]:
        if alert.transition is AlertTransition.FAILING:
            mentions = " ".join(f"<@{u}>" for u in self.users_to_notify)
            content = f"{mentions} :rotating_light: {alert.summary}".strip()
        else:
            content = f":white_check_mark: {alert.summary}"

        payload: dict[str, Any] = {"content": content[:MAX_CONTENT_LENGTH]}
        if self.user_name:
            payload["username"] = self.user_name
        if alert.transition is AlertTransition.FAILING:
            payload["allowed_mentions"] = {"users": self.users_to_notify}
        return payload

    async def send(self, alert: Alert) -> None:
        await post_json(
            self.webhook_url,
            self.build_payload(alert),
            transport=self.name,
            backoff_delays=self._backoff_delays,
        )
