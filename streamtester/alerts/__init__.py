"""Alert transports for continuously running testers."""

from .base import Alert, AlertDeliveryError, AlertTransition, Notifier, post_json
from .discord import DiscordNotifier
from .dispatcher import AlertDispatcher
from .pagerduty import PagerDutyNotifier

__all__ = [
    "Alert",
    "AlertDeliveryError",
    "AlertDispatcher",
    "AlertTransition",
    "DiscordNotifier",
    "Notifier",
    "PagerDutyNotifier",
    "post_json",
]
