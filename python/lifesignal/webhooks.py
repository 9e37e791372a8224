"""
LifeSignal webhook notifications.

Forward notifications to HTTP endpoints: a push gateway taking plain JSON, or
a Slack incoming webhook for a shared operations channel.
"""

from __future__ import annotations

import json
import ssl
import urllib.request
from dataclasses import dataclass
from typing import Optional
from urllib.error import HTTPError, URLError

from lifesignal.errors import Unavailable
from lifesignal.models import UserRecord
from lifesignal.notify import Notification, NotificationKind


@dataclass(frozen=True)
class WebhookConfig:
    """Webhook configuration."""
    url: str
    headers: Optional[dict] = None  # Additional headers (e.g., Authorization)
    timeout: int = 10
    style: str = "json"  # "json" | "slack"


URGENT_KINDS = {
    NotificationKind.MANUAL_ALERT,
    NotificationKind.NON_RESPONSIVE,
}


def format_json_payload(notification: Notification) -> dict:
    return {"event": f"notification.{notification.kind.value}", "notification": notification.as_dict()}


def format_slack_payload(notification: Notification) -> dict:
    """
    Format a notification for a Slack incoming webhook.

    Returns a Slack Block Kit message.
    """
    if notification.kind in URGENT_KINDS:
        emoji, color = ":rotating_light:", "#dc2626"  # red
    elif notification.kind in (NotificationKind.CHECKED_IN, NotificationKind.ALERT_CANCELLED,
                               NotificationKind.PING_RESPONDED):
        emoji, color = ":white_check_mark:", "#16a34a"  # green
    elif notification.kind == NotificationKind.CHECK_IN_REMINDER:
        emoji, color = ":alarm_clock:", "#f59e0b"  # amber
    else:
        emoji, color = ":bell:", "#2563eb"  # blue

    return {
        "attachments": [{
            "color": color,
            "blocks": [
                {
                    "type": "header",
                    "text": {
                        "type": "plain_text",
                        "text": f"{emoji} {notification.title}",
                    }
                },
                {
                    "type": "section",
                    "text": {"type": "mrkdwn", "text": notification.body},
                },
                {
                    "type": "context",
                    "elements": [
                        {"type": "mrkdwn", "text": f"To: `{notification.recipient_id}`"},
                        {"type": "mrkdwn", "text": f"Kind: `{notification.kind.value}`"},
                    ]
                }
            ]
        }]
    }


def send_webhook(config: WebhookConfig, data: dict) -> None:
    """POST JSON to an endpoint. Raises Unavailable on any failure."""
    body = json.dumps(data).encode("utf-8")

    headers = {"Content-Type": "application/json"}
    if config.headers:
        headers.update(config.headers)

    req = urllib.request.Request(
        config.url,
        data=body,
        headers=headers,
        method="POST",
    )

    try:
        ctx = ssl.create_default_context()
        with urllib.request.urlopen(req, timeout=config.timeout, context=ctx) as resp:
            if not 200 <= resp.status < 300:
                raise Unavailable(f"webhook {config.url} answered {resp.status}")
    except (URLError, HTTPError, OSError) as e:
        raise Unavailable(f"webhook {config.url} failed: {e}") from e


class WebhookChannel:
    """One webhook endpoint."""

    name = "webhook"

    def __init__(self, config: WebhookConfig) -> None:
        self.config = config

    def deliver(self, notification: Notification, recipient: Optional[UserRecord]) -> None:
        if self.config.style == "slack":
            data = format_slack_payload(notification)
        else:
            data = format_json_payload(notification)
        send_webhook(self.config, data)
