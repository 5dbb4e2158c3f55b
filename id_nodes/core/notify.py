"""
Notification dispatch for node events.

Events: granted, revoked, valid_added, valid_removed. The message is the
node's template for that event (locale -> text). Dispatch is
fire-and-forget: it runs after commit and a failure is only logged.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

import httpx

logger = logging.getLogger("id_nodes.notify")


@dataclass
class Notification:
    user_id: int
    node_id: int
    node_name: str
    event: str
    message: Optional[dict] = None

    def payload(self) -> dict:
        return {
            "user_id": self.user_id,
            "node_id": self.node_id,
            "node": self.node_name,
            "event": self.event,
            "message": self.message or {},
        }


class LogDispatcher:
    """Writes notifications to the log. Keeps the last ones for inspection."""

    def __init__(self, keep: int = 100):
        self.keep = keep
        self.sent: list[Notification] = []

    def send(self, notification: Notification) -> None:
        logger.info(f"Notify user {notification.user_id}: {notification.event} "
                    f"'{notification.node_name}'")
        self.sent.append(notification)
        del self.sent[:-self.keep]


@dataclass
class WebhookDispatcher:
    """POSTs each notification as JSON to a webhook."""
    url: str
    timeout_s: float = 2.0
    client: Optional[httpx.Client] = field(default=None, repr=False)

    def __post_init__(self):
        if self.client is None:
            self.client = httpx.Client(timeout=self.timeout_s)

    def send(self, notification: Notification) -> None:
        resp = self.client.post(self.url, json=notification.payload())
        resp.raise_for_status()


def dispatch_all(dispatcher, notifications: list[Notification]) -> int:
    """Send every notification; returns how many failed."""
    failed = 0
    for n in notifications:
        try:
            dispatcher.send(n)
        except Exception as e:
            failed += 1
            logger.warning(f"Notification {n.event} for user {n.user_id} "
                           f"node {n.node_id} failed: {e}")
    return failed


def make_dispatcher(settings):
    if settings.notify_webhook_url:
        return WebhookDispatcher(settings.notify_webhook_url, settings.notify_timeout_s)
    return LogDispatcher()
