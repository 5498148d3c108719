"""
Notification dispatcher: POST desk events to NOTIFY_WEBHOOK_URL (push gateway, Slack, ...).
No-op if unset. Fire-and-forget: delivery failures are logged, never raised to the caller.
"""

import asyncio
import json
import logging
import ssl
import urllib.request
from typing import Any, Optional

from elitereply.config import NOTIFY_WEBHOOK_URL
from elitereply.errors import NotificationDeliveryFailed

logger = logging.getLogger(__name__)

TICKET_CREATED = "ticket_created"
TICKET_ASSIGNED = "ticket_assigned"
TICKET_ESCALATED = "ticket_escalated"
MESSAGE_SENT = "message_sent"
APPOINTMENT_BOOKED = "appointment_booked"


def _do_post(url: str, payload: dict[str, Any]) -> None:
    """Synchronous POST (run in thread)."""
    data = json.dumps(payload, default=str).encode("utf-8")
    req = urllib.request.Request(
        url,
        data=data,
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    ctx = ssl.create_default_context()
    try:
        urllib.request.urlopen(req, timeout=5, context=ctx)
    except OSError as e:
        raise NotificationDeliveryFailed(str(e)) from e


class NotificationDispatcher:
    """Schedules webhook deliveries on the running event loop."""

    def __init__(self, url: Optional[str] = None):
        self.url = NOTIFY_WEBHOOK_URL if url is None else url
        self._pending: set[asyncio.Task] = set()

    async def deliver(self, event: str, data: dict[str, Any]) -> bool:
        """POST one event. Returns False (after logging) when delivery fails."""
        if not self.url:
            return False
        try:
            await asyncio.to_thread(_do_post, self.url, {"event": event, "data": data})
            return True
        except NotificationDeliveryFailed as e:
            logger.warning("Notification %s not delivered: %s", event, e)
            return False

    def fire(self, event: str, data: dict[str, Any]) -> None:
        """Schedule delivery without waiting for it."""
        if not self.url:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Notification %s dropped: no running event loop.", event)
            return
        task = loop.create_task(self.deliver(event, data))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for scheduled deliveries (shutdown, tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class RecordingDispatcher(NotificationDispatcher):
    """Dispatcher that keeps events in memory instead of posting them."""

    def __init__(self):
        super().__init__(url="")
        self.events: list[tuple[str, dict[str, Any]]] = []

    def fire(self, event: str, data: dict[str, Any]) -> None:
        self.events.append((event, data))
