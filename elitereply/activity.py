"""
Desk activity feed: ticket-scoped events (opened, escalated, assigned, terminated, archived,
bookings, Jey turns) kept in a bounded in-process buffer.

Events raised in the ARQ worker reach the API's feed over Redis pub/sub (FEED_CHANNEL).
"""

import json
import logging
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from elitereply.config import ACTIVITY_MAX_EVENTS, REDIS_URL

logger = logging.getLogger(__name__)

FEED_CHANNEL = "elitereply:desk_activity"


@dataclass
class DeskEvent:
    type: str
    ticket_id: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
    ts: float = field(default_factory=time.time)
    origin: str = "api"

    @classmethod
    def from_wire(cls, raw: str) -> "DeskEvent":
        payload = json.loads(raw)
        return cls(
            type=payload["type"],
            ticket_id=payload.get("ticket_id"),
            data=payload.get("data") or {},
            ts=payload.get("ts") or time.time(),
            origin=payload.get("origin", "worker"),
        )


_feed: deque[DeskEvent] = deque(maxlen=ACTIVITY_MAX_EVENTS)
_feed_lock = threading.Lock()


def _append(event: DeskEvent) -> None:
    with _feed_lock:
        _feed.append(event)


def emit(event_type: str, ticket_id: Optional[str] = None, **data: Any) -> None:
    """Record a desk event for the API's feed."""
    _append(DeskEvent(type=event_type, ticket_id=ticket_id, data=data))


def recent(limit: int = 100, ticket_id: Optional[str] = None) -> list[dict[str, Any]]:
    """Newest-last events, optionally only those of one ticket."""
    with _feed_lock:
        events = [e for e in _feed if ticket_id is None or e.ticket_id == ticket_id]
    return [asdict(e) for e in events[-limit:]]


def clear() -> None:
    with _feed_lock:
        _feed.clear()


def _listen_for_worker_events() -> None:
    try:
        import redis
        r = redis.from_url(REDIS_URL, decode_responses=True)
        pubsub = r.pubsub()
        pubsub.subscribe(FEED_CHANNEL)
        logger.info("Activity feed listening on %s", FEED_CHANNEL)
        for message in pubsub.listen():
            if message["type"] != "message":
                continue
            try:
                _append(DeskEvent.from_wire(message["data"]))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning("Dropping malformed worker event: %s", e)
    except Exception as e:
        logger.warning("Activity feed subscriber stopped: %s", e)


def start_redis_subscriber() -> None:
    """Daemon thread that appends the worker's events to this process's feed."""
    threading.Thread(target=_listen_for_worker_events, name="activity-feed", daemon=True).start()


def publish_event(event_type: str, ticket_id: Optional[str] = None, **data: Any) -> None:
    """Send a worker-side event to the API's feed. Failures are logged only."""
    event = DeskEvent(type=event_type, ticket_id=ticket_id, data=data, origin="worker")
    try:
        import redis
        r = redis.from_url(REDIS_URL, decode_responses=True)
        r.publish(FEED_CHANNEL, json.dumps(asdict(event)))
    except Exception as e:
        logger.warning("Publishing %s for ticket %s failed: %s", event_type, ticket_id, e)
