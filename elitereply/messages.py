"""
Chat timeline: confirmed appends and optimistic-entry reconciliation.

A sender shows its message immediately as an optimistic entry (local id), then the store
returns the confirmed copy (server id and timestamp). `reconcile` folds confirmed messages
into the local list without duplicate bubbles and always returns it sorted by time.
"""

import logging
import random
import time
from datetime import timedelta
from typing import Any, Iterable, Optional

from elitereply.config import RECONCILE_WINDOW_SECONDS
from elitereply.models import (
    JEY_NAME,
    JEY_SENDER_ID,
    SYSTEM_SENDER_ID,
    SYSTEM_SENDER_NAME,
    Message,
    MessageType,
    utcnow,
)
from elitereply.store import Store

logger = logging.getLogger(__name__)

OPTIMISTIC_PREFIX = "optimistic-"


def _sort_key(message: Message):
    return (message.created_at, message.id)


def _matches(local: Message, confirmed: Message, window: timedelta) -> bool:
    return (
        local.optimistic
        and local.sender_id == confirmed.sender_id
        and local.text == confirmed.text
        and local.type == confirmed.type
        and abs(local.created_at - confirmed.created_at) < window
    )


def reconcile(
    server_messages: Iterable[Message],
    pending_local: Iterable[Message],
    window_seconds: float = RECONCILE_WINDOW_SECONDS,
) -> list[Message]:
    """
    Merge confirmed messages into the local timeline.

    For each confirmed message: an entry with the same id is replaced; otherwise the first
    optimistic entry with equal (sender_id, text, type) created less than `window_seconds`
    apart is replaced in place; otherwise the message is appended. The result is sorted
    ascending by (created_at, id) regardless of arrival order.
    """
    window = timedelta(seconds=window_seconds)
    merged = list(pending_local)
    index_by_id = {m.id: i for i, m in enumerate(merged) if not m.optimistic}
    for confirmed in server_messages:
        if confirmed.id in index_by_id:
            merged[index_by_id[confirmed.id]] = confirmed
            continue
        slot = next((i for i, m in enumerate(merged) if _matches(m, confirmed, window)), None)
        if slot is None:
            merged.append(confirmed)
            slot = len(merged) - 1
        else:
            merged[slot] = confirmed
        index_by_id[confirmed.id] = slot
    return sorted(merged, key=_sort_key)


class ChatTimeline:
    """Client-side view of one ticket's chat (optimistic entries + confirmed entries)."""

    def __init__(self, ticket_id: str, messages: Iterable[Message] = ()):
        self.ticket_id = ticket_id
        self._messages: list[Message] = sorted(messages, key=_sort_key)

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    def add_optimistic(
        self,
        sender_id: str,
        sender_name: str,
        text: str,
        type: MessageType = MessageType.TEXT,
        data: Optional[dict[str, Any]] = None,
    ) -> Message:
        local_id = f"{OPTIMISTIC_PREFIX}{sender_id}-{int(time.time() * 1000)}-{random.random()}"
        message = Message(
            id=local_id,
            ticket_id=self.ticket_id,
            sender_id=sender_id,
            sender_name=sender_name,
            text=text,
            type=type,
            data=data or {},
            created_at=utcnow(),
            optimistic=True,
        )
        self._messages = sorted(self._messages + [message], key=_sort_key)
        return message

    def apply_confirmed(self, confirmed: Iterable[Message]) -> list[Message]:
        self._messages = reconcile(confirmed, self._messages)
        return self.messages

    def discard(self, local_id: str) -> None:
        """Drop an optimistic entry whose send failed."""
        self._messages = [m for m in self._messages if m.id != local_id]

    def pending(self) -> list[Message]:
        return [m for m in self._messages if m.optimistic]


def build_message(
    ticket_id: str,
    sender_id: str,
    sender_name: str,
    text: str,
    type: MessageType = MessageType.TEXT,
    data: Optional[dict[str, Any]] = None,
) -> Message:
    """Unconfirmed message; the store assigns id and timestamp on append."""
    return Message(
        id="",
        ticket_id=ticket_id,
        sender_id=sender_id,
        sender_name=sender_name,
        text=text,
        type=type,
        data=data or {},
    )


def system_message(ticket_id: str, text: str, data: Optional[dict[str, Any]] = None) -> Message:
    return build_message(ticket_id, SYSTEM_SENDER_ID, SYSTEM_SENDER_NAME, text, MessageType.SYSTEM, data)


def assistant_message(
    ticket_id: str,
    text: str,
    type: MessageType = MessageType.TEXT,
    data: Optional[dict[str, Any]] = None,
) -> Message:
    return build_message(ticket_id, JEY_SENDER_ID, JEY_NAME, text, type, data)


class MessageLog:
    """Append-only access to the confirmed messages of tickets."""

    def __init__(self, store: Store):
        self.store = store

    def append(self, message: Message) -> Message:
        confirmed = self.store.append_message(message)
        logger.debug("Message %s appended to ticket %s (%s).", confirmed.id, confirmed.ticket_id, confirmed.type.value)
        return confirmed

    def history(self, ticket_id: str) -> list[Message]:
        return sorted(self.store.list_messages(ticket_id), key=_sort_key)

    def tail(self, ticket_id: str) -> Optional[Message]:
        messages = self.history(ticket_id)
        return messages[-1] if messages else None
