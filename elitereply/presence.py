"""
Typing presence: advisory per-ticket map of who is typing.

Entries live apart from the Conversation fields, so transitions never overwrite them. The
store holds no TTL; clients stop typing after TYPING_IDLE_SECONDS of inactivity and clear
their own entry.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from elitereply.config import TYPING_IDLE_SECONDS
from elitereply.errors import TicketNotFound
from elitereply.models import JEY_NAME, JEY_SENDER_ID, TYPING_STATUSES, Identity
from elitereply.store import Store

logger = logging.getLogger(__name__)

IDLE_TIMEOUT_SECONDS = TYPING_IDLE_SECONDS


class TypingPresence:
    def __init__(self, store: Store):
        self.store = store

    def can_type(self, ticket_id: str) -> bool:
        ticket = self.store.get_ticket(ticket_id)
        if ticket is None:
            raise TicketNotFound(ticket_id)
        return ticket.archived_at is None and ticket.status in TYPING_STATUSES

    def set_typing(self, ticket_id: str, actor: Identity, is_typing: bool) -> bool:
        """Set or clear the actor's entry. Returns whether the actor is now shown as typing.

        When the ticket no longer allows typing the actor's entry is cleared instead.
        """
        if is_typing and self.can_type(ticket_id):
            self.store.set_typing(ticket_id, actor.user_id, actor.name_or_default())
            return True
        if is_typing:
            logger.debug("Ticket %s no longer accepts typing; clearing %s.", ticket_id, actor.user_id)
        self.store.clear_typing(ticket_id, actor.user_id)
        return False

    def typing_users(self, ticket_id: str, exclude: Optional[str] = None) -> dict[str, str]:
        """Actors currently typing, optionally without the caller."""
        users = self.store.get_typing(ticket_id)
        if exclude:
            users.pop(exclude, None)
        return users

    @asynccontextmanager
    async def assistant_typing(self, ticket_id: str):
        """Show Jey as typing for the duration of a turn."""
        self.store.set_typing(ticket_id, JEY_SENDER_ID, JEY_NAME)
        try:
            yield
        finally:
            self.store.clear_typing(ticket_id, JEY_SENDER_ID)
