"""Test doubles shared by the unit tests (no server, no Redis, no API key)."""

from typing import Optional

from elitereply.assistant.completion import CompletionService
from elitereply.desk import DEMO_PARTNERS, SupportDesk
from elitereply.errors import AssistantServiceUnavailable
from elitereply.models import ActorRole, Identity, Partner
from elitereply.notifications import RecordingDispatcher
from elitereply.store import MemoryStore

CLIENT = Identity(user_id="client-1", display_name="Awa", role=ActorRole.CLIENT)
AGENT = Identity(user_id="agent-1", display_name="Marc", role=ActorRole.AGENT)
OTHER_AGENT = Identity(user_id="agent-2", display_name="Lina", role=ActorRole.AGENT)


class ScriptedCompletion(CompletionService):
    """Returns queued replies in order; raises AssistantServiceUnavailable when told to."""

    def __init__(self, replies: Optional[list[str]] = None, fail: bool = False):
        self.replies = list(replies or [])
        self.fail = fail
        self.calls: list[tuple[str, list[dict[str, str]]]] = []

    async def complete(self, system_prompt: str, history: list[dict[str, str]]) -> str:
        self.calls.append((system_prompt, history))
        if self.fail:
            raise AssistantServiceUnavailable("scripted outage")
        if not self.replies:
            return "Je peux vous aider avec cela."
        return self.replies.pop(0)


class FailingBookingStore(MemoryStore):
    """MemoryStore whose booking commit always fails."""

    def commit_booking(self, appointment, previous_partner_id=None, counter_key=None):
        raise ConnectionError("store offline")


class FailingArchiveStore(MemoryStore):
    """MemoryStore whose archive snapshot fails until `fail_archive` is reset."""

    def __init__(self):
        super().__init__()
        self.fail_archive = True

    def write_archive(self, record, counter_keys=()):
        if self.fail_archive:
            raise ConnectionError("archive offline")
        return super().write_archive(record, counter_keys)


class InterleavingStore(MemoryStore):
    """MemoryStore that lets another writer act right after a chosen ticket read.

    after_read(callback, skip=n) runs callback once, after the (n+1)-th get_ticket call; the
    caller of that read still receives the ticket as it was before the callback ran.
    """

    def __init__(self):
        super().__init__()
        self._pending = None

    def after_read(self, callback, skip=0):
        self._pending = [skip, callback]

    def get_ticket(self, ticket_id):
        ticket = super().get_ticket(ticket_id)
        if self._pending is not None:
            if self._pending[0] > 0:
                self._pending[0] -= 1
            else:
                callback, self._pending = self._pending[1], None
                callback()
        return ticket


def make_desk(
    completion: Optional[CompletionService] = None,
    store: Optional[MemoryStore] = None,
    partners: Optional[list[Partner]] = None,
) -> SupportDesk:
    store = store if store is not None else MemoryStore()
    for partner in DEMO_PARTNERS if partners is None else partners:
        store.put_partner(partner)
    return SupportDesk(store, completion or ScriptedCompletion(), RecordingDispatcher())
