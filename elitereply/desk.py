"""
Support desk facade: every actor action goes through here.

Transitions on one ticket are serialized by a per-ticket asyncio lock, and Jey turns by a
second per-ticket lock, so a ticket can still be terminated while a turn waits on the
completion service (the late reply is then discarded by the orchestrator).
"""

import asyncio
import logging
from typing import Optional

from elitereply import activity
from elitereply.archival import ArchivalService
from elitereply.assistant.completion import CompletionService, OpenAICompletionService
from elitereply.assistant.orchestrator import JeyOrchestrator
from elitereply.booking import BookingService
from elitereply.config import SEED_DEMO_PARTNERS, STORE_BACKEND
from elitereply.errors import InvalidTransition
from elitereply.messages import MessageLog, build_message
from elitereply.models import (
    ACTOR_MESSAGE_TYPES,
    AgentStats,
    Appointment,
    ArchiveRecord,
    BookingRequest,
    Identity,
    Message,
    MessageCreate,
    MessageType,
    Partner,
    PartnerReservation,
    TerminatedBy,
    Ticket,
    TicketCreate,
    TicketStatus,
)
from elitereply.notifications import (
    MESSAGE_SENT,
    TICKET_ASSIGNED,
    TICKET_CREATED,
    NotificationDispatcher,
)
from elitereply.presence import TypingPresence
from elitereply.ranking import PartnerSuggestion, suggest_partners
from elitereply.store import MemoryStore, Store, agent_booking_counter, agent_terminated_counter
from elitereply.ticket_machine import TicketStateMachine

logger = logging.getLogger(__name__)

# Demo partner directory (used at startup when the directory is empty)
DEMO_PARTNERS = [
    Partner(id="voyage-express", name="Voyage Express", category="Voyage", rating=4.5, promoted=True),
    Partner(id="auto-plus", name="Auto Plus", category="Automobile", rating=4.0),
    Partner(id="delice-gourmand", name="Délice Gourmand", category="Restaurant", rating=4.7),
    Partner(id="bien-etre-sante", name="Bien-Être Santé", category="Santé", rating=4.2, promoted=True),
]


class TicketLocks:
    """Per-ticket asyncio locks (one for transitions, one for assistant turns)."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def _get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def ticket(self, ticket_id: str) -> asyncio.Lock:
        return self._get(f"ticket:{ticket_id}")

    def turn(self, ticket_id: str) -> asyncio.Lock:
        return self._get(f"turn:{ticket_id}")

    def discard(self, ticket_id: str) -> None:
        for key in (f"ticket:{ticket_id}", f"turn:{ticket_id}"):
            lock = self._locks.get(key)
            if lock is not None and not lock.locked():
                del self._locks[key]


def _require_agent(actor: Identity, ticket_id: str, action: str) -> None:
    if not actor.is_agent:
        raise InvalidTransition(ticket_id, action, "only agents may do this")


class SupportDesk:
    def __init__(
        self,
        store: Store,
        completion: CompletionService,
        notifier: Optional[NotificationDispatcher] = None,
    ):
        self.store = store
        self.notifier = notifier or NotificationDispatcher()
        self.machine = TicketStateMachine(store)
        self.presence = TypingPresence(store)
        self.archival = ArchivalService(store, self.machine)
        self.booking = BookingService(store, self.machine, self.notifier)
        self.jey = JeyOrchestrator(
            store,
            self.machine,
            completion,
            archival=self.archival,
            presence=self.presence,
            notifier=self.notifier,
        )
        self.log = MessageLog(store)
        self.locks = TicketLocks()

    # --- reads ---

    def get_ticket(self, ticket_id: str) -> Ticket:
        return self.machine.get(ticket_id)

    def list_tickets(self, status: Optional[TicketStatus] = None, agent_queue: bool = False) -> list[Ticket]:
        """All tickets, or the agents' active queue (live + pending human closure)."""
        tickets = self.store.list_tickets()
        if status is not None:
            tickets = [t for t in tickets if t.status == status]
        if agent_queue:
            tickets = [t for t in tickets if t.in_agent_queue and t.closed_by_agent_id is None]
        return tickets

    def messages(self, ticket_id: str) -> list[Message]:
        self.machine.get(ticket_id)
        return self.log.history(ticket_id)

    def partners(self) -> list[Partner]:
        return sorted(self.store.list_partners(), key=lambda p: p.name)

    def suggest(self, category: Optional[str] = None, text: str = "") -> PartnerSuggestion:
        return suggest_partners(self.store.list_partners(), category=category, text=text, all_categories=not category)

    def reservations(self, partner_id: str) -> list[PartnerReservation]:
        return self.store.list_reservations(partner_id)

    def agent_stats(self, agent_id: str) -> AgentStats:
        return AgentStats(
            agent_id=agent_id,
            appointments_booked=self.store.get_counter(agent_booking_counter(agent_id)),
            terminated_tickets=self.store.get_counter(agent_terminated_counter(agent_id)),
        )

    # --- chat ---

    async def open_ticket(self, client: Identity, payload: TicketCreate) -> tuple[Ticket, Message]:
        ticket, first = self.machine.create(client, payload.message, payload.category, payload.client_phone)
        self.notifier.fire(TICKET_CREATED, {"ticket_id": ticket.id, "client_id": client.user_id, "category": ticket.category})
        activity.emit("ticket_created", ticket.id, category=ticket.category)
        return ticket, first

    async def post_message(self, ticket_id: str, actor: Identity, payload: MessageCreate) -> Message:
        if payload.type not in ACTOR_MESSAGE_TYPES:
            raise InvalidTransition(ticket_id, "post to", f"{payload.type.value} messages come from system actions")
        if payload.type == MessageType.COMMAND_TO_ASSISTANT:
            _require_agent(actor, ticket_id, "command Jey on")
        async with self.locks.ticket(ticket_id):
            message = build_message(
                ticket_id, actor.user_id, actor.name_or_default(), payload.text, payload.type, payload.data
            )
            confirmed = self.machine.record_message(ticket_id, message)
            self.store.clear_typing(ticket_id, actor.user_id)
        self.notifier.fire(MESSAGE_SENT, {
            "ticket_id": ticket_id,
            "message_id": confirmed.id,
            "sender_id": actor.user_id,
            "type": confirmed.type.value,
        })
        return confirmed

    def needs_assistant_turn(self, ticket_id: str, message: Message) -> bool:
        """Whether Jey should answer this freshly posted message."""
        ticket = self.machine.get(ticket_id)
        if message.type == MessageType.COMMAND_TO_ASSISTANT:
            return not ticket.is_terminated
        return ticket.status == TicketStatus.ASSISTANT_HANDLING and message.sender_id == ticket.client_id

    async def run_assistant_turn(self, ticket_id: str, message_id: Optional[str] = None) -> Optional[Message]:
        async with self.locks.turn(ticket_id):
            return await self.jey.respond(ticket_id, message_id)

    def set_typing(self, ticket_id: str, actor: Identity, is_typing: bool) -> dict[str, str]:
        self.presence.set_typing(ticket_id, actor, is_typing)
        return self.presence.typing_users(ticket_id, exclude=actor.user_id)

    # --- transitions ---

    async def request_agent(self, ticket_id: str, actor: Identity) -> Ticket:
        async with self.locks.ticket(ticket_id):
            return self.machine.request_agent(ticket_id, actor)

    async def assign(self, ticket_id: str, agent: Identity, agent_name: Optional[str] = None) -> Ticket:
        _require_agent(agent, ticket_id, "assign")
        async with self.locks.ticket(ticket_id):
            ticket = self.machine.assign(ticket_id, agent.user_id, agent_name or agent.name_or_default())
        self.notifier.fire(TICKET_ASSIGNED, {"ticket_id": ticket_id, "agent_id": agent.user_id})
        activity.emit("ticket_assigned", ticket_id, agent_id=agent.user_id)
        return ticket

    async def terminate(self, ticket_id: str, actor: Identity) -> tuple[Ticket, ArchiveRecord]:
        """Terminate, then archive. ArchivalTransactionFailed leaves the termination in place."""
        by = TerminatedBy.AGENT if actor.is_agent else TerminatedBy.CLIENT
        async with self.locks.ticket(ticket_id):
            ticket = self.machine.terminate(ticket_id, by, actor.user_id, actor.name_or_default())
            activity.emit("ticket_terminated", ticket_id, by=by.value)
            record = self.archival.archive(ticket_id)
        self.locks.discard(ticket_id)
        return self.machine.get(ticket_id), record

    async def close(self, ticket_id: str, agent: Identity) -> Ticket:
        _require_agent(agent, ticket_id, "close")
        async with self.locks.ticket(ticket_id):
            ticket = self.machine.close_manually(ticket_id, agent.user_id, agent.name_or_default())
        activity.emit("ticket_closed", ticket_id, agent_id=agent.user_id)
        return ticket

    async def archive(self, ticket_id: str) -> ArchiveRecord:
        async with self.locks.ticket(ticket_id):
            return self.archival.archive(ticket_id)

    # --- appointments ---

    async def book(self, request: BookingRequest, actor: Identity) -> Appointment:
        return self.booking.book(request, actor)

    async def edit_booking(self, appointment_id: str, request: BookingRequest, actor: Identity) -> Appointment:
        return self.booking.book(request, actor, appointment_id)

    async def cancel_booking(self, appointment_id: str) -> Appointment:
        return self.booking.cancel(appointment_id)

    async def delete_booking(self, appointment_id: str) -> Appointment:
        return self.booking.delete(appointment_id)


def seed_demo_partners(store: Store) -> int:
    """Put the demo partners in an empty directory. Returns how many were added."""
    if store.list_partners():
        return 0
    for partner in DEMO_PARTNERS:
        store.put_partner(partner)
    logger.info("Seeded %d demo partners.", len(DEMO_PARTNERS))
    return len(DEMO_PARTNERS)


def build_store(backend: str = STORE_BACKEND) -> Store:
    if backend == "redis":
        from elitereply.redis_store import RedisStore
        return RedisStore()
    return MemoryStore()


def build_desk(
    store: Optional[Store] = None,
    completion: Optional[CompletionService] = None,
    notifier: Optional[NotificationDispatcher] = None,
    seed: bool = SEED_DEMO_PARTNERS,
) -> SupportDesk:
    store = store or build_store()
    if seed:
        seed_demo_partners(store)
    return SupportDesk(store, completion or OpenAICompletionService(), notifier)
