"""
Ticket state machine: the only writer of ticket status and assignment fields.

Every transition validates against the latest stored ticket, then writes the ticket, its
Conversation mirror and a system message describing the move in one store call. Rejected
moves raise InvalidTransition before anything is written.

    new -> assistant-handling -> (agent requested | escalated) -> in-progress -> terminated

Writes are compare-and-set on the ticket version, so a writer in another process (API vs
worker) cannot overwrite a newer ticket. On conflict the operation is re-run against the
fresh ticket and re-validated.
"""

import functools
import logging
from typing import Optional

from elitereply.errors import InvalidTransition, StaleTicket, TicketNotFound
from elitereply.messages import build_message, system_message
from elitereply.models import (
    JEY_NAME,
    AppointmentSummary,
    Conversation,
    Identity,
    Message,
    MessageType,
    TerminatedBy,
    Ticket,
    TicketStatus,
    utcnow,
)
from elitereply.store import Store, new_id
from elitereply.text_norm import truncate

logger = logging.getLogger(__name__)

ESCALATION_TEXT = "Votre demande a été escaladée à un agent humain. Un agent prendra le relais sous peu."
PREVIEW_LENGTH = 100
CONFLICT_RETRIES = 3

_PREVIEWS = {
    MessageType.IMAGE: "[Image]",
    MessageType.PARTNER_SUGGESTION_LIST: "[Suggestions de partenaires]",
    MessageType.APPOINTMENT_FORM_TRIGGER: "[Formulaire de rendez-vous]",
}


def check_invariants(ticket: Ticket) -> list[str]:
    """Return the invariant violations of a ticket (empty when consistent)."""
    problems = []
    if ticket.status == TicketStatus.IN_PROGRESS and ticket.assigned_agent_id is None:
        problems.append("in-progress ticket without an assigned agent")
    if ticket.assigned_agent_id is not None and ticket.status == TicketStatus.NEW:
        problems.append("new ticket with an assigned agent")
    if ticket.pending_human_closure and ticket.status != TicketStatus.TERMINATED:
        problems.append("pending human closure on a live ticket")
    return problems


def retry_on_conflict(method):
    """Re-run a read-modify-write on the latest ticket when a concurrent writer got there first."""

    @functools.wraps(method)
    def wrapper(self, ticket_id: str, *args, **kwargs):
        for attempt in range(1, CONFLICT_RETRIES + 1):
            try:
                return method(self, ticket_id, *args, **kwargs)
            except StaleTicket as e:
                if attempt == CONFLICT_RETRIES:
                    raise
                logger.info("Ticket %s changed concurrently during %s (%s); retrying.", ticket_id, method.__name__, e.reason)

    return wrapper


def preview(message: Message) -> str:
    if message.type in _PREVIEWS and not message.text:
        return _PREVIEWS[message.type]
    return truncate(message.text or _PREVIEWS.get(message.type, ""), PREVIEW_LENGTH)


class TicketStateMachine:
    """Transitions and field updates of tickets, backed by a Store."""

    def __init__(self, store: Store):
        self.store = store

    # --- helpers ---

    def get(self, ticket_id: str) -> Ticket:
        ticket = self.store.get_ticket(ticket_id)
        if ticket is None:
            raise TicketNotFound(ticket_id)
        return ticket

    def _mirror(self, ticket: Ticket) -> Conversation:
        """Conversation mirror consistent with the ticket's status and assignment."""
        existing = self.store.get_conversation(ticket.id)
        participants = list(existing.participants) if existing else []
        names = list(existing.participant_names) if existing else []
        for user_id, name in (
            (ticket.client_id, ticket.client_name),
            (ticket.assigned_agent_id, ticket.assigned_agent_name),
        ):
            if user_id and user_id not in participants:
                participants.append(user_id)
                names.append(name or "")
        return Conversation(
            ticket_id=ticket.id,
            status=ticket.status,
            category=ticket.category,
            assigned_agent_id=ticket.assigned_agent_id,
            assigned_agent_name=ticket.assigned_agent_name,
            is_agent_requested=ticket.is_agent_requested,
            participants=participants,
            participant_names=names,
            last_message=ticket.last_message,
            last_message_sender=ticket.last_message_sender,
            last_updated=ticket.last_updated,
        )

    def _write(
        self,
        ticket: Ticket,
        conversation: Optional[Conversation] = None,
        message: Optional[Message] = None,
    ) -> Optional[Message]:
        ticket.version += 1
        return self.store.save_ticket(ticket, conversation, message)

    def _commit(self, ticket: Ticket, text: Optional[str] = None, data: Optional[dict] = None) -> Ticket:
        problems = check_invariants(ticket)
        if problems:
            raise InvalidTransition(ticket.id, "commit", "; ".join(problems))
        ticket.last_updated = utcnow()
        if ticket.archived_at is not None:
            # Live chat is gone: only the ticket record is updated.
            self._write(ticket)
            return ticket
        message = system_message(ticket.id, text, data) if text else None
        if message is not None:
            ticket.last_message = preview(message)
            ticket.last_message_sender = message.sender_name
        self._write(ticket, self._mirror(ticket), message)
        return ticket

    def _save_fields(self, ticket: Ticket) -> Ticket:
        ticket.last_updated = utcnow()
        self._write(ticket)
        return ticket

    # --- transitions ---

    def create(
        self,
        client: Identity,
        first_message: str,
        category: Optional[str] = None,
        client_phone: Optional[str] = None,
    ) -> tuple[Ticket, Message]:
        """Open a ticket handled by Jey, with its mirror and the client's first message."""
        ticket = Ticket(
            id=new_id(),
            status=TicketStatus.ASSISTANT_HANDLING,
            category=category or None,
            client_id=client.user_id,
            client_name=client.name_or_default(),
            client_phone=client_phone,
        )
        message = build_message(ticket.id, client.user_id, ticket.client_name, first_message)
        ticket.last_message = preview(message)
        ticket.last_message_sender = ticket.client_name
        confirmed = self._write(ticket, self._mirror(ticket), message)
        logger.info("Ticket %s created by %s (category=%s).", ticket.id, client.user_id, category)
        return ticket, confirmed

    @retry_on_conflict
    def request_agent(self, ticket_id: str, actor: Optional[Identity] = None) -> Ticket:
        """Flag that the client wants a human. Status stays put; escalation is separate."""
        ticket = self.get(ticket_id)
        if ticket.status in (TicketStatus.IN_PROGRESS, TicketStatus.TERMINATED):
            raise InvalidTransition(ticket_id, "request an agent for", f"ticket is {ticket.status.value}")
        if ticket.is_agent_requested or ticket.status == TicketStatus.ESCALATED:
            return ticket
        ticket.is_agent_requested = True
        name = actor.name_or_default() if actor else ticket.client_name
        logger.info("Agent requested on ticket %s.", ticket_id)
        return self._commit(ticket, f"{name} a demandé à parler à un agent.")

    @retry_on_conflict
    def escalate(self, ticket_id: str, reason: str, text: str = ESCALATION_TEXT) -> Ticket:
        """Hand the ticket from Jey to the human queue. Escalation supersedes a plain request."""
        ticket = self.get(ticket_id)
        if ticket.status == TicketStatus.ESCALATED:
            return ticket
        if ticket.status != TicketStatus.ASSISTANT_HANDLING:
            raise InvalidTransition(ticket_id, "escalate", f"ticket is {ticket.status.value}")
        ticket.status = TicketStatus.ESCALATED
        ticket.escalation_reason = reason
        ticket.is_agent_requested = True
        ticket.jey_asked_to_terminate = False
        logger.info("Ticket %s escalated (reason=%s).", ticket_id, reason)
        return self._commit(ticket, text, {"reason": reason})

    @retry_on_conflict
    def assign(self, ticket_id: str, agent_id: str, agent_name: str) -> Ticket:
        ticket = self.get(ticket_id)
        if ticket.assigned_agent_id is not None:
            if ticket.assigned_agent_id == agent_id and ticket.status == TicketStatus.IN_PROGRESS:
                return ticket
            raise InvalidTransition(
                ticket_id, "assign", f"already assigned to {ticket.assigned_agent_name or ticket.assigned_agent_id}"
            )
        if ticket.status == TicketStatus.TERMINATED:
            raise InvalidTransition(ticket_id, "assign", "ticket is terminated")
        if ticket.status == TicketStatus.ASSISTANT_HANDLING and not ticket.is_agent_requested:
            raise InvalidTransition(ticket_id, "assign", "Jey is handling it and no agent was requested")
        ticket.status = TicketStatus.IN_PROGRESS
        ticket.assigned_agent_id = agent_id
        ticket.assigned_agent_name = agent_name
        ticket.is_agent_requested = False
        ticket.jey_asked_to_terminate = False
        logger.info("Ticket %s assigned to agent %s.", ticket_id, agent_id)
        return self._commit(ticket, f"{agent_name} a pris le relais de cette conversation.", {"agent_id": agent_id})

    @retry_on_conflict
    def terminate(
        self,
        ticket_id: str,
        by: TerminatedBy,
        actor_id: Optional[str] = None,
        actor_name: Optional[str] = None,
    ) -> Ticket:
        ticket = self.get(ticket_id)
        if ticket.is_terminated:
            raise InvalidTransition(ticket_id, "terminate", "ticket is already terminated")
        now = utcnow()
        ticket.status = TicketStatus.TERMINATED
        ticket.terminated_at = now
        ticket.terminated_by = by
        ticket.terminated_by_id = actor_id
        ticket.terminated_by_name = actor_name or (JEY_NAME if by == TerminatedBy.ASSISTANT else None)
        ticket.jey_asked_to_terminate = False
        ticket.is_agent_requested = False
        if by == TerminatedBy.AGENT:
            ticket.pending_human_closure = False
            ticket.closed_by_agent_id = actor_id
            ticket.closed_by_agent_name = actor_name
            ticket.closed_at = now
            text = f"Conversation terminée par l'agent {actor_name or actor_id}."
        else:
            ticket.pending_human_closure = True
            text = f"Conversation terminée par {ticket.terminated_by_name or 'le client'}."
        self.store.clear_typing(ticket_id)
        logger.info("Ticket %s terminated by %s (%s).", ticket_id, by.value, actor_id)
        return self._commit(ticket, text, {"terminated_by": by.value})

    @retry_on_conflict
    def close_manually(self, ticket_id: str, agent_id: str, agent_name: str) -> Ticket:
        """Close a ticket that Jey or the client terminated. Rejected once a human has closed it."""
        ticket = self.get(ticket_id)
        if not ticket.is_terminated:
            raise InvalidTransition(ticket_id, "close", "ticket is not terminated")
        if not ticket.pending_human_closure:
            raise InvalidTransition(
                ticket_id, "close", f"already closed by {ticket.closed_by_agent_name or ticket.closed_by_agent_id}"
            )
        ticket.pending_human_closure = False
        ticket.closed_by_agent_id = agent_id
        ticket.closed_by_agent_name = agent_name
        ticket.closed_at = utcnow()
        logger.info("Ticket %s closed by agent %s.", ticket_id, agent_id)
        return self._commit(ticket, f"Ticket clôturé par {agent_name}.", {"agent_id": agent_id})

    # --- field updates (no status change) ---

    @retry_on_conflict
    def record_message(self, ticket_id: str, message: Message) -> Message:
        """Append a chat message and refresh the last-message preview of ticket and mirror."""
        ticket = self.get(ticket_id)
        if ticket.archived_at is not None:
            raise InvalidTransition(ticket_id, "post to", "ticket is archived")
        if ticket.is_terminated:
            raise InvalidTransition(ticket_id, "post to", "ticket is terminated")
        ticket.last_message = preview(message)
        ticket.last_message_sender = message.sender_name
        ticket.last_updated = utcnow()
        return self._write(ticket, self._mirror(ticket), message)

    @retry_on_conflict
    def ask_termination_confirmation(self, ticket_id: str) -> Ticket:
        ticket = self.get(ticket_id)
        ticket.jey_asked_to_terminate = True
        return self._save_fields(ticket)

    @retry_on_conflict
    def clear_termination_request(self, ticket_id: str) -> Ticket:
        ticket = self.get(ticket_id)
        if not ticket.jey_asked_to_terminate:
            return ticket
        ticket.jey_asked_to_terminate = False
        return self._save_fields(ticket)

    @retry_on_conflict
    def mark_responded(self, ticket_id: str, message_id: str) -> Ticket:
        ticket = self.get(ticket_id)
        ticket.jey_last_responded_message_id = message_id
        return self._save_fields(ticket)

    @retry_on_conflict
    def attach_appointment(self, ticket_id: str, summary: AppointmentSummary) -> Ticket:
        ticket = self.get(ticket_id)
        others = [a for a in ticket.appointments if a.appointment_id != summary.appointment_id]
        ticket.appointments = others + [summary]
        return self._save_fields(ticket)

    @retry_on_conflict
    def detach_appointment(self, ticket_id: str, appointment_id: str) -> Ticket:
        ticket = self.get(ticket_id)
        ticket.appointments = [a for a in ticket.appointments if a.appointment_id != appointment_id]
        return self._save_fields(ticket)

    @retry_on_conflict
    def mark_archived(self, ticket_id: str) -> Ticket:
        ticket = self.get(ticket_id)
        if ticket.archived_at is None:
            ticket.archived_at = utcnow()
            self._save_fields(ticket)
        return ticket
