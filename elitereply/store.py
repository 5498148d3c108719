"""
Persistence contract for the support desk and its in-process implementation.

Every multi-record write the orchestration relies on (ticket + conversation + transition
message, appointment + partner mirror + counter, archive snapshot + marker + counters)
is a single call here, so each backend can make it atomic with its own primitive.
"""

import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Iterable, Optional

from elitereply.errors import StaleTicket
from elitereply.models import (
    Appointment,
    ArchiveRecord,
    Conversation,
    Message,
    Partner,
    PartnerReservation,
    Ticket,
    utcnow,
)

GLOBAL_TERMINATED_COUNTER = "global:terminated_tickets"


def agent_booking_counter(agent_id: str) -> str:
    return f"agent:{agent_id}:appointments_booked"


def agent_terminated_counter(agent_id: str) -> str:
    return f"agent:{agent_id}:terminated_tickets"


def new_id() -> str:
    return uuid.uuid4().hex


def check_version(ticket: Ticket, stored: Optional[Ticket]) -> None:
    """A write must carry exactly the stored version plus one (0 for a ticket not yet stored)."""
    found = stored.version if stored is not None else 0
    if ticket.version != found + 1:
        raise StaleTicket(ticket.id, ticket.version - 1, found)


def next_timestamp(last: Optional[datetime]) -> datetime:
    """Server timestamp strictly greater than the ticket's latest message."""
    now = utcnow()
    if last is not None and now <= last:
        return last + timedelta(microseconds=1)
    return now


class Store(ABC):
    """Storage contract. Returned models are copies; mutate them and write them back."""

    # --- tickets & conversations ---

    @abstractmethod
    def get_ticket(self, ticket_id: str) -> Optional[Ticket]: ...

    @abstractmethod
    def list_tickets(self) -> list[Ticket]: ...

    @abstractmethod
    def get_conversation(self, ticket_id: str) -> Optional[Conversation]: ...

    @abstractmethod
    def save_ticket(
        self,
        ticket: Ticket,
        conversation: Optional[Conversation] = None,
        message: Optional[Message] = None,
    ) -> Optional[Message]:
        """Atomically write the ticket, its conversation mirror and an optional message.

        Compare-and-set on `ticket.version` (see check_version): a stale ticket raises
        StaleTicket and nothing is written. Typing presence is never written through here.
        Returns the confirmed message.
        """

    # --- messages ---

    @abstractmethod
    def append_message(self, message: Message) -> Message:
        """Append a message; the store assigns its id and creation time."""

    @abstractmethod
    def list_messages(self, ticket_id: str) -> list[Message]:
        """Messages of a ticket, ascending by creation time."""

    # --- typing presence ---

    @abstractmethod
    def set_typing(self, ticket_id: str, user_id: str, display_name: str) -> None: ...

    @abstractmethod
    def clear_typing(self, ticket_id: str, user_id: Optional[str] = None) -> None:
        """Remove one actor's entry, or every entry when user_id is None."""

    @abstractmethod
    def get_typing(self, ticket_id: str) -> dict[str, str]: ...

    # --- partner directory ---

    @abstractmethod
    def list_partners(self) -> list[Partner]: ...

    @abstractmethod
    def get_partner(self, partner_id: str) -> Optional[Partner]: ...

    @abstractmethod
    def put_partner(self, partner: Partner) -> None: ...

    # --- appointments ---

    @abstractmethod
    def get_appointment(self, appointment_id: str) -> Optional[Appointment]: ...

    @abstractmethod
    def get_reservation(self, partner_id: str, appointment_id: str) -> Optional[PartnerReservation]: ...

    @abstractmethod
    def list_reservations(self, partner_id: str) -> list[PartnerReservation]: ...

    @abstractmethod
    def commit_booking(
        self,
        appointment: Appointment,
        previous_partner_id: Optional[str] = None,
        counter_key: Optional[str] = None,
    ) -> None:
        """Write the appointment and its partner mirror together.

        When previous_partner_id differs from the appointment's partner the old mirror is
        removed in the same operation. counter_key, if given, is incremented.
        """

    @abstractmethod
    def delete_appointment(self, appointment_id: str) -> Optional[Appointment]:
        """Delete the appointment and its partner mirror together. Returns the deleted record."""

    # --- counters ---

    @abstractmethod
    def incr_counter(self, key: str, amount: int = 1) -> int:
        """Atomic increment-or-initialize."""

    @abstractmethod
    def get_counter(self, key: str) -> int: ...

    # --- archive ---

    @abstractmethod
    def get_archive(self, ticket_id: str) -> Optional[ArchiveRecord]: ...

    @abstractmethod
    def write_archive(self, record: ArchiveRecord, counter_keys: Iterable[str] = ()) -> bool:
        """Write the snapshot and increment counters unless the ticket is already archived.

        Returns False (and writes nothing) when an archive for the ticket exists.
        """

    @abstractmethod
    def purge_live_chat(self, ticket_id: str) -> None:
        """Delete the live messages, conversation mirror and typing presence of a ticket."""


class MemoryStore(Store):
    """In-process store (single API process, tests). One lock guards every collection."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._tickets: dict[str, Ticket] = {}
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, list[Message]] = {}
        self._typing: dict[str, dict[str, str]] = {}
        self._partners: dict[str, Partner] = {}
        self._appointments: dict[str, Appointment] = {}
        self._reservations: dict[str, dict[str, PartnerReservation]] = {}
        self._counters: dict[str, int] = {}
        self._archives: dict[str, ArchiveRecord] = {}

    def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        with self._lock:
            t = self._tickets.get(ticket_id)
            return t.model_copy(deep=True) if t else None

    def list_tickets(self) -> list[Ticket]:
        with self._lock:
            tickets = [t.model_copy(deep=True) for t in self._tickets.values()]
        return sorted(tickets, key=lambda t: t.created_at)

    def get_conversation(self, ticket_id: str) -> Optional[Conversation]:
        with self._lock:
            c = self._conversations.get(ticket_id)
            if c is None:
                return None
            out = c.model_copy(deep=True)
            out.typing_users = dict(self._typing.get(ticket_id, {}))
            return out

    def save_ticket(
        self,
        ticket: Ticket,
        conversation: Optional[Conversation] = None,
        message: Optional[Message] = None,
    ) -> Optional[Message]:
        with self._lock:
            check_version(ticket, self._tickets.get(ticket.id))
            confirmed = self._confirm(message) if message is not None else None
            self._tickets[ticket.id] = ticket.model_copy(deep=True)
            if conversation is not None:
                self._conversations[ticket.id] = conversation.model_copy(
                    deep=True, update={"typing_users": {}}
                )
            if confirmed is not None:
                self._messages.setdefault(confirmed.ticket_id, []).append(confirmed)
            return confirmed.model_copy(deep=True) if confirmed else None

    def _confirm(self, message: Message) -> Message:
        existing = self._messages.get(message.ticket_id, [])
        last = existing[-1].created_at if existing else None
        return message.model_copy(
            deep=True,
            update={"id": new_id(), "created_at": next_timestamp(last), "optimistic": False},
        )

    def append_message(self, message: Message) -> Message:
        with self._lock:
            confirmed = self._confirm(message)
            self._messages.setdefault(confirmed.ticket_id, []).append(confirmed)
            return confirmed.model_copy(deep=True)

    def list_messages(self, ticket_id: str) -> list[Message]:
        with self._lock:
            return [m.model_copy(deep=True) for m in self._messages.get(ticket_id, [])]

    def set_typing(self, ticket_id: str, user_id: str, display_name: str) -> None:
        with self._lock:
            self._typing.setdefault(ticket_id, {})[user_id] = display_name

    def clear_typing(self, ticket_id: str, user_id: Optional[str] = None) -> None:
        with self._lock:
            if user_id is None:
                self._typing.pop(ticket_id, None)
            else:
                self._typing.get(ticket_id, {}).pop(user_id, None)

    def get_typing(self, ticket_id: str) -> dict[str, str]:
        with self._lock:
            return dict(self._typing.get(ticket_id, {}))

    def list_partners(self) -> list[Partner]:
        with self._lock:
            return [p.model_copy(deep=True) for p in self._partners.values()]

    def get_partner(self, partner_id: str) -> Optional[Partner]:
        with self._lock:
            p = self._partners.get(partner_id)
            return p.model_copy(deep=True) if p else None

    def put_partner(self, partner: Partner) -> None:
        with self._lock:
            self._partners[partner.id] = partner.model_copy(deep=True)

    def get_appointment(self, appointment_id: str) -> Optional[Appointment]:
        with self._lock:
            a = self._appointments.get(appointment_id)
            return a.model_copy(deep=True) if a else None

    def get_reservation(self, partner_id: str, appointment_id: str) -> Optional[PartnerReservation]:
        with self._lock:
            r = self._reservations.get(partner_id, {}).get(appointment_id)
            return r.model_copy(deep=True) if r else None

    def list_reservations(self, partner_id: str) -> list[PartnerReservation]:
        with self._lock:
            items = [r.model_copy(deep=True) for r in self._reservations.get(partner_id, {}).values()]
        return sorted(items, key=lambda r: r.scheduled_at)

    def commit_booking(
        self,
        appointment: Appointment,
        previous_partner_id: Optional[str] = None,
        counter_key: Optional[str] = None,
    ) -> None:
        # Build both documents before touching state so a failure leaves nothing behind.
        record = appointment.model_copy(deep=True)
        mirror = appointment.reservation()
        with self._lock:
            if previous_partner_id and previous_partner_id != appointment.partner_id:
                self._reservations.get(previous_partner_id, {}).pop(appointment.id, None)
            self._appointments[record.id] = record
            self._reservations.setdefault(record.partner_id, {})[record.id] = mirror
            if counter_key:
                self._counters[counter_key] = self._counters.get(counter_key, 0) + 1

    def delete_appointment(self, appointment_id: str) -> Optional[Appointment]:
        with self._lock:
            record = self._appointments.pop(appointment_id, None)
            if record is None:
                return None
            self._reservations.get(record.partner_id, {}).pop(appointment_id, None)
            return record

    def incr_counter(self, key: str, amount: int = 1) -> int:
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + amount
            return self._counters[key]

    def get_counter(self, key: str) -> int:
        with self._lock:
            return self._counters.get(key, 0)

    def get_archive(self, ticket_id: str) -> Optional[ArchiveRecord]:
        with self._lock:
            a = self._archives.get(ticket_id)
            return a.model_copy(deep=True) if a else None

    def write_archive(self, record: ArchiveRecord, counter_keys: Iterable[str] = ()) -> bool:
        keys = list(counter_keys)
        snapshot = record.model_copy(deep=True)
        with self._lock:
            if record.ticket_id in self._archives:
                return False
            self._archives[record.ticket_id] = snapshot
            for key in keys:
                self._counters[key] = self._counters.get(key, 0) + 1
            return True

    def purge_live_chat(self, ticket_id: str) -> None:
        with self._lock:
            self._messages.pop(ticket_id, None)
            self._conversations.pop(ticket_id, None)
            self._typing.pop(ticket_id, None)
