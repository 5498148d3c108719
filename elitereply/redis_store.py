"""
Redis-backed store (shared by the API and the ARQ worker).

Documents are pydantic JSON. Messages live in a sorted set scored by integer microseconds
plus a hash of bodies. Multi-record writes run in MULTI/EXEC; check-then-write paths WATCH
the keys they read (redis-py `transaction`); ticket writes compare the stored version.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from elitereply.config import REDIS_URL
from elitereply.models import (
    Appointment,
    ArchiveRecord,
    Conversation,
    Message,
    Partner,
    PartnerReservation,
    Ticket,
)
from elitereply.store import Store, check_version, new_id, next_timestamp

logger = logging.getLogger(__name__)

TICKETS_SET = "tickets:all"
PARTNERS_SET = "partners:all"
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _ticket_key(ticket_id: str) -> str:
    return f"ticket:{ticket_id}"


def _conversation_key(ticket_id: str) -> str:
    return f"conversation:{ticket_id}"


def _typing_key(ticket_id: str) -> str:
    return f"conversation_typing:{ticket_id}"


def _messages_key(ticket_id: str) -> str:
    return f"messages:{ticket_id}"


def _message_bodies_key(ticket_id: str) -> str:
    return f"message_bodies:{ticket_id}"


def _partner_key(partner_id: str) -> str:
    return f"partner:{partner_id}"


def _appointment_key(appointment_id: str) -> str:
    return f"appointment:{appointment_id}"


def _reservations_key(partner_id: str) -> str:
    return f"partner_reservations:{partner_id}"


def _counter_key(key: str) -> str:
    return f"counter:{key}"


def _archive_key(ticket_id: str) -> str:
    return f"archive:{ticket_id}"


def _to_score(dt: datetime) -> int:
    return (dt - _EPOCH) // timedelta(microseconds=1)


def _from_score(score: float) -> datetime:
    return _EPOCH + timedelta(microseconds=int(score))


class RedisStore(Store):
    def __init__(self, url: str = REDIS_URL, client=None) -> None:
        if client is None:
            import redis
            client = redis.from_url(url, decode_responses=True)
        self._r = client

    # --- tickets & conversations ---

    def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        raw = self._r.get(_ticket_key(ticket_id))
        return Ticket.model_validate_json(raw) if raw else None

    def list_tickets(self) -> list[Ticket]:
        ids = sorted(self._r.smembers(TICKETS_SET))
        if not ids:
            return []
        raws = self._r.mget([_ticket_key(i) for i in ids])
        tickets = [Ticket.model_validate_json(raw) for raw in raws if raw]
        return sorted(tickets, key=lambda t: t.created_at)

    def get_conversation(self, ticket_id: str) -> Optional[Conversation]:
        raw = self._r.get(_conversation_key(ticket_id))
        if not raw:
            return None
        conversation = Conversation.model_validate_json(raw)
        conversation.typing_users = self.get_typing(ticket_id)
        return conversation

    def _last_timestamp(self, pipe, ticket_id: str) -> Optional[datetime]:
        tail = pipe.zrange(_messages_key(ticket_id), -1, -1, withscores=True)
        if not tail:
            return None
        _member, score = tail[0]
        return _from_score(score)

    def _confirm(self, pipe, message: Message) -> Message:
        last = self._last_timestamp(pipe, message.ticket_id)
        return message.model_copy(
            deep=True,
            update={"id": new_id(), "created_at": next_timestamp(last), "optimistic": False},
        )

    @staticmethod
    def _queue_message(pipe, message: Message) -> None:
        pipe.zadd(_messages_key(message.ticket_id), {message.id: _to_score(message.created_at)})
        pipe.hset(_message_bodies_key(message.ticket_id), message.id, message.model_dump_json())

    def save_ticket(
        self,
        ticket: Ticket,
        conversation: Optional[Conversation] = None,
        message: Optional[Message] = None,
    ) -> Optional[Message]:
        def _write(pipe) -> Optional[Message]:
            raw = pipe.get(_ticket_key(ticket.id))
            check_version(ticket, Ticket.model_validate_json(raw) if raw else None)
            confirmed = self._confirm(pipe, message) if message is not None else None
            pipe.multi()
            pipe.set(_ticket_key(ticket.id), ticket.model_dump_json())
            pipe.sadd(TICKETS_SET, ticket.id)
            if conversation is not None:
                pipe.set(
                    _conversation_key(ticket.id),
                    conversation.model_dump_json(exclude={"typing_users"}),
                )
            if confirmed is not None:
                self._queue_message(pipe, confirmed)
            return confirmed

        return self._r.transaction(
            _write, _ticket_key(ticket.id), _messages_key(ticket.id), value_from_callable=True
        )

    # --- messages ---

    def append_message(self, message: Message) -> Message:
        def _write(pipe) -> Message:
            confirmed = self._confirm(pipe, message)
            pipe.multi()
            self._queue_message(pipe, confirmed)
            return confirmed

        return self._r.transaction(_write, _messages_key(message.ticket_id), value_from_callable=True)

    def list_messages(self, ticket_id: str) -> list[Message]:
        ids = self._r.zrange(_messages_key(ticket_id), 0, -1)
        if not ids:
            return []
        bodies = self._r.hmget(_message_bodies_key(ticket_id), ids)
        return [Message.model_validate_json(b) for b in bodies if b]

    # --- typing presence ---

    def set_typing(self, ticket_id: str, user_id: str, display_name: str) -> None:
        self._r.hset(_typing_key(ticket_id), user_id, display_name)

    def clear_typing(self, ticket_id: str, user_id: Optional[str] = None) -> None:
        if user_id is None:
            self._r.delete(_typing_key(ticket_id))
        else:
            self._r.hdel(_typing_key(ticket_id), user_id)

    def get_typing(self, ticket_id: str) -> dict[str, str]:
        return dict(self._r.hgetall(_typing_key(ticket_id)))

    # --- partner directory ---

    def list_partners(self) -> list[Partner]:
        ids = sorted(self._r.smembers(PARTNERS_SET))
        if not ids:
            return []
        raws = self._r.mget([_partner_key(i) for i in ids])
        return [Partner.model_validate_json(raw) for raw in raws if raw]

    def get_partner(self, partner_id: str) -> Optional[Partner]:
        raw = self._r.get(_partner_key(partner_id))
        return Partner.model_validate_json(raw) if raw else None

    def put_partner(self, partner: Partner) -> None:
        pipe = self._r.pipeline()
        pipe.set(_partner_key(partner.id), partner.model_dump_json())
        pipe.sadd(PARTNERS_SET, partner.id)
        pipe.execute()

    # --- appointments ---

    def get_appointment(self, appointment_id: str) -> Optional[Appointment]:
        raw = self._r.get(_appointment_key(appointment_id))
        return Appointment.model_validate_json(raw) if raw else None

    def get_reservation(self, partner_id: str, appointment_id: str) -> Optional[PartnerReservation]:
        raw = self._r.hget(_reservations_key(partner_id), appointment_id)
        return PartnerReservation.model_validate_json(raw) if raw else None

    def list_reservations(self, partner_id: str) -> list[PartnerReservation]:
        raws = self._r.hvals(_reservations_key(partner_id))
        items = [PartnerReservation.model_validate_json(raw) for raw in raws]
        return sorted(items, key=lambda r: r.scheduled_at)

    def commit_booking(
        self,
        appointment: Appointment,
        previous_partner_id: Optional[str] = None,
        counter_key: Optional[str] = None,
    ) -> None:
        record_json = appointment.model_dump_json()
        mirror_json = appointment.reservation().model_dump_json()
        pipe = self._r.pipeline(transaction=True)
        if previous_partner_id and previous_partner_id != appointment.partner_id:
            pipe.hdel(_reservations_key(previous_partner_id), appointment.id)
        pipe.set(_appointment_key(appointment.id), record_json)
        pipe.hset(_reservations_key(appointment.partner_id), appointment.id, mirror_json)
        if counter_key:
            pipe.incr(_counter_key(counter_key))
        pipe.execute()

    def delete_appointment(self, appointment_id: str) -> Optional[Appointment]:
        key = _appointment_key(appointment_id)

        def _delete(pipe) -> Optional[Appointment]:
            raw = pipe.get(key)
            if not raw:
                pipe.multi()
                return None
            record = Appointment.model_validate_json(raw)
            pipe.multi()
            pipe.delete(key)
            pipe.hdel(_reservations_key(record.partner_id), appointment_id)
            return record

        return self._r.transaction(_delete, key, value_from_callable=True)

    # --- counters ---

    def incr_counter(self, key: str, amount: int = 1) -> int:
        return int(self._r.incrby(_counter_key(key), amount))

    def get_counter(self, key: str) -> int:
        return int(self._r.get(_counter_key(key)) or 0)

    # --- archive ---

    def get_archive(self, ticket_id: str) -> Optional[ArchiveRecord]:
        raw = self._r.get(_archive_key(ticket_id))
        return ArchiveRecord.model_validate_json(raw) if raw else None

    def write_archive(self, record: ArchiveRecord, counter_keys: Iterable[str] = ()) -> bool:
        key = _archive_key(record.ticket_id)
        keys = list(counter_keys)
        payload = record.model_dump_json()

        def _write(pipe) -> bool:
            if pipe.exists(key):
                pipe.multi()
                return False
            pipe.multi()
            pipe.set(key, payload)
            for counter in keys:
                pipe.incr(_counter_key(counter))
            return True

        written = self._r.transaction(_write, key, value_from_callable=True)
        if not written:
            logger.info("Archive for ticket %s already exists; snapshot skipped.", record.ticket_id)
        return written

    def purge_live_chat(self, ticket_id: str) -> None:
        pipe = self._r.pipeline(transaction=True)
        pipe.delete(
            _messages_key(ticket_id),
            _message_bodies_key(ticket_id),
            _conversation_key(ticket_id),
            _typing_key(ticket_id),
        )
        pipe.execute()
