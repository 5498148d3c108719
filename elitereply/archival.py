"""
Archival of terminated tickets.

1. Snapshot ticket, conversation mirror and ordered messages, together with the archive
   marker and the terminated-ticket counters (one Store.write_archive call).
2. Purge the live messages, conversation and typing presence.

A failed snapshot aborts before anything is deleted. Once the snapshot exists the ticket
counts as archived: a failed purge is logged and re-running archive() only retries it.
"""

import logging

from elitereply import activity
from elitereply.errors import ArchivalTransactionFailed, InvalidTransition
from elitereply.models import ArchiveRecord, TerminatedBy, Ticket, utcnow
from elitereply.store import GLOBAL_TERMINATED_COUNTER, Store, agent_terminated_counter
from elitereply.ticket_machine import TicketStateMachine

logger = logging.getLogger(__name__)


def counter_keys_for(ticket: Ticket) -> list[str]:
    keys = [GLOBAL_TERMINATED_COUNTER]
    if ticket.terminated_by == TerminatedBy.AGENT and ticket.terminated_by_id:
        keys.insert(0, agent_terminated_counter(ticket.terminated_by_id))
    return keys


class ArchivalService:
    def __init__(self, store: Store, machine: TicketStateMachine):
        self.store = store
        self.machine = machine

    def snapshot(self, ticket: Ticket) -> ArchiveRecord:
        return ArchiveRecord(
            ticket_id=ticket.id,
            ticket=ticket,
            conversation=self.store.get_conversation(ticket.id),
            messages=self.store.list_messages(ticket.id),
            terminated_by=ticket.terminated_by,
            terminated_by_id=ticket.terminated_by_id,
            terminated_by_name=ticket.terminated_by_name,
            terminated_at=ticket.terminated_at,
            archived_at=utcnow(),
        )

    def archive(self, ticket_id: str) -> ArchiveRecord:
        ticket = self.machine.get(ticket_id)
        if not ticket.is_terminated:
            raise InvalidTransition(ticket_id, "archive", f"ticket is {ticket.status.value}")

        record = self.store.get_archive(ticket_id)
        if record is None:
            record = self.snapshot(ticket)
            try:
                written = self.store.write_archive(record, counter_keys_for(ticket))
            except Exception as e:
                logger.exception("Archive snapshot of ticket %s failed; live chat kept.", ticket_id)
                raise ArchivalTransactionFailed(ticket_id, str(e)) from e
            if written:
                logger.info("Ticket %s archived (%d messages).", ticket_id, len(record.messages))
                activity.emit(
                    "ticket_archived",
                    ticket_id,
                    terminated_by=ticket.terminated_by.value if ticket.terminated_by else None,
                )
            else:
                record = self.store.get_archive(ticket_id)
        else:
            logger.info("Ticket %s already archived; retrying live chat purge.", ticket_id)

        self.machine.mark_archived(ticket_id)
        try:
            self.store.purge_live_chat(ticket_id)
        except Exception as e:
            logger.warning("Purging live chat of archived ticket %s failed (will retry): %s", ticket_id, e)
        return record
