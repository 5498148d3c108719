"""
Unit tests for the ticket state machine (no server required).
Run: pytest tests/test_ticket_machine.py -v
"""

import pytest

from elitereply.archival import ArchivalService
from elitereply.errors import InvalidTransition, StaleTicket, TicketNotFound
from elitereply.messages import assistant_message, build_message
from elitereply.models import AGENT_REQUESTED_PHASE, MessageType, TerminatedBy, Ticket, TicketStatus
from elitereply.store import MemoryStore
from elitereply.ticket_machine import ESCALATION_TEXT, TicketStateMachine, check_invariants
from tests.fakes import AGENT, CLIENT, OTHER_AGENT, InterleavingStore


@pytest.fixture
def machine():
    return TicketStateMachine(MemoryStore())


@pytest.fixture
def ticket(machine):
    t, _ = machine.create(CLIENT, "Bonjour", category="Spa")
    return t


def _system_texts(machine, ticket_id):
    return [m.text for m in machine.store.list_messages(ticket_id) if m.type == MessageType.SYSTEM]


class TestCreate:
    def test_new_ticket_is_handled_by_jey(self, machine, ticket):
        assert ticket.status == TicketStatus.ASSISTANT_HANDLING
        assert ticket.handler == "assistant"
        conversation = machine.store.get_conversation(ticket.id)
        assert conversation.status == TicketStatus.ASSISTANT_HANDLING
        assert conversation.participants == [CLIENT.user_id]
        messages = machine.store.list_messages(ticket.id)
        assert [m.text for m in messages] == ["Bonjour"]
        assert conversation.last_message == "Bonjour"

    def test_unknown_ticket(self, machine):
        with pytest.raises(TicketNotFound):
            machine.get("missing")


class TestRequestAndEscalate:
    def test_request_agent_keeps_status(self, machine, ticket):
        t = machine.request_agent(ticket.id, CLIENT)
        assert t.status == TicketStatus.ASSISTANT_HANDLING
        assert t.phase == AGENT_REQUESTED_PHASE
        assert machine.store.get_conversation(ticket.id).is_agent_requested
        assert "Awa a demandé à parler à un agent." in _system_texts(machine, ticket.id)

    def test_request_agent_twice_is_noop(self, machine, ticket):
        machine.request_agent(ticket.id, CLIENT)
        machine.request_agent(ticket.id, CLIENT)
        assert len(_system_texts(machine, ticket.id)) == 1

    def test_escalate(self, machine, ticket):
        machine.ask_termination_confirmation(ticket.id)
        t = machine.escalate(ticket.id, "Demande Agent")
        assert t.status == TicketStatus.ESCALATED
        assert t.escalation_reason == "Demande Agent"
        assert t.is_agent_requested
        assert not t.jey_asked_to_terminate
        assert t.handler == "unassigned"
        assert ESCALATION_TEXT in _system_texts(machine, ticket.id)

    def test_escalate_twice_is_noop(self, machine, ticket):
        machine.escalate(ticket.id, "Demande Agent")
        t = machine.escalate(ticket.id, "assistant-unavailable")
        assert t.escalation_reason == "Demande Agent"

    def test_escalation_supersedes_request(self, machine, ticket):
        machine.request_agent(ticket.id, CLIENT)
        t = machine.escalate(ticket.id, "Demande Agent")
        assert t.phase == TicketStatus.ESCALATED.value

    def test_cannot_escalate_in_progress(self, machine, ticket):
        machine.escalate(ticket.id, "Demande Agent")
        machine.assign(ticket.id, AGENT.user_id, AGENT.display_name)
        with pytest.raises(InvalidTransition):
            machine.escalate(ticket.id, "Escalade Jey")

    def test_only_jey_tickets_escalate(self, machine):
        machine.store.save_ticket(Ticket(id="T-new", client_id=CLIENT.user_id, version=1))
        with pytest.raises(InvalidTransition):
            machine.escalate("T-new", "Demande Agent")
        assert machine.get("T-new").status == TicketStatus.NEW


class TestAssign:
    def test_assign_escalated(self, machine, ticket):
        machine.escalate(ticket.id, "Demande Agent")
        t = machine.assign(ticket.id, AGENT.user_id, AGENT.display_name)
        assert t.status == TicketStatus.IN_PROGRESS
        assert t.handler == "agent"
        assert not t.is_agent_requested
        conversation = machine.store.get_conversation(ticket.id)
        assert conversation.assigned_agent_id == AGENT.user_id
        assert AGENT.user_id in conversation.participants
        assert "Marc a pris le relais de cette conversation." in _system_texts(machine, ticket.id)

    def test_assign_after_request(self, machine, ticket):
        machine.request_agent(ticket.id, CLIENT)
        assert machine.assign(ticket.id, AGENT.user_id, "Marc").status == TicketStatus.IN_PROGRESS

    def test_cannot_take_jey_ticket_without_request(self, machine, ticket):
        with pytest.raises(InvalidTransition):
            machine.assign(ticket.id, AGENT.user_id, "Marc")

    def test_other_agent_rejected_without_change(self, machine, ticket):
        machine.escalate(ticket.id, "Demande Agent")
        machine.assign(ticket.id, AGENT.user_id, "Marc")
        before = machine.get(ticket.id)
        count = len(machine.store.list_messages(ticket.id))
        with pytest.raises(InvalidTransition):
            machine.assign(ticket.id, OTHER_AGENT.user_id, "Lina")
        assert machine.get(ticket.id) == before
        assert len(machine.store.list_messages(ticket.id)) == count

    def test_same_agent_is_noop(self, machine, ticket):
        machine.escalate(ticket.id, "Demande Agent")
        machine.assign(ticket.id, AGENT.user_id, "Marc")
        t = machine.assign(ticket.id, AGENT.user_id, "Marc")
        assert t.assigned_agent_id == AGENT.user_id


class TestTerminateAndClose:
    def test_terminate_by_client_awaits_human_closure(self, machine, ticket):
        machine.store.set_typing(ticket.id, CLIENT.user_id, "Awa")
        t = machine.terminate(ticket.id, TerminatedBy.CLIENT, CLIENT.user_id, "Awa")
        assert t.status == TicketStatus.TERMINATED
        assert t.pending_human_closure
        assert t.in_agent_queue
        assert t.terminated_at is not None
        assert machine.store.get_typing(ticket.id) == {}

    def test_terminate_by_agent_closes(self, machine, ticket):
        machine.escalate(ticket.id, "Demande Agent")
        machine.assign(ticket.id, AGENT.user_id, "Marc")
        t = machine.terminate(ticket.id, TerminatedBy.AGENT, AGENT.user_id, "Marc")
        assert not t.pending_human_closure
        assert t.closed_by_agent_id == AGENT.user_id
        assert "Conversation terminée par l'agent Marc." in _system_texts(machine, ticket.id)

    def test_terminate_twice_rejected(self, machine, ticket):
        machine.terminate(ticket.id, TerminatedBy.CLIENT, CLIENT.user_id, "Awa")
        with pytest.raises(InvalidTransition):
            machine.terminate(ticket.id, TerminatedBy.CLIENT, CLIENT.user_id, "Awa")

    def test_close_manually_once(self, machine, ticket):
        machine.terminate(ticket.id, TerminatedBy.ASSISTANT, "jey-ai", "Jey")
        t = machine.close_manually(ticket.id, AGENT.user_id, "Marc")
        assert not t.pending_human_closure
        assert t.closed_by_agent_name == "Marc"
        with pytest.raises(InvalidTransition):
            machine.close_manually(ticket.id, OTHER_AGENT.user_id, "Lina")
        assert machine.get(ticket.id).closed_by_agent_id == AGENT.user_id

    def test_close_live_ticket_rejected(self, machine, ticket):
        with pytest.raises(InvalidTransition):
            machine.close_manually(ticket.id, AGENT.user_id, "Marc")

    def test_no_messages_after_termination(self, machine, ticket):
        machine.terminate(ticket.id, TerminatedBy.CLIENT, CLIENT.user_id, "Awa")
        with pytest.raises(InvalidTransition):
            machine.record_message(ticket.id, build_message(ticket.id, CLIENT.user_id, "Awa", "encore"))


class TestInvariants:
    def test_consistent_ticket(self, ticket):
        assert check_invariants(ticket) == []

    def test_in_progress_without_agent(self, ticket):
        ticket.status = TicketStatus.IN_PROGRESS
        assert check_invariants(ticket)

    def test_pending_closure_on_live_ticket(self, ticket):
        ticket.pending_human_closure = True
        assert check_invariants(ticket)

    def test_record_message_updates_preview(self, machine, ticket):
        long_text = "x" * 150
        machine.record_message(ticket.id, build_message(ticket.id, CLIENT.user_id, "Awa", long_text))
        t = machine.get(ticket.id)
        assert len(t.last_message) == 100
        assert t.last_message.endswith("...")


class TestConcurrentWriters:
    def test_store_rejects_stale_ticket(self, machine, ticket):
        stale = machine.get(ticket.id)
        machine.request_agent(ticket.id, CLIENT)
        stale.version += 1
        stale.jey_asked_to_terminate = True
        with pytest.raises(StaleTicket):
            machine.store.save_ticket(stale)
        current = machine.get(ticket.id)
        assert current.is_agent_requested
        assert not current.jey_asked_to_terminate

    def test_versions_increase_with_each_write(self, machine, ticket):
        assert ticket.version == 1
        machine.request_agent(ticket.id, CLIENT)
        assert machine.get(ticket.id).version == 2

    def test_late_message_does_not_reopen_archived_ticket(self):
        store = InterleavingStore()
        machine = TicketStateMachine(store)
        archival = ArchivalService(store, machine)
        ticket, _ = machine.create(CLIENT, "Bonjour")

        def close_elsewhere():
            machine.terminate(ticket.id, TerminatedBy.CLIENT, CLIENT.user_id, "Awa")
            archival.archive(ticket.id)

        store.after_read(close_elsewhere)
        with pytest.raises(InvalidTransition):
            machine.record_message(ticket.id, assistant_message(ticket.id, "réponse tardive"))
        after = machine.get(ticket.id)
        assert after.status == TicketStatus.TERMINATED
        assert after.archived_at is not None
        assert store.list_messages(ticket.id) == []
        assert "réponse tardive" not in [m.text for m in store.get_archive(ticket.id).messages]

    def test_field_update_is_reapplied_on_fresh_ticket(self):
        store = InterleavingStore()
        machine = TicketStateMachine(store)
        ticket, first = machine.create(CLIENT, "Bonjour")
        store.after_read(lambda: machine.request_agent(ticket.id, CLIENT))
        machine.mark_responded(ticket.id, first.id)
        after = machine.get(ticket.id)
        assert after.is_agent_requested
        assert after.jey_last_responded_message_id == first.id
