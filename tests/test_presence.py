"""
Unit tests for typing presence (no server required).
Run: pytest tests/test_presence.py -v
"""

import pytest

from elitereply.models import JEY_SENDER_ID, MessageCreate, TerminatedBy, TicketCreate
from tests.fakes import AGENT, CLIENT, make_desk


@pytest.fixture
def desk():
    return make_desk()


@pytest.fixture
def ticket_id(desk):
    ticket, _ = desk.machine.create(CLIENT, "Bonjour")
    return ticket.id


class TestTypingPresence:
    def test_others_see_typing(self, desk, ticket_id):
        assert desk.set_typing(ticket_id, CLIENT, True) == {}
        assert desk.set_typing(ticket_id, AGENT, True) == {CLIENT.user_id: "Awa"}
        assert desk.presence.typing_users(ticket_id) == {CLIENT.user_id: "Awa", AGENT.user_id: "Marc"}

    def test_stop_typing(self, desk, ticket_id):
        desk.set_typing(ticket_id, CLIENT, True)
        desk.set_typing(ticket_id, CLIENT, False)
        assert desk.presence.typing_users(ticket_id) == {}

    def test_terminated_ticket_refuses_typing(self, desk, ticket_id):
        desk.machine.terminate(ticket_id, TerminatedBy.CLIENT, CLIENT.user_id, "Awa")
        assert desk.presence.set_typing(ticket_id, AGENT, True) is False
        assert desk.presence.typing_users(ticket_id) == {}

    def test_transition_keeps_typing(self, desk, ticket_id):
        desk.set_typing(ticket_id, CLIENT, True)
        desk.machine.escalate(ticket_id, "Demande Agent")
        assert CLIENT.user_id in desk.presence.typing_users(ticket_id)
        assert desk.store.get_conversation(ticket_id).typing_users == {CLIENT.user_id: "Awa"}

    @pytest.mark.asyncio
    async def test_sending_clears_own_entry(self, desk):
        ticket, _ = await desk.open_ticket(CLIENT, TicketCreate(message="Bonjour"))
        desk.set_typing(ticket.id, CLIENT, True)
        await desk.post_message(ticket.id, CLIENT, MessageCreate(text="Encore moi"))
        assert desk.presence.typing_users(ticket.id) == {}

    @pytest.mark.asyncio
    async def test_assistant_typing_cleared_on_error(self, desk, ticket_id):
        with pytest.raises(RuntimeError):
            async with desk.presence.assistant_typing(ticket_id):
                assert JEY_SENDER_ID in desk.presence.typing_users(ticket_id)
                raise RuntimeError("boom")
        assert desk.presence.typing_users(ticket_id) == {}
