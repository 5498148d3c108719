"""
Unit tests for the chat timeline and message log (no server required).
Run: pytest tests/test_messages.py -v
"""

from datetime import timedelta

from elitereply.messages import ChatTimeline, MessageLog, build_message, reconcile, system_message
from elitereply.models import Message, MessageType, utcnow
from elitereply.store import MemoryStore


def _confirmed(id, text, sender="client-1", offset=0.0, type=MessageType.TEXT):
    return Message(
        id=id,
        ticket_id="T1",
        sender_id=sender,
        text=text,
        type=type,
        created_at=utcnow() + timedelta(seconds=offset),
    )


class TestReconcile:
    def test_confirmed_replaces_optimistic_entry(self):
        timeline = ChatTimeline("T1")
        local = timeline.add_optimistic("client-1", "Awa", "Bonjour")
        merged = timeline.apply_confirmed([_confirmed("srv-1", "Bonjour")])
        assert [m.id for m in merged] == ["srv-1"]
        assert not merged[0].optimistic
        assert local.id not in [m.id for m in merged]

    def test_same_id_is_not_duplicated(self):
        first = _confirmed("srv-1", "Bonjour")
        merged = reconcile([first], [first])
        assert len(merged) == 1

    def test_different_text_is_appended(self):
        timeline = ChatTimeline("T1")
        timeline.add_optimistic("client-1", "Awa", "Bonjour")
        merged = timeline.apply_confirmed([_confirmed("srv-1", "Autre chose")])
        assert len(merged) == 2
        assert len(timeline.pending()) == 1

    def test_outside_window_is_appended(self):
        timeline = ChatTimeline("T1")
        timeline.add_optimistic("client-1", "Awa", "Bonjour")
        merged = timeline.apply_confirmed([_confirmed("srv-1", "Bonjour", offset=30)])
        assert len(merged) == 2

    def test_result_sorted_regardless_of_arrival_order(self):
        late = _confirmed("b", "deux", offset=2)
        early = _confirmed("a", "un", offset=1)
        merged = reconcile([late, early], [])
        assert [m.id for m in merged] == ["a", "b"]

    def test_discard_failed_send(self):
        timeline = ChatTimeline("T1")
        local = timeline.add_optimistic("client-1", "Awa", "Bonjour")
        timeline.discard(local.id)
        assert timeline.messages == []


class TestMessageLog:
    def test_store_assigns_increasing_timestamps(self):
        store = MemoryStore()
        log = MessageLog(store)
        first = log.append(build_message("T1", "client-1", "Awa", "un"))
        second = log.append(system_message("T1", "deux"))
        assert first.id and second.id and first.id != second.id
        assert second.created_at > first.created_at
        assert [m.text for m in log.history("T1")] == ["un", "deux"]
        assert log.tail("T1").id == second.id

    def test_empty_ticket(self):
        log = MessageLog(MemoryStore())
        assert log.history("missing") == []
        assert log.tail("missing") is None
