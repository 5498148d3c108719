"""
Unit tests for the appointment booking transaction (no server required).
Run: pytest tests/test_booking.py -v
"""

import json
from datetime import datetime, timezone

import pytest

from elitereply.booking import CODE_PATTERN, generate_booking_code, partner_initials
from elitereply.errors import AppointmentNotFound, BookingTransactionFailed
from elitereply.models import AppointmentStatus, BookingRequest, MessageType, Partner
from tests.fakes import AGENT, CLIENT, FailingBookingStore, make_desk

PARTNERS = [
    Partner(id="spa", name="Le Spa", category="Spa", rating=4.0),
    Partner(id="garage", name="Garage Central", category="Automobile", rating=4.5),
]
WHEN = datetime(2026, 11, 3, 14, 30, tzinfo=timezone.utc)


def _request(ticket_id=None, partner_id="spa", names=("Awa Diop",), **overrides):
    data = dict(
        partner_id=partner_id,
        participant_names=list(names),
        client_id=CLIENT.user_id,
        client_name="Awa",
        client_phone="+33600000000",
        scheduled_at=WHEN,
        description="Massage",
        ticket_id=ticket_id,
    )
    data.update(overrides)
    return BookingRequest(**data)


@pytest.fixture
def desk():
    return make_desk(partners=PARTNERS)


@pytest.fixture
def ticket_id(desk):
    ticket, _ = desk.machine.create(CLIENT, "Bonjour", category="Spa")
    return ticket.id


class TestBookingCode:
    def test_initials(self):
        assert partner_initials("Le Spa") == "LS"
        assert partner_initials("Délice") == "D"
        assert partner_initials("") == ""

    def test_pattern(self):
        for name in ("Le Spa", "Bien-Être Santé", "Zen", "123"):
            assert CODE_PATTERN.match(generate_booking_code(name))


class TestBook:
    def test_agent_booking_writes_record_mirror_and_counter(self, desk, ticket_id):
        appointment = desk.booking.book(_request(ticket_id), AGENT)
        code = appointment.booking_code.value
        assert CODE_PATTERN.match(code)
        assert code.endswith("LS")
        assert desk.store.get_appointment(appointment.id) is not None
        mirror = desk.store.get_reservation("spa", appointment.id)
        assert mirror is not None
        assert mirror.booking_code.value == code
        assert desk.agent_stats(AGENT.user_id).appointments_booked == 1
        payload = json.loads(appointment.booking_code.payload)
        assert payload["code"] == code
        assert payload["date"] == "03/11/2026"
        assert payload["time"] == "14:30"
        assert payload["bookedByAgent"] == "Marc"

    def test_confirmation_and_ticket_summary(self, desk, ticket_id):
        appointment = desk.booking.book(_request(ticket_id), AGENT)
        last = desk.messages(ticket_id)[-1]
        assert last.type == MessageType.BOOKING_CONFIRMATION
        assert last.sender_id == AGENT.user_id
        assert last.data["booking_code"] == appointment.booking_code.value
        summaries = desk.get_ticket(ticket_id).appointments
        assert [s.appointment_id for s in summaries] == [appointment.id]
        assert "appointment_booked" in [name for name, _ in desk.notifier.events]

    def test_client_booking_does_not_count(self, desk):
        desk.booking.book(_request(), CLIENT)
        assert desk.agent_stats(CLIENT.user_id).appointments_booked == 0

    def test_names_required(self, desk):
        with pytest.raises(BookingTransactionFailed):
            desk.booking.book(_request(names=("  ",)), AGENT)

    def test_unknown_partner(self, desk):
        with pytest.raises(BookingTransactionFailed):
            desk.booking.book(_request(partner_id="nope"), AGENT)

    def test_failed_commit_leaves_nothing(self):
        store = FailingBookingStore()
        desk = make_desk(store=store, partners=PARTNERS)
        ticket, _ = desk.machine.create(CLIENT, "Bonjour")
        with pytest.raises(BookingTransactionFailed):
            desk.booking.book(_request(ticket.id), AGENT)
        assert desk.reservations("spa") == []
        assert desk.agent_stats(AGENT.user_id).appointments_booked == 0
        assert desk.get_ticket(ticket.id).appointments == []
        assert [m.type for m in desk.messages(ticket.id)] == [MessageType.TEXT]


class TestEditCancelDelete:
    def test_edit_keeps_code_and_counter(self, desk, ticket_id):
        original = desk.booking.book(_request(ticket_id), AGENT)
        later = datetime(2026, 11, 4, 9, 0, tzinfo=timezone.utc)
        edited = desk.booking.book(_request(ticket_id, scheduled_at=later), AGENT, original.id)
        assert edited.id == original.id
        assert edited.booking_code.value == original.booking_code.value
        assert edited.status == AppointmentStatus.RESCHEDULED
        assert desk.store.get_reservation("spa", original.id).scheduled_at == later
        assert desk.agent_stats(AGENT.user_id).appointments_booked == 1
        assert len(desk.get_ticket(ticket_id).appointments) == 1

    def test_partner_change_moves_mirror(self, desk, ticket_id):
        original = desk.booking.book(_request(ticket_id), AGENT)
        moved = desk.booking.book(_request(ticket_id, partner_id="garage"), AGENT, original.id)
        assert desk.store.get_reservation("spa", original.id) is None
        assert desk.store.get_reservation("garage", original.id) is not None
        assert moved.booking_code.value.endswith("GC")

    def test_edit_unknown(self, desk):
        with pytest.raises(AppointmentNotFound):
            desk.booking.book(_request(), AGENT, "missing")

    def test_cancel_updates_both_records(self, desk, ticket_id):
        appointment = desk.booking.book(_request(ticket_id), AGENT)
        desk.booking.cancel(appointment.id)
        assert desk.store.get_appointment(appointment.id).status == AppointmentStatus.CANCELLED
        assert desk.store.get_reservation("spa", appointment.id).status == AppointmentStatus.CANCELLED
        assert desk.get_ticket(ticket_id).appointments[0].status == AppointmentStatus.CANCELLED

    def test_delete_is_paired(self, desk, ticket_id):
        appointment = desk.booking.book(_request(ticket_id), AGENT)
        desk.booking.delete(appointment.id)
        assert desk.store.get_appointment(appointment.id) is None
        assert desk.store.get_reservation("spa", appointment.id) is None
        assert desk.get_ticket(ticket_id).appointments == []
        with pytest.raises(AppointmentNotFound):
            desk.booking.delete(appointment.id)
