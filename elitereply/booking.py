"""
Appointment booking transaction.

Steps 1-4 (code, payload, record + partner mirror, agent counter) either all happen or none
do: the record, its mirror and the counter are written by one Store.commit_booking call.
Step 5 (chat confirmation, ticket summary, notification) is best effort and only logged.
"""

import json
import logging
import re
import secrets
import string
from typing import Optional

from elitereply import activity
from elitereply.config import BOOKING_CODE_PREFIX
from elitereply.errors import AppointmentNotFound, BookingTransactionFailed, SupportDeskError, TicketNotFound
from elitereply.messages import build_message
from elitereply.models import (
    SYSTEM_SENDER_ID,
    SYSTEM_SENDER_NAME,
    Appointment,
    AppointmentStatus,
    BookingCode,
    BookingRequest,
    Identity,
    MessageType,
    Partner,
    utcnow,
)
from elitereply.notifications import APPOINTMENT_BOOKED, NotificationDispatcher
from elitereply.store import Store, agent_booking_counter, new_id
from elitereply.text_norm import fold
from elitereply.ticket_machine import TicketStateMachine

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_RANDOM_LENGTH = 7
CODE_PATTERN = re.compile(rf"^{BOOKING_CODE_PREFIX}[A-Z0-9]{{{CODE_RANDOM_LENGTH}}}[A-Z]{{0,2}}$")


def partner_initials(partner_name: str) -> str:
    """First letters (A-Z) of the first and last words of the partner's name."""
    words = [w for w in re.findall(r"[a-z0-9]+", fold(partner_name)) if w]
    picks = words[:1] + words[-1:] if len(words) > 1 else words[:1]
    return "".join(w[0].upper() for w in picks if w[0].isalpha())


def generate_booking_code(partner_name: str) -> str:
    """ER + 7 random [A-Z0-9] + up to two initials of the partner's name, e.g. ERX7K2P9QLS."""
    random_part = "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_RANDOM_LENGTH))
    return f"{BOOKING_CODE_PREFIX}{random_part}{partner_initials(partner_name)}"


def encode_booking_payload(code: str, appointment: Appointment) -> str:
    """JSON document printed/scanned to verify an appointment."""
    payload = {
        "code": code,
        "type": "qr",
        "partner": appointment.partner_name,
        "category": appointment.partner_category,
        "clients": appointment.participant_names,
        "date": appointment.scheduled_at.strftime("%d/%m/%Y"),
        "time": appointment.scheduled_at.strftime("%H:%M"),
        "description": appointment.description or "N/A",
        "bookedByClient": {
            "name": appointment.client_name,
            "id": appointment.client_id,
            "email": appointment.client_email,
            "phone": appointment.client_phone,
        },
        "bookedByAgent": appointment.booked_by_agent_name,
        "ticketId": appointment.ticket_id or "N/A",
    }
    return json.dumps(payload, ensure_ascii=False)


def confirmation_text(appointment: Appointment, updated: bool = False) -> str:
    verb = "mis à jour" if updated else "enregistré"
    names = ", ".join(appointment.participant_names)
    when = appointment.scheduled_at.strftime("%d/%m/%Y à %H:%M")
    text = f"Votre rendez-vous avec {appointment.partner_name} pour {names} a été {verb} pour le {when}."
    if appointment.description:
        text += f" Description: {appointment.description}"
    return text


class BookingService:
    def __init__(
        self,
        store: Store,
        machine: TicketStateMachine,
        notifier: Optional[NotificationDispatcher] = None,
    ):
        self.store = store
        self.machine = machine
        self.notifier = notifier or NotificationDispatcher()

    def _partner(self, partner_id: str) -> Partner:
        partner = self.store.get_partner(partner_id)
        if partner is None:
            raise BookingTransactionFailed(f"Partner {partner_id} not found")
        return partner

    def book(
        self,
        request: BookingRequest,
        actor: Optional[Identity] = None,
        appointment_id: Optional[str] = None,
    ) -> Appointment:
        """Create an appointment, or update `appointment_id` when given."""
        names = [n.strip() for n in request.participant_names if n and n.strip()]
        if not names:
            raise BookingTransactionFailed("At least one participant name is required")
        partner = self._partner(request.partner_id)
        if request.ticket_id and self.store.get_ticket(request.ticket_id) is None:
            raise TicketNotFound(request.ticket_id)

        previous = None
        if appointment_id:
            previous = self.store.get_appointment(appointment_id)
            if previous is None:
                raise AppointmentNotFound(appointment_id)

        by_agent = actor if actor is not None and actor.is_agent else None
        now = utcnow()
        appointment = Appointment(
            id=previous.id if previous else new_id(),
            ticket_id=request.ticket_id or (previous.ticket_id if previous else None),
            client_id=request.client_id,
            client_name=request.client_name,
            client_phone=request.client_phone,
            client_email=request.client_email,
            partner_id=partner.id,
            partner_name=partner.name,
            partner_category=partner.category,
            scheduled_at=request.scheduled_at,
            participant_names=names,
            description=request.description or "",
            status=AppointmentStatus.RESCHEDULED if previous else AppointmentStatus.SCHEDULED,
            booking_code=BookingCode(value="", payload="{}"),
            proof_image_url=request.proof_image_url or (previous.proof_image_url if previous else None),
            booked_by_agent_id=by_agent.user_id if by_agent else (previous.booked_by_agent_id if previous else None),
            booked_by_agent_name=(
                by_agent.name_or_default() if by_agent else (previous.booked_by_agent_name if previous else None)
            ),
            created_at=previous.created_at if previous else now,
            last_updated=now,
        )
        # An edit keeps its code unless the partner changed (the initials belong to the partner).
        if previous and previous.partner_id == partner.id:
            code = previous.booking_code.value
        else:
            code = generate_booking_code(partner.name)
        appointment.booking_code = BookingCode(value=code, payload=encode_booking_payload(code, appointment))

        counter_key = agent_booking_counter(by_agent.user_id) if by_agent and previous is None else None
        try:
            self.store.commit_booking(
                appointment,
                previous_partner_id=previous.partner_id if previous else None,
                counter_key=counter_key,
            )
        except Exception as e:
            logger.exception("Booking %s for partner %s failed.", appointment.id, partner.id)
            raise BookingTransactionFailed(f"Booking could not be saved, please retry ({e})") from e

        logger.info(
            "Appointment %s %s with partner %s (code=%s).",
            appointment.id, "updated" if previous else "booked", partner.id, code,
        )
        self._after_commit(appointment, actor, updated=previous is not None)
        return appointment

    def _after_commit(self, appointment: Appointment, actor: Optional[Identity], updated: bool) -> None:
        """Chat confirmation, ticket summary and notification. Failures are logged only."""
        if appointment.ticket_id:
            sender_id = actor.user_id if actor else SYSTEM_SENDER_ID
            sender_name = actor.name_or_default() if actor else SYSTEM_SENDER_NAME
            message = build_message(
                appointment.ticket_id,
                sender_id,
                sender_name,
                confirmation_text(appointment, updated),
                MessageType.BOOKING_CONFIRMATION,
                {
                    "appointment_id": appointment.id,
                    "booking_code": appointment.booking_code.value,
                    "partner_id": appointment.partner_id,
                },
            )
            try:
                self.machine.record_message(appointment.ticket_id, message)
            except Exception as e:
                logger.warning("Booking confirmation for %s not posted: %s", appointment.id, e)
            try:
                self.machine.attach_appointment(appointment.ticket_id, appointment.summary())
            except Exception as e:
                logger.warning("Ticket summary for %s not updated: %s", appointment.id, e)
        self.notifier.fire(APPOINTMENT_BOOKED, {
            "appointment_id": appointment.id,
            "ticket_id": appointment.ticket_id,
            "partner_id": appointment.partner_id,
            "client_id": appointment.client_id,
            "scheduled_at": appointment.scheduled_at.isoformat(),
            "updated": updated,
        })
        activity.emit(
            "appointment_booked",
            appointment.ticket_id,
            appointment_id=appointment.id,
            partner=appointment.partner_name,
            code=appointment.booking_code.value,
        )

    def cancel(self, appointment_id: str) -> Appointment:
        """Mark both records cancelled."""
        appointment = self.store.get_appointment(appointment_id)
        if appointment is None:
            raise AppointmentNotFound(appointment_id)
        if appointment.status == AppointmentStatus.CANCELLED:
            return appointment
        appointment.status = AppointmentStatus.CANCELLED
        appointment.last_updated = utcnow()
        try:
            self.store.commit_booking(appointment, previous_partner_id=appointment.partner_id)
        except Exception as e:
            logger.exception("Cancelling appointment %s failed.", appointment_id)
            raise BookingTransactionFailed(f"Cancellation could not be saved, please retry ({e})") from e
        if appointment.ticket_id:
            try:
                self.machine.attach_appointment(appointment.ticket_id, appointment.summary())
            except SupportDeskError as e:
                logger.warning("Ticket summary for %s not updated: %s", appointment_id, e)
        logger.info("Appointment %s cancelled.", appointment_id)
        return appointment

    def delete(self, appointment_id: str) -> Appointment:
        """Paired delete of the appointment and its partner mirror."""
        try:
            deleted = self.store.delete_appointment(appointment_id)
        except Exception as e:
            logger.exception("Deleting appointment %s failed.", appointment_id)
            raise BookingTransactionFailed(f"Deletion could not be saved, please retry ({e})") from e
        if deleted is None:
            raise AppointmentNotFound(appointment_id)
        if deleted.ticket_id:
            try:
                self.machine.detach_appointment(deleted.ticket_id, appointment_id)
            except SupportDeskError as e:
                logger.warning("Ticket summary for %s not removed: %s", appointment_id, e)
        logger.info("Appointment %s deleted with its partner mirror.", appointment_id)
        return deleted
