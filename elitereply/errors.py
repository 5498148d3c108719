"""Error types shared by the state machine, the assistant and the transactions.

Centralised here to avoid circular imports between the desk modules.
"""


class SupportDeskError(Exception):
    """Base class for errors surfaced to the initiating actor."""


class TicketNotFound(SupportDeskError):
    def __init__(self, ticket_id: str):
        self.ticket_id = ticket_id
        super().__init__(f"Ticket {ticket_id} not found")


class AppointmentNotFound(SupportDeskError):
    def __init__(self, appointment_id: str):
        self.appointment_id = appointment_id
        super().__init__(f"Appointment {appointment_id} not found")


class InvalidTransition(SupportDeskError):
    """Illegal state-machine move. Raised before any mutation."""

    def __init__(self, ticket_id: str, action: str, reason: str):
        self.ticket_id = ticket_id
        self.action = action
        self.reason = reason
        super().__init__(f"Cannot {action} ticket {ticket_id}: {reason}")


class StaleTicket(InvalidTransition):
    """The ticket was written by someone else since it was read. Nothing was written."""

    def __init__(self, ticket_id: str, expected: int, found: int):
        self.expected = expected
        self.found = found
        super().__init__(ticket_id, "update", f"stored version is {found}, expected {expected}")


class AssistantServiceUnavailable(SupportDeskError):
    """Text-completion service missing, misconfigured, failing or circuit-open."""


class BookingTransactionFailed(SupportDeskError):
    """A booking sub-step failed; nothing was written."""


class ArchivalTransactionFailed(SupportDeskError):
    """The archive snapshot could not be written; live chat data is untouched."""

    def __init__(self, ticket_id: str, reason: str):
        self.ticket_id = ticket_id
        super().__init__(f"Archival of ticket {ticket_id} failed: {reason}")


class NotificationDeliveryFailed(Exception):
    """Notification dispatch failure. Always logged, never propagated."""
