"""Data models for the support desk: tickets, conversations, messages, partners, appointments."""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

SYSTEM_SENDER_ID = "system"
SYSTEM_SENDER_NAME = "Système"
JEY_SENDER_ID = "jey-ai"
JEY_NAME = "Jey"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TicketStatus(str, Enum):
    """Stored ticket status."""

    NEW = "new"
    ASSISTANT_HANDLING = "assistant-handling"
    ESCALATED = "escalated"
    IN_PROGRESS = "in-progress"
    TERMINATED = "terminated"


# Lifecycle phase of an assistant-handled ticket whose client asked for a human.
AGENT_REQUESTED_PHASE = "agent-requested-while-assistant-handling"

# Statuses in which a human may type in the chat.
TYPING_STATUSES = frozenset(
    {TicketStatus.NEW, TicketStatus.ASSISTANT_HANDLING, TicketStatus.ESCALATED, TicketStatus.IN_PROGRESS}
)


class ActorRole(str, Enum):
    CLIENT = "client"
    AGENT = "agent"


class TerminatedBy(str, Enum):
    ASSISTANT = "assistant"
    CLIENT = "client"
    AGENT = "agent"


class MessageType(str, Enum):
    """Typed payload tag of a chat message."""

    TEXT = "text"
    IMAGE = "image"
    SYSTEM = "system"
    PARTNER_SUGGESTION_LIST = "partner-suggestion-list"
    BOOKING_CONFIRMATION_REQUEST = "booking-confirmation-request"
    APPOINTMENT_REQUEST_PROMPT = "appointment-request-prompt"
    APPOINTMENT_FORM_TRIGGER = "appointment-form-trigger"
    TERMINATION_CONFIRMATION_REQUEST = "termination-confirmation-request"
    BOOKING_CONFIRMATION = "booking-confirmation"
    COMMAND_TO_ASSISTANT = "command-to-assistant"


# Types an actor may post; everything else is written by system actions.
ACTOR_MESSAGE_TYPES = frozenset({MessageType.TEXT, MessageType.IMAGE, MessageType.COMMAND_TO_ASSISTANT})


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    RESCHEDULED = "rescheduled"
    CANCELLED = "cancelled"


class Identity(BaseModel):
    """Acting user as supplied by the identity provider (trusted as given)."""

    user_id: str = Field(..., description="Unique user identifier")
    display_name: str = Field(default="", description="Display name")
    role: ActorRole = Field(default=ActorRole.CLIENT)

    @property
    def is_agent(self) -> bool:
        return self.role == ActorRole.AGENT

    def name_or_default(self) -> str:
        return self.display_name or ("Agent" if self.is_agent else "Client")


class Partner(BaseModel):
    """Third-party service provider (read-only reference data)."""

    id: str
    name: str
    category: str = Field(default="Général")
    rating: float = Field(default=0.0, ge=0.0, le=5.0, description="Average rating (stars)")
    promoted: bool = Field(default=False)
    promotion_end_date: Optional[date] = None

    def is_promoted(self, today: Optional[date] = None) -> bool:
        """Promotion flag, ignoring promotions whose end date has passed."""
        if not self.promoted:
            return False
        if self.promotion_end_date is None:
            return True
        return self.promotion_end_date >= (today or utcnow().date())


class Message(BaseModel):
    """One chat entry. Confirmed entries are immutable; optimistic entries live client-side only."""

    id: str
    ticket_id: str
    sender_id: str = Field(..., description="'system', 'jey-ai' or a user id")
    sender_name: str = ""
    text: str = ""
    type: MessageType = MessageType.TEXT
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    optimistic: bool = False

    @property
    def is_from_assistant(self) -> bool:
        return self.sender_id == JEY_SENDER_ID

    @property
    def is_system(self) -> bool:
        return self.sender_id == SYSTEM_SENDER_ID


class Conversation(BaseModel):
    """Denormalized mirror of a ticket for list views and presence."""

    ticket_id: str
    status: TicketStatus
    category: Optional[str] = None
    assigned_agent_id: Optional[str] = None
    assigned_agent_name: Optional[str] = None
    is_agent_requested: bool = False
    participants: list[str] = Field(default_factory=list)
    participant_names: list[str] = Field(default_factory=list)
    last_message: Optional[str] = None
    last_message_sender: Optional[str] = None
    last_updated: datetime = Field(default_factory=utcnow)
    typing_users: dict[str, str] = Field(default_factory=dict, description="user id -> display name")


class AppointmentSummary(BaseModel):
    """Appointment summary embedded in its ticket."""

    appointment_id: str
    partner_id: str
    partner_name: str
    scheduled_at: datetime
    booking_code: str
    status: AppointmentStatus = AppointmentStatus.SCHEDULED


class Ticket(BaseModel):
    """A client's support request and its lifecycle state."""

    id: str
    status: TicketStatus = TicketStatus.NEW
    category: Optional[str] = None
    client_id: str
    client_name: str = ""
    client_phone: Optional[str] = None
    assigned_agent_id: Optional[str] = None
    assigned_agent_name: Optional[str] = None
    is_agent_requested: bool = False
    jey_asked_to_terminate: bool = False
    escalation_reason: Optional[str] = None
    appointments: list[AppointmentSummary] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    last_updated: datetime = Field(default_factory=utcnow)
    terminated_at: Optional[datetime] = None
    terminated_by: Optional[TerminatedBy] = None
    terminated_by_id: Optional[str] = None
    terminated_by_name: Optional[str] = None
    pending_human_closure: bool = False
    closed_by_agent_id: Optional[str] = None
    closed_by_agent_name: Optional[str] = None
    closed_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    last_message: Optional[str] = None
    last_message_sender: Optional[str] = None
    jey_last_responded_message_id: Optional[str] = None
    version: int = Field(0, description="Incremented on every write; stale writes are rejected")

    @property
    def handler(self) -> str:
        """Exactly one of 'agent', 'assistant', 'unassigned'."""
        if self.assigned_agent_id is not None:
            return "agent"
        if self.status == TicketStatus.ASSISTANT_HANDLING:
            return "assistant"
        return "unassigned"

    @property
    def phase(self) -> str:
        if self.status == TicketStatus.ASSISTANT_HANDLING and self.is_agent_requested:
            return AGENT_REQUESTED_PHASE
        return self.status.value

    @property
    def is_terminated(self) -> bool:
        return self.status == TicketStatus.TERMINATED

    @property
    def in_agent_queue(self) -> bool:
        """Active for agents: not terminated, or terminated by Jey/client and awaiting human closure."""
        return not self.is_terminated or self.pending_human_closure


class BookingCode(BaseModel):
    """Generated booking code and its encoded payload (printed/scanned for verification)."""

    type: str = "qr"
    value: str
    payload: str = Field(..., description="JSON document encoding the appointment")


class Appointment(BaseModel):
    """Live appointment record."""

    id: str
    ticket_id: Optional[str] = None
    client_id: str
    client_name: str
    client_phone: Optional[str] = None
    client_email: Optional[str] = None
    partner_id: str
    partner_name: str
    partner_category: Optional[str] = None
    scheduled_at: datetime
    participant_names: list[str] = Field(default_factory=list)
    description: str = ""
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    booking_code: BookingCode
    proof_image_url: Optional[str] = None
    booked_by_agent_id: Optional[str] = None
    booked_by_agent_name: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    last_updated: datetime = Field(default_factory=utcnow)

    def summary(self) -> AppointmentSummary:
        return AppointmentSummary(
            appointment_id=self.id,
            partner_id=self.partner_id,
            partner_name=self.partner_name,
            scheduled_at=self.scheduled_at,
            booking_code=self.booking_code.value,
            status=self.status,
        )

    def reservation(self) -> "PartnerReservation":
        """Partner-scoped mirror of this appointment."""
        return PartnerReservation(appointment_id=self.id, **self.model_dump(exclude={"id"}))


class PartnerReservation(BaseModel):
    """Mirror of an appointment stored under its partner."""

    appointment_id: str
    ticket_id: Optional[str] = None
    client_id: str
    client_name: str
    client_phone: Optional[str] = None
    client_email: Optional[str] = None
    partner_id: str
    partner_name: str
    partner_category: Optional[str] = None
    scheduled_at: datetime
    participant_names: list[str] = Field(default_factory=list)
    description: str = ""
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    booking_code: BookingCode
    proof_image_url: Optional[str] = None
    booked_by_agent_id: Optional[str] = None
    booked_by_agent_name: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    last_updated: datetime = Field(default_factory=utcnow)


class ArchiveRecord(BaseModel):
    """Cold-storage snapshot of a terminated ticket."""

    ticket_id: str
    ticket: Ticket
    conversation: Optional[Conversation] = None
    messages: list[Message] = Field(default_factory=list)
    terminated_by: Optional[TerminatedBy] = None
    terminated_by_id: Optional[str] = None
    terminated_by_name: Optional[str] = None
    terminated_at: Optional[datetime] = None
    archived_at: datetime = Field(default_factory=utcnow)


# --- API payloads ---


class TicketCreate(BaseModel):
    """Payload for opening a ticket."""

    category: Optional[str] = Field(None, description="Category selected by the client")
    message: str = Field(..., min_length=1, description="First message of the client")
    client_phone: Optional[str] = None


class MessageCreate(BaseModel):
    text: str = ""
    type: MessageType = MessageType.TEXT
    data: dict[str, Any] = Field(default_factory=dict)


class AssignRequest(BaseModel):
    agent_name: Optional[str] = Field(None, description="Overrides the identity's display name")


class TypingUpdate(BaseModel):
    is_typing: bool


class BookingRequest(BaseModel):
    """Inputs of the appointment booking transaction."""

    partner_id: str
    participant_names: list[str] = Field(..., description="At least one non-empty name")
    client_id: str
    client_name: str
    client_phone: Optional[str] = None
    client_email: Optional[str] = None
    scheduled_at: datetime
    description: str = ""
    proof_image_url: Optional[str] = None
    ticket_id: Optional[str] = None


class AgentStats(BaseModel):
    agent_id: str
    appointments_booked: int = 0
    terminated_tickets: int = 0
