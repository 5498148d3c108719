"""REST API for the EliteReply support desk: tickets, chat, Jey, partners and appointments."""

import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from elitereply.activity import emit as activity_emit, recent as activity_recent, start_redis_subscriber
from elitereply.config import REDIS_URL, STORE_BACKEND
from elitereply.desk import SupportDesk, build_desk
from elitereply.errors import (
    AppointmentNotFound,
    ArchivalTransactionFailed,
    AssistantServiceUnavailable,
    BookingTransactionFailed,
    InvalidTransition,
    TicketNotFound,
)
from elitereply.models import (
    ActorRole,
    AgentStats,
    Appointment,
    ArchiveRecord,
    AssignRequest,
    BookingRequest,
    Identity,
    Message,
    MessageCreate,
    Partner,
    PartnerReservation,
    Ticket,
    TicketCreate,
    TicketStatus,
    TypingUpdate,
)
from elitereply.presence import IDLE_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

_arq_pool = None
_desk: Optional[SupportDesk] = None


def get_desk() -> SupportDesk:
    global _desk
    if _desk is None:
        _desk = build_desk()
    return _desk


def get_identity(
    x_user_id: str = Header(..., description="Acting user id"),
    x_user_name: str = Header("", description="Acting user display name"),
    x_user_role: ActorRole = Header(ActorRole.CLIENT, description="client or agent"),
) -> Identity:
    """Identity as supplied by the identity provider (trusted as given)."""
    return Identity(user_id=x_user_id, display_name=x_user_name, role=x_user_role)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _arq_pool
    _arq_pool = None
    if STORE_BACKEND == "redis":
        try:
            from arq import create_pool
            from arq.connections import RedisSettings
            _arq_pool = await create_pool(RedisSettings.from_dsn(REDIS_URL))
        except Exception as e:
            logger.warning("Redis/ARQ pool unavailable: %s. Jey turns will run in-process.", e)
        start_redis_subscriber()
    desk = app.dependency_overrides.get(get_desk, get_desk)()
    try:
        yield
    finally:
        await desk.notifier.drain()
        if _arq_pool is not None:
            await _arq_pool.close()
            _arq_pool = None


app = FastAPI(
    title="EliteReply Support Desk",
    description="Ticket lifecycle, Jey assistant, partner suggestions and appointment booking.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["Content-Type", "Authorization", "X-User-Id", "X-User-Name", "X-User-Role"],
)


# --- error mapping ---


@app.exception_handler(TicketNotFound)
async def _ticket_not_found(request: Request, exc: TicketNotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(AppointmentNotFound)
async def _appointment_not_found(request: Request, exc: AppointmentNotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidTransition)
async def _invalid_transition(request: Request, exc: InvalidTransition) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc), "action": exc.action})


@app.exception_handler(BookingTransactionFailed)
async def _booking_failed(request: Request, exc: BookingTransactionFailed) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc), "retry": True})


@app.exception_handler(ArchivalTransactionFailed)
async def _archival_failed(request: Request, exc: ArchivalTransactionFailed) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={"detail": str(exc), "terminated": True, "retry": f"/tickets/{exc.ticket_id}/archive"},
    )


@app.exception_handler(AssistantServiceUnavailable)
async def _assistant_unavailable(request: Request, exc: AssistantServiceUnavailable) -> JSONResponse:
    return JSONResponse(status_code=503, content={"detail": str(exc)})


# --- Jey turns ---


async def _run_turn(desk: SupportDesk, ticket_id: str, message_id: str) -> None:
    try:
        await desk.run_assistant_turn(ticket_id, message_id)
    except Exception:
        logger.exception("Jey turn failed for ticket %s (message %s).", ticket_id, message_id)


async def _schedule_turn(desk: SupportDesk, background: BackgroundTasks, ticket_id: str, message_id: str) -> str:
    """Enqueue to the worker when a pool is available, else run after the response."""
    job_id = f"jey:{ticket_id}:{message_id}"
    pool = _arq_pool
    if pool is not None:
        await pool.enqueue_job("run_assistant_turn", ticket_id, message_id, _job_id=job_id)
    else:
        background.add_task(_run_turn, desk, ticket_id, message_id)
    return job_id


# --- tickets ---


class TicketOpened(BaseModel):
    ticket: Ticket
    message: Message = Field(..., description="The client's first message")
    phase: str
    assistant_job_id: Optional[str] = None


class TicketDetail(BaseModel):
    ticket: Ticket
    phase: str
    handler: str


class MessagePosted(BaseModel):
    message: Message
    assistant_job_id: Optional[str] = None


class TicketTerminated(BaseModel):
    ticket: Ticket
    archive: ArchiveRecord


def _detail(ticket: Ticket) -> TicketDetail:
    return TicketDetail(ticket=ticket, phase=ticket.phase, handler=ticket.handler)


@app.post("/tickets", status_code=201, response_model=TicketOpened)
async def open_ticket(
    payload: TicketCreate,
    background: BackgroundTasks,
    identity: Identity = Depends(get_identity),
    desk: SupportDesk = Depends(get_desk),
) -> TicketOpened:
    """Open a ticket handled by Jey; Jey answers the first message in the background."""
    ticket, first = await desk.open_ticket(identity, payload)
    job_id = await _schedule_turn(desk, background, ticket.id, first.id)
    return TicketOpened(ticket=ticket, message=first, phase=ticket.phase, assistant_job_id=job_id)


@app.get("/tickets", response_model=list[Ticket])
def list_tickets(
    status: Optional[TicketStatus] = None,
    agent_queue: bool = False,
    desk: SupportDesk = Depends(get_desk),
) -> list[Ticket]:
    """List tickets. agent_queue=true: live tickets plus those awaiting human closure."""
    return desk.list_tickets(status=status, agent_queue=agent_queue)


@app.get("/tickets/{ticket_id}", response_model=TicketDetail)
def get_ticket(ticket_id: str, desk: SupportDesk = Depends(get_desk)) -> TicketDetail:
    return _detail(desk.get_ticket(ticket_id))


@app.get("/tickets/{ticket_id}/messages", response_model=list[Message])
def list_messages(ticket_id: str, desk: SupportDesk = Depends(get_desk)) -> list[Message]:
    """Confirmed messages, ascending by creation time."""
    return desk.messages(ticket_id)


@app.post("/tickets/{ticket_id}/messages", status_code=201, response_model=MessagePosted)
async def post_message(
    ticket_id: str,
    payload: MessageCreate,
    background: BackgroundTasks,
    identity: Identity = Depends(get_identity),
    desk: SupportDesk = Depends(get_desk),
) -> MessagePosted:
    message = await desk.post_message(ticket_id, identity, payload)
    job_id = None
    if desk.needs_assistant_turn(ticket_id, message):
        job_id = await _schedule_turn(desk, background, ticket_id, message.id)
    return MessagePosted(message=message, assistant_job_id=job_id)


@app.post("/tickets/{ticket_id}/request-agent", response_model=TicketDetail)
async def request_agent(
    ticket_id: str,
    identity: Identity = Depends(get_identity),
    desk: SupportDesk = Depends(get_desk),
) -> TicketDetail:
    return _detail(await desk.request_agent(ticket_id, identity))


@app.post("/tickets/{ticket_id}/assign", response_model=TicketDetail)
async def assign_ticket(
    ticket_id: str,
    payload: Optional[AssignRequest] = None,
    identity: Identity = Depends(get_identity),
    desk: SupportDesk = Depends(get_desk),
) -> TicketDetail:
    """Agent takes over the ticket (409 if another agent holds it)."""
    name = payload.agent_name if payload else None
    return _detail(await desk.assign(ticket_id, identity, name))


@app.post("/tickets/{ticket_id}/terminate", response_model=TicketTerminated)
async def terminate_ticket(
    ticket_id: str,
    identity: Identity = Depends(get_identity),
    desk: SupportDesk = Depends(get_desk),
) -> TicketTerminated:
    """Terminate and archive. 503 if archival failed (the ticket stays terminated; retry /archive)."""
    ticket, record = await desk.terminate(ticket_id, identity)
    return TicketTerminated(ticket=ticket, archive=record)


@app.post("/tickets/{ticket_id}/close", response_model=TicketDetail)
async def close_ticket(
    ticket_id: str,
    identity: Identity = Depends(get_identity),
    desk: SupportDesk = Depends(get_desk),
) -> TicketDetail:
    """Agent closes a ticket that Jey or the client terminated."""
    return _detail(await desk.close(ticket_id, identity))


@app.post("/tickets/{ticket_id}/archive", response_model=ArchiveRecord)
async def archive_ticket(ticket_id: str, desk: SupportDesk = Depends(get_desk)) -> ArchiveRecord:
    """Archive (or retry archiving) a terminated ticket."""
    return await desk.archive(ticket_id)


@app.get("/tickets/{ticket_id}/typing")
def get_typing(
    ticket_id: str,
    x_user_id: Optional[str] = Header(None),
    desk: SupportDesk = Depends(get_desk),
) -> dict:
    desk.get_ticket(ticket_id)
    return {
        "typing_users": desk.presence.typing_users(ticket_id, exclude=x_user_id),
        "idle_seconds": IDLE_TIMEOUT_SECONDS,
    }


@app.put("/tickets/{ticket_id}/typing")
def put_typing(
    ticket_id: str,
    payload: TypingUpdate,
    identity: Identity = Depends(get_identity),
    desk: SupportDesk = Depends(get_desk),
) -> dict:
    """Set/clear the caller's typing entry; returns who else is typing."""
    return {
        "typing_users": desk.set_typing(ticket_id, identity, payload.is_typing),
        "idle_seconds": IDLE_TIMEOUT_SECONDS,
    }


# --- partners & appointments ---


@app.get("/partners", response_model=list[Partner])
def list_partners(desk: SupportDesk = Depends(get_desk)) -> list[Partner]:
    return desk.partners()


@app.get("/partners/suggestions")
def partner_suggestions(
    category: Optional[str] = None,
    q: str = "",
    desk: SupportDesk = Depends(get_desk),
) -> dict[str, Any]:
    """Top partners for a category and/or free text, promoted first."""
    suggestion = desk.suggest(category=category, text=q)
    return {
        "text": suggestion.text,
        "partners": suggestion.partners,
        "needs_more_info": suggestion.needs_more_info,
    }


@app.get("/partners/{partner_id}/reservations", response_model=list[PartnerReservation])
def partner_reservations(partner_id: str, desk: SupportDesk = Depends(get_desk)) -> list[PartnerReservation]:
    return desk.reservations(partner_id)


@app.post("/appointments", status_code=201, response_model=Appointment)
async def book_appointment(
    payload: BookingRequest,
    identity: Identity = Depends(get_identity),
    desk: SupportDesk = Depends(get_desk),
) -> Appointment:
    return await desk.book(payload, identity)


@app.put("/appointments/{appointment_id}", response_model=Appointment)
async def edit_appointment(
    appointment_id: str,
    payload: BookingRequest,
    identity: Identity = Depends(get_identity),
    desk: SupportDesk = Depends(get_desk),
) -> Appointment:
    return await desk.edit_booking(appointment_id, payload, identity)


@app.post("/appointments/{appointment_id}/cancel", response_model=Appointment)
async def cancel_appointment(appointment_id: str, desk: SupportDesk = Depends(get_desk)) -> Appointment:
    return await desk.cancel_booking(appointment_id)


@app.delete("/appointments/{appointment_id}")
async def delete_appointment(appointment_id: str, desk: SupportDesk = Depends(get_desk)) -> dict:
    """Delete the appointment and its partner mirror together."""
    deleted = await desk.delete_booking(appointment_id)
    activity_emit("appointment_deleted", deleted.ticket_id, appointment_id=appointment_id, partner_id=deleted.partner_id)
    return {"status": "deleted", "appointment_id": appointment_id}


@app.get("/agents/{agent_id}/stats", response_model=AgentStats)
def agent_stats(agent_id: str, desk: SupportDesk = Depends(get_desk)) -> AgentStats:
    return desk.agent_stats(agent_id)


@app.get("/activity")
def get_activity(limit: int = 100, ticket_id: Optional[str] = None) -> dict:
    """Recent desk events (tickets opened, escalated, assigned, terminated, archived, bookings), optionally for one ticket."""
    if limit < 1 or limit > 200:
        limit = 100
    return {"events": activity_recent(limit=limit, ticket_id=ticket_id)}


@app.get("/health")
def health(desk: SupportDesk = Depends(get_desk)) -> dict:
    """Health check (store backend, worker pool, Jey completion service and circuit state)."""
    return {
        "status": "ok",
        "store": STORE_BACKEND,
        "worker_pool": _arq_pool is not None,
        "jey": desk.jey.completion.health(),
    }
