"""
Jey: one assistant turn per inbound client message (or agent command).

A turn reads the chat history, detects the intent, emits exactly one assistant message
and applies at most one ticket change (escalate, ask/clear the termination question,
terminate + archive). Turns are idempotent per inbound message, and output that arrives
after the ticket left Jey's hands is discarded.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from elitereply import activity
from elitereply.archival import ArchivalService
from elitereply.assistant import prompts
from elitereply.assistant.completion import CompletionService
from elitereply.assistant.intents import (
    Command,
    FollowUpAnswer,
    Intent,
    IntentKind,
    TurnContext,
    detect_intent,
    mentions_escalation,
)
from elitereply.errors import (
    ArchivalTransactionFailed,
    AssistantServiceUnavailable,
    InvalidTransition,
)
from elitereply.messages import MessageLog, assistant_message, system_message
from elitereply.models import (
    JEY_NAME,
    JEY_SENDER_ID,
    Message,
    MessageType,
    TerminatedBy,
    Ticket,
    TicketStatus,
)
from elitereply.notifications import MESSAGE_SENT, TICKET_ESCALATED, NotificationDispatcher
from elitereply.presence import TypingPresence
from elitereply.ranking import suggest_partners
from elitereply.store import Store
from elitereply.ticket_machine import ESCALATION_TEXT, TicketStateMachine

logger = logging.getLogger(__name__)

REASON_AGENT_REQUEST = "Demande Agent"
REASON_ASSISTANT_ESCALATION = "Escalade Jey"
REASON_UNAVAILABLE = "assistant-unavailable"


@dataclass
class Outcome:
    """What a turn wants to do: one message plus at most one ticket change."""

    message: Message
    escalate_reason: Optional[str] = None
    ask_termination: bool = False
    clear_termination: bool = False
    terminate: bool = False


def _inbound(history: list[Message], message_id: Optional[str]) -> Optional[Message]:
    """The message this turn answers: `message_id`, else the latest non-system, non-Jey message."""
    candidates = [m for m in history if not m.is_system and not m.is_from_assistant]
    if message_id:
        return next((m for m in candidates if m.id == message_id), None)
    return candidates[-1] if candidates else None


def _last_assistant(history: list[Message], type: Optional[MessageType] = None) -> Optional[Message]:
    for m in reversed(history):
        if m.is_from_assistant and (type is None or m.type == type):
            return m
    return None


def completion_history(history: list[Message]) -> list[dict[str, str]]:
    """Role-tagged history for the completion service (system entries excluded)."""
    return [
        {"role": "assistant" if m.is_from_assistant else "user", "content": m.text}
        for m in history
        if not m.is_system and m.text
    ]


class JeyOrchestrator:
    def __init__(
        self,
        store: Store,
        machine: TicketStateMachine,
        completion: CompletionService,
        archival: Optional[ArchivalService] = None,
        presence: Optional[TypingPresence] = None,
        notifier: Optional[NotificationDispatcher] = None,
    ):
        self.store = store
        self.machine = machine
        self.completion = completion
        self.archival = archival or ArchivalService(store, machine)
        self.presence = presence or TypingPresence(store)
        self.notifier = notifier or NotificationDispatcher()
        self.log = MessageLog(store)

    @staticmethod
    def accepts(ticket: Ticket, inbound: Message) -> bool:
        """Jey answers while it handles the ticket; agent commands are accepted on any live ticket."""
        if ticket.is_terminated or ticket.archived_at is not None:
            return False
        if inbound.type == MessageType.COMMAND_TO_ASSISTANT:
            return True
        return ticket.status == TicketStatus.ASSISTANT_HANDLING

    def context(self, ticket: Ticket, inbound: Message, history: list[Message]) -> TurnContext:
        last = _last_assistant(history)
        shown = []
        if last is not None and last.type == MessageType.PARTNER_SUGGESTION_LIST:
            shown = list(last.data.get("partners", []))
        return TurnContext(
            ticket=ticket,
            text=inbound.text,
            message_type=inbound.type,
            partners=self.store.list_partners(),
            shown_partners=shown,
            suggestion_shown=any(
                m.is_from_assistant and m.type == MessageType.PARTNER_SUGGESTION_LIST for m in history
            ),
            has_assistant_message=last is not None,
        )

    async def respond(self, ticket_id: str, message_id: Optional[str] = None) -> Optional[Message]:
        """Run one turn. Returns Jey's confirmed message, or None when nothing was sent."""
        ticket = self.machine.get(ticket_id)
        history = self.log.history(ticket_id)
        inbound = _inbound(history, message_id)
        if inbound is None:
            logger.debug("Ticket %s: no inbound message to answer.", ticket_id)
            return None
        if ticket.jey_last_responded_message_id == inbound.id:
            logger.info("Ticket %s: message %s already answered; skipping.", ticket_id, inbound.id)
            return None
        if not self.accepts(ticket, inbound):
            logger.debug("Ticket %s is %s; Jey stays silent.", ticket_id, ticket.phase)
            return None

        ctx = self.context(ticket, inbound, history)
        intent = detect_intent(ctx)
        logger.info("Ticket %s: intent %s for message %s.", ticket_id, intent.kind.value, inbound.id)

        async with self.presence.assistant_typing(ticket_id):
            try:
                outcome = await self._dispatch(ticket, intent, ctx, history)
            except AssistantServiceUnavailable as e:
                return self._fail(ticket_id, inbound, e)

        fresh = self.machine.get(ticket_id)
        if not self.accepts(fresh, inbound):
            logger.warning("Ticket %s moved to %s during the turn; discarding Jey's reply.", ticket_id, fresh.phase)
            return None
        return self._apply(ticket_id, inbound, outcome)

    # --- dispatch ---

    async def _dispatch(self, ticket: Ticket, intent: Intent, ctx: TurnContext, history: list[Message]) -> Outcome:
        tid = ticket.id
        if intent.kind == IntentKind.EXPLICIT_COMMAND:
            return self._command(tid, intent, history)

        if intent.kind == IntentKind.PENDING_FOLLOW_UP:
            if intent.answer == FollowUpAnswer.CONFIRM:
                text = prompts.GOODBYE_TEXT.format(name=ticket.client_name or "cher client")
                return Outcome(assistant_message(tid, text), terminate=True)
            if intent.answer == FollowUpAnswer.REFUSE:
                return Outcome(assistant_message(tid, prompts.CONTINUE_TEXT), clear_termination=True)
            return Outcome(self._termination_question(tid, prompts.TERMINATION_REASK_TEXT))

        if intent.kind == IntentKind.AGENT_REQUEST:
            return Outcome(assistant_message(tid, prompts.AGENT_REQUEST_TEXT), escalate_reason=REASON_AGENT_REQUEST)

        if intent.kind == IntentKind.TERMINATION_INTENT:
            return Outcome(self._termination_question(tid, prompts.TERMINATION_QUESTION_TEXT), ask_termination=True)

        if intent.kind == IntentKind.BOOKING_INTENT:
            return Outcome(self._appointment_prompt(tid))

        if intent.kind == IntentKind.PARTNER_REQUEST:
            if intent.wants_suggestions:
                return Outcome(self._suggestions(ticket, ctx))
            if intent.partner is not None:
                return Outcome(self._booking_question(tid, intent.partner))
            return Outcome(assistant_message(tid, prompts.UNKNOWN_PARTNER_TEXT))

        return await self._fallback(ticket, ctx, history)

    def _command(self, tid: str, intent: Intent, history: list[Message]) -> Outcome:
        if intent.command == Command.SELECT_PARTNER:
            if intent.partner is None:
                return Outcome(assistant_message(tid, prompts.UNKNOWN_PARTNER_TEXT))
            return Outcome(self._booking_question(tid, intent.partner))
        if intent.command == Command.CONFIRM_BOOKING_YES:
            asked = _last_assistant(history, MessageType.BOOKING_CONFIRMATION_REQUEST)
            data = {k: asked.data[k] for k in ("partner_id", "partner_name") if asked and k in asked.data}
            return Outcome(assistant_message(tid, prompts.APPOINTMENT_FORM_TEXT, MessageType.APPOINTMENT_FORM_TRIGGER, data))
        if intent.command == Command.CONFIRM_BOOKING_NO:
            return Outcome(assistant_message(tid, prompts.BOOKING_DECLINED_TEXT), ask_termination=True)
        if intent.command == Command.SHOW_APPOINTMENT_FORM:
            return Outcome(assistant_message(tid, prompts.APPOINTMENT_FORM_TEXT, MessageType.APPOINTMENT_FORM_TRIGGER))
        return Outcome(self._appointment_prompt(tid))

    def _termination_question(self, tid: str, text: str) -> Message:
        return assistant_message(
            tid, text, MessageType.TERMINATION_CONFIRMATION_REQUEST, {"options": prompts.TERMINATION_OPTIONS}
        )

    def _appointment_prompt(self, tid: str) -> Message:
        return assistant_message(
            tid,
            prompts.APPOINTMENT_PROMPT_TEXT,
            MessageType.APPOINTMENT_REQUEST_PROMPT,
            {"options": prompts.APPOINTMENT_PROMPT_OPTIONS},
        )

    def _booking_question(self, tid: str, partner: dict[str, Any]) -> Message:
        return assistant_message(
            tid,
            prompts.BOOKING_QUESTION_TEXT.format(partner=partner["name"]),
            MessageType.BOOKING_CONFIRMATION_REQUEST,
            {"partner_id": partner["id"], "partner_name": partner["name"], "options": prompts.BOOKING_OPTIONS},
        )

    def _suggestions(self, ticket: Ticket, ctx: TurnContext) -> Message:
        suggestion = suggest_partners(
            ctx.partners,
            category=ticket.category,
            text=ctx.text,
            all_categories=not ticket.category,
        )
        if suggestion.is_empty:
            return assistant_message(ticket.id, suggestion.text, data={"needs_more_info": suggestion.needs_more_info})
        return assistant_message(
            ticket.id,
            suggestion.text,
            MessageType.PARTNER_SUGGESTION_LIST,
            {"partners": suggestion.partners, "category": ticket.category},
        )

    async def _fallback(self, ticket: Ticket, ctx: TurnContext, history: list[Message]) -> Outcome:
        if not ctx.has_assistant_message:
            return Outcome(assistant_message(ticket.id, prompts.welcome_text(ticket.client_name, ticket.category)))
        system_prompt = prompts.system_prompt(ticket.client_name, ctx.partners, ticket.category)
        text = await self.completion.complete(system_prompt, completion_history(history))
        reason = REASON_ASSISTANT_ESCALATION if mentions_escalation(text) else None
        return Outcome(assistant_message(ticket.id, text), escalate_reason=reason)

    # --- effects ---

    def _apply(self, ticket_id: str, inbound: Message, outcome: Outcome) -> Optional[Message]:
        try:
            confirmed = self.machine.record_message(ticket_id, outcome.message)
        except InvalidTransition as e:
            # Another process terminated or archived the ticket after the last check.
            logger.warning("Ticket %s: discarding Jey's reply (%s).", ticket_id, e.reason)
            return None
        self.machine.mark_responded(ticket_id, inbound.id)
        self.notifier.fire(MESSAGE_SENT, {
            "ticket_id": ticket_id,
            "message_id": confirmed.id,
            "sender_id": JEY_SENDER_ID,
            "type": confirmed.type.value,
        })

        if outcome.escalate_reason:
            try:
                self._escalate(ticket_id, outcome.escalate_reason)
            except InvalidTransition as e:
                # Agent commands run on tickets a human already holds.
                logger.info("Ticket %s not escalated: %s", ticket_id, e)
        elif outcome.ask_termination:
            self.machine.ask_termination_confirmation(ticket_id)
        elif outcome.clear_termination:
            self.machine.clear_termination_request(ticket_id)
        elif outcome.terminate:
            self.machine.terminate(ticket_id, TerminatedBy.ASSISTANT, JEY_SENDER_ID, JEY_NAME)
            activity.emit("ticket_terminated", ticket_id, by=TerminatedBy.ASSISTANT.value)
            try:
                self.archival.archive(ticket_id)
            except ArchivalTransactionFailed as e:
                logger.error("Ticket %s terminated by Jey but not archived: %s", ticket_id, e)
        return confirmed

    def _escalate(self, ticket_id: str, reason: str, text: str = ESCALATION_TEXT) -> None:
        self.machine.escalate(ticket_id, reason, text)
        self.notifier.fire(TICKET_ESCALATED, {"ticket_id": ticket_id, "reason": reason})
        activity.emit("ticket_escalated", ticket_id, reason=reason)

    def _fail(self, ticket_id: str, inbound: Message, error: AssistantServiceUnavailable) -> None:
        """Degraded service: always a visible notice, plus escalation while Jey holds the ticket."""
        logger.warning("Ticket %s: assistant unavailable (%s).", ticket_id, error)
        try:
            ticket = self.machine.mark_responded(ticket_id, inbound.id)
            if ticket.status == TicketStatus.ASSISTANT_HANDLING:
                self._escalate(ticket_id, REASON_UNAVAILABLE, prompts.FAILURE_TEXT)
            else:
                # A human already holds or queues the ticket (agent command turn).
                notice = system_message(ticket_id, prompts.COMMAND_FAILURE_TEXT, {"reason": REASON_UNAVAILABLE})
                self.machine.record_message(ticket_id, notice)
        except InvalidTransition as e:
            logger.info("Ticket %s closed before the failure notice could be posted: %s", ticket_id, e)
