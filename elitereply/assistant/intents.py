"""
Intent detection for Jey: a prioritized rule list evaluated in fixed order.

    ExplicitCommand > PendingFollowUp > AgentRequest > TerminationIntent
        > BookingIntent > PartnerRequest > Fallback

Keyword sets are French, matched on accent/case-folded text at word boundaries.
Only Fallback reaches the text-completion service.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from elitereply.models import MessageType, Partner, Ticket
from elitereply.ranking import resolve_selection
from elitereply.text_norm import fold


class IntentKind(str, Enum):
    EXPLICIT_COMMAND = "ExplicitCommand"
    PENDING_FOLLOW_UP = "PendingFollowUp"
    AGENT_REQUEST = "AgentRequest"
    TERMINATION_INTENT = "TerminationIntent"
    BOOKING_INTENT = "BookingIntent"
    PARTNER_REQUEST = "PartnerRequest"
    FALLBACK = "Fallback"


class Command(str, Enum):
    SELECT_PARTNER = "/select_partner_"
    CONFIRM_BOOKING_YES = "/confirm_booking_yes"
    CONFIRM_BOOKING_NO = "/confirm_booking_no"
    SHOW_APPOINTMENT_FORM = "/show_appointment_form"
    REQUEST_APPOINTMENT = "/demander_rendez_vous"


class FollowUpAnswer(str, Enum):
    CONFIRM = "confirm"
    REFUSE = "refuse"
    AMBIGUOUS = "ambiguous"


def _keyword_re(keywords: list[str]) -> re.Pattern:
    alternatives = "|".join(re.escape(fold(k)) for k in sorted(keywords, key=len, reverse=True))
    return re.compile(rf"(?<!\w)(?:{alternatives})(?!\w)")


CONFIRM_KEYWORDS = ["oui", "yes", "ok", "accepte", "terminer", "mettre fin", "finir", "c'est tout"]
REFUSE_KEYWORDS = ["non", "pas encore", "continue", "encore", "besoin", "aide", "non merci", "non, merci"]
AGENT_REQUEST_KEYWORDS = [
    "passe moi un agent",
    "passez moi un agent",
    "je souhaite parler a un agent",
    "je veux parler a un agent",
    "un agent s'il vous plait",
    "un agent svp",
    "agent humain",
    "parler a un humain",
]
TERMINATION_KEYWORDS = [
    "merci jey",
    "merci beaucoup",
    "c'est tout",
    "pas besoin",
    "au revoir",
    "bye",
    "goodbye",
    "rien d'autre",
    "j'ai tout ce qu'il me faut",
]
BOOKING_KEYWORDS = [
    "rendez-vous",
    "rendez vous",
    "rdv",
    "prendre rendez-vous",
    "reservation",
    "reserver",
    "faire une reservation",
    "disponibilite",
]
PARTNER_KEYWORDS = [
    "partenaire",
    "recommander",
    "service",
    "agence",
    "hotel",
    "clinique",
    "restaurant",
    "voyage",
    "sante",
    "bien-etre",
    "chauffeur",
    "taxi",
]
# Phrases in Jey's own reply that hand the ticket to a human.
ESCALATION_RESPONSE_KEYWORDS = [
    "escalader",
    "agent humain",
    "prendre le relais",
    "je ne comprends pas",
    "je ne peux pas vous aider",
    "je ne suis pas sur",
    "transfert a un agent",
]

_confirm_re = _keyword_re(CONFIRM_KEYWORDS)
_refuse_re = _keyword_re(REFUSE_KEYWORDS)
_agent_re = _keyword_re(AGENT_REQUEST_KEYWORDS)
_termination_re = _keyword_re(TERMINATION_KEYWORDS)
_booking_re = _keyword_re(BOOKING_KEYWORDS)
_partner_re = _keyword_re(PARTNER_KEYWORDS)
_escalation_re = _keyword_re(ESCALATION_RESPONSE_KEYWORDS)

_select_command_re = re.compile(r"^/select_partner_(\S+)$")
_selection_phrase_re = re.compile(
    r"^(?:je (?:choisis|selectionne)|mon choix est|je voudrais) le partenaire (?:n°?|numero)?\s*(\d+)$"
)


@dataclass
class TurnContext:
    """Everything the rules look at for one turn."""

    ticket: Ticket
    text: str
    message_type: MessageType = MessageType.TEXT
    partners: list[Partner] = field(default_factory=list)
    shown_partners: list[dict[str, Any]] = field(default_factory=list)
    suggestion_shown: bool = False
    has_assistant_message: bool = False

    @property
    def folded(self) -> str:
        return fold(self.text)


@dataclass
class Intent:
    kind: IntentKind
    command: Optional[Command] = None
    answer: Optional[FollowUpAnswer] = None
    partner: Optional[dict[str, Any]] = None
    selection_failed: bool = False

    @property
    def wants_suggestions(self) -> bool:
        return self.kind == IntentKind.PARTNER_REQUEST and self.partner is None and not self.selection_failed


def mentions_escalation(text: str) -> bool:
    return bool(_escalation_re.search(fold(text)))


def classify_follow_up(text: str) -> FollowUpAnswer:
    """Reply to the termination question. Confirmation is checked first."""
    folded = fold(text)
    if _confirm_re.search(folded):
        return FollowUpAnswer.CONFIRM
    if _refuse_re.search(folded):
        return FollowUpAnswer.REFUSE
    return FollowUpAnswer.AMBIGUOUS


def _explicit_command(ctx: TurnContext) -> Optional[Intent]:
    text = ctx.text.strip()
    if not text.startswith("/"):
        return None
    match = _select_command_re.match(text)
    if match:
        partner = resolve_selection(ctx.shown_partners, match.group(1))
        if partner is None:
            directory = {p.id: p for p in ctx.partners}
            if match.group(1) in directory:
                p = directory[match.group(1)]
                partner = {"id": p.id, "name": p.name, "category": p.category}
        return Intent(IntentKind.EXPLICIT_COMMAND, Command.SELECT_PARTNER, partner=partner, selection_failed=partner is None)
    for command in (
        Command.CONFIRM_BOOKING_YES,
        Command.CONFIRM_BOOKING_NO,
        Command.SHOW_APPOINTMENT_FORM,
        Command.REQUEST_APPOINTMENT,
    ):
        if text == command.value:
            return Intent(IntentKind.EXPLICIT_COMMAND, command)
    return None


def _pending_follow_up(ctx: TurnContext) -> Optional[Intent]:
    if not ctx.ticket.jey_asked_to_terminate:
        return None
    return Intent(IntentKind.PENDING_FOLLOW_UP, answer=classify_follow_up(ctx.text))


def _agent_request(ctx: TurnContext) -> Optional[Intent]:
    if _agent_re.search(ctx.folded):
        return Intent(IntentKind.AGENT_REQUEST)
    return None


def _termination_intent(ctx: TurnContext) -> Optional[Intent]:
    if _termination_re.search(ctx.folded):
        return Intent(IntentKind.TERMINATION_INTENT)
    return None


def _booking_intent(ctx: TurnContext) -> Optional[Intent]:
    if _booking_re.search(ctx.folded):
        return Intent(IntentKind.BOOKING_INTENT)
    return None


def _partner_by_name(ctx: TurnContext) -> Optional[dict[str, Any]]:
    folded = ctx.folded
    candidates = ctx.shown_partners or [
        {"id": p.id, "name": p.name, "category": p.category} for p in ctx.partners
    ]
    for p in candidates:
        name = fold(p.get("name", ""))
        if name and re.search(rf"(?<!\w){re.escape(name)}(?!\w)", folded):
            return p
    return None


def _partner_request(ctx: TurnContext) -> Optional[Intent]:
    folded = ctx.folded
    if ctx.shown_partners:
        number = folded if folded.isdigit() else None
        match = _selection_phrase_re.match(folded)
        if match:
            number = match.group(1)
        if number is not None:
            partner = resolve_selection(ctx.shown_partners, number)
            return Intent(IntentKind.PARTNER_REQUEST, partner=partner, selection_failed=partner is None)
    asked = bool(_partner_re.search(folded))
    if asked or ctx.shown_partners:
        named = _partner_by_name(ctx)
        if named is not None:
            return Intent(IntentKind.PARTNER_REQUEST, partner=named)
    if asked:
        return Intent(IntentKind.PARTNER_REQUEST)
    if ctx.ticket.category and not ctx.suggestion_shown:
        return Intent(IntentKind.PARTNER_REQUEST)
    return None


RULES: list[tuple[IntentKind, Callable[[TurnContext], Optional[Intent]]]] = [
    (IntentKind.EXPLICIT_COMMAND, _explicit_command),
    (IntentKind.PENDING_FOLLOW_UP, _pending_follow_up),
    (IntentKind.AGENT_REQUEST, _agent_request),
    (IntentKind.TERMINATION_INTENT, _termination_intent),
    (IntentKind.BOOKING_INTENT, _booking_intent),
    (IntentKind.PARTNER_REQUEST, _partner_request),
]


def detect_intent(ctx: TurnContext) -> Intent:
    """First matching rule wins; Fallback otherwise."""
    for _, rule in RULES:
        intent = rule(ctx)
        if intent is not None:
            return intent
    return Intent(IntentKind.FALLBACK)
