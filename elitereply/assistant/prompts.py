"""Texts Jey sends and the system prompt given to the completion service."""

from typing import Iterable, Optional

from elitereply.models import Partner

WELCOME_TEXT = "Bonjour{name}, je suis Jey, l'assistant IA d'EliteReply. Comment puis-je vous aider aujourd'hui{category} ?"
AGENT_REQUEST_TEXT = "Bien sûr, je transfère votre demande à un agent humain. Un agent prendra le relais sous peu."
TERMINATION_QUESTION_TEXT = "Souhaitez-vous que je mette fin à cette conversation ?"
TERMINATION_REASK_TEXT = (
    "Je n'ai pas bien compris. Souhaitez-vous terminer la conversation, ou avez-vous une autre question ?"
)
GOODBYE_TEXT = "Merci d'avoir choisi EliteReply, {name}! Je vous souhaite une excellente journée. Au revoir."
CONTINUE_TEXT = "D'accord, je suis là pour vous aider. Que puis-je faire d'autre pour vous ?"
BOOKING_DECLINED_TEXT = "D'accord. Y a-t-il autre chose que je puisse faire pour vous aider ?"
APPOINTMENT_PROMPT_TEXT = "Je comprends que vous souhaitez prendre un rendez-vous. Est-ce exact ?"
APPOINTMENT_FORM_TEXT = "Excellent choix ! Un instant, je prépare le formulaire de rendez-vous."
BOOKING_QUESTION_TEXT = "Excellent choix ! Souhaitez-vous que je procède à la prise de rendez-vous avec {partner} ?"
UNKNOWN_PARTNER_TEXT = (
    "Je n'ai pas reconnu ce partenaire. Pour sélectionner un partenaire, veuillez taper son numéro "
    "(ex: \"1\") dans la liste proposée."
)
FAILURE_TEXT = (
    "Jey rencontre un problème technique et a escaladé votre demande à un agent humain. "
    "Un agent prendra le relais sous peu."
)
COMMAND_FAILURE_TEXT = (
    "Jey rencontre un problème technique et n'a pas pu traiter cette demande. "
    "La conversation reste entre les mains de l'agent."
)

TERMINATION_OPTIONS = [
    {"label": "Oui, terminer", "value": "oui"},
    {"label": "Non, continuer", "value": "non"},
]
BOOKING_OPTIONS = [
    {"label": "Oui", "command": "/confirm_booking_yes"},
    {"label": "Non", "command": "/confirm_booking_no"},
]
APPOINTMENT_PROMPT_OPTIONS = [
    {"label": "Prendre Rendez-vous", "command": "/show_appointment_form"},
]

_SYSTEM_PROMPT = """Tu es Jey, l'assistant IA de service client pour la plateforme "EliteReply". Ton rôle est d'être très professionnel, précis et utile. Parle toujours en français. Ton nom est Jey. Le nom du client est {client_name}. Ne génère PAS d'informations fausses ou inventées. Si tu ne sais pas comment aider, propose d'escalader à un agent humain.

Directive de sécurité absolue:
- Tu ne DOIS JAMAIS suggérer ou créer un partenaire qui n'est PAS dans la liste des partenaires fournis. Tes suggestions DOIVENT provenir EXCLUSIVEMENT de cette liste.
- Ne mentionne AUCUNE entité externe à la plateforme (fournisseur d'IA, moteur de recherche, autre entreprise). Tu es UNIQUEMENT l'assistant IA d'EliteReply.

Liste des partenaires disponibles (ne pas les lister sauf si demandé ou pertinent):
{partners}

{category_instruction}"""


def welcome_text(client_name: str = "", category: Optional[str] = None) -> str:
    return WELCOME_TEXT.format(
        name=f" {client_name}" if client_name else "",
        category=f" avec votre demande dans la catégorie \"{category}\"" if category else "",
    )


def partner_line(partner: Partner) -> str:
    rating = f"{partner.rating:.1f} étoiles" if partner.rating else "Non noté"
    promoted = "Oui" if partner.is_promoted() else "Non"
    return f"{partner.name} (Catégorie: {partner.category or 'Général'}, Note: {rating}, Promu: {promoted})"


def system_prompt(client_name: str, partners: Iterable[Partner], category: Optional[str] = None) -> str:
    """System prompt enumerating only the given partner directory."""
    lines = "; ".join(partner_line(p) for p in partners) or "Aucun partenaire disponible."
    if category:
        instruction = (
            f"La catégorie principale de ce ticket est \"{category}\". Si le client demande une recommandation, "
            "suggère uniquement des partenaires de cette catégorie; si aucun ne correspond, dis-le et propose "
            "d'escalader à un agent humain."
        )
    else:
        instruction = (
            "Si le client demande des partenaires sans préciser de catégorie, demande-lui plus d'informations "
            "sur le type de service recherché."
        )
    return _SYSTEM_PROMPT.format(client_name=client_name or "Client", partners=lines, category_instruction=instruction)
