"""
Partner ranking: candidate selection, keyword filter, promoted-first ordering.

Jey shows the top partners as a numbered list and stores the same ordered list in the
message payload, so a later "select partner N" resolves against exactly what was shown.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable, Optional

from elitereply.config import PARTNER_SUGGESTION_LIMIT
from elitereply.models import Partner
from elitereply.text_norm import fold, tokens

logger = logging.getLogger(__name__)

NEEDS_MORE_INFO_TEXT = (
    "Pour vous suggérer des partenaires pertinents, j'ai besoin de plus d'informations sur le "
    "type de service que vous recherchez. Pouvez-vous préciser votre demande ?"
)
NO_MATCH_TEXT = (
    "Je n'ai trouvé aucun partenaire pertinent pour la catégorie \"{category}\". "
    "Puis-je vous aider avec autre chose, ou souhaitez-vous être mis en relation avec un agent humain ?"
)
SELECTION_HINT = "Pour sélectionner un partenaire, veuillez taper son numéro (ex: \"1\")."


@dataclass
class PartnerSuggestion:
    """Result of a suggestion request: display text plus the structured list that was shown."""

    text: str
    partners: list[dict[str, Any]] = field(default_factory=list)
    needs_more_info: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.partners


def _mentioned(partner: Partner, folded_text: str) -> bool:
    name = fold(partner.name)
    return bool(name) and name in folded_text


def _candidates(
    partners: list[Partner],
    category: Optional[str],
    folded_text: str,
    all_categories: bool,
) -> list[Partner]:
    if all_categories:
        return list(partners)
    wanted = fold(category) if category else ""
    return [
        p for p in partners
        if (wanted and fold(p.category) == wanted) or _mentioned(p, folded_text)
    ]


def _keyword_filter(candidates: list[Partner], words: list[str]) -> list[Partner]:
    return [
        p for p in candidates
        if any(w in fold(p.name) or w in fold(p.category) for w in words)
    ]


def rank_partners(
    partners: Iterable[Partner],
    category: Optional[str] = None,
    text: str = "",
    all_categories: bool = False,
    today: Optional[date] = None,
) -> list[Partner]:
    """
    Rank partners for a category and/or the latest client message.

    1. Candidates: category match (case/accent-insensitive), name mentioned in `text`,
       or the whole directory when `all_categories`.
    2. Keep candidates whose name or category contains a word (> 2 chars) of `text`;
       when that empties the list and a category was given, keep the unfiltered candidates.
    3. Promoted first (stable), then rating descending.
    """
    directory = list(partners)
    folded_text = fold(text)
    candidates = _candidates(directory, category, folded_text, all_categories)
    filtered = _keyword_filter(candidates, tokens(text))
    if not filtered and category:
        filtered = candidates
    return sorted(filtered, key=lambda p: (not p.is_promoted(today), -p.rating))


def partner_payload(partner: Partner, today: Optional[date] = None) -> dict[str, Any]:
    return {
        "id": partner.id,
        "name": partner.name,
        "category": partner.category,
        "rating": partner.rating,
        "promoted": partner.is_promoted(today),
        "promotion_end_date": partner.promotion_end_date.isoformat() if partner.promotion_end_date else None,
    }


def format_suggestions(payload: list[dict[str, Any]], category: Optional[str]) -> str:
    heading = f"J'ai trouvé les partenaires suivants dans la catégorie \"{category or 'que vous recherchez'}\":"
    lines = [heading, ""]
    for i, p in enumerate(payload, start=1):
        rating = f"{p['rating']:.1f} étoiles" if p.get("rating") else "Non noté"
        promo = " ⭐ Promotion" if p.get("promoted") else ""
        lines.append(f"{i}. {p['name']} (Catégorie: {p['category']}, Note: {rating}){promo}")
    lines.extend(["", SELECTION_HINT])
    return "\n".join(lines)


def suggest_partners(
    partners: Iterable[Partner],
    category: Optional[str] = None,
    text: str = "",
    all_categories: bool = False,
    limit: int = PARTNER_SUGGESTION_LIMIT,
    today: Optional[date] = None,
) -> PartnerSuggestion:
    """Top `limit` ranked partners as a numbered list and a structured payload."""
    ranked = rank_partners(partners, category=category, text=text, all_categories=all_categories, today=today)
    if not ranked:
        if not category:
            return PartnerSuggestion(text=NEEDS_MORE_INFO_TEXT, needs_more_info=True)
        return PartnerSuggestion(text=NO_MATCH_TEXT.format(category=category))
    payload = [partner_payload(p, today) for p in ranked[:limit]]
    logger.debug("Suggesting %d partners (category=%s).", len(payload), category)
    return PartnerSuggestion(text=format_suggestions(payload, category), partners=payload)


def resolve_selection(shown: list[dict[str, Any]], choice: str) -> Optional[dict[str, Any]]:
    """Resolve a 1-based number or a partner id against the list that was shown."""
    choice = (choice or "").strip()
    if not choice:
        return None
    if choice.isdigit():
        index = int(choice) - 1
        if 0 <= index < len(shown):
            return shown[index]
        return None
    return next((p for p in shown if p.get("id") == choice), None)
