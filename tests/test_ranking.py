"""
Unit tests for partner ranking and suggestions (no server required).
Run: pytest tests/test_ranking.py -v
"""

from datetime import date

from elitereply.models import Partner
from elitereply.ranking import (
    NEEDS_MORE_INFO_TEXT,
    SELECTION_HINT,
    rank_partners,
    resolve_selection,
    suggest_partners,
)

SPA_A = Partner(id="a", name="Zen Spa", category="Spa", rating=4.0, promoted=False)
SPA_B = Partner(id="b", name="Le Spa", category="Spa", rating=3.0, promoted=True)
GARAGE = Partner(id="g", name="Garage Central", category="Automobile", rating=5.0)


class TestRankPartners:
    def test_promoted_before_rating(self):
        ranked = rank_partners([SPA_A, SPA_B], category="Spa")
        assert [p.id for p in ranked] == ["b", "a"]

    def test_category_match_ignores_case_and_accents(self):
        sante = Partner(id="s", name="Clinique", category="Santé", rating=4.0)
        assert [p.id for p in rank_partners([sante, GARAGE], category="SANTE")] == ["s"]

    def test_rating_descending_within_same_promotion(self):
        low = Partner(id="low", name="Spa Un", category="Spa", rating=2.0)
        high = Partner(id="high", name="Spa Deux", category="Spa", rating=4.5)
        assert [p.id for p in rank_partners([low, high], category="Spa")] == ["high", "low"]

    def test_expired_promotion_is_ignored(self):
        expired = Partner(
            id="old", name="Spa Ancien", category="Spa", rating=1.0,
            promoted=True, promotion_end_date=date(2020, 1, 1),
        )
        ranked = rank_partners([expired, SPA_A], category="Spa", today=date(2026, 1, 1))
        assert [p.id for p in ranked] == ["a", "old"]

    def test_keyword_filter_narrows_candidates(self):
        ranked = rank_partners([SPA_A, SPA_B, GARAGE], text="je cherche un garage", all_categories=True)
        assert [p.id for p in ranked] == ["g"]

    def test_empty_filter_falls_back_to_category(self):
        ranked = rank_partners([SPA_A, SPA_B], category="Spa", text="quelque chose de relaxant")
        assert {p.id for p in ranked} == {"a", "b"}

    def test_name_mention_is_a_candidate(self):
        ranked = rank_partners([SPA_A, GARAGE], category="Spa", text="Garage Central est ouvert ?")
        assert "g" in [p.id for p in ranked]


class TestSuggestPartners:
    def test_numbered_list_and_payload(self):
        suggestion = suggest_partners([SPA_A, SPA_B, GARAGE], category="Spa")
        assert [p["id"] for p in suggestion.partners] == ["b", "a"]
        assert "1. Le Spa" in suggestion.text
        assert "2. Zen Spa" in suggestion.text
        assert SELECTION_HINT in suggestion.text

    def test_limit(self):
        partners = [Partner(id=str(i), name=f"Spa {i}", category="Spa", rating=i) for i in range(5)]
        assert len(suggest_partners(partners, category="Spa", limit=3).partners) == 3

    def test_needs_more_info_without_category(self):
        suggestion = suggest_partners([SPA_A], text="bonjour")
        assert suggestion.needs_more_info
        assert suggestion.is_empty
        assert suggestion.text == NEEDS_MORE_INFO_TEXT

    def test_no_match_for_category(self):
        suggestion = suggest_partners([GARAGE], category="Spa")
        assert suggestion.is_empty
        assert not suggestion.needs_more_info
        assert "Spa" in suggestion.text


class TestResolveSelection:
    shown = [{"id": "b", "name": "Le Spa"}, {"id": "a", "name": "Zen Spa"}]

    def test_by_number(self):
        assert resolve_selection(self.shown, "2")["id"] == "a"

    def test_out_of_range(self):
        assert resolve_selection(self.shown, "3") is None
        assert resolve_selection(self.shown, "0") is None

    def test_by_id(self):
        assert resolve_selection(self.shown, "b")["name"] == "Le Spa"

    def test_empty_choice(self):
        assert resolve_selection(self.shown, " ") is None
