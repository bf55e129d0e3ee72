"""Scoring service for ranking listings by desirability."""

import logging
import math
import re
from typing import Dict, List, Optional, Tuple

from ..config import FilterSettings
from ..models.listing import Listing, ListingStage, Priority, to_positive_number
from ..utils.text import normalize_area_token

logger = logging.getLogger(__name__)

STUDIO_PATTERN = re.compile(r"studio", re.IGNORECASE)


class ScoringService:
    """
    Score listings with an additive integer score.

    Each term appends a reason string in a fixed order (stage, budget, rooms,
    studio, area, travel); the list is shown to the user as the score's audit
    trail, so the same listing must always produce the same lines.
    """

    STAGE_BONUS = {
        ListingStage.OFF_MARKET: (20, "Stage: +20 (signal off-market)"),
        ListingStage.EARLY_MARKET: (8, "Stage: +8 (direct régie)"),
    }

    BUDGET_POINTS = 45
    BUDGET_FLOOR = -20
    BUDGET_STEP_CHF = 50
    BUDGET_EXPONENT = 1.12

    TRAVEL_FREE_MINUTES = 30
    TRAVEL_STEP_MINUTES = 5

    # A near-miss over budget still counts as a strong listing
    NEAR_BUDGET_MARGIN_CHF = 80

    def __init__(self, filters: FilterSettings, area_bonuses: Optional[Dict[str, int]] = None):
        """
        Initialize scoring service.

        Args:
            filters: Profile filters (budget, hard budget, minimum rooms)
            area_bonuses: Municipality label -> bonus points
        """
        self.budget = filters.max_total_chf
        self.hard_budget = filters.max_total_hard_chf
        self.min_rooms = filters.min_rooms_preferred
        self.area_bonuses: List[Tuple[str, str, int]] = [
            (normalize_area_token(label), label, int(points))
            for label, points in (area_bonuses or {}).items()
            if normalize_area_token(label)
        ]

    def score_listings(self, listings: List[Listing]) -> List[Listing]:
        """Score every listing in place and return them."""
        for listing in listings:
            listing.score, listing.score_breakdown = self.calculate_score(listing)
        return listings

    def calculate_score(self, listing: Listing) -> Tuple[int, List[str]]:
        score = 0
        reasons: List[str] = []

        for term in (self._score_stage, self._score_budget, self._score_rooms, self._score_studio):
            points, reason = term(listing)
            score += points
            if reason:
                reasons.append(reason)

        area_token = normalize_area_token(listing.area)
        for token, label, points in self.area_bonuses:
            if token == area_token:
                score += points
                reasons.append(f"Zone: {points:+d} ({label})")

        points, reason = self._score_travel(listing)
        score += points
        reasons.append(reason)

        return score, reasons

    def _score_stage(self, listing: Listing) -> Tuple[int, str]:
        return self.STAGE_BONUS.get(listing.listing_stage, (0, ""))

    def _score_budget(self, listing: Listing) -> Tuple[int, str]:
        """
        Flat bonus within budget, smoothly decaying above it.

        Above budget: 45 - max(1, floor((over / 50) ** 1.12)), floored at -20.
        """
        if listing.total_chf is None:
            return 0, "Budget: 0 (loyer total inconnu)"

        total = listing.total_chf
        if total <= self.budget:
            return self.BUDGET_POINTS, f"Budget: +{self.BUDGET_POINTS} (<= CHF {self.budget:g})"

        over = total - self.budget
        penalty = max(1, math.floor((over / self.BUDGET_STEP_CHF) ** self.BUDGET_EXPONENT))
        points = max(self.BUDGET_FLOOR, self.BUDGET_POINTS - penalty)
        return points, f"Budget: {points:+d} (CHF +{round(over)} au-dessus du budget)"

    def _score_rooms(self, listing: Listing) -> Tuple[int, str]:
        rooms = listing.rooms or 0
        if rooms >= self.min_rooms:
            return 30, f"Pièces: +30 ({rooms:g} >= {self.min_rooms:g})"
        if rooms >= 1.5:
            return 15, f"Pièces: +15 ({rooms:g}, option transition)"
        return 5, "Pièces: +5 (petite surface)"

    def _score_studio(self, listing: Listing) -> Tuple[int, str]:
        if STUDIO_PATTERN.search(listing.object_type or ""):
            return -4, "Type: -4 (studio)"
        return 0, ""

    def _score_travel(self, listing: Listing) -> Tuple[int, str]:
        """-1 per started 5 minutes beyond 30, transit time preferred over driving."""
        transit = to_positive_number(listing.transit_minutes)
        drive = to_positive_number(listing.drive_minutes)
        reference = transit if transit is not None else drive

        if reference is None:
            return 0, "Trajet: 0 (durée inconnue)"

        over = max(0, reference - self.TRAVEL_FREE_MINUTES)
        malus = math.floor(over / self.TRAVEL_STEP_MINUTES)
        if malus > 0:
            return -malus, (
                f"Trajet: -{malus} ({round(reference)} min, -1 pt / "
                f"{self.TRAVEL_STEP_MINUTES} min au-delà de {self.TRAVEL_FREE_MINUTES})"
            )
        return 0, f"Trajet: +0 ({round(reference)} min)"

    def derive_priority(self, listing: Listing) -> Priority:
        """
        Follow-up priority bucket.

        A pearl above the hard budget is always ``A★``. Off-market and
        early-market signals come next, then listings within budget with
        enough rooms.
        """
        if listing.is_pearl and not listing.within_hard_budget:
            return Priority.PEARL

        if listing.listing_stage == ListingStage.OFF_MARKET:
            return Priority.A
        if listing.listing_stage == ListingStage.EARLY_MARKET:
            return Priority.A_MINUS

        rooms = listing.rooms or 0
        total = listing.total_chf
        if total is None or rooms < self.min_rooms:
            return Priority.B
        if total <= self.budget:
            return Priority.A
        if total <= self.budget + self.NEAR_BUDGET_MARGIN_CHF or total <= self.hard_budget:
            return Priority.A_MINUS
        return Priority.B
