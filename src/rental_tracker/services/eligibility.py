"""Eligibility rules deciding which listings are shown for a profile."""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Set

from ..config import Area, FilterSettings
from ..models.listing import Listing
from ..utils.text import normalize_area_token, normalize_key_text

logger = logging.getLogger(__name__)

RESIDENTIAL_PATTERN = re.compile(r"appartement|studio|loft|duplex|attique|maison|pi[eè]ces?")


def build_target_area_set(areas: Iterable[Area]) -> Set[str]:
    """Normalized tokens of every configured area label and slug."""
    tokens = set()
    for area in areas:
        for value in (area.label, area.slug):
            token = normalize_area_token(value)
            if token:
                tokens.add(token)
    return tokens


def is_target_area(city: str, target_areas: Set[str]) -> bool:
    """An empty target set means the profile is not restricted."""
    if not target_areas:
        return True
    token = normalize_area_token(city)
    return bool(token) and token in target_areas


@dataclass(frozen=True)
class Gate:
    """One display rule: a predicate and the reason shown when it fails."""

    name: str
    passes: Callable[[Listing], bool]
    reason: Callable[[Listing], str]


class EligibilityEngine:
    """
    Evaluate a listing against a profile's filters.

    The gates are kept in one ordered table: ``display`` is the conjunction of
    the gates that apply to a listing, and ``filter_reason`` is the reason of
    the first one that fails. Off-market listings skip the gates named in
    ``OFF_MARKET_RELAXED``, since their budget, size and publication data is
    often incomplete at that stage.

    The engine never raises: a missing number fails open unless the gate is
    about that number (the hard budget needs a known price).
    """

    OFF_MARKET_RELAXED = frozenset({"min_budget", "size", "publication", "hard_budget"})

    def __init__(
        self,
        filters: FilterSettings,
        target_areas: Optional[Set[str]] = None,
        include_off_market: bool = True,
    ):
        self.filters = filters
        self.target_areas = target_areas or set()
        self.include_off_market = include_off_market
        self.non_speculative_groups = [
            token for token in (normalize_key_text(g) for g in filters.non_speculative_groups) if token
        ]
        self.gates: List[Gate] = [
            Gate("type", lambda x: not x.excluded_type, lambda x: "Type exclu (chambre/colocation)"),
            Gate(
                "location",
                lambda x: x.location_eligible,
                lambda x: x.location_filter_reason or "Hors zones ciblées",
            ),
            Gate(
                "landlord",
                lambda x: x.non_speculative_eligible,
                lambda x: x.non_speculative_filter_reason or "Bailleur hors liste non spéculative",
            ),
            Gate(
                "off_market",
                lambda x: self.include_off_market or not x.is_off_market,
                lambda x: "Signal off-market non prioritaire",
            ),
            Gate(
                "min_budget",
                lambda x: x.above_min_budget,
                lambda x: f"En dessous de CHF {self.filters.min_total_chf:g}",
            ),
            Gate("size", lambda x: x.size_eligible, lambda x: "Taille non prioritaire"),
            Gate(
                "publication",
                lambda x: x.publication_eligible,
                lambda x: f"Annonce trop ancienne (> {x.max_published_age_days} jours)",
            ),
            Gate(
                "hard_budget",
                lambda x: x.within_hard_budget or x.is_pearl,
                lambda x: f"Au-dessus de CHF {self.filters.max_total_hard_chf:g}",
            ),
        ]

    def evaluate(self, listing: Listing, now: datetime) -> Listing:
        """Recompute every derived eligibility field of ``listing`` in place."""
        f = self.filters
        total = listing.total_chf

        listing.excluded_type = self.is_excluded_type(listing)
        listing.size_eligible = self.is_size_eligible(listing)
        listing.is_pearl = self.is_pearl(listing)
        listing.within_hard_budget = total is not None and total <= f.max_total_hard_chf
        listing.above_min_budget = f.min_total_chf <= 0 or (total is not None and total >= f.min_total_chf)

        age_days, approximate = self.published_age_days(listing, now)
        listing.published_age_days = age_days
        listing.published_age_approximate = approximate
        listing.max_published_age_days = f.max_published_age_days
        listing.publication_eligible = age_days is None or age_days <= f.max_published_age_days

        listing.location_eligible = is_target_area(listing.area, self.target_areas)
        listing.location_filter_reason = "" if listing.location_eligible else "Hors zones ciblées"

        listing.non_speculative_eligible = self.is_non_speculative(listing)
        listing.non_speculative_filter_reason = (
            "" if listing.non_speculative_eligible else "Bailleur hors liste non spéculative"
        )

        failing = self.first_failing_gate(listing)
        listing.display = failing is None
        listing.filter_reason = failing.reason(listing) if failing else ""
        return listing

    def first_failing_gate(self, listing: Listing) -> Optional[Gate]:
        for gate in self.gates:
            if listing.is_off_market and gate.name in self.OFF_MARKET_RELAXED:
                continue
            if not gate.passes(listing):
                return gate
        return None

    def is_excluded_type(self, listing: Listing) -> bool:
        text = listing.descriptor
        return any(str(k).lower() in text for k in self.filters.excluded_object_type_keywords)

    def is_size_eligible(self, listing: Listing) -> bool:
        f = self.filters
        rooms = listing.rooms or 0
        surface = listing.surface_m2
        has_surface = surface is not None and surface > 0

        # A missing room count only qualifies as a transition option when the
        # text clearly describes a dwelling
        if rooms <= 0:
            return f.allow_studio_transition and bool(RESIDENTIAL_PATTERN.search(listing.descriptor))

        meets_rooms = rooms >= f.min_rooms_preferred

        if not meets_rooms and f.allow_studio_transition:
            return True

        if f.min_surface_m2_fallback > 0:
            return meets_rooms or (has_surface and surface >= f.min_surface_m2_fallback)

        if not meets_rooms:
            return False

        if f.min_surface_m2_preferred <= 0:
            return True

        if not has_surface:
            return f.allow_missing_surface

        return surface >= f.min_surface_m2_preferred

    def is_pearl(self, listing: Listing) -> bool:
        """Above the hard budget but at or below the pearl cap, with quality signals."""
        f = self.filters
        pearl = f.pearl
        if not pearl.enabled:
            return False

        total = listing.total_chf
        if total is None or total <= f.max_total_hard_chf or total > f.max_pearl_total_chf:
            return False

        if (listing.rooms or 0) < pearl.min_rooms or (listing.surface_m2 or 0) < pearl.min_surface_m2:
            return False

        text = f"{listing.title or ''} {listing.object_type or ''} {listing.address or ''}".lower()
        hits = sum(1 for keyword in pearl.keywords if str(keyword).lower() in text)
        return hits >= pearl.min_hits

    def is_non_speculative(self, listing: Listing) -> bool:
        if not self.filters.non_speculative_only or not self.non_speculative_groups:
            return True

        haystack = normalize_key_text(
            " ".join(
                str(part)
                for part in (
                    listing.provider_name,
                    listing.agency_name,
                    listing.agency_url,
                    listing.title,
                    listing.notes,
                )
                if part
            )
        )
        return any(token in haystack for token in self.non_speculative_groups)

    @staticmethod
    def published_age_days(listing: Listing, now: datetime):
        """
        Whole days since publication.

        Falls back to the first time the tracker saw the listing, flagged as
        approximate. Returns (None, False) when neither date is known.
        """
        reference = listing.published_at
        approximate = False
        if reference is None and listing.first_seen_at is not None:
            reference = listing.first_seen_at
            approximate = True
        if reference is None:
            return None, False
        days = int((now - reference).total_seconds() // 86400)
        return max(0, days), approximate
