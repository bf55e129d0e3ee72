"""Deduplication of listings within a source and across sources."""

import logging
import math
import re
from dataclasses import replace
from typing import Collection, Dict, Iterable, List, Optional, Set

from ..models.listing import Listing, to_positive_number
from ..utils.text import normalize_area_token, normalize_key_text
from .normalizer import parse_price_text

logger = logging.getLogger(__name__)

TRACKED_BONUS = 1000
MAX_IMAGE_POINTS = 6

_POSTAL_CODE = re.compile(r"\b\d{4}\b")
_COUNTRY_TOKENS = re.compile(r"\b(ch|suisse|schweiz|switzerland)\b")


def address_key(listing: Listing) -> str:
    """
    Order-independent normalized address.

    Each comma-separated part is stripped of diacritics, postal codes and
    country tokens; the area token is added when no part equals it, then the
    parts are sorted.
    """
    parts = []
    for part in str(listing.address or "").split(","):
        text = normalize_key_text(part)
        text = _POSTAL_CODE.sub(" ", text)
        text = _COUNTRY_TOKENS.sub(" ", text)
        text = re.sub(r"\s+", " ", text).strip()
        if text:
            parts.append(text)

    area = normalize_area_token(listing.area)
    if area and area not in parts:
        parts.append(area)

    return "|".join(sorted(parts))


def cross_source_key(listing: Listing) -> Optional[str]:
    """
    Composite key matching the same flat published by different sources.

    rooms are floored, surface is bucketed to 5 m² and the price rounded to
    the nearest 50 CHF. Returns None when the address is empty or rooms,
    surface and price are all unknown.
    """
    address = address_key(listing)
    if not address:
        return None

    rooms = str(math.floor(listing.rooms)) if listing.rooms is not None else "na"
    surface = str(math.floor(listing.surface_m2 / 5) * 5) if listing.surface_m2 is not None else "na"
    total = to_positive_number(listing.total_chf)
    price = str(math.floor(total / 50 + 0.5) * 50) if total is not None else "na"

    if rooms == surface == price == "na":
        return None

    return f"{address}|r:{rooms}|s:{surface}|p:{price}"


class DeduplicationService:
    """
    Collapse duplicate listings before they reach the tracker.

    Stage 1 keeps one record per id. Stage 2 merges records of different
    sources sharing a cross-source key. In both stages the record with the
    higher quality rank wins and ties keep the first one seen.
    """

    DEFAULT_SOURCE_PRIORITY = {
        "immobilier.ch": 30,
        "naef.ch": 27,
        "bernard-nicod.ch": 26,
        "flatfox.ch": 20,
        "retraitespopulaires.ch": 18,
        "anibis.ch": 15,
    }

    def __init__(self, source_priority: Optional[Dict[str, int]] = None):
        self.source_priority = dict(source_priority or self.DEFAULT_SOURCE_PRIORITY)

    def quality_rank(self, listing: Listing, tracker_ids: Collection[str]) -> int:
        """
        Tie-break score between duplicates.

        Listings already tracked get a large bonus so a re-merge never swaps
        away an identity the user has annotated.
        """
        rank = 0
        if listing.id in tracker_ids:
            rank += TRACKED_BONUS
        rank += self.source_priority.get(listing.source, 0)
        rank += min(len(listing.image_urls), MAX_IMAGE_POINTS)
        if to_positive_number(listing.surface_m2) is not None:
            rank += 2
        if to_positive_number(listing.total_chf) is not None:
            rank += 2
        if parse_price_text(listing.price_raw) is not None:
            rank += 1
        return rank

    def dedupe_within_batch(self, listings: Iterable[Listing], tracker_ids: Collection[str]) -> List[Listing]:
        """Keep one listing per id."""
        by_id: Dict[str, Listing] = {}
        for listing in listings:
            existing = by_id.get(listing.id)
            if existing is None or self.quality_rank(listing, tracker_ids) > self.quality_rank(existing, tracker_ids):
                by_id[listing.id] = listing
        return list(by_id.values())

    def dedupe_cross_source(self, listings: Iterable[Listing], tracker_ids: Collection[str]) -> List[Listing]:
        """
        Merge listings that describe the same flat.

        The winner keeps its own fields; ``duplicate_sources`` becomes the
        sorted union of every contributing source so the result does not
        depend on processing order. Listings without a key pass through.
        """
        by_key: Dict[str, Listing] = {}
        passthrough: List[Listing] = []
        merged_count = 0

        for listing in listings:
            key = cross_source_key(listing)
            sources = set(listing.duplicate_sources) | {listing.source}

            if key is None:
                passthrough.append(replace(listing, duplicate_sources=sorted(sources)))
                continue

            existing = by_key.get(key)
            if existing is None:
                by_key[key] = replace(listing, duplicate_sources=sorted(sources))
                continue

            merged_count += 1
            keep_incoming = self.quality_rank(listing, tracker_ids) > self.quality_rank(existing, tracker_ids)
            winner = listing if keep_incoming else existing
            combined = set(existing.duplicate_sources) | sources
            by_key[key] = replace(winner, duplicate_sources=sorted(combined))

        if merged_count:
            logger.info(f"Merged {merged_count} cross-source duplicates")
        return list(by_key.values()) + passthrough

    def dedupe(self, listings: Iterable[Listing], tracker_ids: Collection[str]) -> List[Listing]:
        """Both stages, exact id first."""
        return self.dedupe_cross_source(self.dedupe_within_batch(listings, tracker_ids), tracker_ids)

    @staticmethod
    def active_keys(listings: Iterable[Listing]) -> Set[str]:
        """Cross-source keys of the listings confirmed by this scan."""
        return {key for key in (cross_source_key(x) for x in listings) if key}
