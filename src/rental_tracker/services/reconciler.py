"""Merge a scan's listings into the persisted tracker."""

import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Collection, Dict, Iterable, List, Optional, Set

from ..config import ProfileConfig
from ..models.listing import Listing, Status, format_timestamp
from .deduplication import DeduplicationService, cross_source_key
from .eligibility import EligibilityEngine, is_target_area
from .geo import GeoEnricher, TravelInfo
from .move_in import is_entry_date, merge_notes_with_entry_date, parse_moving_date
from .scoring import ScoringService

logger = logging.getLogger(__name__)

REASON_OUT_OF_SCOPE = "Hors zone suivie"
REASON_DUPLICATE = "Doublon inter-source"
REASON_SOURCE_DISABLED = "Source désactivée"

# Sort key stand-in for an unknown total
UNKNOWN_TOTAL = 999999


def minutes_text(minutes: Optional[float]) -> str:
    return f"{round(minutes)} min" if minutes is not None else ""


def distance_text(distance_km: Optional[float]) -> str:
    return f"{distance_km:.1f} km" if distance_km is not None else ""


def sort_key(listing: Listing):
    """Active first, then best score, then cheapest."""
    total = listing.total_chf if listing.total_chf else UNKNOWN_TOTAL
    return (0 if listing.active else 1, -(listing.score or 0), total)


class TrackerReconciler:
    """
    Combine this scan's deduplicated listings with the previous tracker.

    Present listings are merged first, then the tracked listings absent from
    this scan are aged: their ``missing_count`` grows until the profile's
    threshold marks them removed. Entries are never dropped here; only an
    explicit user delete removes a listing from the tracker.

    The reconciler owns ``active``, ``is_removed`` and ``missing_count``;
    ``status``, ``notes`` (apart from the move-in line) and ``pinned`` are
    copied from the previous entry untouched.
    """

    def __init__(
        self,
        profile: ProfileConfig,
        engine: EligibilityEngine,
        scorer: ScoringService,
        now: datetime,
        enricher: Optional[GeoEnricher] = None,
    ):
        self.profile = profile
        self.engine = engine
        self.scorer = scorer
        self.now = now
        self.enricher = enricher
        self.threshold = profile.filters.missing_scans_before_removed

    def reconcile(
        self,
        present: Iterable[Listing],
        previous: Iterable[Listing],
        previous_visible_ids: Collection[str],
    ) -> List[Listing]:
        """
        Build the next tracker listing set.

        Args:
            present: This scan's listings, already deduplicated
            previous: Listings of the previous tracker
            previous_visible_ids: Ids shown in the previous scan's snapshot

        Returns:
            Merged listings, scored and sorted
        """
        present = list(present)
        previous_by_id: Dict[str, Listing] = {x.id: x for x in previous}
        present_ids = {x.id for x in present}
        active_keys = DeduplicationService.active_keys(present)

        merged: List[Listing] = []
        for listing in present:
            merged.append(self._reconcile_present(listing, previous_by_id.get(listing.id), previous_visible_ids))

        stale = [old for old in previous_by_id.values() if old.id not in present_ids]
        for old in stale:
            merged.append(self.reconcile_absent(old, active_keys))

        self.scorer.score_listings(merged)
        merged.sort(key=sort_key)

        removed = sum(1 for x in merged if x.is_removed)
        logger.info(
            f"Reconciled {len(present)} present and {len(stale)} absent listings "
            f"({removed} removed, {len(merged)} tracked)"
        )
        return merged

    def _evaluate(self, listing: Listing) -> Listing:
        self.engine.evaluate(listing, self.now)
        listing.priority = self.scorer.derive_priority(listing)
        return listing

    def _travel(self, listing: Listing) -> TravelInfo:
        if self.enricher is None or not listing.display:
            return TravelInfo()
        return self.enricher.enrich(listing)

    def _reconcile_present(
        self,
        listing: Listing,
        old: Optional[Listing],
        previous_visible_ids: Collection[str],
    ) -> Listing:
        # Publication age falls back to the first sighting
        listing.first_seen_at = (old.first_seen_at if old else None) or self.now
        self._evaluate(listing)

        parsed_date = parse_moving_date(listing.moving_date_raw) if listing.display else None
        travel = self._travel(listing)

        if old is None:
            return self.create_entry(listing, travel, parsed_date)
        return self.merge_present(old, listing, travel, parsed_date, is_new=listing.id not in previous_visible_ids)

    def create_entry(self, listing: Listing, travel: TravelInfo, entry_date: Optional[str]) -> Listing:
        """First sighting of an id."""
        entry_date = entry_date if is_entry_date(entry_date) else None
        return replace(
            listing,
            entry_date_text=entry_date,
            distance_km=travel.distance_km if travel.computed else None,
            distance_text=distance_text(travel.distance_km) if travel.computed else "",
            distance_computed=travel.computed,
            distance_from_work_address=self._work_address(),
            drive_minutes=travel.drive_minutes,
            drive_text=minutes_text(travel.drive_minutes),
            transit_minutes=travel.transit_minutes,
            transit_text=minutes_text(travel.transit_minutes),
            status=Status.TO_CONTACT,
            notes=merge_notes_with_entry_date("", entry_date),
            pinned=False,
            first_seen_at=self.now,
            last_seen_at=self.now,
            updated_at=self.now,
            active=True,
            is_removed=False,
            removed_at=None,
            missing_count=0,
            is_new=True,
        )

    def merge_present(
        self,
        old: Listing,
        new: Listing,
        travel: TravelInfo,
        entry_date: Optional[str],
        is_new: bool,
    ) -> Listing:
        """
        Field-by-field merge of a re-confirmed listing.

        Ownership:
            source and derived fields: ``new``
            ``extra`` keys: ``new`` over ``old``
            ``published_at``: ``new`` when known, else ``old``
            distance and travel: this scan's lookup when it produced a value,
                else ``old`` (lookups are skipped for hidden listings)
            ``distance_from_work_address``: follows whichever distance is kept
            move-in date: this scan's parsed date, else ``old``
            ``status`` (normalized), ``notes``, ``pinned``, ``first_seen_at``: ``old``
            lifecycle: reset to active, ``missing_count`` 0
        """
        entry_date = entry_date if is_entry_date(entry_date) else None
        if entry_date is None and is_entry_date(old.entry_date_text):
            entry_date = old.entry_date_text

        if travel.computed:
            distance_km = travel.distance_km
            distance = distance_text(distance_km)
            work_address = self._work_address()
        else:
            # Kept distances stay labelled with the address they were measured from
            distance_km = old.distance_km
            distance = old.distance_text or distance_text(old.distance_km)
            work_address = old.distance_from_work_address or self._work_address()

        drive = travel.drive_minutes if travel.drive_minutes is not None else old.drive_minutes
        transit = travel.transit_minutes if travel.transit_minutes is not None else old.transit_minutes

        return replace(
            new,
            extra={**old.extra, **new.extra},
            published_at=new.published_at or old.published_at,
            entry_date_text=entry_date,
            distance_km=distance_km,
            distance_text=distance,
            distance_computed=travel.computed or old.distance_computed,
            distance_from_work_address=work_address,
            drive_minutes=drive,
            drive_text=minutes_text(drive),
            transit_minutes=transit,
            transit_text=minutes_text(transit),
            status=Status.normalize(old.status),
            notes=merge_notes_with_entry_date(old.notes, entry_date),
            pinned=bool(old.pinned),
            first_seen_at=old.first_seen_at or self.now,
            last_seen_at=self.now,
            updated_at=self.now,
            active=True,
            is_removed=False,
            removed_at=None,
            missing_count=0,
            is_new=is_new,
        )

    def reconcile_absent(self, old: Listing, active_keys: Set[str]) -> Listing:
        """
        Age a tracked listing this scan did not report.

        Out-of-area listings become inactive without being removed. A listing
        that duplicates one confirmed by this scan, or whose source is now
        disabled, is removed at once; otherwise it is removed after
        ``missing_scans_before_removed`` consecutive misses. A listing the
        profile no longer displays is not counted toward removal.
        """
        next_missing = (old.missing_count or 0) + 1

        if not is_target_area(old.area, self.engine.target_areas):
            return replace(
                old,
                status=Status.normalize(old.status),
                active=False,
                is_removed=False,
                missing_count=next_missing,
                is_new=False,
                display=False,
                filter_reason=REASON_OUT_OF_SCOPE,
            )

        stale = self._evaluate(replace(old))

        key = cross_source_key(stale)
        duplicate_of_active = stale.display and key is not None and key in active_keys
        source_disabled = self.profile.source_disabled(stale.source)

        if duplicate_of_active or source_disabled:
            stale.status = Status.normalize(stale.status)
            stale.active = False
            stale.is_removed = True
            stale.removed_at = old.removed_at or self.now
            stale.missing_count = next_missing
            stale.is_new = False
            stale.display = False
            stale.filter_reason = REASON_DUPLICATE if duplicate_of_active else REASON_SOURCE_DISABLED
            return stale

        # Removal is terminal until the id is reported again
        should_remove = old.is_removed or (stale.display and next_missing >= self.threshold)

        missing_travel = stale.distance_km is None or stale.drive_minutes is None or stale.transit_minutes is None
        if self.enricher is not None and stale.display and (not should_remove or missing_travel):
            travel = self.enricher.enrich(
                stale,
                drive=stale.drive_minutes is None,
                transit=stale.transit_minutes is None,
            )
            if travel.computed:
                stale.distance_km = travel.distance_km
                stale.distance_text = distance_text(travel.distance_km)
                stale.distance_computed = True
                stale.distance_from_work_address = self._work_address()
                if stale.drive_minutes is None:
                    stale.drive_minutes = travel.drive_minutes
                if stale.transit_minutes is None:
                    stale.transit_minutes = travel.transit_minutes

        if not stale.distance_text:
            stale.distance_text = distance_text(stale.distance_km)
        stale.drive_text = minutes_text(stale.drive_minutes)
        stale.transit_text = minutes_text(stale.transit_minutes)
        if not stale.distance_from_work_address:
            stale.distance_from_work_address = self._work_address()

        stale.status = Status.normalize(stale.status)
        stale.active = not should_remove
        stale.is_removed = should_remove
        stale.removed_at = (old.removed_at or self.now) if should_remove else None
        stale.missing_count = next_missing
        stale.is_new = False
        return stale

    def _work_address(self) -> Optional[str]:
        return self.profile.workplace_address or None


def build_latest(listings: List[Listing], previous_visible_ids: Collection[str], now: datetime) -> Dict[str, Any]:
    """
    Snapshot of the scan shown on the dashboard.

    ``matching`` holds the visible active listings, ``all`` every visible
    listing (active or greyed-out removed).
    """
    visible_active = [x for x in listings if x.active and x.display]
    visible_removed = [x for x in listings if not x.active and x.display and x.is_removed]
    visible_all = [x for x in listings if x.display]
    new_listings = [x for x in visible_active if x.is_new or x.id not in previous_visible_ids]

    return {
        "generatedAt": format_timestamp(now),
        "totalCount": len(visible_active),
        "removedCount": len(visible_removed),
        "matchingCount": len(visible_active),
        "newCount": len(new_listings),
        "newListings": [x.to_dict() for x in new_listings],
        "matching": [x.to_dict() for x in visible_active],
        "all": [x.to_dict() for x in visible_all],
    }
