"""Scan runner and command line interface."""

import argparse
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from .adapters import ADAPTER_REGISTRY, get_adapter
from .adapters.base import BaseAdapter
from .config import ProfileConfig, load_config
from .exceptions import RentalTrackerError, TrackerIntegrityError
from .models.listing import STATUSES, Listing, format_timestamp
from .services.deduplication import DeduplicationService
from .services.digest import DigestService
from .services.eligibility import EligibilityEngine, build_target_area_set, is_target_area
from .services.geo import GeocodeCache, GeoEnricher, GeoService, RouteCache
from .services.images import ImageArchiver
from .services.normalizer import normalize_batch, record_id
from .services.reconciler import TrackerReconciler, build_latest, distance_text, minutes_text, sort_key
from .services.scoring import ScoringService
from .store import ProfileStore, Tracker, list_profiles
from .utils.logging import setup_logging

logger = logging.getLogger(__name__)


@dataclass
class ScanSummary:
    total: int
    removed: int
    matching: int
    new: int
    warnings: List[str] = field(default_factory=list)
    text: str = ""


class ScanRunner:
    """
    Run one scan for one profile.

    Coordinates: fetching -> normalization -> deduplication ->
                 reconciliation (eligibility, enrichment, scoring) -> commit

    A failing source is logged and reported as a ``WARN`` line; the scan goes
    on with the others. Anything else that goes wrong propagates before the
    commit, so the profile's previous documents stay in place.
    """

    def __init__(
        self,
        settings: Dict[str, Any],
        store: ProfileStore,
        adapters: Optional[List[BaseAdapter]] = None,
        session: Optional[requests.Session] = None,
        geo_service: Optional[GeoService] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings
        self.store = store
        self.adapters = adapters
        self.session = session or requests.Session()
        self.geo_service = geo_service
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def run(self) -> ScanSummary:
        """
        Fetch, reconcile and persist.

        Returns:
            ScanSummary with the snapshot counts and the digest text

        Raises:
            ConfigError: If the profile config is unreadable
            TrackerIntegrityError: If the tracker holds duplicate ids
        """
        self.store.bootstrap_config()
        profile = self.store.load_profile_config()
        tracker = self.store.load_tracker()
        previous_visible_ids = self.store.previous_visible_ids()

        geocode_cache, route_cache = self._load_caches()

        now = self.clock()
        logger.info(f"Starting scan for profile {self.store.profile} ({profile.name})")

        raw, warnings = self.fetch(profile, tracker.listings)

        target_areas = build_target_area_set(profile.areas)
        listings = [x for x in normalize_batch(raw) if is_target_area(x.area, target_areas)]

        tracker_ids = {x.id for x in tracker.listings}
        dedup = DeduplicationService(self.settings.get("sources", {}).get("priority"))
        deduped = dedup.dedupe(listings, tracker_ids)
        logger.info(f"{len(raw)} fetched, {len(listings)} in target areas, {len(deduped)} after dedup")

        enricher = GeoEnricher(
            self.geo_service or self._make_geo_service(),
            profile.workplace_address,
            geocode_cache,
            route_cache,
            now=lambda: now,
        )
        reconciler = TrackerReconciler(
            profile,
            EligibilityEngine(profile.filters, target_areas),
            ScoringService(profile.filters, profile.area_bonuses),
            now,
            enricher=enricher,
        )
        merged = reconciler.reconcile(deduped, tracker.listings, previous_visible_ids)
        _check_unique_ids(merged)

        if self.settings.get("images", {}).get("archive", True):
            self._archive_images(profile, merged)

        latest = build_latest(merged, previous_visible_ids, now)
        next_tracker = Tracker(
            created_at=tracker.created_at,
            updated_at=format_timestamp(now),
            criteria=profile.raw,
            statuses=list(STATUSES),
            listings=merged,
            extra=tracker.extra,
        )
        self.store.commit(next_tracker, latest, geocode_cache.data, route_cache.data)

        digest = DigestService(top_n=int(self.settings.get("digest", {}).get("top_n", 5)))
        summary = ScanSummary(
            total=latest["totalCount"],
            removed=latest["removedCount"],
            matching=latest["matchingCount"],
            new=latest["newCount"],
            warnings=warnings,
            text=digest.render(latest, warnings),
        )
        logger.info(
            f"Scan complete: {summary.total} active, {summary.new} new, "
            f"{summary.removed} removed, {len(warnings)} warnings"
        )
        return summary

    def fetch(self, profile: ProfileConfig, tracked: List[Listing]) -> Tuple[List[Dict[str, Any]], List[str]]:
        """Raw records of every enabled source, plus the warning lines of failed ones."""
        records: List[Dict[str, Any]] = []
        warnings: List[str] = []

        for adapter in self._adapters(profile):
            source = adapter.get_source_name()
            try:
                if not adapter.is_available():
                    logger.warning(f"Adapter {source} not available (missing config?)")
                    continue

                fetched = adapter.fetch_listings()
                fetched_ids = {record_id(x) for x in fetched if isinstance(x, dict)}
                missing = [x for x in tracked if x.source == source and x.id not in fetched_ids]
                fetched.extend(adapter.recheck(missing))

                records.extend(fetched)
                logger.info(f"{source}: {len(fetched)} records")
            except Exception as e:
                logger.error(f"Error fetching from {source}: {e}")
                warnings.append(f"WARN {source}: {e}")
            finally:
                warnings.extend(adapter.warnings)

        return records, warnings

    def recompute_distances(self) -> int:
        """
        Refresh distance and commute times of every tracked listing.

        Used after the profile's workplace address changes. Listings that
        cannot be located keep their previous values. Scores and the latest
        snapshot are rebuilt from the refreshed values.

        Returns:
            Number of listings whose distance was recomputed
        """
        profile = self.store.load_profile_config()
        tracker = self.store.load_tracker()
        previous_visible_ids = self.store.previous_visible_ids()
        geocode_cache, route_cache = self._load_caches()
        now = self.clock()

        logger.info(f"Recomputing distances for profile {self.store.profile} from {profile.workplace_address}")
        enricher = GeoEnricher(
            self.geo_service or self._make_geo_service(),
            profile.workplace_address,
            geocode_cache,
            route_cache,
            now=lambda: now,
        )

        updated = 0
        for listing in tracker.listings:
            travel = enricher.enrich(listing)
            if not travel.computed:
                logger.warning(f"Skip {listing.id}: could not locate {travel.listing_address!r}")
                continue
            listing.distance_km = travel.distance_km
            listing.distance_text = distance_text(travel.distance_km)
            listing.distance_computed = True
            listing.distance_from_work_address = profile.workplace_address or None
            listing.drive_minutes = travel.drive_minutes
            listing.drive_text = minutes_text(travel.drive_minutes)
            listing.transit_minutes = travel.transit_minutes
            listing.transit_text = minutes_text(travel.transit_minutes)
            updated += 1

        ScoringService(profile.filters, profile.area_bonuses).score_listings(tracker.listings)
        tracker.listings.sort(key=sort_key)
        tracker.updated_at = format_timestamp(now)

        latest = build_latest(tracker.listings, previous_visible_ids, now)
        self.store.commit(tracker, latest, geocode_cache.data, route_cache.data)
        logger.info(f"Recomputed {updated} of {len(tracker.listings)} distances")
        return updated

    def _adapters(self, profile: ProfileConfig) -> List[BaseAdapter]:
        if self.adapters is not None:
            return [a for a in self.adapters if not profile.source_disabled(a.get_source_name())]

        adapters = []
        for flag in ADAPTER_REGISTRY:
            if not profile.source_enabled(flag):
                logger.info(f"Source {flag} disabled for this profile")
                continue
            adapters.append(get_adapter(flag, self.settings, profile, session=self.session))
        return adapters

    def _archive_images(self, profile: ProfileConfig, listings: List[Listing]) -> None:
        """Photos are archived only while a listing is displayed and active."""
        archiver = ImageArchiver(
            self.store.data_dir,
            session=self.session,
            max_per_listing=profile.max_archived_images,
            timeout=float(self.settings.get("http", {}).get("timeout_seconds", 20)),
        )
        archiver.archive([x for x in listings if x.active and x.display])

    def _load_caches(self) -> Tuple[GeocodeCache, RouteCache]:
        ttl_hours = float(self.settings.get("geo", {}).get("route_cache_ttl_hours", 12))
        return (
            GeocodeCache(self.store.load_geocode_cache()),
            RouteCache(self.store.load_route_cache(), ttl=timedelta(hours=ttl_hours)),
        )

    def _make_geo_service(self) -> GeoService:
        http = self.settings.get("http", {})
        return GeoService(
            session=self.session,
            settings=self.settings.get("geo", {}),
            user_agent=http.get("user_agent", "rental-tracker/0.1"),
            timeout=float(http.get("timeout_seconds", 20)),
        )


def _check_unique_ids(listings: List[Listing]) -> None:
    seen = set()
    for listing in listings:
        if listing.id in seen:
            raise TrackerIntegrityError(f"Reconciliation produced duplicate id: {listing.id}")
        seen.add(listing.id)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rental-tracker",
        description="Rental Tracker - aggregate and follow up rental listings per profile",
    )
    parser.add_argument(
        "-c",
        "--config",
        default=None,
        help="Path to configuration file",
    )
    parser.add_argument(
        "-p",
        "--profile",
        help="Profile to use (default: default_profile setting)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    commands = parser.add_subparsers(dest="command")
    commands.add_parser("scan", help="Fetch sources and update the tracker")

    status = commands.add_parser("status", help="Set the follow-up status or notes of a listing")
    status.add_argument("listing_id")
    status.add_argument("--set", dest="status", choices=STATUSES, help="New status")
    status.add_argument("--notes", help="Replacement notes")

    pin = commands.add_parser("pin", help="Toggle the pin of a listing")
    pin.add_argument("listing_id")

    delete = commands.add_parser("delete", help="Remove a listing from the tracker")
    delete.add_argument("listing_id")

    commands.add_parser(
        "recompute-distances",
        help="Recompute distances and commute times from the current workplace address",
    )
    commands.add_parser("profiles", help="List profiles")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    setup_logging("DEBUG" if args.verbose else None)

    try:
        settings = load_config(args.config)

        if args.command == "profiles":
            for entry in list_profiles(settings["data_dir"]):
                print(f"{entry['slug']}: {entry['name']} ({entry['listingsCount']} annonces) {entry['areas']}")
            return 0

        store = ProfileStore(settings["data_dir"], args.profile or settings["default_profile"])

        if args.command == "status":
            if not store.update_listing(args.listing_id, status=args.status, notes=args.notes):
                print(f"Listing not found: {args.listing_id}")
                return 1
            return 0

        if args.command == "pin":
            pinned = store.toggle_pin(args.listing_id)
            if pinned is None:
                print(f"Listing not found: {args.listing_id}")
                return 1
            print(f"{args.listing_id}: {'pinned' if pinned else 'unpinned'}")
            return 0

        if args.command == "delete":
            if not store.delete_listing(args.listing_id):
                print(f"Listing not found: {args.listing_id}")
                return 1
            return 0

        if args.command == "recompute-distances":
            updated = ScanRunner(settings, store).recompute_distances()
            print(f"Distances recalculées: {updated}")
            return 0

        summary = ScanRunner(settings, store).run()
        print(summary.text)
        return 0

    except (FileNotFoundError, RentalTrackerError) as e:
        logger.error(str(e))
        return 1
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
