"""Per-profile JSON document store."""

import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Union

from .config import ProfileConfig, make_default_profile_config
from .exceptions import ConfigError, TrackerIntegrityError
from .models.listing import STATUSES, Listing, Status, format_timestamp

logger = logging.getLogger(__name__)

_PROFILE_NAME = re.compile(r"^[a-z0-9-]+$")

CONFIG_FILE = "watch-config.json"
TRACKER_FILE = "tracker.json"
LATEST_FILE = "latest-listings.json"
GEOCODE_CACHE_FILE = "geocode-cache.json"
ROUTE_CACHE_FILE = "route-cache.json"


def sanitize_profile(value: str) -> str:
    """
    Normalize a profile name for use as a directory name.

    Raises:
        ConfigError: If the name contains anything but [a-z0-9-]
    """
    clean = str(value or "").strip().lower()
    if not _PROFILE_NAME.match(clean):
        raise ConfigError(f"Invalid profile name: {value!r}")
    return clean


def read_json_safe(path: Union[str, Path], default: Any) -> Any:
    """Parsed JSON document, or ``default`` if missing or malformed."""
    path = Path(path)
    if not path.exists():
        return default
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable {path.name}: {e}")
        return default


def _now_iso() -> str:
    return format_timestamp(datetime.now(timezone.utc))


@dataclass
class Tracker:
    """The tracker document: every listing seen for a profile."""

    created_at: str
    updated_at: Optional[str] = None
    criteria: Dict[str, Any] = field(default_factory=dict)
    statuses: List[str] = field(default_factory=lambda: list(STATUSES))
    listings: List[Listing] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)

    def find(self, listing_id: str) -> Optional[Listing]:
        for listing in self.listings:
            if listing.id == listing_id:
                return listing
        return None

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data.update(
            {
                "createdAt": self.created_at,
                "updatedAt": self.updated_at,
                "criteria": self.criteria,
                "statuses": list(self.statuses),
                "listings": [x.to_dict() for x in self.listings],
            }
        )
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "Tracker":
        """
        Build a tracker from its stored document.

        Entries that cannot be read as listings are dropped with a warning.

        Raises:
            TrackerIntegrityError: If two entries share an id
        """
        if not isinstance(data, dict):
            data = {}

        listings: List[Listing] = []
        seen: Set[str] = set()
        raw_listings = data.get("listings")
        for raw in raw_listings if isinstance(raw_listings, list) else []:
            if not isinstance(raw, dict):
                logger.warning("Dropping malformed tracker entry")
                continue
            try:
                listing = Listing.from_dict(raw)
            except ValueError as e:
                logger.warning(f"Dropping tracker entry: {e}")
                continue
            if listing.id in seen:
                raise TrackerIntegrityError(f"Duplicate listing id in tracker: {listing.id}")
            seen.add(listing.id)
            listings.append(listing)

        known = {"createdAt", "updatedAt", "criteria", "statuses", "listings"}
        criteria = data.get("criteria")
        return cls(
            created_at=str(data.get("createdAt") or _now_iso()),
            updated_at=data.get("updatedAt"),
            criteria=criteria if isinstance(criteria, dict) else {},
            listings=listings,
            extra={k: v for k, v in data.items() if k not in known},
        )


class ProfileStore:
    """
    Documents of one profile under ``<data_dir>/<profile>/``.

    Reads are lenient: a missing or malformed document reads as empty state.
    Writes go through temporary files that are moved into place only once
    every document of the batch has been written.
    """

    def __init__(self, data_dir: Union[str, Path], profile: str):
        self.profile = sanitize_profile(profile)
        self.data_dir = Path(data_dir) / self.profile

    @property
    def config_path(self) -> Path:
        return self.data_dir / CONFIG_FILE

    @property
    def tracker_path(self) -> Path:
        return self.data_dir / TRACKER_FILE

    @property
    def latest_path(self) -> Path:
        return self.data_dir / LATEST_FILE

    @property
    def geocode_cache_path(self) -> Path:
        return self.data_dir / GEOCODE_CACHE_FILE

    @property
    def route_cache_path(self) -> Path:
        return self.data_dir / ROUTE_CACHE_FILE

    def bootstrap_config(self) -> bool:
        """Write a default watch-config if the profile has none. Returns True if written."""
        if self.config_path.exists():
            return False
        self._write_documents({self.config_path: make_default_profile_config(self.profile)})
        logger.info(f"Created default watch-config for profile {self.profile}")
        return True

    def load_profile_config(self) -> ProfileConfig:
        """
        Parse the profile's watch-config.

        Raises:
            ConfigError: If the document is missing or not a JSON object
        """
        data = read_json_safe(self.config_path, None)
        if data is None:
            raise ConfigError(f"No readable watch-config for profile {self.profile}: {self.config_path}")
        return ProfileConfig.from_dict(data)

    def load_tracker(self) -> Tracker:
        return Tracker.from_dict(read_json_safe(self.tracker_path, {}))

    def load_latest(self) -> Dict[str, Any]:
        data = read_json_safe(self.latest_path, {})
        return data if isinstance(data, dict) else {}

    def previous_visible_ids(self) -> Set[str]:
        """Ids listed in the previous scan's snapshot."""
        entries = self.load_latest().get("all")
        return {str(x.get("id")) for x in entries or [] if isinstance(x, dict) and x.get("id")}

    def load_geocode_cache(self) -> Dict[str, Any]:
        data = read_json_safe(self.geocode_cache_path, {})
        return data if isinstance(data, dict) else {}

    def load_route_cache(self) -> Dict[str, Any]:
        data = read_json_safe(self.route_cache_path, {})
        return data if isinstance(data, dict) else {}

    def commit(
        self,
        tracker: Tracker,
        latest: Dict[str, Any],
        geocode_cache: Dict[str, Any],
        route_cache: Dict[str, Any],
    ) -> None:
        """
        Persist the result of a scan.

        All four documents are staged as temporary files and renamed into
        place only once every one of them is on disk, so a failed write
        leaves the previous documents untouched. A failure during the
        renames themselves can leave the earlier documents already replaced.
        """
        self._write_documents(
            {
                self.tracker_path: tracker.to_dict(),
                self.latest_path: latest,
                self.geocode_cache_path: geocode_cache,
                self.route_cache_path: route_cache,
            }
        )
        logger.info(f"Saved {len(tracker.listings)} listings for profile {self.profile}")

    def _write_documents(self, documents: Dict[Path, Any]) -> None:
        # Serialize everything before touching the disk
        payloads = {path: json.dumps(doc, ensure_ascii=False, indent=2) for path, doc in documents.items()}

        self.data_dir.mkdir(parents=True, exist_ok=True)
        staged: Dict[Path, str] = {}
        try:
            for path, payload in payloads.items():
                fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(self.data_dir))
                staged[path] = tmp_name
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())

            for path, tmp_name in list(staged.items()):
                os.replace(tmp_name, path)
                del staged[path]
        finally:
            for tmp_name in staged.values():
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)

    def update_listing(self, listing_id: str, status: Optional[str] = None, notes: Optional[str] = None) -> bool:
        """
        Set the follow-up status and/or notes of a listing.

        Args:
            listing_id: Tracker id
            status: One of the status labels
            notes: Replacement notes text

        Returns:
            True if the listing was found

        Raises:
            ValueError: If ``status`` is not a known status label
        """
        new_status = Status(status) if status else None

        tracker = self.load_tracker()
        listing = tracker.find(listing_id)
        if listing is None:
            return False

        if new_status is not None:
            listing.status = new_status
        if notes is not None:
            listing.notes = notes
        listing.updated_at = datetime.now(timezone.utc)

        tracker.updated_at = _now_iso()
        self._write_documents({self.tracker_path: tracker.to_dict()})
        return True

    def toggle_pin(self, listing_id: str) -> Optional[bool]:
        """Flip the pin of a listing. Returns the new value, or None if not found."""
        tracker = self.load_tracker()
        listing = tracker.find(listing_id)
        if listing is None:
            return None

        listing.pinned = not listing.pinned
        listing.updated_at = datetime.now(timezone.utc)
        tracker.updated_at = _now_iso()
        self._write_documents({self.tracker_path: tracker.to_dict()})
        return listing.pinned

    def delete_listing(self, listing_id: str) -> bool:
        """
        Remove a listing from the tracker for good.

        The listing is also taken out of the latest snapshot, whose counts are
        recomputed.
        """
        tracker = self.load_tracker()
        before = len(tracker.listings)
        tracker.listings = [x for x in tracker.listings if x.id != listing_id]
        if len(tracker.listings) == before:
            return False
        tracker.updated_at = _now_iso()

        documents: Dict[Path, Any] = {self.tracker_path: tracker.to_dict()}

        latest = self.load_latest()
        if isinstance(latest.get("all"), list):

            def keep(entries):
                return [x for x in entries or [] if isinstance(x, dict) and str(x.get("id")) != listing_id]

            latest["all"] = keep(latest["all"])
            latest["matching"] = keep(latest.get("matching"))
            latest["newListings"] = keep(latest.get("newListings"))
            latest["totalCount"] = sum(1 for x in latest["all"] if not x.get("isRemoved"))
            latest["removedCount"] = sum(1 for x in latest["all"] if x.get("isRemoved"))
            latest["matchingCount"] = len(latest["matching"])
            latest["newCount"] = len(latest["newListings"])
            documents[self.latest_path] = latest

        self._write_documents(documents)
        logger.info(f"Deleted listing {listing_id} from profile {self.profile}")
        return True


def list_profiles(data_dir: Union[str, Path]) -> List[Dict[str, Any]]:
    """Profiles with a readable watch-config, sorted by name."""
    root = Path(data_dir)
    if not root.is_dir():
        return []

    profiles = []
    for entry in sorted(root.iterdir()):
        if not entry.is_dir() or not _PROFILE_NAME.match(entry.name):
            continue
        config = read_json_safe(entry / CONFIG_FILE, None)
        if not isinstance(config, dict):
            continue
        tracker = read_json_safe(entry / TRACKER_FILE, {})
        listings = tracker.get("listings") if isinstance(tracker, dict) else None
        profiles.append(
            {
                "slug": entry.name,
                "name": config.get("name") or entry.name,
                "areas": " · ".join(str(a.get("label")) for a in config.get("areas") or [] if isinstance(a, dict)),
                "listingsCount": sum(1 for x in listings or [] if isinstance(x, dict) and not x.get("isRemoved")),
                "maxRent": (config.get("filters") or {}).get("maxTotalChf"),
            }
        )
    return profiles
