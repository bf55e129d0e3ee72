"""Canonical listing model shared by every stage of the scan pipeline."""

import math
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class Status(str, Enum):
    """Follow-up pipeline a user moves a listing through."""

    TO_CONTACT = "À contacter"
    VISIT = "Visite"
    FILE = "Dossier"
    FOLLOW_UP = "Relance"
    ACCEPTED = "Accepté"
    REJECTED = "Refusé"
    NO_REPLY = "Sans réponse"

    @classmethod
    def normalize(cls, value: Any) -> "Status":
        """Map stored labels, including retired ones, onto the current set."""
        if isinstance(value, cls):
            return value
        label = str(value or "").strip()
        if label in _LEGACY_STATUSES:
            return _LEGACY_STATUSES[label]
        for status in cls:
            if status.value == label:
                return status
        return cls.TO_CONTACT


_LEGACY_STATUSES = {
    "Visite demandée": Status.VISIT,
    "Visite planifiée": Status.VISIT,
    "Visité": Status.VISIT,
    "Dossier prêt à envoyer": Status.FILE,
    "Dossier envoyé": Status.FILE,
    "Relance J+2": Status.FOLLOW_UP,
}

STATUSES = [status.value for status in Status]


class ListingStage(str, Enum):
    """How early in the market cycle a listing was spotted."""

    STANDARD = "standard"
    EARLY_MARKET = "early_market"
    OFF_MARKET = "off_market"

    @classmethod
    def parse(cls, value: Any) -> "ListingStage":
        label = str(value or "").strip().lower()
        for stage in cls:
            if stage.value == label:
                return stage
        return cls.STANDARD


class Priority(str, Enum):
    A = "A"
    A_MINUS = "A-"
    PEARL = "A★"
    B = "B"

    @classmethod
    def parse(cls, value: Any) -> Optional["Priority"]:
        for priority in cls:
            if priority.value == value:
                return priority
        return None


def to_number(value: Any) -> Optional[float]:
    """Coerce a JSON scalar to a finite number, or None."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        number = float(str(value).strip().replace(",", "."))
    except ValueError:
        return None
    if not math.isfinite(number):
        return None
    return int(number) if number.is_integer() else number


def to_positive_number(value: Any) -> Optional[float]:
    number = to_number(value)
    return number if number is not None and number > 0 else None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif not value:
        return None
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


_TIMESTAMP_FIELDS = {"published_at", "first_seen_at", "last_seen_at", "updated_at", "removed_at"}
_NUMBER_FIELDS = {
    "rooms",
    "surface_m2",
    "rent_chf",
    "charges_chf",
    "total_chf",
    "distance_km",
    "drive_minutes",
    "transit_minutes",
}
_INT_FIELDS = {"missing_count", "published_age_days", "max_published_age_days", "score"}
_LIST_FIELDS = {"image_urls_local", "image_urls_remote", "image_urls", "duplicate_sources", "score_breakdown"}


@dataclass
class Listing:
    """
    One rental unit offering, canonicalized from a specific source.

    Attributes are grouped by owner: source fields come from the adapters,
    derived fields are recomputed on every scan, enrichment fields come from
    the geo enricher and tracker fields belong to the reconciler (lifecycle)
    or to the user (status, notes, pin).
    """

    # Identification
    id: str
    source: str
    source_id: str = ""

    # Source fields
    title: str = ""
    object_type: str = ""
    url: Optional[str] = None
    address: str = ""
    area: str = ""
    rooms: Optional[float] = None
    surface_m2: Optional[float] = None
    rent_chf: Optional[float] = None
    charges_chf: Optional[float] = None
    total_chf: Optional[float] = None
    price_raw: str = ""
    image_url: Optional[str] = None
    image_urls_local: List[str] = field(default_factory=list)
    image_urls_remote: List[str] = field(default_factory=list)
    image_urls: List[str] = field(default_factory=list)
    provider_name: Optional[str] = None
    agency_name: Optional[str] = None
    agency_url: Optional[str] = None
    moving_date_raw: Optional[str] = None
    listing_stage: ListingStage = ListingStage.STANDARD

    # Timestamps
    published_at: Optional[datetime] = None
    first_seen_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    removed_at: Optional[datetime] = None

    # Derived eligibility fields
    excluded_type: bool = False
    size_eligible: bool = True
    is_pearl: bool = False
    within_hard_budget: bool = False
    above_min_budget: bool = True
    publication_eligible: bool = True
    published_age_days: Optional[int] = None
    max_published_age_days: Optional[int] = None
    published_age_approximate: bool = False
    location_eligible: bool = True
    location_filter_reason: str = ""
    non_speculative_eligible: bool = True
    non_speculative_filter_reason: str = ""
    display: bool = True
    filter_reason: str = ""
    priority: Optional[Priority] = None
    score: Optional[int] = None
    score_breakdown: List[str] = field(default_factory=list)

    # Enrichment
    distance_km: Optional[float] = None
    distance_text: str = ""
    distance_computed: bool = False
    distance_from_work_address: Optional[str] = None
    drive_minutes: Optional[float] = None
    drive_text: str = ""
    transit_minutes: Optional[float] = None
    transit_text: str = ""
    entry_date_text: Optional[str] = None

    # Tracker state
    status: Status = Status.TO_CONTACT
    notes: str = ""
    pinned: bool = False
    missing_count: int = 0
    active: bool = True
    is_removed: bool = False
    is_new: bool = False
    duplicate_sources: List[str] = field(default_factory=list)

    # Keys we do not model, kept so they survive a load/save cycle
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_off_market(self) -> bool:
        return self.listing_stage == ListingStage.OFF_MARKET

    @property
    def descriptor(self) -> str:
        """Lower-cased type and title text used by keyword rules."""
        return f"{self.object_type or ''} {self.title or ''}".lower()

    def display_price(self) -> str:
        if self.total_chf is not None:
            return f"CHF {self.total_chf:,.0f}".replace(",", "'")
        return self.price_raw or "prix inconnu"

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the camelCase JSON shape stored in tracker documents."""
        data: Dict[str, Any] = dict(self.extra)
        for f in fields(self):
            if f.name == "extra":
                continue
            value = getattr(self, f.name)
            if f.name in _TIMESTAMP_FIELDS:
                value = format_timestamp(value)
            elif isinstance(value, Enum):
                value = value.value
            elif isinstance(value, list):
                value = list(value)
            data[_camel(f.name)] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Listing":
        """
        Build a listing from a stored or adapter-produced dict.

        Lenient: unknown enum values fall back to defaults and unparseable
        numbers become None.

        Raises:
            ValueError: If the record has no id.
        """
        listing_id = str(data.get("id") or "").strip()
        if not listing_id:
            raise ValueError("listing record without id")

        known = {_camel(f.name): f for f in fields(cls) if f.name != "extra"}
        kwargs: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}

        for key, value in data.items():
            f = known.get(key)
            if f is None:
                extra[key] = value
                continue
            name = f.name
            if name in _TIMESTAMP_FIELDS:
                kwargs[name] = parse_timestamp(value)
            elif name in _NUMBER_FIELDS:
                kwargs[name] = to_number(value)
            elif name in _INT_FIELDS:
                number = to_number(value)
                kwargs[name] = int(number) if number is not None else None
            elif name in _LIST_FIELDS:
                kwargs[name] = [str(x) for x in value] if isinstance(value, list) else []
            elif name == "status":
                kwargs[name] = Status.normalize(value)
            elif name == "listing_stage":
                kwargs[name] = ListingStage.parse(value)
            elif name == "priority":
                kwargs[name] = Priority.parse(value)
            elif f.type is bool:
                kwargs[name] = bool(value)
            elif f.type is str:
                kwargs[name] = "" if value is None else str(value)
            else:
                kwargs[name] = value

        kwargs["id"] = listing_id
        kwargs["source"] = str(data.get("source") or "")
        if kwargs.get("missing_count") is None:
            kwargs["missing_count"] = 0
        return cls(extra=extra, **kwargs)

    def __repr__(self) -> str:
        return f"Listing({self.id}, {self.display_price()}, {self.area or '?'})"
