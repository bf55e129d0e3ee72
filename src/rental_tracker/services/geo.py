"""Geocoding, distance and commute-time enrichment with persistent caches."""

import logging
import math
import re
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import requests

from ..models.listing import Listing, parse_timestamp, to_positive_number

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lon: float

    @classmethod
    def parse(cls, lat: Any, lon: Any) -> Optional["Coordinates"]:
        try:
            lat_f, lon_f = float(lat), float(lon)
        except (TypeError, ValueError):
            return None
        if not (math.isfinite(lat_f) and math.isfinite(lon_f)):
            return None
        return cls(lat_f, lon_f)

    def key(self) -> str:
        return f"{self.lat:.5f},{self.lon:.5f}"


def haversine_km(a: Coordinates, b: Coordinates) -> float:
    """Great-circle distance; an approximation of the road distance."""
    lat1, lon1, lat2, lon2 = map(math.radians, (a.lat, a.lon, b.lat, b.lon))
    h = math.sin((lat2 - lat1) / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin((lon2 - lon1) / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class GeocodeCache:
    """
    Query -> coordinates store, without expiry.

    Backed by the plain dict persisted as ``geocode-cache.json``; the dict is
    mutated in place so the caller decides when it is written.
    """

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        self.data: Dict[str, Any] = data if isinstance(data, dict) else {}

    @staticmethod
    def normalize_query(query: str) -> str:
        return re.sub(r"\s+", " ", str(query or "")).strip().lower()

    def get(self, query: str) -> Optional[Coordinates]:
        entry = self.data.get(self.normalize_query(query))
        if not isinstance(entry, dict):
            return None
        return Coordinates.parse(entry.get("lat"), entry.get("lon"))

    def set(self, query: str, coords: Coordinates) -> None:
        self.data[self.normalize_query(query)] = {"lat": coords.lat, "lon": coords.lon}


@dataclass
class CachedRoute:
    has_value: bool
    minutes: Optional[float]
    fresh: bool


class RouteCache:
    """Route key -> ``{minutes, updatedAt}`` with a freshness TTL."""

    def __init__(self, data: Optional[Dict[str, Any]] = None, ttl: timedelta = timedelta(hours=12)):
        self.data: Dict[str, Any] = data if isinstance(data, dict) else {}
        self.ttl = ttl

    def lookup(self, key: str, now: datetime) -> CachedRoute:
        entry = self.data.get(key)
        if not isinstance(entry, dict):
            return CachedRoute(has_value=False, minutes=None, fresh=False)
        updated = parse_timestamp(entry.get("updatedAt"))
        fresh = updated is not None and now - updated <= self.ttl
        return CachedRoute(has_value=True, minutes=to_positive_number(entry.get("minutes")), fresh=fresh)

    def store(self, key: str, minutes: Optional[float], now: datetime) -> None:
        self.data[key] = {
            "minutes": to_positive_number(minutes),
            "updatedAt": now.astimezone(timezone.utc).isoformat().replace("+00:00", "Z"),
        }


def next_monday(reference: datetime) -> date:
    """The coming Monday, or ``reference``'s date if it is a Monday."""
    return reference.date() + timedelta(days=(7 - reference.weekday()) % 7)


def parse_transport_duration(duration: Any) -> Optional[int]:
    """'00d00:34:00' -> 34."""
    match = re.search(r"(\d{2})d(\d{2}):(\d{2}):(\d{2})", str(duration or ""))
    if not match:
        return None
    days, hours, mins, secs = (int(x) for x in match.groups())
    total = days * 24 * 60 + hours * 60 + mins + _round_half_up(secs / 60)
    return total if total > 0 else None


def sanitize_address_part(value: str) -> str:
    text = re.sub(r"\s+", " ", str(value or ""))
    text = re.sub(r"\(.*?\)", " ", text)
    text = re.sub(r"\bCH-\d{4}\b", " ", text, flags=re.IGNORECASE)
    text = re.sub(r"\bVD\b", " ", text, flags=re.IGNORECASE)
    return re.sub(r"\s+", " ", text).strip(" ,")


def build_listing_address_query(listing: Listing, country: str = "Suisse") -> str:
    """Geocoder query for a listing: street address if known, else the area."""
    for part in (listing.address, listing.area):
        clean = sanitize_address_part(part)
        if clean:
            return f"{clean}, {country}"
    return ""


@dataclass
class TravelInfo:
    computed: bool = False
    distance_km: Optional[float] = None
    listing_address: str = ""
    listing_coords: Optional[Coordinates] = None
    drive_minutes: Optional[float] = None
    transit_minutes: Optional[float] = None


class GeoService:
    """
    HTTP clients for the geocoders and routing services.

    Nominatim is the primary geocoder and is rate limited to one request per
    ``min_interval`` seconds; Photon is tried when it fails. Driving times
    come from OSRM, public-transport times from transport.opendata.ch with a
    Monday 08:00 departure so commute estimates are comparable between scans.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        settings: Optional[Dict[str, Any]] = None,
        user_agent: str = "rental-tracker/0.1",
        timeout: float = 20,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        settings = settings or {}
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": user_agent, "Accept": "application/json"})
        self.timeout = timeout
        self.nominatim_url = settings.get("nominatim_url", "https://nominatim.openstreetmap.org/search")
        self.photon_url = settings.get("photon_url", "https://photon.komoot.io/api/")
        self.osrm_url = settings.get("osrm_url", "https://router.project-osrm.org/route/v1/driving")
        self.transport_url = settings.get("transport_url", "https://transport.opendata.ch/v1/connections")
        self.min_interval = float(settings.get("min_geocode_interval_seconds", 1.1))
        self.clock = clock
        self.sleep = sleep
        self._last_geocode_at: Optional[float] = None

    def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        response = self.session.get(url, params=params, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def _respect_rate_limit(self) -> None:
        if self._last_geocode_at is None:
            return
        elapsed = self.clock() - self._last_geocode_at
        if elapsed < self.min_interval:
            self.sleep(self.min_interval - elapsed)

    def geocode_primary(self, query: str) -> Optional[Coordinates]:
        self._respect_rate_limit()
        try:
            payload = self._get_json(self.nominatim_url, {"format": "jsonv2", "limit": 1, "q": query})
        finally:
            self._last_geocode_at = self.clock()
        if isinstance(payload, list) and payload:
            return Coordinates.parse(payload[0].get("lat"), payload[0].get("lon"))
        return None

    def geocode_secondary(self, query: str) -> Optional[Coordinates]:
        payload = self._get_json(self.photon_url, {"limit": 1, "q": query})
        features = payload.get("features") if isinstance(payload, dict) else None
        if not features:
            return None
        coords = (features[0].get("geometry") or {}).get("coordinates")
        if isinstance(coords, list) and len(coords) >= 2:
            return Coordinates.parse(coords[1], coords[0])
        return None

    def driving_minutes(self, origin: Coordinates, destination: Coordinates) -> Optional[int]:
        url = f"{self.osrm_url}/{origin.lon},{origin.lat};{destination.lon},{destination.lat}"
        payload = self._get_json(url, {"overview": "false"})
        routes = payload.get("routes") if isinstance(payload, dict) else None
        seconds = to_positive_number(routes[0].get("duration")) if routes else None
        return max(1, _round_half_up(seconds / 60)) if seconds is not None else None

    def transit_minutes(self, origin: str, destination: str, departure: datetime) -> Optional[int]:
        payload = self._get_json(
            self.transport_url,
            {
                "limit": 1,
                "from": origin,
                "to": destination,
                "date": departure.strftime("%Y-%m-%d"),
                "time": departure.strftime("%H:%M"),
                "transportations": "train",
            },
        )
        connections = payload.get("connections") if isinstance(payload, dict) else None
        return parse_transport_duration(connections[0].get("duration")) if connections else None


class GeoEnricher:
    """
    Best-effort distance and travel time from a fixed work address.

    Every lookup degrades to None instead of raising. The caches are passed
    in by the caller and updated in place.
    """

    TRANSIT_POLICY = "monday-0800-train"

    def __init__(
        self,
        service: GeoService,
        work_address: str,
        geocode_cache: GeocodeCache,
        route_cache: RouteCache,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        country: str = "Suisse",
    ):
        self.service = service
        self.work_address = work_address
        self.geocode_cache = geocode_cache
        self.route_cache = route_cache
        self.now = now
        self.country = country
        self._failed_queries = set()
        self._work_coords: Optional[Coordinates] = None
        self._work_resolved = False

    @property
    def work_coordinates(self) -> Optional[Coordinates]:
        if not self._work_resolved:
            self._work_coords = self.geocode(self.work_address)
            self._work_resolved = True
            if self._work_coords is None:
                logger.warning(f"Could not geocode work address: {self.work_address}")
        return self._work_coords

    def geocode(self, query: str) -> Optional[Coordinates]:
        """Cached coordinates for ``query``; primary then secondary geocoder."""
        if not query:
            return None

        cached = self.geocode_cache.get(query)
        if cached is not None:
            return cached

        key = GeocodeCache.normalize_query(query)
        if key in self._failed_queries:
            return None

        coords = None
        try:
            coords = self.service.geocode_primary(query)
        except (requests.RequestException, ValueError) as e:
            logger.debug(f"Primary geocoder failed for {query!r}: {e}")

        if coords is None:
            try:
                coords = self.service.geocode_secondary(query)
            except (requests.RequestException, ValueError) as e:
                logger.debug(f"Secondary geocoder failed for {query!r}: {e}")

        if coords is None:
            self._failed_queries.add(key)
            logger.info(f"No coordinates for {query!r}")
            return None

        self.geocode_cache.set(query, coords)
        return coords

    def transit_departure(self) -> datetime:
        monday = next_monday(self.now())
        return datetime(monday.year, monday.month, monday.day, 8, 0)

    def drive_minutes(self, listing_coords: Optional[Coordinates]) -> Optional[float]:
        work = self.work_coordinates
        if work is None or listing_coords is None:
            return None

        key = f"drive:{work.key()}->{listing_coords.key()}"
        now = self.now()
        cached = self.route_cache.lookup(key, now)
        if cached.fresh and cached.minutes is not None:
            return cached.minutes

        try:
            minutes = self.service.driving_minutes(work, listing_coords)
        except (requests.RequestException, ValueError, KeyError) as e:
            logger.debug(f"Driving route failed for {key}: {e}")
            return cached.minutes if cached.has_value else None

        self.route_cache.store(key, minutes, now)
        return minutes

    def transit_minutes(self, listing_address: str) -> Optional[float]:
        if not self.work_address or not listing_address:
            return None

        key = f"transit:{self.TRANSIT_POLICY}:{listing_address.lower()}->{self.work_address.lower()}"
        now = self.now()
        cached = self.route_cache.lookup(key, now)
        if cached.fresh and cached.minutes is not None:
            return cached.minutes

        try:
            minutes = self.service.transit_minutes(listing_address, self.work_address, self.transit_departure())
        except (requests.RequestException, ValueError, KeyError) as e:
            logger.debug(f"Transit lookup failed for {key}: {e}")
            return cached.minutes if cached.has_value else None

        self.route_cache.store(key, minutes, now)
        return minutes

    def enrich(self, listing: Listing, drive: bool = True, transit: bool = True) -> TravelInfo:
        """
        Distance and commute times for one listing.

        Args:
            listing: Listing to locate
            drive: Look up the driving time
            transit: Look up the public-transport time

        Returns:
            TravelInfo; ``computed`` is False when the listing could not be located
        """
        work = self.work_coordinates
        if work is None:
            return TravelInfo()

        address = build_listing_address_query(listing, self.country)
        if not address:
            return TravelInfo()

        coords = self.geocode(address)
        if coords is None:
            return TravelInfo(listing_address=address)

        info = TravelInfo(
            computed=True,
            distance_km=round(haversine_km(work, coords), 1),
            listing_address=address,
            listing_coords=coords,
        )
        if drive:
            info.drive_minutes = self.drive_minutes(coords)
        if transit:
            info.transit_minutes = self.transit_minutes(address)
        return info
