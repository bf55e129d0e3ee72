"""Tests for the geo/travel enricher."""

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import requests

from rental_tracker.services.geo import (
    Coordinates,
    GeocodeCache,
    GeoEnricher,
    GeoService,
    RouteCache,
    build_listing_address_query,
    haversine_km,
    next_monday,
    parse_transport_duration,
)

WORK = "Gare de Fribourg, 1700 Fribourg, Suisse"
WORK_COORDS = Coordinates(46.8032, 7.1513)
LISTING_COORDS = Coordinates(46.4628, 6.8419)


class FakeClock:
    def __init__(self):
        self.value = 100.0
        self.sleeps = []

    def __call__(self):
        return self.value

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.value += seconds


def make_response(payload):
    response = MagicMock()
    response.json.return_value = payload
    response.raise_for_status.return_value = None
    return response


@pytest.fixture
def fake_service():
    """GeoService stand-in with canned answers."""
    service = MagicMock(spec=GeoService)
    service.geocode_primary.side_effect = lambda query: WORK_COORDS if "Fribourg" in query else LISTING_COORDS
    service.geocode_secondary.return_value = None
    service.driving_minutes.return_value = 55
    service.transit_minutes.return_value = 48
    return service


@pytest.fixture
def enricher(fake_service, now):
    return GeoEnricher(fake_service, WORK, GeocodeCache(), RouteCache(), now=lambda: now)


class TestHelpers:
    def test_haversine(self):
        assert 40 < haversine_km(WORK_COORDS, LISTING_COORDS) < 50
        assert haversine_km(WORK_COORDS, WORK_COORDS) == 0

    def test_transport_duration(self):
        assert parse_transport_duration("00d00:34:00") == 34
        assert parse_transport_duration("01d01:00:30") == 24 * 60 + 61
        assert parse_transport_duration(None) is None
        assert parse_transport_duration("00d00:00:00") is None

    def test_next_monday(self):
        assert next_monday(datetime(2026, 3, 4, tzinfo=timezone.utc)).isoformat() == "2026-03-09"
        assert next_monday(datetime(2026, 3, 9, tzinfo=timezone.utc)).isoformat() == "2026-03-09"

    def test_address_query(self, make_listing):
        assert build_listing_address_query(make_listing(address="Rue du Lac 12 (2e étage), CH-1800 Vevey VD")) == (
            "Rue du Lac 12 , Vevey, Suisse"
        )
        assert build_listing_address_query(make_listing(address="", area="Corseaux")) == "Corseaux, Suisse"
        assert build_listing_address_query(make_listing(address="", area="")) == ""


class TestCaches:
    def test_geocode_cache_normalizes_query(self):
        cache = GeocodeCache()
        cache.set("  Rue du Lac 12,  Vevey ", LISTING_COORDS)

        assert cache.get("rue du lac 12, vevey") == LISTING_COORDS
        assert cache.data == {"rue du lac 12, vevey": {"lat": 46.4628, "lon": 6.8419}}

    def test_geocode_cache_ignores_bad_entries(self):
        cache = GeocodeCache({"x": {"lat": "nope", "lon": 1}, "y": "garbage"})
        assert cache.get("x") is None
        assert cache.get("y") is None

    def test_route_cache_ttl(self, now):
        cache = RouteCache(ttl=timedelta(hours=12))
        cache.store("drive:a->b", 30, now)

        assert cache.lookup("drive:a->b", now + timedelta(hours=11)).fresh is True
        stale = cache.lookup("drive:a->b", now + timedelta(hours=13))
        assert stale.fresh is False
        assert stale.minutes == 30

    def test_route_cache_format(self, now):
        cache = RouteCache()
        cache.store("k", 12, now)
        assert cache.data["k"] == {"minutes": 12, "updatedAt": "2026-03-04T09:30:00Z"}


class TestGeocoding:
    def test_cache_hit_skips_network(self, fake_service, now):
        cache = GeocodeCache()
        cache.set("Corseaux, Suisse", LISTING_COORDS)
        enricher = GeoEnricher(fake_service, WORK, cache, RouteCache(), now=lambda: now)

        assert enricher.geocode("Corseaux, Suisse") == LISTING_COORDS
        fake_service.geocode_primary.assert_not_called()

    def test_secondary_on_primary_failure(self, fake_service, now):
        fake_service.geocode_primary.side_effect = requests.ConnectionError("down")
        fake_service.geocode_secondary.return_value = LISTING_COORDS
        cache = GeocodeCache()
        enricher = GeoEnricher(fake_service, WORK, cache, RouteCache(), now=lambda: now)

        assert enricher.geocode("Vevey, Suisse") == LISTING_COORDS
        assert cache.get("Vevey, Suisse") == LISTING_COORDS

    def test_total_failure_is_none(self, fake_service, now):
        fake_service.geocode_primary.side_effect = requests.ConnectionError("down")
        fake_service.geocode_secondary.side_effect = requests.Timeout("slow")
        enricher = GeoEnricher(fake_service, WORK, GeocodeCache(), RouteCache(), now=lambda: now)

        assert enricher.geocode("Nowhere") is None
        assert enricher.geocode("Nowhere") is None
        # Failed queries are not retried within a scan
        assert fake_service.geocode_primary.call_count == 1

    def test_primary_rate_limit(self):
        clock = FakeClock()
        session = MagicMock()
        session.headers = {}
        session.get.return_value = make_response([{"lat": "46.46", "lon": "6.84"}])
        service = GeoService(session=session, clock=clock, sleep=clock.sleep)

        service.geocode_primary("a")
        clock.value += 0.3
        service.geocode_primary("b")

        assert clock.sleeps == [pytest.approx(0.8)]

    def test_primary_parses_nominatim(self):
        session = MagicMock()
        session.headers = {}
        session.get.return_value = make_response([{"lat": "46.46", "lon": "6.84"}])
        service = GeoService(session=session, sleep=lambda s: None)

        assert service.geocode_primary("Vevey") == Coordinates(46.46, 6.84)
        assert session.get.call_args.kwargs["params"]["q"] == "Vevey"

    def test_secondary_parses_photon(self):
        session = MagicMock()
        session.headers = {}
        session.get.return_value = make_response({"features": [{"geometry": {"coordinates": [6.84, 46.46]}}]})
        service = GeoService(session=session)

        assert service.geocode_secondary("Vevey") == Coordinates(46.46, 6.84)


class TestRoutes:
    def test_osrm_minutes(self):
        session = MagicMock()
        session.headers = {}
        session.get.return_value = make_response({"routes": [{"duration": 1530}]})
        service = GeoService(session=session)

        assert service.driving_minutes(WORK_COORDS, LISTING_COORDS) == 26

    def test_transit_query(self):
        session = MagicMock()
        session.headers = {}
        session.get.return_value = make_response({"connections": [{"duration": "00d00:47:00"}]})
        service = GeoService(session=session)

        minutes = service.transit_minutes("Vevey, Suisse", WORK, datetime(2026, 3, 9, 8, 0))

        params = session.get.call_args.kwargs["params"]
        assert minutes == 47
        assert params["date"] == "2026-03-09"
        assert params["time"] == "08:00"
        assert params["transportations"] == "train"

    def test_transit_departure_is_next_monday_8am(self, enricher):
        assert enricher.transit_departure() == datetime(2026, 3, 9, 8, 0)

    def test_fresh_cache_skips_network(self, enricher, fake_service, now):
        key = f"drive:{WORK_COORDS.key()}->{LISTING_COORDS.key()}"
        enricher.route_cache.store(key, 33, now - timedelta(hours=1))

        assert enricher.drive_minutes(LISTING_COORDS) == 33
        fake_service.driving_minutes.assert_not_called()

    def test_stale_cache_refreshed(self, enricher, fake_service, now):
        key = f"drive:{WORK_COORDS.key()}->{LISTING_COORDS.key()}"
        enricher.route_cache.store(key, 33, now - timedelta(hours=13))

        assert enricher.drive_minutes(LISTING_COORDS) == 55
        assert enricher.route_cache.data[key]["minutes"] == 55

    def test_stale_value_used_on_failure(self, enricher, fake_service, now):
        key = f"drive:{WORK_COORDS.key()}->{LISTING_COORDS.key()}"
        enricher.route_cache.store(key, 33, now - timedelta(hours=13))
        fake_service.driving_minutes.side_effect = requests.ConnectionError("down")

        assert enricher.drive_minutes(LISTING_COORDS) == 33

    def test_failure_without_cache_is_none(self, enricher, fake_service):
        fake_service.transit_minutes.side_effect = requests.Timeout("slow")
        assert enricher.transit_minutes("Vevey, Suisse") is None

    def test_transit_cache_key(self, enricher):
        enricher.transit_minutes("Vevey, Suisse")
        expected = "transit:monday-0800-train:vevey, suisse->gare de fribourg, 1700 fribourg, suisse"
        assert list(enricher.route_cache.data) == [expected]


class TestEnrich:
    def test_enrich(self, enricher, sample_listing):
        info = enricher.enrich(sample_listing)

        assert info.computed is True
        assert info.listing_address == "Rue du Lac 12, 1800 Vevey, Suisse"
        assert info.distance_km == round(haversine_km(WORK_COORDS, LISTING_COORDS), 1)
        assert info.drive_minutes == 55
        assert info.transit_minutes == 48

    def test_skip_lookups(self, enricher, fake_service, sample_listing):
        info = enricher.enrich(sample_listing, drive=False, transit=False)

        assert info.drive_minutes is None
        fake_service.driving_minutes.assert_not_called()
        fake_service.transit_minutes.assert_not_called()

    def test_work_address_not_found(self, fake_service, sample_listing, now):
        fake_service.geocode_primary.side_effect = lambda query: None
        enricher = GeoEnricher(fake_service, WORK, GeocodeCache(), RouteCache(), now=lambda: now)

        assert enricher.enrich(sample_listing).computed is False

    def test_listing_not_found(self, fake_service, sample_listing, now):
        fake_service.geocode_primary.side_effect = lambda query: WORK_COORDS if "Fribourg" in query else None
        enricher = GeoEnricher(fake_service, WORK, GeocodeCache(), RouteCache(), now=lambda: now)

        info = enricher.enrich(sample_listing)

        assert info.computed is False
        assert info.distance_km is None
        assert info.listing_address == "Rue du Lac 12, 1800 Vevey, Suisse"
