"""Tests for deduplication service."""

import pytest

from rental_tracker.services.deduplication import DeduplicationService, address_key, cross_source_key


@pytest.fixture
def dedup_service():
    return DeduplicationService()


@pytest.fixture
def pair(make_listing):
    """The same flat on immobilier.ch and flatfox.ch."""
    immobilier = make_listing(
        id="immobilier:1",
        source="immobilier.ch",
        address="Rue du Lac 12, 1800 Vevey",
        rooms=2.4,
        surface_m2=61,
        total_chf=1340,
        image_urls=["a.jpg"],
    )
    flatfox = make_listing(
        id="flatfox:2",
        source="flatfox.ch",
        address="1800 Vévey, Rue du Lac 12, CH",
        rooms=2.6,
        surface_m2=64,
        total_chf=1360,
        image_urls=["b.jpg", "c.jpg", "d.jpg"],
    )
    return immobilier, flatfox


class TestKeys:
    def test_address_key_is_order_independent(self, make_listing):
        a = make_listing(address="Rue du Lac 12, 1800 Vevey")
        b = make_listing(address="1800 Vevey, Rue du Lac 12")

        assert address_key(a) == address_key(b) == "rue du lac 12|vevey"

    def test_area_appended_when_missing(self, make_listing):
        listing = make_listing(address="Chemin des Vignes 4", area="Corseaux")
        assert address_key(listing) == "chemin des vignes 4|corseaux"

    def test_key_stability(self, pair):
        immobilier, flatfox = pair
        assert cross_source_key(immobilier) == cross_source_key(flatfox) == "rue du lac 12|vevey|r:2|s:60|p:1350"

    def test_no_key_without_address(self, make_listing):
        assert cross_source_key(make_listing(address="", area="")) is None

    def test_no_key_when_all_unknown(self, make_listing):
        assert cross_source_key(make_listing(rooms=None, surface_m2=None, total_chf=None)) is None

    def test_partial_key(self, make_listing):
        key = cross_source_key(make_listing(rooms=None, surface_m2=None, total_chf=1510))
        assert key.endswith("|r:na|s:na|p:1500")


class TestWithinBatch:
    def test_keeps_higher_rank(self, dedup_service, make_listing):
        poor = make_listing(image_urls=[])
        rich = make_listing(image_urls=["1.jpg", "2.jpg"])

        result = dedup_service.dedupe_within_batch([poor, rich], set())

        assert len(result) == 1
        assert result[0].image_urls == ["1.jpg", "2.jpg"]

    def test_first_seen_wins_ties(self, dedup_service, make_listing):
        first = make_listing(title="first")
        second = make_listing(title="second")

        result = dedup_service.dedupe_within_batch([first, second], set())

        assert result[0].title == "first"


class TestCrossSource:
    def test_merges_into_one(self, dedup_service, pair):
        result = dedup_service.dedupe_cross_source(list(pair), set())

        assert len(result) == 1
        assert result[0].duplicate_sources == ["flatfox.ch", "immobilier.ch"]

    def test_symmetric(self, dedup_service, pair):
        immobilier, flatfox = pair

        forward = dedup_service.dedupe_cross_source([immobilier, flatfox], set())
        backward = dedup_service.dedupe_cross_source([flatfox, immobilier], set())

        assert forward[0].id == backward[0].id
        assert forward[0].duplicate_sources == backward[0].duplicate_sources

    def test_source_weight_decides(self, dedup_service, pair):
        # immobilier.ch (30 + 1 image) beats flatfox.ch (20 + 3 images)
        result = dedup_service.dedupe_cross_source(list(pair), set())
        assert result[0].id == "immobilier:1"

    def test_tracked_identity_preferred(self, dedup_service, pair):
        result = dedup_service.dedupe_cross_source(list(pair), {"flatfox:2"})
        assert result[0].id == "flatfox:2"

    def test_keyless_listings_pass_through(self, dedup_service, make_listing):
        keyless = make_listing(id="x:1", address="", area="")
        other = make_listing(id="x:2", address="", area="")

        result = dedup_service.dedupe_cross_source([keyless, other], set())

        assert [x.id for x in result] == ["x:1", "x:2"]
        assert result[0].duplicate_sources == ["flatfox.ch"]

    def test_different_flats_kept(self, dedup_service, make_listing):
        a = make_listing(id="a:1", rooms=2.5)
        b = make_listing(id="b:1", rooms=3.5)

        assert len(dedup_service.dedupe_cross_source([a, b], set())) == 2

    def test_custom_priority(self, pair):
        service = DeduplicationService({"flatfox.ch": 50})
        assert service.dedupe_cross_source(list(pair), set())[0].id == "flatfox:2"


class TestQualityRank:
    def test_components(self, dedup_service, make_listing):
        listing = make_listing(source="naef.ch", image_urls=["1"] * 9, price_raw="CHF 1'350.-")
        # 27 source + 6 images + 2 surface + 2 price + 1 parseable price
        assert dedup_service.quality_rank(listing, set()) == 38
        assert dedup_service.quality_rank(listing, {listing.id}) == 1038

    def test_unknown_source(self, dedup_service, make_listing):
        listing = make_listing(source="other.ch", surface_m2=None, total_chf=None, price_raw="")
        assert dedup_service.quality_rank(listing, set()) == 0

    def test_active_keys(self, pair):
        keys = DeduplicationService.active_keys(pair)
        assert keys == {"rue du lac 12|vevey|r:2|s:60|p:1350"}
