"""Shared fixtures for rental-tracker tests."""

import pytest
from datetime import datetime, timezone

from rental_tracker.config import FilterSettings, ProfileConfig, make_default_profile_config
from rental_tracker.models.listing import Listing


NOW = datetime(2026, 3, 4, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def now():
    """Fixed scan time (a Wednesday)."""
    return NOW


@pytest.fixture
def filters():
    """Default profile filters: budget 1400, hard budget 1550, pearl cap 1650."""
    return FilterSettings()


@pytest.fixture
def profile_config():
    """The default Vevey profile."""
    return ProfileConfig.from_dict(make_default_profile_config("vevey"))


@pytest.fixture
def make_listing():
    """Factory for a displayable 2.5-room flat in Vevey."""

    def _make(**overrides):
        values = dict(
            id="flatfox:100",
            source="flatfox.ch",
            source_id="100",
            title="Bel appartement lumineux",
            object_type="Appartement 2.5 pièces",
            url="https://flatfox.ch/fr/flat/100/",
            address="Rue du Lac 12, 1800 Vevey",
            area="Vevey",
            rooms=2.5,
            surface_m2=62,
            rent_chf=1200,
            charges_chf=150,
            total_chf=1350,
            price_raw="CHF 1'350.-/mois",
            published_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
        )
        values.update(overrides)
        return Listing(**values)

    return _make


@pytest.fixture
def sample_listing(make_listing):
    return make_listing()


@pytest.fixture
def raw_record():
    """An adapter record as produced by a scraper."""
    return {
        "source": "immobilier.ch",
        "sourceId": "5521",
        "title": "<b>Appartement</b> de 3.5 pièces",
        "objectType": "Appartement",
        "address": "Avenue Paul-Cérésole 4, 1800 Vevey",
        "priceRaw": "CHF 1'250.-/mois (+ 150.- charges)",
        "surfaceM2": 70,
        "imageUrls": ["https://img.example.ch/a.jpg", "/archive/a.jpg", "https://img.example.ch/a.jpg"],
        "listingStage": "EARLY_MARKET",
        "agencyName": "Régie du Lac",
    }
