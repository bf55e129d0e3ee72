"""Tests for settings loading and the profile watch-config."""

import pytest

from rental_tracker.config import ProfileConfig, load_config, make_default_profile_config
from rental_tracker.exceptions import ConfigError
from rental_tracker.services.scoring import ScoringService


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("RENTAL_TRACKER_CONFIG", "RENTAL_TRACKER_DATA_DIR", "RENTAL_TRACKER_PROFILE"):
        monkeypatch.delenv(name, raising=False)


class TestLoadConfig:
    def test_yaml_merged_over_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("data_dir: /srv/profiles\nsources:\n  priority:\n    flatfox.ch: 40\n", encoding="utf-8")

        settings = load_config(str(path))

        assert settings["data_dir"] == "/srv/profiles"
        assert settings["sources"]["priority"]["flatfox.ch"] == 40
        assert settings["sources"]["priority"]["immobilier.ch"] == 30
        assert settings["geo"]["route_cache_ttl_hours"] == 12

    def test_env_overrides(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text("default_profile: vevey\n", encoding="utf-8")
        monkeypatch.setenv("RENTAL_TRACKER_DATA_DIR", "/data")
        monkeypatch.setenv("RENTAL_TRACKER_PROFILE", "fribourg")

        settings = load_config(str(path))

        assert settings["data_dir"] == "/data"
        assert settings["default_profile"] == "fribourg"

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "nope.yaml"))

    def test_invalid_priority(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("sources:\n  priority:\n    flatfox.ch: -1\n", encoding="utf-8")

        with pytest.raises(ConfigError):
            load_config(str(path))

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")

        with pytest.raises(ValueError):
            load_config(str(path))


class TestProfileConfig:
    def test_default_profile(self, profile_config):
        assert profile_config.areas[0].label == "Vevey"
        assert profile_config.filters.max_total_chf == 1400
        assert profile_config.filters.missing_scans_before_removed == 2
        assert profile_config.workplace_address.startswith("Gare de Fribourg")

    def test_unknown_profile_gets_vevey_areas(self):
        assert make_default_profile_config("geneve")["areas"][0]["slug"] == "vevey"

    def test_fribourg_defaults(self):
        config = ProfileConfig.from_dict(make_default_profile_config("fribourg"))

        assert config.name == "Apartment Search (Fribourg)"
        assert config.filters.max_total_chf == 1400
        assert config.filters.max_total_hard_chf == 1650
        assert config.filters.max_pearl_total_chf == 1750
        assert config.filters.min_rooms_preferred == 2.5
        assert config.filters.min_surface_m2_preferred == 50
        assert config.filters.allow_studio_transition is False
        assert config.filters.max_published_age_days == 20
        assert config.workplace_address.startswith("Gare de Fribourg")
        assert config.area_bonuses == {}

    def test_saint_maurice_defaults(self):
        config = ProfileConfig.from_dict(make_default_profile_config("saint-maurice"))

        assert config.name == "Apartment Search (Saint-Maurice)"
        assert config.filters.max_total_chf == 1700
        assert config.filters.max_total_hard_chf == 1700
        assert config.filters.min_rooms_preferred == 3
        assert config.filters.allow_studio_transition is False
        assert config.workplace_address == "Gare de Saint-Maurice, 1890 Saint-Maurice, Suisse"

    def test_vevey_area_bonuses(self, profile_config, make_listing):
        assert profile_config.area_bonuses["Vevey"] == 5
        assert profile_config.area_bonuses["La Tour-de-Peilz"] == 4

        scorer = ScoringService(profile_config.filters, profile_config.area_bonuses)
        _, reasons = scorer.calculate_score(make_listing(area="Corseaux"))

        assert "Zone: +4 (Corseaux)" in reasons

    def test_defaults_not_shared(self):
        first = make_default_profile_config("vevey")
        first["scoring"]["areaBonuses"]["Vevey"] = 0

        assert make_default_profile_config("vevey")["scoring"]["areaBonuses"]["Vevey"] == 5

    def test_archived_images_limit(self, profile_config):
        assert profile_config.max_archived_images == 5
        assert ProfileConfig.from_dict({"media": {"maxArchivedImagesPerListing": 40}}).max_archived_images == 12
        assert ProfileConfig.from_dict({"media": {"maxArchivedImagesPerListing": "x"}}).max_archived_images == 5
        assert ProfileConfig.from_dict({"media": {"maxArchivedImagesPerListing": 0}}).max_archived_images == 1

    def test_source_flags(self):
        config = ProfileConfig.from_dict({"sources": {"naef": False}})

        assert config.source_enabled("flatfox") is True
        assert config.source_enabled("naef") is False
        assert config.source_enabled("anibis") is False

    def test_source_disabled_needs_every_flag_off(self):
        one_off = ProfileConfig.from_dict({"sources": {"retraitesListings": False}})
        both_off = ProfileConfig.from_dict({"sources": {"retraitesListings": False, "retraitesProjets": False}})

        assert one_off.source_disabled("retraitespopulaires.ch") is False
        assert both_off.source_disabled("retraitespopulaires.ch") is True

    def test_default_off_source_is_not_disabled(self):
        assert ProfileConfig.from_dict({}).source_disabled("anibis.ch") is False

    def test_filters_parsed(self):
        config = ProfileConfig.from_dict(
            {
                "filters": {
                    "maxTotalChf": "1300",
                    "maxPublishedAgeDays": 0,
                    "missingScansBeforeRemoved": 0,
                    "pearl": {"minHits": 2, "keywords": ["vue"]},
                }
            }
        )

        assert config.filters.max_total_chf == 1300
        assert config.filters.max_published_age_days == 30
        assert config.filters.missing_scans_before_removed == 1
        assert config.filters.pearl.min_hits == 2
        assert config.filters.pearl.keywords == ["vue"]

    def test_raw_kept(self):
        data = {"name": "Test", "custom": {"x": 1}}
        config = ProfileConfig.from_dict(data)

        data["custom"]["x"] = 2

        assert config.raw["custom"] == {"x": 1}

    def test_not_an_object(self):
        with pytest.raises(ConfigError):
            ProfileConfig.from_dict(["nope"])
