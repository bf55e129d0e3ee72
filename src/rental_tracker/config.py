"""Configuration loading: application settings and per-profile watch config."""

import copy
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from .exceptions import ConfigError

DEFAULT_CONFIG_PATH = "./config/config.yaml"
DEFAULT_WORK_ADDRESS = "Gare de Fribourg, 1700 Fribourg, Suisse"
DEFAULT_MAX_ARCHIVED_IMAGES = 5
MAX_ARCHIVED_IMAGES_LIMIT = 12

DEFAULT_SETTINGS: Dict[str, Any] = {
    "data_dir": "./data/profiles",
    "default_profile": "vevey",
    "sources": {
        # Data richness per provider, used as dedup tie-break weight
        "priority": {
            "immobilier.ch": 30,
            "naef.ch": 27,
            "bernard-nicod.ch": 26,
            "flatfox.ch": 20,
            "retraitespopulaires.ch": 18,
            "anibis.ch": 15,
        },
    },
    "http": {
        "user_agent": "rental-tracker/0.1 (+https://github.com/rental-tracker)",
        "timeout_seconds": 20,
    },
    "geo": {
        "nominatim_url": "https://nominatim.openstreetmap.org/search",
        "photon_url": "https://photon.komoot.io/api/",
        "osrm_url": "https://router.project-osrm.org/route/v1/driving",
        "transport_url": "https://transport.opendata.ch/v1/connections",
        "min_geocode_interval_seconds": 1.1,
        "route_cache_ttl_hours": 12,
    },
    "digest": {
        "top_n": 5,
    },
    "images": {
        # Download the photos of displayed listings into <profile>/images
        "archive": True,
    },
}

# watch-config "sources" flags -> provider name reported by the adapters
SOURCE_FLAGS = {
    "immobilier": "immobilier.ch",
    "flatfox": "flatfox.ch",
    "naef": "naef.ch",
    "bernardNicod": "bernard-nicod.ch",
    "retraitesListings": "retraitespopulaires.ch",
    "retraitesProjets": "retraitespopulaires.ch",
    "anibis": "anibis.ch",
}

# Flags that are off unless a profile turns them on
SOURCES_OFF_BY_DEFAULT = {"anibis"}

DEFAULT_PEARL_KEYWORDS = [
    "renove",
    "rénové",
    "balcon",
    "terrasse",
    "vue",
    "quartier paisible",
    "lac",
    "centre",
]


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load application settings from YAML file and environment variables.

    Args:
        config_path: Path to the YAML settings file. When omitted, the
            default path is used if it exists, otherwise built-in defaults.

    Returns:
        Dictionary containing merged settings

    Raises:
        FileNotFoundError: If an explicit config path doesn't exist
        ConfigError: If settings are invalid
    """
    load_dotenv()

    settings = copy.deepcopy(DEFAULT_SETTINGS)

    path = Path(config_path or os.getenv("RENTAL_TRACKER_CONFIG", DEFAULT_CONFIG_PATH))
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"Settings file must contain a mapping: {path}")
        _deep_merge(settings, loaded)
    elif config_path:
        raise FileNotFoundError(
            f"Configuration file not found: {config_path}\n"
            f"Copy config/config.example.yaml to config/config.yaml and customize it."
        )

    data_dir = os.getenv("RENTAL_TRACKER_DATA_DIR")
    if data_dir:
        settings["data_dir"] = data_dir
    profile = os.getenv("RENTAL_TRACKER_PROFILE")
    if profile:
        settings["default_profile"] = profile

    _validate_config(settings)
    return settings


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> None:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


def _validate_config(config: Dict[str, Any]) -> None:
    """Validate settings structure."""
    if not config.get("data_dir"):
        raise ConfigError("Missing data_dir setting")

    priority = config.get("sources", {}).get("priority", {})
    if not isinstance(priority, dict):
        raise ConfigError("sources.priority must map source names to weights")
    for source, weight in priority.items():
        if not isinstance(weight, (int, float)) or weight < 0 or weight >= 1000:
            raise ConfigError(f"Invalid priority weight for {source}: {weight}")

    geo = config.get("geo", {})
    if float(geo.get("min_geocode_interval_seconds", 0)) < 0:
        raise ConfigError("geo.min_geocode_interval_seconds must be >= 0")
    if float(geo.get("route_cache_ttl_hours", 0)) <= 0:
        raise ConfigError("geo.route_cache_ttl_hours must be > 0")


def _number(value: Any, default: float) -> float:
    if value is None or value == "" or isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@dataclass
class PearlSettings:
    """Rules for over-budget listings worth a look anyway."""

    enabled: bool = True
    min_rooms: float = 2
    min_surface_m2: float = 50
    keywords: List[str] = field(default_factory=lambda: list(DEFAULT_PEARL_KEYWORDS))
    min_hits: int = 1

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PearlSettings":
        data = data or {}
        keywords = data.get("keywords")
        return cls(
            enabled=data.get("enabled") is not False,
            min_rooms=_number(data.get("minRooms"), 2),
            min_surface_m2=_number(data.get("minSurfaceM2"), 50),
            keywords=[str(k) for k in keywords] if isinstance(keywords, list) and keywords else list(DEFAULT_PEARL_KEYWORDS),
            min_hits=int(_number(data.get("minHits"), 1)),
        )


@dataclass
class FilterSettings:
    """Budget, size and freshness filters of a profile."""

    max_total_chf: float = 1400
    max_total_hard_chf: float = 1550
    max_pearl_total_chf: float = 1650
    min_total_chf: float = 0
    min_rooms_preferred: float = 2
    min_surface_m2_preferred: float = 0
    min_surface_m2_fallback: float = 0
    allow_studio_transition: bool = True
    allow_missing_surface: bool = True
    excluded_object_type_keywords: List[str] = field(default_factory=lambda: ["chambre", "colocation", "wg"])
    max_published_age_days: int = 30
    missing_scans_before_removed: int = 2
    non_speculative_only: bool = False
    non_speculative_groups: List[str] = field(default_factory=list)
    pearl: PearlSettings = field(default_factory=PearlSettings)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "FilterSettings":
        data = data or {}
        defaults = cls()

        max_age = _number(data.get("maxPublishedAgeDays"), defaults.max_published_age_days)
        if max_age <= 0:
            max_age = defaults.max_published_age_days

        keywords = data.get("excludedObjectTypeKeywords")
        groups = data.get("nonSpeculativeGroups")

        return cls(
            max_total_chf=_number(data.get("maxTotalChf"), defaults.max_total_chf),
            max_total_hard_chf=_number(data.get("maxTotalHardChf"), defaults.max_total_hard_chf),
            max_pearl_total_chf=_number(data.get("maxPearlTotalChf"), defaults.max_pearl_total_chf),
            min_total_chf=_number(data.get("minTotalChf"), 0),
            min_rooms_preferred=_number(data.get("minRoomsPreferred"), defaults.min_rooms_preferred),
            min_surface_m2_preferred=_number(data.get("minSurfaceM2Preferred"), 0),
            min_surface_m2_fallback=_number(data.get("minSurfaceM2Fallback"), 0),
            allow_studio_transition=bool(data.get("allowStudioTransition", defaults.allow_studio_transition)),
            allow_missing_surface=data.get("allowMissingSurface") is not False,
            excluded_object_type_keywords=(
                [str(k) for k in keywords] if isinstance(keywords, list) else defaults.excluded_object_type_keywords
            ),
            max_published_age_days=int(max_age),
            missing_scans_before_removed=max(1, int(_number(data.get("missingScansBeforeRemoved"), 2))),
            non_speculative_only=bool(data.get("nonSpeculativeOnly", False)),
            non_speculative_groups=[str(g) for g in groups] if isinstance(groups, list) else [],
            pearl=PearlSettings.from_dict(data.get("pearl")),
        )


@dataclass
class Area:
    label: str
    slug: str = ""
    canton: str = ""


@dataclass
class ProfileConfig:
    """
    A profile's watch-config document.

    The original dict is kept in ``raw`` so it can be copied verbatim into the
    tracker's ``criteria`` and written back without losing unknown keys.
    """

    name: str
    areas: List[Area]
    filters: FilterSettings
    sources: Dict[str, bool]
    workplace_address: str
    area_bonuses: Dict[str, int] = field(default_factory=dict)
    max_archived_images: int = DEFAULT_MAX_ARCHIVED_IMAGES
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProfileConfig":
        if not isinstance(data, dict):
            raise ConfigError("watch-config must be a JSON object")

        areas = []
        for entry in data.get("areas") or []:
            if isinstance(entry, dict) and (entry.get("label") or entry.get("slug")):
                areas.append(
                    Area(
                        label=str(entry.get("label") or entry.get("slug")),
                        slug=str(entry.get("slug") or ""),
                        canton=str(entry.get("canton") or ""),
                    )
                )

        sources = {}
        for flag in SOURCE_FLAGS:
            value = (data.get("sources") or {}).get(flag)
            sources[flag] = value if isinstance(value, bool) else flag not in SOURCES_OFF_BY_DEFAULT

        preferences = data.get("preferences") or {}
        workplace = preferences.get("workplaceAddress") or preferences.get("workAddress") or DEFAULT_WORK_ADDRESS

        bonuses = (data.get("scoring") or {}).get("areaBonuses") or {}
        max_images = _number((data.get("media") or {}).get("maxArchivedImagesPerListing"), DEFAULT_MAX_ARCHIVED_IMAGES)

        return cls(
            name=str(data.get("name") or "Apartment Search"),
            areas=areas,
            filters=FilterSettings.from_dict(data.get("filters")),
            sources=sources,
            workplace_address=str(workplace),
            area_bonuses={str(k): int(_number(v, 0)) for k, v in bonuses.items()},
            max_archived_images=int(max(1, min(MAX_ARCHIVED_IMAGES_LIMIT, max_images))),
            raw=copy.deepcopy(data),
        )

    def source_enabled(self, flag: str) -> bool:
        return self.sources.get(flag, flag not in SOURCES_OFF_BY_DEFAULT)

    def source_disabled(self, source_name: str) -> bool:
        """True when every flag feeding ``source_name`` is explicitly off."""
        explicit = (self.raw.get("sources") or {})
        flags = [flag for flag, name in SOURCE_FLAGS.items() if name == source_name]
        if not flags:
            return False
        return all(explicit.get(flag) is False for flag in flags)


DEFAULT_AREAS = {
    "fribourg": [
        {"slug": "chatel-st-denis", "label": "Châtel-Saint-Denis", "canton": "fribourg"},
        {"slug": "romont-fr", "label": "Romont FR", "canton": "fribourg"},
    ],
    "saint-maurice": [
        {"slug": "st-maurice", "label": "Saint-Maurice", "canton": "valais"},
    ],
    "vevey": [
        {"slug": "vevey", "label": "Vevey", "canton": "vaud"},
        {"slug": "tour-peilz", "label": "La Tour-de-Peilz", "canton": "vaud"},
        {"slug": "corseaux", "label": "Corseaux", "canton": "vaud"},
        {"slug": "corsier-vevey", "label": "Corsier-sur-Vevey", "canton": "vaud"},
    ],
}


# Per-profile deviations from the Vevey defaults
PROFILE_DEFAULTS = {
    "vevey": {
        "title": "Vevey",
        "filters": {},
        "areaBonuses": {"Vevey": 5, "La Tour-de-Peilz": 4, "Corseaux": 4, "Corsier-sur-Vevey": 4},
    },
    "fribourg": {
        "title": "Fribourg",
        "filters": {
            "maxTotalHardChf": 1650,
            "maxPearlTotalChf": 1750,
            "maxPublishedAgeDays": 20,
            "minRoomsPreferred": 2.5,
            "minSurfaceM2Preferred": 50,
            "allowStudioTransition": False,
        },
        "areaBonuses": {},
    },
    "saint-maurice": {
        "title": "Saint-Maurice",
        "filters": {
            "maxTotalChf": 1700,
            "maxTotalHardChf": 1700,
            "maxPearlTotalChf": 1700,
            "maxPublishedAgeDays": 20,
            "minRoomsPreferred": 3,
            "allowStudioTransition": False,
        },
        "areaBonuses": {},
        "workplaceAddress": "Gare de Saint-Maurice, 1890 Saint-Maurice, Suisse",
    },
}


def make_default_profile_config(profile: str) -> Dict[str, Any]:
    """Starting watch-config for a new profile; unknown profiles start from Vevey's."""
    areas = DEFAULT_AREAS.get(profile, DEFAULT_AREAS["vevey"])
    defaults = PROFILE_DEFAULTS.get(profile, PROFILE_DEFAULTS["vevey"])

    filters = {
        "maxTotalChf": 1400,
        "maxTotalHardChf": 1550,
        "maxPearlTotalChf": 1650,
        "maxPublishedAgeDays": 30,
        "minRoomsPreferred": 2,
        "minSurfaceM2Preferred": 0,
        "allowStudioTransition": True,
        "excludedObjectTypeKeywords": ["chambre", "colocation", "wg"],
        "missingScansBeforeRemoved": 2,
    }
    filters.update(defaults["filters"])

    return {
        "name": f"Apartment Search ({defaults['title']})",
        "areas": copy.deepcopy(areas),
        "sources": {flag: flag not in SOURCES_OFF_BY_DEFAULT for flag in SOURCE_FLAGS},
        "flatfox": {"maxPagesPerArea": 3, "recheckKnownIdsLimit": 20},
        "filters": filters,
        "preferences": {"workplaceAddress": defaults.get("workplaceAddress", DEFAULT_WORK_ADDRESS)},
        "scoring": {"areaBonuses": dict(defaults["areaBonuses"])},
        "media": {"maxArchivedImagesPerListing": DEFAULT_MAX_ARCHIVED_IMAGES},
    }
