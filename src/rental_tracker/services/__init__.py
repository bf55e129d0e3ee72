from .deduplication import DeduplicationService
from .digest import DigestService
from .eligibility import EligibilityEngine
from .geo import GeocodeCache, GeoEnricher, GeoService, RouteCache, TravelInfo
from .reconciler import TrackerReconciler, build_latest
from .scoring import ScoringService

__all__ = [
    "DeduplicationService",
    "DigestService",
    "EligibilityEngine",
    "GeocodeCache",
    "GeoEnricher",
    "GeoService",
    "RouteCache",
    "TravelInfo",
    "TrackerReconciler",
    "build_latest",
    "ScoringService",
]
