"""Abstract base adapter for listing sources."""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

import requests

from ..config import ProfileConfig
from ..models.listing import Listing

logger = logging.getLogger(__name__)


class BaseAdapter(ABC):
    """
    Abstract base class for all listing source adapters.

    Each adapter must implement:
    - fetch_listings(): Retrieve the source's current listings for a profile

    Adapters return raw camelCase dicts in the shape of ``Listing.to_dict()``
    (at least ``source``, ``sourceId`` and a price or its components); the
    normalizer turns them into listings.

    Subclasses should use the @register_adapter decorator to register
    themselves under their watch-config ``sources`` flag.
    """

    source_name: str = ""

    def __init__(
        self,
        settings: Dict[str, Any],
        profile: ProfileConfig,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize adapter with configuration.

        Args:
            settings: Application settings (http section is used)
            profile: Profile whose areas are searched
            session: Shared HTTP session
        """
        http = settings.get("http", {})
        self.settings = settings
        self.profile = profile
        self.timeout = float(http.get("timeout_seconds", 20))
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", http.get("user_agent", "rental-tracker/0.1"))
        self.warnings: List[str] = []

    @abstractmethod
    def fetch_listings(self) -> List[Dict[str, Any]]:
        """
        Fetch the source's listings for the profile's areas.

        Failures of a single area or page should be recorded with warn()
        rather than raised.

        Returns:
            List of raw listing dicts
        """
        pass

    def recheck(self, missing: Iterable[Listing]) -> List[Dict[str, Any]]:
        """
        Look up tracked listings of this source the search did not return.

        Search results are paginated and capped, so a listing can drop out of
        them while still online. The default does no lookup.
        """
        return []

    def warn(self, message: str) -> None:
        line = f"WARN {self.source_name}: {message}"
        logger.warning(line)
        self.warnings.append(line)

    def get_source_name(self) -> str:
        """Get the name of this source."""
        return self.source_name

    def is_available(self) -> bool:
        """
        Check if the source is properly configured and accessible.

        Override this method to check for required API keys, etc.

        Returns:
            True if the adapter is ready to use
        """
        return True
