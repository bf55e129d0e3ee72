"""Flatfox adapter using the public listing JSON API."""

import logging
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import quote, urljoin

import requests

from ..models.listing import Listing, to_positive_number
from ..services.normalizer import parse_price_text, parse_rooms, strip_tags
from ..utils.retry import retry_with_backoff
from ..utils.text import unique_strings
from . import register_adapter
from .base import BaseAdapter

logger = logging.getLogger(__name__)

BASE_URL = "https://flatfox.ch"
MAX_IMAGES = 6


@register_adapter("flatfox")
class FlatfoxAdapter(BaseAdapter):
    """
    Adapter for flatfox.ch rentals.

    Free, no API key required. Each profile area is searched by its label and
    its slug; the API pages with a ``next`` URL.
    """

    source_name = "flatfox.ch"
    SEARCH_URL = f"{BASE_URL}/api/v1/public-listing/popular/"
    DETAIL_URL = f"{BASE_URL}/api/v1/public-listing/{{pk}}/"

    def __init__(self, settings, profile, session=None):
        super().__init__(settings, profile, session=session)
        options = profile.raw.get("flatfox") or {}
        self.max_pages = max(1, int(options.get("maxPagesPerArea") or 3))
        self.recheck_limit = max(0, int(options.get("recheckKnownIdsLimit", 20)))

    def area_tokens(self) -> List[str]:
        """Area labels first (the API matches accented names best), then slugs."""
        tokens = []
        for area in self.profile.areas:
            tokens.append(area.label.strip())
            tokens.append(area.slug.strip().lower().replace("_", "-"))
        return unique_strings(tokens)

    def fetch_listings(self) -> List[Dict[str, Any]]:
        """Fetch rental apartments for every area token."""
        listings = []

        for token in self.area_tokens():
            try:
                logger.info(f"Fetching Flatfox listings for area: {token}")
                listings.extend(self._fetch_area(token))
            except requests.RequestException as e:
                self.warn(f"area={token}: {e}")
                continue

        logger.info(f"Fetched {len(listings)} listings from Flatfox")
        return listings

    def _fetch_area(self, token: str) -> List[Dict[str, Any]]:
        out = []
        next_url: Optional[str] = f"{self.SEARCH_URL}?area={quote(token)}&limit=100&expand=images"
        page = 0

        while next_url and page < self.max_pages:
            page += 1
            payload = self._get_json(next_url)
            results = payload.get("results") if isinstance(payload, dict) else None

            for entry in results or []:
                parsed = self._parse_listing(entry)
                if parsed:
                    out.append(parsed)

            next_page = payload.get("next") if isinstance(payload, dict) else None
            next_url = next_page.strip() if isinstance(next_page, str) and next_page.strip() else None

        return out

    def recheck(self, missing: Iterable[Listing]) -> List[Dict[str, Any]]:
        """Fetch tracked Flatfox listings one by one, up to ``recheckKnownIdsLimit``."""
        recovered = []
        candidates = [x for x in missing if x.source == self.source_name and x.source_id][: self.recheck_limit]

        for old in candidates:
            try:
                payload = self._get_json(f"{self.DETAIL_URL.format(pk=quote(old.source_id))}?expand=images")
            except requests.RequestException as e:
                logger.debug(f"Recheck of {old.id} failed: {e}")
                continue
            parsed = self._parse_listing(payload, fallback_area=old.area)
            if parsed:
                recovered.append(parsed)

        if candidates:
            logger.info(f"Rechecked {len(candidates)} Flatfox listings, {len(recovered)} still online")
        return recovered

    @retry_with_backoff(max_retries=2, exceptions=(requests.RequestException,))
    def _get_json(self, url: str) -> Any:
        response = self.session.get(url, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def _parse_listing(self, raw: Any, fallback_area: str = "") -> Optional[Dict[str, Any]]:
        """Convert an API record; only active apartment rentals are kept."""
        if not isinstance(raw, dict):
            return None

        source_id = str(raw.get("pk") or "").strip()
        if not source_id:
            return None
        if str(raw.get("offer_type") or "").upper() != "RENT":
            return None
        if str(raw.get("object_category") or "").upper() != "APARTMENT":
            return None
        if str(raw.get("status") or "").lower() != "act":
            return None

        rooms = to_positive_number(raw.get("number_of_rooms"))
        if rooms is None:
            rooms = parse_rooms(raw.get("short_title") or raw.get("public_title") or "")

        surface = to_positive_number(raw.get("surface_living"))
        if surface is None:
            surface = to_positive_number(raw.get("space_display"))

        # Gross rent, then the display price, then net + charges, then the title
        rent = to_positive_number(raw.get("rent_net"))
        charges = to_positive_number(raw.get("rent_charges")) or 0
        total = to_positive_number(raw.get("rent_gross"))
        if total is None:
            total = to_positive_number(raw.get("price_display"))
        if total is None and rent is not None:
            total = rent + charges
        if total is None:
            total = parse_price_text(raw.get("public_title") or raw.get("description_title") or raw.get("short_title"))

        city = str(raw.get("city") or fallback_area or "").strip()
        street = str(raw.get("street") or "").strip()
        zipcode = str(raw.get("zipcode")).strip() if raw.get("zipcode") is not None else ""
        locality = " ".join(part for part in (zipcode, city) if part)
        address = str(raw.get("public_address") or "").strip() or ", ".join(
            part for part in (street, locality) if part
        )

        images = []
        for image in raw.get("images") or []:
            if isinstance(image, dict):
                path = image.get("url_listing_search") or image.get("url_thumb_m") or image.get("url")
                if path:
                    images.append(urljoin(BASE_URL, str(path)))
        images = unique_strings(images)[:MAX_IMAGES]

        agency = raw.get("agency") if isinstance(raw.get("agency"), dict) else {}
        agency_name = " / ".join(
            part for part in (strip_tags(agency.get("name")), strip_tags(agency.get("name_2"))) if part
        )

        url = raw.get("url") or raw.get("short_url")
        title = strip_tags(raw.get("description_title") or raw.get("short_title") or "") or "Appartement"

        return {
            "id": f"flatfox:{source_id}",
            "sourceId": source_id,
            "source": self.source_name,
            "url": urljoin(BASE_URL, str(url)) if url else None,
            "title": title,
            "objectType": f"Appartement {rooms:g} pièces" if rooms is not None else (raw.get("short_title") or "Appartement"),
            "address": address,
            "area": city,
            "rooms": rooms,
            "surfaceM2": surface,
            "priceRaw": raw.get("public_title") or (f"CHF {total}/mois" if total is not None else ""),
            "rentChf": rent,
            "chargesChf": charges,
            "totalChf": total,
            "imageUrls": images,
            "agencyName": agency_name or None,
            "providerName": agency_name or None,
            "movingDateRaw": raw.get("moving_date") or None,
            "publishedAt": raw.get("published") or raw.get("created") or None,
        }
