"""Convert raw adapter records into canonical Listing objects."""

import html
import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from ..models.listing import Listing, ListingStage, to_number, to_positive_number
from ..utils.text import unique_strings

logger = logging.getLogger(__name__)

_TAGS = re.compile(r"<[^>]*>")
_RENT = re.compile(r"CHF\s*([\d'’\s]+)\.?-?\s*/?\s*mois", re.IGNORECASE)
_CHARGES = re.compile(r"\(\+\s*(?:CHF\s*)?([\d'’\s]+)\.?-?\s*charges\)", re.IGNORECASE)
_ANY_CHF = re.compile(r"CHF\s*([\d'’\s.,]+)", re.IGNORECASE)
_ROOMS = re.compile(r"(\d+(?:[.,]\d+)?)\s*(?:pi[eè]ces?|zimmer|rooms?)", re.IGNORECASE)
_ROOMS_HALF = re.compile(r"(\d+)\s*½")
_ROOMS_DECIMAL = re.compile(r"\b(\d+[.,]5)\b")
_SWISS_ZIP_CITY = re.compile(r"\b\d{4}\s+(.+)$")


def strip_tags(value: Any) -> str:
    text = _TAGS.sub(" ", html.unescape(str(value or "")))
    return re.sub(r"\s+", " ", text).strip()


def chf_to_number(text: str) -> Optional[int]:
    """'1'250' -> 1250. Decimal separators are dropped, Swiss prices are whole francs."""
    whole = re.split(r"[.,]\d{1,2}(?!\d)", str(text or ""), maxsplit=1)[0]
    digits = re.sub(r"[^0-9]", "", whole)
    return int(digits) if digits else None


def parse_price(raw: str) -> Dict[str, Any]:
    """
    Parse a display price such as ``CHF 1'250.-/mois (+ 150.- charges)``.

    Returns:
        Dict with priceRaw, rentChf, chargesChf and totalChf (None if unknown)
    """
    text = strip_tags(raw)
    rent_match = _RENT.search(text)
    charges_match = _CHARGES.search(text)

    rent = chf_to_number(rent_match.group(1)) if rent_match else None
    if rent is None:
        any_match = _ANY_CHF.search(text)
        rent = chf_to_number(any_match.group(1)) if any_match else None
    charges = chf_to_number(charges_match.group(1)) if charges_match else 0

    total = rent + (charges or 0) if rent is not None else None
    return {"priceRaw": text, "rentChf": rent, "chargesChf": charges, "totalChf": total}


def parse_price_text(text: str) -> Optional[int]:
    """First positive CHF amount in a free text, or None."""
    match = _ANY_CHF.search(str(text or ""))
    if not match:
        return None
    return to_positive_number(chf_to_number(match.group(1)))


def parse_rooms(text: str) -> Optional[float]:
    """Room count from '3.5 pièces', '2½ pièces', '4 Zimmer' or a bare '2,5'."""
    text = str(text or "")
    half = _ROOMS_HALF.search(text)
    if half:
        return int(half.group(1)) + 0.5
    match = _ROOMS.search(text)
    if match:
        return to_number(match.group(1))
    decimal = _ROOMS_DECIMAL.search(text)
    if decimal:
        return to_number(decimal.group(1))
    return None


def infer_area_from_address(address: str, fallback: str = "") -> str:
    """Municipality from an address: 'Rue du Lac 3, 1800 Vevey' -> 'Vevey'."""
    parts = [p.strip() for p in str(address or "").split(",") if p.strip()]
    if not parts:
        return fallback

    if not re.search(r"\d", parts[0]):
        return parts[0]

    for part in parts:
        if re.search(r"\b\d{4}\b", part):
            match = _SWISS_ZIP_CITY.search(part)
            if match:
                return match.group(1).split(",")[0].strip()

    return fallback


def _is_http_url(value: Any) -> bool:
    return bool(re.match(r"^https?://", str(value or ""), re.IGNORECASE))


def apply_image_fields(listing: Listing, raw: Optional[Dict[str, Any]] = None) -> None:
    """
    Derive local/remote/display image lists.

    Display images are the archived local copies when any exist, otherwise
    the remote URLs.
    """
    raw = raw or {}
    mixed = list(raw.get("imageUrls") or listing.image_urls or [])
    single = raw.get("imageUrl", listing.image_url)

    local = unique_strings(
        list(raw.get("imageUrlsLocal") or listing.image_urls_local or [])
        + [u for u in mixed if not _is_http_url(u)]
        + ([single] if single and not _is_http_url(single) else [])
    )

    explicit_remote = [u for u in unique_strings(raw.get("imageUrlsRemote") or listing.image_urls_remote) if _is_http_url(u)]
    if explicit_remote:
        remote = explicit_remote
    else:
        remote = unique_strings([u for u in mixed if _is_http_url(u)] + ([single] if _is_http_url(single) else []))

    set_image_lists(listing, local, remote)


def set_image_lists(listing: Listing, local: List[str], remote: List[str]) -> None:
    """Store the image lists; the display list prefers the local copies."""
    local = unique_strings(local)
    remote = [u for u in unique_strings(remote) if _is_http_url(u)]
    display = local or remote
    listing.image_urls_local = local
    listing.image_urls_remote = remote
    listing.image_urls = display
    listing.image_url = display[0] if display else None


def source_prefix(source: str) -> str:
    """'bernard-nicod.ch' -> 'bernard-nicod'."""
    return re.sub(r"\.(ch|com)$", "", str(source or "").strip().lower()) or "unknown"


def record_id(raw: Dict[str, Any]) -> str:
    """Tracker id of an adapter record: its ``id``, else ``<source prefix>:<sourceId>``."""
    listing_id = str(raw.get("id") or "").strip()
    source_id = str(raw.get("sourceId") or "").strip()
    if not listing_id and source_id:
        listing_id = f"{source_prefix(raw.get('source'))}:{source_id}"
    return listing_id


def normalize_record(raw: Dict[str, Any]) -> Optional[Listing]:
    """
    Convert one adapter record into a Listing.

    Args:
        raw: camelCase dict as produced by an adapter

    Returns:
        Normalized Listing, or None if the record cannot be identified
    """
    if not isinstance(raw, dict):
        return None

    source = str(raw.get("source") or "").strip()
    source_id = str(raw.get("sourceId") or "").strip()
    listing_id = record_id(raw)
    if not listing_id or not source:
        logger.debug(f"Dropping record without id/source: {raw.get('url') or raw.get('title')}")
        return None

    data = dict(raw)
    data["id"] = listing_id
    data["sourceId"] = source_id or listing_id.split(":", 1)[-1]

    # Rebuild the price from its components or the display string
    total = to_positive_number(data.get("totalChf"))
    if total is None:
        rent = to_positive_number(data.get("rentChf"))
        if rent is not None:
            total = rent + (to_positive_number(data.get("chargesChf")) or 0)
        elif data.get("priceRaw"):
            parsed = parse_price(data["priceRaw"])
            if data.get("rentChf") is None:
                data["rentChf"] = parsed["rentChf"]
            if data.get("chargesChf") is None:
                data["chargesChf"] = parsed["chargesChf"]
            total = parsed["totalChf"]
    data["totalChf"] = total

    try:
        listing = Listing.from_dict(data)
    except ValueError as e:
        logger.warning(f"Failed to normalize {source} record: {e}")
        return None

    listing.title = strip_tags(listing.title)
    if listing.rooms is None or listing.rooms <= 0:
        listing.rooms = parse_rooms(f"{listing.object_type} {listing.title}")
    if listing.surface_m2 is not None and listing.surface_m2 <= 0:
        listing.surface_m2 = None
    if not listing.area:
        listing.area = infer_area_from_address(listing.address)
    listing.listing_stage = ListingStage.parse(raw.get("listingStage"))

    apply_image_fields(listing, raw)
    return listing


def normalize_batch(records: Iterable[Dict[str, Any]]) -> List[Listing]:
    """Normalize adapter output, skipping records that cannot be identified."""
    listings = []
    for raw in records:
        listing = normalize_record(raw)
        if listing is not None:
            listings.append(listing)
    return listings
