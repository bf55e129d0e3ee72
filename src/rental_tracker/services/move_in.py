"""Move-in dates: parsing source text and keeping the ``Entrée :`` notes line."""

import re
from datetime import date
from typing import Any, Optional

from ..utils.text import strip_diacritics

FRENCH_MONTHS = {
    "janvier": 1,
    "fevrier": 2,
    "mars": 3,
    "avril": 4,
    "mai": 5,
    "juin": 6,
    "juillet": 7,
    "aout": 8,
    "septembre": 9,
    "octobre": 10,
    "novembre": 11,
    "decembre": 12,
}

_NUMERIC_DATE = re.compile(r"(\d{1,2})[./-](\d{1,2})[./-](\d{2,4})")
_NAMED_DATE = re.compile(r"(\d{1,2})(?:er)?\s+(" + "|".join(FRENCH_MONTHS) + r")\s+(\d{4})")
_ISO_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")
_ENTRY_DATE = re.compile(r"^\d{2}\.\d{2}\.\d{4}$")
_ENTRY_LINE = re.compile(r"^Entr(?:é|e)e\s*:[^\n]*$", re.MULTILINE)

ENTRY_LINE_PREFIX = "Entrée : "


def format_date_parts(day: Any, month: Any, year: Any) -> Optional[str]:
    """dd.mm.yyyy for a valid calendar date, two-digit years taken as 20xx."""
    try:
        d, m, y = int(day), int(month), int(year)
    except (TypeError, ValueError):
        return None
    if y < 100:
        y += 2000
    try:
        parsed = date(y, m, d)
    except ValueError:
        return None
    return parsed.strftime("%d.%m.%Y")


def parse_date_from_text(text: Any) -> Optional[str]:
    """First numeric ('1.4.2026') or French ('1er avril 2026') date in ``text``."""
    lowered = strip_diacritics(str(text or "")).lower()
    if not lowered:
        return None

    numeric = _NUMERIC_DATE.search(lowered)
    if numeric:
        parsed = format_date_parts(*numeric.groups())
        if parsed:
            return parsed

    named = _NAMED_DATE.search(lowered)
    if named:
        return format_date_parts(named.group(1), FRENCH_MONTHS[named.group(2)], named.group(3))

    return None


def parse_moving_date(value: Any) -> Optional[str]:
    """Move-in date from an adapter's ``movingDateRaw`` (ISO date or free text)."""
    raw = str(value or "").strip()
    if not raw:
        return None
    iso = _ISO_DATE.match(raw)
    if iso:
        return format_date_parts(iso.group(3), iso.group(2), iso.group(1))
    return parse_date_from_text(raw)


def is_entry_date(value: Any) -> bool:
    return bool(value) and bool(_ENTRY_DATE.match(str(value).strip()))


def merge_notes_with_entry_date(notes: str, entry_date: Optional[str]) -> str:
    """
    Insert, replace or strip the synthesized ``Entrée : dd.mm.yyyy`` line.

    Only a line that starts with ``Entrée :`` is touched. Other lines of the
    user's notes, blank lines included, are left as they are.
    """
    current = str(notes or "")
    match = _ENTRY_LINE.search(current)

    if not entry_date:
        if not match:
            return current
        start, end = match.span()
        if end < len(current):
            end += 1
        elif start > 0:
            start -= 1
        return current[:start] + current[end:]

    line = f"{ENTRY_LINE_PREFIX}{entry_date}"
    if match:
        return current[: match.start()] + line + current[match.end():]
    if not current:
        return line
    separator = "" if current.endswith("\n") else "\n"
    return f"{current}{separator}{line}"
