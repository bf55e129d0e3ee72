"""Text normalization shared by matching, dedup and scoring."""

import re
import unicodedata

# Canton abbreviations used as city suffixes ("Romont FR", "Sierre VS")
SWISS_CANTON_CODES = frozenset(
    [
        "ag", "ai", "ar", "be", "bl", "bs", "fr", "ge", "gl", "gr",
        "ju", "lu", "ne", "nw", "ow", "sg", "sh", "so", "sz", "tg",
        "ti", "ur", "vd", "vs", "zg", "zh",
    ]
)

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_SPACES = re.compile(r"\s+")


def strip_diacritics(value: str) -> str:
    """Remove combining marks: 'Châtel' -> 'Chatel'."""
    decomposed = unicodedata.normalize("NFD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_key_text(value) -> str:
    """Lower-case ASCII words separated by single spaces."""
    text = strip_diacritics(str(value or "")).lower()
    text = _NON_ALNUM.sub(" ", text)
    return _SPACES.sub(" ", text).strip()


def normalize_area_token(value) -> str:
    """
    Normalize a municipality name for comparisons.

    "Saint-Légier" and "St-Légier" map to the same token, the "de" joiner is
    dropped and a trailing canton code is removed ("Romont FR" -> "romont").
    """
    token = normalize_key_text(value)
    token = re.sub(r"\bsaint\b", "st", token)
    token = re.sub(r"\bde\b", " ", token)
    token = _SPACES.sub(" ", token).strip()

    parts = token.split(" ")
    if len(parts) > 1 and parts[-1] in SWISS_CANTON_CODES:
        token = " ".join(parts[:-1])

    return token


def unique_strings(values) -> list:
    """De-duplicate non-empty strings, keeping first-seen order."""
    out = []
    seen = set()
    for raw in values or []:
        value = str(raw or "").strip()
        if not value or value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out
