"""URL-friendly slugs for published reports."""

import re
from typing import Any, Dict

from listing import Listing

_NON_WORD_RE = re.compile(r"[^\w\s-]")
_SEPARATOR_RE = re.compile(r"[\s_-]+")


def slugify(text: str) -> str:
    text = _NON_WORD_RE.sub("", (text or "").lower().strip())
    return _SEPARATOR_RE.sub("-", text).strip("-")


def slug_from_address(listing: Listing) -> str:
    """city-street, e.g. ``los-angeles-123-main-st``."""
    f = listing.fields
    parts = []
    if f.city:
        parts.append(slugify(f.city))
    if f.address:
        parts.append(slugify(f.address.split(",")[0]))
    parts = [p for p in parts if p]
    return "-".join(parts) or "property"


def slug_from_report(listing: Listing, report: Dict[str, Any]) -> str:
    score = int((report.get("scorecard") or {}).get("total") or 0)
    return f"{slug_from_address(listing)}-{score}"
