"""
Input normalization: turn a listing URL and/or a free-text address into a
NormalizedInput with one canonical address string.

URL extraction is pattern-based per known listing site and never raises;
when nothing usable comes out, the address is left empty so the resolver
can try its own recovery.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, Optional
from urllib.parse import parse_qs, unquote, urlparse

from errors import ValidationError

# Street-type and unit abbreviations, expanded on token boundaries.
STREET_ABBREVIATIONS = {
    "st": "street",
    "ave": "avenue",
    "av": "avenue",
    "blvd": "boulevard",
    "rd": "road",
    "dr": "drive",
    "ln": "lane",
    "ct": "court",
    "pl": "place",
    "pkwy": "parkway",
    "hwy": "highway",
    "cir": "circle",
    "ter": "terrace",
    "apt": "apartment",
}

UNIT_ABBREVIATIONS = {"apt"}

# Dropped entirely ("unit 4" -> "4").
DROPPED_TOKENS = {"unit"}

STREET_TYPE_WORDS = set(STREET_ABBREVIATIONS.values()) | {
    "way", "square", "trail", "row", "alley", "crescent", "loop", "plaza",
}

_ADDRESS_RE = re.compile(r"^(.+?),\s*(.+?),\s*([A-Za-z]{2})(?:\s+(\d{5}(?:-\d{4})?))?$")
_HOUSE_NUMBER_RE = re.compile(r"^\d+[a-z]?$", re.IGNORECASE)
_ZILLOW_ID_RE = re.compile(r"_zpid$|^\d+_zpid$", re.IGNORECASE)


@dataclass(frozen=True)
class SourceMeta:
    input_type: str  # "url" | "address"
    parsed_from_url: bool = False
    url: Optional[str] = None


@dataclass(frozen=True)
class NormalizedInput:
    address: str
    source_meta: SourceMeta = field(default_factory=lambda: SourceMeta(input_type="address"))

    def to_dict(self) -> Dict:
        return {
            "address": self.address,
            "source_meta": {
                "url": self.source_meta.url,
                "input_type": self.source_meta.input_type,
                "parsed_from_url": self.source_meta.parsed_from_url,
            },
        }


# =============================================================================
# Address strings
# =============================================================================

def _normalize_once(text: str) -> str:
    text = re.sub(r"\s+", " ", text.strip().lower())
    # Normalize comma spacing so "a ,b" and "a, b" agree.
    segments = [s.strip() for s in text.split(",") if s.strip()]
    parts = []
    for i, segment in enumerate(segments):
        # Street types expand only in the street segment ("st louis" is a
        # city); the final segment usually holds "ST zip" and is left as-is.
        is_street = i == 0
        is_last = i == len(segments) - 1 and len(segments) > 1
        tokens = []
        for token in segment.split(" "):
            bare = token.rstrip(".")
            if not is_last and bare in DROPPED_TOKENS:
                continue
            if is_street or (not is_last and bare in UNIT_ABBREVIATIONS):
                bare = STREET_ABBREVIATIONS.get(bare, bare)
            tokens.append(bare)
        cleaned = " ".join(t for t in tokens if t)
        if cleaned:
            parts.append(cleaned)
    return ", ".join(parts)


def normalize_address_string(address: str) -> str:
    """Canonical form: lower-case, single spaces, abbreviations expanded.

    Idempotent: normalize(normalize(x)) == normalize(x). Dropping a token can
    shift which segment is the street segment, so the pass is repeated until
    the text stops changing.
    """
    text = address or ""
    for _ in range(5):
        normalized = _normalize_once(text)
        if normalized == text:
            break
        text = normalized
    return text


def parse_address(address: str) -> Optional[Dict[str, Optional[str]]]:
    """Split "street, city, ST 12345" into components, or None."""
    match = _ADDRESS_RE.match((address or "").strip())
    if not match:
        return None
    street, city, state, zip_code = match.groups()
    return {
        "street": street.strip(),
        "city": city.strip(),
        "state": state.upper(),
        "zip": zip_code,
    }


def is_full_address(address: str) -> bool:
    """True when the address has a street-level component.

    A street-level component starts with a house number or contains a
    street-type word; "los angeles, ca" is partial, "123 main st, ..." is full.
    """
    if not address:
        return False
    first = normalize_address_string(address).split(", ")[0]
    tokens = first.split(" ")
    if tokens and _HOUSE_NUMBER_RE.match(tokens[0]):
        return True
    return any(t in STREET_TYPE_WORDS for t in tokens[1:])


def validate_address(address: str) -> bool:
    """An address needs at least a street and a city."""
    parts = [p for p in normalize_address_string(address).split(", ") if p]
    return len(parts) >= 2 and is_full_address(address)


# =============================================================================
# URL extraction
# =============================================================================

def _slug_to_address(slug: str) -> str:
    text = unquote(slug).replace("-", " ").replace("_", " ")
    return re.sub(r"\s+", " ", text).strip()


def extract_address_from_url(url: str) -> Optional[str]:
    """Best-effort address extraction from a listing URL. Never raises."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    host = (parsed.netloc or "").lower()
    segments = [s for s in parsed.path.split("/") if s]

    query = parse_qs(parsed.query)
    for param in ("address", "addr"):
        if query.get(param) and query[param][0].strip():
            return query[param][0].strip()

    if "zillow.com" in host:
        if "homedetails" in segments:
            idx = segments.index("homedetails")
            if idx + 1 < len(segments) and not _ZILLOW_ID_RE.search(segments[idx + 1]):
                return _slug_to_address(segments[idx + 1]) or None
        if "apartments" in segments:
            # /apartments/<city>-<st>/<building>/ -> partial "city, st"
            idx = segments.index("apartments")
            if idx + 1 < len(segments):
                words = _slug_to_address(segments[idx + 1]).split(" ")
                if len(words) >= 2 and len(words[-1]) == 2:
                    return f"{' '.join(words[:-1])}, {words[-1]}"
        return None

    if any(site in host for site in ("apartments.com", "trulia.com", "redfin.com")):
        candidates = list(reversed(segments))
        for candidate in candidates:
            words = _slug_to_address(candidate).split(" ")
            # A bare listing id ("/home/12345") is not an address.
            if len(words) >= 2 and _HOUSE_NUMBER_RE.match(words[0]):
                return " ".join(words)
        return None

    return None


def normalize_input(url: Optional[str] = None, address: Optional[str] = None) -> NormalizedInput:
    """Build the NormalizedInput for one decode request.

    Raises ValidationError when neither url nor address is provided.
    """
    url = (url or "").strip() or None
    address = (address or "").strip() or None
    if not url and not address:
        raise ValidationError(
            "Either url or address is required",
            field="url",
            user_message="Please provide a listing URL or an address.",
        )

    if url:
        extracted = extract_address_from_url(url)
        if extracted:
            return NormalizedInput(
                address=normalize_address_string(extracted),
                source_meta=SourceMeta(input_type="url", parsed_from_url=True, url=url),
            )
        if address:
            return NormalizedInput(
                address=normalize_address_string(address),
                source_meta=SourceMeta(input_type="address", parsed_from_url=False, url=url),
            )
        return NormalizedInput(
            address="",
            source_meta=SourceMeta(input_type="url", parsed_from_url=False, url=url),
        )

    return NormalizedInput(
        address=normalize_address_string(address),
        source_meta=SourceMeta(input_type="address"),
    )
