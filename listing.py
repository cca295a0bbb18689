"""
Listing model shared by every data source.

A Listing is "core-complete" when address, city and state are present and
at least one of price / beds / baths is known. Merging prefers the primary
provider's values and fills gaps from the scrape.
"""

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from decoder_config import DECODER_CONFIG

PROVIDER_PRIMARY = "primary"
PROVIDER_SCRAPE = "scrape"
PROVIDER_MERGED = "merged"

CORE_LOCATION_FIELDS = ("address", "city", "state")
CORE_DETAIL_FIELDS = ("price", "beds", "baths")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ListingSource:
    provider: str
    url: Optional[str] = None
    fetched_at: str = field(default_factory=_now_iso)
    version: str = DECODER_CONFIG.version


@dataclass
class ListingFields:
    address: str = ""
    city: str = ""
    state: str = ""
    zip: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None
    price: Optional[float] = None
    price_currency: str = "USD"
    price_type: Optional[str] = None  # "rent" | "buy"
    beds: Optional[float] = None
    baths: Optional[float] = None
    sqft: Optional[float] = None
    year_built: Optional[int] = None
    features: List[str] = field(default_factory=list)
    description_raw: Optional[str] = None


@dataclass
class Listing:
    source: ListingSource
    fields: ListingFields

    def to_dict(self) -> Dict[str, Any]:
        return {"source": asdict(self.source), "listing": asdict(self.fields)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Listing":
        src = data.get("source") or {}
        raw = data.get("listing") or data.get("fields") or {}
        known = {f.name for f in fields(ListingFields)}
        values = {k: v for k, v in raw.items() if k in known}
        values["features"] = list(values.get("features") or [])
        source_known = {f.name for f in fields(ListingSource)}
        return cls(
            source=ListingSource(**{k: v for k, v in src.items() if k in source_known}),
            fields=ListingFields(**values),
        )


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def missing_core_fields(listing: Optional[Listing]) -> List[str]:
    """Names of the core fields that prevent the listing from being usable."""
    if listing is None:
        return list(CORE_LOCATION_FIELDS) + ["price|beds|baths"]
    f = listing.fields
    missing = [name for name in CORE_LOCATION_FIELDS if _blank(getattr(f, name))]
    if all(getattr(f, name) is None for name in CORE_DETAIL_FIELDS):
        missing.append("price|beds|baths")
    return missing


def has_core_fields(listing: Optional[Listing]) -> bool:
    return not missing_core_fields(listing)


def received_values(listing: Optional[Listing]) -> Dict[str, Any]:
    """The core fields a listing did carry (for DataQualityError context)."""
    if listing is None:
        return {}
    f = listing.fields
    return {
        name: getattr(f, name)
        for name in CORE_LOCATION_FIELDS + CORE_DETAIL_FIELDS
        if not _blank(getattr(f, name))
    }


def merge_listings(primary: Listing, scrape: Listing) -> Listing:
    """Primary values win field by field; scrape fills gaps; features are unioned."""
    merged = {}
    for f in fields(ListingFields):
        if f.name == "features":
            continue
        primary_value = getattr(primary.fields, f.name)
        merged[f.name] = (
            getattr(scrape.fields, f.name) if _blank(primary_value) else primary_value
        )
    features: List[str] = []
    seen = set()
    for feature in list(primary.fields.features) + list(scrape.fields.features):
        key = feature.strip().lower()
        if key and key not in seen:
            seen.add(key)
            features.append(feature.strip())
    merged["features"] = features

    return Listing(
        source=ListingSource(
            provider=PROVIDER_MERGED,
            url=primary.source.url or scrape.source.url,
        ),
        fields=ListingFields(**merged),
    )
