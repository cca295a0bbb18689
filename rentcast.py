"""
RentCast property records: the primary structured-data provider.

Response contract (https://api.rentcast.io/v1/properties?address=...):
either a property object or an array of them (first element used; empty
array means not found). Fields read: formattedAddress / addressLine1, city,
state, zipCode, latitude, longitude, price or lastSalePrice / rent,
bedrooms, bathrooms, squareFootage, yearBuilt, propertyType, description,
features (dict of flags/values or list).
"""

import logging
import os
from typing import Any, Dict, List, Optional

import cache
from errors import ConfigurationError
from hashing import addr_hash
from listing import Listing, ListingFields, ListingSource, PROVIDER_PRIMARY
from provider_http import ProviderHTTPClient

logger = logging.getLogger(__name__)

RENTCAST_BASE_URL = os.environ.get("RENTCAST_BASE_URL", "https://api.rentcast.io/v1")


def _number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _features(raw: Any) -> List[str]:
    """RentCast reports features as a dict ({"pool": true, "garageSpaces": 2}) or a list."""
    if isinstance(raw, list):
        return [str(x) for x in raw if x]
    if isinstance(raw, dict):
        out = []
        for key, value in raw.items():
            if value is True:
                out.append(key)
            elif value not in (None, False, "", 0):
                out.append(f"{key}: {value}")
        return out
    return []


def normalize_rentcast(data: Dict[str, Any], source_url: Optional[str] = None) -> Listing:
    """Map a RentCast property record onto the Listing model."""
    property_type = str(data.get("propertyType") or "").lower()
    rent = _number(data.get("rent"))
    price = _number(data.get("price"))
    if price is None:
        price = rent if rent is not None else _number(data.get("lastSalePrice"))
    if rent is not None or "rent" in property_type:
        price_type = "rent"
    elif price is not None:
        price_type = "buy"
    else:
        price_type = None

    year_built = data.get("yearBuilt")
    return Listing(
        source=ListingSource(provider=PROVIDER_PRIMARY, url=source_url),
        fields=ListingFields(
            address=data.get("formattedAddress") or data.get("addressLine1") or "",
            city=data.get("city") or "",
            state=data.get("state") or "",
            zip=data.get("zipCode"),
            lat=_number(data.get("latitude")),
            lon=_number(data.get("longitude")),
            price=price,
            price_type=price_type,
            beds=_number(data.get("bedrooms")),
            baths=_number(data.get("bathrooms")),
            sqft=_number(data.get("squareFootage")),
            year_built=int(year_built) if isinstance(year_built, (int, float)) else None,
            features=_features(data.get("features")),
            description_raw=data.get("description"),
        ),
    )


class RentCastClient:
    def __init__(self, api_key: Optional[str] = None, http: Optional[ProviderHTTPClient] = None):
        self.api_key = api_key if api_key is not None else os.environ.get("RENTCAST_API_KEY")
        self.http = http or ProviderHTTPClient("rentcast")

    def fetch_property(self, address: str) -> Optional[Dict[str, Any]]:
        """Raw property record for address, or None when RentCast has none."""
        if not self.api_key:
            raise ConfigurationError(
                "RENTCAST_API_KEY is not configured",
                context={"service": "rentcast"},
            )
        data = self.http.get_json(
            f"{RENTCAST_BASE_URL}/properties",
            params={"address": address},
            endpoint="properties",
            headers={"X-Api-Key": self.api_key, "Accept": "application/json"},
        )
        if isinstance(data, list):
            return data[0] if data else None
        if isinstance(data, dict) and data:
            return data
        return None


def get_primary_listing(address: str, source_url: Optional[str] = None,
                        client: Optional[RentCastClient] = None) -> Optional[Listing]:
    """Cached RentCast lookup by address. None when the provider has no record."""
    if not address:
        return None
    client = client or RentCastClient()
    key = cache.cache_key(cache.PREFIXES.rentcast, addr_hash(address))
    raw = cache.get_or_set(key, cache.TTL.rentcast, lambda: client.fetch_property(address))
    if raw is None:
        logger.info("RentCast has no record for address hash %s", key.split(":")[2][:12])
        return None
    return normalize_rentcast(raw, source_url=source_url)
