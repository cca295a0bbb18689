"""
Geocoding chain: an ordered list of providers with a uniform contract.

Each provider is a callable ``(address) -> Optional[GeocodeResult]``.
Providers without credentials are skipped; a provider that errors or has no
match yields to the next. Listing coordinates, when present, win outright.
"""

import logging
import os
from dataclasses import asdict, dataclass
from typing import Callable, Dict, List, Optional
from urllib.parse import quote

import cache
from errors import AppError
from hashing import addr_hash
from places import AUGMENT_RETRY, GoogleMapsClient
from provider_http import ProviderHTTPClient

logger = logging.getLogger(__name__)

MAPBOX_URL = "https://api.mapbox.com/geocoding/v5/mapbox.places/{query}.json"
NOMINATIM_URL = os.environ.get(
    "NOMINATIM_URL", "https://nominatim.openstreetmap.org/search"
)
NOMINATIM_USER_AGENT = os.environ.get(
    "NOMINATIM_USER_AGENT", "LandlordDecoder/1.0 (listing analysis)"
)


@dataclass
class GeocodeResult:
    lat: float
    lon: float
    provider: str  # "listing" | "mapbox" | "google" | "nominatim"

    def to_dict(self) -> Dict:
        return asdict(self)


def geocode_mapbox(address: str) -> Optional[GeocodeResult]:
    token = os.environ.get("MAPBOX_TOKEN")
    if not token:
        return None
    http = ProviderHTTPClient("mapbox", retry=AUGMENT_RETRY)
    data = http.get_json(
        MAPBOX_URL.format(query=quote(address, safe="")),
        params={"access_token": token, "limit": 1, "country": "us"},
        endpoint="geocode",
    )
    if not isinstance(data, dict):
        return None
    features = data.get("features") or []
    if not features:
        return None
    lon, lat = features[0]["center"]
    return GeocodeResult(lat=float(lat), lon=float(lon), provider="mapbox")


def geocode_google(address: str) -> Optional[GeocodeResult]:
    client = GoogleMapsClient()
    if not client.configured:
        return None
    coords = client.geocode(address)
    if not coords:
        return None
    return GeocodeResult(lat=coords[0], lon=coords[1], provider="google")


def geocode_nominatim(address: str) -> Optional[GeocodeResult]:
    http = ProviderHTTPClient(
        "nominatim", retry=AUGMENT_RETRY, headers={"User-Agent": NOMINATIM_USER_AGENT}
    )
    data = http.get_json(
        NOMINATIM_URL,
        params={"q": address, "format": "json", "limit": 1, "countrycodes": "us"},
        endpoint="search",
    )
    if not data or not isinstance(data, list):
        return None
    return GeocodeResult(lat=float(data[0]["lat"]), lon=float(data[0]["lon"]), provider="nominatim")


def default_geocoders() -> List[Callable[[str], Optional[GeocodeResult]]]:
    """Provider order: Mapbox, Google, then the free Nominatim service."""
    return [geocode_mapbox, geocode_google, geocode_nominatim]


def geocode_address(address: str, providers: Optional[List[Callable]] = None) -> Optional[GeocodeResult]:
    """First successful result from the provider chain, or None."""
    if not address:
        return None
    for provider in providers or default_geocoders():
        try:
            result = provider(address)
        except (AppError, AttributeError, KeyError, IndexError, TypeError, ValueError) as e:
            logger.warning("Geocoder %s failed: %s", getattr(provider, "__name__", provider), e)
            continue
        if result is not None:
            return result
    return None


def cached_geocode(address: str, qualifier: str = "geocode") -> Optional[GeocodeResult]:
    """geocode_address behind the cache, keyed by address hash."""
    key = cache.cache_key(f"{cache.PREFIXES.augment}:{qualifier}", addr_hash(address))

    def _fetch():
        result = geocode_address(address)
        return result.to_dict() if result else None

    data = cache.get_or_set(key, cache.TTL.augment, _fetch)
    return GeocodeResult(**data) if data else None
