"""Google Maps Geocoding + Places client used by geocoding and location insights."""

import logging
import math
import os
from typing import Dict, List, Optional, Tuple

from decoder_config import RetryPolicy
from errors import APIError
from provider_http import ProviderHTTPClient

logger = logging.getLogger(__name__)

# Light retry: augmentation steps are best-effort.
AUGMENT_RETRY = RetryPolicy(max_retries=1, base_delay=0.5, max_delay=2.0)


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters."""
    r = 6371000.0
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * r * math.asin(math.sqrt(a))


class GoogleMapsClient:
    """Client for Google Maps APIs"""

    def __init__(self, api_key: Optional[str] = None, http: Optional[ProviderHTTPClient] = None):
        self.api_key = api_key if api_key is not None else os.environ.get("GOOGLE_MAPS_API_KEY")
        self.base_url = "https://maps.googleapis.com/maps/api"
        self.http = http or ProviderHTTPClient("google_maps", retry=AUGMENT_RETRY)

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _get(self, endpoint: str, path: str, params: Dict) -> Dict:
        data = self.http.get_json(
            f"{self.base_url}/{path}", params={**params, "key": self.api_key}, endpoint=endpoint
        ) or {}
        status = data.get("status", "")
        if status not in ("OK", "ZERO_RESULTS"):
            raise APIError("google_maps", f"{endpoint} failed: {status or 'no status'}")
        return data

    def geocode(self, address: str) -> Optional[Tuple[float, float]]:
        """Convert address to lat/lng coordinates, or None when Google has no match."""
        data = self._get("geocode", "geocode/json", {"address": address})
        if not data.get("results"):
            return None
        location = data["results"][0]["geometry"]["location"]
        return location["lat"], location["lng"]

    def places_nearby(
        self,
        lat: float,
        lng: float,
        place_type: str,
        radius_meters: int = 1600,
    ) -> List[Dict]:
        """Search for places near a location"""
        data = self._get(
            "places_nearby",
            "place/nearbysearch/json",
            {"location": f"{lat},{lng}", "radius": radius_meters, "type": place_type},
        )
        return data.get("results", [])
