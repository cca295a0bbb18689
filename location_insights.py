"""
Location insights: registry counts, official registry links, nearby amenity
counts, nearby schools and transit access.

Every category is cached on its own (per address hash and qualifier) and
skipped silently when its API key is not configured, so one provider
outage or missing key never blanks the others.
"""

import logging
import os
from typing import Any, Dict, List, Optional
from urllib.parse import quote_plus

import cache
from decoder_config import DECODER_CONFIG
from errors import AppError, APIError
from hashing import addr_hash
from places import AUGMENT_RETRY, GoogleMapsClient, haversine_m
from provider_http import ProviderHTTPClient

logger = logging.getLogger(__name__)

FAMILY_WATCHDOG_API_URL = "https://www.familywatchdog.us/api/search"

REGISTRY_NOTE = (
    "Counts come from Family Watchdog. Check the official registries for "
    "current information; this public-record data changes over time."
)

NATIONAL_REGISTRY = {
    "name": "National Sex Offender Public Website (NSOPW)",
    "url": "https://www.nsopw.gov/",
}

STATE_ABBREVIATIONS = {
    "alabama": "AL", "alaska": "AK", "arizona": "AZ", "arkansas": "AR",
    "california": "CA", "colorado": "CO", "connecticut": "CT", "delaware": "DE",
    "district of columbia": "DC", "florida": "FL", "georgia": "GA", "hawaii": "HI",
    "idaho": "ID", "illinois": "IL", "indiana": "IN", "iowa": "IA", "kansas": "KS",
    "kentucky": "KY", "louisiana": "LA", "maine": "ME", "maryland": "MD",
    "massachusetts": "MA", "michigan": "MI", "minnesota": "MN", "mississippi": "MS",
    "missouri": "MO", "montana": "MT", "nebraska": "NE", "nevada": "NV",
    "new hampshire": "NH", "new jersey": "NJ", "new mexico": "NM", "new york": "NY",
    "north carolina": "NC", "north dakota": "ND", "ohio": "OH", "oklahoma": "OK",
    "oregon": "OR", "pennsylvania": "PA", "rhode island": "RI",
    "south carolina": "SC", "south dakota": "SD", "tennessee": "TN", "texas": "TX",
    "utah": "UT", "vermont": "VT", "virginia": "VA", "washington": "WA",
    "west virginia": "WV", "wisconsin": "WI", "wyoming": "WY",
}

STATE_REGISTRIES = {
    "CA": "https://www.meganslaw.ca.gov/",
    "NY": "https://www.criminaljustice.ny.gov/nsor/",
    "TX": "https://publicsite.dps.texas.gov/SexOffenderRegistry",
    "FL": "https://offender.fdle.state.fl.us/offender/sops/home.jsf",
    "IL": "https://isp.illinois.gov/Sor",
    "PA": "https://www.pameganslaw.state.pa.us/",
    "NJ": "https://www.njsp.org/sex-offender-registry/",
    "WA": "https://www.waspc.org/sex-offender-information",
    "MA": "https://www.mass.gov/orgs/sex-offender-registry-board",
    "KY": "https://kspsor.ky.gov/",
    "IA": "https://www.iowasexoffender.gov/",
    "DE": "https://sexoffender.dsp.delaware.gov/",
    "DC": "https://mpdc.dc.gov/service/sex-offender-registry",
}

AMENITY_TYPES = {
    "grocery_stores": "grocery_or_supermarket",
    "restaurants": "restaurant",
    "parks": "park",
    "schools": "school",
    "transit_stations": "transit_station",
}


def state_abbreviation(state: str) -> Optional[str]:
    """Two-letter code for a state given as a code or a full name."""
    if not state:
        return None
    s = state.strip()
    if len(s) == 2 and s.upper() in STATE_ABBREVIATIONS.values():
        return s.upper()
    return STATE_ABBREVIATIONS.get(s.lower())


def registry_links(state: str) -> List[Dict[str, str]]:
    """National registry plus the state's official registry (or a search link)."""
    links = [dict(NATIONAL_REGISTRY)]
    code = state_abbreviation(state)
    if code and code in STATE_REGISTRIES:
        links.append({"name": f"{code} state registry", "url": STATE_REGISTRIES[code]})
    elif state:
        label = code or state.strip()
        links.append({
            "name": f"{label} registry search",
            "url": f"https://www.google.com/search?q={quote_plus(label + ' sex offender registry')}",
        })
    return links


def _augment_key(kind: str, address: str, qualifier: str) -> str:
    return cache.cache_key(
        f"{cache.PREFIXES.augment}:{kind}", f"{addr_hash(address)}:{qualifier}"
    )


# =============================================================================
# Registry counts (Family Watchdog)
# =============================================================================

def query_registry_count(lat: float, lon: float, radius_miles: int,
                         http: Optional[ProviderHTTPClient] = None) -> Optional[int]:
    api_key = os.environ.get("FAMILY_WATCHDOG_API_KEY")
    if not api_key:
        return None
    http = http or ProviderHTTPClient(
        "family_watchdog", retry=AUGMENT_RETRY, headers={"User-Agent": "Landlord Decoder"}
    )
    data = http.get_json(
        FAMILY_WATCHDOG_API_URL,
        params={"key": api_key, "lat": lat, "lon": lon, "radius": radius_miles},
        endpoint=f"search_{radius_miles}mi",
    ) or {}
    if not data.get("success"):
        raise APIError("family_watchdog", f"search failed: {data.get('error') or 'unknown error'}")
    return int(data.get("count") or 0)


def registry_counts(address: str, lat: float, lon: float) -> Dict[str, int]:
    if not os.environ.get("FAMILY_WATCHDOG_API_KEY"):
        return {}
    counts: Dict[str, int] = {}
    for radius in (1, 2):
        try:
            value = cache.get_or_set(
                _augment_key("registry", address, f"{radius}mi"),
                cache.TTL.augment,
                lambda r=radius: query_registry_count(lat, lon, r),
            )
        except AppError as e:
            logger.warning("Registry count (%dmi) failed: %s", radius, e.message)
            continue
        if value is not None:
            counts[f"count_{radius}mi"] = int(value)
    return counts


# =============================================================================
# Google Places
# =============================================================================

def _place_distance_m(lat: float, lon: float, place: Dict[str, Any]) -> int:
    loc = ((place.get("geometry") or {}).get("location")) or {}
    if "lat" not in loc:
        return 0
    return int(round(haversine_m(lat, lon, loc["lat"], loc["lng"])))


def _school_type(types: List[str]) -> str:
    if "primary_school" in types or "elementary_school" in types:
        return "elementary"
    if "secondary_school" in types:
        return "secondary"
    if "university" in types:
        return "university"
    return "other"


def amenity_counts(address: str, lat: float, lon: float,
                   client: Optional[GoogleMapsClient] = None) -> Optional[Dict[str, int]]:
    client = client or GoogleMapsClient()
    if not client.configured:
        return None
    radius = DECODER_CONFIG.places_radius_m
    counts: Dict[str, int] = {}
    for label, place_type in AMENITY_TYPES.items():
        try:
            value = cache.get_or_set(
                _augment_key("places", address, place_type),
                cache.TTL.augment,
                lambda t=place_type: len(client.places_nearby(lat, lon, t, radius)),
            )
        except AppError as e:
            logger.warning("Places count for %s failed: %s", place_type, e.message)
            continue
        counts[label] = int(value or 0)
    return counts or None


def nearby_schools(address: str, lat: float, lon: float,
                   client: Optional[GoogleMapsClient] = None) -> Optional[List[Dict[str, Any]]]:
    client = client or GoogleMapsClient()
    if not client.configured:
        return None

    def _fetch():
        results = client.places_nearby(lat, lon, "school", DECODER_CONFIG.schools_radius_m)
        schools = [
            {
                "name": place.get("name", ""),
                "distance_m": _place_distance_m(lat, lon, place),
                "rating": place.get("rating"),
                "type": _school_type(place.get("types") or []),
            }
            for place in results
        ]
        schools.sort(key=lambda s: s["distance_m"])
        return schools[:DECODER_CONFIG.max_schools]

    try:
        return cache.get_or_set(_augment_key("schools", address, "list"), cache.TTL.augment, _fetch)
    except AppError as e:
        logger.warning("Nearby schools lookup failed: %s", e.message)
        return None


# =============================================================================
# Entry point
# =============================================================================

def compute_location_insights(address: str, lat: float, lon: float, state: str) -> Dict[str, Any]:
    insights: Dict[str, Any] = {
        "registry": {
            **registry_counts(address, lat, lon),
            "registry_links": registry_links(state),
            "note": REGISTRY_NOTE,
        }
    }
    client = GoogleMapsClient()
    amenities = amenity_counts(address, lat, lon, client=client)
    if amenities:
        insights["nearby_amenities"] = amenities
        if "transit_stations" in amenities:
            insights["transit"] = {"stations_nearby": amenities["transit_stations"]}
    schools = nearby_schools(address, lat, lon, client=client)
    if schools:
        insights["schools"] = schools
    return insights
