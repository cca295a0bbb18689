"""
Noise screening from proximity to motorways and airports.

Road geometry and aerodromes come from OpenStreetMap via the Overpass API.
The tier is a distance heuristic, not a measured sound level:
  - high:   motorway < 300 m or airport < 3 km
  - medium: motorway < 1 km or airport < 8 km
  - low:    otherwise (including nothing found within the search radius)
"""

import logging
import os
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

from decoder_config import DECODER_CONFIG
from places import AUGMENT_RETRY, haversine_m
from provider_http import ProviderHTTPClient

logger = logging.getLogger(__name__)

OVERPASS_BASE_URL = os.environ.get(
    "OVERPASS_BASE_URL", "https://overpass-api.de/api/interpreter"
)

METHOD_NOTE = (
    "Distance heuristic from OpenStreetMap motorways and aerodromes; "
    "not a measured noise level."
)


class NoiseLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass
class NoiseEstimate:
    level: str
    motorway_distance_m: Optional[int] = None
    airport_distance_m: Optional[int] = None
    method: str = METHOD_NOTE

    def to_dict(self) -> Dict:
        return asdict(self)


def _nearest_point_on_segment(
    px: float, py: float,
    ax: float, ay: float,
    bx: float, by: float,
) -> Tuple[float, float]:
    """Closest point on segment A->B to P (planar approximation on lat/lon)."""
    abx, aby = bx - ax, by - ay
    ab_dot_ab = abx * abx + aby * aby
    if ab_dot_ab == 0:
        return ax, ay
    t = ((px - ax) * abx + (py - ay) * aby) / ab_dot_ab
    t = max(0.0, min(1.0, t))
    return ax + t * abx, ay + t * aby


def distance_to_polyline_m(lat: float, lon: float, nodes: List[Tuple[float, float]]) -> float:
    if len(nodes) == 1:
        return haversine_m(lat, lon, nodes[0][0], nodes[0][1])
    best = float("inf")
    for (a_lat, a_lon), (b_lat, b_lon) in zip(nodes, nodes[1:]):
        n_lat, n_lon = _nearest_point_on_segment(lat, lon, a_lat, a_lon, b_lat, b_lon)
        best = min(best, haversine_m(lat, lon, n_lat, n_lon))
    return best


def classify_noise(motorway_m: Optional[float], airport_m: Optional[float]) -> NoiseLevel:
    t = DECODER_CONFIG.noise
    if (motorway_m is not None and motorway_m < t.motorway_high_m) or (
        airport_m is not None and airport_m < t.airport_high_m
    ):
        return NoiseLevel.HIGH
    if (motorway_m is not None and motorway_m < t.motorway_medium_m) or (
        airport_m is not None and airport_m < t.airport_medium_m
    ):
        return NoiseLevel.MEDIUM
    return NoiseLevel.LOW


def _build_query(lat: float, lon: float) -> str:
    t = DECODER_CONFIG.noise
    return (
        "[out:json][timeout:10];("
        f'way["highway"~"^(motorway|trunk)$"](around:{t.motorway_search_m},{lat},{lon});'
        ");out geom;("
        f'nwr["aeroway"="aerodrome"]["aerodrome:type"!~"private"](around:{t.airport_search_m},{lat},{lon});'
        ");out center;"
    )


def parse_overpass_elements(lat: float, lon: float, elements: List[Dict]) -> Tuple[Optional[float], Optional[float]]:
    """Nearest motorway and airport distances (meters) from Overpass elements."""
    motorway = None
    airport = None
    for el in elements:
        tags = el.get("tags") or {}
        if tags.get("aeroway") == "aerodrome":
            point = el.get("center") or ({"lat": el.get("lat"), "lon": el.get("lon")} if "lat" in el else None)
            if point and point.get("lat") is not None:
                d = haversine_m(lat, lon, point["lat"], point["lon"])
                airport = d if airport is None else min(airport, d)
        elif tags.get("highway") and el.get("geometry"):
            nodes = [(g["lat"], g["lon"]) for g in el["geometry"] if "lat" in g]
            if nodes:
                d = distance_to_polyline_m(lat, lon, nodes)
                motorway = d if motorway is None else min(motorway, d)
    return motorway, airport


def estimate_noise(lat: float, lon: float, http: Optional[ProviderHTTPClient] = None) -> Optional[NoiseEstimate]:
    """Query Overpass and classify. None when Overpass returns nothing usable."""
    http = http or ProviderHTTPClient("overpass", retry=AUGMENT_RETRY)
    data = http.post_json(OVERPASS_BASE_URL, data={"data": _build_query(lat, lon)}, endpoint="noise")
    if not isinstance(data, dict) or "elements" not in data:
        return None
    motorway, airport = parse_overpass_elements(lat, lon, data["elements"])
    level = classify_noise(motorway, airport)
    return NoiseEstimate(
        level=level.value,
        motorway_distance_m=int(round(motorway)) if motorway is not None else None,
        airport_distance_m=int(round(airport)) if airport is not None else None,
    )
