"""
Flood and wildfire hazard tiers for a coordinate.

Flood: FEMA National Flood Hazard Layer, flood-hazard-zones layer, point
query. Wildfire: USFS Wildfire Hazard Potential raster, identify call.
Any missing source or failed lookup yields "unknown"; a tier is never
guessed.
"""

import logging
import os
from dataclasses import asdict, dataclass
from typing import Dict, Optional

from errors import AppError
from places import AUGMENT_RETRY
from provider_http import ProviderHTTPClient

logger = logging.getLogger(__name__)

FEMA_NFHL_URL = os.environ.get(
    "FEMA_NFHL_URL",
    "https://hazards.fema.gov/arcgis/rest/services/public/NFHL/MapServer/28/query",
)
WILDFIRE_HAZARD_URL = os.environ.get(
    "WILDFIRE_HAZARD_URL",
    "https://apps.fs.usda.gov/fsgisx01/rest/services/RDW_Wildfire/RMRS_WildfireHazardPotential_2023/ImageServer/identify",
)

UNKNOWN = "unknown"

# WHP raster classes: 1 very low, 2 low, 3 moderate, 4 high, 5 very high,
# 6 non-burnable, 7 water.
WILDFIRE_CLASS_TIERS = {1: "low", 2: "low", 3: "medium", 4: "high", 5: "high", 6: "low", 7: "low"}


@dataclass
class HazardSummary:
    flood: str = UNKNOWN
    wildfire: str = UNKNOWN
    flood_zone: Optional[str] = None
    source: str = "FEMA NFHL; USFS Wildfire Hazard Potential"

    def to_dict(self) -> Dict:
        return asdict(self)


def flood_tier(zone: Optional[str], subtype: Optional[str] = None) -> str:
    """Map a FEMA flood zone code onto high/medium/low."""
    if not zone:
        return UNKNOWN
    zone = zone.strip().upper()
    if zone.startswith("A") or zone.startswith("V"):
        return "high"
    if zone in ("X", "B", "C", "D"):
        sub = (subtype or "").upper()
        if zone == "B" or "0.2 PCT" in sub or "REDUCED RISK" in sub:
            return "medium"
        return "low"
    return UNKNOWN


def lookup_flood(lat: float, lon: float, http: Optional[ProviderHTTPClient] = None) -> Dict[str, Optional[str]]:
    http = http or ProviderHTTPClient("fema_nfhl", retry=AUGMENT_RETRY)
    data = http.get_json(
        FEMA_NFHL_URL,
        params={
            "geometry": f"{lon},{lat}",
            "geometryType": "esriGeometryPoint",
            "inSR": "4326",
            "spatialRel": "esriSpatialRelIntersects",
            "outFields": "FLD_ZONE,ZONE_SUBTY",
            "returnGeometry": "false",
            "f": "json",
        },
        endpoint="flood_zone",
    ) or {}
    features = data.get("features") or []
    if not features:
        # Outside any mapped panel: no data, not "low".
        return {"tier": UNKNOWN, "zone": None}
    attrs = features[0].get("attributes") or {}
    zone = attrs.get("FLD_ZONE")
    return {"tier": flood_tier(zone, attrs.get("ZONE_SUBTY")), "zone": zone}


def lookup_wildfire(lat: float, lon: float, http: Optional[ProviderHTTPClient] = None) -> str:
    http = http or ProviderHTTPClient("wildfire_whp", retry=AUGMENT_RETRY)
    data = http.get_json(
        WILDFIRE_HAZARD_URL,
        params={
            "geometry": f'{{"x":{lon},"y":{lat},"spatialReference":{{"wkid":4326}}}}',
            "geometryType": "esriGeometryPoint",
            "returnGeometry": "false",
            "returnCatalogItems": "false",
            "f": "json",
        },
        endpoint="identify",
    ) or {}
    value = data.get("value")
    try:
        return WILDFIRE_CLASS_TIERS.get(int(float(value)), UNKNOWN)
    except (TypeError, ValueError):
        return UNKNOWN


def assess_hazards(lat: float, lon: float) -> HazardSummary:
    """Both lookups, each independently degrading to "unknown"."""
    summary = HazardSummary()
    try:
        flood = lookup_flood(lat, lon)
        summary.flood = flood["tier"]
        summary.flood_zone = flood["zone"]
    except AppError as e:
        logger.warning("Flood lookup failed: %s", e.message)
    try:
        summary.wildfire = lookup_wildfire(lat, lon)
    except AppError as e:
        logger.warning("Wildfire lookup failed: %s", e.message)
    return summary
