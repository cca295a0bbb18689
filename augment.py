"""
Augmentation engine: derived location signals for a resolved listing.

Geocoding runs first (everything else needs coordinates); noise, hazards,
commute and location insights then run concurrently. Each step is cached
on its own and fails independently: a failing step leaves its field None.
augment_property() never raises.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import cache
from decode_trace import get_trace, set_trace
from decoder_config import DECODER_CONFIG
from geocode import GeocodeResult, cached_geocode
from hashing import addr_hash, sha256_hex
from hazards import assess_hazards
from listing import Listing
from location_insights import compute_location_insights
from noise import estimate_noise
from normalize import normalize_address_string
from places import haversine_m

logger = logging.getLogger(__name__)

COMMUTE_NOTE = (
    "Straight-line estimate at an average driving speed; not a routed "
    "travel time. Actual commute depends on roads and traffic."
)


@dataclass
class Augmentation:
    geocode: Optional[Dict[str, Any]] = None
    noise: Optional[Dict[str, Any]] = None
    hazards: Optional[Dict[str, Any]] = None
    commute: Optional[Dict[str, Any]] = None
    location_insights: Optional[Dict[str, Any]] = None
    computed_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    version: str = DECODER_CONFIG.version

    def to_dict(self) -> Dict[str, Any]:
        return {
            "geocode": self.geocode,
            "noise": self.noise,
            "hazards": self.hazards,
            "commute": self.commute,
            "location_insights": self.location_insights,
            "computed_at": self.computed_at,
            "version": self.version,
        }


# =============================================================================
# Steps
# =============================================================================

def _step_key(step: str, address: str, qualifier: str = "") -> str:
    identifier = addr_hash(address) + (f":{qualifier}" if qualifier else "")
    return cache.cache_key(f"{cache.PREFIXES.augment}:{step}", identifier)


def resolve_coordinates(listing: Listing) -> Optional[GeocodeResult]:
    f = listing.fields
    if f.lat is not None and f.lon is not None:
        return GeocodeResult(lat=f.lat, lon=f.lon, provider="listing")
    return cached_geocode(full_address(listing))


def full_address(listing: Listing) -> str:
    f = listing.fields
    parts = [f.address]
    # RentCast's formattedAddress already includes city/state.
    if f.city and f.city.lower() not in f.address.lower():
        parts.append(f.city)
    if f.state and f.state.lower() not in f.address.lower():
        parts.append(f"{f.state} {f.zip or ''}".strip())
    return ", ".join(p for p in parts if p)


def estimate_commute(origin: GeocodeResult, work: GeocodeResult, work_address: str) -> Dict[str, Any]:
    """Straight-line drive-time estimate between two points."""
    c = DECODER_CONFIG.commute
    distance_km = haversine_m(origin.lat, origin.lon, work.lat, work.lon) / 1000.0
    minutes = distance_km / c.average_speed_kmh * 60.0
    return {
        "work_address": work_address,
        "driving_time_min": int(round(minutes)),
        "driving_time_range": [
            max(c.min_minutes, int(round(minutes * c.low_factor))),
            max(c.min_minutes, int(round(minutes * c.high_factor))),
        ],
        "distance_km": round(distance_km, 1),
        "provider": "estimate",
        "note": COMMUTE_NOTE,
    }


def _noise_step(address: str, coords: GeocodeResult) -> Optional[Dict[str, Any]]:
    def _fetch():
        estimate = estimate_noise(coords.lat, coords.lon)
        return estimate.to_dict() if estimate else None
    return cache.get_or_set(_step_key("noise", address), cache.TTL.augment, _fetch)


def _hazards_step(address: str, coords: GeocodeResult) -> Dict[str, Any]:
    summary = assess_hazards(coords.lat, coords.lon).to_dict()
    # "unknown" results are not cached so a later lookup can fill them in.
    if summary["flood"] != "unknown" and summary["wildfire"] != "unknown":
        cache.set(_step_key("hazards", address), summary, cache.TTL.augment)
    return summary


def _cached_hazards(address: str, coords: GeocodeResult) -> Dict[str, Any]:
    cached = cache.get(_step_key("hazards", address))
    if cached is not None:
        return cached
    return _hazards_step(address, coords)


def _commute_step(address: str, coords: GeocodeResult, work_address: str) -> Optional[Dict[str, Any]]:
    work_norm = normalize_address_string(work_address)

    def _fetch():
        work = cached_geocode(work_address, qualifier="geocode_work")
        if work is None:
            logger.info("Work address could not be geocoded; commute skipped")
            return None
        return estimate_commute(coords, work, work_address)

    return cache.get_or_set(
        _step_key("commute", address, sha256_hex(work_norm)[:16]), cache.TTL.augment, _fetch
    )


def _insights_step(address: str, coords: GeocodeResult, state: str) -> Dict[str, Any]:
    return compute_location_insights(address, coords.lat, coords.lon, state)


# =============================================================================
# Engine
# =============================================================================

def _run_step(parent_trace, step_name: str, fn: Callable, *args) -> Any:
    """Run one step in a worker thread with trace propagation; None on failure."""
    set_trace(parent_trace)
    trace = get_trace()
    if trace:
        trace.start_stage(f"augment.{step_name}")
    t0 = time.time()
    try:
        result = fn(*args)
        if trace:
            trace.record_stage(f"augment.{step_name}", t0, time.time(), best_effort=True)
        return result
    except Exception as exc:
        logger.warning("Augmentation step %s failed: %s", step_name, exc, exc_info=True)
        if trace:
            trace.record_stage(f"augment.{step_name}", t0, time.time(), error=exc, best_effort=True)
        return None


def augment_property(listing: Listing, prefs: Optional[Dict[str, Any]] = None) -> Augmentation:
    """Compute every augmentation field that can be computed. Never raises."""
    result = Augmentation()
    address = normalize_address_string(full_address(listing))
    parent_trace = get_trace()

    coords = _run_step(parent_trace, "geocode", resolve_coordinates, listing)
    set_trace(parent_trace)
    if coords is None:
        logger.info("No coordinates for listing; location steps skipped")
        return result
    result.geocode = coords.to_dict()

    work_address = ((prefs or {}).get("work_address") or (prefs or {}).get("workAddress") or "").strip()

    futures = {}
    with ThreadPoolExecutor(max_workers=4) as pool:
        futures["noise"] = pool.submit(_run_step, parent_trace, "noise", _noise_step, address, coords)
        futures["hazards"] = pool.submit(
            _run_step, parent_trace, "hazards", _cached_hazards, address, coords
        )
        futures["location_insights"] = pool.submit(
            _run_step, parent_trace, "location_insights", _insights_step,
            address, coords, listing.fields.state,
        )
        if work_address:
            futures["commute"] = pool.submit(
                _run_step, parent_trace, "commute", _commute_step, address, coords, work_address
            )

        # Collect results; each step fails independently
        for step_name, future in futures.items():
            setattr(result, step_name, future.result())

    return result
