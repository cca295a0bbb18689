"""
Configuration model for Landlord Decoder.

Owns every numeric constant that affects caching, retries, quotas, rate
limits and the location heuristics. Secrets and feature flags stay in the
environment and are read at call time through the helpers at the bottom of
this module, so tests can flip them with monkeypatch.

Frozen dataclasses provide type checking and IDE support without
the indirection of YAML/JSON config files.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class CacheTTL:
    """Time-to-live for each cached artifact (seconds)."""
    property: int = 7 * 24 * 3600
    rentcast: int = 7 * 24 * 3600
    scrape: int = 6 * 3600
    augment: int = 7 * 24 * 3600
    report: int = 7 * 24 * 3600
    share_image: int = 7 * 24 * 3600
    report_mapping: int = 7 * 24 * 3600


@dataclass(frozen=True)
class CachePrefixes:
    property: str = "property:addr"
    rentcast: str = "rentcast:addr"
    scrape: str = "scrape:url"
    augment: str = "augment"
    report: str = "report"
    share_image: str = "og"
    report_mapping: str = "slug:full"


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff for outbound calls."""
    max_retries: int = 2
    base_delay: float = 1.0   # seconds; attempt n waits base * 2**n
    max_delay: float = 10.0
    max_retry_after: float = 30.0  # cap on a provider's Retry-After
    jitter: float = 0.25      # fraction of the computed delay


@dataclass(frozen=True)
class RateLimitPolicy:
    """Fixed-window limit: `limit` requests per `window_seconds`."""
    limit: int
    window_seconds: int

    def __post_init__(self):
        if self.limit <= 0 or self.window_seconds <= 0:
            raise ValueError(
                f"Rate limit needs a positive limit and window, got {self.limit}/{self.window_seconds}"
            )


@dataclass(frozen=True)
class NoiseThresholds:
    """Distance cut-offs (meters) for the noise tier heuristic."""
    motorway_high_m: int = 300
    motorway_medium_m: int = 1000
    airport_high_m: int = 3000
    airport_medium_m: int = 8000
    motorway_search_m: int = 2000
    airport_search_m: int = 10000


@dataclass(frozen=True)
class CommuteEstimate:
    """Straight-line commute estimate parameters."""
    average_speed_kmh: float = 50.0
    low_factor: float = 0.7
    high_factor: float = 1.5
    min_minutes: int = 5


@dataclass(frozen=True)
class ReportLimits:
    """Caps applied to generated reports."""
    max_red_flags: int = 6
    max_positives: int = 4
    max_follow_ups: int = 6
    max_caption_chars: int = 120
    max_category_score: float = 10.0
    max_total_score: int = 100
    registry_red_flag_threshold: int = 10
    parse_preview_chars: int = 200


@dataclass(frozen=True)
class DecoderConfig:
    """Top-level configuration. `version` is part of every cache key."""
    version: str = "v1"
    ttl: CacheTTL = field(default_factory=CacheTTL)
    prefixes: CachePrefixes = field(default_factory=CachePrefixes)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    noise: NoiseThresholds = field(default_factory=NoiseThresholds)
    commute: CommuteEstimate = field(default_factory=CommuteEstimate)
    report: ReportLimits = field(default_factory=ReportLimits)
    # Monthly decode allowance per plan; anything not listed gets 0.
    plan_limits: Tuple[Tuple[str, int], ...] = (("basic", 5), ("pro", 50))
    trial_decodes: int = 1
    trial_ttl_seconds: int = 7 * 24 * 3600
    default_timeout: float = 10.0
    anonymous_rate_limit: RateLimitPolicy = field(
        default_factory=lambda: RateLimitPolicy(limit=5, window_seconds=3600)
    )
    authenticated_rate_limit: RateLimitPolicy = field(
        default_factory=lambda: RateLimitPolicy(limit=50, window_seconds=3600)
    )
    places_radius_m: int = 1600
    schools_radius_m: int = 2000
    max_schools: int = 5

    def plan_limit(self, plan: Optional[str]) -> int:
        return dict(self.plan_limits).get((plan or "").lower(), 0)


DECODER_CONFIG = DecoderConfig()


# =============================================================================
# Environment helpers
# =============================================================================

def _env_flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes")


def scrape_fallback_enabled() -> bool:
    """FEATURE_SCRAPE_FALLBACK gates fresh scraping (cached scrapes are always readable)."""
    return _env_flag("FEATURE_SCRAPE_FALLBACK")


def require_auth() -> bool:
    return _env_flag("REQUIRE_AUTH", "true")


def outbound_timeout() -> float:
    try:
        return float(os.environ.get("OUTBOUND_TIMEOUT", DECODER_CONFIG.default_timeout))
    except ValueError:
        return DECODER_CONFIG.default_timeout


def _parse_rate_limit(raw: Optional[str], default: RateLimitPolicy) -> RateLimitPolicy:
    """Parse "<limit>/<window seconds>", e.g. "5/3600".

    Malformed or non-positive values fall back to the default.
    """
    if not raw:
        return default
    try:
        limit, window = raw.split("/", 1)
        return RateLimitPolicy(limit=int(limit), window_seconds=int(window))
    except ValueError:
        logger.warning("Ignoring invalid rate limit %r, using %s/%s",
                       raw, default.limit, default.window_seconds)
        return default


def rate_limit_policies() -> Dict[str, RateLimitPolicy]:
    return {
        "anonymous": _parse_rate_limit(
            os.environ.get("RATE_LIMIT_ANON"), DECODER_CONFIG.anonymous_rate_limit
        ),
        "authenticated": _parse_rate_limit(
            os.environ.get("RATE_LIMIT_AUTH"), DECODER_CONFIG.authenticated_rate_limit
        ),
    }
