"""
Cache store over the kv backend in models.py.

Keys are ``prefix:identifier:version`` where identifier is a content hash
from hashing.py. Backend failures are logged and treated as misses so a
broken cache never breaks a decode; fetcher failures always propagate.
"""

import logging
from typing import Any, Callable, Optional, TypeVar

import models
from decode_trace import get_trace
from decoder_config import DECODER_CONFIG

logger = logging.getLogger(__name__)

T = TypeVar("T")

TTL = DECODER_CONFIG.ttl
PREFIXES = DECODER_CONFIG.prefixes


def cache_key(prefix: str, identifier: str, version: Optional[str] = None) -> str:
    return f"{prefix}:{identifier}:{version or DECODER_CONFIG.version}"


def get(key: str) -> Optional[Any]:
    """Cached value or None (missing, expired or backend failure)."""
    try:
        return models.kv_get(key)
    except Exception:
        logger.warning("Cache read failed for %s, treating as miss", key, exc_info=True)
        return None


def set(key: str, value: Any, ttl_seconds: int) -> None:  # noqa: A001
    try:
        models.kv_set(key, value, ttl_seconds)
    except Exception:
        logger.warning("Cache write failed for %s", key, exc_info=True)


def invalidate(key: str) -> None:
    try:
        models.kv_delete(key)
    except Exception:
        logger.warning("Cache invalidate failed for %s", key, exc_info=True)


def get_or_set(key: str, ttl_seconds: int, fetcher: Callable[[], T]) -> T:
    """Return the cached value for key, or compute it with fetcher and store it.

    None results are returned but never stored, so a transient "not found"
    is retried on the next call. Concurrent misses for the same key may each
    run fetcher; the last write wins.
    """
    cached = get(key)
    trace = get_trace()
    if cached is not None:
        if trace:
            trace.record_cache(key, hit=True)
        return cached
    if trace:
        trace.record_cache(key, hit=False)

    value = fetcher()
    if value is not None:
        set(key, value, ttl_seconds)
    return value
