"""
Deterministic fingerprints used as cache identifiers.

Raw addresses and URLs never appear in cache keys; only these hex digests do.
"""

import hashlib
import json
from typing import Any, Mapping, Optional


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def addr_hash(address: str) -> str:
    """Hash of the lower-cased, trimmed address."""
    return sha256_hex((address or "").strip().lower())


def prefs_hash(prefs: Optional[Mapping[str, Any]]) -> str:
    """Hash of the preferences serialized with sorted keys.

    Empty or missing preferences hash to the literal "default" so that the
    common no-prefs report shares one cache entry.
    """
    if not prefs:
        return "default"
    cleaned = {k: v for k, v in prefs.items() if v not in (None, "")}
    if not cleaned:
        return "default"
    return sha256_hex(json.dumps(cleaned, sort_keys=True, separators=(",", ":")))


def report_hash(address_hash: str, preferences_hash: str, config_version: str) -> str:
    return sha256_hex(f"{address_hash}:{preferences_hash}:{config_version}")


def url_hash(url: str) -> str:
    return sha256_hex((url or "").strip())
