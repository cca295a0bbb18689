"""
Published report store.

A report is saved once under a random, URL-safe id and is read-only after
that; entries expire after 7 days like every other cached artifact.
"""

import logging
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import cache
import models
from listing import Listing

logger = logging.getLogger(__name__)

REPORT_ID_BYTES = 12  # 96 bits


def new_report_id() -> str:
    return secrets.token_urlsafe(REPORT_ID_BYTES)


def report_key(report_id: str) -> str:
    return cache.cache_key(cache.PREFIXES.report_mapping, report_id)


def save_report(slug: str, listing: Listing, report: Dict[str, Any],
                augmentation: Optional[Dict[str, Any]] = None,
                prefs_key: str = "default") -> str:
    """Persist the (listing, report, augmentation) triple; returns the new id."""
    record = {
        "slug": slug,
        "listing": listing.to_dict(),
        "report": report,
        "augmentation": augmentation,
        "prefs_key": prefs_key,
        "created_at": datetime.now(timezone.utc).isoformat(),
    }
    # Write-once: a colliding id is simply redrawn.
    for _ in range(3):
        report_id = new_report_id()
        if models.kv_set_if_absent(report_key(report_id), record, cache.TTL.report_mapping):
            return report_id
    raise RuntimeError("Could not allocate a unique report id")


def get_report(report_id: str) -> Optional[Dict[str, Any]]:
    if not report_id:
        return None
    record = cache.get(report_key(report_id))
    if not record:
        return None
    return {"id": report_id, **record}


def report_url(report_id: str) -> str:
    return f"/report/{report_id}"
