"""
Plan and feature lookups against the local user_plans mirror.

The billing integration owns the data; this module only answers "what plan
is this user on, is it active, and does it grant feature X".
"""

import logging
from typing import Optional

import models

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("active", "trialing")

PLAN_FEATURES = {
    "basic": ("decode", "share_image"),
    "pro": ("decode", "share_image", "async_decode", "commute"),
}


def get_user_plan(user_id: Optional[str]) -> Optional[dict]:
    """{plan, status} for user_id, or None when unknown or the lookup fails."""
    if not user_id:
        return None
    try:
        row = models.get_user_plan_row(user_id)
    except Exception:
        logger.warning("Plan lookup failed for %s", user_id, exc_info=True)
        return None
    if not row:
        return None
    return {"plan": (row.get("plan") or "").lower(), "status": (row.get("status") or "").lower()}


def has_active_subscription(user_id: Optional[str]) -> bool:
    plan = get_user_plan(user_id)
    return bool(plan) and plan["status"] in ACTIVE_STATUSES


def has_feature(user_id: Optional[str], feature: str) -> bool:
    plan = get_user_plan(user_id)
    if not plan or plan["status"] not in ACTIVE_STATUSES:
        return False
    return feature in PLAN_FEATURES.get(plan["plan"], ())
