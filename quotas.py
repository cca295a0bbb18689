"""
Monthly decode quotas per plan, plus the one-off trial decode.

Plans:
  - Trial ("trialing" subscription): 1 decode, flag kept for 7 days
  - Basic: 5 decodes per calendar month
  - Pro:   50 decodes per calendar month

Counters live only in the kv backend (usage:{user}:{YYYY-MM}) and are only
mutated with atomic increment / set-if-absent. Reads fail open to zero
usage. A decode is reserved up front (reserve_decode) and handed back with
release_decode when it fails, so only successful decodes stay charged.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import models
from decoder_config import DECODER_CONFIG
from entitlements import get_user_plan

logger = logging.getLogger(__name__)

USAGE_KEY_PREFIX = "usage"
TRIAL_DECODE_KEY_PREFIX = "trial_decode"


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def year_month(now: Optional[datetime] = None) -> str:
    return _now(now).strftime("%Y-%m")


def usage_key(user_id: str, month: Optional[str] = None, now: Optional[datetime] = None) -> str:
    return f"{USAGE_KEY_PREFIX}:{user_id}:{month or year_month(now)}"


def trial_key(user_id: str) -> str:
    return f"{TRIAL_DECODE_KEY_PREFIX}:{user_id}"


def next_month_start(now: Optional[datetime] = None) -> datetime:
    current = _now(now)
    if current.month == 12:
        return datetime(current.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(current.year, current.month + 1, 1, tzinfo=timezone.utc)


# =============================================================================
# Counters
# =============================================================================

def get_current_usage(user_id: Optional[str], now: Optional[datetime] = None) -> int:
    if not user_id:
        return 0
    try:
        value = models.kv_get(usage_key(user_id, now=now))
    except Exception:
        logger.warning("Usage read failed for %s, assuming 0", user_id, exc_info=True)
        return 0
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def increment_usage(user_id: Optional[str], now: Optional[datetime] = None) -> int:
    """Atomically add one decode to this month's counter; returns the new count.

    The counter expires at the start of next month (set when it is created).
    """
    if not user_id:
        raise ValueError("Cannot increment usage for an anonymous user")
    return models.kv_incr(
        usage_key(user_id, now=now), expires_at=next_month_start(now).timestamp()
    )


def has_used_trial_decode(user_id: Optional[str]) -> bool:
    if not user_id:
        return False
    try:
        return models.kv_get(trial_key(user_id)) is True
    except Exception:
        logger.warning("Trial flag read failed for %s", user_id, exc_info=True)
        return False


def mark_trial_decode_used(user_id: Optional[str]) -> bool:
    """Set the trial flag; False when it was already set."""
    if not user_id:
        return False
    return models.kv_set_if_absent(trial_key(user_id), True, DECODER_CONFIG.trial_ttl_seconds)


def reset_usage(user_id: str, month: Optional[str] = None) -> None:
    models.kv_delete(usage_key(user_id, month))


# =============================================================================
# Decisions
# =============================================================================

def can_decode(user_id: Optional[str], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Quota decision: {allowed, reason?, remaining, limit, trial}."""
    if not user_id:
        return {"allowed": False, "reason": "Authentication required",
                "remaining": 0, "limit": 0, "trial": False}

    plan = get_user_plan(user_id)

    if plan and plan["status"] == "trialing":
        trial_limit = DECODER_CONFIG.trial_decodes
        if has_used_trial_decode(user_id):
            return {"allowed": False, "reason": "Trial decode already used. Upgrade to continue.",
                    "remaining": 0, "limit": trial_limit, "trial": True}
        return {"allowed": True, "remaining": trial_limit, "limit": trial_limit, "trial": True}

    limit = DECODER_CONFIG.plan_limit(plan["plan"]) if plan and plan["status"] == "active" else 0
    if limit == 0:
        return {"allowed": False, "reason": "No active subscription. Please subscribe to continue.",
                "remaining": 0, "limit": 0, "trial": False}

    used = get_current_usage(user_id, now)
    if used >= limit:
        return {"allowed": False,
                "reason": f"Monthly limit reached ({limit} decodes). Plan renews monthly.",
                "remaining": 0, "limit": limit, "trial": False}
    return {"allowed": True, "remaining": limit - used, "limit": limit, "trial": False}


def reserve_decode(user_id: Optional[str], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Check the quota and claim one decode in the same step.

    The claim is an atomic increment (or the trial set-if-absent), so
    concurrent requests can never push a user past their limit. A granted
    decision carries reserved=True and the month it was charged to; hand it
    to release_decode if the decode fails.
    """
    decision = can_decode(user_id, now)
    if not decision["allowed"]:
        return decision

    if decision["trial"]:
        try:
            claimed = mark_trial_decode_used(user_id)
        except Exception:
            logger.error("Failed to reserve trial decode for %s", user_id, exc_info=True)
            return decision
        if not claimed:
            return {"allowed": False, "reason": "Trial decode already used. Upgrade to continue.",
                    "remaining": 0, "limit": decision["limit"], "trial": True}
        return {**decision, "remaining": 0, "reserved": True}

    limit = decision["limit"]
    period = year_month(now)
    try:
        count = increment_usage(user_id, now)
    except Exception:
        logger.error("Failed to reserve decode for %s", user_id, exc_info=True)
        return decision
    if count > limit:
        _decrement_usage(user_id, period)
        return {"allowed": False,
                "reason": f"Monthly limit reached ({limit} decodes). Plan renews monthly.",
                "remaining": 0, "limit": limit, "trial": False}
    return {**decision, "remaining": limit - count, "reserved": True, "period": period}


def _decrement_usage(user_id: str, period: Optional[str]) -> None:
    try:
        models.kv_decr(usage_key(user_id, month=period))
    except Exception:
        logger.error("Failed to roll back decode usage for %s", user_id, exc_info=True)


def release_decode(user_id: Optional[str], decision: Dict[str, Any]) -> None:
    """Give back a reserved decode after the decode failed."""
    if not user_id or not decision.get("reserved"):
        return
    if decision.get("trial"):
        try:
            models.kv_delete(trial_key(user_id))
        except Exception:
            logger.error("Failed to release trial decode for %s", user_id, exc_info=True)
        return
    _decrement_usage(user_id, decision.get("period"))
    logger.info("Released reserved decode for %s", user_id)


def record_decode(user_id: Optional[str], decision: Dict[str, Any],
                  now: Optional[datetime] = None) -> None:
    """Charge a successful decode against the trial flag or the monthly counter.

    A reserved decision was already charged by reserve_decode.
    """
    if not user_id or decision.get("reserved"):
        return
    try:
        if decision.get("trial"):
            mark_trial_decode_used(user_id)
        else:
            increment_usage(user_id, now)
    except Exception:
        logger.error("Failed to record decode usage for %s", user_id, exc_info=True)
