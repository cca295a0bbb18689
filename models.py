"""
SQLite persistence for Landlord Decoder.

One database file holds:
  - kv_store: the key-value backend behind the cache, report mappings,
    usage counters, trial flags and rate-limit windows (TTL per key)
  - decode_jobs: the async decode job queue
  - user_plans: local mirror of each user's billing plan
  - events: append-only analytics events

No ORM, just raw sqlite3.
"""

import sqlite3
import os
import json
import uuid
import time
import logging
from datetime import datetime, timezone, timedelta
from typing import Any, Optional

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("DECODER_DB_PATH", "decoder.db")


def _get_db():
    """Get a sqlite3 connection with WAL mode for concurrent reads."""
    conn = sqlite3.connect(DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def init_db():
    """Create tables if they don't exist. Safe to call on every startup."""
    conn = _get_db()
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS kv_store (
            key         TEXT PRIMARY KEY,
            value_json  TEXT NOT NULL,
            expires_at  REAL
        );
        CREATE INDEX IF NOT EXISTS idx_kv_expires ON kv_store(expires_at);

        CREATE TABLE IF NOT EXISTS events (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            event_type  TEXT NOT NULL,
            report_id   TEXT,
            visitor_id  TEXT,
            metadata    TEXT,
            created_at  TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_events_type ON events(event_type);
        CREATE INDEX IF NOT EXISTS idx_events_report ON events(report_id);

        -- Async decode job queue (SQLite-backed; one worker thread per gunicorn worker)
        CREATE TABLE IF NOT EXISTS decode_jobs (
            job_id          TEXT PRIMARY KEY,
            payload_json    TEXT NOT NULL,
            user_id         TEXT,
            request_id      TEXT,
            status          TEXT NOT NULL DEFAULT 'queued',
            current_stage   TEXT,
            progress        REAL NOT NULL DEFAULT 0,
            report_id       TEXT,
            report_url      TEXT,
            error           TEXT,
            created_at      TEXT NOT NULL,
            started_at      TEXT,
            completed_at    TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_jobs_status ON decode_jobs(status);
        CREATE INDEX IF NOT EXISTS idx_jobs_created ON decode_jobs(created_at);

        -- Written by the billing integration; read by entitlements.py
        CREATE TABLE IF NOT EXISTS user_plans (
            user_id     TEXT PRIMARY KEY,
            plan        TEXT NOT NULL,
            status      TEXT NOT NULL DEFAULT 'active',
            updated_at  TEXT NOT NULL
        );
    """)
    conn.commit()
    conn.close()


# ---------------------------------------------------------------------------
# Key-value store
# ---------------------------------------------------------------------------
# Values are JSON-encoded. expires_at is an epoch timestamp (NULL = no
# expiry). Expired rows read as missing and are removed lazily or by
# purge_expired_keys().

def _expiry(ttl_seconds: Optional[float], now: float) -> Optional[float]:
    if ttl_seconds is None:
        return None
    return now + max(0.0, float(ttl_seconds))


def kv_get(key: str) -> Optional[Any]:
    """Return the decoded value for key, or None if missing or expired."""
    now = time.time()
    conn = _get_db()
    try:
        row = conn.execute(
            "SELECT value_json, expires_at FROM kv_store WHERE key = ?", (key,)
        ).fetchone()
        if not row:
            return None
        if row["expires_at"] is not None and row["expires_at"] <= now:
            conn.execute(
                "DELETE FROM kv_store WHERE key = ? AND expires_at <= ?", (key, now)
            )
            conn.commit()
            return None
    finally:
        conn.close()
    try:
        return json.loads(row["value_json"])
    except (json.JSONDecodeError, TypeError):
        logger.warning("Corrupted kv entry for key %s, treating as missing", key)
        return None


def kv_set(key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
    """Store value under key, replacing any existing entry."""
    conn = _get_db()
    try:
        conn.execute(
            """INSERT OR REPLACE INTO kv_store (key, value_json, expires_at)
               VALUES (?, ?, ?)""",
            (key, json.dumps(value, default=str), _expiry(ttl_seconds, time.time())),
        )
        conn.commit()
    finally:
        conn.close()


def kv_delete(key: str) -> bool:
    conn = _get_db()
    try:
        cur = conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
        conn.commit()
        return cur.rowcount > 0
    finally:
        conn.close()


def kv_incr(key: str, ttl_seconds: Optional[float] = None,
            expires_at: Optional[float] = None) -> int:
    """Atomically increment an integer counter and return the new value.

    The expiry (ttl_seconds from now, or an absolute expires_at) is applied
    only when the counter is created; an expired counter restarts at 1.
    The increment runs as a single upsert inside a BEGIN IMMEDIATE
    transaction, so concurrent callers in any process never lose updates.
    """
    now = time.time()
    if expires_at is None:
        expires_at = _expiry(ttl_seconds, now)
    conn = _get_db()
    try:
        conn.execute("BEGIN IMMEDIATE")
        conn.execute(
            """INSERT INTO kv_store (key, value_json, expires_at)
               VALUES (?, '1', ?)
               ON CONFLICT(key) DO UPDATE SET
                 value_json = CASE
                   WHEN kv_store.expires_at IS NOT NULL AND kv_store.expires_at <= ?
                     THEN '1'
                   ELSE CAST(CAST(kv_store.value_json AS INTEGER) + 1 AS TEXT)
                 END,
                 expires_at = CASE
                   WHEN kv_store.expires_at IS NOT NULL AND kv_store.expires_at <= ?
                     THEN excluded.expires_at
                   ELSE kv_store.expires_at
                 END""",
            (key, expires_at, now, now),
        )
        row = conn.execute(
            "SELECT value_json FROM kv_store WHERE key = ?", (key,)
        ).fetchone()
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
    return int(row["value_json"])


def kv_decr(key: str) -> int:
    """Atomically decrement a live counter, never below zero.

    Returns the new value; a missing or expired counter is left alone and
    reads as 0.
    """
    now = time.time()
    conn = _get_db()
    try:
        conn.execute("BEGIN IMMEDIATE")
        conn.execute(
            """UPDATE kv_store
               SET value_json = CAST(MAX(CAST(value_json AS INTEGER) - 1, 0) AS TEXT)
               WHERE key = ? AND (expires_at IS NULL OR expires_at > ?)""",
            (key, now),
        )
        row = conn.execute(
            "SELECT value_json FROM kv_store WHERE key = ? AND (expires_at IS NULL OR expires_at > ?)",
            (key, now),
        ).fetchone()
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
    return int(row["value_json"]) if row else 0


def kv_set_if_absent(key: str, value: Any, ttl_seconds: Optional[float] = None) -> bool:
    """Atomically create key if it is missing (or expired).

    Returns True when this call created the entry, False if it already existed.
    """
    now = time.time()
    conn = _get_db()
    try:
        conn.execute("BEGIN IMMEDIATE")
        conn.execute(
            "DELETE FROM kv_store WHERE key = ? AND expires_at IS NOT NULL AND expires_at <= ?",
            (key, now),
        )
        cur = conn.execute(
            """INSERT OR IGNORE INTO kv_store (key, value_json, expires_at)
               VALUES (?, ?, ?)""",
            (key, json.dumps(value, default=str), _expiry(ttl_seconds, now)),
        )
        created = cur.rowcount > 0
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
    return created


def kv_ttl(key: str) -> Optional[float]:
    """Seconds until key expires; None if missing/expired, -1 if it never expires."""
    now = time.time()
    conn = _get_db()
    try:
        row = conn.execute(
            "SELECT expires_at FROM kv_store WHERE key = ?", (key,)
        ).fetchone()
    finally:
        conn.close()
    if not row:
        return None
    if row["expires_at"] is None:
        return -1
    remaining = row["expires_at"] - now
    return remaining if remaining > 0 else None


def kv_expire(key: str, ttl_seconds: float) -> bool:
    """Reset the expiry of an existing key. Returns False if it doesn't exist."""
    conn = _get_db()
    try:
        cur = conn.execute(
            "UPDATE kv_store SET expires_at = ? WHERE key = ?",
            (_expiry(ttl_seconds, time.time()), key),
        )
        conn.commit()
        return cur.rowcount > 0
    finally:
        conn.close()


def purge_expired_keys() -> int:
    """Delete every expired kv entry. Returns the number removed."""
    conn = _get_db()
    try:
        cur = conn.execute(
            "DELETE FROM kv_store WHERE expires_at IS NOT NULL AND expires_at <= ?",
            (time.time(),),
        )
        conn.commit()
        return cur.rowcount
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Analytics events
# ---------------------------------------------------------------------------

def log_event(event_type, report_id=None, visitor_id=None, metadata=None):
    """
    Append an analytics event.

    event_type: one of report_created, report_viewed, decode_error
    metadata:   optional dict of extra info
    """
    now = datetime.now(timezone.utc).isoformat()
    conn = _get_db()
    conn.execute(
        """INSERT INTO events (event_type, report_id, visitor_id, metadata, created_at)
           VALUES (?, ?, ?, ?, ?)""",
        (
            event_type,
            report_id,
            visitor_id,
            json.dumps(metadata, default=str) if metadata else None,
            now,
        ),
    )
    conn.commit()
    conn.close()


def get_event_counts():
    """Returns dict like {"report_created": 12, "report_viewed": 45, ...}"""
    conn = _get_db()
    rows = conn.execute(
        "SELECT event_type, COUNT(*) as cnt FROM events GROUP BY event_type"
    ).fetchall()
    conn.close()
    return {row["event_type"]: row["cnt"] for row in rows}


# ---------------------------------------------------------------------------
# Decode job queue (async decode)
# ---------------------------------------------------------------------------

def create_job(payload, user_id=None, request_id=None):
    """
    Enqueue a decode job. Returns job_id.
    payload: dict with url / address / prefs as submitted.
    """
    job_id = uuid.uuid4().hex[:12]
    now = datetime.now(timezone.utc).isoformat()
    conn = _get_db()
    conn.execute(
        """INSERT INTO decode_jobs
           (job_id, payload_json, user_id, request_id, status, created_at)
           VALUES (?, ?, ?, ?, 'queued', ?)""",
        (job_id, json.dumps(payload), user_id, request_id, now),
    )
    conn.commit()
    conn.close()
    return job_id


def get_job(job_id):
    """Load a job by ID as a dict (payload decoded), or None if not found."""
    conn = _get_db()
    row = conn.execute(
        "SELECT * FROM decode_jobs WHERE job_id = ?", (job_id,)
    ).fetchone()
    conn.close()
    if not row:
        return None
    job = dict(row)
    job["payload"] = json.loads(job.pop("payload_json") or "{}")
    return job


def claim_next_job():
    """
    Atomically claim the oldest queued job (status -> 'running').
    Returns the job dict or None. The UPDATE is guarded by status='queued'
    so only one worker can claim a given job.
    """
    conn = _get_db()
    row = conn.execute(
        "SELECT job_id FROM decode_jobs WHERE status = 'queued' ORDER BY created_at ASC LIMIT 1"
    ).fetchone()
    if not row:
        conn.close()
        return None
    job_id = row["job_id"]
    now = datetime.now(timezone.utc).isoformat()
    cur = conn.execute(
        "UPDATE decode_jobs SET status = 'running', started_at = ? WHERE job_id = ? AND status = 'queued'",
        (now, job_id),
    )
    if cur.rowcount == 0:
        conn.close()
        return None  # Another worker claimed it
    conn.commit()
    conn.close()
    return get_job(job_id)


def update_job_stage(job_id, current_stage, progress=None):
    """Record the running job's current stage and progress fraction."""
    conn = _get_db()
    if progress is None:
        conn.execute(
            "UPDATE decode_jobs SET current_stage = ? WHERE job_id = ? AND status = 'running'",
            (current_stage, job_id),
        )
    else:
        conn.execute(
            """UPDATE decode_jobs SET current_stage = ?, progress = ?
               WHERE job_id = ? AND status = 'running'""",
            (current_stage, float(progress), job_id),
        )
    conn.commit()
    conn.close()


def complete_job(job_id, report_id, report_url):
    """Mark job as done and store where its report lives."""
    now = datetime.now(timezone.utc).isoformat()
    conn = _get_db()
    conn.execute(
        """UPDATE decode_jobs
           SET status = 'done', report_id = ?, report_url = ?, completed_at = ?,
               current_stage = 'complete', progress = 1.0
           WHERE job_id = ?""",
        (report_id, report_url, now, job_id),
    )
    conn.commit()
    conn.close()


def fail_job(job_id, error_message):
    """Mark job as failed and store the (user-facing) error message."""
    now = datetime.now(timezone.utc).isoformat()
    conn = _get_db()
    conn.execute(
        """UPDATE decode_jobs
           SET status = 'failed', error = ?, completed_at = ?, current_stage = 'error'
           WHERE job_id = ?""",
        (error_message[:2000] if error_message else None, now, job_id),
    )
    conn.commit()
    conn.close()


def requeue_stale_running_jobs(max_age_seconds=300):
    """
    Requeue jobs stuck in 'running' beyond max_age_seconds.
    Returns the number of jobs reset.
    """
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=max_age_seconds)
    conn = _get_db()
    cur = conn.execute(
        """UPDATE decode_jobs
           SET status = 'queued', started_at = NULL, completed_at = NULL,
               current_stage = NULL, progress = 0, error = NULL
           WHERE status = 'running' AND started_at IS NOT NULL AND started_at <= ?""",
        (cutoff.isoformat(),),
    )
    count = cur.rowcount
    conn.commit()
    conn.close()
    return count


# ---------------------------------------------------------------------------
# User plans (billing mirror)
# ---------------------------------------------------------------------------

def set_user_plan(user_id: str, plan: str, status: str = "active") -> None:
    now = datetime.now(timezone.utc).isoformat()
    conn = _get_db()
    conn.execute(
        """INSERT INTO user_plans (user_id, plan, status, updated_at)
           VALUES (?, ?, ?, ?)
           ON CONFLICT(user_id) DO UPDATE SET
             plan = excluded.plan, status = excluded.status, updated_at = excluded.updated_at""",
        (user_id, plan, status, now),
    )
    conn.commit()
    conn.close()


def get_user_plan_row(user_id: str) -> Optional[dict]:
    conn = _get_db()
    row = conn.execute(
        "SELECT * FROM user_plans WHERE user_id = ?", (user_id,)
    ).fetchone()
    conn.close()
    return dict(row) if row else None
