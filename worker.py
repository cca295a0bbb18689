"""
Background decode worker for the async job queue.

Runs in a dedicated thread per gunicorn worker process. Polls the DB for
queued jobs, claims one atomically, runs execute_decode_flow() with a
progress callback that updates the job's stage, then marks the job done or
failed. Supports graceful shutdown via a stop event.
"""

import os
import logging
import threading

from decode_flow import DecodeProgress, DecodeRequest, execute_decode_flow
from decode_trace import TraceContext, set_trace, clear_trace
from errors import get_user_message
from models import (
    init_db,
    claim_next_job,
    update_job_stage,
    complete_job,
    fail_job,
    log_event,
    requeue_stale_running_jobs,
)
from quotas import record_decode, release_decode

logger = logging.getLogger(__name__)

# Poll interval when no job is available (seconds)
POLL_INTERVAL = 2.0

# Stop event: set by the main process to signal the worker thread to exit
_stop_event = threading.Event()
_worker_thread = None


def _release_quota_if_needed(job_id: str, user_id, quota: dict) -> None:
    """If a failed job holds a reserved decode, hand it back so the user can retry."""
    if not quota.get("reserved"):
        return
    release_decode(user_id, quota)
    logger.info("[worker] Released reserved decode for failed job %s", job_id)


def _run_job(job: dict) -> None:
    """
    Run a single decode job: decode, publish, complete or fail.
    Updates current_stage/progress in the DB as the decode advances.
    """
    # Push Sentry scope with job context so breadcrumbs/errors have tags
    if os.environ.get("SENTRY_DSN"):
        import sentry_sdk
        with sentry_sdk.push_scope() as scope:
            scope.set_tag("job_id", job["job_id"])
            scope.set_tag("request_id", job.get("request_id") or "")
            scope.set_tag("user_id", job.get("user_id") or "")
            _run_job_impl(job)
        return
    _run_job_impl(job)


def _run_job_impl(job: dict) -> None:
    """Inner job execution (called with or without Sentry scope)."""
    job_id = job["job_id"]
    payload = job.get("payload") or {}
    request = DecodeRequest.from_dict(payload.get("request") or {})
    user_id = job.get("user_id")
    visitor_id = payload.get("visitor_id")
    request_id = job.get("request_id")

    trace_ctx = TraceContext(trace_id=request_id or job_id)
    set_trace(trace_ctx)

    def on_progress(event: DecodeProgress) -> None:
        if event.stage == "error":
            return
        update_job_stage(job_id, event.stage, event.progress)

    try:
        result = execute_decode_flow(request, on_progress=on_progress)
        complete_job(job_id, result.id, result.url)
        record_decode(user_id, payload.get("quota") or {})
        log_event(
            "report_created",
            report_id=result.id,
            visitor_id=visitor_id,
            metadata={"slug": result.slug, "trace_id": trace_ctx.trace_id, "async": True},
        )
        logger.info("[worker] Job %s completed -> report %s", job_id, result.id)
    except Exception as e:
        logger.exception("[worker] Job %s failed: %s", job_id, e)
        fail_job(job_id, get_user_message(e))
        _release_quota_if_needed(job_id, user_id, payload.get("quota") or {})
        log_event(
            "decode_error",
            visitor_id=visitor_id,
            metadata={
                "error": str(e),
                "request_id": request_id,
                "trace_summary": trace_ctx.summary_dict(),
            },
        )
    finally:
        trace_ctx.log_summary()
        clear_trace()


def _worker_loop() -> None:
    """Loop: claim next job, run it, repeat until stop event is set."""
    logger.info("[worker] Decode worker thread started")
    while not _stop_event.is_set():
        job = claim_next_job()
        if job:
            job_id = job["job_id"]
            logger.info("[worker] Claimed job %s", job_id)
            try:
                _run_job(job)
            except Exception as e:
                logger.exception("[worker] Unhandled error in job %s", job_id)
                if os.environ.get("SENTRY_DSN"):
                    import sentry_sdk
                    sentry_sdk.capture_exception(e)
                fail_job(job_id, str(e))
                _release_quota_if_needed(
                    job_id, job.get("user_id"), (job.get("payload") or {}).get("quota") or {}
                )
        else:
            _stop_event.wait(timeout=POLL_INTERVAL)
    logger.info("[worker] Decode worker thread stopped")


def start_worker() -> None:
    """
    Start the background worker thread. Safe to call from the main process
    or from a gunicorn post_fork hook. Only one thread is started per process.
    """
    global _worker_thread
    if _worker_thread is not None and _worker_thread.is_alive():
        return
    # Tables must exist in this process before the thread starts polling.
    init_db()
    try:
        swept = requeue_stale_running_jobs(max_age_seconds=300)
        if swept:
            logger.warning("[worker] Re-queued %d stale running jobs", swept)
    except Exception:
        logger.exception("[worker] Failed to sweep stale running jobs")
    _stop_event.clear()
    _worker_thread = threading.Thread(target=_worker_loop, daemon=True)
    _worker_thread.start()


def stop_worker() -> None:
    """Signal the worker thread to stop (for tests or graceful shutdown)."""
    _stop_event.set()
