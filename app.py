import os
import sys
import logging
import uuid

from flask import Flask, request, jsonify, g, Response
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv

from decode_flow import DecodeRequest, execute_decode_flow
from decode_trace import TraceContext, set_trace, clear_trace
from decoder_config import require_auth
from errors import (
    AppError,
    AuthenticationError,
    NotFoundError,
    QuotaExceededError,
    RateLimitError,
    ValidationError,
    normalize_error,
)
from listing import Listing, missing_core_fields
from models import init_db, log_event, get_event_counts, create_job, get_job
from og_image import get_or_create_share_image
from quotas import can_decode, get_current_usage, record_decode, release_decode, reserve_decode
from rate_limit import check_decode_rate_limit
from scrape import ingest_scraped_data
from storage import get_report

load_dotenv()

# ---------------------------------------------------------------------------
# Sentry error tracking: gated on SENTRY_DSN; silent when unset (local dev)
# ---------------------------------------------------------------------------
_sentry_dsn = os.environ.get("SENTRY_DSN")
if _sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    import requests.exceptions

    def _sentry_before_send(event, hint):
        """Demote expected failures to breadcrumbs; only unexpected errors become Sentry events."""
        exc_info = hint.get("exc_info")
        if exc_info:
            exc_type, exc_value, _ = exc_info
            msg = str(exc_value) if exc_value else ""
            # Client-side problems: bad input, missing listing data, quota, rate limit
            if isinstance(exc_value, AppError) and exc_value.status_code < 500:
                sentry_sdk.add_breadcrumb(
                    category=exc_value.code.lower(),
                    message=msg,
                    level="warning",
                )
                return None
            # Provider timeouts / request failures
            if exc_type is not None and issubclass(exc_type, requests.exceptions.RequestException):
                sentry_sdk.add_breadcrumb(
                    category="provider",
                    message=msg,
                    level="warning",
                )
                return None
        return event

    sentry_sdk.init(
        dsn=_sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.0,
        release=os.environ.get("RELEASE_SHA"),
        environment=os.environ.get("DEPLOY_ENVIRONMENT", "production"),
        before_send=_sentry_before_send,
    )

app = Flask(__name__)
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'decoder-dev-key')
if (not app.config['SECRET_KEY'] or app.config['SECRET_KEY'] == 'decoder-dev-key') and os.environ.get('FLASK_DEBUG') != '1':
    print("FATAL: SECRET_KEY is not set. Refusing to start with insecure default.", file=sys.stderr)
    print("Set SECRET_KEY in your environment or .env file.", file=sys.stderr)
    sys.exit(1)

# Proxy fix: behind a reverse proxy X-Forwarded-For carries the client IP.
# ProxyFix rewrites request.remote_addr so Flask-Limiter and logging see it.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------
# flask-limiter is the coarse per-process guard on every route. The decode
# endpoint additionally goes through rate_limit.py, whose counters live in
# the shared DB and therefore hold across gunicorn workers.
RATE_LIMIT_DEFAULT = os.environ.get("RATE_LIMIT_DEFAULT", "60/minute")

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[RATE_LIMIT_DEFAULT],
    storage_uri="memory://",
)
logging.getLogger("flask-limiter").setLevel(logging.WARNING)

AUTH_USER_HEADER = os.environ.get("AUTH_USER_HEADER", "X-User-Id")

# ---------------------------------------------------------------------------
# Startup: warn immediately if required config is missing
# ---------------------------------------------------------------------------
REQUIRED_KEYS = ("RENTCAST_API_KEY", "OPENAI_API_KEY")


def _check_service_config():
    """
    Validate required service configuration.
    Returns (is_ok, missing_keys) tuple.
    """
    missing = [key for key in REQUIRED_KEYS if not os.environ.get(key)]
    return (len(missing) == 0, missing)


_config_ok, _missing_keys = _check_service_config()
if not _config_ok:
    logger.warning(
        "%s not set. Decodes will fail until configured. "
        "For local development, copy .env.example to .env and add your keys.",
        ", ".join(_missing_keys),
    )


# ---------------------------------------------------------------------------
# Request context: request ID, visitor ID, authenticated user
# ---------------------------------------------------------------------------
def _generate_request_id():
    return uuid.uuid4().hex[:10]


@app.before_request
def _set_request_context():
    g.request_id = _generate_request_id()
    # Identity is asserted by the auth proxy in front of the app.
    g.user_id = (request.headers.get(AUTH_USER_HEADER) or "").strip() or None

    # Visitor ID: anonymous, cookie-based, for analytics events
    g.visitor_id = request.cookies.get("ld_vid")
    if not g.visitor_id:
        g.visitor_id = uuid.uuid4().hex[:12]
        g.set_visitor_cookie = True
    else:
        g.set_visitor_cookie = False


@app.after_request
def _after_request(response):
    if getattr(g, "set_visitor_cookie", False):
        response.set_cookie(
            "ld_vid", g.visitor_id,
            max_age=365 * 24 * 3600, httponly=True, samesite="Lax"
        )
    response.headers["X-Request-Id"] = getattr(g, "request_id", "")
    return response


# ---------------------------------------------------------------------------
# Decode governance
# ---------------------------------------------------------------------------

def _enforce_rate_limit():
    result = check_decode_rate_limit(
        user_id=g.user_id, headers=request.headers, remote_addr=request.remote_addr
    )
    if not result.success:
        raise RateLimitError(
            "Decode rate limit exceeded",
            retry_after=result.retry_after,
            limit=result.limit,
            remaining=result.remaining,
            reset=result.reset,
        )


def _enforce_quota() -> dict:
    """Reserves one decode and returns the decision, or {} when auth is
    disabled for anonymous callers."""
    if not g.user_id:
        if require_auth():
            raise AuthenticationError("Decode attempted without an authenticated user")
        return {}
    decision = reserve_decode(g.user_id)
    if not decision["allowed"]:
        raise QuotaExceededError(
            decision.get("reason") or "Quota exceeded",
            user_message=decision.get("reason"),
            public_context={"remaining": decision["remaining"], "limit": decision["limit"]},
        )
    return decision


def _parse_decode_body() -> DecodeRequest:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object", field="body")
    if data.get("prefs") is not None and not isinstance(data.get("prefs"), dict):
        raise ValidationError("prefs must be an object", field="prefs")
    decode_request = DecodeRequest.from_dict(data)
    if not (decode_request.url or decode_request.address):
        raise ValidationError(
            "Either url or address is required",
            field="url",
            user_message="Please provide a listing URL or an address.",
        )
    return decode_request


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.route("/decode", methods=["POST"])
def decode():
    """
    Decode a listing. JSON body: {url?, address?, prefs?: {workAddress?}}.
    Synchronous by default; ?async=1 enqueues a job and returns 202.
    """
    request_id = g.request_id
    decode_request = _parse_decode_body()
    logger.info(
        "[%s] POST /decode url=%r address=%r user=%s",
        request_id, decode_request.url, decode_request.address, g.user_id,
    )
    _enforce_rate_limit()
    decision = _enforce_quota()

    if request.args.get("async") == "1":
        try:
            job_id = create_job(
                {"request": decode_request.to_dict(), "quota": decision, "visitor_id": g.visitor_id},
                user_id=g.user_id,
                request_id=request_id,
            )
        except Exception:
            release_decode(g.user_id, decision)
            raise
        logger.info("[%s] Queued decode job %s", request_id, job_id)
        return jsonify({
            "status": "queued",
            "job_id": job_id,
            "status_url": f"/status/{job_id}",
        }), 202

    trace_ctx = TraceContext(trace_id=request_id)
    set_trace(trace_ctx)
    try:
        result = execute_decode_flow(decode_request)
        record_decode(g.user_id, decision)
        log_event(
            "report_created",
            report_id=result.id,
            visitor_id=g.visitor_id,
            metadata={"slug": result.slug, "trace_id": request_id},
        )
        return jsonify({"status": "ok", **result.to_dict()})
    except Exception as e:
        release_decode(g.user_id, decision)
        log_event(
            "decode_error",
            visitor_id=g.visitor_id,
            metadata={
                "error": str(e),
                "code": normalize_error(e).code,
                "request_id": request_id,
                "trace_summary": trace_ctx.summary_dict(),
            },
        )
        raise
    finally:
        trace_ctx.log_summary()
        clear_trace()


@app.route("/status/<job_id>")
@limiter.exempt
def job_status(job_id):
    """
    Polling endpoint for async decodes. Returns JSON:
    {status, step, progress, url?, error?}
    status: queued | running | done | failed
    """
    job = get_job(job_id)
    if not job:
        raise NotFoundError("job", job_id, user_message="Job not found.")
    payload = {
        "status": job["status"],
        "step": job["current_stage"],
        "progress": job["progress"],
    }
    if job.get("report_url"):
        payload["url"] = job["report_url"]
        payload["id"] = job["report_id"]
    if job.get("error"):
        payload["error"] = job["error"]
    return jsonify(payload)


@app.route("/ingest", methods=["POST"])
@limiter.limit("30/minute")
def ingest():
    """Accept scraped page data {url, html?, dom?, metadata?} for later decodes."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object", field="body")
    listing, already_cached = ingest_scraped_data(data)
    fields = listing.to_dict()["listing"]
    logger.info("[%s] Ingested scrape for %s (cached before: %s)", g.request_id, data.get("url"), already_cached)
    return jsonify({
        "status": "ok",
        "url": listing.source.url,
        "already_cached": already_cached,
        "missing_fields": missing_core_fields(listing),
        "listing": {
            key: fields.get(key)
            for key in ("address", "city", "state", "zip", "price", "price_type", "beds", "baths", "sqft")
        },
    })


@app.route("/report/<report_id>")
def view_report(report_id):
    """Public, read-only report. No auth required."""
    record = get_report(report_id)
    if not record:
        raise NotFoundError("report", report_id, user_message="Report not found or expired.")
    log_event("report_viewed", report_id=report_id, visitor_id=g.visitor_id)
    return jsonify({
        "id": record["id"],
        "slug": record.get("slug"),
        "listing": record.get("listing"),
        "report": record.get("report"),
        "augmentation": record.get("augmentation"),
        "created_at": record.get("created_at"),
    })


@app.route("/report/<report_id>/image.png")
@limiter.exempt
def report_image(report_id):
    record = get_report(report_id)
    if not record:
        raise NotFoundError("report", report_id, user_message="Report not found or expired.")
    listing = Listing.from_dict(record["listing"])
    png = get_or_create_share_image(listing, record["report"], record.get("prefs_key") or "default")
    if png is None:
        raise NotFoundError("share image", report_id)
    response = Response(png, mimetype="image/png")
    response.headers["Cache-Control"] = "public, max-age=86400"
    return response


@app.route("/usage")
def usage():
    """Quota decision for the calling user."""
    if not g.user_id:
        raise AuthenticationError("Usage requested without an authenticated user")
    decision = can_decode(g.user_id)
    return jsonify({**decision, "used": get_current_usage(g.user_id)})


@app.route("/stats")
@limiter.exempt
def stats():
    """Event counts by type."""
    return jsonify(get_event_counts())


@app.route("/healthz")
@limiter.exempt
def healthz():
    """Lightweight health-check endpoint for monitoring."""
    config_ok, missing = _check_service_config()
    return jsonify({
        "status": "ok" if config_ok else "degraded",
        "missing_keys": missing,
    }), 200 if config_ok else 503


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.errorhandler(AppError)
def handle_app_error(e):
    request_id = getattr(g, "request_id", "unknown")
    if e.status_code >= 500:
        logger.error("[%s] %r context=%s", request_id, e, e.context, exc_info=e)
    else:
        logger.info("[%s] %r context=%s", request_id, e, e.context)
    body = e.to_dict()
    body["request_id"] = request_id
    response = jsonify(body)
    response.status_code = e.status_code
    if isinstance(e, RateLimitError) and e.retry_after is not None:
        response.headers["Retry-After"] = str(e.retry_after)
    return response


@app.errorhandler(429)
def rate_limit_exceeded(e):
    return jsonify({
        "error": "Too many requests. Please wait and try again.",
        "code": "RATE_LIMIT_ERROR",
    }), 429


@app.errorhandler(404)
def not_found(e):
    return jsonify({"error": "Not found.", "code": "NOT_FOUND"}), 404


@app.errorhandler(500)
def internal_error(e):
    original = getattr(e, "original_exception", None) or e
    if not isinstance(original, HTTPException):
        logger.error(
            "[%s] Unhandled error: %s", getattr(g, "request_id", "unknown"), original,
            exc_info=original,
        )
    err = normalize_error(original) if not isinstance(original, HTTPException) else AppError(str(original))
    return jsonify(err.to_dict()), err.status_code


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------

# Initialize database on import (safe to call repeatedly)
init_db()

if __name__ == "__main__":
    # Development: start the async decode worker thread in this process
    from worker import start_worker
    start_worker()
    port = int(os.environ.get("PORT", 5001))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug)
if os.environ.get("FLASK_RUN_FROM_CLI") == "true" and os.environ.get("START_WORKER") != "1":
    logger.warning(
        "WARNING: No background worker running. Jobs will not process. "
        "Use gunicorn or set START_WORKER=1."
    )
elif os.environ.get("START_WORKER") == "1":
    try:
        from worker import start_worker
        start_worker()
    except Exception:
        logger.exception("Failed to start background worker via START_WORKER=1")
