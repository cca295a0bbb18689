"""HTTP-level tests for app.py routes: decode governance, jobs, reports."""

from unittest.mock import patch

from decode_flow import DecodeResult
from errors import DataQualityError
from listing import Listing, ListingFields, ListingSource
from models import claim_next_job, create_job, get_event_counts, get_job, set_user_plan
from quotas import get_current_usage
from storage import save_report
import worker

ADDRESS = "123 Main St, Los Angeles, CA 90001"
RESULT = DecodeResult(id="rid123", url="/report/rid123", slug="los-angeles-123-main-st-60")


def _decode(client, body=None, user=None, query=""):
    headers = {"X-User-Id": user} if user else {}
    return client.post(f"/decode{query}", json=body if body is not None else {"address": ADDRESS},
                       headers=headers)


def _saved_report():
    listing = Listing(
        source=ListingSource(provider="primary"),
        fields=ListingFields(address=ADDRESS, city="Los Angeles", state="CA", price=2400.0),
    )
    report = {"summary": "s", "scorecard": {"total": 60}, "red_flags": [], "positives": []}
    return save_report("los-angeles-123-main-st-60", listing, report, {"noise": None}, "default")


# =========================================================================
# Input validation and governance
# =========================================================================

class TestDecodeGovernance:
    def test_non_object_body(self, client):
        resp = client.post("/decode", data="nope", content_type="text/plain", headers={"X-User-Id": "u1"})
        assert resp.status_code == 400
        assert resp.get_json()["code"] == "VALIDATION_ERROR"
        assert resp.get_json()["context"] == {"field": "body"}

    def test_requires_url_or_address(self, client):
        resp = _decode(client, body={"prefs": {}}, user="u1")
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Please provide a listing URL or an address."

    def test_bad_prefs(self, client):
        resp = _decode(client, body={"address": ADDRESS, "prefs": "x"}, user="u1")
        assert resp.status_code == 400

    def test_requires_auth(self, client):
        resp = _decode(client)
        assert resp.status_code == 401
        assert resp.get_json()["code"] == "AUTHENTICATION_REQUIRED"
        assert "request_id" in resp.get_json()

    def test_no_subscription(self, client):
        resp = _decode(client, user="u1")
        assert resp.status_code == 403
        body = resp.get_json()
        assert body["code"] == "QUOTA_EXCEEDED"
        assert body["error"] == "No active subscription. Please subscribe to continue."
        assert body["context"] == {"remaining": 0, "limit": 0}

    @patch("app.execute_decode_flow", return_value=RESULT)
    def test_rate_limited(self, _mock_flow, client, monkeypatch):
        monkeypatch.setenv("REQUIRE_AUTH", "false")
        monkeypatch.setenv("RATE_LIMIT_ANON", "1/3600")
        assert _decode(client).status_code == 200
        resp = _decode(client)
        assert resp.status_code == 429
        body = resp.get_json()
        assert body["code"] == "RATE_LIMIT_ERROR"
        assert body["limit"] == 1
        assert body["remaining"] == 0
        assert int(resp.headers["Retry-After"]) == body["retryAfter"]

    @patch("app.execute_decode_flow", return_value=RESULT)
    def test_monthly_limit(self, _mock_flow, client):
        set_user_plan("u1", "basic", "active")
        for _ in range(5):
            assert _decode(client, user="u1").status_code == 200
        resp = _decode(client, user="u1")
        assert resp.status_code == 403
        assert "Monthly limit reached" in resp.get_json()["error"]


# =========================================================================
# Sync and async decode
# =========================================================================

class TestDecode:
    @patch("app.execute_decode_flow", return_value=RESULT)
    def test_sync_success(self, mock_flow, client):
        set_user_plan("u1", "basic", "active")
        resp = _decode(client, body={"address": ADDRESS, "prefs": {"work_address": "1 Work Way"}}, user="u1")
        assert resp.status_code == 200
        assert resp.get_json() == {"status": "ok", **RESULT.to_dict()}
        request = mock_flow.call_args[0][0]
        assert request.prefs == {"work_address": "1 Work Way"}
        assert get_current_usage("u1") == 1
        assert get_event_counts() == {"report_created": 1}
        assert resp.headers["X-Request-Id"]

    @patch("app.execute_decode_flow", side_effect=DataQualityError("thin", missing_fields=["price|beds|baths"]))
    def test_sync_failure_not_charged(self, _mock_flow, client):
        set_user_plan("u1", "basic", "active")
        resp = _decode(client, user="u1")
        assert resp.status_code == 422
        assert resp.get_json()["context"]["missingFields"] == ["price|beds|baths"]
        assert get_current_usage("u1") == 0
        assert get_event_counts() == {"decode_error": 1}

    @patch("app.execute_decode_flow")
    def test_async_enqueues(self, mock_flow, client):
        set_user_plan("u1", "pro", "active")
        resp = _decode(client, user="u1", query="?async=1")
        assert resp.status_code == 202
        body = resp.get_json()
        assert body["status"] == "queued"
        assert body["status_url"] == f"/status/{body['job_id']}"
        mock_flow.assert_not_called()

        job = get_job(body["job_id"])
        assert job["user_id"] == "u1"
        assert job["payload"]["request"]["address"] == ADDRESS
        assert job["payload"]["quota"]["allowed"] is True
        assert job["payload"]["quota"]["reserved"] is True
        # Reserved at enqueue time so queued jobs count against the plan.
        assert get_current_usage("u1") == 1

    def test_async_queue_respects_monthly_limit(self, client):
        set_user_plan("u1", "basic", "active")
        codes = [_decode(client, user="u1", query="?async=1").status_code for _ in range(8)]
        assert codes == [202] * 5 + [403] * 3
        assert get_current_usage("u1") == 5

        with patch("worker.execute_decode_flow", return_value=RESULT):
            while True:
                job = claim_next_job()
                if not job:
                    break
                worker._run_job(job)
        assert get_current_usage("u1") == 5

    def test_failed_async_job_refunds_reservation(self, client):
        set_user_plan("u1", "basic", "active")
        _decode(client, user="u1", query="?async=1")
        assert get_current_usage("u1") == 1
        with patch("worker.execute_decode_flow", side_effect=DataQualityError("thin")):
            worker._run_job(claim_next_job())
        assert get_current_usage("u1") == 0

    def test_anonymous_when_auth_disabled(self, client, monkeypatch):
        monkeypatch.setenv("REQUIRE_AUTH", "false")
        with patch("app.execute_decode_flow", return_value=RESULT):
            assert _decode(client).status_code == 200


# =========================================================================
# Jobs, reports, usage
# =========================================================================

class TestStatus:
    def test_queued(self, client):
        job_id = create_job({"request": {"address": ADDRESS}})
        body = client.get(f"/status/{job_id}").get_json()
        assert body == {"status": "queued", "step": None, "progress": 0}

    def test_missing(self, client):
        resp = client.get("/status/nope")
        assert resp.status_code == 404
        assert resp.get_json()["code"] == "NOT_FOUND"


class TestReports:
    def test_view(self, client):
        report_id = _saved_report()
        resp = client.get(f"/report/{report_id}")
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["id"] == report_id
        assert body["slug"] == "los-angeles-123-main-st-60"
        assert body["report"]["scorecard"]["total"] == 60
        assert body["listing"]["listing"]["city"] == "Los Angeles"
        assert get_event_counts() == {"report_viewed": 1}

    def test_missing_report(self, client):
        resp = client.get("/report/doesnotexist")
        assert resp.status_code == 404
        assert resp.get_json()["error"] == "Report not found or expired."

    @patch("app.get_or_create_share_image", return_value=b"\x89PNGdata")
    def test_image(self, mock_image, client):
        report_id = _saved_report()
        resp = client.get(f"/report/{report_id}/image.png")
        assert resp.status_code == 200
        assert resp.mimetype == "image/png"
        assert resp.data == b"\x89PNGdata"
        listing, report, prefs_key = mock_image.call_args[0]
        assert listing.fields.address == ADDRESS
        assert prefs_key == "default"

    @patch("app.get_or_create_share_image", return_value=None)
    def test_image_unavailable(self, _mock_image, client):
        report_id = _saved_report()
        assert client.get(f"/report/{report_id}/image.png").status_code == 404


class TestUsage:
    def test_requires_user(self, client):
        assert client.get("/usage").status_code == 401

    def test_counts(self, client):
        set_user_plan("u1", "basic", "active")
        with patch("app.execute_decode_flow", return_value=RESULT):
            _decode(client, user="u1")
        body = client.get("/usage", headers={"X-User-Id": "u1"}).get_json()
        assert body["used"] == 1
        assert body["remaining"] == 4
        assert body["limit"] == 5


# =========================================================================
# Ingest, health, misc
# =========================================================================

class TestIngest:
    def test_disabled(self, client):
        resp = client.post("/ingest", json={"url": "https://www.zillow.com/homedetails/1_zpid/"})
        assert resp.status_code == 500
        assert resp.get_json()["code"] == "CONFIGURATION_ERROR"

    def test_ingest(self, client, monkeypatch):
        monkeypatch.setenv("FEATURE_SCRAPE_FALLBACK", "true")
        resp = client.post("/ingest", json={
            "url": "https://www.zillow.com/homedetails/1_zpid/",
            "metadata": {"address": "9 Oak Dr, Austin, TX 78701", "price": "$1,850/mo", "beds": "3 beds"},
        })
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["already_cached"] is False
        assert body["missing_fields"] == []
        assert body["listing"]["city"] == "Austin"
        assert body["listing"]["price"] == 1850.0

    def test_rejects_bad_body(self, client, monkeypatch):
        monkeypatch.setenv("FEATURE_SCRAPE_FALLBACK", "true")
        assert client.post("/ingest", data="x", content_type="text/plain").status_code == 400


class TestHealth:
    def test_degraded_without_keys(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 503
        assert resp.get_json()["missing_keys"] == ["RENTCAST_API_KEY", "OPENAI_API_KEY"]

    def test_ok(self, client, monkeypatch):
        monkeypatch.setenv("RENTCAST_API_KEY", "k")
        monkeypatch.setenv("OPENAI_API_KEY", "k")
        assert client.get("/healthz").get_json() == {"status": "ok", "missing_keys": []}

    def test_unknown_route(self, client):
        resp = client.get("/nope")
        assert resp.status_code == 404
        assert resp.get_json()["code"] == "NOT_FOUND"

    def test_visitor_cookie(self, client):
        resp = client.get("/stats")
        assert "ld_vid=" in resp.headers.get("Set-Cookie", "")
        assert resp.get_json() == {}
