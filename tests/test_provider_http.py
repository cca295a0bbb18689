"""Unit tests for provider_http.py — retrying JSON client for providers.

Tests cover: success path, 404 handling, retry logic, Retry-After parsing,
error classification, and trace recording.
"""

from unittest.mock import patch, MagicMock

import pytest
import requests

from decode_trace import TraceContext, set_trace, clear_trace
from errors import APIError, NetworkError, RateLimitError, RequestTimeoutError
from provider_http import ProviderHTTPClient, parse_retry_after


# =========================================================================
# Helpers
# =========================================================================

def _mock_response(status_code=200, json_data=None, text="", headers=None):
    """Create a mock requests.Response object."""
    resp = MagicMock(spec=requests.Response)
    resp.status_code = status_code
    resp.ok = 200 <= status_code < 300
    resp.text = text
    resp.headers = headers or {}
    if json_data is not None:
        resp.json.return_value = json_data
    else:
        resp.json.side_effect = ValueError("No JSON")
    return resp


# =========================================================================
# Success and not-found
# =========================================================================

class TestSuccess:
    @patch("provider_http.requests.Session.request")
    def test_returns_json(self, mock_request):
        mock_request.return_value = _mock_response(200, {"ok": True})
        client = ProviderHTTPClient("rentcast")
        assert client.get_json("https://api.example.com/x", params={"a": 1}) == {"ok": True}

        args, kwargs = mock_request.call_args
        assert args[0] == "GET"
        assert kwargs["params"] == {"a": 1}

    @patch("provider_http.requests.Session.request")
    def test_404_returns_none(self, mock_request):
        mock_request.return_value = _mock_response(404, text="not found")
        assert ProviderHTTPClient("rentcast").get_json("https://x") is None
        assert mock_request.call_count == 1

    @patch("provider_http.requests.Session.request")
    def test_headers_merged(self, mock_request):
        mock_request.return_value = _mock_response(200, {})
        client = ProviderHTTPClient("rentcast", headers={"X-Api-Key": "k"})
        client.get_json("https://x", headers={"Accept": "application/json"})
        sent = mock_request.call_args[1]["headers"]
        assert sent == {"X-Api-Key": "k", "Accept": "application/json"}


# =========================================================================
# Retries
# =========================================================================

class TestRetries:
    @patch("provider_http.time.sleep")
    @patch("provider_http.requests.Session.request")
    def test_retries_5xx_then_succeeds(self, mock_request, mock_sleep):
        mock_request.side_effect = [
            _mock_response(500, text="oops"),
            _mock_response(200, {"ok": True}),
        ]
        assert ProviderHTTPClient("svc").get_json("https://x") == {"ok": True}
        assert mock_request.call_count == 2
        assert mock_sleep.call_count == 1

    @patch("provider_http.time.sleep")
    @patch("provider_http.requests.Session.request")
    def test_5xx_exhausts_retries(self, mock_request, mock_sleep):
        mock_request.return_value = _mock_response(502, text="bad gateway")
        with pytest.raises(APIError) as exc_info:
            ProviderHTTPClient("svc").get_json("https://x")
        assert exc_info.value.upstream_status == 502
        assert mock_request.call_count == 3

    @patch("provider_http.time.sleep")
    @patch("provider_http.requests.Session.request")
    def test_4xx_not_retried(self, mock_request, mock_sleep):
        mock_request.return_value = _mock_response(400, text="bad request")
        with pytest.raises(APIError) as exc_info:
            ProviderHTTPClient("svc").get_json("https://x")
        assert exc_info.value.upstream_status == 400
        assert mock_request.call_count == 1
        mock_sleep.assert_not_called()

    @patch("provider_http.time.sleep")
    @patch("provider_http.requests.Session.request")
    def test_429_honors_retry_after(self, mock_request, mock_sleep):
        mock_request.side_effect = [
            _mock_response(429, headers={"Retry-After": "3"}),
            _mock_response(200, {"ok": True}),
        ]
        assert ProviderHTTPClient("svc").get_json("https://x") == {"ok": True}
        mock_sleep.assert_called_once_with(3.0)

    @patch("provider_http.time.sleep")
    @patch("provider_http.requests.Session.request")
    def test_retry_after_is_capped(self, mock_request, mock_sleep):
        mock_request.side_effect = [
            _mock_response(429, headers={"Retry-After": "600"}),
            _mock_response(200, {}),
        ]
        ProviderHTTPClient("svc").get_json("https://x")
        mock_sleep.assert_called_once_with(30.0)

    @patch("provider_http.time.sleep")
    @patch("provider_http.requests.Session.request")
    def test_429_exhausted_raises_rate_limit(self, mock_request, mock_sleep):
        mock_request.return_value = _mock_response(429)
        with pytest.raises(RateLimitError):
            ProviderHTTPClient("svc").get_json("https://x")
        assert mock_request.call_count == 3

    @patch("provider_http.time.sleep")
    @patch("provider_http.requests.Session.request")
    def test_timeout(self, mock_request, mock_sleep):
        mock_request.side_effect = requests.exceptions.Timeout("slow")
        with pytest.raises(RequestTimeoutError):
            ProviderHTTPClient("svc", timeout=2).get_json("https://x")
        assert mock_request.call_count == 3

    @patch("provider_http.time.sleep")
    @patch("provider_http.requests.Session.request")
    def test_connection_error(self, mock_request, mock_sleep):
        mock_request.side_effect = requests.exceptions.ConnectionError("refused")
        with pytest.raises(NetworkError):
            ProviderHTTPClient("svc").get_json("https://x")
        assert mock_request.call_count == 3

    @patch("provider_http.time.sleep")
    @patch("provider_http.requests.Session.request")
    def test_non_json_body(self, mock_request, mock_sleep):
        mock_request.return_value = _mock_response(200, text="<html>")
        with pytest.raises(APIError):
            ProviderHTTPClient("svc").get_json("https://x")


# =========================================================================
# Retry-After parsing
# =========================================================================

class TestParseRetryAfter:
    def test_seconds(self):
        assert parse_retry_after("12") == 12.0

    def test_missing(self):
        assert parse_retry_after(None) is None
        assert parse_retry_after("") is None

    def test_garbage(self):
        assert parse_retry_after("soon") is None

    def test_past_http_date_is_zero(self):
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0


# =========================================================================
# Trace recording
# =========================================================================

class TestTrace:
    @patch("provider_http.requests.Session.request")
    def test_records_api_call(self, mock_request):
        mock_request.return_value = _mock_response(200, {"ok": True})
        trace = TraceContext(trace_id="t1")
        trace.start_stage("property")
        set_trace(trace)
        try:
            ProviderHTTPClient("rentcast").get_json("https://x", endpoint="properties")
        finally:
            clear_trace()
        assert len(trace.api_calls) == 1
        call = trace.api_calls[0]
        assert call.service == "rentcast"
        assert call.endpoint == "properties"
        assert call.status_code == 200
        assert call.stage == "property"
