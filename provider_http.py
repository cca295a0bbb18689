"""
Coordinated HTTP layer for outbound provider calls.

Every JSON call to an external data provider (RentCast, Mapbox, Nominatim,
Google Maps, Overpass, FEMA, Family Watchdog, ...) goes through
ProviderHTTPClient. It provides:
- A bounded per-call timeout (OUTBOUND_TIMEOUT, default 10s)
- Retry with exponential backoff and jitter on 429/5xx/timeouts/connection
  errors (2 retries by default)
- Retry-After honoring on 429/503, capped so a provider can't stall a decode
- Error classification into the errors.py taxonomy
- decode_trace integration for observability

Thread-safe: a fresh requests.Session is used per call.
"""

import logging
import random
import time
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Optional

import requests

from decode_trace import get_trace
from decoder_config import DECODER_CONFIG, RetryPolicy, outbound_timeout
from errors import (
    APIError,
    NetworkError,
    RateLimitError,
    RequestTimeoutError,
)

logger = logging.getLogger(__name__)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After as seconds; accepts delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    return max(0.0, when.timestamp() - time.time())


class ProviderHTTPClient:
    """Retrying JSON client for one external service."""

    def __init__(
        self,
        service: str,
        timeout: Optional[float] = None,
        retry: Optional[RetryPolicy] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.service = service
        self.timeout = timeout
        self.retry = retry or DECODER_CONFIG.retry
        self.headers = dict(headers or {})

    def get_json(self, url: str, params: Optional[Dict[str, Any]] = None,
                 endpoint: str = "", headers: Optional[Dict[str, str]] = None) -> Optional[Any]:
        return self.request_json("GET", url, params=params, endpoint=endpoint, headers=headers)

    def post_json(self, url: str, data: Optional[Dict[str, Any]] = None,
                  endpoint: str = "", headers: Optional[Dict[str, str]] = None) -> Optional[Any]:
        return self.request_json("POST", url, data=data, endpoint=endpoint, headers=headers)

    def request_json(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        endpoint: str = "",
        headers: Optional[Dict[str, str]] = None,
    ) -> Optional[Any]:
        """
        Execute a request and return the decoded JSON body.

        Returns None on 404. Raises:
            RateLimitError: 429 after all retries.
            APIError: non-retryable 4xx immediately, 5xx / bad JSON after retries.
            RequestTimeoutError: timeout after all retries.
            NetworkError: connection failure after all retries.
        """
        endpoint = endpoint or method.lower()
        attempts = 1 + self.retry.max_retries
        for attempt in range(attempts):
            try:
                return self._do_request(method, url, params, data, endpoint, headers, attempt + 1)
            except (RateLimitError, APIError, RequestTimeoutError) as e:
                if attempt + 1 >= attempts or not self._is_retryable(e):
                    raise
                sleep_time = self._backoff(attempt, getattr(e, "retry_after", None))
                logger.info(
                    "%s %s failed (attempt %d/%d): %s; sleeping %.1fs before retry",
                    self.service, endpoint, attempt + 1, attempts, e.message, sleep_time,
                )
                time.sleep(sleep_time)
        # Unreachable: the final attempt either returns or raises
        raise APIError(self.service, "request failed after all retries")

    def _do_request(self, method, url, params, data, endpoint, headers, attempt):
        timeout = self.timeout or outbound_timeout()
        merged_headers = dict(self.headers)
        merged_headers.update(headers or {})
        trace = get_trace()
        start = time.monotonic()

        def _record(status_code, provider_status=""):
            if trace:
                trace.record_api_call(
                    service=self.service,
                    endpoint=endpoint,
                    elapsed_ms=int((time.monotonic() - start) * 1000),
                    status_code=status_code,
                    provider_status=provider_status,
                    attempt=attempt,
                )

        try:
            session = requests.Session()
            session.trust_env = False
            resp = session.request(
                method,
                url,
                params=params,
                data=data,
                headers=merged_headers,
                timeout=timeout,
            )
        except requests.exceptions.Timeout:
            _record(0, "timeout")
            raise RequestTimeoutError(self.service, timeout)
        except requests.exceptions.RequestException as e:
            _record(0, "exception")
            raise NetworkError(self.service, f"request failed: {e}") from e

        status_code = resp.status_code
        if status_code == 404:
            _record(404, "not_found")
            return None
        if status_code == 429:
            _record(429, "rate_limit")
            retry_after = parse_retry_after(resp.headers.get("Retry-After"))
            raise RateLimitError(
                f"{self.service} returned 429 [{endpoint}]",
                retry_after=int(retry_after) if retry_after is not None else None,
                context={"service": self.service},
            )
        if status_code >= 400:
            _record(status_code, "http_error")
            err = APIError(
                self.service,
                f"HTTP {status_code} [{endpoint}]",
                upstream_status=status_code,
                context={"body_preview": (resp.text or "")[:200]},
                status_code=503 if status_code == 503 else None,
            )
            if status_code == 503:
                err.retry_after = parse_retry_after(resp.headers.get("Retry-After"))
            raise err

        try:
            body = resp.json()
        except ValueError:
            _record(status_code, "parse_error")
            raise APIError(
                self.service,
                f"non-JSON response (HTTP {status_code}) [{endpoint}]",
                upstream_status=status_code,
            )
        _record(status_code, "ok")
        return body

    def _backoff(self, attempt: int, retry_after: Optional[float]) -> float:
        if retry_after is not None:
            return min(float(retry_after), self.retry.max_retry_after)
        delay = min(self.retry.base_delay * (2 ** attempt), self.retry.max_delay)
        return delay + random.uniform(0, delay * self.retry.jitter)

    @staticmethod
    def _is_retryable(e) -> bool:
        """429, 5xx, timeouts and connection failures are retryable. Other 4xx are not."""
        if isinstance(e, (RateLimitError, RequestTimeoutError, NetworkError)):
            return True
        if isinstance(e, APIError):
            return e.upstream_status is None or e.upstream_status >= 500
        return False
