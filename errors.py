"""
Error taxonomy for Landlord Decoder.

Every failure that crosses a component boundary is an AppError carrying a
machine code, an HTTP status, a message safe to show the user, and two
context dicts: `context` is logged only, `public_context` is returned in the
JSON envelope ``{error, code, context?}``.
"""

from typing import Any, Dict, List, Optional

import requests


class AppError(Exception):
    code = "INTERNAL_ERROR"
    status_code = 500
    default_user_message = "Something went wrong. Please try again."

    def __init__(
        self,
        message: str,
        user_message: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        public_context: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.user_message = user_message or self.default_user_message
        self.context = context or {}
        self.public_context = public_context or {}
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.user_message, "code": self.code}
        if self.public_context:
            body["context"] = self.public_context
        return body

    def __repr__(self):
        return f"{type(self).__name__}({self.code}, {self.status_code}, {self.message!r})"


class ValidationError(AppError):
    code = "VALIDATION_ERROR"
    status_code = 400
    default_user_message = "The request was invalid. Please check your input."

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        public = kwargs.pop("public_context", None) or {}
        if field:
            public.setdefault("field", field)
        super().__init__(message, public_context=public, **kwargs)
        self.field = field


class NotFoundError(AppError):
    code = "NOT_FOUND"
    status_code = 404
    default_user_message = "We couldn't find that. Please check the address or link."

    def __init__(self, resource: str, identifier: Optional[str] = None, **kwargs):
        message = f"{resource} not found" + (f": {identifier}" if identifier else "")
        public = kwargs.pop("public_context", None) or {"resource": resource}
        super().__init__(message, public_context=public, **kwargs)
        self.resource = resource


class DataQualityError(AppError):
    code = "DATA_QUALITY_ERROR"
    status_code = 422
    default_user_message = (
        "We found the listing, but it is missing key details (price, beds or baths)."
    )

    def __init__(self, message: str, missing_fields: Optional[List[str]] = None, **kwargs):
        public = kwargs.pop("public_context", None) or {}
        if missing_fields:
            public.setdefault("missingFields", list(missing_fields))
        super().__init__(message, public_context=public, **kwargs)
        self.missing_fields = list(missing_fields or [])


class ParseError(AppError):
    code = "PARSE_ERROR"
    status_code = 422
    default_user_message = "We couldn't read the generated report. Please try again."


class RateLimitError(AppError):
    code = "RATE_LIMIT_ERROR"
    status_code = 429
    default_user_message = "Too many requests. Please wait and try again."

    def __init__(
        self,
        message: str,
        retry_after: Optional[int] = None,
        limit: Optional[int] = None,
        remaining: Optional[int] = None,
        reset: Optional[int] = None,
        **kwargs
    ):
        public = kwargs.pop("public_context", None) or {}
        if retry_after is not None:
            public.setdefault("retryAfter", retry_after)
        super().__init__(message, public_context=public, **kwargs)
        self.retry_after = retry_after
        self.limit = limit
        self.remaining = remaining
        self.reset = reset

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.limit is not None:
            body["limit"] = self.limit
            body["remaining"] = self.remaining if self.remaining is not None else 0
            body["reset"] = self.reset
        if self.retry_after is not None:
            body["retryAfter"] = self.retry_after
        return body


class QuotaExceededError(AppError):
    """Plan or trial allowance exhausted (not a burst limit)."""
    code = "QUOTA_EXCEEDED"
    status_code = 403
    default_user_message = "You've used all decodes available on your plan."


class AuthenticationError(AppError):
    code = "AUTHENTICATION_REQUIRED"
    status_code = 401
    default_user_message = "Please sign in to decode a listing."


class APIError(AppError):
    code = "API_ERROR"
    status_code = 502
    default_user_message = "An external service is having trouble. Please try again shortly."

    def __init__(self, service: str, message: str, upstream_status: Optional[int] = None, **kwargs):
        context = kwargs.pop("context", None) or {}
        context.setdefault("service", service)
        if upstream_status is not None:
            context.setdefault("upstream_status", upstream_status)
        super().__init__(f"{service}: {message}", context=context, **kwargs)
        self.service = service
        self.upstream_status = upstream_status


class NetworkError(APIError):
    code = "NETWORK_ERROR"
    status_code = 503
    default_user_message = "Network problem reaching an external service. Please try again."


class ConfigurationError(AppError):
    code = "CONFIGURATION_ERROR"
    status_code = 500
    default_user_message = "The service is not configured correctly. Please contact support."


class RequestTimeoutError(AppError):
    code = "TIMEOUT_ERROR"
    status_code = 504
    default_user_message = "The request took too long. Please try again."

    def __init__(self, service: str, timeout: Optional[float] = None, **kwargs):
        message = f"{service} timed out" + (f" after {timeout}s" if timeout else "")
        context = kwargs.pop("context", None) or {}
        context.setdefault("service", service)
        super().__init__(message, context=context, **kwargs)
        self.service = service


# =============================================================================
# Helpers
# =============================================================================

_RETRYABLE_CODES = {"RATE_LIMIT_ERROR", "NETWORK_ERROR", "TIMEOUT_ERROR"}


def normalize_error(exc: BaseException) -> AppError:
    """Map any exception onto the taxonomy."""
    if isinstance(exc, AppError):
        return exc
    if isinstance(exc, requests.exceptions.Timeout):
        return RequestTimeoutError("upstream", context={"original_error": str(exc)})
    if isinstance(exc, requests.exceptions.ConnectionError):
        return NetworkError("upstream", str(exc))
    if isinstance(exc, requests.exceptions.RequestException):
        return APIError("upstream", str(exc))
    return AppError(str(exc) or type(exc).__name__, context={"type": type(exc).__name__})


def is_retryable_error(exc: BaseException) -> bool:
    err = normalize_error(exc)
    if err.code in _RETRYABLE_CODES:
        return True
    if isinstance(err, APIError) and err.upstream_status is not None:
        return err.upstream_status >= 500
    return False


def get_user_message(exc: BaseException) -> str:
    return normalize_error(exc).user_message


def get_error_code(exc: BaseException) -> str:
    return normalize_error(exc).code


def get_status_code(exc: BaseException) -> int:
    return normalize_error(exc).status_code
