"""Error classification: raw provider failures into a stable taxonomy.

Classification runs in two tiers over a normalized ``(message, code, status)``
triple. Numeric codes and symbolic statuses are checked first; message
substrings are consulted only when no structured signal matched, and
never for local gencourier errors (their text quotes user input such as file
paths). The function is total: anything it does not recognize is ``ErrorCategory.UNKNOWN``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
import re
from typing import Any

from gencourier.errors import APIError, GencourierError, _walk_exception_chain

logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    """Closed set of failure categories, in classification priority order."""

    OVERLOADED = "overloaded"
    UNAUTHORIZED = "unauthorized"
    PERMISSION_DENIED = "permission_denied"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    TIMEOUT = "timeout"
    CONTENT_REJECTED = "content_rejected"
    BILLING_REQUIRED = "billing_required"
    MISSING_CREDENTIAL = "missing_credential"
    DOWNLOAD_FAILED = "download_failed"
    UNKNOWN = "unknown"


_REMEDIATION: dict[ErrorCategory, str] = {
    ErrorCategory.OVERLOADED: (
        "The model is overloaded (503). Retry in a moment or switch model in settings."
    ),
    ErrorCategory.UNAUTHORIZED: (
        "The API key is invalid or expired. Replace it in settings."
    ),
    ErrorCategory.PERMISSION_DENIED: (
        "This key cannot use the requested model. Enable access for it or choose another model."
    ),
    ErrorCategory.RATE_LIMITED: (
        "Quota or request rate exceeded. Wait before retrying or switch to another key."
    ),
    ErrorCategory.SERVER_ERROR: (
        "The provider hit an internal error. Retry later or switch model."
    ),
    ErrorCategory.TIMEOUT: (
        "Generation did not finish in time. Use a faster model or a simpler input."
    ),
    ErrorCategory.CONTENT_REJECTED: (
        "The safety filter rejected this request. Change the prompt or the source asset."
    ),
    ErrorCategory.BILLING_REQUIRED: (
        "This model requires billing. Enable billing on the account that owns the key."
    ),
    ErrorCategory.MISSING_CREDENTIAL: (
        "No active API key. Add one (set GEMINI_API_KEY or pass Config(api_key=...))."
    ),
    ErrorCategory.DOWNLOAD_FAILED: (
        "The result was generated but could not be downloaded. Retry the download."
    ),
    ErrorCategory.UNKNOWN: "Unexpected failure. Check the logs for details.",
}

# Categories a user can sensibly retry later without changing the input.
_RETRYABLE: frozenset[ErrorCategory] = frozenset(
    {
        ErrorCategory.OVERLOADED,
        ErrorCategory.RATE_LIMITED,
        ErrorCategory.SERVER_ERROR,
        ErrorCategory.TIMEOUT,
        ErrorCategory.DOWNLOAD_FAILED,
    }
)

_STATUS_CATEGORIES: dict[str, ErrorCategory] = {
    "UNAVAILABLE": ErrorCategory.OVERLOADED,
    "UNAUTHENTICATED": ErrorCategory.UNAUTHORIZED,
    "PERMISSION_DENIED": ErrorCategory.PERMISSION_DENIED,
    "RESOURCE_EXHAUSTED": ErrorCategory.RATE_LIMITED,
    "INTERNAL": ErrorCategory.SERVER_ERROR,
    "DEADLINE_EXCEEDED": ErrorCategory.TIMEOUT,
}

# Message tier, checked in order.
_MESSAGE_PATTERNS: tuple[tuple[ErrorCategory, re.Pattern[str]], ...] = (
    (ErrorCategory.OVERLOADED, re.compile(r"overloaded|unavailable|\b503\b")),
    (
        ErrorCategory.UNAUTHORIZED,
        re.compile(
            r"api[ _]key not valid|invalid api[ _]key|api_key_invalid"
            r"|unauthenticated|unauthorized|\b401\b"
        ),
    ),
    (
        ErrorCategory.PERMISSION_DENIED,
        re.compile(r"permission[ _]denied|does not have permission|\b403\b"),
    ),
    (
        ErrorCategory.RATE_LIMITED,
        re.compile(r"rate[ -]?limit|quota|resource_exhausted|too many requests|\b429\b"),
    ),
    (
        ErrorCategory.SERVER_ERROR,
        re.compile(r"internal error|server error|\b50[0-24-9]\b"),
    ),
    (ErrorCategory.TIMEOUT, re.compile(r"timed out|timeout|deadline")),
    (
        ErrorCategory.CONTENT_REJECTED,
        re.compile(r"safety|blocked|content policy|prohibited|responsible ai|usage guidelines"),
    ),
    (ErrorCategory.BILLING_REQUIRED, re.compile(r"billing")),
    (
        ErrorCategory.MISSING_CREDENTIAL,
        re.compile(r"no api key|api key (?:is )?(?:missing|required)"),
    ),
    (ErrorCategory.DOWNLOAD_FAILED, re.compile(r"download")),
)


@dataclass(frozen=True)
class ErrorInfo:
    """Normalized view of a raw failure."""

    message: str
    code: int | None = None
    status: str | None = None


@dataclass(frozen=True)
class Classification:
    """A classified failure ready to surface to a user."""

    category: ErrorCategory
    message: str
    hint: str
    retryable: bool
    #: Provider-suggested wait before retrying, when it sent one.
    retry_after_s: float | None = None


def _as_code(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _as_status(value: Any) -> str | None:
    if isinstance(value, str) and value.strip() and not value.strip().isdigit():
        return value.strip().upper()
    name = getattr(value, "name", None)
    if isinstance(name, str) and name:
        return name.upper()
    return None


def _info_from_mapping(raw: dict[str, Any]) -> ErrorInfo:
    nested = raw.get("error")
    nested = nested if isinstance(nested, dict) else {}
    message = raw.get("message", nested.get("message", ""))
    code_raw = raw.get("code", nested.get("code"))
    status_raw = raw.get("status", nested.get("status"))
    code = _as_code(code_raw)
    status = _as_status(status_raw)
    if status is None and code is None:
        status = _as_status(code_raw)
    if code is None:
        code = _as_code(status_raw)
    return ErrorInfo(
        message=message if isinstance(message, str) else str(message),
        code=code,
        status=status,
    )


def _info_from_exception(exc: BaseException) -> ErrorInfo:
    message = getattr(exc, "message", None)
    if not isinstance(message, str) or not message:
        message = str(exc)

    code: int | None = None
    status: str | None = None
    for e in _walk_exception_chain(exc):
        candidates: list[Any] = [
            getattr(e, "code", None),
            getattr(e, "status_code", None),
            getattr(e, "status", None),
            getattr(getattr(e, "response", None), "status_code", None),
        ]
        nested = getattr(e, "error", None)
        if isinstance(nested, dict):
            candidates += [nested.get("code"), nested.get("status")]
        details = getattr(e, "details", None)
        if isinstance(details, dict) and isinstance(details.get("error"), dict):
            candidates += [details["error"].get("code"), details["error"].get("status")]

        for value in candidates:
            if code is None:
                as_int = _as_code(value)
                if as_int is not None and 100 <= as_int <= 599:
                    code = as_int
                    continue
            if status is None:
                status = _as_status(value) if isinstance(value, str) else None
        if code is not None and status is not None:
            break
    return ErrorInfo(message=message, code=code, status=status)


def extract_error_info(raw: Any) -> ErrorInfo:
    """Normalize an exception, mapping, or string into an ``ErrorInfo``."""
    if isinstance(raw, ErrorInfo):
        return raw
    if isinstance(raw, BaseException):
        return _info_from_exception(raw)
    if isinstance(raw, dict):
        return _info_from_mapping(raw)
    if raw is None:
        return ErrorInfo(message="")
    return ErrorInfo(message=str(raw))


def _category_from_codes(info: ErrorInfo) -> ErrorCategory | None:
    code, status = info.code, info.status
    if code == 503 or status == "UNAVAILABLE":
        return ErrorCategory.OVERLOADED
    if code == 401:
        return ErrorCategory.UNAUTHORIZED
    if code == 403:
        return ErrorCategory.PERMISSION_DENIED
    if code == 429:
        return ErrorCategory.RATE_LIMITED
    if code == 408:
        return ErrorCategory.TIMEOUT
    if code is not None and 500 <= code <= 599:
        return ErrorCategory.SERVER_ERROR
    if status is not None:
        return _STATUS_CATEGORIES.get(status)
    return None


def _category_from_message(message: str) -> ErrorCategory | None:
    lowered = message.lower()
    for category, pattern in _MESSAGE_PATTERNS:
        if pattern.search(lowered):
            return category
    return None


def classify(raw: Any) -> ErrorCategory:
    """Map a raw failure to an ``ErrorCategory``. Never raises."""
    try:
        if isinstance(raw, ErrorCategory):
            return raw
        if isinstance(raw, GencourierError):
            # Our own exceptions either know what they are or are local failures.
            known = getattr(raw, "category", None)
            if isinstance(known, str):
                return ErrorCategory(known)
            if not isinstance(raw, APIError):
                return ErrorCategory.UNKNOWN

        info = extract_error_info(raw)
        return (
            _category_from_codes(info)
            or _category_from_message(info.message)
            or ErrorCategory.UNKNOWN
        )
    except Exception:
        logger.debug("Classification failed; defaulting to unknown", exc_info=True)
        return ErrorCategory.UNKNOWN


def remediation(category: ErrorCategory) -> str:
    """Return the user-facing remediation hint for *category*."""
    return _REMEDIATION[category]


def is_retryable(category: ErrorCategory) -> bool:
    """Whether the same input may succeed if retried later."""
    return category in _RETRYABLE


def describe(raw: Any) -> Classification:
    """Classify *raw* and attach its message and remediation hint."""
    category = classify(raw)
    try:
        message = extract_error_info(raw).message
    except Exception:
        message = ""
    return Classification(
        category=category,
        message=message or category.value,
        hint=remediation(category),
        retryable=is_retryable(category),
        retry_after_s=_retry_after(raw),
    )


def _retry_after(raw: Any) -> float | None:
    value = getattr(raw, "retry_after_s", None) if isinstance(raw, BaseException) else None
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0:
        return float(value)
    return None
