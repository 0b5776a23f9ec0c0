"""Shared provider-side error helpers.

Providers wrap SDK exceptions in ``APIError`` carrying the HTTP status code
and the symbolic status so classification stays deterministic when provider
wording changes.
"""

from __future__ import annotations

import asyncio
import re
from typing import Any

from gencourier.classify import ErrorCategory, classify, remediation
from gencourier.errors import (
    APIError,
    ContentRejectedError,
    RateLimitError,
    _walk_exception_chain,
)


def extract_status_code(exc: BaseException) -> int | None:
    """Walk the exception chain to find an HTTP status code."""
    for e in _walk_exception_chain(exc):
        for attr in ("status_code", "code", "status"):
            value = getattr(e, attr, None)
            if isinstance(value, int) and not isinstance(value, bool) and 100 <= value <= 599:
                return value
        response = getattr(e, "response", None)
        value = getattr(response, "status_code", None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
    return None


def extract_status(exc: BaseException) -> str | None:
    """Walk the exception chain to find a symbolic status (``UNAVAILABLE``...)."""
    for e in _walk_exception_chain(exc):
        value = getattr(e, "status", None)
        if isinstance(value, str) and value and not value.isdigit():
            return value.upper()
    return None


_PROTO_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)s$")


def _extract_retry_info_seconds(exc: BaseException) -> float | None:
    """Extract retry delay from Google API-style RetryInfo in error details.

    Gemini SDK ``ClientError`` exposes the parsed JSON body via a ``.details``
    attribute shaped like::

        {"error": {"details": [{"@type": "...RetryInfo", "retryDelay": "8s"}]}}
    """
    details: Any = getattr(exc, "details", None)
    if not isinstance(details, dict):
        return None
    error: Any = details.get("error")
    if not isinstance(error, dict):
        return None
    detail_list: Any = error.get("details")
    if not isinstance(detail_list, list):
        return None
    for entry in detail_list:
        if not isinstance(entry, dict):
            continue
        at_type = entry.get("@type", "")
        if not isinstance(at_type, str) or "RetryInfo" not in at_type:
            continue
        delay_raw = entry.get("retryDelay")
        if not isinstance(delay_raw, str):
            continue
        m = _PROTO_DURATION_RE.match(delay_raw)
        if m:
            return float(m.group(1))
    return None


def extract_retry_after_s(exc: BaseException) -> float | None:
    """Walk the exception chain to find a retry-after delay in seconds."""
    for e in _walk_exception_chain(exc):
        value = getattr(e, "retry_after", None)
        if isinstance(value, (int, float)) and value >= 0:
            return float(value)

        response = getattr(e, "response", None)
        headers: Any = getattr(response, "headers", None)
        if headers is not None:
            raw: Any = None
            try:
                raw = headers.get("Retry-After")
            except Exception:
                raw = None
            if isinstance(raw, str) and raw.strip():
                try:
                    seconds = float(raw)
                except ValueError:
                    seconds = -1.0
                if seconds >= 0:
                    return seconds

        retry_info = _extract_retry_info_seconds(e)
        if retry_info is not None:
            return retry_info
    return None


def wrap_provider_error(
    exc: BaseException,
    *,
    provider: str,
    phase: str,
    model: str | None = None,
    message: str | None = None,
) -> APIError:
    """Map provider SDK exceptions into APIError with stable status metadata."""
    if isinstance(exc, asyncio.CancelledError):
        raise exc

    # Already wrapped: fill in missing context only.
    if isinstance(exc, APIError):
        if exc.provider is None:
            exc.provider = provider
        if exc.phase is None:
            exc.phase = phase
        if exc.model is None:
            exc.model = model
        return exc

    status_code = extract_status_code(exc)
    status = extract_status(exc)
    retry_after_s = extract_retry_after_s(exc)

    category = classify(exc)
    err_cls: type[APIError] = APIError
    if category is ErrorCategory.RATE_LIMITED:
        err_cls = RateLimitError
    elif category is ErrorCategory.CONTENT_REJECTED:
        err_cls = ContentRejectedError

    msg = message or f"{provider} {phase} failed"
    status_note = f" (status={status_code})" if isinstance(status_code, int) else ""
    cause = str(exc)
    return err_cls(
        f"{msg}{status_note}: {cause}" if cause else f"{msg}{status_note}",
        hint=remediation(category),
        status_code=status_code,
        status=status,
        retry_after_s=retry_after_s,
        provider=provider,
        phase=phase,
        model=model,
    )
