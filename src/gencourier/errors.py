"""Exception hierarchy for gencourier."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class GencourierError(Exception):
    """Base exception for all gencourier errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(GencourierError):
    """Configuration validation or resolution failed."""


class SourceError(GencourierError):
    """Asset validation or loading failed."""


class InternalError(GencourierError):
    """A gencourier internal error (bug) or invariant violation."""


class MissingCredentialError(GencourierError):
    """No active API key is available for the provider."""

    category = "missing_credential"


class APIError(GencourierError):
    """Provider call failed.

    Providers attach the HTTP status code and the symbolic status
    (``UNAVAILABLE``, ``RESOURCE_EXHAUSTED``...) so classification does not
    depend on message wording.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        status_code: int | None = None,
        status: str | None = None,
        retry_after_s: float | None = None,
        provider: str | None = None,
        phase: str | None = None,
        model: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.status_code = status_code
        self.status = status
        self.retry_after_s = retry_after_s
        self.provider = provider
        self.phase = phase
        self.model = model


class RateLimitError(APIError):
    """Rate limit or quota exceeded (HTTP 429)."""


class ContentRejectedError(APIError):
    """The provider's safety filter refused the input or the output."""

    category = "content_rejected"


class ExhaustedError(APIError):
    """Every model in the fallback chain stayed overloaded."""

    category = "overloaded"

    def __init__(
        self,
        message: str,
        *,
        models: Sequence[str] = (),
        attempts: int = 0,
        hint: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint, status_code=503)
        self.models = tuple(models)
        self.attempts = attempts


class OperationFailedError(APIError):
    """A long-running operation finished with an error field."""

    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        hint: str | None = None,
        status_code: int | None = None,
        status: str | None = None,
    ) -> None:
        super().__init__(
            message,
            hint=hint,
            status_code=status_code,
            status=status,
            phase="poll",
        )
        self.operation = operation


class OperationTimedOutError(APIError):
    """A long-running operation did not resolve within the poll ceiling."""

    category = "timeout"

    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        polls: int = 0,
        hint: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint, phase="poll")
        self.operation = operation
        self.polls = polls


class DownloadFailedError(APIError):
    """The result reference resolved but fetching its bytes failed."""

    category = "download_failed"


class OperationCancelledError(GencourierError):
    """Work was abandoned through a cancellation token."""


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)
