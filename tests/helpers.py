"""Test helpers (small, reusable doubles).

Keep this file tiny and purpose-built: it exists to prevent test suites from
growing lots of one-off transport subclasses as coverage expands.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from gencourier.cancellation import CancellationToken
from gencourier.errors import APIError
from gencourier.providers.models import (
    GeneratedImage,
    GenerationRequest,
    OperationError,
    OperationHandle,
    ProviderResponse,
    ResultReference,
)

Scripted = Any  # a value to return, or a BaseException to raise


def overloaded(message: str = "The model is overloaded. Please try again later.") -> APIError:
    return APIError(message, status_code=503, status="UNAVAILABLE", provider="gemini")


def server_error(code: int, message: str = "boom", status: str | None = None) -> APIError:
    return APIError(message, status_code=code, status=status, provider="gemini")


def done_handle(name: str = "operations/1", uri: str = "https://files/v.mp4") -> OperationHandle:
    return OperationHandle(
        name=name,
        done=True,
        response={"generated_videos": [{"video": {"uri": uri}}]},
    )


def failed_handle(message: str, *, code: int | None = None, name: str = "operations/1") -> OperationHandle:
    return OperationHandle(
        name=name, done=True, error=OperationError(message=message, code=code)
    )


class RecordingToken(CancellationToken):
    """Cancellation token whose sleeps return immediately and are recorded.

    ``cancel_after_sleeps`` cancels the token once that many sleeps happened.
    """

    def __init__(self, *, cancel_after_sleeps: int | None = None) -> None:
        super().__init__()
        self.sleeps: list[float] = []
        self.cancel_after_sleeps = cancel_after_sleeps

    async def sleep(self, delay_s: float) -> None:
        self.raise_if_cancelled()
        self.sleeps.append(delay_s)
        if (
            self.cancel_after_sleeps is not None
            and len(self.sleeps) >= self.cancel_after_sleeps
        ):
            self.cancel("test")
        self.raise_if_cancelled()


@dataclass
class ScriptedTransport:
    """Transport double that replays scripted results per operation.

    Each script entry is returned, or raised when it is an exception. When a
    script runs out, a sensible success value is returned.
    """

    generate_script: list[Scripted] = field(default_factory=list)
    submit_script: list[Scripted] = field(default_factory=list)
    refresh_script: list[Scripted] = field(default_factory=list)
    download_script: list[Scripted] = field(default_factory=list)
    generate_models: list[str] = field(default_factory=list)
    submitted: list[GenerationRequest] = field(default_factory=list)
    refresh_calls: int = 0
    download_calls: int = 0
    closed: bool = False

    @staticmethod
    def _next(script: list[Scripted], default: Any) -> Any:
        if not script:
            return default
        item = script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def generate(self, request: GenerationRequest) -> ProviderResponse:
        self.generate_models.append(request.model)
        return self._next(
            self.generate_script,
            ProviderResponse(
                model=request.model, images=[GeneratedImage(data=b"img")]
            ),
        )

    async def submit(self, request: GenerationRequest) -> OperationHandle:
        self.submitted.append(request)
        name = f"operations/{len(self.submitted)}"
        return self._next(self.submit_script, OperationHandle(name=name, model=request.model))

    async def refresh(self, handle: OperationHandle) -> OperationHandle:
        self.refresh_calls += 1
        return self._next(self.refresh_script, done_handle(handle.name))

    async def download(self, reference: ResultReference) -> bytes:
        self.download_calls += 1
        return self._next(self.download_script, f"bytes:{reference.uri}".encode())

    async def aclose(self) -> None:
        self.closed = True
