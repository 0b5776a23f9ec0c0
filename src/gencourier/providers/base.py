"""Transport protocol: the provider operations the orchestration core consumes."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from gencourier.providers.models import (
        GenerationRequest,
        OperationHandle,
        ProviderResponse,
        ResultReference,
    )


@runtime_checkable
class Transport(Protocol):
    """Minimal provider protocol: generate, submit, refresh, download."""

    async def generate(self, request: GenerationRequest) -> ProviderResponse:
        """Run a synchronous generation call."""
        ...

    async def submit(self, request: GenerationRequest) -> OperationHandle:
        """Start a long-running generation job."""
        ...

    async def refresh(self, handle: OperationHandle) -> OperationHandle:
        """Return the latest state of a long-running job."""
        ...

    async def download(self, reference: ResultReference) -> bytes:
        """Fetch the binary payload behind a result reference."""
        ...
