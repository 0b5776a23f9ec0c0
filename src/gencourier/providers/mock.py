"""Mock provider for testing."""

from __future__ import annotations

import hashlib
import itertools

from gencourier.providers.models import (
    GeneratedImage,
    GenerationRequest,
    OperationHandle,
    ProviderResponse,
    ResultReference,
)

# Smallest valid PNG (1x1 transparent pixel).
_PNG_1X1 = bytes.fromhex(
    "89504e470d0a1a0a0000000d4948445200000001000000010806000000"
    "1f15c4890000000d49444154789c6360000002000154a24f5d0000000049454e44ae426082"
)


class MockProvider:
    """Mock provider for running pipelines without API calls.

    Video jobs finish after ``polls_until_done`` refreshes and resolve to a
    ``mock://`` link whose download is a deterministic byte string.
    """

    def __init__(self, *, polls_until_done: int = 1) -> None:
        self.polls_until_done = polls_until_done
        self._counter = itertools.count(1)
        self._remaining: dict[str, int] = {}

    async def generate(self, request: GenerationRequest) -> ProviderResponse:
        """Return a 1x1 PNG and an echo of the prompt."""
        return ProviderResponse(
            model=request.model,
            text=f"echo: {request.prompt[:100]}",
            images=[GeneratedImage(data=_PNG_1X1, mime_type="image/png")],
            usage={"input_tokens": 10, "total_tokens": 20},
        )

    async def submit(self, request: GenerationRequest) -> OperationHandle:
        """Return a pending operation handle."""
        name = f"operations/mock-{next(self._counter)}"
        self._remaining[name] = self.polls_until_done
        return OperationHandle(name=name, model=request.model)

    async def refresh(self, handle: OperationHandle) -> OperationHandle:
        """Count down to completion, then expose a result link."""
        remaining = self._remaining.get(handle.name, 0) - 1
        self._remaining[handle.name] = remaining
        if remaining > 0:
            return OperationHandle(name=handle.name, model=handle.model)
        video_id = handle.name.rsplit("/", 1)[-1]
        return OperationHandle(
            name=handle.name,
            model=handle.model,
            done=True,
            response={
                "generated_videos": [
                    {"video": {"uri": f"mock://videos/{video_id}.mp4", "mime_type": "video/mp4"}}
                ]
            },
        )

    async def download(self, reference: ResultReference) -> bytes:
        """Return bytes derived from the link."""
        digest = hashlib.sha256(reference.uri.encode("utf-8")).hexdigest()[:16]
        return f"mock-video:{digest}".encode()
