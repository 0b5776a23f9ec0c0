"""Domain models for the provider transport layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

Modality = Literal["image", "text"]


@dataclass(frozen=True)
class Asset:
    """A provider-ready binary input (reference image, start frame...)."""

    data: bytes
    mime_type: str
    name: str = ""

    @property
    def size_bytes(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class GenerationRequest:
    """A unified, immutable generation payload.

    ``model`` is left empty by callers that dispatch across a fallback chain;
    the dispatcher stamps the model for each attempt.
    """

    prompt: str
    model: str = ""
    assets: tuple[Asset, ...] = ()
    aspect_ratio: str | None = None
    resolution: str | None = None
    number_of_outputs: int = 1
    modalities: tuple[Modality, ...] = ("image",)
    negative_prompt: str | None = None
    duration_s: int | None = None


@dataclass(frozen=True)
class GeneratedImage:
    """One inline image returned by a synchronous generate call."""

    data: bytes
    mime_type: str = "image/png"


@dataclass
class ProviderResponse:
    """A standardized response from a synchronous generate call."""

    model: str = ""
    text: str = ""
    images: list[GeneratedImage] = field(default_factory=list)
    usage: dict[str, int] = field(default_factory=dict)

    @property
    def first_image(self) -> GeneratedImage | None:
        return self.images[0] if self.images else None


@dataclass(frozen=True)
class OperationError:
    """Error field reported by a long-running operation."""

    message: str
    code: int | None = None
    status: str | None = None


@dataclass
class OperationHandle:
    """A provider-issued reference to an in-progress asynchronous job.

    ``raw`` keeps the provider SDK object so ``refresh`` can hand it back.
    """

    name: str
    model: str = ""
    done: bool = False
    error: OperationError | None = None
    response: Any = None
    raw: Any = field(default=None, repr=False)


@dataclass(frozen=True)
class ResultReference:
    """A resolvable pointer to binary output produced by a finished job."""

    uri: str
    mime_type: str | None = None


@dataclass(frozen=True)
class VideoResult:
    """A downloaded video and the reference it came from."""

    reference: ResultReference
    data: bytes


# Candidate paths into an operation response, tried in order.
# SDK objects use snake_case attributes; raw REST payloads use camelCase keys.
RESULT_REFERENCE_PATHS: tuple[tuple[str | int, ...], ...] = (
    ("generated_videos", 0, "video", "uri"),
    ("generateVideoResponse", "generatedSamples", 0, "video", "uri"),
    ("generatedVideos", 0, "video", "uri"),
    ("generated_samples", 0, "video", "uri"),
    ("video", "uri"),
    ("uri",),
)

_MIME_PATHS: tuple[tuple[str | int, ...], ...] = (
    ("generated_videos", 0, "video", "mime_type"),
    ("generateVideoResponse", "generatedSamples", 0, "video", "mimeType"),
    ("generatedVideos", 0, "video", "mimeType"),
)


def _lookup(obj: Any, path: tuple[str | int, ...]) -> Any:
    cur = obj
    for step in path:
        if cur is None:
            return None
        if isinstance(step, int):
            if not isinstance(cur, (list, tuple)) or len(cur) <= step:
                return None
            cur = cur[step]
        elif isinstance(cur, dict):
            cur = cur.get(step)
        else:
            cur = getattr(cur, step, None)
    return cur


def resolve_result_reference(handle: OperationHandle) -> ResultReference | None:
    """Return the first non-empty result link in *handle*, or None."""
    if handle.response is None:
        return None
    for path in RESULT_REFERENCE_PATHS:
        value = _lookup(handle.response, path)
        if isinstance(value, str) and value.strip():
            mime: str | None = None
            for mime_path in _MIME_PATHS:
                candidate = _lookup(handle.response, mime_path)
                if isinstance(candidate, str) and candidate:
                    mime = candidate
                    break
            return ResultReference(uri=value.strip(), mime_type=mime)
    return None
