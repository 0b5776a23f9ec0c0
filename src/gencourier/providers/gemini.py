"""Gemini provider implementation (Imagen-style image models and Veo)."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from gencourier._http import API_KEY_HEADER
from gencourier.errors import APIError, ContentRejectedError, DownloadFailedError
from gencourier.providers._errors import wrap_provider_error
from gencourier.providers.models import (
    GeneratedImage,
    GenerationRequest,
    OperationError,
    OperationHandle,
    ProviderResponse,
    ResultReference,
)

logger = logging.getLogger(__name__)

_SAFETY_FINISH_REASONS = frozenset(
    {"SAFETY", "PROHIBITED_CONTENT", "IMAGE_SAFETY", "BLOCKLIST", "SPII"}
)


class GeminiProvider:
    """Google Gemini API provider."""

    def __init__(self, api_key: str, *, download_timeout_s: float = 120.0) -> None:
        """Create provider with an API key."""
        self.api_key = api_key
        self.download_timeout_s = download_timeout_s
        self._client: Any = None
        self._http: httpx.AsyncClient | None = None

    def _get_client(self) -> Any:
        """Lazy-initialize the Gemini client."""
        if self._client is None:
            try:
                from google import genai
            except ImportError as e:
                raise APIError(
                    "google-genai package not installed",
                    hint="pip install google-genai",
                ) from e
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    def _get_http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=self.download_timeout_s, follow_redirects=True
            )
        return self._http

    def _build_contents(self, request: GenerationRequest) -> list[Any]:
        from google.genai import types

        contents: list[Any] = [
            types.Part.from_bytes(data=asset.data, mime_type=asset.mime_type)
            for asset in request.assets
        ]
        contents.append(request.prompt)
        return contents

    async def generate(self, request: GenerationRequest) -> ProviderResponse:
        """Generate content (typically an inline image) from a Gemini model."""
        client = self._get_client()
        from google.genai import types

        config_kwargs: dict[str, Any] = {
            "response_modalities": [m.upper() for m in request.modalities],
        }
        if request.aspect_ratio is not None or request.resolution is not None:
            image_kwargs: dict[str, Any] = {}
            if request.aspect_ratio is not None:
                image_kwargs["aspect_ratio"] = request.aspect_ratio
            if request.resolution is not None:
                image_kwargs["image_size"] = request.resolution
            config_kwargs["image_config"] = types.ImageConfig(**image_kwargs)

        try:
            response = await client.aio.models.generate_content(
                model=request.model,
                contents=self._build_contents(request),
                config=types.GenerateContentConfig(**config_kwargs),
            )
            if not response:
                raise APIError("Gemini returned an empty response.")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise wrap_provider_error(
                e,
                provider="gemini",
                phase="generate",
                model=request.model,
                message="Gemini generate failed",
            ) from e

        parsed = self._parse_response(response, model=request.model)
        if "image" in request.modalities and not parsed.images:
            self._raise_for_missing_image(response, model=request.model)
        return parsed

    def _parse_response(self, response: Any, *, model: str) -> ProviderResponse:
        """Collect inline image bytes and text parts from a generate response."""
        images: list[GeneratedImage] = []
        texts: list[str] = []
        for candidate in getattr(response, "candidates", None) or []:
            content = getattr(candidate, "content", None)
            for part in getattr(content, "parts", None) or []:
                inline = getattr(part, "inline_data", None)
                data = getattr(inline, "data", None)
                if isinstance(data, bytes) and data:
                    images.append(
                        GeneratedImage(
                            data=data,
                            mime_type=getattr(inline, "mime_type", None) or "image/png",
                        )
                    )
                elif isinstance(getattr(part, "text", None), str):
                    texts.append(part.text)

        usage: dict[str, int] = {}
        um = getattr(response, "usage_metadata", None)
        if um is not None:
            usage = {
                "input_tokens": getattr(um, "prompt_token_count", 0) or 0,
                "output_tokens": getattr(um, "candidates_token_count", 0) or 0,
                "total_tokens": getattr(um, "total_token_count", 0) or 0,
            }
        return ProviderResponse(
            model=model, text="".join(texts), images=images, usage=usage
        )

    @staticmethod
    def _raise_for_missing_image(response: Any, *, model: str) -> None:
        feedback = getattr(response, "prompt_feedback", None)
        block_reason = _enum_name(getattr(feedback, "block_reason", None))
        finish_reasons = {
            _enum_name(getattr(c, "finish_reason", None))
            for c in getattr(response, "candidates", None) or []
        }
        if block_reason or finish_reasons & _SAFETY_FINISH_REASONS:
            reason = block_reason or ", ".join(
                sorted(r for r in finish_reasons if r in _SAFETY_FINISH_REASONS)
            )
            raise ContentRejectedError(
                f"Gemini blocked the request by safety filter ({reason})",
                provider="gemini",
                phase="generate",
                model=model,
            )
        raise APIError(
            "Gemini returned no image data",
            hint="Retry, or rephrase the prompt so it clearly asks for an image.",
            provider="gemini",
            phase="generate",
            model=model,
        )

    async def submit(self, request: GenerationRequest) -> OperationHandle:
        """Start a Veo video generation job."""
        client = self._get_client()
        from google.genai import types

        config_kwargs: dict[str, Any] = {"number_of_videos": request.number_of_outputs}
        if request.aspect_ratio is not None:
            config_kwargs["aspect_ratio"] = request.aspect_ratio
        if request.resolution is not None:
            config_kwargs["resolution"] = request.resolution
        if request.negative_prompt is not None:
            config_kwargs["negative_prompt"] = request.negative_prompt
        if request.duration_s is not None:
            config_kwargs["duration_seconds"] = request.duration_s

        image = None
        if request.assets:
            first = request.assets[0]
            image = types.Image(image_bytes=first.data, mime_type=first.mime_type)

        try:
            operation = await client.aio.models.generate_videos(
                model=request.model,
                prompt=request.prompt,
                image=image,
                config=types.GenerateVideosConfig(**config_kwargs),
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise wrap_provider_error(
                e,
                provider="gemini",
                phase="submit",
                model=request.model,
                message="Gemini video submission failed",
            ) from e
        return self._to_handle(operation, model=request.model)

    async def refresh(self, handle: OperationHandle) -> OperationHandle:
        """Fetch the latest state of a Veo operation."""
        client = self._get_client()
        try:
            operation = await client.aio.operations.get(operation=handle.raw)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise wrap_provider_error(
                e,
                provider="gemini",
                phase="poll",
                model=handle.model,
                message="Gemini operation refresh failed",
            ) from e
        return self._to_handle(operation, model=handle.model)

    @staticmethod
    def _to_handle(operation: Any, *, model: str) -> OperationHandle:
        error: OperationError | None = None
        raw_error = getattr(operation, "error", None)
        if raw_error:
            if isinstance(raw_error, dict):
                code = raw_error.get("code")
                error = OperationError(
                    message=str(raw_error.get("message") or raw_error),
                    code=code if isinstance(code, int) else None,
                    status=raw_error.get("status"),
                )
            else:
                error = OperationError(message=str(raw_error))

        response = getattr(operation, "response", None) or getattr(
            operation, "result", None
        )
        done = bool(getattr(operation, "done", False))

        # Veo reports filtered generations as an empty, successful response.
        filtered = getattr(response, "rai_media_filtered_reasons", None)
        if error is None and done and filtered and not getattr(
            response, "generated_videos", None
        ):
            error = OperationError(
                message=f"Generation blocked by safety filter: {'; '.join(filtered)}"
            )

        return OperationHandle(
            name=str(getattr(operation, "name", "") or ""),
            model=model,
            done=done,
            error=error,
            response=response,
            raw=operation,
        )

    async def download(self, reference: ResultReference) -> bytes:
        """Download the bytes behind a Veo result link."""
        url = reference.uri
        if url.startswith("gs://"):
            url = url.replace("gs://", "https://storage.googleapis.com/", 1)
        try:
            response = await self._get_http().get(
                url, headers={API_KEY_HEADER: self.api_key}
            )
            response.raise_for_status()
        except asyncio.CancelledError:
            raise
        except httpx.HTTPError as e:
            status = getattr(getattr(e, "response", None), "status_code", None)
            raise DownloadFailedError(
                f"Download of {reference.uri} failed: {e}",
                status_code=status,
                provider="gemini",
                phase="download",
            ) from e
        if not response.content:
            raise DownloadFailedError(
                f"Download of {reference.uri} returned no data",
                provider="gemini",
                phase="download",
            )
        return response.content

    async def aclose(self) -> None:
        """Release the HTTP client used for downloads."""
        if self._http is not None:
            await self._http.aclose()
            self._http = None


def _enum_name(value: Any) -> str:
    if value is None:
        return ""
    name = getattr(value, "name", None)
    return name if isinstance(name, str) else str(value)
