"""Asset preparation: turn a source asset reference into a provider-ready payload.

A source is an ``Asset`` already in memory, a local path, a ``data:`` URL, or
an ``http(s)`` URL.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import mimetypes
from pathlib import Path
from typing import Protocol, runtime_checkable
from urllib.parse import unquote_to_bytes, urlsplit

import httpx

from gencourier.errors import SourceError
from gencourier.providers.models import Asset

SourceAsset = str | Path | Asset

# Inline request payloads above this size are rejected by the Gemini API.
DEFAULT_MAX_ASSET_BYTES = 20 * 1024 * 1024

_HTTP_SCHEMES = ("http://", "https://")


@runtime_checkable
class AssetPreparer(Protocol):
    """Produces an encoded, size-checked ``Asset`` from a source reference."""

    async def prepare(self, source: SourceAsset) -> Asset:
        """Load and validate *source*."""
        ...


def _is_data_url(source: object) -> bool:
    return isinstance(source, str) and source[:5].lower() == "data:"


def _is_http_url(source: object) -> bool:
    return isinstance(source, str) and source.lower().startswith(_HTTP_SCHEMES)


def _url_name(url: str) -> str | None:
    name = urlsplit(url).path.rstrip("/").rsplit("/", 1)[-1]
    return name or None


def asset_label(source: SourceAsset) -> str:
    """Short display name for a source asset."""
    if isinstance(source, Asset):
        return source.name or f"<{source.mime_type} {source.size_bytes}B>"
    if _is_data_url(source):
        header = str(source).split(",", 1)[0]
        return f"<{header[5:].split(';', 1)[0] or 'data'} url>"
    if _is_http_url(source):
        return _url_name(str(source)) or str(source)
    return Path(source).name


class FileAssetPreparer:
    """Load images from disk, ``data:`` URLs or the web, and enforce a size cap.

    Accepts already-built ``Asset`` values unchanged (after the same checks).
    Remote images are fetched with *http_client* when given; otherwise a
    short-lived client is opened per fetch.
    """

    def __init__(
        self,
        *,
        max_bytes: int = DEFAULT_MAX_ASSET_BYTES,
        allowed_prefixes: tuple[str, ...] = ("image/",),
        http_client: httpx.AsyncClient | None = None,
        fetch_timeout_s: float = 30.0,
    ) -> None:
        self.max_bytes = max_bytes
        self.allowed_prefixes = allowed_prefixes
        self.http_client = http_client
        self.fetch_timeout_s = fetch_timeout_s

    async def prepare(self, source: SourceAsset) -> Asset:
        if isinstance(source, Asset):
            asset = source
        elif _is_data_url(source):
            asset = _decode_data_url(str(source))
        elif _is_http_url(source):
            asset = await self._fetch(str(source))
        else:
            asset = await asyncio.to_thread(self._load, Path(source))
        self._validate(asset)
        return asset

    @staticmethod
    def _load(path: Path) -> Asset:
        if not path.is_file():
            raise SourceError(f"File not found: {path}")
        mime_type = mimetypes.guess_type(str(path))[0] or "application/octet-stream"
        return Asset(data=path.read_bytes(), mime_type=mime_type, name=path.name)

    async def _fetch(self, url: str) -> Asset:
        try:
            if self.http_client is not None:
                response = await self.http_client.get(url)
            else:
                async with httpx.AsyncClient(
                    timeout=self.fetch_timeout_s, follow_redirects=True
                ) as client:
                    response = await client.get(url)
            response.raise_for_status()
        except asyncio.CancelledError:
            raise
        except httpx.HTTPError as e:
            raise SourceError(
                f"Failed to fetch image from URL: {url} ({e})",
                hint="Check the link is public, or download the image and pass the file.",
            ) from e
        content_type = response.headers.get("content-type", "").split(";", 1)[0].strip()
        mime_type = (
            content_type
            or mimetypes.guess_type(urlsplit(url).path)[0]
            or "application/octet-stream"
        )
        return Asset(data=response.content, mime_type=mime_type, name=_url_name(url))

    def _validate(self, asset: Asset) -> None:
        if not asset.data:
            raise SourceError(
                f"Asset {asset.name or '<inline>'} is empty",
                hint="Re-upload the file.",
            )
        if self.allowed_prefixes and not asset.mime_type.startswith(self.allowed_prefixes):
            raise SourceError(
                f"Asset {asset.name or '<inline>'} is not a supported type ({asset.mime_type})",
                hint="Use a PNG, JPEG or WebP image.",
            )
        if asset.size_bytes > self.max_bytes:
            raise SourceError(
                f"Asset {asset.name or '<inline>'} is {asset.size_bytes} bytes; "
                f"the limit is {self.max_bytes}",
                hint="Resize or re-encode the image before submitting.",
            )


def _decode_data_url(url: str) -> Asset:
    header, sep, payload = url[5:].partition(",")
    if not sep:
        raise SourceError("Malformed data URL: missing ','")
    params = header.split(";")
    mime_type = params[0].strip() or "image/png"
    if "base64" in (p.strip().lower() for p in params[1:]):
        try:
            data = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as e:
            raise SourceError(
                f"Malformed data URL: invalid base64 payload ({e})",
                hint="Re-encode the image as base64.",
            ) from e
    else:
        data = unquote_to_bytes(payload)
    return Asset(data=data, mime_type=mime_type)
