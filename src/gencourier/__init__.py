"""gencourier: resilient image and video generation against remote providers.

Public API:
    - generate_image(): One image, with overload retries and model fallbacks
    - generate_video(): One video job, submitted, polled, and downloaded
    - run_batch(): Many video jobs, sequential with a rate-limit cooldown
    - classify(): Map any failure to an ErrorCategory
    - Config: Configuration dataclass
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from gencourier.assets import FileAssetPreparer
from gencourier.batch import (
    BatchItem,
    BatchOrchestrator,
    BatchProgress,
    BatchStatus,
    JobState,
    StatusEvent,
    VideoJobPipeline,
    build_items,
    download_result,
)
from gencourier.cancellation import CancellationToken
from gencourier.classify import ErrorCategory, classify, describe, remediation
from gencourier.config import Config
from gencourier.dispatch import Dispatcher, dispatch
from gencourier.errors import (
    APIError,
    ConfigurationError,
    ContentRejectedError,
    DownloadFailedError,
    ExhaustedError,
    GencourierError,
    InternalError,
    MissingCredentialError,
    OperationCancelledError,
    OperationFailedError,
    OperationTimedOutError,
    RateLimitError,
    SourceError,
)
from gencourier.poller import OperationPoller, PollState
from gencourier.providers.models import (
    Asset,
    GenerationRequest,
    ProviderResponse,
    ResultReference,
    VideoResult,
)
from gencourier.retry import RetryPolicy

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

    from gencourier.assets import SourceAsset
    from gencourier.batch import StatusObserver
    from gencourier.providers.base import Transport

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("gencourier")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("gencourier").addHandler(logging.NullHandler())

logger = logging.getLogger(__name__)


async def generate_image(
    prompt: str,
    *,
    config: Config,
    assets: Sequence[SourceAsset] = (),
    aspect_ratio: str | None = None,
    resolution: str | None = None,
    token: CancellationToken | None = None,
) -> ProviderResponse:
    """Generate an image, retrying overloads and falling back across models.

    Args:
        prompt: What to generate.
        config: Configuration specifying model, fallbacks and retry delays.
        assets: Reference images (paths or ``Asset`` values).
        aspect_ratio: Optional output aspect ratio, e.g. ``"3:4"``.
        resolution: Optional output size, e.g. ``"2K"``.
        token: Optional cancellation token honored between retries.

    Returns:
        ProviderResponse with inline image bytes in ``images``.

    Example:
        config = Config(model="gemini-3-pro-image-preview")
        response = await generate_image("A red scarf on white", config=config)
        open("scarf.png", "wb").write(response.images[0].data)
    """
    config.require_key()
    preparer = FileAssetPreparer(max_bytes=config.max_asset_bytes)
    prepared = tuple([await preparer.prepare(a) for a in assets])
    request = GenerationRequest(
        prompt=prompt,
        model=config.get_selected_model(config.provider),
        assets=prepared,
        aspect_ratio=aspect_ratio,
        resolution=resolution,
    )
    provider = _get_provider(config)
    try:
        dispatcher = Dispatcher(provider, policy=config.retry, token=token)
        return await dispatcher.generate(
            request, fallback_models=config.fallback_models or ()
        )
    finally:
        await _close_provider(provider)


async def generate_video(
    prompt: str,
    *,
    config: Config,
    asset: SourceAsset | None = None,
    aspect_ratio: str | None = None,
    resolution: str | None = None,
    negative_prompt: str | None = None,
    token: CancellationToken | None = None,
    on_state: Callable[[str], None] | None = None,
) -> VideoResult:
    """Submit one video job, poll it to completion, and download the result.

    ``on_state`` receives ``"generating"`` and ``"downloading"`` as the job
    advances.
    """
    config.require_key()
    assets: tuple[Asset, ...] = ()
    if asset is not None:
        preparer = FileAssetPreparer(max_bytes=config.max_asset_bytes)
        assets = (await preparer.prepare(asset),)
    request = GenerationRequest(
        prompt=prompt,
        model=config.get_selected_model(config.provider, "video"),
        assets=assets,
        aspect_ratio=aspect_ratio,
        resolution=resolution,
        negative_prompt=negative_prompt,
    )

    def report(state: str) -> None:
        if on_state is not None:
            on_state(state)

    provider = _get_provider(config)
    try:
        poller = OperationPoller(provider, token=token)
        report(JobState.GENERATING.value)
        reference = await poller.run(
            request, poll_interval_s=config.poll_interval_s, max_polls=config.max_polls
        )
        report(JobState.DOWNLOADING.value)
        data = await download_result(provider, reference)
        return VideoResult(reference=reference, data=data)
    finally:
        await _close_provider(provider)


async def run_batch(
    assets: Sequence[SourceAsset],
    prompts: str | Sequence[str],
    *,
    config: Config,
    observers: Iterable[StatusObserver] = (),
    on_job_state: Callable[[BatchItem, JobState], None] | None = None,
    token: CancellationToken | None = None,
    aspect_ratio: str | None = None,
    resolution: str | None = None,
) -> BatchOrchestrator:
    """Run one video job per asset, sequentially, and return the orchestrator.

    The returned orchestrator holds the items and supports
    ``retry_all_failed()`` / ``retry_item()`` afterwards.

    Example:
        batch = await run_batch(["a.png", "b.png"], "Slow pan, soft light", config=config)
        if batch.progress().errored:
            await batch.retry_all_failed()
    """
    items = build_items(assets, prompts)
    provider = _get_provider(config, require_key=False)
    pipeline = VideoJobPipeline(
        provider,
        resolver=config,
        provider=config.provider,
        preparer=FileAssetPreparer(max_bytes=config.max_asset_bytes),
        poll_interval_s=config.poll_interval_s,
        max_polls=config.max_polls,
        aspect_ratio=aspect_ratio,
        resolution=resolution,
    )
    orchestrator = BatchOrchestrator(
        pipeline,
        cooldown_s=config.cooldown_s,
        token=token,
        observers=observers,
        on_job_state=on_job_state,
    )
    try:
        await orchestrator.run_batch(items)
    finally:
        # Providers reopen their HTTP clients lazily, so later retries still work.
        await _close_provider(provider)
    return orchestrator


def _get_provider(config: Config, *, require_key: bool = True) -> Transport:
    """Get the appropriate provider based on configuration."""
    if config.use_mock:
        from gencourier.providers.mock import MockProvider

        return MockProvider()

    from gencourier.providers.gemini import GeminiProvider

    key = config.require_key() if require_key else (config.api_key or "")
    return GeminiProvider(key)


async def _close_provider(provider: Transport) -> None:
    aclose = getattr(provider, "aclose", None)
    if callable(aclose):
        try:
            await aclose()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # Cleanup should never mask the primary failure.
            logger.warning("Provider cleanup failed: %s", exc)


# Re-export for convenience
__all__ = [
    "APIError",
    "Asset",
    "BatchItem",
    "BatchOrchestrator",
    "BatchProgress",
    "BatchStatus",
    "CancellationToken",
    "Config",
    "ConfigurationError",
    "ContentRejectedError",
    "Dispatcher",
    "DownloadFailedError",
    "ErrorCategory",
    "ExhaustedError",
    "GencourierError",
    "GenerationRequest",
    "InternalError",
    "JobState",
    "MissingCredentialError",
    "OperationCancelledError",
    "OperationFailedError",
    "OperationPoller",
    "OperationTimedOutError",
    "PollState",
    "ProviderResponse",
    "RateLimitError",
    "ResultReference",
    "RetryPolicy",
    "SourceError",
    "StatusEvent",
    "VideoResult",
    "build_items",
    "classify",
    "describe",
    "dispatch",
    "generate_image",
    "generate_video",
    "remediation",
    "run_batch",
]
