"""Sequential batch orchestration over a fixed asset/prompt list.

Items run strictly one at a time, in input order, with a fixed cooldown
between them to stay under per-key rate limits. Each item carries an explicit
status; one item's failure is recorded and never aborts its siblings.

Status transitions::

    pending -> processing -> completed | error | cancelled
    error | cancelled -> processing            (retry / resume)
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable, Sequence  # noqa: TC003 - used at runtime
from dataclasses import dataclass, field
from enum import Enum
import hashlib
import logging
from typing import TYPE_CHECKING, Any, Protocol

from gencourier.assets import FileAssetPreparer, asset_label
from gencourier.cancellation import CancellationToken
from gencourier.classify import describe
from gencourier.errors import (
    DownloadFailedError,
    InternalError,
    MissingCredentialError,
    OperationCancelledError,
    SourceError,
)
from gencourier.poller import OperationPoller
from gencourier.providers.models import GenerationRequest

if TYPE_CHECKING:
    from gencourier.assets import AssetPreparer, SourceAsset
    from gencourier.classify import ErrorCategory
    from gencourier.config import CredentialResolver
    from gencourier.providers.base import Transport
    from gencourier.providers.models import ResultReference

logger = logging.getLogger(__name__)


class BatchStatus(str, Enum):
    """Per-item status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


_TRANSITIONS: dict[BatchStatus, frozenset[BatchStatus]] = {
    BatchStatus.PENDING: frozenset({BatchStatus.PROCESSING}),
    BatchStatus.PROCESSING: frozenset(
        {BatchStatus.COMPLETED, BatchStatus.ERROR, BatchStatus.CANCELLED}
    ),
    BatchStatus.ERROR: frozenset({BatchStatus.PROCESSING}),
    BatchStatus.CANCELLED: frozenset({BatchStatus.PROCESSING}),
    BatchStatus.COMPLETED: frozenset(),
}


class JobState(str, Enum):
    """Fine-grained progress of the item currently processing."""

    PREPARING = "preparing"
    GENERATING = "generating"
    DOWNLOADING = "downloading"


@dataclass
class BatchItem:
    """One unit of work: one source asset plus one prompt."""

    id: str
    source_asset: SourceAsset
    prompt: str
    status: BatchStatus = BatchStatus.PENDING
    retry_count: int = 0
    result: ResultReference | None = None
    output: bytes | None = field(default=None, repr=False)
    error_category: ErrorCategory | None = None
    error_message: str | None = None
    hint: str | None = None
    #: Provider-suggested wait (seconds) before retrying a rate-limited item.
    retry_after_s: float | None = None

    @property
    def label(self) -> str:
        return asset_label(self.source_asset)


@dataclass(frozen=True)
class BatchProgress:
    """Counts suitable for a live progress display."""

    total: int
    pending: int
    processing: int
    completed: int
    errored: int
    cancelled: int
    #: 1-based position of the item currently processing, if any.
    current_index: int | None = None


@dataclass(frozen=True)
class StatusEvent:
    """Emitted on every item status transition."""

    item: BatchItem
    previous: BatchStatus
    current: BatchStatus
    progress: BatchProgress


@dataclass(frozen=True)
class JobOutcome:
    """What a successful pipeline run produced."""

    reference: ResultReference
    data: bytes | None = None


class ItemPipeline(Protocol):
    """Runs the full generation pipeline for one item."""

    async def __call__(
        self,
        item: BatchItem,
        *,
        token: CancellationToken,
        report: Callable[[JobState], None],
    ) -> JobOutcome: ...


StatusObserver = Callable[[StatusEvent], None]


def make_item_id(index: int, source: SourceAsset) -> str:
    """Stable id from position and source, readable in logs."""
    label = asset_label(source)
    digest = hashlib.sha1(
        f"{index}:{label}".encode(), usedforsecurity=False
    ).hexdigest()
    return f"{index:03d}-{digest[:8]}"


def split_prompts(text: str) -> list[str]:
    """Split multi-line prompt text into one prompt per non-blank line."""
    return [line.strip() for line in text.splitlines() if line.strip()]


def build_items(
    assets: Sequence[SourceAsset], prompts: str | Sequence[str]
) -> list[BatchItem]:
    """Pair each asset with a prompt line, or with the single shared prompt.

    A multi-line string is split per line. With fewer prompts than assets the
    last prompt is reused.
    """
    if not assets:
        raise SourceError("A batch needs at least one asset")
    lines = split_prompts(prompts) if isinstance(prompts, str) else [
        p.strip() for p in prompts if p and p.strip()
    ]
    if not lines:
        raise SourceError(
            "A batch needs at least one non-empty prompt",
            hint="Provide one shared prompt or one prompt line per asset.",
        )
    if len(lines) > len(assets):
        logger.warning(
            "%d prompts for %d assets; extra prompts are ignored", len(lines), len(assets)
        )
    return [
        BatchItem(
            id=make_item_id(index, asset),
            source_asset=asset,
            prompt=lines[min(index, len(lines) - 1)],
        )
        for index, asset in enumerate(assets)
    ]


class VideoJobPipeline:
    """Prepare asset -> submit -> poll -> download, for one batch item.

    The credential and model are read once per job from the resolver.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        resolver: CredentialResolver,
        provider: str = "gemini",
        preparer: AssetPreparer | None = None,
        poll_interval_s: float = 10.0,
        max_polls: int = 60,
        aspect_ratio: str | None = None,
        resolution: str | None = None,
        negative_prompt: str | None = None,
    ) -> None:
        self.transport = transport
        self.resolver = resolver
        self.provider = provider
        self.preparer = preparer or FileAssetPreparer()
        self.poll_interval_s = poll_interval_s
        self.max_polls = max_polls
        self.aspect_ratio = aspect_ratio
        self.resolution = resolution
        self.negative_prompt = negative_prompt

    async def __call__(
        self,
        item: BatchItem,
        *,
        token: CancellationToken,
        report: Callable[[JobState], None],
    ) -> JobOutcome:
        if not self.resolver.get_active_key(self.provider):
            raise MissingCredentialError(
                f"No active API key for {self.provider}",
                hint=f"Add and activate an API key for {self.provider.upper()} in settings.",
            )
        model = self.resolver.get_selected_model(self.provider, "video")

        report(JobState.PREPARING)
        asset = await self.preparer.prepare(item.source_asset)
        token.raise_if_cancelled()

        report(JobState.GENERATING)
        request = GenerationRequest(
            prompt=item.prompt,
            model=model,
            assets=(asset,),
            aspect_ratio=self.aspect_ratio,
            resolution=self.resolution,
            negative_prompt=self.negative_prompt,
        )
        poller = OperationPoller(self.transport, token=token)
        reference = await poller.run(
            request, poll_interval_s=self.poll_interval_s, max_polls=self.max_polls
        )

        report(JobState.DOWNLOADING)
        token.raise_if_cancelled()
        data = await download_result(self.transport, reference)
        return JobOutcome(reference=reference, data=data)

    async def aclose(self) -> None:
        """Release the transport's network resources, if it holds any."""
        aclose = getattr(self.transport, "aclose", None)
        if callable(aclose):
            await aclose()


async def download_result(transport: Transport, reference: ResultReference) -> bytes:
    """Fetch the bytes behind *reference*; any failure is ``DownloadFailedError``."""
    try:
        return await transport.download(reference)
    except (asyncio.CancelledError, DownloadFailedError):
        raise
    except Exception as exc:
        raise DownloadFailedError(
            f"Download of {reference.uri} failed: {exc}", phase="download"
        ) from exc


class BatchOrchestrator:
    """Owns a batch's items and drives them through a pipeline one by one.

    Observers receive a ``StatusEvent`` on every transition; they may read
    items but must not modify them. Writes go through ``run_batch``,
    ``retry_item``, ``retry_all_failed`` and ``resume`` only.

    Each of those four entry points clears the token before it starts, so
    ``cancel()`` abandons only the run in progress. The token object itself
    is kept, which leaves a caller-supplied token wired to later runs.

    The orchestrator is an async context manager; leaving it closes the
    pipeline's transport, including clients reopened by a retry.
    """

    def __init__(
        self,
        pipeline: ItemPipeline,
        *,
        cooldown_s: float = 5.0,
        token: CancellationToken | None = None,
        observers: Iterable[StatusObserver] = (),
        on_job_state: Callable[[BatchItem, JobState], Any] | None = None,
    ) -> None:
        if cooldown_s < 0:
            raise ValueError("cooldown_s must be >= 0")
        self.pipeline = pipeline
        self.cooldown_s = cooldown_s
        self.token = token or CancellationToken()
        self.on_job_state = on_job_state
        self._observers: list[StatusObserver] = list(observers)
        self._items: list[BatchItem] = []
        self._lock = asyncio.Lock()

    @property
    def items(self) -> tuple[BatchItem, ...]:
        return tuple(self._items)

    def subscribe(self, observer: StatusObserver) -> None:
        self._observers.append(observer)

    def cancel(self, reason: str | None = None) -> None:
        """Abandon the current run at its next suspension point."""
        self.token.cancel(reason)

    async def aclose(self) -> None:
        """Close the pipeline's network resources; later retries reopen them."""
        aclose = getattr(self.pipeline, "aclose", None)
        if not callable(aclose):
            return
        try:
            await aclose()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Pipeline cleanup failed: %s", exc)

    async def __aenter__(self) -> BatchOrchestrator:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def get(self, item_id: str) -> BatchItem:
        for item in self._items:
            if item.id == item_id:
                return item
        raise KeyError(f"No batch item with id {item_id!r}")

    def progress(self) -> BatchProgress:
        counts = dict.fromkeys(BatchStatus, 0)
        current: int | None = None
        for position, item in enumerate(self._items, start=1):
            counts[item.status] += 1
            if item.status is BatchStatus.PROCESSING:
                current = position
        return BatchProgress(
            total=len(self._items),
            pending=counts[BatchStatus.PENDING],
            processing=counts[BatchStatus.PROCESSING],
            completed=counts[BatchStatus.COMPLETED],
            errored=counts[BatchStatus.ERROR],
            cancelled=counts[BatchStatus.CANCELLED],
            current_index=current,
        )

    async def run_batch(self, items: Iterable[BatchItem]) -> BatchProgress:
        """Take ownership of *items* and process them in order."""
        async with self._lock:
            self.token.reset()
            self._items = list(items)
            ids = [item.id for item in self._items]
            if len(set(ids)) != len(ids):
                raise SourceError("Batch item ids must be unique")
            logger.info("Starting batch of %d items", len(self._items))
            await self._process(self._items)
            return self._finish("Batch")

    async def retry_all_failed(self) -> BatchProgress:
        """Re-run exactly the items currently in ``error`` status."""
        async with self._lock:
            self.token.reset()
            failed = [i for i in self._items if i.status is BatchStatus.ERROR]
            logger.info("Retrying %d failed items", len(failed))
            await self._process(failed)
            return self._finish("Retry")

    async def resume(self) -> BatchProgress:
        """Process items left ``pending`` or ``cancelled`` by an abandoned run."""
        async with self._lock:
            self.token.reset()
            remaining = [
                i
                for i in self._items
                if i.status in (BatchStatus.PENDING, BatchStatus.CANCELLED)
            ]
            logger.info("Resuming %d items", len(remaining))
            await self._process(remaining)
            return self._finish("Resume")

    async def retry_item(self, item_id: str) -> BatchItem:
        """Run the pipeline for a single item, with no cooldown around it."""
        async with self._lock:
            self.token.reset()
            item = self.get(item_id)
            if item.status is BatchStatus.COMPLETED:
                logger.info("Item %s already completed; not retrying", item.id)
                return item
            try:
                await self._run_one(item)
            except OperationCancelledError:
                logger.info("Retry of %s cancelled", item.id)
            return item

    def _finish(self, what: str) -> BatchProgress:
        progress = self.progress()
        logger.info(
            "%s finished: %d completed, %d errored, %d cancelled, %d pending",
            what,
            progress.completed,
            progress.errored,
            progress.cancelled,
            progress.pending,
        )
        return progress

    async def _process(self, subset: list[BatchItem]) -> None:
        try:
            for position, item in enumerate(subset):
                await self._run_one(item)
                if position < len(subset) - 1 and self.cooldown_s > 0:
                    logger.debug("Cooling down %.1fs before next item", self.cooldown_s)
                    await self.token.sleep(self.cooldown_s)
        except OperationCancelledError:
            logger.info("Batch abandoned: %s", self.token.reason or "cancelled")

    async def _run_one(self, item: BatchItem) -> None:
        self.token.raise_if_cancelled()
        if item.status in (BatchStatus.ERROR, BatchStatus.CANCELLED):
            item.retry_count += 1
        item.error_category = None
        item.error_message = None
        item.hint = None
        item.retry_after_s = None
        self._transition(item, BatchStatus.PROCESSING)

        def report(state: JobState) -> None:
            logger.debug("Item %s: %s", item.id, state.value)
            if self.on_job_state is not None:
                self.on_job_state(item, state)

        try:
            outcome = await self.pipeline(item, token=self.token, report=report)
        except OperationCancelledError:
            self._transition(item, BatchStatus.CANCELLED)
            raise
        except asyncio.CancelledError:
            self._transition(item, BatchStatus.CANCELLED)
            raise
        except Exception as exc:
            classification = describe(exc)
            item.error_category = classification.category
            item.error_message = classification.message
            item.hint = classification.hint
            item.retry_after_s = classification.retry_after_s
            logger.warning(
                "Item %s (%s) failed [%s]: %s",
                item.id,
                item.label,
                classification.category.value,
                classification.message,
            )
            self._transition(item, BatchStatus.ERROR)
            return

        item.result = outcome.reference
        item.output = outcome.data
        self._transition(item, BatchStatus.COMPLETED)

    def _transition(self, item: BatchItem, target: BatchStatus) -> None:
        previous = item.status
        if target not in _TRANSITIONS[previous]:
            raise InternalError(
                f"Illegal status transition for {item.id}: "
                f"{previous.value} -> {target.value}"
            )
        item.status = target
        logger.debug("Item %s: %s -> %s", item.id, previous.value, target.value)
        event = StatusEvent(
            item=item, previous=previous, current=target, progress=self.progress()
        )
        for observer in self._observers:
            try:
                observer(event)
            except Exception as exc:
                # Observers must never break the batch.
                logger.warning("Status observer failed: %s", exc)
