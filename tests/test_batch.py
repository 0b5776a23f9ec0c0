"""Sequential batch orchestration: ordering, isolation, retry and cancellation."""

from __future__ import annotations

import asyncio
import logging
import re

import pytest

from gencourier.batch import (
    BatchItem,
    BatchOrchestrator,
    BatchStatus,
    JobOutcome,
    JobState,
    StatusEvent,
    VideoJobPipeline,
    build_items,
    make_item_id,
    split_prompts,
)
from gencourier.classify import ErrorCategory, remediation
from gencourier.config import Config
from gencourier.cancellation import CancellationToken
from gencourier.errors import InternalError, RateLimitError, SourceError
from gencourier.providers.mock import MockProvider
from gencourier.providers.models import Asset, ResultReference
from tests.helpers import RecordingToken, ScriptedTransport, done_handle, failed_handle

pytestmark = pytest.mark.unit


def _asset(name: str) -> Asset:
    return Asset(data=b"img-" + name.encode(), mime_type="image/png", name=name)


def _items(*names: str, prompt: str = "make it move") -> list[BatchItem]:
    return build_items([_asset(n) for n in names], prompt)


class _FakePipeline:
    """Pipeline double: per-item scripted failures, success otherwise."""

    def __init__(self, failures: dict[str, list[BaseException]] | None = None) -> None:
        self.failures = failures or {}
        self.calls: list[str] = []
        self.before_run = None

    async def __call__(self, item, *, token, report) -> JobOutcome:
        self.calls.append(item.id)
        if self.before_run is not None:
            self.before_run(item)
        token.raise_if_cancelled()
        script = self.failures.get(item.label, [])
        if script:
            raise script.pop(0)
        return JobOutcome(reference=ResultReference(uri=f"https://r/{item.label}"), data=b"v")


def _video_pipeline(transport: ScriptedTransport, **kwargs) -> VideoJobPipeline:
    return VideoJobPipeline(
        transport,
        resolver=kwargs.pop("resolver", Config(api_key="test-key")),
        poll_interval_s=0,
        max_polls=3,
        **kwargs,
    )


# --- Item building ---------------------------------------------------------


def test_prompt_lines_pair_with_assets_in_order() -> None:
    items = build_items([_asset("a"), _asset("b"), _asset("c")], "walk\n\n  run \nfly\n")
    assert [i.prompt for i in items] == ["walk", "run", "fly"]
    assert all(i.status is BatchStatus.PENDING for i in items)


def test_last_prompt_is_reused_when_prompts_run_out() -> None:
    items = build_items([_asset("a"), _asset("b"), _asset("c")], ["walk", "run"])
    assert [i.prompt for i in items] == ["walk", "run", "run"]


def test_extra_prompts_are_ignored_with_a_warning(caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="gencourier.batch"):
        items = build_items([_asset("a")], ["one", "two"])
    assert [i.prompt for i in items] == ["one"]
    assert "extra prompts are ignored" in caplog.text


def test_empty_inputs_are_rejected() -> None:
    with pytest.raises(SourceError):
        build_items([], "prompt")
    with pytest.raises(SourceError) as exc:
        build_items([_asset("a")], "  \n ")
    assert exc.value.hint


def test_item_ids_are_stable_and_positional() -> None:
    first = make_item_id(0, "shots/a.png")
    assert re.fullmatch(r"000-[0-9a-f]{8}", first)
    assert make_item_id(0, "shots/a.png") == first
    assert make_item_id(1, "shots/a.png") != first


def test_split_prompts_drops_blank_lines() -> None:
    assert split_prompts("a\r\n\r\nb") == ["a", "b"]


# --- Ordering and isolation -------------------------------------------------


@pytest.mark.asyncio
async def test_items_run_in_input_order_one_at_a_time() -> None:
    pipeline = _FakePipeline()
    events: list[StatusEvent] = []
    orchestrator = BatchOrchestrator(
        pipeline, cooldown_s=0, token=RecordingToken(), observers=[events.append]
    )
    items = _items("a", "b", "c", "d")

    progress = await orchestrator.run_batch(items)

    assert pipeline.calls == [i.id for i in items]
    assert all(e.progress.processing <= 1 for e in events)
    started = [e.item.id for e in events if e.current is BatchStatus.PROCESSING]
    assert started == [i.id for i in items]
    assert progress.completed == 4
    assert progress.current_index is None


@pytest.mark.asyncio
async def test_content_rejection_on_one_item_does_not_stop_siblings() -> None:
    transport = ScriptedTransport(
        refresh_script=[
            done_handle("operations/1", uri="https://v/1.mp4"),
            failed_handle("Generation blocked by safety filter", name="operations/2"),
            done_handle("operations/3", uri="https://v/3.mp4"),
        ]
    )
    token = RecordingToken()
    orchestrator = BatchOrchestrator(_video_pipeline(transport), cooldown_s=5.0, token=token)
    items = _items("a", "b", "c")

    progress = await orchestrator.run_batch(items)

    first, second, third = orchestrator.items
    assert first.status is BatchStatus.COMPLETED
    assert third.status is BatchStatus.COMPLETED
    assert second.status is BatchStatus.ERROR
    assert second.error_category is ErrorCategory.CONTENT_REJECTED
    assert second.hint == remediation(ErrorCategory.CONTENT_REJECTED)
    assert "safety" in (second.error_message or "")
    assert first.result == ResultReference(uri="https://v/1.mp4")
    assert first.output == b"bytes:https://v/1.mp4"
    # Exactly one cooldown between consecutive items.
    assert [s for s in token.sleeps if s > 0] == [5.0, 5.0]
    assert (progress.completed, progress.errored) == (2, 1)


@pytest.mark.asyncio
async def test_retry_all_failed_touches_only_errored_items() -> None:
    transport = ScriptedTransport(
        refresh_script=[
            done_handle("operations/1"),
            failed_handle("Generation blocked by safety filter", name="operations/2"),
            done_handle("operations/3"),
        ]
    )
    token = RecordingToken()
    orchestrator = BatchOrchestrator(_video_pipeline(transport), cooldown_s=5.0, token=token)
    await orchestrator.run_batch(_items("a", "b", "c"))
    first, second, third = orchestrator.items
    first_result, third_result = first.result, third.result
    cooldowns_before = [s for s in token.sleeps if s > 0]

    progress = await orchestrator.retry_all_failed()

    assert second.status is BatchStatus.COMPLETED
    assert second.retry_count == 1
    assert second.error_category is None
    assert first.result is first_result
    assert third.result is third_result
    assert first.retry_count == third.retry_count == 0
    assert len(transport.submitted) == 4
    # One item retried: no cooldown needed.
    assert [s for s in token.sleeps if s > 0] == cooldowns_before
    assert progress.completed == 3


@pytest.mark.asyncio
async def test_retry_item_runs_without_cooldown() -> None:
    pipeline = _FakePipeline({"b": [RuntimeError("Internal error encountered")]})
    token = RecordingToken()
    orchestrator = BatchOrchestrator(pipeline, cooldown_s=5.0, token=token)
    await orchestrator.run_batch(_items("a", "b"))
    failed = orchestrator.items[1]
    assert failed.error_category is ErrorCategory.SERVER_ERROR
    sleeps_before = list(token.sleeps)

    item = await orchestrator.retry_item(failed.id)

    assert item is failed
    assert item.status is BatchStatus.COMPLETED
    assert item.retry_count == 1
    assert token.sleeps == sleeps_before


@pytest.mark.asyncio
async def test_retry_item_on_completed_item_is_a_no_op() -> None:
    pipeline = _FakePipeline()
    orchestrator = BatchOrchestrator(pipeline, cooldown_s=0, token=RecordingToken())
    await orchestrator.run_batch(_items("a"))
    item_id = orchestrator.items[0].id

    await orchestrator.retry_item(item_id)

    assert pipeline.calls == [item_id]


@pytest.mark.asyncio
async def test_retry_item_unknown_id_raises_key_error() -> None:
    orchestrator = BatchOrchestrator(_FakePipeline(), cooldown_s=0)
    with pytest.raises(KeyError):
        await orchestrator.retry_item("nope")


# --- Cancellation -----------------------------------------------------------


@pytest.mark.asyncio
async def test_cancel_mid_batch_marks_current_item_cancelled_not_error() -> None:
    pipeline = _FakePipeline()
    orchestrator = BatchOrchestrator(pipeline, cooldown_s=0, token=RecordingToken())
    items = _items("a", "b", "c")

    def cancel_on_second(item: BatchItem) -> None:
        if item.label == "b":
            orchestrator.cancel("user stopped")

    pipeline.before_run = cancel_on_second
    progress = await orchestrator.run_batch(items)

    statuses = [i.status for i in orchestrator.items]
    assert statuses == [BatchStatus.COMPLETED, BatchStatus.CANCELLED, BatchStatus.PENDING]
    assert orchestrator.items[1].error_category is None
    assert (progress.cancelled, progress.pending) == (1, 1)

    pipeline.before_run = None
    resumed = await orchestrator.resume()

    assert resumed.completed == 3
    assert orchestrator.items[1].retry_count == 1
    assert orchestrator.items[2].retry_count == 0


@pytest.mark.asyncio
async def test_cancel_during_cooldown_leaves_remaining_items_pending() -> None:
    token = RecordingToken(cancel_after_sleeps=1)
    orchestrator = BatchOrchestrator(_FakePipeline(), cooldown_s=5.0, token=token)

    await orchestrator.run_batch(_items("a", "b"))

    assert [i.status for i in orchestrator.items] == [
        BatchStatus.COMPLETED,
        BatchStatus.PENDING,
    ]


@pytest.mark.asyncio
async def test_task_cancellation_marks_item_cancelled_and_propagates() -> None:
    pipeline = _FakePipeline({"a": [asyncio.CancelledError()]})
    orchestrator = BatchOrchestrator(pipeline, cooldown_s=0, token=RecordingToken())

    with pytest.raises(asyncio.CancelledError):
        await orchestrator.run_batch(_items("a", "b"))

    assert [i.status for i in orchestrator.items] == [
        BatchStatus.CANCELLED,
        BatchStatus.PENDING,
    ]


# --- Status bookkeeping -----------------------------------------------------


def test_illegal_transition_is_an_internal_error() -> None:
    orchestrator = BatchOrchestrator(_FakePipeline(), cooldown_s=0)
    item = _items("a")[0]
    item.status = BatchStatus.COMPLETED

    with pytest.raises(InternalError, match="completed -> processing"):
        orchestrator._transition(item, BatchStatus.PROCESSING)


@pytest.mark.asyncio
async def test_failing_observer_does_not_break_the_batch() -> None:
    def broken(_event: StatusEvent) -> None:
        raise RuntimeError("display crashed")

    orchestrator = BatchOrchestrator(_FakePipeline(), cooldown_s=0, token=RecordingToken())
    orchestrator.subscribe(broken)

    progress = await orchestrator.run_batch(_items("a", "b"))

    assert progress.completed == 2


@pytest.mark.asyncio
async def test_duplicate_item_ids_are_rejected() -> None:
    item = _items("a")[0]
    orchestrator = BatchOrchestrator(_FakePipeline(), cooldown_s=0)
    with pytest.raises(SourceError, match="unique"):
        await orchestrator.run_batch([item, item])


def test_negative_cooldown_is_rejected() -> None:
    with pytest.raises(ValueError, match="cooldown_s"):
        BatchOrchestrator(_FakePipeline(), cooldown_s=-1)


# --- Video job pipeline -----------------------------------------------------


@pytest.mark.asyncio
async def test_pipeline_reports_job_states_in_order() -> None:
    states: list[JobState] = []
    transport = ScriptedTransport()
    orchestrator = BatchOrchestrator(
        _video_pipeline(transport),
        cooldown_s=0,
        token=RecordingToken(),
        on_job_state=lambda _item, state: states.append(state),
    )

    await orchestrator.run_batch(_items("a"))

    assert states == [JobState.PREPARING, JobState.GENERATING, JobState.DOWNLOADING]
    assert transport.submitted[0].model == Config().video_model
    assert transport.submitted[0].prompt == "make it move"
    assert transport.submitted[0].assets[0].name == "a"


@pytest.mark.asyncio
async def test_missing_credential_fails_item_before_dispatch() -> None:
    transport = ScriptedTransport()
    orchestrator = BatchOrchestrator(
        _video_pipeline(transport, resolver=Config()), cooldown_s=0, token=RecordingToken()
    )

    await orchestrator.run_batch(_items("a"))

    item = orchestrator.items[0]
    assert item.status is BatchStatus.ERROR
    assert item.error_category is ErrorCategory.MISSING_CREDENTIAL
    assert transport.submitted == []


@pytest.mark.asyncio
async def test_download_failure_is_classified_after_generation() -> None:
    transport = ScriptedTransport(download_script=[RuntimeError("connection reset")])
    orchestrator = BatchOrchestrator(
        _video_pipeline(transport), cooldown_s=0, token=RecordingToken()
    )

    await orchestrator.run_batch(_items("a"))

    item = orchestrator.items[0]
    assert item.status is BatchStatus.ERROR
    assert item.error_category is ErrorCategory.DOWNLOAD_FAILED
    assert item.result is None
    assert transport.download_calls == 1


@pytest.mark.asyncio
async def test_oversized_asset_is_a_source_failure(png_file) -> None:
    from gencourier.assets import FileAssetPreparer

    transport = ScriptedTransport()
    pipeline = _video_pipeline(transport, preparer=FileAssetPreparer(max_bytes=4))
    orchestrator = BatchOrchestrator(pipeline, cooldown_s=0, token=RecordingToken())

    await orchestrator.run_batch(build_items([png_file], "zoom"))

    item = orchestrator.items[0]
    assert item.status is BatchStatus.ERROR
    assert "limit" in (item.error_message or "")
    assert transport.submitted == []


# --- Retry-after, lifecycle, and token reuse --------------------------------


@pytest.mark.asyncio
async def test_rate_limited_item_records_the_provider_wait() -> None:
    err = RateLimitError("Too many requests", status_code=429, retry_after_s=8.0)
    orchestrator = BatchOrchestrator(
        _FakePipeline({"a": [err]}), cooldown_s=0, token=RecordingToken()
    )

    await orchestrator.run_batch(_items("a"))

    item = orchestrator.items[0]
    assert item.error_category is ErrorCategory.RATE_LIMITED
    assert item.retry_after_s == 8

    await orchestrator.retry_all_failed()

    assert item.status is BatchStatus.COMPLETED
    assert item.retry_after_s is None


@pytest.mark.asyncio
async def test_orchestrator_context_closes_the_transport_after_retries() -> None:
    transport = ScriptedTransport(download_script=[RuntimeError("connection reset")])

    async with BatchOrchestrator(
        _video_pipeline(transport), cooldown_s=0, token=RecordingToken()
    ) as orchestrator:
        await orchestrator.run_batch(_items("a"))
        await orchestrator.retry_all_failed()
        assert transport.closed is False

    assert orchestrator.items[0].status is BatchStatus.COMPLETED
    assert transport.closed is True


@pytest.mark.asyncio
async def test_aclose_without_a_closable_pipeline_is_a_no_op() -> None:
    orchestrator = BatchOrchestrator(_FakePipeline(), cooldown_s=0)
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_run_batch_after_cancel_starts_fresh_with_the_same_token() -> None:
    token = RecordingToken()
    orchestrator = BatchOrchestrator(_FakePipeline(), cooldown_s=0, token=token)
    orchestrator.cancel("stopped earlier")

    progress = await orchestrator.run_batch(_items("a", "b"))

    assert progress.completed == 2
    assert orchestrator.token is token
    assert not token.cancelled


@pytest.mark.asyncio
async def test_every_entry_point_keeps_a_caller_supplied_token() -> None:
    token = RecordingToken()
    pipeline = _FakePipeline({"b": [SourceError("bad"), SourceError("bad")]})
    orchestrator = BatchOrchestrator(pipeline, cooldown_s=0, token=token)
    await orchestrator.run_batch(_items("a", "b"))

    token.cancel("before retry")
    await orchestrator.retry_all_failed()
    token.cancel("before retry_item")
    await orchestrator.retry_item(orchestrator.items[1].id)
    token.cancel("before resume")
    await orchestrator.resume()

    assert orchestrator.token is token
    assert orchestrator.items[1].status is BatchStatus.COMPLETED
    assert orchestrator.items[1].retry_count == 2

    # A cancel issued during a run still reaches it through the same token.
    pipeline.before_run = lambda _item: token.cancel("during retry")
    orchestrator.items[1].status = BatchStatus.ERROR
    await orchestrator.retry_item(orchestrator.items[1].id)
    assert orchestrator.items[1].status is BatchStatus.CANCELLED


def test_batch_can_be_retried_in_a_later_event_loop(tmp_path, png_file) -> None:
    """Each ``asyncio.run`` gets a new loop; the real token must follow it."""
    late = tmp_path / "late.png"
    pipeline = VideoJobPipeline(
        MockProvider(),
        resolver=Config(use_mock=True),
        poll_interval_s=0.001,
        max_polls=5,
    )
    orchestrator = BatchOrchestrator(pipeline, cooldown_s=0.001, token=CancellationToken())
    items = build_items([_asset("first.png"), late], "slow pan")

    asyncio.run(orchestrator.run_batch(items))

    assert orchestrator.items[0].status is BatchStatus.COMPLETED
    assert orchestrator.items[1].status is BatchStatus.ERROR
    assert orchestrator.items[1].error_category is ErrorCategory.UNKNOWN

    late.write_bytes(png_file.read_bytes())
    asyncio.run(orchestrator.retry_all_failed())

    assert orchestrator.items[1].status is BatchStatus.COMPLETED, orchestrator.items[1].error_message
    assert orchestrator.items[1].output
