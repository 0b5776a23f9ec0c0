"""Operation polling for long-running (video) generation jobs.

State machine::

    SUBMITTED -> POLLING -> COMPLETED | FAILED | TIMED_OUT

The poll loop is bounded by ``max_polls`` refreshes. Operation errors are
terminal and fail the wait immediately.
"""

from __future__ import annotations

from enum import Enum
import logging
from typing import TYPE_CHECKING

from gencourier.cancellation import CancellationToken
from gencourier.classify import ErrorCategory, classify, remediation
from gencourier.errors import (
    ConfigurationError,
    OperationFailedError,
    OperationTimedOutError,
)
from gencourier.providers.models import resolve_result_reference

if TYPE_CHECKING:
    from collections.abc import Callable

    from gencourier.providers.base import Transport
    from gencourier.providers.models import (
        GenerationRequest,
        OperationHandle,
        ResultReference,
    )

logger = logging.getLogger(__name__)


class PollState(str, Enum):
    """Lifecycle of one polled operation."""

    SUBMITTED = "submitted"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class OperationPoller:
    """Submit asynchronous jobs and wait for their result references."""

    def __init__(
        self,
        transport: Transport,
        *,
        token: CancellationToken | None = None,
        on_state: Callable[[OperationHandle, PollState], None] | None = None,
    ) -> None:
        self.transport = transport
        self.token = token or CancellationToken()
        self.on_state = on_state

    def _emit(self, handle: OperationHandle, state: PollState) -> None:
        logger.debug("Operation %s -> %s", handle.name, state.value)
        if self.on_state is not None:
            self.on_state(handle, state)

    async def submit(self, request: GenerationRequest) -> OperationHandle:
        """Submit *request* and return the provider's operation handle."""
        self.token.raise_if_cancelled()
        handle = await self.transport.submit(request)
        logger.info("Submitted operation %s (model=%s)", handle.name, request.model)
        self._emit(handle, PollState.SUBMITTED)
        return handle

    async def wait_for_result(
        self,
        handle: OperationHandle,
        *,
        poll_interval_s: float,
        max_polls: int,
    ) -> ResultReference:
        """Poll *handle* until it yields a result reference.

        Raises:
            OperationFailedError: the provider reported an error field.
            OperationTimedOutError: ``max_polls`` refreshes passed unresolved.
        """
        if poll_interval_s < 0:
            raise ConfigurationError("poll_interval_s must be >= 0")
        if max_polls < 0:
            raise ConfigurationError("max_polls must be >= 0")

        self._raise_if_failed(handle)
        reference = resolve_result_reference(handle)
        if reference is not None:
            # Inline result: nothing to poll.
            self._emit(handle, PollState.COMPLETED)
            return reference

        self._emit(handle, PollState.POLLING)
        for poll in range(1, max_polls + 1):
            await self.token.sleep(poll_interval_s)
            refreshed = await self.transport.refresh(handle)
            self._absorb(handle, refreshed)
            logger.debug(
                "Operation %s poll %d/%d (done=%s)", handle.name, poll, max_polls, handle.done
            )

            self._raise_if_failed(handle)
            reference = resolve_result_reference(handle)
            if reference is not None:
                logger.info("Operation %s completed after %d polls", handle.name, poll)
                self._emit(handle, PollState.COMPLETED)
                return reference

        self._emit(handle, PollState.TIMED_OUT)
        raise OperationTimedOutError(
            f"Operation {handle.name} did not finish after {max_polls} polls",
            operation=handle.name,
            polls=max_polls,
            hint=remediation(ErrorCategory.TIMEOUT),
        )

    async def run(
        self,
        request: GenerationRequest,
        *,
        poll_interval_s: float,
        max_polls: int,
    ) -> ResultReference:
        """Submit *request* and wait for its result reference."""
        handle = await self.submit(request)
        return await self.wait_for_result(
            handle, poll_interval_s=poll_interval_s, max_polls=max_polls
        )

    @staticmethod
    def _absorb(handle: OperationHandle, refreshed: OperationHandle) -> None:
        # The caller's handle is the one the poller owns; keep it current.
        handle.done = refreshed.done
        handle.error = refreshed.error
        handle.response = refreshed.response
        if refreshed.raw is not None:
            handle.raw = refreshed.raw

    def _raise_if_failed(self, handle: OperationHandle) -> None:
        error = handle.error
        if error is None or not (error.message or error.code or error.status):
            return
        self._emit(handle, PollState.FAILED)
        exc = OperationFailedError(
            f"Operation {handle.name} failed: {error.message}",
            operation=handle.name,
            status_code=error.code,
            status=error.status,
        )
        exc.hint = remediation(classify(exc))
        raise exc

