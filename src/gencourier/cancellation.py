"""Cooperative cancellation for retry delays, poll ticks, and cooldowns."""

from __future__ import annotations

import asyncio
import contextlib
import logging

from gencourier.errors import OperationCancelledError

logger = logging.getLogger(__name__)


class CancellationToken:
    """A cancellation flag that every suspension point checks.

    ``sleep()`` returns early and raises ``OperationCancelledError`` as soon as
    ``cancel()`` is called, so a long cooldown never delays abandonment.

    The token may outlive an event loop (a batch run in one ``asyncio.run``
    and retried in another), so its wake-up event is bound lazily to the loop
    that is sleeping.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self.reason: str | None = None
        self._event: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str | None = None) -> None:
        if not self._cancelled:
            self._cancelled = True
            self.reason = reason
            logger.info("Cancellation requested%s", f": {reason}" if reason else "")
        if self._event is not None:
            self._event.set()

    def reset(self) -> None:
        """Clear a previous cancellation so the token can guard a new run."""
        if self._cancelled:
            logger.debug("Cancellation cleared (was: %s)", self.reason)
        self._cancelled = False
        self.reason = None
        self._event = None
        self._loop = None

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelledError(
                f"Cancelled{f': {self.reason}' if self.reason else ''}"
            )

    def _wakeup_event(self) -> asyncio.Event:
        loop = asyncio.get_running_loop()
        if self._event is None or self._loop is not loop:
            self._event = asyncio.Event()
            self._loop = loop
            if self._cancelled:
                self._event.set()
        return self._event

    async def sleep(self, delay_s: float) -> None:
        """Wait *delay_s* seconds unless cancelled first."""
        self.raise_if_cancelled()
        if delay_s > 0:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._wakeup_event().wait(), timeout=delay_s)
        self.raise_if_cancelled()
