"""Backoff/fallback dispatch for synchronous generation calls.

Only overload failures are recovered here: the same model is retried on the
policy's schedule, then each fallback model gets the same schedule in order.
Everything else propagates on first sight.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
import logging
from typing import TYPE_CHECKING, TypeVar

from gencourier.cancellation import CancellationToken
from gencourier.classify import ErrorCategory, classify, remediation
from gencourier.errors import ConfigurationError, ExhaustedError, OperationCancelledError
from gencourier.retry import RetryPolicy

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    from gencourier.providers.base import Transport
    from gencourier.providers.models import GenerationRequest, ProviderResponse

T = TypeVar("T")

logger = logging.getLogger(__name__)


def dedupe_fallbacks(primary: str, fallbacks: Iterable[str]) -> tuple[str, ...]:
    """Drop empty entries, repeats, and the primary itself, keeping order."""
    seen = {primary}
    chain: list[str] = []
    for model in fallbacks:
        if model and model not in seen:
            seen.add(model)
            chain.append(model)
    return tuple(chain)


async def dispatch(
    call: Callable[[str], Awaitable[T]],
    *,
    model: str,
    fallback_models: Iterable[str] = (),
    policy: RetryPolicy | None = None,
    token: CancellationToken | None = None,
) -> T:
    """Run ``call(model)`` with overload retries, then across fallback models.

    Raises:
        ExhaustedError: every model stayed overloaded through its retries.
        Exception: any non-overload failure, unchanged, on first occurrence.
    """
    if not model:
        raise ConfigurationError(
            "No model selected", hint="Pass a model id or set Config(model=...)."
        )
    policy = policy or RetryPolicy()
    token = token or CancellationToken()
    chain = (model, *dedupe_fallbacks(model, fallback_models))

    attempts = 0
    last_exc: BaseException | None = None
    for position, candidate in enumerate(chain):
        if position > 0:
            logger.warning(
                "Model %s still overloaded after %d attempts; falling back to %s",
                chain[position - 1],
                policy.max_attempts,
                candidate,
            )
        for retry_index in range(policy.max_attempts):
            token.raise_if_cancelled()
            attempts += 1
            try:
                return await call(candidate)
            except (asyncio.CancelledError, OperationCancelledError):
                raise
            except Exception as exc:
                if classify(exc) is not ErrorCategory.OVERLOADED:
                    raise
                last_exc = exc
                delay = policy.delay_for(retry_index)
                if delay is None:
                    break
                logger.info(
                    "Model %s overloaded (attempt %d/%d); retrying in %.2fs",
                    candidate,
                    retry_index + 1,
                    policy.max_attempts,
                    delay,
                )
                await token.sleep(delay)

    raise ExhaustedError(
        f"All models overloaded after {attempts} attempts: {', '.join(chain)}",
        models=chain,
        attempts=attempts,
        hint=remediation(ErrorCategory.OVERLOADED),
    ) from last_exc


class Dispatcher:
    """Transport-bound dispatcher for synchronous generate calls."""

    def __init__(
        self,
        transport: Transport,
        *,
        policy: RetryPolicy | None = None,
        token: CancellationToken | None = None,
    ) -> None:
        self.transport = transport
        self.policy = policy or RetryPolicy()
        self.token = token

    async def generate(
        self,
        request: GenerationRequest,
        *,
        model: str | None = None,
        fallback_models: Iterable[str] = (),
    ) -> ProviderResponse:
        """Generate with *request*, stamping each attempt's model onto it."""

        async def attempt(candidate: str) -> ProviderResponse:
            return await self.transport.generate(replace(request, model=candidate))

        return await dispatch(
            attempt,
            model=model or request.model,
            fallback_models=fallback_models,
            policy=self.policy,
            token=self.token,
        )
