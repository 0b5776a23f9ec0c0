"""Retry policy: an explicit, ordered list of waits.

Design goals:
- The Nth retry of a model waits ``delays_s[N]``; no hidden state.
- Exhausting the list means no further retries on that model.
- An empty list means exactly one attempt.
"""

from __future__ import annotations

from dataclasses import dataclass

# Matches the 800/1600/3200 ms schedule image generation has always used.
DEFAULT_DELAYS_S: tuple[float, ...] = (0.8, 1.6, 3.2)


@dataclass(frozen=True)
class RetryPolicy:
    """Ordered wait durations between attempts on a single model."""

    delays_s: tuple[float, ...] = DEFAULT_DELAYS_S

    def __post_init__(self) -> None:
        """Validate invariants to keep retry behavior predictable."""
        delays = tuple(float(d) for d in self.delays_s)
        if any(d < 0 for d in delays):
            raise ValueError("RetryPolicy.delays_s must all be >= 0")
        object.__setattr__(self, "delays_s", delays)

    @property
    def max_retries(self) -> int:
        return len(self.delays_s)

    @property
    def max_attempts(self) -> int:
        return len(self.delays_s) + 1

    def delay_for(self, retry_index: int) -> float | None:
        """Return the wait before retry *retry_index* (0-based), or None when exhausted."""
        if 0 <= retry_index < len(self.delays_s):
            return self.delays_s[retry_index]
        return None

    @classmethod
    def none(cls) -> RetryPolicy:
        """A policy that never retries."""
        return cls(delays_s=())

    @classmethod
    def exponential(
        cls,
        *,
        retries: int = 3,
        initial_delay_s: float = 0.8,
        multiplier: float = 2.0,
        max_delay_s: float = 30.0,
    ) -> RetryPolicy:
        """Build a capped exponential schedule."""
        if retries < 0:
            raise ValueError("retries must be >= 0")
        if initial_delay_s < 0:
            raise ValueError("initial_delay_s must be >= 0")
        if multiplier <= 0:
            raise ValueError("multiplier must be > 0")
        return cls(
            delays_s=tuple(
                min(max_delay_s, initial_delay_s * multiplier**i) for i in range(retries)
            )
        )
