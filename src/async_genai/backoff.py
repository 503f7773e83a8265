"""Exponential backoff with jitter.

The policy is a pure decision function: given the current
:class:`BackoffState` and the kind of the last failure it answers either
``Continue(delay)`` or ``Exhausted``.  It never sleeps; callers do that at
their own suspension points.  Randomness and time are injected so tests can
pin both.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, replace
from email.utils import parsedate_to_datetime
from typing import Callable, Union

import httpx

from async_genai.config import RetrySpec
from async_genai.exceptions import GenAIError
from async_genai.types import ErrorKind

_logger = logging.getLogger(__name__)

# HTTP statuses worth retrying
RETRYABLE_STATUSES = frozenset({408, 409, 429, 500, 502, 503, 504})


# ---------------------------------------------------------------------------
# State and decisions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BackoffState:
    """Retry bookkeeping for one logical call.

    ``attempt`` counts retries already granted.
    """

    attempt: int
    elapsed: float
    max_attempts: int
    max_elapsed: float
    started_at: float

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts or self.elapsed >= self.max_elapsed


@dataclass(frozen=True)
class Continue:
    """Retry after ``delay`` seconds; ``state`` is the successor state."""

    delay: float
    state: BackoffState


@dataclass(frozen=True)
class Exhausted:
    """Give up."""

    state: BackoffState
    reason: str


Decision = Union[Continue, Exhausted]


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

class BackoffPolicy:
    """Exponential backoff: ``base * multiplier**n`` capped at ``max_delay``,
    jittered uniformly within ``±jitter`` of the computed delay.
    """

    def __init__(
        self,
        base_delay: float = 0.5,
        multiplier: float = 2.0,
        max_delay: float = 20.0,
        jitter: float = 0.5,
        max_attempts: int = 5,
        max_elapsed: float = 120.0,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_delay = base_delay
        self.multiplier = multiplier
        self.max_delay = max_delay
        self.jitter = jitter
        self.max_attempts = max_attempts
        self.max_elapsed = max_elapsed
        self._rng = rng or random.Random()
        self._clock = clock

    @classmethod
    def from_spec(
        cls,
        spec: RetrySpec,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> BackoffPolicy:
        return cls(
            base_delay=spec.base_delay,
            multiplier=spec.multiplier,
            max_delay=spec.max_delay,
            jitter=spec.jitter,
            max_attempts=spec.max_attempts,
            max_elapsed=spec.max_elapsed,
            rng=rng,
            clock=clock,
        )

    def start(self) -> BackoffState:
        """Fresh state for a new logical call."""
        return BackoffState(
            attempt=0,
            elapsed=0.0,
            max_attempts=self.max_attempts,
            max_elapsed=self.max_elapsed,
            started_at=self._clock(),
        )

    def base_delay_for(self, attempt: int) -> float:
        """Un-jittered delay before retry number *attempt* (0-based)."""
        return min(self.base_delay * (self.multiplier ** attempt), self.max_delay)

    def next(
        self,
        state: BackoffState,
        error_kind: ErrorKind,
        retry_after: float | None = None,
    ) -> Decision:
        """Decide whether to retry after a failure of *error_kind*."""
        state = replace(state, elapsed=max(state.elapsed, self._clock() - state.started_at))

        if not error_kind.retryable:
            return Exhausted(state, f"{error_kind.value} errors are not retried")
        if state.attempt >= state.max_attempts:
            return Exhausted(state, f"gave up after {state.attempt} retries")
        if state.elapsed >= state.max_elapsed:
            return Exhausted(
                state, f"gave up after {state.elapsed:.1f}s (limit {state.max_elapsed:.1f}s)",
            )

        delay = self.base_delay_for(state.attempt)
        if self.jitter:
            delay *= self._rng.uniform(1 - self.jitter, 1 + self.jitter)
        if retry_after is not None:
            delay = max(delay, retry_after)
        delay = min(delay, self.max_delay, state.max_elapsed - state.elapsed)

        return Continue(max(delay, 0.0), replace(state, attempt=state.attempt + 1))


# ---------------------------------------------------------------------------
# Classification helpers
# ---------------------------------------------------------------------------

def classify_status(status_code: int) -> ErrorKind:
    """Map an HTTP error status to an :class:`ErrorKind`."""
    if status_code in RETRYABLE_STATUSES or status_code >= 500:
        return ErrorKind.TRANSIENT
    return ErrorKind.API


def classify_exception(exc: BaseException) -> ErrorKind:
    """Map a transport or library exception to an :class:`ErrorKind`."""
    if isinstance(exc, GenAIError):
        return exc.kind
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status(exc.response.status_code)
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return ErrorKind.TRANSIENT
    if isinstance(exc, (ConnectionError, TimeoutError, OSError)):
        return ErrorKind.TRANSIENT
    return ErrorKind.PROTOCOL


def parse_retry_after(value: str | None) -> float | None:
    """Parse a ``Retry-After`` header (delta-seconds or HTTP date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        _logger.debug("Unparseable Retry-After header: %r", value)
        return None
    return max(0.0, when.timestamp() - time.time())
