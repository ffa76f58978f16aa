# src/deployment/retry.py - v1
"""VERIFY retry budget with exponential backoff.

A probe is retried up to ``max_attempts`` times. The wait between
attempts grows by ``backoff_factor`` and is capped at ``max_delay_s``.
Backoff sleeps wake early when the cancel event is set.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class RetryExhausted(Exception):
    """Every attempt failed."""

    def __init__(self, attempts: int, last_error: Exception | None = None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        reason = f": {last_error}" if last_error else ""
        super().__init__(f"Failed after {attempts} attempt(s){reason}")


class RetryCancelled(Exception):
    """The cancel event was set between attempts."""

    def __init__(self, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(f"Cancelled after {attempts} attempt(s)")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry configuration."""

    max_attempts: int = 3
    base_delay_s: float = 0.5
    backoff_factor: float = 2.0
    max_delay_s: float = 10.0
    jitter: bool = False

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_s < 0 or self.max_delay_s < 0:
            raise ValueError("delays must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        delay = self.base_delay_s * (self.backoff_factor ** (attempt - 1))
        if self.jitter:
            delay *= 0.5 + random.random()  # noqa: S311
        return min(delay, self.max_delay_s)

    def as_dict(self) -> dict[str, float | int | bool]:
        return {
            "max_attempts": self.max_attempts,
            "base_delay_s": self.base_delay_s,
            "backoff_factor": self.backoff_factor,
            "max_delay_s": self.max_delay_s,
            "jitter": self.jitter,
        }


async def _sleep_or_cancel(delay: float, cancel_event: asyncio.Event | None) -> bool:
    """Sleep ``delay`` seconds. True if the cancel event fired first."""
    if cancel_event is None:
        await asyncio.sleep(delay)
        return False
    if cancel_event.is_set():
        return True
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return False
    return True


async def retry_probe(
    probe: Callable[[], Awaitable[bool]],
    policy: RetryPolicy,
    *,
    label: str = "probe",
    cancel_event: asyncio.Event | None = None,
    attempt_timeout_s: float | None = None,
    on_retry: Callable[[int, float, str], None] | None = None,
) -> int:
    """Run ``probe`` until it returns True or the budget is spent.

    A probe fails by returning False, raising, or exceeding
    ``attempt_timeout_s``. ``on_retry(attempt, delay, reason)`` is called
    before each backoff sleep.

    Returns:
        Number of attempts used.

    Raises:
        RetryExhausted: All attempts failed.
        RetryCancelled: ``cancel_event`` was set during backoff.
    """
    last_error: Exception | None = None
    for attempt in range(1, policy.max_attempts + 1):
        try:
            if attempt_timeout_s:
                ok = await asyncio.wait_for(probe(), timeout=attempt_timeout_s)
            else:
                ok = await probe()
            reason = "probe reported unhealthy"
        except asyncio.TimeoutError as e:
            ok, last_error = False, e
            reason = f"timed out after {attempt_timeout_s}s"
        except Exception as e:
            ok, last_error = False, e
            reason = f"{type(e).__name__}: {e}"

        if ok:
            return attempt
        if attempt == policy.max_attempts:
            break

        delay = policy.delay_for(attempt)
        logger.warning(
            "%s failed (attempt %d/%d): %s, retrying in %.2fs",
            label, attempt, policy.max_attempts, reason, delay,
        )
        if on_retry is not None:
            on_retry(attempt, delay, reason)
        if await _sleep_or_cancel(delay, cancel_event):
            raise RetryCancelled(attempt)

    raise RetryExhausted(policy.max_attempts, last_error)
