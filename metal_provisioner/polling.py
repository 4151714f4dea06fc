"""Uniform polling loop used by every provisioning phase.

Physical nodes expose no event stream, so every phase waits by probing on a
fixed interval. :func:`poll_until` runs that loop once, with an optional
settle delay, a hard timeout and an optional stall detector, and returns a
tagged :class:`PollResult` instead of raising.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from metal_provisioner.logging_config import get_logger

logger = get_logger(__name__)


class PollOutcome(str, Enum):
    """How a polling loop ended."""

    SUCCESS = "success"
    TIMEOUT = "timeout"
    STALLED = "stalled"
    FAILED = "failed"


@dataclass(frozen=True)
class PollCheck:
    """Result of one probe inside a polling loop.

    Attributes:
        done: The goal has been reached
        failed: An unrecoverable condition was observed
        progress: Value compared across polls by the stall detector
        value: Anything the caller wants back with the final result
    """

    done: bool = False
    failed: bool = False
    progress: Hashable | None = None
    value: Any = None


@dataclass(frozen=True)
class PollResult:
    """Final outcome of :func:`poll_until`."""

    outcome: PollOutcome
    value: Any = None
    elapsed: float = 0.0
    polls: int = 0

    @property
    def ok(self) -> bool:
        return self.outcome is PollOutcome.SUCCESS


class Clock:
    """Monotonic time source and sleeper, replaceable in tests."""

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class StallDetector:
    """Counts consecutive polls whose progress value did not change."""

    def __init__(self, max_stall: int):
        if max_stall < 1:
            raise ValueError("max_stall must be at least 1")
        self.max_stall = max_stall
        self.count = 0
        self._last: Hashable | None = None
        self._seen = False

    def observe(self, progress: Hashable) -> bool:
        """Record a progress value; return True once the loop is stalled."""
        if not self._seen or progress != self._last:
            self._seen = True
            self._last = progress
            self.count = 0
        else:
            self.count += 1
        return self.count >= self.max_stall


Probe = Callable[[float], Awaitable[PollCheck]]


async def poll_until(
    probe: Probe,
    *,
    interval: float,
    timeout: float,
    settle: float = 0,
    stall_detector: StallDetector | None = None,
    clock: Clock | None = None,
) -> PollResult:
    """Call ``probe`` every ``interval`` seconds until it reports done.

    Termination is checked in this order after every probe: failed, done,
    stalled, timed out. The probe receives the elapsed time (including the
    settle delay) so it can implement its own partial-success rules.

    Args:
        probe: Coroutine function taking the elapsed seconds
        interval: Seconds between probes
        timeout: Hard limit on elapsed seconds
        settle: Seconds to wait before the first probe
        stall_detector: Optional detector fed with ``PollCheck.progress``
        clock: Time source; defaults to the real monotonic clock
    """
    clock = clock or Clock()
    started = clock.now()

    if settle > 0:
        await clock.sleep(settle)

    polls = 0
    while True:
        elapsed = clock.now() - started
        check = await probe(elapsed)
        polls += 1

        if check.failed:
            return PollResult(PollOutcome.FAILED, check.value, elapsed, polls)
        if check.done:
            return PollResult(PollOutcome.SUCCESS, check.value, elapsed, polls)
        if stall_detector is not None and stall_detector.observe(check.progress):
            logger.debug(f"No progress for {stall_detector.count} consecutive polls")
            return PollResult(PollOutcome.STALLED, check.value, elapsed, polls)

        elapsed = clock.now() - started
        if elapsed >= timeout:
            return PollResult(PollOutcome.TIMEOUT, check.value, elapsed, polls)

        await clock.sleep(interval)
