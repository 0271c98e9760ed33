# src/bucket_ferry/throttle.py
"""
Rate control for transfers.

This module holds the shared bandwidth limiter (a token bucket), the retry
policy used for whole-object and per-part retries, and the per-task
transfer metrics the engine aggregates into throughput statistics.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, TypeVar

import numpy as np

from bucket_ferry.exceptions import TransientError

logger: logging.Logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class TransferMetrics:
    """
    A record of a single object transfer's performance.

    Attributes:
        bytes (int): Bytes moved by this transfer.
        duration_s (float): Total duration of the transfer in seconds.
        err_tag (str, optional): The exception type name if the transfer failed,
            else None.
        rtt_ms (float, optional): Time-to-first-byte of the source read
            in milliseconds.
    """

    bytes: int
    duration_s: float
    err_tag: Optional[str] = None
    rtt_ms: Optional[float] = None


@dataclass(frozen=True)
class ThroughputStats:
    """Aggregate statistics over a set of `TransferMetrics`."""

    samples: int
    total_bytes: int
    error_rate: float
    median_bps: float
    p90_bps: float
    median_rtt_ms: float
    p90_rtt_ms: float


def summarize(metrics: List[TransferMetrics]) -> ThroughputStats:
    """
    Computes throughput statistics from per-task metrics.

    Args:
        metrics (List[TransferMetrics]): The collected metrics.

    Returns:
        ThroughputStats: Median and p90 per-object throughput and RTT over the
            successful transfers, plus the error rate over all of them.
    """
    if not metrics:
        return ThroughputStats(0, 0, 0.0, 0.0, 0.0, 0.0, 0.0)

    successes: List[TransferMetrics] = [m for m in metrics if m.err_tag is None]
    failures: int = len(metrics) - len(successes)
    rates: List[float] = [
        m.bytes / m.duration_s for m in successes if m.duration_s > 0 and m.bytes > 0
    ]
    rtts: List[float] = [m.rtt_ms for m in successes if m.rtt_ms is not None]

    return ThroughputStats(
        samples=len(metrics),
        total_bytes=sum(m.bytes for m in successes),
        error_rate=failures / len(metrics),
        median_bps=float(np.median(rates)) if rates else 0.0,
        p90_bps=float(np.percentile(rates, 90)) if rates else 0.0,
        median_rtt_ms=float(np.median(rtts)) if rtts else 0.0,
        p90_rtt_ms=float(np.percentile(rtts, 90)) if rtts else 0.0,
    )


class BandwidthLimiter:
    """
    An asyncio token bucket shared by all workers of a job.

    The bucket holds at most one second of budget, so over any interval of
    `t` seconds at most `rate * (t + 1)` bytes are granted. Waiters sleep in
    bounded steps and re-check the bucket, so no wait is indefinite.
    """

    def __init__(
        self,
        rate: int,
        max_wait_s: float = 0.25,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the limiter.

        Args:
            rate (int): Aggregate bytes per second; 0 disables limiting.
            max_wait_s (float): Longest single sleep before re-checking.
            clock (Callable[[], float]): Monotonic time source.
        """
        self._rate: int = max(rate, 0)
        self._capacity: float = float(self._rate)
        self._tokens: float = self._capacity
        self._max_wait_s: float = max_wait_s
        self._clock: Callable[[], float] = clock
        self._updated_at: float = clock()
        self._lock: asyncio.Lock = asyncio.Lock()

    @property
    def rate(self) -> int:
        return self._rate

    @property
    def enabled(self) -> bool:
        return self._rate > 0

    def _refill(self) -> None:
        now: float = self._clock()
        elapsed: float = now - self._updated_at
        self._updated_at = now
        if elapsed > 0:
            self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)

    async def acquire(self, nbytes: int) -> None:
        """
        Waits until `nbytes` may be sent.

        Requests larger than the bucket are granted in pieces as the bucket
        refills.

        Args:
            nbytes (int): Number of bytes about to be transferred.
        """
        if not self.enabled or nbytes <= 0:
            return

        remaining: float = float(nbytes)
        while remaining > 0:
            async with self._lock:
                self._refill()
                granted: float = min(remaining, self._tokens)
                self._tokens -= granted
                remaining -= granted
                deficit: float = remaining
            if deficit > 0:
                await asyncio.sleep(min(deficit / self._rate, self._max_wait_s))


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff with jitter for transient storage errors.

    Attributes:
        max_attempts (int): Total attempts, the first one included.
        base_delay_s (float): Delay after the first failure; doubles after
            each further failure.
        max_delay_s (float): Upper bound of the exponential part of a delay.
        jitter_s (float): Upper bound of the random delay added on top.
    """

    max_attempts: int = 3
    base_delay_s: float = 0.5
    max_delay_s: float = 30.0
    jitter_s: float = 0.2

    def delay_for(self, attempt: int) -> float:
        """
        Returns the delay before the attempt following failed `attempt`.

        Args:
            attempt (int): The 1-based number of the attempt that failed.
        """
        exponential: float = self.base_delay_s * (2 ** max(attempt - 1, 0))
        return min(exponential, self.max_delay_s) + random.uniform(0, self.jitter_s)

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        """True if `error` is transient and attempts remain after `attempt`."""
        return isinstance(error, TransientError) and attempt < self.max_attempts

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str = "operation",
    ) -> T:
        """
        Runs `operation`, retrying it on transient errors.

        Args:
            operation (Callable[[], Awaitable[T]]): Factory of the awaitable
                to run; called once per attempt.
            description (str): What is being attempted, for log messages.

        Returns:
            T: The operation's result.

        Raises:
            StorageError: The last error once attempts are exhausted, or the
                first permanent one.
        """
        attempt: int = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except TransientError as e:
                if not self.should_retry(e, attempt):
                    raise
                delay: float = self.delay_for(attempt)
                logger.warning(
                    f"{description} failed (attempt {attempt}/{self.max_attempts}): "
                    f"{e}. Retrying in {delay:.2f}s."
                )
                await asyncio.sleep(delay)
