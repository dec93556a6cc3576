"""
WorkerPool - Bounded, rate-limited pool pulling queued conversions.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .dispatcher import RetryPolicy
from .processor import ImageProcessor
from .rate_limiter import RateLimiter
from .records import QueueEntry


@dataclass
class PoolStats:
    """
    Statistics for a worker pool run.

    Attributes:
        claimed: Queue entries taken
        succeeded: Images converted
        skipped: Entries dropped because the image was deleted or done
        retried: Failed attempts rescheduled with backoff
        exhausted: Entries that used up every attempt
        start_time: Start timestamp
        error_details: Last failure message per exhausted job
    """
    claimed: int = 0
    succeeded: int = 0
    skipped: int = 0
    retried: int = 0
    exhausted: int = 0
    start_time: float = field(default_factory=time.time)
    error_details: List[str] = field(default_factory=list)

    @property
    def elapsed_seconds(self) -> float:
        """Elapsed time in seconds."""
        return time.time() - self.start_time

    @property
    def rate_per_minute(self) -> float:
        """Converted images per minute."""
        if self.elapsed_seconds > 0:
            return self.succeeded / self.elapsed_seconds * 60
        return 0.0


class WorkerPool:
    """
    Runs up to `concurrency` conversions at once, never dequeuing faster
    than the shared rate limiter allows.
    """

    def __init__(
        self,
        store,
        processor: ImageProcessor,
        rate_limiter: Optional[RateLimiter] = None,
        concurrency: int = 2,
        lease_seconds: float = 660.0,
        poll_interval: float = 1.0,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize worker pool.

        Args:
            store: MySqlStore or MemoryStore holding the queue
            processor: Runs one attempt per claimed entry
            rate_limiter: Limiter shared by all workers (10 per second if omitted)
            concurrency: Number of simultaneous conversions
            lease_seconds: How long a claimed entry stays hidden from other workers
            poll_interval: Seconds an idle worker waits before polling again
            clock: Source of epoch seconds for the queue
            logger: Optional logger instance
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.store = store
        self.processor = processor
        self.rate_limiter = rate_limiter or RateLimiter()
        self.concurrency = concurrency
        self.lease_seconds = lease_seconds
        self.poll_interval = poll_interval
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self.stats = PoolStats()
        self._stats_lock = threading.Lock()
        self._stop = threading.Event()
        self._fault: Optional[BaseException] = None

    def stop(self) -> None:
        """Request workers to stop after their current item."""
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def _count(self, name: str, detail: Optional[str] = None) -> None:
        with self._stats_lock:
            setattr(self.stats, name, getattr(self.stats, name) + 1)
            if detail:
                self.stats.error_details.append(detail)

    def process_next(self) -> bool:
        """
        Claim and run one queue entry.

        Item failures are handled here; errors from the queue itself
        propagate to the caller as worker-level faults.

        Returns:
            True if an entry was claimed, False if none was available
        """
        self.rate_limiter.acquire()
        entry = self.store.claim_next(self.clock(), self.lease_seconds)
        if entry is None:
            return False

        self._count('claimed')
        attempt = entry.attempts_made + 1
        try:
            converted = self.processor.process(entry.job_id, entry.payload)
        except Exception as e:
            self._handle_failure(entry, attempt, e)
            return True

        self.store.remove_entry(entry.id)
        self._count('succeeded' if converted else 'skipped')
        return True

    def _handle_failure(self, entry: QueueEntry, attempt: int, error: Exception) -> None:
        """Reschedule with backoff, or drop the entry once attempts run out."""
        policy = RetryPolicy(entry.max_attempts, entry.backoff_delay)
        if policy.should_retry(attempt):
            delay = policy.delay_for(attempt)
            self.store.reschedule(entry.id, attempt, self.clock() + delay)
            self._count('retried')
            self.logger.warning(
                f"Job {entry.job_id}: attempt {attempt}/{policy.max_attempts} failed, "
                f"retrying in {delay:.0f}s: {error}"
            )
            return

        self.store.remove_entry(entry.id)
        self._count('exhausted', f"{entry.job_id}: {error}")
        self.logger.error(
            f"Job {entry.job_id}: giving up after {attempt} attempts: {error}"
        )

    def _worker_loop(self, index: int, until_empty: bool) -> None:
        self.logger.debug(f"Worker {index} started")
        try:
            while not self._stop.is_set():
                if self.process_next():
                    continue
                if until_empty:
                    break
                self._stop.wait(self.poll_interval)
        except BaseException as e:
            self._fault = self._fault or e
            self._stop.set()
            self.logger.error(f"Worker {index} stopped by fault: {e}")
            raise
        self.logger.debug(f"Worker {index} stopped")

    def run(self, until_empty: bool = False) -> PoolStats:
        """
        Run the workers until stop() is called.

        Args:
            until_empty: Return once no entry is claimable instead of polling

        Returns:
            PoolStats for the run

        Raises:
            The first worker-level fault, after every worker has stopped
        """
        self._stop.clear()
        self._fault = None
        self.stats = PoolStats()
        self.logger.info(
            f"Starting {self.concurrency} workers "
            f"(limit {self.rate_limiter.max_calls} per {self.rate_limiter.period:g}s)"
        )

        with ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix='depot-worker'
        ) as executor:
            futures = [
                executor.submit(self._worker_loop, i, until_empty)
                for i in range(self.concurrency)
            ]
            try:
                for future in futures:
                    future.exception()
            except KeyboardInterrupt:
                self.logger.info("Interrupted, waiting for workers to finish current items")
                self.stop()
                raise

        if self._fault is not None:
            raise self._fault

        self.logger.info(
            f"Workers finished: {self.stats.succeeded} converted, "
            f"{self.stats.retried} retried, {self.stats.exhausted} failed, "
            f"{self.stats.skipped} skipped ({self.stats.elapsed_seconds:.1f}s)"
        )
        return self.stats
