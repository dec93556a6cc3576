"""
JobDispatcher - Creates durable job records and enqueues processing work.
"""

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from .exceptions import DepotError, ResourceNotFound, TransientDispatchFailure
from .records import Job, ProcessingRequest, QueueEntry
from .statuses import JobStatus, check_transition


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry with exponential backoff.

    Attributes:
        max_attempts: Total attempts, the first one included
        backoff_delay: Delay in seconds before the first retry
    """
    max_attempts: int = 3
    backoff_delay: float = 5.0

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given failed attempt (1-based)."""
        return self.backoff_delay * (2 ** (max(attempt, 1) - 1))

    def should_retry(self, attempt: int) -> bool:
        """True if another attempt is allowed after the given failed attempt."""
        return attempt < self.max_attempts


class JobDispatcher:
    """
    Turns a processing request into one job row and one queue entry.
    """

    def __init__(
        self,
        store,
        policy: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize dispatcher.

        Args:
            store: MySqlStore or MemoryStore
            policy: Retry policy stamped on every queue entry
            clock: Source of epoch seconds for queue availability
            logger: Optional logger instance
        """
        self.store = store
        self.policy = policy or RetryPolicy()
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)

    def dispatch(self, request: ProcessingRequest) -> str:
        """
        Create (or reuse) the image's job and enqueue it.

        An image has at most one job. Dispatching an image whose job is
        waiting or active returns the existing id without enqueuing again;
        a failed job is reset to waiting and enqueued under the same id.

        Args:
            request: Validated processing request

        Returns:
            The job id

        Raises:
            ResourceNotFound: if the image does not exist
            IllegalTransition: if the image's job already completed
            TransientDispatchFailure: if the store is unavailable
        """
        try:
            return self._dispatch(request)
        except DepotError:
            raise
        except Exception as e:
            self.logger.error(f"Dispatch failed for image {request.image_id}: {e}")
            raise TransientDispatchFailure(
                f"Could not dispatch image {request.image_id}: {e}"
            ) from e

    def _dispatch(self, request: ProcessingRequest) -> str:
        image = self.store.get_image(request.image_id)
        if image is None:
            raise ResourceNotFound(f"Image {request.image_id} not found")

        job = self.store.get_job(image.job_id) if image.job_id else None
        if job is not None:
            if job.status in (JobStatus.WAITING, JobStatus.ACTIVE):
                self.logger.info(
                    f"Image {request.image_id} already queued as job {job.id} ({job.status.value})"
                )
                return job.id
            check_transition(job.status, JobStatus.WAITING)
            self.store.update_job(
                job.id,
                status=JobStatus.WAITING,
                progress=0,
                error_message=None,
                started_at=None,
                completed_at=None,
            )
            job_id = job.id
        else:
            job_id = str(uuid.uuid4())
            self.store.create_job(Job(id=job_id, image_id=request.image_id))
            self.store.update_image(request.image_id, job_id=job_id)

        self.store.enqueue(QueueEntry(
            id=str(uuid.uuid4()),
            job_id=job_id,
            payload=request,
            max_attempts=self.policy.max_attempts,
            backoff_delay=self.policy.backoff_delay,
            available_at=self.clock(),
        ))
        self.logger.info(f"Dispatched job {job_id} for image {request.image_id}")
        return job_id
