"""
StateSynchronizer - Owns Job/Image/Resource status changes.

Every status write in the pipeline goes through this class. Image
transitions are compare-and-set at the store, so a stale or repeated
completion report can never move an image twice.
"""

import logging
from typing import Optional

from .converter import Dimensions
from .records import Job, ProcessingRequest, utcnow
from .statuses import (
    ImageStatus,
    JobStatus,
    ResourceStatus,
    check_transition,
    image_sources_for,
)

# Stored error text is capped to fit the error_message column
MAX_ERROR_LENGTH = 2000


class StateSynchronizer:
    """
    Applies worker outcomes to jobs and images and recomputes resource status.
    """

    def __init__(self, store, logger: Optional[logging.Logger] = None):
        """
        Initialize synchronizer.

        Args:
            store: MySqlStore or MemoryStore
            logger: Optional logger instance
        """
        self.store = store
        self.logger = logger or logging.getLogger(__name__)

    def begin_attempt(self, job_id: str, request: ProcessingRequest) -> bool:
        """
        Mark the job active and the image processing for a new attempt.

        A job that already exists (a retry, or a lease that expired after a
        crash) keeps its id and gets its progress, error and timestamps reset.

        Returns:
            False when the image or its resource no longer exists, or the
            image was already converted
        """
        image = self.store.get_image(request.image_id)
        if image is None or self.store.get_resource(request.resource_id) is None:
            self.logger.info(f"Job {job_id}: image {request.image_id} was deleted, skipping")
            return False

        job = self.store.get_job(job_id)
        if image.status is ImageStatus.READY or (job and job.status is JobStatus.COMPLETED):
            # Redelivered after a crash between finalizing and dequeuing
            self.logger.info(f"Job {job_id}: image {request.image_id} already converted")
            return False

        now = utcnow()
        if job is None:
            self.store.create_job(Job(
                id=job_id,
                image_id=request.image_id,
                status=JobStatus.ACTIVE,
                progress=0,
                started_at=now,
            ))
        else:
            check_transition(job.status, JobStatus.ACTIVE)
            self.store.update_job(
                job_id,
                status=JobStatus.ACTIVE,
                progress=0,
                error_message=None,
                started_at=now,
                completed_at=None,
            )
            if job.status is not JobStatus.WAITING:
                self.logger.info(f"Job {job_id}: retrying image {request.image_id}")

        check_transition(image.status, ImageStatus.PROCESSING)
        moved = self.store.transition_image(
            request.image_id,
            image_sources_for(ImageStatus.PROCESSING),
            ImageStatus.PROCESSING,
            job_id=job_id,
            error_message=None,
        )
        if not moved:
            # Deleted between the read above and the update
            return False
        # A retry takes a failed resource back to processing
        self.aggregate_resource(request.resource_id)
        return True

    def record_progress(self, job_id: str, progress: int) -> None:
        """Persist a progress checkpoint for observers."""
        progress = max(0, min(100, int(progress)))
        self.store.update_job(job_id, progress=progress)
        self.logger.debug(f"Job {job_id}: progress {progress}%")

    def complete(
        self,
        job_id: str,
        image_id: str,
        dimensions: Dimensions,
        output_path: str,
        output_size: int,
        user_id: Optional[str] = None
    ) -> bool:
        """
        Record a successful conversion.

        When user_id is given, output_size is charged to that user in the
        same store operation that moves the image to ready, so a concurrent
        delete either sees the charge and releases it or removes the image
        first and no charge is made.

        Returns:
            True only for the single report that moved the image to ready.
            A duplicate report, or one for a deleted image, returns False and
            changes nothing.
        """
        moved = self.store.complete_image(
            image_id,
            image_sources_for(ImageStatus.READY),
            user_id,
            output_size if user_id else 0,
            width=dimensions.width,
            height=dimensions.height,
            output_path=output_path,
            output_size=output_size,
            error_message=None,
        )
        if not moved:
            self.logger.info(f"Job {job_id}: completion for image {image_id} ignored")
            return False

        self.store.update_job(
            job_id,
            status=JobStatus.COMPLETED,
            progress=100,
            error_message=None,
            completed_at=utcnow(),
        )
        return True

    def fail(self, job_id: str, image_id: str, error: str) -> bool:
        """
        Record a failed attempt on the image and the job.

        Returns:
            False when the image is gone or already terminal
        """
        error = (error or 'Unknown error')[:MAX_ERROR_LENGTH]
        moved = self.store.transition_image(
            image_id,
            image_sources_for(ImageStatus.FAILED),
            ImageStatus.FAILED,
            error_message=error,
        )
        if not moved:
            self.logger.info(f"Job {job_id}: failure for image {image_id} ignored")
            return False

        self.store.update_job(
            job_id,
            status=JobStatus.FAILED,
            error_message=error,
            completed_at=utcnow(),
        )
        return True

    def aggregate_resource(self, resource_id: str) -> Optional[ResourceStatus]:
        """
        Recompute a resource's status from its images and store it.

        Safe to call any number of times, in any order relative to other
        images' completions.

        Returns:
            The recomputed status, or None if the resource no longer exists
        """
        resource = self.store.get_resource(resource_id)
        if resource is None:
            self.logger.info(f"Resource {resource_id} was deleted, skipping aggregation")
            return None

        images = self.store.list_images(resource_id)
        status = ResourceStatus.aggregate(image.status for image in images)
        if status != resource.status:
            if not self.store.set_resource_status(resource_id, status):
                return None
            self.logger.info(
                f"Resource {resource_id}: {resource.status.value} -> {status.value} "
                f"({len(images)} images)"
            )
        return status
