"""
ImageProcessor - Runs one conversion attempt for a queued image.
"""

import logging
import os
from typing import Optional

from .ledger import QuotaLedger, format_bytes
from .records import ProcessingRequest
from .synchronizer import StateSynchronizer

# Progress checkpoints persisted on the job
PROGRESS_ACCEPTED = 10
PROGRESS_PROBED = 30
PROGRESS_CONVERTED = 80


class ImageProcessor:
    """
    Drives a request through converter, synchronizer and ledger.
    """

    def __init__(
        self,
        synchronizer: StateSynchronizer,
        converter,
        ledger: QuotaLedger,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize processor.

        Args:
            synchronizer: State synchronizer for status writes
            converter: Object with probe, convert and output_size
            ledger: Quota ledger reporting the output charge
            logger: Optional logger instance
        """
        self.sync = synchronizer
        self.converter = converter
        self.ledger = ledger
        self.logger = logger or logging.getLogger(__name__)

    @property
    def store(self):
        return self.sync.store

    def process(self, job_id: str, request: ProcessingRequest) -> bool:
        """
        Run one attempt.

        Args:
            job_id: Stable job id
            request: Queue payload

        Returns:
            True if the image became ready, False if the attempt was skipped
            because the image was deleted or already converted

        Raises:
            Whatever the attempt failed with, after the failure was recorded,
            so the caller can apply the retry policy
        """
        if not self.sync.begin_attempt(job_id, request):
            return False

        self.logger.info(f"Job {job_id}: processing {request.source_path}")
        self.sync.record_progress(job_id, PROGRESS_ACCEPTED)

        try:
            dimensions = self.converter.probe(request.source_path)
            self.sync.record_progress(job_id, PROGRESS_PROBED)

            self.converter.convert(request.source_path, request.output_path)
            self.sync.record_progress(job_id, PROGRESS_CONVERTED)

            output_size = self.converter.output_size(request.output_path)
        except Exception as e:
            recorded = self.sync.fail(job_id, request.image_id, str(e))
            self.sync.aggregate_resource(request.resource_id)
            if not recorded and self.store.get_image(request.image_id) is None:
                self.logger.info(f"Job {job_id}: image deleted during processing, dropping failure")
                return False
            self.logger.warning(f"Job {job_id}: attempt failed: {e}")
            raise

        completed = self.sync.complete(
            job_id,
            request.image_id,
            dimensions,
            request.output_path,
            output_size,
            user_id=request.user_id,
        )
        if completed:
            self.ledger.report_credit(request.user_id, output_size)
            self.sync.aggregate_resource(request.resource_id)
            self.logger.info(
                f"Job {job_id}: image {request.image_id} ready "
                f"({dimensions.width}x{dimensions.height}, {format_bytes(output_size)})"
            )
            return True

        if self.store.get_image(request.image_id) is None:
            self._discard_output(job_id, request.output_path)
        self.sync.aggregate_resource(request.resource_id)
        return False

    def _discard_output(self, job_id: str, output_path: str) -> None:
        """Remove output produced for an image deleted mid-flight."""
        try:
            os.remove(output_path)
            self.logger.info(f"Job {job_id}: removed orphaned output {output_path}")
        except FileNotFoundError:
            pass
        except OSError as e:
            self.logger.warning(f"Job {job_id}: could not remove orphaned output {output_path}: {e}")
