"""Tests for ImageProcessor."""

import os

import pytest

from depot.exceptions import ConversionFailure
from depot.processor import ImageProcessor
from depot.statuses import ImageStatus, JobStatus, ResourceStatus
from depot.synchronizer import StateSynchronizer


class RecordingSynchronizer:
    """Wraps a synchronizer and records every progress checkpoint."""

    def __init__(self, inner):
        self.inner = inner
        self.progress = []

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def record_progress(self, job_id, progress):
        self.progress.append(progress)
        self.inner.record_progress(job_id, progress)


class DeletingSynchronizer(StateSynchronizer):
    """Deletes the image's resource as soon as a completion is recorded."""

    def __init__(self, store, service, logger):
        super().__init__(store, logger)
        self.service = service

    def complete(self, job_id, image_id, *args, **kwargs):
        resource_id = self.store.get_image(image_id).resource_id
        moved = super().complete(job_id, image_id, *args, **kwargs)
        self.service.delete_resource(resource_id)
        return moved


class TestImageProcessor:
    """Tests for ImageProcessor."""

    def test_success(self, processor, store, converter, resource, make_image, request_for, user):
        """Test a successful attempt updates image, job, ledger and resource."""
        image = make_image(resource, 'a.jpg', 0)
        converter.dimensions[image.source_path] = (800, 600)
        converter.output_bytes[image.source_path] = 4321

        assert processor.process('job-1', request_for(image)) is True

        stored = store.get_image(image.id)
        assert stored.status is ImageStatus.READY
        assert (stored.width, stored.height) == (800, 600)
        assert stored.output_size == 4321
        job = store.get_job('job-1')
        assert job.status is JobStatus.COMPLETED
        assert job.progress == 100
        assert store.get_user(user.id).storage_used == 4321
        assert store.get_resource(resource.id).status is ResourceStatus.READY

    def test_progress_checkpoints(self, synchronizer, converter, ledger, store, resource, make_image, request_for):
        """Test checkpoints are persisted in order."""
        recording = RecordingSynchronizer(synchronizer)
        processor = ImageProcessor(recording, converter, ledger)
        image = make_image(resource, 'a.jpg', 0)

        processor.process('job-1', request_for(image))

        assert recording.progress == [10, 30, 80]
        assert store.get_job('job-1').progress == 100

    def test_failure_recorded_and_reraised(self, processor, store, converter, resource, make_image, request_for, user):
        """Test a failed attempt is recorded, aggregated and re-raised."""
        image = make_image(resource, 'a.jpg', 0)
        converter.fail(image.source_path, 'unsupported codec')

        with pytest.raises(ConversionFailure):
            processor.process('job-1', request_for(image))

        stored = store.get_image(image.id)
        assert stored.status is ImageStatus.FAILED
        assert stored.error_message == 'unsupported codec'
        job = store.get_job('job-1')
        assert job.status is JobStatus.FAILED
        assert job.progress == 10
        assert store.get_resource(resource.id).status is ResourceStatus.FAILED
        assert store.get_user(user.id).storage_used == 0

    def test_retry_preserves_job_id(self, processor, store, converter, resource, make_image, request_for):
        """Test a failed attempt followed by a retry reuses and resets the job."""
        image = make_image(resource, 'a.jpg', 0)
        converter.fail(image.source_path, 'probe timeout', times=1)

        with pytest.raises(ConversionFailure):
            processor.process('job-1', request_for(image))
        assert store.get_job('job-1').error_message == 'probe timeout'

        assert processor.process('job-1', request_for(image)) is True

        job = store.get_job('job-1')
        assert job.status is JobStatus.COMPLETED
        assert job.error_message is None
        assert store.get_image(image.id).error_message is None
        assert len(store.list_jobs_for_resource(resource.id)) == 1

    def test_duplicate_completion_credits_once(self, processor, store, resource, make_image, request_for, user):
        """Test the same job reported twice is credited once."""
        image = make_image(resource, 'a.jpg', 0)

        processor.process('job-1', request_for(image))
        assert processor.process('job-1', request_for(image)) is False

        assert store.get_user(user.id).storage_used == 1000

    def test_orphaned_completion(self, processor, store, converter, resource, make_image, request_for, user):
        """Test a resource deleted mid-flight turns the completion into a no-op."""
        image = make_image(resource, 'a.jpg', 0)
        request = request_for(image)
        original_convert = converter.convert

        def convert_then_delete(source_path, output_path):
            result = original_convert(source_path, output_path)
            store.delete_resource(resource.id)
            return result
        converter.convert = convert_then_delete

        assert processor.process('job-1', request) is False

        assert store.get_user(user.id).storage_used == 0
        assert not os.path.exists(request.output_path)

    def test_delete_right_after_completion(
        self, store, service, converter, ledger, logger, resource, make_image, request_for, user
    ):
        """Test a delete landing just after the ready transition releases the output charge."""
        image = make_image(resource, 'a.jpg', 0)
        ledger.credit(user.id, image.byte_size)
        converter.output_bytes[image.source_path] = 3000
        request = request_for(image)
        processor = ImageProcessor(DeletingSynchronizer(store, service, logger), converter, ledger, logger)

        assert processor.process('job-1', request) is True

        assert store.get_image(image.id) is None
        assert store.get_user(user.id).storage_used == 0
        assert not os.path.exists(request.output_path)

    def test_orphaned_failure(self, processor, store, converter, resource, make_image, request_for):
        """Test a failure for a deleted image is dropped, not raised."""
        image = make_image(resource, 'a.jpg', 0)
        request = request_for(image)

        def probe_then_delete(source_path):
            store.delete_resource(resource.id)
            raise ConversionFailure('file vanished')
        converter.probe = probe_then_delete

        assert processor.process('job-1', request) is False

    def test_deleted_before_start(self, processor, store, converter, resource, make_image, request_for):
        """Test nothing runs for an image deleted before its attempt."""
        image = make_image(resource, 'a.jpg', 0)
        request = request_for(image)
        store.delete_resource(resource.id)

        assert processor.process('job-1', request) is False
        assert converter.converted == []


class TestThreeImageScenario:
    """Two conversions succeed and one fails."""

    def test_resource_fails_and_only_successes_are_credited(
        self, processor, store, converter, resource, make_image, request_for, user
    ):
        """Test statuses and ledger after mixed outcomes."""
        first = make_image(resource, 'p1.jpg', 0)
        second = make_image(resource, 'p2.jpg', 1)
        third = make_image(resource, 'p3.jpg', 2)
        converter.dimensions[first.source_path] = (800, 600)
        converter.dimensions[second.source_path] = (1024, 768)
        converter.output_bytes[first.source_path] = 3000
        converter.output_bytes[second.source_path] = 5000
        converter.fail(third.source_path, 'unsupported codec')

        processor.process('job-1', request_for(first))
        with pytest.raises(ConversionFailure):
            processor.process('job-3', request_for(third))
        assert store.get_resource(resource.id).status is ResourceStatus.PROCESSING
        processor.process('job-2', request_for(second))

        statuses = [i.status for i in store.list_images(resource.id)]
        assert statuses.count(ImageStatus.READY) == 2
        assert statuses.count(ImageStatus.FAILED) == 1
        assert store.get_resource(resource.id).status is ResourceStatus.FAILED
        assert store.get_user(user.id).storage_used == 8000
        assert (store.get_image(second.id).width, store.get_image(second.id).height) == (1024, 768)
