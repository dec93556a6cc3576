"""Tests for WorkerPool."""

import threading
import time

import pytest

from depot.rate_limiter import RateLimiter
from depot.statuses import ImageStatus, JobStatus, ResourceStatus
from depot.worker_pool import PoolStats, WorkerPool


class TestPoolStats:
    """Tests for PoolStats."""

    def test_rate_per_minute(self, mocker):
        """Test the conversion rate uses elapsed time."""
        mocker.patch('depot.worker_pool.time.time', return_value=130.0)
        stats = PoolStats(succeeded=4, start_time=10.0)
        assert stats.elapsed_seconds == 120.0
        assert stats.rate_per_minute == 2.0


class TestProcessNext:
    """Tests for WorkerPool.process_next."""

    def test_empty_queue(self, pool):
        """Test nothing is claimed from an empty queue."""
        assert pool.process_next() is False
        assert pool.stats.claimed == 0

    def test_success_removes_entry(self, pool, dispatcher, store, resource, make_image, request_for):
        """Test a converted entry leaves the queue."""
        image = make_image(resource, 'a.jpg', 0)
        dispatcher.dispatch(request_for(image))

        assert pool.process_next() is True

        assert store.queue_depth() == 0
        assert pool.stats.succeeded == 1
        assert store.get_image(image.id).status is ImageStatus.READY

    def test_backoff_schedule(self, pool, dispatcher, store, clock, converter, resource, make_image, request_for):
        """Test failed attempts are retried after 5s then 10s, then dropped."""
        image = make_image(resource, 'a.jpg', 0)
        converter.fail(image.source_path, 'probe timeout')
        job_id = dispatcher.dispatch(request_for(image))

        assert pool.process_next() is True
        assert pool.stats.retried == 1
        clock.advance(4.9)
        assert pool.process_next() is False

        clock.advance(0.1)
        assert pool.process_next() is True
        assert pool.stats.retried == 2
        clock.advance(9.9)
        assert pool.process_next() is False

        clock.advance(0.1)
        assert pool.process_next() is True
        assert pool.stats.exhausted == 1
        assert store.queue_depth() == 0
        assert pool.stats.error_details == [f"{job_id}: probe timeout"]

        job = store.get_job(job_id)
        assert job.status is JobStatus.FAILED
        assert job.error_message == 'probe timeout'
        assert store.get_resource(resource.id).status is ResourceStatus.FAILED

    def test_transient_failure_recovers(self, pool, dispatcher, store, clock, converter, resource, make_image, request_for):
        """Test a retry after one failure converts under the same job."""
        image = make_image(resource, 'a.jpg', 0)
        converter.fail(image.source_path, 'probe timeout', times=1)
        job_id = dispatcher.dispatch(request_for(image))

        pool.process_next()
        clock.advance(5)
        pool.process_next()

        assert store.get_job(job_id).status is JobStatus.COMPLETED
        assert store.get_image(image.id).job_id == job_id
        assert store.queue_depth() == 0

    def test_deleted_image_skipped(self, pool, dispatcher, store, resource, make_image, request_for):
        """Test an entry for a deleted resource is dropped without retries."""
        image = make_image(resource, 'a.jpg', 0)
        dispatcher.dispatch(request_for(image))
        store.delete_resource(resource.id)

        assert pool.process_next() is True
        assert pool.stats.skipped == 1
        assert store.queue_depth() == 0

    def test_lease_hides_claimed_entry(self, pool, dispatcher, store, clock, mocker, resource, make_image, request_for):
        """Test an entry being worked on cannot be claimed again before its lease ends."""
        image = make_image(resource, 'a.jpg', 0)
        dispatcher.dispatch(request_for(image))

        def process(job_id, request):
            assert store.claim_next(clock(), 660.0) is None
            return True
        mocker.patch.object(pool.processor, 'process', side_effect=process)

        pool.process_next()

    def test_rate_limiter_consulted(self, pool, mocker):
        """Test every claim goes through the shared limiter."""
        spy = mocker.spy(pool.rate_limiter, 'acquire')
        pool.process_next()
        pool.process_next()
        assert spy.call_count == 2


class TestRun:
    """Tests for WorkerPool.run."""

    def test_invalid_concurrency(self, store, processor):
        """Test at least one worker is required."""
        with pytest.raises(ValueError):
            WorkerPool(store, processor, concurrency=0)

    def test_until_empty(self, pool, dispatcher, store, resource, make_image, request_for):
        """Test the pool drains the queue and reports statistics."""
        images = [make_image(resource, f"{i}.jpg", i) for i in range(3)]
        for image in images:
            dispatcher.dispatch(request_for(image))

        stats = pool.run(until_empty=True)

        assert stats.claimed == 3
        assert stats.succeeded == 3
        assert store.queue_depth() == 0
        assert store.get_resource(resource.id).status is ResourceStatus.READY

    def test_concurrent_workers(self, store, processor, dispatcher, clock, resource, make_image, request_for, user):
        """Test several workers convert every image exactly once."""
        images = [make_image(resource, f"{i}.jpg", i) for i in range(12)]
        for image in images:
            dispatcher.dispatch(request_for(image))
        pool = WorkerPool(
            store, processor,
            rate_limiter=RateLimiter(max_calls=1000),
            concurrency=4,
            poll_interval=0.01,
            clock=clock,
        )

        stats = pool.run(until_empty=True)

        assert stats.succeeded == 12
        assert store.get_user(user.id).storage_used == 12 * 1000
        assert all(i.status is ImageStatus.READY for i in store.list_images(resource.id))

    def test_queue_fault_stops_pool(self, pool, store, mocker):
        """Test an error from the queue itself is raised from run()."""
        mocker.patch.object(store, 'claim_next', side_effect=RuntimeError("lost connection"))

        with pytest.raises(RuntimeError, match="lost connection"):
            pool.run(until_empty=True)
        assert pool.stopping

    def test_stop(self, pool):
        """Test stop() ends a polling run."""
        runner = threading.Thread(target=pool.run)
        runner.start()
        time.sleep(0.05)
        pool.stop()
        runner.join(timeout=5)

        assert not runner.is_alive()
        assert pool.stopping
