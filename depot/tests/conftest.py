"""
Pytest fixtures for depot tests.
"""

import logging
import os

import pytest

from depot.config import DepotConfig
from depot.converter import Dimensions
from depot.dispatcher import JobDispatcher, RetryPolicy
from depot.exceptions import ConversionFailure
from depot.ledger import QuotaLedger
from depot.memory_store import MemoryStore
from depot.processor import ImageProcessor
from depot.rate_limiter import RateLimiter
from depot.records import Image, ProcessingRequest, Resource, User
from depot.service import ResourceService
from depot.statuses import ImageStatus, ResourceStatus
from depot.synchronizer import StateSynchronizer
from depot.worker_pool import WorkerPool


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeConverter:
    """
    Converter double. Dimensions and output sizes are looked up by source
    path; failures can be scripted per source path.
    """

    def __init__(self):
        self.dimensions = {}
        self.output_bytes = {}
        self._failures = {}
        self.converted = []

    def fail(self, source_path, message, times=None):
        """Fail the next `times` probes of source_path (every probe if None)."""
        self._failures[source_path] = [message, times]

    def probe(self, source_path):
        failure = self._failures.get(source_path)
        if failure and (failure[1] is None or failure[1] > 0):
            if failure[1] is not None:
                failure[1] -= 1
            raise ConversionFailure(failure[0], source_path)
        return Dimensions(*self.dimensions.get(source_path, (640, 480)))

    def convert(self, source_path, output_path):
        os.makedirs(os.path.dirname(output_path), exist_ok=True)
        with open(output_path, 'wb') as f:
            f.write(b'\0' * self.output_bytes.get(source_path, 1000))
        self.converted.append(source_path)
        return output_path

    def output_size(self, output_path):
        return os.path.getsize(output_path)


@pytest.fixture
def logger():
    """Fixture providing a logger."""
    return logging.getLogger('test')


@pytest.fixture
def config(tmp_path):
    """Fixture providing configuration pointed at a temporary output dir."""
    return DepotConfig(
        base_url='https://iiif.example.org',
        image_service_url='https://images.example.org/iiif/2',
        output_dir=str(tmp_path / 'ptiff'),
    )


@pytest.fixture
def store(logger):
    """Fixture providing an empty in-memory store."""
    return MemoryStore(logger)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def converter():
    return FakeConverter()


@pytest.fixture
def user(store):
    """Fixture providing a user with a 10 MB quota."""
    return store.create_user(User(
        id='user-1',
        email='curator@example.org',
        name='Curator',
        storage_quota=10 * 1024 * 1024,
    ))


@pytest.fixture
def resource(store, user):
    """Fixture providing a public resource in processing state."""
    return store.create_resource(Resource(
        id='res-1',
        user_id=user.id,
        title='Herbarium sheets',
    ))


@pytest.fixture
def make_image(store, tmp_path):
    """Fixture providing a factory that adds an image to a resource."""
    def _make(resource, name, order_index, status=ImageStatus.UPLOADED, **fields):
        image_id = fields.pop('id', f"img-{name}")
        image = Image(
            id=image_id,
            resource_id=resource.id,
            user_id=resource.user_id,
            original_filename=name,
            source_path=f"/uploads/{name}",
            byte_size=fields.pop('byte_size', 5000),
            order_index=order_index,
            output_path=str(tmp_path / 'ptiff' / f"{image_id}.tif"),
            status=status,
            **fields
        )
        return store.create_image(image)
    return _make


@pytest.fixture
def request_for():
    """Fixture providing a factory building the queue payload for an image."""
    def _request(image):
        return ProcessingRequest(
            image_id=image.id,
            resource_id=image.resource_id,
            user_id=image.user_id,
            source_path=image.source_path,
            output_path=image.output_path,
        )
    return _request


@pytest.fixture
def ledger(store, logger):
    return QuotaLedger(store, logger)


@pytest.fixture
def synchronizer(store, logger):
    return StateSynchronizer(store, logger)


@pytest.fixture
def dispatcher(store, clock, logger):
    return JobDispatcher(store, RetryPolicy(max_attempts=3, backoff_delay=5.0), clock=clock, logger=logger)


@pytest.fixture
def processor(synchronizer, converter, ledger, logger):
    return ImageProcessor(synchronizer, converter, ledger, logger)


@pytest.fixture
def pool(store, processor, clock, logger):
    """Fixture providing a single-worker pool driven by the fake clock."""
    limiter = RateLimiter(max_calls=1000, period=1.0)
    return WorkerPool(
        store,
        processor,
        rate_limiter=limiter,
        concurrency=1,
        lease_seconds=660.0,
        poll_interval=0.01,
        clock=clock,
        logger=logger,
    )


@pytest.fixture
def service(store, dispatcher, synchronizer, ledger, config, logger):
    return ResourceService(store, dispatcher, synchronizer, ledger, config, logger)


@pytest.fixture
def sample_jpeg(tmp_path):
    """Fixture providing a small JPEG file on disk."""
    from PIL import Image as PILImage

    path = tmp_path / 'uploads' / 'sheet.jpg'
    path.parent.mkdir(parents=True, exist_ok=True)
    PILImage.new('RGB', (120, 80), color='red').save(str(path), format='JPEG')
    return str(path)


@pytest.fixture
def ready_resource(store, resource, make_image):
    """Fixture providing a ready resource with two converted images."""
    for index, (name, width, height) in enumerate([('p1.jpg', 800, 600), ('p2.jpg', 1024, 768)]):
        make_image(
            resource, name, index,
            status=ImageStatus.READY, width=width, height=height, output_size=2000,
        )
    store.set_resource_status(resource.id, ResourceStatus.READY)
    return store.get_resource(resource.id)
