"""
IIIF image ingestion pipeline.

Uploaded images are converted to tiled pyramid TIFFs by a rate-limited
worker pool, their status rolls up to the owning resource, each user's
storage is tracked in a quota ledger, and ready resources are published
as IIIF Presentation 3.0 manifests.
"""

__version__ = "0.3.0"

from .config import DepotConfig
from .exceptions import (
    DepotError,
    ConversionFailure,
    TransientDispatchFailure,
    QuotaExceeded,
    IllegalTransition,
    ResourceNotFound,
    AccessDenied,
    ResourceNotReady,
)
from .statuses import JobStatus, ImageStatus, ResourceStatus
from .records import User, Resource, Image, Job, ProcessingRequest, QueueEntry
from .memory_store import MemoryStore
from .mysql_store import MySqlStore
from .converter import MagickConverter, Dimensions
from .rate_limiter import RateLimiter
from .ledger import QuotaLedger
from .synchronizer import StateSynchronizer
from .dispatcher import JobDispatcher, RetryPolicy
from .processor import ImageProcessor
from .worker_pool import WorkerPool, PoolStats
from .manifest import build_manifest
from .service import ResourceService
from .context import DepotContext

__all__ = [
    "DepotConfig",
    "DepotError",
    "ConversionFailure",
    "TransientDispatchFailure",
    "QuotaExceeded",
    "IllegalTransition",
    "ResourceNotFound",
    "AccessDenied",
    "ResourceNotReady",
    "JobStatus",
    "ImageStatus",
    "ResourceStatus",
    "User",
    "Resource",
    "Image",
    "Job",
    "ProcessingRequest",
    "QueueEntry",
    "MemoryStore",
    "MySqlStore",
    "MagickConverter",
    "Dimensions",
    "RateLimiter",
    "QuotaLedger",
    "StateSynchronizer",
    "JobDispatcher",
    "RetryPolicy",
    "ImageProcessor",
    "WorkerPool",
    "PoolStats",
    "build_manifest",
    "ResourceService",
    "DepotContext",
]
