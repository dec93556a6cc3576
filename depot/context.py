"""
DepotContext - Composition root wiring the store, pipeline components and service.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .config import DepotConfig
from .converter import MagickConverter
from .dispatcher import JobDispatcher, RetryPolicy
from .ledger import QuotaLedger
from .mysql_store import MySqlStore
from .processor import ImageProcessor
from .rate_limiter import RateLimiter
from .service import ResourceService
from .synchronizer import StateSynchronizer
from .worker_pool import WorkerPool


@dataclass
class DepotContext:
    """Every long-lived component of one process, built once and passed down."""
    config: DepotConfig
    store: object
    ledger: QuotaLedger
    synchronizer: StateSynchronizer
    dispatcher: JobDispatcher
    service: ResourceService
    logger: logging.Logger

    @classmethod
    def build(
        cls,
        config: DepotConfig,
        store=None,
        logger: Optional[logging.Logger] = None
    ) -> 'DepotContext':
        """
        Build the components for a configuration.

        Args:
            config: Loaded configuration
            store: Store to use (a MySqlStore for the config if omitted)
            logger: Optional logger instance
        """
        logger = logger or logging.getLogger('depot')
        store = store if store is not None else MySqlStore(config, logger)
        ledger = QuotaLedger(store, logger)
        synchronizer = StateSynchronizer(store, logger)
        dispatcher = JobDispatcher(
            store,
            RetryPolicy(config.max_attempts, config.backoff_delay),
            logger=logger,
        )
        service = ResourceService(store, dispatcher, synchronizer, ledger, config, logger)
        return cls(config, store, ledger, synchronizer, dispatcher, service, logger)

    def create_converter(self) -> MagickConverter:
        return MagickConverter(
            tile_size=self.config.tile_size,
            compression=self.config.compression,
            timeout=self.config.convert_timeout,
            binary=self.config.convert_binary,
            logger=self.logger,
        )

    def create_pool(self, converter=None) -> WorkerPool:
        """Build a worker pool; the converter defaults to ImageMagick."""
        processor = ImageProcessor(
            self.synchronizer,
            converter or self.create_converter(),
            self.ledger,
            self.logger,
        )
        return WorkerPool(
            self.store,
            processor,
            rate_limiter=RateLimiter(self.config.rate_limit_max, self.config.rate_limit_window),
            concurrency=self.config.worker_concurrency,
            lease_seconds=self.config.lease_seconds,
            poll_interval=self.config.poll_interval,
            logger=self.logger,
        )
