"""
DepotConfig - Configuration for the ingestion pipeline, loaded from the environment.
"""

import os
from dataclasses import dataclass
from typing import List, Optional, Tuple


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass
class DepotConfig:
    """
    Configuration for the store, worker pool, converter and manifest builder.

    Attributes:
        db_host: MySQL host
        db_port: MySQL port
        db_user: MySQL user
        db_password: MySQL password
        db_name: MySQL database
        db_pool_size: Connection pool size
        base_url: Public base URL used for manifest and canvas ids
        image_service_url: Public base URL of the tiled image service
        output_dir: Directory receiving tiled output files
        worker_concurrency: Simultaneous in-flight conversions
        rate_limit_max: Dequeues allowed per rate window, across all workers
        rate_limit_window: Rate window in seconds
        max_attempts: Attempts per job before it stays failed
        backoff_delay: First retry delay in seconds, doubled each attempt
        convert_timeout: Seconds before a conversion is abandoned
        poll_interval: Seconds a worker sleeps when the queue is empty
        tile_size: Tile edge in pixels
        compression: TIFF compression
        convert_binary: ImageMagick convert executable
        thumbnail_size: Manifest thumbnail bounding box
        manifest_languages: Language keys used for manifest labels
        default_quota_mb: Quota given to new users
        auth_key: Secret for read-endpoint tokens (None treats every reader as anonymous)
        time_tolerance: Seconds a token timestamp may drift
        port: HTTP port
        log_level: Logging level name
    """
    db_host: str = 'localhost'
    db_port: int = 3306
    db_user: str = 'depot'
    db_password: Optional[str] = None
    db_name: str = 'iiif_depot'
    db_pool_size: int = 8
    base_url: str = 'http://localhost:8080'
    image_service_url: str = 'http://localhost:8182/iiif/2'
    output_dir: str = './data/images/ptiff'
    worker_concurrency: int = 2
    rate_limit_max: int = 10
    rate_limit_window: float = 1.0
    max_attempts: int = 3
    backoff_delay: float = 5.0
    convert_timeout: float = 600.0
    poll_interval: float = 1.0
    tile_size: int = 256
    compression: str = 'lzw'
    convert_binary: str = 'convert'
    thumbnail_size: int = 300
    manifest_languages: Tuple[str, ...] = ('none',)
    default_quota_mb: int = 100
    auth_key: Optional[str] = None
    time_tolerance: Optional[int] = 600
    port: int = 8080
    log_level: str = 'INFO'

    LEASE_MARGIN = 60.0

    @property
    def lease_seconds(self) -> float:
        """How long a claimed queue entry stays hidden from other workers."""
        return self.convert_timeout + self.LEASE_MARGIN

    @property
    def default_quota_bytes(self) -> int:
        return self.default_quota_mb * 1024 * 1024

    @classmethod
    def from_env(cls) -> 'DepotConfig':
        """Create configuration from environment variables."""
        languages = os.getenv('MANIFEST_LANGUAGES', 'none')
        tolerance = os.getenv('TIME_TOLERANCE', '600')
        return cls(
            db_host=os.getenv('DB_HOST', 'localhost'),
            db_port=_env_int('DB_PORT', 3306),
            db_user=os.getenv('DB_USER', 'depot'),
            db_password=os.getenv('DB_PASSWORD'),
            db_name=os.getenv('DB_NAME', 'iiif_depot'),
            db_pool_size=_env_int('DB_POOL_SIZE', 8),
            base_url=os.getenv('BASE_URL', 'http://localhost:8080').rstrip('/'),
            image_service_url=os.getenv('IMAGE_SERVICE_URL', 'http://localhost:8182/iiif/2').rstrip('/'),
            output_dir=os.getenv('OUTPUT_DIR', './data/images/ptiff'),
            worker_concurrency=_env_int('WORKER_CONCURRENCY', 2),
            rate_limit_max=_env_int('RATE_LIMIT_MAX', 10),
            rate_limit_window=_env_float('RATE_LIMIT_WINDOW', 1.0),
            max_attempts=_env_int('MAX_ATTEMPTS', 3),
            backoff_delay=_env_float('BACKOFF_DELAY', 5.0),
            convert_timeout=_env_float('CONVERT_TIMEOUT', 600.0),
            poll_interval=_env_float('POLL_INTERVAL', 1.0),
            tile_size=_env_int('TILE_SIZE', 256),
            compression=os.getenv('COMPRESSION', 'lzw'),
            convert_binary=os.getenv('CONVERT_BINARY', 'convert'),
            thumbnail_size=_env_int('THUMBNAIL_SIZE', 300),
            manifest_languages=tuple(l.strip() for l in languages.split(',') if l.strip()),
            default_quota_mb=_env_int('DEFAULT_QUOTA_MB', 100),
            auth_key=os.getenv('AUTH_KEY'),
            time_tolerance=int(tolerance) if tolerance else None,
            port=_env_int('PORT', 8080),
            log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        )

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of error messages (empty if valid)
        """
        errors = []
        if not self.db_host:
            errors.append("DB_HOST is required")
        if not self.db_name:
            errors.append("DB_NAME is required")
        if not self.output_dir:
            errors.append("OUTPUT_DIR is required")
        if self.worker_concurrency < 1:
            errors.append("WORKER_CONCURRENCY must be at least 1")
        if self.rate_limit_max < 1 or self.rate_limit_window <= 0:
            errors.append("RATE_LIMIT_MAX must be >= 1 and RATE_LIMIT_WINDOW > 0")
        if self.max_attempts < 1:
            errors.append("MAX_ATTEMPTS must be at least 1")
        if self.backoff_delay < 0:
            errors.append("BACKOFF_DELAY must not be negative")
        if self.convert_timeout <= 0:
            errors.append("CONVERT_TIMEOUT must be positive")
        if self.tile_size < 1:
            errors.append("TILE_SIZE must be positive")
        if not self.manifest_languages:
            errors.append("MANIFEST_LANGUAGES must name at least one language")
        return errors
