"""
MySqlStore - MySQL persistence for users, resources, images, jobs and the work queue.
"""

import logging
from contextlib import contextmanager
from enum import Enum
from typing import Iterable, List, Optional

import mysql.connector
from mysql.connector import pooling
from mysql.connector.constants import ClientFlag
from retrying import retry

from .config import DepotConfig
from .records import Image, Job, QueueEntry, Resource, User, utcnow
from .statuses import ImageStatus, ResourceStatus

TABLES = {
    'users': (
        "CREATE TABLE IF NOT EXISTS `users` ("
        "  id VARCHAR(64) NOT NULL PRIMARY KEY,"
        "  email VARCHAR(320) NOT NULL UNIQUE,"
        "  name VARCHAR(255) NOT NULL,"
        "  storage_quota BIGINT NOT NULL DEFAULT 104857600,"
        "  storage_used BIGINT NOT NULL DEFAULT 0,"
        "  created_at DATETIME NOT NULL,"
        "  updated_at DATETIME NOT NULL"
        ") ENGINE=InnoDB"
    ),
    'resources': (
        "CREATE TABLE IF NOT EXISTS `resources` ("
        "  id VARCHAR(64) NOT NULL PRIMARY KEY,"
        "  user_id VARCHAR(64) NOT NULL,"
        "  title VARCHAR(1000) NOT NULL,"
        "  description TEXT,"
        "  attribution TEXT,"
        "  license VARCHAR(2000),"
        "  metadata TEXT,"
        "  status ENUM('processing', 'ready', 'failed') NOT NULL,"
        "  visibility ENUM('public', 'private') NOT NULL DEFAULT 'public',"
        "  homepage VARCHAR(2000),"
        "  viewing_direction VARCHAR(32) DEFAULT 'left-to-right',"
        "  created_at DATETIME NOT NULL,"
        "  updated_at DATETIME NOT NULL,"
        "  INDEX idx_resources_user_id (user_id),"
        "  FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE"
        ") ENGINE=InnoDB"
    ),
    'images': (
        "CREATE TABLE IF NOT EXISTS `images` ("
        "  id VARCHAR(64) NOT NULL PRIMARY KEY,"
        "  resource_id VARCHAR(64) NOT NULL,"
        "  user_id VARCHAR(64) NOT NULL,"
        "  original_filename VARCHAR(2000) NOT NULL,"
        "  source_path VARCHAR(2000) NOT NULL,"
        "  output_path VARCHAR(2000),"
        "  output_size BIGINT,"
        "  byte_size BIGINT NOT NULL,"
        "  width INT,"
        "  height INT,"
        "  mime_type VARCHAR(100) NOT NULL,"
        "  order_index INT NOT NULL,"
        "  status ENUM('uploaded', 'processing', 'ready', 'failed') NOT NULL,"
        "  job_id VARCHAR(64),"
        "  error_message TEXT,"
        "  created_at DATETIME NOT NULL,"
        "  updated_at DATETIME NOT NULL,"
        "  INDEX idx_images_resource_id (resource_id),"
        "  FOREIGN KEY (resource_id) REFERENCES resources(id) ON DELETE CASCADE,"
        "  FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE"
        ") ENGINE=InnoDB"
    ),
    'job_status': (
        "CREATE TABLE IF NOT EXISTS `job_status` ("
        "  id VARCHAR(64) NOT NULL PRIMARY KEY,"
        "  image_id VARCHAR(64) NOT NULL,"
        "  status ENUM('waiting', 'active', 'completed', 'failed') NOT NULL,"
        "  progress INT NOT NULL DEFAULT 0,"
        "  error_message TEXT,"
        "  started_at DATETIME,"
        "  completed_at DATETIME,"
        "  created_at DATETIME NOT NULL,"
        "  INDEX idx_job_status_image_id (image_id),"
        "  FOREIGN KEY (image_id) REFERENCES images(id) ON DELETE CASCADE"
        ") ENGINE=InnoDB"
    ),
    'job_queue': (
        "CREATE TABLE IF NOT EXISTS `job_queue` ("
        "  id VARCHAR(64) NOT NULL PRIMARY KEY,"
        "  job_id VARCHAR(64) NOT NULL,"
        "  payload TEXT NOT NULL,"
        "  attempts_made INT NOT NULL DEFAULT 0,"
        "  max_attempts INT NOT NULL,"
        "  backoff_delay DOUBLE NOT NULL,"
        "  available_at DOUBLE NOT NULL,"
        "  locked_until DOUBLE,"
        "  INDEX idx_job_queue_available_at (available_at)"
        ") ENGINE=InnoDB"
    ),
}

IMAGE_COLUMNS = (
    'id', 'resource_id', 'user_id', 'original_filename', 'source_path', 'output_path',
    'output_size', 'byte_size', 'width', 'height', 'mime_type', 'order_index', 'status',
    'job_id', 'error_message', 'created_at', 'updated_at',
)
JOB_COLUMNS = (
    'id', 'image_id', 'status', 'progress', 'error_message', 'started_at',
    'completed_at', 'created_at',
)
RESOURCE_COLUMNS = (
    'id', 'user_id', 'title', 'description', 'attribution', 'license', 'metadata',
    'status', 'visibility', 'homepage', 'viewing_direction', 'created_at', 'updated_at',
)
USER_COLUMNS = ('id', 'email', 'name', 'storage_quota', 'storage_used')
QUEUE_COLUMNS = (
    'id', 'job_id', 'payload', 'attempts_made', 'max_attempts', 'backoff_delay',
    'available_at', 'locked_until',
)


def _param(value):
    """Convert enum members to their stored values."""
    if isinstance(value, Enum):
        return value.value
    return value


def _assignments(fields: dict, allowed: Iterable[str]):
    """Build a SET clause and its parameters from whitelisted column names."""
    unknown = set(fields) - set(allowed)
    if unknown:
        raise ValueError(f"Unknown columns: {sorted(unknown)}")
    clause = ', '.join(f"{name} = %s" for name in fields)
    return clause, [_param(v) for v in fields.values()]


def _transition_statement(image_id: str, sources: Iterable[ImageStatus], target: ImageStatus, fields: dict):
    """Build a compare-and-set UPDATE for an image, or None when no source status is allowed."""
    sources = [ImageStatus(s).value for s in sources]
    if not sources:
        return None
    fields = dict(fields, status=ImageStatus(target), updated_at=utcnow())
    clause, params = _assignments(fields, IMAGE_COLUMNS)
    in_clause = ', '.join(['%s'] * len(sources))
    sql = f"UPDATE images SET {clause} WHERE id = %s AND status IN ({in_clause})"
    return sql, tuple(params + [image_id] + sources)


class MySqlStore:
    """
    MySQL-backed store.

    Connections come from a lazily created pool. Ledger counters are updated
    with single UPDATE statements so concurrent workers never lose an update.
    Connections use FOUND_ROWS, so row counts mean rows matched, not changed.
    """

    def __init__(self, config: DepotConfig, logger: Optional[logging.Logger] = None):
        self.config = config
        self.connection_pool = None
        self.logger = logger or logging.getLogger(__name__)

    def _pool(self) -> pooling.MySQLConnectionPool:
        if self.connection_pool is None:
            self.logger.debug(f"Opening pool of {self.config.db_pool_size} connections to {self.config.db_host}")
            try:
                self.connection_pool = pooling.MySQLConnectionPool(
                    pool_name="depot_pool",
                    pool_size=self.config.db_pool_size,
                    user=self.config.db_user,
                    password=self.config.db_password,
                    host=self.config.db_host,
                    port=self.config.db_port,
                    database=self.config.db_name,
                    client_flags=[ClientFlag.FOUND_ROWS],
                )
            except mysql.connector.Error as err:
                self.logger.error(f"Could not open MySQL pool: {err}")
                raise
        return self.connection_pool

    @retry(retry_on_exception=lambda e: isinstance(e, mysql.connector.Error), stop_max_attempt_number=3, wait_exponential_multiplier=1000)
    def _checkout(self):
        """Borrow a pooled connection, retrying while the server is unreachable."""
        try:
            return self._pool().get_connection()
        except mysql.connector.Error as e:
            self.logger.warning(f"No MySQL connection available: {e}")
            raise

    @contextmanager
    def transaction(self, action: str = "statement"):
        """
        Yield a dictionary cursor on a pooled connection.

        Everything run on the cursor commits together when the block exits.
        A driver error rolls the block back and is re-raised. The connection
        goes back to the pool either way.
        """
        connection = self._checkout()
        cursor = connection.cursor(buffered=True, dictionary=True)
        try:
            yield cursor
            connection.commit()
        except mysql.connector.Error as e:
            self.logger.error(f"MySQL {action} failed: {e}")
            connection.rollback()
            raise
        finally:
            cursor.close()
            try:
                connection.close()
            except mysql.connector.Error as e:
                self.logger.warning(f"Could not return connection to pool: {e}")

    def _write(self, sql: str, params=()) -> int:
        """Run one statement in its own transaction and return the matched row count."""
        with self.transaction() as cursor:
            self.logger.debug(f"SQL: {sql} {params}")
            cursor.execute(sql, tuple(_param(p) for p in params))
            return cursor.rowcount

    def _fetch_all(self, sql: str, params=()) -> List[dict]:
        with self.transaction("query") as cursor:
            cursor.execute(sql, tuple(_param(p) for p in params))
            return list(cursor.fetchall())

    def _fetch_one(self, sql: str, params=()) -> Optional[dict]:
        rows = self._fetch_all(sql, params)
        return rows[0] if rows else None

    def _insert(self, table: str, columns, values: dict) -> None:
        placeholders = ', '.join(['%s'] * len(columns))
        sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"
        self._write(sql, [values[c] for c in columns])

    def create_tables(self):
        """
        Create the required database tables if they do not exist.
        """
        for table_name, table_description in TABLES.items():
            self.logger.info(f"Creating table {table_name}...")
            self._write(table_description)

    # --- Users ------------------------------------------------------------------

    def create_user(self, user: User) -> User:
        now = utcnow()
        values = dict(user.to_dict(), created_at=now, updated_at=now)
        self._insert('users', USER_COLUMNS + ('created_at', 'updated_at'), values)
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        row = self._fetch_one(f"SELECT {', '.join(USER_COLUMNS)} FROM users WHERE id = %s", (user_id,))
        return User.from_dict(row) if row else None

    def increment_storage_used(self, user_id: str, nbytes: int) -> bool:
        sql = "UPDATE users SET storage_used = storage_used + %s, updated_at = %s WHERE id = %s"
        return self._write(sql, (nbytes, utcnow(), user_id)) > 0

    def decrement_storage_used(self, user_id: str, nbytes: int) -> bool:
        sql = (
            "UPDATE users SET storage_used = GREATEST(storage_used - %s, 0), "
            "updated_at = %s WHERE id = %s"
        )
        return self._write(sql, (nbytes, utcnow(), user_id)) > 0

    def set_storage_quota(self, user_id: str, quota_bytes: int) -> bool:
        sql = "UPDATE users SET storage_quota = %s, updated_at = %s WHERE id = %s"
        return self._write(sql, (quota_bytes, utcnow(), user_id)) > 0

    # --- Resources --------------------------------------------------------------

    def create_resource(self, resource: Resource) -> Resource:
        self._insert('resources', RESOURCE_COLUMNS, resource.__dict__)
        return resource

    def get_resource(self, resource_id: str) -> Optional[Resource]:
        row = self._fetch_one(
            f"SELECT {', '.join(RESOURCE_COLUMNS)} FROM resources WHERE id = %s", (resource_id,)
        )
        return Resource.from_dict(row) if row else None

    def set_resource_status(self, resource_id: str, status: ResourceStatus) -> bool:
        sql = "UPDATE resources SET status = %s, updated_at = %s WHERE id = %s"
        return self._write(sql, (ResourceStatus(status), utcnow(), resource_id)) > 0

    def delete_resource(self, resource_id: str) -> Optional[List[Image]]:
        """
        Delete a resource; images and jobs follow by ON DELETE CASCADE.

        The images are read with FOR UPDATE in the same transaction, so a
        worker finalizing one of them either commits before the read (and
        its credit is in the returned row) or finds the row gone.

        Returns:
            The deleted images, or None if the resource did not exist
        """
        with self.transaction(f"delete of resource {resource_id}") as cursor:
            cursor.execute("SELECT id FROM resources WHERE id = %s FOR UPDATE", (resource_id,))
            if cursor.fetchone() is None:
                return None
            cursor.execute(
                f"SELECT {', '.join(IMAGE_COLUMNS)} FROM images WHERE resource_id = %s "
                "ORDER BY order_index FOR UPDATE",
                (resource_id,)
            )
            rows = list(cursor.fetchall())
            cursor.execute("DELETE FROM resources WHERE id = %s", (resource_id,))
        return [Image.from_dict(row) for row in rows]

    # --- Images -----------------------------------------------------------------

    def create_image(self, image: Image) -> Image:
        self._insert('images', IMAGE_COLUMNS, image.__dict__)
        return image

    def get_image(self, image_id: str) -> Optional[Image]:
        row = self._fetch_one(f"SELECT {', '.join(IMAGE_COLUMNS)} FROM images WHERE id = %s", (image_id,))
        return Image.from_dict(row) if row else None

    def list_images(self, resource_id: str) -> List[Image]:
        rows = self._fetch_all(
            f"SELECT {', '.join(IMAGE_COLUMNS)} FROM images WHERE resource_id = %s ORDER BY order_index",
            (resource_id,)
        )
        return [Image.from_dict(row) for row in rows]

    def update_image(self, image_id: str, **fields) -> bool:
        fields['updated_at'] = utcnow()
        clause, params = _assignments(fields, IMAGE_COLUMNS)
        return self._write(f"UPDATE images SET {clause} WHERE id = %s", params + [image_id]) > 0

    def transition_image(
        self,
        image_id: str,
        sources: Iterable[ImageStatus],
        target: ImageStatus,
        **fields
    ) -> bool:
        """Move an image to target only if its status is one of sources."""
        statement = _transition_statement(image_id, sources, target, fields)
        if statement is None:
            return False
        return self._write(*statement) > 0

    def complete_image(
        self,
        image_id: str,
        sources: Iterable[ImageStatus],
        user_id: str,
        credit_bytes: int,
        **fields
    ) -> bool:
        """
        Move an image to ready and charge credit_bytes to user_id in one transaction.

        The UPDATE takes the image row lock, so it serializes with
        delete_resource: either the delete reads the charged row and
        releases the charge, or this finds the row gone and charges nothing.
        """
        statement = _transition_statement(image_id, sources, ImageStatus.READY, fields)
        if statement is None:
            return False
        with self.transaction(f"completion of image {image_id}") as cursor:
            cursor.execute(*statement)
            if cursor.rowcount <= 0:
                return False
            if credit_bytes:
                cursor.execute(
                    "UPDATE users SET storage_used = storage_used + %s, updated_at = %s WHERE id = %s",
                    (credit_bytes, utcnow(), user_id)
                )
        return True

    # --- Jobs -------------------------------------------------------------------

    def create_job(self, job: Job) -> Job:
        self._insert('job_status', JOB_COLUMNS, job.__dict__)
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        row = self._fetch_one(f"SELECT {', '.join(JOB_COLUMNS)} FROM job_status WHERE id = %s", (job_id,))
        return Job.from_dict(row) if row else None

    def update_job(self, job_id: str, **fields) -> bool:
        clause, params = _assignments(fields, JOB_COLUMNS)
        return self._write(f"UPDATE job_status SET {clause} WHERE id = %s", params + [job_id]) > 0

    def list_jobs_for_resource(self, resource_id: str) -> List[Job]:
        columns = ', '.join(f"j.{c}" for c in JOB_COLUMNS)
        rows = self._fetch_all(
            f"SELECT {columns} FROM job_status j JOIN images i ON i.id = j.image_id WHERE i.resource_id = %s",
            (resource_id,)
        )
        return [Job.from_dict(row) for row in rows]

    # --- Queue ------------------------------------------------------------------

    def enqueue(self, entry: QueueEntry) -> None:
        values = dict(entry.__dict__, payload=entry.payload.to_json())
        self._insert('job_queue', QUEUE_COLUMNS, values)

    def claim_next(self, now: float, lease_seconds: float) -> Optional[QueueEntry]:
        """
        Claim the oldest available entry.

        The row is locked with SKIP LOCKED so concurrent workers never claim
        the same entry, then hidden from other workers for lease_seconds.
        """
        locked_until = now + lease_seconds
        with self.transaction("queue claim") as cursor:
            cursor.execute(
                f"SELECT {', '.join(QUEUE_COLUMNS)} FROM job_queue "
                "WHERE available_at <= %s AND (locked_until IS NULL OR locked_until <= %s) "
                "ORDER BY available_at LIMIT 1 FOR UPDATE SKIP LOCKED",
                (now, now)
            )
            row = cursor.fetchone()
            if row is None:
                return None
            cursor.execute("UPDATE job_queue SET locked_until = %s WHERE id = %s", (locked_until, row['id']))
        return QueueEntry.from_dict(dict(row, locked_until=locked_until))

    def reschedule(self, entry_id: str, attempts_made: int, available_at: float) -> bool:
        sql = "UPDATE job_queue SET attempts_made = %s, available_at = %s, locked_until = NULL WHERE id = %s"
        return self._write(sql, (attempts_made, available_at, entry_id)) > 0

    def remove_entry(self, entry_id: str) -> bool:
        return self._write("DELETE FROM job_queue WHERE id = %s", (entry_id,)) > 0

    def queue_depth(self) -> int:
        row = self._fetch_one("SELECT COUNT(*) AS depth FROM job_queue")
        return int(row['depth']) if row else 0
