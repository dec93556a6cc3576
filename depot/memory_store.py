"""
MemoryStore - In-process store with the same interface as MySqlStore.

Used for local runs and tests. All operations take one lock, so counter
updates and compare-and-set transitions are atomic just like their SQL
counterparts.
"""

import logging
import threading
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from .records import Image, Job, QueueEntry, Resource, User, utcnow
from .statuses import ImageStatus, ResourceStatus


class MemoryStore:
    """
    Thread-safe in-memory store for users, resources, images, jobs and the queue.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.RLock()
        self._users: Dict[str, User] = {}
        self._resources: Dict[str, Resource] = {}
        self._images: Dict[str, Image] = {}
        self._jobs: Dict[str, Job] = {}
        self._queue: Dict[str, QueueEntry] = {}

    def create_tables(self) -> None:
        """Nothing to create; kept for interface parity."""
        self.logger.debug("MemoryStore ready")

    # --- Users ------------------------------------------------------------------

    def create_user(self, user: User) -> User:
        with self._lock:
            self._users[user.id] = replace(user)
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._lock:
            user = self._users.get(user_id)
            return replace(user) if user else None

    def increment_storage_used(self, user_id: str, nbytes: int) -> bool:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return False
            user.storage_used += nbytes
            return True

    def decrement_storage_used(self, user_id: str, nbytes: int) -> bool:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return False
            user.storage_used = max(user.storage_used - nbytes, 0)
            return True

    def set_storage_quota(self, user_id: str, quota_bytes: int) -> bool:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return False
            user.storage_quota = quota_bytes
            return True

    # --- Resources --------------------------------------------------------------

    def create_resource(self, resource: Resource) -> Resource:
        with self._lock:
            self._resources[resource.id] = replace(resource)
            return replace(resource)

    def get_resource(self, resource_id: str) -> Optional[Resource]:
        with self._lock:
            resource = self._resources.get(resource_id)
            return replace(resource) if resource else None

    def set_resource_status(self, resource_id: str, status: ResourceStatus) -> bool:
        with self._lock:
            resource = self._resources.get(resource_id)
            if resource is None:
                return False
            resource.status = ResourceStatus(status)
            resource.updated_at = utcnow()
            return True

    def delete_resource(self, resource_id: str) -> Optional[List[Image]]:
        """
        Delete a resource, cascading to its images and their jobs.

        Returns:
            The deleted images, or None if the resource did not exist
        """
        with self._lock:
            if self._resources.pop(resource_id, None) is None:
                return None
            images = self.list_images(resource_id)
            image_ids = {i.id for i in images}
            for image_id in image_ids:
                del self._images[image_id]
            for job_id in [j.id for j in self._jobs.values() if j.image_id in image_ids]:
                del self._jobs[job_id]
            return images

    # --- Images -----------------------------------------------------------------

    def create_image(self, image: Image) -> Image:
        with self._lock:
            self._images[image.id] = replace(image)
            return replace(image)

    def get_image(self, image_id: str) -> Optional[Image]:
        with self._lock:
            image = self._images.get(image_id)
            return replace(image) if image else None

    def list_images(self, resource_id: str) -> List[Image]:
        with self._lock:
            images = [replace(i) for i in self._images.values() if i.resource_id == resource_id]
        return sorted(images, key=lambda i: i.order_index)

    def update_image(self, image_id: str, **fields) -> bool:
        with self._lock:
            image = self._images.get(image_id)
            if image is None:
                return False
            for name, value in fields.items():
                setattr(image, name, value)
            image.updated_at = utcnow()
            return True

    def transition_image(
        self,
        image_id: str,
        sources: Iterable[ImageStatus],
        target: ImageStatus,
        **fields
    ) -> bool:
        """Move an image to target only if its status is one of sources."""
        with self._lock:
            image = self._images.get(image_id)
            if image is None or image.status not in set(sources):
                return False
            return self.update_image(image_id, status=ImageStatus(target), **fields)

    def complete_image(
        self,
        image_id: str,
        sources: Iterable[ImageStatus],
        user_id: str,
        credit_bytes: int,
        **fields
    ) -> bool:
        """Move an image to ready and charge credit_bytes to user_id as one step."""
        with self._lock:
            if not self.transition_image(image_id, sources, ImageStatus.READY, **fields):
                return False
            if credit_bytes:
                self.increment_storage_used(user_id, credit_bytes)
            return True

    # --- Jobs -------------------------------------------------------------------

    def create_job(self, job: Job) -> Job:
        with self._lock:
            self._jobs[job.id] = replace(job)
            return replace(job)

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job else None

    def update_job(self, job_id: str, **fields) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return False
            for name, value in fields.items():
                setattr(job, name, value)
            return True

    def list_jobs_for_resource(self, resource_id: str) -> List[Job]:
        with self._lock:
            image_ids = {i.id for i in self._images.values() if i.resource_id == resource_id}
            return [replace(j) for j in self._jobs.values() if j.image_id in image_ids]

    # --- Queue ------------------------------------------------------------------

    def enqueue(self, entry: QueueEntry) -> None:
        with self._lock:
            self._queue[entry.id] = replace(entry)

    def claim_next(self, now: float, lease_seconds: float) -> Optional[QueueEntry]:
        """Claim the oldest available entry and hide it for lease_seconds."""
        with self._lock:
            ready = [
                e for e in self._queue.values()
                if e.available_at <= now and (e.locked_until is None or e.locked_until <= now)
            ]
            if not ready:
                return None
            entry = min(ready, key=lambda e: e.available_at)
            entry.locked_until = now + lease_seconds
            return replace(entry)

    def reschedule(self, entry_id: str, attempts_made: int, available_at: float) -> bool:
        with self._lock:
            entry = self._queue.get(entry_id)
            if entry is None:
                return False
            entry.attempts_made = attempts_made
            entry.available_at = available_at
            entry.locked_until = None
            return True

    def remove_entry(self, entry_id: str) -> bool:
        with self._lock:
            return self._queue.pop(entry_id, None) is not None

    def queue_depth(self) -> int:
        with self._lock:
            return len(self._queue)
