"""
Statuses - Closed status types for jobs, images and resources.

Each entity has an explicit transition table. Anything not listed is illegal
and raises IllegalTransition.
"""

from enum import Enum
from typing import Dict, FrozenSet, Iterable

from .exceptions import IllegalTransition


class JobStatus(str, Enum):
    WAITING = 'waiting'
    ACTIVE = 'active'
    COMPLETED = 'completed'
    FAILED = 'failed'

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class ImageStatus(str, Enum):
    UPLOADED = 'uploaded'
    PROCESSING = 'processing'
    READY = 'ready'
    FAILED = 'failed'

    @property
    def is_terminal(self) -> bool:
        return self in (ImageStatus.READY, ImageStatus.FAILED)


class ResourceStatus(str, Enum):
    PROCESSING = 'processing'
    READY = 'ready'
    FAILED = 'failed'

    @classmethod
    def aggregate(cls, image_statuses: Iterable[ImageStatus]) -> 'ResourceStatus':
        """
        Derive a resource status from the statuses of its images.

        Any image still uploaded/processing keeps the resource processing.
        Once every image is terminal the resource is ready, unless at least
        one image failed. A resource with no images is failed, since it
        can never produce a canvas.

        Args:
            image_statuses: Current statuses of every image in the resource

        Returns:
            The resource status
        """
        statuses = [ImageStatus(s) for s in image_statuses]
        if not statuses:
            return cls.FAILED
        if not all(s.is_terminal for s in statuses):
            return cls.PROCESSING
        if any(s is ImageStatus.FAILED for s in statuses):
            return cls.FAILED
        return cls.READY


JOB_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.WAITING: frozenset({JobStatus.ACTIVE}),
    # active -> active happens when a lease expires after a worker crash
    JobStatus.ACTIVE: frozenset({JobStatus.ACTIVE, JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.FAILED: frozenset({JobStatus.WAITING, JobStatus.ACTIVE}),
    JobStatus.COMPLETED: frozenset(),
}

IMAGE_TRANSITIONS: Dict[ImageStatus, FrozenSet[ImageStatus]] = {
    ImageStatus.UPLOADED: frozenset({ImageStatus.PROCESSING, ImageStatus.FAILED}),
    ImageStatus.PROCESSING: frozenset({ImageStatus.PROCESSING, ImageStatus.READY, ImageStatus.FAILED}),
    ImageStatus.FAILED: frozenset({ImageStatus.PROCESSING}),
    ImageStatus.READY: frozenset(),
}


def can_transition(current, target) -> bool:
    """Return True if current -> target is allowed for the status type."""
    if isinstance(current, JobStatus):
        return JobStatus(target) in JOB_TRANSITIONS[current]
    if isinstance(current, ImageStatus):
        return ImageStatus(target) in IMAGE_TRANSITIONS[current]
    if isinstance(current, ResourceStatus):
        # Resource status is recomputed, never driven by a table
        ResourceStatus(target)
        return True
    raise TypeError(f"Unknown status type: {type(current).__name__}")


def check_transition(current, target) -> None:
    """Raise IllegalTransition unless current -> target is allowed."""
    if not can_transition(current, target):
        entity = type(current).__name__.replace('Status', '').lower()
        raise IllegalTransition(entity, current, type(current)(target))


def image_sources_for(target: ImageStatus) -> FrozenSet[ImageStatus]:
    """Return every image status from which target may be reached."""
    return frozenset(s for s, allowed in IMAGE_TRANSITIONS.items() if target in allowed)
