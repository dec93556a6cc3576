"""
Records - Rows for users, resources, images, jobs and queue entries.
"""

import json
from dataclasses import dataclass, field, asdict, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .statuses import ImageStatus, JobStatus, ResourceStatus


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the database stores naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _serialize(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (JobStatus, ImageStatus, ResourceStatus)):
        return value.value
    return value


def _parse_datetime(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class _Row:
    """Shared to_dict/from_dict for the record dataclasses."""

    _STATUS_TYPE = None
    _DATETIME_FIELDS = ()

    def to_dict(self) -> dict:
        return {k: _serialize(v) for k, v in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: dict):
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        if cls._STATUS_TYPE is not None and values.get('status') is not None:
            values['status'] = cls._STATUS_TYPE(values['status'])
        for name in cls._DATETIME_FIELDS:
            if name in values:
                values[name] = _parse_datetime(values[name])
        return cls(**values)


@dataclass
class User(_Row):
    """
    A user and their storage ledger counters.

    Attributes:
        id: User id
        email: Login email
        name: Display name
        storage_quota: Allowed bytes
        storage_used: Bytes currently charged
    """
    id: str
    email: str
    name: str
    storage_quota: int
    storage_used: int = 0

    @property
    def storage_remaining(self) -> int:
        return max(self.storage_quota - self.storage_used, 0)


@dataclass
class Resource(_Row):
    """
    A user-owned collection of ordered images published as one manifest.

    Attributes:
        id: Resource id
        user_id: Owner
        title: Manifest label
        status: Aggregated from the images, never set by hand
        visibility: 'public' or 'private'
        description: Manifest summary
        attribution: Required statement text
        license: Rights URL
        homepage: Homepage URL
        viewing_direction: IIIF viewing direction
        metadata: JSON text holding a list of {label, value} pairs
    """
    _STATUS_TYPE = ResourceStatus
    _DATETIME_FIELDS = ('created_at', 'updated_at')

    id: str
    user_id: str
    title: str
    status: ResourceStatus = ResourceStatus.PROCESSING
    visibility: str = 'public'
    description: Optional[str] = None
    attribution: Optional[str] = None
    license: Optional[str] = None
    homepage: Optional[str] = None
    viewing_direction: Optional[str] = 'left-to-right'
    metadata: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_public(self) -> bool:
        return self.visibility == 'public'

    @staticmethod
    def encode_metadata(pairs: Optional[List[Dict[str, str]]]) -> Optional[str]:
        """Encode label/value pairs into the stored JSON text."""
        if not pairs:
            return None
        return json.dumps([{'label': p['label'], 'value': p['value']} for p in pairs])


@dataclass
class Image(_Row):
    """
    A single uploaded image and its conversion outcome.

    Attributes:
        id: Image id
        resource_id: Parent resource
        user_id: Owner (charged in the ledger)
        original_filename: Name as uploaded
        source_path: Where the original is stored
        byte_size: Size of the original in bytes
        order_index: Position of the canvas in the manifest
        output_path: Tiled output file, set when conversion succeeds
        output_size: Bytes credited for the output
        width: Probed width
        height: Probed height
        status: Processing status
        job_id: Job converting this image
        error_message: Last failure text
    """
    _STATUS_TYPE = ImageStatus
    _DATETIME_FIELDS = ('created_at', 'updated_at')

    id: str
    resource_id: str
    user_id: str
    original_filename: str
    source_path: str
    byte_size: int
    order_index: int
    mime_type: str = 'image/jpeg'
    output_path: Optional[str] = None
    output_size: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    status: ImageStatus = ImageStatus.UPLOADED
    job_id: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def has_dimensions(self) -> bool:
        return bool(self.width) and bool(self.height)


@dataclass
class Job(_Row):
    """Tracked attempt-sequence converting one image. The id survives retries."""
    _STATUS_TYPE = JobStatus
    _DATETIME_FIELDS = ('started_at', 'completed_at', 'created_at')

    id: str
    image_id: str
    status: JobStatus = JobStatus.WAITING
    progress: int = 0
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ProcessingRequest(_Row):
    """Queue payload for converting one image."""
    image_id: str
    resource_id: str
    user_id: str
    source_path: str
    output_path: str

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_json(cls, text: str) -> 'ProcessingRequest':
        return cls.from_dict(json.loads(text))


@dataclass
class QueueEntry(_Row):
    """
    A queued unit of work.

    Attributes:
        id: Queue entry id
        job_id: Job the entry drives
        payload: The processing request
        attempts_made: Attempts already run
        max_attempts: Retry policy limit
        backoff_delay: Retry policy base delay in seconds
        available_at: Epoch seconds before which the entry is not claimable
        locked_until: Epoch seconds until which a worker holds the entry
    """
    id: str
    job_id: str
    payload: ProcessingRequest
    attempts_made: int = 0
    max_attempts: int = 3
    backoff_delay: float = 5.0
    available_at: float = 0.0
    locked_until: Optional[float] = None

    def to_dict(self) -> dict:
        data = super().to_dict()
        data['payload'] = self.payload.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'QueueEntry':
        data = dict(data)
        payload = data.get('payload')
        if isinstance(payload, str):
            data['payload'] = ProcessingRequest.from_json(payload)
        elif isinstance(payload, dict):
            data['payload'] = ProcessingRequest.from_dict(payload)
        return super().from_dict(data)
