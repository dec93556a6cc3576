"""
Exceptions raised by the ingestion pipeline and its read endpoints.
"""

from typing import Optional


class DepotError(Exception):
    """Base class for all depot errors."""
    pass


class ConversionFailure(DepotError):
    """Raised when the converter cannot probe or convert a source image."""

    def __init__(self, message: str, source_path: Optional[str] = None):
        super().__init__(message)
        self.source_path = source_path


class TransientDispatchFailure(DepotError):
    """Raised when the store or queue is temporarily unavailable."""
    pass


class QuotaExceeded(DepotError):
    """Raised when an upload would push a user past their storage quota."""

    def __init__(self, user_id: str, requested: int, remaining: int):
        super().__init__(
            f"User {user_id} requested {requested} bytes but only {remaining} remain"
        )
        self.user_id = user_id
        self.requested = requested
        self.remaining = remaining


class IllegalTransition(DepotError, ValueError):
    """Raised when a status change is not allowed by the transition table."""

    def __init__(self, entity: str, current, target):
        super().__init__(f"Illegal {entity} transition: {current.value} -> {target.value}")
        self.entity = entity
        self.current = current
        self.target = target


class ResourceNotFound(DepotError):
    """Raised when a resource does not exist."""
    pass


class AccessDenied(DepotError):
    """Raised when a private resource is requested by someone other than its owner."""
    pass


class ResourceNotReady(DepotError):
    """Raised when a manifest is requested for a resource that is not ready."""

    def __init__(self, resource_id: str, status):
        super().__init__(f"Resource {resource_id} is not ready ({status.value})")
        self.resource_id = resource_id
        self.status = status
