"""
ResourceService - Operations on users, resources and images used by the CLI and HTTP adapter.
"""

import logging
import os
import uuid
from typing import Dict, List, Optional

from .config import DepotConfig
from .dispatcher import JobDispatcher
from .exceptions import AccessDenied, ResourceNotFound, ResourceNotReady
from .ledger import QuotaLedger, format_bytes
from .manifest import build_manifest
from .records import Image, ProcessingRequest, Resource, User
from .statuses import ImageStatus, ResourceStatus
from .synchronizer import StateSynchronizer

VISIBILITIES = ('public', 'private')
VIEWING_DIRECTIONS = ('left-to-right', 'right-to-left', 'top-to-bottom', 'bottom-to-top')
OUTPUT_EXTENSION = '.tif'


class ResourceService:
    """
    Facade over the store, dispatcher, synchronizer and ledger.
    """

    def __init__(
        self,
        store,
        dispatcher: JobDispatcher,
        synchronizer: StateSynchronizer,
        ledger: QuotaLedger,
        config: DepotConfig,
        logger: Optional[logging.Logger] = None
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.sync = synchronizer
        self.ledger = ledger
        self.config = config
        self.logger = logger or logging.getLogger(__name__)

    def create_user(self, email: str, name: str, quota_bytes: Optional[int] = None) -> User:
        """Create a user with the configured default quota unless one is given."""
        user = User(
            id=str(uuid.uuid4()),
            email=email,
            name=name,
            storage_quota=self.config.default_quota_bytes if quota_bytes is None else quota_bytes,
        )
        self.store.create_user(user)
        self.logger.info(f"Created user {user.id} ({email}), quota {format_bytes(user.storage_quota)}")
        return user

    def create_resource(
        self,
        user_id: str,
        title: str,
        visibility: str = 'public',
        description: Optional[str] = None,
        attribution: Optional[str] = None,
        license: Optional[str] = None,
        homepage: Optional[str] = None,
        viewing_direction: Optional[str] = 'left-to-right',
        metadata: Optional[List[Dict[str, str]]] = None
    ) -> Resource:
        """
        Create an empty resource for a user.

        Raises:
            ValueError: on an unknown user or invalid field value
        """
        if self.store.get_user(user_id) is None:
            raise ValueError(f"Unknown user: {user_id}")
        if not title or not title.strip():
            raise ValueError("Title is required")
        if visibility not in VISIBILITIES:
            raise ValueError(f"Visibility must be one of {', '.join(VISIBILITIES)}")
        if viewing_direction and viewing_direction not in VIEWING_DIRECTIONS:
            raise ValueError(f"Viewing direction must be one of {', '.join(VIEWING_DIRECTIONS)}")

        resource = Resource(
            id=str(uuid.uuid4()),
            user_id=user_id,
            title=title.strip(),
            # No images yet; the first add_image moves it to processing
            status=ResourceStatus.aggregate([]),
            visibility=visibility,
            description=description or None,
            attribution=attribution or None,
            license=license or None,
            homepage=homepage or None,
            viewing_direction=viewing_direction or None,
            metadata=Resource.encode_metadata(metadata),
        )
        self.store.create_resource(resource)
        self.logger.info(f"Created resource {resource.id} '{resource.title}' for user {user_id}")
        return resource

    def _require_resource(self, resource_id: str) -> Resource:
        resource = self.store.get_resource(resource_id)
        if resource is None:
            raise ResourceNotFound(f"Resource {resource_id} not found")
        return resource

    def add_image(
        self,
        resource_id: str,
        source_path: str,
        original_filename: Optional[str] = None,
        mime_type: str = 'image/jpeg'
    ) -> Image:
        """
        Register an uploaded file as the next image of a resource.

        The upload's bytes are admitted against the owner's quota and then
        credited; the tiled output is credited later, when conversion succeeds.

        Raises:
            ResourceNotFound: if the resource does not exist
            QuotaExceeded: if the file does not fit in the owner's quota
        """
        resource = self._require_resource(resource_id)
        byte_size = os.path.getsize(source_path)
        self.ledger.ensure_capacity(resource.user_id, byte_size)

        image_id = str(uuid.uuid4())
        image = Image(
            id=image_id,
            resource_id=resource_id,
            user_id=resource.user_id,
            original_filename=original_filename or os.path.basename(source_path),
            source_path=source_path,
            byte_size=byte_size,
            order_index=len(self.store.list_images(resource_id)),
            mime_type=mime_type,
        )
        self.store.create_image(image)
        self.ledger.credit(resource.user_id, byte_size)
        self.sync.aggregate_resource(resource_id)

        warning = self.ledger.usage_warning(resource.user_id)
        if warning:
            self.logger.warning(f"User {resource.user_id} has used {warning}% of their storage quota")
        return image

    def _request_for(self, image: Image) -> ProcessingRequest:
        return ProcessingRequest(
            image_id=image.id,
            resource_id=image.resource_id,
            user_id=image.user_id,
            source_path=image.source_path,
            output_path=image.output_path
            or os.path.join(self.config.output_dir, f"{image.id}{OUTPUT_EXTENSION}"),
        )

    def dispatch_image(self, image_id: str) -> str:
        """Dispatch one image for conversion and return its job id."""
        image = self.store.get_image(image_id)
        if image is None:
            raise ResourceNotFound(f"Image {image_id} not found")
        return self.dispatcher.dispatch(self._request_for(image))

    def submit(self, resource_id: str, include_failed: bool = False) -> List[str]:
        """
        Dispatch every uploaded image of a resource.

        Args:
            resource_id: Resource to submit
            include_failed: Also re-dispatch images whose jobs failed

        Returns:
            Job ids, in canvas order
        """
        self._require_resource(resource_id)
        wanted = {ImageStatus.UPLOADED}
        if include_failed:
            wanted.add(ImageStatus.FAILED)
        job_ids = [
            self.dispatcher.dispatch(self._request_for(image))
            for image in self.store.list_images(resource_id)
            if image.status in wanted
        ]
        self.logger.info(f"Submitted {len(job_ids)} images of resource {resource_id}")
        return job_ids

    def get_status(self, resource_id: str) -> dict:
        """
        Per-image progress for polling.

        Returns:
            {'resource': {id, title, status}, 'images': [{id, filename, status,
            progress, error}], 'all_terminal': bool}
        """
        resource = self._require_resource(resource_id)
        images = self.store.list_images(resource_id)
        jobs = {job.image_id: job for job in self.store.list_jobs_for_resource(resource_id)}

        entries = []
        for image in images:
            job = jobs.get(image.id)
            entries.append({
                'id': image.id,
                'filename': image.original_filename,
                'status': image.status.value,
                'progress': job.progress if job else 0,
                'error': image.error_message,
            })

        return {
            'resource': {
                'id': resource.id,
                'title': resource.title,
                'status': resource.status.value,
            },
            'images': entries,
            'all_terminal': all(image.status.is_terminal for image in images),
        }

    def check_access(self, resource_id: str, viewer_id: Optional[str] = None) -> Resource:
        """
        Return the resource if the viewer may read it.

        Raises:
            ResourceNotFound: if the resource does not exist
            AccessDenied: if the resource is private and viewer is not its owner
        """
        resource = self._require_resource(resource_id)
        if not resource.is_public and viewer_id != resource.user_id:
            raise AccessDenied(f"Resource {resource_id} is private")
        return resource

    def get_manifest(self, resource_id: str, viewer_id: Optional[str] = None) -> dict:
        """
        Build the manifest of a ready resource.

        Args:
            resource_id: Resource to render
            viewer_id: Authenticated user, if any

        Raises:
            ResourceNotFound: if the resource does not exist
            AccessDenied: if the resource is private and viewer is not its owner
            ResourceNotReady: if the resource is not ready
        """
        resource = self.check_access(resource_id, viewer_id)
        if resource.status is not ResourceStatus.READY:
            raise ResourceNotReady(resource_id, resource.status)

        manifest = build_manifest(
            resource,
            self.store.list_images(resource_id),
            base_url=self.config.base_url,
            image_service_url=self.config.image_service_url,
            thumbnail_size=self.config.thumbnail_size,
            languages=self.config.manifest_languages,
            logger=self.logger,
        )
        self.logger.info(f"Manifest generated for resource {resource_id}")
        return manifest

    def delete_resource(self, resource_id: str, owner_id: Optional[str] = None) -> int:
        """
        Delete a resource, its images and their files, and release their storage.

        In-flight conversions are not cancelled; their later reports are
        ignored because the rows are gone.

        Args:
            resource_id: Resource to delete
            owner_id: When given, must match the resource owner

        Returns:
            Bytes released from the owner's ledger
        """
        resource = self._require_resource(resource_id)
        if owner_id is not None and owner_id != resource.user_id:
            raise AccessDenied(f"Resource {resource_id} belongs to another user")

        images = self.store.delete_resource(resource_id)
        if images is None:
            raise ResourceNotFound(f"Resource {resource_id} not found")

        released = 0
        for image in images:
            released += image.byte_size + (image.output_size or 0)
            for path in (image.source_path, image.output_path):
                if path:
                    self._remove_file(path)

        self.ledger.debit(resource.user_id, released)
        self.logger.info(
            f"Deleted resource {resource_id} ({len(images)} images, {format_bytes(released)} released)"
        )
        return released

    def _remove_file(self, path: str) -> None:
        try:
            os.remove(path)
            self.logger.debug(f"Deleted file: {path}")
        except FileNotFoundError:
            pass
        except OSError as e:
            self.logger.error(f"Failed to delete file {path}: {e}")
