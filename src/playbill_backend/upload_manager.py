"""
Upload orchestration for posters and profile pictures.

This module sequences the pipeline for a single request:
- Authorization and target validation (entity kind, id shape, existence)
- Content validation and transcoding
- Object store write, then registry write
- Profile replacement cleanup for profile pictures

It also implements the purpose-agnostic media upload into the caller's own
library and the delete and list paths. There is no transaction
spanning the object store and the registry; consistency is kept with
compensating actions that only ever run store -> registry:

- A store failure leaves nothing to undo (the registry is never touched).
- A registry failure after a successful store write triggers one
  best-effort delete of the just-written key.
- Cleanup after a successful profile upload is lenient: each failure is
  logged and skipped, and the request still succeeds.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional
from uuid import uuid4

from .catalog import EntityCatalog
from .database import AssetDatabase, AssetRecord
from .errors import (
    EntityNotFoundError,
    ForbiddenError,
    InvalidFileError,
    InvalidTargetError,
    NoFileError,
    NotFoundError,
    RegistryFault,
    UnauthenticatedError,
    UploadError,
)
from .image_processor import ImageProcessor, ProcessedImage
from .locking import KeyedLock
from .models import (
    DeleteResponse,
    EntityImagesResponse,
    EntityType,
    ImagePurpose,
    MediaUploadResponse,
    UploadEvent,
    UploadResponse,
    UploadState,
)
from .s3_service import ObjectStore, build_storage_key
from .token_store import Principal
from .utils import canonical_uuid, is_valid_uuid
from .validation import FieldValidator, FileValidator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadedFile:
    """A received multipart file, independent of the web framework."""

    filename: str
    content_type: Optional[str]
    data: bytes


@dataclass
class UploadContext:
    """
    State of a single upload request as it moves through the pipeline.

    Attributes:
        request_id: Short id used to correlate log lines
        purpose: poster or profile, once known
        state: Current pipeline state
        entity_type: Target entity kind, once validated
        entity_id: Target entity id, once validated
        storage_key: Key written to the object store, once stored
        events: Chronological state transitions
    """

    request_id: str
    purpose: Optional[ImagePurpose] = None
    state: UploadState = UploadState.RECEIVED
    entity_type: Optional[EntityType] = None
    entity_id: Optional[str] = None
    storage_key: Optional[str] = None
    events: List[UploadEvent] = field(default_factory=list)

    @property
    def label(self) -> str:
        return self.purpose.value if self.purpose else "media"

    def advance(self, state: UploadState, message: str) -> None:
        self.state = state
        self.events.append(UploadEvent(timestamp=datetime.now(timezone.utc), state=state, message=message))
        logger.info(f"[{self.request_id}] {self.label} upload -> {state.value}: {message}")

    def fail(self, error: UploadError) -> None:
        previous = self.state
        self.state = UploadState.FAILED
        self.events.append(
            UploadEvent(timestamp=datetime.now(timezone.utc), state=UploadState.FAILED, message=error.message)
        )
        log = logger.error if error.status_code >= 500 else logger.info
        log(f"[{self.request_id}] {self.label} upload failed after {previous.value}: {type(error).__name__}: {error.message}")


class UploadManager:
    """
    Coordinates validation, transcoding, storage and registration.

    Collaborators are injected so the same manager runs against S3 and
    SQLite in production and against fakes in tests.

    Thread Safety:
        Requests for different owners run fully in parallel. Profile
        registration and the cleanup that follows it are serialized per
        user through ``locks`` so concurrent profile uploads by the same
        user always leave exactly one profile image.
    """

    def __init__(
        self,
        store: ObjectStore,
        registry: AssetDatabase,
        catalog: EntityCatalog,
        validator: FileValidator,
        processor: ImageProcessor,
        locks: Optional[KeyedLock] = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.catalog = catalog
        self.validator = validator
        self.processor = processor
        self.locks = locks or KeyedLock()

    def upload_poster(
        self,
        principal: Optional[Principal],
        file: Optional[UploadedFile],
        entity_type: Optional[str],
        entity_id: Optional[str],
    ) -> UploadResponse:
        """
        Upload a poster for a musical or performance.

        Args:
            principal: Authenticated caller, or None
            file: The uploaded file, or None if the form had no file
            entity_type: Declared target kind (``musical`` or ``performance``)
            entity_id: Declared target id (UUID)

        Returns:
            UploadResponse describing the registered image

        Raises:
            UploadError: The matching subclass for whichever step failed
        """
        ctx = UploadContext(request_id=uuid4().hex[:8], purpose=ImagePurpose.POSTER)
        try:
            principal, file = self._authorize(ctx, principal, file)

            target_type, target_id = self._validate_poster_target(entity_type, entity_id)
            self.store.ensure_configured()
            ctx.entity_type, ctx.entity_id = target_type, target_id
            ctx.advance(UploadState.TARGET_VALIDATED, f"{target_type.value} {target_id}")

            record = self._ingest(ctx, principal, file)
            ctx.advance(UploadState.COMPLETE, f"image {record.id} registered")
            return self._to_response(record)
        except UploadError as exc:
            ctx.fail(exc)
            raise

    def upload_profile(self, principal: Optional[Principal], file: Optional[UploadedFile]) -> UploadResponse:
        """
        Upload the caller's profile picture, replacing any previous one.

        The target is always ``(user, principal.id)``. Once the new image is
        registered, every older profile image of the caller is deleted from
        the store and the registry; failures in that pass are logged only.
        """
        ctx = UploadContext(request_id=uuid4().hex[:8], purpose=ImagePurpose.PROFILE)
        try:
            principal, file = self._authorize(ctx, principal, file)

            self.store.ensure_configured()
            record = self._ingest_for_user(ctx, principal, file)

            ctx.advance(UploadState.COMPLETE, f"image {record.id} registered")
            return self._to_response(record)
        except UploadError as exc:
            ctx.fail(exc)
            raise

    def upload_media(
        self,
        principal: Optional[Principal],
        file: Optional[UploadedFile],
        image_type: Optional[str],
    ) -> MediaUploadResponse:
        """
        Upload an image of the declared purpose into the caller's own library.

        The owner is always ``(user, principal.id)`` whatever the purpose.
        A profile picture uploaded here replaces the caller's previous ones
        exactly as ``upload_profile`` does.

        Args:
            principal: Authenticated caller, or None
            file: The uploaded file, or None if the form had no file
            image_type: Declared purpose (``poster`` or ``profile``)

        Returns:
            MediaUploadResponse describing the registered image and its purpose
        """
        ctx = UploadContext(request_id=uuid4().hex[:8])
        try:
            principal, file = self._authorize(ctx, principal, file)

            purposes = [purpose.value for purpose in ImagePurpose]
            validator = FieldValidator()
            validator.check(bool(image_type), "imageType", "is required")
            validator.check(image_type in purposes, "imageType", "must be 'poster' or 'profile'")
            if not validator.valid:
                raise InvalidTargetError(validator.errors)
            ctx.purpose = ImagePurpose(image_type)

            self.store.ensure_configured()
            record = self._ingest_for_user(ctx, principal, file)

            ctx.advance(UploadState.COMPLETE, f"image {record.id} registered")
            return MediaUploadResponse(
                image_id=record.id,
                url=record.storage_locator,
                width=record.width,
                height=record.height,
                file_size=record.byte_size,
                image_type=record.purpose,
            )
        except UploadError as exc:
            ctx.fail(exc)
            raise

    def delete_image(self, principal: Optional[Principal], image_id: str) -> DeleteResponse:
        """
        Delete an image owned by the caller (or any image, for admins).

        The object is deleted before the registry row. A crash between the
        two leaves a row without bytes, which is accepted and reconciled
        manually.

        Raises:
            InvalidTargetError: If image_id is not a UUID
            UnauthenticatedError: If there is no principal
            NotFoundError: If no such image is registered
            ForbiddenError: If the caller is neither the uploader nor an admin
        """
        validator = FieldValidator()
        validator.check(bool(image_id), "imageId", "is required")
        if image_id:
            validator.check(is_valid_uuid(image_id), "imageId", "must be a valid UUID")
        if not validator.valid:
            raise InvalidTargetError(validator.errors)

        if principal is None:
            raise UnauthenticatedError()

        image_id = canonical_uuid(image_id)
        record = self.registry.get(image_id)
        if record is None:
            raise NotFoundError()

        if record.uploaded_by != principal.id and not principal.is_admin:
            logger.warning(f"User {principal.id} denied deleting image {image_id} owned by {record.uploaded_by}")
            raise ForbiddenError()

        self.store.delete(record.storage_key)
        self.registry.delete(record.id)
        logger.info(f"Image {record.id} deleted by {principal.id}")
        return DeleteResponse(message="Image deleted successfully")

    def list_entity_images(
        self,
        principal: Optional[Principal],
        entity_type: str,
        entity_id: str,
        image_type: Optional[str] = None,
    ) -> EntityImagesResponse:
        """
        List the images registered for an entity.

        Only the public projection is returned; storage keys never leave
        the service.
        """
        if principal is None:
            raise UnauthenticatedError()

        kinds = [kind.value for kind in EntityType]
        purposes = [purpose.value for purpose in ImagePurpose]
        validator = FieldValidator()
        validator.check(bool(entity_type), "entityType", "is required")
        validator.check(entity_type in kinds, "entityType", "must be 'musical', 'performance', or 'user'")
        validator.check(bool(entity_id), "entityId", "is required")
        if entity_id:
            validator.check(is_valid_uuid(entity_id), "entityId", "must be a valid UUID")
        if image_type:
            validator.check(image_type in purposes, "imageType", "must be 'poster' or 'profile'")
        if not validator.valid:
            raise InvalidTargetError(validator.errors)

        entity_id = canonical_uuid(entity_id)
        records = self.registry.list_by_entity(
            EntityType(entity_type),
            entity_id,
            ImagePurpose(image_type) if image_type else None,
        )
        return EntityImagesResponse(images=[record.to_view() for record in records])

    def _authorize(
        self,
        ctx: UploadContext,
        principal: Optional[Principal],
        file: Optional[UploadedFile],
    ) -> tuple[Principal, UploadedFile]:
        if principal is None:
            raise UnauthenticatedError()
        if file is None or not file.data:
            raise NoFileError()
        ctx.advance(UploadState.AUTHORIZED, f"principal {principal.id}, file {file.filename!r} ({len(file.data)} bytes)")
        return principal, file

    def _validate_poster_target(self, entity_type: Optional[str], entity_id: Optional[str]) -> tuple[EntityType, str]:
        policy = self.validator.policies[ImagePurpose.POSTER]
        allowed = sorted(kind.value for kind in policy.entity_types)

        validator = FieldValidator()
        validator.check(bool(entity_type), "type", "is required")
        validator.check(
            entity_type in allowed,
            "type",
            "must be " + " or ".join(f"'{kind}'" for kind in allowed),
        )
        validator.check(bool(entity_id), "entityId", "is required")
        if entity_id:
            validator.check(is_valid_uuid(entity_id), "entityId", "must be a valid UUID")
        if not validator.valid:
            raise InvalidTargetError(validator.errors)

        target_type = EntityType(entity_type)
        entity_id = canonical_uuid(entity_id)
        if not self.catalog.exists(target_type, entity_id):
            raise EntityNotFoundError(f"{target_type.value.capitalize()} not found")
        return target_type, entity_id

    def _ingest_for_user(self, ctx: UploadContext, principal: Principal, file: UploadedFile) -> AssetRecord:
        """Ingest under the caller's own user key; profile uploads also replace older profiles."""
        ctx.entity_type, ctx.entity_id = EntityType.USER, principal.id
        ctx.advance(UploadState.TARGET_VALIDATED, f"user {principal.id}")

        if ctx.purpose is not ImagePurpose.PROFILE:
            return self._ingest(ctx, principal, file)

        with self.locks.hold((EntityType.USER, principal.id)):
            record = self._ingest(ctx, principal, file)
            self._replace_previous_profiles(ctx, record)
        return record

    def _ingest(self, ctx: UploadContext, principal: Principal, file: UploadedFile) -> AssetRecord:
        """Validate, transcode, store and register; the shared core of both uploads."""
        validation = self.validator.validate(file.data, file.filename, ctx.purpose)
        if not validation.valid:
            raise InvalidFileError(validation.reason)
        ctx.advance(
            UploadState.CONTENT_VALIDATED,
            f"{validation.mime_type} {validation.width}x{validation.height}",
        )

        processed = self.processor.process(file.data, ctx.purpose)
        ctx.advance(UploadState.TRANSCODED, f"{processed.format} {processed.width}x{processed.height}")

        asset_id = str(uuid4())
        key = build_storage_key(ctx.purpose, ctx.entity_type, ctx.entity_id, processed.extension, asset_id)
        locator = self.store.put(
            processed.buffer,
            key,
            processed.mime_type,
            {
                "originalName": file.filename,
                "uploadedBy": principal.id,
                "entityType": ctx.entity_type.value,
                "entityId": ctx.entity_id,
            },
        )
        ctx.storage_key = key
        ctx.advance(UploadState.STORED, f"{processed.size} bytes written")

        record = self._build_record(ctx, principal, file, processed, asset_id, key, locator)
        try:
            record = self.registry.create(record)
        except Exception as exc:
            self._discard_orphan(ctx, key)
            if isinstance(exc, RegistryFault):
                raise
            raise RegistryFault(f"Failed to save image metadata: {exc}") from exc
        ctx.advance(UploadState.REGISTERED, f"image {record.id}")
        return record

    def _build_record(
        self,
        ctx: UploadContext,
        principal: Principal,
        file: UploadedFile,
        processed: ProcessedImage,
        asset_id: str,
        key: str,
        locator: str,
    ) -> AssetRecord:
        return AssetRecord(
            id=asset_id,
            original_filename=file.filename,
            storage_key=key,
            storage_locator=locator,
            byte_size=processed.size,
            mime_type=processed.mime_type,
            width=processed.width,
            height=processed.height,
            uploaded_by=principal.id,
            entity_type=ctx.entity_type,
            entity_id=ctx.entity_id,
            purpose=ctx.purpose,
            created_at=datetime.now(timezone.utc),
        )

    def _discard_orphan(self, ctx: UploadContext, key: str) -> None:
        """Single best-effort delete of an object whose registry write failed; never retried."""
        try:
            self.store.delete(key)
            logger.warning(f"[{ctx.request_id}] Removed orphaned object after registry failure")
        except UploadError as exc:
            logger.error(f"[{ctx.request_id}] Orphaned object left in store after registry failure: {exc.message}")

    def _replace_previous_profiles(self, ctx: UploadContext, current: AssetRecord) -> None:
        try:
            previous = [
                record
                for record in self.registry.list_by_entity(EntityType.USER, current.entity_id, ImagePurpose.PROFILE)
                if record.id != current.id
            ]
        except RegistryFault as exc:
            logger.warning(f"[{ctx.request_id}] Could not list previous profile images: {exc.message}")
            return

        removed = 0
        for record in previous:
            try:
                self.store.delete(record.storage_key)
            except UploadError as exc:
                # Keep the row so it still points at bytes that exist
                logger.warning(f"[{ctx.request_id}] Failed to delete stored profile image {record.id}: {exc.message}")
                continue
            try:
                self.registry.delete(record.id)
            except RegistryFault as exc:
                logger.warning(f"[{ctx.request_id}] Failed to delete profile image record {record.id}: {exc.message}")
                continue
            removed += 1

        ctx.advance(UploadState.PROFILE_REPLACED, f"removed {removed} of {len(previous)} previous profile images")

    def _to_response(self, record: AssetRecord) -> UploadResponse:
        return UploadResponse(
            image_id=record.id,
            url=record.storage_locator,
            width=record.width,
            height=record.height,
            file_size=record.byte_size,
        )
