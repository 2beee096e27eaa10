"""
Image intake and outfit-swap orchestration.

A swap attempt moves through these stages::

    RECEIVED -> VALIDATED -> IMAGES_STORED -> DESCRIBING -> GENERATING
             -> PERSISTING -> COMPLETED

Anything that goes wrong after VALIDATED marks the swap FAILED. Before that
point nothing has been written, so a rejected upload leaves no trace.

Source images are tagged with the attempt's swap id before the swap row exists.
If the attempt dies before the row is written, ``vesty.db.cleanup`` collects
them later.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import StrEnum
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError

from . import db
from .blob_storage import ObjectStore, StoredObject, generate_object_key
from .db.store import RecordStore
from .errors import (
    GenerationEmptyResultError,
    UpstreamServiceError,
    ValidationError,
    VestyError,
)
from .generation import GeneratedImage, OutfitGenerator
from .image_processing import ImageMetadata, NormalizationFailure, normalize_image
from .image_utils import get_extension_from_content_type
from .validation import validate_file


class SwapStage(StrEnum):
    RECEIVED = "RECEIVED"
    VALIDATED = "VALIDATED"
    IMAGES_STORED = "IMAGES_STORED"
    DESCRIBING = "DESCRIBING"
    GENERATING = "GENERATING"
    PERSISTING = "PERSISTING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class SourceUpload:
    data: bytes
    content_type: str | None
    filename: str | None = None


@dataclass(frozen=True)
class PreparedImage:
    """A validated and normalized upload, ready to be stored."""

    data: bytes
    metadata: ImageMetadata
    image_type: db.ImageType
    filename: str | None = None


@dataclass(frozen=True)
class SwapOutcome:
    success: bool
    stage: SwapStage
    swap: db.Swap | None = None
    result_image: db.Image | None = None
    generated_image_url: str | None = None
    error: VestyError | None = None

    @property
    def message(self) -> str:
        if self.success:
            return "Outfit swap completed successfully"
        assert self.error is not None
        return self.error.message


def prepare_image(upload: SourceUpload, image_type: db.ImageType) -> PreparedImage:
    """
    Validate and normalize an upload.

    Raises ValidationError for anything the client got wrong. Has no side effects.
    """
    validate_file(len(upload.data), upload.content_type, upload.filename).raise_for_invalid()

    result = normalize_image(upload.data)
    if not result.success:
        assert result.failure is not None and result.error is not None
        if result.failure == NormalizationFailure.ENCODING_FAILED:
            raise VestyError("Image processing failed.", details=result.error)
        raise ValidationError(result.error, reason=result.failure.value)

    assert result.data is not None and result.metadata is not None
    return PreparedImage(
        data=result.data,
        metadata=result.metadata,
        image_type=image_type,
        filename=upload.filename,
    )


def put_prepared_image(
    object_store: ObjectStore, owner_id: str, prepared: PreparedImage
) -> StoredObject:
    key = generate_object_key(
        owner_id, get_extension_from_content_type(prepared.metadata.content_type)
    )
    return object_store.put(
        prepared.data,
        key,
        prepared.metadata.content_type,
        metadata={"image-type": prepared.image_type.value},
    )


def create_image_record(
    store: RecordStore,
    owner_id: str,
    prepared: PreparedImage,
    stored: StoredObject,
    *,
    swap_id: UUID | None = None,
) -> db.Image:
    assert stored.url is not None
    return store.create_image(
        user_id=owner_id,
        type=prepared.image_type,
        url=stored.url,
        storage_key=stored.key,
        filename=prepared.filename,
        file_size=prepared.metadata.size,
        content_type=prepared.metadata.content_type,
        width=prepared.metadata.width,
        height=prepared.metadata.height,
        swap_id=swap_id,
    )


class OutfitSwapper:
    """Runs one swap attempt from the two uploads to a COMPLETED or FAILED swap."""

    def __init__(
        self,
        store: RecordStore,
        object_store: ObjectStore,
        generator: OutfitGenerator,
    ):
        self.store = store
        self.object_store = object_store
        self.generator = generator

    def _store_sources(
        self, owner_id: str, swap_id: UUID, sources: list[PreparedImage]
    ) -> list[db.Image]:
        # Object uploads are independent, so run them side by side. Record
        # writes stay on this thread because the session is not thread-safe.
        with ThreadPoolExecutor(max_workers=len(sources)) as executor:
            stored_objects = list(
                executor.map(
                    lambda prepared: put_prepared_image(
                        self.object_store, owner_id, prepared
                    ),
                    sources,
                )
            )

        images: list[db.Image] = []
        failures: list[str] = []
        for prepared, stored in zip(sources, stored_objects, strict=True):
            if stored.success:
                images.append(
                    create_image_record(
                        self.store, owner_id, prepared, stored, swap_id=swap_id
                    )
                )
            else:
                failures.append(f"{prepared.image_type}: {stored.error}")

        if failures:
            raise UpstreamServiceError(
                "Could not store the uploaded images.",
                service="storage",
                details="; ".join(failures),
            )
        return images

    def _store_result(
        self, owner_id: str, swap_id: UUID, generated: GeneratedImage
    ) -> db.Image:
        try:
            extension = get_extension_from_content_type(generated.mime_type)
        except ValueError:
            extension = ".png"
        key = generate_object_key(owner_id, extension)

        stored = self.object_store.put_base64(
            generated.data,
            key,
            generated.mime_type,
            metadata={"image-type": db.ImageType.RESULT.value, "swap-id": str(swap_id)},
        )
        if not stored.success:
            raise UpstreamServiceError(
                "Could not store the generated image.",
                service="storage",
                details=stored.error,
            )

        assert stored.url is not None
        return self.store.create_image(
            user_id=owner_id,
            type=db.ImageType.RESULT,
            url=stored.url,
            storage_key=stored.key,
            filename=f"swap-result-{int(time.time() * 1000)}{extension}",
            file_size=stored.size,
            content_type=generated.mime_type,
            swap_id=swap_id,
        )

    def _mark_failed(self, swap: db.Swap | None, error: str) -> db.Swap | None:
        if swap is None:
            return None
        try:
            return self.store.update_swap_status(
                swap.id,
                db.SwapStatus.FAILED,
                error=error,
                processing_completed_at=db.utcnow(),
            )
        except (VestyError, SQLAlchemyError) as e:
            logging.error(f"Could not mark swap {swap.id} as failed: {e}")
            return swap

    def perform_swap(
        self, owner_id: str, person: SourceUpload, outfit: SourceUpload
    ) -> SwapOutcome:
        """
        Run a swap attempt.

        Raises ValidationError if either upload is rejected, in which case
        nothing was stored. Every later failure is reported through the
        returned outcome, with the swap row (if it was written) marked FAILED.
        """
        logging.info(f"Starting outfit swap for user {owner_id!r}")
        person_prepared = prepare_image(person, db.ImageType.SOURCE_PERSON)
        outfit_prepared = prepare_image(outfit, db.ImageType.SOURCE_OUTFIT)
        stage = SwapStage.VALIDATED

        swap_id = uuid4()
        swap: db.Swap | None = None
        try:
            person_image, outfit_image = self._store_sources(
                owner_id, swap_id, [person_prepared, outfit_prepared]
            )
            swap = self.store.create_swap(
                id=swap_id,
                user_id=owner_id,
                person_image_id=person_image.id,
                outfit_image_id=outfit_image.id,
            )
            swap = self.store.update_swap_status(
                swap.id, db.SwapStatus.PROCESSING, processing_started_at=db.utcnow()
            )
            stage = SwapStage.IMAGES_STORED
            logging.info(f"Stored source images for swap {swap_id}")

            stage = SwapStage.DESCRIBING
            description = self.generator.describe_outfit(
                outfit_prepared.data, outfit_prepared.metadata.content_type
            )

            stage = SwapStage.GENERATING
            try:
                generated = self.generator.generate_swap(
                    person_prepared.data,
                    person_prepared.metadata.content_type,
                    description,
                )
            except GenerationEmptyResultError as e:
                e.explanation = self.generator.explain_style(
                    person_prepared.data,
                    person_prepared.metadata.content_type,
                    description,
                )
                raise

            stage = SwapStage.PERSISTING
            result_image = self._store_result(owner_id, swap_id, generated)
            self.store.set_swap_result(swap_id, result_image.id)
            swap = self.store.update_swap_status(
                swap_id,
                db.SwapStatus.COMPLETED,
                processing_completed_at=db.utcnow(),
            )
        except VestyError as e:
            error = f"{e.kind}: {e.message}"
            if isinstance(e, GenerationEmptyResultError) and e.explanation:
                error = f"{error} Style analysis: {e.explanation}"
            logging.error(
                f"Swap {swap_id} failed while {stage}: {error} ({e.details or 'no details'})"
            )
            swap = self._mark_failed(swap, error)
            return SwapOutcome(success=False, stage=SwapStage.FAILED, swap=swap, error=e)
        except Exception:
            logging.exception(f"Swap {swap_id} failed unexpectedly while {stage}")
            self.store.session.rollback()
            self._mark_failed(swap, "internal: Unexpected error during outfit swap.")
            raise

        assert result_image.storage_key is not None
        generated_image_url = (
            self.object_store.get_temporary_access(result_image.storage_key)
            or result_image.url
        )
        logging.info(f"Swap {swap_id} completed with result image {result_image.id}")
        return SwapOutcome(
            success=True,
            stage=SwapStage.COMPLETED,
            swap=swap,
            result_image=result_image,
            generated_image_url=generated_image_url,
        )
