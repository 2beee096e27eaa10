"""
Record store gateway: the only place that reads or writes users, images and swaps.

The data model's invariants are enforced here rather than by the database, so
callers behave the same whether or not the backing store has foreign key
support:

- deleting a user removes their swaps, then their images, then the user
- an image used as a swap's person or outfit image cannot be deleted
- deleting a result image clears the swap's reference to it
- a swap's images must belong to the swap's owner
- swap status only moves forward and a result image is set at most once
"""

import logging
from datetime import datetime
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import exists, func, or_
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from ..errors import (
    ImageInUseError,
    InvalidStatusTransitionError,
    NotFoundError,
    OwnershipMismatchError,
    RecordStoreError,
    ResultAlreadySetError,
)
from .models import Image, ImageType, Swap, SwapStatus, User, utcnow

_ALLOWED_TRANSITIONS: dict[SwapStatus, set[SwapStatus]] = {
    SwapStatus.PENDING: {SwapStatus.PENDING, SwapStatus.PROCESSING, SwapStatus.FAILED},
    SwapStatus.PROCESSING: {
        SwapStatus.PROCESSING,
        SwapStatus.COMPLETED,
        SwapStatus.FAILED,
    },
    SwapStatus.COMPLETED: set(),
    SwapStatus.FAILED: set(),
}

# Image fields that may be patched after creation
_MUTABLE_IMAGE_FIELDS = {
    "url",
    "storage_key",
    "filename",
    "file_size",
    "content_type",
    "width",
    "height",
}


class RecordStore:
    def __init__(self, session: Session):
        self.session = session

    def _commit(self, *instances: Any) -> None:
        self.session.commit()
        for instance in instances:
            self.session.refresh(instance)

    # Users

    def get_user(self, user_id: str) -> User | None:
        return self.session.get(User, user_id)

    def upsert_user(
        self, user_id: str, *, email: str | None = None, name: str | None = None
    ) -> tuple[User, bool]:
        """
        Create the user if absent, otherwise update the fields that were given.

        Returns the user and whether it was created. Safe to call concurrently
        for the same ID: losing the insert race falls back to an update.
        """
        user = self.get_user(user_id)

        if user is None:
            try:
                user = User(id=user_id, email=email, name=name)
                self.session.add(user)
                self._commit(user)
                logging.info(f"Created user {user_id!r}")
                return user, True
            except IntegrityError:
                # Another request created the user concurrently
                logging.warning(
                    f"User creation raced with another insert for {user_id!r}, retrying as update"
                )
                self.session.rollback()
                user = self.get_user(user_id)
                if user is None:
                    raise RecordStoreError(
                        "Could not create user.", details=f"email {email!r} is taken"
                    )

        changed = False
        if email is not None and user.email != email:
            user.email = email
            changed = True
        if name is not None and user.name != name:
            user.name = name
            changed = True

        if changed:
            user.updated_at = utcnow()
            try:
                self._commit(user)
            except IntegrityError:
                self.session.rollback()
                raise RecordStoreError(
                    "Could not update user.", details=f"email {email!r} is taken"
                )
            logging.info(f"Updated user {user_id!r}")

        return user, False

    def delete_user(self, user_id: str) -> list[str]:
        """
        Delete a user with all of their swaps and images.

        Returns the storage keys of the deleted images so the caller can remove
        the objects themselves.
        """
        user = self.get_user(user_id)
        if user is None:
            logging.info(f"User {user_id!r} does not exist, nothing to delete")
            return []

        swaps = self.session.exec(select(Swap).where(Swap.user_id == user_id)).all()
        for swap in swaps:
            self.session.delete(swap)
        self.session.flush()

        images = self.session.exec(select(Image).where(Image.user_id == user_id)).all()
        storage_keys = [image.storage_key for image in images if image.storage_key]
        for image in images:
            self.session.delete(image)
        self.session.flush()

        self.session.delete(user)
        self.session.commit()
        logging.info(
            f"Deleted user {user_id!r} with {len(images)} images and {len(swaps)} swaps"
        )
        return storage_keys

    def user_stats(self, user_id: str) -> dict[str, int]:
        def count_swaps(status: SwapStatus | None = None) -> int:
            query = select(func.count()).select_from(Swap).where(Swap.user_id == user_id)
            if status is not None:
                query = query.where(Swap.status == status)
            return self.session.exec(query).one()

        total_images = self.session.exec(
            select(func.count()).select_from(Image).where(Image.user_id == user_id)
        ).one()
        return {
            "totalImages": total_images,
            "totalSwaps": count_swaps(),
            "completedSwaps": count_swaps(SwapStatus.COMPLETED),
            "pendingSwaps": count_swaps(SwapStatus.PENDING),
        }

    # Images

    def create_image(
        self,
        *,
        user_id: str,
        type: ImageType,
        url: str,
        storage_key: str | None = None,
        filename: str | None = None,
        file_size: int | None = None,
        content_type: str | None = None,
        width: int | None = None,
        height: int | None = None,
        swap_id: UUID | None = None,
    ) -> Image:
        if self.get_user(user_id) is None:
            raise NotFoundError(f"User {user_id!r} not found.")

        image = Image(
            user_id=user_id,
            type=type,
            url=url,
            storage_key=storage_key,
            filename=filename,
            file_size=file_size,
            content_type=content_type,
            width=width,
            height=height,
            swap_id=swap_id,
        )
        self.session.add(image)
        self._commit(image)
        logging.info(f"Created {type} image {image.id} for user {user_id!r}")
        return image

    def get_image(self, image_id: UUID) -> Image | None:
        return self.session.get(Image, image_id)

    def get_owned_image(self, image_id: UUID, user_id: str) -> Image | None:
        return self.session.exec(
            select(Image).where(Image.id == image_id).where(Image.user_id == user_id)
        ).one_or_none()

    def list_images(
        self,
        user_id: str,
        *,
        type: ImageType | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> tuple[Sequence[Image], int]:
        """Images owned by a user, newest first, with the total before pagination."""
        query = select(Image).where(Image.user_id == user_id)
        count_query = select(func.count()).select_from(Image).where(Image.user_id == user_id)
        if type is not None:
            query = query.where(Image.type == type)
            count_query = count_query.where(Image.type == type)

        query = query.order_by(col(Image.created_at).desc()).offset(offset)
        if limit is not None:
            query = query.limit(limit)

        return self.session.exec(query).all(), self.session.exec(count_query).one()

    def update_image(self, image_id: UUID, **changes: Any) -> Image:
        unknown = set(changes) - _MUTABLE_IMAGE_FIELDS
        if unknown:
            raise ValueError(f"Image fields cannot be changed: {sorted(unknown)}")

        image = self.get_image(image_id)
        if image is None:
            raise NotFoundError(f"Image {image_id} not found.")

        for name, value in changes.items():
            setattr(image, name, value)
        image.updated_at = utcnow()
        self._commit(image)
        return image

    def delete_image(self, image_id: UUID) -> Image:
        """
        Delete an image row and return it.

        Raises ImageInUseError while a swap uses the image as its person or
        outfit image. Swaps that produced the image as their result keep
        existing with the reference cleared.
        """
        image = self.get_image(image_id)
        if image is None:
            raise NotFoundError(f"Image {image_id} not found.")

        referencing_swap = self.session.exec(
            select(Swap).where(
                or_(
                    col(Swap.person_image_id) == image_id,
                    col(Swap.outfit_image_id) == image_id,
                )
            )
        ).first()
        if referencing_swap is not None:
            raise ImageInUseError(
                "Image is used by a swap and cannot be deleted.",
                details=f"referenced by swap {referencing_swap.id}",
            )

        for swap in self.session.exec(
            select(Swap).where(Swap.result_image_id == image_id)
        ).all():
            swap.result_image_id = None
            swap.updated_at = utcnow()
            self.session.add(swap)

        self.session.delete(image)
        self.session.commit()
        logging.info(f"Deleted image {image_id}")
        return image

    def find_orphaned_images(self, older_than: datetime) -> Sequence[Image]:
        """Images created for a swap attempt whose swap row was never written."""
        swap_exists = exists().where(Swap.id == Image.swap_id)
        return self.session.exec(
            select(Image)
            .where(col(Image.swap_id).is_not(None))
            .where(col(Image.created_at) < older_than)
            .where(~swap_exists)
        ).all()

    # Swaps

    def create_swap(
        self,
        *,
        user_id: str,
        person_image_id: UUID,
        outfit_image_id: UUID,
        id: UUID | None = None,
        status: SwapStatus = SwapStatus.PENDING,
    ) -> Swap:
        for label, image_id in (("person", person_image_id), ("outfit", outfit_image_id)):
            image = self.get_image(image_id)
            if image is None or image.user_id != user_id:
                raise OwnershipMismatchError(
                    f"The {label} image does not belong to this user.",
                    details=f"image {image_id}",
                )
        if status.is_terminal:
            raise InvalidStatusTransitionError(f"A swap cannot start out {status}.")

        swap = Swap(
            user_id=user_id,
            person_image_id=person_image_id,
            outfit_image_id=outfit_image_id,
            status=status,
        )
        if id is not None:
            swap.id = id
        self.session.add(swap)
        self._commit(swap)
        logging.info(f"Created swap {swap.id} for user {user_id!r}")
        return swap

    def get_swap(self, swap_id: UUID) -> Swap | None:
        return self.session.get(Swap, swap_id)

    def list_swaps(
        self,
        user_id: str,
        *,
        status: SwapStatus | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> tuple[Sequence[Swap], int]:
        """Swaps owned by a user, newest first, with the total before pagination."""
        query = select(Swap).where(Swap.user_id == user_id)
        count_query = select(func.count()).select_from(Swap).where(Swap.user_id == user_id)
        if status is not None:
            query = query.where(Swap.status == status)
            count_query = count_query.where(Swap.status == status)

        query = query.order_by(col(Swap.created_at).desc()).offset(offset)
        if limit is not None:
            query = query.limit(limit)

        return self.session.exec(query).all(), self.session.exec(count_query).one()

    def _require_swap(self, swap_id: UUID) -> Swap:
        swap = self.get_swap(swap_id)
        if swap is None:
            raise NotFoundError(f"Swap {swap_id} not found.")
        return swap

    def update_swap_status(
        self,
        swap_id: UUID,
        status: SwapStatus,
        *,
        error: str | None = None,
        processing_started_at: datetime | None = None,
        processing_completed_at: datetime | None = None,
    ) -> Swap:
        swap = self._require_swap(swap_id)
        if status not in _ALLOWED_TRANSITIONS[swap.status]:
            raise InvalidStatusTransitionError(
                f"Swap cannot move from {swap.status} to {status}.",
                details=f"swap {swap_id}",
            )

        swap.status = status
        if error is not None:
            swap.error = error
        if processing_started_at is not None:
            swap.processing_started_at = processing_started_at
        if processing_completed_at is not None:
            swap.processing_completed_at = processing_completed_at
        swap.updated_at = utcnow()
        self.session.add(swap)
        self._commit(swap)
        logging.info(f"Swap {swap_id} is now {status}")
        return swap

    def set_swap_result(self, swap_id: UUID, result_image_id: UUID) -> Swap:
        swap = self._require_swap(swap_id)
        if swap.result_image_id is not None:
            raise ResultAlreadySetError(
                "Swap already has a result image.", details=f"swap {swap_id}"
            )
        if swap.status.is_terminal:
            raise InvalidStatusTransitionError(
                f"Cannot attach a result to a {swap.status} swap.",
                details=f"swap {swap_id}",
            )

        image = self.get_image(result_image_id)
        if image is None or image.user_id != swap.user_id:
            raise OwnershipMismatchError(
                "The result image does not belong to this user.",
                details=f"image {result_image_id}",
            )

        swap.result_image_id = result_image_id
        swap.updated_at = utcnow()
        self.session.add(swap)
        self._commit(swap)
        return swap

    def delete_swap(self, swap_id: UUID) -> None:
        swap = self._require_swap(swap_id)
        self.session.delete(swap)
        self.session.commit()
        logging.info(f"Deleted swap {swap_id}")
