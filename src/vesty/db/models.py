from datetime import datetime, timezone
from enum import StrEnum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import DateTime, Index
from sqlmodel import (
    Field,  # type: ignore
    Relationship,
    SQLModel,
)

# NOTE: Foreign key ID fields (e.g., user_id) are typed as required, but the
# corresponding relationship object fields (e.g., user) are typed as optional to
# allow creation using only the ID while satisfying the type checker.
# Cascades are NOT delegated to the database, see RecordStore in store.py.


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _timestamp(nullable: bool = False):
    if nullable:
        return Field(default=None, sa_type=DateTime(timezone=True))  # type: ignore
    return Field(default_factory=utcnow, sa_type=DateTime(timezone=True))  # type: ignore


class ImageType(StrEnum):
    SOURCE_PERSON = "SOURCE_PERSON"
    SOURCE_OUTFIT = "SOURCE_OUTFIT"
    RESULT = "RESULT"


class SwapStatus(StrEnum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (SwapStatus.COMPLETED, SwapStatus.FAILED)


class User(SQLModel, table=True):
    __tablename__ = "users"  # type: ignore

    id: str = Field(primary_key=True)
    """Subject ID assigned by the identity provider."""
    email: str | None = Field(default=None, unique=True)
    name: str | None = None
    created_at: datetime = _timestamp()
    updated_at: datetime = _timestamp()
    images: list["Image"] = Relationship(back_populates="user")
    swaps: list["Swap"] = Relationship(back_populates="user")


class Image(SQLModel, table=True):
    __tablename__ = "images"  # type: ignore
    __table_args__ = (Index("ix_images_user_id_type", "user_id", "type"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    user: Optional["User"] = Relationship(back_populates="images")
    type: ImageType = Field(index=True)
    url: str
    """Opaque locator of the stored object."""
    storage_key: str | None = None
    """Opaque object-store key, used to mint temporary access URLs."""
    filename: str | None = None
    file_size: int | None = None
    content_type: str | None = None
    width: int | None = None
    height: int | None = None
    swap_id: UUID | None = Field(default=None, index=True)
    """Swap attempt this image was created for; no FK so it can outlive a failed attempt."""
    created_at: datetime = _timestamp()
    updated_at: datetime = _timestamp()


class Swap(SQLModel, table=True):
    """
    One outfit-transfer attempt.

    The person and outfit images are required and must belong to the swap's
    owner. The result image is set once, after generation succeeds.
    """

    __tablename__ = "swaps"  # type: ignore
    __table_args__ = (Index("ix_swaps_user_id_status", "user_id", "status"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    user: Optional["User"] = Relationship(back_populates="swaps")
    person_image_id: UUID = Field(foreign_key="images.id", index=True)
    person_image: Optional["Image"] = Relationship(
        sa_relationship_kwargs={"foreign_keys": "Swap.person_image_id"}
    )
    outfit_image_id: UUID = Field(foreign_key="images.id", index=True)
    outfit_image: Optional["Image"] = Relationship(
        sa_relationship_kwargs={"foreign_keys": "Swap.outfit_image_id"}
    )
    result_image_id: UUID | None = Field(
        default=None, foreign_key="images.id", index=True
    )
    result_image: Optional["Image"] = Relationship(
        sa_relationship_kwargs={"foreign_keys": "Swap.result_image_id"}
    )
    status: SwapStatus = Field(default=SwapStatus.PENDING, index=True)
    error: str | None = None
    processing_started_at: datetime | None = _timestamp(nullable=True)
    processing_completed_at: datetime | None = _timestamp(nullable=True)
    created_at: datetime = _timestamp()
    updated_at: datetime = _timestamp()
