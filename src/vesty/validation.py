"""Pre-processing checks on an uploaded file's declared type, extension and size."""

from dataclasses import dataclass
from enum import StrEnum
from pathlib import PurePosixPath

from .errors import ValidationError
from .image_utils import (
    SUPPORTED_CONTENT_TYPES,
    get_content_type_from_extension,
    is_supported_content_type,
    normalize_content_type,
)

MIN_FILE_SIZE = 1024  # 1 KiB
MAX_FILE_SIZE = 5 * 1024 * 1024  # 5 MiB

ALLOWED_EXTENSIONS = ("jpg", "jpeg", "png", "webp")


class RejectionReason(StrEnum):
    TOO_SMALL = "too_small"
    TOO_LARGE = "too_large"
    UNSUPPORTED_TYPE = "unsupported_type"
    UNSUPPORTED_EXTENSION = "unsupported_extension"


@dataclass(frozen=True)
class FileValidation:
    valid: bool
    reason: RejectionReason | None = None
    message: str | None = None
    content_type: str | None = None
    """Canonical content type, set when the file is valid."""

    def raise_for_invalid(self) -> None:
        if not self.valid:
            assert self.reason is not None and self.message is not None
            raise ValidationError(self.message, reason=self.reason.value)


def _reject(reason: RejectionReason, message: str) -> FileValidation:
    return FileValidation(valid=False, reason=reason, message=message)


def validate_file(
    size: int,
    content_type: str | None,
    filename: str | None = None,
    *,
    min_size: int = MIN_FILE_SIZE,
    max_size: int = MAX_FILE_SIZE,
) -> FileValidation:
    """
    Check an upload against the size bounds and the image allow-list.

    The size must lie in ``[min_size, max_size]`` (both inclusive) and the
    declared content type must be JPEG, PNG or WebP. When a filename is given its
    extension must belong to the same family as the content type, so a PNG sent
    as ``photo.jpg`` is rejected.
    """
    if size > max_size:
        return _reject(
            RejectionReason.TOO_LARGE,
            f"File size too large. Maximum size is {max_size // (1024 * 1024)}MB.",
        )
    if size < min_size:
        return _reject(
            RejectionReason.TOO_SMALL,
            f"File size too small. Minimum size is {min_size // 1024}KB.",
        )

    if not is_supported_content_type(content_type):
        return _reject(
            RejectionReason.UNSUPPORTED_TYPE,
            f"File type not supported. Allowed types: {', '.join(SUPPORTED_CONTENT_TYPES)}.",
        )
    assert content_type is not None
    canonical_type = normalize_content_type(content_type)

    if filename is not None:
        suffix = PurePosixPath(filename).suffix.lower().lstrip(".")
        if suffix not in ALLOWED_EXTENSIONS or (
            get_content_type_from_extension(suffix) != canonical_type
        ):
            return _reject(
                RejectionReason.UNSUPPORTED_EXTENSION,
                f"File extension not supported. Allowed extensions: {', '.join(ALLOWED_EXTENSIONS)}.",
            )

    return FileValidation(valid=True, content_type=canonical_type)
