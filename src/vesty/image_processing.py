"""
Image normalization: decode, check pixel dimensions, downscale and re-encode.

Everything here is CPU-bound and side-effect free. Failures are reported through
``NormalizationResult`` instead of being raised.
"""

import io
import logging
from dataclasses import dataclass
from enum import StrEnum

from PIL import Image, ImageOps, UnidentifiedImageError

from .image_utils import get_content_type_from_pil_format

MIN_DIMENSION = 100
MAX_DIMENSION = 5000

# Pillow formats we accept on the way in
_READABLE_FORMATS = ("JPEG", "PNG", "WEBP")


class NormalizationFailure(StrEnum):
    UNREADABLE = "unreadable"
    DIMENSIONS_TOO_SMALL = "dimensions_too_small"
    DIMENSIONS_TOO_LARGE = "dimensions_too_large"
    ENCODING_FAILED = "encoding_failed"


@dataclass(frozen=True)
class EncodingSettings:
    max_width: int
    max_height: int
    quality: int
    format: str
    """Pillow format name of the output, "JPEG" or "WEBP"."""


@dataclass(frozen=True)
class ImageInfo:
    width: int
    height: int
    format: str
    """Lowercase format name, e.g. "jpeg"."""


@dataclass(frozen=True)
class ImageMetadata:
    width: int
    height: int
    format: str
    size: int
    original_size: int
    compression_ratio: float
    """(original_size - size) / original_size; negative if re-encoding grew the file."""

    @property
    def content_type(self) -> str:
        return get_content_type_from_pil_format(self.format)


@dataclass(frozen=True)
class NormalizationResult:
    success: bool
    data: bytes | None = None
    metadata: ImageMetadata | None = None
    failure: NormalizationFailure | None = None
    error: str | None = None


def select_encoding_settings(byte_size: int) -> EncodingSettings:
    """
    Pick output dimensions, quality and format from the size of the upload.

    Large uploads are squeezed harder so the stored result stays bounded.
    """
    if byte_size > 3 * 1024 * 1024:
        return EncodingSettings(max_width=1600, max_height=900, quality=70, format="WEBP")
    elif byte_size > 1024 * 1024:
        return EncodingSettings(max_width=1920, max_height=1080, quality=80, format="WEBP")
    else:
        return EncodingSettings(max_width=1920, max_height=1080, quality=85, format="JPEG")


def probe_image(data: bytes) -> ImageInfo | None:
    """Read intrinsic dimensions and format without decoding pixel data."""
    try:
        with Image.open(io.BytesIO(data)) as image:
            if image.format not in _READABLE_FORMATS:
                return None
            width, height = image.size
            return ImageInfo(width=width, height=height, format=image.format.lower())
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError):
        return None


def fit_within(width: int, height: int, max_width: int, max_height: int) -> tuple[int, int]:
    """Scale (width, height) down to fit the box, keeping aspect ratio. Never upscales."""
    if width <= max_width and height <= max_height:
        return width, height
    scale = min(max_width / width, max_height / height)
    return max(1, round(width * scale)), max(1, round(height * scale))


def _prepare_mode(image: Image.Image, output_format: str) -> Image.Image:
    if output_format == "JPEG":
        # JPEG has no alpha channel, flatten onto white
        if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
            rgba = image.convert("RGBA")
            background = Image.new("RGB", rgba.size, (255, 255, 255))
            background.paste(rgba, mask=rgba.split()[3])
            return background
        if image.mode not in ("RGB", "L"):
            return image.convert("RGB")
        return image
    if image.mode not in ("RGB", "RGBA"):
        has_alpha = image.mode in ("LA", "PA") or "transparency" in image.info
        return image.convert("RGBA" if has_alpha else "RGB")
    return image


def normalize_image(
    data: bytes, settings: EncodingSettings | None = None
) -> NormalizationResult:
    """
    Decode ``data``, validate its pixel dimensions and re-encode it.

    Unless ``settings`` is given, the encoding envelope comes from
    ``select_encoding_settings``. The image is only ever shrunk.
    """
    original_size = len(data)

    info = probe_image(data)
    if info is None:
        return NormalizationResult(
            success=False,
            failure=NormalizationFailure.UNREADABLE,
            error="Invalid image format or corrupted file.",
        )

    if info.width < MIN_DIMENSION or info.height < MIN_DIMENSION:
        return NormalizationResult(
            success=False,
            failure=NormalizationFailure.DIMENSIONS_TOO_SMALL,
            error=f"Image too small. Minimum size is {MIN_DIMENSION}x{MIN_DIMENSION} pixels.",
        )
    if info.width > MAX_DIMENSION or info.height > MAX_DIMENSION:
        return NormalizationResult(
            success=False,
            failure=NormalizationFailure.DIMENSIONS_TOO_LARGE,
            error=f"Image too large. Maximum size is {MAX_DIMENSION}x{MAX_DIMENSION} pixels.",
        )

    if settings is None:
        settings = select_encoding_settings(original_size)

    try:
        with Image.open(io.BytesIO(data)) as source:
            # Decode every pixel now, the header alone says nothing about the body
            source.load()
            # Apply camera rotation so width/height match what the user sees
            image = ImageOps.exif_transpose(source)
            target_size = fit_within(
                image.width, image.height, settings.max_width, settings.max_height
            )
            if target_size != image.size:
                image = image.resize(target_size, Image.Resampling.LANCZOS)
            image = _prepare_mode(image, settings.format)
    except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as e:
        logging.warning(f"Image decoding failed: {e}")
        return NormalizationResult(
            success=False,
            failure=NormalizationFailure.UNREADABLE,
            error="Invalid image format or corrupted file.",
        )

    buffer = io.BytesIO()
    save_kwargs: dict = {"format": settings.format, "quality": settings.quality}
    if settings.format == "JPEG":
        save_kwargs.update(optimize=True, progressive=True)
    else:
        save_kwargs.update(method=4)
    try:
        image.save(buffer, **save_kwargs)
    except (OSError, ValueError) as e:
        logging.error(f"Image encoding failed: {e}")
        return NormalizationResult(
            success=False,
            failure=NormalizationFailure.ENCODING_FAILED,
            error=f"Image processing failed: {e}",
        )

    output = buffer.getvalue()
    metadata = ImageMetadata(
        width=image.width,
        height=image.height,
        format=settings.format.lower(),
        size=len(output),
        original_size=original_size,
        compression_ratio=round((original_size - len(output)) / original_size, 4),
    )
    logging.debug(
        f"Normalized {info.width}x{info.height} {info.format} ({original_size} bytes) "
        f"to {metadata.width}x{metadata.height} {metadata.format} ({metadata.size} bytes)"
    )
    return NormalizationResult(success=True, data=output, metadata=metadata)
