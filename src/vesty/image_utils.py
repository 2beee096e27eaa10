"""Lookups between file extensions, MIME content types and Pillow formats."""

# Only these image families are accepted anywhere in the app
SUPPORTED_CONTENT_TYPES: tuple[str, ...] = ("image/jpeg", "image/png", "image/webp")

# Non-canonical content types some clients send
_CONTENT_TYPE_ALIASES: dict[str, str] = {
    "image/jpg": "image/jpeg",
    "image/pjpeg": "image/jpeg",
}

_EXTENSIONS: dict[str, str] = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
}

# Extension written for each canonical content type
_CANONICAL_EXTENSIONS: dict[str, str] = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
}

_PIL_FORMATS: dict[str, str] = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
}


def normalize_content_type(content_type: str) -> str:
    """
    Canonicalize a MIME content type.

    Parameters such as ``; charset=...`` are dropped, the value is lowercased and
    known aliases (``image/jpg``) are mapped to their canonical form.
    """
    base = content_type.split(";", 1)[0].strip().lower()
    return _CONTENT_TYPE_ALIASES.get(base, base)


def is_supported_content_type(content_type: str | None) -> bool:
    if not content_type:
        return False
    return normalize_content_type(content_type) in SUPPORTED_CONTENT_TYPES


def get_content_type_from_extension(ext: str) -> str:
    """
    Map an extension such as ``"jpg"`` or ``".PNG"`` to its content type.

    Raises:
        ValueError: If the extension is not a supported image extension
    """
    content_type = _EXTENSIONS.get(ext.lower().lstrip("."))
    if content_type is None:
        raise ValueError(f"Unknown image extension: {ext}")
    return content_type


def get_extension_from_content_type(content_type: str) -> str:
    """Return the extension, with leading dot, that stored objects of this type get."""
    ext = _CANONICAL_EXTENSIONS.get(normalize_content_type(content_type))
    if ext is None:
        raise ValueError(f"Unknown content type: {content_type}")
    return ext


def get_content_type_from_pil_format(pil_format: str | None) -> str:
    if pil_format is None:
        raise ValueError("PIL format is None")
    content_type = _PIL_FORMATS.get(pil_format.upper())
    if content_type is None:
        raise ValueError(f"Unknown PIL format: {pil_format}")
    return content_type
