"""Blob storage module for image uploads and temporary access URLs."""

import base64
import binascii
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any
from urllib.parse import quote
from uuid import uuid4

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from typing_extensions import override

from .settings import get_settings

VIEW_URL_TTL = 3600  # 1 hour
DOWNLOAD_URL_TTL = 300  # 5 minutes


def generate_object_key(owner_id: str | None, extension: str) -> str:
    """
    Build a unique key of the form ``images/<owner>/<unix millis>-<suffix>.<ext>``.

    Keys are grouped by owner so one user's objects can be listed and cleaned up
    together. The random suffix makes collisions practically impossible without
    any coordination.
    """
    owner = owner_id or "anonymous"
    ext = extension.lower().lstrip(".")
    return f"images/{owner}/{int(time.time() * 1000)}-{uuid4().hex[:8]}.{ext}"


@dataclass(frozen=True)
class StoredObject:
    success: bool
    key: str | None = None
    url: str | None = None
    size: int | None = None
    content_type: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class ObjectHead:
    size: int
    content_type: str | None
    last_modified: datetime | None
    metadata: dict[str, str] = field(default_factory=dict)


def decode_base64_payload(payload: str) -> bytes:
    """Decode raw base64 or a ``data:<mime>;base64,<data>`` URL."""
    if payload.startswith("data:") and "," in payload:
        payload = payload.split(",", 1)[1]
    return base64.b64decode(payload, validate=True)


def content_disposition(filename: str) -> str:
    """
    Build an ``attachment`` Content-Disposition for ``filename``.

    Quotes, backslashes and non-ASCII characters are replaced in the plain
    ``filename`` parameter. When that changes the name, the exact name follows
    as an RFC 5987 ``filename*`` parameter.
    """
    fallback = "".join(
        char if char.isascii() and char.isprintable() and char not in '"\\' else "_"
        for char in filename
    )
    value = f'attachment; filename="{fallback}"'
    if fallback != filename:
        value += f"; filename*=UTF-8''{quote(filename, safe='')}"
    return value


class ObjectStore(ABC):
    """
    Abstract interface for object storage.

    Implementations never raise transport errors: writes return a
    ``StoredObject`` with ``success=False`` and lookups return ``False``/``None``.
    """

    @abstractmethod
    def put(
        self,
        data: bytes,
        key: str,
        content_type: str,
        metadata: dict[str, str] | None = None,
    ) -> StoredObject: ...

    @abstractmethod
    def get_temporary_access(
        self, key: str, ttl: int = VIEW_URL_TTL, *, download_filename: str | None = None
    ) -> str | None:
        """Mint a time-boxed read URL, or an attachment download URL if a filename is given."""
        ...

    @abstractmethod
    def delete(self, key: str) -> bool: ...

    @abstractmethod
    def exists(self, key: str) -> bool: ...

    @abstractmethod
    def head(self, key: str) -> ObjectHead | None: ...

    def put_base64(
        self,
        payload: str,
        key: str,
        content_type: str,
        metadata: dict[str, str] | None = None,
    ) -> StoredObject:
        """Decode a base64 payload (e.g. an AI-generated image) and store it."""
        try:
            data = decode_base64_payload(payload)
        except (binascii.Error, ValueError) as e:
            logging.error(f"Could not decode base64 payload for {key}: {e}")
            return StoredObject(success=False, error=f"Invalid base64 payload: {e}")
        return self.put(data, key, content_type, metadata)

    def close(self) -> None:
        return None


class S3ObjectStore(ObjectStore):
    """Amazon S3 (or S3-compatible) implementation of object storage."""

    def __init__(
        self,
        *,
        bucket: str,
        region: str,
        client: Any = None,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
    ):
        self.bucket = bucket
        self.region = region
        self.endpoint_url = endpoint_url
        self._client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id or None,
            aws_secret_access_key=secret_access_key or None,
            region_name=region,
            config=Config(signature_version="s3v4"),
        )

    def object_url(self, key: str) -> str:
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    @override
    def put(
        self,
        data: bytes,
        key: str,
        content_type: str,
        metadata: dict[str, str] | None = None,
    ) -> StoredObject:
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata={"uploaded-at": datetime.now().isoformat(), **(metadata or {})},
                CacheControl="private, max-age=31536000",
            )
        except (ClientError, BotoCoreError) as e:
            logging.error(f"S3 upload of {key} failed: {e}")
            return StoredObject(success=False, key=key, error=str(e))

        logging.info(f"Stored {len(data)} bytes at {key}")
        return StoredObject(
            success=True,
            key=key,
            url=self.object_url(key),
            size=len(data),
            content_type=content_type,
        )

    @override
    def get_temporary_access(
        self, key: str, ttl: int = VIEW_URL_TTL, *, download_filename: str | None = None
    ) -> str | None:
        params = {"Bucket": self.bucket, "Key": key}
        if download_filename is not None:
            params["ResponseContentDisposition"] = content_disposition(download_filename)
        try:
            return self._client.generate_presigned_url(
                "get_object", Params=params, ExpiresIn=ttl
            )
        except (ClientError, BotoCoreError) as e:
            logging.error(f"Could not presign {key}: {e}")
            return None

    @override
    def delete(self, key: str) -> bool:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            logging.error(f"S3 delete of {key} failed: {e}")
            return False
        logging.info(f"Deleted {key}")
        return True

    @override
    def exists(self, key: str) -> bool:
        return self.head(key) is not None

    @override
    def head(self, key: str) -> ObjectHead | None:
        try:
            response = self._client.head_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError):
            return None
        return ObjectHead(
            size=response.get("ContentLength", 0),
            content_type=response.get("ContentType"),
            last_modified=response.get("LastModified"),
            metadata=response.get("Metadata") or {},
        )

    @override
    def close(self) -> None:
        self._client.close()


@lru_cache
def get_object_store() -> ObjectStore:
    """Get the process-wide object store. Use as a FastAPI dependency."""
    settings = get_settings()
    return S3ObjectStore(
        bucket=settings.S3_BUCKET_NAME,
        region=settings.AWS_REGION,
        endpoint_url=settings.S3_ENDPOINT_URL,
        access_key_id=settings.AWS_ACCESS_KEY_ID,
        secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
    )
