"""Error taxonomy shared by the gateways, the swap pipeline and the HTTP layer."""

from fastapi import status


class VestyError(Exception):
    """Base class. ``message`` is safe to show to users, ``details`` is diagnostic."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    kind: str = "internal"

    def __init__(self, message: str, *, details: str | None = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(VestyError):
    """Malformed, oversized or unsupported input. Never retried."""

    status_code = status.HTTP_400_BAD_REQUEST
    kind = "validation"

    def __init__(self, message: str, *, reason: str, details: str | None = None):
        super().__init__(message, details=details)
        self.reason = reason


class NotFoundError(VestyError):
    """Resource is absent or belongs to someone else; the two are indistinguishable."""

    status_code = status.HTTP_404_NOT_FOUND
    kind = "not_found"

    def __init__(self, message: str = "Not found."):
        super().__init__(message)


class ForbiddenError(VestyError):
    status_code = status.HTTP_403_FORBIDDEN
    kind = "forbidden"

    def __init__(self, message: str = "Access denied."):
        super().__init__(message)


class UpstreamServiceError(VestyError):
    """The object store, record store or AI API failed."""

    status_code = status.HTTP_502_BAD_GATEWAY
    kind = "upstream"

    def __init__(self, message: str, *, service: str, details: str | None = None):
        super().__init__(message, details=details)
        self.service = service


class GenerationTimeoutError(UpstreamServiceError):
    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    kind = "timeout"


class GenerationEmptyResultError(UpstreamServiceError):
    """The AI call succeeded but returned no usable image."""

    kind = "empty_result"

    def __init__(
        self,
        message: str,
        *,
        explanation: str | None = None,
        details: str | None = None,
    ):
        super().__init__(message, service="ai", details=details)
        self.explanation = explanation


class RecordStoreError(VestyError):
    """A write would break one of the data model's invariants."""

    status_code = status.HTTP_409_CONFLICT
    kind = "conflict"


class OwnershipMismatchError(RecordStoreError):
    status_code = status.HTTP_400_BAD_REQUEST


class ImageInUseError(RecordStoreError):
    pass


class InvalidStatusTransitionError(RecordStoreError):
    pass


class ResultAlreadySetError(RecordStoreError):
    pass
