from typing import Any, Dict, Optional


class ShareServiceError(Exception):
    """Base class for failures that surface to API callers."""

    status_code = 500
    kind = "UpstreamFailure"
    default_message = "Internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        reason: Optional[str] = None,
        details: Optional[str] = None,
    ) -> None:
        self.message = message or self.default_message
        self.reason = reason
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message}
        if self.reason:
            payload["reason"] = self.reason
        if self.details:
            payload["details"] = self.details
        return payload


class UnauthenticatedError(ShareServiceError):
    status_code = 401
    kind = "Unauthenticated"
    default_message = "Unauthorized"


class BadRequestError(ShareServiceError):
    status_code = 400
    kind = "BadRequest"
    default_message = "Bad request"


class NoFilePartError(BadRequestError):
    kind = "NoFilePart"
    default_message = "No file part"


class NotFoundError(ShareServiceError):
    status_code = 404
    kind = "NotFound"
    default_message = "Not found"


class SizeExceededError(ShareServiceError):
    """Raised when a declared or actual payload size is over the limit."""

    status_code = 413
    kind = "SizeExceeded"
    default_message = "File too large"

    def __init__(self, limit_bytes: int, size: Optional[int] = None) -> None:
        limit_mb = limit_bytes / (1024 * 1024)
        super().__init__(
            f"File size may be at most {limit_mb:g}MB",
            reason="declared_length" if size is None else "payload_length",
        )
        self.limit_bytes = limit_bytes
        self.size = size


class MimeBlockedError(ShareServiceError):
    status_code = 415
    kind = "MimeBlocked"

    def __init__(self, content_type: str) -> None:
        super().__init__(f"File type {content_type} is blocked")
        self.content_type = content_type


class MimeNotAllowedError(ShareServiceError):
    status_code = 415
    kind = "MimeNotAllowed"

    def __init__(self, content_type: str) -> None:
        super().__init__(f"File type {content_type} is not in the allowed list")
        self.content_type = content_type


class AllocationExhaustedError(ShareServiceError):
    kind = "AllocationExhausted"
    default_message = "Failed to generate unique slug"

    def __init__(self, attempts: int) -> None:
        super().__init__(reason=f"gave up after {attempts} attempts")
        self.attempts = attempts


class StoreUnavailableError(ShareServiceError):
    status_code = 503
    kind = "StoreUnavailable"
    default_message = "Short links are not configured"


class UpstreamFailureError(ShareServiceError):
    kind = "UpstreamFailure"


class StoreWriteFailedError(UpstreamFailureError):
    kind = "StoreWriteFailed"
    default_message = "File could not be uploaded"
