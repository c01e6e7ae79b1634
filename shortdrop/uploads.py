import logging
from dataclasses import dataclass
from typing import Any, BinaryIO, Callable, Dict, Mapping, Optional, Tuple, Union

from .errors import (
    MimeBlockedError,
    MimeNotAllowedError,
    ShareServiceError,
    SizeExceededError,
    StoreWriteFailedError,
    UnauthenticatedError,
)
from .keys import generate_key
from .logs import sanitize_log_value
from .retrieval import download_url, short_link_url
from .slugs import SlugAllocator
from .storage import (
    DEFAULT_CONTENT_TYPE,
    ORIGINAL_FILENAME_META,
    SLUG_META,
    ObjectStore,
)

Payload = Union[bytes, bytearray, BinaryIO]

logger = logging.getLogger("shortdrop.lifecycle")


@dataclass(frozen=True)
class UploadPolicy:
    max_size_bytes: int
    blocked_mime_patterns: Tuple[str, ...] = ()
    allowed_mime_patterns: Tuple[str, ...] = ()

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "UploadPolicy":
        return cls(
            max_size_bytes=int(config["max_size_bytes"]),
            blocked_mime_patterns=tuple(config.get("blocked_mime") or ()),
            allowed_mime_patterns=tuple(config.get("allowed_mime") or ()),
        )

    def check_declared_size(self, content_length_hint: Optional[int]) -> None:
        if content_length_hint is not None and content_length_hint > self.max_size_bytes:
            raise SizeExceededError(self.max_size_bytes)

    def check_actual_size(self, size: int) -> None:
        if size > self.max_size_bytes:
            raise SizeExceededError(self.max_size_bytes, size)

    def check_mime(self, content_type: str) -> None:
        # The blocked list is consulted first and wins over the allowed list.
        if any(pattern in content_type for pattern in self.blocked_mime_patterns):
            raise MimeBlockedError(content_type)
        if self.allowed_mime_patterns and not any(
            pattern in content_type for pattern in self.allowed_mime_patterns
        ):
            raise MimeNotAllowedError(content_type)


@dataclass(frozen=True)
class UploadResult:
    key: str
    filename: str
    size: int
    content_type: str
    full_url: str
    short_url: Optional[str] = None
    slug: Optional[str] = None

    @property
    def url(self) -> str:
        return self.short_url or self.full_url

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "key": self.key,
            "filename": self.filename,
            "size": self.size,
            "contentType": self.content_type,
            "url": self.url,
            "fullUrl": self.full_url,
        }
        if self.short_url:
            payload["shortUrl"] = self.short_url
        if self.slug:
            payload["slug"] = self.slug
        return payload


def materialize(payload: Payload, max_size_bytes: int) -> bytes:
    """Read the whole payload into memory.

    Streams are read up to one byte past the limit, which is enough for the
    size check to reject them without buffering an arbitrarily large body.
    """

    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    return payload.read(max_size_bytes + 1)


class UploadPipeline:
    def __init__(
        self,
        store: ObjectStore,
        policy: UploadPolicy,
        *,
        allocator: Optional[SlugAllocator] = None,
        base_url: str = "",
        key_generator: Callable[[str], str] = generate_key,
    ) -> None:
        self.store = store
        self.policy = policy
        self.allocator = allocator
        self.base_url = base_url
        self.key_generator = key_generator

    def precheck(self, content_length_hint: Optional[int]) -> None:
        """Reject a declared oversize body before any payload byte is read."""

        self.policy.check_declared_size(content_length_hint)

    def upload(
        self,
        payload: Payload,
        filename: str,
        content_type: Optional[str],
        content_length_hint: Optional[int] = None,
        *,
        authenticated: bool,
    ) -> UploadResult:
        if not authenticated:
            raise UnauthenticatedError(reason="Authentication failed")

        mime_type = content_type or DEFAULT_CONTENT_TYPE
        try:
            self.precheck(content_length_hint)
            self.policy.check_mime(mime_type)
            data = materialize(payload, self.policy.max_size_bytes)
            self.policy.check_actual_size(len(data))
        except ShareServiceError as error:
            logger.warning(
                "upload_rejected filename=%s content_type=%s kind=%s",
                sanitize_log_value(filename),
                sanitize_log_value(mime_type),
                error.kind,
            )
            raise

        key = self.key_generator(filename)
        slug = self._reserve_slug(key)

        metadata = {ORIGINAL_FILENAME_META: filename}
        if slug:
            metadata[SLUG_META] = slug
        try:
            self.store.put(key, data, mime_type, metadata)
        except Exception as error:
            logger.exception(
                "upload_store_failed key=%s error=%s", sanitize_log_value(key), error
            )
            raise StoreWriteFailedError(details=str(error)) from error

        # The alias is bound only once the object write has been confirmed.
        if slug and not self._bind_slug(slug, key):
            slug = None

        result = UploadResult(
            key=key,
            filename=filename,
            size=len(data),
            content_type=mime_type,
            full_url=download_url(key, self.base_url),
            short_url=short_link_url(slug, self.base_url) if slug else None,
            slug=slug,
        )
        logger.info(
            "upload_completed key=%s size=%d content_type=%s slug=%s",
            sanitize_log_value(key),
            result.size,
            sanitize_log_value(mime_type),
            slug or "-",
        )
        return result

    def _reserve_slug(self, key: str) -> Optional[str]:
        if self.allocator is None:
            return None
        try:
            reservation = self.allocator.reserve()
        except Exception as error:
            logger.warning(
                "short_link_failed key=%s stage=reserve error=%s",
                sanitize_log_value(key),
                error,
            )
            return None
        if not reservation.ok:
            logger.warning(
                "short_link_failed key=%s stage=reserve attempts=%d",
                sanitize_log_value(key),
                reservation.attempts,
            )
            return None
        return reservation.slug

    def _bind_slug(self, slug: str, key: str) -> bool:
        try:
            result = self.allocator.bind(slug, key)
        except Exception as error:
            logger.warning(
                "short_link_failed key=%s stage=bind error=%s",
                sanitize_log_value(key),
                error,
            )
            return False
        if not result.ok:
            logger.warning(
                "short_link_failed key=%s stage=bind slug=%s outcome=%s",
                sanitize_log_value(key),
                slug,
                result.outcome.value,
            )
            return False
        return True
