import logging
import unicodedata
from dataclasses import dataclass
from typing import Dict, Iterator, Optional
from urllib.parse import quote

from .aliases import AliasIndex
from .errors import NotFoundError, StoreUnavailableError
from .logs import sanitize_log_value
from .storage import CHUNK_SIZE_BYTES, DEFAULT_CONTENT_TYPE, ObjectBody, ObjectStore

CACHE_CONTROL = "public, max-age=3600"

logger = logging.getLogger("shortdrop.lifecycle")


def download_url(key: str, base_url: str = "") -> str:
    """Canonical direct download URL for an object key."""

    return f"{base_url.rstrip('/')}/d/{quote(key, safe='/')}"


def short_link_url(slug: str, base_url: str = "") -> str:
    return f"{base_url.rstrip('/')}/s/{slug}"


def is_inline_type(content_type: str) -> bool:
    return content_type.startswith("text/") or "image/" in content_type


def _quote_header_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _disposition_filename(filename: str) -> str:
    cleaned = "".join(
        char for char in filename if unicodedata.category(char)[0] != "C"
    )
    try:
        cleaned.encode("ascii")
    except UnicodeEncodeError:
        simple = unicodedata.normalize("NFKD", cleaned)
        simple = simple.encode("ascii", "ignore").decode("ascii")
        quoted = quote(cleaned, safe="!#$&+^`|")
        return f'filename="{_quote_header_value(simple)}"; filename*=UTF-8\'\'{quoted}'
    return f'filename="{_quote_header_value(cleaned)}"'


def content_disposition(
    content_type: str, filename: str, force_download: bool = False
) -> Optional[str]:
    """Pick the disposition header for a download.

    Forced downloads are always ``attachment``. Otherwise only text and image
    types are marked ``inline``; every other type gets no header at all and is
    left to the browser's default handling.
    """

    if force_download:
        return f"attachment; {_disposition_filename(filename)}"
    if is_inline_type(content_type):
        return f"inline; {_disposition_filename(filename)}"
    return None


@dataclass
class ObjectStream:
    key: str
    headers: Dict[str, str]
    body: ObjectBody

    @property
    def content_type(self) -> str:
        return self.headers["Content-Type"]

    def iter_chunks(self, chunk_size: int = CHUNK_SIZE_BYTES) -> Iterator[bytes]:
        return self.body.iter_chunks(chunk_size)

    def read(self) -> bytes:
        return self.body.read()

    def close(self) -> None:
        self.body.close()


def fetch_by_key(
    store: ObjectStore, key: str, *, force_download: bool = False
) -> ObjectStream:
    if not key:
        raise NotFoundError("File not found")

    body = store.get(key)
    if body is None:
        logger.warning("file_download_missing key=%s", sanitize_log_value(key))
        raise NotFoundError("File not found")

    info = body.info
    content_type = info.content_type or DEFAULT_CONTENT_TYPE
    headers = {
        "Content-Type": content_type,
        "Content-Length": str(info.size),
        "Cache-Control": CACHE_CONTROL,
    }
    disposition = content_disposition(content_type, info.original_filename, force_download)
    if disposition:
        headers["Content-Disposition"] = disposition

    logger.info(
        "file_downloaded key=%s size=%d forced=%s",
        sanitize_log_value(key),
        info.size,
        force_download,
    )
    return ObjectStream(key=key, headers=headers, body=body)


def resolve_slug(index: Optional[AliasIndex], slug: str, base_url: str = "") -> str:
    """Return the redirect target for *slug*."""

    if index is None:
        raise StoreUnavailableError("Slug links not configured")
    if not slug:
        raise NotFoundError("Link not found or expired")

    key = index.get(slug)
    if not key:
        logger.info("slug_unresolved slug=%s", sanitize_log_value(slug))
        raise NotFoundError("Link not found or expired")

    logger.info("slug_resolved slug=%s key=%s", slug, sanitize_log_value(key))
    return download_url(key, base_url)
