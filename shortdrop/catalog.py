import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .keys import filename_from_key
from .logs import sanitize_log_value
from .retrieval import download_url, short_link_url
from .storage import DEFAULT_CONTENT_TYPE, ObjectInfo, ObjectStore

HARD_LIMIT = 1000
DEFAULT_ADMIN_LIMIT = 1000
DEFAULT_RECENT_LIMIT = 100
DEFAULT_MAX_WORKERS = 8

logger = logging.getLogger("shortdrop.catalog")


def clamp_limit(value: Any, default: int, hard_cap: int = HARD_LIMIT) -> int:
    """Parse a caller supplied page size and clamp it to ``[1, hard_cap]``."""

    try:
        parsed = int(value)
    except (TypeError, ValueError):
        parsed = default
    return min(max(parsed, 1), hard_cap)


def isoformat_utc(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace(
        "+00:00", "Z"
    )


@dataclass
class CatalogItem:
    key: str
    size: int
    content_type: str
    original_filename: str
    uploaded_at: Optional[float] = None
    etag: Optional[str] = None
    url: str = ""
    short_url: Optional[str] = None
    slug: Optional[str] = None

    @property
    def filename(self) -> str:
        return filename_from_key(self.key)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "filename": self.filename,
            "originalFilename": self.original_filename,
            "size": self.size,
            "contentType": self.content_type,
            "uploaded": isoformat_utc(self.uploaded_at),
            "etag": self.etag,
            "url": self.url,
            "shortUrl": self.short_url,
            "slug": self.slug,
        }


@dataclass
class CatalogPage:
    items: List[CatalogItem] = field(default_factory=list)
    truncated: bool = False
    cursor: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "truncated": self.truncated,
            "cursor": self.cursor,
            "total": len(self.items),
        }


class CatalogEnumerator:
    """Admin listing of stored objects.

    The store listing alone lacks custom metadata, so every listed object is
    followed by a ``head`` call to recover its original filename and the slug
    recorded at upload time. Those calls run on a bounded thread pool and a
    failing one only degrades its own row.
    """

    def __init__(
        self,
        store: ObjectStore,
        *,
        base_url: str = "",
        max_workers: int = DEFAULT_MAX_WORKERS,
    ) -> None:
        self.store = store
        self.base_url = base_url
        self.max_workers = max(1, int(max_workers))

    def _listing_item(self, info: ObjectInfo) -> CatalogItem:
        return CatalogItem(
            key=info.key,
            size=info.size,
            content_type=info.content_type or DEFAULT_CONTENT_TYPE,
            original_filename=info.original_filename,
            uploaded_at=info.uploaded_at,
            etag=info.etag,
            url=download_url(info.key, self.base_url),
        )

    def _enrich(self, info: ObjectInfo) -> CatalogItem:
        item = self._listing_item(info)
        try:
            head = self.store.head(info.key)
        except Exception as error:
            logger.warning(
                "catalog_head_failed key=%s error=%s",
                sanitize_log_value(info.key),
                error,
            )
            return item
        if head is None:
            return item

        item.content_type = head.content_type or item.content_type
        item.original_filename = head.original_filename
        item.slug = head.slug
        if item.slug:
            item.short_url = short_link_url(item.slug, self.base_url)
        return item

    def list(self, cursor: Optional[str] = None, limit: Any = DEFAULT_ADMIN_LIMIT) -> CatalogPage:
        page_size = clamp_limit(limit, DEFAULT_ADMIN_LIMIT)
        page = self.store.list(page_size, cursor or None)
        if not page.objects:
            return CatalogPage(items=[], truncated=page.truncated, cursor=page.cursor)

        workers = min(self.max_workers, len(page.objects))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="catalog-head") as pool:
            items = list(pool.map(self._enrich, page.objects))

        logger.info(
            "catalog_listed count=%d truncated=%s", len(items), page.truncated
        )
        return CatalogPage(items=items, truncated=page.truncated, cursor=page.cursor)

    def recent(self, limit: Any = DEFAULT_RECENT_LIMIT) -> List[Dict[str, Any]]:
        """Listing-level rows, newest first, without per-object lookups."""

        page = self.store.list(clamp_limit(limit, DEFAULT_RECENT_LIMIT))
        items = [self._listing_item(info) for info in page.objects]
        items.sort(key=lambda item: item.uploaded_at or 0.0, reverse=True)
        return [
            {
                "key": item.key,
                "size": item.size,
                "contentType": item.content_type,
                "lastModified": isoformat_utc(item.uploaded_at),
                "url": item.url,
                "originalFilename": item.original_filename,
            }
            for item in items
        ]
