import logging
import random
from typing import Any, Dict, Mapping, Optional

from .aliases import AliasIndex, SqliteAliasIndex
from .catalog import CatalogEnumerator, CatalogPage
from .config import (
    DEFAULT_CATALOG_WORKERS,
    DEFAULT_SHARE_SLUG_ATTEMPTS,
    DEFAULT_SHARE_TTL_SECONDS,
    DEFAULT_UPLOAD_SLUG_ATTEMPTS,
)
from .errors import (
    AllocationExhaustedError,
    BadRequestError,
    NotFoundError,
    StoreUnavailableError,
    UnauthenticatedError,
    UpstreamFailureError,
)
from .logs import sanitize_log_value
from .retrieval import ObjectStream, fetch_by_key, resolve_slug, short_link_url
from .slugs import SlugAllocator
from .storage import ObjectStore, build_object_store
from .uploads import Payload, UploadPipeline, UploadPolicy, UploadResult

ALIAS_LISTING_MESSAGE = (
    "The link index cannot enumerate its entries. "
    "A short link is only reachable when its slug is known."
)

logger = logging.getLogger("shortdrop.lifecycle")


def require_authenticated(authenticated: bool, reason: Optional[str] = None) -> None:
    if not authenticated:
        raise UnauthenticatedError(reason=reason or "Authentication failed")


def _require_key(key: Any) -> str:
    if not isinstance(key, str) or not key.strip():
        raise BadRequestError("Key is required")
    return key


def _share_ttl(raw: Any, default: int) -> int:
    if raw is None or raw == 0 or raw == "":
        return default
    if isinstance(raw, bool):
        raise BadRequestError("ttl must be a positive number of seconds")
    try:
        ttl = int(raw)
    except (TypeError, ValueError):
        raise BadRequestError("ttl must be a positive number of seconds") from None
    if ttl < 1:
        raise BadRequestError("ttl must be a positive number of seconds")
    return ttl


class ShareService:
    """Entry point for every core operation, wired from configuration."""

    def __init__(
        self,
        store: ObjectStore,
        policy: UploadPolicy,
        *,
        alias_index: Optional[AliasIndex] = None,
        base_url: str = "",
        upload_slug_attempts: int = DEFAULT_UPLOAD_SLUG_ATTEMPTS,
        share_slug_attempts: int = DEFAULT_SHARE_SLUG_ATTEMPTS,
        share_ttl_seconds: int = DEFAULT_SHARE_TTL_SECONDS,
        catalog_workers: int = DEFAULT_CATALOG_WORKERS,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store = store
        self.alias_index = alias_index
        self.base_url = base_url
        self.share_ttl_seconds = share_ttl_seconds

        upload_allocator = None
        self.share_allocator = None
        if alias_index is not None:
            upload_allocator = SlugAllocator(
                alias_index, max_attempts=upload_slug_attempts, rng=rng
            )
            self.share_allocator = SlugAllocator(
                alias_index, max_attempts=share_slug_attempts, rng=rng
            )

        self.uploads = UploadPipeline(
            store, policy, allocator=upload_allocator, base_url=base_url
        )
        self.catalog = CatalogEnumerator(
            store, base_url=base_url, max_workers=catalog_workers
        )

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "ShareService":
        alias_index = None
        if config.get("links_enabled", True):
            alias_index = SqliteAliasIndex(config["alias_db_path"])
        return cls(
            build_object_store(config),
            UploadPolicy.from_config(config),
            alias_index=alias_index,
            base_url=config.get("base_url", ""),
            upload_slug_attempts=config["upload_slug_attempts"],
            share_slug_attempts=config["share_slug_attempts"],
            share_ttl_seconds=config["share_ttl_seconds"],
            catalog_workers=config["catalog_workers"],
        )

    def precheck_upload(self, content_length_hint: Optional[int]) -> None:
        self.uploads.precheck(content_length_hint)

    def upload(
        self,
        payload: Payload,
        filename: str,
        content_type: Optional[str],
        content_length_hint: Optional[int] = None,
        *,
        authenticated: bool,
    ) -> UploadResult:
        return self.uploads.upload(
            payload,
            filename,
            content_type,
            content_length_hint,
            authenticated=authenticated,
        )

    def delete(self, key: Any, *, authenticated: bool) -> Dict[str, Any]:
        require_authenticated(authenticated)
        key = _require_key(key)
        try:
            existed = self.store.delete(key)
        except Exception as error:
            logger.exception("file_delete_failed key=%s", sanitize_log_value(key))
            raise UpstreamFailureError("Failed to delete file", details=str(error)) from error
        logger.info("file_delete_requested key=%s existed=%s", sanitize_log_value(key), existed)
        return {"ok": True}

    def fetch(self, key: str, *, force_download: bool = False) -> ObjectStream:
        try:
            return fetch_by_key(self.store, key, force_download=force_download)
        except NotFoundError:
            raise
        except Exception as error:
            logger.exception("file_download_error key=%s", sanitize_log_value(key))
            raise UpstreamFailureError(details=str(error)) from error

    def resolve(self, slug: str) -> str:
        try:
            return resolve_slug(self.alias_index, slug, self.base_url)
        except (NotFoundError, StoreUnavailableError):
            raise
        except Exception as error:
            logger.exception("slug_resolution_error slug=%s", sanitize_log_value(slug))
            raise UpstreamFailureError(details=str(error)) from error

    def share(self, key: Any, ttl: Any = None, *, authenticated: bool) -> Dict[str, Any]:
        """Mint a TTL-bound short link for an existing object."""

        require_authenticated(authenticated)
        if self.share_allocator is None:
            raise StoreUnavailableError(
                "Short links are not configured",
                reason="Slug-based links require the link index",
            )
        key = _require_key(key)
        ttl_seconds = _share_ttl(ttl, self.share_ttl_seconds)

        try:
            if self.store.head(key) is None:
                raise NotFoundError("File not found")
            slug = self.share_allocator.allocate(key, ttl_seconds)
        except (NotFoundError, AllocationExhaustedError):
            raise
        except Exception as error:
            logger.exception("share_link_failed key=%s", sanitize_log_value(key))
            raise UpstreamFailureError(
                "Failed to create share link", details=str(error)
            ) from error
        logger.info(
            "share_link_created key=%s slug=%s ttl=%d",
            sanitize_log_value(key),
            slug,
            ttl_seconds,
        )
        return {
            "slug": slug,
            "key": key,
            "url": short_link_url(slug, self.base_url),
            "expiresIn": ttl_seconds,
        }

    def list_catalog(
        self, cursor: Optional[str] = None, limit: Any = None, *, authenticated: bool
    ) -> CatalogPage:
        require_authenticated(authenticated)
        try:
            if limit is None:
                return self.catalog.list(cursor)
            return self.catalog.list(cursor, limit)
        except Exception as error:
            logger.exception("catalog_list_failed")
            raise UpstreamFailureError("Failed to list files", details=str(error)) from error

    def list_recent(self, limit: Any = None, *, authenticated: bool) -> Dict[str, Any]:
        require_authenticated(authenticated)
        try:
            items = self.catalog.recent() if limit is None else self.catalog.recent(limit)
        except Exception as error:
            logger.exception("recent_list_failed")
            raise UpstreamFailureError("Failed to list files", details=str(error)) from error
        return {"items": items}

    def list_aliases(self, *, authenticated: bool) -> Dict[str, Any]:
        require_authenticated(authenticated)
        if self.alias_index is None:
            return {"error": "Short links are not configured", "items": [], "total": 0}
        return {"items": [], "total": 0, "message": ALIAS_LISTING_MESSAGE}

    def delete_alias(self, slug: Any, *, authenticated: bool) -> Dict[str, Any]:
        require_authenticated(authenticated)
        if self.alias_index is None:
            raise StoreUnavailableError()
        if not isinstance(slug, str) or not slug:
            raise BadRequestError("slug parameter is required")
        try:
            self.alias_index.delete(slug)
        except Exception as error:
            logger.exception("alias_delete_failed slug=%s", sanitize_log_value(slug))
            raise UpstreamFailureError(
                "Failed to delete short link", details=str(error)
            ) from error
        return {"ok": True, "slug": slug}

    def purge_expired_links(self) -> int:
        purge = getattr(self.alias_index, "purge_expired", None)
        if purge is None:
            return 0
        return purge()

    def cleanup_temp_files(self) -> int:
        cleanup = getattr(self.store, "cleanup_temp_files", None)
        if cleanup is None:
            return 0
        return cleanup()

    def health(self) -> Dict[str, Any]:
        checks: Dict[str, Any] = {}
        healthy = True
        components = {"store": self.store, "links": self.alias_index}
        for name, component in components.items():
            if component is None:
                checks[name] = {"status": "disabled"}
                continue
            try:
                checks[name] = component.health_check()
            except Exception as error:
                checks[name] = {"status": f"error: {str(error)[:100]}"}
                healthy = False
        return {"status": "healthy" if healthy else "unhealthy", "checks": checks}
