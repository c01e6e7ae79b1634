import hashlib
import json
import logging
import os
import sqlite3
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, BinaryIO, ContextManager, Dict, Iterator, List, Mapping, Optional
from urllib.parse import quote, unquote

import boto3
from botocore.exceptions import ClientError

from .db import connect
from .keys import filename_from_key
from .logs import sanitize_log_value

CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
TEMP_FILE_MAX_AGE_SECONDS = 3600
DEFAULT_CONTENT_TYPE = "application/octet-stream"

ORIGINAL_FILENAME_META = "original-filename"
SLUG_META = "slug"

logger = logging.getLogger("shortdrop.storage")


@dataclass(frozen=True)
class ObjectInfo:
    """Metadata for one stored object, as returned by head/list."""

    key: str
    size: int
    content_type: Optional[str] = None
    uploaded_at: Optional[float] = None
    etag: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def original_filename(self) -> str:
        return self.metadata.get(ORIGINAL_FILENAME_META) or filename_from_key(self.key) or "file"

    @property
    def slug(self) -> Optional[str]:
        return self.metadata.get(SLUG_META) or None


class ObjectBody:
    """Readable object body paired with its metadata."""

    def __init__(self, info: ObjectInfo, stream: BinaryIO) -> None:
        self.info = info
        self._stream = stream
        self._closed = False

    def iter_chunks(self, chunk_size: int = CHUNK_SIZE_BYTES) -> Iterator[bytes]:
        try:
            while True:
                chunk = self._stream.read(chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            self.close()

    def read(self) -> bytes:
        return b"".join(self.iter_chunks())

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._stream.close()
        except OSError as error:
            logger.warning(
                "object_stream_close_failed key=%s error=%s",
                sanitize_log_value(self.info.key),
                error,
            )


@dataclass
class ListPage:
    objects: List[ObjectInfo]
    truncated: bool = False
    cursor: Optional[str] = None


class ObjectStore(ABC):
    """Durable blob storage addressed by string keys."""

    @abstractmethod
    def put(
        self,
        key: str,
        data: bytes,
        content_type: str,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> ObjectInfo:
        ...

    @abstractmethod
    def get(self, key: str) -> Optional[ObjectBody]:
        ...

    @abstractmethod
    def head(self, key: str) -> Optional[ObjectInfo]:
        ...

    @abstractmethod
    def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    def list(self, limit: int, cursor: Optional[str] = None) -> ListPage:
        ...

    def health_check(self) -> Dict[str, Any]:
        return {"status": "ok"}


class LocalObjectStore(ObjectStore):
    """Filesystem blobs with their metadata kept in SQLite.

    Blobs live in two-character shard directories named after the SHA-256 of
    the key, so arbitrary keys never touch the filesystem layout. Writes go to
    a temporary file that is renamed into place before the metadata row is
    inserted; an object becomes visible only once both steps have succeeded.
    """

    def __init__(self, objects_dir: Path, db_path: Path) -> None:
        self.objects_dir = Path(objects_dir)
        self.db_path = Path(db_path)
        self.init_db()

    def ensure_directories(self) -> None:
        self.objects_dir.mkdir(parents=True, exist_ok=True)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def get_db(self) -> ContextManager[sqlite3.Connection]:
        self.ensure_directories()
        return connect(self.db_path)

    def init_db(self) -> None:
        with self.get_db() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS objects (
                    key TEXT PRIMARY KEY,
                    size INTEGER NOT NULL,
                    content_type TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    etag TEXT,
                    uploaded_at REAL NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_objects_uploaded_at ON objects(uploaded_at)"
            )
            conn.commit()

    def storage_path(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self.objects_dir / digest[:2] / digest

    def _prune_empty_shard(self, path: Path) -> None:
        shard = path.parent
        if shard == self.objects_dir:
            return
        try:
            shard.rmdir()
        except OSError:
            pass

    @staticmethod
    def _row_to_info(row: sqlite3.Row) -> ObjectInfo:
        try:
            metadata = json.loads(row["metadata"] or "{}")
        except json.JSONDecodeError:
            metadata = {}
        return ObjectInfo(
            key=row["key"],
            size=int(row["size"]),
            content_type=row["content_type"],
            uploaded_at=float(row["uploaded_at"]),
            etag=row["etag"],
            metadata=metadata if isinstance(metadata, dict) else {},
        )

    def put(
        self,
        key: str,
        data: bytes,
        content_type: str,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> ObjectInfo:
        path = self.storage_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            with temp_path.open("wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            temp_path.replace(path)
        except OSError:
            temp_path.unlink(missing_ok=True)
            raise

        info = ObjectInfo(
            key=key,
            size=len(data),
            content_type=content_type,
            uploaded_at=time.time(),
            etag=hashlib.md5(data).hexdigest(),
            metadata=dict(metadata or {}),
        )
        try:
            with self.get_db() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO objects (
                        key, size, content_type, metadata, etag, uploaded_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        info.key,
                        info.size,
                        info.content_type,
                        json.dumps(info.metadata),
                        info.etag,
                        info.uploaded_at,
                    ),
                )
        except sqlite3.Error:
            path.unlink(missing_ok=True)
            self._prune_empty_shard(path)
            raise

        logger.info(
            "object_stored key=%s size=%d content_type=%s",
            sanitize_log_value(key),
            info.size,
            sanitize_log_value(content_type),
        )
        return info

    def head(self, key: str) -> Optional[ObjectInfo]:
        with self.get_db() as conn:
            row = conn.execute("SELECT * FROM objects WHERE key = ?", (key,)).fetchone()
        return self._row_to_info(row) if row else None

    def get(self, key: str) -> Optional[ObjectBody]:
        info = self.head(key)
        if info is None:
            return None
        path = self.storage_path(key)
        try:
            stream = path.open("rb")
        except FileNotFoundError:
            logger.warning(
                "object_missing_path key=%s path=%s", sanitize_log_value(key), path
            )
            return None
        return ObjectBody(info, stream)

    def delete(self, key: str) -> bool:
        path = self.storage_path(key)
        with self.get_db() as conn:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute("DELETE FROM objects WHERE key = ?", (key,))
            if cursor.rowcount == 0:
                conn.rollback()
                return False

            # Remove the blob before committing so a disk failure keeps the row.
            if path.exists():
                try:
                    path.unlink()
                except OSError as error:
                    logger.warning(
                        "object_delete_disk_failed key=%s path=%s error=%s - rolling back transaction",
                        sanitize_log_value(key),
                        path,
                        error,
                    )
                    conn.rollback()
                    raise
            conn.commit()

        self._prune_empty_shard(path)
        logger.info("object_deleted key=%s", sanitize_log_value(key))
        return True

    def list(self, limit: int, cursor: Optional[str] = None) -> ListPage:
        limit_value = max(int(limit), 1)
        with self.get_db() as conn:
            if cursor:
                rows = conn.execute(
                    "SELECT * FROM objects WHERE key > ? ORDER BY key LIMIT ?",
                    (cursor, limit_value + 1),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM objects ORDER BY key LIMIT ?",
                    (limit_value + 1,),
                ).fetchall()

        truncated = len(rows) > limit_value
        objects = [self._row_to_info(row) for row in rows[:limit_value]]
        next_cursor = objects[-1].key if truncated and objects else None
        return ListPage(objects=objects, truncated=truncated, cursor=next_cursor)

    def cleanup_temp_files(self, max_age_seconds: int = TEMP_FILE_MAX_AGE_SECONDS) -> int:
        """Remove temporary files left behind by interrupted writes."""

        self.ensure_directories()
        removed = 0
        cutoff = time.time() - max_age_seconds

        for temp_file in self.objects_dir.rglob("*.tmp"):
            try:
                if temp_file.stat().st_mtime < cutoff:
                    temp_file.unlink()
                    removed += 1
                    logger.info("temp_file_removed path=%s", temp_file)
            except OSError as error:
                logger.warning(
                    "temp_cleanup_failed path=%s error=%s",
                    temp_file,
                    error,
                )
        return removed

    def health_check(self) -> Dict[str, Any]:
        with self.get_db() as conn:
            conn.execute("SELECT 1").fetchone()
            count = conn.execute("SELECT COUNT(*) AS count FROM objects").fetchone()["count"]
        probe = self.objects_dir / f".health_check_{uuid.uuid4().hex}"
        probe.write_text("health_check", encoding="utf-8")
        probe.unlink(missing_ok=True)
        return {"status": "ok", "backend": "local", "objects": int(count or 0)}


def _encode_metadata(metadata: Optional[Mapping[str, str]]) -> Dict[str, str]:
    # S3 user metadata travels as HTTP headers and must stay ASCII.
    return {key: quote(str(value), safe="") for key, value in (metadata or {}).items()}


def _decode_metadata(metadata: Optional[Mapping[str, str]]) -> Dict[str, str]:
    return {key.lower(): unquote(value) for key, value in (metadata or {}).items()}


def _timestamp(value: Any) -> Optional[float]:
    if isinstance(value, datetime):
        return value.timestamp()
    return None


def _is_not_found(error: ClientError) -> bool:
    code = str(error.response.get("Error", {}).get("Code", ""))
    return code in {"404", "NoSuchKey", "NotFound"}


class S3ObjectStore(ObjectStore):
    """S3-compatible backend (Cloudflare R2, MinIO, AWS) driven through boto3."""

    def __init__(
        self,
        bucket: str,
        client: Any = None,
        *,
        endpoint_url: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        region: str = "auto",
    ) -> None:
        self.bucket = bucket
        self._client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url or None,
            aws_access_key_id=access_key_id or None,
            aws_secret_access_key=secret_access_key or None,
            region_name=region or "auto",
        )

    def _info_from_response(self, key: str, response: Mapping[str, Any]) -> ObjectInfo:
        return ObjectInfo(
            key=key,
            size=int(response.get("ContentLength", 0)),
            content_type=response.get("ContentType"),
            uploaded_at=_timestamp(response.get("LastModified")),
            etag=(response.get("ETag") or "").strip('"') or None,
            metadata=_decode_metadata(response.get("Metadata")),
        )

    def put(
        self,
        key: str,
        data: bytes,
        content_type: str,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> ObjectInfo:
        response = self._client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
            Metadata=_encode_metadata(metadata),
        )
        logger.info(
            "object_stored key=%s size=%d content_type=%s bucket=%s",
            sanitize_log_value(key),
            len(data),
            sanitize_log_value(content_type),
            self.bucket,
        )
        return ObjectInfo(
            key=key,
            size=len(data),
            content_type=content_type,
            uploaded_at=time.time(),
            etag=(response.get("ETag") or "").strip('"') or None,
            metadata=dict(metadata or {}),
        )

    def get(self, key: str) -> Optional[ObjectBody]:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as error:
            if _is_not_found(error):
                return None
            raise
        return ObjectBody(self._info_from_response(key, response), response["Body"])

    def head(self, key: str) -> Optional[ObjectInfo]:
        try:
            response = self._client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as error:
            if _is_not_found(error):
                return None
            raise
        return self._info_from_response(key, response)

    def delete(self, key: str) -> bool:
        self._client.delete_object(Bucket=self.bucket, Key=key)
        logger.info("object_deleted key=%s bucket=%s", sanitize_log_value(key), self.bucket)
        return True

    def list(self, limit: int, cursor: Optional[str] = None) -> ListPage:
        list_kwargs: Dict[str, Any] = {"Bucket": self.bucket, "MaxKeys": max(int(limit), 1)}
        if cursor:
            list_kwargs["ContinuationToken"] = cursor
        response = self._client.list_objects_v2(**list_kwargs)

        objects = [
            ObjectInfo(
                key=entry["Key"],
                size=int(entry.get("Size", 0)),
                uploaded_at=_timestamp(entry.get("LastModified")),
                etag=(entry.get("ETag") or "").strip('"') or None,
            )
            for entry in response.get("Contents", [])
        ]
        truncated = bool(response.get("IsTruncated"))
        return ListPage(
            objects=objects,
            truncated=truncated,
            cursor=response.get("NextContinuationToken") if truncated else None,
        )

    def health_check(self) -> Dict[str, Any]:
        self._client.head_bucket(Bucket=self.bucket)
        return {"status": "ok", "backend": "s3", "bucket": self.bucket}


def build_object_store(config: Mapping[str, Any]) -> ObjectStore:
    if config.get("storage_backend") == "s3":
        required = ("r2_endpoint_url", "r2_bucket", "r2_access_key_id", "r2_secret_access_key")
        if not all(config.get(name) for name in required):
            raise RuntimeError("R2 storage is not configured (missing R2_* envs)")
        return S3ObjectStore(
            config["r2_bucket"],
            endpoint_url=config["r2_endpoint_url"],
            access_key_id=config["r2_access_key_id"],
            secret_access_key=config["r2_secret_access_key"],
            region=config.get("r2_region") or "auto",
        )
    return LocalObjectStore(config["objects_dir"], config["metadata_db_path"])
