import logging
import sqlite3
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, ContextManager, Dict, Optional

from .db import connect
from .logs import sanitize_log_value

logger = logging.getLogger("shortdrop.links")


@dataclass(frozen=True)
class AliasEntry:
    slug: str
    target_key: str
    expires_at: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class AliasIndex(ABC):
    """Key-value store mapping slugs to object keys with optional expiry.

    Entries are only addressable one slug at a time and cannot be enumerated.
    """

    @abstractmethod
    def get(self, slug: str) -> Optional[str]:
        """Return the bound key, or ``None`` when absent or expired."""

    @abstractmethod
    def put(self, slug: str, target_key: str, ttl: Optional[int] = None) -> AliasEntry:
        """Bind *slug* unconditionally; the last writer wins."""

    @abstractmethod
    def delete(self, slug: str) -> None:
        ...

    def health_check(self) -> Dict[str, Any]:
        return {"status": "ok"}


class SqliteAliasIndex(AliasIndex):
    """Alias index persisted in SQLite.

    Besides the plain get/put/delete contract it offers ``put_if_absent``, an
    atomic conditional insert that also reclaims an expired entry under the
    same slug.
    """

    def __init__(self, db_path: Path, clock: Callable[[], float] = time.time) -> None:
        self.db_path = Path(db_path)
        self._clock = clock
        self.init_db()

    def get_db(self) -> ContextManager[sqlite3.Connection]:
        return connect(self.db_path)

    def init_db(self) -> None:
        with self.get_db() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS aliases (
                    slug TEXT PRIMARY KEY,
                    target_key TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    expires_at REAL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_aliases_expires_at ON aliases(expires_at)"
            )
            conn.commit()

    def _expiry(self, ttl: Optional[int], now: float) -> Optional[float]:
        if ttl is None:
            return None
        return now + max(int(ttl), 0)

    def lookup(self, slug: str) -> Optional[AliasEntry]:
        with self.get_db() as conn:
            row = conn.execute(
                "SELECT slug, target_key, expires_at FROM aliases WHERE slug = ?",
                (slug,),
            ).fetchone()
        if row is None:
            return None
        entry = AliasEntry(row["slug"], row["target_key"], row["expires_at"])
        if entry.is_expired(self._clock()):
            return None
        return entry

    def get(self, slug: str) -> Optional[str]:
        entry = self.lookup(slug)
        return entry.target_key if entry else None

    def put(self, slug: str, target_key: str, ttl: Optional[int] = None) -> AliasEntry:
        now = self._clock()
        entry = AliasEntry(slug, target_key, self._expiry(ttl, now))
        with self.get_db() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO aliases (slug, target_key, created_at, expires_at)
                VALUES (?, ?, ?, ?)
                """,
                (entry.slug, entry.target_key, now, entry.expires_at),
            )
        logger.info(
            "alias_bound slug=%s key=%s expires_at=%s",
            slug,
            sanitize_log_value(target_key),
            entry.expires_at,
        )
        return entry

    def put_if_absent(
        self, slug: str, target_key: str, ttl: Optional[int] = None
    ) -> Optional[AliasEntry]:
        """Bind *slug* only if no live entry holds it; ``None`` on collision."""

        now = self._clock()
        entry = AliasEntry(slug, target_key, self._expiry(ttl, now))
        with self.get_db() as conn:
            cursor = conn.execute(
                """
                INSERT INTO aliases (slug, target_key, created_at, expires_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(slug) DO UPDATE SET
                    target_key = excluded.target_key,
                    created_at = excluded.created_at,
                    expires_at = excluded.expires_at
                WHERE aliases.expires_at IS NOT NULL AND aliases.expires_at <= ?
                """,
                (entry.slug, entry.target_key, now, entry.expires_at, now),
            )
            bound = cursor.rowcount == 1
        if not bound:
            logger.info("alias_collision slug=%s", slug)
            return None
        logger.info(
            "alias_bound slug=%s key=%s expires_at=%s",
            slug,
            sanitize_log_value(target_key),
            entry.expires_at,
        )
        return entry

    def delete(self, slug: str) -> None:
        with self.get_db() as conn:
            conn.execute("DELETE FROM aliases WHERE slug = ?", (slug,))
        logger.info("alias_deleted slug=%s", sanitize_log_value(slug))

    def purge_expired(self) -> int:
        """Reclaim entries whose expiry has passed."""

        with self.get_db() as conn:
            cursor = conn.execute(
                "DELETE FROM aliases WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (self._clock(),),
            )
            removed = cursor.rowcount
        if removed:
            logger.info("alias_cleanup_completed removed=%d", removed)
        return removed

    def health_check(self) -> Dict[str, Any]:
        with self.get_db() as conn:
            conn.execute("SELECT 1").fetchone()
        return {"status": "ok", "backend": "sqlite"}
