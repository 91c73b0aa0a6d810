from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path

from identifier.core.models import (
    CacheEntry,
    CacheKeyType,
    CacheLookup,
    CacheStats,
    ProductRecord,
    utcnow,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_CACHE_TTL = timedelta(days=90)


def _iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _parse_dt(value: object) -> datetime:
    dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _short(key: str) -> str:
    return key if len(key) <= 16 else f"{key[:16]}..."


class CacheSQLiteStore:
    """
    Identification cache keyed by (key, key_type).

    Read paths degrade to a miss on any backing error; write paths log and
    report ``False``. Only ``snapshot`` is allowed to raise, because the
    transactional coordinator must know when it has no rollback point.
    """

    def __init__(
        self,
        db_path: str | Path,
        *,
        default_ttl: timedelta = DEFAULT_CACHE_TTL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db_path = Path(db_path)
        if self._db_path.parent and not self._db_path.parent.exists():
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._default_ttl = default_ttl
        self._clock = clock
        self._ensure_schema()

    def lookup(self, key: str, key_type: CacheKeyType, *, include_expired: bool = False) -> CacheLookup:
        try:
            entry = self._fetch_entry(key, key_type)
        except Exception as exc:
            LOGGER.warning("Cache lookup failed for %s=%s: %s", key_type, _short(key), exc)
            return CacheLookup(hit=False)

        if entry is None:
            LOGGER.debug("Cache MISS: %s=%s", key_type, _short(key))
            return CacheLookup(hit=False)

        now = self._clock()
        if entry.is_expired(now):
            LOGGER.debug("Cache EXPIRED: %s=%s", key_type, _short(key))
            return CacheLookup(hit=False, entry=entry if include_expired else None, expired=True)

        if self.touch(key, key_type):
            entry.access_count += 1
            entry.last_accessed_at = now

        LOGGER.debug("Cache HIT: %s=%s tier=%s", key_type, _short(key), entry.tier)
        return CacheLookup(hit=True, entry=entry)

    def store(
        self,
        key: str,
        key_type: CacheKeyType,
        record: ProductRecord,
        tier: int,
        confidence: float,
        ttl: timedelta | None = None,
    ) -> bool:
        now = self._clock()
        expires_at = now + (ttl if ttl is not None else self._default_ttl)
        try:
            conn = self._connect()
            try:
                conn.execute(
                    """
                    INSERT INTO cache_entries(
                        cache_key,
                        key_type,
                        product_id,
                        record_json,
                        tier,
                        confidence,
                        created_at,
                        last_accessed_at,
                        access_count,
                        expires_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
                    ON CONFLICT(cache_key, key_type) DO UPDATE SET
                        product_id = excluded.product_id,
                        record_json = excluded.record_json,
                        tier = excluded.tier,
                        confidence = excluded.confidence,
                        last_accessed_at = excluded.last_accessed_at,
                        expires_at = excluded.expires_at
                    """,
                    [
                        key,
                        key_type,
                        record.id,
                        self._record_json(record),
                        int(tier),
                        float(confidence),
                        _iso(now),
                        _iso(now),
                        _iso(expires_at),
                    ],
                )
                conn.commit()
            finally:
                conn.close()
        except Exception as exc:
            LOGGER.warning("Cache store failed for %s=%s: %s", key_type, _short(key), exc)
            return False

        LOGGER.debug("Cache stored: %s=%s tier=%s confidence=%.2f", key_type, _short(key), tier, confidence)
        return True

    def touch(self, key: str, key_type: CacheKeyType) -> bool:
        try:
            conn = self._connect()
            try:
                conn.execute(
                    """
                    UPDATE cache_entries
                    SET access_count = access_count + 1,
                        last_accessed_at = ?
                    WHERE cache_key = ? AND key_type = ?
                    """,
                    [_iso(self._clock()), key, key_type],
                )
                conn.commit()
            finally:
                conn.close()
        except Exception as exc:
            LOGGER.warning("Cache touch failed for %s=%s: %s", key_type, _short(key), exc)
            return False
        return True

    def invalidate(self, key: str, key_type: CacheKeyType) -> bool:
        try:
            conn = self._connect()
            try:
                cursor = conn.execute(
                    "DELETE FROM cache_entries WHERE cache_key = ? AND key_type = ?",
                    [key, key_type],
                )
                conn.commit()
                deleted = cursor.rowcount
            finally:
                conn.close()
        except Exception as exc:
            LOGGER.warning("Cache invalidate failed for %s=%s: %s", key_type, _short(key), exc)
            return False

        if deleted:
            LOGGER.info("Cache invalidated: %s=%s", key_type, _short(key))
        return True

    def bulk_invalidate(self, predicate: Callable[[CacheEntry], bool]) -> int:
        try:
            conn = self._connect()
            try:
                rows = conn.execute("SELECT * FROM cache_entries").fetchall()
                doomed = [
                    (entry.key, entry.key_type)
                    for entry in (self._row_to_entry(row) for row in rows)
                    if predicate(entry)
                ]
                for cache_key, key_type in doomed:
                    conn.execute(
                        "DELETE FROM cache_entries WHERE cache_key = ? AND key_type = ?",
                        [cache_key, key_type],
                    )
                conn.commit()
            finally:
                conn.close()
        except Exception as exc:
            LOGGER.warning("Cache bulk invalidate failed: %s", exc)
            return 0

        LOGGER.info("Cache bulk invalidated %s entries", len(doomed))
        return len(doomed)

    def invalidate_by_product_id(self, product_id: str) -> int:
        try:
            conn = self._connect()
            try:
                cursor = conn.execute("DELETE FROM cache_entries WHERE product_id = ?", [product_id])
                conn.commit()
                deleted = max(0, int(cursor.rowcount))
            finally:
                conn.close()
        except Exception as exc:
            LOGGER.warning("Cache invalidate by product failed for %s: %s", product_id, exc)
            return 0

        LOGGER.info("Cache invalidated %s entries for product %s", deleted, product_id)
        return deleted

    def clear_expired(self) -> int:
        try:
            conn = self._connect()
            try:
                rows = conn.execute("SELECT cache_key, key_type, expires_at FROM cache_entries").fetchall()
                now = self._clock()
                expired = [(row["cache_key"], row["key_type"]) for row in rows if now >= _parse_dt(row["expires_at"])]
                for cache_key, key_type in expired:
                    conn.execute(
                        "DELETE FROM cache_entries WHERE cache_key = ? AND key_type = ?",
                        [cache_key, key_type],
                    )
                conn.commit()
            finally:
                conn.close()
        except Exception as exc:
            LOGGER.warning("Cache clear expired failed: %s", exc)
            return 0
        return len(expired)

    def snapshot(self, key: str, key_type: CacheKeyType) -> CacheEntry | None:
        return self._fetch_entry(key, key_type)

    def restore(self, entry: CacheEntry) -> bool:
        try:
            conn = self._connect()
            try:
                conn.execute(
                    """
                    INSERT INTO cache_entries(
                        cache_key,
                        key_type,
                        product_id,
                        record_json,
                        tier,
                        confidence,
                        created_at,
                        last_accessed_at,
                        access_count,
                        expires_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(cache_key, key_type) DO UPDATE SET
                        product_id = excluded.product_id,
                        record_json = excluded.record_json,
                        tier = excluded.tier,
                        confidence = excluded.confidence,
                        created_at = excluded.created_at,
                        last_accessed_at = excluded.last_accessed_at,
                        access_count = excluded.access_count,
                        expires_at = excluded.expires_at
                    """,
                    [
                        entry.key,
                        entry.key_type,
                        entry.record.id,
                        self._record_json(entry.record),
                        int(entry.tier),
                        float(entry.confidence),
                        _iso(entry.created_at),
                        _iso(entry.last_accessed_at),
                        int(entry.access_count),
                        _iso(entry.expires_at),
                    ],
                )
                conn.commit()
            finally:
                conn.close()
        except Exception as exc:
            LOGGER.error("Cache restore failed for %s=%s: %s", entry.key_type, _short(entry.key), exc)
            return False

        LOGGER.info("Cache restored snapshot: %s=%s", entry.key_type, _short(entry.key))
        return True

    def stats(self) -> CacheStats:
        conn = self._connect()
        try:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    SUM(CASE WHEN key_type = 'barcode' THEN 1 ELSE 0 END) AS barcodes,
                    SUM(CASE WHEN key_type = 'imageHash' THEN 1 ELSE 0 END) AS image_hashes,
                    AVG(access_count) AS avg_access,
                    MIN(created_at) AS oldest,
                    MAX(created_at) AS newest
                FROM cache_entries
                """
            ).fetchone()
        finally:
            conn.close()

        return CacheStats(
            total_entries=int(row["total"] or 0),
            barcode_entries=int(row["barcodes"] or 0),
            image_hash_entries=int(row["image_hashes"] or 0),
            avg_access_count=float(row["avg_access"] or 0.0),
            oldest_entry=_parse_dt(row["oldest"]) if row["oldest"] else None,
            newest_entry=_parse_dt(row["newest"]) if row["newest"] else None,
        )

    def _fetch_entry(self, key: str, key_type: CacheKeyType) -> CacheEntry | None:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM cache_entries WHERE cache_key = ? AND key_type = ?",
                [key, key_type],
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return self._row_to_entry(row)

    @staticmethod
    def _record_json(record: ProductRecord) -> str:
        return json.dumps(record.to_dict(), ensure_ascii=False, separators=(",", ":"))

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> CacheEntry:
        return CacheEntry(
            key=str(row["cache_key"]),
            key_type=row["key_type"],
            record=ProductRecord.from_dict(json.loads(row["record_json"])),
            tier=int(row["tier"]),
            confidence=float(row["confidence"]),
            created_at=_parse_dt(row["created_at"]),
            last_accessed_at=_parse_dt(row["last_accessed_at"]),
            access_count=int(row["access_count"]),
            expires_at=_parse_dt(row["expires_at"]),
        )

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=5.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        conn = self._connect()
        try:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS cache_entries (
                    cache_key TEXT NOT NULL,
                    key_type TEXT NOT NULL,
                    product_id TEXT NOT NULL,
                    record_json TEXT NOT NULL,
                    tier INTEGER NOT NULL,
                    confidence REAL NOT NULL,
                    created_at TEXT NOT NULL,
                    last_accessed_at TEXT NOT NULL,
                    access_count INTEGER NOT NULL DEFAULT 0,
                    expires_at TEXT NOT NULL,
                    PRIMARY KEY(cache_key, key_type)
                );

                CREATE INDEX IF NOT EXISTS ix_cache_entries_product
                ON cache_entries(product_id);

                CREATE INDEX IF NOT EXISTS ix_cache_entries_expires
                ON cache_entries(expires_at);
                """
            )
            conn.commit()
        finally:
            conn.close()
