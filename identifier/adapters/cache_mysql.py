from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from identifier.core.models import (
    CacheEntry,
    CacheKeyType,
    CacheLookup,
    CacheStats,
    ProductRecord,
    utcnow,
)

from .cache import DEFAULT_CACHE_TTL
from .mysql_common import import_pymysql, parse_mysql_dsn

LOGGER = logging.getLogger(__name__)


def _mysql_dt(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def _from_mysql_dt(value: object) -> datetime:
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class CacheMySQLStore:
    """
    Identification cache in MySQL. Same contract as ``CacheSQLiteStore``.
    """

    def __init__(
        self,
        connect_kwargs: dict[str, object],
        *,
        connect_fn: Callable[..., Any] | None = None,
        default_ttl: timedelta = DEFAULT_CACHE_TTL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._connect_kwargs = dict(connect_kwargs)

        if connect_fn is None:
            pymysql = import_pymysql()
            connect_fn = pymysql.connect
            self._dict_cursor_cls = pymysql.cursors.DictCursor
        else:
            self._dict_cursor_cls = None

        self._connect_fn = connect_fn
        self._default_ttl = default_ttl
        self._clock = clock
        self._ensure_schema()

    @classmethod
    def from_dsn(cls, dsn: str, **kwargs: Any) -> "CacheMySQLStore":
        return cls(parse_mysql_dsn(dsn), **kwargs)

    def lookup(self, key: str, key_type: CacheKeyType, *, include_expired: bool = False) -> CacheLookup:
        try:
            entry = self.snapshot(key, key_type)
        except Exception as exc:
            LOGGER.warning("Cache lookup failed for %s: %s", key_type, exc)
            return CacheLookup(hit=False)

        if entry is None:
            return CacheLookup(hit=False)

        now = self._clock()
        if entry.is_expired(now):
            return CacheLookup(hit=False, entry=entry if include_expired else None, expired=True)

        if self.touch(key, key_type):
            entry.access_count += 1
            entry.last_accessed_at = now
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
            self._write(
                """
                INSERT INTO cache_entries(
                    cache_key, key_type, product_id, record_json, tier, confidence,
                    created_at, last_accessed_at, access_count, expires_at
                )
                VALUES (%s, %s, %s, CAST(%s AS JSON), %s, %s, %s, %s, 0, %s)
                ON DUPLICATE KEY UPDATE
                    product_id = VALUES(product_id),
                    record_json = VALUES(record_json),
                    tier = VALUES(tier),
                    confidence = VALUES(confidence),
                    last_accessed_at = VALUES(last_accessed_at),
                    expires_at = VALUES(expires_at)
                """,
                [
                    key,
                    key_type,
                    record.id,
                    self._record_json(record),
                    int(tier),
                    float(confidence),
                    _mysql_dt(now),
                    _mysql_dt(now),
                    _mysql_dt(expires_at),
                ],
            )
        except Exception as exc:
            LOGGER.warning("Cache store failed for %s: %s", key_type, exc)
            return False
        return True

    def touch(self, key: str, key_type: CacheKeyType) -> bool:
        try:
            self._write(
                """
                UPDATE cache_entries
                SET access_count = access_count + 1, last_accessed_at = %s
                WHERE cache_key = %s AND key_type = %s
                """,
                [_mysql_dt(self._clock()), key, key_type],
            )
        except Exception as exc:
            LOGGER.warning("Cache touch failed for %s: %s", key_type, exc)
            return False
        return True

    def invalidate(self, key: str, key_type: CacheKeyType) -> bool:
        try:
            self._write(
                "DELETE FROM cache_entries WHERE cache_key = %s AND key_type = %s",
                [key, key_type],
            )
        except Exception as exc:
            LOGGER.warning("Cache invalidate failed for %s: %s", key_type, exc)
            return False
        return True

    def bulk_invalidate(self, predicate: Callable[[CacheEntry], bool]) -> int:
        conn = None
        try:
            conn = self._connect()
            rows = self._fetch_all(conn, "SELECT * FROM cache_entries", [])
            doomed = [entry for entry in (self._row_to_entry(row) for row in rows) if predicate(entry)]
            for entry in doomed:
                self._execute(
                    conn,
                    "DELETE FROM cache_entries WHERE cache_key = %s AND key_type = %s",
                    [entry.key, entry.key_type],
                )
            conn.commit()
        except Exception as exc:
            if conn is not None:
                conn.rollback()
            LOGGER.warning("Cache bulk invalidate failed: %s", exc)
            return 0
        finally:
            if conn is not None:
                conn.close()
        return len(doomed)

    def invalidate_by_product_id(self, product_id: str) -> int:
        try:
            return self._write("DELETE FROM cache_entries WHERE product_id = %s", [product_id])
        except Exception as exc:
            LOGGER.warning("Cache invalidate by product failed for %s: %s", product_id, exc)
            return 0

    def clear_expired(self) -> int:
        try:
            return self._write(
                "DELETE FROM cache_entries WHERE expires_at <= %s",
                [_mysql_dt(self._clock())],
            )
        except Exception as exc:
            LOGGER.warning("Cache clear expired failed: %s", exc)
            return 0

    def snapshot(self, key: str, key_type: CacheKeyType) -> CacheEntry | None:
        conn = self._connect()
        try:
            rows = self._fetch_all(
                conn,
                "SELECT * FROM cache_entries WHERE cache_key = %s AND key_type = %s",
                [key, key_type],
            )
        finally:
            conn.close()
        if not rows:
            return None
        return self._row_to_entry(rows[0])

    def restore(self, entry: CacheEntry) -> bool:
        try:
            self._write(
                """
                INSERT INTO cache_entries(
                    cache_key, key_type, product_id, record_json, tier, confidence,
                    created_at, last_accessed_at, access_count, expires_at
                )
                VALUES (%s, %s, %s, CAST(%s AS JSON), %s, %s, %s, %s, %s, %s)
                ON DUPLICATE KEY UPDATE
                    product_id = VALUES(product_id),
                    record_json = VALUES(record_json),
                    tier = VALUES(tier),
                    confidence = VALUES(confidence),
                    created_at = VALUES(created_at),
                    last_accessed_at = VALUES(last_accessed_at),
                    access_count = VALUES(access_count),
                    expires_at = VALUES(expires_at)
                """,
                [
                    entry.key,
                    entry.key_type,
                    entry.record.id,
                    self._record_json(entry.record),
                    int(entry.tier),
                    float(entry.confidence),
                    _mysql_dt(entry.created_at),
                    _mysql_dt(entry.last_accessed_at),
                    int(entry.access_count),
                    _mysql_dt(entry.expires_at),
                ],
            )
        except Exception as exc:
            LOGGER.error("Cache restore failed for %s: %s", entry.key_type, exc)
            return False
        return True

    def stats(self) -> CacheStats:
        conn = self._connect()
        try:
            rows = self._fetch_all(
                conn,
                """
                SELECT
                    COUNT(*) AS total,
                    SUM(key_type = 'barcode') AS barcodes,
                    SUM(key_type = 'imageHash') AS image_hashes,
                    AVG(access_count) AS avg_access,
                    MIN(created_at) AS oldest,
                    MAX(created_at) AS newest
                FROM cache_entries
                """,
                [],
            )
        finally:
            conn.close()

        row = rows[0] if rows else {}
        return CacheStats(
            total_entries=int(row.get("total") or 0),
            barcode_entries=int(row.get("barcodes") or 0),
            image_hash_entries=int(row.get("image_hashes") or 0),
            avg_access_count=float(row.get("avg_access") or 0.0),
            oldest_entry=_from_mysql_dt(row["oldest"]) if row.get("oldest") else None,
            newest_entry=_from_mysql_dt(row["newest"]) if row.get("newest") else None,
        )

    @staticmethod
    def _record_json(record: ProductRecord) -> str:
        return json.dumps(record.to_dict(), ensure_ascii=False, separators=(",", ":"))

    @staticmethod
    def _row_to_entry(row: dict[str, Any]) -> CacheEntry:
        raw_record = row["record_json"]
        payload = json.loads(raw_record) if isinstance(raw_record, (str, bytes)) else raw_record
        return CacheEntry(
            key=str(row["cache_key"]),
            key_type=row["key_type"],
            record=ProductRecord.from_dict(payload),
            tier=int(row["tier"]),
            confidence=float(row["confidence"]),
            created_at=_from_mysql_dt(row["created_at"]),
            last_accessed_at=_from_mysql_dt(row["last_accessed_at"]),
            access_count=int(row["access_count"]),
            expires_at=_from_mysql_dt(row["expires_at"]),
        )

    def _write(self, query: str, params: list[object]) -> int:
        conn = self._connect()
        try:
            with conn.cursor() as cursor:
                affected = cursor.execute(query, params)
            conn.commit()
            return int(affected or 0)
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _connect(self) -> Any:
        kwargs = dict(self._connect_kwargs)
        if self._dict_cursor_cls is not None:
            kwargs.setdefault("cursorclass", self._dict_cursor_cls)
        return self._connect_fn(**kwargs)

    @staticmethod
    def _execute(conn: Any, query: str, params: list[object] | None = None) -> None:
        with conn.cursor() as cursor:
            cursor.execute(query, params or [])

    @staticmethod
    def _fetch_all(conn: Any, query: str, params: list[object]) -> list[dict[str, Any]]:
        with conn.cursor() as cursor:
            cursor.execute(query, params)
            rows = cursor.fetchall()
        return [dict(row) for row in rows or []]

    def _ensure_schema(self) -> None:
        conn = self._connect()
        try:
            self._execute(
                conn,
                """
                CREATE TABLE IF NOT EXISTS cache_entries (
                    cache_key VARCHAR(128) NOT NULL,
                    key_type VARCHAR(16) NOT NULL,
                    product_id VARCHAR(36) NOT NULL,
                    record_json JSON NOT NULL,
                    tier TINYINT UNSIGNED NOT NULL,
                    confidence DOUBLE NOT NULL,
                    created_at DATETIME(6) NOT NULL,
                    last_accessed_at DATETIME(6) NOT NULL,
                    access_count BIGINT UNSIGNED NOT NULL DEFAULT 0,
                    expires_at DATETIME(6) NOT NULL,
                    PRIMARY KEY(cache_key, key_type),
                    KEY ix_cache_entries_product (product_id),
                    KEY ix_cache_entries_expires (expires_at)
                ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4 COLLATE=utf8mb4_unicode_ci
                """,
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
