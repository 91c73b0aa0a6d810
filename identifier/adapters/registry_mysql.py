from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from identifier.core.errors import ConstraintViolationError, RecordNotFoundError
from identifier.core.models import ProductDraft, ProductMetadata, ProductRecord, utcnow
from identifier.core.ports import MetadataScorer

from .mysql_common import import_pymysql, is_duplicate_key_error, parse_mysql_dsn
from .registry import (
    DEFAULT_BRAND,
    DEFAULT_CATEGORY,
    DEFAULT_NAME,
    SEARCH_CANDIDATE_LIMIT,
    SEARCH_MAX_TOKENS,
    _default_scorer,
    _metadata_json,
    rank_candidates,
)

LOGGER = logging.getLogger(__name__)


def _mysql_dt(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def _from_mysql_dt(value: object) -> datetime | None:
    if value is None:
        return None
    dt = value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class RegistryMySQLRepository:
    """
    Product registry in MySQL. Same contract as ``RegistrySQLiteRepository``.
    """

    def __init__(
        self,
        connect_kwargs: dict[str, object],
        *,
        connect_fn: Callable[..., Any] | None = None,
        scorer: MetadataScorer | None = None,
    ) -> None:
        self._connect_kwargs = dict(connect_kwargs)

        if connect_fn is None:
            pymysql = import_pymysql()
            connect_fn = pymysql.connect
            self._dict_cursor_cls = pymysql.cursors.DictCursor
        else:
            self._dict_cursor_cls = None

        self._connect_fn = connect_fn
        self._scorer = scorer if scorer is not None else _default_scorer()
        self._ensure_schema()

    @classmethod
    def from_dsn(cls, dsn: str, **kwargs: Any) -> "RegistryMySQLRepository":
        return cls(parse_mysql_dsn(dsn), **kwargs)

    def find_by_barcode(self, barcode: str) -> ProductRecord | None:
        conn = self._connect()
        try:
            row = self._fetch_one(conn, "SELECT * FROM products WHERE barcode = %s", [barcode])
        finally:
            conn.close()
        return self._row_to_record(row) if row is not None else None

    def find_by_id(self, product_id: str) -> ProductRecord | None:
        conn = self._connect()
        try:
            row = self._fetch_one(conn, "SELECT * FROM products WHERE id = %s", [product_id])
        finally:
            conn.close()
        return self._row_to_record(row) if row is not None else None

    def search_by_metadata(
        self, metadata: ProductMetadata, *, limit: int = 10
    ) -> list[tuple[ProductRecord, float]]:
        if not metadata.has_name():
            return []

        tokens = self._scorer.normalize_name(metadata.product_name or "").split()[:SEARCH_MAX_TOKENS]
        if not tokens:
            return []

        clauses = " OR ".join("name_normalized LIKE %s" for _ in tokens)
        params: list[object] = [f"%{token}%" for token in tokens]
        params.append(SEARCH_CANDIDATE_LIMIT)

        conn = self._connect()
        try:
            rows = self._fetch_all(
                conn,
                f"SELECT * FROM products WHERE {clauses} ORDER BY id LIMIT %s",
                params,
            )
        finally:
            conn.close()

        candidates = [self._row_to_record(row) for row in rows]
        return rank_candidates(self._scorer, metadata, candidates, limit)

    def create(self, draft: ProductDraft) -> ProductRecord:
        product_id = str(uuid4())
        now = _mysql_dt(utcnow())
        name = draft.name or DEFAULT_NAME

        conn = self._connect()
        try:
            self._execute(
                conn,
                """
                INSERT INTO products(
                    id, barcode, name, brand, size, category, image_url,
                    metadata_json, name_normalized, flagged_for_review, created_at, updated_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, CAST(%s AS JSON), %s, 0, %s, %s)
                """,
                [
                    product_id,
                    draft.barcode,
                    name,
                    draft.brand or DEFAULT_BRAND,
                    draft.size,
                    draft.category or DEFAULT_CATEGORY,
                    draft.image_url,
                    _metadata_json(draft.metadata or {}),
                    self._scorer.normalize_name(name),
                    now,
                    now,
                ],
            )
            row = self._fetch_one(conn, "SELECT * FROM products WHERE id = %s", [product_id])
            conn.commit()
        except Exception as exc:
            conn.rollback()
            if is_duplicate_key_error(exc):
                raise ConstraintViolationError(f"Product with barcode {draft.barcode!r} already exists") from exc
            raise
        finally:
            conn.close()

        LOGGER.info("Registry created product %s barcode=%s", product_id, draft.barcode)
        return self._row_to_record(row)

    def update(self, product_id: str, draft: ProductDraft) -> ProductRecord:
        provided = draft.provided()

        conn = self._connect()
        try:
            row = self._fetch_one(conn, "SELECT * FROM products WHERE id = %s FOR UPDATE", [product_id])
            if row is None:
                raise RecordNotFoundError(f"Product {product_id!r} not found")

            assignments: list[str] = []
            params: list[object] = []
            for column in ("barcode", "name", "brand", "size", "category", "image_url"):
                if column in provided:
                    assignments.append(f"{column} = %s")
                    params.append(provided[column])
            if "name" in provided:
                assignments.append("name_normalized = %s")
                params.append(self._scorer.normalize_name(provided["name"]))
            if "metadata" in provided:
                assignments.append("metadata_json = JSON_MERGE_PATCH(metadata_json, CAST(%s AS JSON))")
                params.append(_metadata_json(provided["metadata"]))

            assignments.append("updated_at = %s")
            params.append(_mysql_dt(utcnow()))
            params.append(product_id)

            self._execute(conn, f"UPDATE products SET {', '.join(assignments)} WHERE id = %s", params)
            updated = self._fetch_one(conn, "SELECT * FROM products WHERE id = %s", [product_id])
            conn.commit()
        except Exception as exc:
            conn.rollback()
            if is_duplicate_key_error(exc):
                raise ConstraintViolationError(f"Barcode {draft.barcode!r} belongs to another product") from exc
            raise
        finally:
            conn.close()

        return self._row_to_record(updated)

    def upsert_by_barcode(self, draft: ProductDraft) -> ProductRecord:
        if not draft.barcode:
            raise ValueError("upsert_by_barcode requires a barcode")

        now = _mysql_dt(utcnow())
        name = draft.name or DEFAULT_NAME
        metadata_json = _metadata_json(draft.metadata)
        name_normalized = self._scorer.normalize_name(draft.name) if draft.name else None

        conn = self._connect()
        try:
            self._execute(
                conn,
                """
                INSERT INTO products(
                    id, barcode, name, brand, size, category, image_url,
                    metadata_json, name_normalized, flagged_for_review, created_at, updated_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, CAST(%s AS JSON), %s, 0, %s, %s)
                ON DUPLICATE KEY UPDATE
                    name = COALESCE(%s, name),
                    brand = COALESCE(%s, brand),
                    size = COALESCE(%s, size),
                    category = COALESCE(%s, category),
                    image_url = COALESCE(%s, image_url),
                    metadata_json = IF(%s IS NULL, metadata_json, JSON_MERGE_PATCH(metadata_json, CAST(%s AS JSON))),
                    name_normalized = COALESCE(%s, name_normalized),
                    updated_at = VALUES(updated_at)
                """,
                [
                    str(uuid4()),
                    draft.barcode,
                    name,
                    draft.brand or DEFAULT_BRAND,
                    draft.size,
                    draft.category or DEFAULT_CATEGORY,
                    draft.image_url,
                    metadata_json or "{}",
                    name_normalized or self._scorer.normalize_name(name),
                    now,
                    now,
                    draft.name,
                    draft.brand,
                    draft.size,
                    draft.category,
                    draft.image_url,
                    metadata_json,
                    metadata_json,
                    name_normalized,
                ],
            )
            row = self._fetch_one(conn, "SELECT * FROM products WHERE barcode = %s", [draft.barcode])
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

        if row is None:
            raise RecordNotFoundError(f"Product with barcode {draft.barcode!r} vanished after upsert")
        return self._row_to_record(row)

    def flag_for_review(self, product_id: str) -> None:
        conn = self._connect()
        try:
            row = self._fetch_one(conn, "SELECT id FROM products WHERE id = %s", [product_id])
            if row is None:
                raise RecordNotFoundError(f"Product {product_id!r} not found")
            self._execute(
                conn,
                "UPDATE products SET flagged_for_review = 1, updated_at = %s WHERE id = %s",
                [_mysql_dt(utcnow()), product_id],
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

        LOGGER.info("Registry flagged product %s for review", product_id)

    @staticmethod
    def _row_to_record(row: dict[str, Any]) -> ProductRecord:
        raw_metadata = row.get("metadata_json")
        if isinstance(raw_metadata, (str, bytes)):
            metadata = json.loads(raw_metadata) if raw_metadata else {}
        else:
            metadata = raw_metadata or {}
        return ProductRecord(
            id=str(row["id"]),
            barcode=row.get("barcode"),
            name=str(row["name"]),
            brand=str(row["brand"]),
            size=row.get("size"),
            category=str(row.get("category") or DEFAULT_CATEGORY),
            image_url=row.get("image_url"),
            metadata=metadata if isinstance(metadata, dict) else {},
            flagged_for_review=bool(row.get("flagged_for_review")),
            created_at=_from_mysql_dt(row.get("created_at")),
            updated_at=_from_mysql_dt(row.get("updated_at")),
        )

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
    def _fetch_one(conn: Any, query: str, params: list[object]) -> dict[str, Any] | None:
        with conn.cursor() as cursor:
            cursor.execute(query, params)
            row = cursor.fetchone()
        if row is None:
            return None
        return dict(row)

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
                CREATE TABLE IF NOT EXISTS products (
                    id VARCHAR(36) NOT NULL PRIMARY KEY,
                    barcode VARCHAR(64) NULL,
                    name VARCHAR(512) NOT NULL,
                    brand VARCHAR(255) NOT NULL,
                    size VARCHAR(64) NULL,
                    category VARCHAR(255) NOT NULL,
                    image_url TEXT NULL,
                    metadata_json JSON NOT NULL,
                    name_normalized VARCHAR(512) NOT NULL DEFAULT '',
                    flagged_for_review TINYINT(1) NOT NULL DEFAULT 0,
                    created_at DATETIME(6) NOT NULL,
                    updated_at DATETIME(6) NOT NULL,
                    UNIQUE KEY uq_products_barcode (barcode),
                    KEY ix_products_name_normalized (name_normalized(191)),
                    KEY ix_products_flagged (flagged_for_review)
                ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4 COLLATE=utf8mb4_unicode_ci
                """,
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
