from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import uuid4

from identifier.core.errors import ConstraintViolationError, RecordNotFoundError
from identifier.core.models import ProductDraft, ProductMetadata, ProductRecord, utcnow
from identifier.core.ports import MetadataScorer

LOGGER = logging.getLogger(__name__)

DEFAULT_NAME = "Unknown Product"
DEFAULT_BRAND = "Unknown Brand"
DEFAULT_CATEGORY = "Unknown"

# Upper bound on rows pulled by the LIKE prefilter before scoring.
SEARCH_CANDIDATE_LIMIT = 200
SEARCH_MAX_TOKENS = 8


def _iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _parse_dt(value: object) -> datetime | None:
    if value is None:
        return None
    dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _metadata_json(value: dict[str, Any] | None) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), sort_keys=True)


def _default_scorer() -> MetadataScorer:
    from identifier.core.similarity import MetadataSimilarityScorer

    return MetadataSimilarityScorer()


def rank_candidates(
    scorer: MetadataScorer,
    metadata: ProductMetadata,
    candidates: list[ProductRecord],
    limit: int,
) -> list[tuple[ProductRecord, float]]:
    scored: list[tuple[ProductRecord, float]] = []
    for record in candidates:
        score = scorer.score(metadata, record)
        if score > 0.0:
            scored.append((record, score))
    scored.sort(key=lambda item: (-item[1], item[0].id))
    return scored[: max(0, int(limit))]


class RegistrySQLiteRepository:
    """
    Product registry, the source of truth for identified products.

    Records are never deleted. ``name_normalized`` holds the scorer's
    normalized name and drives the LIKE prefilter for fuzzy search.
    """

    def __init__(self, db_path: str | Path, *, scorer: MetadataScorer | None = None) -> None:
        self._db_path = Path(db_path)
        if self._db_path.parent and not self._db_path.parent.exists():
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._scorer = scorer if scorer is not None else _default_scorer()
        self._ensure_schema()

    def find_by_barcode(self, barcode: str) -> ProductRecord | None:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM products WHERE barcode = ?", [barcode]).fetchone()
        finally:
            conn.close()
        return self._row_to_record(row) if row is not None else None

    def find_by_id(self, product_id: str) -> ProductRecord | None:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM products WHERE id = ?", [product_id]).fetchone()
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

        clauses = " OR ".join("name_normalized LIKE ?" for _ in tokens)
        params: list[object] = [f"%{token}%" for token in tokens]
        params.append(SEARCH_CANDIDATE_LIMIT)

        conn = self._connect()
        try:
            rows = conn.execute(
                f"SELECT * FROM products WHERE {clauses} ORDER BY id LIMIT ?",
                params,
            ).fetchall()
        finally:
            conn.close()

        candidates = [self._row_to_record(row) for row in rows]
        results = rank_candidates(self._scorer, metadata, candidates, limit)
        LOGGER.debug(
            "Registry search %r: %s candidates, %s matches",
            metadata.product_name,
            len(candidates),
            len(results),
        )
        return results

    def create(self, draft: ProductDraft) -> ProductRecord:
        product_id = str(uuid4())
        now = _iso(utcnow())
        name = draft.name or DEFAULT_NAME

        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO products(
                    id,
                    barcode,
                    name,
                    brand,
                    size,
                    category,
                    image_url,
                    metadata_json,
                    name_normalized,
                    flagged_for_review,
                    created_at,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
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
            row = conn.execute("SELECT * FROM products WHERE id = ?", [product_id]).fetchone()
            conn.commit()
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            raise ConstraintViolationError(f"Product with barcode {draft.barcode!r} already exists") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

        LOGGER.info("Registry created product %s barcode=%s", product_id, draft.barcode)
        return self._row_to_record(row)

    def update(self, product_id: str, draft: ProductDraft) -> ProductRecord:
        provided = draft.provided()

        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM products WHERE id = ?", [product_id]).fetchone()
            if row is None:
                raise RecordNotFoundError(f"Product {product_id!r} not found")

            assignments: list[str] = []
            params: list[object] = []
            for column in ("barcode", "name", "brand", "size", "category", "image_url"):
                if column in provided:
                    assignments.append(f"{column} = ?")
                    params.append(provided[column])
            if "name" in provided:
                assignments.append("name_normalized = ?")
                params.append(self._scorer.normalize_name(provided["name"]))
            if "metadata" in provided:
                merged = json.loads(row["metadata_json"] or "{}")
                merged.update(provided["metadata"])
                assignments.append("metadata_json = ?")
                params.append(_metadata_json(merged))

            assignments.append("updated_at = ?")
            params.append(_iso(utcnow()))
            params.append(product_id)

            conn.execute(f"UPDATE products SET {', '.join(assignments)} WHERE id = ?", params)
            updated = conn.execute("SELECT * FROM products WHERE id = ?", [product_id]).fetchone()
            conn.commit()
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            raise ConstraintViolationError(f"Barcode {draft.barcode!r} belongs to another product") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

        return self._row_to_record(updated)

    def upsert_by_barcode(self, draft: ProductDraft) -> ProductRecord:
        if not draft.barcode:
            raise ValueError("upsert_by_barcode requires a barcode")

        now = _iso(utcnow())
        name = draft.name or DEFAULT_NAME
        metadata_json = _metadata_json(draft.metadata)
        name_normalized = self._scorer.normalize_name(draft.name) if draft.name else None

        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO products(
                    id,
                    barcode,
                    name,
                    brand,
                    size,
                    category,
                    image_url,
                    metadata_json,
                    name_normalized,
                    flagged_for_review,
                    created_at,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                ON CONFLICT(barcode) DO UPDATE SET
                    name = COALESCE(?, products.name),
                    brand = COALESCE(?, products.brand),
                    size = COALESCE(?, products.size),
                    category = COALESCE(?, products.category),
                    image_url = COALESCE(?, products.image_url),
                    metadata_json = CASE
                        WHEN ? IS NULL THEN products.metadata_json
                        ELSE json_patch(products.metadata_json, ?)
                    END,
                    name_normalized = COALESCE(?, products.name_normalized),
                    updated_at = excluded.updated_at
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
            row = conn.execute("SELECT * FROM products WHERE barcode = ?", [draft.barcode]).fetchone()
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

        LOGGER.info("Registry upserted product %s barcode=%s", row["id"], draft.barcode)
        return self._row_to_record(row)

    def flag_for_review(self, product_id: str) -> None:
        conn = self._connect()
        try:
            cursor = conn.execute(
                "UPDATE products SET flagged_for_review = 1, updated_at = ? WHERE id = ?",
                [_iso(utcnow()), product_id],
            )
            if cursor.rowcount == 0:
                raise RecordNotFoundError(f"Product {product_id!r} not found")
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

        LOGGER.info("Registry flagged product %s for review", product_id)

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> ProductRecord:
        raw_metadata = row["metadata_json"]
        metadata = json.loads(raw_metadata) if raw_metadata else {}
        return ProductRecord(
            id=str(row["id"]),
            barcode=row["barcode"],
            name=str(row["name"]),
            brand=str(row["brand"]),
            size=row["size"],
            category=str(row["category"] or DEFAULT_CATEGORY),
            image_url=row["image_url"],
            metadata=metadata if isinstance(metadata, dict) else {},
            flagged_for_review=bool(row["flagged_for_review"]),
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
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
                CREATE TABLE IF NOT EXISTS products (
                    id TEXT PRIMARY KEY,
                    barcode TEXT UNIQUE,
                    name TEXT NOT NULL,
                    brand TEXT NOT NULL,
                    size TEXT,
                    category TEXT NOT NULL,
                    image_url TEXT,
                    metadata_json TEXT NOT NULL DEFAULT '{}',
                    name_normalized TEXT NOT NULL DEFAULT '',
                    flagged_for_review INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS ix_products_name_normalized
                ON products(name_normalized);

                CREATE INDEX IF NOT EXISTS ix_products_flagged
                ON products(flagged_for_review);
                """
            )
            conn.commit()
        finally:
            conn.close()
