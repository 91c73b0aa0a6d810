from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta
from typing import Any, Protocol

from .models import (
    CacheEntry,
    CacheKeyType,
    CacheLookup,
    ClassificationResult,
    DiscoveryMatch,
    ExtractionResult,
    ImageData,
    ProductDraft,
    ProductMetadata,
    ProductRecord,
    UsageRecord,
)


class CacheStore(Protocol):
    def lookup(self, key: str, key_type: CacheKeyType, *, include_expired: bool = False) -> CacheLookup:
        raise NotImplementedError

    def store(
        self,
        key: str,
        key_type: CacheKeyType,
        record: ProductRecord,
        tier: int,
        confidence: float,
        ttl: timedelta | None = None,
    ) -> bool:
        raise NotImplementedError

    def touch(self, key: str, key_type: CacheKeyType) -> bool:
        raise NotImplementedError

    def invalidate(self, key: str, key_type: CacheKeyType) -> bool:
        raise NotImplementedError

    def bulk_invalidate(self, predicate: Callable[[CacheEntry], bool]) -> int:
        raise NotImplementedError

    def invalidate_by_product_id(self, product_id: str) -> int:
        raise NotImplementedError

    def snapshot(self, key: str, key_type: CacheKeyType) -> CacheEntry | None:
        raise NotImplementedError

    def restore(self, entry: CacheEntry) -> bool:
        raise NotImplementedError


class ProductRegistry(Protocol):
    def find_by_barcode(self, barcode: str) -> ProductRecord | None:
        raise NotImplementedError

    def find_by_id(self, product_id: str) -> ProductRecord | None:
        raise NotImplementedError

    def search_by_metadata(
        self, metadata: ProductMetadata, *, limit: int = 10
    ) -> list[tuple[ProductRecord, float]]:
        raise NotImplementedError

    def create(self, draft: ProductDraft) -> ProductRecord:
        raise NotImplementedError

    def update(self, product_id: str, draft: ProductDraft) -> ProductRecord:
        raise NotImplementedError

    def upsert_by_barcode(self, draft: ProductDraft) -> ProductRecord:
        raise NotImplementedError

    def flag_for_review(self, product_id: str) -> None:
        raise NotImplementedError


class MetadataScorer(Protocol):
    def normalize_name(self, value: str) -> str:
        raise NotImplementedError

    def score(self, metadata: ProductMetadata, record: ProductRecord) -> float:
        raise NotImplementedError


class TextExtractionTier(Protocol):
    def extract(self, image: ImageData) -> ExtractionResult:
        raise NotImplementedError


class DiscoveryTier(Protocol):
    def discover(self, metadata: ProductMetadata, image_hash: str | None = None) -> DiscoveryMatch | None:
        raise NotImplementedError


class ImageClassificationTier(Protocol):
    def classify(self, image: ImageData) -> ClassificationResult:
        raise NotImplementedError

    def is_confidence_sufficient(self, score: float) -> bool:
        raise NotImplementedError


class ProgressSink(Protocol):
    def emit(self, stage: str, message: str, metadata: dict[str, Any] | None = None) -> None:
        raise NotImplementedError


class UsageLogger(Protocol):
    def record(self, usage: UsageRecord) -> None:
        raise NotImplementedError
