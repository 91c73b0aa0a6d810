from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Union

CacheKeyType = Literal["barcode", "imageHash"]
Tier = Literal[1, 2, 3, 4]


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def _dt_to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _dt_from_iso(value: object) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        token = str(value).strip()
        if not token:
            return None
        dt = datetime.fromisoformat(token)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _opt_str(value: object) -> str | None:
    if value is None:
        return None
    token = str(value).strip()
    return token or None


@dataclass(frozen=True, slots=True)
class ImageData:
    content: bytes
    mime_type: str = "image/jpeg"

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass(frozen=True, slots=True)
class ScanRequest:
    user_id: str
    session_id: str
    barcode: str | None = None
    image: ImageData | None = None
    image_hash: str | None = None


@dataclass(slots=True)
class ProductMetadata:
    product_name: str | None = None
    brand_name: str | None = None
    size: str | None = None
    category: str | None = None
    keywords: list[str] = field(default_factory=list)

    def has_name(self) -> bool:
        return bool(self.product_name and self.product_name.strip())

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_name": self.product_name,
            "brand_name": self.brand_name,
            "size": self.size,
            "category": self.category,
            "keywords": list(self.keywords),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ProductMetadata":
        keywords = payload.get("keywords") or []
        return cls(
            product_name=_opt_str(payload.get("product_name")),
            brand_name=_opt_str(payload.get("brand_name")),
            size=_opt_str(payload.get("size")),
            category=_opt_str(payload.get("category")),
            keywords=[str(item) for item in keywords if _opt_str(item)],
        )


@dataclass(slots=True)
class VisualCharacteristics:
    colors: list[str] = field(default_factory=list)
    packaging: str = "unknown"
    shape: str = "unknown"

    def to_dict(self) -> dict[str, Any]:
        return {"colors": list(self.colors), "packaging": self.packaging, "shape": self.shape}


@dataclass(slots=True)
class ProductRecord:
    id: str
    name: str
    brand: str
    category: str = "Unknown"
    barcode: str | None = None
    size: str | None = None
    image_url: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    flagged_for_review: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "barcode": self.barcode,
            "name": self.name,
            "brand": self.brand,
            "size": self.size,
            "category": self.category,
            "image_url": self.image_url,
            "metadata": dict(self.metadata),
            "flagged_for_review": self.flagged_for_review,
            "created_at": _dt_to_iso(self.created_at),
            "updated_at": _dt_to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ProductRecord":
        metadata = payload.get("metadata")
        return cls(
            id=str(payload["id"]),
            barcode=_opt_str(payload.get("barcode")),
            name=str(payload.get("name") or ""),
            brand=str(payload.get("brand") or ""),
            size=_opt_str(payload.get("size")),
            category=_opt_str(payload.get("category")) or "Unknown",
            image_url=_opt_str(payload.get("image_url")),
            metadata=dict(metadata) if isinstance(metadata, dict) else {},
            flagged_for_review=bool(payload.get("flagged_for_review")),
            created_at=_dt_from_iso(payload.get("created_at")),
            updated_at=_dt_from_iso(payload.get("updated_at")),
        )


@dataclass(slots=True)
class ProductDraft:
    """Field set for registry writes. ``None`` means "not provided"."""

    barcode: str | None = None
    name: str | None = None
    brand: str | None = None
    size: str | None = None
    category: str | None = None
    image_url: str | None = None
    metadata: dict[str, Any] | None = None

    def provided(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for field_name in ("barcode", "name", "brand", "size", "category", "image_url", "metadata"):
            value = getattr(self, field_name)
            if value is not None:
                out[field_name] = value
        return out


@dataclass(slots=True)
class CacheEntry:
    key: str
    key_type: CacheKeyType
    record: ProductRecord
    tier: int
    confidence: float
    created_at: datetime
    last_accessed_at: datetime
    access_count: int
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True, slots=True)
class CacheLookup:
    hit: bool
    entry: CacheEntry | None = None
    expired: bool = False


@dataclass(frozen=True, slots=True)
class CacheStats:
    total_entries: int
    barcode_entries: int
    image_hash_entries: int
    avg_access_count: float
    oldest_entry: datetime | None
    newest_entry: datetime | None


@dataclass(slots=True)
class ExtractionResult:
    success: bool
    metadata: ProductMetadata = field(default_factory=ProductMetadata)
    raw_text: str = ""


@dataclass(frozen=True, slots=True)
class DiscoveryMatch:
    barcode: str
    confidence: float
    barcode_format: str | None = None
    name: str | None = None
    brand: str | None = None
    category: str | None = None
    source: str = "barcode_lookup"


@dataclass(slots=True)
class ClassificationResult:
    success: bool
    metadata: ProductMetadata = field(default_factory=ProductMetadata)
    visual_characteristics: VisualCharacteristics = field(default_factory=VisualCharacteristics)
    confidence: float = 0.0


@dataclass(frozen=True, slots=True)
class Found:
    record: ProductRecord
    confidence: float
    cached: bool = False
    warning: str | None = None


@dataclass(frozen=True, slots=True)
class NotFoundWithMetadata:
    metadata: ProductMetadata


@dataclass(frozen=True, slots=True)
class NotFound:
    pass


@dataclass(frozen=True, slots=True)
class Failed:
    reason: str
    code: str = "TIER_FAILED"
    retryable: bool = True
    # Set when the registry committed but the cache could not follow.
    record: ProductRecord | None = None


TierOutcome = Union[Found, NotFoundWithMetadata, NotFound, Failed]


@dataclass(frozen=True, slots=True)
class ScanError:
    code: str
    message: str
    tier: int
    retryable: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "tier": self.tier,
            "retryable": self.retryable,
        }


@dataclass(frozen=True, slots=True)
class ScanResult:
    success: bool
    tier: int
    confidence: float
    cached: bool
    processing_time_ms: int
    product: ProductRecord | None = None
    warning: str | None = None
    error: ScanError | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "tier": self.tier,
            "confidence": self.confidence,
            "cached": self.cached,
            "processing_time_ms": self.processing_time_ms,
            "product": self.product.to_dict() if self.product is not None else None,
        }
        if self.warning is not None:
            payload["warning"] = self.warning
        if self.error is not None:
            payload["error"] = self.error.to_dict()
        return payload


@dataclass(frozen=True, slots=True)
class UsageRecord:
    tier: int
    success: bool
    elapsed_ms: int
    cached: bool
    confidence: float | None = None
    error_code: str | None = None
    user_id: str | None = None
    session_id: str | None = None
    product_id: str | None = None
    barcode: str | None = None
    image_hash: str | None = None
    recorded_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True, slots=True)
class TierMetrics:
    tier: int
    total_scans: int
    successful_scans: int
    success_rate: float
    avg_processing_time_ms: float
    cache_hit_rate: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "tier": self.tier,
            "total_scans": self.total_scans,
            "successful_scans": self.successful_scans,
            "success_rate": self.success_rate,
            "avg_processing_time_ms": self.avg_processing_time_ms,
            "cache_hit_rate": self.cache_hit_rate,
        }


@dataclass(frozen=True, slots=True)
class ErrorReport:
    user_id: str
    session_id: str
    product_id: str
    tier: int
    barcode: str | None = None
    image_hash: str | None = None
    user_feedback: str | None = None
    product_name: str | None = None
    brand: str | None = None
    reported_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True, slots=True)
class ErrorReportOutcome:
    success: bool
    message: str
    report_id: str | None = None
    invalidated_entries: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "report_id": self.report_id,
            "message": self.message,
            "invalidated_entries": self.invalidated_entries,
        }


@dataclass(frozen=True, slots=True)
class ErrorStats:
    total_errors: int
    errors_by_tier: dict[int, int]
    error_rate: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_errors": self.total_errors,
            "errors_by_tier": {str(tier): count for tier, count in sorted(self.errors_by_tier.items())},
            "error_rate": self.error_rate,
        }
