from .errors import (
    ConstraintViolationError,
    DataConsistencyError,
    RecordNotFoundError,
    RegistryError,
    RegistryWriteError,
    is_transient_error,
    with_retry,
)
from .hashing import hash_image
from .models import (
    CacheEntry,
    CacheLookup,
    ClassificationResult,
    DiscoveryMatch,
    ExtractionResult,
    Failed,
    Found,
    ImageData,
    NotFound,
    NotFoundWithMetadata,
    ProductDraft,
    ProductMetadata,
    ProductRecord,
    ScanError,
    ScanRequest,
    ScanResult,
    UsageRecord,
    VisualCharacteristics,
)
from .similarity import MetadataSimilarityScorer

__all__ = [
    "CacheEntry",
    "CacheLookup",
    "ClassificationResult",
    "ConstraintViolationError",
    "DataConsistencyError",
    "DiscoveryMatch",
    "ExtractionResult",
    "Failed",
    "Found",
    "ImageData",
    "MetadataSimilarityScorer",
    "NotFound",
    "NotFoundWithMetadata",
    "ProductDraft",
    "ProductMetadata",
    "ProductRecord",
    "RecordNotFoundError",
    "RegistryError",
    "RegistryWriteError",
    "ScanError",
    "ScanRequest",
    "ScanResult",
    "UsageRecord",
    "VisualCharacteristics",
    "hash_image",
    "is_transient_error",
    "with_retry",
]
