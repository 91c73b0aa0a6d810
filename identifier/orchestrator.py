from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta
from functools import partial
from typing import Any, TypeVar

from identifier.core.errors import (
    ALL_TIERS_FAILED,
    DATA_CONSISTENCY_ERROR,
    ORCHESTRATOR_ERROR,
    STORE_ERROR,
    STORE_UNAVAILABLE,
    TIER_FAILED,
    DataConsistencyError,
    RegistryWriteError,
    is_transient_error,
    with_retry,
)
from identifier.core.hashing import hash_image
from identifier.core.models import (
    CacheKeyType,
    Failed,
    Found,
    NotFound,
    NotFoundWithMetadata,
    ProductDraft,
    ProductMetadata,
    ProductRecord,
    ScanError,
    ScanRequest,
    ScanResult,
    TierOutcome,
    UsageRecord,
)
from identifier.core.ports import (
    CacheStore,
    DiscoveryTier,
    ImageClassificationTier,
    ProductRegistry,
    ProgressSink,
    TextExtractionTier,
    UsageLogger,
)
from identifier.progress import (
    STAGE_CACHE,
    STAGE_CLASSIFICATION,
    STAGE_COMPLETE,
    STAGE_DISCOVERY,
    STAGE_ERROR,
    STAGE_EXTRACTION,
    STAGE_REGISTRY,
    InterTierDelay,
)
from identifier.transaction import CacheKey, TransactionalUpdateCoordinator

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

LOW_CONFIDENCE_WARNING = "Low confidence match. Please verify the product details."
DISCOVERY_WARNING = "Product identified via barcode discovery. Please verify the details."
AI_LOW_CONFIDENCE_WARNING = "AI-based identification with low confidence. Please verify the product details."
AI_WARNING = "AI-based identification. Please verify the product details."
ALL_TIERS_FAILED_MESSAGE = "Unable to identify product using any tier"


@dataclass(slots=True)
class _ScanState:
    """Per-call state; the only channel through which tiers pass data forward."""

    request: ScanRequest
    image_hash: str | None = None
    tier2_metadata: ProductMetadata | None = None
    extraction_ran: bool = False
    attempted: list[int] = field(default_factory=list)


class TierOrchestrator:
    """
    Runs the identification tiers in order and stops at the first usable hit.

    Tier 1 resolves a barcode through the cache and then the registry. Tier 2
    extracts text from the image and fuzzy-searches the registry. Tier 3 asks
    the discovery service for a barcode using tier 2's metadata. Tier 4
    classifies the image and either reuses a close registry match or creates
    a new product. ``scan`` never raises.
    """

    def __init__(
        self,
        cache: CacheStore,
        registry: ProductRegistry,
        *,
        text_extractor: TextExtractionTier | None = None,
        discovery: DiscoveryTier | None = None,
        classifier: ImageClassificationTier | None = None,
        coordinator: TransactionalUpdateCoordinator | None = None,
        usage_logger: UsageLogger | None = None,
        progress: ProgressSink | None = None,
        inter_tier_delay: InterTierDelay | None = None,
        match_threshold: float = 0.6,
        min_usable_confidence: float = 0.1,
        low_confidence_threshold: float = 0.8,
        ai_verify_threshold: float = 0.9,
        cache_ttl: timedelta | None = None,
        read_retry_attempts: int = 3,
        retry_base_delay: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
        timer: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._cache = cache
        self._registry = registry
        self._text_extractor = text_extractor
        self._discovery = discovery
        self._classifier = classifier
        self._coordinator = coordinator or TransactionalUpdateCoordinator(
            cache,
            max_attempts=read_retry_attempts,
            base_delay=retry_base_delay,
            sleep=sleep,
        )
        self._usage_logger = usage_logger
        self._progress = progress
        self._inter_tier_delay = inter_tier_delay
        self._match_threshold = float(match_threshold)
        self._min_usable_confidence = float(min_usable_confidence)
        self._low_confidence_threshold = float(low_confidence_threshold)
        self._ai_verify_threshold = float(ai_verify_threshold)
        self._cache_ttl = cache_ttl
        self._read_retry_attempts = max(1, int(read_retry_attempts))
        self._retry_base_delay = float(retry_base_delay)
        self._sleep = sleep
        self._timer = timer

    def scan(self, request: ScanRequest) -> ScanResult:
        started = self._timer()
        state = _ScanState(request=request, image_hash=request.image_hash)

        try:
            result = self._run(state, started)
        except Exception as exc:
            LOGGER.exception("Unexpected orchestrator error")
            result = ScanResult(
                success=False,
                tier=4,
                confidence=0.0,
                cached=False,
                processing_time_ms=self._elapsed_ms(started),
                error=ScanError(
                    code=ORCHESTRATOR_ERROR,
                    message=str(exc) or exc.__class__.__name__,
                    tier=4,
                    retryable=False,
                ),
            )

        if result.success:
            self._emit(
                STAGE_COMPLETE,
                f"Identified by tier {result.tier}",
                {"tier": result.tier, "confidence": result.confidence, "cached": result.cached},
            )
        else:
            code = result.error.code if result.error is not None else None
            self._emit(STAGE_ERROR, "Identification failed", {"tier": result.tier, "code": code})
        return result

    def _run(self, state: _ScanState, started: float) -> ScanResult:
        request = state.request

        if request.barcode:
            result = self._attempt(state, started, 1, self._tier1)
            if result is not None:
                return result

        if request.image is not None:
            result = self._attempt(state, started, 2, self._tier2)
            if result is not None:
                return result

        if request.image is not None and state.tier2_metadata is not None:
            result = self._attempt(state, started, 3, self._tier3)
            if result is not None:
                return result

        if request.image is not None:
            result = self._attempt(state, started, 4, self._tier4)
            if result is not None:
                return result

        LOGGER.info("All tiers failed (attempted=%s)", state.attempted)
        return ScanResult(
            success=False,
            tier=4,
            confidence=0.0,
            cached=False,
            processing_time_ms=self._elapsed_ms(started),
            error=ScanError(code=ALL_TIERS_FAILED, message=ALL_TIERS_FAILED_MESSAGE, tier=4, retryable=True),
        )

    def _attempt(
        self,
        state: _ScanState,
        started: float,
        tier: int,
        attempt: Callable[[_ScanState], TierOutcome],
    ) -> ScanResult | None:
        state.attempted.append(tier)
        tier_started = self._timer()
        outcome = attempt(state)
        elapsed = self._elapsed_ms(tier_started)

        self._record_usage(state, tier, outcome, elapsed, success=isinstance(outcome, Found))

        if isinstance(outcome, Found):
            return ScanResult(
                success=True,
                tier=tier,
                confidence=outcome.confidence,
                cached=outcome.cached,
                processing_time_ms=self._elapsed_ms(started),
                product=outcome.record,
                warning=outcome.warning or self._warning_for(tier, outcome.confidence),
            )

        if isinstance(outcome, Failed):
            if not outcome.retryable:
                LOGGER.error("Tier %s surfaced %s: %s", tier, outcome.code, outcome.reason)
                return ScanResult(
                    success=False,
                    tier=tier,
                    confidence=0.0,
                    cached=False,
                    processing_time_ms=self._elapsed_ms(started),
                    product=outcome.record,
                    error=ScanError(code=outcome.code, message=outcome.reason, tier=tier, retryable=False),
                )
            LOGGER.warning("Tier %s failed (%s): %s", tier, outcome.code, outcome.reason)
            return None

        if isinstance(outcome, NotFoundWithMetadata):
            LOGGER.info("Tier %s found no match, metadata kept for discovery", tier)
            return None

        LOGGER.debug("Tier %s found nothing", tier)
        return None

    def _tier1(self, state: _ScanState) -> TierOutcome:
        barcode = state.request.barcode or ""
        self._emit(STAGE_CACHE, "Checking cache", {"tier": 1, "key_type": "barcode"})

        cached = self._cache_hit(barcode, "barcode")
        if cached is not None:
            return cached

        self._emit(STAGE_REGISTRY, "Looking up barcode", {"tier": 1})
        try:
            record = self._read(lambda: self._registry.find_by_barcode(barcode))
        except Exception as exc:
            return self._store_failure(exc)

        if record is None:
            return NotFound()

        self._cache_best_effort(barcode, "barcode", record, 1, 1.0)
        return Found(record=record, confidence=1.0)

    def _tier2(self, state: _ScanState) -> TierOutcome:
        image_hash = self._image_hash(state)
        self._emit(STAGE_CACHE, "Checking image cache", {"tier": 2, "key_type": "imageHash"})

        cached = self._cache_hit(image_hash, "imageHash")
        if cached is not None:
            return cached

        if self._text_extractor is None or state.request.image is None:
            return NotFound()

        self._emit(STAGE_EXTRACTION, "Reading product text", {"tier": 2})
        state.extraction_ran = True
        try:
            extraction = self._text_extractor.extract(state.request.image)
        except Exception as exc:
            return Failed(reason=f"text extraction failed: {exc}", code=TIER_FAILED)

        if not extraction.success or not extraction.metadata.has_name():
            return NotFound()

        metadata = extraction.metadata
        state.tier2_metadata = metadata

        self._emit(STAGE_REGISTRY, "Searching products", {"tier": 2, "name": metadata.product_name})
        try:
            matches = self._read(lambda: self._registry.search_by_metadata(metadata))
        except Exception as exc:
            return self._store_failure(exc)

        if not matches:
            return NotFoundWithMetadata(metadata=metadata)

        record, score = matches[0]
        if not self._usable(2, score):
            return NotFoundWithMetadata(metadata=metadata)

        self._cache_best_effort(image_hash, "imageHash", record, 2, score)
        return Found(record=record, confidence=score)

    def _tier3(self, state: _ScanState) -> TierOutcome:
        metadata = state.tier2_metadata
        if metadata is None or self._discovery is None:
            return NotFound()

        image_hash = self._image_hash(state)
        self._emit(STAGE_DISCOVERY, "Discovering barcode", {"tier": 3, "name": metadata.product_name})
        try:
            match = self._discovery.discover(metadata, image_hash)
        except Exception as exc:
            return Failed(reason=f"discovery failed: {exc}", code=TIER_FAILED)

        if match is None or not self._usable(3, match.confidence):
            return NotFound()

        product_metadata: dict[str, Any] = {
            **metadata.to_dict(),
            "discovered_barcode": True,
            "barcode_format": match.barcode_format,
            "discovery_source": match.source,
            "discovery_confidence": match.confidence,
        }
        draft = ProductDraft(
            barcode=match.barcode,
            name=match.name or metadata.product_name,
            brand=match.brand or metadata.brand_name,
            size=metadata.size,
            category=match.category or metadata.category,
            metadata=product_metadata,
        )

        try:
            record = self._coordinator.commit(
                lambda: self._registry.upsert_by_barcode(draft),
                cache_keys=[CacheKey(match.barcode, "barcode")],
                tier=3,
                confidence=match.confidence,
                ttl=self._cache_ttl,
            )
        except Exception as exc:
            return self._store_failure(exc)

        self._cache_best_effort(image_hash, "imageHash", record, 3, match.confidence)
        return Found(record=record, confidence=match.confidence)

    def _tier4(self, state: _ScanState) -> TierOutcome:
        request = state.request
        if request.image is None:
            return NotFound()

        if state.extraction_ran and self._inter_tier_delay is not None:
            self._inter_tier_delay.wait()

        image_hash = self._image_hash(state)
        self._emit(STAGE_CACHE, "Checking image cache", {"tier": 4, "key_type": "imageHash"})
        cached = self._cache_hit(image_hash, "imageHash")
        if cached is not None:
            return cached

        if self._classifier is None:
            return NotFound()

        self._emit(STAGE_CLASSIFICATION, "Analyzing image", {"tier": 4})
        try:
            classification = self._classifier.classify(request.image)
        except Exception as exc:
            return Failed(reason=f"image classification failed: {exc}", code=TIER_FAILED)

        if not classification.success:
            return NotFound()

        confidence = classification.confidence
        if not self._usable(4, confidence):
            return NotFound()
        if not self._classifier.is_confidence_sufficient(confidence):
            LOGGER.info("Classification confidence %.2f is below the classifier threshold", confidence)

        metadata = classification.metadata
        try:
            matches = self._read(lambda: self._registry.search_by_metadata(metadata))
        except Exception as exc:
            return self._store_failure(exc)

        cache_keys = [CacheKey(image_hash, "imageHash")]
        if request.barcode:
            cache_keys.append(CacheKey(request.barcode, "barcode"))

        best: tuple[ProductRecord, float] | None = None
        if matches and matches[0][1] >= self._match_threshold:
            best = matches[0]

        if best is not None:
            existing, similarity = best
            LOGGER.info("Tier 4 reusing product %s (similarity %.2f)", existing.id, similarity)
            write = self._reuse_write(existing, request.barcode, image_hash)
        else:
            if matches:
                LOGGER.info(
                    "Tier 4 best similarity %.2f below %.2f, creating new product",
                    matches[0][1],
                    self._match_threshold,
                )
            draft = ProductDraft(
                barcode=request.barcode,
                name=metadata.product_name,
                brand=metadata.brand_name,
                size=metadata.size,
                category=metadata.category,
                metadata={
                    "visual_characteristics": classification.visual_characteristics.to_dict(),
                    "keywords": list(metadata.keywords),
                    "image_hash": image_hash,
                    "source": "image_classification",
                },
            )
            write = partial(self._registry.create, draft)

        try:
            record = self._coordinator.commit(
                write,
                cache_keys=cache_keys,
                tier=4,
                confidence=confidence,
                ttl=self._cache_ttl,
            )
        except Exception as exc:
            return self._store_failure(exc)

        return Found(record=record, confidence=confidence)

    def _reuse_write(
        self,
        existing: ProductRecord,
        barcode: str | None,
        image_hash: str,
    ) -> Callable[[], ProductRecord]:
        draft = ProductDraft()
        if barcode and not existing.barcode:
            draft.barcode = barcode
        if not existing.metadata.get("image_hash"):
            draft.metadata = {"image_hash": image_hash}

        if not draft.provided():
            return lambda: existing
        return lambda: self._registry.update(existing.id, draft)

    def _warning_for(self, tier: int, confidence: float) -> str | None:
        if tier == 1:
            return None
        if tier == 4:
            if confidence < self._low_confidence_threshold:
                return AI_LOW_CONFIDENCE_WARNING
            if confidence < self._ai_verify_threshold:
                return AI_WARNING
            return None
        if confidence < self._low_confidence_threshold:
            return DISCOVERY_WARNING if tier == 3 else LOW_CONFIDENCE_WARNING
        return None

    def _cache_hit(self, key: str, key_type: CacheKeyType) -> Found | None:
        try:
            lookup = self._cache.lookup(key, key_type)
        except Exception as exc:
            LOGGER.warning("Cache lookup raised for %s, treating as miss: %s", key_type, exc)
            return None
        if not lookup.hit or lookup.entry is None:
            return None
        if lookup.entry.confidence < self._min_usable_confidence:
            LOGGER.info("Ignoring %s cache entry below usable confidence (%.2f)", key_type, lookup.entry.confidence)
            return None
        return Found(record=lookup.entry.record, confidence=lookup.entry.confidence, cached=True)

    def _usable(self, tier: int, confidence: float) -> bool:
        if confidence >= self._min_usable_confidence:
            return True
        LOGGER.info(
            "Tier %s match below usable confidence (%.2f < %.2f), escalating",
            tier,
            confidence,
            self._min_usable_confidence,
        )
        return False

    def _cache_best_effort(
        self,
        key: str,
        key_type: CacheKeyType,
        record: ProductRecord,
        tier: int,
        confidence: float,
    ) -> None:
        try:
            stored = self._cache.store(key, key_type, record, tier, confidence, self._cache_ttl)
        except Exception as exc:
            LOGGER.warning("Cache write raised for %s: %s", key_type, exc)
            return
        if not stored:
            LOGGER.warning("Cache write failed for %s, continuing without cache", key_type)

    def _read(self, operation: Callable[[], T]) -> T:
        return with_retry(
            operation,
            max_attempts=self._read_retry_attempts,
            base_delay=self._retry_base_delay,
            sleep=self._sleep,
        )

    @staticmethod
    def _store_failure(exc: Exception) -> Failed:
        if isinstance(exc, DataConsistencyError):
            return Failed(reason=str(exc), code=DATA_CONSISTENCY_ERROR, retryable=False, record=exc.record)
        if isinstance(exc, RegistryWriteError):
            transient = exc.transient
        else:
            transient = is_transient_error(exc)
        if transient:
            return Failed(reason=f"store unavailable: {exc}", code=STORE_UNAVAILABLE)
        return Failed(reason=f"store error: {exc}", code=STORE_ERROR, retryable=False)

    @staticmethod
    def _image_hash(state: _ScanState) -> str:
        if state.image_hash is None:
            image = state.request.image
            if image is None:
                raise ValueError("image hash requested for a scan without an image")
            state.image_hash = hash_image(image.content)
        return state.image_hash

    def _record_usage(
        self,
        state: _ScanState,
        tier: int,
        outcome: TierOutcome,
        elapsed_ms: int,
        *,
        success: bool,
    ) -> None:
        if self._usage_logger is None:
            return

        found = outcome if isinstance(outcome, Found) else None
        failed = outcome if isinstance(outcome, Failed) else None
        usage = UsageRecord(
            tier=tier,
            success=success,
            elapsed_ms=elapsed_ms,
            cached=bool(found and found.cached),
            confidence=found.confidence if found is not None else None,
            error_code=failed.code if failed is not None else None,
            user_id=state.request.user_id,
            session_id=state.request.session_id,
            product_id=found.record.id if found is not None else None,
            barcode=state.request.barcode,
            image_hash=state.image_hash,
        )
        try:
            self._usage_logger.record(usage)
        except Exception as exc:
            LOGGER.warning("Usage logging failed for tier %s: %s", tier, exc)

    def _emit(self, stage: str, message: str, metadata: dict[str, Any] | None = None) -> None:
        if self._progress is None:
            return
        try:
            self._progress.emit(stage, message, metadata)
        except Exception as exc:
            LOGGER.warning("Progress sink failed at %s: %s", stage, exc)

    def _elapsed_ms(self, started: float) -> int:
        return max(0, int((self._timer() - started) * 1000))
