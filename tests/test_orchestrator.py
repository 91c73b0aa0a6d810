from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from identifier.adapters import CacheSQLiteStore, RegistrySQLiteRepository
from identifier.core.hashing import hash_image
from identifier.core.models import (
    ClassificationResult,
    DiscoveryMatch,
    ExtractionResult,
    ImageData,
    ProductDraft,
    ProductMetadata,
    ProductRecord,
    ScanRequest,
    UsageRecord,
)
from identifier.core.similarity import MetadataSimilarityScorer
from identifier.orchestrator import (
    AI_LOW_CONFIDENCE_WARNING,
    AI_WARNING,
    DISCOVERY_WARNING,
    LOW_CONFIDENCE_WARNING,
    TierOrchestrator,
)
from identifier.progress import InterTierDelay, ProgressRecorder

IMAGE = ImageData(content=b"\xff\xd8\xff\xe0 shelf photo", mime_type="image/jpeg")
IMAGE_HASH = hash_image(IMAGE.content)


class _Extractor:
    def __init__(self, metadata: ProductMetadata | None = None, error: Exception | None = None) -> None:
        self._metadata = metadata
        self._error = error
        self.calls = 0

    def extract(self, image: ImageData) -> ExtractionResult:
        self.calls += 1
        if self._error is not None:
            raise self._error
        if self._metadata is None:
            return ExtractionResult(success=False)
        return ExtractionResult(success=True, metadata=self._metadata, raw_text=self._metadata.product_name or "")


class _Discovery:
    def __init__(self, match: DiscoveryMatch | None = None) -> None:
        self._match = match
        self.received: list[tuple[ProductMetadata, str | None]] = []

    def discover(self, metadata: ProductMetadata, image_hash: str | None = None) -> DiscoveryMatch | None:
        self.received.append((metadata, image_hash))
        return self._match


class _Classifier:
    def __init__(self, metadata: ProductMetadata, confidence: float) -> None:
        self._metadata = metadata
        self._confidence = confidence
        self.calls = 0

    def classify(self, image: ImageData) -> ClassificationResult:
        self.calls += 1
        return ClassificationResult(success=True, metadata=self._metadata, confidence=self._confidence)

    def is_confidence_sufficient(self, score: float) -> bool:
        return score >= 0.7


class _UsageLog:
    def __init__(self, fail: bool = False) -> None:
        self.records: list[UsageRecord] = []
        self._fail = fail

    def record(self, usage: UsageRecord) -> None:
        if self._fail:
            raise OSError("scan log unavailable")
        self.records.append(usage)


class _RefusingCache(CacheSQLiteStore):
    def store(self, key, key_type, record, tier, confidence, ttl=None) -> bool:
        return False


class _BrokenRegistry(RegistrySQLiteRepository):
    def __init__(self, *args, error: Exception, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.error = error
        self.calls = 0

    def find_by_barcode(self, barcode: str) -> ProductRecord | None:
        self.calls += 1
        raise self.error


def _request(barcode: str | None = None, image: ImageData | None = None) -> ScanRequest:
    return ScanRequest(user_id="user-1", session_id="session-1", barcode=barcode, image=image)


class TierOrchestratorTests(unittest.TestCase):
    scorer: MetadataSimilarityScorer

    @classmethod
    def setUpClass(cls) -> None:
        cls.scorer = MetadataSimilarityScorer()

    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.cache = CacheSQLiteStore(self.root / "cache.db")
        self.registry = RegistrySQLiteRepository(self.root / "registry.db", scorer=self.scorer)
        self.sleeps: list[float] = []
        self.delays: list[float] = []
        self.usage = _UsageLog()
        self.progress = ProgressRecorder()

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _orchestrator(self, **kwargs) -> TierOrchestrator:
        kwargs.setdefault("cache", self.cache)
        kwargs.setdefault("registry", self.registry)
        kwargs.setdefault("usage_logger", self.usage)
        kwargs.setdefault("progress", self.progress)
        kwargs.setdefault("inter_tier_delay", InterTierDelay(10.0, sleep=self.delays.append))
        kwargs.setdefault("sleep", self.sleeps.append)
        cache = kwargs.pop("cache")
        registry = kwargs.pop("registry")
        return TierOrchestrator(cache, registry, **kwargs)

    def _water(self, **overrides) -> ProductRecord:
        fields = {"name": "Sparkling Water", "brand": "Aqua", "size": "500 ml"}
        fields.update(overrides)
        return self.registry.create(ProductDraft(**fields))

    def test_barcode_scan_resolves_through_registry_then_cache(self) -> None:
        product = self._water(barcode="012345678901")
        orchestrator = self._orchestrator()

        first = orchestrator.scan(_request(barcode="012345678901"))

        self.assertTrue(first.success)
        self.assertEqual(first.tier, 1)
        self.assertEqual(first.confidence, 1.0)
        self.assertFalse(first.cached)
        self.assertIsNone(first.warning)
        assert first.product is not None
        self.assertEqual(first.product.id, product.id)
        self.assertTrue(self.cache.lookup("012345678901", "barcode").hit)
        self.assertEqual(self.progress.stages(), ["cache", "registry", "complete"])

        second = orchestrator.scan(_request(barcode="012345678901"))

        self.assertTrue(second.success)
        self.assertTrue(second.cached)
        self.assertEqual(second.tier, 1)

    def test_unknown_barcode_without_image_fails_all_tiers(self) -> None:
        result = self._orchestrator().scan(_request(barcode="000000000000"))

        self.assertFalse(result.success)
        assert result.error is not None
        self.assertEqual(result.error.code, "ALL_TIERS_FAILED")
        self.assertTrue(result.error.retryable)
        self.assertEqual(result.tier, 4)
        self.assertEqual(self.progress.stages()[-1], "error")

    def test_text_extraction_match_and_image_cache(self) -> None:
        product = self._water()
        extractor = _Extractor(ProductMetadata(product_name="Sparkling Water", brand_name="Aqua"))
        orchestrator = self._orchestrator(text_extractor=extractor)

        result = orchestrator.scan(_request(image=IMAGE))

        self.assertTrue(result.success)
        self.assertEqual(result.tier, 2)
        self.assertEqual(result.confidence, 0.8)
        self.assertIsNone(result.warning)
        assert result.product is not None
        self.assertEqual(result.product.id, product.id)

        cached = self.cache.lookup(IMAGE_HASH, "imageHash")
        assert cached.entry is not None
        self.assertEqual(cached.entry.tier, 2)

        again = orchestrator.scan(_request(image=IMAGE))
        self.assertTrue(again.cached)
        self.assertEqual(again.tier, 2)
        self.assertEqual(extractor.calls, 1)

    def test_weak_text_match_carries_low_confidence_warning(self) -> None:
        self._water()
        extractor = _Extractor(ProductMetadata(product_name="Sparkling Water"))

        result = self._orchestrator(text_extractor=extractor).scan(_request(image=IMAGE))

        self.assertEqual(result.tier, 2)
        self.assertEqual(result.confidence, 0.5)
        self.assertEqual(result.warning, LOW_CONFIDENCE_WARNING)

    def test_discovery_uses_extracted_metadata_and_upserts_product(self) -> None:
        extractor = _Extractor(ProductMetadata(product_name="Mystery snack", brand_name="Snacko"))
        discovery = _Discovery(
            DiscoveryMatch(
                barcode="5901234123457",
                confidence=0.7,
                barcode_format="EAN-13",
                name="Mystery Snack Bar",
                brand="Snacko",
            )
        )

        result = self._orchestrator(text_extractor=extractor, discovery=discovery).scan(_request(image=IMAGE))

        self.assertTrue(result.success)
        self.assertEqual(result.tier, 3)
        self.assertEqual(result.confidence, 0.7)
        self.assertEqual(result.warning, DISCOVERY_WARNING)
        self.assertEqual(len(discovery.received), 1)
        received_metadata, received_hash = discovery.received[0]
        self.assertEqual(received_metadata.product_name, "Mystery snack")
        self.assertEqual(received_hash, IMAGE_HASH)
        self.assertEqual(self.delays, [])

        stored = self.registry.find_by_barcode("5901234123457")
        assert stored is not None
        self.assertEqual(stored.name, "Mystery Snack Bar")
        self.assertTrue(stored.metadata["discovered_barcode"])
        self.assertEqual(stored.metadata["barcode_format"], "EAN-13")
        self.assertTrue(self.cache.lookup("5901234123457", "barcode").hit)
        self.assertTrue(self.cache.lookup(IMAGE_HASH, "imageHash").hit)

    def test_low_similarity_classification_creates_new_product(self) -> None:
        existing = self._water()
        extractor = _Extractor(ProductMetadata(product_name="Mystery snack"))
        classifier = _Classifier(ProductMetadata(product_name="Sparkling Water"), 0.55)

        result = self._orchestrator(
            text_extractor=extractor,
            discovery=_Discovery(None),
            classifier=classifier,
        ).scan(_request(image=IMAGE))

        self.assertTrue(result.success)
        self.assertEqual(result.tier, 4)
        self.assertEqual(result.confidence, 0.55)
        self.assertEqual(result.warning, AI_LOW_CONFIDENCE_WARNING)
        assert result.product is not None
        self.assertNotEqual(result.product.id, existing.id)
        self.assertEqual(result.product.metadata["source"], "image_classification")
        self.assertEqual(result.product.metadata["image_hash"], IMAGE_HASH)
        self.assertEqual(self.delays, [10.0])

        cached = self.cache.lookup(IMAGE_HASH, "imageHash")
        assert cached.entry is not None
        self.assertEqual(cached.entry.tier, 4)
        self.assertEqual(cached.entry.record.id, result.product.id)
        self.assertEqual([record.tier for record in self.usage.records], [2, 3, 4])
        self.assertEqual([record.success for record in self.usage.records], [False, False, True])

    def test_close_classification_reuses_and_enriches_existing_product(self) -> None:
        existing = self._water()
        classifier = _Classifier(ProductMetadata(product_name="Sparkling Water", brand_name="Aqua"), 0.85)

        result = self._orchestrator(classifier=classifier).scan(_request(barcode="99999999", image=IMAGE))

        self.assertTrue(result.success)
        self.assertEqual(result.tier, 4)
        self.assertEqual(result.warning, AI_WARNING)
        assert result.product is not None
        self.assertEqual(result.product.id, existing.id)
        # No extraction ran, so no pause before classification.
        self.assertEqual(self.delays, [])

        updated = self.registry.find_by_barcode("99999999")
        assert updated is not None
        self.assertEqual(updated.id, existing.id)
        self.assertEqual(updated.metadata["image_hash"], IMAGE_HASH)
        self.assertTrue(self.cache.lookup("99999999", "barcode").hit)
        self.assertTrue(self.cache.lookup(IMAGE_HASH, "imageHash").hit)

    def test_failing_usage_logger_does_not_break_scan(self) -> None:
        self._water(barcode="012345678901")

        result = self._orchestrator(usage_logger=_UsageLog(fail=True)).scan(_request(barcode="012345678901"))

        self.assertTrue(result.success)
        self.assertEqual(result.tier, 1)

    def test_transient_registry_error_escalates(self) -> None:
        registry = _BrokenRegistry(self.root / "registry.db", error=TimeoutError("timed out"), scorer=self.scorer)

        result = self._orchestrator(registry=registry).scan(_request(barcode="012345678901"))

        self.assertFalse(result.success)
        assert result.error is not None
        self.assertEqual(result.error.code, "ALL_TIERS_FAILED")
        self.assertEqual(registry.calls, 3)
        self.assertEqual(len(self.sleeps), 2)
        self.assertEqual(self.usage.records[0].error_code, "STORE_UNAVAILABLE")

    def test_non_transient_registry_error_is_surfaced(self) -> None:
        registry = _BrokenRegistry(self.root / "registry.db", error=ValueError("malformed row"), scorer=self.scorer)
        extractor = _Extractor(ProductMetadata(product_name="Sparkling Water"))

        result = self._orchestrator(registry=registry, text_extractor=extractor).scan(
            _request(barcode="012345678901", image=IMAGE)
        )

        self.assertFalse(result.success)
        self.assertEqual(result.tier, 1)
        assert result.error is not None
        self.assertEqual(result.error.code, "STORE_ERROR")
        self.assertFalse(result.error.retryable)
        self.assertEqual(registry.calls, 1)
        self.assertEqual(extractor.calls, 0)

    def test_cache_failure_after_create_reports_data_consistency_error(self) -> None:
        cache = _RefusingCache(self.root / "refusing.db")
        classifier = _Classifier(ProductMetadata(product_name="Cold Brew"), 0.75)

        result = self._orchestrator(cache=cache, classifier=classifier).scan(_request(image=IMAGE))

        self.assertFalse(result.success)
        self.assertEqual(result.tier, 4)
        assert result.error is not None
        self.assertEqual(result.error.code, "DATA_CONSISTENCY_ERROR")
        self.assertFalse(result.error.retryable)
        assert result.product is not None
        self.assertIsNotNone(self.registry.find_by_id(result.product.id))

    def test_collaborator_exception_escalates_to_next_tier(self) -> None:
        extractor = _Extractor(error=RuntimeError("vision model exploded"))
        classifier = _Classifier(ProductMetadata(product_name="Cold Brew"), 0.95)

        result = self._orchestrator(text_extractor=extractor, classifier=classifier).scan(_request(image=IMAGE))

        self.assertTrue(result.success)
        self.assertEqual(result.tier, 4)
        self.assertIsNone(result.warning)
        self.assertEqual(self.usage.records[0].error_code, "TIER_FAILED")
        self.assertEqual(self.delays, [10.0])

    def test_image_hash_cache_hit_skips_extraction(self) -> None:
        product = self._water()
        self.cache.store(IMAGE_HASH, "imageHash", product, 4, 0.95)
        extractor = _Extractor(ProductMetadata(product_name="Sparkling Water"))

        result = self._orchestrator(text_extractor=extractor).scan(_request(image=IMAGE))

        self.assertTrue(result.success)
        self.assertTrue(result.cached)
        self.assertEqual(result.tier, 2)
        self.assertEqual(result.confidence, 0.95)
        self.assertEqual(extractor.calls, 0)

    def test_hits_below_usable_confidence_never_answer(self) -> None:
        product = self._water()
        self.cache.store(IMAGE_HASH, "imageHash", product, 4, 0.05)

        result = self._orchestrator().scan(_request(image=IMAGE))

        self.assertFalse(result.success)
        assert result.error is not None
        self.assertEqual(result.error.code, "ALL_TIERS_FAILED")
        self.assertEqual([record.success for record in self.usage.records], [False, False])

    def test_discovery_below_usable_confidence_writes_nothing_and_classifies(self) -> None:
        extractor = _Extractor(ProductMetadata(product_name="Mystery snack"))
        discovery = _Discovery(DiscoveryMatch(barcode="5901234123457", confidence=0.05, barcode_format="EAN-13"))
        classifier = _Classifier(ProductMetadata(product_name="Mystery Snack Bar", brand_name="Snacko"), 0.95)

        result = self._orchestrator(
            text_extractor=extractor,
            discovery=discovery,
            classifier=classifier,
        ).scan(_request(image=IMAGE))

        self.assertTrue(result.success)
        self.assertEqual(result.tier, 4)
        self.assertEqual(result.confidence, 0.95)
        self.assertEqual(classifier.calls, 1)
        self.assertIsNone(self.registry.find_by_barcode("5901234123457"))
        self.assertFalse(self.cache.lookup("5901234123457", "barcode").hit)

        cached = self.cache.lookup(IMAGE_HASH, "imageHash")
        assert cached.entry is not None
        self.assertEqual(cached.entry.tier, 4)
        self.assertEqual(cached.entry.confidence, 0.95)
        self.assertEqual([record.success for record in self.usage.records], [False, False, True])

    def test_cache_entry_below_usable_confidence_is_replaced_by_classification(self) -> None:
        stale = self._water()
        self.cache.store(IMAGE_HASH, "imageHash", stale, 3, 0.05)
        classifier = _Classifier(ProductMetadata(product_name="Mystery Snack Bar"), 0.9)

        result = self._orchestrator(classifier=classifier).scan(_request(image=IMAGE))

        self.assertTrue(result.success)
        self.assertFalse(result.cached)
        self.assertEqual(classifier.calls, 1)
        assert result.product is not None
        self.assertNotEqual(result.product.id, stale.id)
        cached = self.cache.lookup(IMAGE_HASH, "imageHash")
        assert cached.entry is not None
        self.assertEqual(cached.entry.record.id, result.product.id)

    def test_similarity_exactly_at_match_threshold_reuses_product(self) -> None:
        existing = self._water()
        # Name contained in the candidate (0.3) plus exact brand (0.3).
        classifier = _Classifier(ProductMetadata(product_name="Sparkling", brand_name="Aqua"), 0.9)

        result = self._orchestrator(classifier=classifier).scan(_request(image=IMAGE))

        self.assertTrue(result.success)
        assert result.product is not None
        self.assertEqual(result.product.id, existing.id)
        matches = self.registry.search_by_metadata(ProductMetadata(product_name="Sparkling Water"))
        self.assertEqual([record.id for record, _ in matches], [existing.id])


if __name__ == "__main__":
    unittest.main()
