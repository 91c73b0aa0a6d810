from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from identifier.adapters import CacheSQLiteStore, RegistrySQLiteRepository, ScanLogSQLiteRepository
from identifier.core.models import ErrorReport, ProductDraft
from identifier.reporting import ErrorReporter


class _LowercaseScorer:
    def normalize_name(self, value: str) -> str:
        return " ".join(value.lower().split())

    def score(self, metadata, record) -> float:
        return 0.0


class _FlakyReports:
    def __init__(self, inner: ScanLogSQLiteRepository, failures: list[Exception]) -> None:
        self._inner = inner
        self._failures = list(failures)
        self.calls = 0

    def record_error_report(self, report: ErrorReport) -> str:
        self.calls += 1
        if self._failures:
            raise self._failures.pop(0)
        return self._inner.record_error_report(report)


class ErrorReporterTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        self.cache = CacheSQLiteStore(root / "cache.db")
        self.registry = RegistrySQLiteRepository(root / "registry.db", scorer=_LowercaseScorer())
        self.scan_log = ScanLogSQLiteRepository(root / "scan_log.db")
        self.sleeps: list[float] = []

        self.product = self.registry.create(ProductDraft(name="Sparkling Water", brand="Aqua"))
        self.other = self.registry.create(ProductDraft(name="Orange Juice", brand="Sunny"))
        self.cache.store("012345678901", "barcode", self.product, 1, 1.0)
        self.cache.store("hash-1", "imageHash", self.product, 4, 0.6)
        self.cache.store("hash-2", "imageHash", self.product, 2, 0.7)
        self.cache.store("hash-3", "imageHash", self.other, 2, 0.9)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _report(self, **overrides) -> ErrorReport:
        fields = {
            "user_id": "user-1",
            "session_id": "session-1",
            "product_id": self.product.id,
            "tier": 4,
            "barcode": "012345678901",
            "image_hash": "hash-1",
            "user_feedback": "This is juice",
        }
        fields.update(overrides)
        return ErrorReport(**fields)

    def test_report_invalidates_cache_and_flags_product(self) -> None:
        reporter = ErrorReporter(self.cache, self.registry, self.scan_log, sleep=self.sleeps.append)

        outcome = reporter.report(self._report())

        self.assertTrue(outcome.success)
        self.assertIsNotNone(outcome.report_id)
        self.assertFalse(self.cache.lookup("012345678901", "barcode").hit)
        self.assertFalse(self.cache.lookup("hash-1", "imageHash").hit)
        # Entries under keys the client did not send are dropped too.
        self.assertFalse(self.cache.lookup("hash-2", "imageHash").hit)
        self.assertEqual(outcome.invalidated_entries, 3)
        self.assertTrue(self.cache.lookup("hash-3", "imageHash").hit)

        flagged = self.registry.find_by_id(self.product.id)
        assert flagged is not None
        self.assertTrue(flagged.flagged_for_review)

        stats = self.scan_log.error_stats()
        self.assertEqual(stats.total_errors, 1)
        self.assertEqual(stats.errors_by_tier, {4: 1})

    def test_transient_store_errors_are_retried(self) -> None:
        reports = _FlakyReports(self.scan_log, [TimeoutError("database is locked")])
        reporter = ErrorReporter(self.cache, self.registry, reports, sleep=self.sleeps.append)

        outcome = reporter.report(self._report())

        self.assertTrue(outcome.success)
        self.assertEqual(reports.calls, 2)
        self.assertEqual(self.sleeps, [0.1])

    def test_unknown_product_is_rejected_before_any_write(self) -> None:
        reporter = ErrorReporter(self.cache, self.registry, self.scan_log, sleep=self.sleeps.append)

        outcome = reporter.report(self._report(product_id="missing"))

        self.assertFalse(outcome.success)
        self.assertIsNone(outcome.report_id)
        self.assertIn("missing", outcome.message)
        self.assertEqual(self.sleeps, [])
        self.assertEqual(self.scan_log.error_stats().total_errors, 0)
        self.assertTrue(self.cache.lookup("012345678901", "barcode").hit)
        self.assertTrue(self.cache.lookup("hash-1", "imageHash").hit)

    def test_count_skips_keys_that_were_not_cached(self) -> None:
        reporter = ErrorReporter(self.cache, self.registry, self.scan_log, sleep=self.sleeps.append)

        outcome = reporter.report(self._report(barcode="000000000000", image_hash="hash-3"))

        self.assertTrue(outcome.success)
        # hash-3 belongs to the other product but was sent by the client; the
        # barcode was never cached.
        self.assertEqual(outcome.invalidated_entries, 4)
        self.assertFalse(self.cache.lookup("hash-3", "imageHash").hit)


if __name__ == "__main__":
    unittest.main()
