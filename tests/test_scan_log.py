from __future__ import annotations

import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from identifier.adapters import ScanLogSQLiteRepository
from identifier.core.models import ErrorReport, UsageRecord

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _usage(tier: int, success: bool, elapsed_ms: int, *, cached: bool = False, age: timedelta = timedelta()) -> UsageRecord:
    return UsageRecord(
        tier=tier,
        success=success,
        elapsed_ms=elapsed_ms,
        cached=cached,
        confidence=0.9 if success else None,
        recorded_at=NOW - age,
    )


class ScanLogSQLiteRepositoryTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.repo = ScanLogSQLiteRepository(Path(self._tmp.name) / "nested" / "scan_log.db")

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_tier_metrics_aggregates_per_tier(self) -> None:
        self.repo.record(_usage(1, True, 10, cached=True))
        self.repo.record(_usage(1, True, 31))
        self.repo.record(_usage(2, False, 900))
        self.repo.record(_usage(2, True, 400))
        self.repo.record(_usage(4, True, 5000, age=timedelta(days=3)))

        metrics = self.repo.tier_metrics(NOW - timedelta(hours=1), NOW)

        tier1 = metrics["tiers"]["1"]
        self.assertEqual(tier1["total_scans"], 2)
        self.assertEqual(tier1["success_rate"], 1.0)
        self.assertEqual(tier1["cache_hit_rate"], 0.5)
        self.assertEqual(tier1["avg_processing_time_ms"], 20.0)

        tier2 = metrics["tiers"]["2"]
        self.assertEqual(tier2["total_scans"], 2)
        self.assertEqual(tier2["success_rate"], 0.5)
        # Only successful attempts count towards the average.
        self.assertEqual(tier2["avg_processing_time_ms"], 400.0)

        self.assertEqual(metrics["tiers"]["4"]["total_scans"], 0)
        self.assertEqual(metrics["overall"]["total_scans"], 4)
        self.assertEqual(metrics["overall"]["success_rate"], 0.75)

    def test_error_stats(self) -> None:
        for tier in (1, 2, 2, 2):
            self.repo.record(_usage(tier, True, 10, age=timedelta(minutes=5)))
        self.repo.record_error_report(
            ErrorReport(
                user_id="user-1",
                session_id="session-1",
                product_id="p-1",
                tier=2,
                reported_at=NOW - timedelta(minutes=1),
            )
        )

        stats = self.repo.error_stats(since=NOW - timedelta(hours=1))

        self.assertEqual(stats.total_errors, 1)
        self.assertEqual(stats.errors_by_tier, {2: 1})
        self.assertEqual(stats.error_rate, 0.25)
        self.assertEqual(stats.to_dict()["errors_by_tier"], {"2": 1})


if __name__ == "__main__":
    unittest.main()
