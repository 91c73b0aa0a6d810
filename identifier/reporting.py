from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Protocol, TypeVar

from identifier.core.errors import with_retry
from identifier.core.models import CacheKeyType, ErrorReport, ErrorReportOutcome
from identifier.core.ports import CacheStore, ProductRegistry

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorReportStore(Protocol):
    def record_error_report(self, report: ErrorReport) -> str:
        raise NotImplementedError


class ErrorReporter:
    """
    Handles "this is not my product" reports.

    Reports for unknown products are rejected before anything is written.
    Otherwise the report is stored first; then every cache entry that could
    serve the wrong product again is dropped and the product is flagged for
    review. `invalidated_entries` counts every removed entry.
    """

    def __init__(
        self,
        cache: CacheStore,
        registry: ProductRegistry,
        reports: ErrorReportStore,
        *,
        max_attempts: int = 3,
        base_delay: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._cache = cache
        self._registry = registry
        self._reports = reports
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._sleep = sleep

    def report(self, report: ErrorReport) -> ErrorReportOutcome:
        LOGGER.info("Misidentification reported for product %s (tier %s)", report.product_id, report.tier)
        try:
            product = self._retry(lambda: self._registry.find_by_id(report.product_id))
            if product is None:
                LOGGER.warning("Error report for unknown product %s ignored", report.product_id)
                return ErrorReportOutcome(success=False, message=f"Product not found: {report.product_id}")

            report_id = self._retry(lambda: self._reports.record_error_report(report))
            invalidated = self._invalidate(report)
            self._retry(lambda: self._registry.flag_for_review(report.product_id))
        except Exception as exc:
            LOGGER.error("Failed to process error report for %s: %s", report.product_id, exc)
            return ErrorReportOutcome(success=False, message=str(exc) or "Failed to report error")

        return ErrorReportOutcome(
            success=True,
            report_id=report_id,
            message="Error reported. Product flagged for manual review.",
            invalidated_entries=invalidated,
        )

    def _retry(self, operation: Callable[[], T]) -> T:
        return with_retry(
            operation,
            max_attempts=self._max_attempts,
            base_delay=self._base_delay,
            sleep=self._sleep,
        )

    def _invalidate(self, report: ErrorReport) -> int:
        removed = 0
        for key, key_type in ((report.barcode, "barcode"), (report.image_hash, "imageHash")):
            if not key:
                continue
            present = self._cached(key, key_type)
            if self._cache.invalidate(key, key_type) and present:
                removed += 1
        # Catches entries stored under keys the client did not send.
        return removed + self._cache.invalidate_by_product_id(report.product_id)

    def _cached(self, key: str, key_type: CacheKeyType) -> bool:
        try:
            return self._cache.snapshot(key, key_type) is not None
        except Exception as exc:
            LOGGER.warning("Cache snapshot failed for %s, not counting it: %s", key_type, exc)
            return False
