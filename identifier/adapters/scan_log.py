from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from uuid import uuid4

from identifier.core.models import ErrorReport, ErrorStats, TierMetrics, UsageRecord, utcnow

LOGGER = logging.getLogger(__name__)

TIERS = (1, 2, 3, 4)
DEFAULT_METRICS_WINDOW = timedelta(hours=24)


def _iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _aggregate(tier: int, rows: list[sqlite3.Row]) -> TierMetrics:
    total = len(rows)
    successful = [row for row in rows if row["success"]]
    cached = sum(1 for row in rows if row["cached"])
    timings = [int(row["elapsed_ms"]) for row in successful if row["elapsed_ms"] is not None]
    avg_time = round(sum(timings) / len(timings)) if timings else 0

    return TierMetrics(
        tier=tier,
        total_scans=total,
        successful_scans=len(successful),
        success_rate=len(successful) / total if total else 0.0,
        avg_processing_time_ms=float(avg_time),
        cache_hit_rate=cached / total if total else 0.0,
    )


class ScanLogSQLiteRepository:
    """
    Append-only scan log and misidentification reports.

    Implements the ``UsageLogger`` port. Metrics are aggregated per tier; the
    average processing time only counts successful attempts.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        if self._db_path.parent and not self._db_path.parent.exists():
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def record(self, usage: UsageRecord) -> None:
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO scan_logs(
                    tier,
                    success,
                    cached,
                    elapsed_ms,
                    confidence,
                    error_code,
                    user_id,
                    session_id,
                    product_id,
                    barcode,
                    image_hash,
                    created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    int(usage.tier),
                    1 if usage.success else 0,
                    1 if usage.cached else 0,
                    int(usage.elapsed_ms),
                    usage.confidence,
                    usage.error_code,
                    usage.user_id,
                    usage.session_id,
                    usage.product_id,
                    usage.barcode,
                    usage.image_hash,
                    _iso(usage.recorded_at),
                ],
            )
            conn.commit()
        finally:
            conn.close()

    def record_error_report(self, report: ErrorReport) -> str:
        report_id = str(uuid4())
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO error_reports(
                    id,
                    user_id,
                    session_id,
                    product_id,
                    tier_used,
                    barcode,
                    image_hash,
                    user_feedback,
                    product_name,
                    brand,
                    created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    report_id,
                    report.user_id,
                    report.session_id,
                    report.product_id,
                    int(report.tier),
                    report.barcode,
                    report.image_hash,
                    report.user_feedback,
                    report.product_name,
                    report.brand,
                    _iso(report.reported_at),
                ],
            )
            conn.commit()
        finally:
            conn.close()
        return report_id

    def tier_metrics(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> dict[str, object]:
        end = end or utcnow()
        start = start or (end - DEFAULT_METRICS_WINDOW)

        conn = self._connect()
        try:
            rows = conn.execute(
                """
                SELECT tier, success, cached, elapsed_ms
                FROM scan_logs
                WHERE created_at >= ? AND created_at <= ?
                """,
                [_iso(start), _iso(end)],
            ).fetchall()
        finally:
            conn.close()

        by_tier = {tier: _aggregate(tier, [row for row in rows if row["tier"] == tier]) for tier in TIERS}
        overall = _aggregate(0, list(rows))
        return {
            "time_range": {"start": _iso(start), "end": _iso(end)},
            "tiers": {str(tier): metrics.to_dict() for tier, metrics in by_tier.items()},
            "overall": {
                "total_scans": overall.total_scans,
                "success_rate": overall.success_rate,
                "avg_processing_time_ms": overall.avg_processing_time_ms,
                "cache_hit_rate": overall.cache_hit_rate,
            },
        }

    def error_stats(self, since: datetime | None = None) -> ErrorStats:
        since = since or (utcnow() - DEFAULT_METRICS_WINDOW)
        conn = self._connect()
        try:
            rows = conn.execute(
                """
                SELECT tier_used, COUNT(*) AS errors
                FROM error_reports
                WHERE created_at >= ?
                GROUP BY tier_used
                """,
                [_iso(since)],
            ).fetchall()
            scans = conn.execute(
                "SELECT COUNT(*) AS total FROM scan_logs WHERE created_at >= ?",
                [_iso(since)],
            ).fetchone()
        finally:
            conn.close()

        errors_by_tier = {int(row["tier_used"]): int(row["errors"]) for row in rows}
        total_errors = sum(errors_by_tier.values())
        total_scans = int(scans["total"] or 0)
        return ErrorStats(
            total_errors=total_errors,
            errors_by_tier=errors_by_tier,
            error_rate=total_errors / total_scans if total_scans else 0.0,
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
                CREATE TABLE IF NOT EXISTS scan_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tier INTEGER NOT NULL,
                    success INTEGER NOT NULL,
                    cached INTEGER NOT NULL,
                    elapsed_ms INTEGER NOT NULL,
                    confidence REAL,
                    error_code TEXT,
                    user_id TEXT,
                    session_id TEXT,
                    product_id TEXT,
                    barcode TEXT,
                    image_hash TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS ix_scan_logs_created
                ON scan_logs(created_at);

                CREATE INDEX IF NOT EXISTS ix_scan_logs_tier
                ON scan_logs(tier, created_at);

                CREATE TABLE IF NOT EXISTS error_reports (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    session_id TEXT NOT NULL,
                    product_id TEXT NOT NULL,
                    tier_used INTEGER NOT NULL,
                    barcode TEXT,
                    image_hash TEXT,
                    user_feedback TEXT,
                    product_name TEXT,
                    brand TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS ix_error_reports_created
                ON error_reports(created_at);
                """
            )
            conn.commit()
        finally:
            conn.close()
