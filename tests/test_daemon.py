from __future__ import annotations

import base64
import json
import threading
import unittest
from datetime import datetime
from urllib.error import HTTPError
from urllib.request import Request, urlopen

from identifier.core.models import (
    ErrorReport,
    ErrorReportOutcome,
    ProductRecord,
    ScanRequest,
    ScanResult,
)
from identifier.daemon import ScanHTTPServer, ScanRequestHandler, ScanService


class _FakeOrchestrator:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.requests: list[ScanRequest] = []

    def scan(self, request: ScanRequest) -> ScanResult:
        with self._lock:
            self.requests.append(request)
        return ScanResult(
            success=True,
            tier=1,
            confidence=1.0,
            cached=False,
            processing_time_ms=3,
            product=ProductRecord(id="p-1", name="Sparkling Water", brand="Aqua", barcode=request.barcode),
        )


class _FakeReporter:
    def __init__(self) -> None:
        self.reports: list[ErrorReport] = []

    def report(self, report: ErrorReport) -> ErrorReportOutcome:
        self.reports.append(report)
        return ErrorReportOutcome(success=True, message="flagged", report_id="r-1", invalidated_entries=2)


class _FakeMetrics:
    def __init__(self) -> None:
        self.calls: list[tuple[datetime | None, datetime | None]] = []

    def tier_metrics(self, start: datetime | None = None, end: datetime | None = None) -> dict[str, object]:
        self.calls.append((start, end))
        return {"tiers": {}, "overall": {"total_scans": 0}}


class ScanDaemonHTTPTests(unittest.TestCase):
    def setUp(self) -> None:
        self.orchestrator = _FakeOrchestrator()
        self.reporter = _FakeReporter()
        self.metrics = _FakeMetrics()
        self.service = ScanService(self.orchestrator, reporter=self.reporter, metrics=self.metrics)
        self.server = ScanHTTPServer(
            ("127.0.0.1", 0),
            ScanRequestHandler,
            service=self.service,
            auth_token="test-token",
        )
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self.thread.start()
        host, port = self.server.server_address
        self.base_url = f"http://{host}:{port}"
        self.auth = {"Authorization": "Bearer test-token"}

    def tearDown(self) -> None:
        self.server.shutdown()
        self.thread.join(timeout=2.0)
        self.server.server_close()

    def _scan_payload(self, **overrides: object) -> dict[str, object]:
        payload: dict[str, object] = {"user_id": "user-1", "session_id": "session-1"}
        payload.update(overrides)
        return payload

    def test_scan_requires_token(self) -> None:
        with self.assertRaises(HTTPError) as ctx:
            _post_json(f"{self.base_url}/scan", payload=self._scan_payload(barcode="012345678901"), headers={})
        self.assertEqual(ctx.exception.code, 401)

        status, _ = _post_json(
            f"{self.base_url}/scan",
            payload=self._scan_payload(barcode="012345678901"),
            headers={"X-Identifier-Token": "test-token"},
        )
        self.assertEqual(status, 200)

    def test_scan_with_barcode(self) -> None:
        status, body = _post_json(
            f"{self.base_url}/scan",
            payload=self._scan_payload(barcode="012345678901"),
            headers=self.auth,
        )

        self.assertEqual(status, 200)
        self.assertTrue(body["success"])
        self.assertEqual(body["tier"], 1)
        self.assertEqual(body["product"]["id"], "p-1")
        self.assertEqual(self.orchestrator.requests[0].barcode, "012345678901")
        self.assertEqual(self.orchestrator.requests[0].user_id, "user-1")

    def test_scan_with_data_uri_image(self) -> None:
        encoded = base64.b64encode(b"png bytes").decode("ascii")

        status, _ = _post_json(
            f"{self.base_url}/scan",
            payload=self._scan_payload(image=f"data:image/png;base64,{encoded}"),
            headers=self.auth,
        )

        self.assertEqual(status, 200)
        image = self.orchestrator.requests[0].image
        assert image is not None
        self.assertEqual(image.content, b"png bytes")
        self.assertEqual(image.mime_type, "image/png")

    def test_invalid_scan_requests_are_rejected_before_orchestration(self) -> None:
        cases = [
            (self._scan_payload(), "MISSING_INPUT"),
            (self._scan_payload(barcode="12ab"), "INVALID_BARCODE"),
            (self._scan_payload(barcode="1234567"), "INVALID_BARCODE"),
            (self._scan_payload(image="%%% not base64 %%%"), "INVALID_IMAGE"),
            ({"session_id": "session-1", "barcode": "012345678901"}, "MISSING_USER_ID"),
            ({"user_id": "user-1", "barcode": "012345678901"}, "MISSING_SESSION_ID"),
        ]
        for payload, code in cases:
            with self.subTest(code=code):
                with self.assertRaises(HTTPError) as ctx:
                    _post_json(f"{self.base_url}/scan", payload=payload, headers=self.auth)
                self.assertEqual(ctx.exception.code, 400)
                body = json.loads(ctx.exception.read().decode("utf-8"))
                self.assertEqual(body["error"]["code"], code)

        self.assertEqual(self.orchestrator.requests, [])
        self.assertEqual(self.service.snapshot()["total_rejected"], len(cases))

    def test_health_reports_counters(self) -> None:
        _post_json(f"{self.base_url}/scan", payload=self._scan_payload(barcode="012345678901"), headers=self.auth)

        status, body = _get_json(f"{self.base_url}/health")

        self.assertEqual(status, 200)
        self.assertEqual(body["status"], "ok")
        self.assertEqual(body["total_scans"], 1)
        self.assertEqual(body["total_identified"], 1)
        self.assertEqual(body["tier_hits"]["1"], 1)

    def test_metrics_passes_time_range(self) -> None:
        status, body = _get_json(f"{self.base_url}/metrics?start=2026-03-01T00:00:00Z")

        self.assertEqual(status, 200)
        self.assertIn("tiers", body)
        start, end = self.metrics.calls[0]
        assert start is not None
        self.assertEqual(start.year, 2026)
        self.assertIsNone(end)

        with self.assertRaises(HTTPError) as ctx:
            _get_json(f"{self.base_url}/metrics?start=yesterday")
        self.assertEqual(ctx.exception.code, 400)

    def test_report_flags_product(self) -> None:
        status, body = _post_json(
            f"{self.base_url}/report",
            payload={
                "user_id": "user-1",
                "session_id": "session-1",
                "product_id": "p-1",
                "tier": 4,
                "image_hash": "abc",
                "user_feedback": "This is juice, not water",
            },
            headers=self.auth,
        )

        self.assertEqual(status, 200)
        self.assertTrue(body["success"])
        self.assertEqual(body["report_id"], "r-1")
        self.assertEqual(self.reporter.reports[0].tier, 4)
        self.assertEqual(self.reporter.reports[0].image_hash, "abc")

        with self.assertRaises(HTTPError) as ctx:
            _post_json(
                f"{self.base_url}/report",
                payload={"user_id": "user-1", "session_id": "session-1", "product_id": "p-1", "tier": 7},
                headers=self.auth,
            )
        self.assertEqual(ctx.exception.code, 400)

    def test_invalid_json_body(self) -> None:
        request = Request(url=f"{self.base_url}/scan", data=b"{not json", method="POST")
        request.add_header("Content-Type", "application/json")
        request.add_header("Authorization", "Bearer test-token")

        with self.assertRaises(HTTPError) as ctx:
            urlopen(request, timeout=2.0)

        self.assertEqual(ctx.exception.code, 400)
        body = json.loads(ctx.exception.read().decode("utf-8"))
        self.assertEqual(body["error"]["code"], "INVALID_JSON")


def _get_json(url: str) -> tuple[int, dict[str, object]]:
    with urlopen(url, timeout=2.0) as response:
        status = int(response.status)
        raw = response.read().decode("utf-8")
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise AssertionError("response is not JSON object")
    return status, parsed


def _post_json(url: str, *, payload: dict[str, object], headers: dict[str, str]) -> tuple[int, dict[str, object]]:
    data = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    request = Request(url=url, data=data, method="POST")
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)

    with urlopen(request, timeout=2.0) as response:
        status = int(response.status)
        raw = response.read().decode("utf-8")
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise AssertionError("response is not JSON object")
    return status, parsed


if __name__ == "__main__":
    unittest.main()
