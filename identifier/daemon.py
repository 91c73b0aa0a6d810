from __future__ import annotations

import json
import logging
import re
import threading
from datetime import datetime, timezone
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Protocol
from urllib.parse import parse_qs, urlparse

from identifier.core.hashing import ImageDecodeError, decode_image_payload
from identifier.core.models import ErrorReport, ImageData, ScanRequest, ScanResult
from identifier.orchestrator import TierOrchestrator
from identifier.reporting import ErrorReporter

LOGGER = logging.getLogger(__name__)

BARCODE_RE = re.compile(r"^\d{8,13}$")


class RequestValidationError(ValueError):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"error": {"code": self.code, "message": self.message}}


class MetricsSource(Protocol):
    def tier_metrics(self, start: datetime | None = None, end: datetime | None = None) -> dict[str, object]:
        raise NotImplementedError


def validate_scan_payload(payload: dict[str, Any]) -> ScanRequest:
    barcode = _safe_str(payload.get("barcode"))
    raw_image = _safe_str(payload.get("image"))

    if barcode is None and raw_image is None:
        raise RequestValidationError("MISSING_INPUT", "Either barcode or image is required")

    if barcode is not None and not BARCODE_RE.match(barcode):
        raise RequestValidationError("INVALID_BARCODE", "Barcode must be 8-13 digits")

    image: ImageData | None = None
    if raw_image is not None:
        default_mime = _safe_str(payload.get("image_mime_type")) or "image/jpeg"
        try:
            content, mime_type = decode_image_payload(raw_image, default_mime)
        except ImageDecodeError as exc:
            raise RequestValidationError("INVALID_IMAGE", str(exc)) from exc
        image = ImageData(content=content, mime_type=mime_type)

    user_id = _safe_str(payload.get("user_id"))
    if user_id is None:
        raise RequestValidationError("MISSING_USER_ID", "user_id is required")
    session_id = _safe_str(payload.get("session_id"))
    if session_id is None:
        raise RequestValidationError("MISSING_SESSION_ID", "session_id is required")

    return ScanRequest(
        user_id=user_id,
        session_id=session_id,
        barcode=barcode,
        image=image,
        image_hash=_safe_str(payload.get("image_hash")),
    )


def validate_report_payload(payload: dict[str, Any]) -> ErrorReport:
    user_id = _safe_str(payload.get("user_id"))
    if user_id is None:
        raise RequestValidationError("MISSING_USER_ID", "user_id is required")
    session_id = _safe_str(payload.get("session_id"))
    if session_id is None:
        raise RequestValidationError("MISSING_SESSION_ID", "session_id is required")
    product_id = _safe_str(payload.get("product_id"))
    if product_id is None:
        raise RequestValidationError("MISSING_PRODUCT_ID", "product_id is required")

    tier = _to_int(payload.get("tier"), default=0, minimum=0)
    if tier not in {1, 2, 3, 4}:
        raise RequestValidationError("INVALID_TIER", "tier must be between 1 and 4")

    return ErrorReport(
        user_id=user_id,
        session_id=session_id,
        product_id=product_id,
        tier=tier,
        barcode=_safe_str(payload.get("barcode")),
        image_hash=_safe_str(payload.get("image_hash")),
        user_feedback=_safe_str(payload.get("user_feedback")),
        product_name=_safe_str(payload.get("product_name")),
        brand=_safe_str(payload.get("brand")),
    )


class ScanService:
    """Orchestrator front with the counters reported by ``/health``."""

    def __init__(
        self,
        orchestrator: TierOrchestrator,
        *,
        reporter: ErrorReporter | None = None,
        metrics: MetricsSource | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._reporter = reporter
        self._metrics = metrics
        self._lock = threading.Lock()
        self._started_at = datetime.now(tz=timezone.utc)

        self._total_scans = 0
        self._total_identified = 0
        self._total_failed = 0
        self._total_rejected = 0
        self._total_reports = 0
        self._tier_hits = {1: 0, 2: 0, 3: 0, 4: 0}

    @property
    def reporter(self) -> ErrorReporter | None:
        return self._reporter

    @property
    def metrics(self) -> MetricsSource | None:
        return self._metrics

    def scan(self, request: ScanRequest) -> ScanResult:
        result = self._orchestrator.scan(request)
        with self._lock:
            self._total_scans += 1
            if result.success:
                self._total_identified += 1
                self._tier_hits[result.tier] = self._tier_hits.get(result.tier, 0) + 1
            else:
                self._total_failed += 1
        return result

    def note_rejected(self) -> None:
        with self._lock:
            self._total_rejected += 1

    def note_report(self) -> None:
        with self._lock:
            self._total_reports += 1

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "status": "ok",
                "started_at": self._started_at.isoformat(),
                "total_scans": self._total_scans,
                "total_identified": self._total_identified,
                "total_failed": self._total_failed,
                "total_rejected": self._total_rejected,
                "total_reports": self._total_reports,
                "tier_hits": {str(tier): count for tier, count in sorted(self._tier_hits.items())},
            }


class ScanHTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(
        self,
        server_address: tuple[str, int],
        request_handler_cls: type[BaseHTTPRequestHandler],
        *,
        service: ScanService,
        auth_token: str | None = None,
        max_body_bytes: int = 15 * 1024 * 1024,
    ) -> None:
        super().__init__(server_address, request_handler_cls)
        self.scan_service = service
        self.auth_token = (auth_token or "").strip() or None
        self.max_body_bytes = max(1024, int(max_body_bytes))


class ScanRequestHandler(BaseHTTPRequestHandler):
    server: ScanHTTPServer

    def do_GET(self) -> None:  # noqa: N802
        parsed = urlparse(self.path)
        route = parsed.path.rstrip("/")

        if route == "/health":
            self._send_json(HTTPStatus.OK, self.server.scan_service.snapshot())
            return

        if route == "/metrics":
            self._handle_metrics(parse_qs(parsed.query))
            return

        self._send_json(HTTPStatus.NOT_FOUND, {"error": "not_found"})

    def do_POST(self) -> None:  # noqa: N802
        route = urlparse(self.path).path.rstrip("/")
        if route not in {"/scan", "/report"}:
            self._send_json(HTTPStatus.NOT_FOUND, {"error": "not_found"})
            return

        auth_error = self._check_auth()
        if auth_error is not None:
            self._send_json(HTTPStatus.UNAUTHORIZED, {"error": auth_error})
            return

        try:
            payload = self._read_json()
        except ValueError as exc:
            self._send_json(HTTPStatus.BAD_REQUEST, {"error": {"code": "INVALID_JSON", "message": str(exc)}})
            return

        if route == "/scan":
            self._handle_scan(payload)
        else:
            self._handle_report(payload)

    def _handle_scan(self, payload: dict[str, Any]) -> None:
        service = self.server.scan_service
        try:
            request = validate_scan_payload(payload)
        except RequestValidationError as exc:
            service.note_rejected()
            LOGGER.info("Scan rejected: %s", exc.code)
            self._send_json(HTTPStatus.BAD_REQUEST, exc.to_dict())
            return

        result = service.scan(request)
        self._send_json(HTTPStatus.OK, result.to_dict())

    def _handle_report(self, payload: dict[str, Any]) -> None:
        service = self.server.scan_service
        if service.reporter is None:
            self._send_json(HTTPStatus.SERVICE_UNAVAILABLE, {"error": "reporting_disabled"})
            return

        try:
            report = validate_report_payload(payload)
        except RequestValidationError as exc:
            self._send_json(HTTPStatus.BAD_REQUEST, exc.to_dict())
            return

        outcome = service.reporter.report(report)
        service.note_report()
        status = HTTPStatus.OK if outcome.success else HTTPStatus.INTERNAL_SERVER_ERROR
        self._send_json(status, outcome.to_dict())

    def _handle_metrics(self, query: dict[str, list[str]]) -> None:
        metrics = self.server.scan_service.metrics
        if metrics is None:
            self._send_json(HTTPStatus.SERVICE_UNAVAILABLE, {"error": "metrics_disabled"})
            return

        try:
            start = _parse_query_dt(query, "start")
            end = _parse_query_dt(query, "end")
        except ValueError as exc:
            self._send_json(HTTPStatus.BAD_REQUEST, {"error": str(exc)})
            return

        try:
            payload = metrics.tier_metrics(start, end)
        except Exception as exc:
            LOGGER.error("Metrics query failed: %s", exc)
            self._send_json(HTTPStatus.INTERNAL_SERVER_ERROR, {"error": "metrics_failed"})
            return
        self._send_json(HTTPStatus.OK, payload)

    def log_message(self, fmt: str, *args: object) -> None:
        LOGGER.debug("HTTP %s - %s", self.address_string(), fmt % args)

    def _check_auth(self) -> str | None:
        token = self.server.auth_token
        if token is None:
            return None

        auth_header = (self.headers.get("Authorization") or "").strip()
        if auth_header.lower().startswith("bearer "):
            supplied = auth_header[7:].strip()
            if supplied == token:
                return None

        supplied = (self.headers.get("X-Identifier-Token") or "").strip()
        if supplied == token:
            return None

        return "invalid_token"

    def _read_json(self) -> dict[str, Any]:
        raw_length = (self.headers.get("Content-Length") or "").strip()
        if not raw_length:
            return {}

        try:
            length = max(0, int(raw_length))
        except ValueError as exc:
            raise ValueError("invalid Content-Length") from exc
        if length > self.server.max_body_bytes:
            raise ValueError("request body too large")

        body = self.rfile.read(length)
        if not body:
            return {}
        try:
            parsed = json.loads(body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValueError("request body must be valid JSON") from exc
        if not isinstance(parsed, dict):
            raise ValueError("request body must be a JSON object")
        return parsed

    def _send_json(self, status: HTTPStatus, payload: dict[str, Any]) -> None:
        encoded = json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
        self.send_response(int(status))
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(encoded)))
        self.end_headers()
        self.wfile.write(encoded)


def _parse_query_dt(query: dict[str, list[str]], name: str) -> datetime | None:
    raw = _safe_str((query.get(name) or [None])[0])
    if raw is None:
        return None
    try:
        dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValueError(f"{name} must be an ISO-8601 datetime") from exc
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _safe_str(value: Any) -> str | None:
    if value is None:
        return None
    token = str(value).strip()
    return token or None


def _to_int(value: Any, *, default: int, minimum: int) -> int:
    if value is None or isinstance(value, bool):
        return max(minimum, int(default))
    if isinstance(value, int):
        return max(minimum, value)
    if isinstance(value, float):
        return max(minimum, int(value))
    token = _safe_str(value)
    if token is None:
        return max(minimum, int(default))
    try:
        return max(minimum, int(token))
    except ValueError:
        return max(minimum, int(default))
