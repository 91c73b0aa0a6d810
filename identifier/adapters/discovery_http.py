from __future__ import annotations

import json
import logging
import re
import threading
import time
from collections import deque
from collections.abc import Callable
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode, urlparse
from urllib.request import Request, urlopen

from identifier.core.models import DiscoveryMatch, ProductMetadata
from identifier.core.similarity import jaccard

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.barcodelookup.com/v3"
DEFAULT_CLIENT_CONFIDENCE = 0.5
NAME_BOOST = 0.3
BRAND_BOOST = 0.2

_DIGITS_RE = re.compile(r"^\d+$")
_LINEAR_RE = re.compile(r"^[A-Z0-9\-.$/+%\s]+$")

BARCODE_FORMAT_VALIDATORS: dict[str, Callable[[str], bool]] = {
    "UPC-A": lambda value: bool(_DIGITS_RE.match(value)) and len(value) == 12,
    "UPC-E": lambda value: bool(_DIGITS_RE.match(value)) and 6 <= len(value) <= 8,
    "EAN-8": lambda value: bool(_DIGITS_RE.match(value)) and len(value) == 8,
    "EAN-13": lambda value: bool(_DIGITS_RE.match(value)) and len(value) == 13,
    "Code-39": lambda value: bool(_LINEAR_RE.match(value)),
    "Code-93": lambda value: bool(_LINEAR_RE.match(value)),
    "Code-128": lambda value: bool(_LINEAR_RE.match(value)),
    "ITF": lambda value: bool(_DIGITS_RE.match(value)) and len(value) % 2 == 0,
    "QR": lambda value: len(value) > 0,
}


class DiscoveryError(RuntimeError):
    pass


def is_valid_barcode(barcode: str | None, barcode_format: str | None) -> bool:
    if not barcode or not barcode_format:
        return False
    validator = BARCODE_FORMAT_VALIDATORS.get(barcode_format)
    if validator is None:
        return False
    return validator(barcode)


def build_search_query(metadata: ProductMetadata) -> str:
    terms = [term.strip() for term in (metadata.product_name, metadata.brand_name, metadata.size) if term]
    return " ".join(term for term in terms if term)


def select_best_result(results: list[dict[str, Any]], metadata: ProductMetadata) -> tuple[dict[str, Any], float]:
    scored: list[tuple[float, int, dict[str, Any]]] = []
    for index, result in enumerate(results):
        score = float(result.get("confidence") or DEFAULT_CLIENT_CONFIDENCE)
        if metadata.product_name and result.get("product_name"):
            score += jaccard(metadata.product_name, str(result["product_name"])) * NAME_BOOST
        if metadata.brand_name and result.get("brand"):
            score += jaccard(metadata.brand_name, str(result["brand"])) * BRAND_BOOST
        scored.append((score, index, result))

    # Ties keep API order.
    scored.sort(key=lambda item: (-item[0], item[1]))
    best_score, _, best = scored[0]
    return best, min(best_score, 1.0)


class RateLimiter:
    """Sliding window limiter: at most ``max_requests`` per ``window_seconds``."""

    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_requests = max(1, int(max_requests))
        self._window_seconds = float(window_seconds)
        self._clock = clock
        self._requests: deque[float] = deque()
        self._lock = threading.Lock()

    def can_make_request(self) -> bool:
        with self._lock:
            self._evict(self._clock())
            return len(self._requests) < self._max_requests

    def record_request(self) -> None:
        with self._lock:
            self._requests.append(self._clock())

    def wait_time(self) -> float:
        with self._lock:
            if not self._requests:
                return 0.0
            return max(0.0, self._window_seconds - (self._clock() - self._requests[0]))

    def _evict(self, now: float) -> None:
        while self._requests and now - self._requests[0] >= self._window_seconds:
            self._requests.popleft()


class CircuitBreaker:
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._failure_threshold = max(1, int(failure_threshold))
        self._reset_timeout = float(reset_timeout)
        self._clock = clock
        self._state = self.CLOSED
        self._failure_count = 0
        self._last_failure_at = 0.0
        self._lock = threading.Lock()

    @property
    def state(self) -> str:
        return self._state

    def record_success(self) -> None:
        with self._lock:
            self._failure_count = 0
            self._state = self.CLOSED

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_at = self._clock()
            if self._failure_count >= self._failure_threshold and self._state != self.OPEN:
                self._state = self.OPEN
                LOGGER.warning("Discovery circuit opened after %s failures", self._failure_count)

    def can_make_request(self) -> bool:
        with self._lock:
            if self._state == self.OPEN:
                if self._clock() - self._last_failure_at >= self._reset_timeout:
                    self._state = self.HALF_OPEN
                    LOGGER.info("Discovery circuit half-open")
                    return True
                return False
            return True


class BarcodeLookupDiscoveryClient:
    """
    Tier 3 discovery over a barcode-lookup search API.

    Searches by name, brand and size, drops results whose barcode does not
    match its declared format, and returns the best-scoring remaining one.
    """

    def __init__(
        self,
        *,
        api_token: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = 10.0,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        rate_limiter: RateLimiter | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        opener: Callable[..., Any] = urlopen,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        token = base_url.strip().rstrip("/")
        parsed = urlparse(token)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError("discovery base_url must be a valid http(s) URL")

        self._base_url = token
        self._api_token = api_token.strip()
        if not self._api_token:
            raise ValueError("discovery api_token must be non-empty")

        self._timeout_seconds = max(0.1, float(timeout_seconds))
        self._max_attempts = max(1, int(max_attempts))
        self._backoff_seconds = max(0.0, float(backoff_seconds))
        self._rate_limiter = rate_limiter or RateLimiter()
        self._circuit_breaker = circuit_breaker or CircuitBreaker()
        self._opener = opener
        self._sleep = sleep

    @property
    def circuit_state(self) -> str:
        return self._circuit_breaker.state

    def discover(self, metadata: ProductMetadata, image_hash: str | None = None) -> DiscoveryMatch | None:
        query = build_search_query(metadata)
        if not query:
            LOGGER.info("Discovery skipped: metadata has no search terms")
            return None

        results = self.search(query)
        valid = [
            result
            for result in results
            if is_valid_barcode(_str_or_none(result.get("barcode")), _str_or_none(result.get("format")))
        ]
        if not valid:
            LOGGER.info("Discovery found no valid barcodes for %r (%s raw results)", query, len(results))
            return None

        best, confidence = select_best_result(valid, metadata)
        LOGGER.info(
            "Discovery matched barcode=%s format=%s confidence=%.2f image_hash=%s",
            best["barcode"],
            best["format"],
            confidence,
            (image_hash or "")[:16] or None,
        )
        return DiscoveryMatch(
            barcode=str(best["barcode"]),
            confidence=confidence,
            barcode_format=str(best["format"]),
            name=_str_or_none(best.get("product_name")),
            brand=_str_or_none(best.get("brand")),
            category=_str_or_none(best.get("category")),
        )

    def search(self, query: str) -> list[dict[str, Any]]:
        if not self._circuit_breaker.can_make_request():
            raise DiscoveryError("barcode lookup circuit breaker is open")
        if not self._rate_limiter.can_make_request():
            wait = self._rate_limiter.wait_time()
            raise DiscoveryError(f"barcode lookup rate limit exceeded, wait {wait:.0f}s")

        try:
            results = self._request_with_retry(query)
        except Exception:
            self._circuit_breaker.record_failure()
            raise

        self._circuit_breaker.record_success()
        self._rate_limiter.record_request()
        return results

    def _request_with_retry(self, query: str) -> list[dict[str, Any]]:
        url = f"{self._base_url}/products?{urlencode({'search': query})}"
        last_error: Exception | None = None

        for attempt in range(1, self._max_attempts + 1):
            request = Request(
                url=url,
                method="GET",
                headers={
                    "Authorization": f"Bearer {self._api_token}",
                    "Accept": "application/json",
                },
            )
            try:
                with self._opener(request, timeout=self._timeout_seconds) as response:
                    payload = json.loads(response.read().decode("utf-8") or "{}")
                products = payload.get("products") if isinstance(payload, dict) else None
                if not isinstance(products, list):
                    return []
                return [item for item in products if isinstance(item, dict)]
            except HTTPError as exc:
                if int(exc.code) == 429:
                    last_error = DiscoveryError("barcode lookup rate limited")
                    delay = _retry_after(exc) or self._backoff_seconds * (2**attempt)
                elif int(exc.code) >= 500:
                    last_error = DiscoveryError(f"barcode lookup unavailable: HTTP {exc.code}")
                    delay = self._backoff_seconds * (2**attempt)
                else:
                    raise DiscoveryError(f"barcode lookup request failed: HTTP {exc.code}") from exc
            except (URLError, TimeoutError, json.JSONDecodeError) as exc:
                last_error = DiscoveryError(f"barcode lookup connection error: {exc}")
                delay = self._backoff_seconds * (2**attempt)

            if attempt < self._max_attempts:
                LOGGER.warning(
                    "Barcode lookup retry in %.1fs (attempt %s/%s): %s",
                    delay,
                    attempt,
                    self._max_attempts,
                    last_error,
                )
                self._sleep(delay)

        if last_error is None:
            raise DiscoveryError("barcode lookup failed without a response")
        raise last_error


def _retry_after(exc: HTTPError) -> float | None:
    headers = getattr(exc, "headers", None)
    if headers is None:
        return None
    raw = headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


def _str_or_none(value: object) -> str | None:
    if value is None:
        return None
    token = str(value).strip()
    return token or None
