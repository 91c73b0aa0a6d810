from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from .models import ProductRecord

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

TIER_FAILED = "TIER_FAILED"
STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
STORE_ERROR = "STORE_ERROR"
DATA_CONSISTENCY_ERROR = "DATA_CONSISTENCY_ERROR"
ALL_TIERS_FAILED = "ALL_TIERS_FAILED"
ORCHESTRATOR_ERROR = "ORCHESTRATOR_ERROR"

TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "connection",
    "network",
    "econnrefused",
    "econnreset",
    "etimedout",
    "enotfound",
    "socket hang up",
    "reset by peer",
    "temporary",
    "temporarily",
    "unavailable",
    "database is locked",
    "busy",
    "too many connections",
    "deadlock",
)


class RegistryError(Exception):
    category = "store"


class ConstraintViolationError(RegistryError):
    category = "constraint"


class RecordNotFoundError(RegistryError):
    category = "not_found"


class RegistryWriteError(RegistryError):
    def __init__(self, message: str, *, transient: bool, attempts: int) -> None:
        super().__init__(message)
        self.transient = transient
        self.attempts = attempts


class DataConsistencyError(Exception):
    """Registry write committed, cache write failed; cache was compensated."""

    def __init__(self, message: str, *, record: ProductRecord, rollback_succeeded: bool) -> None:
        super().__init__(message)
        self.record = record
        self.rollback_succeeded = rollback_succeeded


def is_transient_error(error: BaseException) -> bool:
    category = getattr(error, "category", None)
    if category == "transient":
        return True
    if category in {"constraint", "not_found"}:
        return False

    message = str(error).lower()
    if isinstance(error, TimeoutError):
        return True
    return any(marker in message for marker in TRANSIENT_MARKERS)


def with_retry(
    operation: Callable[[], T],
    *,
    max_attempts: int = 3,
    base_delay: float = 0.1,
    sleep: Callable[[float], None] = time.sleep,
    classify: Callable[[BaseException], bool] = is_transient_error,
) -> T:
    attempts = max(1, int(max_attempts))
    last_error: Exception | None = None

    for attempt in range(attempts):
        try:
            return operation()
        except Exception as exc:
            last_error = exc
            if not classify(exc):
                raise
            if attempt < attempts - 1:
                delay = base_delay * (2**attempt)
                LOGGER.warning(
                    "Transient error, retrying in %.3fs (attempt %s/%s): %s",
                    delay,
                    attempt + 1,
                    attempts,
                    exc,
                )
                sleep(delay)

    if last_error is None:
        raise RuntimeError("retry loop finished without a result")
    raise last_error
