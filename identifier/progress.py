from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

LOGGER = logging.getLogger(__name__)

STAGE_CACHE = "cache"
STAGE_REGISTRY = "registry"
STAGE_EXTRACTION = "extraction"
STAGE_DISCOVERY = "discovery"
STAGE_CLASSIFICATION = "classification"
STAGE_COMPLETE = "complete"
STAGE_ERROR = "error"


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    stage: str
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)
    emitted_at: float = field(default_factory=time.time)


class LoggingProgressSink:
    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or LOGGER

    def emit(self, stage: str, message: str, metadata: dict[str, Any] | None = None) -> None:
        if metadata:
            self._logger.info("[%s] %s %s", stage, message, metadata)
        else:
            self._logger.info("[%s] %s", stage, message)


class ProgressRecorder:
    """Keeps emitted events in memory, e.g. to return them with a response."""

    def __init__(self) -> None:
        self._events: list[ProgressEvent] = []
        self._lock = threading.Lock()

    def emit(self, stage: str, message: str, metadata: dict[str, Any] | None = None) -> None:
        with self._lock:
            self._events.append(ProgressEvent(stage=stage, message=message, metadata=dict(metadata or {})))

    @property
    def events(self) -> list[ProgressEvent]:
        with self._lock:
            return list(self._events)

    def stages(self) -> list[str]:
        return [event.stage for event in self.events]


class InterTierDelay:
    """
    Fixed pause before tier 4 when tier 2 already called the extraction
    model in the same scan, to stay under the provider's request rate.
    """

    def __init__(self, seconds: float, *, sleep: Callable[[float], None] = time.sleep) -> None:
        self._seconds = max(0.0, float(seconds))
        self._sleep = sleep

    @property
    def seconds(self) -> float:
        return self._seconds

    def wait(self) -> None:
        if self._seconds <= 0:
            return
        LOGGER.info("Waiting %.1fs before image classification", self._seconds)
        self._sleep(self._seconds)
