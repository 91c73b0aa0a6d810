from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import timedelta

from identifier.core.errors import (
    DataConsistencyError,
    RegistryWriteError,
    is_transient_error,
    with_retry,
)
from identifier.core.models import CacheEntry, CacheKeyType, ProductRecord
from identifier.core.ports import CacheStore

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CacheKey:
    key: str
    key_type: CacheKeyType


@dataclass(slots=True)
class _Snapshot:
    target: CacheKey
    entry: CacheEntry | None
    # False when the snapshot read itself failed; rollback then invalidates.
    known: bool


class TransactionalUpdateCoordinator:
    """
    Keeps the registry and the cache in agreement for one logical write.

    The registry write runs first (with retry on transient errors); the
    record it returns is then stored under every target cache key. When any
    cache write fails, every target key is put back to its pre-write state
    and ``DataConsistencyError`` is raised. A committed registry write is
    never undone.
    """

    def __init__(
        self,
        cache: CacheStore,
        *,
        max_attempts: int = 3,
        base_delay: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._cache = cache
        self._max_attempts = max(1, int(max_attempts))
        self._base_delay = float(base_delay)
        self._sleep = sleep

    def commit(
        self,
        write: Callable[[], ProductRecord],
        *,
        cache_keys: Sequence[CacheKey],
        tier: int,
        confidence: float,
        ttl: timedelta | None = None,
    ) -> ProductRecord:
        targets = _dedupe(cache_keys)
        snapshots = [self._snapshot(target) for target in targets]

        attempts = 0

        def counted_write() -> ProductRecord:
            nonlocal attempts
            attempts += 1
            return write()

        try:
            record = with_retry(
                counted_write,
                max_attempts=self._max_attempts,
                base_delay=self._base_delay,
                sleep=self._sleep,
            )
        except Exception as exc:
            transient = is_transient_error(exc)
            LOGGER.error(
                "Registry write failed after %s attempt(s) (transient=%s): %s",
                attempts,
                transient,
                exc,
            )
            raise RegistryWriteError(str(exc), transient=transient, attempts=attempts) from exc

        failed: list[CacheKey] = []
        for target in targets:
            try:
                stored = self._cache.store(target.key, target.key_type, record, tier, confidence, ttl)
            except Exception as exc:
                LOGGER.warning("Cache write raised for %s: %s", target.key_type, exc)
                stored = False
            if not stored:
                failed.append(target)

        if not failed:
            return record

        rollback_succeeded = self._rollback(snapshots)
        message = (
            f"Registry committed product {record.id} but cache write failed for "
            f"{', '.join(target.key_type for target in failed)}"
        )
        if rollback_succeeded:
            LOGGER.error("%s; cache rolled back", message)
        else:
            LOGGER.critical("%s; cache rollback FAILED, cache may serve stale data", message)
        raise DataConsistencyError(message, record=record, rollback_succeeded=rollback_succeeded)

    def _snapshot(self, target: CacheKey) -> _Snapshot:
        try:
            entry = self._cache.snapshot(target.key, target.key_type)
        except Exception as exc:
            LOGGER.warning("Cache snapshot failed for %s: %s", target.key_type, exc)
            return _Snapshot(target=target, entry=None, known=False)
        return _Snapshot(target=target, entry=entry, known=True)

    def _rollback(self, snapshots: list[_Snapshot]) -> bool:
        ok = True
        for snapshot in snapshots:
            target = snapshot.target
            try:
                if snapshot.entry is not None:
                    restored = self._cache.restore(snapshot.entry)
                else:
                    restored = self._cache.invalidate(target.key, target.key_type)
            except Exception as exc:
                LOGGER.error("Cache rollback raised for %s: %s", target.key_type, exc)
                restored = False
            if not restored:
                ok = False
            elif not snapshot.known:
                LOGGER.warning("Cache entry %s invalidated, pre-write state was unknown", target.key_type)
        return ok


def _dedupe(cache_keys: Sequence[CacheKey]) -> list[CacheKey]:
    out: list[CacheKey] = []
    seen: set[CacheKey] = set()
    for target in cache_keys:
        if not target.key or target in seen:
            continue
        seen.add(target)
        out.append(target)
    return out
