from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_FAILURES = 5
DEFAULT_RESET_AFTER_SECONDS = 60.0
DEFAULT_REFRESH_INTERVAL_SECONDS = 30.0
DEFAULT_MAX_ENTRIES = 1024


class RecomputeUnavailable(RuntimeError):
    """Raised when a view cannot be recomputed and no earlier snapshot exists."""


class CircuitBreaker:
    """Stops recompute attempts after repeated failures.

    The breaker opens after ``max_failures`` consecutive failures and closes
    again once ``reset_after`` seconds have passed since the last failure.
    Each success forgives one earlier failure.
    """

    def __init__(
        self,
        max_failures: int = DEFAULT_MAX_FAILURES,
        reset_after: float = DEFAULT_RESET_AFTER_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_failures < 1:
            raise ValueError("max_failures must be at least 1.")
        self.max_failures = max_failures
        self.reset_after = reset_after
        self._clock = clock
        self.consecutive_failures = 0
        self.last_failure_at: Optional[float] = None
        self.is_open = False

    def allow(self) -> bool:
        if self.is_open and self.last_failure_at is not None:
            if self._clock() - self.last_failure_at > self.reset_after:
                self.is_open = False
                self.consecutive_failures = 0
                logger.info("budget_refresh: circuit breaker reset")
        return not self.is_open

    def record_failure(self) -> None:
        self.consecutive_failures += 1
        self.last_failure_at = self._clock()
        if not self.is_open and self.consecutive_failures >= self.max_failures:
            self.is_open = True
            logger.warning(
                f"budget_refresh: circuit breaker opened failures={self.consecutive_failures}"
            )

    def record_success(self) -> None:
        if self.consecutive_failures > 0:
            self.consecutive_failures -= 1


@dataclass
class _Snapshot:
    value: Any
    computed_at: float
    dirty: bool = False


class BudgetSnapshotCache:
    """Keyed snapshots of a recomputed budget view.

    ``invalidate`` records change notifications; any number of them between
    two reads results in a single recompute. A clean snapshot older than
    ``refresh_interval`` is recomputed as well, which covers changes made
    outside this process. When recomputing fails the last good snapshot is
    served instead.

    Recomputes run outside the cache lock, so a slow key never blocks reads
    of other keys. Concurrent reads of the same key share one recompute.
    At most ``max_entries`` snapshots are kept; the least recently read are
    dropped first.
    """

    def __init__(
        self,
        recompute: Callable[[Hashable], Any],
        *,
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        breaker: Optional[CircuitBreaker] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1.")
        self._recompute = recompute
        self.refresh_interval = refresh_interval
        self.max_entries = max_entries
        self._clock = clock
        self.breaker = breaker or CircuitBreaker(clock=clock)
        self._snapshots: "OrderedDict[Hashable, _Snapshot]" = OrderedDict()
        self._inflight: Dict[Hashable, threading.Event] = {}
        self._epoch = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._snapshots)

    def get(self, key: Hashable) -> Any:
        while True:
            with self._lock:
                snapshot = self._snapshots.get(key)
                if snapshot is not None and self._is_fresh(snapshot):
                    self._snapshots.move_to_end(key)
                    return snapshot.value

                pending = self._inflight.get(key)
                if pending is None:
                    if not self.breaker.allow():
                        if snapshot is not None:
                            logger.info(f"budget_refresh: breaker open, serving stale key={key}")
                            return snapshot.value
                        raise RecomputeUnavailable(
                            f"Budget view {key} is temporarily unavailable."
                        )
                    done = threading.Event()
                    self._inflight[key] = done
                    started_epoch = self._epoch
                    break
            pending.wait()

        try:
            return self._recompute_and_store(key, started_epoch)
        finally:
            with self._lock:
                self._inflight.pop(key, None)
            done.set()

    def invalidate(
        self,
        predicate: Optional[Callable[[Hashable], bool]] = None,
        *,
        source: str = "manual",
    ) -> int:
        with self._lock:
            self._epoch += 1
            count = 0
            for key, snapshot in self._snapshots.items():
                if predicate is None or predicate(key):
                    snapshot.dirty = True
                    count += 1
        if count:
            logger.info(f"budget_refresh: invalidated keys={count} source={source}")
        return count

    def clear(self) -> None:
        with self._lock:
            self._snapshots.clear()

    def _recompute_and_store(self, key: Hashable, started_epoch: int) -> Any:
        try:
            value = self._recompute(key)
        except Exception as exc:
            with self._lock:
                self.breaker.record_failure()
                snapshot = self._snapshots.get(key)
            if snapshot is None:
                raise RecomputeUnavailable(f"Budget view {key} could not be computed.") from exc
            logger.warning(
                f"budget_refresh: recompute failed, serving stale key={key} error={exc!r}"
            )
            return snapshot.value

        with self._lock:
            self.breaker.record_success()
            # A change notification that arrived mid-recompute may not be reflected.
            self._snapshots[key] = _Snapshot(
                value=value,
                computed_at=self._clock(),
                dirty=self._epoch != started_epoch,
            )
            self._snapshots.move_to_end(key)
            while len(self._snapshots) > self.max_entries:
                evicted, _ = self._snapshots.popitem(last=False)
                logger.debug(f"budget_refresh: evicted key={evicted}")
        logger.debug(f"budget_refresh: recomputed key={key}")
        return value

    def _is_fresh(self, snapshot: _Snapshot) -> bool:
        if snapshot.dirty:
            return False
        return self._clock() - snapshot.computed_at < self.refresh_interval
