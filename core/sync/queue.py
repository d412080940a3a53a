"""
Rate-limited work queue.

Keyed FIFO queue for reconcile requests with deduplication, single-flight
processing per key and per-key exponential backoff for failed reconciles.
"""

import asyncio
import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Set

from ..models.resources import ObjectKey
from .events import ReconcileRequest, RequestReason

logger = logging.getLogger(__name__)


@dataclass
class QueueMetrics:
    """Metrics for monitoring queue performance"""
    total_adds: int = 0
    total_deduplicated: int = 0
    total_gets: int = 0
    total_retries: int = 0
    max_depth_reached: int = 0
    requests_by_reason: Dict[RequestReason, int] = None

    def __post_init__(self):
        if self.requests_by_reason is None:
            self.requests_by_reason = defaultdict(int)


class RateLimitedWorkQueue:
    """
    Work queue handing out each DeploymentSync key to one worker at a time.

    Invariants:
    - a key is queued at most once (further adds are merged)
    - a key handed out by ``get`` is not handed out again until ``done``;
      adds that arrive meanwhile mark it dirty and it is requeued on ``done``
    - ``add_rate_limited`` delays a key by ``base_delay * 2**(failures - 1)``
      capped at ``max_delay``; ``forget`` resets the failure count
    """

    def __init__(self, base_delay: float = 0.005, max_delay: float = 300.0):
        """
        Initialize the work queue.

        Args:
            base_delay: Delay in seconds before the first retry of a key
            max_delay: Upper bound on any retry delay
        """
        self.base_delay = base_delay
        self.max_delay = max_delay

        self._queue: Deque[ObjectKey] = deque()
        self._dirty: Set[ObjectKey] = set()
        self._processing: Set[ObjectKey] = set()
        self._reasons: Dict[ObjectKey, RequestReason] = {}
        self._failures: Dict[ObjectKey, int] = defaultdict(int)
        self._timers: Dict[ObjectKey, asyncio.TimerHandle] = {}

        self._ready = asyncio.Event()
        self._shutting_down = False

        self.metrics = QueueMetrics()
        self._start_time = datetime.now()

        logger.info(f"Initialized RateLimitedWorkQueue (base_delay={base_delay}s, max_delay={max_delay}s)")

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: ObjectKey, reason: RequestReason = RequestReason.MANUAL) -> bool:
        """
        Mark ``key`` as needing reconciliation.

        Returns:
            True if the key was newly queued or marked dirty, False if it was
            already pending or the queue is shutting down
        """
        if self._shutting_down:
            return False

        self.metrics.total_adds += 1
        self.metrics.requests_by_reason[reason] += 1

        if key in self._dirty:
            self.metrics.total_deduplicated += 1
            logger.debug(f"Merged duplicate request for {key} ({reason.value})")
            return False

        self._dirty.add(key)
        self._reasons[key] = reason
        if key in self._processing:
            # requeued by done()
            return True

        self._push(key)
        return True

    def add_after(self, key: ObjectKey, delay: float, reason: RequestReason = RequestReason.RETRY) -> None:
        """Add ``key`` once ``delay`` seconds have passed"""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key, reason)
            return

        existing = self._timers.pop(key, None)
        if existing is not None:
            existing.cancel()

        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(delay, self._fire_timer, key, reason)

    def add_rate_limited(self, key: ObjectKey) -> float:
        """Requeue ``key`` after its backoff delay and return that delay"""
        self._failures[key] += 1
        delay = self.backoff_for(key)
        self.metrics.total_retries += 1
        logger.debug(f"Requeueing {key} in {delay:.3f}s (failure #{self._failures[key]})")
        self.add_after(key, delay, RequestReason.RETRY)
        return delay

    def backoff_for(self, key: ObjectKey) -> float:
        failures = self._failures.get(key, 0)
        if failures <= 0:
            return 0.0
        return min(self.base_delay * (2 ** (failures - 1)), self.max_delay)

    def forget(self, key: ObjectKey) -> None:
        """Reset the failure count for ``key``"""
        self._failures.pop(key, None)

    def num_requeues(self, key: ObjectKey) -> int:
        return self._failures.get(key, 0)

    async def get(self, timeout: Optional[float] = None) -> Optional[ReconcileRequest]:
        """
        Hand out the next key, waiting up to ``timeout`` seconds.

        Returns:
            The request, or None on timeout or once the queue is shut down
        """
        loop = asyncio.get_running_loop()
        end_time = loop.time() + timeout if timeout is not None else None

        while not self._queue:
            if self._shutting_down:
                return None
            self._ready.clear()
            remaining = None if end_time is None else end_time - loop.time()
            if remaining is not None and remaining <= 0:
                return None
            try:
                await asyncio.wait_for(self._ready.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                return None

        key = self._queue.popleft()
        self._dirty.discard(key)
        self._processing.add(key)
        reason = self._reasons.pop(key, RequestReason.MANUAL)
        self.metrics.total_gets += 1
        return ReconcileRequest(key=key, reason=reason)

    def done(self, key: ObjectKey) -> None:
        """Finish processing ``key``; requeue it if it was added meanwhile"""
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._push(key)

    def shutdown(self) -> None:
        """Stop accepting work and wake every waiting consumer"""
        self._shutting_down = True
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._ready.set()
        logger.info("Shut down RateLimitedWorkQueue")

    def _push(self, key: ObjectKey) -> None:
        self._queue.append(key)
        self.metrics.max_depth_reached = max(self.metrics.max_depth_reached, len(self._queue))
        self._ready.set()

    def _fire_timer(self, key: ObjectKey, reason: RequestReason) -> None:
        self._timers.pop(key, None)
        self.add(key, reason)

    def pending_keys(self) -> List[ObjectKey]:
        return list(self._queue)

    def is_processing(self, key: ObjectKey) -> bool:
        return key in self._processing

    def get_metrics(self) -> Dict[str, Any]:
        """Get queue metrics"""
        uptime = (datetime.now() - self._start_time).total_seconds()
        return {
            "depth": len(self._queue),
            "processing": len(self._processing),
            "waiting_retry": len(self._timers),
            "max_depth_reached": self.metrics.max_depth_reached,
            "adds": self.metrics.total_adds,
            "deduplicated": self.metrics.total_deduplicated,
            "gets": self.metrics.total_gets,
            "retries": self.metrics.total_retries,
            "requests_by_reason": {r.value: n for r, n in self.metrics.requests_by_reason.items()},
            "uptime_seconds": uptime,
        }

    def __len__(self) -> int:
        return len(self._queue)
