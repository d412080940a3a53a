"""
DeploymentSync controller engine.

Feeds DeploymentSync keys from watch events and periodic resyncs into a
rate-limited work queue and runs a pool of workers that reconcile them.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..errors import ReconcileError, StoreError
from ..models.config import ControllerSettings
from ..models.resources import ObjectKey
from ..storage.base import ObjectStore, ResourceKind, WatchEvent, WatchEventType
from ..storage.deadline import Deadline
from .events import ReconcileRequest, RequestReason
from .queue import RateLimitedWorkQueue
from .reconciler import DeploymentSyncReconciler, ReconcileResult, SyncAction

logger = logging.getLogger(__name__)


@dataclass
class ControllerMetrics:
    """Counters for the controller engine"""

    reconciles_succeeded: int = 0
    reconciles_failed: int = 0
    reconciles_dropped: int = 0  # permanent failures, not retried

    destinations_created: int = 0
    destinations_updated: int = 0
    intents_missing: int = 0
    status_write_failures: int = 0

    resyncs: int = 0
    watch_restarts: int = 0

    avg_reconcile_time_ms: float = 0.0
    max_reconcile_time_ms: float = 0.0

    uptime_seconds: float = 0.0
    last_error_time: Optional[datetime] = None
    last_error_message: Optional[str] = None


class SyncController:
    """
    Runs the DeploymentSync control loop.

    The work queue guarantees that at most one worker reconciles a given
    key at a time; distinct keys are reconciled concurrently by
    ``worker_count`` workers.
    """

    def __init__(
        self,
        store: ObjectStore,
        settings: Optional[ControllerSettings] = None,
        reconciler: Optional[DeploymentSyncReconciler] = None,
        result_callback: Optional[Callable[[ReconcileRequest, Optional[ReconcileResult], Optional[Exception]], None]] = None
    ):
        """
        Initialize the controller.

        Args:
            store: Object store shared by the watch, resync and workers
            settings: Controller settings, defaults when omitted
            reconciler: Reconciler override, built from ``store`` when omitted
            result_callback: Called after every reconcile with its outcome
        """
        self.store = store
        self.settings = settings or ControllerSettings()
        self.reconciler = reconciler or DeploymentSyncReconciler(
            store,
            max_conflict_retries=self.settings.max_conflict_retries
        )
        self.result_callback = result_callback

        self.queue = RateLimitedWorkQueue(
            base_delay=self.settings.backoff_base_seconds,
            max_delay=self.settings.backoff_max_seconds
        )

        self.workers: List[asyncio.Task] = []
        self.watch_task: Optional[asyncio.Task] = None
        self.resync_task: Optional[asyncio.Task] = None
        self.is_running = False
        self._generations: Dict[ObjectKey, int] = {}
        self.start_time: Optional[datetime] = None

        self.metrics = ControllerMetrics()

        logger.info(f"Initialized SyncController with {self.settings.worker_count} workers")

    async def start(self, watch: bool = True, resync: bool = True) -> None:
        """Start workers plus, optionally, the watch and resync loops"""
        if self.is_running:
            logger.warning("SyncController is already running")
            return

        logger.info("Starting SyncController")
        self.is_running = True
        self.start_time = datetime.now()

        self.workers = [
            asyncio.create_task(self._worker(f"worker-{i}"))
            for i in range(self.settings.worker_count)
        ]
        if watch:
            self.watch_task = asyncio.create_task(self._watch_intents())
        if resync:
            self.resync_task = asyncio.create_task(self._resync_loop())

        logger.info(f"Started SyncController with {len(self.workers)} workers")

    async def stop(self) -> None:
        """Stop all background tasks"""
        if not self.is_running:
            return

        logger.info("Stopping SyncController")
        self.is_running = False
        self.queue.shutdown()

        tasks = [t for t in (self.watch_task, self.resync_task) if t is not None]
        for task in tasks:
            task.cancel()

        try:
            await asyncio.wait_for(
                asyncio.gather(*tasks, *self.workers, return_exceptions=True),
                timeout=10.0
            )
        except asyncio.TimeoutError:
            logger.warning("Timeout waiting for workers to stop - forcing shutdown")
            for worker in self.workers:
                worker.cancel()

        self.workers = []
        self.watch_task = None
        self.resync_task = None
        if self.start_time:
            self.metrics.uptime_seconds = (datetime.now() - self.start_time).total_seconds()

        logger.info("Stopped SyncController")

    def enqueue(self, key: ObjectKey, reason: RequestReason = RequestReason.MANUAL) -> bool:
        """Request a reconcile of ``key``"""
        return self.queue.add(key, reason)

    async def resync(self) -> int:
        """Enqueue every DeploymentSync currently in the store"""
        deadline = Deadline.after(self.settings.reconcile_timeout_seconds)
        keys = await self.store.list_keys(ResourceKind.DEPLOYMENT_SYNC, deadline)
        for key in keys:
            self.queue.add(key, RequestReason.RESYNC)
        self.metrics.resyncs += 1
        logger.debug(f"Resync enqueued {len(keys)} DeploymentSync objects")
        return len(keys)

    async def wait_idle(self, timeout: float = 5.0, poll_interval: float = 0.01) -> bool:
        """Wait until nothing is queued, processing or waiting for a retry"""
        loop = asyncio.get_running_loop()
        end_time = loop.time() + timeout
        while loop.time() < end_time:
            metrics = self.queue.get_metrics()
            if metrics["depth"] == 0 and metrics["processing"] == 0 and metrics["waiting_retry"] == 0:
                return True
            await asyncio.sleep(poll_interval)
        return False

    async def process_next(self, timeout: Optional[float] = None) -> bool:
        """
        Take one request off the queue and reconcile it.

        Returns:
            False if no request arrived before ``timeout`` or the queue is shut down
        """
        request = await self.queue.get(timeout=timeout)
        if request is None:
            return False
        try:
            await self._handle(request)
        finally:
            self.queue.done(request.key)
        return True

    async def _worker(self, worker_name: str) -> None:
        logger.info(f"Started reconcile worker: {worker_name}")
        while self.is_running:
            try:
                if not await self.process_next(timeout=1.0) and self.queue.is_shutting_down:
                    break
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Unexpected error in {worker_name}: {e}")
                self._record_error(str(e))
        logger.info(f"Stopped reconcile worker: {worker_name}")

    async def _handle(self, request: ReconcileRequest) -> None:
        key = request.key
        deadline = Deadline.after(self.settings.reconcile_timeout_seconds)
        start_time = datetime.now()
        result: Optional[ReconcileResult] = None
        error: Optional[Exception] = None

        logger.debug(f"Processing {request} (queued {request.age_seconds:.3f}s ago)")
        try:
            result = await self.reconciler.reconcile(key, deadline)
        except ReconcileError as e:
            error = e
        except Exception as e:
            # unclassified failures are retried like transient ones
            logger.exception(f"Unexpected error reconciling {key}: {e}")
            error = e
        finally:
            elapsed_ms = (datetime.now() - start_time).total_seconds() * 1000
            self._record_timing(elapsed_ms)

        if error is None:
            self.queue.forget(key)
            self._record_success(result)
        elif not isinstance(error, ReconcileError) or error.retryable:
            delay = self.queue.add_rate_limited(key)
            self.metrics.reconciles_failed += 1
            self._record_error(str(error))
            logger.warning(f"Reconcile of {key} failed, retrying in {delay:.3f}s: {error}")
        else:
            self.queue.forget(key)
            self.metrics.reconciles_dropped += 1
            self._record_error(str(error))
            logger.error(f"Reconcile of {key} failed permanently, not retrying: {error}")

        if self.result_callback:
            try:
                self.result_callback(request, result, error)
            except Exception as e:
                logger.warning(f"Error in result callback: {e}")

    async def _watch_intents(self) -> None:
        """Turn DeploymentSync watch events into queue entries, restarting on failure"""
        backoff = 1.0
        while self.is_running:
            try:
                async for event in self.store.watch(ResourceKind.DEPLOYMENT_SYNC):
                    if not self._spec_changed(event):
                        continue
                    request = ReconcileRequest.from_watch_event(event)
                    self.queue.add(request.key, request.reason)
                    backoff = 1.0
            except asyncio.CancelledError:
                break
            except StoreError as e:
                self.metrics.watch_restarts += 1
                self._record_error(str(e))
                logger.error(f"DeploymentSync watch failed, restarting in {backoff:.0f}s: {e}")
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 60.0)

    def _spec_changed(self, event: WatchEvent) -> bool:
        """
        Filter out MODIFIED events that left ``metadata.generation`` as is.

        Every ``lastSyncTime`` write produces one of these for the intent
        that was just reconciled.
        """
        if event.type == WatchEventType.DELETED:
            self._generations.pop(event.key, None)
            return True
        previous = self._generations.get(event.key)
        if event.generation is not None:
            self._generations[event.key] = event.generation
        if event.type == WatchEventType.MODIFIED and previous is not None:
            return event.generation is None or event.generation != previous
        return True

    async def _resync_loop(self) -> None:
        """Relist all intents now and then every resync period"""
        while self.is_running:
            try:
                await self.resync()
            except asyncio.CancelledError:
                break
            except StoreError as e:
                self._record_error(str(e))
                logger.error(f"Resync failed: {e}")
            try:
                await asyncio.sleep(self.settings.resync_period_seconds)
            except asyncio.CancelledError:
                break

    def _record_success(self, result: ReconcileResult) -> None:
        self.metrics.reconciles_succeeded += 1
        if result.action == SyncAction.CREATED:
            self.metrics.destinations_created += 1
        elif result.action == SyncAction.UPDATED:
            self.metrics.destinations_updated += 1
        elif result.action == SyncAction.SKIPPED:
            self.metrics.intents_missing += 1
        if result.action != SyncAction.SKIPPED and not result.status_persisted:
            self.metrics.status_write_failures += 1

    def _record_timing(self, elapsed_ms: float) -> None:
        total = self.metrics.reconciles_succeeded + self.metrics.reconciles_failed + self.metrics.reconciles_dropped + 1
        self.metrics.avg_reconcile_time_ms = (
            (self.metrics.avg_reconcile_time_ms * (total - 1) + elapsed_ms) / total
        )
        self.metrics.max_reconcile_time_ms = max(self.metrics.max_reconcile_time_ms, elapsed_ms)

    def _record_error(self, message: str) -> None:
        self.metrics.last_error_message = message
        self.metrics.last_error_time = datetime.now()

    def get_status(self) -> Dict[str, Any]:
        """Get status information about the controller"""
        if self.start_time and self.is_running:
            self.metrics.uptime_seconds = (datetime.now() - self.start_time).total_seconds()
        return {
            "is_running": self.is_running,
            "uptime_seconds": self.metrics.uptime_seconds,
            "worker_count": len(self.workers),
            "reconciles_succeeded": self.metrics.reconciles_succeeded,
            "reconciles_failed": self.metrics.reconciles_failed,
            "reconciles_dropped": self.metrics.reconciles_dropped,
            "destinations_created": self.metrics.destinations_created,
            "destinations_updated": self.metrics.destinations_updated,
            "status_write_failures": self.metrics.status_write_failures,
            "resyncs": self.metrics.resyncs,
            "avg_reconcile_time_ms": self.metrics.avg_reconcile_time_ms,
            "last_error": self.metrics.last_error_message,
            "last_error_time": self.metrics.last_error_time.isoformat() if self.metrics.last_error_time else None,
            "queue": self.queue.get_metrics(),
        }

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
