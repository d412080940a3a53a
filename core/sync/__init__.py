"""
DeploymentSync control loop.

Key Components:
- ReconcileRequest: Work item naming one DeploymentSync key
- RateLimitedWorkQueue: Deduplicating, single-flight, backoff-aware queue
- DeploymentSyncReconciler: Level-triggered reconcile of one intent
- SyncController: Watch, resync and worker pool driving the reconciler
"""

from .events import ReconcileRequest, RequestReason
from .queue import RateLimitedWorkQueue
from .reconciler import DeploymentSyncReconciler, ReconcileResult, SyncAction
from .engine import SyncController, ControllerMetrics

__all__ = [
    "ReconcileRequest",
    "RequestReason",
    "RateLimitedWorkQueue",
    "DeploymentSyncReconciler",
    "ReconcileResult",
    "SyncAction",
    "SyncController",
    "ControllerMetrics",
]
