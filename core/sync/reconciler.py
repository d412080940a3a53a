"""
DeploymentSync reconciler.

Level-triggered reconcile for one DeploymentSync key: read the intent, read
the source Deployment, then create or overwrite the destination Deployment so
that its spec equals the source spec. All state is fetched fresh on every
call; nothing is cached between invocations.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional, Tuple

from ..errors import ReconcileError, SchemaError, StoreError, StoreErrorKind, SyncErrorKind
from ..models.intent import DeploymentSync
from ..models.resources import ObjectKey, WorkloadResource
from ..storage.base import ObjectStore, ResourceKind
from ..storage.deadline import Deadline

logger = logging.getLogger(__name__)


class SyncAction(Enum):
    """What a successful reconcile did to the destination"""
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"  # intent no longer exists


@dataclass
class ReconcileResult:
    """Outcome of a successful reconcile"""
    key: ObjectKey
    action: SyncAction
    requeue_after: Optional[float] = None
    destination: Optional[ObjectKey] = None
    conflict_retries: int = 0
    status_persisted: bool = False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeploymentSyncReconciler:
    """
    Drives one destination Deployment toward its source.

    The store is injected at construction time. Destination conflicts are the
    only errors retried in place; everything else is raised as a
    ``ReconcileError`` for the dispatcher to back off and retry.
    """

    def __init__(
        self,
        store: ObjectStore,
        clock: Optional[Callable[[], datetime]] = None,
        max_conflict_retries: int = 5
    ):
        """
        Args:
            store: Object store holding intents and Deployments
            clock: Source of ``lastSyncTime`` values, UTC now by default
            max_conflict_retries: Re-fetch/re-apply attempts after a
                destination conflict before giving up for this call
        """
        self.store = store
        self.clock = clock or _utcnow
        self.max_conflict_retries = max_conflict_retries

    async def reconcile(self, key: ObjectKey, deadline: Optional[Deadline] = None) -> ReconcileResult:
        """
        Reconcile the DeploymentSync identified by ``key``.

        Returns:
            ReconcileResult describing the destination write, or SKIPPED if
            the intent no longer exists

        Raises:
            ReconcileError: on any failure other than a missing intent
        """
        deadline = deadline or Deadline.never()
        logger.debug(f"Reconciling DeploymentSync {key}")

        intent = await self._fetch_intent(key, deadline)
        if intent is None:
            logger.debug(f"DeploymentSync {key} not found, nothing to reconcile")
            return ReconcileResult(key=key, action=SyncAction.SKIPPED)

        source = await self._fetch_source(intent, deadline)
        action, retries = await self._apply_destination(intent, source, deadline)

        status_persisted = await self._record_sync(intent, deadline)

        return ReconcileResult(
            key=key,
            action=action,
            destination=intent.destination_key,
            conflict_retries=retries,
            status_persisted=status_persisted
        )

    async def _fetch_intent(self, key: ObjectKey, deadline: Deadline) -> Optional[DeploymentSync]:
        try:
            raw = await self.store.get(ResourceKind.DEPLOYMENT_SYNC, key, deadline)
        except StoreError as e:
            if e.kind == StoreErrorKind.NOT_FOUND:
                return None
            raise self._wrap(e, SyncErrorKind.INTENT_FETCH, key, f"fetching DeploymentSync {key} failed") from e

        try:
            return DeploymentSync.from_object(raw)
        except SchemaError as e:
            raise ReconcileError(SyncErrorKind.SCHEMA, key, str(e), e) from e

    async def _fetch_source(self, intent: DeploymentSync, deadline: Deadline) -> WorkloadResource:
        source_key = intent.source_key
        try:
            raw = await self.store.get(ResourceKind.DEPLOYMENT, source_key, deadline)
        except StoreError as e:
            if e.kind == StoreErrorKind.NOT_FOUND:
                raise ReconcileError(
                    SyncErrorKind.SOURCE_NOT_FOUND,
                    intent.key,
                    f"source Deployment {source_key} does not exist",
                    e
                ) from e
            raise self._wrap(e, SyncErrorKind.SOURCE_FETCH, intent.key, f"fetching source Deployment {source_key} failed") from e
        return WorkloadResource.from_object(raw)

    async def _apply_destination(
        self,
        intent: DeploymentSync,
        source: WorkloadResource,
        deadline: Deadline
    ) -> Tuple[SyncAction, int]:
        """Create or overwrite the destination, re-fetching after each conflict"""
        dest_key = intent.destination_key
        attempt = 0

        while True:
            try:
                action = await self._write_destination(intent, source, deadline)
                return action, attempt
            except StoreError as e:
                if e.kind != StoreErrorKind.CONFLICT:
                    raise
                attempt += 1
                if attempt > self.max_conflict_retries or deadline.expired:
                    raise ReconcileError(
                        SyncErrorKind.DESTINATION_CONFLICT,
                        intent.key,
                        f"destination Deployment {dest_key} still conflicting after {attempt} attempts",
                        e
                    ) from e
                logger.warning(f"Conflict writing Deployment {dest_key}, retrying ({attempt}/{self.max_conflict_retries}): {e}")

    async def _write_destination(
        self,
        intent: DeploymentSync,
        source: WorkloadResource,
        deadline: Deadline
    ) -> SyncAction:
        """
        One fetch-then-write pass. Conflicts propagate as ``StoreError`` so the
        caller can retry; every other failure becomes a ``ReconcileError``.
        """
        dest_key = intent.destination_key
        try:
            raw = await self.store.get(ResourceKind.DEPLOYMENT, dest_key, deadline)
        except StoreError as e:
            if e.kind != StoreErrorKind.NOT_FOUND:
                raise self._wrap(e, SyncErrorKind.DESTINATION_FETCH, intent.key, f"fetching destination Deployment {dest_key} failed") from e
            raw = None

        if raw is None:
            logger.info(f"Creating Deployment {dest_key} from {intent.source_key}")
            destination = WorkloadResource.new_destination(dest_key, source.spec)
            await self._write(self.store.create, destination, intent, deadline)
            return SyncAction.CREATED

        logger.info(f"Updating Deployment {dest_key} from {intent.source_key}")
        destination = WorkloadResource.from_object(raw).with_spec(source.spec)
        await self._write(self.store.update, destination, intent, deadline)
        return SyncAction.UPDATED

    async def _write(self, write, destination: WorkloadResource, intent: DeploymentSync, deadline: Deadline) -> None:
        try:
            await write(ResourceKind.DEPLOYMENT, destination.to_object(), deadline)
        except StoreError as e:
            if e.kind == StoreErrorKind.CONFLICT:
                raise
            raise self._wrap(e, SyncErrorKind.DESTINATION_WRITE, intent.key, f"writing destination Deployment {destination.key} failed") from e

    async def _record_sync(self, intent: DeploymentSync, deadline: Deadline) -> bool:
        """Persist ``lastSyncTime``; failure only logs since the destination is already in sync"""
        intent.mark_synced(self.clock())
        try:
            await self.store.update_status(ResourceKind.DEPLOYMENT_SYNC, intent.to_object(), deadline)
        except StoreError as e:
            logger.warning(f"Failed to update status of DeploymentSync {intent.key}: {e}")
            return False
        return True

    @staticmethod
    def _wrap(error: StoreError, kind: SyncErrorKind, key: ObjectKey, message: str) -> ReconcileError:
        if error.kind == StoreErrorKind.CANCELLED:
            kind = SyncErrorKind.CANCELLED
        return ReconcileError(kind, key, f"{message}: {error}", error)
