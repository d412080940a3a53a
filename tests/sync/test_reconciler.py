"""
Tests for DeploymentSyncReconciler.

Covers the create and update paths, idempotence, the missing-intent no-op,
source failures, conflict retries, best-effort status writes and
deadline cancellation.
"""

import pytest
import asyncio
from datetime import datetime, timezone

from core.errors import ReconcileError, StoreError, StoreErrorKind, SyncErrorKind
from core.models.resources import ObjectKey
from core.storage.base import ResourceKind
from core.storage.deadline import Deadline
from core.storage.memory import InMemoryObjectStore
from core.sync.reconciler import DeploymentSyncReconciler, SyncAction
from tests.fixtures.manifests import (
    DEST_KEY, INTENT_KEY, SOURCE_KEY,
    deployment, deployment_spec, intent, seeded_store
)

DEPLOYMENT = ResourceKind.DEPLOYMENT
INTENT = ResourceKind.DEPLOYMENT_SYNC
FIXED_NOW = datetime(2024, 6, 1, 8, 0, tzinfo=timezone.utc)


def make_reconciler(store, **kwargs) -> DeploymentSyncReconciler:
    return DeploymentSyncReconciler(store, clock=lambda: FIXED_NOW, **kwargs)


class TestCreatePath:
    """Destination does not exist yet"""

    @pytest.mark.asyncio
    async def test_creates_destination_from_source(self):
        """Test the destination is created with the source spec at the destination key"""
        store = seeded_store(replicas=3)
        result = await make_reconciler(store).reconcile(INTENT_KEY)

        assert result.action == SyncAction.CREATED
        assert result.destination == DEST_KEY
        assert result.requeue_after is None

        dest = store.peek(DEPLOYMENT, DEST_KEY)
        assert dest["metadata"]["name"] == "app"
        assert dest["metadata"]["namespace"] == "ns-b"
        assert dest["spec"] == deployment_spec(replicas=3)

    @pytest.mark.asyncio
    async def test_source_metadata_not_copied(self):
        """Test only the spec crosses namespaces"""
        store = seeded_store()
        await make_reconciler(store).reconcile(INTENT_KEY)

        source = store.peek(DEPLOYMENT, SOURCE_KEY)
        dest = store.peek(DEPLOYMENT, DEST_KEY)
        assert dest["metadata"]["uid"] != source["metadata"]["uid"]
        assert dest["metadata"]["labels"] == {}

    @pytest.mark.asyncio
    async def test_source_is_never_written(self):
        store = seeded_store()
        await make_reconciler(store).reconcile(INTENT_KEY)

        assert all(w.key != SOURCE_KEY for w in store.writes)

    @pytest.mark.asyncio
    async def test_records_last_sync_time(self):
        store = seeded_store()
        result = await make_reconciler(store).reconcile(INTENT_KEY)

        assert result.status_persisted is True
        stored_intent = store.peek(INTENT, INTENT_KEY)
        assert stored_intent["status"]["lastSyncTime"].startswith("2024-06-01T08:00:00")
        # status write leaves the intent spec alone
        assert stored_intent["spec"] == intent()["spec"]

    @pytest.mark.asyncio
    async def test_create_race_falls_back_to_update(self):
        """Test a create conflict re-fetches and updates the object that appeared"""
        store = seeded_store(replicas=4)
        original_create = store.create

        async def racing_create(kind, obj, deadline):
            # another writer creates the destination first
            store.seed(DEPLOYMENT, deployment("ns-b", spec=deployment_spec(1)))
            store.create = original_create
            return await original_create(kind, obj, deadline)

        store.create = racing_create
        result = await make_reconciler(store).reconcile(INTENT_KEY)

        assert result.action == SyncAction.UPDATED
        assert result.conflict_retries == 1
        assert store.peek(DEPLOYMENT, DEST_KEY)["spec"]["replicas"] == 4
        assert len([w for w in store.writes_for(DEPLOYMENT) if w.key == DEST_KEY]) == 1


class TestUpdatePath:
    """Destination already exists"""

    @pytest.mark.asyncio
    async def test_overwrites_destination_spec(self):
        """Test the destination spec is replaced by the source spec"""
        store = seeded_store(replicas=5, with_destination=True, dest_replicas=1)
        before = store.peek(DEPLOYMENT, DEST_KEY)

        result = await make_reconciler(store).reconcile(INTENT_KEY)

        after = store.peek(DEPLOYMENT, DEST_KEY)
        assert result.action == SyncAction.UPDATED
        assert after["spec"] == deployment_spec(replicas=5)
        assert after["metadata"]["uid"] == before["metadata"]["uid"]
        assert after["metadata"]["name"] == before["metadata"]["name"]
        assert after["metadata"]["namespace"] == before["metadata"]["namespace"]
        assert after["metadata"]["labels"] == before["metadata"]["labels"]

    @pytest.mark.asyncio
    async def test_full_overwrite_drops_extra_fields(self):
        """Test fields only present on the destination are removed"""
        store = seeded_store()
        store.seed(DEPLOYMENT, deployment("ns-b", spec={**deployment_spec(1), "paused": True}))

        await make_reconciler(store).reconcile(INTENT_KEY)

        assert "paused" not in store.peek(DEPLOYMENT, DEST_KEY)["spec"]

    @pytest.mark.asyncio
    async def test_destination_status_untouched(self):
        store = seeded_store(with_destination=True)
        store._objects[DEPLOYMENT][DEST_KEY]["status"] = {"readyReplicas": 1}

        await make_reconciler(store).reconcile(INTENT_KEY)

        assert store.peek(DEPLOYMENT, DEST_KEY)["status"] == {"readyReplicas": 1}

    @pytest.mark.asyncio
    async def test_idempotent_second_run(self):
        """Test reconciling twice with an unchanged source converges without error"""
        store = seeded_store(replicas=3)
        reconciler = make_reconciler(store)

        first = await reconciler.reconcile(INTENT_KEY)
        second = await reconciler.reconcile(INTENT_KEY)

        assert first.action == SyncAction.CREATED
        assert second.action == SyncAction.UPDATED
        assert store.peek(DEPLOYMENT, DEST_KEY)["spec"] == deployment_spec(replicas=3)
        dest_writes = [w.operation for w in store.writes_for(DEPLOYMENT) if w.key == DEST_KEY]
        assert dest_writes == ["create", "update"]

    @pytest.mark.asyncio
    async def test_update_conflict_refetches_and_converges(self):
        """Test a stale version token is retried against a fresh destination"""
        store = seeded_store(replicas=7, with_destination=True)
        original_update = store.update
        interfered = []

        async def interfering_update(kind, obj, deadline):
            if not interfered:
                # concurrent writer bumps the destination's resourceVersion
                interfered.append(True)
                current = await store.get(DEPLOYMENT, DEST_KEY, deadline)
                current["spec"]["replicas"] = 2
                await original_update(DEPLOYMENT, current, deadline)
            return await original_update(kind, obj, deadline)

        store.update = interfering_update
        result = await make_reconciler(store).reconcile(INTENT_KEY)

        assert result.action == SyncAction.UPDATED
        assert result.conflict_retries == 1
        assert store.peek(DEPLOYMENT, DEST_KEY)["spec"]["replicas"] == 7

    @pytest.mark.asyncio
    async def test_conflicts_exhaust_retries(self):
        """Test persistent conflicts surface as a retryable DESTINATION_CONFLICT"""
        store = seeded_store(with_destination=True)
        store.fail_next("update", DEPLOYMENT, StoreError.conflict(DEST_KEY, "stale"), times=3)

        with pytest.raises(ReconcileError) as exc_info:
            await make_reconciler(store, max_conflict_retries=2).reconcile(INTENT_KEY)

        assert exc_info.value.kind == SyncErrorKind.DESTINATION_CONFLICT
        assert exc_info.value.retryable
        assert store.writes_for(INTENT) == []


class TestExampleScenario:
    """Source scaled 3 -> 5, then intent deleted"""

    @pytest.mark.asyncio
    async def test_full_lifecycle(self):
        store = seeded_store(replicas=3)
        reconciler = make_reconciler(store)

        await reconciler.reconcile(INTENT_KEY)
        assert store.peek(DEPLOYMENT, DEST_KEY)["spec"]["replicas"] == 3

        source = await store.get(DEPLOYMENT, SOURCE_KEY, Deadline.never())
        source["spec"]["replicas"] = 5
        await store.update(DEPLOYMENT, source, Deadline.never())

        result = await reconciler.reconcile(INTENT_KEY)
        assert result.action == SyncAction.UPDATED
        assert store.peek(DEPLOYMENT, DEST_KEY)["spec"]["replicas"] == 5

        await store.delete(INTENT, INTENT_KEY)
        writes_before = len(store.writes)

        result = await reconciler.reconcile(INTENT_KEY)
        assert result.action == SyncAction.SKIPPED
        assert len(store.writes) == writes_before
        # destination is orphaned, not cleaned up
        assert store.peek(DEPLOYMENT, DEST_KEY)["spec"]["replicas"] == 5


class TestFailures:
    """Error classification"""

    @pytest.mark.asyncio
    async def test_missing_intent_is_noop(self):
        """Test a missing intent returns success with no writes"""
        store = InMemoryObjectStore()
        result = await make_reconciler(store).reconcile(ObjectKey.parse("default/gone"))

        assert result.action == SyncAction.SKIPPED
        assert result.requeue_after is None
        assert store.writes == []

    @pytest.mark.asyncio
    async def test_intent_fetch_error(self):
        store = seeded_store()
        store.fail_next("get", INTENT, StoreError(StoreErrorKind.OTHER, "etcd unavailable"))

        with pytest.raises(ReconcileError) as exc_info:
            await make_reconciler(store).reconcile(INTENT_KEY)

        assert exc_info.value.kind == SyncErrorKind.INTENT_FETCH
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_malformed_intent_is_permanent(self):
        """Test schema failures are not retryable"""
        store = InMemoryObjectStore()
        bad = intent()
        del bad["spec"]["resourceName"]
        store.seed(INTENT, bad)

        with pytest.raises(ReconcileError) as exc_info:
            await make_reconciler(store).reconcile(INTENT_KEY)

        assert exc_info.value.kind == SyncErrorKind.SCHEMA
        assert not exc_info.value.retryable
        assert store.writes == []

    @pytest.mark.asyncio
    async def test_missing_source_fails_without_writes(self):
        """Test a missing source is surfaced and nothing is written"""
        store = InMemoryObjectStore()
        store.seed(INTENT, intent())

        with pytest.raises(ReconcileError) as exc_info:
            await make_reconciler(store).reconcile(INTENT_KEY)

        assert exc_info.value.kind == SyncErrorKind.SOURCE_NOT_FOUND
        assert exc_info.value.retryable
        assert store.writes == []

    @pytest.mark.asyncio
    async def test_source_fetch_error(self):
        store = seeded_store()
        store.fail_next("get", DEPLOYMENT, StoreError(StoreErrorKind.OTHER, "forbidden"))

        with pytest.raises(ReconcileError) as exc_info:
            await make_reconciler(store).reconcile(INTENT_KEY)

        assert exc_info.value.kind == SyncErrorKind.SOURCE_FETCH
        assert store.writes == []

    @pytest.mark.asyncio
    async def test_destination_fetch_error(self):
        store = seeded_store()
        original_get = store.get
        calls = []

        async def get(kind, key, deadline):
            if kind == DEPLOYMENT:
                calls.append(key)
                if key == DEST_KEY:
                    raise StoreError(StoreErrorKind.OTHER, "flaky", key)
            return await original_get(kind, key, deadline)

        store.get = get

        with pytest.raises(ReconcileError) as exc_info:
            await make_reconciler(store).reconcile(INTENT_KEY)

        assert exc_info.value.kind == SyncErrorKind.DESTINATION_FETCH
        assert calls == [SOURCE_KEY, DEST_KEY]
        assert store.writes == []

    @pytest.mark.asyncio
    async def test_destination_write_error_skips_status(self):
        """Test no status update is attempted when the destination write fails"""
        store = seeded_store()
        store.fail_next("create", DEPLOYMENT, StoreError(StoreErrorKind.OTHER, "quota exceeded"))

        with pytest.raises(ReconcileError) as exc_info:
            await make_reconciler(store).reconcile(INTENT_KEY)

        assert exc_info.value.kind == SyncErrorKind.DESTINATION_WRITE
        assert store.calls["update_status"] == 0
        assert store.writes == []

    @pytest.mark.asyncio
    async def test_status_write_failure_is_not_fatal(self):
        """Test a failed lastSyncTime write still reports success"""
        store = seeded_store()
        store.fail_next("update_status", INTENT, StoreError(StoreErrorKind.OTHER, "status denied"))

        result = await make_reconciler(store).reconcile(INTENT_KEY)

        assert result.action == SyncAction.CREATED
        assert result.status_persisted is False
        assert store.peek(DEPLOYMENT, DEST_KEY) is not None
        assert "lastSyncTime" not in store.peek(INTENT, INTENT_KEY)["status"]

    @pytest.mark.asyncio
    async def test_expired_deadline_is_cancelled(self):
        """Test cancellation surfaces as a retryable CANCELLED error"""
        store = seeded_store()
        deadline = Deadline.never()
        deadline.cancel()

        with pytest.raises(ReconcileError) as exc_info:
            await make_reconciler(store).reconcile(INTENT_KEY, deadline)

        assert exc_info.value.kind == SyncErrorKind.CANCELLED
        assert exc_info.value.retryable
        assert store.writes == []

    @pytest.mark.asyncio
    async def test_cancel_interrupts_inflight_call(self):
        """Test cancel() fails a store call that is already running"""
        store = seeded_store()
        store.latency_seconds = 0.2
        deadline = Deadline.never()
        loop = asyncio.get_running_loop()
        # lands while the source fetch is in flight
        loop.call_later(0.3, deadline.cancel)
        started = loop.time()

        with pytest.raises(ReconcileError) as exc_info:
            await make_reconciler(store).reconcile(INTENT_KEY, deadline)

        assert exc_info.value.kind == SyncErrorKind.CANCELLED
        assert loop.time() - started < 0.38
        assert store.calls["get"] == 2
        assert store.writes == []
