"""
Tests for RateLimitedWorkQueue.

Validates deduplication, single-flight handout per key, dirty requeue on
done, exponential backoff and shutdown.
"""

import pytest
import asyncio
from datetime import datetime, timedelta

from core.models.resources import ObjectKey
from core.storage.base import ResourceKind, WatchEvent, WatchEventType
from core.sync.events import ReconcileRequest, RequestReason
from core.sync.queue import RateLimitedWorkQueue

KEY_A = ObjectKey(namespace="default", name="a")
KEY_B = ObjectKey(namespace="default", name="b")


class TestRateLimitedWorkQueue:
    """Test suite for the work queue"""

    @pytest.fixture
    def queue(self):
        return RateLimitedWorkQueue(base_delay=0.01, max_delay=0.08)

    @pytest.mark.asyncio
    async def test_fifo_handout(self, queue):
        assert queue.add(KEY_A, RequestReason.ADDED) is True
        assert queue.add(KEY_B, RequestReason.RESYNC) is True

        first = await queue.get(timeout=1.0)
        second = await queue.get(timeout=1.0)

        assert first.key == KEY_A
        assert first.reason == RequestReason.ADDED
        assert second.key == KEY_B
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_duplicate_adds_are_merged(self, queue):
        """Test a pending key is queued only once"""
        queue.add(KEY_A)
        assert queue.add(KEY_A) is False
        assert queue.add(KEY_A) is False

        assert queue.pending_keys() == [KEY_A]
        assert queue.get_metrics()["deduplicated"] == 2

    @pytest.mark.asyncio
    async def test_processing_key_not_handed_out_twice(self, queue):
        """Test a key added during processing waits until done"""
        queue.add(KEY_A)
        request = await queue.get(timeout=1.0)
        assert queue.is_processing(KEY_A)

        assert queue.add(KEY_A, RequestReason.MODIFIED) is True
        assert await queue.get(timeout=0.05) is None

        queue.done(request.key)
        again = await queue.get(timeout=1.0)

        assert again.key == KEY_A
        assert again.reason == RequestReason.MODIFIED

    @pytest.mark.asyncio
    async def test_done_without_new_adds_drops_key(self, queue):
        queue.add(KEY_A)
        request = await queue.get(timeout=1.0)

        queue.done(request.key)

        assert not queue.is_processing(KEY_A)
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_get_times_out_when_empty(self, queue):
        assert await queue.get(timeout=0.01) is None

    @pytest.mark.asyncio
    async def test_get_wakes_on_add(self, queue):
        """Test a waiting consumer is woken by a later add"""
        waiter = asyncio.create_task(queue.get(timeout=1.0))
        await asyncio.sleep(0.01)

        queue.add(KEY_B)
        request = await waiter

        assert request.key == KEY_B

    def test_backoff_doubles_and_caps(self, queue):
        """Test base * 2^(n-1) growth up to max_delay"""
        queue._failures[KEY_A] = 1
        assert queue.backoff_for(KEY_A) == pytest.approx(0.01)
        queue._failures[KEY_A] = 3
        assert queue.backoff_for(KEY_A) == pytest.approx(0.04)
        queue._failures[KEY_A] = 10
        assert queue.backoff_for(KEY_A) == pytest.approx(0.08)
        assert queue.backoff_for(KEY_B) == 0.0

    @pytest.mark.asyncio
    async def test_rate_limited_requeue(self, queue):
        """Test a failed key comes back after its backoff delay"""
        delay = queue.add_rate_limited(KEY_A)

        assert delay == pytest.approx(0.01)
        assert queue.num_requeues(KEY_A) == 1
        assert queue.get_metrics()["waiting_retry"] == 1
        assert len(queue) == 0

        request = await queue.get(timeout=1.0)
        assert request.key == KEY_A
        assert request.reason == RequestReason.RETRY

        assert queue.add_rate_limited(KEY_A) == pytest.approx(0.02)

    @pytest.mark.asyncio
    async def test_forget_resets_backoff(self, queue):
        queue.add_rate_limited(KEY_A)
        queue.add_rate_limited(KEY_A)

        queue.forget(KEY_A)

        assert queue.num_requeues(KEY_A) == 0
        assert queue.backoff_for(KEY_A) == 0.0

    @pytest.mark.asyncio
    async def test_shutdown(self, queue):
        """Test shutdown wakes consumers, cancels timers and rejects adds"""
        waiter = asyncio.create_task(queue.get())
        queue.add_after(KEY_B, 10.0)
        await asyncio.sleep(0.01)

        queue.shutdown()

        assert await asyncio.wait_for(waiter, timeout=1.0) is None
        assert queue.add(KEY_A) is False
        assert queue.get_metrics()["waiting_retry"] == 0
        assert queue.is_shutting_down

    @pytest.mark.asyncio
    async def test_metrics_by_reason(self, queue):
        queue.add(KEY_A, RequestReason.ADDED)
        queue.add(KEY_B, RequestReason.RESYNC)
        queue.add(KEY_B, RequestReason.RESYNC)

        metrics = queue.get_metrics()

        assert metrics["adds"] == 3
        assert metrics["depth"] == 2
        assert metrics["requests_by_reason"] == {"added": 1, "resync": 2}


class TestReconcileRequest:
    """Test request construction from watch events"""

    @pytest.mark.parametrize("event_type,reason", [
        (WatchEventType.ADDED, RequestReason.ADDED),
        (WatchEventType.MODIFIED, RequestReason.MODIFIED),
        (WatchEventType.DELETED, RequestReason.DELETED),
    ])
    def test_from_watch_event(self, event_type, reason):
        event = WatchEvent(type=event_type, kind=ResourceKind.DEPLOYMENT_SYNC, key=KEY_A)

        request = ReconcileRequest.from_watch_event(event)

        assert request.key == KEY_A
        assert request.reason == reason

    def test_to_dict(self):
        request = ReconcileRequest(key=KEY_A, reason=RequestReason.RESYNC)

        data = request.to_dict()

        assert data["key"] == "default/a"
        assert data["reason"] == "resync"
        assert str(request) == "RESYNC: default/a"

    def test_age_seconds(self):
        """Test the age reported in worker logs counts from enqueue time"""
        request = ReconcileRequest(
            key=KEY_A,
            reason=RequestReason.RETRY,
            timestamp=datetime.now() - timedelta(seconds=5)
        )

        assert request.age_seconds >= 5.0
