"""
Deadline token passed explicitly through every object-store call.
"""

import asyncio
import time
from typing import Awaitable, Optional, TypeVar

from ..errors import StoreError

T = TypeVar('T')


class Deadline:
    """
    Cancellation token with an optional absolute expiry.

    A reconcile creates one deadline and hands it to each store call; the
    call fails with ``StoreError(CANCELLED)`` once the deadline has passed
    or ``cancel()`` has been called.
    """

    def __init__(self, expires_at: Optional[float] = None):
        self._expires_at = expires_at
        self._cancelled = False
        self._cancel_event = asyncio.Event()

    @classmethod
    def after(cls, seconds: float) -> 'Deadline':
        return cls(time.monotonic() + seconds)

    @classmethod
    def never(cls) -> 'Deadline':
        return cls(None)

    def cancel(self) -> None:
        """Expire now; calls running under ``run`` fail immediately"""
        self._cancelled = True
        self._cancel_event.set()

    @property
    def expired(self) -> bool:
        if self._cancelled:
            return True
        return self._expires_at is not None and time.monotonic() >= self._expires_at

    def remaining(self) -> Optional[float]:
        """Seconds left, ``None`` if unbounded"""
        if self._cancelled:
            return 0.0
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    def check(self, key: Optional[object] = None) -> None:
        """Raise ``StoreError(CANCELLED)`` if the deadline has passed"""
        if self.expired:
            raise StoreError.cancelled(key)

    async def run(self, awaitable: Awaitable[T], key: Optional[object] = None) -> T:
        """Await ``awaitable`` until it finishes, the deadline passes or ``cancel()`` is called"""
        if self.expired:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise StoreError.cancelled(key)
        task = asyncio.ensure_future(awaitable)
        cancelled = asyncio.ensure_future(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, cancelled},
                timeout=self.remaining(),
                return_when=asyncio.FIRST_COMPLETED
            )
        except BaseException:
            task.cancel()
            raise
        finally:
            cancelled.cancel()

        if task in done:
            return task.result()
        # timed out or cancel() won the race
        task.cancel()
        raise StoreError.cancelled(key)

    def __repr__(self) -> str:
        remaining = self.remaining()
        if remaining is None:
            return "Deadline(never)"
        return f"Deadline(remaining={remaining:.3f}s)"
