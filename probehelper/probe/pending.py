"""
Pending table: correlation of in-flight probes with delivered events.

Each admitted probe registers a waiter under its correlation key. The waiter
is completed exactly once, by whichever of these reaches the table first:

- ``resolve`` (a matching delivered event arrived) -> True
- the deadline timer -> False
- ``close`` (shutdown) -> False

``discard`` removes a waiter without completing it with success; the probe
listener calls it on every exit path so cancelled callers never leak entries.
"""
import asyncio
import threading
from typing import Dict
import structlog
from .errors import CorrelationKeyCollision

log = structlog.get_logger()


class Waiter:
    """One-shot completion slot for a single pending probe."""

    def __init__(self, key: str, loop: asyncio.AbstractEventLoop, deadline: float):
        self.key = key
        self.deadline = deadline
        self._loop = loop
        self._future: asyncio.Future = loop.create_future()
        self._timer: asyncio.TimerHandle | None = None

    @property
    def done(self) -> bool:
        return self._future.done()

    @property
    def expired(self) -> bool:
        """True once the waiter completed without a matching delivery."""
        return self._future.done() and not self._future.cancelled() and self._future.result() is False

    async def wait(self) -> bool:
        """Block until the probe is resolved (True) or expires (False)."""
        return await self._future

    def _complete(self, value: bool):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if not self._future.done():
            self._future.set_result(value)


class PendingTable:
    """
    Concurrency-safe map from correlation key to pending waiter.

    The lock only guards the map; futures are completed after the entry has
    been popped, so the path that pops an entry is the only one completing it.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._pending: Dict[str, Waiter] = {}
        self._closed = False

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._pending

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def closed(self) -> bool:
        return self._closed

    def register(self, key: str, timeout: float) -> Waiter:
        """
        Register a pending probe.

        Args:
            key: Correlation key of the probe
            timeout: Seconds until the probe expires; zero or less yields an
                already expired waiter that is never stored

        Returns:
            The waiter to block on

        Raises:
            CorrelationKeyCollision: If another probe is pending for the key
        """
        loop = asyncio.get_running_loop()
        waiter = Waiter(key, loop, loop.time() + max(timeout, 0.0))

        with self._lock:
            if self._closed or timeout <= 0:
                admitted = False
            elif key in self._pending:
                raise CorrelationKeyCollision(key)
            else:
                self._pending[key] = waiter
                admitted = True

        if not admitted:
            waiter._complete(False)
            return waiter

        waiter._timer = loop.call_at(waiter.deadline, self.expire, waiter)
        log.debug("pending.registered", key=key, timeout=timeout)
        return waiter

    def resolve(self, key: str) -> bool:
        """
        Resolve the probe pending under ``key``.

        Returns:
            True if an unresolved probe was pending, False otherwise
        """
        with self._lock:
            waiter = self._pending.pop(key, None)
        if waiter is None or waiter.done:
            return False
        self._complete(waiter, True)
        log.debug("pending.resolved", key=key)
        return True

    def expire(self, waiter: Waiter) -> bool:
        """Deadline timer callback; a no-op if the waiter already left the table."""
        if not self._pop_if_current(waiter):
            return False
        self._complete(waiter, False)
        log.debug("pending.expired", key=waiter.key)
        return True

    def discard(self, waiter: Waiter):
        """Remove ``waiter`` if it is still registered and release it as expired."""
        if self._pop_if_current(waiter):
            self._complete(waiter, False)

    def close(self) -> int:
        """
        Release every pending waiter as expired and refuse new registrations.

        Returns:
            Number of waiters released
        """
        with self._lock:
            self._closed = True
            waiters = list(self._pending.values())
            self._pending.clear()
        for waiter in waiters:
            self._complete(waiter, False)
        if waiters:
            log.info("pending.released", count=len(waiters))
        return len(waiters)

    def _pop_if_current(self, waiter: Waiter) -> bool:
        with self._lock:
            if self._pending.get(waiter.key) is not waiter:
                return False
            del self._pending[waiter.key]
            return True

    @staticmethod
    def _complete(waiter: Waiter, value: bool):
        # Futures may only be completed on the loop that owns them
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is waiter._loop:
            waiter._complete(value)
        else:
            waiter._loop.call_soon_threadsafe(waiter._complete, value)
