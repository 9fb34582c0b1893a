"""
Reconcile work queue.

An asyncio queue of ConsumerScaler keys with the semantics a controller needs:

- A key is queued at most once; repeated adds before a worker picks it up
  collapse into one pending request.
- A key is never handed to two workers at the same time. Adds that arrive
  while a key is being processed mark it dirty, and it is queued exactly once
  more when the worker calls ``done``.
- ``add_after`` defers an add using the event loop timer; the earliest due
  time wins when a key is deferred more than once.
- ``add_rate_limited`` defers by a per-key exponential backoff that grows with
  consecutive failures until ``forget`` resets it.
"""

import asyncio
import logging
from collections import deque

from ..observability.metrics import OperatorMetrics
from ..resilience.retry import BackoffPolicy
from .models import ResourceKey

logger = logging.getLogger(__name__)


class WorkQueue:
    """Coalescing, per-key serialized work queue."""

    def __init__(self, backoff: BackoffPolicy | None = None, metrics: OperatorMetrics | None = None):
        self.backoff = backoff or BackoffPolicy()
        self.metrics = metrics

        self._queue: deque[ResourceKey] = deque()
        self._dirty: set[ResourceKey] = set()
        self._processing: set[ResourceKey] = set()
        self._getters: deque[asyncio.Future] = deque()
        self._waiting: dict[ResourceKey, tuple[float, asyncio.TimerHandle]] = {}
        self._failures: dict[ResourceKey, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    def __contains__(self, key: ResourceKey) -> bool:
        return key in self._dirty

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def is_processing(self, key: ResourceKey) -> bool:
        return key in self._processing

    def is_waiting(self, key: ResourceKey) -> bool:
        """Whether a deferred add is pending for key."""
        return key in self._waiting

    def add(self, key: ResourceKey) -> None:
        """Mark key for reconciliation."""
        if self._shutting_down or key in self._dirty:
            return

        self._dirty.add(key)
        if self.metrics:
            self.metrics.queue_adds.inc()

        if key in self._processing:
            # picked up again by done()
            return

        self._queue.append(key)
        self._update_depth()
        self._wakeup_next()

    async def get(self) -> ResourceKey | None:
        """Wait for the next key; returns None once the queue is shut down."""
        while True:
            if self._shutting_down:
                return None
            if self._queue:
                break
            waiter = asyncio.get_running_loop().create_future()
            self._getters.append(waiter)
            try:
                await waiter
            except asyncio.CancelledError:
                waiter.cancel()
                try:
                    self._getters.remove(waiter)
                except ValueError:
                    pass
                if self._queue and not waiter.cancelled():
                    self._wakeup_next()
                raise

        key = self._queue.popleft()
        self._processing.add(key)
        self._dirty.discard(key)
        self._update_depth()
        return key

    def done(self, key: ResourceKey) -> None:
        """Release key after a worker finished with it."""
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.append(key)
            self._update_depth()
            self._wakeup_next()

    def add_after(self, key: ResourceKey, delay: float) -> None:
        """Add key once delay seconds have passed."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        due = loop.time() + delay
        existing = self._waiting.get(key)
        if existing is not None:
            if existing[0] <= due:
                return
            existing[1].cancel()

        handle = loop.call_at(due, self._fire, key)
        self._waiting[key] = (due, handle)

    def add_rate_limited(self, key: ResourceKey) -> float:
        """Requeue key after its backoff delay; returns the delay used."""
        attempt = self._failures.get(key, 0) + 1
        self._failures[key] = attempt
        delay = self.backoff.delay_for(attempt)
        if self.metrics:
            self.metrics.retries.inc()
        logger.debug(f"Requeueing {key} in {delay:.2f}s (attempt {attempt})")
        self.add_after(key, delay)
        return delay

    def forget(self, key: ResourceKey) -> None:
        """Reset the failure count for key."""
        self._failures.pop(key, None)

    def num_requeues(self, key: ResourceKey) -> int:
        return self._failures.get(key, 0)

    def shutdown(self) -> None:
        """Stop handing out keys and release every waiting worker."""
        self._shutting_down = True
        for _, handle in self._waiting.values():
            handle.cancel()
        self._waiting.clear()
        while self._getters:
            waiter = self._getters.popleft()
            if not waiter.done():
                waiter.set_result(None)

    def _fire(self, key: ResourceKey) -> None:
        self._waiting.pop(key, None)
        self.add(key)

    def _wakeup_next(self) -> None:
        while self._getters:
            waiter = self._getters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                break

    def _update_depth(self) -> None:
        if self.metrics:
            self.metrics.queue_depth.set(len(self._queue))
