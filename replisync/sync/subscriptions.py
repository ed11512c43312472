"""In-process fan-out of change notifications.

Each subscriber owns a bounded ``DeliveryQueue``. When a queue is full the
oldest undelivered entry is dropped, so a slow consumer never blocks the
writer and never grows without bound.
"""

import asyncio
import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from queue import Empty
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from replisync.sync.entry import SyncLogEntry, utc_now
from replisync.sync.hashing import to_canonical_json

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_CAPACITY = 1000
DEFAULT_SUBSCRIPTION_TTL = timedelta(hours=1)

RecordFilter = Union[str, Mapping[str, Any]]


class DeliveryQueue:
    """Bounded, drop-oldest, closable FIFO shared by one producer side and one reader.

    Readers block either in a thread (``get``) or on an event loop
    (``get_async``). Producers may run on any thread.
    """

    def __init__(self, subscription_id: str, capacity: int = DEFAULT_QUEUE_CAPACITY,
                 clock: Callable[[], datetime] = utc_now):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.subscription_id = subscription_id
        self.capacity = capacity
        self._clock = clock
        self._items: deque = deque(maxlen=capacity)
        self._cond = threading.Condition()
        self._async_waiters: List[Tuple[asyncio.AbstractEventLoop, asyncio.Event]] = []
        self._waiting = 0
        self._closed = False
        self.dropped = 0
        self.last_active_at = clock()

    def put(self, entry: SyncLogEntry) -> bool:
        """Enqueue ``entry``; returns False when the queue is closed."""
        with self._cond:
            if self._closed:
                return False
            if len(self._items) == self.capacity:
                self.dropped += 1
            self._items.append(entry)
            self._cond.notify()
            waiters = list(self._async_waiters)
        self._wake(waiters)
        return True

    def get(self, timeout: Optional[float] = None) -> Optional[SyncLogEntry]:
        """Next entry in FIFO order.

        Returns None once the queue is closed and drained. Raises
        ``queue.Empty`` if ``timeout`` elapses with nothing to read.
        """
        with self._cond:
            self.last_active_at = self._clock()
            self._waiting += 1
            try:
                ready = self._cond.wait_for(lambda: self._items or self._closed, timeout)
            finally:
                self._waiting -= 1
                self.last_active_at = self._clock()
            if not ready:
                raise Empty
            if self._items:
                return self._items.popleft()
            return None

    def get_nowait(self) -> Optional[SyncLogEntry]:
        return self.get(timeout=0)

    async def get_async(self, timeout: Optional[float] = None) -> Optional[SyncLogEntry]:
        """``get`` for coroutines: waits on the running loop without holding a thread."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            waiter = (loop, asyncio.Event())
            with self._cond:
                self.last_active_at = self._clock()
                if self._items:
                    return self._items.popleft()
                if self._closed:
                    return None
                self._async_waiters.append(waiter)
                self._waiting += 1
            try:
                remaining = None if deadline is None else max(deadline - loop.time(), 0)
                await asyncio.wait_for(waiter[1].wait(), remaining)
            except asyncio.TimeoutError:
                raise Empty from None
            finally:
                with self._cond:
                    self._async_waiters.remove(waiter)
                    self._waiting -= 1
                    self.last_active_at = self._clock()

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()
            waiters = list(self._async_waiters)
        self._wake(waiters)

    def _wake(self, waiters) -> None:
        for loop, event in waiters:
            try:
                loop.call_soon_threadsafe(event.set)
            except RuntimeError:
                logger.debug("Subscription %s reader loop is closed", self.subscription_id)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def waiting(self) -> int:
        """Readers currently blocked on this queue."""
        return self._waiting

    def qsize(self) -> int:
        with self._cond:
            return len(self._items)

    def __len__(self) -> int:
        return self.qsize()


@dataclass
class Subscription:
    id: str
    queue: DeliveryQueue
    table_name: Optional[str] = None
    record_filter: Optional[RecordFilter] = None
    created_at: datetime = field(default_factory=utc_now)
    expires_at: Optional[datetime] = None

    def matches(self, entry: SyncLogEntry) -> bool:
        if self.table_name and self.table_name != "*":
            if self.table_name.lower() != entry.table_name.lower():
                return False
        if self.record_filter is None or self.record_filter == "":
            return True
        return record_matches(entry.pk_value, self.record_filter)

    def to_wire(self) -> Dict[str, Any]:
        return {
            "subscriptionId": self.id,
            "tableName": self.table_name,
            "recordId": self.record_filter,
            "queued": self.queue.qsize(),
            "dropped": self.queue.dropped,
        }


def record_matches(pk_value: Mapping[str, Any], record_filter: RecordFilter) -> bool:
    """Whether a primary key matches a record filter.

    A mapping filter matches when every item appears in the key. A string
    filter matches the canonical JSON of the key or any single key value.
    """
    if isinstance(record_filter, Mapping):
        return all(
            k in pk_value and str(pk_value[k]) == str(v)
            for k, v in record_filter.items()
        )
    if record_filter == to_canonical_json(dict(pk_value)):
        return True
    return any(str(v) == record_filter for v in pk_value.values())


class SubscriptionHub:
    """Registry of live subscriptions."""

    def __init__(self, queue_capacity: int = DEFAULT_QUEUE_CAPACITY,
                 ttl: timedelta = DEFAULT_SUBSCRIPTION_TTL,
                 clock: Callable[[], datetime] = utc_now):
        self.queue_capacity = queue_capacity
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, Subscription] = {}

    def subscribe(
        self,
        subscription_id: Optional[str] = None,
        table_name: Optional[str] = None,
        record_filter: Optional[RecordFilter] = None,
        expires_at: Optional[datetime] = None,
    ) -> DeliveryQueue:
        subscription_id = subscription_id or str(uuid.uuid4())
        queue = DeliveryQueue(subscription_id, self.queue_capacity, clock=self._clock)
        subscription = Subscription(
            id=subscription_id,
            queue=queue,
            table_name=table_name or None,
            record_filter=record_filter,
            created_at=self._clock(),
            expires_at=expires_at,
        )
        with self._lock:
            previous = self._subscriptions.get(subscription_id)
            self._subscriptions[subscription_id] = subscription
        if previous is not None:
            previous.queue.close()

        logger.info(
            "Subscription %s registered (table=%s, record=%s)",
            subscription_id, table_name or "*", record_filter,
        )
        return queue

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription; unknown IDs are a no-op returning False."""
        with self._lock:
            subscription = self._subscriptions.pop(subscription_id, None)
        if subscription is None:
            return False
        subscription.queue.close()
        logger.info("Subscription %s removed", subscription_id)
        return True

    def notify_change(self, entry: SyncLogEntry) -> int:
        """Deliver ``entry`` to every matching subscription; returns the delivery count."""
        with self._lock:
            targets = [s for s in self._subscriptions.values() if s.matches(entry)]
        delivered = 0
        for subscription in targets:
            if subscription.queue.put(entry):
                delivered += 1
        return delivered

    def sweep(self, now: Optional[datetime] = None) -> List[str]:
        """Drop expired subscriptions and ones idle for longer than the TTL.

        A subscription with a reader blocked on its queue is never idle.
        """
        now = now or self._clock()
        with self._lock:
            stale = [
                s for s in self._subscriptions.values()
                if (s.expires_at is not None and now >= s.expires_at)
                or (not s.queue.waiting and now - s.queue.last_active_at > self.ttl)
            ]
            for s in stale:
                del self._subscriptions[s.id]
        for s in stale:
            s.queue.close()
        if stale:
            logger.info("Swept %d stale subscription(s)", len(stale))
        return [s.id for s in stale]

    def get(self, subscription_id: str) -> Optional[Subscription]:
        with self._lock:
            return self._subscriptions.get(subscription_id)

    def subscriptions(self) -> List[Subscription]:
        with self._lock:
            return list(self._subscriptions.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def close(self) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions.values())
            self._subscriptions.clear()
        for s in subscriptions:
            s.queue.close()
