"""
Change notification fan-out.

Publishing never blocks and never fails the caller: each subscriber gets its
own delivery task. Delivery is at-least-once within the process (a failed
callback is retried) and carries no state, so subscribers re-fetch whatever
they display and tolerate duplicates or reordering.
"""
import asyncio
import itertools
import uuid
import logging
from typing import Awaitable, Callable, Dict, Optional, Set

from prometheus_client import Counter

from ballotbox.shared.models import ChangeKind, ChangeNotice

logger = logging.getLogger(__name__)

notifications_published = Counter(
    'change_notifications_published_total',
    'Total change notifications published',
    ['kind']
)

notification_failures = Counter(
    'change_notification_failures_total',
    'Total subscriber deliveries that failed after all attempts'
)

Subscriber = Callable[[ChangeNotice], Awaitable[None]]


class QueueSubscription:
    """
    Subscription backed by an asyncio.Queue, for streaming endpoints.

    When the queue is full the oldest notice is dropped: notices are
    invalidation hints, so the newest one is enough.
    """

    def __init__(self, notifier: 'ChangeNotifier', event_id: Optional[str] = None, maxsize: int = 100):
        self.event_id = event_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._unsubscribe = notifier.subscribe(self._deliver)

    async def _deliver(self, notice: ChangeNotice) -> None:
        if self.event_id is not None and notice.event_id != self.event_id:
            return
        if self.queue.full():
            self.queue.get_nowait()
        self.queue.put_nowait(notice)

    async def get(self) -> ChangeNotice:
        return await self.queue.get()

    def close(self) -> None:
        self._unsubscribe()

    def __enter__(self) -> 'QueueSubscription':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class ChangeNotifier:
    """
    Publishes (event_id, kind) notices to any number of subscribers.

    Notices published here are stamped with this notifier's origin. Notices
    received from another process are handed to relay() unchanged.
    """

    def __init__(self, max_attempts: int = 3, retry_delay: float = 0.05, origin: Optional[str] = None):
        self.origin = origin or uuid.uuid4().hex
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._subscribers: Dict[int, Subscriber] = {}
        self._ids = itertools.count()
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback. Returns a function that unregisters it."""
        token = next(self._ids)
        self._subscribers[token] = callback

        def unsubscribe():
            self._subscribers.pop(token, None)

        return unsubscribe

    def subscription(self, event_id: Optional[str] = None, maxsize: int = 100) -> QueueSubscription:
        return QueueSubscription(self, event_id=event_id, maxsize=maxsize)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event_id: str, kind: ChangeKind) -> ChangeNotice:
        """Schedule delivery to every subscriber and return immediately."""
        notice = ChangeNotice(event_id=event_id, kind=kind, origin=self.origin)
        notifications_published.labels(kind=kind.value).inc()
        self._schedule(notice)
        return notice

    def relay(self, notice: ChangeNotice) -> None:
        """Deliver a notice published by another process to local subscribers."""
        self._schedule(notice)

    def _schedule(self, notice: ChangeNotice) -> None:
        for callback in list(self._subscribers.values()):
            task = asyncio.create_task(self._deliver(callback, notice))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _deliver(self, callback: Subscriber, notice: ChangeNotice) -> None:
        for attempt in range(1, self.max_attempts + 1):
            try:
                await callback(notice)
                return
            except Exception as e:
                logger.warning(
                    f"Notification delivery failed (attempt {attempt}/{self.max_attempts}): "
                    f"event={notice.event_id}, kind={notice.kind.value}: {e}"
                )
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.retry_delay * attempt)

        notification_failures.inc()
        logger.error(f"Dropped notification for event {notice.event_id} ({notice.kind.value})")

    async def drain(self) -> None:
        """Wait for in-flight deliveries to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
