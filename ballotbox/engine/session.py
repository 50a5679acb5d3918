"""Event lifecycle: draft -> active <-> paused, any -> ended."""
import logging
from datetime import datetime
from typing import Callable, Dict, FrozenSet, List, Optional

from ballotbox.shared.errors import (
    EventNotFoundError,
    InvalidEventError,
    InvalidTransitionError,
    SessionClosedError,
)
from ballotbox.shared.models import (
    ChangeKind,
    Event,
    EventDefinition,
    EventStatus,
    utcnow,
)
from ballotbox.engine.notifier import ChangeNotifier
from ballotbox.storage.base import VotingStore
from ballotbox.storage.cache import EventCache, MemoryEventCache

logger = logging.getLogger(__name__)


# Target status -> statuses it may be entered from
TRANSITIONS: Dict[EventStatus, FrozenSet[EventStatus]] = {
    EventStatus.ACTIVE: frozenset({EventStatus.DRAFT, EventStatus.PAUSED}),
    EventStatus.PAUSED: frozenset({EventStatus.ACTIVE}),
    EventStatus.ENDED: frozenset(EventStatus),
    EventStatus.DRAFT: frozenset(),
}


def accepts_submissions(event: Event, now: datetime) -> bool:
    """True iff the event is active and its end_time has not been reached."""
    return event.status == EventStatus.ACTIVE and now < event.end_time


class SessionStateMachine:
    """
    Owns event status.

    Reads go through a short-TTL cache of the event definition; every write
    invalidates it. The end_time rule is checked against the clock on every
    read, so a stale cached status can never keep a closed window open.
    """

    def __init__(
        self,
        store: VotingStore,
        notifier: ChangeNotifier,
        cache: Optional[EventCache] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.notifier = notifier
        self.cache = cache if cache is not None else MemoryEventCache()
        self.clock = clock

    async def load(self, event_id: str) -> EventDefinition:
        """Event plus its item ids, from cache when fresh."""
        definition = await self.cache.get(event_id)
        if definition is not None:
            return definition

        event = await self.store.get_event(event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        items = await self.store.list_items(event_id)
        definition = EventDefinition(event=event, item_ids=tuple(item.id for item in items))
        await self.cache.set(definition)
        return definition

    async def invalidate(self, event_id: str) -> None:
        await self.cache.invalidate(event_id)

    def accepts_submissions(self, event: Event, now: Optional[datetime] = None) -> bool:
        return accepts_submissions(event, now if now is not None else self.clock())

    async def require_open(self, event_id: str) -> EventDefinition:
        """
        Gate a submission.

        Raises:
            SessionClosedError: the window is not open; an active event whose
                end_time has passed is moved to ended on the spot
        """
        definition = await self.load(event_id)
        event = definition.event
        now = self.clock()

        if accepts_submissions(event, now):
            return definition

        if event.status == EventStatus.ACTIVE and now >= event.end_time:
            await self._end_expired(event_id, now)
            raise SessionClosedError(event_id, EventStatus.ENDED.value)

        raise SessionClosedError(event_id, event.status.value)

    async def set_status(self, event_id: str, target: EventStatus) -> Event:
        """
        Administrator-driven transition.

        Raises:
            EventNotFoundError: unknown event
            InvalidTransitionError: the current status cannot move to target
            InvalidEventError: activating an event whose end_time has passed
        """
        if target == EventStatus.ACTIVE:
            event = await self._get_event(event_id)
            if self.clock() >= event.end_time:
                raise InvalidEventError(
                    f"Event {event_id} cannot be activated: its end_time has passed"
                )

        updated = await self.store.transition_status(event_id, TRANSITIONS[target], target)
        if updated is None:
            current = await self._get_event(event_id)
            raise InvalidTransitionError(event_id, current.status.value, target.value)

        await self.invalidate(event_id)
        self.notifier.publish(event_id, ChangeKind.SESSION)
        logger.info(f"Event {event_id} status -> {target.value}")
        return updated

    async def expire_due(self) -> List[str]:
        """End every active event whose end_time has passed."""
        expired = await self.store.expire_due(self.clock())
        for event_id in expired:
            await self.invalidate(event_id)
            self.notifier.publish(event_id, ChangeKind.SESSION)
            logger.info(f"Event {event_id} reached its end_time and was ended")
        return expired

    async def _end_expired(self, event_id: str, now: datetime) -> None:
        ended = await self.store.transition_status(
            event_id, {EventStatus.ACTIVE}, EventStatus.ENDED
        )
        await self.invalidate(event_id)
        if ended is not None:
            self.notifier.publish(event_id, ChangeKind.SESSION)
            logger.info(f"Event {event_id} ended on submission after end_time {now.isoformat()}")

    async def _get_event(self, event_id: str) -> Event:
        event = await self.store.get_event(event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        return event
