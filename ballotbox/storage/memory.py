"""In-process store used for tests and single-node demos."""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, Iterable, List, Optional, Sequence

from ballotbox.shared.errors import (
    CredentialAlreadyUsedError,
    CredentialNotFoundError,
)
from ballotbox.shared.models import (
    Ballot,
    Event,
    EventStatus,
    Item,
    VoterCredential,
    new_id,
)
from ballotbox.storage.base import SubmissionUnit, VotingStore

logger = logging.getLogger(__name__)


class _MemoryUnit(SubmissionUnit):
    """Each step commits immediately, like three separate store calls."""

    atomic = False

    def __init__(self, store: 'MemoryStore'):
        self.store = store

    async def consume_credential(self, event_id: str, code: str, now: datetime) -> VoterCredential:
        return await self.store.consume_credential(event_id, code, now)

    async def insert_ballot(self, ballot: Ballot) -> None:
        await self.store.insert_ballot(ballot)

    async def increment_items(self, event_id: str, item_ids: Sequence[str]) -> int:
        return await self.store.increment_items(event_id, item_ids)


class _EventGate:
    """Submissions in flight for one event, and whether a reset holds it."""

    def __init__(self):
        self.in_flight = 0
        self.idle = asyncio.Event()
        self.idle.set()
        self.open = asyncio.Event()
        self.open.set()

    async def wait_open(self) -> None:
        while not self.open.is_set():
            await self.open.wait()

    def enter(self) -> None:
        self.in_flight += 1
        self.idle.clear()

    def leave(self) -> None:
        self.in_flight -= 1
        if self.in_flight == 0:
            self.idle.set()


class MemoryStore(VotingStore):
    """
    Dictionary-backed store.

    Every public coroutine yields to the event loop once before touching
    state, the way a network round trip would, and then reads and writes
    without another await. Each primitive is therefore atomic with respect
    to every other coroutine on the loop.

    Submission units are not atomic, so a reset closes the event's gate and
    waits for units already running before it clears anything.
    """

    name = "memory"

    def __init__(self):
        self.events: Dict[str, Event] = {}
        self.items: Dict[str, Dict[str, Item]] = {}
        self.credentials: Dict[str, Dict[str, VoterCredential]] = {}
        self.ballots: Dict[str, List[Ballot]] = {}
        self._next_position = 0
        self._gates: Dict[str, _EventGate] = {}

    async def _io(self):
        await asyncio.sleep(0)

    async def check_health(self) -> bool:
        return True

    # Events

    async def create_event(self, event: Event) -> Event:
        await self._io()
        self.events[event.id] = event
        self.items[event.id] = {}
        self.credentials[event.id] = {}
        self.ballots[event.id] = []
        return event

    async def get_event(self, event_id: str) -> Optional[Event]:
        await self._io()
        return self.events.get(event_id)

    async def list_events(self) -> List[Event]:
        await self._io()
        return sorted(self.events.values(), key=lambda e: e.created_at, reverse=True)

    async def update_event(self, event: Event, expected_status: EventStatus) -> Optional[Event]:
        await self._io()
        current = self.events.get(event.id)
        if current is None or current.status != expected_status:
            return None
        updated = event.with_changes(status=current.status, created_at=current.created_at)
        self.events[event.id] = updated
        return updated

    async def transition_status(
        self,
        event_id: str,
        allowed_from: Iterable[EventStatus],
        target: EventStatus,
    ) -> Optional[Event]:
        await self._io()
        current = self.events.get(event_id)
        if current is None or current.status not in set(allowed_from):
            return None
        updated = current.with_changes(status=target)
        self.events[event_id] = updated
        return updated

    async def expire_due(self, now: datetime) -> List[str]:
        await self._io()
        expired = []
        for event_id, event in self.events.items():
            if event.status == EventStatus.ACTIVE and event.end_time <= now:
                self.events[event_id] = event.with_changes(status=EventStatus.ENDED)
                expired.append(event_id)
        return expired

    # Items

    async def add_item(self, item: Item) -> Item:
        await self._io()
        self._next_position += 1
        item.position = self._next_position
        self.items.setdefault(item.event_id, {})[item.id] = item
        return item

    async def list_items(self, event_id: str) -> List[Item]:
        await self._io()
        items = self.items.get(event_id, {}).values()
        return [
            Item(**vars(item))
            for item in sorted(items, key=lambda i: i.position)
        ]

    async def remove_item(self, event_id: str, item_id: str) -> bool:
        await self._io()
        return self.items.get(event_id, {}).pop(item_id, None) is not None

    async def increment_items(self, event_id: str, item_ids: Sequence[str]) -> int:
        await self._io()
        items = self.items.get(event_id, {})
        targets = [items[item_id] for item_id in item_ids if item_id in items]
        for item in targets:
            item.vote_count += 1
        return len(targets)

    # Credentials

    async def insert_credentials(self, event_id: str, codes: Sequence[str]) -> List[str]:
        await self._io()
        existing = self.credentials.setdefault(event_id, {})
        inserted = []
        for code in codes:
            if code in existing:
                continue
            existing[code] = VoterCredential(id=new_id(), event_id=event_id, code=code)
            inserted.append(code)
        return inserted

    async def list_credentials(self, event_id: str) -> List[VoterCredential]:
        await self._io()
        # Equal timestamps keep newest-first insertion order
        credentials = list(reversed(list(self.credentials.get(event_id, {}).values())))
        return [
            VoterCredential(**vars(credential))
            for credential in sorted(credentials, key=lambda c: c.created_at, reverse=True)
        ]

    async def consume_credential(self, event_id: str, code: str, now: datetime) -> VoterCredential:
        await self._io()
        credential = self.credentials.get(event_id, {}).get(code)
        if credential is None:
            raise CredentialNotFoundError(code)
        if credential.used:
            raise CredentialAlreadyUsedError(code)
        credential.used = True
        credential.used_at = now
        return VoterCredential(**vars(credential))

    async def delete_unused_credential(self, event_id: str, code: str) -> bool:
        await self._io()
        credentials = self.credentials.get(event_id, {})
        credential = credentials.get(code)
        if credential is None or credential.used:
            return False
        del credentials[code]
        return True

    # Ballots

    async def insert_ballot(self, ballot: Ballot) -> None:
        await self._io()
        self.ballots.setdefault(ballot.event_id, []).append(ballot)

    async def list_ballots(self, event_id: str) -> List[Ballot]:
        await self._io()
        return list(self.ballots.get(event_id, []))

    def _gate(self, event_id: str) -> _EventGate:
        return self._gates.setdefault(event_id, _EventGate())

    @asynccontextmanager
    async def unit_of_work(self, event_id: str) -> AsyncIterator[SubmissionUnit]:
        gate = self._gate(event_id)
        await gate.wait_open()
        gate.enter()
        try:
            yield _MemoryUnit(self)
        finally:
            gate.leave()

    async def reset_event(self, event_id: str) -> None:
        gate = self._gate(event_id)
        # One reset at a time; new units wait until this one is done
        await gate.wait_open()
        gate.open.clear()
        try:
            while gate.in_flight:
                await gate.idle.wait()
            await self._io()
            self.ballots[event_id] = []
            for item in self.items.get(event_id, {}).values():
                item.vote_count = 0
            for credential in self.credentials.get(event_id, {}).values():
                credential.used = False
                credential.used_at = None
        finally:
            gate.open.set()
        logger.debug(f"Memory store reset event {event_id}")
