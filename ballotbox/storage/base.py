"""Storage interface the voting engine runs against."""
import abc
from datetime import datetime
from typing import AsyncContextManager, Iterable, List, Optional, Sequence

from ballotbox.shared.models import (
    Ballot,
    Event,
    EventStatus,
    Item,
    VoterCredential,
)


class SubmissionUnit(abc.ABC):
    """
    Steps 3-5 of a ballot submission run against one unit of work.

    When `atomic` is True the three writes commit together or not at all.
    When it is False each write is committed as soon as it returns.
    """

    atomic: bool = False

    @abc.abstractmethod
    async def consume_credential(self, event_id: str, code: str, now: datetime) -> VoterCredential:
        """Mark an unused credential as used. Raises CredentialError otherwise."""

    @abc.abstractmethod
    async def insert_ballot(self, ballot: Ballot) -> None:
        """Persist an immutable ballot record."""

    @abc.abstractmethod
    async def increment_items(self, event_id: str, item_ids: Sequence[str]) -> int:
        """Add one vote to each item. Returns the number of items updated."""


class VotingStore(abc.ABC):
    """
    Persistent store for events, items, credentials and ballots.

    Implementations must provide conditional consumption and numeric
    increments as single store-level operations, never as a read followed
    by a write.
    """

    name: str = "store"

    async def initialize(self) -> None:
        """Open connections. Optional."""

    async def close(self) -> None:
        """Release connections. Optional."""

    @abc.abstractmethod
    async def check_health(self) -> bool:
        """Return True when the store answers."""

    # Events

    @abc.abstractmethod
    async def create_event(self, event: Event) -> Event:
        """Insert a new event."""

    @abc.abstractmethod
    async def get_event(self, event_id: str) -> Optional[Event]:
        """Fetch an event or None."""

    @abc.abstractmethod
    async def list_events(self) -> List[Event]:
        """All events, newest first."""

    @abc.abstractmethod
    async def update_event(self, event: Event, expected_status: EventStatus) -> Optional[Event]:
        """
        Overwrite the editable fields of an event if it is still in
        `expected_status`. Returns None when the status moved underneath.
        """

    @abc.abstractmethod
    async def transition_status(
        self,
        event_id: str,
        allowed_from: Iterable[EventStatus],
        target: EventStatus,
    ) -> Optional[Event]:
        """
        Conditionally set the status. Returns the updated event, or None if
        the current status was not in `allowed_from`.
        """

    @abc.abstractmethod
    async def expire_due(self, now: datetime) -> List[str]:
        """End every active event whose end_time <= now. Returns their ids."""

    # Items

    @abc.abstractmethod
    async def add_item(self, item: Item) -> Item:
        """Insert an item; the store assigns its creation position."""

    @abc.abstractmethod
    async def list_items(self, event_id: str) -> List[Item]:
        """Items of an event in creation order, read in one consistent pass."""

    @abc.abstractmethod
    async def remove_item(self, event_id: str, item_id: str) -> bool:
        """Delete an item. Returns False when it did not exist."""

    @abc.abstractmethod
    async def increment_items(self, event_id: str, item_ids: Sequence[str]) -> int:
        """Atomic +1 on each item counter. Returns the number of items updated."""

    # Credentials

    @abc.abstractmethod
    async def insert_credentials(self, event_id: str, codes: Sequence[str]) -> List[str]:
        """Insert codes, skipping any already present for the event. Returns inserted codes."""

    @abc.abstractmethod
    async def list_credentials(self, event_id: str) -> List[VoterCredential]:
        """Credentials of an event, newest first."""

    @abc.abstractmethod
    async def consume_credential(self, event_id: str, code: str, now: datetime) -> VoterCredential:
        """Single conditional update: used=false -> used=true."""

    @abc.abstractmethod
    async def delete_unused_credential(self, event_id: str, code: str) -> bool:
        """Delete a credential that has not been used. Returns False otherwise."""

    # Ballots

    @abc.abstractmethod
    async def list_ballots(self, event_id: str) -> List[Ballot]:
        """Ballots of an event in submission order."""

    @abc.abstractmethod
    def unit_of_work(self, event_id: str) -> AsyncContextManager[SubmissionUnit]:
        """Open a unit of work for one submission."""

    @abc.abstractmethod
    async def reset_event(self, event_id: str) -> None:
        """Delete ballots, zero counters and unmark credentials, all at once."""
