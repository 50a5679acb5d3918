"""Per-item vote counters."""
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from ballotbox.shared.errors import ItemNotFoundError
from ballotbox.shared.models import Event, EventStatus, TallyEntry, rank_items
from ballotbox.storage.base import SubmissionUnit, VotingStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Results:
    """Ranked results of an event."""
    event: Event
    entries: Tuple[TallyEntry, ...]
    total_votes: int

    @property
    def is_final(self) -> bool:
        return self.event.status == EventStatus.ENDED

    @property
    def winners(self) -> Tuple[TallyEntry, ...]:
        return self.entries[:self.event.number_of_winners]

    def share(self, entry: TallyEntry) -> float:
        """Percentage of all votes held by an entry."""
        if self.total_votes == 0:
            return 0.0
        return round(entry.vote_count / self.total_votes * 100, 2)


class TallyLedger:
    """
    System of record for vote counts.

    Increments go through the store's atomic numeric update, so concurrent
    ballots never lose a vote and ballots for different items never wait on
    each other. Snapshots are recomputed on every read.
    """

    def __init__(self, store: VotingStore):
        self.store = store

    async def increment(
        self,
        event_id: str,
        item_ids: Sequence[str],
        unit: Optional[SubmissionUnit] = None,
    ) -> None:
        """
        Add one vote to each chosen item as one batch.

        Raises:
            ItemNotFoundError: an id did not match an item of the event
        """
        target = unit if unit is not None else self.store
        updated = await target.increment_items(event_id, list(item_ids))
        if updated != len(item_ids):
            logger.error(
                f"Tally increment for event {event_id} matched {updated} of {len(item_ids)} items"
            )
            raise ItemNotFoundError(",".join(item_ids))

    async def snapshot(self, event_id: str) -> List[TallyEntry]:
        """Items ordered by votes descending, ties by creation order."""
        items = await self.store.list_items(event_id)
        return rank_items(items)

    async def results(self, event: Event) -> Results:
        entries = await self.snapshot(event.id)
        return Results(
            event=event,
            entries=tuple(entries),
            total_votes=sum(entry.vote_count for entry in entries),
        )
