"""Tests for tally counters, ranking and results."""

import asyncio

import pytest

from ballotbox.engine.tally import TallyLedger
from ballotbox.shared.errors import ItemNotFoundError
from ballotbox.shared.models import EventStatus, VoteMode


@pytest.fixture
def tally(store) -> TallyLedger:
    return TallyLedger(store)


@pytest.mark.asyncio
class TestIncrement:
    """Atomic counter updates."""

    async def test_increment_adds_one_per_item(self, tally, make_event):
        event, items = await make_event(item_count=3)

        await tally.increment(event.id, [items[0].id, items[2].id])

        counts = {entry.item_id: entry.vote_count for entry in await tally.snapshot(event.id)}
        assert counts == {items[0].id: 1, items[1].id: 0, items[2].id: 1}

    async def test_concurrent_increments_lose_nothing(self, tally, make_event):
        """200 simultaneous increments of one item end at exactly 200."""
        event, items = await make_event(item_count=2)

        await asyncio.gather(*[tally.increment(event.id, [items[0].id]) for _ in range(200)])

        snapshot = await tally.snapshot(event.id)
        assert snapshot[0].item_id == items[0].id
        assert snapshot[0].vote_count == 200
        assert snapshot[1].vote_count == 0

    async def test_unknown_item_is_reported(self, tally, make_event):
        event, items = await make_event(item_count=2)

        with pytest.raises(ItemNotFoundError):
            await tally.increment(event.id, [items[0].id, "missing-item"])


@pytest.mark.asyncio
class TestSnapshot:
    """Ordering and read-only behavior of snapshots."""

    async def test_ordered_by_votes_then_creation(self, tally, make_event):
        event, items = await make_event(item_count=4)
        first, second, third, fourth = (item.id for item in items)
        for item_id in (third, third, second, fourth):
            await tally.increment(event.id, [item_id])

        ranked = [entry.item_id for entry in await tally.snapshot(event.id)]

        # Third leads; second and fourth tie at one vote and keep creation order
        assert ranked == [third, second, fourth, first]

    async def test_event_without_items_is_empty(self, tally, make_event):
        event, _ = await make_event(item_count=0, activate=False)
        assert await tally.snapshot(event.id) == []

    async def test_reads_do_not_change_counts(self, tally, make_event):
        event, items = await make_event(item_count=2)
        await tally.increment(event.id, [items[1].id])

        first_read = await tally.snapshot(event.id)
        second_read = await tally.snapshot(event.id)

        assert first_read == second_read


@pytest.mark.asyncio
class TestResults:
    """Results: totals, shares, winners and finality."""

    async def test_results_with_winners_and_shares(self, engine, make_event):
        event, items = await make_event(item_count=3, number_of_winners=2)
        for item_id in (items[1].id, items[1].id, items[1].id, items[0].id):
            await engine.tally.increment(event.id, [item_id])

        results = await engine.get_results(event.id)

        assert results.total_votes == 4
        assert [entry.item_id for entry in results.winners] == [items[1].id, items[0].id]
        assert results.share(results.entries[0]) == 75.0
        assert results.share(results.entries[2]) == 0.0
        assert results.is_final is False

    async def test_results_are_final_once_ended(self, engine, make_event):
        event, _ = await make_event()
        await engine.set_status(event.id, EventStatus.ENDED)

        results = await engine.get_results(event.id)

        assert results.is_final is True

    async def test_share_with_no_votes(self, engine, make_event):
        event, _ = await make_event(vote_mode=VoteMode.MULTIPLE, number_of_choices=2)
        results = await engine.get_results(event.id)
        assert results.total_votes == 0
        assert all(results.share(entry) == 0.0 for entry in results.entries)
