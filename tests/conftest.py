"""Pytest fixtures shared by the unit and API tests.

Every test gets its own in-memory store, engine and controllable clock, so
nothing leaks between tests and time-driven behavior (end_time, expiry) can
be exercised without sleeping.
"""

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, List, Tuple

import httpx
import pytest

from ballotbox.api.config import Settings
from ballotbox.api.main import create_app
from ballotbox.engine import VotingEngine
from ballotbox.shared.models import Event, EventStatus, Item, VoteMode
from ballotbox.storage import MemoryEventCache, MemoryStore

OPENING = datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)


class MutableClock:
    """Callable clock the tests move forward by hand."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(OPENING)


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
async def engine(store: MemoryStore, clock: MutableClock) -> AsyncGenerator[VotingEngine, None]:
    """Engine over the in-memory store. Pending notifications are drained on teardown."""
    voting_engine = VotingEngine(store, cache=MemoryEventCache(), clock=clock)
    yield voting_engine
    await voting_engine.notifier.drain()
    await voting_engine.ledger.drain()


@pytest.fixture
def make_event(engine: VotingEngine, clock: MutableClock):
    """Factory for an event with items, active unless told otherwise.

    Returns a coroutine function producing (event, items).
    """
    async def _make(
        item_count: int = 3,
        vote_mode: VoteMode = VoteMode.SINGLE,
        number_of_choices: int = 1,
        number_of_winners: int = 1,
        allow_anonymous: bool = False,
        activate: bool = True,
        duration: timedelta = timedelta(hours=1),
    ) -> Tuple[Event, List[Item]]:
        event = await engine.create_event(
            name="Best Poster",
            category="posters",
            start_time=clock.now,
            end_time=clock.now + duration,
            vote_mode=vote_mode,
            number_of_choices=number_of_choices,
            number_of_winners=number_of_winners,
            allow_anonymous=allow_anonymous,
        )
        items = [await engine.add_item(event.id, f"Poster {i + 1}") for i in range(item_count)]
        if activate:
            event = await engine.set_status(event.id, EventStatus.ACTIVE)
        return event, items

    return _make


@pytest.fixture
def api_settings() -> Settings:
    """API settings with the background monitor off; tests drive expiry directly."""
    return Settings(RUN_SESSION_MONITOR=False, RATE_LIMIT="1000/second")


@pytest.fixture
async def api_client(engine: VotingEngine, api_settings: Settings) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client wired to the ASGI app over the test engine."""
    app = create_app(engine=engine, config=api_settings)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
