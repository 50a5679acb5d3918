"""PostgreSQL store built on an asyncpg connection pool."""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable, List, Optional, Sequence

import asyncpg

from ballotbox.shared.errors import (
    CredentialAlreadyUsedError,
    CredentialNotFoundError,
    StoreUnavailableError,
)
from ballotbox.shared.models import (
    Ballot,
    Event,
    EventStatus,
    Item,
    VoteMode,
    VoterCredential,
    new_id,
)
from ballotbox.storage.base import SubmissionUnit, VotingStore

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
    id                TEXT PRIMARY KEY,
    name              TEXT NOT NULL,
    category          TEXT NOT NULL DEFAULT '',
    vote_mode         TEXT NOT NULL CHECK (vote_mode IN ('single', 'multiple')),
    number_of_choices INTEGER NOT NULL DEFAULT 1 CHECK (number_of_choices >= 1),
    number_of_winners INTEGER NOT NULL DEFAULT 1 CHECK (number_of_winners >= 1),
    start_time        TIMESTAMPTZ NOT NULL,
    end_time          TIMESTAMPTZ NOT NULL,
    status            TEXT NOT NULL DEFAULT 'draft'
                      CHECK (status IN ('draft', 'active', 'paused', 'ended')),
    allow_anonymous   BOOLEAN NOT NULL DEFAULT FALSE,
    created_at        TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_events_active_end
    ON events (end_time) WHERE status = 'active';

CREATE TABLE IF NOT EXISTS items (
    id          TEXT PRIMARY KEY,
    event_id    TEXT NOT NULL REFERENCES events (id) ON DELETE CASCADE,
    title       TEXT NOT NULL,
    description TEXT,
    image_url   TEXT,
    creator     TEXT,
    vote_count  INTEGER NOT NULL DEFAULT 0 CHECK (vote_count >= 0),
    position    BIGSERIAL,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_items_event ON items (event_id, position);

CREATE TABLE IF NOT EXISTS voter_credentials (
    id         TEXT PRIMARY KEY,
    event_id   TEXT NOT NULL REFERENCES events (id) ON DELETE CASCADE,
    code       TEXT NOT NULL,
    used       BOOLEAN NOT NULL DEFAULT FALSE,
    used_at    TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (event_id, code)
);

CREATE TABLE IF NOT EXISTS ballots (
    id            TEXT PRIMARY KEY,
    event_id      TEXT NOT NULL REFERENCES events (id) ON DELETE CASCADE,
    item_ids      TEXT[] NOT NULL,
    voter_code    TEXT NOT NULL,
    credential_id TEXT REFERENCES voter_credentials (id) ON DELETE SET NULL,
    submitted_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_ballots_event ON ballots (event_id, submitted_at);
"""

EVENT_COLUMNS = """
    id, name, category, vote_mode, number_of_choices, number_of_winners,
    start_time, end_time, status, allow_anonymous, created_at
"""

ITEM_COLUMNS = """
    id, event_id, title, description, image_url, creator, vote_count, position, created_at
"""

CREDENTIAL_COLUMNS = "id, event_id, code, used, used_at, created_at"

CONSUME_QUERY = f"""
    UPDATE voter_credentials
    SET used = TRUE, used_at = $3
    WHERE event_id = $1 AND code = $2 AND used = FALSE
    RETURNING {CREDENTIAL_COLUMNS}
"""

# Row locks are taken in id order so multi-item ballots cannot deadlock
INCREMENT_QUERY = """
    WITH target AS (
        SELECT id FROM items
        WHERE event_id = $1 AND id = ANY($2::text[])
        ORDER BY id
        FOR UPDATE
    )
    UPDATE items
    SET vote_count = items.vote_count + 1
    FROM target
    WHERE items.id = target.id
"""

INSERT_BALLOT_QUERY = """
    INSERT INTO ballots (id, event_id, item_ids, voter_code, credential_id, submitted_at)
    VALUES ($1, $2, $3, $4, $5, $6)
"""

STORE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


def _event_from_row(row) -> Event:
    return Event(
        id=row["id"],
        name=row["name"],
        category=row["category"],
        vote_mode=VoteMode(row["vote_mode"]),
        number_of_choices=row["number_of_choices"],
        number_of_winners=row["number_of_winners"],
        start_time=row["start_time"],
        end_time=row["end_time"],
        status=EventStatus(row["status"]),
        allow_anonymous=row["allow_anonymous"],
        created_at=row["created_at"],
    )


def _item_from_row(row) -> Item:
    return Item(**dict(row))


def _credential_from_row(row) -> VoterCredential:
    return VoterCredential(**dict(row))


def _ballot_from_row(row) -> Ballot:
    return Ballot(
        id=row["id"],
        event_id=row["event_id"],
        item_ids=tuple(row["item_ids"]),
        voter_code=row["voter_code"],
        credential_id=row["credential_id"],
        submitted_at=row["submitted_at"],
    )


def _parse_row_count(status: str) -> int:
    """asyncpg returns command tags like 'UPDATE 3'."""
    try:
        return int(status.split()[-1])
    except (ValueError, IndexError):
        return 0


async def _consume(conn: asyncpg.Connection, event_id: str, code: str, now: datetime) -> VoterCredential:
    row = await conn.fetchrow(CONSUME_QUERY, event_id, code, now)
    if row:
        return _credential_from_row(row)

    # The conditional update matched nothing: tell the caller why
    exists = await conn.fetchval(
        "SELECT used FROM voter_credentials WHERE event_id = $1 AND code = $2",
        event_id, code
    )
    if exists is None:
        raise CredentialNotFoundError(code)
    raise CredentialAlreadyUsedError(code)


async def _increment(conn: asyncpg.Connection, event_id: str, item_ids: Sequence[str]) -> int:
    status = await conn.execute(INCREMENT_QUERY, event_id, list(item_ids))
    return _parse_row_count(status)


class _PostgresUnit(SubmissionUnit):
    """All steps share one connection and one transaction."""

    atomic = True

    def __init__(self, conn: asyncpg.Connection):
        self.conn = conn

    async def consume_credential(self, event_id: str, code: str, now: datetime) -> VoterCredential:
        return await _consume(self.conn, event_id, code, now)

    async def insert_ballot(self, ballot: Ballot) -> None:
        await self.conn.execute(
            INSERT_BALLOT_QUERY,
            ballot.id, ballot.event_id, list(ballot.item_ids),
            ballot.voter_code, ballot.credential_id, ballot.submitted_at
        )

    async def increment_items(self, event_id: str, item_ids: Sequence[str]) -> int:
        return await _increment(self.conn, event_id, item_ids)


class PostgresStore(VotingStore):
    """Async PostgreSQL store."""

    name = "postgresql"

    def __init__(
        self,
        dsn: str,
        min_size: int = 10,
        max_size: int = 20,
        command_timeout: float = 60,
        create_schema: bool = False,
    ):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.create_schema = create_schema
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self):
        """Initialize database connection pool."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout
            )
            logger.info("PostgreSQL connection pool initialized successfully")

            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                if self.create_schema:
                    await conn.execute(SCHEMA)
                    logger.info("PostgreSQL schema ensured")

        except Exception as e:
            logger.error(f"Failed to initialize PostgreSQL connection pool: {e}")
            raise

    async def close(self):
        """Close database connection pool."""
        try:
            if self.pool:
                await self.pool.close()
                logger.info("PostgreSQL connection pool closed successfully")
        except Exception as e:
            logger.error(f"Error closing PostgreSQL connection pool: {e}")

    async def check_health(self) -> bool:
        try:
            if not self.pool:
                return False
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception as e:
            logger.error(f"PostgreSQL health check failed: {e}")
            return False

    @asynccontextmanager
    async def _connection(self, operation: str) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a pooled connection, translating driver errors."""
        if not self.pool:
            raise StoreUnavailableError("PostgreSQL pool is not initialized")
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except STORE_ERRORS as e:
            logger.error(f"PostgreSQL error during {operation}: {e}")
            raise StoreUnavailableError(f"{operation} failed: {e}") from e

    # Events

    async def create_event(self, event: Event) -> Event:
        async with self._connection("create_event") as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO events (id, name, category, vote_mode, number_of_choices,
                                    number_of_winners, start_time, end_time, status,
                                    allow_anonymous, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                RETURNING {EVENT_COLUMNS}
                """,
                event.id, event.name, event.category, event.vote_mode.value,
                event.number_of_choices, event.number_of_winners, event.start_time,
                event.end_time, event.status.value, event.allow_anonymous, event.created_at
            )
            return _event_from_row(row)

    async def get_event(self, event_id: str) -> Optional[Event]:
        async with self._connection("get_event") as conn:
            row = await conn.fetchrow(
                f"SELECT {EVENT_COLUMNS} FROM events WHERE id = $1", event_id
            )
            return _event_from_row(row) if row else None

    async def list_events(self) -> List[Event]:
        async with self._connection("list_events") as conn:
            rows = await conn.fetch(
                f"SELECT {EVENT_COLUMNS} FROM events ORDER BY created_at DESC, id"
            )
            return [_event_from_row(row) for row in rows]

    async def update_event(self, event: Event, expected_status: EventStatus) -> Optional[Event]:
        async with self._connection("update_event") as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE events
                SET name = $2, category = $3, vote_mode = $4, number_of_choices = $5,
                    number_of_winners = $6, start_time = $7, end_time = $8,
                    allow_anonymous = $9
                WHERE id = $1 AND status = $10
                RETURNING {EVENT_COLUMNS}
                """,
                event.id, event.name, event.category, event.vote_mode.value,
                event.number_of_choices, event.number_of_winners, event.start_time,
                event.end_time, event.allow_anonymous, expected_status.value
            )
            return _event_from_row(row) if row else None

    async def transition_status(
        self,
        event_id: str,
        allowed_from: Iterable[EventStatus],
        target: EventStatus,
    ) -> Optional[Event]:
        async with self._connection("transition_status") as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE events SET status = $2
                WHERE id = $1 AND status = ANY($3::text[])
                RETURNING {EVENT_COLUMNS}
                """,
                event_id, target.value, [status.value for status in allowed_from]
            )
            return _event_from_row(row) if row else None

    async def expire_due(self, now: datetime) -> List[str]:
        async with self._connection("expire_due") as conn:
            rows = await conn.fetch(
                """
                UPDATE events SET status = 'ended'
                WHERE status = 'active' AND end_time <= $1
                RETURNING id
                """,
                now
            )
            return [row["id"] for row in rows]

    # Items

    async def add_item(self, item: Item) -> Item:
        async with self._connection("add_item") as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO items (id, event_id, title, description, image_url, creator, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                RETURNING {ITEM_COLUMNS}
                """,
                item.id, item.event_id, item.title, item.description,
                item.image_url, item.creator, item.created_at
            )
            return _item_from_row(row)

    async def list_items(self, event_id: str) -> List[Item]:
        async with self._connection("list_items") as conn:
            rows = await conn.fetch(
                f"SELECT {ITEM_COLUMNS} FROM items WHERE event_id = $1 ORDER BY position",
                event_id
            )
            return [_item_from_row(row) for row in rows]

    async def remove_item(self, event_id: str, item_id: str) -> bool:
        async with self._connection("remove_item") as conn:
            status = await conn.execute(
                "DELETE FROM items WHERE event_id = $1 AND id = $2", event_id, item_id
            )
            return _parse_row_count(status) == 1

    async def increment_items(self, event_id: str, item_ids: Sequence[str]) -> int:
        async with self._connection("increment_items") as conn:
            async with conn.transaction():
                return await _increment(conn, event_id, item_ids)

    # Credentials

    async def insert_credentials(self, event_id: str, codes: Sequence[str]) -> List[str]:
        async with self._connection("insert_credentials") as conn:
            rows = await conn.fetch(
                """
                INSERT INTO voter_credentials (id, event_id, code)
                SELECT c.id, $2, c.code
                FROM unnest($1::text[], $3::text[]) AS c(id, code)
                ON CONFLICT (event_id, code) DO NOTHING
                RETURNING code
                """,
                [new_id() for _ in codes], event_id, list(codes)
            )
            return [row["code"] for row in rows]

    async def list_credentials(self, event_id: str) -> List[VoterCredential]:
        async with self._connection("list_credentials") as conn:
            rows = await conn.fetch(
                f"""
                SELECT {CREDENTIAL_COLUMNS} FROM voter_credentials
                WHERE event_id = $1 ORDER BY created_at DESC, code
                """,
                event_id
            )
            return [_credential_from_row(row) for row in rows]

    async def consume_credential(self, event_id: str, code: str, now: datetime) -> VoterCredential:
        async with self._connection("consume_credential") as conn:
            return await _consume(conn, event_id, code, now)

    async def delete_unused_credential(self, event_id: str, code: str) -> bool:
        async with self._connection("delete_credential") as conn:
            status = await conn.execute(
                "DELETE FROM voter_credentials WHERE event_id = $1 AND code = $2 AND used = FALSE",
                event_id, code
            )
            return _parse_row_count(status) == 1

    # Ballots

    async def list_ballots(self, event_id: str) -> List[Ballot]:
        async with self._connection("list_ballots") as conn:
            rows = await conn.fetch(
                """
                SELECT id, event_id, item_ids, voter_code, credential_id, submitted_at
                FROM ballots WHERE event_id = $1 ORDER BY submitted_at, id
                """,
                event_id
            )
            return [_ballot_from_row(row) for row in rows]

    @asynccontextmanager
    async def unit_of_work(self, event_id: str) -> AsyncIterator[SubmissionUnit]:
        """
        One transaction for consume + ballot + increment.

        The event row is share-locked so a concurrent reset, which takes the
        exclusive lock, waits for in-flight submissions and vice versa.
        """
        async with self._connection("submission") as conn:
            async with conn.transaction():
                await conn.execute("SELECT 1 FROM events WHERE id = $1 FOR SHARE", event_id)
                yield _PostgresUnit(conn)

    async def reset_event(self, event_id: str) -> None:
        async with self._connection("reset_event") as conn:
            async with conn.transaction():
                await conn.execute("SELECT 1 FROM events WHERE id = $1 FOR UPDATE", event_id)
                await conn.execute("DELETE FROM ballots WHERE event_id = $1", event_id)
                await conn.execute(
                    "UPDATE voter_credentials SET used = FALSE, used_at = NULL WHERE event_id = $1",
                    event_id
                )
                await conn.execute("UPDATE items SET vote_count = 0 WHERE event_id = $1", event_id)
            logger.info(f"Reset event {event_id}: ballots cleared, counters zeroed, codes unmarked")
