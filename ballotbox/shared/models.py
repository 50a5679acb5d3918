"""
Shared data models and utilities for the voting session engine.

This module contains:
- Event, Item, VoterCredential, Ballot: the records the engine manages
- ChangeNotice: invalidation hint passed to observers
- TallyEntry: one ranked row of a tally snapshot
- Credential code generation and normalization helpers
"""

import secrets
import string
import uuid
from dataclasses import dataclass, asdict, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple


class VoteMode(str, Enum):
    """How many items a ballot may choose."""
    SINGLE = "single"
    MULTIPLE = "multiple"


class EventStatus(str, Enum):
    """Lifecycle state of a voting event."""
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ENDED = "ended"


class ChangeKind(str, Enum):
    """Kind of change published to observers."""
    TALLY = "tally"
    SESSION = "session"


# Voter code for ballots cast without a credential (open voting)
ANONYMOUS_VOTER = "public"

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 8

MIN_CREDENTIAL_BATCH = 1
MAX_CREDENTIAL_BATCH = 1000


def utcnow() -> datetime:
    """Current UTC time as an aware datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate a record identifier."""
    return str(uuid.uuid4())


def generate_code() -> str:
    """Generate a random 8-character voter code (uppercase alphanumeric)."""
    return ''.join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def normalize_code(code: str) -> str:
    """Codes are compared uppercase with surrounding whitespace removed."""
    return code.strip().upper()


def ledger_key(record_id: str) -> int:
    """
    Derive the numeric key used by the external ledger.

    The ledger addresses sessions and items by unsigned integers, built from
    the first 8 hex digits of the record's UUID.
    """
    return int(record_id.replace('-', '')[:8], 16)


@dataclass
class Event:
    """
    One voting session with a fixed item set and schedule.

    Attributes:
        id: Event identifier
        name: Display name
        category: Display category
        vote_mode: single or multiple
        number_of_choices: Exact number of items a ballot picks in multiple mode
        number_of_winners: How many top-ranked items are reported as winners
        start_time: Scheduled opening (informational)
        end_time: Submissions are refused from this instant on
        status: Lifecycle state
        allow_anonymous: Accept ballots without a voter credential
        created_at: Creation timestamp
    """
    id: str
    name: str
    start_time: datetime
    end_time: datetime
    category: str = ""
    vote_mode: VoteMode = VoteMode.SINGLE
    number_of_choices: int = 1
    number_of_winners: int = 1
    status: EventStatus = EventStatus.DRAFT
    allow_anonymous: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @property
    def required_choices(self) -> int:
        """Number of ids a ballot for this event must contain."""
        if self.vote_mode == VoteMode.MULTIPLE:
            return self.number_of_choices
        return 1

    def validate(self) -> Tuple[bool, Optional[str]]:
        """
        Check the event invariants.

        Returns:
            tuple: (is_valid, error_message)
        """
        if not self.name or not self.name.strip():
            return False, "Event name is required"

        if self.number_of_choices < 1:
            return False, "number_of_choices must be at least 1"

        if self.number_of_winners < 1:
            return False, "number_of_winners must be at least 1"

        if self.end_time <= self.start_time:
            return False, "end_time must be after start_time"

        return True, None

    def with_changes(self, **changes) -> 'Event':
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        data = asdict(self)
        data['vote_mode'] = self.vote_mode.value
        data['status'] = self.status.value
        for key in ('start_time', 'end_time', 'created_at'):
            data[key] = data[key].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Event':
        """Create Event from dictionary."""
        data = dict(data)
        data['vote_mode'] = VoteMode(data['vote_mode'])
        data['status'] = EventStatus(data['status'])
        for key in ('start_time', 'end_time', 'created_at'):
            if isinstance(data.get(key), str):
                data[key] = datetime.fromisoformat(data[key])
        return cls(**data)


@dataclass
class Item:
    """A choice voters can select within an event."""
    id: str
    event_id: str
    title: str
    description: Optional[str] = None
    image_url: Optional[str] = None
    creator: Optional[str] = None
    vote_count: int = 0
    position: int = 0
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['created_at'] = self.created_at.isoformat()
        return data


@dataclass
class VoterCredential:
    """A single-use code authorizing one ballot."""
    id: str
    event_id: str
    code: str
    used: bool = False
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Ballot:
    """Immutable record of a voter's chosen items."""
    id: str
    event_id: str
    item_ids: Tuple[str, ...]
    voter_code: str
    credential_id: Optional[str]
    submitted_at: datetime = field(default_factory=utcnow)

    @property
    def is_anonymous(self) -> bool:
        return self.credential_id is None


@dataclass(frozen=True)
class ChangeNotice:
    """
    Invalidation hint for observers.

    Carries no state: subscribers re-fetch whatever they display. `origin`
    names the process that first published the notice, so a notice relayed
    between processes is never sent back out again.
    """
    event_id: str
    kind: ChangeKind
    published_at: datetime = field(default_factory=utcnow)
    origin: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_id': self.event_id,
            'kind': self.kind.value,
            'published_at': self.published_at.isoformat(),
            'origin': self.origin,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ChangeNotice':
        published_at = data.get('published_at')
        return cls(
            event_id=data['event_id'],
            kind=ChangeKind(data['kind']),
            published_at=datetime.fromisoformat(published_at) if published_at else utcnow(),
            origin=data.get('origin'),
        )


@dataclass(frozen=True)
class TallyEntry:
    """One ranked row of a tally snapshot."""
    item_id: str
    title: str
    vote_count: int
    position: int


@dataclass(frozen=True)
class EventDefinition:
    """An event together with the ids of its items, as cached for submissions."""
    event: Event
    item_ids: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {'event': self.event.to_dict(), 'item_ids': list(self.item_ids)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EventDefinition':
        return cls(event=Event.from_dict(data['event']), item_ids=tuple(data['item_ids']))


def rank_items(items: List[Item]) -> List[TallyEntry]:
    """
    Order items for results: most votes first, ties by creation order.

    Args:
        items: Items of one event

    Returns:
        List[TallyEntry]: Ranked entries
    """
    ordered = sorted(items, key=lambda item: (-item.vote_count, item.position, item.created_at))
    return [
        TallyEntry(
            item_id=item.id,
            title=item.title,
            vote_count=item.vote_count,
            position=item.position,
        )
        for item in ordered
    ]
