"""
VotingEngine: the public operations of the voting session core.

Wires the credential store, validator, tally ledger, session state machine,
submission coordinator and change notifier around one store. Nothing here is
process-global; build one engine per store.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from ballotbox.shared.errors import (
    EventNotEditableError,
    EventNotFoundError,
    InvalidEventError,
    ItemNotFoundError,
)
from ballotbox.shared.models import (
    Ballot,
    ChangeKind,
    ChangeNotice,
    Event,
    EventStatus,
    Item,
    TallyEntry,
    VoteMode,
    VoterCredential,
    new_id,
    utcnow,
)
from ballotbox.engine.coordinator import OperationalAlerts, SubmissionCoordinator
from ballotbox.engine.credentials import CredentialStore
from ballotbox.engine.ledger import AuditLedger, LedgerRecorder
from ballotbox.engine.notifier import ChangeNotifier
from ballotbox.engine.session import SessionStateMachine
from ballotbox.engine.tally import Results, TallyLedger
from ballotbox.engine.validator import BallotValidator
from ballotbox.storage.base import VotingStore
from ballotbox.storage.cache import EventCache

logger = logging.getLogger(__name__)

EDITABLE_EVENT_FIELDS = {
    'name', 'category', 'vote_mode', 'number_of_choices', 'number_of_winners',
    'start_time', 'end_time', 'allow_anonymous',
}


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class VotingEngine:
    """Entry point used by the API, the session monitor and tests."""

    def __init__(
        self,
        store: VotingStore,
        cache: Optional[EventCache] = None,
        notifier: Optional[ChangeNotifier] = None,
        ledger: Optional[AuditLedger] = None,
        alerts: Optional[OperationalAlerts] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.clock = clock
        self.notifier = notifier or ChangeNotifier()
        self.alerts = alerts or OperationalAlerts()
        self.ledger = LedgerRecorder(ledger)
        self.sessions = SessionStateMachine(store, self.notifier, cache=cache, clock=clock)
        self.credentials = CredentialStore(store, clock=clock)
        self.tally = TallyLedger(store)
        self.coordinator = SubmissionCoordinator(
            store=store,
            sessions=self.sessions,
            credentials=self.credentials,
            tally=self.tally,
            notifier=self.notifier,
            validator=BallotValidator(),
            ledger=self.ledger,
            alerts=self.alerts,
            clock=clock,
        )

    async def close(self) -> None:
        await self.notifier.drain()
        await self.ledger.close()
        await self.sessions.cache.close()
        await self.store.close()

    # Events

    async def create_event(
        self,
        name: str,
        start_time: datetime,
        end_time: datetime,
        category: str = "",
        vote_mode: VoteMode = VoteMode.SINGLE,
        number_of_choices: int = 1,
        number_of_winners: int = 1,
        allow_anonymous: bool = False,
    ) -> Event:
        """Create a draft event."""
        event = Event(
            id=new_id(),
            name=name,
            category=category or "",
            vote_mode=VoteMode(vote_mode),
            number_of_choices=number_of_choices,
            number_of_winners=number_of_winners,
            start_time=as_utc(start_time),
            end_time=as_utc(end_time),
            status=EventStatus.DRAFT,
            allow_anonymous=allow_anonymous,
            created_at=self.clock(),
        )
        is_valid, error = event.validate()
        if not is_valid:
            raise InvalidEventError(error)

        created = await self.store.create_event(event)
        logger.info(f"Created event {created.id} ({created.name}, {created.vote_mode.value})")
        return created

    async def get_event(self, event_id: str) -> Event:
        event = await self.store.get_event(event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        return event

    async def list_events(self) -> List[Event]:
        return await self.store.list_events()

    async def update_event(self, event_id: str, fields: Dict[str, Any]) -> Event:
        """Edit event metadata. Only allowed while draft."""
        unknown = set(fields) - EDITABLE_EVENT_FIELDS
        if unknown:
            raise InvalidEventError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")

        current = await self._require_draft(event_id)
        changes = dict(fields)
        if 'vote_mode' in changes:
            changes['vote_mode'] = VoteMode(changes['vote_mode'])
        for key in ('start_time', 'end_time'):
            if key in changes:
                changes[key] = as_utc(changes[key])

        candidate = current.with_changes(**changes)
        is_valid, error = candidate.validate()
        if not is_valid:
            raise InvalidEventError(error)

        updated = await self.store.update_event(candidate, EventStatus.DRAFT)
        if updated is None:
            latest = await self.get_event(event_id)
            raise EventNotEditableError(event_id, latest.status.value)

        await self.sessions.invalidate(event_id)
        self.notifier.publish(event_id, ChangeKind.SESSION)
        return updated

    async def set_status(self, event_id: str, status: EventStatus) -> Event:
        return await self.sessions.set_status(event_id, EventStatus(status))

    # Items

    async def add_item(
        self,
        event_id: str,
        title: str,
        description: Optional[str] = None,
        image_url: Optional[str] = None,
        creator: Optional[str] = None,
    ) -> Item:
        """Add a choice to a draft event."""
        if not title or not title.strip():
            raise InvalidEventError("Item title is required")
        await self._require_draft(event_id)

        item = await self.store.add_item(Item(
            id=new_id(),
            event_id=event_id,
            title=title.strip(),
            description=description or None,
            image_url=image_url or None,
            creator=creator or None,
            created_at=self.clock(),
        ))
        await self.sessions.invalidate(event_id)
        logger.info(f"Added item {item.id} ({item.title}) to event {event_id}")
        return item

    async def list_items(self, event_id: str) -> List[Item]:
        await self.get_event(event_id)
        return await self.store.list_items(event_id)

    async def remove_item(self, event_id: str, item_id: str) -> None:
        await self._require_draft(event_id)
        if not await self.store.remove_item(event_id, item_id):
            raise ItemNotFoundError(item_id)
        await self.sessions.invalidate(event_id)

    # Credentials

    async def issue_credentials(self, event_id: str, count: int) -> List[str]:
        await self.get_event(event_id)
        return await self.credentials.issue(event_id, count)

    async def list_credentials(self, event_id: str) -> List[VoterCredential]:
        await self.get_event(event_id)
        return await self.credentials.list(event_id)

    async def revoke_credential(self, event_id: str, code: str) -> bool:
        await self.get_event(event_id)
        return await self.credentials.revoke(event_id, code)

    # Voting

    async def submit_ballot(
        self,
        event_id: str,
        code: Optional[str],
        item_ids: Sequence[str],
    ) -> Ballot:
        return await self.coordinator.submit(event_id, code, item_ids)

    async def get_tally(self, event_id: str) -> List[TallyEntry]:
        await self.get_event(event_id)
        return await self.tally.snapshot(event_id)

    async def get_results(self, event_id: str) -> Results:
        event = await self.get_event(event_id)
        return await self.tally.results(event)

    async def list_ballots(self, event_id: str) -> List[Ballot]:
        await self.get_event(event_id)
        return await self.store.list_ballots(event_id)

    async def expire_due(self) -> List[str]:
        return await self.sessions.expire_due()

    async def reset(self, event_id: str) -> None:
        """Clear ballots, zero counters and unmark every credential, all at once."""
        await self.get_event(event_id)
        await self.store.reset_event(event_id)
        self.notifier.publish(event_id, ChangeKind.TALLY)
        logger.warning(f"Event {event_id} was reset: all ballots and tallies cleared")

    async def apply_remote_notice(self, notice: ChangeNotice) -> None:
        """Handle a notice published by another process, e.g. the session monitor."""
        if notice.kind == ChangeKind.SESSION:
            await self.sessions.invalidate(notice.event_id)
        self.notifier.relay(notice)

    async def _require_draft(self, event_id: str) -> Event:
        event = await self.get_event(event_id)
        if event.status != EventStatus.DRAFT:
            raise EventNotEditableError(event_id, event.status.value)
        return event
