"""
Ballot submission.

A submission runs: session gate -> ballot validation -> credential
consumption -> ballot insert -> tally increment -> notification. The first
two steps have no side effects. Consumption, insert and increment share one
unit of work; once consumption has started the remaining steps are shielded
from caller cancellation so a consumed credential is never left behind
silently.
"""
import asyncio
import logging
import time
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from prometheus_client import Counter, Histogram

from ballotbox.shared.errors import (
    CredentialError,
    CredentialRequiredError,
    PartialCommitError,
    StoreUnavailableError,
    VotingError,
)
from ballotbox.shared.models import (
    ANONYMOUS_VOTER,
    Ballot,
    ChangeKind,
    Event,
    new_id,
    normalize_code,
    utcnow,
)
from ballotbox.engine.credentials import CredentialStore
from ballotbox.engine.ledger import LedgerRecorder
from ballotbox.engine.notifier import ChangeNotifier
from ballotbox.engine.session import SessionStateMachine
from ballotbox.engine.tally import TallyLedger
from ballotbox.engine.validator import BallotValidator
from ballotbox.storage.base import VotingStore

logger = logging.getLogger(__name__)

# Prometheus metrics
ballots_submitted = Counter(
    'ballots_submitted_total',
    'Total number of ballots counted',
    ['mode']
)
submission_errors = Counter(
    'ballot_submission_errors_total',
    'Total number of rejected or failed ballot submissions',
    ['error_type']
)
submission_latency = Histogram(
    'ballot_submission_duration_seconds',
    'Time spent handling a ballot submission',
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5]
)
partial_commits = Counter(
    'ballot_partial_commits_total',
    'Credentials consumed without a counted vote'
)

AlertChannel = Callable[[dict], Awaitable[None]]


class OperationalAlerts:
    """Escalates partial commits: CRITICAL log, metric, then every channel."""

    def __init__(self):
        self.channels: List[AlertChannel] = []

    def add_channel(self, channel: AlertChannel) -> None:
        self.channels.append(channel)

    async def partial_commit(self, error: PartialCommitError) -> None:
        partial_commits.inc()
        details = error.details()
        logger.critical(f"PARTIAL COMMIT - manual reconciliation required: {details}")
        for channel in self.channels:
            try:
                await channel(details)
            except Exception as e:
                logger.error(f"Alert channel failed for partial commit on event {error.event_id}: {e}")


class SubmissionCoordinator:
    """Runs one ballot submission as a logically atomic unit."""

    def __init__(
        self,
        store: VotingStore,
        sessions: SessionStateMachine,
        credentials: CredentialStore,
        tally: TallyLedger,
        notifier: ChangeNotifier,
        validator: Optional[BallotValidator] = None,
        ledger: Optional[LedgerRecorder] = None,
        alerts: Optional[OperationalAlerts] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.sessions = sessions
        self.credentials = credentials
        self.tally = tally
        self.notifier = notifier
        self.validator = validator or BallotValidator()
        self.ledger = ledger or LedgerRecorder()
        self.alerts = alerts or OperationalAlerts()
        self.clock = clock

    async def submit(
        self,
        event_id: str,
        code: Optional[str],
        item_ids: Sequence[str],
    ) -> Ballot:
        """
        Submit a ballot.

        Args:
            event_id: Event being voted on
            code: Voter code, or None for anonymous events
            item_ids: Chosen item ids

        Returns:
            Ballot: The persisted ballot

        Raises:
            SessionClosedError, BallotValidationError, CredentialError:
                user-correctable, nothing was changed
            StoreUnavailableError: check credential_consumed before retrying
            PartialCommitError: code consumed, vote not counted
        """
        start_time = time.time()
        try:
            definition = await self.sessions.require_open(event_id)
            event = definition.event
            chosen = self.validator.validate(event, definition.item_ids, item_ids)

            normalized = normalize_code(code) if code and code.strip() else None
            if normalized is None and not event.allow_anonymous:
                raise CredentialRequiredError()

            # From here on a cancelled caller must not abandon a consumed code
            commit = asyncio.ensure_future(self._commit(event, normalized, chosen))
            try:
                ballot = await asyncio.shield(commit)
            except asyncio.CancelledError:
                commit.add_done_callback(self._log_detached_commit)
                raise

        except VotingError as e:
            submission_errors.labels(error_type=e.error_type).inc()
            if isinstance(e, (StoreUnavailableError, PartialCommitError)):
                logger.error(f"Ballot submission failed for event {event_id}: {e}")
            else:
                logger.warning(f"Ballot rejected for event {event_id}: {e}")
            raise
        finally:
            submission_latency.observe(time.time() - start_time)

        ballots_submitted.labels(mode='anonymous' if ballot.is_anonymous else 'credential').inc()
        logger.info(
            f"Ballot counted: event={event_id}, ballot={ballot.id}, "
            f"voter={ballot.voter_code}, items={list(ballot.item_ids)}"
        )
        return ballot

    async def _commit(self, event: Event, code: Optional[str], chosen: Tuple[str, ...]) -> Ballot:
        """Steps 3-6. Runs to completion even if the submitting request is cancelled."""
        consumed_committed = False
        phase = "consume"
        try:
            async with self.store.unit_of_work(event.id) as unit:
                credential = None
                if code is not None:
                    credential = await self.credentials.consume(event.id, code, unit=unit)
                    consumed_committed = not unit.atomic

                phase = "ballot"
                ballot = Ballot(
                    id=new_id(),
                    event_id=event.id,
                    item_ids=chosen,
                    voter_code=code if code is not None else ANONYMOUS_VOTER,
                    credential_id=credential.id if credential else None,
                    submitted_at=self.clock(),
                )
                await unit.insert_ballot(ballot)

                phase = "tally"
                await self.tally.increment(event.id, chosen, unit=unit)
                phase = "commit"

        except CredentialError:
            raise
        except Exception as e:
            if consumed_committed:
                error = PartialCommitError(event.id, code, chosen, phase, e)
                await self.alerts.partial_commit(error)
                raise error from e
            if phase == "commit":
                # The transaction may have committed before the connection dropped
                raise StoreUnavailableError(
                    f"commit outcome unknown: {e}", credential_consumed=None
                ) from e
            if isinstance(e, StoreUnavailableError):
                raise
            raise StoreUnavailableError(f"{phase} failed: {e}", credential_consumed=False) from e

        self.notifier.publish(event.id, ChangeKind.TALLY)
        self.ledger.record(ballot)
        return ballot

    @staticmethod
    def _log_detached_commit(task: asyncio.Future) -> None:
        """Report the outcome of a commit whose submitting request was cancelled."""
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            ballot = task.result()
            logger.info(f"Ballot {ballot.id} committed after its request was cancelled")
        elif not isinstance(error, PartialCommitError):
            logger.error(f"Ballot commit failed after its request was cancelled: {error!r}")
