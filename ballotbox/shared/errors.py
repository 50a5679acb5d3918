"""
Exception hierarchy for the voting session engine.

User-correctable errors (ballot shape, credential, closed session) leave no
state behind and can be shown to the voter. PartialCommitError and
StoreUnavailableError are operational: callers must check whether the voter
credential was consumed before deciding to retry.
"""

from enum import Enum
from typing import Optional, Sequence


class VotingError(Exception):
    """Base class for all engine errors."""

    error_type = "voting_error"


class BallotRejection(str, Enum):
    """Reasons a ballot shape is rejected."""
    EMPTY = "empty"
    WRONG_COUNT = "wrong_count"
    UNKNOWN_ITEM = "unknown_item"
    DUPLICATE_CHOICE = "duplicate_choice"


class BallotValidationError(VotingError):
    """Malformed ballot. No state was changed."""

    error_type = "validation_error"

    def __init__(self, reason: BallotRejection, message: str):
        super().__init__(message)
        self.reason = reason


class CredentialError(VotingError):
    """Voter credential problem. No state was changed."""

    error_type = "credential_error"

    def __init__(self, code: Optional[str], message: str):
        super().__init__(message)
        self.code = code


class CredentialAlreadyUsedError(CredentialError):
    error_type = "already_used"

    def __init__(self, code: str):
        super().__init__(code, f"Voter code {code} has already been used")


class CredentialNotFoundError(CredentialError):
    error_type = "not_found"

    def __init__(self, code: str):
        super().__init__(code, f"Voter code {code} is not valid for this event")


class CredentialRequiredError(CredentialError):
    error_type = "credential_required"

    def __init__(self):
        super().__init__(None, "This event requires a voter code")


class SessionClosedError(VotingError):
    """The voting window is not open. No state was changed."""

    error_type = "session_closed"

    def __init__(self, event_id: str, status: str):
        super().__init__(f"Voting for event {event_id} is not open (status: {status})")
        self.event_id = event_id
        self.status = status


class StoreUnavailableError(VotingError):
    """
    Transient store failure.

    Safe to retry the whole submission only when credential_consumed is False.
    None means the store failed while committing and the outcome is unknown.
    """

    error_type = "store_unavailable"

    def __init__(self, message: str, credential_consumed: Optional[bool] = False):
        super().__init__(message)
        self.credential_consumed = credential_consumed


class PartialCommitError(VotingError):
    """
    A credential was consumed but the ballot or tally write failed.

    Not user-correctable: an operator has to reconcile the event.
    """

    error_type = "partial_commit"

    def __init__(
        self,
        event_id: str,
        code: Optional[str],
        item_ids: Sequence[str],
        phase: str,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(
            f"Voter code {code} consumed for event {event_id} "
            f"but {phase} failed: {cause}"
        )
        self.event_id = event_id
        self.code = code
        self.item_ids = tuple(item_ids)
        self.phase = phase
        self.cause = cause

    def details(self) -> dict:
        """Reconciliation details for the alert channel."""
        return {
            'event_id': self.event_id,
            'code': self.code,
            'item_ids': list(self.item_ids),
            'phase': self.phase,
            'cause': repr(self.cause),
        }


class EventNotFoundError(VotingError):
    error_type = "event_not_found"

    def __init__(self, event_id: str):
        super().__init__(f"Event {event_id} not found")
        self.event_id = event_id


class ItemNotFoundError(VotingError):
    error_type = "item_not_found"

    def __init__(self, item_id: str):
        super().__init__(f"Item {item_id} not found")
        self.item_id = item_id


class InvalidEventError(VotingError):
    """Event fields violate an invariant."""

    error_type = "invalid_event"


class EventNotEditableError(VotingError):
    """Administrative edits are only allowed while the event is a draft."""

    error_type = "event_not_editable"

    def __init__(self, event_id: str, status: str):
        super().__init__(f"Event {event_id} can only be edited while draft (status: {status})")
        self.event_id = event_id
        self.status = status


class InvalidTransitionError(VotingError):
    error_type = "invalid_transition"

    def __init__(self, event_id: str, current: str, target: str):
        super().__init__(f"Event {event_id} cannot move from {current} to {target}")
        self.event_id = event_id
        self.current = current
        self.target = target


class CredentialBatchError(VotingError):
    """Requested credential batch size is out of range."""

    error_type = "invalid_batch"
