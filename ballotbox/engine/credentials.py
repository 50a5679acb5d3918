"""One-time voter credentials."""
import logging
from datetime import datetime
from typing import Callable, List, Optional

from ballotbox.shared.errors import CredentialBatchError
from ballotbox.shared.models import (
    MAX_CREDENTIAL_BATCH,
    MIN_CREDENTIAL_BATCH,
    VoterCredential,
    generate_code,
    normalize_code,
    utcnow,
)
from ballotbox.storage.base import SubmissionUnit, VotingStore

logger = logging.getLogger(__name__)

# Collisions within an event are regenerated; give up if the store keeps rejecting
MAX_ISSUE_ROUNDS = 10


class CredentialStore:
    """Issues, lists, revokes and consumes voter codes for events."""

    def __init__(
        self,
        store: VotingStore,
        clock: Callable[[], datetime] = utcnow,
        code_factory: Callable[[], str] = generate_code,
    ):
        self.store = store
        self.clock = clock
        self.code_factory = code_factory

    async def issue(self, event_id: str, count: int) -> List[str]:
        """
        Create `count` new unique codes for an event.

        Raises:
            CredentialBatchError: count outside 1..1000
        """
        if not MIN_CREDENTIAL_BATCH <= count <= MAX_CREDENTIAL_BATCH:
            raise CredentialBatchError(
                f"Please request between {MIN_CREDENTIAL_BATCH} and {MAX_CREDENTIAL_BATCH} codes"
            )

        issued: List[str] = []
        for _ in range(MAX_ISSUE_ROUNDS):
            missing = count - len(issued)
            if missing == 0:
                break
            candidates = list({self.code_factory() for _ in range(missing)})
            issued.extend(await self.store.insert_credentials(event_id, candidates))

        if len(issued) < count:
            raise CredentialBatchError(
                f"Could only issue {len(issued)} of {count} unique codes for event {event_id}"
            )

        logger.info(f"Issued {len(issued)} voter codes for event {event_id}")
        return issued

    async def consume(
        self,
        event_id: str,
        code: str,
        unit: Optional[SubmissionUnit] = None,
    ) -> VoterCredential:
        """
        Atomically move a credential from unused to used.

        Raises:
            CredentialNotFoundError: no such code for the event
            CredentialAlreadyUsedError: the code was already consumed
        """
        target = unit if unit is not None else self.store
        return await target.consume_credential(event_id, normalize_code(code), self.clock())

    async def list(self, event_id: str) -> List[VoterCredential]:
        return await self.store.list_credentials(event_id)

    async def revoke(self, event_id: str, code: str) -> bool:
        """Delete an unused code. Used codes stay until an event reset."""
        removed = await self.store.delete_unused_credential(event_id, normalize_code(code))
        if removed:
            logger.info(f"Revoked voter code {normalize_code(code)} for event {event_id}")
        return removed
