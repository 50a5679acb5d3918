"""
External ledger side channel.

After a ballot is counted, one record per chosen item may be written to an
external immutable ledger as an audit trail. The ledger is never read back
for tallies and a failed write never affects the submission: it is logged
and counted as a discrepancy for later comparison.
"""
import abc
import asyncio
import logging
from typing import Optional, Set

import httpx
from prometheus_client import Counter

from ballotbox.shared.models import Ballot, ledger_key

logger = logging.getLogger(__name__)

ledger_writes = Counter(
    'ledger_writes_total',
    'External ledger writes',
    ['status']
)


class AuditLedger(abc.ABC):
    """Write-once record keyed by (event_id, item_id)."""

    @abc.abstractmethod
    async def record_vote(self, event_id: str, item_id: str, ballot_id: str) -> None:
        """Write one vote record. May raise; callers treat failures as discrepancies."""

    async def close(self) -> None:
        pass


class NullLedger(AuditLedger):
    """Ledger integration disabled."""

    async def record_vote(self, event_id: str, item_id: str, ballot_id: str) -> None:
        return None


class HttpLedger(AuditLedger):
    """Posts vote records to a ledger gateway over HTTP."""

    def __init__(self, base_url: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def record_vote(self, event_id: str, item_id: str, ballot_id: str) -> None:
        response = await self.client.post(
            "/votes",
            json={
                "session_id": ledger_key(event_id),
                "item_key": ledger_key(item_id),
                "event_id": event_id,
                "item_id": item_id,
                "ballot_id": ballot_id,
            }
        )
        response.raise_for_status()

    async def close(self) -> None:
        await self.client.aclose()


class LedgerRecorder:
    """Schedules ledger writes in the background and records failures."""

    def __init__(self, ledger: Optional[AuditLedger] = None):
        self.ledger = ledger or NullLedger()
        self._pending: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return not isinstance(self.ledger, NullLedger)

    def record(self, ballot: Ballot) -> None:
        if not self.enabled:
            return
        for item_id in ballot.item_ids:
            task = asyncio.create_task(self._write(ballot, item_id))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _write(self, ballot: Ballot, item_id: str) -> None:
        try:
            await self.ledger.record_vote(ballot.event_id, item_id, ballot.id)
            ledger_writes.labels(status='success').inc()
        except Exception as e:
            ledger_writes.labels(status='discrepancy').inc()
            logger.warning(
                f"Ledger write failed, tally unaffected: event={ballot.event_id}, "
                f"item={item_id}, ballot={ballot.id}: {e}"
            )

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        await self.ledger.close()
