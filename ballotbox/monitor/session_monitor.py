"""
Session monitor.

Ends active events once their end_time has passed, even when nobody tries to
vote. Submissions re-check end_time themselves, so the poll interval only
bounds how long a stale "active" status stays visible to readers.
"""
import asyncio
import logging
from typing import Optional

from prometheus_client import Counter

from ballotbox.engine.session import SessionStateMachine

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 10.0

sessions_expired = Counter(
    'sessions_expired_total',
    'Events ended by the session monitor after their end_time'
)

monitor_errors = Counter(
    'session_monitor_errors_total',
    'Session monitor polls that failed'
)


class SessionMonitor:
    """Background poll loop around SessionStateMachine.expire_due()."""

    def __init__(self, sessions: SessionStateMachine, poll_interval: float = DEFAULT_POLL_INTERVAL):
        self.sessions = sessions
        self.poll_interval = poll_interval
        self.running = False
        self._task: Optional[asyncio.Task] = None

    async def poll_once(self) -> int:
        """Run one expiry pass. Returns how many events were ended."""
        expired = await self.sessions.expire_due()
        if expired:
            sessions_expired.inc(len(expired))
            logger.info(f"Session monitor ended {len(expired)} event(s): {expired}")
        return len(expired)

    async def run(self):
        """Poll until stop() is called."""
        self.running = True
        logger.info(f"Session monitor started (poll interval {self.poll_interval}s)")
        while self.running:
            try:
                await self.poll_once()
            except Exception as e:
                monitor_errors.inc()
                logger.error(f"Session monitor poll failed: {e}")
            await asyncio.sleep(self.poll_interval)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self):
        self.running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Session monitor stopped")
