"""
Debounced teardown of idle torrent sessions.

At most one grace timer exists per session id. A timer is an asyncio task
that sleeps for the grace period; its record is dropped before teardown
starts, so a cancel either wins outright or finds nothing left to cancel.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

from config import settings

logger = logging.getLogger(__name__)


class EvictionScheduler:
    def __init__(
        self,
        teardown: Callable[[str], Awaitable[None]],
        grace_period: Optional[float] = None
    ):
        self._teardown = teardown
        self.grace_period = settings.SEED_TIME if grace_period is None else grace_period
        # Armed grace timers, keyed by session id
        self._timers: Dict[str, asyncio.Task] = {}
        # Timers that already fired and are running their teardown
        self._teardowns: Dict[str, asyncio.Task] = {}

    def arm(self, session_id: str) -> bool:
        """Schedule teardown of a session after the grace period.

        No-op if a timer is already armed for this session.
        """
        if session_id in self._timers:
            return False

        self._timers[session_id] = asyncio.create_task(
            self._evict_after_grace(session_id))
        logger.info(
            f"No viewers on torrent {session_id}, removing in {self.grace_period}s")
        return True

    def cancel(self, session_id: str) -> bool:
        timer = self._timers.pop(session_id, None)
        if timer is None:
            return False

        timer.cancel()
        logger.info(
            f"Viewer attached to torrent {session_id}, removal cancelled")
        return True

    def is_armed(self, session_id: str) -> bool:
        return session_id in self._timers

    def teardown_in_progress(self, session_id: str) -> bool:
        return session_id in self._teardowns

    async def wait_for_teardown(self, session_id: str):
        teardown = self._teardowns.get(session_id)
        if teardown is not None:
            await asyncio.shield(teardown)

    async def _evict_after_grace(self, session_id: str):
        await asyncio.sleep(self.grace_period)

        current = asyncio.current_task()
        if self._timers.get(session_id) is not current:
            return

        del self._timers[session_id]
        self._teardowns[session_id] = current
        try:
            await self._teardown(session_id)
        except Exception as e:
            logger.error(f"Error removing idle torrent {session_id}: {e}")
        finally:
            self._teardowns.pop(session_id, None)

    async def shutdown(self):
        """Cancel every armed timer. Teardowns already running are awaited."""
        for session_id in list(self._timers):
            self._timers.pop(session_id).cancel()

        running = list(self._teardowns.values())
        if running:
            await asyncio.gather(*running, return_exceptions=True)
