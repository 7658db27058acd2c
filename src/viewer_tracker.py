import logging
from typing import Dict, List

from eviction import EvictionScheduler

logger = logging.getLogger(__name__)


class ViewerTracker:
    """Reference counts of open HTTP streams.

    Two independent counters are kept. The session-level count decides
    eviction; the per-file count decides how far file selection may be
    narrowed. They are updated together by the stream coordinator but are
    never cross-checked.
    """

    def __init__(self, scheduler: EvictionScheduler):
        self.scheduler = scheduler
        self._open_streams: Dict[str, int] = {}
        self._open_file_streams: Dict[str, Dict[str, int]] = {}

    def stream_opened(self, session_id: str, label: str):
        logger.info(f"Stream opened: {label}")
        self._open_streams[session_id] = self._open_streams.get(
            session_id, 0) + 1

        # A viewer attached during the grace window keeps the torrent alive
        self.scheduler.cancel(session_id)

    def stream_closed(self, session_id: str, label: str):
        logger.info(f"Stream closed: {label}")
        count = self._open_streams.get(session_id, 0)
        if count == 0:
            logger.debug(
                f"Ignoring close for untracked torrent {session_id}")
            return

        if count > 1:
            self._open_streams[session_id] = count - 1
            return

        del self._open_streams[session_id]
        self.scheduler.arm(session_id)

    def file_stream_opened(self, session_id: str, path: str):
        per_session = self._open_file_streams.setdefault(session_id, {})
        per_session[path] = per_session.get(path, 0) + 1

    def file_stream_closed(self, session_id: str, path: str):
        per_session = self._open_file_streams.get(session_id)
        if not per_session:
            return

        count = per_session.get(path, 0)
        if count <= 1:
            per_session.pop(path, None)
        else:
            per_session[path] = count - 1

        if not per_session:
            del self._open_file_streams[session_id]

    def get_open_file_paths(self, session_id: str) -> List[str]:
        """Snapshot of the file paths currently being streamed"""
        return list(self._open_file_streams.get(session_id, {}))

    def open_stream_count(self, session_id: str) -> int:
        return self._open_streams.get(session_id, 0)

    def total_open_streams(self) -> int:
        return sum(self._open_streams.values())

    def forget(self, session_id: str):
        """Drop all counters for a session that was removed explicitly"""
        self._open_streams.pop(session_id, None)
        self._open_file_streams.pop(session_id, None)
