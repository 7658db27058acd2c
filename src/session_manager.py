"""
Session Manager

Owns the lifecycle of torrent sessions used for streaming: get-or-add with a
metadata timeout, viewer tracking, debounced eviction of idle torrents,
file selection scoping and the stats snapshot.
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional, Tuple

from config import settings
from engine import AddOptions, DuplicateSessionError, EngineFile, EngineSession, TransferEngine
from errors import FileNotFoundInSession, SessionAddError, SessionAddTimeout
from eviction import EvictionScheduler
from file_utils import get_readable_duration
from models import ContentInfo, FileInfo
from viewer_tracker import ViewerTracker

logger = logging.getLogger(__name__)


class SessionManager:
    def __init__(
        self,
        engine: TransferEngine,
        info_engine: Optional[TransferEngine] = None,
        download_dir: Optional[str] = None,
        keep_files: Optional[bool] = None,
        add_timeout: Optional[float] = None,
        grace_period: Optional[float] = None
    ):
        self.engine = engine
        # Metadata lookups run on their own engine so they never touch
        # sessions that are being streamed
        self.info_engine = info_engine or engine
        self.download_dir = download_dir or settings.DOWNLOAD_DIR
        self.keep_files = settings.KEEP_DOWNLOADED_FILES if keep_files is None else keep_files
        self.add_timeout = settings.TORRENT_TIMEOUT if add_timeout is None else add_timeout

        self.scheduler = EvictionScheduler(
            self._evict_idle_session, grace_period=grace_period)
        self.tracker = ViewerTracker(self.scheduler)

        # In-flight adds keyed by locator, shared by concurrent callers
        self._pending_adds: Dict[str, asyncio.Task] = {}
        # The same adds keyed by session id once the engine accepted the
        # torrent, so other locators of that torrent wait for its metadata too
        self._awaiting_metadata: Dict[str, asyncio.Task] = {}
        self._pending_info: Dict[str, asyncio.Task] = {}
        self._launch_time = time.time()

    async def get_or_add_session(self, locator: str) -> Optional[EngineSession]:
        """Get the streaming session for a locator, adding the torrent if needed.

        Returns None if metadata did not arrive within the add timeout.
        Raises SessionAddError if the engine rejected the torrent.
        """
        pending = self._pending_adds.get(locator)
        if pending is None:
            session = self.engine.get(locator)
            if session is not None and self.scheduler.teardown_in_progress(session.id):
                logger.info(
                    f"Torrent {session.id} is being removed, waiting before adding it again")
                await self.scheduler.wait_for_teardown(session.id)
                session = self.engine.get(locator)

            if session is not None:
                adding = self._awaiting_metadata.get(session.id)
                if adding is None:
                    return session
                return await asyncio.shield(adding)

            pending = self._pending_adds.get(locator)
            if pending is None:
                pending = asyncio.create_task(self._add_session(locator))
                self._pending_adds[locator] = pending
                pending.add_done_callback(
                    lambda task: self._discard_pending(self._pending_adds, locator, task))

        # Shielded so one caller disconnecting does not abort the add for others
        return await asyncio.shield(pending)

    @staticmethod
    def _discard_pending(pending: Dict[str, asyncio.Task], locator: str, task: asyncio.Task):
        if pending.get(locator) is task:
            del pending[locator]

    async def _add_session(self, locator: str) -> Optional[EngineSession]:
        options = AddOptions(
            download_dir=self.download_dir,
            deselect=True,
            destroy_store_on_destroy=not self.keep_files
        )

        try:
            session = self.engine.add(locator, options)
        except DuplicateSessionError as e:
            logger.debug(f"{e}, using the session already in the engine")
            session = self.engine.get(locator)
            if session is None:
                return None
            adding = self._awaiting_metadata.get(session.id)
            if adding is not None:
                return await asyncio.shield(adding)
            return session
        except Exception as e:
            logger.error(f"Error adding torrent {locator}: {e}")
            raise SessionAddError(locator, e) from e

        self._awaiting_metadata[session.id] = asyncio.current_task()
        try:
            await asyncio.wait_for(session.wait_ready(), timeout=self.add_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Timed out after {self.add_timeout}s waiting for metadata of {locator}")
            await self._destroy_quietly(session, destroy_store=True)
            return None
        except Exception as e:
            logger.error(f"Error resolving torrent {locator}: {e}")
            await self._destroy_quietly(session, destroy_store=True)
            raise SessionAddError(locator, e) from e
        finally:
            self._awaiting_metadata.pop(session.id, None)

        logger.info(f"Added torrent: {session.name}")
        # Released like any idle torrent if no viewer ever attaches;
        # the first stream_opened cancels this
        self.scheduler.arm(session.id)
        return session

    async def _destroy_quietly(self, session: EngineSession, destroy_store: bool):
        try:
            await session.destroy(destroy_store=destroy_store)
        except Exception as e:
            logger.warning(f"Error destroying torrent {session.id}: {e}")

    async def _evict_idle_session(self, session_id: str):
        """Teardown run by the eviction scheduler once the grace period expires"""
        if self.tracker.open_stream_count(session_id) > 0:
            logger.warning(
                f"Skipping removal of torrent {session_id}: viewers are attached")
            return

        session = self.engine.get(session_id)
        if session is None:
            logger.debug(f"Torrent {session_id} already gone from the engine")
            self.tracker.forget(session_id)
            return

        await self.engine.remove(session_id, destroy_store=not self.keep_files)
        self.tracker.forget(session_id)
        logger.info(f"Removed torrent: {session.name}")

    async def remove_session(self, session_id: str) -> bool:
        """Remove a torrent immediately, without grace period"""
        self.scheduler.cancel(session_id)

        session = self.engine.get(session_id)
        if session is None:
            return False

        # Viewer counts are kept: streams still open on the removed session
        # unwind them when they close, even if the torrent is added again
        await self.engine.remove(session_id, destroy_store=not self.keep_files)
        logger.info(f"Removed torrent: {session.name}")
        return True

    @staticmethod
    def get_file(session: EngineSession, path: str) -> Optional[EngineFile]:
        for file in session.files:
            if file.path == path:
                return file
        return None

    async def resolve_file(self, locator: str, path: str) -> Tuple[EngineSession, EngineFile]:
        """Get or add the session for a locator and look up one of its files.

        Raises SessionAddError, SessionAddTimeout or FileNotFoundInSession.
        """
        session = await self.get_or_add_session(locator)
        if session is None:
            raise SessionAddTimeout(locator, self.add_timeout)

        file = self.get_file(session, path)
        if file is None:
            raise FileNotFoundInSession(session.id, path)

        return session, file

    def rescope_selection(self, session: EngineSession, file: EngineFile) -> bool:
        """Select the requested file, deselecting the others when nobody watches them.

        Best-effort: returns False if the engine refused, never raises.
        """
        open_paths = self.tracker.get_open_file_paths(session.id)
        safe_to_rescope = not open_paths or open_paths == [file.path]

        try:
            if safe_to_rescope:
                for other in session.files:
                    other.deselect()
            file.select()
        except Exception as e:
            logger.warning(
                f"Failed to update file selection for {file.path}: {e}")
            return False

        return True

    async def get_content_info(self, locator: str) -> Optional[ContentInfo]:
        """Resolve a torrent's name and file list.

        Uses the streaming session when one exists, otherwise adds the torrent
        to the metadata engine and drops it once metadata has arrived.
        """
        session = self.engine.get(locator)
        if session is not None and locator not in self._pending_adds:
            return self._build_content_info(session)

        pending = self._pending_info.get(locator)
        if pending is None:
            pending = asyncio.create_task(self._fetch_content_info(locator))
            self._pending_info[locator] = pending
            pending.add_done_callback(
                lambda task: self._discard_pending(self._pending_info, locator, task))

        return await asyncio.shield(pending)

    async def _fetch_content_info(self, locator: str) -> Optional[ContentInfo]:
        options = AddOptions(download_dir=None, deselect=True,
                             destroy_store_on_destroy=True)
        try:
            session = self.info_engine.add(locator, options)
        except DuplicateSessionError:
            session = self.info_engine.get(locator)
            if session is None:
                return None
        except Exception as e:
            logger.error(f"Error fetching info for {locator}: {e}")
            return None

        try:
            await asyncio.wait_for(session.wait_ready(), timeout=self.add_timeout)
            info = self._build_content_info(session)
            logger.info(f"Fetched info: {info.name}")
            return info
        except asyncio.TimeoutError:
            logger.warning(
                f"Timed out after {self.add_timeout}s fetching info for {locator}")
            return None
        except Exception as e:
            logger.error(f"Error fetching info for {locator}: {e}")
            return None
        finally:
            await self._destroy_quietly(session, destroy_store=True)

    @staticmethod
    def _build_content_info(session: EngineSession) -> ContentInfo:
        return ContentInfo(
            name=session.name,
            id=session.id,
            size=session.length,
            files=[
                FileInfo(name=file.name, path=file.path, size=file.length)
                for file in session.files
            ]
        )

    def get_stats(self) -> Dict:
        """Read-only snapshot of engine and viewer state"""
        active_torrents: List[Dict] = []
        for session in list(self.engine.torrents):
            active_torrents.append({
                "name": session.name or "Unknown",
                "infoHash": session.id or "",
                "size": session.length or 0,
                "progress": session.progress or 0,
                "downloaded": session.downloaded or 0,
                "uploaded": session.uploaded or 0,
                "downloadSpeed": session.download_rate or 0,
                "uploadSpeed": session.upload_rate or 0,
                "peers": session.peer_count or 0,
                "openStreams": self.tracker.open_stream_count(session.id),
                "files": [
                    {
                        "name": file.name or "",
                        "path": file.path or "",
                        "size": file.length or 0,
                        "progress": file.progress or 0,
                        "downloaded": file.downloaded or 0
                    }
                    for file in session.files
                ]
            })

        return {
            "uptime": get_readable_duration((time.time() - self._launch_time) * 1000),
            "openStreams": self.tracker.total_open_streams(),
            "downloadSpeed": self.engine.download_rate or 0,
            "uploadSpeed": self.engine.upload_rate or 0,
            "activeTorrents": active_torrents
        }

    async def start(self):
        await self.engine.start()
        if self.info_engine is not self.engine:
            await self.info_engine.start()
        logger.info("Session manager started")

    async def stop(self):
        """Cancel pending grace timers and close the engines"""
        await self.scheduler.shutdown()
        await self.engine.close()
        if self.info_engine is not self.engine:
            await self.info_engine.close()
        logger.info("Session manager stopped")
