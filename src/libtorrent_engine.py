"""
libtorrent-backed transfer engine.

Adapts a libtorrent session to the capability set the streaming core needs:
add/get/remove torrents, select files, prioritize piece ranges and read
byte ranges of a file in order as pieces arrive.
"""

import asyncio
import logging
import os
import re
from typing import Dict, List, Optional

import libtorrent as lt

from config import settings
from engine import AddOptions, DuplicateSessionError

logger = logging.getLogger(__name__)

INFO_HASH_REGEX = re.compile(r"^[0-9a-fA-F]{40}$")
BASE32_HASH_REGEX = re.compile(r"^[A-Za-z2-7]{32}$")

SELECTED_PRIORITY = 4
DESELECTED_PRIORITY = 0
TOP_PRIORITY = 7
# Deadline spacing between consecutive prioritized pieces
PIECE_DEADLINE_STEP_MS = 50
METADATA_POLL_INTERVAL = 0.1


def parse_locator(locator: str) -> "lt.add_torrent_params":
    """Build add parameters from a magnet URI, a bare info hash or a .torrent path"""
    if INFO_HASH_REGEX.match(locator) or BASE32_HASH_REGEX.match(locator):
        locator = f"magnet:?xt=urn:btih:{locator}"

    if locator.startswith("magnet:"):
        return lt.parse_magnet_uri(locator)

    if locator.endswith(".torrent") and os.path.isfile(locator):
        params = lt.add_torrent_params()
        params.ti = lt.torrent_info(locator)
        return params

    raise ValueError(f"Unsupported torrent locator: {locator}")


def info_hash_of(params: "lt.add_torrent_params") -> str:
    if params.ti is not None:
        return str(params.ti.info_hashes().v1)
    return str(params.info_hashes.v1)


class LibtorrentReadStream:
    """Reads a byte range of a file, waiting for each piece before reading it from disk"""

    def __init__(self, torrent: "LibtorrentSession", file: "LibtorrentFile", start: int, end: int,
                 chunk_size: Optional[int] = None, poll_interval: Optional[float] = None):
        self._torrent = torrent
        self._file = file
        self._position = start
        self._end = end
        self._chunk_size = chunk_size or settings.READ_CHUNK_SIZE
        self._poll_interval = poll_interval or settings.PIECE_POLL_INTERVAL
        self._closed = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        if self._closed or self._position > self._end:
            raise StopAsyncIteration

        piece_length = self._torrent.transfer_unit_size
        piece = (self._file.offset + self._position) // piece_length

        if not self._torrent.has_piece(piece):
            # Playback has moved past the prioritized window
            self._torrent.prioritize(piece, piece)
            while not self._torrent.has_piece(piece):
                if self._closed:
                    raise StopAsyncIteration
                if self._torrent.destroyed:
                    raise RuntimeError(
                        f"Torrent {self._torrent.id} was removed while reading")
                await asyncio.sleep(self._poll_interval)

        # Last byte of this piece, in file coordinates
        piece_end = (piece + 1) * piece_length - self._file.offset - 1
        last = min(self._end, piece_end,
                   self._position + self._chunk_size - 1)

        data = await asyncio.to_thread(self._read, self._position, last - self._position + 1)
        if not data:
            raise RuntimeError(
                f"Short read from {self._file.disk_path} at {self._position}")

        self._position += len(data)
        return data

    def _read(self, position: int, size: int) -> bytes:
        with open(self._file.disk_path, "rb") as f:
            f.seek(position)
            return f.read(size)

    async def close(self):
        self._closed = True


class LibtorrentFile:
    def __init__(self, torrent: "LibtorrentSession", index: int):
        storage = torrent.torrent_info.files()
        self._torrent = torrent
        self.index = index
        self.name = storage.file_name(index)
        self.path = storage.file_path(index).replace(os.sep, "/")
        self.length = storage.file_size(index)
        self.offset = storage.file_offset(index)
        self.disk_path = os.path.join(
            torrent.save_path, storage.file_path(index))

    @property
    def downloaded(self) -> int:
        return self._torrent.handle.file_progress()[self.index]

    @property
    def progress(self) -> float:
        if not self.length:
            return 1.0
        return self.downloaded / self.length

    def select(self):
        self._torrent.handle.file_priority(self.index, SELECTED_PRIORITY)

    def deselect(self):
        self._torrent.handle.file_priority(self.index, DESELECTED_PRIORITY)

    def create_read_stream(self, start: Optional[int] = None, end: Optional[int] = None) -> LibtorrentReadStream:
        start = 0 if start is None else start
        end = self.length - 1 if end is None else end
        return LibtorrentReadStream(self._torrent, self, start, end)


class LibtorrentSession:
    def __init__(self, engine: "LibtorrentEngine", handle, info_hash: str, options: AddOptions, save_path: str):
        self._engine = engine
        self.handle = handle
        self.id = info_hash
        self.options = options
        self.save_path = save_path
        self.destroyed = False
        self._files: Optional[List[LibtorrentFile]] = None

    async def wait_ready(self):
        """Wait until metadata is known, then apply the initial file selection"""
        while True:
            status = self.handle.status()
            if status.errc.value() != 0:
                raise RuntimeError(status.errc.message())
            if status.has_metadata:
                break
            await asyncio.sleep(METADATA_POLL_INTERVAL)

        if self.options.deselect:
            self.handle.prioritize_files(
                [DESELECTED_PRIORITY] * self.torrent_info.num_files())

    @property
    def torrent_info(self):
        return self.handle.torrent_file()

    @property
    def name(self) -> str:
        return self.handle.status().name

    @property
    def length(self) -> int:
        info = self.torrent_info
        return info.total_size() if info is not None else 0

    @property
    def transfer_unit_size(self) -> int:
        info = self.torrent_info
        return info.piece_length() if info is not None else 0

    @property
    def files(self) -> List[LibtorrentFile]:
        if self._files is None:
            info = self.torrent_info
            if info is None:
                return []
            self._files = [LibtorrentFile(self, i)
                           for i in range(info.num_files())]
        return self._files

    @property
    def downloaded(self) -> int:
        return self.handle.status().total_done

    @property
    def uploaded(self) -> int:
        return self.handle.status().all_time_upload

    @property
    def download_rate(self) -> float:
        return self.handle.status().download_payload_rate

    @property
    def upload_rate(self) -> float:
        return self.handle.status().upload_payload_rate

    @property
    def peer_count(self) -> int:
        return self.handle.status().num_peers

    @property
    def progress(self) -> float:
        return self.handle.status().progress

    def has_piece(self, piece: int) -> bool:
        return self.handle.have_piece(piece)

    def prioritize(self, first_unit: int, last_unit: int):
        info = self.torrent_info
        if info is None:
            return

        last_unit = min(last_unit, info.num_pieces() - 1)
        for step, piece in enumerate(range(first_unit, last_unit + 1)):
            self.handle.piece_priority(piece, TOP_PRIORITY)
            self.handle.set_piece_deadline(
                piece, step * PIECE_DEADLINE_STEP_MS)

    async def destroy(self, destroy_store: bool = True):
        await self._engine.remove(self.id, destroy_store=destroy_store)


class LibtorrentEngine:
    def __init__(
        self,
        download_dir: Optional[str] = None,
        listen_port: Optional[int] = None,
        max_connections: Optional[int] = None,
        download_rate_limit: Optional[int] = None,
        upload_rate_limit: Optional[int] = None
    ):
        self.download_dir = download_dir or settings.DOWNLOAD_DIR
        self.listen_port = listen_port or settings.LISTEN_PORT
        self.max_connections = max_connections or settings.MAX_CONNS_PER_TORRENT
        self.download_rate_limit = settings.DOWNLOAD_SPEED_LIMIT if download_rate_limit is None else download_rate_limit
        self.upload_rate_limit = settings.UPLOAD_SPEED_LIMIT if upload_rate_limit is None else upload_rate_limit

        self._session = None
        self._sessions: Dict[str, LibtorrentSession] = {}
        self._alert_task: Optional[asyncio.Task] = None

    @property
    def lt_session(self):
        """The libtorrent session, created on first use"""
        if self._session is None:
            self._session = lt.session({
                "listen_interfaces": f"0.0.0.0:{self.listen_port}",
                "alert_mask": lt.alert.category_t.error_notification | lt.alert.category_t.status_notification,
                "download_rate_limit": self.download_rate_limit,
                "upload_rate_limit": self.upload_rate_limit,
            })
            logger.info(
                f"Torrent engine listening on port {self.listen_port}")
        return self._session

    async def start(self):
        self.lt_session
        self._alert_task = asyncio.create_task(self._alert_loop())

    async def _alert_loop(self):
        """Drain engine alerts so errors show up in the log"""
        while True:
            try:
                for alert in self.lt_session.pop_alerts():
                    if alert.category() & lt.alert.category_t.error_notification:
                        logger.warning(f"Engine error: {alert.message()}")
                    else:
                        logger.debug(f"Engine: {alert.message()}")
                await asyncio.sleep(1)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error reading engine alerts: {e}")
                await asyncio.sleep(1)

    @property
    def torrents(self) -> List[LibtorrentSession]:
        return list(self._sessions.values())

    @property
    def download_rate(self) -> float:
        return sum(s.download_rate for s in self._sessions.values())

    @property
    def upload_rate(self) -> float:
        return sum(s.upload_rate for s in self._sessions.values())

    def add(self, locator: str, options: AddOptions) -> LibtorrentSession:
        params = parse_locator(locator)
        info_hash = info_hash_of(params)
        if info_hash in self._sessions:
            raise DuplicateSessionError(locator)

        save_path = options.download_dir or self.download_dir
        os.makedirs(save_path, exist_ok=True)
        params.save_path = save_path
        params.max_connections = self.max_connections

        handle = self.lt_session.add_torrent(params)
        session = LibtorrentSession(self, handle, info_hash, options, save_path)
        self._sessions[info_hash] = session
        return session

    def get(self, locator_or_id: str) -> Optional[LibtorrentSession]:
        if INFO_HASH_REGEX.match(locator_or_id):
            return self._sessions.get(locator_or_id.lower())

        try:
            info_hash = info_hash_of(parse_locator(locator_or_id))
        except (ValueError, RuntimeError):
            return None
        return self._sessions.get(info_hash)

    async def remove(self, session_id: str, destroy_store: bool = True) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False

        session.destroyed = True
        flags = lt.options_t.delete_files if destroy_store else 0
        self.lt_session.remove_torrent(session.handle, flags)
        return True

    async def close(self):
        if self._alert_task:
            self._alert_task.cancel()

        for session in list(self._sessions.values()):
            await self.remove(session.id, destroy_store=session.options.destroy_store_on_destroy)

        self._session = None
        logger.info("Torrent engine stopped")
