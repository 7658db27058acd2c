"""
Shared fixtures: an in-memory transfer engine implementing the capability
set the session manager and stream coordinator rely on.
"""
import asyncio
import os
import sys
from typing import Dict, List, Optional

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from engine import AddOptions, DuplicateSessionError  # noqa: E402
from range_stream import RangeStreamCoordinator  # noqa: E402
from session_manager import SessionManager  # noqa: E402

MOVIE_HASH = "a" * 40
MOVIE_LOCATOR = f"magnet:?xt=urn:btih:{MOVIE_HASH}&dn=Movie"
SHOW_HASH = "b" * 40
SHOW_LOCATOR = f"magnet:?xt=urn:btih:{SHOW_HASH}&dn=Show"

MOVIE_DATA = bytes(i % 256 for i in range(1000))


class FakeReadStream:
    def __init__(self, data: bytes, chunk_size: int = 64, stall: bool = False,
                 fail_after: Optional[int] = None):
        self.data = data
        self.chunk_size = chunk_size
        self.stall = stall
        self.fail_after = fail_after
        self.position = 0
        self.closed = False
        self.close_calls = 0

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        if self.stall:
            await asyncio.Event().wait()
        if self.fail_after is not None and self.position >= self.fail_after:
            raise RuntimeError("piece verification failed")
        if self.closed or self.position >= len(self.data):
            raise StopAsyncIteration

        chunk = self.data[self.position:self.position + self.chunk_size]
        self.position += len(chunk)
        await asyncio.sleep(0)
        return chunk

    async def close(self):
        self.closed = True
        self.close_calls += 1


class FakeFile:
    def __init__(self, path: str, data: bytes, offset: int = 0):
        self.path = path
        self.name = path.rsplit("/", 1)[-1]
        self.data = data
        self.length = len(data)
        self.offset = offset
        self.progress = 0.0
        self.downloaded = 0
        self.selected = False
        self.stall = False
        self.fail_open = False
        self.fail_after: Optional[int] = None
        self.fail_selection = False
        self.read_streams: List[FakeReadStream] = []

    def select(self):
        if self.fail_selection:
            raise RuntimeError("selection rejected")
        self.selected = True

    def deselect(self):
        if self.fail_selection:
            raise RuntimeError("selection rejected")
        self.selected = False

    def create_read_stream(self, start: Optional[int] = None, end: Optional[int] = None) -> FakeReadStream:
        if self.fail_open:
            raise RuntimeError("cannot open read stream")
        start = 0 if start is None else start
        end = self.length - 1 if end is None else end
        stream = FakeReadStream(self.data[start:end + 1], stall=self.stall,
                                fail_after=self.fail_after)
        self.read_streams.append(stream)
        return stream


class FakeSession:
    def __init__(self, session_id: str, name: str, files: List[FakeFile], transfer_unit_size: int = 16):
        self.id = session_id
        self.name = name
        self.files = files
        self.length = sum(f.length for f in files)
        self.transfer_unit_size = transfer_unit_size
        self.downloaded = 0
        self.uploaded = 0
        self.download_rate = 0.0
        self.upload_rate = 0.0
        self.peer_count = 0
        self.progress = 0.0
        self.ready = asyncio.Event()
        self.ready_error: Optional[Exception] = None
        self.prioritized: List[tuple] = []
        self.destroyed = False
        self.engine: Optional["FakeEngine"] = None

    async def wait_ready(self):
        if self.ready_error is not None:
            raise self.ready_error
        await self.ready.wait()

    def prioritize(self, first_unit: int, last_unit: int):
        self.prioritized.append((first_unit, last_unit))

    async def destroy(self, destroy_store: bool = True):
        await self.engine.remove(self.id, destroy_store=destroy_store)


class FakeEngine:
    def __init__(self):
        self.catalog: Dict[str, FakeSession] = {}
        self.sessions: Dict[str, FakeSession] = {}
        self.add_calls: List[tuple] = []
        self.removed: List[tuple] = []
        self.add_errors: Dict[str, Exception] = {}
        self.auto_ready = True
        self.download_rate = 0.0
        self.upload_rate = 0.0
        self.started = False
        self.closed = False

    def register(self, locator: str, session: FakeSession):
        self.catalog[locator] = session

    @property
    def torrents(self) -> List[FakeSession]:
        return list(self.sessions.values())

    def add(self, locator: str, options: AddOptions) -> FakeSession:
        self.add_calls.append((locator, options))
        if locator in self.add_errors:
            raise self.add_errors[locator]

        session = self.catalog[locator]
        if session.id in self.sessions:
            raise DuplicateSessionError(locator)

        session.engine = self
        session.destroyed = False
        self.sessions[session.id] = session
        if self.auto_ready:
            session.ready.set()
        return session

    def get(self, locator_or_id: str) -> Optional[FakeSession]:
        if locator_or_id in self.sessions:
            return self.sessions[locator_or_id]
        session = self.catalog.get(locator_or_id)
        if session is not None and session.id in self.sessions:
            return session
        return None

    async def remove(self, session_id: str, destroy_store: bool = True) -> bool:
        session = self.sessions.pop(session_id, None)
        if session is None:
            return False
        session.destroyed = True
        self.removed.append((session_id, destroy_store))
        return True

    async def start(self):
        self.started = True

    async def close(self):
        self.closed = True


def make_movie() -> FakeSession:
    return FakeSession(MOVIE_HASH, "Movie", [FakeFile("Movie/movie.mp4", MOVIE_DATA)])


def make_show() -> FakeSession:
    ep1 = FakeFile("Show/ep1.mkv", bytes(500))
    ep2 = FakeFile("Show/ep2.mkv", bytes(500), offset=500)
    extras = FakeFile("Show/extras/notes.txt", b"notes", offset=1000)
    return FakeSession(SHOW_HASH, "Show", [ep1, ep2, extras])


@pytest.fixture
def engine():
    engine = FakeEngine()
    engine.register(MOVIE_LOCATOR, make_movie())
    engine.register(SHOW_LOCATOR, make_show())
    return engine


@pytest.fixture
def manager(engine):
    return SessionManager(
        engine,
        download_dir="/tmp/torrent-stream-test",
        keep_files=False,
        add_timeout=0.2,
        grace_period=0.05
    )


@pytest.fixture
def coordinator(manager):
    return RangeStreamCoordinator(
        manager,
        lead_window_bytes=100,
        lookahead_bytes=50,
        no_data_timeout=0.1
    )
