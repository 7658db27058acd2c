"""
Transfer engine capability set.

The streaming core only talks to the engine through these protocols, so the
libtorrent adapter can be swapped for an in-memory engine in tests.
"""

from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Protocol


class DuplicateSessionError(Exception):
    """Raised by ``TransferEngine.add`` when the torrent is already being added"""

    def __init__(self, locator: str):
        super().__init__(f"Cannot add duplicate torrent {locator}")
        self.locator = locator


@dataclass
class AddOptions:
    download_dir: Optional[str] = None
    # Start with every file deselected; streaming selects what it needs
    deselect: bool = True
    # Delete downloaded data when the session is destroyed
    destroy_store_on_destroy: bool = True


class ReadStream(Protocol):
    """In-order byte stream over a file range.

    Pieces may complete out of order inside the engine; the stream still
    yields bytes strictly in order.
    """

    def __aiter__(self) -> AsyncIterator[bytes]: ...

    async def __anext__(self) -> bytes: ...

    async def close(self) -> None: ...


class EngineFile(Protocol):
    name: str
    path: str
    length: int
    # Byte offset of this file inside the whole torrent
    offset: int
    progress: float
    downloaded: int

    def select(self) -> None: ...

    def deselect(self) -> None: ...

    def create_read_stream(self, start: Optional[int] = None,
                           end: Optional[int] = None) -> ReadStream: ...


class EngineSession(Protocol):
    id: str
    name: str
    length: int
    transfer_unit_size: int
    files: List[EngineFile]
    downloaded: int
    uploaded: int
    download_rate: float
    upload_rate: float
    peer_count: int
    progress: float

    async def wait_ready(self) -> None: ...

    def prioritize(self, first_unit: int, last_unit: int) -> None: ...

    async def destroy(self, destroy_store: bool = True) -> None: ...


class TransferEngine(Protocol):
    download_rate: float
    upload_rate: float

    @property
    def torrents(self) -> List[EngineSession]: ...

    def add(self, locator: str, options: AddOptions) -> EngineSession: ...

    def get(self, locator_or_id: str) -> Optional[EngineSession]: ...

    async def remove(self, session_id: str, destroy_store: bool = True) -> bool: ...

    async def start(self) -> None: ...

    async def close(self) -> None: ...
