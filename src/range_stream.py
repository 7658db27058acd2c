"""
Range Stream Coordinator

Serves one file of a torrent as an HTTP byte stream: parses the Range
header, asks the engine to fetch the pieces under the requested window
first, pipes bytes to the client and unwinds viewer counters exactly once
when the response ends for any reason.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Tuple

from fastapi.responses import Response, StreamingResponse
from starlette.background import BackgroundTask

from config import settings
from engine import EngineFile, EngineSession, ReadStream
from errors import RangeNotSatisfiableError, StreamStallError
from file_utils import get_streaming_mime_type
from session_manager import SessionManager

logger = logging.getLogger(__name__)

RANGE_REGEX = re.compile(r"^bytes=(\d+)-(\d*)$")


@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int
    # Total length of the file the range applies to
    length: int
    partial: bool = False

    @property
    def size(self) -> int:
        return self.end - self.start + 1

    @property
    def content_range(self) -> str:
        return f"bytes {self.start}-{self.end}/{self.length}"


def parse_range_header(range_header: Optional[str], length: int) -> ByteRange:
    """Parse a single `bytes=start-end` range, clamping end to the file length.

    No header means the whole file. Raises RangeNotSatisfiableError for
    malformed headers, start > end or start beyond the end of the file.
    """
    if not range_header:
        return ByteRange(start=0, end=length - 1, length=length)

    m = RANGE_REGEX.match(range_header.strip())
    if not m:
        raise RangeNotSatisfiableError(range_header, length)

    start = int(m.group(1))
    end = int(m.group(2)) if m.group(2) else length - 1

    if start > end or start >= length:
        raise RangeNotSatisfiableError(range_header, length)

    return ByteRange(start=start, end=min(end, length - 1), length=length, partial=True)


def units_for_range(unit_size: int, file_offset: int, start: int, end: int) -> Tuple[int, int]:
    """Inclusive transfer-unit indexes covering [file_offset+start, file_offset+end]"""
    return (file_offset + start) // unit_size, (file_offset + end) // unit_size


def prioritize_range(session: EngineSession, file: EngineFile, start: int, end: int):
    """Ask the engine to fetch the pieces under a byte window ahead of everything else"""
    try:
        unit_size = session.transfer_unit_size
        if not unit_size or end < start:
            return

        first_unit, last_unit = units_for_range(
            unit_size, file.offset, start, end)
        session.prioritize(first_unit, last_unit)
    except Exception as e:
        logger.warning(f"Failed to prioritize range: {e}")


class RangeStream:
    """One open read of a file, scoped to a single HTTP response"""

    def __init__(
        self,
        manager: SessionManager,
        session: EngineSession,
        file: EngineFile,
        byte_range: ByteRange,
        no_data_timeout: float
    ):
        self.manager = manager
        self.session = session
        self.file = file
        self.byte_range = byte_range
        self.no_data_timeout = no_data_timeout
        self.bytes_served = 0
        self._reader: Optional[ReadStream] = None
        self._opened = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def open(self):
        """Open the read handle and register the viewer"""
        self._reader = self.file.create_read_stream(
            start=self.byte_range.start, end=self.byte_range.end)
        self._opened = True
        self.manager.tracker.file_stream_opened(
            self.session.id, self.file.path)
        self.manager.tracker.stream_opened(self.session.id, self.file.name)

    async def close(self):
        """Release the read handle and the viewer counts. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True

        try:
            if self._reader is not None:
                await self._reader.close()
        except Exception as e:
            logger.warning(f"Error closing read stream for {self.file.name}: {e}")
        finally:
            if self._opened:
                self.manager.tracker.file_stream_closed(
                    self.session.id, self.file.path)
                self.manager.tracker.stream_closed(
                    self.session.id, self.file.name)

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        """Pipe the read handle, aborting if no data arrives within the timeout"""
        try:
            while True:
                try:
                    chunk = await asyncio.wait_for(self._reader.__anext__(), timeout=self.no_data_timeout)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError:
                    logger.warning(
                        f"Stream timeout: no data for {self.no_data_timeout}s ({self.file.name})")
                    raise StreamStallError(self.file.name, self.no_data_timeout)

                self.bytes_served += len(chunk)
                yield chunk
        except asyncio.CancelledError:
            logger.info(
                f"Client disconnected from {self.file.name} after {self.bytes_served} bytes")
            raise
        except StreamStallError:
            raise
        except Exception as e:
            logger.error(f"Stream error ({self.file.name}): {e}")
            raise
        finally:
            await self.close()


class RangeStreamCoordinator:
    def __init__(
        self,
        manager: SessionManager,
        lead_window_bytes: Optional[int] = None,
        lookahead_bytes: Optional[int] = None,
        no_data_timeout: Optional[float] = None
    ):
        self.manager = manager
        self.lead_window_bytes = settings.LEAD_WINDOW_BYTES if lead_window_bytes is None else lead_window_bytes
        self.lookahead_bytes = settings.LOOKAHEAD_BYTES if lookahead_bytes is None else lookahead_bytes
        self.no_data_timeout = settings.NO_DATA_TIMEOUT if no_data_timeout is None else no_data_timeout

    async def stream(
        self,
        session: EngineSession,
        file: EngineFile,
        range_header: Optional[str] = None
    ) -> Response:
        """Build the response for a file, honoring an optional Range header.

        Nothing is awaited before the viewer is registered, so an eviction
        timer cannot fire between session lookup and registration.
        """
        mime = get_streaming_mime_type(file.name)

        try:
            byte_range = parse_range_header(range_header, file.length)
        except RangeNotSatisfiableError:
            logger.info(
                f"Range not satisfiable for {file.name}: {range_header}")
            return Response(
                status_code=416,
                headers={"Content-Range": f"bytes */{file.length}"}
            )

        headers = {
            "Content-Type": mime,
            "Accept-Ranges": "bytes",
            "Cache-Control": "no-cache",
            "Content-Length": str(max(byte_range.size, 0))
        }

        if byte_range.partial:
            status_code = 206
            headers["Content-Range"] = byte_range.content_range
            window_end = min(byte_range.end,
                             byte_range.start + self.lookahead_bytes)
            logger.info(f"Serving {byte_range.content_range} of {file.name}")
        else:
            status_code = 200
            window_end = min(file.length - 1, self.lead_window_bytes)
            logger.info(f"Serving {file.name} ({file.length} bytes)")

        if file.length == 0:
            return Response(status_code=status_code, headers=headers)

        prioritize_range(session, file, byte_range.start, window_end)

        range_stream = RangeStream(
            self.manager, session, file, byte_range, self.no_data_timeout)
        try:
            range_stream.open()
        except Exception as e:
            logger.error(f"Failed to open read stream for {file.name}: {e}")
            await range_stream.close()
            return Response("Failed to open stream", status_code=500)

        return StreamingResponse(
            range_stream.iter_bytes(),
            status_code=status_code,
            headers=headers,
            media_type=mime,
            background=BackgroundTask(range_stream.close)
        )
