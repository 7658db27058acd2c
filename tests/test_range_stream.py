from range_stream import (
    ByteRange, RangeStream, parse_range_header, units_for_range, prioritize_range
)
from errors import RangeNotSatisfiableError, StreamStallError
from conftest import MOVIE_DATA, MOVIE_HASH, MOVIE_LOCATOR, SHOW_HASH, SHOW_LOCATOR
import pytest
from unittest.mock import Mock


async def read_body(response) -> bytes:
    body = b""
    async for chunk in response.body_iterator:
        body += chunk
    return body


class TestParseRangeHeader:
    def test_no_header_is_whole_file(self):
        byte_range = parse_range_header(None, 1000)

        assert byte_range == ByteRange(start=0, end=999, length=1000)
        assert byte_range.partial is False
        assert byte_range.size == 1000

    def test_explicit_range(self):
        byte_range = parse_range_header("bytes=0-99", 1000)

        assert byte_range.partial is True
        assert byte_range.size == 100
        assert byte_range.content_range == "bytes 0-99/1000"

    def test_open_ended_range(self):
        byte_range = parse_range_header("bytes=200-", 1000)

        assert (byte_range.start, byte_range.end) == (200, 999)

    def test_end_is_clamped(self):
        byte_range = parse_range_header("bytes=900-5000", 1000)

        assert byte_range.end == 999
        assert byte_range.content_range == "bytes 900-999/1000"

    def test_last_byte(self):
        byte_range = parse_range_header("bytes=999-999", 1000)

        assert byte_range.size == 1

    @pytest.mark.parametrize("header", [
        "bytes=1000-",
        "bytes=5000-6000",
        "bytes=50-10",
        "bytes=-100",
        "items=0-10",
        "bytes=0-10,20-30",
        "garbage",
    ])
    def test_unsatisfiable(self, header):
        with pytest.raises(RangeNotSatisfiableError) as exc_info:
            parse_range_header(header, 1000)

        assert exc_info.value.length == 1000


class TestPrioritization:
    def test_units_for_range(self):
        assert units_for_range(16, 0, 0, 99) == (0, 6)
        assert units_for_range(16, 500, 0, 9) == (31, 31)
        assert units_for_range(16, 0, 16, 31) == (1, 1)

    def test_prioritize_failure_is_swallowed(self):
        session = Mock(transfer_unit_size=16)
        session.prioritize.side_effect = RuntimeError("no metadata")
        file = Mock(offset=0)

        prioritize_range(session, file, 0, 99)

        session.prioritize.assert_called_once_with(0, 6)

    def test_prioritize_skipped_without_unit_size(self):
        session = Mock(transfer_unit_size=0)

        prioritize_range(session, Mock(offset=0), 0, 99)

        session.prioritize.assert_not_called()


class TestRangeStreamCoordinator:
    """Test response building and viewer bookkeeping"""

    @pytest.mark.asyncio
    async def test_full_response(self, manager, coordinator):
        session = await manager.get_or_add_session(MOVIE_LOCATOR)
        file = session.files[0]

        response = await coordinator.stream(session, file)

        assert response.status_code == 200
        assert response.headers["content-length"] == "1000"
        assert response.headers["accept-ranges"] == "bytes"
        assert response.headers["content-type"] == "video/mp4"
        assert "content-range" not in response.headers
        # Lead window from the start of the file
        assert session.prioritized == [(0, 6)]
        assert manager.tracker.open_stream_count(MOVIE_HASH) == 1
        assert manager.tracker.get_open_file_paths(
            MOVIE_HASH) == ["Movie/movie.mp4"]

        assert await read_body(response) == MOVIE_DATA
        assert manager.tracker.open_stream_count(MOVIE_HASH) == 0
        assert manager.tracker.get_open_file_paths(MOVIE_HASH) == []
        assert manager.scheduler.is_armed(MOVIE_HASH)

        await manager.scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_partial_response(self, manager, coordinator):
        session = await manager.get_or_add_session(MOVIE_LOCATOR)
        file = session.files[0]

        response = await coordinator.stream(session, file, "bytes=200-")

        assert response.status_code == 206
        assert response.headers["content-range"] == "bytes 200-999/1000"
        assert response.headers["content-length"] == "800"
        # Look-ahead window starting at the requested offset
        assert session.prioritized == [(12, 15)]
        assert await read_body(response) == MOVIE_DATA[200:]

        await manager.scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_partial_window_capped_at_range_end(self, manager, coordinator):
        session = await manager.get_or_add_session(MOVIE_LOCATOR)
        file = session.files[0]

        response = await coordinator.stream(session, file, "bytes=0-9")

        assert session.prioritized == [(0, 0)]
        assert await read_body(response) == MOVIE_DATA[:10]

        await manager.scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_window_uses_file_offset(self, manager, coordinator):
        session = await manager.get_or_add_session(SHOW_LOCATOR)
        ep2 = session.files[1]

        response = await coordinator.stream(session, ep2, "bytes=0-9")

        assert session.prioritized == [(31, 31)]
        assert response.headers["content-type"] == "video/x-matroska"
        await read_body(response)

        await manager.scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_unsatisfiable_range(self, manager, coordinator):
        session = await manager.get_or_add_session(MOVIE_LOCATOR)
        file = session.files[0]

        response = await coordinator.stream(session, file, "bytes=1000-")

        assert response.status_code == 416
        assert response.headers["content-range"] == "bytes */1000"
        assert file.read_streams == []
        assert session.prioritized == []
        assert manager.tracker.open_stream_count(MOVIE_HASH) == 0

    @pytest.mark.asyncio
    async def test_open_failure(self, manager, coordinator):
        session = await manager.get_or_add_session(MOVIE_LOCATOR)
        file = session.files[0]
        file.fail_open = True

        response = await coordinator.stream(session, file)

        assert response.status_code == 500
        assert manager.tracker.open_stream_count(MOVIE_HASH) == 0
        assert manager.tracker.get_open_file_paths(MOVIE_HASH) == []
        # The idle timer armed by the add still releases the torrent
        assert manager.scheduler.is_armed(MOVIE_HASH)

        await manager.scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_cleanup_runs_once(self, manager, coordinator):
        session = await manager.get_or_add_session(MOVIE_LOCATOR)
        file = session.files[0]
        manager.tracker.stream_opened(MOVIE_HASH, file.name)

        response = await coordinator.stream(session, file)
        await read_body(response)
        # Background task runs after the body has been sent
        await response.background()

        assert file.read_streams[0].close_calls == 1
        # The other viewer is still counted
        assert manager.tracker.open_stream_count(MOVIE_HASH) == 1
        assert not manager.scheduler.is_armed(MOVIE_HASH)

    @pytest.mark.asyncio
    async def test_client_disconnect_releases_viewer(self, manager, coordinator):
        session = await manager.get_or_add_session(MOVIE_LOCATOR)
        file = session.files[0]

        response = await coordinator.stream(session, file)
        body = response.body_iterator
        await body.__anext__()
        await body.aclose()

        assert file.read_streams[0].closed
        assert manager.tracker.open_stream_count(MOVIE_HASH) == 0
        assert manager.scheduler.is_armed(MOVIE_HASH)

        await manager.scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_stall_aborts_stream(self, manager, coordinator):
        session = await manager.get_or_add_session(MOVIE_LOCATOR)
        file = session.files[0]
        file.stall = True

        response = await coordinator.stream(session, file)

        with pytest.raises(StreamStallError):
            await read_body(response)

        assert file.read_streams[0].closed
        assert manager.tracker.open_stream_count(MOVIE_HASH) == 0

        await manager.scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_read_error_releases_viewer(self, manager, coordinator):
        session = await manager.get_or_add_session(MOVIE_LOCATOR)
        file = session.files[0]
        file.fail_after = 128

        response = await coordinator.stream(session, file)

        with pytest.raises(RuntimeError):
            await read_body(response)

        assert manager.tracker.open_stream_count(MOVIE_HASH) == 0
        assert manager.tracker.get_open_file_paths(MOVIE_HASH) == []

        await manager.scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_concurrent_streams_counted_separately(self, manager, coordinator):
        session = await manager.get_or_add_session(SHOW_LOCATOR)
        ep1, ep2, _ = session.files

        first = await coordinator.stream(session, ep1)
        second = await coordinator.stream(session, ep2, "bytes=0-99")

        assert manager.tracker.open_stream_count(SHOW_HASH) == 2
        assert sorted(manager.tracker.get_open_file_paths(SHOW_HASH)) == [
            "Show/ep1.mkv", "Show/ep2.mkv"]

        await read_body(first)
        assert manager.tracker.open_stream_count(SHOW_HASH) == 1
        assert not manager.scheduler.is_armed(SHOW_HASH)

        await read_body(second)
        assert manager.scheduler.is_armed(SHOW_HASH)

        await manager.scheduler.shutdown()


class TestRangeStream:
    @pytest.mark.asyncio
    async def test_close_before_open_does_not_touch_counters(self, manager):
        session = await manager.get_or_add_session(MOVIE_LOCATOR)
        file = session.files[0]
        manager.tracker.stream_opened(MOVIE_HASH, file.name)
        stream = RangeStream(manager, session, file,
                             parse_range_header(None, file.length), 0.1)

        await stream.close()
        await stream.close()

        assert stream.closed
        assert manager.tracker.open_stream_count(MOVIE_HASH) == 1
        assert not manager.scheduler.is_armed(MOVIE_HASH)
