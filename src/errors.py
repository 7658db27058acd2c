"""Errors raised while resolving torrents and serving streams."""


class StreamProxyError(Exception):
    """Base class for request-scoped failures"""


class SessionAddError(StreamProxyError):
    """The engine rejected a torrent for a reason other than a duplicate add"""

    def __init__(self, locator: str, cause: Exception):
        super().__init__(f"Failed to add torrent {locator}: {cause}")
        self.locator = locator
        self.cause = cause


class SessionAddTimeout(StreamProxyError):
    """Metadata for a torrent did not arrive within the add timeout"""

    def __init__(self, locator: str, timeout: float):
        super().__init__(
            f"Timed out after {timeout}s waiting for metadata of {locator}")
        self.locator = locator
        self.timeout = timeout


class FileNotFoundInSession(StreamProxyError):
    def __init__(self, session_id: str, path: str):
        super().__init__(f"File {path} not found in torrent {session_id}")
        self.session_id = session_id
        self.path = path


class RangeNotSatisfiableError(StreamProxyError):
    """Range header is malformed or lies outside [0, length)"""

    def __init__(self, range_header: str, length: int):
        super().__init__(
            f"Range {range_header!r} not satisfiable for length {length}")
        self.range_header = range_header
        self.length = length


class StreamStallError(StreamProxyError):
    """No bytes were produced within the no-data timeout"""

    def __init__(self, label: str, timeout: float):
        super().__init__(f"Stream {label} stalled: no data for {timeout}s")
        self.label = label
        self.timeout = timeout
