import os
import tempfile
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional

# Application version
VERSION = "1.0.0"


class Settings(BaseSettings):
    """
    Application configuration loaded from environment variables.
    Utilizes pydantic-settings for robust validation and type-casting.
    """

    # Server Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = "info"
    RELOAD: bool = False
    ROOT_PATH: str = ""

    # API Authentication (disabled when unset)
    API_TOKEN: Optional[str] = None

    # Download storage
    DOWNLOAD_DIR: str = os.path.join(
        tempfile.gettempdir(), "torrent-stream-server")
    # When False the download directory is emptied on startup and torrent data
    # is deleted from disk when a session is torn down
    KEEP_DOWNLOADED_FILES: bool = False

    # Transfer engine limits
    MAX_CONNS_PER_TORRENT: int = 50
    # Bytes per second
    DOWNLOAD_SPEED_LIMIT: int = 20 * 1024 * 1024
    UPLOAD_SPEED_LIMIT: int = 1 * 1024 * 1024
    # Port the engine listens on for incoming peer connections
    LISTEN_PORT: int = 6881

    # Session lifecycle
    # Grace period (seconds) after the last viewer leaves before the torrent
    # is removed
    SEED_TIME: float = 60.0
    # How long (seconds) to wait for torrent metadata when adding a torrent
    TORRENT_TIMEOUT: float = 5.0

    # Streaming
    # Bytes prioritized at the start of a file for full (non-range) requests
    LEAD_WINDOW_BYTES: int = 10 * 1024 * 1024
    # Bytes prioritized after the range start for partial requests
    LOOKAHEAD_BYTES: int = 10 * 1024 * 1024
    # If no data is produced for this many seconds the response is aborted
    NO_DATA_TIMEOUT: float = 30.0
    READ_CHUNK_SIZE: int = 256 * 1024
    # How often (seconds) a read stream re-checks for a missing piece
    PIECE_POLL_INTERVAL: float = 0.2

    # Search provider (apibay compatible JSON API)
    SEARCH_URL: str = "https://apibay.org"
    SEARCH_TIMEOUT: float = 10.0
    SEARCH_TRACKERS: str = (
        "udp://tracker.opentrackr.org:1337/announce,"
        "udp://open.stealth.si:80/announce,"
        "udp://tracker.torrent.eu.org:451/announce"
    )

    # Model configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="",  # No prefix, read directly from .env
        extra="ignore"  # Ignore extra environment variables from container
    )


# Global settings instance
settings = Settings()
