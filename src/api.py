from fastapi import FastAPI, HTTPException, Query, Request, Depends, Header
from fastapi.responses import JSONResponse, Response
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging
import os
import shutil
from urllib.parse import quote, unquote
from typing import List, Optional, Tuple

from config import settings, VERSION
from errors import FileNotFoundInSession, SessionAddError, SessionAddTimeout
from models import ContentInfo, RemoveResult
from range_stream import RangeStreamCoordinator
from search_provider import SearchOptions, SearchProvider, TorrentResult
from session_manager import SessionManager

# Set up logging
logging.basicConfig(level=settings.LOG_LEVEL.upper())
logger = logging.getLogger(__name__)


def prepare_download_dir(download_dir: str, keep_files: bool):
    """Create the download directory, emptying it unless downloads are kept"""
    os.makedirs(download_dir, exist_ok=True)
    if keep_files:
        return

    for entry in os.listdir(download_dir):
        path = os.path.join(download_dir, entry)
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        else:
            os.remove(path)
    logger.info(f"Emptied download directory {download_dir}")


def create_session_manager() -> SessionManager:
    """Build the session manager backed by two libtorrent sessions"""
    from libtorrent_engine import LibtorrentEngine

    engine = LibtorrentEngine(
        download_dir=settings.DOWNLOAD_DIR,
        listen_port=settings.LISTEN_PORT
    )
    # Metadata lookups get their own session and scratch directory
    info_engine = LibtorrentEngine(
        download_dir=os.path.join(settings.DOWNLOAD_DIR, ".metadata"),
        listen_port=settings.LISTEN_PORT + 1
    )
    return SessionManager(engine, info_engine=info_engine)


def split_stream_path(request: Request, stream_path: str) -> Tuple[str, str]:
    """Split /stream/<locator>/<file path> into its two percent-decoded parts.

    Both parts may contain encoded slashes, so the split happens on the raw
    path before decoding.
    """
    raw_path = request.scope.get("raw_path")
    if raw_path:
        raw = raw_path.decode("latin-1")
        marker = "/stream/"
        index = raw.find(marker)
        if index >= 0:
            raw_locator, sep, raw_file_path = raw[index + len(marker):].partition("/")
            if sep and raw_locator and raw_file_path:
                return unquote(raw_locator), unquote(raw_file_path)
            raise ValueError(f"Invalid stream path: {raw}")

    locator, sep, file_path = stream_path.partition("/")
    if not sep or not locator or not file_path:
        raise ValueError(f"Invalid stream path: {stream_path}")
    return locator, file_path


# Global managers, created on startup
session_manager: Optional[SessionManager] = None
stream_coordinator: Optional[RangeStreamCoordinator] = None
search_provider = SearchProvider()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    global session_manager, stream_coordinator

    # Startup
    logger.info("⚡️ torrent stream proxy starting up...")
    prepare_download_dir(settings.DOWNLOAD_DIR, settings.KEEP_DOWNLOADED_FILES)

    if session_manager is None:
        session_manager = create_session_manager()
    if stream_coordinator is None:
        stream_coordinator = RangeStreamCoordinator(session_manager)
    await session_manager.start()

    yield

    # Shutdown
    logger.info("torrent stream proxy shutting down...")
    await session_manager.stop()
    await search_provider.close()


app = FastAPI(
    title="torrent stream proxy",
    version=VERSION,
    description="Streams torrent content over HTTP with range support for media players",
    lifespan=lifespan,
    root_path=settings.ROOT_PATH,
)

# Configure CORS to allow all origins for streaming compatibility
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
)


async def verify_token(
    x_api_token: Optional[str] = Header(None, alias="X-API-Token"),
    api_token: Optional[str] = Query(
        None, description="API token (alternative to X-API-Token header)")
):
    """
    Verify API token if API_TOKEN is configured.
    Token can be provided via:
    - X-API-Token header (recommended)
    - api_token query parameter (for browser access or when headers are difficult)

    If API_TOKEN is not set in environment, authentication is disabled.
    """
    if not settings.API_TOKEN:
        return True

    provided_token = x_api_token or api_token

    if not provided_token:
        raise HTTPException(
            status_code=401,
            detail="API token required. Provide token via X-API-Token header or api_token query parameter.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if provided_token != settings.API_TOKEN:
        raise HTTPException(
            status_code=403,
            detail="Invalid API token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return True


@app.get("/")
async def root():
    stats = session_manager.get_stats()
    return {
        "status": "running",
        "message": "torrent stream proxy is running",
        "version": VERSION,
        "uptime": stats["uptime"],
    }


@app.get("/health")
async def health_check():
    """Health check endpoint with summary stats"""
    try:
        stats = session_manager.get_stats()
        return {
            "status": "healthy",
            "version": VERSION,
            "uptime": stats["uptime"],
            "active_torrents": len(stats["activeTorrents"]),
            "open_streams": stats["openStreams"],
        }
    except Exception as e:
        logger.error(f"Error in health check: {e}")
        return JSONResponse(status_code=500, content={"status": "error", "error": str(e)})


@app.get("/api/stats", dependencies=[Depends(verify_token)])
async def get_stats():
    """JSON stats for the dashboard"""
    return session_manager.get_stats()


@app.delete("/api/torrents/{info_hash}", dependencies=[Depends(verify_token)], response_model=RemoveResult)
async def delete_torrent(info_hash: str):
    """Remove a torrent immediately and delete its data unless downloads are kept"""
    try:
        ok = await session_manager.remove_session(info_hash)
    except Exception as e:
        logger.error(f"Error removing torrent {info_hash}: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    return JSONResponse(status_code=200 if ok else 404, content={"ok": ok})


@app.get("/torrents/{query}", response_model=List[TorrentResult])
async def search_torrents(query: str):
    return await search_provider.search(query)


@app.post("/torrents/{query}", response_model=List[TorrentResult])
async def search_torrents_with_options(query: str, options: Optional[SearchOptions] = None):
    return await search_provider.search(query, options)


@app.get("/torrent/{torrent_uri:path}", response_model=ContentInfo)
async def get_torrent_info(request: Request, torrent_uri: str):
    """Torrent metadata with a stream URL for every file"""
    info = await session_manager.get_content_info(torrent_uri)
    if info is None:
        raise HTTPException(status_code=500, detail="Failed to get torrent")

    base_url = str(request.base_url).rstrip("/")
    for file in info.files:
        file.url = "/".join([
            base_url,
            "stream",
            quote(torrent_uri, safe=""),
            quote(file.path, safe=""),
        ])

    return info


@app.get("/stream/{stream_path:path}")
async def stream_file(request: Request, stream_path: str) -> Response:
    """Stream a file of a torrent with Range support"""
    try:
        torrent_uri, file_path = split_stream_path(request, stream_path)
    except ValueError:
        raise HTTPException(status_code=404, detail="File not found")

    try:
        session, file = await session_manager.resolve_file(torrent_uri, file_path)
    except FileNotFoundInSession as e:
        logger.info(str(e))
        raise HTTPException(status_code=404, detail="File not found")
    except (SessionAddError, SessionAddTimeout) as e:
        logger.error(f"Error adding torrent for stream: {e}")
        raise HTTPException(status_code=500, detail="Failed to add torrent")

    range_header = request.headers.get("range")
    if range_header:
        logger.info(f"Range request: {range_header}")

    session_manager.rescope_selection(session, file)
    return await stream_coordinator.stream(session, file, range_header)
