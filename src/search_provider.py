"""
Torrent search over an apibay-compatible JSON API.
"""

import logging
from typing import List, Optional
from urllib.parse import quote

import httpx
from pydantic import BaseModel, Field

from config import settings

logger = logging.getLogger(__name__)

# apibay answers an empty search with a single placeholder entry
EMPTY_INFO_HASH = "0" * 40


class SearchOptions(BaseModel):
    category: Optional[str] = None
    limit: int = Field(default=20, ge=1, le=100)
    min_seeders: int = Field(default=0, ge=0)
    sort: str = "seeders"  # seeders, size, added


class TorrentResult(BaseModel):
    name: str
    infoHash: str
    magnetURI: str
    size: int
    seeds: int
    peers: int
    added: Optional[int] = None
    category: Optional[str] = None


class SearchProvider:
    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None,
                 trackers: Optional[List[str]] = None):
        self.base_url = (base_url or settings.SEARCH_URL).rstrip("/")
        self.trackers = trackers if trackers is not None else [
            t.strip() for t in settings.SEARCH_TRACKERS.split(",") if t.strip()
        ]
        self.http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout or settings.SEARCH_TIMEOUT),
            follow_redirects=True
        )

    def build_magnet(self, info_hash: str, name: str) -> str:
        magnet = f"magnet:?xt=urn:btih:{info_hash}&dn={quote(name)}"
        for tracker in self.trackers:
            magnet += f"&tr={quote(tracker, safe='')}"
        return magnet

    async def search(self, query: str, options: Optional[SearchOptions] = None) -> List[TorrentResult]:
        """Search for torrents matching a query"""
        options = options or SearchOptions()
        params = {"q": query}
        if options.category:
            params["cat"] = options.category

        try:
            response = await self.http_client.get(f"{self.base_url}/q.php", params=params)
            response.raise_for_status()
            entries = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Search for '{query}' failed: {e}")
            return []

        results = []
        for entry in entries:
            info_hash = str(entry.get("info_hash", "")).lower()
            if not info_hash or info_hash == EMPTY_INFO_HASH:
                continue

            seeds = int(entry.get("seeders", 0) or 0)
            if seeds < options.min_seeders:
                continue

            name = entry.get("name", "")
            results.append(TorrentResult(
                name=name,
                infoHash=info_hash,
                magnetURI=self.build_magnet(info_hash, name),
                size=int(entry.get("size", 0) or 0),
                seeds=seeds,
                peers=int(entry.get("leechers", 0) or 0),
                added=int(entry["added"]) if entry.get("added") else None,
                category=str(entry["category"]) if entry.get("category") else None
            ))

        sort_keys = {
            "seeders": lambda r: r.seeds,
            "size": lambda r: r.size,
            "added": lambda r: r.added or 0,
        }
        results.sort(key=sort_keys.get(options.sort, sort_keys["seeders"]), reverse=True)

        logger.info(f"Search for '{query}' returned {len(results)} results")
        return results[:options.limit]

    async def close(self):
        await self.http_client.aclose()
