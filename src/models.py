from pydantic import BaseModel
from typing import List, Optional


class FileInfo(BaseModel):
    name: str
    path: str
    size: int
    url: Optional[str] = None


class ContentInfo(BaseModel):
    """Metadata of a torrent as returned by GET /torrent/{locator}"""
    name: str
    id: str
    size: int
    files: List[FileInfo]


class RemoveResult(BaseModel):
    ok: bool
