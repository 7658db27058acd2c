import mimetypes
import os

STREAMING_MIME_TYPES = {
    ".mp4": "video/mp4",
    ".m4v": "video/mp4",
    ".mkv": "video/x-matroska",
    ".webm": "video/webm",
    ".avi": "video/x-msvideo",
    ".mov": "video/quicktime",
    ".ts": "video/mp2t",
    ".m2ts": "video/mp2t",
    ".mpg": "video/mpeg",
    ".mpeg": "video/mpeg",
    ".ogv": "video/ogg",
    ".wmv": "video/x-ms-wmv",
    ".flv": "video/x-flv",
    ".mp3": "audio/mpeg",
    ".m4a": "audio/mp4",
    ".aac": "audio/aac",
    ".flac": "audio/flac",
    ".ogg": "audio/ogg",
    ".opus": "audio/opus",
    ".wav": "audio/wav",
    ".srt": "application/x-subrip",
    ".vtt": "text/vtt",
}


def get_streaming_mime_type(file_name: str) -> str:
    """Determine the content type a media player expects for a file name"""
    ext = os.path.splitext(file_name.lower())[1]
    if ext in STREAMING_MIME_TYPES:
        return STREAMING_MIME_TYPES[ext]

    guessed, _ = mimetypes.guess_type(file_name)
    return guessed or "application/octet-stream"


def get_readable_duration(milliseconds: float) -> str:
    """Format a duration as e.g. '1d 2h 3m 4s'"""
    total_seconds = int(milliseconds // 1000)
    days, rest = divmod(total_seconds, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, seconds = divmod(rest, 60)

    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    parts.append(f"{seconds}s")
    return " ".join(parts)
