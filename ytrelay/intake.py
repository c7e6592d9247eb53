import json
import logging
import re
import sqlite3
from urllib.parse import parse_qs, urlparse

from ytrelay.db import upsert_video
from ytrelay.models import SubtitleLine, VideoRecord

log = logging.getLogger(__name__)

_VIDEO_ID_RE = re.compile(r"^[A-Za-z0-9_-]{11}$")
_PATH_PREFIXES = ("/shorts/", "/embed/", "/live/", "/v/")


def extract_video_id(url_or_id: str) -> str | None:
    """Pull the 11-char YouTube id out of a URL or accept a bare id."""
    value = url_or_id.strip()
    if _VIDEO_ID_RE.match(value):
        return value
    parsed = urlparse(value if "://" in value else f"https://{value}")
    host = (parsed.hostname or "").lower()
    candidate = None
    if host.endswith("youtu.be"):
        candidate = parsed.path.lstrip("/").split("/")[0]
    elif host.endswith("youtube.com") or host.endswith("youtube-nocookie.com"):
        if parsed.path == "/watch":
            candidate = (parse_qs(parsed.query).get("v") or [None])[0]
        else:
            for prefix in _PATH_PREFIXES:
                if parsed.path.startswith(prefix):
                    candidate = parsed.path[len(prefix):].split("/")[0]
                    break
    if candidate and _VIDEO_ID_RE.match(candidate):
        return candidate
    return None


def load_subtitle_file(path: str) -> list[SubtitleLine]:
    """Read ``[{"start", "duration", "text"}]`` (the shape the intake API accepts)."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, list):
        raise ValueError(f"Subtitle file {path} must contain a JSON list")
    return [
        SubtitleLine(start=float(d["start"]), duration=float(d.get("duration", 0)), text=str(d["text"]))
        for d in data
    ]


def submit_video(
    conn: sqlite3.Connection,
    url: str,
    title: str = "",
    description: str = "",
    subtitles: list[SubtitleLine] | None = None,
    playlist_id: str | None = None,
) -> VideoRecord:
    """Register a video for processing. Re-submitting restarts its lifecycle."""
    video_id = extract_video_id(url)
    if not video_id:
        raise ValueError(f"Could not extract a YouTube video id from {url!r}")
    source_url = url if "://" in url else f"https://www.youtube.com/watch?v={video_id}"
    record = upsert_video(conn, VideoRecord(
        video_id=video_id,
        source_url=source_url,
        title=title,
        description=description,
        subtitles=subtitles or [],
        playlist_id=playlist_id,
    ))
    log.info("Submitted %s (%d subtitle lines)", video_id, len(record.subtitles))
    return record
