import html
import json
import logging
import os
import re
import sqlite3
import xml.etree.ElementTree as ET

import requests

from ytrelay.db import save_subtitles
from ytrelay.models import PipelineContext, ProcessingState, ProxyConfig, SubtitleLine, VideoStatus
from ytrelay.network import BROWSER_USER_AGENT, requests_proxies, with_proxy_fallback
from ytrelay.srt import render_blocks, subtitle_lines_to_blocks, write_srt
from ytrelay.tasks import Task

log = logging.getLogger(__name__)

WATCH_URL = "https://www.youtube.com/watch?v={video_id}"
_TIMEDTEXT_RE = re.compile(r'https://www\.youtube\.com/api/timedtext\?v=[^"]*')
DEFAULT_TIMEOUT = (10, 30)


class SubtitleNotFoundError(Exception):
    """Raised when the video has no platform captions to fetch."""


def _get(url: str, proxy_url: str | None) -> str:
    resp = requests.get(
        url,
        headers={"User-Agent": BROWSER_USER_AGENT, "Accept-Language": "en-US,en;q=0.9"},
        proxies=requests_proxies(proxy_url),
        timeout=DEFAULT_TIMEOUT,
    )
    resp.raise_for_status()
    return resp.text


def find_timedtext_url(page: str) -> str | None:
    match = _TIMEDTEXT_RE.search(page)
    if not match:
        return None
    return match.group(0).replace("\\u0026", "&")


def parse_timedtext(xml_text: str) -> list[SubtitleLine]:
    """Parse ``<transcript><text start dur>...</text></transcript>``."""
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise ValueError(f"Malformed transcript XML: {e}") from e
    lines: list[SubtitleLine] = []
    for node in root.iter("text"):
        content = html.unescape("".join(node.itertext())).replace("\u00a0", " ").strip()
        if not content:
            continue
        lines.append(SubtitleLine(
            start=float(node.get("start", "0")),
            duration=float(node.get("dur", "0")),
            text=content,
        ))
    return lines


def fetch_platform_subtitles(video_id: str, proxy: ProxyConfig | None = None) -> list[SubtitleLine]:
    """Scrape the watch page for the caption track and download it.

    The page lookup and the track download each get their own proxy/direct
    pair of attempts.
    """
    page = with_proxy_fallback(
        lambda proxy_url: _get(WATCH_URL.format(video_id=video_id), proxy_url),
        proxy, f"watch page for {video_id}",
    )
    track_url = find_timedtext_url(page)
    if not track_url:
        raise SubtitleNotFoundError(f"no caption track found for {video_id}")
    xml_text = with_proxy_fallback(lambda proxy_url: _get(track_url, proxy_url), proxy, f"caption track for {video_id}")
    lines = parse_timedtext(xml_text)
    if not lines:
        raise SubtitleNotFoundError(f"caption track for {video_id} is empty")
    return lines


def write_transcript_json(path: str, lines: list[SubtitleLine]):
    data = [{"start": s.start, "duration": s.duration, "text": s.text} for s in lines]
    tmp_path = path + ".tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False, indent=2)
    os.replace(tmp_path, path)


class SubtitleFetchTask(Task):
    name = "subtitle_fetch"
    completes_status = VideoStatus.CAPTIONED

    def __init__(
        self,
        state: ProcessingState,
        conn: sqlite3.Connection,
        stored_subtitles: list[SubtitleLine] | None = None,
        proxy: ProxyConfig | None = None,
    ):
        self.state = state
        self.conn = conn
        self.stored_subtitles = stored_subtitles or []
        self.proxy = proxy

    def execute(self, context: PipelineContext) -> bool:
        if self.stored_subtitles:
            log.info("Using %d subtitle lines submitted with %s", len(self.stored_subtitles), self.state.video_id)
            lines = self.stored_subtitles
        else:
            try:
                lines = fetch_platform_subtitles(self.state.video_id, self.proxy)
            except SubtitleNotFoundError as e:
                return self.fail(context, str(e))
            except (requests.RequestException, ValueError) as e:
                return self.fail(context, f"subtitle fetch failed: {e}")
            save_subtitles(self.conn, self.state.video_id, lines)

        write_transcript_json(self.state.original_json, lines)
        write_srt(self.state.original_srt, render_blocks(subtitle_lines_to_blocks(lines)))
        context.transcript = lines
        context.subtitle_path = self.state.original_srt
        log.info("Wrote %d subtitle lines to %s", len(lines), self.state.original_srt)
        return True
