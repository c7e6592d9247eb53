import glob
import json
import logging
import os
import shutil
import sqlite3
import subprocess
import threading
from typing import IO, Any, Callable

from ytrelay.db import update_video_metadata
from ytrelay.media_utils import is_valid_video
from ytrelay.models import PipelineContext, ProcessingState, ProxyConfig, VideoStatus
from ytrelay.network import CookieSource, with_proxy_fallback
from ytrelay.tasks import Task

log = logging.getLogger(__name__)

YT_DLP = shutil.which("yt-dlp") or "yt-dlp"

OUTPUT_TEMPLATE = "%(id)s.%(ext)s"
VIDEO_EXTENSIONS = ("mp4", "webm", "mkv", "flv")


class DownloadError(Exception):
    """Raised when yt-dlp exits non-zero, times out, or produces no file."""


def build_video_url(video_id: str) -> str:
    if video_id.startswith(("http://", "https://")):
        return video_id
    if video_id.startswith("BV"):
        return f"https://www.bilibili.com/video/{video_id}"
    return f"https://www.youtube.com/watch?v={video_id}"


def _log_stdout_line(line: str):
    if "[download]" in line and "%" in line:
        log.debug("yt-dlp: %s", line)
    elif "Destination" in line or "[ffmpeg]" in line or "[Merger]" in line:
        log.info("yt-dlp: %s", line)
    else:
        log.debug("yt-dlp: %s", line)


def _log_stderr_line(line: str):
    log.warning("yt-dlp stderr: %s", line)


def _drain(stream: IO[str], sink: Callable[[str], None], tail: list[str] | None = None):
    for raw in iter(stream.readline, ""):
        line = raw.rstrip()
        if not line:
            continue
        sink(line)
        if tail is not None:
            tail.append(line)
            del tail[:-20]
    stream.close()


def run_streaming(cmd: list[str], timeout: int) -> tuple[int, list[str]]:
    """Run a child process, draining stdout/stderr concurrently into the log.

    Both reader threads are joined before the exit code is read. The child is
    killed if it outlives ``timeout`` seconds. Returns (exit code, last stderr lines).
    """
    proc = subprocess.Popen(
        cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
        text=True, encoding="utf-8", errors="replace", bufsize=1,
    )
    stderr_tail: list[str] = []
    readers = [
        threading.Thread(target=_drain, args=(proc.stdout, _log_stdout_line), daemon=True),
        threading.Thread(target=_drain, args=(proc.stderr, _log_stderr_line, stderr_tail), daemon=True),
    ]
    for t in readers:
        t.start()
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired as e:
        proc.kill()
        proc.wait()
        for t in readers:
            t.join(timeout=5)
        raise DownloadError(f"yt-dlp timed out after {timeout}s") from e
    for t in readers:
        t.join()
    return proc.returncode, stderr_tail


def build_download_command(
    output_dir: str,
    url: str,
    cookies: CookieSource | None = None,
    proxy_url: str | None = None,
) -> list[str]:
    cmd = [YT_DLP, "-P", output_dir, "-o", OUTPUT_TEMPLATE, "--merge-output-format", "mp4", "--no-playlist"]
    if cookies is not None:
        cmd += cookies.ytdlp_args()
    if proxy_url:
        cmd += ["--proxy", proxy_url]
    cmd += ["--", url]
    return cmd


def find_downloaded_file(directory: str) -> str | None:
    """Newest finished video in ``directory``, preferring mp4."""
    for ext in VIDEO_EXTENSIONS:
        matches = [p for p in glob.glob(os.path.join(directory, f"*.{ext}")) if not p.endswith(".part")]
        if matches:
            return max(matches, key=os.path.getmtime)
    return None


def fetch_metadata(
    url: str,
    proxy: ProxyConfig | None = None,
    cookies: CookieSource | None = None,
    timeout: int = 120,
) -> dict[str, Any]:
    """Read {title, description, uploader, duration} via ``--dump-json --no-download``."""

    def attempt(proxy_url: str | None) -> dict[str, Any]:
        cmd = [YT_DLP, "--dump-json", "--no-download", "--no-playlist"]
        if cookies is not None:
            cmd += cookies.ytdlp_args()
        if proxy_url:
            cmd += ["--proxy", proxy_url]
        cmd += ["--", url]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=True, timeout=timeout)
        except subprocess.CalledProcessError as e:
            raise DownloadError(f"metadata dump failed: {(e.stderr or '').strip()[-500:]}") from e
        except subprocess.TimeoutExpired as e:
            raise DownloadError(f"metadata dump timed out after {timeout}s") from e
        first_line = (result.stdout or "").strip().splitlines()[:1]
        if not first_line:
            raise DownloadError("metadata dump produced no output")
        try:
            data = json.loads(first_line[0])
        except json.JSONDecodeError as e:
            raise DownloadError(f"metadata dump returned invalid JSON: {e}") from e
        return {
            "title": data.get("title") or "",
            "description": data.get("description") or "",
            "uploader": data.get("uploader") or "",
            "duration": float(data.get("duration") or 0),
        }

    return with_proxy_fallback(attempt, proxy, "metadata lookup")


class DownloadVideoTask(Task):
    name = "download"
    completes_status = VideoStatus.DOWNLOADED

    def __init__(
        self,
        state: ProcessingState,
        conn: sqlite3.Connection,
        source_url: str = "",
        proxy: ProxyConfig | None = None,
        cookies: CookieSource | None = None,
        timeout: int = 3600,
    ):
        self.state = state
        self.conn = conn
        self.url = source_url or build_video_url(state.video_id)
        self.proxy = proxy
        self.cookies = cookies
        self.timeout = timeout

    def _download(self, proxy_url: str | None) -> str:
        cmd = build_download_command(self.state.current_dir, self.url, self.cookies, proxy_url)
        log.info("Downloading %s%s", self.url, f" via proxy {proxy_url}" if proxy_url else "")
        try:
            returncode, stderr_tail = run_streaming(cmd, self.timeout)
        except FileNotFoundError as e:
            raise DownloadError("yt-dlp not found. Install with: pip install yt-dlp") from e
        if returncode != 0:
            detail = stderr_tail[-1] if stderr_tail else "no stderr output"
            raise DownloadError(f"yt-dlp exited with code {returncode}: {detail}")
        path = find_downloaded_file(self.state.current_dir)
        if not path:
            raise DownloadError("yt-dlp finished but no video file was found")
        return path

    def execute(self, context: PipelineContext) -> bool:
        existing = find_downloaded_file(self.state.current_dir)
        if existing and is_valid_video(existing):
            log.info("Video already downloaded: %s", existing)
            path = existing
        else:
            try:
                path = with_proxy_fallback(self._download, self.proxy, f"download of {self.state.video_id}")
            except DownloadError as e:
                return self.fail(context, f"download failed: {e}")
        context.downloaded_file = path
        log.info("Downloaded %s (%d bytes)", path, os.path.getsize(path))

        try:
            meta = fetch_metadata(self.url, self.proxy, self.cookies)
        except DownloadError as e:
            log.warning("Metadata lookup failed for %s: %s", self.state.video_id, e)
            return True
        context.original_title = meta["title"]
        context.original_description = meta["description"]
        update_video_metadata(self.conn, self.state.video_id, meta["title"] or None, meta["description"] or None)
        return True
