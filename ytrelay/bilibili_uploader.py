import base64
import json
import logging
import os
import time
from typing import Any, TypedDict, cast

import requests

from ytrelay.cookies import load_cookies
from ytrelay.downloader import find_downloaded_file
from ytrelay.media_utils import extract_cover
from ytrelay.models import BilibiliConfig, PipelineContext, ProcessingState, SubtitleLine, VideoRecord, VideoStatus
from ytrelay.network import BROWSER_USER_AGENT
from ytrelay.srt import blocks_to_subtitle_lines, read_srt
from ytrelay.tasks import Task

log = logging.getLogger(__name__)

MEMBER_BASE = "https://member.bilibili.com"
API_BASE = "https://api.bilibili.com"
PREUPLOAD_URL = MEMBER_BASE + "/preupload"
COVER_URL = MEMBER_BASE + "/x/vu/web/cover/up"
SUBMIT_URL = MEMBER_BASE + "/x/vu/web/add/v3"
VIEW_URL = API_BASE + "/x/web-interface/view"
SUBTITLE_URL = API_BASE + "/x/v2/dm/subtitle/draft/save"

UPLOAD_PROFILE = "ugcfx/bup"
DEFAULT_TIMEOUT = 30
CHUNK_TIMEOUT = 120

CODE_NOT_LOGGED_IN = -101
CODE_CSRF_FAILED = -111
CODE_TOO_FREQUENT = 21070
CODE_RATE_LIMITED = -412

REQUIRED_COOKIES = ("SESSDATA", "bili_jct")


class BilibiliAuthError(Exception):
    """Raised when cookies are missing, expired, or rejected."""


class BilibiliRateLimitError(Exception):
    """Raised when Bilibili rejects a call for submitting too often."""


class BilibiliUploadError(Exception):
    """Raised when an upload, submission, or subtitle call fails."""


class PreuploadSession(TypedDict):
    endpoint: str
    upos_uri: str
    auth: str
    biz_id: int
    chunk_size: int


def load_bilibili_cookies(raw: str) -> dict[str, str]:
    """Parse a binding's cookies (JSON export or header string) and check the login keys."""
    try:
        cookies = {c["name"]: str(c.get("value", "")) for c in load_cookies(raw, default_domain=".bilibili.com")}
    except (json.JSONDecodeError, KeyError, TypeError) as e:
        raise BilibiliAuthError(f"Failed to parse Bilibili cookies: {e}") from e
    missing = [k for k in REQUIRED_COOKIES if not cookies.get(k)]
    if missing:
        raise BilibiliAuthError(f"Bilibili cookies missing keys: {', '.join(missing)}")
    return cookies


def _check_envelope(resp: requests.Response, what: str) -> dict[str, Any]:
    if resp.status_code == 412:
        raise BilibiliRateLimitError(f"{what}: HTTP 412 (request blocked)")
    try:
        body = cast(dict[str, Any], resp.json())
    except ValueError as e:
        raise BilibiliUploadError(f"{what}: invalid JSON response (HTTP {resp.status_code})") from e
    code = body.get("code", 0)
    if code in (CODE_NOT_LOGGED_IN, CODE_CSRF_FAILED):
        raise BilibiliAuthError(f"{what}: {body.get('message')} (code {code})")
    if code in (CODE_TOO_FREQUENT, CODE_RATE_LIMITED):
        raise BilibiliRateLimitError(f"{what}: {body.get('message')} (code {code})")
    if code != 0:
        raise BilibiliUploadError(f"{what}: {body.get('message')} (code {code})")
    data = body.get("data")
    return data if isinstance(data, dict) else {}


def subtitles_to_bcc(lines: list[SubtitleLine]) -> dict[str, Any]:
    """Bilibili's BCC subtitle JSON."""
    return {
        "font_size": 0.4,
        "font_color": "#FFFFFF",
        "background_alpha": 0.5,
        "background_color": "#9C27B0",
        "Stroke": "none",
        "body": [
            {
                "from": round(line.start, 3),
                "to": round(line.start + line.duration, 3),
                "location": 2,
                "content": line.text,
            }
            for line in lines
        ],
    }


class BilibiliClient:
    def __init__(self, cookies: dict[str, str], chunk_retries: int = 3):
        self.cookies = cookies
        self.csrf = cookies.get("bili_jct", "")
        self.chunk_retries = chunk_retries
        self.headers = {"User-Agent": BROWSER_USER_AGENT, "Referer": "https://member.bilibili.com/"}

    # -----------------------------------------------------------------------
    # Video upload (upos)
    # -----------------------------------------------------------------------

    def _preupload(self, name: str, size: int) -> PreuploadSession:
        resp = requests.get(
            PREUPLOAD_URL,
            params={"name": name, "size": size, "r": "upos", "profile": UPLOAD_PROFILE, "ssl": 0},
            cookies=self.cookies, headers=self.headers, timeout=DEFAULT_TIMEOUT,
        )
        if resp.status_code == 401:
            raise BilibiliAuthError("preupload: not logged in")
        try:
            data = resp.json()
        except ValueError as e:
            raise BilibiliUploadError(f"preupload: invalid JSON (HTTP {resp.status_code})") from e
        if data.get("OK") != 1:
            raise BilibiliUploadError(f"preupload rejected: {data.get('message') or data}")
        return cast(PreuploadSession, data)

    @staticmethod
    def _upos_url(session: PreuploadSession) -> str:
        return f"https:{session['endpoint']}/{session['upos_uri'].replace('upos://', '')}"

    def _put_chunk(self, url: str, auth: str, params: dict[str, Any], chunk: bytes) -> None:
        for attempt in range(self.chunk_retries):
            try:
                resp = requests.put(
                    url, params=params, data=chunk,
                    headers={**self.headers, "X-Upos-Auth": auth}, timeout=CHUNK_TIMEOUT,
                )
                if resp.status_code == 200:
                    return
                error = f"HTTP {resp.status_code}"
            except requests.RequestException as e:
                error = str(e)
            if attempt < self.chunk_retries - 1:
                wait = 2 ** attempt
                log.warning(
                    "Chunk %d upload failed (%s), retry %d/%d in %ds",
                    params["partNumber"], error, attempt + 1, self.chunk_retries, wait,
                )
                time.sleep(wait)
                continue
            raise BilibiliUploadError(f"chunk {params['partNumber']} failed after {self.chunk_retries} attempts: {error}")

    def upload_video(self, path: str) -> str:
        """Upload a file through upos. Returns the server-side filename used by submit."""
        name = os.path.basename(path)
        size = os.path.getsize(path)
        session = self._preupload(name, size)
        url = self._upos_url(session)
        auth = session["auth"]

        resp = requests.post(
            url, params={"uploads": "", "output": "json"},
            headers={**self.headers, "X-Upos-Auth": auth}, timeout=DEFAULT_TIMEOUT,
        )
        try:
            upload_id = resp.json()["upload_id"]
        except (ValueError, KeyError) as e:
            raise BilibiliUploadError(f"upload init failed (HTTP {resp.status_code})") from e

        chunk_size = int(session["chunk_size"])
        chunks = max((size + chunk_size - 1) // chunk_size, 1)
        log.info("Uploading %s to Bilibili: %d bytes in %d chunks", name, size, chunks)
        with open(path, "rb") as f:
            for i in range(chunks):
                start = i * chunk_size
                chunk = f.read(chunk_size)
                params = {
                    "partNumber": i + 1, "uploadId": upload_id, "chunk": i, "chunks": chunks,
                    "size": len(chunk), "start": start, "end": start + len(chunk), "total": size,
                }
                self._put_chunk(url, auth, params, chunk)

        resp = requests.post(
            url,
            params={"output": "json", "name": name, "profile": UPLOAD_PROFILE,
                    "uploadId": upload_id, "biz_id": session["biz_id"]},
            json={"parts": [{"partNumber": i + 1, "eTag": "etag"} for i in range(chunks)]},
            headers={**self.headers, "X-Upos-Auth": auth}, timeout=DEFAULT_TIMEOUT,
        )
        try:
            ok = resp.json().get("OK") == 1
        except ValueError:
            ok = False
        if not ok:
            raise BilibiliUploadError(f"upload completion failed (HTTP {resp.status_code})")
        filename = os.path.splitext(os.path.basename(session["upos_uri"]))[0]
        log.info("Upload complete: %s", filename)
        return filename

    # -----------------------------------------------------------------------
    # Cover, submission, subtitles
    # -----------------------------------------------------------------------

    def upload_cover(self, path: str) -> str:
        with open(path, "rb") as f:
            encoded = base64.b64encode(f.read()).decode("ascii")
        resp = requests.post(
            COVER_URL,
            data={"cover": f"data:image/jpeg;base64,{encoded}", "csrf": self.csrf},
            cookies=self.cookies, headers=self.headers, timeout=DEFAULT_TIMEOUT,
        )
        url = _check_envelope(resp, "cover upload").get("url")
        if not url:
            raise BilibiliUploadError("cover upload returned no URL")
        return url

    def submit_video(
        self,
        filename: str,
        title: str,
        description: str,
        config: BilibiliConfig,
        cover_url: str = "",
        source_url: str = "",
    ) -> tuple[str, int | None]:
        studio: dict[str, Any] = {
            "copyright": config.copyright,
            "title": title[:80],
            "desc": description[:2000],
            "tag": ",".join(config.tags[:10]),
            "tid": config.tid,
            "cover": cover_url,
            "videos": [{"filename": filename, "title": title[:80], "desc": ""}],
            "dynamic": "",
            "no_reprint": 1 if config.copyright == 1 else 0,
        }
        if config.copyright == 2:
            studio["source"] = source_url
        resp = requests.post(
            SUBMIT_URL, params={"csrf": self.csrf}, json=studio,
            cookies=self.cookies, headers=self.headers, timeout=DEFAULT_TIMEOUT,
        )
        data = _check_envelope(resp, "submit")
        bvid = data.get("bvid")
        if not bvid:
            raise BilibiliUploadError("submit returned no bvid")
        return bvid, data.get("aid")

    def get_video_info(self, bvid: str) -> dict[str, Any]:
        resp = requests.get(
            VIEW_URL, params={"bvid": bvid},
            cookies=self.cookies, headers=self.headers, timeout=DEFAULT_TIMEOUT,
        )
        return _check_envelope(resp, f"view {bvid}")

    def submit_subtitle(self, bvid: str, cid: int, lines: list[SubtitleLine], language: str) -> None:
        resp = requests.post(
            SUBTITLE_URL,
            data={
                "type": 1,
                "oid": cid,
                "lan": language,
                "bvid": bvid,
                "data": json.dumps(subtitles_to_bcc(lines), ensure_ascii=False),
                "submit": "true",
                "sign": "false",
                "csrf": self.csrf,
            },
            cookies=self.cookies, headers=self.headers, timeout=DEFAULT_TIMEOUT,
        )
        _check_envelope(resp, f"subtitle for {bvid}")


# Login and rate-limit errors apply to the whole account and propagate to the scheduler.
_UPLOAD_ERRORS = (BilibiliUploadError, requests.RequestException, OSError)
ACCOUNT_ERRORS = (BilibiliAuthError, BilibiliRateLimitError)


class CoverUploadTask(Task):
    """Upload a frame of the video as the cover. A missing frame is not an error."""

    name = "cover_upload"

    def __init__(self, state: ProcessingState, client: BilibiliClient):
        self.state = state
        self.client = client

    def execute(self, context: PipelineContext) -> bool:
        cover = self.state.cover_path
        if not os.path.isfile(cover):
            video = context.downloaded_file or find_downloaded_file(self.state.current_dir)
            if not video or not extract_cover(video, cover):
                log.info("No cover available for %s, submitting without one", self.state.video_id)
                return True
        try:
            context.cover_url = self.client.upload_cover(cover)
        except _UPLOAD_ERRORS as e:
            return self.fail(context, f"cover upload failed: {e}")
        return True


class UploadTask(Task):
    name = "upload"
    completes_status = VideoStatus.UPLOADED

    def __init__(self, state: ProcessingState, client: BilibiliClient, record: VideoRecord, config: BilibiliConfig):
        self.state = state
        self.client = client
        self.record = record
        self.config = config

    def execute(self, context: PipelineContext) -> bool:
        video = context.downloaded_file or find_downloaded_file(self.state.current_dir)
        if not video or not os.path.isfile(video):
            return self.fail(context, f"video file not found for {self.state.video_id}")
        title = context.translated_title or self.record.translated_title or self.record.title
        description = context.translated_description or self.record.translated_description or ""
        if self.record.source_url:
            description = f"{description}\n\n{self.record.source_url}".strip()
        try:
            filename = self.client.upload_video(video)
            bvid, aid = self.client.submit_video(
                filename, title, description, self.config,
                cover_url=context.cover_url or "", source_url=self.record.source_url,
            )
        except _UPLOAD_ERRORS as e:
            return self.fail(context, f"upload failed: {e}")
        context.bvid = bvid
        context.aid = aid
        log.info("Published %s as %s", self.state.video_id, bvid)
        return True


class SubtitleAttachTask(Task):
    name = "subtitle_attach"

    def __init__(self, state: ProcessingState, client: BilibiliClient, record: VideoRecord, language: str = "zh-CN"):
        self.state = state
        self.client = client
        self.record = record
        self.language = language

    def execute(self, context: PipelineContext) -> bool:
        bvid = context.bvid or self.record.bvid
        if not bvid:
            return self.fail(context, f"{self.state.video_id} has not been published yet")
        path = next((p for p in (self.state.translated_srt, self.state.original_srt) if os.path.isfile(p)), None)
        if not path:
            return self.fail(context, f"no subtitle file for {self.state.video_id}")
        lines = blocks_to_subtitle_lines(read_srt(path))
        if not lines:
            return self.fail(context, f"subtitle file is empty: {path}")
        try:
            info = self.client.get_video_info(bvid)
            cid = info.get("cid")
            if not cid:
                return self.fail(context, f"{bvid} has no cid yet (still processing)")
            self.client.submit_subtitle(bvid, cid, lines, self.language)
        except _UPLOAD_ERRORS as e:
            return self.fail(context, f"subtitle attach failed: {e}")
        log.info("Attached %d subtitle lines to %s", len(lines), bvid)
        return True
