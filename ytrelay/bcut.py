"""Bilibili "bcut" remote ASR.

One transcription is a fixed sequence: request an upload session, PUT the
audio in provider-sized parts, commit the parts, create an ASR task, then
poll it until the result is ready.
"""

import json
import logging
import os
import sqlite3
import time
from dataclasses import dataclass
from typing import Any

import requests

from ytrelay.db import save_subtitles
from ytrelay.models import PipelineContext, ProcessingState, SubtitleLine, Utterance, VideoStatus
from ytrelay.network import BROWSER_USER_AGENT
from ytrelay.srt import utterances_to_srt, write_srt
from ytrelay.tasks import Task

log = logging.getLogger(__name__)

API_BASE = "https://member.bilibili.com/x/bcut/rubick-interface"
API_REQ_UPLOAD = API_BASE + "/resource/create"
API_COMMIT_UPLOAD = API_BASE + "/resource/create/complete"
API_CREATE_TASK = API_BASE + "/task"
API_QUERY_RESULT = API_BASE + "/task/result"

MODEL_ID = 7
API_TIMEOUT = 30
PART_TIMEOUT = 60
POLL_INTERVAL_SECONDS = 3
MAX_POLL_ATTEMPTS = 60

TASK_STATE_PENDING = 0
TASK_STATE_RUNNING = 1
TASK_STATE_DONE = 2
TASK_STATE_FAILED = 3

_HEADERS = {"Content-Type": "application/json", "User-Agent": BROWSER_USER_AGENT}


class BcutAPIError(Exception):
    """Non-zero response code, unexpected payload, or unknown task state."""


class BcutUploadError(Exception):
    """Raised when an audio part upload fails. The whole transcription is aborted."""


class BcutTaskFailedError(Exception):
    """Raised when the ASR task reports failure."""


class BcutTimeoutError(Exception):
    """Raised when polling exhausts its attempt budget."""


@dataclass
class UploadSession:
    upload_id: str
    in_boss_key: str
    per_size: int
    upload_urls: list[str]


def _unwrap(resp: requests.Response, what: str) -> dict[str, Any]:
    try:
        body = resp.json()
    except ValueError as e:
        raise BcutAPIError(f"{what}: invalid JSON response (HTTP {resp.status_code})") from e
    if not isinstance(body, dict):
        raise BcutAPIError(f"{what}: unexpected response shape")
    if body.get("code") != 0:
        raise BcutAPIError(f"{what}: {body.get('message') or 'unknown error'} (code {body.get('code')})")
    data = body.get("data")
    return data if isinstance(data, dict) else {}


class BcutClient:
    def __init__(self, poll_interval: float = POLL_INTERVAL_SECONDS, max_poll_attempts: int = MAX_POLL_ATTEMPTS):
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts

    def request_upload(self, filename: str, size: int) -> UploadSession:
        payload = {"type": 2, "name": filename, "size": size, "resource_id": 0, "model_id": MODEL_ID}
        resp = requests.post(API_REQ_UPLOAD, json=payload, headers=_HEADERS, timeout=API_TIMEOUT)
        data = _unwrap(resp, "request upload")
        urls = data.get("upload_urls") or []
        per_size = int(data.get("per_size") or 0)
        if not urls or per_size <= 0:
            raise BcutAPIError("request upload: no upload URLs or part size in response")
        return UploadSession(
            upload_id=str(data.get("upload_id", "")),
            in_boss_key=str(data.get("in_boss_key", "")),
            per_size=per_size,
            upload_urls=list(urls),
        )

    def upload_parts(self, session: UploadSession, payload: bytes) -> list[str]:
        """PUT each part in order and return their ETags. Any failure aborts."""
        etags: list[str] = []
        total = len(session.upload_urls)
        for i, url in enumerate(session.upload_urls):
            chunk = payload[i * session.per_size:(i + 1) * session.per_size]
            try:
                resp = requests.put(
                    url, data=chunk,
                    headers={"Content-Type": "application/octet-stream", "User-Agent": BROWSER_USER_AGENT},
                    timeout=PART_TIMEOUT,
                )
            except requests.RequestException as e:
                raise BcutUploadError(f"part {i + 1}/{total} failed: {e}") from e
            if resp.status_code != 200:
                raise BcutUploadError(f"part {i + 1}/{total} returned HTTP {resp.status_code}")
            etag = (resp.headers.get("Etag") or "").strip('"')
            if not etag:
                raise BcutUploadError(f"part {i + 1}/{total} returned no ETag")
            etags.append(etag)
            log.debug("Uploaded ASR part %d/%d (%d bytes)", i + 1, total, len(chunk))
        return etags

    def commit_upload(self, session: UploadSession, etags: list[str]) -> dict[str, Any]:
        payload = {
            "in_boss_key": session.in_boss_key,
            "upload_id": session.upload_id,
            "model_id": MODEL_ID,
            "parts": [{"part_number": i + 1, "etag": tag} for i, tag in enumerate(etags)],
        }
        resp = requests.post(API_COMMIT_UPLOAD, json=payload, headers=_HEADERS, timeout=API_TIMEOUT)
        return _unwrap(resp, "commit upload")

    def create_task(self, session: UploadSession) -> str:
        payload = {
            "resource": {"in_boss_key": session.in_boss_key, "upload_id": session.upload_id, "model_id": MODEL_ID},
            "model_id": str(MODEL_ID + 1),
        }
        resp = requests.post(API_CREATE_TASK, json=payload, headers=_HEADERS, timeout=API_TIMEOUT)
        task_id = _unwrap(resp, "create task").get("task_id")
        if not task_id:
            raise BcutAPIError("create task: response carried no task_id")
        return str(task_id)

    def poll_result(self, task_id: str) -> dict[str, Any]:
        """Query until the task is done. Failure and unknown states stop immediately."""
        for attempt in range(1, self.max_poll_attempts + 1):
            resp = requests.get(
                API_QUERY_RESULT,
                params={"model_id": MODEL_ID, "task_id": task_id},
                headers=_HEADERS,
                timeout=API_TIMEOUT,
            )
            data = _unwrap(resp, "query result")
            state = data.get("status", data.get("state"))
            if state == TASK_STATE_DONE:
                log.info("ASR task %s finished after %d queries", task_id, attempt)
                return data
            if state == TASK_STATE_FAILED:
                raise BcutTaskFailedError(
                    f"ASR task {task_id} failed with error code {data.get('error_code', 'unknown')}"
                )
            if state not in (TASK_STATE_PENDING, TASK_STATE_RUNNING):
                raise BcutAPIError(f"ASR task {task_id} returned unknown state {state!r}")
            log.debug("ASR task %s in progress (state=%s, query %d/%d)", task_id, state, attempt, self.max_poll_attempts)
            if attempt < self.max_poll_attempts:
                time.sleep(self.poll_interval)
        raise BcutTimeoutError(f"ASR task {task_id} not finished after {self.max_poll_attempts} queries")

    def transcribe(self, audio_path: str) -> tuple[list[Utterance], str]:
        with open(audio_path, "rb") as f:
            payload = f.read()
        session = self.request_upload(os.path.basename(audio_path), len(payload))
        log.info("ASR upload session %s: %d parts of %d bytes", session.upload_id, len(session.upload_urls), session.per_size)
        etags = self.upload_parts(session, payload)
        self.commit_upload(session, etags)
        task_id = self.create_task(session)
        log.info("ASR task created: %s", task_id)
        return parse_result(self.poll_result(task_id))


def parse_result(data: dict[str, Any]) -> tuple[list[Utterance], str]:
    """``data.result`` is itself a JSON string of utterances in milliseconds."""
    raw = data.get("result")
    if not raw:
        raise BcutAPIError("ASR result is empty")
    try:
        result = json.loads(raw) if isinstance(raw, str) else raw
    except json.JSONDecodeError as e:
        raise BcutAPIError(f"ASR result is not valid JSON: {e}") from e
    utterances = [
        Utterance(
            start_ms=int(u.get("start_time", 0)),
            end_ms=int(u.get("end_time", 0)),
            text=str(u.get("transcript", "")).strip(),
        )
        for u in result.get("utterances") or []
        if str(u.get("transcript", "")).strip()
    ]
    return utterances, result.get("language") or ""


class BcutTranscribeTask(Task):
    name = "transcribe"
    completes_status = VideoStatus.CAPTIONED

    def __init__(
        self,
        state: ProcessingState,
        conn: sqlite3.Connection | None = None,
        client: BcutClient | None = None,
        language: str = "zh",
    ):
        self.state = state
        self.conn = conn
        self.client = client or BcutClient()
        self.language = language

    def _audio_path(self) -> str | None:
        for path in (self.state.original_wav, self.state.original_mp3):
            if os.path.isfile(path):
                return path
        return None

    def execute(self, context: PipelineContext) -> bool:
        if os.path.isfile(self.state.original_srt) and os.path.getsize(self.state.original_srt) > 0:
            log.info("Transcript already present: %s", self.state.original_srt)
            context.subtitle_path = self.state.original_srt
            return True
        audio = self._audio_path()
        if not audio:
            return self.fail(context, f"audio file not found for {self.state.video_id}")
        try:
            utterances, language = self.client.transcribe(audio)
        except (BcutAPIError, BcutUploadError, BcutTaskFailedError, BcutTimeoutError) as e:
            return self.fail(context, f"transcription failed: {e}")
        except requests.RequestException as e:
            return self.fail(context, f"transcription request failed: {e}")
        if not utterances:
            return self.fail(context, "transcription returned no utterances")

        write_srt(self.state.original_srt, utterances_to_srt(utterances))
        lines = [
            SubtitleLine(start=u.start_ms / 1000, duration=(u.end_ms - u.start_ms) / 1000, text=u.text)
            for u in utterances
        ]
        if self.conn is not None:
            save_subtitles(self.conn, self.state.video_id, lines)
        context.transcript = lines
        context.subtitle_path = self.state.original_srt
        log.info(
            "Transcribed %s: %d utterances (language=%s)",
            self.state.video_id, len(utterances), language or self.language,
        )
        return True
