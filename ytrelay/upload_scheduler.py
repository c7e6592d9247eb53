"""Hourly two-phase publishing to Bilibili.

Phase 1 uploads translated videos. Phase 2 attaches subtitles once a
published video has had time to go public, since the subtitle API rejects
videos that are still in review. Each phase tracks its own completion
(``video_published_at`` / ``subtitle_attached``) so nothing is submitted
twice.
"""

import logging
import sqlite3
import threading
from datetime import UTC, datetime, timedelta
from typing import Callable

from ytrelay.bilibili_uploader import (
    ACCOUNT_ERRORS,
    BilibiliAuthError,
    BilibiliClient,
    CoverUploadTask,
    SubtitleAttachTask,
    UploadTask,
    load_bilibili_cookies,
)
from ytrelay.config import AppConfig
from ytrelay.credentials import CredentialCipher, CredentialError
from ytrelay.db import (
    get_latest_binding,
    get_primary_binding,
    mark_subtitle_attached,
    mark_video_published,
    record_upload_failure,
    videos_ready_for_publish,
    videos_ready_for_subtitles,
)
from ytrelay.models import BilibiliConfig, PipelineContext, ProcessingState, VideoRecord
from ytrelay.tasks import Task

log = logging.getLogger(__name__)

PLATFORM = "bilibili"


def load_bilibili_client(conn: sqlite3.Connection, config: BilibiliConfig) -> BilibiliClient:
    """Build a client from the bound account, falling back to a login file."""
    binding = get_primary_binding(conn, config.user_id, PLATFORM) or get_latest_binding(conn, PLATFORM)
    if binding is not None:
        raw = CredentialCipher.from_env().open_binding(binding).cookies
    elif config.login_file:
        try:
            with open(config.login_file, encoding="utf-8") as f:
                raw = f.read()
        except OSError as e:
            raise BilibiliAuthError(f"Failed to read login file {config.login_file}: {e}") from e
    else:
        raise BilibiliAuthError("No Bilibili account bound and no login_file configured")
    return BilibiliClient(load_bilibili_cookies(raw), chunk_retries=config.chunk_retries)


def _run_tasks(tasks: list[Task], context: PipelineContext) -> bool:
    for task in tasks:
        try:
            ok = task.execute(context)
        except ACCOUNT_ERRORS:
            raise
        except Exception as e:
            log.exception("%s raised", task.name)
            context.error = f"{task.name}: unexpected error: {e}"
            ok = False
        if not ok:
            return False
    return True


class UploadScheduler:
    def __init__(
        self,
        conn: sqlite3.Connection,
        config: AppConfig,
        client_factory: Callable[[], BilibiliClient] | None = None,
    ):
        self.conn = conn
        self.config = config
        self.client_factory = client_factory or (lambda: load_bilibili_client(conn, config.bilibili))

    def _state(self, record: VideoRecord) -> ProcessingState:
        return ProcessingState.for_video(record.video_id, self.config.pipeline.work_dir)

    def _publish(self, client: BilibiliClient, record: VideoRecord, now: datetime) -> bool:
        state = self._state(record)
        context = PipelineContext()
        tasks: list[Task] = [
            CoverUploadTask(state, client),
            UploadTask(state, client, record, self.config.bilibili),
        ]
        if not _run_tasks(tasks, context) or not context.bvid:
            failures = record_upload_failure(self.conn, record.video_id, context.error or "publish failed")
            log.warning("Publish of %s failed (%d so far): %s", record.video_id, failures, context.error)
            return False
        if not mark_video_published(self.conn, record.video_id, context.bvid, context.aid, now.isoformat()):
            log.warning("Video %s was already marked published; keeping the first record", record.video_id)
        return True

    def _attach_subtitles(self, client: BilibiliClient, record: VideoRecord) -> bool:
        context = PipelineContext(bvid=record.bvid)
        task = SubtitleAttachTask(self._state(record), client, record, self.config.bilibili.subtitle_language)
        if not _run_tasks([task], context):
            failures = record_upload_failure(self.conn, record.video_id, context.error or "subtitle attach failed")
            log.warning("Subtitle attach for %s failed (%d so far): %s", record.video_id, failures, context.error)
            return False
        mark_subtitle_attached(self.conn, record.video_id)
        return True

    def tick(self, now: datetime | None = None) -> dict[str, int]:
        """Run both phases once.

        One record's failure never stops the others. A login or rate-limit
        error ends the tick early.
        """
        now = now or datetime.now(UTC)
        cfg = self.config.scheduler
        result = {"published": 0, "subtitled": 0, "failed": 0}

        to_publish = videos_ready_for_publish(self.conn, cfg.batch_size, cfg.max_upload_failures)
        published_before = (now - timedelta(seconds=cfg.subtitle_delay_seconds)).isoformat()
        to_subtitle = videos_ready_for_subtitles(self.conn, published_before, cfg.batch_size, cfg.max_upload_failures)
        if not to_publish and not to_subtitle:
            log.info("Upload tick: nothing to do")
            return result

        try:
            client = self.client_factory()
        except (BilibiliAuthError, CredentialError) as e:
            log.error("Upload tick skipped, Bilibili login unavailable: %s", e)
            return result

        try:
            for record in to_publish:
                try:
                    ok = self._publish(client, record, now)
                except ACCOUNT_ERRORS:
                    raise
                except Exception as e:
                    log.exception("Publish of %s crashed", record.video_id)
                    record_upload_failure(self.conn, record.video_id, f"publish crashed: {e}")
                    ok = False
                result["published" if ok else "failed"] += 1

            for record in to_subtitle:
                try:
                    ok = self._attach_subtitles(client, record)
                except ACCOUNT_ERRORS:
                    raise
                except Exception as e:
                    log.exception("Subtitle attach for %s crashed", record.video_id)
                    record_upload_failure(self.conn, record.video_id, f"subtitle attach crashed: {e}")
                    ok = False
                result["subtitled" if ok else "failed"] += 1
        except ACCOUNT_ERRORS as e:
            # upload_fail_count is left unchanged for every record.
            log.error("Upload tick stopped, Bilibili account unavailable: %s", e)

        log.info(
            "Upload tick: %d published, %d subtitled, %d failed",
            result["published"], result["subtitled"], result["failed"],
        )
        return result

    def run_forever(self, stop_event: threading.Event):
        while not stop_event.is_set():
            try:
                self.tick()
            except Exception:
                log.exception("Upload tick crashed")
            stop_event.wait(self.config.scheduler.interval_seconds)
