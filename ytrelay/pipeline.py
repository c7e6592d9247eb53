import logging
import sqlite3
import threading

from ytrelay.ai_service import AIServiceManager
from ytrelay.bcut import BcutClient, BcutTranscribeTask
from ytrelay.config import AppConfig
from ytrelay.db import get_video, videos_needing_processing
from ytrelay.downloader import DownloadVideoTask
from ytrelay.media_utils import ExtractAudioTask
from ytrelay.models import PipelineContext, ProcessingState, VideoRecord, VideoStatus
from ytrelay.network import resolve_cookie_source
from ytrelay.subtitles import SubtitleFetchTask
from ytrelay.tasks import Task, run_chain
from ytrelay.translator import TranslateTask, Translator

log = logging.getLogger(__name__)


class FallbackTask(Task):
    """Try alternative stage sequences in order until one succeeds."""

    def __init__(self, name: str, alternatives: list[list[Task]], completes_status: VideoStatus | None = None):
        self.name = name
        self.alternatives = alternatives
        self.completes_status = completes_status

    def _run_sequence(self, sequence: list[Task], context: PipelineContext) -> bool:
        for task in sequence:
            try:
                ok = task.execute(context)
            except Exception as e:
                log.exception("[%s] %s raised", self.name, task.name)
                context.error = f"{task.name}: unexpected error: {e}"
                ok = False
            if not ok:
                return False
        return True

    def execute(self, context: PipelineContext) -> bool:
        errors: list[str] = []
        for sequence in self.alternatives:
            context.error = None
            if self._run_sequence(sequence, context):
                return True
            errors.append(context.error or "unknown error")
            log.info("[%s] alternative failed (%s), trying next", self.name, errors[-1])
        return self.fail(context, "; ".join(errors))


def _subtitle_stage(
    conn: sqlite3.Connection,
    record: VideoRecord,
    state: ProcessingState,
    config: AppConfig,
    bcut: BcutClient | None,
) -> Task:
    source = config.pipeline.subtitle_source
    fetch = SubtitleFetchTask(state, conn, stored_subtitles=record.subtitles, proxy=config.proxy)
    asr = [ExtractAudioTask(state), BcutTranscribeTask(state, conn, bcut, language=config.pipeline.asr_language)]
    if source == "platform" or (source == "auto" and record.subtitles):
        return fetch
    if source == "asr":
        return FallbackTask("captions", [asr], completes_status=VideoStatus.CAPTIONED)
    return FallbackTask("captions", [[fetch], asr], completes_status=VideoStatus.CAPTIONED)


def build_chain(
    conn: sqlite3.Connection,
    record: VideoRecord,
    state: ProcessingState,
    config: AppConfig,
    ai: AIServiceManager,
    bcut: BcutClient | None = None,
) -> list[Task]:
    cookies = resolve_cookie_source(config.pipeline.config_dir)
    return [
        DownloadVideoTask(
            state, conn,
            source_url=record.source_url,
            proxy=config.proxy,
            cookies=cookies,
            timeout=config.pipeline.download_timeout_seconds,
        ),
        _subtitle_stage(conn, record, state, config, bcut),
        TranslateTask(
            state, conn, record,
            Translator(ai, config.ai.target_language, config.ai.subtitle_batch_size),
        ),
    ]


def process_video(
    conn: sqlite3.Connection,
    config: AppConfig,
    video_id: str,
    ai: AIServiceManager,
    bcut: BcutClient | None = None,
) -> bool:
    """Run the processing chain for one video. Returns True once it is translated."""
    record = get_video(conn, video_id)
    if record is None:
        log.error("Unknown video %s; submit it first", video_id)
        return False
    if record.status in (VideoStatus.TRANSLATED, VideoStatus.UPLOADED):
        log.info("Video %s already processed (status=%s)", video_id, record.status.value)
        return True
    if record.status is VideoStatus.FAILED:
        log.warning("Video %s is parked as failed (%s); re-submit to retry", video_id, record.last_error)
        return False

    state = ProcessingState.for_video(video_id, config.pipeline.work_dir)
    tasks = build_chain(conn, record, state, config, ai, bcut)
    log.info("=== Processing %s (status=%s) ===", video_id, record.status.value)
    ok, context = run_chain(conn, video_id, tasks, PipelineContext(), config.pipeline.max_chain_attempts)
    if ok:
        log.info("Video %s ready for upload: %s", video_id, context.translated_title)
    return ok


def run_intake_loop(
    conn: sqlite3.Connection,
    config: AppConfig,
    ai: AIServiceManager,
    stop_event: threading.Event,
):
    """Poll for unfinished videos and run their chains until stopped."""
    bcut = BcutClient()
    while not stop_event.is_set():
        for record in videos_needing_processing(conn, limit=config.pipeline.intake_batch_size):
            if stop_event.is_set():
                break
            try:
                process_video(conn, config, record.video_id, ai, bcut)
            except Exception:
                log.exception("Processing %s crashed", record.video_id)
        stop_event.wait(config.pipeline.intake_poll_seconds)
