import logging
import sqlite3
import time

from ytrelay.db import advance_status, record_chain_failure
from ytrelay.models import PipelineContext, VideoStatus

log = logging.getLogger(__name__)


class Task:
    """One pipeline stage.

    Subclasses implement ``execute``. It returns True on success. On failure
    it sets ``context.error`` (``fail`` does both) and returns False. Outputs
    go to deterministic paths keyed by video id, so re-running a stage
    overwrites its previous artifact instead of piling up new ones.
    """

    name = "task"
    # Status the video reaches once this stage has committed its artifact.
    completes_status: VideoStatus | None = None

    def execute(self, context: PipelineContext) -> bool:
        raise NotImplementedError

    def fail(self, context: PipelineContext, message: str) -> bool:
        context.error = message
        log.error("[%s] %s", self.name, message)
        return False


def run_chain(
    conn: sqlite3.Connection,
    video_id: str,
    tasks: list[Task],
    context: PipelineContext | None = None,
    max_attempts: int = 3,
) -> tuple[bool, PipelineContext]:
    """Run tasks in order, stopping at the first failure.

    Completed stages are not rolled back; each success is persisted right away
    so a crash leaves the record at its last completed stage.
    """
    context = context or PipelineContext()
    for task in tasks:
        started = time.monotonic()
        log.info("[%s] %s: starting", video_id, task.name)
        try:
            ok = task.execute(context)
        except Exception as e:
            log.exception("[%s] %s raised", video_id, task.name)
            context.error = f"{task.name}: unexpected error: {e}"
            ok = False
        if not ok:
            error = context.error or f"{task.name} failed"
            fail_count = record_chain_failure(conn, video_id, error, max_attempts)
            log.warning(
                "[%s] chain stopped at %s (attempt %d/%d): %s",
                video_id, task.name, fail_count, max_attempts, error,
            )
            return False, context
        if task.completes_status is not None:
            advance_status(conn, video_id, task.completes_status)
        log.info("[%s] %s: done in %.1fs", video_id, task.name, time.monotonic() - started)
    return True, context
