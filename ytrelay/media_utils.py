import logging
import os
import shutil
import subprocess

from ytrelay.models import PipelineContext, ProcessingState
from ytrelay.tasks import Task

log = logging.getLogger(__name__)

FFMPEG = shutil.which("ffmpeg") or "ffmpeg"
FFPROBE = shutil.which("ffprobe") or "ffprobe"


def safe_remove(path, log=None):
    """Best-effort file removal. Returns True if removed."""
    try:
        if path and os.path.exists(path):
            os.remove(path)
            return True
    except OSError as e:
        if log:
            log.debug("Failed to remove %s: %s", path, e)
    return False


def is_valid_video(path: str) -> bool:
    """Validate a video file using ffprobe."""
    try:
        result = subprocess.run(
            [FFPROBE, "-v", "error", "-select_streams", "v:0",
             "-show_entries", "stream=codec_type", "-of", "csv=p=0", path],
            capture_output=True, text=True, timeout=15,
        )
        return result.returncode == 0 and "video" in result.stdout
    except (subprocess.TimeoutExpired, subprocess.SubprocessError, OSError) as e:
        log.warning("Video validation failed for %s: %s", path, e)
        return False


def extract_audio(video_path: str, output_path: str, sample_rate: int = 16000) -> str:
    """Extract the full audio track as 16-bit mono WAV for ASR upload."""
    tmp_path = output_path + ".tmp.wav"
    try:
        subprocess.run(
            [FFMPEG, "-y", "-i", video_path,
             "-vn", "-acodec", "pcm_s16le", "-ar", str(sample_rate), "-ac", "1",
             tmp_path],
            capture_output=True, check=True, timeout=1800,
        )
    except subprocess.CalledProcessError as e:
        safe_remove(tmp_path, log=log)
        stderr = e.stderr.decode("utf-8", errors="replace") if e.stderr else ""
        raise RuntimeError(
            f"Audio extraction failed for {video_path}: {stderr}"
        ) from e
    except subprocess.TimeoutExpired as e:
        safe_remove(tmp_path, log=log)
        raise RuntimeError(f"Audio extraction timed out for {video_path}") from e

    if not os.path.isfile(tmp_path) or os.path.getsize(tmp_path) == 0:
        safe_remove(tmp_path, log=log)
        raise RuntimeError(f"Audio extraction produced no output for {video_path}")

    os.replace(tmp_path, output_path)
    return output_path


def extract_cover(video_path: str, output_path: str, at_seconds: float = 3.0) -> str | None:
    """Grab a single frame as the cover image. Returns None if ffmpeg fails."""
    try:
        subprocess.run(
            [FFMPEG, "-y", "-ss", str(at_seconds), "-i", video_path,
             "-frames:v", "1", "-q:v", "2", output_path],
            capture_output=True, check=True, timeout=60,
        )
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
        log.warning("Cover extraction failed for %s: %s", video_path, e)
        safe_remove(output_path, log=log)
        return None
    if not os.path.isfile(output_path) or os.path.getsize(output_path) == 0:
        return None
    return output_path


class ExtractAudioTask(Task):
    name = "extract_audio"

    def __init__(self, state: ProcessingState):
        self.state = state

    def execute(self, context: PipelineContext) -> bool:
        if os.path.isfile(self.state.original_wav) and os.path.getsize(self.state.original_wav) > 0:
            log.info("Audio already extracted: %s", self.state.original_wav)
            return True
        if not context.downloaded_file or not os.path.isfile(context.downloaded_file):
            return self.fail(context, "no downloaded video to extract audio from")
        try:
            extract_audio(context.downloaded_file, self.state.original_wav)
        except RuntimeError as e:
            return self.fail(context, str(e))
        return True
