import sqlite3
from unittest.mock import MagicMock

import pytest
import requests

from ytrelay.config import AppConfig
from ytrelay.db import init_schema, upsert_video
from ytrelay.models import (
    AIConfig,
    PipelineConfig,
    ProcessingState,
    ProviderConfig,
    SubtitleLine,
    VideoRecord,
    VideoStatus,
)


@pytest.fixture
def conn():
    """In-memory SQLite connection with full schema initialized."""
    c = sqlite3.connect(":memory:")
    c.row_factory = sqlite3.Row
    init_schema(c)
    yield c
    c.close()


def make_video(
    video_id="dQw4w9WgXcQ",
    title="Original title",
    description="Original description",
    subtitles=None,
    playlist_id=None,
) -> VideoRecord:
    """Factory for VideoRecord dataclass instances."""
    return VideoRecord(
        video_id=video_id,
        source_url=f"https://www.youtube.com/watch?v={video_id}",
        title=title,
        description=description,
        subtitles=subtitles or [],
        playlist_id=playlist_id,
    )


def insert_video(conn, status=VideoStatus.PENDING, **kwargs) -> VideoRecord:
    """Insert a video and force it to ``status`` (test setup only)."""
    record = upsert_video(conn, make_video(**kwargs))
    conn.execute("UPDATE videos SET status = ? WHERE video_id = ?", (status.value, record.video_id))
    conn.commit()
    record.status = status
    return record


def make_lines(*texts: str, step: float = 1.5) -> list[SubtitleLine]:
    return [SubtitleLine(start=i * step, duration=step, text=t) for i, t in enumerate(texts)]


def make_state(tmp_path, video_id="dQw4w9WgXcQ") -> ProcessingState:
    return ProcessingState.for_video(video_id, str(tmp_path))


def make_app_config(tmp_path, **pipeline_overrides) -> AppConfig:
    pipeline = PipelineConfig(
        work_dir=str(tmp_path / "videos"),
        db_path=str(tmp_path / "test.db"),
        log_file=str(tmp_path / "test.log"),
        config_dir=str(tmp_path),
        cookies_dir=str(tmp_path / "cookies"),
        **pipeline_overrides,
    )
    ai = AIConfig(providers={
        "deepseek": ProviderConfig(
            name="deepseek", enabled=True, api_key="sk-test",
            base_url="https://api.deepseek.com/v1", model="deepseek-chat",
        ),
    })
    return AppConfig(pipeline=pipeline, ai=ai)


def mock_response(status_code=200, json_data=None, headers=None, text=""):
    resp = MagicMock(spec=requests.Response)
    resp.status_code = status_code
    resp.headers = headers or {}
    resp.text = text
    if isinstance(json_data, Exception):
        resp.json.side_effect = json_data
    else:
        resp.json.return_value = json_data
    if status_code >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"HTTP {status_code}")
    else:
        resp.raise_for_status.return_value = None
    return resp
