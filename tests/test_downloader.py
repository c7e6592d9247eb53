import json
import os
import subprocess
import sys
from unittest.mock import MagicMock, patch

import pytest

from ytrelay.db import get_video
from ytrelay.downloader import (
    YT_DLP,
    DownloadError,
    DownloadVideoTask,
    build_download_command,
    build_video_url,
    fetch_metadata,
    find_downloaded_file,
    run_streaming,
)
from ytrelay.models import PipelineContext, ProxyConfig
from ytrelay.network import CookieSource
from tests.conftest import insert_video, make_state

PROXY = ProxyConfig(use_proxy=True, proxy_host="http://127.0.0.1:7890")


def _metadata_result(**overrides):
    data = {"title": "Video title", "description": "Desc", "uploader": "Chan", "duration": 212}
    data.update(overrides)
    return subprocess.CompletedProcess(args=[], returncode=0, stdout=json.dumps(data) + "\n", stderr="")


class TestBuildVideoUrl:
    def test_full_url_passes_through(self):
        assert build_video_url("https://youtu.be/dQw4w9WgXcQ") == "https://youtu.be/dQw4w9WgXcQ"

    def test_youtube_id(self):
        assert build_video_url("dQw4w9WgXcQ") == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"

    def test_bilibili_id(self):
        assert build_video_url("BV1xx411c7mD") == "https://www.bilibili.com/video/BV1xx411c7mD"


class TestBuildDownloadCommand:
    def test_full_command(self):
        cmd = build_download_command("/work/v1", "https://y/watch?v=x", CookieSource(file="/c.txt"), "http://p:1")
        assert cmd[0] == YT_DLP
        assert cmd[cmd.index("-P") + 1] == "/work/v1"
        assert cmd[cmd.index("-o") + 1] == "%(id)s.%(ext)s"
        assert cmd[cmd.index("--merge-output-format") + 1] == "mp4"
        assert cmd[cmd.index("--cookies") + 1] == "/c.txt"
        assert cmd[cmd.index("--proxy") + 1] == "http://p:1"
        assert cmd[-2:] == ["--", "https://y/watch?v=x"]

    def test_browser_cookies_and_no_proxy(self):
        cmd = build_download_command("/w", "u", CookieSource(browser="chrome"), None)
        assert "--cookies-from-browser" in cmd
        assert "--proxy" not in cmd


class TestFindDownloadedFile:
    def test_prefers_mp4(self, tmp_path):
        (tmp_path / "a.webm").write_bytes(b"x")
        (tmp_path / "a.mp4").write_bytes(b"x")
        assert find_downloaded_file(str(tmp_path)) == str(tmp_path / "a.mp4")

    def test_falls_back_to_other_containers(self, tmp_path):
        (tmp_path / "a.mkv").write_bytes(b"x")
        assert find_downloaded_file(str(tmp_path)) == str(tmp_path / "a.mkv")

    def test_newest_wins(self, tmp_path):
        old = tmp_path / "old.mp4"
        new = tmp_path / "new.mp4"
        old.write_bytes(b"x")
        new.write_bytes(b"x")
        os.utime(old, (1, 1))
        assert find_downloaded_file(str(tmp_path)) == str(new)

    def test_none_when_empty(self, tmp_path):
        assert find_downloaded_file(str(tmp_path)) is None


class TestRunStreaming:
    def test_collects_exit_code_and_stderr(self):
        code, tail = run_streaming(
            [sys.executable, "-c", "import sys; print('[download] 50%'); print('bad', file=sys.stderr); sys.exit(3)"],
            timeout=30,
        )
        assert code == 3
        assert tail == ["bad"]

    def test_timeout_kills_child(self):
        with pytest.raises(DownloadError, match="timed out"):
            run_streaming([sys.executable, "-c", "import time; time.sleep(30)"], timeout=1)


class TestFetchMetadata:
    @patch("ytrelay.downloader.subprocess.run")
    def test_parses_fields(self, mock_run):
        mock_run.return_value = _metadata_result()
        meta = fetch_metadata("https://y/watch?v=x")
        assert meta == {"title": "Video title", "description": "Desc", "uploader": "Chan", "duration": 212.0}
        cmd = mock_run.call_args[0][0]
        assert "--dump-json" in cmd and "--no-download" in cmd

    @patch("ytrelay.downloader.subprocess.run")
    def test_proxy_failure_retries_direct_with_same_args(self, mock_run):
        mock_run.side_effect = [
            subprocess.CalledProcessError(1, "yt-dlp", stderr="proxy refused"),
            _metadata_result(),
        ]
        meta = fetch_metadata("https://y/watch?v=x", PROXY)

        assert meta["title"] == "Video title"
        first, second = (c[0][0] for c in mock_run.call_args_list)
        assert "--proxy" in first and "--proxy" not in second
        i = first.index("--proxy")
        assert first[:i] + first[i + 2:] == second

    @patch("ytrelay.downloader.subprocess.run")
    def test_both_attempts_fail_reports_direct_cause(self, mock_run):
        mock_run.side_effect = [
            subprocess.CalledProcessError(1, "yt-dlp", stderr="proxy refused"),
            subprocess.CalledProcessError(1, "yt-dlp", stderr="Sign in to confirm"),
        ]
        with pytest.raises(DownloadError, match="Sign in to confirm"):
            fetch_metadata("https://y/watch?v=x", PROXY)

    @patch("ytrelay.downloader.subprocess.run")
    def test_invalid_json(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(args=[], returncode=0, stdout="nope", stderr="")
        with pytest.raises(DownloadError, match="invalid JSON"):
            fetch_metadata("u")


class TestDownloadVideoTask:
    def _task(self, conn, tmp_path, proxy=None):
        insert_video(conn, video_id="dQw4w9WgXcQ", title="", description="")
        state = make_state(tmp_path)
        return state, DownloadVideoTask(state, conn, proxy=proxy, cookies=CookieSource(browser="chrome"))

    @patch("ytrelay.downloader.subprocess.run")
    @patch("ytrelay.downloader.is_valid_video", return_value=False)
    @patch("ytrelay.downloader.run_streaming")
    def test_downloads_and_saves_metadata(self, mock_stream, _valid, mock_run, conn, tmp_path):
        state, task = self._task(conn, tmp_path)

        def fake_download(cmd, timeout):
            open(os.path.join(state.current_dir, "dQw4w9WgXcQ.mp4"), "wb").close()
            return 0, []

        mock_stream.side_effect = fake_download
        mock_run.return_value = _metadata_result()
        ctx = PipelineContext()

        assert task.execute(ctx) is True
        assert ctx.downloaded_file.endswith("dQw4w9WgXcQ.mp4")
        assert ctx.original_title == "Video title"
        record = get_video(conn, "dQw4w9WgXcQ")
        assert record.title == "Video title"
        assert record.description == "Desc"

    @patch("ytrelay.downloader.subprocess.run")
    @patch("ytrelay.downloader.is_valid_video", return_value=False)
    @patch("ytrelay.downloader.run_streaming")
    def test_proxy_then_direct(self, mock_stream, _valid, mock_run, conn, tmp_path):
        state, task = self._task(conn, tmp_path, proxy=PROXY)

        def fake_download(cmd, timeout):
            if "--proxy" in cmd:
                return 1, ["ERROR: proxy tunnel failed"]
            open(os.path.join(state.current_dir, "dQw4w9WgXcQ.mp4"), "wb").close()
            return 0, []

        mock_stream.side_effect = fake_download
        mock_run.return_value = _metadata_result()

        assert task.execute(PipelineContext()) is True
        assert mock_stream.call_count == 2

    @patch("ytrelay.downloader.is_valid_video", return_value=False)
    @patch("ytrelay.downloader.run_streaming")
    def test_failure_sets_error(self, mock_stream, _valid, conn, tmp_path):
        _, task = self._task(conn, tmp_path, proxy=PROXY)
        mock_stream.side_effect = [(1, ["proxy broke"]), (1, ["ERROR: Video unavailable"])]
        ctx = PipelineContext()

        assert task.execute(ctx) is False
        assert "Video unavailable" in ctx.error

    @patch("ytrelay.downloader.subprocess.run")
    @patch("ytrelay.downloader.is_valid_video", return_value=False)
    @patch("ytrelay.downloader.run_streaming", return_value=(0, []))
    def test_success_without_file_is_failure(self, _stream, _valid, mock_run, conn, tmp_path):
        _, task = self._task(conn, tmp_path)
        ctx = PipelineContext()
        assert task.execute(ctx) is False
        assert "no video file" in ctx.error
        mock_run.assert_not_called()

    @patch("ytrelay.downloader.subprocess.run")
    @patch("ytrelay.downloader.is_valid_video", return_value=True)
    @patch("ytrelay.downloader.run_streaming")
    def test_existing_valid_file_is_reused(self, mock_stream, _valid, mock_run, conn, tmp_path):
        state, task = self._task(conn, tmp_path)
        open(os.path.join(state.current_dir, "dQw4w9WgXcQ.mp4"), "wb").close()
        mock_run.return_value = _metadata_result()

        assert task.execute(PipelineContext()) is True
        mock_stream.assert_not_called()

    @patch("ytrelay.downloader.subprocess.run")
    @patch("ytrelay.downloader.is_valid_video", return_value=True)
    def test_metadata_failure_is_only_a_warning(self, _valid, mock_run, conn, tmp_path):
        state, task = self._task(conn, tmp_path)
        open(os.path.join(state.current_dir, "dQw4w9WgXcQ.mp4"), "wb").close()
        mock_run.side_effect = subprocess.TimeoutExpired("yt-dlp", 120)
        ctx = PipelineContext()

        assert task.execute(ctx) is True
        assert ctx.original_title is None
        assert ctx.error is None


def test_streaming_uses_popen_pipes():
    with patch("ytrelay.downloader.subprocess.Popen") as mock_popen:
        proc = MagicMock()
        proc.stdout.readline.side_effect = ["line\n", ""]
        proc.stderr.readline.side_effect = [""]
        proc.returncode = 0
        mock_popen.return_value = proc
        code, tail = run_streaming(["yt-dlp"], timeout=5)
    assert code == 0
    assert tail == []
    kwargs = mock_popen.call_args.kwargs
    assert kwargs["stdout"] == subprocess.PIPE and kwargs["stderr"] == subprocess.PIPE
