import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from ytrelay.bcut import (
    API_QUERY_RESULT,
    BcutAPIError,
    BcutClient,
    BcutTaskFailedError,
    BcutTimeoutError,
    BcutTranscribeTask,
    BcutUploadError,
    UploadSession,
    parse_result,
)
from ytrelay.db import get_video
from ytrelay.models import PipelineContext, Utterance
from tests.conftest import insert_video, make_state, mock_response


def ok(data):
    return mock_response(json_data={"code": 0, "message": "", "data": data})


def result_payload(*utterances, language="en"):
    return json.dumps({
        "language": language,
        "utterances": [{"start_time": s, "end_time": e, "transcript": t} for s, e, t in utterances],
    })


SESSION = UploadSession(
    upload_id="up-1", in_boss_key="boss-1", per_size=4,
    upload_urls=["https://upos/1", "https://upos/2", "https://upos/3"],
)


class TestPollResult:
    @patch("ytrelay.bcut.time.sleep")
    @patch("ytrelay.bcut.requests.get")
    def test_waits_between_in_progress_queries(self, mock_get, mock_sleep):
        mock_get.side_effect = [ok({"status": 1})] * 5 + [ok({"status": 2, "result": "{}"})]

        data = BcutClient().poll_result("task-9")

        assert data["status"] == 2
        assert mock_get.call_count == 6
        assert mock_sleep.call_count == 5
        assert all(c.args == (3,) for c in mock_sleep.call_args_list)
        assert mock_get.call_args.args[0] == API_QUERY_RESULT
        assert mock_get.call_args.kwargs["params"] == {"model_id": 7, "task_id": "task-9"}

    @patch("ytrelay.bcut.time.sleep")
    @patch("ytrelay.bcut.requests.get")
    def test_failed_state_stops_immediately(self, mock_get, mock_sleep):
        mock_get.return_value = ok({"status": 3, "error_code": 42})

        with pytest.raises(BcutTaskFailedError, match="42"):
            BcutClient().poll_result("task-9")
        assert mock_get.call_count == 1
        mock_sleep.assert_not_called()

    @patch("ytrelay.bcut.time.sleep")
    @patch("ytrelay.bcut.requests.get")
    def test_unknown_state_is_an_error(self, mock_get, _sleep):
        mock_get.return_value = ok({"status": 7})
        with pytest.raises(BcutAPIError, match="unknown state"):
            BcutClient().poll_result("task-9")
        assert mock_get.call_count == 1

    @patch("ytrelay.bcut.time.sleep")
    @patch("ytrelay.bcut.requests.get")
    def test_legacy_state_field(self, mock_get, mock_sleep):
        mock_get.side_effect = [ok({"state": 1}), ok({"state": 2, "result": "{}"})]
        assert BcutClient().poll_result("task-9")["state"] == 2
        assert mock_sleep.call_count == 1

    @patch("ytrelay.bcut.time.sleep")
    @patch("ytrelay.bcut.requests.get")
    def test_exhausted_attempts_time_out(self, mock_get, mock_sleep):
        mock_get.return_value = ok({"status": 0})
        with pytest.raises(BcutTimeoutError):
            BcutClient(poll_interval=1, max_poll_attempts=4).poll_result("task-9")
        assert mock_get.call_count == 4
        assert mock_sleep.call_count == 3

    @patch("ytrelay.bcut.requests.get")
    def test_nonzero_code(self, mock_get):
        mock_get.return_value = mock_response(json_data={"code": -400, "message": "bad task"})
        with pytest.raises(BcutAPIError, match="bad task"):
            BcutClient().poll_result("task-9")


class TestUploadParts:
    @patch("ytrelay.bcut.requests.put")
    def test_splits_payload_and_strips_etags(self, mock_put):
        mock_put.side_effect = [
            mock_response(headers={"Etag": f'"etag-{i}"'}) for i in range(3)
        ]

        etags = BcutClient().upload_parts(SESSION, b"abcdefghij")

        assert etags == ["etag-0", "etag-1", "etag-2"]
        assert [c.kwargs["data"] for c in mock_put.call_args_list] == [b"abcd", b"efgh", b"ij"]

    @patch("ytrelay.bcut.requests.put")
    def test_part_failure_aborts_remaining_parts(self, mock_put):
        mock_put.side_effect = [
            mock_response(headers={"Etag": "a"}),
            mock_response(status_code=500),
            mock_response(headers={"Etag": "c"}),
        ]
        with pytest.raises(BcutUploadError, match="part 2/3"):
            BcutClient().upload_parts(SESSION, b"abcdefghij")
        assert mock_put.call_count == 2

    @patch("ytrelay.bcut.requests.put")
    def test_network_error_aborts(self, mock_put):
        mock_put.side_effect = requests.ConnectionError("reset")
        with pytest.raises(BcutUploadError, match="part 1/3"):
            BcutClient().upload_parts(SESSION, b"abcdefghij")

    @patch("ytrelay.bcut.requests.put")
    def test_missing_etag(self, mock_put):
        mock_put.return_value = mock_response(headers={})
        with pytest.raises(BcutUploadError, match="no ETag"):
            BcutClient().upload_parts(SESSION, b"abcdefghij")


class TestRequestUpload:
    @patch("ytrelay.bcut.requests.post")
    def test_session_fields(self, mock_post):
        mock_post.return_value = ok({
            "upload_id": "u", "in_boss_key": "k", "per_size": 1024, "upload_urls": ["https://upos/1"],
        })
        session = BcutClient().request_upload("audio.wav", 2048)
        assert session == UploadSession("u", "k", 1024, ["https://upos/1"])
        assert mock_post.call_args.kwargs["json"]["size"] == 2048

    @patch("ytrelay.bcut.requests.post")
    def test_no_urls(self, mock_post):
        mock_post.return_value = ok({"upload_id": "u", "per_size": 1024, "upload_urls": []})
        with pytest.raises(BcutAPIError):
            BcutClient().request_upload("audio.wav", 10)

    @patch("ytrelay.bcut.requests.post")
    def test_invalid_json(self, mock_post):
        mock_post.return_value = mock_response(json_data=ValueError("no json"))
        with pytest.raises(BcutAPIError, match="invalid JSON"):
            BcutClient().request_upload("audio.wav", 10)


class TestParseResult:
    def test_drops_blank_utterances(self):
        utterances, language = parse_result({"result": result_payload((0, 1500, " a "), (1500, 2000, "  "))})
        assert utterances == [Utterance(0, 1500, "a")]
        assert language == "en"

    def test_empty_result(self):
        with pytest.raises(BcutAPIError, match="empty"):
            parse_result({"result": ""})

    def test_bad_json(self):
        with pytest.raises(BcutAPIError, match="not valid JSON"):
            parse_result({"result": "{nope"})


class TestTranscribeFlow:
    @patch("ytrelay.bcut.time.sleep")
    @patch("ytrelay.bcut.requests.get")
    @patch("ytrelay.bcut.requests.put")
    @patch("ytrelay.bcut.requests.post")
    def test_full_sequence(self, mock_post, mock_put, mock_get, _sleep, tmp_path):
        audio = tmp_path / "original.wav"
        audio.write_bytes(b"x" * 10)
        mock_post.side_effect = [
            ok({"upload_id": "u", "in_boss_key": "k", "per_size": 8, "upload_urls": ["https://a", "https://b"]}),
            ok({}),
            ok({"task_id": "t-1"}),
        ]
        mock_put.side_effect = [mock_response(headers={"Etag": '"e1"'}), mock_response(headers={"Etag": '"e2"'})]
        mock_get.side_effect = [ok({"status": 1}), ok({"status": 2, "result": result_payload((0, 900, "hi"))})]

        utterances, _ = BcutClient().transcribe(str(audio))

        assert utterances == [Utterance(0, 900, "hi")]
        commit = mock_post.call_args_list[1].kwargs["json"]
        assert commit["parts"] == [{"part_number": 1, "etag": "e1"}, {"part_number": 2, "etag": "e2"}]
        create = mock_post.call_args_list[2].kwargs["json"]
        assert create["resource"]["in_boss_key"] == "k"


class TestBcutTranscribeTask:
    def test_writes_srt_and_saves_lines(self, conn, tmp_path):
        insert_video(conn)
        state = make_state(tmp_path)
        open(state.original_wav, "wb").close()
        client = MagicMock(spec=BcutClient)
        client.transcribe.return_value = ([Utterance(0, 1500, "a"), Utterance(1500, 3000, "b")], "en")
        ctx = PipelineContext()

        assert BcutTranscribeTask(state, conn, client=client).execute(ctx) is True

        with open(state.original_srt, encoding="utf-8") as f:
            assert f.read().startswith("1\n00:00:00,000 --> 00:00:01,500\na\n\n")
        client.transcribe.assert_called_once_with(state.original_wav)
        assert [line.text for line in get_video(conn, state.video_id).subtitles] == ["a", "b"]
        assert ctx.subtitle_path == state.original_srt

    def test_falls_back_to_mp3(self, tmp_path):
        state = make_state(tmp_path)
        open(state.original_mp3, "wb").close()
        client = MagicMock(spec=BcutClient)
        client.transcribe.return_value = ([Utterance(0, 1000, "x")], "")

        assert BcutTranscribeTask(state, client=client).execute(PipelineContext()) is True
        client.transcribe.assert_called_once_with(state.original_mp3)

    def test_existing_transcript_skips_asr(self, tmp_path):
        state = make_state(tmp_path)
        with open(state.original_srt, "w", encoding="utf-8") as f:
            f.write("1\n00:00:00,000 --> 00:00:01,000\nx\n\n")
        client = MagicMock(spec=BcutClient)

        assert BcutTranscribeTask(state, client=client).execute(PipelineContext()) is True
        client.transcribe.assert_not_called()

    def test_missing_audio(self, tmp_path):
        ctx = PipelineContext()
        assert BcutTranscribeTask(make_state(tmp_path), client=MagicMock(spec=BcutClient)).execute(ctx) is False
        assert "audio file not found" in ctx.error

    def test_provider_failure_is_reported(self, tmp_path):
        state = make_state(tmp_path)
        open(state.original_wav, "wb").close()
        client = MagicMock(spec=BcutClient)
        client.transcribe.side_effect = BcutTaskFailedError("ASR task t failed with error code 5")
        ctx = PipelineContext()

        assert BcutTranscribeTask(state, client=client).execute(ctx) is False
        assert ctx.error.startswith("transcription failed")

    def test_empty_transcript_fails(self, tmp_path):
        state = make_state(tmp_path)
        open(state.original_wav, "wb").close()
        client = MagicMock(spec=BcutClient)
        client.transcribe.return_value = ([], "")
        assert BcutTranscribeTask(state, client=client).execute(PipelineContext()) is False
