"""Unit tests for the SubForge web API."""

import base64
import io
import json
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from subforge.analyzers.transcribe import TranscriptionAuthError, TranscriptionError
from subforge.config import Settings
from subforge.engine import RenderPipelineError
from subforge.manifest import RenderRequest
from subforge.models import RenderedVideo, TranscriptSegment
from subforge.web import create_app


class FakeStorage:
    def upload(self, local_path, name):
        return f"https://storage.example/{name}"


@pytest.fixture
def transcriber():
    mock = MagicMock()
    mock.transcribe.return_value = [
        TranscriptSegment(start=0.0, end=1.5, text="Hello", speaker="SPEAKER_00"),
    ]
    return mock


@pytest.fixture
def renderer():
    mock = MagicMock()
    mock.busy = False
    return mock


@pytest.fixture
def settings():
    return Settings(replicate_api_token="r8_test")


@pytest.fixture
def app(tmp_path, settings, transcriber, renderer):
    app = create_app(
        work_dir=tmp_path,
        settings=settings,
        storage=FakeStorage(),
        transcriber=transcriber,
        renderer=renderer,
    )
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


def _upload(client, url="/api/upload", filename="talk.mp3", content=b"ID3 fake audio",
            content_type="audio/mpeg", field="file"):
    return client.post(
        url,
        data={field: (io.BytesIO(content), filename, content_type)},
        content_type="multipart/form-data",
    )


def _events(resp) -> list[dict]:
    body = resp.get_data(as_text=True)
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


class TestTranscribe:
    def test_success(self, client, transcriber):
        resp = _upload(client, "/api/transcribe")
        assert resp.status_code == 200
        assert resp.get_json() == {
            "segments": [{"start": 0.0, "end": 1.5, "text": "Hello", "speaker": "SPEAKER_00"}]
        }
        transcriber.transcribe.assert_called_once_with(b"ID3 fake audio", "audio/mpeg")

    def test_audio_field_accepted(self, client):
        resp = _upload(client, "/api/transcribe", field="audio")
        assert resp.status_code == 200

    def test_no_file(self, client):
        resp = client.post("/api/transcribe")
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "No file provided"

    def test_unsupported_type(self, client, transcriber):
        resp = _upload(client, "/api/transcribe", filename="notes.txt", content_type="text/plain")
        assert resp.status_code == 400
        assert "Unsupported audio type" in resp.get_json()["error"]
        assert not transcriber.transcribe.called

    def test_type_guessed_from_filename(self, client, transcriber):
        resp = _upload(client, "/api/transcribe", filename="talk.wav",
                       content_type="application/octet-stream")
        assert resp.status_code == 200
        assert transcriber.transcribe.call_args[0][1] in ("audio/wav", "audio/x-wav")

    def test_empty_file(self, client):
        resp = _upload(client, "/api/transcribe", content=b"")
        assert resp.status_code == 400

    def test_auth_error(self, client, transcriber):
        transcriber.transcribe.side_effect = TranscriptionAuthError(
            "Authentication failed. Please check your API tokens."
        )
        resp = _upload(client, "/api/transcribe")
        assert resp.status_code == 401
        assert "Authentication failed" in resp.get_json()["error"]

    def test_exhausted_retries(self, client, transcriber):
        transcriber.transcribe.side_effect = TranscriptionError(
            "Transcription failed after 3 attempts: down"
        )
        resp = _upload(client, "/api/transcribe")
        assert resp.status_code == 500
        assert resp.get_json()["error"] == "Transcription failed after 3 attempts: down"

    def test_missing_token(self, tmp_path):
        app = create_app(work_dir=tmp_path, settings=Settings(), renderer=MagicMock())
        resp = _upload(app.test_client(), "/api/transcribe")
        assert resp.status_code == 500
        assert "REPLICATE_API_TOKEN" in resp.get_json()["error"]


class TestRenderVideo:
    def test_preflight(self, client):
        resp = client.options("/render-video")
        assert resp.status_code == 204
        assert resp.headers["Access-Control-Allow-Origin"] == "*"
        assert resp.headers["Access-Control-Allow-Methods"] == "POST"
        assert resp.headers["Access-Control-Allow-Headers"] == "Content-Type"

    def test_missing_fields(self, client):
        resp = client.post("/render-video", json={"format": "square"})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Missing required fields"
        assert resp.headers["Access-Control-Allow-Origin"] == "*"

    def test_not_json(self, client):
        resp = client.post("/render-video", data="plain", content_type="text/plain")
        assert resp.status_code == 400

    def test_non_finite_timestamp(self, client):
        body = (
            '{"audioData": "QQ==", "format": "landscape",'
            ' "subtitles": [{"start": NaN, "end": 1, "text": "x"}]}'
        )
        resp = client.post("/render-video", data=body, content_type="application/json")
        assert resp.status_code == 400
        assert "finite number" in resp.get_json()["error"]

    def test_format_not_a_string(self, client):
        body = {"audioData": "QQ==", "subtitles": [], "format": ["landscape"]}
        resp = client.post("/render-video", json=body)
        assert resp.status_code == 400
        assert resp.is_json
        assert "must be a string" in resp.get_json()["error"]

    @patch("subforge.web.routes.process")
    def test_success(self, mock_process, client):
        mock_process.return_value = RenderedVideo(
            duration=2.0, frames=60, url="https://storage.googleapis.com/b/1_talk.mp4"
        )
        body = {"audioData": "QQ==", "subtitles": [], "format": "landscape"}

        resp = client.post("/render-video", json=body)

        assert resp.status_code == 200
        assert resp.get_json() == {"videoUrl": "https://storage.googleapis.com/b/1_talk.mp4"}
        assert resp.headers["Access-Control-Allow-Origin"] == "*"
        assert mock_process.call_args[0][0] == body

    @patch("subforge.web.routes.process")
    def test_pipeline_failure(self, mock_process, client):
        mock_process.side_effect = RenderPipelineError(
            "rendering", subprocess.CalledProcessError(1, ["ffmpeg"], stderr="bad filter")
        )
        resp = client.post("/render-video", json={})
        assert resp.status_code == 500
        assert resp.get_json()["error"] == "ffmpeg failed: bad filter"
        assert resp.headers["Access-Control-Allow-Origin"] == "*"


class TestCreateVideo:
    def _post(self, client, subtitles=None, fmt="portrait"):
        data = {
            "audio": (io.BytesIO(b"ID3audio"), "talk.mp3", "audio/mpeg"),
            "subtitles": json.dumps(subtitles if subtitles is not None else [
                {"start": 0, "end": 1, "text": "Hi"}
            ]),
            "format": fmt,
        }
        return client.post("/api/create-video", data=data, content_type="multipart/form-data")

    @patch("subforge.web.routes.process")
    def test_in_process(self, mock_process, client):
        mock_process.return_value = RenderedVideo(duration=1, frames=30, url="https://x/1_talk.mp4")

        resp = self._post(client)

        assert resp.status_code == 200
        assert resp.get_json() == {"videoUrl": "https://x/1_talk.mp4"}
        render_request = mock_process.call_args[0][0]
        assert isinstance(render_request, RenderRequest)
        assert render_request.audio == b"ID3audio"
        assert render_request.format.name == "portrait"
        assert render_request.filename == "talk.mp3"

    @patch("subforge.web.routes.request_render")
    def test_forwards_to_render_function(self, mock_request, tmp_path, renderer):
        settings = Settings(render_function_url="https://render.example/render-video")
        app = create_app(work_dir=tmp_path, settings=settings, renderer=renderer)
        mock_request.return_value = "https://storage.googleapis.com/b/1_talk.mp4"

        resp = self._post(app.test_client(), fmt="square")

        assert resp.status_code == 200
        assert resp.get_json()["videoUrl"] == "https://storage.googleapis.com/b/1_talk.mp4"
        url, body = mock_request.call_args[0]
        assert url == "https://render.example/render-video"
        assert base64.b64decode(body["audioData"]) == b"ID3audio"
        assert body["subtitles"] == [{"start": 0.0, "end": 1.0, "text": "Hi"}]
        assert body["format"] == "square"
        assert body["filename"] == "talk.mp3"

    def test_missing_audio(self, client):
        resp = client.post(
            "/api/create-video",
            data={"subtitles": "[]", "format": "square"},
            content_type="multipart/form-data",
        )
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Missing required files or data"

    def test_bad_subtitles(self, client):
        resp = self._post(client, subtitles=[{"start": 3, "end": 1, "text": "x"}])
        assert resp.status_code == 400

    def test_unknown_format(self, client):
        resp = self._post(client, fmt="cinema")
        assert resp.status_code == 400

    @patch("subforge.web.routes.process")
    def test_render_failure(self, mock_process, client):
        mock_process.side_effect = RenderPipelineError("uploading", OSError("bucket unavailable"))
        resp = self._post(client)
        assert resp.status_code == 500
        assert resp.get_json()["error"] == "bucket unavailable"


class TestUpload:
    def test_upload_success(self, client, tmp_path):
        resp = _upload(client, content=b"CONTENT")
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["filename"] == "talk.mp3"
        assert (tmp_path / data["job_id"] / "input.mp3").read_bytes() == b"CONTENT"

    def test_upload_no_file(self, client):
        resp = client.post("/api/upload")
        assert resp.status_code == 400


class TestLocalRender:
    def _start(self, client, payload=None):
        job_id = _upload(client).get_json()["job_id"]
        payload = payload if payload is not None else {
            "segments": [{"start": 0, "end": 2, "text": "Hello world"}],
            "format": "square",
        }
        return job_id, client.post(f"/api/jobs/{job_id}/render", json=payload)

    def test_unknown_job(self, client):
        resp = client.post("/api/jobs/nonexistent/render", json={})
        assert resp.status_code == 404

    def test_render_to_completion(self, client, renderer):
        def render(audio, segments, fmt, audio_suffix=".mp3", on_progress=None, **kwargs):
            on_progress(50)
            return RenderedVideo(duration=2, frames=60, data=b"MP4DATA")

        renderer.render.side_effect = render

        job_id, resp = self._start(client)
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "started"

        events = _events(client.get(f"/api/jobs/{job_id}/progress"))
        assert events[0] == {"stage": "rendering", "progress": 50}
        assert events[-1]["stage"] == "complete"
        assert events[-1]["progress"] == 100
        assert events[-1]["result"]["frames"] == 60

        status = client.get(f"/api/jobs/{job_id}/status").get_json()
        assert status["status"] == "done"
        assert status["result"]["format"] == "square"

        result = client.get(f"/api/jobs/{job_id}/result")
        assert result.status_code == 200
        assert result.mimetype == "video/mp4"
        assert result.data == b"MP4DATA"

        renderer.load.assert_called_once()
        audio, segments, fmt = renderer.render.call_args[0]
        assert audio == b"ID3 fake audio"
        assert fmt.name == "square"
        assert renderer.render.call_args.kwargs["audio_suffix"] == ".mp3"

    def test_render_failure_reported(self, client, renderer):
        renderer.render.side_effect = subprocess.CalledProcessError(
            1, ["ffmpeg"], stderr="No such filter"
        )
        job_id, _ = self._start(client)

        events = _events(client.get(f"/api/jobs/{job_id}/progress"))
        assert "No such filter" in events[-1]["error"]

        status = client.get(f"/api/jobs/{job_id}/status").get_json()
        assert status["status"] == "error"
        assert client.get(f"/api/jobs/{job_id}/result").status_code == 409

    def test_busy_engine(self, client, renderer):
        renderer.busy = True
        _, resp = self._start(client)
        assert resp.status_code == 409

    def test_bad_segments(self, client, renderer):
        _, resp = self._start(client, {"segments": [{"start": 0, "end": 1, "text": ""}]})
        assert resp.status_code == 400
        assert not renderer.render.called

    def test_body_not_an_object(self, client, renderer):
        _, resp = self._start(client, [1, 2])
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Request body must be a JSON object"
        assert not renderer.render.called

    def test_progress_without_render(self, client):
        job_id = _upload(client).get_json()["job_id"]
        assert client.get(f"/api/jobs/{job_id}/progress").status_code == 409


class TestStatus:
    def test_status_after_upload(self, client):
        job_id = _upload(client).get_json()["job_id"]
        resp = client.get(f"/api/jobs/{job_id}/status")
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "uploaded"

    def test_status_unknown_job(self, client):
        assert client.get("/api/jobs/nonexistent/status").status_code == 404


class TestDownload:
    def test_download_not_complete(self, client):
        job_id = _upload(client).get_json()["job_id"]
        resp = client.get(f"/api/jobs/{job_id}/result")
        assert resp.status_code == 409

    def test_download_unknown_job(self, client):
        assert client.get("/api/jobs/nonexistent/result").status_code == 404
