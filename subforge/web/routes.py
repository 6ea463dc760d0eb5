"""HTTP routes: transcription, publish renders and local render jobs."""

import base64
import json
import logging
import mimetypes
import queue
import subprocess
import threading
import uuid
from pathlib import Path

from flask import (
    Blueprint,
    Response,
    current_app,
    jsonify,
    request,
    send_file,
)

from subforge.analyzers.transcribe import (
    TranscriptionAuthError,
    TranscriptionClient,
    TranscriptionError,
)
from subforge.engine import RenderPipelineError, process
from subforge.formats import DEFAULT_FORMAT, get_format
from subforge.manifest import RenderRequest, parse_segments
from subforge.remote import RenderFunctionError, request_render
from subforge.renderers.local import EngineBusyError
from subforge.storage import get_storage

logger = logging.getLogger(__name__)

bp = Blueprint("web", __name__)

# In-memory job store: job_id -> job dict
_jobs: dict[str, dict] = {}


def _ext(name: str):
    return current_app.extensions["subforge"][name]


def _error(message: str, status: int):
    return jsonify({"error": message}), status


def _audio_upload(*fields: str):
    """Return (file, data, mime) for the first present upload field, or an error response."""
    f = next((request.files[name] for name in fields if name in request.files), None)
    if f is None:
        return None, _error("No file provided", 400)

    allowed = _ext("settings").allowed_audio_types
    mime = f.mimetype
    if mime not in allowed:
        mime = mimetypes.guess_type(f.filename or "")[0]
    if mime not in allowed:
        return None, _error(f"Unsupported audio type: {f.mimetype}", 400)

    data = f.read()
    if not data:
        return None, _error("Uploaded file is empty", 400)
    return (f, data, mime), None


def _transcriber():
    transcriber = _ext("transcriber")
    if transcriber is None:
        settings = _ext("settings")
        transcriber = TranscriptionClient(
            api_token=settings.replicate_api_token,
            endpoint=settings.replicate_endpoint,
            hf_token=settings.huggingface_token or None,
            timeout=settings.transcription_timeout,
        )
        current_app.extensions["subforge"]["transcriber"] = transcriber
    return transcriber


def _storage():
    storage = _ext("storage")
    if storage is None:
        storage = get_storage(_ext("settings"))
        current_app.extensions["subforge"]["storage"] = storage
    return storage


def _process_error(e: Exception) -> str:
    if isinstance(e, RenderPipelineError):
        e = e.error
    if isinstance(e, subprocess.CalledProcessError):
        stderr = e.stderr if isinstance(e.stderr, str) else (e.stderr or b"").decode(errors="replace")
        return f"ffmpeg failed: {stderr[-500:]}" if stderr else str(e)
    return str(e) or "Failed to create video"


# ---------------------------------------------------------------------------
# Transcription
# ---------------------------------------------------------------------------

@bp.route("/api/transcribe", methods=["POST"])
def transcribe():
    if _ext("transcriber") is None and not _ext("settings").replicate_api_token:
        return _error("REPLICATE_API_TOKEN is not configured", 500)

    upload, err = _audio_upload("file", "audio")
    if err:
        return err
    f, data, mime = upload
    logger.info("Transcribing %s (%s, %d bytes)", f.filename, mime, len(data))

    try:
        segments = _transcriber().transcribe(data, mime)
    except TranscriptionAuthError as e:
        return _error(str(e), 401)
    except TranscriptionError as e:
        logger.error("Transcription failed: %s", e)
        return _error(str(e) or "Failed to process request", 500)

    return jsonify({"segments": [seg.to_dict() for seg in segments]})


# ---------------------------------------------------------------------------
# Publish renders
# ---------------------------------------------------------------------------

def _with_cors(response, status: int | None = None):
    if isinstance(response, tuple):
        response, status = response
    response.headers["Access-Control-Allow-Origin"] = "*"
    return (response, status) if status else response


@bp.route("/render-video", methods=["POST", "OPTIONS"])
def render_video():
    if request.method == "OPTIONS":
        resp = Response("", status=204)
        resp.headers["Access-Control-Allow-Methods"] = "POST"
        resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
        return _with_cors(resp)

    body = request.get_json(silent=True)
    try:
        result = process(body, _storage(), settings=_ext("settings"))
    except RenderPipelineError as e:
        return _with_cors(_error(_process_error(e), 500))
    except ValueError as e:
        return _with_cors(_error(str(e), 400))

    return _with_cors(jsonify({"videoUrl": result.url}))


@bp.route("/api/create-video", methods=["POST"])
def create_video():
    audio = request.files.get("audio")
    subtitles = request.form.get("subtitles")
    format_name = request.form.get("format") or DEFAULT_FORMAT

    if audio is None or not subtitles:
        return _error("Missing required files or data", 400)

    data = audio.read()
    try:
        segments = parse_segments(json.loads(subtitles))
        fmt = get_format(format_name)
    except ValueError as e:
        return _error(str(e), 400)
    if not data:
        return _error("Missing required files or data", 400)

    filename = Path(audio.filename or "audio.mp3").name
    url = _ext("settings").render_function_url
    try:
        if url:
            video_url = request_render(url, {
                "audioData": base64.b64encode(data).decode("ascii"),
                "subtitles": [seg.to_dict() for seg in segments],
                "format": fmt.name,
                "filename": filename,
            })
        else:
            render_request = RenderRequest(audio=data, segments=segments, format=fmt, filename=filename)
            video_url = process(render_request, _storage(), settings=_ext("settings")).url
    except (RenderFunctionError, RenderPipelineError) as e:
        logger.error("Video creation failed: %s", e)
        return _error(_process_error(e), 500)

    return jsonify({"videoUrl": video_url})


# ---------------------------------------------------------------------------
# Local render jobs
# ---------------------------------------------------------------------------

@bp.route("/api/upload", methods=["POST"])
def upload():
    upload, err = _audio_upload("file", "audio")
    if err:
        return err
    f, data, _ = upload

    job_id = uuid.uuid4().hex[:12]
    job_dir = Path(current_app.config["WORK_DIR"]) / job_id
    job_dir.mkdir(parents=True, exist_ok=True)

    ext = Path(f.filename or "").suffix or ".mp3"
    input_path = job_dir / f"input{ext}"
    input_path.write_bytes(data)

    _jobs[job_id] = {
        "dir": job_dir,
        "input_path": input_path,
        "filename": f.filename,
        "status": "uploaded",
    }

    return jsonify({"job_id": job_id, "filename": f.filename})


def _release_result(job: dict) -> None:
    result = job.pop("result", None)
    if result:
        try:
            Path(result["output_path"]).unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not release %s: %s", result["output_path"], e)


@bp.route("/api/jobs/<job_id>/render", methods=["POST"])
def start_render(job_id: str):
    if job_id not in _jobs:
        return _error("Job not found", 404)

    job = _jobs[job_id]
    renderer = _ext("renderer")
    if job["status"] == "rendering" or renderer.busy:
        return _error("A render is already in progress", 409)

    config = request.get_json(silent=True) or {}
    if not isinstance(config, dict):
        return _error("Request body must be a JSON object", 400)
    try:
        segments = parse_segments(config.get("segments", []))
        fmt = get_format(config.get("format", DEFAULT_FORMAT))
    except ValueError as e:
        return _error(str(e), 400)

    _release_result(job)
    input_path = job["input_path"]
    output_path = job["dir"] / "output.mp4"

    progress_queue: queue.Queue = queue.Queue()
    job["progress_queue"] = progress_queue
    job["status"] = "rendering"
    job["error"] = None

    def run():
        try:
            def on_progress(pct: int):
                progress_queue.put({"stage": "rendering", "progress": pct})

            renderer.load()
            result = renderer.render(
                input_path.read_bytes(),
                segments,
                fmt,
                audio_suffix=input_path.suffix,
                on_progress=on_progress,
            )
            output_path.write_bytes(result.data)
            job["result"] = {
                "output_path": str(output_path),
                "duration": result.duration,
                "frames": result.frames,
                "format": fmt.name,
            }
            job["status"] = "done"
        except EngineBusyError as e:
            job["status"] = "error"
            job["error"] = str(e)
        except subprocess.CalledProcessError as e:
            job["status"] = "error"
            job["error"] = _process_error(e)
        except Exception as e:
            logger.exception("Local render failed for job %s", job_id)
            job["status"] = "error"
            job["error"] = str(e)
        finally:
            progress_queue.put(None)  # sentinel

    threading.Thread(target=run, daemon=True).start()
    return jsonify({"status": "started"})


@bp.route("/api/jobs/<job_id>/progress")
def progress_stream(job_id: str):
    if job_id not in _jobs:
        return _error("Job not found", 404)

    job = _jobs[job_id]
    q = job.get("progress_queue")

    if q is None:
        return _error("No render in progress", 409)

    def generate():
        while True:
            try:
                msg = q.get(timeout=120)
            except queue.Empty:
                yield "data: {\"error\": \"timeout\"}\n\n"
                break
            if msg is None:
                if job["status"] == "error":
                    data = json.dumps({"error": job["error"]})
                else:
                    data = json.dumps({
                        "stage": "complete",
                        "progress": 100,
                        "result": job.get("result"),
                    })
                yield f"data: {data}\n\n"
                break
            yield f"data: {json.dumps(msg)}\n\n"

    return Response(generate(), mimetype="text/event-stream")


@bp.route("/api/jobs/<job_id>/result")
def download_result(job_id: str):
    if job_id not in _jobs:
        return _error("Job not found", 404)

    job = _jobs[job_id]
    if job["status"] != "done":
        return _error("Job not complete", 409)

    output_path = Path(job["result"]["output_path"])
    return send_file(output_path, mimetype="video/mp4", as_attachment=False)


@bp.route("/api/jobs/<job_id>/status")
def job_status(job_id: str):
    if job_id not in _jobs:
        return _error("Job not found", 404)

    job = _jobs[job_id]
    resp = {"status": job["status"], "filename": job.get("filename")}
    if job["status"] == "done":
        resp["result"] = job.get("result")
    if job["status"] == "error":
        resp["error"] = job.get("error")
    return jsonify(resp)
