"""Publish render pipeline: one request in, one public video URL out."""

import json
import logging
import shutil
import tempfile
import threading
import time
from pathlib import Path
from typing import Callable

from subforge import ffutil
from subforge.compositions import render_media, select_composition
from subforge.config import Settings
from subforge.manifest import RenderRequest, load_segments, parse_render_request
from subforge.models import RenderedVideo
from subforge.storage import object_name

logger = logging.getLogger(__name__)

STAGES = (
    "received",
    "validated",
    "duration-measured",
    "bundled",
    "composition-selected",
    "rendering",
    "uploading",
    "done",
)
FAILED = "failed"


class RenderPipelineError(RuntimeError):
    """A publish render failed; ``stage`` is the last step reached before it broke."""

    def __init__(self, stage: str, error: Exception):
        super().__init__(str(error) or error.__class__.__name__)
        self.stage = stage
        self.error = error


def process(
    request: RenderRequest | dict,
    storage,
    settings: Settings | None = None,
    on_progress: Callable[[str, float], None] | None = None,
    cancel: threading.Event | None = None,
    timeout: float | None = None,
    clock: Callable[[], float] = time.time,
) -> RenderedVideo:
    """Render a request to MP4, upload it and return its public URL.

    Args:
        request: A parsed request, or the raw JSON body. Validation errors
            from a raw body propagate unchanged.
        storage: Anything with ``upload(local_path, name) -> url``.
        on_progress: Optional callback(stage_name, fraction_complete).
    """
    settings = settings or Settings()
    stage = STAGES[0]

    def _progress(name: str, frac: float) -> None:
        nonlocal stage
        stage = name
        logger.info("Render stage: %s", name)
        if on_progress:
            on_progress(name, frac)

    def _render_progress(pct: int) -> None:
        if on_progress:
            on_progress("rendering", 0.2 + 0.65 * pct / 100)

    _progress("received", 0.0)
    if not isinstance(request, RenderRequest):
        try:
            request = parse_render_request(request)
        except ValueError:
            _progress(FAILED, 1.0)
            raise
    _progress("validated", 0.05)

    work_dir = Path(tempfile.mkdtemp(prefix="video-"))
    try:
        suffix = Path(request.filename).suffix or ".mp3"
        audio_path = work_dir / f"audio{suffix}"
        audio_path.write_bytes(request.audio)
        duration = ffutil.probe_duration(audio_path, settings.ffprobe_path)
        _progress("duration-measured", 0.1)

        bundle_path = work_dir / "subtitles.json"
        bundle_path.write_text(json.dumps([seg.to_dict() for seg in request.segments]))
        font = None
        if settings.font_path is not None:
            shutil.copyfile(settings.font_path, work_dir / "font.ttf")
            font = "font.ttf"
        _progress("bundled", 0.15)

        composition = select_composition(request.format.name).with_duration(duration)
        _progress("composition-selected", 0.2)

        _progress("rendering", 0.2)
        output_path = work_dir / "output.mp4"
        render_media(
            composition,
            load_segments(bundle_path),
            audio_path=Path(audio_path.name),
            output_path=output_path,
            font=font,
            ffmpeg=settings.ffmpeg_path,
            on_progress=_render_progress,
            cancel=cancel,
            timeout=timeout,
        )

        _progress("uploading", 0.9)
        url = storage.upload(output_path, object_name(request.filename, now=clock()))

        _progress("done", 1.0)
        return RenderedVideo(
            duration=duration,
            frames=composition.duration_in_frames,
            url=url,
        )
    except Exception as e:
        failed_at = stage
        logger.error("Render failed during %s: %s", failed_at, e)
        _progress(FAILED, 1.0)
        raise RenderPipelineError(failed_at, e) from e
    finally:
        try:
            shutil.rmtree(work_dir)
        except OSError as e:
            logger.warning("Could not remove %s: %s", work_dir, e)
