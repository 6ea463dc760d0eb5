"""Local render service: one ffmpeg engine with a private working directory."""

import logging
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Callable

from subforge import ffutil
from subforge.editors.captions import (
    build_overlay_stages,
    frame_count,
    join_stages,
    output_duration,
)
from subforge.models import RenderedVideo, TranscriptSegment, VideoFormat

logger = logging.getLogger(__name__)

BACKGROUND = "background.png"
FONT = "font.ttf"
OUTPUT = "output.mp4"


class EngineNotLoadedError(RuntimeError):
    pass


class EngineBusyError(RuntimeError):
    """Raised when a render is requested while another is still running."""


def build_local_command(
    audio_name: str,
    fmt: VideoFormat,
    duration: int,
    overlay: str,
    ffmpeg: str = "ffmpeg",
) -> list[str]:
    """Still-image + audio encode with the caption overlay applied."""
    filter_complex = (
        f"[0:v]scale={fmt.width}:{fmt.height},format=yuv420p[bg];[bg]{overlay}[v]"
    )
    return [
        ffmpeg,
        "-loop", "1",
        "-t", str(duration),
        "-i", BACKGROUND,
        "-i", audio_name,
        "-filter_complex", filter_complex,
        "-map", "[v]",
        "-map", "1:a",
        "-c:v", "libx264",
        "-preset", "ultrafast",
        "-c:a", "aac",
        "-shortest",
        "-y",
        OUTPUT,
    ]


class LocalRenderService:
    """Owns one encoder and its working directory.

    Lifecycle is ``load()`` once, any number of ``render()`` calls (never two
    at the same time), then ``dispose()``. Usable as a context manager.
    """

    def __init__(
        self,
        work_dir: Path | None = None,
        font_path: Path | None = None,
        ffmpeg: str = "ffmpeg",
        ffprobe: str = "ffprobe",
    ):
        self.work_dir = Path(work_dir) if work_dir else None
        self.font_path = Path(font_path) if font_path else None
        self.ffmpeg = ffmpeg
        self.ffprobe = ffprobe
        self._loaded = False
        self._owns_dir = False
        self._load_lock = threading.Lock()
        self._engine_lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def busy(self) -> bool:
        return self._engine_lock.locked()

    def load(self) -> None:
        with self._load_lock:
            if self._loaded:
                return
            ffutil.check_ffmpeg(self.ffmpeg, self.ffprobe)
            if self.work_dir is None:
                self.work_dir = Path(tempfile.mkdtemp(prefix="subforge_engine_"))
                self._owns_dir = True
            else:
                self.work_dir.mkdir(parents=True, exist_ok=True)
            self._loaded = True
            logger.info("Render engine loaded (work dir %s)", self.work_dir)

    def dispose(self) -> None:
        with self._load_lock:
            if not self._loaded:
                return
            if self._owns_dir:
                shutil.rmtree(self.work_dir, ignore_errors=True)
                self.work_dir = None
                self._owns_dir = False
            self._loaded = False

    def __enter__(self) -> "LocalRenderService":
        self.load()
        return self

    def __exit__(self, *exc) -> None:
        self.dispose()

    def _cleanup(self, names: list[str]) -> None:
        for name in names:
            path = self.work_dir / name
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Could not delete %s: %s", path, e)

    def render(
        self,
        audio: bytes,
        segments: list[TranscriptSegment],
        fmt: VideoFormat,
        audio_suffix: str = ".mp3",
        on_progress: Callable[[int], None] | None = None,
        duration: float | None = None,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> RenderedVideo:
        """Encode ``audio`` over a black frame with captions burned in."""
        if not self._loaded:
            raise EngineNotLoadedError("Render engine not loaded")
        if not self._engine_lock.acquire(blocking=False):
            logger.warning("Rejected render: engine is busy")
            raise EngineBusyError("A render is already in progress")

        audio_name = f"audio{audio_suffix or '.mp3'}"
        names = [BACKGROUND, audio_name, FONT, OUTPUT]
        try:
            self._cleanup(names)

            ffutil.write_background(self.work_dir / BACKGROUND, fmt.width, fmt.height)
            (self.work_dir / audio_name).write_bytes(audio)
            font = None
            if self.font_path is not None:
                shutil.copyfile(self.font_path, self.work_dir / FONT)
                font = FONT

            if not segments and duration is None:
                duration = ffutil.probe_duration(self.work_dir / audio_name, self.ffprobe)
            seconds = output_duration(segments, fallback=duration)

            overlay = join_stages(build_overlay_stages(segments, fmt, font=font))
            cmd = build_local_command(audio_name, fmt, seconds, overlay, ffmpeg=self.ffmpeg)

            logger.info(
                "Rendering %d captions, %ds, %s format", len(segments), seconds, fmt.name
            )
            ffutil.run_ffmpeg(
                cmd,
                cwd=self.work_dir,
                duration=seconds,
                on_progress=on_progress,
                cancel=cancel,
                timeout=timeout,
            )
            # -shortest can end the file before the planned length
            encoded = ffutil.probe_duration(self.work_dir / OUTPUT, self.ffprobe)
            data = (self.work_dir / OUTPUT).read_bytes()
            return RenderedVideo(
                duration=encoded, frames=frame_count(encoded, fmt.fps), data=data
            )
        finally:
            self._cleanup(names)
            self._engine_lock.release()
