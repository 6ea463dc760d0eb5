"""Composition variants for the publish path, one per output format.

A composition fixes frame size, rate and caption layout. Its length starts as
a placeholder and is set from the measured audio before rendering.
"""

import logging
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable

from subforge import ffutil
from subforge.editors.captions import build_overlay_stages, frame_count, join_stages
from subforge.formats import FORMATS, LayoutPolicy, get_format, get_layout
from subforge.models import TranscriptSegment, VideoFormat

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Composition:
    id: str
    format: VideoFormat
    layout: LayoutPolicy
    fps: int
    duration_in_frames: int = 1

    @property
    def width(self) -> int:
        return self.format.width

    @property
    def height(self) -> int:
        return self.format.height

    @property
    def duration(self) -> float:
        return self.duration_in_frames / self.fps

    def with_duration(self, seconds: float, fps: int | None = None) -> "Composition":
        """Copy with the frame count recomputed for ``seconds`` of media."""
        fps = fps or self.fps
        return replace(self, fps=fps, duration_in_frames=frame_count(seconds, fps))


COMPOSITIONS: dict[str, Composition] = {
    name: Composition(id=f"video-{name}", format=fmt, layout=get_layout(fmt), fps=fmt.fps)
    for name, fmt in FORMATS.items()
}


def select_composition(format_name: str) -> Composition:
    get_format(format_name)  # raises UnknownFormatError
    return COMPOSITIONS[format_name]


def build_composition_command(
    composition: Composition,
    audio_name: str,
    overlay: str,
    output_name: str,
    ffmpeg: str = "ffmpeg",
) -> list[str]:
    source = (
        f"color=c=black:s={composition.width}x{composition.height}:r={composition.fps}"
    )
    return [
        ffmpeg, "-y",
        "-f", "lavfi", "-i", source,
        "-i", audio_name,
        "-filter_complex", f"[0:v]{overlay},format=yuv420p[v]",
        "-map", "[v]",
        "-map", "1:a",
        "-frames:v", str(composition.duration_in_frames),
        "-c:v", "libx264",
        "-c:a", "aac",
        output_name,
    ]


def render_media(
    composition: Composition,
    segments: list[TranscriptSegment],
    audio_path: Path,
    output_path: Path,
    font: str | None = None,
    ffmpeg: str = "ffmpeg",
    on_progress: Callable[[int], None] | None = None,
    cancel: threading.Event | None = None,
    timeout: float | None = None,
) -> Path:
    """Render ``composition`` to an H.264/AAC file of exactly its frame count.

    ``audio_path``, ``output_path`` and ``font`` are resolved relative to the
    output directory, which is used as ffmpeg's working directory.
    """
    stages = build_overlay_stages(segments, composition.format, font=font, layout=composition.layout)
    cmd = build_composition_command(
        composition,
        audio_name=str(audio_path),
        overlay=join_stages(stages),
        output_name=str(output_path),
        ffmpeg=ffmpeg,
    )
    logger.info(
        "Rendering %s: %d frames at %d fps", composition.id,
        composition.duration_in_frames, composition.fps,
    )
    ffutil.run_ffmpeg(
        cmd,
        cwd=output_path.parent,
        duration=composition.duration,
        on_progress=on_progress,
        cancel=cancel,
        timeout=timeout,
    )
    return output_path
