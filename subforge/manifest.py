"""Render request and manifest parsing shared by the CLI and the API."""

import base64
import binascii
import json
import math
from dataclasses import dataclass, field
from pathlib import Path

from subforge.formats import DEFAULT_FORMAT, get_format
from subforge.models import TranscriptSegment, VideoFormat


class ManifestError(ValueError):
    """Raised when a render request or manifest fails validation."""


def _seconds(item: dict, *keys: str) -> float:
    for key in keys:
        if key in item and item[key] is not None:
            value = item[key]
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ManifestError(f"'{key}' must be a number, got {value!r}")
            try:
                seconds = float(value)
            except OverflowError:
                seconds = math.inf
            if not math.isfinite(seconds):
                raise ManifestError(f"'{key}' must be a finite number, got {value!r}")
            return seconds
    raise ManifestError(f"Segment is missing '{keys[0]}'")


def parse_segments(items) -> list[TranscriptSegment]:
    """Validate a list of ``{text, start, end}`` dicts into segments.

    ``start_time``/``end_time`` are accepted as aliases, matching the shape the
    transcription endpoint has historically returned. Order is preserved and
    overlaps are allowed.
    """
    if not isinstance(items, list):
        raise ManifestError("Subtitles must be a list")

    segments: list[TranscriptSegment] = []
    for i, item in enumerate(items):
        if not isinstance(item, dict):
            raise ManifestError(f"Subtitle {i} must be an object")
        try:
            start = _seconds(item, "start", "start_time")
            end = _seconds(item, "end", "end_time")
        except ManifestError as e:
            raise ManifestError(f"Subtitle {i}: {e}") from None
        text = str(item.get("text") or "").strip()

        if start < 0:
            raise ManifestError(f"Subtitle {i}: start must be >= 0")
        if end <= start:
            raise ManifestError(f"Subtitle {i}: end must be greater than start")
        if not text:
            raise ManifestError(f"Subtitle {i}: text is empty")

        segments.append(
            TranscriptSegment(start=start, end=end, text=text, speaker=item.get("speaker"))
        )
    return segments


@dataclass
class RenderRequest:
    """One publish render: audio, captions and the target format."""

    audio: bytes
    segments: list[TranscriptSegment]
    format: VideoFormat
    filename: str = "audio.mp3"


def parse_render_request(data) -> RenderRequest:
    """Validate a ``{audioData, subtitles, format, filename}`` JSON body."""
    if not isinstance(data, dict):
        raise ManifestError("Request body must be a JSON object")
    if not data.get("audioData") or data.get("subtitles") is None or not data.get("format"):
        raise ManifestError("Missing required fields")

    try:
        audio = base64.b64decode(data["audioData"], validate=True)
    except (binascii.Error, TypeError, ValueError):
        raise ManifestError("audioData is not valid base64") from None
    if not audio:
        raise ManifestError("audioData is empty")

    return RenderRequest(
        audio=audio,
        segments=parse_segments(data["subtitles"]),
        format=get_format(data["format"]),
        filename=Path(str(data.get("filename") or "audio.mp3")).name,
    )


@dataclass
class Manifest:
    """Top-level CLI manifest."""

    audio: Path
    segments: list[TranscriptSegment] = field(default_factory=list)
    format: VideoFormat = field(default_factory=lambda: get_format(DEFAULT_FORMAT))
    output: Path | None = None
    mode: str = "local"
    duration: float | None = None


def load_segments(path: str | Path) -> list[TranscriptSegment]:
    """Load segments from a JSON file holding a list or ``{"segments": [...]}``."""
    data = json.loads(Path(path).read_text())
    if isinstance(data, dict):
        data = data.get("segments", [])
    return parse_segments(data)


def load_manifest(path: str | Path) -> Manifest:
    """Load and validate a manifest from a JSON file."""
    path = Path(path)
    data = json.loads(path.read_text())

    if "audio" not in data:
        raise ManifestError("Manifest must contain an 'audio' field")

    mode = data.get("mode", "local")
    if mode not in ("local", "publish"):
        raise ManifestError(f"Unknown mode '{mode}' (expected 'local' or 'publish')")

    raw_segments = data.get("segments", [])
    if isinstance(raw_segments, str):
        segments = load_segments(path.parent / raw_segments)
    else:
        segments = parse_segments(raw_segments)

    duration = data.get("duration")
    return Manifest(
        audio=Path(data["audio"]),
        segments=segments,
        format=get_format(data.get("format", DEFAULT_FORMAT)),
        output=Path(data["output"]) if data.get("output") else None,
        mode=mode,
        duration=float(duration) if duration is not None else None,
    )
