"""Shared data types used across SubForge."""

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class TranscriptSegment:
    """A time-stamped piece of transcript, times in seconds."""

    start: float
    end: float
    text: str
    speaker: str | None = None

    def to_dict(self) -> dict:
        data = {"start": self.start, "end": self.end, "text": self.text}
        if self.speaker is not None:
            data["speaker"] = self.speaker
        return data


@dataclass(frozen=True)
class VideoFormat:
    """An output frame size and rate."""

    name: str
    width: int
    height: int
    fps: int

    @property
    def is_tall(self) -> bool:
        return self.height > self.width


@dataclass
class RenderedVideo:
    """Result of one render: encoded bytes (local) or a public URL (publish)."""

    duration: float
    frames: int
    data: bytes | None = None
    path: Path | None = None
    url: str | None = None
