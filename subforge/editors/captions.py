"""Caption overlay builder: maps transcript segments to drawtext filter stages.

Stages are built as plain records first and only turned into ffmpeg filter
syntax by :meth:`OverlayStage.to_filter`, so wrapping, escaping and placement
can be checked without parsing filter strings.
"""

import math
import re
from dataclasses import dataclass
from decimal import Decimal

from subforge.formats import LayoutPolicy, get_layout
from subforge.models import TranscriptSegment, VideoFormat

_BRACKETS = re.compile(r"[\[\](){}]")

# Separator between wrapped lines inside text='...'; the option parser drops
# the backslash and drawtext sees a bare newline.
_LINE_BREAK = "\\\n"


def _num(value: float) -> str:
    """Shortest exact form of a number for filter syntax, without a trailing ``.0``."""
    text = repr(float(value))
    if text.endswith(".0"):
        text = text[:-2]
    return "0" if text == "-0" else text


def wrap_text(text: str, max_chars: int) -> list[str]:
    """Greedily pack words into lines of at most ``max_chars`` characters.

    A word longer than the budget gets a line of its own and is never split.
    """
    lines: list[str] = []
    current: list[str] = []
    length = 0  # characters used so far, including one trailing space per word

    for word in text.split():
        if current and length + len(word) > max_chars:
            lines.append(" ".join(current))
            current = [word]
            length = len(word) + 1
        else:
            current.append(word)
            length += len(word) + 1

    if current:
        lines.append(" ".join(current))
    return lines


def escape_drawtext(line: str) -> str:
    """Escape one caption line for a quoted drawtext ``text`` option.

    The result passes through three unescape levels inside
    ``-filter_complex``: the graph parser (quotes), the option parser
    (``\\`` and ``:``) and drawtext expansion (``\\`` and ``%``).
    """
    escaped = line.replace("\\", r"\\\\")
    escaped = escaped.replace("'", r"'\\\''")
    escaped = _BRACKETS.sub(lambda m: r"\\" + m.group(0), escaped)
    escaped = escaped.replace(":", r"\\\:")
    escaped = escaped.replace(",", r"\\,")
    escaped = escaped.replace("%", r"\\%")
    return escaped


@dataclass(frozen=True)
class OverlayStage:
    """One visibility-gated caption block."""

    lines: tuple[str, ...]
    start: float
    end: float
    font_size: int
    line_height: int
    box_border: int
    anchor: float
    font: str | None = "font.ttf"

    @property
    def y_offset(self) -> float:
        """Half the wrapped block height, so the block centres on its anchor."""
        return len(self.lines) * self.line_height / 2

    def is_active(self, t: float) -> bool:
        return self.start <= t <= self.end

    def to_filter(self) -> str:
        text = _LINE_BREAK.join(escape_drawtext(line) for line in self.lines)
        font = f"fontfile={self.font}" if self.font else "font=Sans"
        return (
            f"drawtext={font}:"
            f"text='{text}':"
            f"fontsize={self.font_size}:"
            "fontcolor=white:"
            "box=1:"
            "boxcolor=black@0.85:"
            f"boxborderw={self.box_border}:"
            "x=(w-text_w)/2:"
            f"y=(h*{_num(self.anchor)})-{_num(self.y_offset)}:"
            f"line_spacing={self.line_height}:"
            f"enable='between(t,{_num(self.start)},{_num(self.end)})'"
        )


def build_overlay_stages(
    segments: list[TranscriptSegment],
    fmt: VideoFormat,
    font: str | None = "font.ttf",
    layout: LayoutPolicy | None = None,
) -> list[OverlayStage]:
    """Return one overlay stage per segment, in input order."""
    layout = layout or get_layout(fmt)
    return [
        OverlayStage(
            lines=tuple(wrap_text(seg.text, layout.max_chars)),
            start=seg.start,
            end=seg.end,
            font_size=layout.font_size,
            line_height=layout.line_height,
            box_border=layout.box_border,
            anchor=layout.anchor,
            font=font,
        )
        for seg in segments
    ]


def join_stages(stages: list[OverlayStage]) -> str:
    """Chain stages into one filter; ``null`` passes video through untouched."""
    if not stages:
        return "null"
    return ",".join(stage.to_filter() for stage in stages)


def output_duration(
    segments: list[TranscriptSegment], fallback: float | None = None
) -> int:
    """Whole seconds needed to show every caption.

    With no segments the caller must pass ``fallback`` (usually the measured
    audio length).
    """
    if segments:
        return math.ceil(max(seg.end for seg in segments))
    if fallback is None:
        raise ValueError("No segments to derive a duration from and no fallback given")
    return math.ceil(fallback)


def frame_count(duration: float, fps: int) -> int:
    """``ceil(duration * fps)``, computed in decimal so 5.4 s at 30 fps is 162."""
    if duration < 0:
        raise ValueError(f"Duration must be non-negative, got {duration}")
    return math.ceil(Decimal(repr(float(duration))) * fps)
