"""Output format catalog and the caption layout policy for each format."""

from dataclasses import dataclass

from subforge.models import VideoFormat

FORMATS: dict[str, VideoFormat] = {
    "landscape": VideoFormat(name="landscape", width=1920, height=1080, fps=30),
    "portrait": VideoFormat(name="portrait", width=1080, height=1920, fps=30),
    "square": VideoFormat(name="square", width=1080, height=1080, fps=30),
    "tiktok": VideoFormat(name="tiktok", width=1080, height=1920, fps=30),
}

DEFAULT_FORMAT = "landscape"


@dataclass(frozen=True)
class LayoutPolicy:
    """How captions are wrapped, sized and placed within a frame."""

    max_chars: int
    font_size: int
    line_height: int
    box_border: int
    anchor: float  # vertical anchor as a fraction of frame height


WIDE_LAYOUT = LayoutPolicy(max_chars=100, font_size=36, line_height=10, box_border=8, anchor=0.5)
TALL_LAYOUT = LayoutPolicy(max_chars=60, font_size=44, line_height=12, box_border=10, anchor=0.8)

LAYOUTS: dict[str, LayoutPolicy] = {
    name: TALL_LAYOUT if fmt.is_tall else WIDE_LAYOUT
    for name, fmt in FORMATS.items()
}


class UnknownFormatError(ValueError):
    pass


def get_format(name: str) -> VideoFormat:
    """Look up a format by name, raising UnknownFormatError if absent."""
    if not isinstance(name, str):
        raise UnknownFormatError(f"Format must be a string, got {name!r}")
    try:
        return FORMATS[name]
    except KeyError:
        choices = ", ".join(FORMATS)
        raise UnknownFormatError(
            f"Unsupported format '{name}' (expected one of: {choices})"
        ) from None


def get_layout(fmt: VideoFormat) -> LayoutPolicy:
    return LAYOUTS.get(fmt.name, TALL_LAYOUT if fmt.is_tall else WIDE_LAYOUT)
