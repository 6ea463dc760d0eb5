#!/usr/bin/env python3
"""Generate a synthetic audio clip and matching segments for render testing.

Produces a ~10-second MP3 with alternating tones and silence, plus a
segments JSON with one caption per tone:
  0-3s   440 Hz tone
  3-4s   silence
  4-7s   880 Hz tone
  7-8s   silence
  8-10s  660 Hz tone
"""

import json
import subprocess
import sys
from pathlib import Path

SEGMENTS = [
    {"start": 0.0, "end": 3.0, "text": "Hello world, this is the first caption."},
    {"start": 4.0, "end": 7.0, "text": "Special characters: it's (50%) [ok], {fine}."},
    {"start": 8.0, "end": 10.0, "text": "And that's the end."},
]


def generate_test_audio(output: Path) -> Path:
    output.parent.mkdir(parents=True, exist_ok=True)

    audio_filter = (
        "sine=f=440:d=3[a0];"
        "anullsrc=r=44100:cl=mono:d=1[s0];"
        "sine=f=880:d=3[a1];"
        "anullsrc=r=44100:cl=mono:d=1[s1];"
        "sine=f=660:d=2[a2];"
        "[a0][s0][a1][s1][a2]concat=n=5:v=0:a=1[aout]"
    )

    cmd = [
        "ffmpeg", "-y",
        "-filter_complex", audio_filter,
        "-map", "[aout]",
        "-c:a", "libmp3lame",
        str(output),
    ]
    subprocess.run(cmd, check=True)

    segments_path = output.with_suffix(".json")
    segments_path.write_text(json.dumps({"segments": SEGMENTS}, indent=2))
    print(f"Generated: {output} and {segments_path}")
    return segments_path


if __name__ == "__main__":
    out = Path(sys.argv[1]) if len(sys.argv) > 1 else Path("tests/fixtures/synthetic.mp3")
    generate_test_audio(out)
