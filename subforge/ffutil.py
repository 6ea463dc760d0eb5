"""FFmpeg/ffprobe subprocess helpers."""

import logging
import shutil
import subprocess
import tempfile
import threading
import time
from pathlib import Path
from typing import Callable

from PIL import Image

logger = logging.getLogger(__name__)


class FFmpegNotFoundError(RuntimeError):
    pass


class RenderCancelled(RuntimeError):
    """Raised when an encode is aborted by a cancel event or timeout."""


def check_ffmpeg(ffmpeg: str = "ffmpeg", ffprobe: str = "ffprobe") -> None:
    """Raise FFmpegNotFoundError if ffmpeg/ffprobe are not on PATH."""
    for cmd in (ffmpeg, ffprobe):
        if shutil.which(cmd) is None:
            raise FFmpegNotFoundError(f"{cmd} not found on PATH")


def probe_duration(input_path: Path, ffprobe: str = "ffprobe") -> float:
    """Return the container duration of a media file in seconds."""
    cmd = [
        ffprobe,
        "-v", "quiet",
        "-show_entries", "format=duration",
        "-of", "csv=p=0",
        str(input_path),
    ]
    result = subprocess.run(cmd, capture_output=True, text=True, check=True)
    value = result.stdout.strip()
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Could not read duration of {input_path}: {value!r}") from None


def write_background(output_path: Path, width: int, height: int, color: str = "black") -> Path:
    """Write a solid-colour PNG used as the still video track."""
    Image.new("RGB", (width, height), color).save(output_path, format="PNG")
    return output_path


def parse_progress(line: str) -> float | None:
    """Return encoded seconds from one ``-progress`` line, or None.

    ffmpeg reports ``out_time_us`` and, despite the name, ``out_time_ms`` both
    in microseconds.
    """
    key, _, value = line.strip().partition("=")
    if key not in ("out_time_us", "out_time_ms"):
        return None
    try:
        return int(value) / 1_000_000
    except ValueError:
        return None  # "N/A" before the first frame


def run_ffmpeg(
    cmd: list[str],
    cwd: Path | None = None,
    duration: float | None = None,
    on_progress: Callable[[int], None] | None = None,
    cancel: threading.Event | None = None,
    timeout: float | None = None,
) -> None:
    """Run an ffmpeg command, reporting integer percent progress.

    The process is killed and RenderCancelled raised when ``cancel`` is set
    or ``timeout`` seconds pass. A non-zero exit raises CalledProcessError
    carrying ffmpeg's stderr.
    """
    full_cmd = [cmd[0], "-progress", "pipe:1", "-nostats", *cmd[1:]]
    logger.debug("Running: %s", " ".join(full_cmd))

    finished = threading.Event()
    killed = threading.Event()
    deadline = time.monotonic() + timeout if timeout is not None else None
    last_pct = -1

    def report(pct: int) -> None:
        nonlocal last_pct
        if on_progress and pct != last_pct:
            last_pct = pct
            on_progress(pct)

    with tempfile.TemporaryFile() as stderr_file:
        proc = subprocess.Popen(
            full_cmd,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=stderr_file,
            text=True,
        )

        def watch() -> None:
            while not finished.wait(0.1):
                expired = deadline is not None and time.monotonic() >= deadline
                if expired or (cancel is not None and cancel.is_set()):
                    killed.set()
                    proc.kill()
                    return

        watcher = threading.Thread(target=watch, daemon=True)
        watcher.start()
        try:
            for line in proc.stdout:
                if line.startswith("progress=end"):
                    report(100)
                    continue
                seconds = parse_progress(line)
                if seconds is not None and duration:
                    report(max(0, min(100, round(seconds / duration * 100))))
            returncode = proc.wait()
        finally:
            finished.set()
            watcher.join()

        if killed.is_set():
            raise RenderCancelled("ffmpeg was cancelled before it finished")
        if returncode != 0:
            stderr_file.seek(0)
            stderr = stderr_file.read().decode(errors="replace")
            raise subprocess.CalledProcessError(returncode, full_cmd, stderr=stderr)
