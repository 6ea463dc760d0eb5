"""Thin CLI entry point — transcribe audio, render captioned video, or serve the API."""

import argparse
import json
import logging
import mimetypes
import subprocess
import sys
from pathlib import Path

from subforge.config import load_settings
from subforge.formats import DEFAULT_FORMAT, FORMATS, get_format
from subforge.manifest import (
    Manifest,
    RenderRequest,
    load_manifest,
    load_segments,
)


def _transcribe(args, settings) -> None:
    from subforge.analyzers.transcribe import TranscriptionClient

    client = TranscriptionClient(
        api_token=settings.replicate_api_token,
        endpoint=settings.replicate_endpoint,
        hf_token=settings.huggingface_token or None,
        timeout=settings.transcription_timeout,
    )
    mime = mimetypes.guess_type(args.audio.name)[0] or "audio/mpeg"
    segments = client.transcribe(args.audio.read_bytes(), mime)
    payload = json.dumps({"segments": [s.to_dict() for s in segments]}, indent=2)

    if args.output:
        args.output.write_text(payload)
        print(f"Wrote {len(segments)} segments to {args.output}")
    else:
        print(payload)


def _render_local(m: Manifest, settings, font: Path | None) -> None:
    from subforge.renderers.local import LocalRenderService

    output = m.output or m.audio.with_suffix(".mp4")

    def on_progress(pct: int) -> None:
        print(f"  [{pct:3d}%] encoding")

    with LocalRenderService(
        font_path=font or settings.font_path,
        ffmpeg=settings.ffmpeg_path,
        ffprobe=settings.ffprobe_path,
    ) as service:
        result = service.render(
            m.audio.read_bytes(),
            m.segments,
            m.format,
            audio_suffix=m.audio.suffix,
            on_progress=on_progress,
            duration=m.duration,
        )
    output.write_bytes(result.data)

    print()
    print(f"Done! Output: {output}")
    print(f"  Duration: {result.duration:.1f}s ({result.frames} frames at {m.format.fps} fps)")


def _publish(m: Manifest, settings) -> None:
    from subforge.engine import process
    from subforge.storage import get_storage

    def on_progress(stage: str, frac: float) -> None:
        print(f"  [{frac:3.0%}] {stage}")

    request = RenderRequest(
        audio=m.audio.read_bytes(), segments=m.segments, format=m.format, filename=m.audio.name
    )
    result = process(request, get_storage(settings), settings=settings, on_progress=on_progress)

    print()
    print(f"Done! Video URL: {result.url}")
    print(f"  Duration: {result.duration:.1f}s ({result.frames} frames)")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="subforge",
        description="SubForge — transcribe audio and render subtitle videos.",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command")

    tr = sub.add_parser("transcribe", help="Transcribe an audio file")
    tr.add_argument("audio", type=Path, help="Input audio file")
    tr.add_argument("--output", "-o", type=Path, help="Write segments JSON here")

    for name, help_text in (
        ("render", "Render a captioned video locally"),
        ("publish", "Render a captioned video and upload it to storage"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("audio", type=Path, help="Input audio file")
        p.add_argument("segments", type=Path, help="Segments JSON file")
        p.add_argument("--format", "-f", choices=list(FORMATS), default=DEFAULT_FORMAT)
        if name == "render":
            p.add_argument("--output", "-o", type=Path, help="Output file path")
            p.add_argument("--duration", type=float, help="Video length when there are no segments")
            p.add_argument("--font", type=Path, help="TrueType font for captions")

    proc = sub.add_parser("process", help="Run a JSON manifest")
    proc.add_argument("--manifest", "-m", type=Path, required=True, help="Path to a JSON manifest file")

    serve = sub.add_parser("serve", help="Launch the web API")
    serve.add_argument("--port", type=int, default=8321, help="Port to listen on")
    serve.add_argument("--host", type=str, default="127.0.0.1", help="Host to bind to")

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    settings = load_settings()

    if args.command == "serve":
        from subforge.web import create_app
        app = create_app(settings=settings)
        print(f"SubForge API: http://{args.host}:{args.port}")
        app.run(host=args.host, port=args.port, debug=False)
        return

    try:
        if args.command == "transcribe":
            _transcribe(args, settings)
        elif args.command == "process":
            m = load_manifest(args.manifest)
            if m.mode == "publish":
                _publish(m, settings)
            else:
                _render_local(m, settings, font=None)
        else:
            m = Manifest(
                audio=args.audio,
                segments=load_segments(args.segments),
                format=get_format(args.format),
                output=getattr(args, "output", None),
                mode="publish" if args.command == "publish" else "local",
                duration=getattr(args, "duration", None),
            )
            if args.command == "publish":
                _publish(m, settings)
            else:
                _render_local(m, settings, font=args.font)
    except (ValueError, RuntimeError, OSError, subprocess.CalledProcessError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
