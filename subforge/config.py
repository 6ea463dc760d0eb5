"""Runtime settings, read from the environment."""

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_AUDIO_TYPES = [
    "audio/mpeg",
    "audio/mp3",
    "audio/wav",
    "audio/x-wav",
    "audio/mp4",
    "audio/x-m4a",
    "audio/m4a",
    "audio/webm",
    "audio/ogg",
]


@dataclass
class Settings:
    """Service configuration for transcription, rendering and storage."""

    replicate_api_token: str = ""
    replicate_endpoint: str = ""
    huggingface_token: str = ""
    transcription_timeout: float | None = None

    bucket_name: str = "subforge-videos"
    use_local_storage: bool = False
    local_storage_path: Path = Path("/tmp/subforge-storage")
    local_storage_url: str = "http://localhost:8321/storage"

    render_function_url: str = ""
    font_path: Path | None = None
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"

    max_upload_mb: int = 100
    allowed_audio_types: list[str] = field(default_factory=lambda: list(DEFAULT_AUDIO_TYPES))


def _flag(value: str | None) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def load_settings(environ: dict[str, str] | None = None) -> Settings:
    """Build Settings from environment variables (``os.environ`` by default)."""
    env = os.environ if environ is None else environ
    defaults = Settings()

    timeout = env.get("TRANSCRIPTION_TIMEOUT")
    font = env.get("SUBFORGE_FONT")

    return Settings(
        replicate_api_token=env.get("REPLICATE_API_TOKEN", ""),
        replicate_endpoint=env.get("REPLICATE_ENDPOINT", ""),
        huggingface_token=env.get("HUGGINGFACE_TOKEN", ""),
        transcription_timeout=float(timeout) if timeout else None,
        bucket_name=env.get("VIDEO_BUCKET", defaults.bucket_name),
        use_local_storage=_flag(env.get("USE_LOCAL_STORAGE")),
        local_storage_path=Path(env.get("LOCAL_STORAGE_PATH", str(defaults.local_storage_path))),
        local_storage_url=env.get("LOCAL_STORAGE_URL", defaults.local_storage_url),
        render_function_url=env.get("RENDER_FUNCTION_URL", ""),
        font_path=Path(font) if font else None,
        ffmpeg_path=env.get("FFMPEG_PATH", defaults.ffmpeg_path),
        ffprobe_path=env.get("FFPROBE_PATH", defaults.ffprobe_path),
        max_upload_mb=int(env.get("MAX_UPLOAD_MB", defaults.max_upload_mb)),
    )
