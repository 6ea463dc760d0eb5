import logging
import re
import shutil
import time
from pathlib import Path

from subforge.config import Settings

logger = logging.getLogger(__name__)

VIDEO_CONTENT_TYPE = "video/mp4"
CACHE_CONTROL = "public, max-age=31536000"


def object_name(filename: str, now: float | None = None) -> str:
    """Timestamp-prefixed object name for a rendered video, e.g. ``1700000000000_talk.mp4``."""
    stem = Path(filename or "audio").stem or "audio"
    stem = re.sub(r"[^\w.-]+", "_", stem)
    millis = int((time.time() if now is None else now) * 1000)
    return f"{millis}_{stem}.mp4"


class LocalStorage:
    """Local file storage for development without GCS."""

    def __init__(self, base_path: Path, base_url: str) -> None:
        self.base_path = Path(base_path)
        self.base_url = base_url.rstrip("/")
        self.base_path.mkdir(parents=True, exist_ok=True)

    def get_public_url(self, name: str) -> str:
        return f"{self.base_url}/{name}"

    def get_file_path(self, name: str) -> Path:
        return self.base_path / name

    def upload(
        self,
        local_path: Path,
        name: str,
        content_type: str = VIDEO_CONTENT_TYPE,
        cache_control: str = CACHE_CONTROL,
    ) -> str:
        shutil.copyfile(local_path, self.get_file_path(name))
        return self.get_public_url(name)


class GCSStorage:
    """Google Cloud Storage bucket; uploads are made publicly readable."""

    def __init__(self, bucket_name: str, client=None) -> None:
        self.bucket_name = bucket_name
        self._client = client
        self._bucket = None

    @property
    def client(self):
        if self._client is None:
            from google.cloud import storage

            self._client = storage.Client()
        return self._client

    @property
    def bucket(self):
        if self._bucket is None:
            self._bucket = self.client.bucket(self.bucket_name)
        return self._bucket

    def get_public_url(self, name: str) -> str:
        return f"https://storage.googleapis.com/{self.bucket_name}/{name}"

    def upload(
        self,
        local_path: Path,
        name: str,
        content_type: str = VIDEO_CONTENT_TYPE,
        cache_control: str = CACHE_CONTROL,
    ) -> str:
        blob = self.bucket.blob(name)
        blob.cache_control = cache_control
        blob.upload_from_filename(str(local_path), content_type=content_type)
        blob.make_public()
        logger.info("Uploaded gs://%s/%s", self.bucket_name, name)
        return self.get_public_url(name)


def get_storage(settings: Settings) -> LocalStorage | GCSStorage:
    if settings.use_local_storage:
        return LocalStorage(settings.local_storage_path, settings.local_storage_url)
    return GCSStorage(settings.bucket_name)
