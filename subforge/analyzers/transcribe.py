"""Speech-to-text via a hosted model on Replicate."""

import base64
import logging
import time
from typing import Callable

from subforge.models import TranscriptSegment

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("succeeded", "failed", "canceled")
DEFAULT_SPEAKER = "SPEAKER_00"


class TranscriptionError(RuntimeError):
    """The model call failed after all retry attempts."""


class TranscriptionAuthError(TranscriptionError):
    """The API rejected our credentials (HTTP 401)."""


class TranscriptionConfigError(TranscriptionError):
    pass


class TranscriptionTimeout(TranscriptionError):
    pass


def parse_endpoint(endpoint: str) -> tuple[str, str]:
    """Split ``owner/name:version`` into ``(model, version)``."""
    model, _, version = (endpoint or "").partition(":")
    owner, _, name = model.partition("/")
    if not (owner and name and version):
        raise TranscriptionConfigError(
            "Invalid REPLICATE_ENDPOINT format. Expected format: owner/name:version"
        )
    return model, version


def _status_code(error: Exception) -> int | None:
    status = getattr(error, "status", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def normalize_segments(output) -> list[TranscriptSegment]:
    """Convert model output into segments, keeping the delivered order."""
    raw = output.get("segments") if isinstance(output, dict) else None
    segments: list[TranscriptSegment] = []
    for seg in raw or []:
        text = (seg.get("text") or "").strip()
        if not text:
            continue
        segments.append(
            TranscriptSegment(
                start=float(seg["start"]),
                end=float(seg["end"]),
                text=text,
                speaker=seg.get("speaker") or DEFAULT_SPEAKER,
            )
        )
    return segments


class TranscriptionClient:
    """Submits audio to a Replicate model and retries with exponential backoff.

    Args:
        api_token: Replicate API token.
        endpoint: Model reference as ``owner/name:version``.
        hf_token: Optional HuggingFace token, passed through for diarization.
        max_attempts: Total tries before giving up.
        backoff_factor: Wait after failed attempt ``n`` is
            ``base_delay * backoff_factor ** n`` seconds.
        timeout: Seconds to wait on one prediction before cancelling it.
        sleep, clock: Injected for tests.
        client: A ready ``replicate.Client``; built from ``api_token`` if omitted.
    """

    def __init__(
        self,
        api_token: str,
        endpoint: str,
        hf_token: str | None = None,
        max_attempts: int = 3,
        backoff_factor: float = 2,
        base_delay: float = 1.0,
        timeout: float | None = None,
        poll_interval: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        client=None,
    ):
        self.model, self.version = parse_endpoint(endpoint)
        self.hf_token = hf_token
        self.max_attempts = max_attempts
        self.backoff_factor = backoff_factor
        self.base_delay = base_delay
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock
        if client is None:
            import replicate

            client = replicate.Client(api_token=api_token)
        self._client = client

    def _input(self, audio: bytes, mime_type: str) -> dict:
        encoded = base64.b64encode(audio).decode("ascii")
        params = {
            "audio_file": f"data:{mime_type or 'audio/mpeg'};base64,{encoded}",
            "language_detection_min_prob": 0,
            "language_detection_max_tries": 5,
            "vad_onset": 0.5,
            "vad_offset": 0.363,
        }
        if self.hf_token:
            params["huggingface_access_token"] = self.hf_token
        return params

    def _wait(self, prediction):
        deadline = self._clock() + self.timeout if self.timeout is not None else None
        while prediction.status not in TERMINAL_STATUSES:
            if deadline is not None and self._clock() >= deadline:
                prediction.cancel()
                raise TranscriptionTimeout(
                    f"Prediction {prediction.id} did not finish within {self.timeout}s"
                )
            self._sleep(self.poll_interval)
            prediction.reload()
        return prediction

    def _run_once(self, params: dict) -> list[TranscriptSegment]:
        prediction = self._client.predictions.create(version=self.version, input=params)
        logger.debug("Prediction created: %s", prediction.id)
        prediction = self._wait(prediction)

        if prediction.status != "succeeded":
            raise RuntimeError(
                f"Prediction {prediction.status}: {prediction.error or 'no details'}"
            )
        if not prediction.output:
            raise RuntimeError("No output received from Replicate")
        return normalize_segments(prediction.output)

    def transcribe(self, audio: bytes, mime_type: str = "audio/mpeg") -> list[TranscriptSegment]:
        """Transcribe an audio buffer into time-stamped segments."""
        params = self._input(audio, mime_type)
        last_error: Exception | None = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                segments = self._run_once(params)
                logger.info("Transcription produced %d segments", len(segments))
                return segments
            except TranscriptionTimeout:
                raise
            except Exception as e:
                if _status_code(e) == 401:
                    raise TranscriptionAuthError(
                        "Authentication failed. Please check your API tokens."
                    ) from e
                last_error = e
                logger.warning(
                    "Transcription attempt %d/%d failed: %s", attempt, self.max_attempts, e
                )
                if attempt < self.max_attempts:
                    delay = self.base_delay * self.backoff_factor ** attempt
                    logger.info("Waiting %.1fs before next attempt", delay)
                    self._sleep(delay)

        raise TranscriptionError(
            f"Transcription failed after {self.max_attempts} attempts: {last_error}"
        ) from last_error
