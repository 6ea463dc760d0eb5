"""Client for a remotely deployed render function."""

import logging

import httpx

logger = logging.getLogger(__name__)


class RenderFunctionError(RuntimeError):
    pass


def request_render(url: str, body: dict, timeout: float = 900.0, client: httpx.Client | None = None) -> str:
    """POST a render body to the function at ``url`` and return its ``videoUrl``."""
    logger.info("Sending render request to %s", url)
    if client is None:
        response = httpx.post(url, json=body, timeout=timeout)
    else:
        response = client.post(url, json=body, timeout=timeout)

    if response.status_code >= 400:
        raise RenderFunctionError(f"HTTP error! status: {response.status_code}")
    try:
        data = response.json()
    except ValueError:
        raise RenderFunctionError("Invalid response from render function") from None
    video_url = data.get("videoUrl") if isinstance(data, dict) else None
    if not video_url:
        raise RenderFunctionError("Invalid response from render function")
    return video_url
