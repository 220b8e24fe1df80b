"""
Self-hosted Whisper server provider.

Talks to a transcription server exposing ``POST /transcribe`` (base64 int16
PCM in, ``{"text": ...}`` out) and ``GET /status``. The server URL and token
come from the session's provider options/credentials.
"""

import base64
import threading
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import requests

from logger import get_logger
from .base import (
    ProviderError,
    ProviderResult,
    TranscriptionHints,
    TranscriptionProvider,
    is_retryable_status,
)
from .factory import register_provider

_log = get_logger("providers.server")

DEFAULT_SERVER_URL = "http://localhost:9876"


def _validate_server_url(url: str) -> str:
    """Validate server URL has valid scheme and netloc.

    Raises:
        ValueError: If URL is malformed
    """
    parsed = urlparse(url)

    if parsed.scheme not in ("http", "https"):
        raise ValueError(f"Invalid server_url: must start with http:// or https:// (got '{url}')")

    if not parsed.netloc or not parsed.hostname:
        raise ValueError(f"Invalid server_url: missing host (got '{url}')")

    return url.rstrip("/")


@register_provider
class WhisperServerProvider(TranscriptionProvider):
    """Client for a self-hosted Whisper transcription server."""

    PROVIDER_ID = "server"
    PROVIDER_NAME = "Whisper server"

    def __init__(self, credentials: Optional[Dict[str, str]] = None, **options: Any):
        super().__init__(credentials, **options)
        self.server_url = _validate_server_url(options.get("server_url", DEFAULT_SERVER_URL))
        self.connect_timeout = float(options.get("connect_timeout", 5.0))
        self.vad_filter = bool(options.get("vad_filter", True))

    def _get_headers(self) -> Dict[str, str]:
        """Get headers for requests, including API token if configured."""
        headers = {}
        if self.api_key:
            headers["X-API-Token"] = self.api_key
        return headers

    def is_server_available(self) -> bool:
        """Check if the transcription server is running and ready."""
        try:
            response = requests.get(f"{self.server_url}/status", timeout=2.0,
                                    headers=self._get_headers())
        except requests.RequestException:
            return False
        if response.status_code != 200:
            return False
        return bool(response.json().get("ready", False))

    def transcribe(
        self,
        audio: bytes,
        hints: TranscriptionHints,
        cancel_event: Optional[threading.Event] = None,
    ) -> ProviderResult:
        payload: Dict[str, Any] = {
            "audio_base64": base64.b64encode(audio).decode("utf-8"),
            "sample_rate": hints.sample_rate,
            "vad_filter": self.vad_filter,
        }
        if hints.language:
            payload["language"] = hints.language
        if hints.prompt:
            payload["initial_prompt"] = hints.prompt

        # Base 30s + 3x audio duration, capped at 15 min
        audio_duration_sec = len(audio) / 2 / hints.sample_rate
        read_timeout = min(30.0 + audio_duration_sec * 3, 900.0)

        try:
            response = requests.post(
                f"{self.server_url}/transcribe",
                json=payload,
                timeout=(self.connect_timeout, read_timeout),
                headers=self._get_headers(),
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            kind = "timed out" if isinstance(e, requests.Timeout) else "connection error"
            raise ProviderError(self.PROVIDER_ID, f"{kind}: {e}", retryable=True) from e
        except requests.RequestException as e:
            raise ProviderError(self.PROVIDER_ID, f"request error: {e}", retryable=False) from e

        if response.status_code == 401:
            raise ProviderError(self.PROVIDER_ID, "authentication failed: invalid or missing API token",
                                retryable=False)
        if response.status_code != 200:
            raise ProviderError(self.PROVIDER_ID, f"server error: {response.status_code}",
                                retryable=is_retryable_status(response.status_code))

        text = response.json().get("text", "")
        _log.debug("Server returned %d chars for %.1fs audio", len(text), audio_duration_sec)
        return ProviderResult(text=text.strip())
