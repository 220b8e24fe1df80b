"""
OpenAI-compatible Whisper API provider (synchronous).

Works with any endpoint implementing ``POST {base_url}/audio/transcriptions``
(OpenAI, Groq, local OpenAI-compatible servers).
"""

import math
import threading
from typing import Any, Dict, Optional

import requests

from logger import get_logger
from .base import (
    ProviderError,
    ProviderResult,
    TranscriptionHints,
    TranscriptionProvider,
    is_retryable_status,
    pcm_to_wav_bytes,
)
from .factory import register_provider

_log = get_logger("providers.openai")

DEFAULT_BASE_URL = "https://api.openai.com/v1"


def confidence_from_segments(segments) -> Optional[float]:
    """Mean per-segment probability, from Whisper's avg_logprob."""
    probs = []
    for seg in segments or []:
        logprob = seg.get("avg_logprob") if isinstance(seg, dict) else None
        if logprob is not None:
            probs.append(math.exp(min(0.0, float(logprob))))
    if not probs:
        return None
    return sum(probs) / len(probs)


@register_provider
class OpenAIWhisperProvider(TranscriptionProvider):
    """Whisper over the OpenAI audio transcription API."""

    PROVIDER_ID = "openai"
    PROVIDER_NAME = "OpenAI Whisper API"
    REQUIRES_CREDENTIALS = True

    def __init__(self, credentials: Optional[Dict[str, str]] = None, **options: Any):
        super().__init__(credentials, **options)
        self.base_url = str(options.get("base_url", DEFAULT_BASE_URL)).rstrip("/")
        self.model = options.get("model", "whisper-1")
        self.connect_timeout = float(options.get("connect_timeout", 5.0))
        self.read_timeout = float(options.get("read_timeout", 60.0))

    def transcribe(
        self,
        audio: bytes,
        hints: TranscriptionHints,
        cancel_event: Optional[threading.Event] = None,
    ) -> ProviderResult:
        wav = pcm_to_wav_bytes(audio, hints.sample_rate)
        data = {"model": self.model, "response_format": "verbose_json"}
        if hints.language:
            data["language"] = hints.language
        if hints.prompt:
            data["prompt"] = hints.prompt

        try:
            response = requests.post(
                f"{self.base_url}/audio/transcriptions",
                headers={"Authorization": f"Bearer {self.api_key}"},
                files={"file": ("chunk.wav", wav, "audio/wav")},
                data=data,
                timeout=(self.connect_timeout, self.read_timeout),
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise ProviderError(self.PROVIDER_ID, f"request failed: {e}", retryable=True) from e
        except requests.RequestException as e:
            raise ProviderError(self.PROVIDER_ID, f"request failed: {e}", retryable=False) from e

        if response.status_code == 401:
            raise ProviderError(self.PROVIDER_ID, "authentication failed: invalid API key", retryable=False)
        if response.status_code != 200:
            raise ProviderError(
                self.PROVIDER_ID,
                f"server returned {response.status_code}",
                retryable=is_retryable_status(response.status_code),
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderError(self.PROVIDER_ID, "invalid JSON response", retryable=True) from e

        text = (payload.get("text") or "").strip()
        _log.debug("Transcribed %d bytes -> %d chars", len(audio), len(text))
        return ProviderResult(
            text=text,
            confidence=confidence_from_segments(payload.get("segments")),
        )
