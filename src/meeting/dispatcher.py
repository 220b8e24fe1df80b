"""
Transcription dispatch with retry and provider fallback.

For each chunk the providers are tried in priority order. A retryable error
retries the same provider (``max_retries`` times, waiting ``retry_delays``);
a non-retryable error moves on to the next provider; a polling timeout ends
the attempt for that chunk. When nothing succeeds the chunk is reported as
unavailable and the session carries on.
"""

import re
import threading
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from logger import get_logger, log_exception
from providers import (
    ProviderCancelled,
    ProviderError,
    ProviderNotAvailableError,
    ProviderResult,
    ProviderTimeout,
    SpeakerHint,
    TranscriptionHints,
    TranscriptionProvider,
    create_provider,
    is_provider_available,
)
from .events import EventChannel, EventType
from .models import AudioChunk

_log = get_logger("dispatcher")

# Used when a provider returns text without a confidence
DEFAULT_CONFIDENCE = 0.85

FILLERS = [r'\bum+\b', r'\buh+\b', r'\bah+\b', r'\beh+\b', r'\bhmm+\b', r'\bmm+\b', r'\bhm+\b']

# Whisper hallucinations on silent tails (only stripped at the very end)
TRAILING_HALLUCINATIONS = [
    r"\s*(thanks|thank you) for watching\.?\s*$",
    r"\s*(please )?(like and )?subscribe( to (my|the|our) channel)?\.?\s*$",
    r"\s*see you (in the )?next (one|video|time)\.?\s*$",
    r"\s*\[(music|applause|blank_audio)\]\s*$",
    r"\s*♪.*$",
]


def clean_text(text: str) -> str:
    """Strip filler words and trailing hallucinations, tidy spacing and punctuation."""
    if not text or not text.strip():
        return ""

    for pattern in TRAILING_HALLUCINATIONS:
        text = re.sub(pattern, '', text, flags=re.IGNORECASE)
    for filler in FILLERS:
        text = re.sub(filler, '', text, flags=re.IGNORECASE)

    text = re.sub(r'\s+', ' ', text)
    text = re.sub(r'\s+([,.?!])', r'\1', text)
    text = re.sub(r'([,.?!])\s*\1+', r'\1', text)
    text = re.sub(r',\s*\.', '.', text)
    text = re.sub(r'^\s*[,.]\s*', '', text)
    return text.strip()


def normalize_confidence(value: Optional[float]) -> float:
    if value is None:
        return DEFAULT_CONFIDENCE
    return max(0.0, min(1.0, float(value)))


@dataclass
class Transcription:
    """A provider result after normalization."""
    text: str
    confidence: float
    provider_id: str
    speaker_hints: List[SpeakerHint] = field(default_factory=list)
    is_final: bool = True


class TranscriptionDispatcher:
    """Sends chunks through the provider chain."""

    def __init__(
        self,
        providers: Sequence[TranscriptionProvider],
        max_retries: int = 2,
        retry_delays: Sequence[float] = (1.0, 2.0),
        events: Optional[EventChannel] = None,
        language: Optional[str] = None,
        expected_speakers: Optional[int] = None,
    ):
        self.providers = list(providers)
        self.max_retries = max(0, max_retries)
        self.retry_delays = list(retry_delays)
        self.events = events
        self.language = language
        self.expected_speakers = expected_speakers
        self._cancel = threading.Event()

    @property
    def provider_ids(self) -> List[str]:
        return [p.PROVIDER_ID for p in self.providers]

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _retry_delay(self, retry_number: int) -> float:
        if not self.retry_delays:
            return 0.0
        return self.retry_delays[min(retry_number - 1, len(self.retry_delays) - 1)]

    def _publish(self, event_type: EventType, **payload):
        if self.events is not None:
            self.events.publish(event_type, **payload)

    def _report_failure(self, chunk: AudioChunk, provider_id: str, attempt: int, error: ProviderError):
        _log.warning("Chunk %d: %s attempt %d failed (retryable=%s): %s",
                     chunk.index, provider_id, attempt, error.retryable, error)
        self._publish(
            EventType.PROVIDER_FAILED,
            chunk_index=chunk.index,
            start_offset=chunk.start_offset,
            provider_id=provider_id,
            attempt=attempt,
            retryable=error.retryable,
            message=str(error),
        )

    def transcribe(self, chunk: AudioChunk) -> Optional[Transcription]:
        """
        Transcribe one chunk through the chain.

        Returns:
            The normalized transcription, or None when every provider failed or
            the dispatcher was cancelled
        """
        hints = TranscriptionHints(
            sample_rate=chunk.sample_rate,
            language=self.language,
            expected_speakers=self.expected_speakers,
        )
        reason = "no transcription provider configured"

        for provider in self.providers:
            provider_id = provider.PROVIDER_ID
            for attempt in range(1, self.max_retries + 2):
                if attempt > 1 and self._cancel.wait(self._retry_delay(attempt - 1)):
                    return None
                if self._cancel.is_set():
                    return None

                try:
                    result = provider.transcribe(chunk.pcm, hints, self._cancel)
                except ProviderCancelled:
                    return None
                except ProviderTimeout as e:
                    self._report_failure(chunk, provider_id, attempt, e)
                    return self._unavailable(chunk, str(e))
                except ProviderError as e:
                    self._report_failure(chunk, provider_id, attempt, e)
                    reason = str(e)
                    if e.retryable:
                        continue
                    break
                except Exception as e:
                    log_exception(e, f"in provider '{provider_id}'")
                    error = ProviderError(provider_id, f"unexpected error: {e}", retryable=False)
                    self._report_failure(chunk, provider_id, attempt, error)
                    reason = str(error)
                    break
                else:
                    return self._normalize(result, provider_id)

        return self._unavailable(chunk, reason)

    def _normalize(self, result: ProviderResult, provider_id: str) -> Transcription:
        return Transcription(
            text=clean_text(result.text),
            confidence=normalize_confidence(result.confidence),
            provider_id=provider_id,
            speaker_hints=list(result.speaker_hints),
            is_final=result.is_final,
        )

    def _unavailable(self, chunk: AudioChunk, reason: str) -> None:
        if self._cancel.is_set():
            return None
        _log.error("Chunk %d (%.1fs) could not be transcribed: %s", chunk.index, chunk.start_offset, reason)
        self._publish(
            EventType.TRANSCRIPTION_UNAVAILABLE,
            chunk_index=chunk.index,
            start_offset=chunk.start_offset,
            duration=chunk.duration,
            reason=reason,
        )
        return None

    def cancel(self) -> None:
        """Abort polling and retry waits; results still in flight are dropped."""
        self._cancel.set()

    def close(self) -> None:
        self.cancel()
        for provider in self.providers:
            try:
                provider.close()
            except Exception as e:
                _log.warning("Error closing provider %s: %s", provider.PROVIDER_ID, e)


def build_provider_chain(specs, offline_fallback: bool = True, local_options: Optional[dict] = None,
                         poll_options: Optional[dict] = None) -> List[TranscriptionProvider]:
    """
    Instantiate the configured providers in priority order.

    With no providers configured, or none that could be created, the local
    Whisper model is used if installed.
    A provider that cannot be created (unknown id, missing dependency or key)
    is skipped with an error in the log.
    """
    chain: List[TranscriptionProvider] = []
    for spec in specs:
        options = dict(poll_options or {})
        options.update(spec.options)
        try:
            chain.append(create_provider(spec.provider_id, spec.credentials, **options))
        except (ValueError, ProviderNotAvailableError) as e:
            _log.error("Skipping provider '%s': %s", spec.provider_id, e)

    if not chain and offline_fallback:
        reason = "could be created" if specs else "configured"
        if is_provider_available("whisper_local"):
            _log.warning("No providers %s, using local Whisper", reason)
            chain.append(create_provider("whisper_local", None, **(local_options or {})))
        else:
            _log.error("No providers %s and faster-whisper is not installed; nothing will be transcribed",
                       reason)
    elif not chain:
        _log.error("No transcription providers available; nothing will be transcribed")

    return chain
