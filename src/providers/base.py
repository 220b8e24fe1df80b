"""
Base classes for transcription providers.

Every backend (cloud API, self-hosted server, local model) implements the same
``transcribe(audio, hints) -> ProviderResult`` contract. Providers that work by
upload-then-poll subclass ``AsyncJobProvider`` and only implement ``submit`` and
``poll_status``.
"""

import io
import threading
import wave
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


@dataclass
class SpeakerHint:
    """A provider's own idea of who spoke (diarization label or utterance)."""
    label: str
    text: str = ""
    start: float = 0.0    # Seconds from chunk start
    end: float = 0.0
    confidence: Optional[float] = None
    name: Optional[str] = None  # Set only when the provider knows a real name


@dataclass
class ProviderResult:
    """Raw result returned by a provider for one chunk."""
    text: str
    confidence: Optional[float] = None
    speaker_hints: List[SpeakerHint] = field(default_factory=list)
    is_final: bool = True


@dataclass
class TranscriptionHints:
    """Per-chunk context passed to providers."""
    sample_rate: int = 16000
    language: Optional[str] = None
    expected_speakers: Optional[int] = None
    prompt: Optional[str] = None


class JobStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class JobState:
    """Result of one poll of an asynchronous job."""
    status: JobStatus
    result: Optional[ProviderResult] = None
    error: Optional[str] = None


class ProviderError(Exception):
    """A provider call failed. ``retryable`` tells the dispatcher whether to try again."""
    def __init__(self, provider_id: str, message: str, retryable: bool = False):
        self.provider_id = provider_id
        self.retryable = retryable
        super().__init__(f"[{provider_id}] {message}")


class ProviderTimeout(ProviderError):
    """An asynchronous job did not finish within its polling ceiling."""
    def __init__(self, provider_id: str, message: str):
        super().__init__(provider_id, message, retryable=False)


class ProviderCancelled(ProviderError):
    """The call was abandoned because the session is stopping."""
    def __init__(self, provider_id: str):
        super().__init__(provider_id, "cancelled", retryable=False)


class ProviderNotAvailableError(Exception):
    """Raised when a provider is not available (missing dependencies)."""
    def __init__(self, provider_id: str, install_hint: str):
        self.provider_id = provider_id
        self.install_hint = install_hint
        super().__init__(f"Provider '{provider_id}' not available. {install_hint}")


def is_retryable_status(status_code: int) -> bool:
    """Rate limits and server errors are worth retrying; other 4xx are not."""
    return status_code == 429 or status_code >= 500


def pcm_to_wav_bytes(pcm: bytes, sample_rate: int, channels: int = 1) -> bytes:
    """Wrap raw int16 PCM in a WAV container for upload."""
    buffer = io.BytesIO()
    with wave.open(buffer, 'wb') as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(2)  # 16-bit
        wf.setframerate(sample_rate)
        wf.writeframes(pcm)
    return buffer.getvalue()


class TranscriptionProvider(ABC):
    """
    Abstract base class for transcription providers.

    Credentials are handed to the instance by the session that owns it and are
    never read from module state.
    """

    # Class attributes to be overridden by subclasses
    PROVIDER_ID: str = "base"
    PROVIDER_NAME: str = "Base Provider"
    REQUIRES_CREDENTIALS: bool = False

    def __init__(self, credentials: Optional[Dict[str, str]] = None, **options: Any):
        self.credentials: Dict[str, str] = dict(credentials or {})
        self.options: Dict[str, Any] = options

    @property
    def api_key(self) -> Optional[str]:
        return self.credentials.get("api_key")

    @abstractmethod
    def transcribe(
        self,
        audio: bytes,
        hints: TranscriptionHints,
        cancel_event: Optional[threading.Event] = None,
    ) -> ProviderResult:
        """
        Transcribe one chunk.

        Args:
            audio: Raw int16 mono PCM
            hints: Sample rate, language and speaker-count hints
            cancel_event: Set when the session stops; long calls should abort

        Returns:
            ProviderResult with text, optional confidence and speaker hints

        Raises:
            ProviderError: On failure, with ``retryable`` set appropriately
        """

    def close(self) -> None:
        """Release network sessions or models."""

    @classmethod
    def is_available(cls) -> bool:
        """Override in subclasses to check for specific dependencies."""
        return True

    @classmethod
    def get_install_hint(cls) -> str:
        return "Install required dependencies."


class AsyncJobProvider(TranscriptionProvider):
    """
    Provider that uploads audio, receives a job id and polls until done.

    Options:
        poll_interval: Seconds between polls (1.0 for fast mode, 2.0 for accurate)
        max_poll_attempts: Polls before giving up with ProviderTimeout
    """

    DEFAULT_POLL_INTERVAL = 2.0
    DEFAULT_MAX_POLL_ATTEMPTS = 120

    def __init__(self, credentials: Optional[Dict[str, str]] = None, **options: Any):
        super().__init__(credentials, **options)
        self.poll_interval = float(options.get("poll_interval", self.DEFAULT_POLL_INTERVAL))
        self.max_poll_attempts = int(options.get("max_poll_attempts", self.DEFAULT_MAX_POLL_ATTEMPTS))

    @abstractmethod
    def submit(self, audio: bytes, hints: TranscriptionHints) -> str:
        """Upload audio and start a job. Returns the job id."""

    @abstractmethod
    def poll_status(self, job_id: str) -> JobState:
        """Check a job once."""

    def cancel_job(self, job_id: str) -> None:
        """Ask the provider to stop a job. Default: nothing to cancel remotely."""

    def transcribe(
        self,
        audio: bytes,
        hints: TranscriptionHints,
        cancel_event: Optional[threading.Event] = None,
    ) -> ProviderResult:
        cancel_event = cancel_event or threading.Event()
        job_id = self.submit(audio, hints)

        for _ in range(self.max_poll_attempts):
            # Event.wait doubles as a cancellable sleep
            if cancel_event.wait(self.poll_interval):
                self.cancel_job(job_id)
                raise ProviderCancelled(self.PROVIDER_ID)

            state = self.poll_status(job_id)
            if state.status is JobStatus.COMPLETED:
                return state.result or ProviderResult(text="")
            if state.status is JobStatus.FAILED:
                raise ProviderError(self.PROVIDER_ID, state.error or "job failed", retryable=False)

        self.cancel_job(job_id)
        raise ProviderTimeout(
            self.PROVIDER_ID,
            f"job {job_id} still pending after {self.max_poll_attempts} polls",
        )
