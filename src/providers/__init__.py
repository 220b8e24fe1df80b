"""
meetscribe transcription providers

One interface over several backends:
- AssemblyAI (upload + poll, speaker labels)
- OpenAI Whisper API (synchronous HTTP)
- Self-hosted Whisper server (synchronous HTTP)
- Local faster-whisper (offline fallback)
"""

from .base import (
    TranscriptionProvider,
    AsyncJobProvider,
    ProviderResult,
    SpeakerHint,
    TranscriptionHints,
    JobState,
    JobStatus,
    ProviderError,
    ProviderTimeout,
    ProviderCancelled,
    ProviderNotAvailableError,
)
from .factory import (
    create_provider,
    get_available_providers,
    is_provider_available,
    get_provider_class,
    get_all_providers,
    register_provider,
)

__all__ = [
    # Base classes
    "TranscriptionProvider",
    "AsyncJobProvider",
    "ProviderResult",
    "SpeakerHint",
    "TranscriptionHints",
    "JobState",
    "JobStatus",
    "ProviderError",
    "ProviderTimeout",
    "ProviderCancelled",
    "ProviderNotAvailableError",
    # Factory functions
    "create_provider",
    "get_available_providers",
    "is_provider_available",
    "get_provider_class",
    "get_all_providers",
    "register_provider",
]
