"""
Local Whisper provider using faster-whisper.

This is the offline fallback: used when a session configures no provider at
all. Lower quality than the cloud providers but needs no network.
"""

import math
import threading
from typing import Any, Dict, Optional

import numpy as np

from logger import get_logger
from .base import ProviderError, ProviderResult, TranscriptionHints, TranscriptionProvider
from .factory import register_provider

_log = get_logger("providers.whisper_local")


@register_provider
class LocalWhisperProvider(TranscriptionProvider):
    """
    Transcription with a faster-whisper model on this machine.

    The model is loaded on first use; loading takes seconds, so the first chunk
    of a session is slower than the rest.
    """

    PROVIDER_ID = "whisper_local"
    PROVIDER_NAME = "Whisper (faster-whisper, local)"

    def __init__(self, credentials: Optional[Dict[str, str]] = None, **options: Any):
        super().__init__(credentials, **options)
        self.model_name = options.get("model", "base")
        self.device = options.get("device", "cpu")
        self.compute_type = options.get("compute_type", "int8")
        self.vad_filter = bool(options.get("vad_filter", True))
        self._model = None
        self._load_lock = threading.Lock()

    @classmethod
    def is_available(cls) -> bool:
        """Check if faster-whisper is installed."""
        try:
            import faster_whisper  # noqa: F401
            return True
        except ImportError:
            return False

    @classmethod
    def get_install_hint(cls) -> str:
        return "pip install meetscribe[local]"

    def _ensure_model(self):
        with self._load_lock:
            if self._model is None:
                from faster_whisper import WhisperModel

                _log.info("Loading model '%s' on %s (%s)...", self.model_name, self.device, self.compute_type)
                try:
                    self._model = WhisperModel(self.model_name, device=self.device,
                                               compute_type=self.compute_type)
                except Exception as e:
                    raise ProviderError(self.PROVIDER_ID, f"failed to load model: {e}", retryable=False) from e
        return self._model

    def transcribe(
        self,
        audio: bytes,
        hints: TranscriptionHints,
        cancel_event: Optional[threading.Event] = None,
    ) -> ProviderResult:
        if hints.sample_rate != 16000:
            raise ProviderError(self.PROVIDER_ID, f"expected 16 kHz audio, got {hints.sample_rate}",
                                retryable=False)
        model = self._ensure_model()
        samples = np.frombuffer(audio, dtype=np.int16).astype(np.float32) / 32768.0

        segments_iter, _info = model.transcribe(
            audio=samples,
            language=hints.language,
            initial_prompt=hints.prompt,
            vad_filter=self.vad_filter,
            condition_on_previous_text=False,
        )

        texts = []
        probs = []
        for segment in segments_iter:
            # Segments are generated lazily; stop decoding once cancelled
            if cancel_event is not None and cancel_event.is_set():
                break
            texts.append(segment.text)
            probs.append(math.exp(min(0.0, segment.avg_logprob)))

        confidence = sum(probs) / len(probs) if probs else None
        return ProviderResult(text="".join(texts).strip(), confidence=confidence)

    def close(self) -> None:
        self._model = None
