"""
AssemblyAI provider (asynchronous upload + poll).

Flow: POST /v2/upload with the WAV bytes -> upload_url, POST /v2/transcript
with speaker labels enabled -> job id, then GET /v2/transcript/{id} until the
status is ``completed`` or ``error``.
"""

from typing import Any, Dict, List, Optional

import requests

from logger import get_logger
from .base import (
    AsyncJobProvider,
    JobState,
    JobStatus,
    ProviderError,
    ProviderResult,
    SpeakerHint,
    TranscriptionHints,
    is_retryable_status,
    pcm_to_wav_bytes,
)
from .factory import register_provider

_log = get_logger("providers.assemblyai")

DEFAULT_BASE_URL = "https://api.assemblyai.com/v2"


@register_provider
class AssemblyAIProvider(AsyncJobProvider):
    """Cloud transcription with speaker diarization via AssemblyAI."""

    PROVIDER_ID = "assemblyai"
    PROVIDER_NAME = "AssemblyAI"
    REQUIRES_CREDENTIALS = True

    def __init__(self, credentials: Optional[Dict[str, str]] = None, **options: Any):
        super().__init__(credentials, **options)
        self.base_url = str(options.get("base_url", DEFAULT_BASE_URL)).rstrip("/")
        self.connect_timeout = float(options.get("connect_timeout", 5.0))
        self.read_timeout = float(options.get("read_timeout", 30.0))
        self.speech_model = options.get("speech_model")

    def _headers(self) -> Dict[str, str]:
        return {"authorization": self.api_key or ""}

    def _request(self, method: str, path: str, **kwargs) -> dict:
        """Send a request and map transport/HTTP failures onto ProviderError."""
        url = f"{self.base_url}{path}"
        try:
            response = requests.request(
                method,
                url,
                headers={**self._headers(), **kwargs.pop("headers", {})},
                timeout=(self.connect_timeout, self.read_timeout),
                **kwargs,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise ProviderError(self.PROVIDER_ID, f"{method} {path} failed: {e}", retryable=True) from e
        except requests.RequestException as e:
            raise ProviderError(self.PROVIDER_ID, f"{method} {path} failed: {e}", retryable=False) from e

        if response.status_code in (401, 403):
            raise ProviderError(self.PROVIDER_ID, "authentication failed: invalid API key", retryable=False)
        if response.status_code >= 400:
            raise ProviderError(
                self.PROVIDER_ID,
                f"{method} {path} returned {response.status_code}",
                retryable=is_retryable_status(response.status_code),
            )
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(self.PROVIDER_ID, f"invalid JSON from {path}", retryable=True) from e

    def submit(self, audio: bytes, hints: TranscriptionHints) -> str:
        wav = pcm_to_wav_bytes(audio, hints.sample_rate)
        upload = self._request("POST", "/upload", data=wav,
                               headers={"content-type": "application/octet-stream"})
        upload_url = upload.get("upload_url")
        if not upload_url:
            raise ProviderError(self.PROVIDER_ID, "upload returned no upload_url", retryable=True)

        body: Dict[str, Any] = {
            "audio_url": upload_url,
            "speaker_labels": True,
            "punctuate": True,
            "format_text": True,
        }
        if hints.language:
            body["language_code"] = hints.language
        else:
            body["language_detection"] = True
        if hints.expected_speakers:
            body["speakers_expected"] = hints.expected_speakers
        if self.speech_model:
            body["speech_model"] = self.speech_model

        job = self._request("POST", "/transcript", json=body)
        job_id = job.get("id")
        if not job_id:
            raise ProviderError(self.PROVIDER_ID, "transcript request returned no id", retryable=True)
        _log.debug("Submitted job %s (%d bytes)", job_id, len(wav))
        return job_id

    def poll_status(self, job_id: str) -> JobState:
        data = self._request("GET", f"/transcript/{job_id}")
        status = data.get("status")

        if status == "completed":
            return JobState(JobStatus.COMPLETED, result=self._parse_transcript(data))
        if status == "error":
            return JobState(JobStatus.FAILED, error=data.get("error", "transcription failed"))
        # queued / processing
        return JobState(JobStatus.PENDING)

    def cancel_job(self, job_id: str) -> None:
        # No remote cancel for running jobs
        _log.debug("Abandoning job %s", job_id)

    @staticmethod
    def _parse_transcript(data: dict) -> ProviderResult:
        hints: List[SpeakerHint] = []
        for utterance in data.get("utterances") or []:
            hints.append(SpeakerHint(
                label=f"Speaker {utterance.get('speaker', '?')}",
                text=utterance.get("text", ""),
                start=(utterance.get("start") or 0) / 1000.0,
                end=(utterance.get("end") or 0) / 1000.0,
                confidence=utterance.get("confidence"),
            ))
        return ProviderResult(
            text=(data.get("text") or "").strip(),
            confidence=data.get("confidence"),
            speaker_hints=hints,
        )
