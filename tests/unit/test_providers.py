"""
Tests for transcription providers (HTTP calls mocked).
"""

import base64
import threading
from unittest.mock import MagicMock, patch

import pytest
import requests

from providers import (
    AsyncJobProvider,
    JobState,
    JobStatus,
    ProviderCancelled,
    ProviderError,
    ProviderResult,
    ProviderTimeout,
    TranscriptionHints,
    create_provider,
    get_all_providers,
    get_provider_class,
)
from providers.base import is_retryable_status, pcm_to_wav_bytes
from providers.openai_whisper import confidence_from_segments

PCM = b"\x01\x00" * 1600


def response(status_code=200, json_data=None):
    mock = MagicMock()
    mock.status_code = status_code
    if isinstance(json_data, Exception):
        mock.json.side_effect = json_data
    else:
        mock.json.return_value = json_data if json_data is not None else {}
    return mock


class FakeJobProvider(AsyncJobProvider):
    PROVIDER_ID = "fake_job"

    def __init__(self, states, **options):
        super().__init__(None, **options)
        self.states = list(states)
        self.polls = 0
        self.cancelled_jobs = []

    def submit(self, audio, hints):
        return "job-1"

    def poll_status(self, job_id):
        self.polls += 1
        return self.states.pop(0) if len(self.states) > 1 else self.states[0]

    def cancel_job(self, job_id):
        self.cancelled_jobs.append(job_id)


class TestHelpers:
    """Tests for shared provider helpers."""

    def test_retryable_status(self):
        """429 and 5xx are retryable; other 4xx are not."""
        assert is_retryable_status(429)
        assert is_retryable_status(500)
        assert is_retryable_status(503)
        assert not is_retryable_status(400)
        assert not is_retryable_status(404)

    def test_wav_wrapper(self):
        """PCM should be wrapped in a 44-byte WAV header."""
        wav = pcm_to_wav_bytes(PCM, 16000)
        assert wav[:4] == b"RIFF"
        assert wav[8:12] == b"WAVE"
        assert len(wav) == 44 + len(PCM)

    def test_confidence_from_segments(self):
        """avg_logprob values become a mean probability."""
        assert confidence_from_segments([{"avg_logprob": 0.0}, {"avg_logprob": 0.0}]) == 1.0
        assert confidence_from_segments([]) is None
        assert 0.0 < confidence_from_segments([{"avg_logprob": -0.5}]) < 1.0


class TestFactory:
    """Tests for the provider registry."""

    def test_builtin_providers_registered(self):
        """All shipped providers should be in the registry."""
        assert {"assemblyai", "openai", "server", "whisper_local"} <= set(get_all_providers())
        assert get_provider_class("nonexistent") is None

    def test_unknown_provider(self):
        """Unknown ids raise ValueError."""
        with pytest.raises(ValueError):
            create_provider("nonexistent")

    def test_missing_credentials(self):
        """Providers that need a key refuse to start without one."""
        with pytest.raises(ValueError):
            create_provider("assemblyai", {})

    def test_credentials_stay_on_instance(self):
        """Each instance carries its own key."""
        first = create_provider("openai", {"api_key": "sk-one"})
        second = create_provider("openai", {"api_key": "sk-two"})
        assert first.api_key == "sk-one"
        assert second.api_key == "sk-two"


class TestAsyncJobProvider:
    """Tests for the submit-and-poll loop."""

    def test_completes(self):
        """Should poll until the job completes."""
        provider = FakeJobProvider(
            [JobState(JobStatus.PENDING), JobState(JobStatus.PENDING),
             JobState(JobStatus.COMPLETED, result=ProviderResult(text="done"))],
            poll_interval=0,
        )
        result = provider.transcribe(PCM, TranscriptionHints())

        assert result.text == "done"
        assert provider.polls == 3

    def test_failed_job_is_not_retryable(self):
        """A job the provider marks as failed should not be retried."""
        provider = FakeJobProvider([JobState(JobStatus.FAILED, error="bad audio")], poll_interval=0)

        with pytest.raises(ProviderError) as excinfo:
            provider.transcribe(PCM, TranscriptionHints())

        assert not excinfo.value.retryable
        assert "bad audio" in str(excinfo.value)

    def test_times_out_after_max_attempts(self):
        """Should give up with ProviderTimeout after the polling ceiling."""
        provider = FakeJobProvider([JobState(JobStatus.PENDING)], poll_interval=0, max_poll_attempts=5)

        with pytest.raises(ProviderTimeout):
            provider.transcribe(PCM, TranscriptionHints())

        assert provider.polls == 5
        assert provider.cancelled_jobs == ["job-1"]

    def test_cancel_event_stops_polling(self):
        """A set cancel event should abort before the next poll."""
        provider = FakeJobProvider([JobState(JobStatus.PENDING)], poll_interval=10.0)
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(ProviderCancelled):
            provider.transcribe(PCM, TranscriptionHints(), cancel)

        assert provider.polls == 0
        assert provider.cancelled_jobs == ["job-1"]


class TestAssemblyAIProvider:
    """Tests for the AssemblyAI provider."""

    @pytest.fixture
    def provider(self):
        return create_provider("assemblyai", {"api_key": "aai-key"}, poll_interval=0, max_poll_attempts=5)

    def test_upload_submit_poll(self, provider):
        """Should upload, submit with speaker labels and parse utterances."""
        completed = {
            "status": "completed",
            "text": "Hello there. Hi.",
            "confidence": 0.93,
            "utterances": [
                {"speaker": "A", "text": "Hello there.", "start": 0, "end": 1200, "confidence": 0.95},
                {"speaker": "B", "text": "Hi.", "start": 1300, "end": 1800, "confidence": 0.9},
            ],
        }
        replies = [
            response(json_data={"upload_url": "https://cdn.example/audio"}),
            response(json_data={"id": "t-1", "status": "queued"}),
            response(json_data={"status": "processing"}),
            response(json_data=completed),
        ]

        with patch("providers.assemblyai.requests.request", side_effect=replies) as mock_request:
            result = provider.transcribe(PCM, TranscriptionHints(language="en", expected_speakers=2))

        assert result.text == "Hello there. Hi."
        assert result.confidence == 0.93
        assert [h.label for h in result.speaker_hints] == ["Speaker A", "Speaker B"]
        assert result.speaker_hints[0].end == 1.2

        upload_call, submit_call = mock_request.call_args_list[:2]
        assert upload_call.args == ("POST", "https://api.assemblyai.com/v2/upload")
        assert upload_call.kwargs["headers"]["authorization"] == "aai-key"
        body = submit_call.kwargs["json"]
        assert body["audio_url"] == "https://cdn.example/audio"
        assert body["speaker_labels"] is True
        assert body["language_code"] == "en"
        assert body["speakers_expected"] == 2
        assert mock_request.call_args_list[3].args == ("GET", "https://api.assemblyai.com/v2/transcript/t-1")

    def test_error_status_fails_job(self, provider):
        """A job in error state becomes a non-retryable failure."""
        replies = [
            response(json_data={"upload_url": "u"}),
            response(json_data={"id": "t-1"}),
            response(json_data={"status": "error", "error": "Audio file is empty"}),
        ]
        with patch("providers.assemblyai.requests.request", side_effect=replies):
            with pytest.raises(ProviderError) as excinfo:
                provider.transcribe(PCM, TranscriptionHints())
        assert not excinfo.value.retryable

    def test_auth_failure_not_retryable(self, provider):
        """401 means a bad key; retrying won't help."""
        with patch("providers.assemblyai.requests.request", return_value=response(401)):
            with pytest.raises(ProviderError) as excinfo:
                provider.transcribe(PCM, TranscriptionHints())
        assert not excinfo.value.retryable

    def test_rate_limit_retryable(self, provider):
        """429 should be retryable."""
        with patch("providers.assemblyai.requests.request", return_value=response(429)):
            with pytest.raises(ProviderError) as excinfo:
                provider.transcribe(PCM, TranscriptionHints())
        assert excinfo.value.retryable

    def test_connection_error_retryable(self, provider):
        """Network failures should be retryable."""
        with patch("providers.assemblyai.requests.request",
                   side_effect=requests.ConnectionError("refused")):
            with pytest.raises(ProviderError) as excinfo:
                provider.transcribe(PCM, TranscriptionHints())
        assert excinfo.value.retryable


class TestOpenAIWhisperProvider:
    """Tests for the OpenAI Whisper API provider."""

    def test_transcribes(self):
        """Should post a WAV file and read verbose_json."""
        provider = create_provider("openai", {"api_key": "sk-test"})
        payload = {"text": " Let's begin. ", "segments": [{"avg_logprob": 0.0}]}

        with patch("providers.openai_whisper.requests.post", return_value=response(json_data=payload)) as post:
            result = provider.transcribe(PCM, TranscriptionHints(language="en"))

        assert result.text == "Let's begin."
        assert result.confidence == 1.0
        assert post.call_args.args[0] == "https://api.openai.com/v1/audio/transcriptions"
        assert post.call_args.kwargs["headers"]["Authorization"] == "Bearer sk-test"
        assert post.call_args.kwargs["data"]["response_format"] == "verbose_json"
        assert post.call_args.kwargs["data"]["language"] == "en"

    def test_server_error_retryable(self):
        """5xx should be retryable."""
        provider = create_provider("openai", {"api_key": "sk-test"})
        with patch("providers.openai_whisper.requests.post", return_value=response(502)):
            with pytest.raises(ProviderError) as excinfo:
                provider.transcribe(PCM, TranscriptionHints())
        assert excinfo.value.retryable

    def test_bad_request_not_retryable(self):
        """400 should not be retried."""
        provider = create_provider("openai", {"api_key": "sk-test"})
        with patch("providers.openai_whisper.requests.post", return_value=response(400)):
            with pytest.raises(ProviderError) as excinfo:
                provider.transcribe(PCM, TranscriptionHints())
        assert not excinfo.value.retryable


class TestWhisperServerProvider:
    """Tests for the self-hosted server provider."""

    def test_transcribes_with_token(self):
        """Should send base64 PCM and the API token header."""
        provider = create_provider("server", {"api_key": "secret-token"}, server_url="http://127.0.0.1:9876/")

        with patch("providers.server.requests.post",
                   return_value=response(json_data={"text": " Hello. "})) as post:
            result = provider.transcribe(PCM, TranscriptionHints())

        assert result.text == "Hello."
        assert post.call_args.args[0] == "http://127.0.0.1:9876/transcribe"
        sent = post.call_args.kwargs["json"]
        assert base64.b64decode(sent["audio_base64"]) == PCM
        assert sent["sample_rate"] == 16000
        assert post.call_args.kwargs["headers"] == {"X-API-Token": "secret-token"}

    def test_no_token_no_header(self):
        """Without a token no auth header is sent."""
        provider = create_provider("server")
        with patch("providers.server.requests.post", return_value=response(json_data={"text": ""})) as post:
            provider.transcribe(PCM, TranscriptionHints())
        assert post.call_args.kwargs["headers"] == {}

    def test_timeout_retryable(self):
        """A timed-out request should be retryable."""
        provider = create_provider("server")
        with patch("providers.server.requests.post", side_effect=requests.Timeout("slow")):
            with pytest.raises(ProviderError) as excinfo:
                provider.transcribe(PCM, TranscriptionHints())
        assert excinfo.value.retryable

    def test_invalid_url_rejected(self):
        """A malformed server URL fails at construction."""
        with pytest.raises(ValueError):
            create_provider("server", server_url="localhost:9876")


class TestLocalWhisperProvider:
    """Tests for the offline provider that don't need a model."""

    def test_rejects_wrong_sample_rate(self):
        """Only 16 kHz audio is accepted, checked before loading the model."""
        provider = get_provider_class("whisper_local")(model="tiny")
        with pytest.raises(ProviderError) as excinfo:
            provider.transcribe(PCM, TranscriptionHints(sample_rate=48000))
        assert not excinfo.value.retryable
        assert provider._model is None
