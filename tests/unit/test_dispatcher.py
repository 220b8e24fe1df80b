"""
Tests for transcription dispatch, retry and provider fallback.
"""

from unittest.mock import MagicMock, patch

import pytest

from meeting.config import ProviderSpec
from meeting.dispatcher import (
    DEFAULT_CONFIDENCE,
    TranscriptionDispatcher,
    build_provider_chain,
    clean_text,
    normalize_confidence,
)
from meeting.events import EventChannel, EventType
from providers import (
    ProviderCancelled,
    ProviderError,
    ProviderResult,
    ProviderTimeout,
    SpeakerHint,
    TranscriptionProvider,
)


class ScriptedProvider(TranscriptionProvider):
    """Returns or raises the next scripted step on each call."""

    def __init__(self, provider_id, *steps):
        super().__init__()
        self.PROVIDER_ID = provider_id
        self.steps = list(steps)
        self.calls = 0
        self.hints = []
        self.closed = False

    def transcribe(self, audio, hints, cancel_event=None):
        self.calls += 1
        self.hints.append(hints)
        step = self.steps.pop(0) if len(self.steps) > 1 else self.steps[0]
        if isinstance(step, Exception):
            raise step
        return step

    def close(self):
        self.closed = True


def retryable(pid):
    return ProviderError(pid, "503 from upstream", retryable=True)


def fatal(pid):
    return ProviderError(pid, "invalid API key", retryable=False)


@pytest.fixture
def events():
    channel = EventChannel()
    subscription = channel.subscribe()
    return channel, subscription


def event_types(subscription):
    return [e.type for e in subscription.drain()]


def dispatcher_for(*providers, events=None, **kwargs):
    kwargs.setdefault("retry_delays", (0.0, 0.0))
    return TranscriptionDispatcher(list(providers), events=events, **kwargs)


class TestFallback:
    """Tests for the provider chain."""

    def test_non_retryable_moves_to_next_provider(self, make_chunk, events):
        """A fatal error on A should go straight to B, which is called once."""
        channel, subscription = events
        a = ScriptedProvider("a", fatal("a"))
        b = ScriptedProvider("b", ProviderResult(text="Hello um world", confidence=0.9))

        result = dispatcher_for(a, b, events=channel).transcribe(make_chunk())

        assert result.text == "Hello world"
        assert result.provider_id == "b"
        assert result.confidence == 0.9
        assert a.calls == 1
        assert b.calls == 1

        failures = subscription.drain()
        assert len(failures) == 1
        assert failures[0].type is EventType.PROVIDER_FAILED
        assert failures[0].payload["provider_id"] == "a"
        assert failures[0].payload["retryable"] is False

    def test_retryable_retries_same_provider(self, make_chunk):
        """Retryable errors should retry A before giving up on it."""
        a = ScriptedProvider("a", retryable("a"), retryable("a"), ProviderResult(text="Got it"))
        b = ScriptedProvider("b", ProviderResult(text="fallback"))

        result = dispatcher_for(a, b, max_retries=2).transcribe(make_chunk())

        assert result.text == "Got it"
        assert a.calls == 3
        assert b.calls == 0

    def test_retries_exhausted_then_next(self, make_chunk):
        """After max_retries the next provider takes over."""
        a = ScriptedProvider("a", retryable("a"))
        b = ScriptedProvider("b", ProviderResult(text="fallback"))

        result = dispatcher_for(a, b, max_retries=2).transcribe(make_chunk())

        assert result.provider_id == "b"
        assert a.calls == 3

    def test_all_fail_reports_unavailable(self, make_chunk, events):
        """When every provider fails the chunk is reported once and None returned."""
        channel, subscription = events
        a = ScriptedProvider("a", fatal("a"))
        b = ScriptedProvider("b", fatal("b"))

        assert dispatcher_for(a, b, events=channel).transcribe(make_chunk(index=3)) is None

        types = event_types(subscription)
        assert types.count(EventType.PROVIDER_FAILED) == 2
        assert types[-1] is EventType.TRANSCRIPTION_UNAVAILABLE
        assert types.count(EventType.TRANSCRIPTION_UNAVAILABLE) == 1

    def test_unavailable_payload(self, make_chunk, events):
        """The unavailable event should identify the chunk."""
        channel, subscription = events
        dispatcher = dispatcher_for(ScriptedProvider("a", fatal("a")), events=channel)

        dispatcher.transcribe(make_chunk(index=3, duration=2.0))

        event = subscription.drain()[-1]
        assert event.payload["chunk_index"] == 3
        assert event.payload["start_offset"] == 6.0
        assert "invalid API key" in event.payload["reason"]

    def test_timeout_ends_chain(self, make_chunk, events):
        """A polling timeout should not fall through to the next provider."""
        channel, subscription = events
        a = ScriptedProvider("a", ProviderTimeout("a", "still pending after 120 polls"))
        b = ScriptedProvider("b", ProviderResult(text="fallback"))

        assert dispatcher_for(a, b, events=channel).transcribe(make_chunk()) is None
        assert b.calls == 0
        assert event_types(subscription) == [EventType.PROVIDER_FAILED,
                                             EventType.TRANSCRIPTION_UNAVAILABLE]

    def test_unexpected_exception_is_not_retried(self, make_chunk):
        """A crash inside a provider counts as a non-retryable failure."""
        a = ScriptedProvider("a", RuntimeError("boom"))
        b = ScriptedProvider("b", ProviderResult(text="fallback"))

        result = dispatcher_for(a, b, max_retries=2).transcribe(make_chunk())

        assert result.provider_id == "b"
        assert a.calls == 1

    def test_no_providers(self, make_chunk, events):
        """An empty chain reports the chunk as unavailable."""
        channel, subscription = events
        assert dispatcher_for(events=channel).transcribe(make_chunk()) is None
        assert event_types(subscription) == [EventType.TRANSCRIPTION_UNAVAILABLE]


class TestCancellation:
    """Tests for cancel()."""

    def test_cancelled_before_call(self, make_chunk, events):
        """A cancelled dispatcher returns None without events or calls."""
        channel, subscription = events
        a = ScriptedProvider("a", ProviderResult(text="hello"))
        dispatcher = dispatcher_for(a, events=channel)
        dispatcher.cancel()

        assert dispatcher.transcribe(make_chunk()) is None
        assert a.calls == 0
        assert subscription.drain() == []

    def test_provider_cancelled(self, make_chunk, events):
        """ProviderCancelled ends the chunk quietly."""
        channel, subscription = events
        a = ScriptedProvider("a", ProviderCancelled("a"))
        b = ScriptedProvider("b", ProviderResult(text="fallback"))

        assert dispatcher_for(a, b, events=channel).transcribe(make_chunk()) is None
        assert b.calls == 0
        assert subscription.drain() == []

    def test_close_closes_providers(self):
        """close should cancel and release every provider."""
        a, b = ScriptedProvider("a", ProviderResult(text="")), ScriptedProvider("b", ProviderResult(text=""))
        dispatcher = dispatcher_for(a, b)
        dispatcher.close()

        assert dispatcher.cancelled
        assert a.closed and b.closed


class TestNormalization:
    """Tests for result normalization."""

    def test_hints_passed_to_provider(self, make_chunk):
        """Providers should receive language and speaker-count hints."""
        a = ScriptedProvider("a", ProviderResult(text="ok"))
        dispatcher_for(a, language="de", expected_speakers=3).transcribe(make_chunk())

        assert a.hints[0].language == "de"
        assert a.hints[0].expected_speakers == 3
        assert a.hints[0].sample_rate == 16000

    def test_speaker_hints_and_finality_kept(self, make_chunk):
        """Speaker hints and is_final should survive normalization."""
        hint = SpeakerHint(label="Speaker A", text="ok")
        a = ScriptedProvider("a", ProviderResult(text="ok", speaker_hints=[hint], is_final=False))

        result = dispatcher_for(a).transcribe(make_chunk())

        assert result.speaker_hints == [hint]
        assert result.is_final is False

    def test_confidence_defaults_and_clamps(self):
        """Missing confidence gets the default; values are clamped to [0, 1]."""
        assert normalize_confidence(None) == DEFAULT_CONFIDENCE == 0.85
        assert normalize_confidence(1.4) == 1.0
        assert normalize_confidence(-0.2) == 0.0
        assert normalize_confidence(0.42) == 0.42


class TestCleanText:
    """Tests for transcript post-processing."""

    def test_removes_fillers(self):
        """Should remove um/uh/hmm filler words."""
        assert clean_text("Hello um world") == "Hello world"
        assert clean_text("So uhh we ship hmm today") == "So we ship today"

    def test_preserves_real_words(self):
        """Should not remove words that contain filler patterns."""
        assert "umbrella" in clean_text("The umbrella is here")

    def test_removes_trailing_hallucinations(self):
        """Should remove common Whisper hallucinations at the end of text."""
        assert clean_text("Hello world. Thank you for watching.") == "Hello world."
        assert clean_text("Hello world. Please like and subscribe.") == "Hello world."
        assert clean_text("Hello world. See you next time.") == "Hello world."

    def test_tidies_spacing_and_punctuation(self):
        """Should collapse spaces and fix space before punctuation."""
        assert clean_text("Hello    world") == "Hello world"
        assert clean_text("Hello , world .") == "Hello, world."

    def test_empty(self):
        """Blank input gives an empty string."""
        assert clean_text("   ") == ""
        assert clean_text("um") == ""


class TestBuildProviderChain:
    """Tests for building the chain from config."""

    def test_skips_unusable_providers(self):
        """Unknown ids and missing keys are skipped, the rest kept in order."""
        specs = [
            ProviderSpec("nonexistent"),
            ProviderSpec("openai"),  # no key
            ProviderSpec("server", options={"server_url": "http://localhost:9876"}),
            ProviderSpec("assemblyai", credentials={"api_key": "aai-key"}),
        ]

        chain = build_provider_chain(specs, poll_options={"poll_interval": 1.0, "max_poll_attempts": 60})

        assert [p.PROVIDER_ID for p in chain] == ["server", "assemblyai"]
        assert chain[1].poll_interval == 1.0
        assert chain[1].max_poll_attempts == 60
        assert chain[1].api_key == "aai-key"

    def test_invalid_option_skipped(self):
        """A provider rejecting its options is skipped."""
        chain = build_provider_chain([ProviderSpec("server", options={"server_url": "ftp://nope"})],
                                     offline_fallback=False)
        assert chain == []

    def test_falls_back_when_every_provider_skipped(self):
        """Configured providers that all fail to build still leave the local model."""
        local = MagicMock(PROVIDER_ID="whisper_local")

        def create(provider_id, credentials, **options):
            if provider_id == "whisper_local":
                return local
            raise ValueError(f"{provider_id} is missing its API key")

        with patch("meeting.dispatcher.is_provider_available", return_value=True), \
                patch("meeting.dispatcher.create_provider", side_effect=create):
            chain = build_provider_chain([ProviderSpec("openai"), ProviderSpec("assemblyai")],
                                         local_options={"model": "base"})

        assert chain == [local]

    def test_no_fallback_when_disabled(self):
        """With no providers and no fallback the chain is empty."""
        assert build_provider_chain([], offline_fallback=False) == []
