"""
Meeting session: wires capture, chunking, transcription and aggregation.

Thread layout:
    chunk-scheduler     mixer -> ChunkQueue
    activity-<source>   per-source level sampling
    dispatch-<n>        ChunkQueue -> providers -> results queue
    aggregation         results queue -> ReorderBuffer -> speakers -> transcript

The aggregation thread is the only writer of the speaker roster and the
transcript. Everything else reads immutable snapshots or events.
"""

import queue
import threading
import time
import uuid
from concurrent.futures import Future
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from logger import get_logger
from .activity import ActivityMonitor
from .capture import (
    LOCAL_SOURCE_ID,
    REMOTE_SOURCE_ID,
    AudioMixer,
    AudioSource,
    SoundDeviceSource,
    SourceUnavailable,
    find_default_input,
    find_loopback_device,
)
from .config import SessionConfig
from .dispatcher import Transcription, TranscriptionDispatcher, build_provider_chain
from .events import EventChannel, EventType, Subscription
from .models import AudioChunk, TranscriptSegment, TranscriptState
from .pipeline import ReorderBuffer
from .processor import ChunkQueue, ChunkScheduler
from .speakers import SpeakerIdentifier, extract_voice_features
from .transcript import ExportableTranscript, MeetingAnalytics, SegmentAggregator

_log = get_logger("session")

# Messages on the results queue
_RESULT = "result"
_SKIP = "skip"
_RENAME = "rename"
_STOP = "stop"

_POLL_SECONDS = 0.25


def _device_arg(device):
    """Config values are strings; sounddevice wants an index where one is given."""
    if isinstance(device, str) and device.strip().isdigit():
        return int(device)
    return None if device in (None, "") else device


def default_sources(config: SessionConfig) -> List[AudioSource]:
    """
    Microphone plus system-audio loopback.

    Raises:
        SourceUnavailable: No microphone or loopback device was configured or found
    """
    mic_device = _device_arg(config.mic_device)
    if mic_device is None:
        found = find_default_input()
        if found is None:
            raise SourceUnavailable(LOCAL_SOURCE_ID, "no default input device")
        mic_device = found['index']
    mic = SoundDeviceSource(LOCAL_SOURCE_ID, device=mic_device, block_size=config.block_size)

    loopback = _device_arg(config.loopback_device)
    if loopback is None:
        found = find_loopback_device()
        if found is None:
            raise SourceUnavailable(REMOTE_SOURCE_ID, "no loopback device found")
        loopback = found['index']

    remote = SoundDeviceSource(REMOTE_SOURCE_ID, device=loopback, block_size=config.block_size)
    return [mic, remote]


class MeetingSession:
    """One recording, from start to export."""

    def __init__(self, config: SessionConfig, sources: Optional[Sequence[AudioSource]] = None,
                 providers=None):
        self.config = config
        self.session_id = uuid.uuid4().hex[:8]
        self.state = "idle"

        self.events = EventChannel()
        self.identifier = SpeakerIdentifier(
            local_name=config.user_name,
            dominance_ratio=config.dominance_ratio,
            voice_threshold=config.voice_distance_threshold,
            signature_blend=config.signature_blend,
            noise_floor=config.noise_floor,
            inactive_after=config.inactive_after_seconds,
            expected_speakers=config.expected_speakers,
        )
        self.aggregator = SegmentAggregator(self.identifier, title=config.title)
        self.mixer = AudioMixer(
            sample_rate=config.sample_rate,
            gains={LOCAL_SOURCE_ID: config.local_gain, REMOTE_SOURCE_ID: config.remote_gain},
            max_drift_seconds=config.max_drift_seconds,
            tap_size=config.fft_size,
        )
        self.chunk_queue = ChunkQueue(config.queue_depth, on_drop=self._on_chunk_dropped)
        self.monitors: Dict[str, ActivityMonitor] = {}
        self.scheduler: Optional[ChunkScheduler] = None
        self.dispatcher: Optional[TranscriptionDispatcher] = None

        self._sources = list(sources) if sources is not None else None
        self._providers = list(providers) if providers is not None else None
        self._results: queue.Queue = queue.Queue()
        self._reorder = ReorderBuffer(config.reorder_max_wait)
        self._workers: List[threading.Thread] = []
        self._aggregation_thread: Optional[threading.Thread] = None
        self._accepting_results = True
        self._export: Optional[ExportableTranscript] = None

    @property
    def is_running(self) -> bool:
        return self.state == "running"

    # --- lifecycle ---

    def start(self) -> None:
        """
        Open capture and start every worker.

        Raises:
            SourceUnavailable: A capture device could not be opened
            UnsupportedConfiguration: Source formats cannot be mixed
        """
        if self.state != "idle":
            raise RuntimeError(f"Session cannot start from state '{self.state}'")

        sources = self._sources if self._sources is not None else default_sources(self.config)
        self.mixer.open(sources)

        try:
            for source_id in self.mixer.handle.source_ids:
                monitor = ActivityMonitor(self.mixer.tap(source_id), self.config.activity_hz,
                                          self.config.fft_size)
                monitor.start()
                self.monitors[source_id] = monitor

            providers = self._providers
            if providers is None:
                providers = build_provider_chain(
                    self.config.providers,
                    offline_fallback=self.config.offline_fallback,
                    local_options={"model": self.config.local_model},
                    poll_options=self.config.poll_options,
                )
            self.dispatcher = TranscriptionDispatcher(
                providers,
                max_retries=self.config.max_retries,
                retry_delays=self.config.retry_delays,
                events=self.events,
                language=self.config.language,
                expected_speakers=self.config.expected_speakers,
            )

            self._aggregation_thread = threading.Thread(target=self._aggregation_loop, daemon=True,
                                                        name="aggregation")
            self._aggregation_thread.start()
            for n in range(max(1, self.config.dispatch_workers)):
                worker = threading.Thread(target=self._dispatch_loop, daemon=True, name=f"dispatch-{n}")
                worker.start()
                self._workers.append(worker)

            self.scheduler = ChunkScheduler(self.mixer, self.chunk_queue, self.monitors)
            self.scheduler.start(self.config.chunk_interval_ms)
        except Exception:
            self._release_capture()
            self._shutdown_workers()
            raise

        self.state = "running"
        _log.info("Session %s started (%s mode, %d ms chunks, providers %s)", self.session_id,
                  self.config.mode, self.config.chunk_interval_ms, self.dispatcher.provider_ids)

    def stop(self) -> ExportableTranscript:
        """Stop capture, finish what can be finished in time, and export."""
        if self.state == "stopped":
            return self._export
        if self.state != "running":
            raise RuntimeError("Session was never started")
        self.state = "stopping"
        _log.info("Stopping session %s", self.session_id)

        if self.scheduler is not None:
            self.scheduler.stop()
        self._release_capture()

        deadline = time.monotonic() + self.config.stop_drain_seconds
        while self.chunk_queue.unfinished and time.monotonic() < deadline:
            time.sleep(0.05)

        self._shutdown_workers()

        ended_at = datetime.now()
        self.aggregator.close(ended_at)
        self._export = self.aggregator.export(exported_at=ended_at)
        self.events.publish(
            EventType.SESSION_STOPPED,
            session_id=self.session_id,
            segment_count=len(self._export.segments),
            duration_seconds=self._export.duration_seconds,
        )
        self.events.close()
        if self.dispatcher is not None:
            self.dispatcher.close()

        self.state = "stopped"
        _log.info("Session %s stopped: %d segments, %d speakers", self.session_id,
                  len(self._export.segments), len(self._export.participants))
        return self._export

    def _release_capture(self) -> None:
        for monitor in self.monitors.values():
            monitor.stop()
        self.mixer.close()

    def _shutdown_workers(self) -> None:
        self._accepting_results = False
        if self.dispatcher is not None:
            self.dispatcher.cancel()

        for chunk in self.chunk_queue.close():
            self.events.publish(EventType.CHUNK_DROPPED, chunk_index=chunk.index,
                                start_offset=chunk.start_offset, duration=chunk.duration,
                                reason="session stopped")
        for worker in self._workers:
            worker.join(timeout=2.0)
            if worker.is_alive():
                _log.warning("%s still busy with a provider call; its result will be discarded",
                             worker.name)
        self._workers = []

        if self._aggregation_thread is not None:
            self._results.put((_STOP,))
            self._aggregation_thread.join(timeout=5.0)
            self._aggregation_thread = None

    # --- public API ---

    def subscribe(self, maxsize: Optional[int] = None) -> Subscription:
        return self.events.subscribe(maxsize)

    def snapshot(self) -> TranscriptState:
        return self.aggregator.snapshot()

    def analytics(self) -> MeetingAnalytics:
        return self.aggregator.analytics()

    def apply_identity_hint(self, speaker_id: str, name: str, confidence: Optional[float] = None) -> Future:
        """
        Rename a speaker from an outside identification (face recognition, a roster).

        The change is applied by the aggregation thread. The returned future
        resolves to the updated profile, or raises KeyError for an unknown id.
        """
        if not self.is_running:
            raise RuntimeError("Session is not running")
        future: Future = Future()
        self._results.put((_RENAME, speaker_id, name, confidence, future))
        return future

    # --- workers ---

    def _on_chunk_dropped(self, chunk: AudioChunk) -> None:
        self.events.publish(EventType.CHUNK_DROPPED, chunk_index=chunk.index,
                            start_offset=chunk.start_offset, duration=chunk.duration,
                            reason="backlog full")
        self._results.put((_SKIP, chunk))

    def _dispatch_loop(self):
        while True:
            chunk = self.chunk_queue.get(timeout=_POLL_SECONDS)
            if chunk is None:
                if self.chunk_queue.closed:
                    return
                continue

            try:
                transcription = self.dispatcher.transcribe(chunk)
            except Exception as e:
                _log.error("Dispatch of chunk %d failed: %s", chunk.index, e, exc_info=True)
                transcription = None

            if self._accepting_results:
                self._results.put((_RESULT, chunk, transcription))
            else:
                _log.debug("Discarding late result for chunk %d", chunk.index)
            self.chunk_queue.task_done()

    def _aggregation_loop(self):
        while True:
            try:
                message = self._results.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                message = None

            released = []
            if message is not None:
                kind = message[0]
                if kind == _STOP:
                    self._apply_released(self._reorder.flush())
                    return
                if kind == _RESULT:
                    _, chunk, transcription = message
                    released = self._reorder.add(chunk.index, (chunk, transcription))
                elif kind == _SKIP:
                    released = self._reorder.skip(message[1].index)
                elif kind == _RENAME:
                    self._rename(*message[1:])

            released.extend(self._reorder.expire())
            self._apply_released(released)

    def _apply_released(self, released):
        for chunk, transcription in released:
            try:
                self._apply(chunk, transcription)
            except Exception as e:
                _log.error("Could not add chunk %d to the transcript: %s", chunk.index, e, exc_info=True)

    def _apply(self, chunk: AudioChunk, transcription: Optional[Transcription]) -> None:
        if transcription is None or not transcription.text:
            return

        if not transcription.is_final:
            segment = self._segment(chunk, transcription, self.identifier.last_active_id)
            self.aggregator.append(segment)
            self.events.publish(EventType.SEGMENT_ADDED, segment=segment, speaker=None)
            return

        attribution = self.identifier.resolve(
            transcription.text,
            chunk.local_level,
            chunk.remote_level,
            features=extract_voice_features(chunk.pcm, chunk.sample_rate),
            confidence=transcription.confidence,
            duration=chunk.duration,
            speaker_hints=transcription.speaker_hints,
        )
        segment = self._segment(chunk, transcription, attribution.profile.id)
        self.aggregator.append(segment)

        speaker = attribution.profile.freeze()
        self.events.publish(EventType.SPEAKER_UPDATED, speaker=speaker,
                            created=attribution.created, rule=attribution.rule)
        self.events.publish(EventType.SEGMENT_ADDED, segment=segment, speaker=speaker)

    def _segment(self, chunk: AudioChunk, transcription: Transcription,
                 speaker_id: Optional[str]) -> TranscriptSegment:
        return TranscriptSegment(
            id=f"{self.session_id}-{chunk.index:05d}",
            speaker_id=speaker_id,
            text=transcription.text,
            confidence=transcription.confidence,
            start_offset=chunk.start_offset,
            duration=chunk.duration,
            captured_at=chunk.captured_at,
            is_final=transcription.is_final,
            provider_id=transcription.provider_id,
        )

    def _rename(self, speaker_id: str, name: str, confidence: Optional[float], future: Future) -> None:
        try:
            profile = self.identifier.rename(speaker_id, name, confidence).freeze()
        except KeyError:
            _log.warning("Identity hint for unknown speaker '%s'", speaker_id)
            future.set_exception(KeyError(speaker_id))
            return
        self.aggregator.refresh_roster()
        self.events.publish(EventType.SPEAKER_UPDATED, speaker=profile, created=False, rule="hint")
        future.set_result(profile)


def start_session(config: Optional[SessionConfig] = None,
                  sources: Optional[Sequence[AudioSource]] = None,
                  providers=None) -> MeetingSession:
    """
    Create and start a session.

    Args:
        config: Session settings (defaults to the user's config file)
        sources: Audio sources to mix (defaults to mic + system loopback)
        providers: Ready provider instances (defaults to the configured chain)
    """
    session = MeetingSession(config or SessionConfig.from_config(), sources=sources, providers=providers)
    session.start()
    return session


def stop_session(session: MeetingSession) -> ExportableTranscript:
    return session.stop()
