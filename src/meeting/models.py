"""
Data types shared by the capture, attribution and aggregation stages.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import List, Optional, Tuple


@dataclass
class AudioChunk:
    """A time-boxed slice of the mixed stream, the unit sent for transcription."""
    index: int                # Sequence number within the session
    pcm: bytes                # int16 mono PCM
    sample_rate: int
    start_offset: float       # Seconds from session start (audio clock)
    duration: float           # Seconds
    local_level: float = 0.0  # ActivityMonitor levels at the chunk boundary
    remote_level: float = 0.0
    captured_at: datetime = field(default_factory=datetime.now)
    is_last: bool = False     # Final (possibly short) chunk flushed by stop()

    @property
    def num_samples(self) -> int:
        return len(self.pcm) // 2


@dataclass
class SpeakerProfile:
    """One distinguishable speaker in the session roster."""
    id: str
    display_name: str
    voice_signature: List[float] = field(default_factory=list)
    confidence: float = 0.0
    total_words: int = 0
    speaking_time_seconds: float = 0.0
    segment_count: int = 0
    last_seen_at: Optional[float] = None   # time.time() of the last attributed chunk
    is_local: bool = False

    def copy(self) -> "SpeakerProfile":
        return replace(self, voice_signature=list(self.voice_signature))

    def freeze(self) -> "SpeakerSnapshot":
        """Read-only copy for snapshots and events."""
        return SpeakerSnapshot(
            id=self.id,
            display_name=self.display_name,
            voice_signature=tuple(self.voice_signature),
            confidence=self.confidence,
            total_words=self.total_words,
            speaking_time_seconds=self.speaking_time_seconds,
            segment_count=self.segment_count,
            last_seen_at=self.last_seen_at,
            is_local=self.is_local,
        )

    def is_active(self, now: float, inactive_after: float) -> bool:
        return self.last_seen_at is not None and (now - self.last_seen_at) <= inactive_after


@dataclass(frozen=True)
class SpeakerSnapshot:
    """Immutable view of a SpeakerProfile, as published to readers."""
    id: str
    display_name: str
    voice_signature: Tuple[float, ...] = ()
    confidence: float = 0.0
    total_words: int = 0
    speaking_time_seconds: float = 0.0
    segment_count: int = 0
    last_seen_at: Optional[float] = None
    is_local: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "voice_signature": [round(v, 6) for v in self.voice_signature],
            "confidence": round(self.confidence, 4),
            "total_words": self.total_words,
            "speaking_time_seconds": round(self.speaking_time_seconds, 3),
            "segment_count": self.segment_count,
            "is_local": self.is_local,
        }


@dataclass(frozen=True)
class TranscriptSegment:
    """A speaker-attributed piece of transcribed text."""
    id: str
    speaker_id: Optional[str]   # None for a live preview before anyone has spoken
    text: str
    confidence: float
    start_offset: float
    duration: float
    captured_at: datetime
    is_final: bool = True
    provider_id: Optional[str] = None

    @property
    def end_offset(self) -> float:
        return self.start_offset + self.duration

    @property
    def word_count(self) -> int:
        return len(self.text.split())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "speaker_id": self.speaker_id,
            "text": self.text,
            "confidence": round(self.confidence, 4),
            "start_offset": round(self.start_offset, 3),
            "duration": round(self.duration, 3),
            "captured_at": self.captured_at.isoformat(),
            "is_final": self.is_final,
            "provider_id": self.provider_id,
        }


@dataclass(frozen=True)
class TranscriptState:
    """Immutable view of the transcript: final segments, live preview and roster."""
    segments: Tuple[TranscriptSegment, ...] = ()
    live_segment: Optional[TranscriptSegment] = None
    speakers: Tuple[SpeakerSnapshot, ...] = ()
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    def speaker(self, speaker_id: str) -> Optional[SpeakerSnapshot]:
        for profile in self.speakers:
            if profile.id == speaker_id:
                return profile
        return None

    @property
    def duration_seconds(self) -> float:
        """Session length up to the end of the last final segment (audio clock)."""
        if not self.segments:
            return 0.0
        return max(s.end_offset for s in self.segments)
