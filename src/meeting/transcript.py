"""
Running transcript, live analytics and export.

The aggregator is written to by one pipeline stage only. After every change it
publishes a new immutable ``TranscriptState``; readers on other threads only
ever see those snapshots.
"""

import bisect
import json
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from logger import get_logger
from .models import SpeakerSnapshot, TranscriptSegment, TranscriptState

_log = get_logger("transcript")

STOP_WORDS = frozenset("""
the is at which on and a to are as were been be have has had do does did will would should
could can may might must shall ought i you he she it we they me him her us them my your his
its our their this that these those there here what when where with from into about just
like really yeah okay also then than them very some more much been being going know think
""".split())

KEYWORD_MIN_LENGTH = 4
KEYWORD_COUNT = 8


def format_timestamp(seconds: float) -> str:
    """Format seconds as HH:MM:SS or MM:SS."""
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def extract_keywords(texts, limit: int = KEYWORD_COUNT) -> List[Tuple[str, int]]:
    """Most frequent non-stop-words (4+ letters), capitalized, with counts."""
    counts: Counter = Counter()
    for text in texts:
        for word in re.sub(r"[^\w\s']", " ", text.lower()).split():
            word = word.strip("'")
            if len(word) >= KEYWORD_MIN_LENGTH and word not in STOP_WORDS and not word.isdigit():
                counts[word] += 1
    return [(word.capitalize(), count) for word, count in counts.most_common(limit)]


@dataclass(frozen=True)
class SpeakerStats:
    """Per-speaker numbers derived from the final segments."""
    speaker_id: str
    display_name: str
    is_local: bool
    total_words: int
    segment_count: int
    speaking_time_seconds: float
    percentage: float          # Share of all words, 0-100
    average_confidence: float

    def to_dict(self) -> dict:
        return {
            "speaker_id": self.speaker_id,
            "display_name": self.display_name,
            "is_local": self.is_local,
            "total_words": self.total_words,
            "segment_count": self.segment_count,
            "speaking_time_seconds": round(self.speaking_time_seconds, 3),
            "percentage": self.percentage,
            "average_confidence": round(self.average_confidence, 4),
        }


@dataclass(frozen=True)
class MeetingAnalytics:
    speakers: Tuple[SpeakerStats, ...]
    total_words: int
    total_segments: int
    duration_seconds: float
    average_confidence: float
    keywords: Tuple[Tuple[str, int], ...]

    def for_speaker(self, speaker_id: str) -> Optional[SpeakerStats]:
        for stats in self.speakers:
            if stats.speaker_id == speaker_id:
                return stats
        return None


def compute_analytics(state: TranscriptState) -> MeetingAnalytics:
    """Recompute every derived number from a snapshot."""
    words: Dict[str, int] = {}
    segments: Dict[str, int] = {}
    talk_time: Dict[str, float] = {}
    confidence_sum: Dict[str, float] = {}

    for seg in state.segments:
        words[seg.speaker_id] = words.get(seg.speaker_id, 0) + seg.word_count
        segments[seg.speaker_id] = segments.get(seg.speaker_id, 0) + 1
        talk_time[seg.speaker_id] = talk_time.get(seg.speaker_id, 0.0) + seg.duration
        confidence_sum[seg.speaker_id] = confidence_sum.get(seg.speaker_id, 0.0) + seg.confidence

    total_words = sum(words.values())
    stats = []
    for profile in state.speakers:
        count = segments.get(profile.id, 0)
        if count == 0:
            continue
        spoken = words.get(profile.id, 0)
        stats.append(SpeakerStats(
            speaker_id=profile.id,
            display_name=profile.display_name,
            is_local=profile.is_local,
            total_words=spoken,
            segment_count=count,
            speaking_time_seconds=talk_time.get(profile.id, 0.0),
            percentage=round(spoken / total_words * 100, 1) if total_words else 0.0,
            average_confidence=confidence_sum[profile.id] / count,
        ))

    stats.sort(key=lambda s: s.total_words, reverse=True)
    total_segments = len(state.segments)
    average_confidence = (sum(s.confidence for s in state.segments) / total_segments
                          if total_segments else 0.0)

    return MeetingAnalytics(
        speakers=tuple(stats),
        total_words=total_words,
        total_segments=total_segments,
        duration_seconds=state.duration_seconds,
        average_confidence=average_confidence,
        keywords=tuple(extract_keywords(s.text for s in state.segments)),
    )


@dataclass(frozen=True)
class ExportableTranscript:
    """Everything that leaves the engine when a meeting is saved."""
    title: str
    started_at: Optional[datetime]
    ended_at: Optional[datetime]
    duration_seconds: float
    participants: Tuple[SpeakerStats, ...]
    segments: Tuple[TranscriptSegment, ...]
    summary: str
    keywords: Tuple[Tuple[str, int], ...] = ()
    exported_at: Optional[datetime] = field(default=None, compare=False)

    def speaker_name(self, speaker_id: str) -> str:
        for participant in self.participants:
            if participant.speaker_id == speaker_id:
                return participant.display_name
        return speaker_id

    def to_dict(self, include_export_time: bool = True) -> dict:
        data = {
            "title": self.title,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_seconds": round(self.duration_seconds, 3),
            "participants": [p.to_dict() for p in self.participants],
            "segments": [s.to_dict() for s in self.segments],
            "summary": self.summary,
            "keywords": [{"word": w, "count": c} for w, c in self.keywords],
        }
        if include_export_time:
            data["exported_at"] = self.exported_at.isoformat() if self.exported_at else None
        return data

    def to_json(self, include_export_time: bool = True) -> str:
        return json.dumps(self.to_dict(include_export_time), indent=2, ensure_ascii=False)

    def to_markdown(self, include_timestamps: bool = True) -> str:
        lines = [
            f"# {self.title}",
            "",
        ]
        if self.started_at:
            lines.append(f"**Date**: {self.started_at.strftime('%Y-%m-%d %H:%M')}")
        lines.extend([
            f"**Duration**: {int(self.duration_seconds // 60)} minutes",
            f"**Participants**: {', '.join(p.display_name for p in self.participants)}",
            "",
            self.summary,
            "",
            "---",
            "",
        ])

        if self.participants:
            lines.append("## Speakers")
            lines.append("")
            for p in self.participants:
                lines.append(f"- **{p.display_name}**: {p.total_words} words ({p.percentage}%), "
                             f"{format_timestamp(p.speaking_time_seconds)} speaking")
            lines.append("")

        if self.segments:
            lines.append("## Full Transcript")
            lines.append("")
            for seg in self.segments:
                name = self.speaker_name(seg.speaker_id)
                if include_timestamps:
                    lines.append(f"**[{format_timestamp(seg.start_offset)}] {name}**: {seg.text}")
                else:
                    lines.append(f"**{name}**: {seg.text}")
                lines.append("")

        return "\n".join(lines)


def save_transcript(export: ExportableTranscript, output_dir, filename: Optional[str] = None) -> Path:
    """Write ``<name>.md`` and ``<name>.json``. Returns the markdown path."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    if filename is None:
        start = export.started_at or datetime.now()
        filename = start.strftime("meeting_%Y%m%d_%H%M%S")

    md_path = output_dir / f"{filename}.md"
    json_path = output_dir / f"{filename}.json"

    for path, content in ((md_path, export.to_markdown()), (json_path, export.to_json())):
        # Atomic write: write to temp file then rename
        temp_path = path.with_suffix(path.suffix + '.tmp')
        temp_path.write_text(content, encoding='utf-8')
        temp_path.replace(path)

    _log.info("Saved transcript to %s", md_path)
    return md_path


class SegmentAggregator:
    """
    Ordered transcript plus speaker roster for one session.

    Final segments are kept sorted by start offset. At most one non-final
    "live preview" segment exists; a new preview replaces it and a final
    segment clears it.
    """

    def __init__(self, identifier=None, title: Optional[str] = None,
                 started_at: Optional[datetime] = None):
        self.identifier = identifier
        self.title = title
        self._segments: List[TranscriptSegment] = []
        self._offsets: List[float] = []
        self._live: Optional[TranscriptSegment] = None
        self._started_at = started_at or datetime.now()
        self._ended_at: Optional[datetime] = None
        self._state = TranscriptState(started_at=self._started_at)

    @property
    def closed(self) -> bool:
        return self._ended_at is not None

    def _roster(self) -> Tuple[SpeakerSnapshot, ...]:
        if self.identifier is None:
            return ()
        return tuple(p.freeze() for p in self.identifier.profiles())

    def _publish(self) -> TranscriptState:
        self._state = TranscriptState(
            segments=tuple(self._segments),
            live_segment=self._live,
            speakers=self._roster(),
            started_at=self._started_at,
            ended_at=self._ended_at,
        )
        return self._state

    def append(self, segment: TranscriptSegment) -> TranscriptState:
        """Add a final segment or replace the live preview."""
        if self.closed:
            raise RuntimeError("Transcript is closed")

        if not segment.is_final:
            self._live = segment
            return self._publish()

        # Insert after any segment with the same offset
        position = bisect.bisect_right(self._offsets, segment.start_offset)
        if position != len(self._segments):
            _log.warning("Segment at %.2fs arrived after later segments", segment.start_offset)
        self._segments.insert(position, segment)
        self._offsets.insert(position, segment.start_offset)
        self._live = None
        return self._publish()

    def refresh_roster(self) -> TranscriptState:
        """Republish after the roster changed without a new segment (e.g. a rename)."""
        return self._publish()

    def snapshot(self) -> TranscriptState:
        """Current immutable state."""
        return self._state

    def analytics(self) -> MeetingAnalytics:
        return compute_analytics(self._state)

    def export(self, exported_at: Optional[datetime] = None) -> ExportableTranscript:
        """Bundle roster, segments and a generated summary."""
        state = self._state
        analytics = compute_analytics(state)
        exported_at = exported_at or datetime.now()

        participants = analytics.speakers
        minutes = round(analytics.duration_seconds / 60)
        summary = (f"Meeting summary: {analytics.total_segments} segments from "
                   f"{len(participants)} speakers over {minutes} minutes.")

        title = self.title or f"Meeting - {self._started_at.strftime('%Y-%m-%d')}"
        return ExportableTranscript(
            title=title,
            started_at=state.started_at,
            ended_at=state.ended_at,
            duration_seconds=analytics.duration_seconds,
            participants=participants,
            segments=state.segments,
            summary=summary,
            keywords=analytics.keywords,
            exported_at=exported_at,
        )

    def close(self, ended_at: Optional[datetime] = None) -> TranscriptState:
        """Mark the meeting as finished; drops any live preview."""
        if not self.closed:
            self._ended_at = ended_at or datetime.now()
            self._live = None
        return self._publish()
