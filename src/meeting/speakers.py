"""
Heuristic speaker attribution.

Each transcribed chunk is attributed to a profile in the session roster using,
in order:

1. Silence: both activity levels under the noise floor -> last active speaker
2. Source dominance: mic level > system level x 1.5 -> the local user
3. Voice match: nearest voice signature closer than 0.3 -> that speaker
4. New speaker, named from a provider-supplied name, a lexical cue in the text,
   or "Speaker N"

The roster only grows. Profiles that have not been heard from for a while are
reported as inactive but never removed, and ids are never reused.
"""

import re
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np

from logger import get_logger
from .models import SpeakerProfile

_log = get_logger("speakers")

LOCAL_SPEAKER_ID = "local"

# Lexical naming cues, checked in order
TEXT_HINTS = [
    ("Meeting Host", re.compile(r"\b(hello|hi everyone|welcome|thank(s| you)|agenda|let'?s (get )?start)\b", re.I)),
    ("Participant", re.compile(r"(\?|\b(question|i think|what|why|how)\b)", re.I)),
    ("Presenter", re.compile(r"\b(update|report|progress|results?|status)\b", re.I)),
]


def extract_voice_features(pcm, sample_rate: int = 16000) -> Optional[List[float]]:
    """
    Small voice signature for nearest-neighbour matching.

    Returns:
        [rms, zero-crossing rate, spectral centroid / nyquist], each in [0, 1],
        or None when there is too little audio
    """
    if isinstance(pcm, (bytes, bytearray)):
        samples = np.frombuffer(bytes(pcm), dtype=np.int16).astype(np.float32) / 32768.0
    else:
        samples = np.asarray(pcm, dtype=np.float32)
    if len(samples) < 2:
        return None

    rms = float(np.sqrt(np.mean(samples ** 2)))
    zcr = float(np.mean(np.abs(np.diff(np.signbit(samples).astype(np.int8)))))

    spectrum = np.abs(np.fft.rfft(samples))
    total = float(spectrum.sum())
    if total > 0:
        freqs = np.fft.rfftfreq(len(samples), d=1.0 / sample_rate)
        centroid = float((freqs * spectrum).sum() / total) / (sample_rate / 2.0)
    else:
        centroid = 0.0

    return [min(rms, 1.0), zcr, min(centroid, 1.0)]


def voice_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """Euclidean distance between two signatures (inf if they can't be compared)."""
    if not a or not b or len(a) != len(b):
        return float("inf")
    return float(np.linalg.norm(np.asarray(a) - np.asarray(b)))


def name_from_text(text: str) -> Optional[str]:
    """Label suggested by greeting/question/report words, if any."""
    if not text:
        return None
    for label, pattern in TEXT_HINTS:
        if pattern.search(text):
            return label
    return None


@dataclass
class Attribution:
    """Outcome of resolving one chunk."""
    profile: SpeakerProfile  # Copy, safe to hand to other threads
    rule: str                # silence | dominance | voice | new | capacity
    created: bool = False


class SpeakerIdentifier:
    """
    Session speaker roster and per-chunk attribution.

    Not thread-safe: the session's aggregation stage is the only caller of the
    mutating methods. Other threads use ``profiles()`` copies.
    """

    def __init__(
        self,
        local_name: str = "You",
        dominance_ratio: float = 1.5,
        voice_threshold: float = 0.3,
        signature_blend: float = 0.5,
        noise_floor: float = 0.01,
        confidence_alpha: float = 0.5,
        inactive_after: float = 30.0,
        expected_speakers: Optional[int] = None,
        clock=time.time,
    ):
        self.local_name = local_name
        self.dominance_ratio = dominance_ratio
        self.voice_threshold = voice_threshold
        self.signature_blend = signature_blend
        self.noise_floor = noise_floor
        self.confidence_alpha = confidence_alpha
        self.inactive_after = inactive_after
        self.expected_speakers = expected_speakers or None
        self._clock = clock

        self._roster: Dict[str, SpeakerProfile] = {}
        self._speaker_counter = 0
        self._last_active_id: Optional[str] = None

    def __len__(self) -> int:
        return len(self._roster)

    @property
    def last_active_id(self) -> Optional[str]:
        return self._last_active_id

    def profiles(self) -> List[SpeakerProfile]:
        """Copies of every profile, in creation order."""
        return [p.copy() for p in self._roster.values()]

    def get(self, profile_id: str) -> Optional[SpeakerProfile]:
        profile = self._roster.get(profile_id)
        return profile.copy() if profile else None

    def active_profiles(self, now: Optional[float] = None) -> List[SpeakerProfile]:
        now = self._clock() if now is None else now
        return [p.copy() for p in self._roster.values() if p.is_active(now, self.inactive_after)]

    # --- roster changes ---

    def _local_profile(self) -> SpeakerProfile:
        profile = self._roster.get(LOCAL_SPEAKER_ID)
        if profile is None:
            profile = SpeakerProfile(id=LOCAL_SPEAKER_ID, display_name=self.local_name, is_local=True)
            self._roster[LOCAL_SPEAKER_ID] = profile
            _log.info("Created local speaker profile '%s'", self.local_name)
        return profile

    def _new_profile(self, name_hint: Optional[str], features: Optional[List[float]]) -> SpeakerProfile:
        self._speaker_counter += 1
        taken = {p.display_name for p in self._roster.values()}
        default_name = f"Speaker {len(self._roster) + 1}"
        name = name_hint if name_hint and name_hint not in taken else default_name

        profile = SpeakerProfile(
            id=f"speaker_{self._speaker_counter}",
            display_name=name,
            voice_signature=list(features) if features else [],
        )
        self._roster[profile.id] = profile
        _log.info("New speaker %s ('%s')", profile.id, name)
        return profile

    def _nearest_remote(self, features: Optional[List[float]]):
        """(profile, distance) of the closest non-local signature."""
        best, best_distance = None, float("inf")
        if not features:
            return best, best_distance
        for profile in self._roster.values():
            if profile.is_local:
                continue
            distance = voice_distance(features, profile.voice_signature)
            if distance < best_distance:
                best, best_distance = profile, distance
        return best, best_distance

    def _at_capacity(self) -> bool:
        return self.expected_speakers is not None and len(self._roster) >= self.expected_speakers

    def resolve(
        self,
        text: str,
        local_level: float,
        remote_level: float,
        features: Optional[List[float]] = None,
        confidence: float = 0.0,
        duration: float = 0.0,
        speaker_hints: Iterable = (),
        now: Optional[float] = None,
    ) -> Attribution:
        """Attribute one chunk to a profile and update that profile's statistics."""
        now = self._clock() if now is None else now
        created = False

        nearest, distance = self._nearest_remote(features)

        if (local_level < self.noise_floor and remote_level < self.noise_floor
                and self._last_active_id is not None):
            profile, rule = self._roster[self._last_active_id], "silence"
        elif local_level > remote_level * self.dominance_ratio:
            created = LOCAL_SPEAKER_ID not in self._roster
            profile, rule = self._local_profile(), "dominance"
        elif nearest is not None and distance < self.voice_threshold:
            profile, rule = nearest, "voice"
        elif nearest is not None and self._at_capacity():
            profile, rule = nearest, "capacity"
        else:
            name_hint = _name_from_hints(speaker_hints) or name_from_text(text)
            profile, rule, created = self._new_profile(name_hint, features), "new", True

        _log.debug("Chunk -> %s via %s (local=%.3f remote=%.3f distance=%.3f)",
                   profile.id, rule, local_level, remote_level, distance)

        self._update_profile(profile, text, features, confidence, duration, now)
        self._last_active_id = profile.id
        return Attribution(profile=profile.copy(), rule=rule, created=created)

    def _update_profile(self, profile: SpeakerProfile, text: str, features: Optional[List[float]],
                        confidence: float, duration: float, now: float) -> None:
        if features:
            if profile.voice_signature and len(profile.voice_signature) == len(features):
                w = self.signature_blend
                profile.voice_signature = [
                    (1.0 - w) * old + w * new for old, new in zip(profile.voice_signature, features)
                ]
            else:
                profile.voice_signature = list(features)

        if profile.segment_count == 0:
            profile.confidence = confidence
        else:
            a = self.confidence_alpha
            profile.confidence = (1.0 - a) * profile.confidence + a * confidence

        profile.total_words += len(text.split()) if text else 0
        profile.speaking_time_seconds += duration
        profile.segment_count += 1
        profile.last_seen_at = now

    def rename(self, profile_id: str, name: str, confidence: Optional[float] = None) -> SpeakerProfile:
        """
        Apply an external identification hint (e.g. face recognition).

        Raises:
            KeyError: Unknown profile id
        """
        profile = self._roster[profile_id]
        _log.info("Renaming %s: '%s' -> '%s'", profile_id, profile.display_name, name)
        profile.display_name = name
        if confidence is not None:
            profile.confidence = max(0.0, min(1.0, float(confidence)))
        return profile.copy()


def _name_from_hints(speaker_hints: Iterable) -> Optional[str]:
    for hint in speaker_hints or ():
        name = getattr(hint, "name", None)
        if name:
            return name
    return None
