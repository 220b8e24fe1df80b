"""
Audio capture and mixing for meeting transcription.

Two live sources are captured side by side: the microphone (the local user) and
system audio (everyone else, via a loopback device such as BlackHole on macOS
or a PulseAudio/PipeWire "Monitor of ..." source on Linux). The mixer combines
them into one mono stream for transcription while keeping a per-source tap for
the activity monitors. Nothing is ever played back to an output device.
"""

import queue
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from math import gcd
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy.signal import resample_poly

from logger import get_logger

_log = get_logger("capture")

LOCAL_SOURCE_ID = "local"
REMOTE_SOURCE_ID = "remote"

# Remote audio is usually captured quieter than the mic
DEFAULT_GAINS = {LOCAL_SOURCE_ID: 1.0, REMOTE_SOURCE_ID: 1.2}

# Largest up/down factor accepted by resample_poly before we refuse the format
MAX_RESAMPLE_FACTOR = 1000

LOOPBACK_NAME_HINTS = ("BlackHole", "Monitor of", "Stereo Mix", "Loopback")


class SourceUnavailable(Exception):
    """A capture device could not be opened (missing device, permission denied)."""
    def __init__(self, source_id: str, reason: str):
        self.source_id = source_id
        self.reason = reason
        super().__init__(f"Audio source '{source_id}' unavailable: {reason}")


class UnsupportedConfiguration(Exception):
    """Source formats cannot be combined (bad sample rate, channel count, duplicate ids)."""


class AudioSource(ABC):
    """
    A live audio stream (local mic or remote/system capture).

    Subclasses push int16 blocks into ``self._queue``; ``read`` drains them.
    """

    def __init__(self, source_id: str, sample_rate: int, channel_count: int = 1):
        self.source_id = source_id
        self.sample_rate = sample_rate
        self.channel_count = channel_count
        self._queue: queue.Queue = queue.Queue()
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    @abstractmethod
    def open(self) -> None:
        """Start capturing. Raises SourceUnavailable."""

    @abstractmethod
    def close(self) -> None:
        """Stop capturing and release the device. Idempotent."""

    def read(self, timeout: float = 0.1) -> Optional[np.ndarray]:
        """Get queued audio as one interleaved int16 array, or None if nothing arrived."""
        chunks = []
        # Wait for at least one block, then take whatever else is queued
        try:
            if timeout > 0:
                chunks.append(self._queue.get(timeout=timeout))
            else:
                chunks.append(self._queue.get_nowait())
        except queue.Empty:
            return None

        while True:
            try:
                chunks.append(self._queue.get_nowait())
            except queue.Empty:
                break

        return np.concatenate(chunks)


class SoundDeviceSource(AudioSource):
    """Captures from a PortAudio input device via sounddevice."""

    def __init__(self, source_id: str, device=None, sample_rate: Optional[int] = None,
                 channel_count: Optional[int] = None, block_size: int = 1024):
        self.device = device
        self.block_size = block_size
        self._stream = None

        info = _query_input_device(device) if sample_rate is None or channel_count is None else None
        if sample_rate is None:
            sample_rate = int(info['default_samplerate']) if info else 16000
        if channel_count is None:
            channel_count = max(1, int(info['max_input_channels'])) if info else 1
        super().__init__(source_id, int(sample_rate), int(channel_count))

    def _callback(self, indata, frames, time_info, status):
        if status:
            _log.debug("%s callback status: %s", self.source_id, status)
        if self._open:
            self._queue.put(indata.flatten().copy())

    def open(self) -> None:
        if self._open:
            return
        import sounddevice as sd

        try:
            self._stream = sd.InputStream(
                device=self.device,
                samplerate=self.sample_rate,
                channels=self.channel_count,
                dtype='int16',
                blocksize=self.block_size,
                callback=self._callback,
            )
            self._open = True
            self._stream.start()
        except (sd.PortAudioError, ValueError) as e:
            self._open = False
            self._stream = None
            raise SourceUnavailable(self.source_id, str(e)) from e

        _log.info("Opened %s on device %s (%dHz, %dch)", self.source_id, self.device,
                  self.sample_rate, self.channel_count)

    def close(self) -> None:
        self._open = False
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as e:
            _log.warning("Error closing %s stream: %s", self.source_id, e)


class PushSource(AudioSource):
    """A source fed by the caller (browser bridge, file replay, tests)."""

    def open(self) -> None:
        self._open = True

    def close(self) -> None:
        self._open = False

    def feed(self, samples: np.ndarray) -> None:
        """Queue a block. float input in [-1, 1] is converted to int16."""
        if not self._open:
            return
        samples = np.asarray(samples)
        if samples.dtype != np.int16:
            samples = (np.clip(samples, -1.0, 1.0) * 32767).astype(np.int16)
        self._queue.put(samples.reshape(-1).copy())


def _query_input_device(device):
    try:
        import sounddevice as sd
        return sd.query_devices(device, 'input')
    except Exception as e:
        _log.warning("Could not query input device %s: %s", device, e)
        return None


def list_input_devices() -> List[dict]:
    """All devices that can record, with their index."""
    import sounddevice as sd

    devices = []
    for i, dev in enumerate(sd.query_devices()):
        if dev['max_input_channels'] > 0:
            dev_copy = dict(dev)
            dev_copy['index'] = i
            devices.append(dev_copy)
    return devices


def find_default_input() -> Optional[dict]:
    """The system default input (microphone), with its index."""
    import sounddevice as sd

    index = sd.default.device[0]
    if index is None or index < 0:
        _log.error("No default input device configured")
        return None
    dev = _query_input_device(index)
    if dev is None:
        return None
    dev_copy = dict(dev)
    dev_copy['index'] = index
    return dev_copy


def find_loopback_device() -> Optional[dict]:
    """Find a device that records system audio (BlackHole, monitor source, Stereo Mix)."""
    for dev in list_input_devices():
        if any(hint.lower() in dev['name'].lower() for hint in LOOPBACK_NAME_HINTS):
            _log.info("Found loopback device: %s (%sHz, %sch)", dev['name'],
                      dev['default_samplerate'], dev['max_input_channels'])
            return dev
    _log.error("No loopback device found. On macOS install BlackHole (brew install blackhole-2ch)")
    return None


class SourceTap:
    """Latest pre-gain mono window of one source, read by its ActivityMonitor."""

    def __init__(self, source_id: str, window_size: int = 2048):
        self.source_id = source_id
        self.window_size = window_size
        self._window = np.zeros(0, dtype=np.float32)
        self._lock = threading.Lock()

    def push(self, samples: np.ndarray) -> None:
        with self._lock:
            self._window = np.concatenate([self._window, samples])[-self.window_size:]

    def latest(self) -> np.ndarray:
        with self._lock:
            return self._window.copy()

    def clear(self) -> None:
        with self._lock:
            self._window = np.zeros(0, dtype=np.float32)


@dataclass
class MixedStreamHandle:
    """Describes an open mixed stream."""
    sample_rate: int
    source_ids: Tuple[str, ...]
    gains: Dict[str, float] = field(default_factory=dict)
    channel_count: int = 1


class AudioMixer:
    """
    Combines live sources into one mono int16 stream.

    Each source goes through its own fixed gain before summation. Sources are
    aligned sample by sample; if one runs more than ``max_drift_seconds`` ahead
    of another (a stalled or silent device), the lagging source is zero-filled
    for the excess so the mix keeps flowing.
    """

    def __init__(self, sample_rate: int = 16000, gains: Optional[Dict[str, float]] = None,
                 max_drift_seconds: float = 0.5, tap_size: int = 2048):
        self.sample_rate = sample_rate
        self.gains = dict(DEFAULT_GAINS)
        self.gains.update(gains or {})
        self.max_drift_samples = int(max_drift_seconds * sample_rate)
        self.tap_size = tap_size

        self._sources: List[AudioSource] = []
        self._ratios: Dict[str, Tuple[int, int]] = {}
        self._pending: Dict[str, np.ndarray] = {}
        self._taps: Dict[str, SourceTap] = {}
        self._handle: Optional[MixedStreamHandle] = None

    @property
    def is_open(self) -> bool:
        return self._handle is not None

    @property
    def handle(self) -> Optional[MixedStreamHandle]:
        return self._handle

    def _resample_ratio(self, source: AudioSource) -> Tuple[int, int]:
        rate = source.sample_rate
        if not rate or rate <= 0 or int(rate) != rate:
            raise UnsupportedConfiguration(f"Source '{source.source_id}' has invalid sample rate {rate}")
        if source.channel_count < 1:
            raise UnsupportedConfiguration(
                f"Source '{source.source_id}' has invalid channel count {source.channel_count}")

        divisor = gcd(self.sample_rate, int(rate))
        up, down = self.sample_rate // divisor, int(rate) // divisor
        if max(up, down) > MAX_RESAMPLE_FACTOR:
            raise UnsupportedConfiguration(
                f"Cannot resample '{source.source_id}' from {rate}Hz to {self.sample_rate}Hz")
        return up, down

    def open(self, sources: Sequence[AudioSource]) -> MixedStreamHandle:
        """
        Open every source and start mixing.

        Raises:
            UnsupportedConfiguration: No sources, duplicate ids or unusable formats
            SourceUnavailable: A device could not be opened (others are closed again)
        """
        if self.is_open:
            raise RuntimeError("Mixer is already open")
        if not sources:
            raise UnsupportedConfiguration("At least one audio source is required")

        ids = [s.source_id for s in sources]
        if len(set(ids)) != len(ids):
            raise UnsupportedConfiguration(f"Duplicate source ids: {ids}")

        # Validate every format before touching any device
        ratios = {s.source_id: self._resample_ratio(s) for s in sources}

        opened: List[AudioSource] = []
        try:
            for source in sources:
                source.open()
                opened.append(source)
        except Exception:
            for source in opened:
                source.close()
            raise

        self._sources = list(sources)
        self._ratios = ratios
        self._pending = {sid: np.zeros(0, dtype=np.float32) for sid in ids}
        self._taps = {sid: SourceTap(sid, self.tap_size) for sid in ids}
        self._handle = MixedStreamHandle(
            sample_rate=self.sample_rate,
            source_ids=tuple(ids),
            gains={sid: self.gains.get(sid, 1.0) for sid in ids},
        )
        _log.info("Mixer open: %s at %dHz, gains %s", ids, self.sample_rate, self._handle.gains)
        return self._handle

    def tap(self, source_id: str) -> SourceTap:
        """Per-source window for activity monitoring."""
        if source_id not in self._taps:
            raise KeyError(f"No open source '{source_id}'")
        return self._taps[source_id]

    def _to_mono_float(self, source: AudioSource, block: np.ndarray) -> np.ndarray:
        samples = block.astype(np.float32) / 32768.0
        if source.channel_count > 1:
            usable = len(samples) - len(samples) % source.channel_count
            samples = samples[:usable].reshape(-1, source.channel_count).mean(axis=1)
        return samples

    def _collect(self, timeout: float) -> None:
        for i, source in enumerate(self._sources):
            # Block on the first source only; the others are drained as-is
            block = source.read(timeout if i == 0 else 0)
            if block is None or len(block) == 0:
                continue
            mono = self._to_mono_float(source, block)
            self._taps[source.source_id].push(mono)

            up, down = self._ratios[source.source_id]
            if up != down:
                mono = resample_poly(mono, up, down).astype(np.float32)
            self._pending[source.source_id] = np.concatenate([self._pending[source.source_id], mono])

    def read(self, timeout: float = 0.1) -> Optional[np.ndarray]:
        """
        Mix whatever audio is available.

        Returns:
            int16 mono block at ``sample_rate``, or None if nothing can be mixed yet
        """
        if not self.is_open:
            return None

        self._collect(timeout)

        lengths = [len(p) for p in self._pending.values()]
        n = min(lengths)
        # A source that runs too far ahead forces the others to be zero-filled
        longest = max(lengths)
        if longest - n > self.max_drift_samples:
            n = longest - self.max_drift_samples
        if n <= 0:
            return None

        mixed = np.zeros(n, dtype=np.float32)
        for source_id, pending in self._pending.items():
            take = pending[:n]
            mixed[:len(take)] += take * self.gains.get(source_id, 1.0)
            self._pending[source_id] = pending[len(take):]
            if len(take) < n:
                # The tap must see the silence too, or its level stays at the last block
                up, down = self._ratios[source_id]
                self._taps[source_id].push(np.zeros((n - len(take)) * down // up, dtype=np.float32))

        return (np.clip(mixed, -1.0, 1.0) * 32767).astype(np.int16)

    def close(self) -> None:
        """Release every source. Safe to call more than once."""
        if not self.is_open:
            return
        for source in self._sources:
            try:
                source.close()
            except Exception as e:
                _log.warning("Error closing source %s: %s", source.source_id, e)
        for tap in self._taps.values():
            tap.clear()
        self._sources = []
        self._pending = {}
        self._handle = None
        _log.info("Mixer closed")
