"""
Fixed-interval chunking of the mixed stream.

The scheduler slices the mixer output into chunks of ``interval_ms`` on the
audio clock (samples received, not wall time), tags each with the activity
levels at its boundary and pushes it into a bounded ``ChunkQueue``. When the
transcription side falls behind, the queue drops its OLDEST chunk so the live
transcript stays current.
"""

import collections
import threading
import time
from datetime import datetime
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional

import numpy as np

from logger import get_logger
from .capture import LOCAL_SOURCE_ID, REMOTE_SOURCE_ID, AudioMixer
from .models import AudioChunk

_log = get_logger("scheduler")


class NotMixed(Exception):
    """Chunking was requested before the mixer was opened."""


class SchedulerState(Enum):
    IDLE = "idle"
    RECORDING = "recording"
    STOPPED = "stopped"


class ChunkQueue:
    """
    Bounded FIFO between the scheduler and the transcription workers.

    ``put`` never blocks: when full, the oldest waiting chunk is evicted and
    passed to ``on_drop``.
    """

    def __init__(self, maxsize: int = 4, on_drop: Optional[Callable[[AudioChunk], None]] = None):
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self.maxsize = maxsize
        self.on_drop = on_drop
        self.dropped_count = 0
        self._unfinished = 0

        self._items: Deque[AudioChunk] = collections.deque()
        self._closed = False
        self._cond = threading.Condition()

    def put(self, chunk: AudioChunk) -> Optional[AudioChunk]:
        """Enqueue a chunk. Returns the evicted chunk, if any."""
        dropped = None
        with self._cond:
            if self._closed:
                return None
            if len(self._items) >= self.maxsize:
                dropped = self._items.popleft()
                self.dropped_count += 1
                self._unfinished -= 1
            self._items.append(chunk)
            self._unfinished += 1
            self._cond.notify()

        if dropped is not None:
            _log.warning("Transcription backlog full, dropped chunk %d (%.1fs)",
                         dropped.index, dropped.start_offset)
            if self.on_drop:
                self.on_drop(dropped)
        return dropped

    def get(self, timeout: Optional[float] = None) -> Optional[AudioChunk]:
        """Next chunk, or None on timeout or when closed and empty."""
        with self._cond:
            if not self._items and not self._closed:
                self._cond.wait(timeout)
            if self._items:
                return self._items.popleft()
            return None

    def pending(self) -> List[AudioChunk]:
        """Snapshot of waiting chunks, oldest first."""
        with self._cond:
            return list(self._items)

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def unfinished(self) -> int:
        """Chunks queued or taken but not yet marked done."""
        with self._cond:
            return self._unfinished

    def task_done(self) -> None:
        """Mark a chunk returned by ``get`` as fully processed."""
        with self._cond:
            self._unfinished = max(0, self._unfinished - 1)

    def close(self) -> List[AudioChunk]:
        """Stop accepting chunks and wake every waiting consumer. Returns what was left."""
        with self._cond:
            self._closed = True
            leftover = list(self._items)
            self._items.clear()
            self._unfinished -= len(leftover)
            self._cond.notify_all()
        return leftover


class ChunkScheduler:
    """Turns the mixed stream into time-boxed chunks (Idle -> Recording -> Stopped)."""

    def __init__(
        self,
        mixer: AudioMixer,
        chunk_queue: ChunkQueue,
        monitors: Optional[Dict[str, object]] = None,
        read_timeout: float = 0.05,
    ):
        self.mixer = mixer
        self.chunk_queue = chunk_queue
        self.monitors = monitors or {}
        self.read_timeout = read_timeout

        self.state = SchedulerState.IDLE
        self.interval_ms = 0
        self.chunks_emitted = 0

        self._buffer = np.zeros(0, dtype=np.int16)
        self._samples_emitted = 0
        self._interval_samples = 0
        self._running = False
        self._thread: Optional[threading.Thread] = None

    @property
    def sample_rate(self) -> int:
        return self.mixer.sample_rate

    def start(self, interval_ms: int, run_thread: bool = True) -> None:
        """
        Begin chunk emission.

        Args:
            interval_ms: Nominal chunk length
            run_thread: Start the capture thread. Pass False to drive ``pump()`` yourself.

        Raises:
            NotMixed: The mixer has not been opened
        """
        if not self.mixer.is_open:
            raise NotMixed("Open the audio mixer before starting the chunk scheduler")
        if self.state is not SchedulerState.IDLE:
            raise RuntimeError(f"Scheduler cannot start from state {self.state.value}")
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")

        self.interval_ms = interval_ms
        self._interval_samples = max(1, int(self.sample_rate * interval_ms / 1000))
        self.state = SchedulerState.RECORDING
        self._running = True

        if run_thread:
            self._thread = threading.Thread(target=self._capture_loop, daemon=True, name="chunk-scheduler")
            self._thread.start()
        _log.info("Chunk scheduler recording (%d ms chunks)", interval_ms)

    def _capture_loop(self):
        while self._running:
            try:
                self.pump(self.read_timeout)
            except Exception as e:
                _log.error("Error in capture loop: %s", e, exc_info=True)
                time.sleep(self.read_timeout)

    def pump(self, timeout: float = 0.0) -> int:
        """Read available mixed audio and emit every complete chunk. Returns chunks emitted."""
        if self.state is not SchedulerState.RECORDING:
            return 0

        block = self.mixer.read(timeout)
        if block is not None and len(block):
            self._buffer = np.concatenate([self._buffer, block])

        emitted = 0
        while len(self._buffer) >= self._interval_samples:
            samples = self._buffer[:self._interval_samples]
            self._buffer = self._buffer[self._interval_samples:]
            self._emit(samples)
            emitted += 1
        return emitted

    def _levels(self):
        """Fresh activity levels at this chunk boundary."""
        local = self.monitors.get(LOCAL_SOURCE_ID)
        remote = self.monitors.get(REMOTE_SOURCE_ID)
        return (local.sample() if local else 0.0, remote.sample() if remote else 0.0)

    def _emit(self, samples: np.ndarray, is_last: bool = False) -> AudioChunk:
        local_level, remote_level = self._levels()
        chunk = AudioChunk(
            index=self.chunks_emitted,
            pcm=samples.astype(np.int16).tobytes(),
            sample_rate=self.sample_rate,
            start_offset=self._samples_emitted / self.sample_rate,
            duration=len(samples) / self.sample_rate,
            local_level=local_level,
            remote_level=remote_level,
            captured_at=datetime.now(),
            is_last=is_last,
        )
        self._samples_emitted += len(samples)
        self.chunks_emitted += 1
        _log.debug("Chunk %d ready: %.2fs at %.2fs (local=%.3f remote=%.3f)", chunk.index,
                   chunk.duration, chunk.start_offset, local_level, remote_level)
        self.chunk_queue.put(chunk)
        return chunk

    def stop(self) -> Optional[AudioChunk]:
        """Stop emitting. Buffered audio is flushed as a final, shorter chunk which is returned."""
        if self.state is SchedulerState.STOPPED:
            return None
        if self.state is SchedulerState.IDLE:
            self.state = SchedulerState.STOPPED
            return None

        self._running = False
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None

        # Drain what the mixer still holds, then flush the tail
        self.pump(0)
        final_chunk = None
        if len(self._buffer):
            final_chunk = self._emit(self._buffer, is_last=True)
            self._buffer = np.zeros(0, dtype=np.int16)

        self.state = SchedulerState.STOPPED
        _log.info("Chunk scheduler stopped after %d chunks", self.chunks_emitted)
        return final_chunk
