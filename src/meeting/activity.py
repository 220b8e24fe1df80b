"""
Per-source activity level.

The level is the mean of a byte-scaled magnitude spectrum: Hann-windowed rFFT,
magnitudes in dB mapped from [-100 dB, -30 dB] onto 0..255, then averaged and
divided by 255. There is no smoothing between samples, so the same window always
gives the same level.
"""

import threading
from typing import Optional

import numpy as np

from logger import get_logger

_log = get_logger("activity")

MIN_DECIBELS = -100.0
MAX_DECIBELS = -30.0
MAX_BYTE = 255.0


def compute_level(window: np.ndarray, fft_size: int = 2048) -> float:
    """Normalized energy level in [0, 1] for a float window in [-1, 1]."""
    if window is None or len(window) == 0:
        return 0.0

    frame = np.asarray(window, dtype=np.float64)[-fft_size:]
    if len(frame) < fft_size:
        frame = np.concatenate([np.zeros(fft_size - len(frame)), frame])

    magnitudes = np.abs(np.fft.rfft(frame * np.hanning(fft_size))) / fft_size
    decibels = 20.0 * np.log10(np.maximum(magnitudes, 1e-12))
    scaled = np.clip((decibels - MIN_DECIBELS) / (MAX_DECIBELS - MIN_DECIBELS), 0.0, 1.0)
    byte_values = np.floor(scaled * MAX_BYTE)

    return float(byte_values.mean() / MAX_BYTE)


class ActivityMonitor:
    """Samples one source's level on a fixed cadence (default 60 Hz)."""

    def __init__(self, tap, rate_hz: float = 60.0, fft_size: int = 2048):
        self.tap = tap
        self.rate_hz = rate_hz
        self.fft_size = fft_size
        self.level = 0.0
        self.previous_level = 0.0

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def source_id(self) -> str:
        return self.tap.source_id

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def sample(self) -> float:
        """Compute the current level from the tap's latest window."""
        level = compute_level(self.tap.latest(), self.fft_size)
        self.previous_level = self.level
        self.level = level
        return level

    def _run(self):
        interval = 1.0 / self.rate_hz
        while not self._stop_event.wait(interval):
            self.sample()

    def start(self):
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, daemon=True,
                                        name=f"activity-{self.source_id}")
        self._thread.start()
        _log.debug("Activity monitor started for %s at %.0f Hz", self.source_id, self.rate_hz)

    def stop(self):
        """Stop sampling and wait for the thread to exit."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None
        self.level = 0.0
        self.previous_level = 0.0
