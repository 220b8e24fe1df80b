"""
Pytest fixtures for meetscribe tests.
"""

import sys
import tempfile
from datetime import datetime
from pathlib import Path

import numpy as np
import pytest

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

SAMPLE_RATE = 16000


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def noise():
    """Factory for seeded white noise (float32 in [-amplitude, amplitude])."""
    def make(seconds=1.0, amplitude=0.3, seed=0, sample_rate=SAMPLE_RATE):
        rng = np.random.default_rng(seed)
        n = int(seconds * sample_rate)
        return (rng.uniform(-1.0, 1.0, n) * amplitude).astype(np.float32)
    return make


@pytest.fixture
def sine():
    """Factory for a float32 sine tone."""
    def make(freq=440.0, seconds=1.0, amplitude=0.5, sample_rate=SAMPLE_RATE):
        t = np.arange(int(seconds * sample_rate)) / sample_rate
        return (amplitude * np.sin(2 * np.pi * freq * t)).astype(np.float32)
    return make


@pytest.fixture
def make_chunk():
    """Factory for AudioChunks with int16 PCM."""
    from meeting.models import AudioChunk

    def make(index=0, samples=None, start_offset=None, duration=1.0, local_level=0.0,
             remote_level=0.0, sample_rate=SAMPLE_RATE):
        if samples is None:
            samples = np.zeros(int(duration * sample_rate), dtype=np.int16)
        elif samples.dtype != np.int16:
            samples = (np.clip(samples, -1.0, 1.0) * 32767).astype(np.int16)
        return AudioChunk(
            index=index,
            pcm=samples.tobytes(),
            sample_rate=sample_rate,
            start_offset=index * duration if start_offset is None else start_offset,
            duration=len(samples) / sample_rate,
            local_level=local_level,
            remote_level=remote_level,
            captured_at=datetime(2026, 1, 20, 14, 30, 0),
        )
    return make


@pytest.fixture
def mock_config():
    """Mock configuration for testing."""
    return {
        "profile": {
            "user_name": "Test User",
            "meeting_title": None,
        },
        "chunking": {
            "mode": "fast",
            "interval_ms": 0,
            "queue_depth": 4,
        },
        "transcription": {
            "providers": [
                {"id": "assemblyai", "api_key_env": "TEST_ASSEMBLYAI_KEY"},
                {"id": "openai", "api_key": "sk-test", "options": {"model": "whisper-1"}},
            ],
            "language": "en",
            "max_retries": 1,
        },
        "misc": {
            "print_to_terminal": False,
        },
    }
