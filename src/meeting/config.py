"""
Per-session configuration.

A ``SessionConfig`` is built once per recording and handed to ``start_session``.
Provider credentials live on it (and on the provider objects built from it),
never in module state.
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from dotenv import load_dotenv

from logger import get_logger
from utils import ConfigManager

_log = get_logger("config")

# chunk length, async poll interval, async poll attempts
MODE_PRESETS: Dict[str, Dict[str, Any]] = {
    "fast": {"interval_ms": 2000, "poll_interval": 1.0, "max_poll_attempts": 60},
    "accurate": {"interval_ms": 5000, "poll_interval": 2.0, "max_poll_attempts": 120},
}


@dataclass
class ProviderSpec:
    """One entry of the provider priority chain."""
    provider_id: str
    credentials: Dict[str, str] = field(default_factory=dict)
    options: Dict[str, Any] = field(default_factory=dict)

    def __repr__(self) -> str:
        # Keep keys out of logs and tracebacks
        return f"ProviderSpec(provider_id={self.provider_id!r}, options={self.options!r})"

    @classmethod
    def from_config(cls, item: Dict[str, Any]) -> "ProviderSpec":
        """
        Build from a config entry such as
        ``{"id": "assemblyai", "api_key_env": "ASSEMBLYAI_API_KEY", "options": {...}}``.
        """
        provider_id = item.get("id")
        if not provider_id:
            raise ValueError(f"Provider entry without 'id': {item}")

        credentials = {}
        api_key = item.get("api_key")
        if not api_key and item.get("api_key_env"):
            api_key = os.environ.get(item["api_key_env"])
            if not api_key:
                _log.warning("Environment variable %s for provider '%s' is not set",
                             item["api_key_env"], provider_id)
        if api_key:
            credentials["api_key"] = api_key

        return cls(provider_id=provider_id, credentials=credentials, options=dict(item.get("options") or {}))


@dataclass
class SessionConfig:
    """Everything one recording session needs."""
    mode: str = "accurate"
    interval_ms: Optional[int] = None           # None -> mode default
    providers: List[ProviderSpec] = field(default_factory=list)
    expected_speakers: Optional[int] = None     # Best-effort hint
    language: Optional[str] = "en"

    user_name: str = "You"
    title: Optional[str] = None

    # Capture
    sample_rate: int = 16000
    mic_device: Optional[str] = None
    loopback_device: Optional[str] = None
    block_size: int = 1024
    local_gain: float = 1.0
    remote_gain: float = 1.2
    max_drift_seconds: float = 0.5

    # Activity
    activity_hz: float = 60.0
    fft_size: int = 2048
    noise_floor: float = 0.01

    # Chunking and dispatch
    queue_depth: int = 4
    max_retries: int = 2
    retry_delays: Tuple[float, ...] = (1.0, 2.0)
    dispatch_workers: int = 2
    offline_fallback: bool = True
    local_model: str = "base"

    # Attribution
    dominance_ratio: float = 1.5
    voice_distance_threshold: float = 0.3
    signature_blend: float = 0.5
    inactive_after_seconds: float = 30.0

    # Pipeline
    reorder_max_wait: float = 30.0
    stop_drain_seconds: float = 10.0

    def __post_init__(self):
        if self.mode not in MODE_PRESETS:
            raise ValueError(f"Unknown mode '{self.mode}'. Expected one of {list(MODE_PRESETS)}")

    @property
    def chunk_interval_ms(self) -> int:
        return self.interval_ms or MODE_PRESETS[self.mode]["interval_ms"]

    @property
    def poll_options(self) -> Dict[str, Any]:
        """Async polling cadence for the selected mode."""
        preset = MODE_PRESETS[self.mode]
        return {"poll_interval": preset["poll_interval"], "max_poll_attempts": preset["max_poll_attempts"]}

    @classmethod
    def from_config(cls, **overrides: Any) -> "SessionConfig":
        """Build from ConfigManager settings (+ .env for credentials), then apply overrides."""
        load_dotenv()
        cfg = ConfigManager

        def section(name):
            return cfg.get_config_section(name) or {}

        profile, capture, activity = section("profile"), section("capture"), section("activity")
        chunking, speakers = section("chunking"), section("speakers")
        transcription, session = section("transcription"), section("session")

        values: Dict[str, Any] = dict(
            mode=chunking.get("mode") or "accurate",
            interval_ms=chunking.get("interval_ms") or None,
            providers=[ProviderSpec.from_config(item) for item in transcription.get("providers") or []],
            expected_speakers=speakers.get("expected_speaker_count") or None,
            language=transcription.get("language") or None,
            user_name=profile.get("user_name") or "You",
            title=profile.get("meeting_title"),
            sample_rate=capture.get("sample_rate", 16000),
            mic_device=capture.get("mic_device"),
            loopback_device=capture.get("loopback_device"),
            block_size=capture.get("block_size", 1024),
            local_gain=capture.get("local_gain", 1.0),
            remote_gain=capture.get("remote_gain", 1.2),
            max_drift_seconds=capture.get("max_drift_seconds", 0.5),
            activity_hz=activity.get("sample_hz", 60),
            fft_size=activity.get("fft_size", 2048),
            noise_floor=activity.get("noise_floor", 0.01),
            queue_depth=chunking.get("queue_depth", 4),
            max_retries=transcription.get("max_retries", 2),
            retry_delays=tuple(transcription.get("retry_delays") or (1.0, 2.0)),
            dispatch_workers=transcription.get("dispatch_workers", 2),
            offline_fallback=transcription.get("offline_fallback", True),
            local_model=transcription.get("local_model") or "base",
            dominance_ratio=speakers.get("dominance_ratio", 1.5),
            voice_distance_threshold=speakers.get("voice_distance_threshold", 0.3),
            signature_blend=speakers.get("signature_blend", 0.5),
            inactive_after_seconds=speakers.get("inactive_after_seconds", 30.0),
            reorder_max_wait=session.get("reorder_max_wait_seconds", 30.0),
            stop_drain_seconds=session.get("stop_drain_seconds", 10.0),
        )
        values.update(overrides)
        return cls(**values)
