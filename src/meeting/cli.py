"""
Command line entry point.

Usage:
    meetscribe devices
    meetscribe record --mode fast --output meetings/
    meetscribe record --mic 2 --loopback "BlackHole 2ch" --interval-ms 3000
"""

import argparse
import sys
import threading
import time
from pathlib import Path

from logger import configure_logging, get_logger
from utils import ConfigManager
from .capture import SourceUnavailable, UnsupportedConfiguration, list_input_devices
from .config import MODE_PRESETS, SessionConfig
from .events import EventType
from .transcript import format_timestamp, save_transcript

_log = get_logger("cli")


def _setup(config_path=None):
    ConfigManager.initialize(config_path=config_path)
    configure_logging(
        level=ConfigManager.get_config_value("misc", "log_level") or "INFO",
        console=bool(ConfigManager.get_config_value("misc", "print_to_terminal")),
    )


def format_event(event) -> str:
    """One terminal line per event (empty for events that are not shown)."""
    payload = event.payload
    if event.type is EventType.SEGMENT_ADDED:
        segment, speaker = payload["segment"], payload.get("speaker")
        name = speaker.display_name if speaker else "..."
        marker = "" if segment.is_final else " (live)"
        return f"[{format_timestamp(segment.start_offset)}] {name}{marker}: {segment.text}"
    if event.type is EventType.SPEAKER_UPDATED:
        if payload.get("created") or payload.get("rule") == "hint":
            return f"  * speaker {payload['speaker'].id} is now '{payload['speaker'].display_name}'"
        return ""
    if event.type is EventType.CHUNK_DROPPED:
        return f"  ! dropped audio at {format_timestamp(payload['start_offset'])} ({payload['reason']})"
    if event.type is EventType.PROVIDER_FAILED:
        return f"  ! {payload['provider_id']} failed (attempt {payload['attempt']}): {payload['message']}"
    if event.type is EventType.TRANSCRIPTION_UNAVAILABLE:
        return f"  ! no transcript for {format_timestamp(payload['start_offset'])}: {payload['reason']}"
    if event.type is EventType.SESSION_STOPPED:
        return f"Session stopped: {payload['segment_count']} segments"
    return ""


def _print_events(subscription):
    for event in subscription:
        line = format_event(event)
        if line:
            print(line, flush=True)


def cmd_devices(args) -> int:
    try:
        devices = list_input_devices()
    except Exception as e:
        print(f"Could not list audio devices: {e}", file=sys.stderr)
        return 1

    if not devices:
        print("No input devices found")
        return 1
    for dev in devices:
        print(f"{dev['index']:3d}  {dev['name']}  ({int(dev['default_samplerate'])}Hz, "
              f"{dev['max_input_channels']}ch)")
    return 0


def cmd_record(args) -> int:
    from .session import start_session, stop_session

    overrides = {}
    if args.mode:
        overrides["mode"] = args.mode
    if args.interval_ms:
        overrides["interval_ms"] = args.interval_ms
    if args.mic is not None:
        overrides["mic_device"] = args.mic
    if args.loopback is not None:
        overrides["loopback_device"] = args.loopback
    if args.title:
        overrides["title"] = args.title

    config = SessionConfig.from_config(**overrides)
    output_dir = Path(args.output
                      or ConfigManager.get_config_value("session", "output_dir")
                      or "Meetings/Transcripts")

    try:
        session = start_session(config)
    except (SourceUnavailable, UnsupportedConfiguration) as e:
        _log.error("Could not start session: %s", e)
        print(f"Cannot start recording: {e}", file=sys.stderr)
        return 1

    printer = threading.Thread(target=_print_events, args=(session.subscribe(),), daemon=True)
    printer.start()
    print(f"Recording ({config.mode} mode, {config.chunk_interval_ms} ms chunks). Press Ctrl+C to stop.")

    try:
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        print("\nStopping...")

    export = stop_session(session)
    printer.join(timeout=2.0)

    path = save_transcript(export, output_dir)
    print(f"Saved {len(export.segments)} segments to {path}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="meetscribe", description="Live meeting transcription")
    parser.add_argument("--config", help="Path to config.yaml (default: $MEETSCRIBE_CONFIG or ./config.yaml)")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("devices", help="List audio input devices")

    record = subparsers.add_parser("record", help="Record and transcribe a meeting")
    record.add_argument("--mode", choices=sorted(MODE_PRESETS), help="Chunking/polling preset")
    record.add_argument("--interval-ms", type=int, help="Chunk length override in milliseconds")
    record.add_argument("--mic", help="Microphone device index or name")
    record.add_argument("--loopback", help="System audio (loopback) device index or name")
    record.add_argument("--title", help="Meeting title for the export")
    record.add_argument("--output", "-o", help="Directory for the saved transcript")
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    _setup(args.config)
    if args.command == "devices":
        return cmd_devices(args)
    return cmd_record(args)


if __name__ == "__main__":
    sys.exit(main())
