"""
Meeting transcription engine

Mixes mic + system loopback, chunks the stream, transcribes through a provider
chain and keeps a speaker-attributed transcript.
"""

_EXPORTS = {
    "AudioMixer": ".capture",
    "PushSource": ".capture",
    "SoundDeviceSource": ".capture",
    "SourceUnavailable": ".capture",
    "UnsupportedConfiguration": ".capture",
    "AudioChunk": ".models",
    "TranscriptSegment": ".models",
    "SessionConfig": ".config",
    "EventType": ".events",
    "ExportableTranscript": ".transcript",
    "save_transcript": ".transcript",
    "MeetingSession": ".session",
    "start_session": ".session",
    "stop_session": ".session",
}


# Lazy imports so `import meeting` does not pull in numpy/scipy/sounddevice
def __getattr__(name):
    if name in _EXPORTS:
        import importlib
        module = importlib.import_module(_EXPORTS[name], __name__)
        return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = list(_EXPORTS)
