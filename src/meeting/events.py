"""
Typed live event channel for one session.

Subscribers get their own bounded queue. A subscriber that stops reading loses
its oldest events rather than blocking the pipeline.
"""

import collections
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, Iterator, List, Optional


class EventType(Enum):
    SEGMENT_ADDED = "segment_added"
    SPEAKER_UPDATED = "speaker_updated"
    CHUNK_DROPPED = "chunk_dropped"
    PROVIDER_FAILED = "provider_failed"
    TRANSCRIPTION_UNAVAILABLE = "transcription_unavailable"
    SESSION_STOPPED = "session_stopped"


@dataclass(frozen=True)
class SessionEvent:
    type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class Subscription:
    """One consumer's view of the channel."""

    def __init__(self, channel: "EventChannel", maxsize: int):
        self._channel = channel
        self._events: Deque[SessionEvent] = collections.deque(maxlen=maxsize)
        self._cond = threading.Condition()
        self._closed = False
        self.missed = 0

    def _deliver(self, event: SessionEvent) -> None:
        with self._cond:
            if self._closed:
                return
            if len(self._events) == self._events.maxlen:
                self.missed += 1
            self._events.append(event)
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Optional[SessionEvent]:
        """Next event, or None on timeout / after the channel closed and drained."""
        with self._cond:
            if not self._events and not self._closed:
                self._cond.wait(timeout)
            if self._events:
                return self._events.popleft()
            return None

    def drain(self) -> List[SessionEvent]:
        """Everything currently queued, without waiting."""
        with self._cond:
            events = list(self._events)
            self._events.clear()
            return events

    def __iter__(self) -> Iterator[SessionEvent]:
        """Iterate until the channel is closed."""
        while True:
            event = self.get(timeout=0.5)
            if event is not None:
                yield event
            elif self._closed:
                return

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()
        self._channel._unsubscribe(self)


class EventChannel:
    """Fan-out of SessionEvents to every subscriber."""

    def __init__(self, subscriber_queue_size: int = 256):
        self.subscriber_queue_size = subscriber_queue_size
        self._subscribers: List[Subscription] = []
        self._lock = threading.Lock()
        self._closed = False

    def subscribe(self, maxsize: Optional[int] = None) -> Subscription:
        subscription = Subscription(self, maxsize or self.subscriber_queue_size)
        with self._lock:
            if self._closed:
                subscription._closed = True
            else:
                self._subscribers.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    def publish(self, event_type: EventType, **payload: Any) -> SessionEvent:
        event = SessionEvent(type=event_type, payload=payload)
        with self._lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription._deliver(event)
        return event

    def close(self) -> None:
        """Wake every subscriber; no more events will be delivered."""
        with self._lock:
            self._closed = True
            subscribers, self._subscribers = self._subscribers, []
        for subscription in subscribers:
            with subscription._cond:
                subscription._closed = True
                subscription._cond.notify_all()
