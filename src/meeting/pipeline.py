"""
Reordering of transcription results.

Chunks finish transcribing out of order (retries, slow providers, parallel
workers). ``ReorderBuffer`` hands results back in chunk order. If the next
expected chunk is missing for longer than ``max_wait`` seconds, everything
behind it is released anyway; the straggler, if it ever arrives, is released
on its own.
"""

import time
from typing import Any, Dict, List, Optional, Set

from logger import get_logger

_log = get_logger("pipeline")

_SKIPPED = object()


class ReorderBuffer:
    def __init__(self, max_wait: float = 30.0, clock=time.monotonic):
        self.max_wait = max_wait
        self._clock = clock
        self._next_index = 0
        self._items: Dict[int, Any] = {}
        self._abandoned: Set[int] = set()
        self._blocked_since: Optional[float] = None

    @property
    def next_index(self) -> int:
        return self._next_index

    def __len__(self) -> int:
        return sum(1 for item in self._items.values() if item is not _SKIPPED)

    def _release(self) -> List[Any]:
        released = []
        while self._next_index in self._items:
            item = self._items.pop(self._next_index)
            if item is not _SKIPPED:
                released.append(item)
            self._next_index += 1

        if self._items:
            if self._blocked_since is None:
                self._blocked_since = self._clock()
        else:
            self._blocked_since = None
        return released

    def add(self, index: int, item: Any) -> List[Any]:
        """Store a result; returns every item that is now in order."""
        if index < self._next_index:
            if index in self._abandoned:
                self._abandoned.discard(index)
                _log.warning("Chunk %d arrived after it was given up on", index)
                return [item]
            _log.warning("Ignoring duplicate result for chunk %d", index)
            return []
        self._items[index] = item
        return self._release()

    def skip(self, index: int) -> List[Any]:
        """Mark a chunk that will never produce a result (dropped)."""
        if index < self._next_index:
            self._abandoned.discard(index)
            return []
        self._items[index] = _SKIPPED
        return self._release()

    def expire(self) -> List[Any]:
        """Force past a missing chunk that has held things up for too long."""
        if self._blocked_since is None or self._clock() - self._blocked_since < self.max_wait:
            return []
        return self._jump()

    def flush(self) -> List[Any]:
        """Release everything still buffered, in order (end of session)."""
        released = []
        while self._items:
            released.extend(self._jump())
        return released

    def _jump(self) -> List[Any]:
        if not self._items:
            return []
        target = min(self._items)
        for missing in range(self._next_index, target):
            self._abandoned.add(missing)
        if target > self._next_index:
            _log.warning("Gave up waiting for chunks %d-%d", self._next_index, target - 1)
        self._next_index = target
        self._blocked_since = None
        return self._release()
