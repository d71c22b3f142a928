from __future__ import annotations

import logging
import threading
from collections import OrderedDict

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 4096


class ChangeIgnorer:
    """Remembers resource versions the controller wrote itself.

    The reconcile loop pushes ``(namespaced_name, resource_version)`` right
    before it updates a Function.  When the watch delivers that exact version
    back, :meth:`pop` returns ``True`` exactly once and the event is dropped
    as an echo instead of being reconciled again.

    Push and pop are atomic under a single lock, so the write path (reconcile
    loop, CLI helpers) and the delivery path can share one instance.  The set
    is bounded: when an echo never arrives (object deleted, watch re-listed)
    the oldest entries are evicted first.
    """

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self._entries: OrderedDict[tuple[str, str], None] = OrderedDict()
        self._lock = threading.Lock()

    def push(self, namespaced_name: str, resource_version: str) -> None:
        key = (namespaced_name, resource_version)
        with self._lock:
            self._entries[key] = None
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                LOGGER.debug("Evicted ignored change %s@%s", evicted[0], evicted[1])

    def pop(self, namespaced_name: str, resource_version: str) -> bool:
        with self._lock:
            try:
                del self._entries[(namespaced_name, resource_version)]
            except KeyError:
                return False
            return True

    def forget(self, namespaced_name: str) -> int:
        """Drop every pending entry of one Function, returning how many were removed."""
        with self._lock:
            stale = [key for key in self._entries if key[0] == namespaced_name]
            for key in stale:
                del self._entries[key]
            return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
