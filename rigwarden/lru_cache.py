"""
RigWarden Bounded LRU cache with read-time TTL

Backs the ping, traffic-counter and external-IP lookups. Each lookup owns
its own instance; nothing here knows what is being cached.
"""

import threading
import time
from collections import OrderedDict


class BoundedCache:
    """Fixed-capacity key→value store, least-recently-used eviction.

    Entries remember when they were inserted. The caller decides on every
    read how old an entry may be (``get(key, ttl=...)``); an entry past its
    TTL reads as absent but stays in place until it is evicted or overwritten.
    """

    def __init__(self, capacity, clock=time.monotonic):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._clock = clock
        self._entries = OrderedDict()  # key -> (value, inserted_at)
        self._lock = threading.Lock()

    def get(self, key, ttl=None, default=None):
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            value, inserted_at = entry
            if ttl is not None and self._clock() - inserted_at > ttl:
                return default
            self._entries.move_to_end(key)
            return value

    def set(self, key, value):
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
            self._entries[key] = (value, self._clock())
            while len(self._entries) > self.capacity:
                self._entries.popitem(last=False)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __contains__(self, key):
        with self._lock:
            return key in self._entries

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def keys(self):
        """Keys in eviction order, oldest first."""
        with self._lock:
            return list(self._entries)
