import logging
import os
import threading

from sti_parser import StiParser

logger = logging.getLogger(__name__)

PARSED_FILE_CAPACITY = 50
DIRECTORY_SCAN_CAPACITY = 200


def cache_key(path):
    return os.path.normcase(os.path.abspath(os.fspath(path)))


class BoundedCache:
    """
    Path-keyed map with a fixed capacity. Inserting into a full map clears the
    whole map first (no LRU bookkeeping). The lock only guards map access.
    """

    def __init__(self, capacity, name="cache"):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.name = name
        self._entries = {}
        self._lock = threading.Lock()

    def get(self, path):
        with self._lock:
            return self._entries.get(cache_key(path))

    def put(self, path, value):
        key = cache_key(path)
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.capacity:
                logger.info("[Cache] %s full (%d entries), clearing", self.name, len(self._entries))
                self._entries.clear()
            self._entries[key] = value

    def invalidate(self, path):
        with self._lock:
            return self._entries.pop(cache_key(path), None) is not None

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __contains__(self, path):
        with self._lock:
            return cache_key(path) in self._entries

    def __len__(self):
        with self._lock:
            return len(self._entries)


class StiCache(BoundedCache):
    """Shared parsed StiFile instances. Callers must clone() before editing."""

    def __init__(self, capacity=PARSED_FILE_CAPACITY):
        super().__init__(capacity, name="sti")

    def lookup_or_parse(self, path):
        sti = self.get(path)
        if sti is not None:
            return sti
        # parse outside the lock; a concurrent caller may parse the same file too
        sti = StiParser.read_file(path)
        self.put(path, sti)
        return sti


class DirectoryScanCache(BoundedCache):
    """directory path -> whether it holds STI files"""

    def __init__(self, capacity=DIRECTORY_SCAN_CAPACITY):
        super().__init__(capacity, name="directory scan")

    def lookup_or_scan(self, path, scanner):
        found = self.get(path)
        if found is not None:
            return found
        found = bool(scanner(path))
        self.put(path, found)
        return found
