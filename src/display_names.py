"""
Display name resolution for notification text.

A driver's name comes from their user profile when they have one, then
from the driver list of any imported race. Lookups are cached with a
TTL because a single sweep may render the same names many times.
"""

import threading
import time
from dataclasses import dataclass

from models import Event
from permissions import clean_steam_id
from storage.base import DocumentStore

UNKNOWN_DRIVER = "Unknown driver"


@dataclass
class _CachedName:
    name: str
    expires_at: float

    def is_expired(self) -> bool:
        return time.monotonic() > self.expires_at


class DisplayNameCache:
    """Thread-safe TTL cache of Steam id -> display name."""

    def __init__(self, store: DocumentStore, ttl_seconds: float = 300, max_entries: int = 1024):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._entries: dict[str, _CachedName] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def resolve(self, user_id: str, event: Event | None = None) -> str:
        """
        Resolve a display name.

        Args:
            user_id: Steam id, with or without the ``steam:`` prefix
            event: Event to search first when the user has no profile name
        """
        key = clean_steam_id(user_id)
        if not key:
            return UNKNOWN_DRIVER

        with self._lock:
            cached = self._entries.get(key)
            if cached and not cached.is_expired():
                self.hits += 1
                return cached.name
            self.misses += 1

        name = self._lookup(key, user_id, event)
        if name == UNKNOWN_DRIVER:
            # Not cached: the driver may appear in a race imported later
            return name

        with self._lock:
            if len(self._entries) >= self.max_entries:
                # Oldest insertion first
                self._entries.pop(next(iter(self._entries)))
            self._entries[key] = _CachedName(name, time.monotonic() + self.ttl_seconds)
        return name

    def _lookup(self, key: str, user_id: str, event: Event | None) -> str:
        for candidate in dict.fromkeys((user_id, key, f"steam:{key}")):
            user = self.store.get_user(candidate)
            if user and user.display_name:
                return user.display_name

        events = [event] if event else []
        events.extend(self.store.list_events())
        for race in events:
            for driver in race.drivers:
                if clean_steam_id(driver.steam_id) == key and driver.name:
                    return driver.name
        return UNKNOWN_DRIVER

    def invalidate(self, user_id: str) -> None:
        with self._lock:
            self._entries.pop(clean_steam_id(user_id), None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
