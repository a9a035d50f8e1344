"""Storage lock: time-windowed guard against repeated URL Metric submissions."""

from __future__ import annotations

import hashlib
import logging
from typing import MutableMapping

logger = logging.getLogger(__name__)

SESSION_STORAGE_LOCK_KEY = "umStorageLockTime"


class StorageLock:
    """Advisory lock: active while now < recorded time + ttl.

    Times are epoch milliseconds. A TTL of 0 disables locking. The backing
    mapping is whatever storage the side of the wire has at hand (session
    storage on the client, a shared dict or cache on the server).
    """

    def __init__(self, storage: MutableMapping[str, str], key: str, ttl_seconds: int):
        if ttl_seconds < 0:
            raise ValueError("Storage lock TTL cannot be negative")
        self.storage = storage
        self.key = key
        self.ttl_seconds = ttl_seconds

    def is_locked(self, current_time_ms: int) -> bool:
        if self.ttl_seconds == 0:
            return False
        raw = self.storage.get(self.key)
        if raw is None:
            return False
        try:
            lock_time = int(raw)
        except (TypeError, ValueError):
            logger.debug("Ignoring unparseable storage lock value %r", raw)
            return False
        return current_time_ms < lock_time + self.ttl_seconds * 1000

    def set_lock(self, current_time_ms: int) -> None:
        if self.ttl_seconds == 0:
            return
        self.storage[self.key] = str(int(current_time_ms))


class SessionStorageLock(StorageLock):
    """Client-side lock kept in per-tab session storage."""

    def __init__(self, session_storage: MutableMapping[str, str], ttl_seconds: int):
        super().__init__(session_storage, SESSION_STORAGE_LOCK_KEY, ttl_seconds)


class RequesterStorageLock(StorageLock):
    """Server-side lock keyed by the requester's address."""

    def __init__(self, storage: MutableMapping[str, str], requester_address: str, ttl_seconds: int):
        digest = hashlib.md5(requester_address.encode()).hexdigest()
        super().__init__(storage, f"url_metrics_storage_lock_{digest}", ttl_seconds)
