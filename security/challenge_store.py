import hmac
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from utils import clock


@dataclass
class _Challenge:
    value: str
    expires_at: datetime
    attempts: int = 0


class ChallengeStore:
    """Interface for short-lived one-time codes keyed by account id."""

    def put(self, key, value: str, ttl_seconds: int) -> None:
        raise NotImplementedError

    def take_if_match(self, key, value: str) -> bool:
        raise NotImplementedError

    def discard(self, key) -> None:
        raise NotImplementedError

    def sweep_expired(self) -> int:
        raise NotImplementedError


class InMemoryChallengeStore(ChallengeStore):
    """
    Process-local store. Entries are consumed on the first match and dropped
    after ``max_attempts`` wrong guesses or once expired. Multi-process
    deployments must route a challenge and its verification to the same
    process, or plug in a shared store implementing the same interface.
    """

    def __init__(self, max_attempts: int = 5):
        self.max_attempts = max_attempts
        self._items: Dict[str, _Challenge] = {}
        self._lock = threading.Lock()

    def put(self, key, value: str, ttl_seconds: int) -> None:
        expires_at = clock.utcnow() + timedelta(seconds=ttl_seconds)
        with self._lock:
            self._items[str(key)] = _Challenge(value=value, expires_at=expires_at)

    def take_if_match(self, key, value: str) -> bool:
        key = str(key)
        now = clock.utcnow()
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return False
            if item.expires_at <= now:
                del self._items[key]
                return False
            if hmac.compare_digest(item.value, str(value or "")):
                del self._items[key]
                return True
            item.attempts += 1
            if item.attempts >= self.max_attempts:
                del self._items[key]
            return False

    def peek(self, key) -> Optional[datetime]:
        """Expiry of the outstanding challenge, if any."""
        with self._lock:
            item = self._items.get(str(key))
            return item.expires_at if item else None

    def discard(self, key) -> None:
        with self._lock:
            self._items.pop(str(key), None)

    def sweep_expired(self) -> int:
        now = clock.utcnow()
        with self._lock:
            expired = [k for k, v in self._items.items() if v.expires_at <= now]
            for k in expired:
                del self._items[k]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
