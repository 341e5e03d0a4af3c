"""
Short-lived session records (incognito analyses).

Held on the application runtime so tests get a fresh store per app and a
shared cache can replace the in-memory one without touching callers.
"""
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple


class SessionStore(ABC):
    @abstractmethod
    def put(self, session_id: str, record: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Return the record, or None when it is unknown or expired."""

    @abstractmethod
    def delete(self, session_id: str) -> bool:
        ...

    @abstractmethod
    def purge_expired(self) -> int:
        """Drop expired records and return how many were removed."""


class TTLSessionStore(SessionStore):
    """In-memory store that evicts records `ttl_seconds` after they were written."""

    def __init__(self, ttl_seconds: float = 3600, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._records: Dict[str, Tuple[float, Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def _expired(self, written_at: float) -> bool:
        return self._clock() - written_at >= self.ttl_seconds

    def put(self, session_id: str, record: Dict[str, Any]) -> None:
        with self._lock:
            self._records[session_id] = (self._clock(), record)

    def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._records.get(session_id)
            if entry is None:
                return None
            if self._expired(entry[0]):
                del self._records[session_id]
                return None
            return entry[1]

    def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._records.pop(session_id, None) is not None

    def purge_expired(self) -> int:
        with self._lock:
            expired = [sid for sid, (written_at, _) in self._records.items() if self._expired(written_at)]
            for sid in expired:
                del self._records[sid]
            return len(expired)

    def __len__(self) -> int:
        return len(self._records)
