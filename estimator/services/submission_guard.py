"""Submission guard - one in-flight submission per draft key."""
import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Set

logger = logging.getLogger(__name__)


class SubmissionGuard:
    """
    Registry of in-flight submission keys.

    Prevents double-submit races of the same draft inside one process.
    It offers no cross-process or cross-device protection.

    Usage:
        if guard.try_admit(key):
            try:
                ...
            finally:
                guard.release(key)
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._in_flight: Set[str] = set()

    def try_admit(self, key: str) -> bool:
        """Register `key`; False if a submission with that key is already running."""
        with self._lock:
            if key in self._in_flight:
                logger.info(f"[GUARD] Submission {key} already in flight")
                return False
            self._in_flight.add(key)
            return True

    def release(self, key: str) -> None:
        """Unregister `key` (no-op if it was not registered)."""
        with self._lock:
            self._in_flight.discard(key)

    @contextmanager
    def admitted(self, key: str) -> Iterator[bool]:
        """Context manager yielding whether `key` was admitted; releases on exit."""
        admitted = self.try_admit(key)
        try:
            yield admitted
        finally:
            if admitted:
                self.release(key)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._in_flight

    def __len__(self) -> int:
        with self._lock:
            return len(self._in_flight)


# Process-wide instance shared by the web layer
submission_guard = SubmissionGuard()
