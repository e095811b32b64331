"""Per-cycle cache that collapses concurrent pulls of the same image."""

import threading
from concurrent.futures import Future, wait
from typing import Callable, Dict, Optional, Tuple

from errors import CycleCancelled
from models import ImageRecord

# How often a waiter re-checks its own stop event while the pull is running.
WAIT_POLL_SECONDS = 0.1


class PullCache:
    """Run at most one pull per image reference and share the outcome.

    The first caller for a reference performs the fetch outside the lock so
    pulls of other references are not blocked.  Everyone else waits on the
    same one-shot future.  Failures are cached along with successes, so a
    broken pull is not retried within the cycle.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[str, Future] = {}

    def get_or_fetch(self, key: str, fetch: Callable[[], ImageRecord],
                     cancel: Optional[threading.Event] = None) -> Tuple[ImageRecord, bool]:
        """Return ``(image, cached_hit)`` for ``key``.

        Raises whatever ``fetch`` raised, or ``CycleCancelled`` if ``cancel``
        is set while waiting on another caller's fetch.  A cancelled waiter
        leaves the in-flight fetch untouched.
        """
        with self._lock:
            entry = self._entries.get(key)
            owner = entry is None
            if owner:
                entry = Future()
                self._entries[key] = entry

        if owner:
            try:
                result = fetch()
            except BaseException as e:
                entry.set_exception(e)
                raise
            entry.set_result(result)
            return result, False

        while not entry.done():
            if cancel is not None and cancel.is_set():
                raise CycleCancelled(f"cancelled while waiting for pull of {key}")
            wait([entry], timeout=WAIT_POLL_SECONDS)
        return entry.result(), True

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
