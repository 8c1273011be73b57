from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterator
from contextlib import contextmanager
import threading


class UserLockRegistry:
    """One mutex per user id.

    Interactive punches and scheduler jobs both take the user's lock around
    their read-validate-write sequence, so the two never interleave for the
    same user while different users proceed in parallel.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = defaultdict(threading.Lock)

    def _lock_for(self, user_id: int) -> threading.Lock:
        with self._guard:
            return self._locks[user_id]

    @contextmanager
    def hold(self, user_id: int) -> Iterator[None]:
        lock = self._lock_for(user_id)
        with lock:
            yield

    def is_locked(self, user_id: int) -> bool:
        return self._lock_for(user_id).locked()
