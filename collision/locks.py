# collision/locks.py
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator, List


class KeyedLocks:
    """
    One RLock per key, created on demand and dropped when nobody holds it.

    Process-local only. Across workers the user row lock (ledger) and the
    tag's hot_tags row lock (matcher) take over.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, List] = {}  # key -> [RLock, holders]

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            slot = self._locks.get(key)
            if slot is None:
                slot = [threading.RLock(), 0]
                self._locks[key] = slot
            slot[1] += 1

        lock = slot[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                slot[1] -= 1
                if slot[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


_tag_locks = KeyedLocks()
_user_locks = KeyedLocks()


# Lock order is always tag -> user.

def tag_lock(normalized_tag: str):
    return _tag_locks.hold(normalized_tag)


def user_lock(user_id: int):
    return _user_locks.hold(int(user_id))
