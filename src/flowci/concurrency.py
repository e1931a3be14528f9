# concurrency.py
from __future__ import annotations

import threading
from collections import deque
from typing import Deque, Dict, List, Optional, Tuple

from .model import JobInstance


class ConcurrencyLockTable:
    """
    Concurrency group -> holder mapping.

    This is the only mutual-exclusion primitive of a run. Every
    acquire/release/cancel goes through one lock so the holder of a group
    can never be observed half-updated.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._holders: Dict[str, JobInstance] = {}
        self._waiting: Dict[str, Deque[JobInstance]] = {}

    def acquire(
        self,
        group: str,
        instance: JobInstance,
        *,
        cancel_in_progress: bool = False,
    ) -> Tuple[bool, Optional[JobInstance]]:
        """
        Try to take `group` for `instance`.

        Returns (acquired, displaced):
          - (True, None)     the group was free (or already ours)
          - (True, holder)   cancel-in-progress: `holder` lost the group and
                             must be cancelled by the caller
          - (False, None)    queued behind the current holder
        """
        with self._lock:
            holder = self._holders.get(group)
            if holder is None or holder is instance:
                self._holders[group] = instance
                return True, None

            if cancel_in_progress:
                self._holders[group] = instance
                return True, holder

            waiting = self._waiting.setdefault(group, deque())
            if instance not in waiting:
                waiting.append(instance)
            return False, None

    def release(self, group: str, instance: JobInstance) -> Optional[JobInstance]:
        """
        Drop `instance` from `group` (as holder or waiter).
        Returns the waiter that now holds the group, if any.
        """
        with self._lock:
            waiting = self._waiting.get(group)
            if waiting and instance in waiting:
                waiting.remove(instance)

            if self._holders.get(group) is not instance:
                return None

            del self._holders[group]
            if waiting:
                nxt = waiting.popleft()
                self._holders[group] = nxt
                return nxt
            return None

    def holder(self, group: str) -> Optional[JobInstance]:
        with self._lock:
            return self._holders.get(group)

    def waiting(self, group: str) -> List[JobInstance]:
        with self._lock:
            return list(self._waiting.get(group, ()))

    def release_all(self) -> List[str]:
        """Drop every holder and waiter (run teardown). Returns the groups that were held."""
        with self._lock:
            groups = sorted(self._holders)
            self._holders.clear()
            self._waiting.clear()
            return groups
