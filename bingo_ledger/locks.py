"""
Per-Loan Lock Registry

Application-level mutex keyed by loan id: at most one mutating operation per
loan is in flight. Acquired before the storage transaction begins and
released after it commits or rolls back. A loan's lock is dropped from the
registry once nobody holds or waits on it.
"""

import threading
from contextlib import contextmanager
from typing import Dict

from .errors import Conflict


class _Entry:
    __slots__ = ('lock', 'users')

    def __init__(self):
        self.lock = threading.RLock()
        self.users = 0


class LoanLockRegistry:
    """Hands out one re-entrant lock per loan id"""

    def __init__(self, timeout_seconds: float = 10.0):
        self.timeout_seconds = timeout_seconds
        self._entries: Dict[str, _Entry] = {}
        self._registry_lock = threading.Lock()

    def _checkout(self, loan_id: str) -> _Entry:
        with self._registry_lock:
            entry = self._entries.get(loan_id)
            if entry is None:
                entry = _Entry()
                self._entries[loan_id] = entry
            entry.users += 1
            return entry

    def _checkin(self, loan_id: str, entry: _Entry) -> None:
        with self._registry_lock:
            entry.users -= 1
            if entry.users == 0:
                del self._entries[loan_id]

    @contextmanager
    def hold(self, loan_id: str):
        """
        Serialise work on one loan

        Raises:
            Conflict: If the lock is not obtained within the timeout
        """
        entry = self._checkout(loan_id)
        try:
            if not entry.lock.acquire(timeout=self.timeout_seconds):
                raise Conflict(f"Loan {loan_id} is busy; retry the request")
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(loan_id, entry)

    def __len__(self) -> int:
        return len(self._entries)
