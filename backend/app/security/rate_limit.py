# backend/app/security/rate_limit.py
"""
Sliding-window limiter for failed MFA attempts.

Only failures are recorded. A key is blocked while it has at least
``max_attempts`` failures inside ``[now - window_seconds, now]``; older
entries no longer count and are pruned whenever the key is touched.

Storage is injected:
- InMemoryAttemptStore: process-local fallback, lost on restart
- SnapshotAttemptStore: request-scoped copy of persisted attempts; the
  caller writes ``added`` back to its database afterwards
"""
import math
import threading
from collections import defaultdict
from contextlib import contextmanager, nullcontext
from datetime import datetime, timedelta
from typing import ContextManager, Dict, Iterable, Iterator, List, Optional, Protocol

from backend.app.core.clock import ensure_aware


DEFAULT_WINDOW_SECONDS = 900
DEFAULT_MAX_ATTEMPTS = 5


class AttemptStore(Protocol):
    def lock(self, key: str) -> ContextManager:
        ...

    def load(self, key: str) -> List[datetime]:
        ...

    def append(self, key: str, attempted_at: datetime) -> None:
        ...

    def prune(self, key: str, cutoff: datetime) -> None:
        ...


class _KeyLock:
    def __init__(self):
        self.rlock = threading.RLock()
        # Threads holding or waiting on ``rlock``, reentrant holds included
        self.holders = 0


class InMemoryAttemptStore:
    """
    Attempt log kept in a dict, one reentrant lock per key.

    A key's lock exists only while someone holds or waits on it.
    """

    def __init__(self):
        self._attempts: Dict[str, List[datetime]] = defaultdict(list)
        self._locks: Dict[str, _KeyLock] = {}
        self._guard = threading.Lock()

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _KeyLock()
            entry.holders += 1
        try:
            with entry.rlock:
                yield
        finally:
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._locks[key]

    def load(self, key: str) -> List[datetime]:
        return list(self._attempts.get(key, ()))

    def append(self, key: str, attempted_at: datetime) -> None:
        self._attempts[key].append(ensure_aware(attempted_at))

    def prune(self, key: str, cutoff: datetime) -> None:
        attempts = self._attempts.get(key)
        if attempts is None:
            return
        kept = [t for t in attempts if t >= cutoff]
        if kept:
            self._attempts[key] = kept
        else:
            del self._attempts[key]

    def clear(self, key: Optional[str] = None) -> None:
        if key is None:
            self._attempts.clear()
        else:
            self._attempts.pop(key, None)


class SnapshotAttemptStore:
    """
    Attempts loaded from persistent storage for the duration of one request.

    Locking is the caller's job (it holds the per-identity lock across
    load, evaluate and write-back), so ``lock`` is a no-op here.
    """

    def __init__(self, attempts: Optional[Dict[str, Iterable[datetime]]] = None):
        self._attempts: Dict[str, List[datetime]] = {
            key: [ensure_aware(t) for t in values]
            for key, values in (attempts or {}).items()
        }
        self.added: Dict[str, List[datetime]] = defaultdict(list)

    def lock(self, key: str) -> ContextManager:
        return nullcontext()

    def load(self, key: str) -> List[datetime]:
        return list(self._attempts.get(key, ()))

    def append(self, key: str, attempted_at: datetime) -> None:
        attempted_at = ensure_aware(attempted_at)
        self._attempts.setdefault(key, []).append(attempted_at)
        self.added[key].append(attempted_at)

    def prune(self, key: str, cutoff: datetime) -> None:
        if key in self._attempts:
            self._attempts[key] = [t for t in self._attempts[key] if t >= cutoff]


class LoginRateLimiter:
    def __init__(
        self,
        store: Optional[AttemptStore] = None,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self.store = store if store is not None else InMemoryAttemptStore()
        self.window = timedelta(seconds=window_seconds)
        self.max_attempts = max_attempts

    def hold(self, key: str) -> ContextManager:
        """
        Serialize a check-then-record sequence for ``key``.

        Store locks are reentrant, so the limiter's own methods may be
        called while this is held.
        """
        return self.store.lock(key)

    def _recent(self, key: str, now: datetime) -> List[datetime]:
        now = ensure_aware(now)
        cutoff = now - self.window
        with self.store.lock(key):
            self.store.prune(key, cutoff)
            attempts = self.store.load(key)
        return sorted(t for t in attempts if cutoff <= t <= now)

    def is_blocked(self, key: str, now: datetime) -> bool:
        return len(self._recent(key, now)) >= self.max_attempts

    def record_attempt(self, key: str, now: datetime) -> None:
        """Record one failed attempt for ``key``."""
        now = ensure_aware(now)
        with self.store.lock(key):
            self.store.prune(key, now - self.window)
            self.store.append(key, now)

    def remaining_attempts(self, key: str, now: datetime) -> int:
        return max(0, self.max_attempts - len(self._recent(key, now)))

    def retry_after(self, key: str, now: datetime) -> int:
        """
        Seconds until ``key`` drops below the threshold (0 when not blocked).

        Boundaries are inclusive, so an attempt made exactly ``window``
        ago still counts; the result is always at least 1 while blocked.
        """
        now = ensure_aware(now)
        recent = self._recent(key, now)
        if len(recent) < self.max_attempts:
            return 0

        # This attempt must age out before the count falls below the limit
        oldest_blocking = recent[len(recent) - self.max_attempts]
        seconds = (oldest_blocking + self.window - now).total_seconds()
        return max(1, math.floor(seconds) + 1)
