"""
Tests for the failed-attempt limiter.

Covers:
- Blocking at the threshold
- Rolling window boundaries
- retry_after and remaining_attempts
- Storage backends and concurrent recording
"""
import threading
from datetime import datetime, timedelta, timezone

import pytest

from backend.app.security.rate_limit import (
    InMemoryAttemptStore,
    LoginRateLimiter,
    SnapshotAttemptStore,
)

T0 = datetime(2024, 3, 6, 12, 0, tzinfo=timezone.utc)


def minutes(m, seconds=0):
    return T0 + timedelta(minutes=m, seconds=seconds)


@pytest.fixture
def limiter():
    return LoginRateLimiter()


# ============================================
# Threshold Tests
# ============================================

class TestThreshold:
    """Test blocking after max_attempts failures."""

    def test_fresh_key_is_not_blocked(self, limiter):
        assert not limiter.is_blocked("u2", T0)
        assert limiter.remaining_attempts("u2", T0) == 5
        assert limiter.retry_after("u2", T0) == 0

    def test_four_failures_do_not_block(self, limiter):
        for m in range(4):
            limiter.record_attempt("u2", minutes(m))

        assert not limiter.is_blocked("u2", minutes(4))
        assert limiter.remaining_attempts("u2", minutes(4)) == 1

    def test_five_failures_block(self, limiter):
        for m in range(5):
            limiter.record_attempt("u2", minutes(m * 2))

        assert limiter.is_blocked("u2", minutes(10))
        assert limiter.remaining_attempts("u2", minutes(10)) == 0

    def test_keys_are_independent(self, limiter):
        for m in range(5):
            limiter.record_attempt("u2", minutes(m))

        assert limiter.is_blocked("u2", minutes(5))
        assert not limiter.is_blocked("u3", minutes(5))

    def test_custom_limits(self):
        limiter = LoginRateLimiter(window_seconds=60, max_attempts=2)
        limiter.record_attempt("u2", T0)
        limiter.record_attempt("u2", T0 + timedelta(seconds=10))

        assert limiter.is_blocked("u2", T0 + timedelta(seconds=30))
        assert not limiter.is_blocked("u2", T0 + timedelta(seconds=61))


# ============================================
# Window Tests
# ============================================

class TestRollingWindow:
    """Test that old failures stop counting."""

    @pytest.fixture
    def spaced(self, limiter):
        # Failures at 0, 3, 6, 9 and 12 minutes
        for m in (0, 3, 6, 9, 12):
            limiter.record_attempt("u2", minutes(m))
        return limiter

    def test_blocked_at_window_edge(self, spaced):
        # The 0-minute failure is exactly 15 minutes old and still counts
        assert spaced.is_blocked("u2", minutes(15))

    def test_unblocked_once_oldest_ages_out(self, spaced):
        assert not spaced.is_blocked("u2", minutes(15, seconds=1))
        assert spaced.remaining_attempts("u2", minutes(15, seconds=1)) == 1

    def test_unblocked_after_sixteen_minutes(self, spaced):
        assert not spaced.is_blocked("u2", minutes(16))

    def test_old_attempts_are_pruned(self):
        store = InMemoryAttemptStore()
        limiter = LoginRateLimiter(store)
        limiter.record_attempt("u2", minutes(0))
        limiter.record_attempt("u2", minutes(20))

        assert store.load("u2") == [minutes(20)]

    def test_key_disappears_when_everything_expires(self):
        store = InMemoryAttemptStore()
        limiter = LoginRateLimiter(store)
        limiter.record_attempt("u2", minutes(0))

        limiter.is_blocked("u2", minutes(30))
        assert store.load("u2") == []
        assert store._locks == {}

    def test_locks_do_not_accumulate_per_key(self):
        store = InMemoryAttemptStore()
        limiter = LoginRateLimiter(store)
        for i in range(1000):
            limiter.record_attempt(f"user-{i}", T0)

        for i in range(1000):
            assert not limiter.is_blocked(f"user-{i}", minutes(60))

        assert len(store._locks) == 0


# ============================================
# retry_after Tests
# ============================================

class TestRetryAfter:

    def test_retry_after_counts_down_from_oldest_attempt(self, limiter):
        for m in range(5):
            limiter.record_attempt("u2", minutes(m))

        # Oldest attempt leaves the window at 15:00, inclusive boundary adds a second
        assert limiter.retry_after("u2", minutes(4)) == 661

    def test_retry_after_is_at_least_one(self, limiter):
        for m in range(5):
            limiter.record_attempt("u2", minutes(m))

        assert limiter.retry_after("u2", minutes(15)) == 1

    def test_retry_after_with_more_than_max_failures(self, limiter):
        # Six failures: the second-oldest decides when the key unblocks
        for m in range(6):
            limiter.record_attempt("u2", minutes(m))

        assert limiter.retry_after("u2", minutes(5)) == 661

    def test_unblocked_after_retry_after_elapses(self, limiter):
        for m in range(5):
            limiter.record_attempt("u2", minutes(m))

        wait = limiter.retry_after("u2", minutes(4))
        assert limiter.is_blocked("u2", minutes(4) + timedelta(seconds=wait - 1))
        assert not limiter.is_blocked("u2", minutes(4) + timedelta(seconds=wait))


# ============================================
# Storage Tests
# ============================================

class TestStores:

    def test_memory_store_clear(self):
        store = InMemoryAttemptStore()
        limiter = LoginRateLimiter(store)
        for m in range(5):
            limiter.record_attempt("u2", minutes(m))
        limiter.record_attempt("u3", minutes(0))

        store.clear("u2")
        assert not limiter.is_blocked("u2", minutes(5))
        assert store.load("u3") == [minutes(0)]

        store.clear()
        assert store.load("u3") == []

    def test_hold_is_reentrant(self):
        store = InMemoryAttemptStore()
        limiter = LoginRateLimiter(store)

        with limiter.hold("u2"):
            limiter.record_attempt("u2", T0)
            assert limiter.remaining_attempts("u2", T0) == 4
            assert "u2" in store._locks

        assert store._locks == {}

    def test_snapshot_store_tracks_new_attempts(self):
        store = SnapshotAttemptStore({"u2": [minutes(0), minutes(1), minutes(2), minutes(3)]})
        limiter = LoginRateLimiter(store)

        assert not limiter.is_blocked("u2", minutes(4))
        limiter.record_attempt("u2", minutes(4))

        assert limiter.is_blocked("u2", minutes(4))
        assert store.added == {"u2": [minutes(4)]}

    def test_snapshot_store_accepts_naive_timestamps(self):
        store = SnapshotAttemptStore({"u2": [datetime(2024, 3, 6, 12, 0)]})
        assert store.load("u2") == [T0]

    def test_concurrent_failures_are_all_counted(self):
        store = InMemoryAttemptStore()
        limiter = LoginRateLimiter(store, max_attempts=1000)
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            for _ in range(50):
                limiter.record_attempt("u2", T0)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(store.load("u2")) == 400
        assert limiter.remaining_attempts("u2", T0) == 600
