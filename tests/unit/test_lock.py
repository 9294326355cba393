"""
Changeflow: Tests for the Distributed Lock

Test suite for ``changeflow.lock``. Covers:
- Acquisition, busy detection and timeouts
- Fencing token monotonicity
- Stale leases (renew / ensure_current / release)
- LeaseKeeper heartbeat and failure reporting
"""

from __future__ import annotations

import time

import pytest

from changeflow.core.errors import LockBusyError, LockExpiredError
from changeflow.lock.keeper import LeaseKeeper
from changeflow.lock.memory import InMemoryLockService


@pytest.fixture
def fake_lock(lock_config, clock) -> InMemoryLockService:
    return InMemoryLockService(lock_config, clock=clock, sleep=clock.sleep)


class TestAcquire:
    def test_acquire_free_lock(self, fake_lock, clock) -> None:
        lease = fake_lock.acquire("a")

        assert lease.owner == "a"
        assert lease.lock_key == "test-lock"
        assert lease.acquired_at == clock()
        assert (lease.expires_at - lease.acquired_at).total_seconds() == 30
        assert fake_lock.is_current(lease)

    def test_busy_lock_fails_fast(self, fake_lock) -> None:
        fake_lock.acquire("a")

        with pytest.raises(LockBusyError) as excinfo:
            fake_lock.acquire("b", timeout=0)

        assert excinfo.value.details["holder"] == "a"
        assert excinfo.value.details["attempts"] == 1

    def test_acquire_waits_until_timeout(self, fake_lock, clock) -> None:
        fake_lock.acquire("a")
        started = clock()

        with pytest.raises(LockBusyError):
            fake_lock.acquire("b", timeout=5)

        assert (clock() - started).total_seconds() >= 5

    def test_acquire_succeeds_once_lease_expires(self, fake_lock, clock) -> None:
        first = fake_lock.acquire("a")

        second = fake_lock.acquire("b", timeout=60)

        assert second.owner == "b"
        assert clock() >= first.expires_at
        assert not fake_lock.is_current(first)

    def test_reacquire_by_same_owner(self, fake_lock) -> None:
        first = fake_lock.acquire("a")
        second = fake_lock.acquire("a", timeout=0)

        assert second.fencing_token > first.fencing_token
        assert not fake_lock.is_current(first)
        assert fake_lock.is_current(second)

    def test_fencing_tokens_strictly_increase(self, fake_lock) -> None:
        tokens = []
        for owner in ("a", "b", "c"):
            lease = fake_lock.acquire(owner)
            tokens.append(lease.fencing_token)
            fake_lock.release(lease)

        assert tokens == sorted(tokens)
        assert len(set(tokens)) == 3


class TestStaleLease:
    def test_renew_extends_expiry(self, fake_lock, clock) -> None:
        lease = fake_lock.acquire("a")
        clock.advance(20)

        renewed = fake_lock.renew(lease)

        assert renewed.fencing_token == lease.fencing_token
        assert renewed.expires_at > lease.expires_at
        clock.advance(20)
        assert fake_lock.is_current(renewed)

    def test_expired_lease_cannot_renew(self, fake_lock, clock) -> None:
        lease = fake_lock.acquire("a")
        clock.advance(31)

        with pytest.raises(LockExpiredError):
            fake_lock.renew(lease)
        with pytest.raises(LockExpiredError):
            fake_lock.ensure_current(lease)

    def test_superseded_holder_is_fenced(self, fake_lock, clock) -> None:
        stale = fake_lock.acquire("a")
        clock.advance(31)
        fresh = fake_lock.acquire("b", timeout=0)

        assert fresh.fencing_token > stale.fencing_token
        with pytest.raises(LockExpiredError):
            fake_lock.ensure_current(stale)
        with pytest.raises(LockExpiredError):
            fake_lock.renew(stale)

        fake_lock.release(stale)
        assert fake_lock.is_current(fresh)
        assert fake_lock.current_lease().owner == "b"

    def test_release_frees_the_lock(self, fake_lock) -> None:
        lease = fake_lock.acquire("a")

        fake_lock.release(lease)

        assert not fake_lock.is_current(lease)
        assert fake_lock.acquire("b", timeout=0).owner == "b"

    def test_lease_to_dict(self, fake_lock) -> None:
        payload = fake_lock.acquire("a").to_dict()

        assert payload["owner"] == "a"
        assert payload["lock_key"] == "test-lock"
        assert payload["fencing_token"] == 1


class TestLeaseKeeper:
    def test_renew_now_updates_lease(self, fake_lock, clock) -> None:
        keeper = LeaseKeeper(fake_lock, fake_lock.acquire("a"))
        clock.advance(10)

        renewed = keeper.renew_now()

        assert keeper.lease is renewed
        keeper.check()

    def test_lost_lease_is_recorded(self, fake_lock, clock) -> None:
        keeper = LeaseKeeper(fake_lock, fake_lock.acquire("a"))
        clock.advance(31)
        fake_lock.acquire("b", timeout=0)

        with pytest.raises(LockExpiredError):
            keeper.renew_now()

        assert isinstance(keeper.failure, LockExpiredError)
        with pytest.raises(LockExpiredError):
            keeper.check()

    def test_heartbeat_thread_renews(self, lock_config) -> None:
        lock = InMemoryLockService(lock_config)
        lease = lock.acquire("a")

        with LeaseKeeper(lock, lease, interval_seconds=0.01) as keeper:
            deadline = time.monotonic() + 5
            while keeper.lease.expires_at == lease.expires_at and time.monotonic() < deadline:
                time.sleep(0.01)

        assert keeper.lease.expires_at > lease.expires_at
        assert keeper.failure is None

    def test_heartbeat_thread_stops_on_lost_lease(self, lock_config) -> None:
        lock = InMemoryLockService(lock_config)
        lease = lock.acquire("a")
        lock.release(lease)

        keeper = LeaseKeeper(lock, lease, interval_seconds=0.01).start()
        deadline = time.monotonic() + 5
        while keeper.failure is None and time.monotonic() < deadline:
            time.sleep(0.01)
        keeper.stop()

        with pytest.raises(LockExpiredError):
            keeper.check()
