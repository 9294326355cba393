"""Changeflow – In-memory lock service.

Every executor sharing one :class:`InMemoryLockService` instance competes
for the same lock, which makes it suitable for tests and for several
pipelines embedded in one process.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from typing import TYPE_CHECKING, Optional

from changeflow.core.errors import LockExpiredError
from changeflow.core.logging import get_logger
from changeflow.lock.lease import Lease, LockService

if TYPE_CHECKING:
    from changeflow.targets.base import TransactionContext


logger = get_logger(__name__)


class InMemoryLockService(LockService):
    """Process-local lock with lease expiry and fencing tokens."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._mutex = threading.Lock()
        self._lease: Optional[Lease] = None
        self._last_token = 0

    def _try_acquire(self, owner: str) -> Optional[Lease]:
        now = self.now()
        with self._mutex:
            held = self._lease
            if held is not None and not held.is_expired(now) and held.owner != owner:
                return None
            self._last_token += 1
            self._lease = Lease(
                lock_key=self.lock_key,
                owner=owner,
                acquired_at=now,
                expires_at=now + self.lease_duration,
                fencing_token=self._last_token,
            )
            return self._lease

    def renew(self, lease: Lease) -> Lease:
        now = self.now()
        with self._mutex:
            if not self._matches(lease) or self._lease.is_expired(now):
                raise LockExpiredError(
                    f"Cannot renew lease on {lease.lock_key!r} "
                    f"(token={lease.fencing_token}): lease lost",
                    {"lock_key": lease.lock_key, "fencing_token": lease.fencing_token},
                )
            self._lease = replace(self._lease, expires_at=now + self.lease_duration)
            renewed = self._lease
        logger.debug("Renewed lock %s until %s", lease.lock_key, renewed.expires_at)
        return renewed

    def release(self, lease: Lease) -> None:
        now = self.now()
        with self._mutex:
            if not self._matches(lease):
                logger.warning(
                    "Release of lock %s ignored: token %d is no longer current",
                    lease.lock_key,
                    lease.fencing_token,
                )
                return
            # Expire the lease but keep the token counter.
            self._lease = replace(self._lease, expires_at=now)
        logger.info("Released lock %s (token=%d)", lease.lock_key, lease.fencing_token)

    def current_lease(self) -> Optional[Lease]:
        with self._mutex:
            return self._lease

    def is_current(self, lease: Lease, transaction: Optional["TransactionContext"] = None) -> bool:
        now = self.now()
        with self._mutex:
            return self._matches(lease) and not self._lease.is_expired(now)

    def _matches(self, lease: Lease) -> bool:
        held = self._lease
        return (
            held is not None
            and held.owner == lease.owner
            and held.fencing_token == lease.fencing_token
        )
