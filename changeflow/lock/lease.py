"""
Changeflow: Distributed Lock Contract

This module defines the lease model and the lock service contract used to
serialise pipeline runs across application instances.

Key responsibilities:
- Model a lease (owner, acquisition/expiry time, fencing token)
- Implement the blocking acquisition loop shared by all backends
- Verify that a lease is still the current one before side effects

External dependencies:
- None (backends live in :mod:`changeflow.lock.memory` and
  :mod:`changeflow.lock.postgres`)

Database tables accessed:
- None directly

Thread safety: Thread-safe provided backends make ``_try_acquire``,
``renew`` and ``release`` atomic.

Author: Changeflow Team
Created: 2026-10-19
Last Modified: 2026-10-19
Status: Development
Version: v0.1.0
"""

# ============================================================================
# Imports
# ============================================================================

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional

from changeflow.audit.models import utcnow
from changeflow.core.config import LockConfig
from changeflow.core.errors import LockBusyError, LockExpiredError
from changeflow.core.logging import get_logger

if TYPE_CHECKING:
    from changeflow.targets.base import TransactionContext

# ============================================================================
# Module Setup
# ============================================================================

logger = get_logger(__name__)


# ============================================================================
# Data Models
# ============================================================================


@dataclass(frozen=True)
class Lease:
    """Proof of pipeline lock ownership.

    Attributes:
        lock_key: Key of the lock the lease belongs to.
        owner: Identifier of the holding instance.
        acquired_at: When the lease was acquired.
        expires_at: When the lease lapses unless renewed.
        fencing_token: Strictly increasing across acquisitions of the
            same key; a holder whose token is no longer current is stale.
    """

    lock_key: str
    owner: str
    acquired_at: datetime
    expires_at: datetime
    fencing_token: int

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict:
        return {
            "lock_key": self.lock_key,
            "owner": self.owner,
            "acquired_at": self.acquired_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "fencing_token": self.fencing_token,
        }


# ============================================================================
# Lock service contract
# ============================================================================


class LockService(ABC):
    """Lease-based mutual exclusion over a single lock key.

    Subclasses implement the atomic primitives; this base class provides
    the retrying :meth:`acquire` and the staleness check
    :meth:`ensure_current`.
    """

    def __init__(
        self,
        config: Optional[LockConfig] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or LockConfig()
        self._clock = clock
        self._sleep = sleep

    @property
    def lock_key(self) -> str:
        return self.config.key

    @property
    def lease_duration(self) -> timedelta:
        return timedelta(seconds=self.config.lease_seconds)

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Backend primitives
    # ------------------------------------------------------------------

    @abstractmethod
    def _try_acquire(self, owner: str) -> Optional[Lease]:
        """Take the lock if it is free, expired, or already held by ``owner``.

        Must be atomic. Returns the new lease with an incremented fencing
        token, or ``None`` when another owner holds an unexpired lease.
        """

    @abstractmethod
    def renew(self, lease: Lease) -> Lease:
        """Extend ``lease`` by the configured lease duration.

        Raises:
            LockExpiredError: If the lease expired or is no longer current.
        """

    @abstractmethod
    def release(self, lease: Lease) -> None:
        """Give up ``lease``. A no-op when the lease is no longer current."""

    @abstractmethod
    def current_lease(self) -> Optional[Lease]:
        """Return the most recent lease for the key, expired or not."""

    @abstractmethod
    def is_current(self, lease: Lease, transaction: Optional["TransactionContext"] = None) -> bool:
        """Return True if ``lease`` is unexpired and carries the latest token.

        Backends sharing a database with ``transaction`` run the check on
        the transaction's own connection.
        """

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def acquire(self, owner: str, timeout: Optional[float] = None) -> Lease:
        """Acquire the lock, retrying until ``timeout`` seconds elapse.

        Args:
            owner: Identifier of the acquiring instance.
            timeout: Seconds to keep retrying; ``None`` uses the configured
                acquisition timeout and ``0`` fails fast.

        Raises:
            LockBusyError: If another owner still holds the lease when the
                timeout elapses.
        """

        if timeout is None:
            timeout = self.config.acquire_timeout_seconds
        deadline = self.now() + timedelta(seconds=max(0.0, timeout))
        attempts = 0

        while True:
            attempts += 1
            lease = self._try_acquire(owner)
            if lease is not None:
                logger.info(
                    "Acquired lock %s for %s (token=%d, expires=%s)",
                    lease.lock_key,
                    owner,
                    lease.fencing_token,
                    lease.expires_at.isoformat(),
                )
                return lease

            remaining = (deadline - self.now()).total_seconds()
            if remaining <= 0:
                holder = self.current_lease()
                details = {"lock_key": self.lock_key, "attempts": attempts}
                if holder is not None:
                    details["holder"] = holder.owner
                    details["holder_expires_at"] = holder.expires_at.isoformat()
                logger.warning(
                    "Lock %s busy after %d attempt(s), held by %s",
                    self.lock_key,
                    attempts,
                    details.get("holder"),
                )
                raise LockBusyError(
                    f"Lock {self.lock_key!r} is held by another instance",
                    details,
                )

            logger.debug(
                "Lock %s busy, retrying in %.2fs", self.lock_key, self.config.retry_interval_seconds
            )
            self._sleep(min(self.config.retry_interval_seconds, remaining))

    def ensure_current(
        self, lease: Lease, transaction: Optional["TransactionContext"] = None
    ) -> None:
        """Raise unless ``lease`` is still the current, unexpired lease.

        Raises:
            LockExpiredError: If the lease lapsed or a newer fencing token
                was issued.
        """

        if not self.is_current(lease, transaction):
            raise LockExpiredError(
                f"Lease on {lease.lock_key!r} (token={lease.fencing_token}) "
                "is no longer current",
                {"lock_key": lease.lock_key, "fencing_token": lease.fencing_token},
            )
