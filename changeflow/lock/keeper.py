"""Changeflow – Lease keeper.

A daemon thread that renews the pipeline lease on a fixed interval
while a run is in progress. Renewal failures are recorded, never raised
on the background thread; the executor calls :meth:`LeaseKeeper.check`
at each checkpoint between change units and aborts there.
"""

from __future__ import annotations

import threading
from typing import Optional

from changeflow.core.errors import ChangeflowError, LockExpiredError
from changeflow.core.logging import get_logger
from changeflow.lock.lease import Lease, LockService


logger = get_logger(__name__)


class LeaseKeeper:
    """Background heartbeat renewing a :class:`Lease`."""

    def __init__(
        self,
        service: LockService,
        lease: Lease,
        interval_seconds: Optional[float] = None,
    ) -> None:
        self.service = service
        self.interval_seconds = (
            interval_seconds
            if interval_seconds is not None
            else service.config.renew_interval_seconds
        )
        self._lease = lease
        self._failure: Optional[ChangeflowError] = None
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def lease(self) -> Lease:
        with self._state_lock:
            return self._lease

    @property
    def failure(self) -> Optional[ChangeflowError]:
        with self._state_lock:
            return self._failure

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> "LeaseKeeper":
        if self._thread is not None:
            return self
        self._thread = threading.Thread(
            target=self._heartbeat_loop,
            daemon=True,
            name=f"ChangeflowLeaseKeeper-{self._lease.lock_key}",
        )
        self._thread.start()
        logger.debug("Lease keeper started (interval=%.2fs)", self.interval_seconds)
        return self

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=5)
        self._thread = None
        logger.debug("Lease keeper stopped")

    def __enter__(self) -> "LeaseKeeper":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    def renew_now(self) -> Lease:
        """Renew synchronously, recording a failure before re-raising it."""

        current = self.lease
        try:
            renewed = self.service.renew(current)
        except LockExpiredError as exc:
            with self._state_lock:
                self._failure = exc
            logger.error("Lease on %s lost: %s", current.lock_key, exc)
            raise
        with self._state_lock:
            self._lease = renewed
        return renewed

    def _heartbeat_loop(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.renew_now()
            except LockExpiredError:
                return
            except Exception as exc:
                current = self.lease
                if current.is_expired(self.service.now()):
                    with self._state_lock:
                        self._failure = LockExpiredError(
                            f"Lease on {current.lock_key!r} expired while "
                            f"renewal kept failing: {exc}",
                            {"lock_key": current.lock_key},
                        )
                    logger.error("Lease on %s expired: %s", current.lock_key, exc)
                    return
                logger.warning("Lease renewal failed, will retry: %s", exc, exc_info=True)

    def check(self) -> None:
        """Raise the recorded renewal failure, if any.

        Raises:
            LockExpiredError: When the lease could not be kept alive.
        """

        failure = self.failure
        if failure is not None:
            raise failure
