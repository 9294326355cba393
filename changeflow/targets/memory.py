"""Changeflow – In-memory transactional target system.

A dictionary-backed target used by tests and by applications that keep
change-managed state in process. Each transaction works on a deep copy
of the state; the copy replaces the live state only after the work and
every deferred action (such as an in-memory audit append) succeeded.
"""

from __future__ import annotations

import copy
import threading
from typing import Any, Callable, Dict, Optional, TypeVar

from changeflow.core.logging import get_logger
from changeflow.targets.base import TargetSystemAdapter, TransactionContext


logger = get_logger(__name__)

T = TypeVar("T")


class InMemoryTargetSystem(TargetSystemAdapter):
    """Transactional adapter over a ``dict``.

    Transactions are serialised by a lock, so concurrent change units in a
    bounded-parallel stage commit one after another.
    """

    def __init__(self, name: str, initial: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(name)
        self._state: Dict[str, Any] = dict(initial or {})
        self._lock = threading.RLock()
        self.commits = 0
        self.rollbacks = 0

    def is_transactional(self) -> bool:
        return True

    def _handle(self, transaction: Optional[TransactionContext]) -> Any:
        if transaction is None:
            raise RuntimeError("InMemoryTargetSystem changes require a transaction")
        return transaction.handle

    def run_in_transaction(self, work: Callable[[TransactionContext], T]) -> T:
        with self._lock:
            staged = copy.deepcopy(self._state)
            tx = TransactionContext(target_system=self.name, handle=staged)
            try:
                result = work(tx)
                tx.flush_deferred()
            except Exception:
                self.rollbacks += 1
                logger.debug("Rolled back transaction on %s", self.name)
                raise
            self._state = staged
            self.commits += 1
            return result

    def snapshot(self) -> Dict[str, Any]:
        """Return a deep copy of the committed state."""

        with self._lock:
            return copy.deepcopy(self._state)
