"""Changeflow – Non-transactional target system adapter.

:class:`DefaultTargetSystem` passes a user-supplied resource object (an
HTTP client, a schema registry client, a plain dict...) to each change
callable. It offers no transaction, so the executor brackets every
change with PENDING and EXECUTED/FAILED audit entries.
"""

from __future__ import annotations

from typing import Any, Optional

from changeflow.targets.base import TargetSystemAdapter, TransactionContext


class DefaultTargetSystem(TargetSystemAdapter):
    """Adapter for backends without transactional guarantees."""

    def __init__(self, name: str, resource: Any = None) -> None:
        super().__init__(name)
        self.resource = resource

    def is_transactional(self) -> bool:
        return False

    def _handle(self, transaction: Optional[TransactionContext]) -> Any:
        return self.resource
