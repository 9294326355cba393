"""Changeflow – audit trail storage, reconciliation and operator fixes."""

from changeflow.audit.models import AuditEntry, ChangeState
from changeflow.audit.store import AuditStore, InMemoryAuditStore

__all__ = ["AuditEntry", "AuditStore", "ChangeState", "InMemoryAuditStore"]
