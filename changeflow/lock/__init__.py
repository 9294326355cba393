"""Changeflow – distributed pipeline lock."""

from changeflow.lock.keeper import LeaseKeeper
from changeflow.lock.lease import Lease, LockService
from changeflow.lock.memory import InMemoryLockService
from changeflow.lock.postgres import PostgresLockService

__all__ = [
    "InMemoryLockService",
    "Lease",
    "LeaseKeeper",
    "LockService",
    "PostgresLockService",
]
