"""Changeflow – target system adapters and registry."""

from changeflow.targets.base import (
    ExecutionOutcome,
    TargetSystemAdapter,
    TargetSystemDescriptor,
    TransactionContext,
)
from changeflow.targets.default import DefaultTargetSystem
from changeflow.targets.memory import InMemoryTargetSystem
from changeflow.targets.postgres import PostgresTargetSystem
from changeflow.targets.registry import TargetSystemRegistry

__all__ = [
    "DefaultTargetSystem",
    "ExecutionOutcome",
    "InMemoryTargetSystem",
    "PostgresTargetSystem",
    "TargetSystemAdapter",
    "TargetSystemDescriptor",
    "TargetSystemRegistry",
    "TransactionContext",
]
