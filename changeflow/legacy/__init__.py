"""Changeflow – legacy audit history import."""

from changeflow.legacy.importer import ImportResult, LegacyImporter
from changeflow.legacy.models import LegacyEntryType, LegacyRecord, LegacyState
from changeflow.legacy.sources import InMemoryLegacySource, LegacySource, PostgresLegacySource

__all__ = [
    "ImportResult",
    "InMemoryLegacySource",
    "LegacyEntryType",
    "LegacyImporter",
    "LegacyRecord",
    "LegacySource",
    "LegacyState",
    "PostgresLegacySource",
]
