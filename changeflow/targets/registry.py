"""Changeflow – Static target system registry.

The composition root registers one adapter per target-system identifier
before a run; there is no runtime plugin discovery.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Dict, Iterable, List

from changeflow.core.errors import TargetSystemNotFoundError
from changeflow.core.logging import get_logger
from changeflow.targets.base import TargetSystemAdapter, TargetSystemDescriptor

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from changeflow.pipeline.definition import PipelineDefinition


logger = get_logger(__name__)


class TargetSystemRegistry:
    """Mapping of target-system identifiers to adapters."""

    def __init__(self, adapters: Iterable[TargetSystemAdapter] = ()) -> None:
        self._adapters: Dict[str, TargetSystemAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: TargetSystemAdapter) -> None:
        """Register ``adapter`` under its name.

        Raises:
            ValueError: If another adapter already uses the same name.
        """

        if adapter.name in self._adapters:
            raise ValueError(f"Target system {adapter.name!r} is already registered")
        self._adapters[adapter.name] = adapter
        logger.info(
            "Registered target system %s (transactional=%s)",
            adapter.name,
            adapter.is_transactional(),
        )

    def get(self, name: str) -> TargetSystemAdapter:
        try:
            return self._adapters[name]
        except KeyError:
            raise TargetSystemNotFoundError(name) from None

    def describe(self, name: str) -> TargetSystemDescriptor:
        return self.get(name).descriptor

    def names(self) -> List[str]:
        return sorted(self._adapters)

    def validate(self, definition: "PipelineDefinition") -> None:
        """Check that every change unit references a registered target.

        Raises:
            TargetSystemNotFoundError: For the first unknown reference.
        """

        for unit in definition.iter_units():
            if unit.target_system not in self._adapters:
                raise TargetSystemNotFoundError(unit.target_system)

    def __contains__(self, name: object) -> bool:
        return name in self._adapters

    def __len__(self) -> int:
        return len(self._adapters)
