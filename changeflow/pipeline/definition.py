"""
Changeflow: Pipeline Definition

This module defines the in-memory model of a pipeline definition (stages
of change units) and loads it from the versioned YAML/JSON artifact
produced by the build step.

Key responsibilities:
- Define :class:`ChangeUnit`, :class:`Stage` and :class:`PipelineDefinition`
- Validate structural constraints (unique ids, unique orders per stage,
  positive concurrency limits)
- Parse artifacts with pydantic models and resolve ``"module:function"``
  references to callables

External dependencies:
- pydantic: Artifact schema validation
- pyyaml: YAML artifact parsing

Database tables accessed:
- None

Thread safety: Thread-safe (definitions are immutable once loaded)

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

import hashlib
import importlib
import json
from dataclasses import dataclass, field, replace
from enum import Enum
from operator import attrgetter
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from changeflow.core.errors import PipelineDefinitionError
from changeflow.core.logging import get_logger
from changeflow.core.types import MetadataDict, ReadonlyConfig

# ============================================================================
# Module Setup
# ============================================================================

logger = get_logger(__name__)

ChangeCallable = Callable[[Any], Any]


# ============================================================================
# Enums
# ============================================================================


class ExecutionMode(str, Enum):
    """How the change units of a stage are scheduled."""

    SEQUENTIAL = "SEQUENTIAL"
    BOUNDED_PARALLEL = "BOUNDED_PARALLEL"


class RecoveryStrategy(str, Enum):
    """What to do with a non-transactional change whose last attempt is unresolved.

    ``MANUAL_INTERVENTION`` stops the run until an operator records the
    real outcome. ``ALWAYS_RETRY`` re-executes the change, which is only
    safe for idempotent changes.
    """

    MANUAL_INTERVENTION = "MANUAL_INTERVENTION"
    ALWAYS_RETRY = "ALWAYS_RETRY"


# ============================================================================
# Helpers
# ============================================================================


def compute_checksum(*parts: Any) -> str:
    """Return a stable SHA-256 hex digest of ``parts``.

    Parts are serialised as canonical JSON; values JSON cannot represent
    are converted with ``str``.
    """

    payload = json.dumps(list(parts), sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def callable_reference(fn: Any) -> Optional[str]:
    """Return ``"module:qualname"`` for ``fn``, or ``None`` when absent."""

    if fn is None:
        return None
    module = getattr(fn, "__module__", None) or type(fn).__module__
    name = getattr(fn, "__qualname__", None) or type(fn).__qualname__
    return f"{module}:{name}"


def resolve_callable(reference: str) -> ChangeCallable:
    """Resolve a ``"package.module:attribute[.attribute]"`` reference.

    Raises:
        PipelineDefinitionError: If the reference is malformed, cannot be
            imported, or does not name a callable.
    """

    module_name, sep, attr_path = reference.partition(":")
    if not sep or not module_name or not attr_path:
        raise PipelineDefinitionError(
            f"Invalid callable reference {reference!r}; expected 'module:function'",
            {"reference": reference},
        )

    try:
        module = importlib.import_module(module_name)
        target = attrgetter(attr_path)(module)
    except (ImportError, AttributeError) as exc:
        raise PipelineDefinitionError(
            f"Cannot resolve callable {reference!r}: {exc}",
            {"reference": reference},
        ) from exc

    if not callable(target):
        raise PipelineDefinitionError(
            f"Reference {reference!r} does not name a callable",
            {"reference": reference},
        )
    return target


# ============================================================================
# Definition model
# ============================================================================


@dataclass(frozen=True)
class ChangeUnit:
    """Smallest auditable change applied to a target system.

    Attributes:
        change_id: Identifier unique across the whole definition.
        order: Position within the stage; unique per stage.
        target_system: Identifier of the registered target system.
        transactional: Whether the change should run inside a backend
            transaction together with its audit write. Only honoured when
            the target system is transactional.
        checksum: Hash of the change's logic/parameters used for drift
            detection. Derived from the id, the callable references and
            ``metadata["params"]`` when not given.
        execute: Callable applying the change; receives the adapter handle.
        rollback: Optional compensating callable with the same signature.
        author: Author recorded in audit entries.
        recovery: Handling of an unresolved previous attempt.
        description: Free-form description for operators.
        metadata: Extra artifact data, carried for reporting.
    """

    change_id: str
    order: int
    target_system: str
    execute: ChangeCallable = field(compare=False)
    checksum: str = ""
    transactional: bool = False
    rollback: Optional[ChangeCallable] = field(default=None, compare=False)
    author: Optional[str] = None
    recovery: RecoveryStrategy = RecoveryStrategy.MANUAL_INTERVENTION
    description: Optional[str] = None
    metadata: MetadataDict = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        if not self.checksum:
            object.__setattr__(
                self,
                "checksum",
                compute_checksum(
                    self.change_id,
                    callable_reference(self.execute),
                    callable_reference(self.rollback),
                    self.metadata.get("params", {}),
                ),
            )


@dataclass(frozen=True)
class Stage:
    """Ordered group of change units sharing an execution mode.

    Units are kept sorted by ``order`` regardless of the order they were
    supplied in.
    """

    name: str
    change_units: Tuple[ChangeUnit, ...] = ()
    mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    parallelism: Optional[int] = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "change_units",
            tuple(sorted(self.change_units, key=lambda unit: unit.order)),
        )

    def concurrency_limit(self, override: Optional[int] = None) -> int:
        """Worker count for this stage; sequential stages always use one."""

        if self.mode is ExecutionMode.SEQUENTIAL:
            return 1
        if override is not None:
            return max(1, override)
        return self.parallelism or 1


@dataclass(frozen=True)
class PipelineDefinition:
    """Full ordered set of stages for one run. Read-only input."""

    stages: Tuple[Stage, ...]
    version: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "stages", tuple(self.stages))

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def iter_units(self) -> Iterator[ChangeUnit]:
        for stage in self.stages:
            yield from stage.change_units

    def iter_stage_units(self) -> Iterator[Tuple[Stage, ChangeUnit]]:
        for stage in self.stages:
            for unit in stage.change_units:
                yield stage, unit

    def find(self, change_id: str) -> Tuple[Stage, ChangeUnit]:
        """Return the stage and unit for ``change_id``.

        Raises:
            PipelineDefinitionError: If no such change unit exists.
        """

        for stage, unit in self.iter_stage_units():
            if unit.change_id == change_id:
                return stage, unit
        raise PipelineDefinitionError(
            f"Change {change_id!r} is not part of the pipeline definition",
            {"change_id": change_id},
        )

    def change_ids(self) -> List[str]:
        return [unit.change_id for unit in self.iter_units()]

    def replace_unit(self, change_id: str, **changes: Any) -> "PipelineDefinition":
        """Return a copy with one change unit's fields replaced."""

        self.find(change_id)
        stages = []
        for stage in self.stages:
            units = tuple(
                replace(unit, **changes) if unit.change_id == change_id else unit
                for unit in stage.change_units
            )
            stages.append(replace(stage, change_units=units))
        return replace(self, stages=tuple(stages))

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> "PipelineDefinition":
        """Check structural constraints and return ``self``.

        Raises:
            PipelineDefinitionError: On the first violated constraint.
        """

        seen_ids: Dict[str, str] = {}

        def _claim(identifier: str, kind: str) -> None:
            if not identifier:
                raise PipelineDefinitionError(f"Empty {kind} identifier")
            if identifier in seen_ids:
                raise PipelineDefinitionError(
                    f"Duplicate identifier {identifier!r} ({kind}); already used "
                    f"by a {seen_ids[identifier]}",
                    {"id": identifier},
                )
            seen_ids[identifier] = kind

        for stage in self.stages:
            _claim(stage.name, "stage")

            if stage.mode is ExecutionMode.BOUNDED_PARALLEL:
                if stage.parallelism is None or stage.parallelism < 1:
                    raise PipelineDefinitionError(
                        f"Stage {stage.name!r} is BOUNDED_PARALLEL and needs a "
                        "concurrency limit of at least 1",
                        {"stage": stage.name, "parallelism": stage.parallelism},
                    )

            orders: Dict[int, str] = {}
            for unit in stage.change_units:
                _claim(unit.change_id, "change unit")
                if unit.order in orders:
                    raise PipelineDefinitionError(
                        f"Order {unit.order} is used by both {orders[unit.order]!r} "
                        f"and {unit.change_id!r} in stage {stage.name!r}",
                        {"stage": stage.name, "order": unit.order},
                    )
                orders[unit.order] = unit.change_id

                if not unit.target_system:
                    raise PipelineDefinitionError(
                        f"Change {unit.change_id!r} has no target system",
                        {"change_id": unit.change_id},
                    )
                if not callable(unit.execute):
                    raise PipelineDefinitionError(
                        f"Change {unit.change_id!r} has no callable execute operation",
                        {"change_id": unit.change_id},
                    )
                if unit.rollback is not None and not callable(unit.rollback):
                    raise PipelineDefinitionError(
                        f"Change {unit.change_id!r} declares a non-callable rollback",
                        {"change_id": unit.change_id},
                    )
        return self

    # ------------------------------------------------------------------
    # Construction from artifacts
    # ------------------------------------------------------------------

    @classmethod
    def from_mapping(
        cls,
        data: ReadonlyConfig,
        resolver: Callable[[str], ChangeCallable] = resolve_callable,
    ) -> "PipelineDefinition":
        """Build and validate a definition from a parsed artifact.

        Raises:
            PipelineDefinitionError: If the artifact does not match the
                schema, a reference cannot be resolved, or a structural
                constraint is violated.
        """

        try:
            model = _PipelineModel.model_validate(data)
        except ValidationError as exc:
            raise PipelineDefinitionError(
                f"Invalid pipeline definition: {exc.error_count()} error(s)",
                {"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc

        stages = [
            Stage(
                name=stage.name,
                change_units=tuple(_build_unit(change, resolver) for change in stage.changes),
                mode=stage.mode,
                parallelism=stage.parallelism,
            )
            for stage in model.stages
        ]
        definition = cls(stages=tuple(stages), version=model.version)
        return definition.validate()


# ============================================================================
# Artifact schema
# ============================================================================


class _ChangeUnitModel(BaseModel):
    model_config = {"extra": "forbid", "populate_by_name": True}

    id: str = Field(min_length=1)
    order: int
    target_system: str = Field(alias="targetSystem", min_length=1)
    transactional: bool = False
    checksum: Optional[str] = None
    execute: str
    rollback: Optional[str] = None
    author: Optional[str] = None
    recovery: RecoveryStrategy = RecoveryStrategy.MANUAL_INTERVENTION
    description: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class _StageModel(BaseModel):
    model_config = {"extra": "forbid"}

    name: str = Field(min_length=1)
    mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    parallelism: Optional[int] = Field(default=None, ge=1)
    changes: List[_ChangeUnitModel] = Field(default_factory=list)


class _PipelineModel(BaseModel):
    model_config = {"extra": "forbid"}

    version: Optional[str] = None
    stages: List[_StageModel]


def _build_unit(
    model: _ChangeUnitModel,
    resolver: Callable[[str], ChangeCallable],
) -> ChangeUnit:
    # Artifacts without a checksum get one derived from what defines the
    # change: its references and parameters.
    checksum = model.checksum or compute_checksum(
        model.id, model.execute, model.rollback, model.params
    )
    metadata = dict(model.metadata)
    if model.params:
        metadata["params"] = dict(model.params)

    return ChangeUnit(
        change_id=model.id,
        order=model.order,
        target_system=model.target_system,
        transactional=model.transactional,
        checksum=checksum,
        execute=resolver(model.execute),
        rollback=resolver(model.rollback) if model.rollback else None,
        author=model.author,
        recovery=model.recovery,
        description=model.description,
        metadata=metadata,
    )


def load_definition(
    path: Union[str, Path],
    resolver: Callable[[str], ChangeCallable] = resolve_callable,
) -> PipelineDefinition:
    """Load a pipeline definition artifact from a YAML or JSON file.

    Raises:
        PipelineDefinitionError: If the file is missing, unparsable, or
            invalid.
    """

    path = Path(path)
    if not path.exists():
        raise PipelineDefinitionError(
            f"Pipeline definition not found: {path}", {"path": str(path)}
        )

    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() == ".json":
            raw = json.loads(text)
        else:
            raw = yaml.safe_load(text)
    except (ValueError, yaml.YAMLError) as exc:
        raise PipelineDefinitionError(
            f"Cannot parse pipeline definition {path}: {exc}", {"path": str(path)}
        ) from exc

    if not isinstance(raw, dict):
        raise PipelineDefinitionError(
            f"Pipeline definition {path} must be a mapping at the top level",
            {"path": str(path)},
        )

    definition = PipelineDefinition.from_mapping(raw, resolver)
    logger.info(
        "Loaded pipeline definition %s (version=%s, %d stage(s), %d change unit(s))",
        path,
        definition.version,
        len(definition.stages),
        len(definition.change_ids()),
    )
    return definition


def build_definition(stages: Sequence[Stage], version: Optional[str] = None) -> PipelineDefinition:
    """Programmatic constructor returning a validated definition."""

    return PipelineDefinition(stages=tuple(stages), version=version).validate()
