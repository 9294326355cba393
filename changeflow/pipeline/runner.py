"""Changeflow – Pipeline entrypoint.

:func:`run_pipeline` is the contract exposed to callers (CLI scripts,
application bootstrap code). Collaborators are passed explicitly; there
is no process-wide audit store or registry.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Union

from changeflow.audit.retry import RetryPolicy
from changeflow.audit.store import AuditStore
from changeflow.core.logging import get_logger
from changeflow.legacy.sources import LegacySource
from changeflow.lock.lease import LockService
from changeflow.pipeline.definition import PipelineDefinition, load_definition
from changeflow.pipeline.executor import PipelineExecutor, RunOptions
from changeflow.pipeline.result import PipelineResult
from changeflow.targets.registry import TargetSystemRegistry


logger = get_logger(__name__)


def run_pipeline(
    definition: Union[PipelineDefinition, str, Path],
    options: Optional[RunOptions] = None,
    *,
    audit_store: AuditStore,
    lock_service: LockService,
    registry: TargetSystemRegistry,
    legacy_source: Optional[LegacySource] = None,
    owner: Optional[str] = None,
    retry_policy: Optional[RetryPolicy] = None,
) -> PipelineResult:
    """Run a pipeline definition and return its result.

    Args:
        definition: A loaded definition, or the path of a YAML/JSON
            definition artifact.
        options: Lock timeout, parallelism override, failure policy and
            legacy import switch; defaults to :class:`RunOptions`.
        audit_store: Store holding the audit trail.
        lock_service: Distributed lock shared by all instances.
        registry: Target systems referenced by the definition.
        legacy_source: Legacy change log imported first when
            ``options.run_legacy_import`` is set.
        owner: Lease owner identifier; generated when omitted.
        retry_policy: Backoff for transient audit store failures.

    Returns:
        The :class:`PipelineResult`. Inspect ``success`` or call
        ``raise_for_error()``.

    Raises:
        PipelineDefinitionError: If the definition cannot be loaded or is
            invalid.
    """

    if not isinstance(definition, PipelineDefinition):
        definition = load_definition(definition)

    options = options or RunOptions()
    if options.run_legacy_import and legacy_source is None:
        logger.warning("Legacy import requested but no legacy source configured")

    executor = PipelineExecutor(
        audit_store,
        lock_service,
        registry,
        legacy_source=legacy_source,
        owner=owner,
        retry_policy=retry_policy,
    )
    return executor.run(definition, options)
