"""Changeflow – top-level package exports.

This module re-exports the entrypoint and the most commonly used types
for applications that run change pipelines.
"""

from changeflow.pipeline.definition import (
    ChangeUnit,
    ExecutionMode,
    PipelineDefinition,
    RecoveryStrategy,
    Stage,
)
from changeflow.pipeline.executor import FailurePolicy, PipelineExecutor, RunOptions
from changeflow.pipeline.result import ChangeResult, PipelineResult, StageResult
from changeflow.pipeline.runner import run_pipeline

__all__ = [
    "ChangeUnit",
    "ExecutionMode",
    "PipelineDefinition",
    "RecoveryStrategy",
    "Stage",
    "FailurePolicy",
    "PipelineExecutor",
    "RunOptions",
    "ChangeResult",
    "PipelineResult",
    "StageResult",
    "run_pipeline",
]
