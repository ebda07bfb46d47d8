"""
Data model for kubeorch.

- ResourceSpec: one immutable declarative document
- Stage: ordered group of specs with a readiness gate
- ScalingPolicy: replica bounds + metric trigger for a workload
- SubmitResult / StageReport / RunResult: per-invocation outcomes
"""

from .resource_spec import (
    CLUSTER_SCOPED_KINDS,
    DATA_BEARING_KINDS,
    WORKLOAD_KINDS,
    ResourceSpec,
)
from .run_result import RunResult, RunStatus, StageOutcome, StageReport, SubmitResult
from .scaling_policy import ScalingPolicy
from .stage import Stage

__all__ = [
    "CLUSTER_SCOPED_KINDS",
    "DATA_BEARING_KINDS",
    "WORKLOAD_KINDS",
    "ResourceSpec",
    "RunResult",
    "RunStatus",
    "ScalingPolicy",
    "Stage",
    "StageOutcome",
    "StageReport",
    "SubmitResult",
]
