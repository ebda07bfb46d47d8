"""
Stage schema - an ordered unit of deployment.

A Stage groups the ResourceSpecs that must become ready together before any
dependent stage starts. Ordinals are strictly increasing across a plan; the
sequencer treats the stage, not the individual spec, as the unit of ordering.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING

from .resource_spec import WORKLOAD_KINDS, ResourceSpec

if TYPE_CHECKING:
    from kubeorch.readiness import ReadinessCondition


@dataclass(frozen=True)
class Stage:
    """
    A deployment stage.

    Attributes:
        name: Stage name (e.g. "database")
        ordinal: Position in the plan; strictly increasing
        resources: Specs applied in this order
        readiness: Condition gating dependents
        timeout_s: Readiness deadline in seconds
        stateful: Holds stored data (quick-deploy waits briefly after it)
    """
    name: str
    ordinal: int
    resources: tuple[ResourceSpec, ...]
    readiness: "ReadinessCondition"
    timeout_s: float = 300.0
    stateful: bool = False

    @property
    def namespaces(self) -> list[str]:
        """Namespaces touched by this stage, in first-seen order."""
        seen: list[str] = []
        for spec in self.resources:
            if spec.namespace and spec.namespace not in seen:
                seen.append(spec.namespace)
        return seen

    @property
    def workloads(self) -> list[ResourceSpec]:
        return [spec for spec in self.resources if spec.kind in WORKLOAD_KINDS]

    def defines(self, kind: str, name: str) -> bool:
        """True if this stage applies a resource of `kind` named `name`."""
        return any(spec.kind == kind and spec.name == name for spec in self.resources)

    def __repr__(self) -> str:
        return f"Stage(name={self.name}, ordinal={self.ordinal}, resources={len(self.resources)})"
