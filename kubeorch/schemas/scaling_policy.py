"""
ScalingPolicy schema - a bounded replica rule for one workload.

Policies are registered after the workload they target is Ready and are
never mutated by kubeorch afterward; tuning one is an operator action.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from kubeorch.errors import ValidationError


@dataclass(frozen=True)
class ScalingPolicy:
    """
    Elastic-scaling rule for a workload.

    Attributes:
        name: Name of the rendered HorizontalPodAutoscaler
        namespace: Namespace of the target workload
        target_kind: Target kind (usually "Deployment")
        target_name: Target name
        min_replicas: Lower replica bound (>= 1)
        max_replicas: Upper replica bound (>= min_replicas)
        metric: Resource metric name ("cpu" or "memory")
        threshold: Average utilization percentage that triggers scaling
        target_api_version: apiVersion of the target workload
        source: Manifest the policy was lifted from, if any
    """
    name: str
    namespace: str
    target_kind: str
    target_name: str
    min_replicas: int
    max_replicas: int
    metric: str = "cpu"
    threshold: int = 80
    target_api_version: str = "apps/v1"
    source: Optional[Path] = None

    @property
    def identity(self) -> str:
        return f"{self.namespace}/HorizontalPodAutoscaler/{self.name}"

    @property
    def target(self) -> str:
        return f"{self.target_kind}/{self.target_name}"

    @classmethod
    def from_dict(cls, data: dict[str, Any], default_namespace: str) -> "ScalingPolicy":
        """
        Build a policy from a plan `scaling` entry.

        Example entry:
            target: {kind: Deployment, name: wallet-api}
            min_replicas: 2
            max_replicas: 10
            metric: cpu
            threshold: 70
        """
        target = data.get("target") or {}
        if isinstance(target, str):
            kind, _, name = target.partition("/")
            target = {"kind": kind, "name": name} if name else {"kind": "Deployment", "name": kind}
        target_name = target.get("name")
        if not target_name:
            raise ValidationError(f"Scaling entry is missing target.name: {data}")
        try:
            return cls(
                name=data.get("name") or f"{target_name}-hpa",
                namespace=data.get("namespace") or default_namespace,
                target_kind=target.get("kind", "Deployment"),
                target_name=target_name,
                min_replicas=int(data.get("min_replicas", 1)),
                max_replicas=int(data["max_replicas"]),
                metric=str(data.get("metric", "cpu")),
                threshold=int(data.get("threshold", 80)),
                target_api_version=target.get("api_version", "apps/v1"),
            )
        except KeyError as e:
            raise ValidationError(f"Scaling entry for {target_name} is missing {e}")
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Scaling entry for {target_name} is invalid: {e}")

    @classmethod
    def from_hpa(
        cls,
        document: dict[str, Any],
        default_namespace: str,
        source: Optional[Path] = None,
    ) -> "ScalingPolicy":
        """
        Lift a HorizontalPodAutoscaler manifest (autoscaling/v1 or v2) into a policy.

        Only the first Resource metric is carried over; other metric types
        are outside what kubeorch coordinates.
        """
        metadata = document.get("metadata") or {}
        spec = document.get("spec") or {}
        ref = spec.get("scaleTargetRef") or {}
        name = metadata.get("name")
        where = f" in {source}" if source else ""

        if not name or not ref.get("name"):
            raise ValidationError(f"HorizontalPodAutoscaler{where} needs metadata.name and spec.scaleTargetRef.name")
        if "maxReplicas" not in spec:
            raise ValidationError(f"HorizontalPodAutoscaler {name}{where} is missing spec.maxReplicas")

        metric = "cpu"
        threshold = spec.get("targetCPUUtilizationPercentage", 80)
        for entry in spec.get("metrics") or []:
            if entry.get("type") != "Resource":
                continue
            resource = entry.get("resource") or {}
            metric = resource.get("name", metric)
            target = resource.get("target") or {}
            threshold = target.get("averageUtilization", threshold)
            break

        try:
            return cls(
                name=name,
                namespace=metadata.get("namespace") or default_namespace,
                target_kind=ref.get("kind", "Deployment"),
                target_name=ref["name"],
                min_replicas=int(spec.get("minReplicas", 1)),
                max_replicas=int(spec["maxReplicas"]),
                metric=metric,
                threshold=int(threshold),
                target_api_version=ref.get("apiVersion", "apps/v1"),
                source=source,
            )
        except (TypeError, ValueError) as e:
            raise ValidationError(f"HorizontalPodAutoscaler {name}{where} is invalid: {e}")
