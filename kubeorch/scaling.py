"""
ScalingPolicyCoordinator - registers autoscaling rules at the right point.

The coordinator only validates and submits; the scaling control loop itself
is the cluster's HorizontalPodAutoscaler controller. A policy goes through
the same Applier as any stage and must follow, never precede, the workload
it targets.
"""

import logging

from kubeorch.applier import Applier
from kubeorch.errors import ValidationError
from kubeorch.schemas import ResourceSpec, ScalingPolicy, SubmitResult

logger = logging.getLogger(__name__)

SUPPORTED_METRICS = ("cpu", "memory")


def validate_policy(policy: ScalingPolicy) -> None:
    """
    Check a policy is internally consistent.

    Raises:
        ValidationError: min < 1, min > max, unknown metric, threshold out of (0, 100]
    """
    if not policy.target_name:
        raise ValidationError(f"{policy.identity}: target name is required")
    if policy.min_replicas < 1:
        raise ValidationError(
            f"{policy.identity}: min_replicas must be >= 1, got {policy.min_replicas}"
        )
    if policy.min_replicas > policy.max_replicas:
        raise ValidationError(
            f"{policy.identity}: min_replicas ({policy.min_replicas}) exceeds "
            f"max_replicas ({policy.max_replicas})"
        )
    if policy.metric not in SUPPORTED_METRICS:
        raise ValidationError(
            f"{policy.identity}: unsupported metric '{policy.metric}' "
            f"(expected one of {', '.join(SUPPORTED_METRICS)})"
        )
    if not 0 < policy.threshold <= 100:
        raise ValidationError(
            f"{policy.identity}: threshold must be in (0, 100], got {policy.threshold}"
        )


def render_policy(policy: ScalingPolicy) -> ResourceSpec:
    """Render a policy as an autoscaling/v2 HorizontalPodAutoscaler spec."""
    document = {
        "apiVersion": "autoscaling/v2",
        "kind": "HorizontalPodAutoscaler",
        "metadata": {
            "name": policy.name,
            "namespace": policy.namespace,
            "labels": {"app.kubernetes.io/managed-by": "kubeorch"},
        },
        "spec": {
            "scaleTargetRef": {
                "apiVersion": policy.target_api_version,
                "kind": policy.target_kind,
                "name": policy.target_name,
            },
            "minReplicas": policy.min_replicas,
            "maxReplicas": policy.max_replicas,
            "metrics": [
                {
                    "type": "Resource",
                    "resource": {
                        "name": policy.metric,
                        "target": {
                            "type": "Utilization",
                            "averageUtilization": policy.threshold,
                        },
                    },
                }
            ],
        },
    }
    return ResourceSpec.from_document(document, policy.namespace, source=policy.source)


class ScalingPolicyCoordinator:
    """Validate and register scaling policies through the Applier."""

    def __init__(self, applier: Applier):
        self.applier = applier

    def apply(self, policy: ScalingPolicy) -> SubmitResult:
        """
        Validate `policy` and submit it.

        Raises:
            ValidationError: The policy is inconsistent; nothing is submitted
        """
        validate_policy(policy)
        logger.info(
            f"Registering scaling policy {policy.identity} for {policy.target} "
            f"({policy.min_replicas}-{policy.max_replicas} replicas, "
            f"{policy.metric} {policy.threshold}%)",
            extra={"event": "scaling_policy_submitted"},
        )
        return self.applier.submit([render_policy(policy)])
