"""
kubeorch - dependency-ordered Kubernetes deployments.

Applies a multi-tier application (configuration, database, observability,
API, ingress) in stages, gating each stage on readiness before the next
starts, and registers autoscaling policies once their workload is ready.
"""

__version__ = "0.1.0"


__all__ = ["DeployConfig", "load_config", "LifecycleController"]

from .config import DeployConfig, load_config
from .lifecycle import LifecycleController
