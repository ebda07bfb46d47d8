"""
Substrate protocol - the declarative-apply boundary.

The substrate is the single source of truth for cluster state. kubeorch only
talks to it through this interface:
- apply: create-or-update one ResourceSpec
- get: read a live-state snapshot (list of objects)
- delete / delete_all / delete_namespace: removal with ignore-not-found
- rollout_restart, port_forward, logs, exec: operator conveniences

Implementations raise TransientError for connectivity failures and
PermanentError for everything the cluster rejects.
"""

import subprocess
from abc import ABC, abstractmethod
from typing import Any, Optional, Sequence

from kubeorch.schemas import ResourceSpec


class Substrate(ABC):
    """Abstract base class for declarative-apply backends."""

    @abstractmethod
    def apply(self, spec: ResourceSpec, dry_run: bool = False) -> None:
        """
        Create or update `spec`.

        Args:
            spec: Resource to submit
            dry_run: Validate client-side only, persist nothing

        Raises:
            TransientError: Connectivity failure (safe to retry)
            PermanentError: The substrate rejected the document
        """
        pass

    @abstractmethod
    def get(
        self,
        kind: str,
        namespace: str,
        name: Optional[str] = None,
        selector: Optional[str] = None,
        timeout_s: Optional[float] = None,
    ) -> list[dict[str, Any]]:
        """
        Read live objects.

        Args:
            kind: Resource kind
            namespace: Namespace ("" for cluster-scoped kinds)
            name: Single object name (returns [] when absent)
            selector: Label selector (e.g. "app=mysql")
            timeout_s: Upper bound for this call; exceeding it raises TransientError

        Returns:
            Matching objects; empty when none exist
        """
        pass

    @abstractmethod
    def delete(self, spec: ResourceSpec) -> None:
        """Delete `spec` if present."""
        pass

    @abstractmethod
    def delete_all(self, kind: str, namespace: str) -> None:
        """Delete every object of `kind` in `namespace`."""
        pass

    @abstractmethod
    def delete_namespace(self, namespace: str) -> None:
        """Delete `namespace` (and everything in it) if present."""
        pass

    @abstractmethod
    def rollout_restart(self, kind: str, name: str, namespace: str) -> None:
        """Trigger a rolling restart of a workload."""
        pass

    def port_forward(
        self, namespace: str, service: str, local_port: int, remote_port: int
    ) -> subprocess.Popen:
        raise NotImplementedError(f"{type(self).__name__} does not support port-forward")

    def logs(self, namespace: str, workload: str, follow: bool = True) -> int:
        raise NotImplementedError(f"{type(self).__name__} does not support logs")

    def exec(self, namespace: str, workload: str, command: Sequence[str]) -> str:
        raise NotImplementedError(f"{type(self).__name__} does not support exec")
