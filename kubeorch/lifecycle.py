"""
LifecycleController - top-level deploy / quick-deploy / delete / clean / status.

Composes the store, Applier, ReadinessProbe, StageSequencer and
ScalingPolicyCoordinator around one explicit DeployConfig. This is the only
place that turns outcomes into process exit codes.
"""

import logging
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Optional

from kubeorch.applier import Applier
from kubeorch.config import DeployConfig
from kubeorch.errors import KubeorchError, PermanentError, SubmissionError, TransientError, ValidationError
from kubeorch.readiness import ReadinessProbe
from kubeorch.scaling import ScalingPolicyCoordinator, render_policy, validate_policy
from kubeorch.schemas import DATA_BEARING_KINDS, RunResult, RunStatus
from kubeorch.sequencer import QUICK_SETTLE_TIMEOUT_S, StageSequencer
from kubeorch.store import ResourceSpecStore
from kubeorch.substrate import KubectlSubstrate, Substrate

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130

# Kinds listed by `status`, with their section titles
STATUS_SECTIONS = (
    ("Pod", "Pods"),
    ("Service", "Services"),
    ("Deployment", "Deployments"),
    ("HorizontalPodAutoscaler", "HPA"),
    ("Ingress", "Ingress"),
)


def exit_code_for(result: RunResult) -> int:
    """Map a RunResult to the process exit code."""
    if result.status == RunStatus.SUCCEEDED:
        return EXIT_OK
    if result.status == RunStatus.CANCELLED:
        return EXIT_CANCELLED
    return EXIT_FAILED


def _summarize(kind: str, obj: dict[str, Any]) -> dict[str, str]:
    """One status table row for a live object."""
    metadata = obj.get("metadata", {})
    spec = obj.get("spec", {})
    status = obj.get("status", {})
    row = {"name": metadata.get("name", "?")}

    if kind == "Pod":
        containers = status.get("containerStatuses") or []
        ready = sum(1 for c in containers if c.get("ready"))
        row["ready"] = f"{ready}/{len(containers) or len(spec.get('containers') or [])}"
        row["status"] = status.get("phase", "Unknown")
        row["restarts"] = str(sum(c.get("restartCount", 0) for c in containers))
    elif kind == "Service":
        row["type"] = spec.get("type", "ClusterIP")
        row["cluster-ip"] = spec.get("clusterIP", "")
        row["ports"] = ",".join(
            f"{p.get('port')}/{p.get('protocol', 'TCP')}" for p in spec.get("ports") or []
        )
    elif kind == "Deployment":
        row["ready"] = f"{status.get('readyReplicas', 0)}/{spec.get('replicas', 1)}"
        row["up-to-date"] = str(status.get("updatedReplicas", 0))
        row["available"] = str(status.get("availableReplicas", 0))
    elif kind == "HorizontalPodAutoscaler":
        ref = spec.get("scaleTargetRef", {})
        row["reference"] = f"{ref.get('kind', '?')}/{ref.get('name', '?')}"
        row["min"] = str(spec.get("minReplicas", 1))
        row["max"] = str(spec.get("maxReplicas", "?"))
        row["replicas"] = str(status.get("currentReplicas", 0))
    elif kind == "Ingress":
        hosts = [r.get("host", "*") for r in spec.get("rules") or []]
        row["hosts"] = ",".join(hosts) or "*"
        ingress = status.get("loadBalancer", {}).get("ingress") or []
        row["address"] = ",".join(i.get("ip") or i.get("hostname", "") for i in ingress)
    return row


@dataclass
class StatusReport:
    """
    Read-only snapshot of the deployment.

    Attributes:
        namespace: Namespace inspected
        namespace_found: False when the namespace does not exist
        sections: Section title -> rows (one dict per live object)
        stages: Stage name -> "ready" or the list of pending resources
    """
    namespace: str
    namespace_found: bool
    sections: dict[str, list[dict[str, str]]] = field(default_factory=dict)
    stages: dict[str, list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "namespace": self.namespace,
            "namespace_found": self.namespace_found,
            "sections": self.sections,
            "stages": self.stages,
        }


class LifecycleController:
    """
    Top-level driver for one deployment.

    Args:
        config: Explicit runtime configuration
        store: Plan and manifests (loaded from config on first use if omitted)
        substrate: Declarative-apply backend (kubectl by default)
        applier: Override the Applier (tests inject fast backoff)
        probe: Override the ReadinessProbe
        progress_callback: Forwarded to the StageSequencer
    """

    def __init__(
        self,
        config: DeployConfig,
        store: Optional[ResourceSpecStore] = None,
        substrate: Optional[Substrate] = None,
        applier: Optional[Applier] = None,
        probe: Optional[ReadinessProbe] = None,
        progress_callback: Optional[Callable[..., Any]] = None,
    ):
        self.config = config
        self.substrate = substrate or KubectlSubstrate(config.kube_context, kubectl=config.kubectl)
        self.applier = applier or Applier(self.substrate)
        self.probe = probe or ReadinessProbe(self.substrate, poll_interval_s=config.poll_interval_s)
        self.coordinator = ScalingPolicyCoordinator(self.applier)
        self.sequencer = StageSequencer(
            self.applier, self.probe, self.coordinator, progress_callback=progress_callback
        )
        self._store = store

    @property
    def store(self) -> ResourceSpecStore:
        if self._store is None:
            self._store = ResourceSpecStore.from_config(self.config)
        return self._store

    # ------------------------------------------------------------------
    # Deploy paths
    # ------------------------------------------------------------------

    def validate(self) -> int:
        """
        Validate the plan, every manifest, and every scaling policy.

        Nothing is persisted: manifests are checked with a client-side dry run.

        Returns:
            Number of documents validated

        Raises:
            ValidationError: On the first invalid spec or policy
        """
        store = self.store
        store.validate()
        for policy in store.policies:
            validate_policy(policy)

        documents = store.specs() + [render_policy(p) for p in store.policies]
        self.applier.validate(documents)
        logger.info(
            f"Validated {len(documents)} documents in plan {store.plan_id}",
            extra={"event": "plan_validated"},
        )
        return len(documents)

    def deploy(self, cancel: Optional[threading.Event] = None) -> RunResult:
        """
        Validate everything, then run every stage with readiness gating.

        Raises:
            ValidationError: Before any submission if the plan is invalid
        """
        self.validate()
        return self.sequencer.run(self.store.stages, self.store.policies, cancel=cancel)

    def quick_deploy(
        self,
        cancel: Optional[threading.Event] = None,
        settle_timeout_s: float = QUICK_SETTLE_TIMEOUT_S,
    ) -> RunResult:
        """
        Apply every stage without validation or readiness gating.

        Development shortcut: the only wait is a short, non-fatal readiness
        probe after stateful stages. Guarantees are weaker than `deploy`.
        """
        logger.warning(
            "Quick deploy: skipping validation and readiness gating",
            extra={"event": "quick_deploy"},
        )
        return self.sequencer.run(
            self.store.stages,
            self.store.policies,
            cancel=cancel,
            quick=True,
            settle_timeout_s=settle_timeout_s,
        )

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def delete(self) -> list[str]:
        """
        Delete every tracked resource except Namespaces and PersistentVolumeClaims.

        Scaling policies go first, then stages in reverse order.

        Returns:
            Identities deletion was submitted for
        """
        store = self.store
        removed = self.applier.remove([render_policy(p) for p in store.policies])
        for stage in reversed(store.stages):
            group = [spec for spec in stage.resources if spec.kind not in DATA_BEARING_KINDS]
            removed += self.applier.remove(group)
        logger.info(f"Deleted {len(removed)} resources", extra={"event": "resources_deleted"})
        return removed

    def clean(self) -> list[str]:
        """
        Delete everything including PersistentVolumeClaims and the namespace.

        Irreversible: stored data is destroyed.
        """
        removed = self.delete()
        namespaces = [self.config.namespace]
        for spec in self.store.specs():
            if spec.kind == "Namespace" and spec.name not in namespaces:
                namespaces.append(spec.name)

        for namespace in namespaces:
            self._call(
                f"{namespace}/PersistentVolumeClaim/*",
                lambda ns=namespace: self.substrate.delete_all("PersistentVolumeClaim", ns),
            )
            removed.append(f"{namespace}/PersistentVolumeClaim/*")
            self._call(f"Namespace/{namespace}", lambda ns=namespace: self.substrate.delete_namespace(ns))
            removed.append(f"Namespace/{namespace}")
        logger.warning(
            f"Cleaned namespaces: {', '.join(namespaces)}",
            extra={"event": "namespace_cleaned"},
        )
        return removed

    def _call(self, identity: str, func: Callable[[], Any]) -> Any:
        try:
            return self.applier.retrying(func)
        except TransientError as e:
            raise SubmissionError(identity, str(e), transient=True) from e
        except PermanentError as e:
            raise SubmissionError(identity, str(e)) from e

    # ------------------------------------------------------------------
    # Read-only / operator commands
    # ------------------------------------------------------------------

    def status(self) -> StatusReport:
        """
        Aggregate live state for reporting. Never mutates the cluster.

        A missing namespace is reported, not raised.
        """
        namespace = self.config.namespace
        found = self.applier.retrying(lambda: self.substrate.get("Namespace", "", name=namespace))
        report = StatusReport(namespace=namespace, namespace_found=bool(found))
        if not found:
            return report

        for kind, title in STATUS_SECTIONS:
            objects = self.applier.retrying(lambda kind=kind: self.substrate.get(kind, namespace))
            report.sections[title] = [_summarize(kind, obj) for obj in objects]

        try:
            stages = self.store.stages
        except ValidationError as e:
            logger.warning(f"Plan unavailable, skipping stage readiness: {e}")
            return report

        for stage in stages:
            try:
                snapshot = stage.readiness.read(self.substrate, stage)
            except KubeorchError as e:
                report.stages[stage.name] = [f"unreadable: {e}"]
                continue
            readiness = stage.readiness.evaluate(snapshot, stage)
            report.stages[stage.name] = [] if readiness.ready else readiness.pending
        return report

    def restart(self) -> None:
        """Rolling restart of the application Deployment only."""
        identity = f"{self.config.namespace}/Deployment/{self.config.app_name}"
        self._call(
            identity,
            lambda: self.substrate.rollout_restart("Deployment", self.config.app_name, self.config.namespace),
        )
        logger.info(f"Restarted {identity}", extra={"event": "rollout_restart"})

    def port_forward(self) -> list[subprocess.Popen]:
        """
        Open local tunnels to the application and dashboard services.

        Development only. The caller owns the returned processes. If a tunnel
        fails to start, the ones already open are stopped before raising.
        """
        config = self.config
        tunnels = ((config.app_name, config.app_port), (config.dashboard_service, config.dashboard_port))
        processes: list[subprocess.Popen] = []
        try:
            for service, port in tunnels:
                processes.append(self.substrate.port_forward(config.namespace, service, port, port))
        except KubeorchError:
            for process in processes:
                process.terminate()
            raise
        return processes

    def logs(self, db: bool = False, follow: bool = True) -> int:
        """Stream application (or database) logs. Returns kubectl's exit code."""
        name = self.config.db_name if db else self.config.app_name
        return self.substrate.logs(self.config.namespace, f"deployment/{name}", follow=follow)

    def test_db_connection(self) -> str:
        """
        Run a trivial query inside the database workload.

        Raises:
            ValidationError: DB_PASSWORD is not configured
        """
        config = self.config
        if not config.db_password:
            raise ValidationError("DB_PASSWORD must be set to test the database connection")
        command = [
            "mysql",
            "-u", config.db_user,
            f"-p{config.db_password}",
            config.db_database,
            "-e", "SHOW DATABASES; SELECT 'Database connection successful!' AS Status;",
        ]
        return self._call(
            f"{config.namespace}/Deployment/{config.db_name}",
            lambda: self.substrate.exec(config.namespace, f"deployment/{config.db_name}", command),
        )


def wait_for_processes(processes: list[subprocess.Popen], poll_s: float = 0.5) -> int:
    """Block until any process exits; terminate the rest. Returns the first exit code."""
    try:
        while True:
            for process in processes:
                code = process.poll()
                if code is not None:
                    return code
            time.sleep(poll_s)
    finally:
        for process in processes:
            if process.poll() is None:
                process.terminate()
