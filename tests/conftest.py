import copy
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import yaml

from kubeorch.applier import Applier
from kubeorch.config import DeployConfig
from kubeorch.errors import PermanentError, TransientConnectivityError
from kubeorch.readiness import ReadinessProbe
from kubeorch.schemas import WORKLOAD_KINDS
from kubeorch.substrate import Substrate


def _matches(labels: dict, selector: str) -> bool:
    for term in selector.split(","):
        key, _, value = term.strip().partition("=")
        if labels.get(key) != value:
            return False
    return True


def make_pod(name: str, labels: dict, ready: bool = True, phase: str = "Running") -> dict:
    return {
        "kind": "Pod",
        "metadata": {"name": name, "labels": dict(labels)},
        "status": {
            "phase": phase,
            "conditions": [{"type": "Ready", "status": "True" if ready else "False"}],
        },
    }


class FakeSubstrate(Substrate):
    """
    In-memory substrate.

    Stores applied documents by (namespace, kind, name) and records every
    call. With `auto_ready`, applying a workload also makes its pods Ready
    and its replicas available.
    """

    def __init__(self, auto_ready: bool = True):
        self.auto_ready = auto_ready
        self.objects: dict[tuple[str, str, str], dict] = {}
        self.pods: dict[str, list[dict]] = {}
        self.calls: list[tuple] = []
        self.rejections: dict[str, str] = {}
        self.apply_transient: dict[str, int] = {}
        self.read_transient = 0
        self.read_error: Exception | None = None
        self.read_delay = 0.0
        self.read_timeouts: list = []
        self.processes: list[MagicMock] = []

    # -- helpers -------------------------------------------------------

    @property
    def applied(self) -> list[str]:
        return [call[1] for call in self.calls if call[0] == "apply"]

    def add_pod(self, namespace: str, pod: dict) -> None:
        self.pods.setdefault(namespace, []).append(pod)

    def put(self, namespace: str, kind: str, name: str, document: dict | None = None) -> None:
        self.objects[(namespace, kind, name)] = document or {"kind": kind, "metadata": {"name": name}}

    # -- Substrate -----------------------------------------------------

    def apply(self, spec, dry_run=False):
        self.calls.append(("apply" if not dry_run else "dry_run", spec.identity))
        if self.apply_transient.get(spec.identity, 0) > 0:
            self.apply_transient[spec.identity] -= 1
            raise TransientConnectivityError("Unable to connect to the server: dial tcp: i/o timeout")
        if spec.identity in self.rejections:
            raise PermanentError(self.rejections[spec.identity])
        if dry_run:
            return

        document = spec.document
        if self.auto_ready and spec.kind in WORKLOAD_KINDS:
            replicas = document.get("spec", {}).get("replicas", 1)
            document["status"] = {"readyReplicas": replicas, "observedGeneration": 1}
            document["metadata"]["generation"] = 1
            labels = document.get("spec", {}).get("template", {}).get("metadata", {}).get("labels") or {}
            self.pods[spec.namespace] = [
                pod for pod in self.pods.get(spec.namespace, [])
                if not pod["metadata"]["name"].startswith(f"{spec.name}-")
            ]
            self.add_pod(spec.namespace, make_pod(f"{spec.name}-0", labels))
        self.objects[(spec.namespace, spec.kind, spec.name)] = document

    def get(self, kind, namespace, name=None, selector=None, timeout_s=None):
        self.calls.append(("get", kind, namespace, name, selector))
        self.read_timeouts.append(timeout_s)
        if self.read_delay:
            # A hung API server: the read returns only if the caller waits long enough
            if timeout_s is not None and timeout_s < self.read_delay:
                time.sleep(timeout_s)
                raise TransientConnectivityError(f"get {kind} timed out after {timeout_s:g}s")
            time.sleep(self.read_delay)
        if self.read_error is not None:
            raise self.read_error
        if self.read_transient > 0:
            self.read_transient -= 1
            raise TransientConnectivityError("connection refused")

        if kind == "Pod":
            pods = self.pods.get(namespace, [])
            if selector:
                pods = [p for p in pods if _matches(p["metadata"].get("labels", {}), selector)]
            return copy.deepcopy(pods)

        found = [
            copy.deepcopy(obj) for (ns, k, n), obj in self.objects.items()
            if k == kind and ns == namespace and (name is None or n == name)
        ]
        return found

    def delete(self, spec):
        self.calls.append(("delete", spec.identity))
        self.objects.pop((spec.namespace, spec.kind, spec.name), None)

    def delete_all(self, kind, namespace):
        self.calls.append(("delete_all", kind, namespace))
        for key in [k for k in self.objects if k[0] == namespace and k[1] == kind]:
            del self.objects[key]

    def delete_namespace(self, namespace):
        self.calls.append(("delete_namespace", namespace))
        for key in [k for k in self.objects if k[0] == namespace or k == ("", "Namespace", namespace)]:
            del self.objects[key]
        self.pods.pop(namespace, None)

    def rollout_restart(self, kind, name, namespace):
        self.calls.append(("rollout_restart", kind, name, namespace))

    def port_forward(self, namespace, service, local_port, remote_port):
        self.calls.append(("port_forward", namespace, service, local_port, remote_port))
        process = MagicMock()
        process.poll.return_value = 0
        self.processes.append(process)
        return process

    def logs(self, namespace, workload, follow=True):
        self.calls.append(("logs", namespace, workload, follow))
        return 0

    def exec(self, namespace, workload, command):
        self.calls.append(("exec", namespace, workload, list(command)))
        return "Status\nDatabase connection successful!\n"


def _write(path: Path, *documents: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump_all(documents, sort_keys=False))


def _deployment(name: str, replicas: int = 1) -> dict:
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name, "labels": {"app": name}},
        "spec": {
            "replicas": replicas,
            "selector": {"matchLabels": {"app": name}},
            "template": {
                "metadata": {"labels": {"app": name}},
                "spec": {"containers": [{"name": name, "image": f"{name}:latest"}]},
            },
        },
    }


@pytest.fixture
def manifests_dir(tmp_path) -> Path:
    """A manifests tree matching the packaged default plan (no monitoring/)."""
    root = tmp_path / "k8s"
    _write(root / "base/namespace.yaml", {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "wallet-app"}})
    _write(root / "base/configmap.yaml", {
        "apiVersion": "v1", "kind": "ConfigMap",
        "metadata": {"name": "app-config"}, "data": {"DB_HOST": "mysql"},
    })
    _write(root / "base/secret.yaml", {
        "apiVersion": "v1", "kind": "Secret",
        "metadata": {"name": "app-secret"}, "stringData": {"DB_PASSWORD": "secret"},
    })
    _write(root / "apps/database/mysql-pvc.yaml", {
        "apiVersion": "v1", "kind": "PersistentVolumeClaim",
        "metadata": {"name": "mysql-data"},
        "spec": {"accessModes": ["ReadWriteOnce"], "resources": {"requests": {"storage": "1Gi"}}},
    })
    _write(root / "apps/database/mysql-init-configmap.yaml", {
        "apiVersion": "v1", "kind": "ConfigMap",
        "metadata": {"name": "mysql-init"}, "data": {"init.sql": "CREATE DATABASE IF NOT EXISTS mydb;"},
    })
    _write(root / "apps/database/mysql-deployment.yaml", _deployment("mysql"), {
        "apiVersion": "v1", "kind": "Service",
        "metadata": {"name": "mysql"}, "spec": {"selector": {"app": "mysql"}, "ports": [{"port": 3306}]},
    })
    _write(root / "apps/api/deployment.yaml", _deployment("wallet-api", replicas=2))
    _write(root / "apps/api/hpa.yaml", {
        "apiVersion": "autoscaling/v2",
        "kind": "HorizontalPodAutoscaler",
        "metadata": {"name": "wallet-api-hpa"},
        "spec": {
            "scaleTargetRef": {"apiVersion": "apps/v1", "kind": "Deployment", "name": "wallet-api"},
            "minReplicas": 2,
            "maxReplicas": 10,
            "metrics": [{
                "type": "Resource",
                "resource": {"name": "cpu", "target": {"type": "Utilization", "averageUtilization": 70}},
            }],
        },
    })
    _write(root / "apps/api/service.yaml", {
        "apiVersion": "v1", "kind": "Service",
        "metadata": {"name": "wallet-api"}, "spec": {"selector": {"app": "wallet-api"}, "ports": [{"port": 8080}]},
    })
    _write(root / "ingress.yaml", {
        "apiVersion": "networking.k8s.io/v1", "kind": "Ingress",
        "metadata": {"name": "wallet-ingress"},
        "spec": {"rules": [{"host": "wallet.local"}]},
    })
    return root


@pytest.fixture
def config(manifests_dir) -> DeployConfig:
    return DeployConfig(manifests_dir=manifests_dir, poll_interval_s=0.01)


@pytest.fixture
def substrate() -> FakeSubstrate:
    return FakeSubstrate()


@pytest.fixture
def applier(substrate) -> Applier:
    return Applier(substrate, max_attempts=3, backoff_seconds=0, sleep=lambda _: None)


@pytest.fixture
def probe(substrate) -> ReadinessProbe:
    return ReadinessProbe(substrate, poll_interval_s=0.01, read_backoff_s=0.001)
