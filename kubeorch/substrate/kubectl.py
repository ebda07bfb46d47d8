"""
kubectl adapter for kubeorch.

Every call is a separate kubectl process with an explicit --context, so
concurrent readers (a readiness poll and a status query) never share a
connection or any mutable state, and the user's current context is never
switched.

Children run in their own session: a terminal Ctrl-C reaches kubeorch's
cancellation handler only, never a kubectl call in flight.

Error classification:
- kubectl missing -> PermanentError
- subprocess timeout -> TransientConnectivityError
- non-zero exit with a connectivity signature on stderr -> TransientConnectivityError
- any other non-zero exit -> PermanentError
"""

import json
import logging
import math
import subprocess
from typing import Any, Optional, Sequence

import yaml

from kubeorch.errors import PermanentError, TransientConnectivityError
from kubeorch.schemas import ResourceSpec

from .base import Substrate

logger = logging.getLogger(__name__)


# stderr fragments that mean "could not talk to the API server", not "rejected"
TRANSIENT_SIGNATURES = (
    "unable to connect to the server",
    "connection refused",
    "connection reset by peer",
    "i/o timeout",
    "tls handshake timeout",
    "context deadline exceeded",
    "the server is currently unable to handle the request",
    "serviceunavailable",
    "etcdserver: request timed out",
    "http2: client connection lost",
    "unexpected eof",
    "too many requests",
    "net/http: request canceled",
)


def classify_failure(stderr: str, command: str) -> Exception:
    """
    Map a failed kubectl invocation to TransientConnectivityError or PermanentError.

    Args:
        stderr: Captured stderr
        command: Command summary for the message

    Returns:
        The exception to raise
    """
    message = (stderr or "").strip() or f"{command} failed"
    lowered = message.lower()
    if any(signature in lowered for signature in TRANSIENT_SIGNATURES):
        return TransientConnectivityError(message)
    return PermanentError(message)


class KubectlSubstrate(Substrate):
    """
    Substrate backed by the kubectl CLI.

    Args:
        context: kubectl context name
        kubectl: kubectl executable
        request_timeout_s: Per-call subprocess timeout
    """

    def __init__(self, context: str, kubectl: str = "kubectl", request_timeout_s: float = 60.0):
        self.context = context
        self.kubectl = kubectl
        self.request_timeout_s = request_timeout_s

    def _command(self, *args: str) -> list[str]:
        return [self.kubectl, "--context", self.context, *args]

    def _run(self, args: Sequence[str], stdin: Optional[str] = None, timeout_s: Optional[float] = None) -> str:
        timeout_s = self.request_timeout_s if timeout_s is None else min(timeout_s, self.request_timeout_s)
        command = self._command(*args)
        summary = " ".join(command[3:5])
        logger.debug(f"Running: {' '.join(command)}")
        try:
            result = subprocess.run(
                command,
                input=stdin,
                capture_output=True,
                text=True,
                timeout=timeout_s,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise PermanentError(f"kubectl executable not found: {self.kubectl}") from e
        except subprocess.TimeoutExpired as e:
            raise TransientConnectivityError(
                f"{summary} timed out after {timeout_s:g}s"
            ) from e

        if result.returncode != 0:
            raise classify_failure(result.stderr, summary)
        return result.stdout

    @staticmethod
    def _scope(namespace: str) -> list[str]:
        return ["-n", namespace] if namespace else []

    def apply(self, spec: ResourceSpec, dry_run: bool = False) -> None:
        args = ["apply", "-f", "-"]
        if dry_run:
            args.append("--dry-run=client")
        self._run(args, stdin=yaml.safe_dump(spec.document, sort_keys=False))

    def get(
        self,
        kind: str,
        namespace: str,
        name: Optional[str] = None,
        selector: Optional[str] = None,
        timeout_s: Optional[float] = None,
    ) -> list[dict[str, Any]]:
        args = ["get", kind.lower()]
        if name:
            args.append(name)
        args += self._scope(namespace)
        if selector:
            args += ["-l", selector]
        args += ["-o", "json", "--ignore-not-found"]
        if timeout_s is not None:
            timeout_s = min(timeout_s, self.request_timeout_s)
            args.append(f"--request-timeout={max(1, math.ceil(timeout_s))}s")

        output = self._run(args, timeout_s=timeout_s).strip()
        if not output:
            return []
        try:
            data = json.loads(output)
        except json.JSONDecodeError as e:
            raise PermanentError(f"kubectl get {kind} returned invalid JSON: {e}") from e
        if data.get("kind", "").endswith("List") or "items" in data:
            return list(data.get("items") or [])
        return [data]

    def delete(self, spec: ResourceSpec) -> None:
        self._run(["delete", spec.kind.lower(), spec.name, *self._scope(spec.namespace), "--ignore-not-found=true"])

    def delete_all(self, kind: str, namespace: str) -> None:
        self._run(["delete", kind.lower(), "--all", *self._scope(namespace), "--ignore-not-found=true"])

    def delete_namespace(self, namespace: str) -> None:
        self._run(["delete", "namespace", namespace, "--ignore-not-found=true"])

    def rollout_restart(self, kind: str, name: str, namespace: str) -> None:
        self._run(["rollout", "restart", f"{kind.lower()}/{name}", *self._scope(namespace)])

    def port_forward(
        self, namespace: str, service: str, local_port: int, remote_port: int
    ) -> subprocess.Popen:
        command = self._command(
            "port-forward", "-n", namespace, f"service/{service}", f"{local_port}:{remote_port}"
        )
        logger.info(f"Running: {' '.join(command)}")
        try:
            return subprocess.Popen(command, start_new_session=True)
        except FileNotFoundError as e:
            raise PermanentError(f"kubectl executable not found: {self.kubectl}") from e

    def logs(self, namespace: str, workload: str, follow: bool = True) -> int:
        command = self._command("logs", "-n", namespace, workload)
        if follow:
            command.append("-f")
        try:
            return subprocess.run(command, start_new_session=True).returncode
        except FileNotFoundError as e:
            raise PermanentError(f"kubectl executable not found: {self.kubectl}") from e

    def exec(self, namespace: str, workload: str, command: Sequence[str]) -> str:
        return self._run(["exec", "-n", namespace, workload, "--", *command])

    def __repr__(self) -> str:
        return f"KubectlSubstrate(context={self.context}, kubectl={self.kubectl})"
