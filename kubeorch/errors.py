"""
Error classes for kubeorch deployments.

These error types enable retry classification at the substrate boundary:
- TransientError: Safe to retry (API server unreachable, timeouts, resets)
- PermanentError: Do not retry (invalid manifest, admission rejection)

The Applier and ReadinessProbe retry TransientError locally; it never
escapes them. Everything else propagates to the LifecycleController, which
is the only place that decides the exit code and the user-facing message.
"""

from typing import Optional, Sequence


class KubeorchError(Exception):
    """Base exception for kubeorch."""
    pass


class TransientError(KubeorchError):
    """
    Transient error - safe to retry.

    Examples:
    - Unable to connect to the server
    - TLS handshake timeout
    - Connection refused / reset
    - Service temporarily unavailable (503)
    """
    pass


class TransientConnectivityError(TransientError):
    """A substrate call failed for a non-semantic (network) reason."""
    pass


class PermanentError(KubeorchError):
    """
    Permanent error - do not retry.

    Examples:
    - Manifest fails schema validation
    - Admission webhook rejection
    - Forbidden (RBAC)
    - Immutable field changed
    """
    pass


class ValidationError(PermanentError):
    """
    Malformed or dependency-violating ResourceSpec, plan, or scaling policy.

    Always raised before anything is submitted, so no partial apply occurs.
    """
    pass


class SubmissionError(PermanentError):
    """The substrate rejected a spec, or transient retries were exhausted."""

    def __init__(self, identity: str, reason: str, transient: bool = False):
        self.identity = identity
        self.reason = reason
        self.transient = transient
        kind = "connectivity" if transient else "rejected"
        super().__init__(f"{identity} {kind}: {reason}")


class ReadinessTimeout(KubeorchError):
    """A stage's readiness condition was not satisfied within its timeout."""

    def __init__(
        self,
        stage: str,
        timeout_s: float,
        unmet: Optional[Sequence[str]] = None,
        condition: Optional[str] = None,
    ):
        self.stage = stage
        self.timeout_s = timeout_s
        self.unmet = list(unmet or [])
        self.condition = condition
        detail = ", ".join(self.unmet) if self.unmet else "condition never observed"
        unmet_condition = f": {condition} unmet" if condition else ""
        super().__init__(
            f"stage '{stage}' not ready after {timeout_s:g}s{unmet_condition} (waiting on: {detail})"
        )


class CancellationError(KubeorchError):
    """Operator-initiated cancellation. Not a failure; reported as Cancelled."""

    def __init__(self, stage: Optional[str] = None):
        self.stage = stage
        where = f" during stage '{stage}'" if stage else ""
        super().__init__(f"run cancelled{where}")
