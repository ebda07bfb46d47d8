"""
Readiness conditions and the ReadinessProbe.

A ReadinessCondition is a stateless predicate over a live-state snapshot:
`read()` fetches the snapshot through the substrate, `evaluate()` decides
whether the stage is usable by its dependents and lists what is still
pending. The probe re-reads and re-evaluates on every poll tick.

Condition types (plan `readiness.type`):
- exists: every resource in the stage exists
- pods_ready: pods matching a selector are Ready (kubectl wait --for=condition=ready)
- workloads_available: Deployments/StatefulSets in the stage report readyReplicas >= replicas
- none: ready as soon as the stage is applied
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from kubeorch.errors import TransientError, ValidationError
from kubeorch.schemas import Stage
from kubeorch.substrate import Substrate

# Floor for a single live-state read once the retry budget is spent
MIN_READ_TIMEOUT_S = 1.0

logger = logging.getLogger(__name__)


@dataclass
class Readiness:
    """One evaluation of a condition."""
    ready: bool
    pending: list[str] = field(default_factory=list)


class ReadinessCondition(ABC):
    """Predicate over a stage's live state."""

    type_name = "condition"

    @abstractmethod
    def read(self, substrate: Substrate, stage: Stage, timeout_s: Optional[float] = None) -> Any:
        """Fetch the live-state snapshot this condition needs, each call bounded by `timeout_s`."""
        pass

    @abstractmethod
    def evaluate(self, snapshot: Any, stage: Stage) -> Readiness:
        """Decide readiness from a snapshot. Must not touch the substrate."""
        pass

    def describe(self) -> str:
        return self.type_name


class Immediate(ReadinessCondition):
    """Ready as soon as the stage has been applied."""

    type_name = "none"

    def read(self, substrate: Substrate, stage: Stage, timeout_s: Optional[float] = None) -> Any:
        return None

    def evaluate(self, snapshot: Any, stage: Stage) -> Readiness:
        return Readiness(ready=True)


class ResourcesExist(ReadinessCondition):
    """Every resource in the stage is visible on the substrate."""

    type_name = "exists"

    def read(self, substrate: Substrate, stage: Stage, timeout_s: Optional[float] = None) -> dict[str, bool]:
        return {
            spec.identity: bool(substrate.get(spec.kind, spec.namespace, name=spec.name, timeout_s=timeout_s))
            for spec in stage.resources
        }

    def evaluate(self, snapshot: dict[str, bool], stage: Stage) -> Readiness:
        missing = [identity for identity, present in snapshot.items() if not present]
        return Readiness(ready=not missing, pending=missing)


def _pod_is_ready(pod: dict[str, Any]) -> bool:
    for condition in pod.get("status", {}).get("conditions") or []:
        if condition.get("type") == "Ready":
            return condition.get("status") == "True"
    return False


@dataclass
class PodsReady(ReadinessCondition):
    """
    Pods matching `selector` are Ready.

    Pods being deleted and pods that already terminated are ignored, so a
    rolling update's outgoing pods do not hold the stage back.
    """
    selector: str
    min_ready: int = 1
    namespace: Optional[str] = None

    type_name = "pods_ready"

    def _namespace(self, stage: Stage) -> str:
        if self.namespace:
            return self.namespace
        namespaces = stage.namespaces
        return namespaces[0] if namespaces else ""

    def read(self, substrate: Substrate, stage: Stage, timeout_s: Optional[float] = None) -> list[dict[str, Any]]:
        return substrate.get("Pod", self._namespace(stage), selector=self.selector, timeout_s=timeout_s)

    def evaluate(self, snapshot: list[dict[str, Any]], stage: Stage) -> Readiness:
        live = [
            pod for pod in snapshot
            if not pod.get("metadata", {}).get("deletionTimestamp")
            and pod.get("status", {}).get("phase") not in ("Succeeded", "Failed")
        ]
        not_ready = [
            f"Pod/{pod.get('metadata', {}).get('name', '?')}"
            for pod in live if not _pod_is_ready(pod)
        ]
        ready_count = len(live) - len(not_ready)

        pending = list(not_ready)
        if ready_count < self.min_ready and not not_ready:
            pending.append(f"pods {self.selector} ({ready_count}/{self.min_ready} ready)")
        return Readiness(ready=ready_count >= self.min_ready and not not_ready, pending=pending)

    def describe(self) -> str:
        return f"pods_ready({self.selector}, min={self.min_ready})"


class WorkloadsAvailable(ReadinessCondition):
    """Every workload in the stage has all desired replicas ready."""

    type_name = "workloads_available"

    def read(
        self, substrate: Substrate, stage: Stage, timeout_s: Optional[float] = None
    ) -> dict[str, Optional[dict[str, Any]]]:
        snapshot: dict[str, Optional[dict[str, Any]]] = {}
        for spec in stage.workloads:
            found = substrate.get(spec.kind, spec.namespace, name=spec.name, timeout_s=timeout_s)
            snapshot[spec.identity] = found[0] if found else None
        return snapshot

    def evaluate(self, snapshot: dict[str, Optional[dict[str, Any]]], stage: Stage) -> Readiness:
        pending = []
        for identity, obj in snapshot.items():
            if obj is None:
                pending.append(f"{identity} (missing)")
                continue
            desired = obj.get("spec", {}).get("replicas", 1)
            status = obj.get("status") or {}
            ready = status.get("readyReplicas", 0) or 0
            generation = obj.get("metadata", {}).get("generation", 0)
            observed = status.get("observedGeneration", generation)
            if ready < desired or observed < generation:
                pending.append(f"{identity} ({ready}/{desired} ready)")
        return Readiness(ready=not pending, pending=pending)


def build_condition(data: Optional[dict[str, Any]]) -> ReadinessCondition:
    """
    Build a condition from a plan `readiness` block.

    Args:
        data: e.g. {"type": "pods_ready", "selector": "app=mysql", "min_ready": 1}

    Raises:
        ValidationError: Unknown type or missing selector
    """
    data = data or {"type": "exists"}
    condition_type = data.get("type", "exists")

    if condition_type == "exists":
        return ResourcesExist()
    if condition_type == "none":
        return Immediate()
    if condition_type == "workloads_available":
        return WorkloadsAvailable()
    if condition_type == "pods_ready":
        selector = data.get("selector")
        if not selector:
            raise ValidationError("pods_ready readiness requires a 'selector'")
        min_ready = int(data.get("min_ready", 1))
        if min_ready < 1:
            raise ValidationError(f"pods_ready min_ready must be >= 1, got {min_ready}")
        return PodsReady(selector=selector, min_ready=min_ready, namespace=data.get("namespace"))

    raise ValidationError(f"Unknown readiness type: {condition_type}")


class ReadinessOutcome(str, Enum):
    READY = "ready"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass
class ReadinessResult:
    """What the probe observed."""
    outcome: ReadinessOutcome
    unmet: list[str] = field(default_factory=list)
    elapsed_s: float = 0.0
    polls: int = 0


class ReadinessProbe:
    """
    Poll a stage's readiness condition until ready, timed out, or cancelled.

    All loop state is local to `await_ready`, so one probe instance can serve
    concurrent callers and never shares mutable state with a status query.

    Args:
        substrate: Live-state reader
        poll_interval_s: Time between polls
        read_backoff_s: First backoff after a transient read failure
        read_retry_fraction: Share of the remaining deadline a failing read may spend retrying
        clock: Monotonic clock (injectable for tests)
    """

    def __init__(
        self,
        substrate: Substrate,
        poll_interval_s: float = 2.0,
        read_backoff_s: float = 0.25,
        read_retry_fraction: float = 0.2,
        clock: Callable[[], float] = time.monotonic,
    ):
        if poll_interval_s <= 0:
            raise ValueError("poll_interval_s must be positive")
        self.substrate = substrate
        self.poll_interval_s = poll_interval_s
        self.read_backoff_s = read_backoff_s
        self.read_retry_fraction = read_retry_fraction
        self.clock = clock

    def await_ready(
        self,
        stage: Stage,
        timeout_s: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> ReadinessResult:
        """
        Block until `stage` is ready, the deadline passes, or `cancel` is set.

        Cancellation is observed within one poll interval.

        Args:
            stage: Stage whose readiness condition to poll
            timeout_s: Deadline in seconds (defaults to stage.timeout_s)
            cancel: Event set by the caller to stop waiting

        Returns:
            ReadinessResult (READY, TIMED_OUT or CANCELLED)

        Raises:
            PermanentError: The substrate refused the read (e.g. forbidden)
        """
        cancel = cancel or threading.Event()
        timeout_s = stage.timeout_s if timeout_s is None else timeout_s
        start = self.clock()
        deadline = start + timeout_s
        polls = 0
        unmet: list[str] = []

        def _result(outcome: ReadinessOutcome) -> ReadinessResult:
            return ReadinessResult(
                outcome=outcome, unmet=unmet, elapsed_s=self.clock() - start, polls=polls
            )

        while True:
            if cancel.is_set():
                return _result(ReadinessOutcome.CANCELLED)

            check = self._poll(stage, deadline, cancel)
            polls += 1
            if check.ready:
                unmet = []
                logger.debug(f"Stage {stage.name} ready after {polls} poll(s)")
                return _result(ReadinessOutcome.READY)
            unmet = check.pending

            remaining = deadline - self.clock()
            if remaining <= 0:
                return _result(ReadinessOutcome.TIMED_OUT)

            logger.debug(f"Stage {stage.name} waiting on: {', '.join(unmet) or 'condition'}")
            if cancel.wait(min(self.poll_interval_s, remaining)):
                return _result(ReadinessOutcome.CANCELLED)

    def _poll(self, stage: Stage, deadline: float, cancel: threading.Event) -> Readiness:
        """
        Read and evaluate once, retrying transient read failures within a capped budget.

        Each read is bounded by what is left of that budget and never runs
        past the stage deadline.
        """
        condition = stage.readiness
        now = self.clock()
        budget_end = now + self.read_retry_fraction * max(deadline - now, 0.0)
        backoff = self.read_backoff_s

        while True:
            now = self.clock()
            read_timeout = max(budget_end - now, min(MIN_READ_TIMEOUT_S, max(deadline - now, 0.1)))
            try:
                snapshot = condition.read(self.substrate, stage, timeout_s=read_timeout)
            except TransientError as e:
                if self.clock() + backoff > budget_end or cancel.wait(backoff):
                    logger.warning(
                        f"Stage {stage.name}: live state unreadable this poll: {e}",
                        extra={"stage": stage.name, "event": "readiness_read_failed"},
                    )
                    return Readiness(ready=False, pending=[f"live state unreadable: {e}"])
                backoff *= 2
                continue
            return condition.evaluate(snapshot, stage)
