"""
StageSequencer - dependency-ordered apply with readiness gating.

Execution flow per stage (strict ordinal order):
1. Check for cancellation at the stage boundary
2. Applier.submit(stage.resources); a rejection aborts the run as FAILED
3. ReadinessProbe.await_ready(stage); TIMED_OUT aborts as FAILED with the
   unmet resources, CANCELLED stops the run as CANCELLED
4. Register scaling policies whose target workload this stage defines

Stage N+1 is never submitted before stage N is Ready. There is no rollback:
earlier stages stay applied when a later one fails, and re-running converges
because every submission is create-or-update.

Quick mode (deploy-quick) is deliberately weaker: no readiness gating except
a short, non-fatal wait after stateful stages.
"""

import logging
import threading
import time
from collections.abc import Callable
from typing import Any, Iterable, Optional, Sequence

from kubeorch.applier import Applier
from kubeorch.errors import CancellationError, KubeorchError, ReadinessTimeout, ValidationError
from kubeorch.readiness import ReadinessOutcome, ReadinessProbe
from kubeorch.scaling import ScalingPolicyCoordinator
from kubeorch.schemas import (
    RunResult,
    RunStatus,
    ScalingPolicy,
    Stage,
    StageOutcome,
    StageReport,
)

logger = logging.getLogger(__name__)

# Readiness wait after a stateful stage in quick mode
QUICK_SETTLE_TIMEOUT_S = 10.0


class StageSequencer:
    """
    Drive Applier + ReadinessProbe across ordered stages.

    Args:
        applier: Submits stage resource groups
        probe: Waits for stage readiness
        coordinator: Registers scaling policies once their target is ready
        progress_callback: Optional callback(event, **kwargs) for progress updates.
            Events: 'stage_start', 'stage_applied', 'stage_ready', 'stage_failed',
            'stage_cancelled', 'policy_applied'
    """

    def __init__(
        self,
        applier: Applier,
        probe: ReadinessProbe,
        coordinator: Optional[ScalingPolicyCoordinator] = None,
        progress_callback: Optional[Callable[..., Any]] = None,
    ):
        self.applier = applier
        self.probe = probe
        self.coordinator = coordinator or ScalingPolicyCoordinator(applier)
        self.progress_callback = progress_callback

    def _emit(self, event: str, **kwargs) -> None:
        if self.progress_callback:
            self.progress_callback(event, **kwargs)

    def run(
        self,
        stages: Sequence[Stage],
        policies: Iterable[ScalingPolicy] = (),
        cancel: Optional[threading.Event] = None,
        quick: bool = False,
        settle_timeout_s: float = QUICK_SETTLE_TIMEOUT_S,
    ) -> RunResult:
        """
        Apply `stages` in ordinal order.

        Args:
            stages: Stages sorted by strictly increasing ordinal
            policies: Scaling policies to register after their target's stage
            cancel: Event that stops the run at the next boundary or poll tick
            quick: Skip readiness gating (weaker, development-only mode)
            settle_timeout_s: Quick-mode wait after stateful stages

        Returns:
            RunResult describing how far the run got

        Raises:
            ValidationError: Stage ordinals are not strictly increasing (nothing submitted)
        """
        cancel = cancel or threading.Event()
        stages = list(stages)
        policies = list(policies)
        for previous, current in zip(stages, stages[1:]):
            if current.ordinal <= previous.ordinal:
                raise ValidationError(
                    f"Stage {current.name} (ordinal {current.ordinal}) is out of order "
                    f"after {previous.name} (ordinal {previous.ordinal})"
                )

        result = RunResult(mode="quick" if quick else "deploy")
        start_time = time.monotonic()
        logger.info(
            f"Starting {result.mode} run: {len(stages)} stages, {len(policies)} scaling policies",
            extra={"event": "run_started", "metadata": {"stages": [s.name for s in stages]}},
        )

        for stage in stages:
            if cancel.is_set():
                self._cancel(result, stage, None)
                break
            if not self._run_stage(stage, policies, cancel, quick, settle_timeout_s, result):
                break

        result.elapsed_s = time.monotonic() - start_time
        logger.info(
            f"Run finished: status={result.status.value}, elapsed={result.elapsed_s:.1f}s",
            extra={"event": "run_finished", "metadata": result.to_dict()},
        )
        return result

    def _run_stage(
        self,
        stage: Stage,
        policies: list[ScalingPolicy],
        cancel: threading.Event,
        quick: bool,
        settle_timeout_s: float,
        result: RunResult,
    ) -> bool:
        """Run one stage. Returns True if the run should continue."""
        stage_start = time.monotonic()
        logger.info(
            f"Stage {stage.name}: applying {len(stage.resources)} resources",
            extra={"stage": stage.name, "event": "stage_starting"},
        )
        self._emit("stage_start", stage=stage.name, resources=len(stage.resources))

        submitted = self.applier.submit(stage.resources)
        report = StageReport(
            stage=stage.name,
            ordinal=stage.ordinal,
            outcome=StageOutcome.APPLIED,
            applied=list(submitted.applied),
        )
        result.stages.append(report)

        if not submitted.success:
            report.duration_s = time.monotonic() - stage_start
            if cancel.is_set():
                # The interrupt also broke the call in flight
                self._cancel(result, stage, report)
            else:
                self._fail(result, report, submitted.error)
            return False
        self._emit("stage_applied", stage=stage.name)

        if quick and not stage.stateful:
            report.duration_s = time.monotonic() - stage_start
            return self._register_policies(stage, policies, result, report)

        timeout_s = min(settle_timeout_s, stage.timeout_s) if quick else stage.timeout_s
        try:
            readiness = self.probe.await_ready(stage, timeout_s, cancel)
        except KubeorchError as e:
            report.duration_s = time.monotonic() - stage_start
            if cancel.is_set():
                self._cancel(result, stage, report)
            else:
                self._fail(result, report, e)
            return False
        report.duration_s = time.monotonic() - stage_start
        report.unmet = list(readiness.unmet)

        if readiness.outcome == ReadinessOutcome.CANCELLED:
            self._cancel(result, stage, report)
            return False

        if readiness.outcome == ReadinessOutcome.TIMED_OUT:
            if quick:
                logger.warning(
                    f"Stage {stage.name} not ready after {timeout_s:g}s; continuing (quick mode)",
                    extra={"stage": stage.name, "event": "quick_settle_timeout"},
                )
                return self._register_policies(stage, policies, result, report)
            report.outcome = StageOutcome.TIMED_OUT
            error = ReadinessTimeout(
                stage.name, timeout_s, readiness.unmet, condition=stage.readiness.describe()
            )
            self._fail(result, report, error)
            return False

        report.outcome = StageOutcome.READY
        logger.info(
            f"Stage {stage.name} ready in {report.duration_s:.1f}s",
            extra={"stage": stage.name, "event": "stage_ready"},
        )
        self._emit("stage_ready", stage=stage.name, duration_s=report.duration_s)
        return self._register_policies(stage, policies, result, report)

    def _register_policies(
        self,
        stage: Stage,
        policies: list[ScalingPolicy],
        result: RunResult,
        report: StageReport,
    ) -> bool:
        for policy in policies:
            if not stage.defines(policy.target_kind, policy.target_name):
                continue
            try:
                submitted = self.coordinator.apply(policy)
            except ValidationError as e:
                result.policies[policy.identity] = "failed"
                self._fail(result, report, e, keep_outcome=True)
                return False
            if not submitted.success:
                result.policies[policy.identity] = "failed"
                self._fail(result, report, submitted.error, keep_outcome=True)
                return False
            result.policies[policy.identity] = "applied"
            self._emit("policy_applied", stage=stage.name, policy=policy.identity)
        return True

    def _fail(
        self,
        result: RunResult,
        report: StageReport,
        error: Optional[Exception],
        keep_outcome: bool = False,
    ) -> None:
        if not keep_outcome and report.outcome != StageOutcome.TIMED_OUT:
            report.outcome = StageOutcome.FAILED
        report.error_message = str(error) if error else "failed"
        result.status = RunStatus.FAILED
        result.failed_stage = report.stage
        result.error = error
        logger.error(
            f"Stage {report.stage} failed: {report.error_message}",
            extra={"stage": report.stage, "event": "stage_failed", "metadata": report.to_dict()},
        )
        self._emit("stage_failed", stage=report.stage, error=report.error_message, unmet=report.unmet)

    def _cancel(self, result: RunResult, stage: Stage, report: Optional[StageReport]) -> None:
        if report is not None:
            report.outcome = StageOutcome.CANCELLED
        result.status = RunStatus.CANCELLED
        result.failed_stage = stage.name
        result.error = CancellationError(stage.name)
        logger.warning(
            f"Run cancelled at stage {stage.name}",
            extra={"stage": stage.name, "event": "run_cancelled"},
        )
        self._emit("stage_cancelled", stage=stage.name)
