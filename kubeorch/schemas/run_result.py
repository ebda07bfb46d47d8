"""
Result schemas - what one sequencer run reports.

A RunResult is created per invocation and discarded after reporting. There is
no persisted history: re-running the sequencer re-derives state from the
live cluster, so runs are idempotent by convergence rather than by memo.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class StageOutcome(str, Enum):
    """Per-stage outcome."""
    APPLIED = "applied"
    READY = "ready"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    """Overall run status."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class SubmitResult:
    """
    Outcome of submitting one resource group.

    Attributes:
        success: True only if every spec was accepted
        applied: Identities accepted, in submission order
        failed_identity: First identity rejected (None on success)
        reason: Rejection reason
        transient: True if the failure was exhausted connectivity retries
        error: The SubmissionError describing the failure
    """
    success: bool
    applied: list[str] = field(default_factory=list)
    failed_identity: Optional[str] = None
    reason: Optional[str] = None
    transient: bool = False
    error: Optional[Exception] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": self.success, "applied": self.applied}
        if not self.success:
            result["failed_identity"] = self.failed_identity
            result["reason"] = self.reason
            result["transient"] = self.transient
        return result


@dataclass
class StageReport:
    """How far one stage got."""
    stage: str
    ordinal: int
    outcome: StageOutcome
    duration_s: float = 0.0
    applied: list[str] = field(default_factory=list)
    unmet: list[str] = field(default_factory=list)
    error_message: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "stage": self.stage,
            "ordinal": self.ordinal,
            "outcome": self.outcome.value,
            "duration_s": round(self.duration_s, 3),
            "applied": self.applied,
        }
        if self.unmet:
            result["unmet"] = self.unmet
        if self.error_message:
            result["error_message"] = self.error_message
        return result


@dataclass
class RunResult:
    """
    Result of one sequencer run.

    Attributes:
        status: Overall status
        stages: Reports for every stage that was started, in order
        failed_stage: Name of the stage that failed or was cancelled
        error: The SubmissionError / ReadinessTimeout / ValidationError / CancellationError
        elapsed_s: Wall time of the run
        policies: Scaling policy identity -> "applied" or "failed"
        mode: "deploy" or "quick"
    """
    status: RunStatus = RunStatus.SUCCEEDED
    stages: list[StageReport] = field(default_factory=list)
    failed_stage: Optional[str] = None
    error: Optional[Exception] = None
    elapsed_s: float = 0.0
    policies: dict[str, str] = field(default_factory=dict)
    mode: str = "deploy"

    @property
    def success(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    def outcome_of(self, stage_name: str) -> Optional[StageOutcome]:
        """Outcome for `stage_name`, or None if the stage never started."""
        for report in self.stages:
            if report.stage == stage_name:
                return report.outcome
        return None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "mode": self.mode,
            "status": self.status.value,
            "elapsed_s": round(self.elapsed_s, 3),
            "stages": [report.to_dict() for report in self.stages],
        }
        if self.policies:
            result["policies"] = self.policies
        if self.failed_stage:
            result["failed_stage"] = self.failed_stage
        if self.error is not None:
            result["error"] = str(self.error)
        return result
