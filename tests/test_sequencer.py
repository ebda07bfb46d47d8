"""Tests for StageSequencer.

Tests cover:
- Strict stage ordering with readiness gating
- Failure, timeout and cancellation stop the run where they happen
- Scaling policies registered only after their target stage is ready
- Quick mode skips gating except a short wait after stateful stages
"""

import threading
import time

import pytest

from kubeorch.errors import CancellationError, PermanentError, ReadinessTimeout, SubmissionError, ValidationError
from kubeorch.readiness import PodsReady, ResourcesExist
from kubeorch.schemas import ResourceSpec, RunStatus, ScalingPolicy, Stage, StageOutcome
from kubeorch.sequencer import StageSequencer


def _configmap(name):
    return {"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": name}}


def _deployment(name):
    return {
        "apiVersion": "apps/v1", "kind": "Deployment", "metadata": {"name": name},
        "spec": {"replicas": 1, "template": {"metadata": {"labels": {"app": name}}}},
    }


def _stage(name, ordinal, *documents, readiness=None, timeout_s=2.0, stateful=False):
    return Stage(
        name=name,
        ordinal=ordinal,
        resources=tuple(ResourceSpec.from_document(d, "ns") for d in documents),
        readiness=readiness or ResourcesExist(),
        timeout_s=timeout_s,
        stateful=stateful,
    )


def _four_stages():
    return [
        _stage("base", 1, _configmap("base")),
        _stage("database", 2, _deployment("db"), readiness=PodsReady("app=db")),
        _stage("application", 3, _deployment("api"), readiness=PodsReady("app=api")),
        _stage("ingress", 4, _configmap("ingress")),
    ]


POLICY = ScalingPolicy(
    name="api-hpa", namespace="ns", target_kind="Deployment", target_name="api",
    min_replicas=2, max_replicas=5,
)


class Recorder:
    """progress_callback that records events and can act on one."""

    def __init__(self, on=None, action=None):
        self.events = []
        self.on = on
        self.action = action

    def __call__(self, event, **kwargs):
        self.events.append((event, kwargs.get("stage")))
        if self.on == (event, kwargs.get("stage")) and self.action:
            self.action()


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def sequencer(applier, probe, recorder):
    return StageSequencer(applier, probe, progress_callback=recorder)


class TestOrdering:
    """Stages run strictly in ordinal order."""

    def test_all_ready(self, sequencer, substrate, recorder):
        result = sequencer.run(_four_stages())
        assert result.status == RunStatus.SUCCEEDED
        assert result.success
        assert [r.outcome for r in result.stages] == [StageOutcome.READY] * 4
        assert substrate.applied == [
            "ns/ConfigMap/base", "ns/Deployment/db", "ns/Deployment/api", "ns/ConfigMap/ingress",
        ]

    def test_next_stage_starts_after_ready(self, sequencer, recorder):
        """stage_start of N+1 always follows stage_ready of N."""
        sequencer.run(_four_stages())
        starts_and_readies = [e for e in recorder.events if e[0] in ("stage_start", "stage_ready")]
        assert starts_and_readies == [
            ("stage_start", "base"), ("stage_ready", "base"),
            ("stage_start", "database"), ("stage_ready", "database"),
            ("stage_start", "application"), ("stage_ready", "application"),
            ("stage_start", "ingress"), ("stage_ready", "ingress"),
        ]

    def test_out_of_order_rejected(self, sequencer, substrate):
        """Nothing is submitted when ordinals are not strictly increasing."""
        stages = _four_stages()
        stages[1], stages[2] = stages[2], stages[1]
        with pytest.raises(ValidationError, match="out of order"):
            sequencer.run(stages)
        assert substrate.calls == []

    def test_rerun_converges(self, sequencer, substrate):
        """A second run re-applies the same identities without duplicates."""
        sequencer.run(_four_stages())
        objects = dict(substrate.objects)
        result = sequencer.run(_four_stages())
        assert result.success
        assert substrate.objects.keys() == objects.keys()


class TestFailure:
    """A failing stage stops the run with no rollback."""

    def test_rejection_at_stage_two(self, sequencer, substrate):
        substrate.rejections["ns/Deployment/db"] = "admission webhook denied the request"
        result = sequencer.run(_four_stages())

        assert result.status == RunStatus.FAILED
        assert result.failed_stage == "database"
        assert isinstance(result.error, SubmissionError)
        assert result.outcome_of("base") == StageOutcome.READY
        assert result.outcome_of("database") == StageOutcome.FAILED
        assert result.outcome_of("application") is None
        assert "ns/Deployment/api" not in substrate.applied
        # no rollback: stage 1 is still there
        assert ("ns", "ConfigMap", "base") in substrate.objects
        assert not any(call[0] == "delete" for call in substrate.calls)

    def test_rerun_after_fix(self, sequencer, substrate):
        substrate.rejections["ns/Deployment/db"] = "denied"
        assert not sequencer.run(_four_stages()).success
        del substrate.rejections["ns/Deployment/db"]
        assert sequencer.run(_four_stages()).success

    def test_readiness_timeout(self, sequencer, substrate):
        """A stage that never becomes ready fails with the unmet resources."""
        substrate.auto_ready = False
        stages = _four_stages()
        stages[1] = _stage("database", 2, _deployment("db"), readiness=PodsReady("app=db"), timeout_s=0.05)
        result = sequencer.run(stages)

        assert result.status == RunStatus.FAILED
        assert result.failed_stage == "database"
        assert result.outcome_of("database") == StageOutcome.TIMED_OUT
        assert isinstance(result.error, ReadinessTimeout)
        assert result.stages[-1].unmet
        assert "pods_ready(app=db" in str(result.error)
        assert "ns/Deployment/api" not in substrate.applied


class TestCancellation:
    """Cancellation stops the run at the next boundary or poll tick."""

    def test_cancel_during_stage_three(self, applier, probe, substrate):
        """Cancelling while stage 3 waits on pods that never come up stops within a poll interval."""
        cancel = threading.Event()
        recorder = Recorder(
            on=("stage_applied", "application"),
            action=lambda: threading.Timer(0.1, cancel.set).start(),
        )
        sequencer = StageSequencer(applier, probe, progress_callback=recorder)
        stages = _four_stages()
        stages[2] = _stage("application", 3, _deployment("api"), readiness=PodsReady("app=never"), timeout_s=5)

        start = time.monotonic()
        result = sequencer.run(stages, cancel=cancel)
        elapsed = time.monotonic() - start

        assert result.status == RunStatus.CANCELLED
        assert result.failed_stage == "application"
        assert isinstance(result.error, CancellationError)
        assert result.outcome_of("application") == StageOutcome.CANCELLED
        assert result.outcome_of("database") == StageOutcome.READY
        assert elapsed < 0.1 + 1.0
        # stage 3 was polled before the cancel landed
        assert any(call[0] == "get" and call[4] == "app=never" for call in substrate.calls)
        # earlier stages stay applied, later ones never start
        assert ("ns", "ConfigMap", "base") in substrate.objects
        assert ("ns", "Deployment", "db") in substrate.objects
        assert "ns/ConfigMap/ingress" not in substrate.applied

    def test_interrupted_submit_reports_cancelled(self, applier, probe, substrate, monkeypatch):
        """An apply broken by the same interrupt that set cancel is a cancellation, not a failure."""
        cancel = threading.Event()
        original = substrate.apply

        def interrupted(spec, dry_run=False):
            if spec.identity == "ns/Deployment/db":
                cancel.set()
                raise PermanentError("apply failed")
            return original(spec, dry_run)

        monkeypatch.setattr(substrate, "apply", interrupted)
        result = StageSequencer(applier, probe).run(_four_stages(), cancel=cancel)

        assert result.status == RunStatus.CANCELLED
        assert result.failed_stage == "database"
        assert isinstance(result.error, CancellationError)
        assert result.outcome_of("database") == StageOutcome.CANCELLED
        assert result.outcome_of("base") == StageOutcome.READY

    def test_interrupted_read_reports_cancelled(self, applier, probe, substrate, monkeypatch):
        """A readiness read broken by the interrupt is reported as Cancelled."""
        cancel = threading.Event()
        original = substrate.get

        def interrupted(kind, namespace, name=None, selector=None, timeout_s=None):
            if selector == "app=db":
                cancel.set()
                raise PermanentError("get pod failed")
            return original(kind, namespace, name=name, selector=selector, timeout_s=timeout_s)

        monkeypatch.setattr(substrate, "get", interrupted)
        result = StageSequencer(applier, probe).run(_four_stages(), cancel=cancel)

        assert result.status == RunStatus.CANCELLED
        assert result.failed_stage == "database"
        assert result.outcome_of("database") == StageOutcome.CANCELLED
        assert "ns/Deployment/api" not in substrate.applied

    def test_read_error_without_cancel_still_fails(self, applier, probe, substrate):
        substrate.read_error = PermanentError("forbidden")
        result = StageSequencer(applier, probe).run(_four_stages())
        assert result.status == RunStatus.FAILED
        assert result.outcome_of("base") == StageOutcome.FAILED

    def test_cancel_before_start(self, sequencer, substrate):
        cancel = threading.Event()
        cancel.set()
        result = sequencer.run(_four_stages(), cancel=cancel)
        assert result.status == RunStatus.CANCELLED
        assert result.stages == []
        assert substrate.applied == []


class TestScalingPolicies:
    """Policies are registered after their target's stage is ready."""

    def test_registered_after_target_ready(self, sequencer, substrate):
        result = sequencer.run(_four_stages(), [POLICY])
        assert result.policies == {"ns/HorizontalPodAutoscaler/api-hpa": "applied"}
        applied = substrate.applied
        assert applied.index("ns/HorizontalPodAutoscaler/api-hpa") == applied.index("ns/Deployment/api") + 1

    def test_not_registered_when_target_fails(self, sequencer, substrate):
        substrate.rejections["ns/Deployment/api"] = "denied"
        result = sequencer.run(_four_stages(), [POLICY])
        assert not result.success
        assert result.policies == {}
        assert "ns/HorizontalPodAutoscaler/api-hpa" not in substrate.applied

    def test_policy_rejection_fails_run(self, sequencer, substrate):
        """The stage stays ready but the run fails."""
        substrate.rejections["ns/HorizontalPodAutoscaler/api-hpa"] = "metrics API unavailable"
        result = sequencer.run(_four_stages(), [POLICY])
        assert result.status == RunStatus.FAILED
        assert result.failed_stage == "application"
        assert result.outcome_of("application") == StageOutcome.READY
        assert result.policies["ns/HorizontalPodAutoscaler/api-hpa"] == "failed"
        assert "ns/ConfigMap/ingress" not in substrate.applied


class TestQuickMode:
    """deploy-quick: no gating, short wait after stateful stages."""

    def test_no_gating(self, sequencer, substrate):
        substrate.auto_ready = False
        result = sequencer.run(_four_stages(), quick=True)
        assert result.success
        assert result.mode == "quick"
        assert [r.outcome for r in result.stages] == [StageOutcome.APPLIED] * 4
        assert not any(call[0] == "get" for call in substrate.calls)

    def test_stateful_settle_is_not_fatal(self, sequencer, substrate):
        substrate.auto_ready = False
        stages = _four_stages()
        stages[1] = _stage("database", 2, _deployment("db"), readiness=PodsReady("app=db"), stateful=True)
        result = sequencer.run(stages, quick=True, settle_timeout_s=0.05)
        assert result.success
        assert any(call[0] == "get" and call[1] == "Pod" for call in substrate.calls)
        assert "ns/ConfigMap/ingress" in substrate.applied
