"""Tests for the kubeorch CLI (click CliRunner)."""

from unittest.mock import MagicMock

import pytest
from click.testing import CliRunner

from kubeorch.cli import main
from kubeorch.errors import ReadinessTimeout
from kubeorch.lifecycle import LifecycleController, StatusReport
from kubeorch.schemas import RunResult, RunStatus, StageOutcome, StageReport


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def controller(config, substrate, applier, probe):
    return LifecycleController(config, substrate=substrate, applier=applier, probe=probe)


def _invoke(runner, args, config, controller, **kwargs):
    return runner.invoke(main, args, obj={"config": config, "controller": controller}, **kwargs)


def test_help_lists_commands(runner):
    result = runner.invoke(main, ["--help"])
    assert result.exit_code == 0
    for command in ("deploy", "deploy-quick", "delete", "clean", "status", "restart",
                    "port-forward", "logs", "validate", "stages", "test-db-connection"):
        assert command in result.output


def test_deploy_success(runner, config, controller, substrate):
    result = _invoke(runner, ["deploy"], config, controller)
    assert result.exit_code == 0, result.output
    assert "Deployment complete" in result.output
    assert "wallet-app/Ingress/wallet-ingress" in substrate.applied


def test_deploy_failure_exit_code(runner, config):
    controller = MagicMock()
    controller.deploy.return_value = RunResult(
        status=RunStatus.FAILED,
        stages=[StageReport(stage="database", ordinal=2, outcome=StageOutcome.TIMED_OUT, unmet=["Pod/mysql-0"])],
        failed_stage="database",
        error=ReadinessTimeout("database", 300, ["Pod/mysql-0"]),
    )
    result = _invoke(runner, ["deploy"], config, controller)
    assert result.exit_code == 1
    assert "failed at stage database" in result.output


def test_deploy_cancelled_exit_code(runner, config):
    controller = MagicMock()
    controller.deploy.return_value = RunResult(status=RunStatus.CANCELLED, failed_stage="application")
    result = _invoke(runner, ["deploy"], config, controller)
    assert result.exit_code == 130
    assert "Cancelled at stage application" in result.output


def test_deploy_invalid_plan(runner, config, controller, substrate):
    substrate.rejections["wallet-app/Ingress/wallet-ingress"] = "unknown field"
    result = _invoke(runner, ["deploy"], config, controller)
    assert result.exit_code == 1
    assert "is invalid" in result.output
    assert substrate.applied == []


def test_deploy_quick(runner, config, controller):
    result = _invoke(runner, ["deploy-quick"], config, controller)
    assert result.exit_code == 0, result.output
    assert "Readiness gating disabled" in result.output


def test_validate(runner, config, controller, substrate):
    result = _invoke(runner, ["validate"], config, controller)
    assert result.exit_code == 0, result.output
    assert "documents valid" in result.output
    assert substrate.objects == {}


def test_stages(runner, config, controller):
    result = _invoke(runner, ["stages"], config, controller)
    assert result.exit_code == 0, result.output
    for name in ("base", "database", "application", "ingress"):
        assert name in result.output
    assert "Scaling:" in result.output


def test_clean_requires_confirmation(runner, config, controller, substrate):
    result = _invoke(runner, ["clean"], config, controller, input="n\n")
    assert result.exit_code == 1
    assert not any(call[0] == "delete_namespace" for call in substrate.calls)


def test_clean_yes(runner, config, controller, substrate):
    result = _invoke(runner, ["clean", "--yes"], config, controller)
    assert result.exit_code == 0, result.output
    assert ("delete_namespace", "wallet-app") in substrate.calls


def test_delete(runner, config, controller, substrate):
    result = _invoke(runner, ["delete"], config, controller)
    assert result.exit_code == 0, result.output
    assert "namespace and persistent volumes kept" in result.output
    assert not any(call[0] == "delete_namespace" for call in substrate.calls)


def test_status_namespace_not_found(runner, config, controller):
    result = _invoke(runner, ["status"], config, controller)
    assert result.exit_code == 0
    assert "not found" in result.output


def test_status_sections(runner, config):
    controller = MagicMock()
    controller.status.return_value = StatusReport(
        namespace="wallet-app",
        namespace_found=True,
        sections={"Pods": [{"name": "mysql-0", "ready": "1/1", "status": "Running", "restarts": "0"}], "HPA": []},
        stages={"database": [], "application": ["Pod/wallet-api-1"]},
    )
    result = _invoke(runner, ["status"], config, controller)
    assert result.exit_code == 0
    assert "mysql-0" in result.output
    assert "HPA: none" in result.output
    assert "waiting on Pod/wallet-api-1" in result.output


def test_restart(runner, config, controller, substrate):
    result = _invoke(runner, ["restart"], config, controller)
    assert result.exit_code == 0
    assert substrate.calls == [("rollout_restart", "Deployment", "wallet-api", "wallet-app")]


def test_logs_db(runner, config, controller, substrate):
    result = _invoke(runner, ["logs", "--db", "--no-follow"], config, controller)
    assert result.exit_code == 0
    assert substrate.calls == [("logs", "wallet-app", "deployment/mysql", False)]


def test_port_forward(runner, config, controller):
    result = _invoke(runner, ["port-forward"], config, controller)
    assert result.exit_code == 0
    assert "localhost:8080" in result.output


def test_db_connection_without_password(runner, config, controller):
    result = _invoke(runner, ["test-db-connection"], config, controller)
    assert result.exit_code == 1
    assert "DB_PASSWORD" in result.output


def test_config_from_environment(runner, manifests_dir, monkeypatch, tmp_path):
    """Without injected objects the group loads config from env and flags."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("KUBEORCH_MANIFESTS_DIR", str(manifests_dir))
    monkeypatch.setenv("DB_NAME", "mysql")
    result = runner.invoke(main, ["--context", "kind-dev", "stages"])
    assert result.exit_code == 0, result.output
    assert "database" in result.output


def test_invalid_environment(runner, monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("APP_PORT", "http")
    result = runner.invoke(main, ["stages"])
    assert result.exit_code == 2
    assert "APP_PORT" in result.output
