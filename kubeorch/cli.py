"""
CLI interface for kubeorch.

Deploys a multi-tier application onto Kubernetes in dependency order:
each stage is applied, then gated on readiness before the next one starts.

Exit codes: 0 success, 1 failure, 130 cancelled (Ctrl-C).
"""

import signal
import sys
import threading
from contextlib import contextmanager
from pathlib import Path

import click
from rich.markup import escape
from rich.table import Table

from kubeorch import __version__
from kubeorch.errors import KubeorchError
from kubeorch.lifecycle import EXIT_CANCELLED, EXIT_FAILED, LifecycleController, exit_code_for, wait_for_processes
from kubeorch.schemas import RunResult, StageOutcome
from kubeorch.utils import (
    console,
    format_duration,
    print_banner,
    print_error,
    print_info,
    print_success,
    print_warning,
    setup_logging,
)


@click.group()
@click.version_option(version=__version__, prog_name="kubeorch")
@click.option("--namespace", "-n", help="Target namespace (env: NAMESPACE)")
@click.option("--context", "kube_context", help="kubectl context (env: KUBE_CONTEXT)")
@click.option(
    "--manifests-dir", "-m",
    type=click.Path(file_okay=False, path_type=Path),
    help="Root directory of manifests (env: KUBEORCH_MANIFESTS_DIR)",
)
@click.option(
    "--plan", "plan_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Stage plan YAML (env: KUBEORCH_PLAN)",
)
@click.option("--env-file", type=click.Path(dir_okay=False, path_type=Path), help="Load settings from a .env file")
@click.option("--log-level", help="DEBUG, INFO, WARNING, ERROR (env: LOG_LEVEL)")
@click.option("--log-format", type=click.Choice(["pretty", "structured"]), help="Log format (env: LOG_FORMAT)")
@click.pass_context
def main(ctx, namespace, kube_context, manifests_dir, plan_path, env_file, log_level, log_format):
    """
    kubeorch - dependency-ordered Kubernetes deployments.

    Applies stages in order and waits for each to become ready before
    starting the next.
    """
    from kubeorch.config import load_config

    ctx.ensure_object(dict)
    if "config" in ctx.obj:
        # Already configured by the caller
        return
    try:
        config = load_config(env_file)
    except ValueError as e:
        raise click.UsageError(str(e))

    config = config.with_overrides(
        namespace=namespace,
        kube_context=kube_context,
        manifests_dir=manifests_dir,
        plan_path=plan_path,
        log_level=log_level.upper() if log_level else None,
        log_format=log_format,
    )
    setup_logging(config.log_level, config.log_format, config.log_file)
    ctx.obj["config"] = config


def _controller(ctx) -> LifecycleController:
    if "controller" not in ctx.obj:
        ctx.obj["controller"] = LifecycleController(ctx.obj["config"], progress_callback=_progress)
    return ctx.obj["controller"]


def _progress(event: str, **kwargs) -> None:
    stage = kwargs.get("stage")
    if event == "stage_start":
        print_info(f"{stage}: applying {kwargs.get('resources', 0)} resources")
    elif event == "stage_applied":
        console.print(f"  [dim]{stage}: submitted, waiting for readiness[/dim]")
    elif event == "stage_ready":
        print_success(f"{stage}: ready in {format_duration(kwargs.get('duration_s', 0.0))}")
    elif event == "policy_applied":
        print_success(f"{stage}: scaling policy {kwargs.get('policy')} registered")
    elif event == "stage_failed":
        print_error(f"{stage}: {escape(str(kwargs.get('error')))}")
        for identity in kwargs.get("unmet") or []:
            print_error(f"    not ready: {identity}")
    elif event == "stage_cancelled":
        print_warning(f"{stage}: cancelled")


@contextmanager
def _cancellable():
    """Turn SIGINT into a cancellation event for the duration of a run."""
    cancel = threading.Event()
    previous = None
    if threading.current_thread() is threading.main_thread():
        previous = signal.signal(signal.SIGINT, lambda signum, frame: cancel.set())
    try:
        yield cancel
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)


def _finish(result: RunResult) -> None:
    """Print the run summary and exit with the matching code."""
    table = Table(title=f"{result.mode} run")
    table.add_column("Stage")
    table.add_column("Outcome")
    table.add_column("Duration", justify="right")
    colors = {
        StageOutcome.READY: "green",
        StageOutcome.APPLIED: "cyan",
        StageOutcome.TIMED_OUT: "red",
        StageOutcome.FAILED: "red",
        StageOutcome.CANCELLED: "yellow",
    }
    for report in result.stages:
        color = colors.get(report.outcome, "white")
        table.add_row(report.stage, f"[{color}]{report.outcome.value}[/{color}]", format_duration(report.duration_s))
    console.print(table)

    code = exit_code_for(result)
    if code == 0:
        print_success(f"Deployment complete in {format_duration(result.elapsed_s)}")
    elif code == EXIT_CANCELLED:
        print_warning(f"Cancelled at stage {result.failed_stage}; earlier stages remain applied")
    else:
        print_error(f"Deployment failed at stage {result.failed_stage}: {escape(str(result.error))}")
    sys.exit(code)


def _fail(e: Exception) -> None:
    print_error(escape(str(e)))
    sys.exit(EXIT_FAILED)


@main.command("deploy")
@click.pass_context
def deploy(ctx):
    """Validate, then apply every stage with readiness gating."""
    config = ctx.obj["config"]
    print_banner(f"Deploying to {config.namespace} ({config.kube_context})")
    try:
        with _cancellable() as cancel:
            result = _controller(ctx).deploy(cancel=cancel)
    except KubeorchError as e:
        _fail(e)
    _finish(result)


@main.command("deploy-quick")
@click.pass_context
def deploy_quick(ctx):
    """Apply every stage without gating (development only, weaker guarantees)."""
    config = ctx.obj["config"]
    print_banner(f"Quick deploy to {config.namespace} ({config.kube_context})")
    print_warning("Readiness gating disabled: stages may start before their dependencies are ready")
    try:
        with _cancellable() as cancel:
            result = _controller(ctx).quick_deploy(cancel=cancel)
    except KubeorchError as e:
        _fail(e)
    _finish(result)


@main.command("validate")
@click.pass_context
def validate(ctx):
    """Validate the plan and manifests without changing the cluster."""
    try:
        count = _controller(ctx).validate()
    except KubeorchError as e:
        _fail(e)
    print_success(f"{count} documents valid")


@main.command("stages")
@click.pass_context
def stages(ctx):
    """Show the stage plan."""
    try:
        store = _controller(ctx).store
    except KubeorchError as e:
        _fail(e)

    table = Table(title=f"Plan: {store.plan_id}")
    table.add_column("#", justify="right")
    table.add_column("Stage")
    table.add_column("Resources")
    table.add_column("Readiness")
    table.add_column("Timeout", justify="right")
    for stage in store.stages:
        name = f"{stage.name} [dim](stateful)[/dim]" if stage.stateful else stage.name
        table.add_row(
            str(stage.ordinal),
            name,
            "\n".join(spec.identity for spec in stage.resources),
            stage.readiness.describe(),
            format_duration(stage.timeout_s),
        )
    console.print(table)
    for policy in store.policies:
        console.print(
            f"Scaling: {policy.identity} -> {policy.target} "
            f"({policy.min_replicas}-{policy.max_replicas}, {policy.metric} {policy.threshold}%)"
        )


@main.command("delete")
@click.pass_context
def delete(ctx):
    """Delete application resources, keeping the namespace and volumes."""
    try:
        removed = _controller(ctx).delete()
    except KubeorchError as e:
        _fail(e)
    print_success(f"Deleted {len(removed)} resources (namespace and persistent volumes kept)")


@main.command("clean")
@click.confirmation_option(
    prompt="Are you sure you want to delete the namespace and all stored data? This cannot be undone.",
)
@click.pass_context
def clean(ctx):
    """
    Delete everything, including persistent volumes and the namespace.

    WARNING: This permanently deletes stored data.
    """
    config = ctx.obj["config"]
    try:
        _controller(ctx).clean()
    except KubeorchError as e:
        _fail(e)
    print_success(f"Namespace {config.namespace} and its volumes deleted")


@main.command("status")
@click.pass_context
def status(ctx):
    """Show live pods, services, deployments, autoscalers and ingress."""
    try:
        report = _controller(ctx).status()
    except KubeorchError as e:
        _fail(e)

    if not report.namespace_found:
        print_warning(f"Namespace {report.namespace} not found")
        return

    print_banner(f"Namespace {report.namespace}")
    for title, rows in report.sections.items():
        if not rows:
            console.print(f"[bold]{title}[/bold]: none")
            continue
        table = Table(title=title)
        for column in rows[0]:
            table.add_column(column)
        for row in rows:
            table.add_row(*row.values())
        console.print(table)

    for stage, pending in report.stages.items():
        if pending:
            print_warning(f"{stage}: waiting on {', '.join(pending)}")
        else:
            print_success(f"{stage}: ready")


@main.command("restart")
@click.pass_context
def restart(ctx):
    """Rolling restart of the application deployment."""
    try:
        _controller(ctx).restart()
    except KubeorchError as e:
        _fail(e)
    print_success(f"Restarted deployment {ctx.obj['config'].app_name}")


@main.command("port-forward")
@click.pass_context
def port_forward(ctx):
    """Forward the application and dashboard ports to localhost."""
    config = ctx.obj["config"]
    try:
        processes = _controller(ctx).port_forward()
    except KubeorchError as e:
        _fail(e)
    print_info(f"Application: http://localhost:{config.app_port}")
    print_info(f"Dashboard:   http://localhost:{config.dashboard_port}")
    print_info("Press Ctrl-C to stop")
    try:
        code = wait_for_processes(processes)
    except KeyboardInterrupt:
        sys.exit(EXIT_CANCELLED)
    sys.exit(code)


@main.command("logs")
@click.option("--db", is_flag=True, help="Show database logs instead of application logs")
@click.option("--no-follow", is_flag=True, help="Print current logs and exit")
@click.pass_context
def logs(ctx, db: bool, no_follow: bool):
    """Stream application (or database) logs."""
    try:
        code = _controller(ctx).logs(db=db, follow=not no_follow)
    except KubeorchError as e:
        _fail(e)
    except KeyboardInterrupt:
        sys.exit(EXIT_CANCELLED)
    sys.exit(code)


@main.command("test-db-connection")
@click.pass_context
def test_db_connection(ctx):
    """Run a trivial query inside the database workload."""
    try:
        output = _controller(ctx).test_db_connection()
    except KubeorchError as e:
        _fail(e)
    console.print(output)
    print_success("Database connection successful")


if __name__ == "__main__":
    main()
