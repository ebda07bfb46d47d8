"""
Configuration management for kubeorch.

Every setting comes from the environment (optionally seeded from a .env
file) and lands in a single DeployConfig that is passed explicitly to the
LifecycleController. Nothing here is stored in module-level globals.
"""

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


# Packaged plan used when KUBEORCH_PLAN is not set
DEFAULT_PLAN_PATH = Path(__file__).parent / "plans" / "default.yaml"


@dataclass(frozen=True)
class DeployConfig:
    """
    Runtime settings for one kubeorch invocation.

    Attributes:
        namespace: Target namespace for every namespaced resource
        app_name: Application workload name (also its pod label app=<name>)
        db_name: Database workload name (also its pod label app=<name>)
        kube_context: kubectl context passed on every call
        manifests_dir: Root that plan manifest paths are relative to
        plan_path: Stage plan YAML
        poll_interval_s: ReadinessProbe poll interval
        kubectl: kubectl executable
        dashboard_service: Service name tunnelled by port-forward
        app_port: Local/remote port for the application service
        dashboard_port: Local/remote port for the dashboard service
        db_user: User for test-db-connection
        db_password: Password for test-db-connection
        db_database: Schema for test-db-connection
        log_level: Logging level name
        log_format: "pretty" (rich) or "structured" (JSON)
        log_file: Optional log file path
    """
    namespace: str = "wallet-app"
    app_name: str = "wallet-api"
    db_name: str = "mysql"
    kube_context: str = "minikube"
    manifests_dir: Path = Path(".")
    plan_path: Path = DEFAULT_PLAN_PATH
    poll_interval_s: float = 2.0
    kubectl: str = "kubectl"
    dashboard_service: str = "grafana"
    app_port: int = 8080
    dashboard_port: int = 3000
    db_user: str = "mysql"
    db_password: Optional[str] = None
    db_database: str = "mydb"
    log_level: str = "INFO"
    log_format: str = "pretty"
    log_file: Optional[Path] = None

    def placeholders(self) -> dict[str, str]:
        """Values substituted for ${NAME} placeholders in plan files."""
        return {
            "NAMESPACE": self.namespace,
            "APP_NAME": self.app_name,
            "DB_NAME": self.db_name,
            "KUBE_CONTEXT": self.kube_context,
        }

    def with_overrides(self, **overrides) -> "DeployConfig":
        """Return a copy with non-None overrides applied (CLI flags)."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def load_config(env_file: Optional[Path] = None) -> DeployConfig:
    """
    Load kubeorch configuration from the environment.

    A .env file (KUBEORCH_ENV_FILE, or ./.env) is loaded first without
    overriding variables that are already set.

    Args:
        env_file: Explicit .env file to load

    Returns:
        DeployConfig instance

    Raises:
        ValueError: If a numeric variable cannot be parsed
    """
    if env_file is None and os.environ.get("KUBEORCH_ENV_FILE"):
        env_file = Path(os.environ["KUBEORCH_ENV_FILE"]).expanduser()
    if env_file is None:
        env_file = Path(".env")
    if env_file.exists():
        load_dotenv(env_file, override=False)

    defaults = DeployConfig()
    env = os.environ

    log_file = env.get("LOG_FILE")
    plan = env.get("KUBEORCH_PLAN")

    return DeployConfig(
        namespace=env.get("NAMESPACE", defaults.namespace),
        app_name=env.get("APP_NAME", defaults.app_name),
        db_name=env.get("DB_NAME", defaults.db_name),
        kube_context=env.get("KUBE_CONTEXT", defaults.kube_context),
        manifests_dir=Path(env.get("KUBEORCH_MANIFESTS_DIR", str(defaults.manifests_dir))).expanduser(),
        plan_path=Path(plan).expanduser() if plan else defaults.plan_path,
        poll_interval_s=_env_float("KUBEORCH_POLL_INTERVAL", defaults.poll_interval_s),
        kubectl=env.get("KUBECTL", defaults.kubectl),
        dashboard_service=env.get("DASHBOARD_SERVICE", defaults.dashboard_service),
        app_port=_env_int("APP_PORT", defaults.app_port),
        dashboard_port=_env_int("DASHBOARD_PORT", defaults.dashboard_port),
        db_user=env.get("DB_USER", defaults.db_user),
        db_password=env.get("DB_PASSWORD") or None,
        db_database=env.get("DB_DATABASE", defaults.db_database),
        log_level=env.get("LOG_LEVEL", defaults.log_level).upper(),
        log_format=env.get("LOG_FORMAT", defaults.log_format),
        log_file=Path(log_file).expanduser() if log_file else None,
    )
