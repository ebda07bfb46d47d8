"""
ResourceSpec Store - the declarative description of every deployable unit.

Loads a stage plan and the manifests it references, and holds them,
immutable, for one run.

Plan YAML schema:
    plan_id: wallet-app
    description: API + MySQL + observability
    stages:
      - name: base
        manifests: [base/namespace.yaml, base/configmap.yaml, base/secret.yaml]
        readiness: {type: exists}
        timeout_s: 60
      - name: database
        manifests: [apps/database/]
        readiness: {type: pods_ready, selector: "app=${DB_NAME}"}
        timeout_s: 300
        stateful: true
      - name: observability
        optional: true
        manifests: [monitoring/]
        readiness: {type: workloads_available}
    scaling:
      - target: {kind: Deployment, name: "${APP_NAME}"}
        min_replicas: 2
        max_replicas: 10
        metric: cpu
        threshold: 70

Manifest paths are relative to the manifests directory; a directory entry
loads its *.yaml / *.yml files in name order. HorizontalPodAutoscaler
documents are lifted out of their stage into ScalingPolicies so they are
registered only after their target is ready.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Optional

import yaml

from kubeorch.config import DeployConfig
from kubeorch.errors import ValidationError
from kubeorch.readiness import PodsReady, build_condition
from kubeorch.schemas import WORKLOAD_KINDS, ResourceSpec, ScalingPolicy, Stage

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)\}")
MANIFEST_SUFFIXES = (".yaml", ".yml")
SCALING_KINDS = ("HorizontalPodAutoscaler",)


def substitute_placeholders(text: str, values: dict[str, str]) -> str:
    """Replace ${NAME} placeholders; unknown names are left untouched."""
    return PLACEHOLDER_PATTERN.sub(lambda m: values.get(m.group(1), m.group(0)), text)


def _manifest_files(path: Path) -> list[Path]:
    if path.is_dir():
        return sorted(p for p in path.iterdir() if p.is_file() and p.suffix in MANIFEST_SUFFIXES)
    return [path]


def load_documents(path: Path) -> Iterator[dict[str, Any]]:
    """
    Yield every non-empty document in a manifest file, flattening `kind: List`.

    Raises:
        ValidationError: Invalid YAML
    """
    try:
        with open(path, "r") as f:
            documents = list(yaml.safe_load_all(f))
    except yaml.YAMLError as e:
        raise ValidationError(f"Invalid YAML in {path}: {e}")

    for document in documents:
        if document is None:
            continue
        if isinstance(document, dict) and document.get("kind") == "List":
            yield from (item for item in document.get("items") or [] if item)
        else:
            yield document


def _selector_terms(selector: str) -> Optional[dict[str, str]]:
    """Parse an equality-based selector ("a=b,c==d"); None for set-based syntax."""
    terms = {}
    for part in selector.split(","):
        part = part.strip()
        if not part:
            continue
        if "!=" in part or " in " in part or "(" in part:
            return None
        key, sep, value = part.replace("==", "=").partition("=")
        if not sep:
            return None
        terms[key.strip()] = value.strip()
    return terms


def _pod_labels(spec: ResourceSpec) -> dict[str, str]:
    template = spec.payload.get("spec", {}).get("template", {})
    return dict(template.get("metadata", {}).get("labels") or {})


@dataclass
class ResourceSpecStore:
    """
    Ordered stages and scaling policies for one run.

    Attributes:
        plan_id: Plan identifier
        stages: Stages in ordinal order
        policies: Scaling policies, registered after their target's stage
        description: Free-text plan description
    """
    plan_id: str
    stages: list[Stage]
    policies: list[ScalingPolicy] = field(default_factory=list)
    description: str = ""

    @classmethod
    def from_config(cls, config: DeployConfig) -> "ResourceSpecStore":
        """Load the plan and manifests named by `config`."""
        return cls.from_plan(
            config.plan_path,
            manifests_dir=config.manifests_dir,
            namespace=config.namespace,
            placeholders=config.placeholders(),
        )

    @classmethod
    def from_plan(
        cls,
        plan_path: Path,
        manifests_dir: Path,
        namespace: str,
        placeholders: Optional[dict[str, str]] = None,
    ) -> "ResourceSpecStore":
        """
        Load a plan file and every manifest it references.

        Args:
            plan_path: Plan YAML
            manifests_dir: Root for relative manifest paths
            namespace: Default namespace for namespaced documents
            placeholders: ${NAME} substitutions for the plan text

        Raises:
            ValidationError: Missing files, malformed plan or manifests
        """
        if not plan_path.exists():
            raise ValidationError(f"Plan file not found: {plan_path}")

        text = substitute_placeholders(plan_path.read_text(), placeholders or {})
        try:
            plan = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ValidationError(f"Invalid YAML syntax in {plan_path}: {e}")
        if not isinstance(plan, dict) or not plan.get("stages"):
            raise ValidationError(f"Plan {plan_path} defines no stages")

        stages: list[Stage] = []
        policies: list[ScalingPolicy] = []
        seen_names: set[str] = set()

        for position, entry in enumerate(plan["stages"], start=1):
            name = entry.get("name")
            if not name:
                raise ValidationError(f"Stage #{position} in {plan_path} has no name")
            if name in seen_names:
                raise ValidationError(f"Duplicate stage name: {name}")
            seen_names.add(name)

            resources, lifted = cls._load_stage_manifests(entry, manifests_dir, namespace)
            policies.extend(lifted)
            if not resources:
                if entry.get("optional", False):
                    logger.warning(
                        f"Skipping optional stage {name}: no manifests found",
                        extra={"stage": name, "event": "stage_skipped"},
                    )
                    continue
                raise ValidationError(f"Stage {name} has no resources")

            try:
                timeout_s = float(entry.get("timeout_s", 300))
                ordinal = int(entry.get("ordinal", position))
            except (TypeError, ValueError) as e:
                raise ValidationError(f"Stage {name}: {e}")
            if timeout_s <= 0:
                raise ValidationError(f"Stage {name}: timeout_s must be positive")

            stages.append(Stage(
                name=name,
                ordinal=ordinal,
                resources=tuple(resources),
                readiness=build_condition(entry.get("readiness")),
                timeout_s=timeout_s,
                stateful=bool(entry.get("stateful", False)),
            ))

        for entry in plan.get("scaling") or []:
            policies.append(ScalingPolicy.from_dict(entry, namespace))

        store = cls(
            plan_id=plan.get("plan_id", plan_path.stem),
            stages=stages,
            policies=policies,
            description=plan.get("description", ""),
        )
        store.validate()
        return store

    @staticmethod
    def _load_stage_manifests(
        entry: dict[str, Any], manifests_dir: Path, namespace: str
    ) -> tuple[list[ResourceSpec], list[ScalingPolicy]]:
        resources: list[ResourceSpec] = []
        policies: list[ScalingPolicy] = []
        for relative in entry.get("manifests") or []:
            path = manifests_dir / relative
            if not path.exists():
                if entry.get("optional", False):
                    continue
                raise ValidationError(f"Stage {entry.get('name')}: manifest not found: {path}")
            for manifest in _manifest_files(path):
                for document in load_documents(manifest):
                    if isinstance(document, dict) and document.get("kind") in SCALING_KINDS:
                        policies.append(ScalingPolicy.from_hpa(document, namespace, source=manifest))
                    else:
                        resources.append(ResourceSpec.from_document(document, namespace, source=manifest))
        return resources, policies

    def validate(self) -> None:
        """
        Check ordering and dependency invariants.

        - ordinals strictly increasing
        - no identity applied twice
        - a Namespace is applied before anything placed in it
        - a pods_ready selector is not satisfied only by a later stage
        - every scaling policy targets a workload defined by some stage

        Raises:
            ValidationError: On the first violated invariant
        """
        previous: Optional[Stage] = None
        for stage in self.stages:
            if previous is not None and stage.ordinal <= previous.ordinal:
                raise ValidationError(
                    f"Stage {stage.name} ordinal {stage.ordinal} must be greater than "
                    f"{previous.name} ordinal {previous.ordinal}"
                )
            previous = stage

        positions: dict[tuple[str, str, str], tuple[int, int]] = {}
        for stage in self.stages:
            for index, spec in enumerate(stage.resources):
                key = (spec.namespace, spec.kind, spec.name)
                if key in positions:
                    raise ValidationError(f"{spec.identity} is defined more than once")
                positions[key] = (stage.ordinal, index)

        namespace_positions = {
            spec.name: positions[("", "Namespace", spec.name)]
            for spec in self.specs() if spec.kind == "Namespace"
        }
        for spec in self.specs():
            declared = namespace_positions.get(spec.namespace)
            if declared is not None and positions[(spec.namespace, spec.kind, spec.name)] < declared:
                raise ValidationError(
                    f"{spec.identity} is applied before its Namespace {spec.namespace}"
                )

        for stage in self.stages:
            self._check_selector(stage)

        for policy in self.policies:
            if self.stage_for_policy(policy) is None:
                raise ValidationError(
                    f"Scaling policy {policy.identity} targets {policy.target}, "
                    "which no stage defines"
                )

    def _check_selector(self, stage: Stage) -> None:
        condition = stage.readiness
        if not isinstance(condition, PodsReady):
            return
        terms = _selector_terms(condition.selector)
        if not terms:
            return

        def matches(spec: ResourceSpec) -> bool:
            labels = _pod_labels(spec)
            return all(labels.get(k) == v for k, v in terms.items())

        earlier = [
            spec for s in self.stages if s.ordinal <= stage.ordinal
            for spec in s.workloads if matches(spec)
        ]
        if earlier:
            return
        later = [
            s.name for s in self.stages if s.ordinal > stage.ordinal
            and any(matches(spec) for spec in s.workloads)
        ]
        if later:
            raise ValidationError(
                f"Stage {stage.name} waits on pods {condition.selector}, "
                f"which are only created by later stage {later[0]}"
            )
        logger.warning(
            f"Stage {stage.name}: no workload in the plan matches selector {condition.selector}",
            extra={"stage": stage.name, "event": "selector_unmatched"},
        )

    def stage_for_policy(self, policy: ScalingPolicy) -> Optional[Stage]:
        """The stage that defines the policy's target workload."""
        for stage in self.stages:
            if policy.target_kind in WORKLOAD_KINDS and stage.defines(policy.target_kind, policy.target_name):
                return stage
        return None

    def policies_for(self, stage: Stage) -> list[ScalingPolicy]:
        """Policies whose target workload is defined by `stage`."""
        return [p for p in self.policies if stage.defines(p.target_kind, p.target_name)]

    def stage(self, name: str) -> Stage:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(f"Unknown stage: {name}")

    def specs(self) -> list[ResourceSpec]:
        """Every spec in apply order."""
        return [spec for stage in self.stages for spec in stage.resources]

    def __repr__(self) -> str:
        return f"ResourceSpecStore(plan_id={self.plan_id}, stages={len(self.stages)}, policies={len(self.policies)})"
