"""Declarative resource descriptions and the result types returned by the applier."""

import copy
import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from string import Template
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

# Kinds that never carry metadata.namespace
CLUSTER_SCOPED_KINDS = frozenset(
    {
        "Namespace",
        "Node",
        "PersistentVolume",
        "StorageClass",
        "ClusterRole",
        "ClusterRoleBinding",
        "CustomResourceDefinition",
        "PriorityClass",
        "IngressClass",
        "ValidatingWebhookConfiguration",
        "MutatingWebhookConfiguration",
        "APIService",
    }
)

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
SCENARIO_LABEL = "srebench.io/scenario"
RUN_LABEL = "srebench.io/run"

_WHOLE_PARAM = re.compile(r"^\$\{(\w+)\}$")

# apiVersion assumed for selectors that name only a kind
DEFAULT_API_VERSIONS = {
    "Deployment": "apps/v1",
    "StatefulSet": "apps/v1",
    "DaemonSet": "apps/v1",
    "ReplicaSet": "apps/v1",
    "HorizontalPodAutoscaler": "autoscaling/v2",
    "NetworkPolicy": "networking.k8s.io/v1",
    "Ingress": "networking.k8s.io/v1",
    "Job": "batch/v1",
    "CronJob": "batch/v1",
    "Application": "argoproj.io/v1alpha1",
    "Rollout": "argoproj.io/v1alpha1",
}


def is_namespaced(kind: str) -> bool:
    return kind not in CLUSTER_SCOPED_KINDS


def substitute(value, params: dict[str, Any]):
    """Replace ``${name}`` placeholders recursively.

    A string that is exactly one placeholder takes the parameter's own type, so
    ``maxReplicas: ${max_replicas}`` renders as an int.
    """
    if isinstance(value, str):
        whole = _WHOLE_PARAM.match(value)
        if whole and whole.group(1) in params:
            return copy.deepcopy(params[whole.group(1)])
        return Template(value).safe_substitute({k: str(v) for k, v in params.items()})
    if isinstance(value, dict):
        return {k: substitute(v, params) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute(v, params) for v in value]
    return value


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True, extra="forbid")


class Selector(_Model):
    api_version: str = "v1"
    kind: str
    name: str | None = None
    namespace: str | None = None
    label_selector: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _default_api_version(cls, data):
        if isinstance(data, dict) and not (data.get("apiVersion") or data.get("api_version")):
            kind = data.get("kind")
            if kind in DEFAULT_API_VERSIONS:
                return {**data, "apiVersion": DEFAULT_API_VERSIONS[kind]}
        return data

    @model_validator(mode="after")
    def _needs_target(self):
        if not self.name and not self.label_selector:
            raise ValueError(f"selector for {self.kind} needs a name or a labelSelector")
        return self

    def bind(self, namespace: str) -> "Selector":
        """Fill in the run namespace for namespaced kinds that do not pin one."""
        if self.namespace or not is_namespaced(self.kind):
            return self
        return self.model_copy(update={"namespace": namespace})

    def describe(self) -> str:
        target = self.name or f"[{self.label_selector}]"
        prefix = f"{self.namespace}/" if self.namespace else ""
        return f"{self.kind}/{prefix}{target}"


class ResourceSpec(_Model):
    api_version: str
    kind: str
    name: str
    namespace: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    body: dict[str, Any] = Field(default_factory=dict)
    source_of_truth: Literal["git", "manual"] = "git"

    @model_validator(mode="before")
    @classmethod
    def _from_manifest(cls, data):
        """Accept a raw Kubernetes manifest, or ``{manifest: {...}, sourceOfTruth: ...}``."""
        if not isinstance(data, dict):
            return data
        if "manifest" in data:
            extra = {k: v for k, v in data.items() if k != "manifest"}
            return {**cls._split_manifest(data["manifest"]), **extra}
        if "metadata" in data:
            extra = {k: v for k, v in data.items() if k in ("sourceOfTruth", "source_of_truth")}
            manifest = {k: v for k, v in data.items() if k not in extra}
            return {**cls._split_manifest(manifest), **extra}
        return data

    @staticmethod
    def _split_manifest(manifest: dict) -> dict:
        if not isinstance(manifest, dict):
            raise ValueError("manifest must be a mapping")
        metadata = manifest.get("metadata") or {}
        if "name" not in metadata:
            raise ValueError("manifest.metadata.name is required")
        return {
            "apiVersion": manifest.get("apiVersion"),
            "kind": manifest.get("kind"),
            "name": metadata["name"],
            "namespace": metadata.get("namespace"),
            "labels": metadata.get("labels") or {},
            "annotations": metadata.get("annotations") or {},
            "body": {k: v for k, v in manifest.items() if k not in ("apiVersion", "kind", "metadata")},
        }

    def selector(self, namespace: str | None = None) -> Selector:
        ns = (self.namespace or namespace) if is_namespaced(self.kind) else None
        return Selector(api_version=self.api_version, kind=self.kind, name=self.name, namespace=ns)

    def render(
        self, namespace: str | None = None, params: dict[str, Any] | None = None, labels: dict[str, str] | None = None
    ) -> dict:
        """Build a fresh manifest dict for one run. The ResourceSpec itself is never modified."""
        params = dict(params or {})
        if namespace:
            params.setdefault("namespace", namespace)

        metadata: dict[str, Any] = {"name": self.name}
        merged_labels = {**self.labels, **(labels or {})}
        if merged_labels:
            metadata["labels"] = merged_labels
        if self.annotations:
            metadata["annotations"] = dict(self.annotations)
        if is_namespaced(self.kind):
            ns = self.namespace or namespace
            if ns:
                metadata["namespace"] = ns

        manifest = {"apiVersion": self.api_version, "kind": self.kind, "metadata": metadata}
        manifest.update(copy.deepcopy(self.body))
        return substitute(manifest, params)


@dataclass(frozen=True)
class ApplyResult:
    action: Literal["created", "configured", "patched", "unchanged"]
    kind: str
    name: str
    namespace: str | None = None
    attempts: int = 1
    ok: bool = True

    @property
    def changed(self) -> bool:
        return self.action != "unchanged"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class DeleteResult:
    kind: str
    target: str
    namespace: str | None = None
    deleted: tuple[str, ...] = ()
    attempts: int = 1
    ok: bool = True

    @property
    def already_absent(self) -> bool:
        return not self.deleted

    def to_dict(self) -> dict:
        out = asdict(self)
        out["deleted"] = list(self.deleted)
        return out


class Outcome(str, Enum):
    READY = "Ready"
    TIMED_OUT = "TimedOut"
    ERRORED = "Errored"


@dataclass(frozen=True)
class WaitResult:
    outcome: Outcome
    elapsed: float
    polls: int
    error: str | None = None

    def to_dict(self) -> dict:
        return {"outcome": self.outcome.value, "elapsed": self.elapsed, "polls": self.polls, "error": self.error}


@dataclass(frozen=True)
class DriftReport:
    kind: str
    name: str
    source_of_truth: str
    present: bool
    differences: tuple[str, ...] = field(default_factory=tuple)

    @property
    def drifted(self) -> bool:
        if self.source_of_truth != "git":
            return False
        return not self.present or bool(self.differences)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "name": self.name,
            "sourceOfTruth": self.source_of_truth,
            "present": self.present,
            "drifted": self.drifted,
            "differences": list(self.differences),
        }


def untag(data, tags, wrap: dict[str, str] | None = None) -> dict:
    """Turn the YAML key form ``{name: x, podPhase: {...}}`` into ``{name: x, type: podPhase, ...}``.

    For tags listed in ``wrap`` a payload that is not already keyed by the wrapped field is stored
    under it, so ``checkpoint: baseline`` and ``apply: {apiVersion: ...}`` both work.
    """
    if not isinstance(data, dict) or "type" in data:
        return data
    present = [t for t in tags if t in data]
    if len(present) != 1:
        raise ValueError(f"expected exactly one of {', '.join(tags)}, got {sorted(data)}")
    tag = present[0]
    inner = data[tag]
    rest = {k: v for k, v in data.items() if k != tag}
    field_name = (wrap or {}).get(tag)
    if field_name and not (isinstance(inner, dict) and field_name in inner):
        return {**rest, "type": tag, field_name: inner}
    if not isinstance(inner, dict):
        raise ValueError(f"{tag} expects a mapping")
    return {**rest, **inner, "type": tag}
