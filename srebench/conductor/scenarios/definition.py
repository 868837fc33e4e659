"""Declarative scenario documents.

A scenario is loaded from YAML or JSON, with camelCase keys (snake_case is accepted too)::

    id: broken-image
    title: Deployment rolled out with an image that cannot be pulled
    parameters:
      image: nonexistent-registry.invalid/web:v2
    baselineManifests:
      - apiVersion: apps/v1
        kind: Deployment
        metadata: {name: web}
        spec: ...
    observations:
      - name: pods
        podPhase: {selector: {kind: Deployment, name: web}}
    steps:
      - name: web-available
        phase: baseline
        waitFor: {selector: {kind: Deployment, name: web}, condition: Available, timeout: 2m}
      - name: bad-image
        patch:
          selector: {kind: Deployment, name: web}
          path: spec.template.spec.containers[0].image
          value: ${image}
    faultSignature:
      condition: pods.reasons contains "ErrImagePull" or pods.reasons contains "ImagePullBackOff"
      detectionWindow: 90s
    recoveryPredicate: pods.allReady and len(pods.reasons) == 0
    timeout: 5m

``${name}`` placeholders are replaced with parameter values when the document is loaded;
``${namespace}`` is left for the run to fill in.
"""

import copy
import re
from typing import Annotated, Any, ClassVar, Literal, Union

from pydantic import Field, ValidationError, field_validator, model_validator

from srebench.conductor.constants import DEFAULT_DETECTION_WINDOW, DEFAULT_STEP_TIMEOUT, DEFAULT_TIMEOUT, STEP_PHASES
from srebench.conductor.oracles.predicate import compile_predicate
from srebench.errors import PredicateSyntaxError, ScenarioValidationError
from srebench.observer.targets import ObservationTarget, parse_target
from srebench.service.resources import ResourceSpec, Selector, _Model, substitute, untag
from srebench.utils.durations import parse_duration
from srebench.utils.jsonpath import split_path

STEP_TYPES = ("apply", "patch", "delete", "waitFor", "checkpoint", "inject")
STEP_WRAP = {
    "apply": "resource",
    "delete": "selector",
    "waitFor": "condition",
    "checkpoint": "label",
    "inject": "fault",
}

_ID = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")
_RETRY = re.compile(r"^retry\((\d+)\)$", re.IGNORECASE)


def _duration(value):
    if value is None:
        return None
    try:
        seconds = parse_duration(value)
    except ValueError as e:
        raise ValueError(str(e)) from e
    if seconds <= 0:
        raise ValueError(f"duration must be positive, got {value!r}")
    return seconds


def _check_predicate(expr: str, names: set[str], where: str):
    try:
        predicate = compile_predicate(expr)
    except PredicateSyntaxError as e:
        raise ValueError(f"{where}: {e}") from e
    unknown = predicate.references - names
    if unknown:
        raise ValueError(f"{where} references unknown observation(s): {', '.join(sorted(unknown))}")


class RetryPolicy(_Model):
    retry: int = Field(ge=1)


class _Step(_Model):
    mutating: ClassVar[bool] = False

    name: str | None = None
    phase: Literal["baseline", "fault"] = "fault"
    timeout: float = DEFAULT_STEP_TIMEOUT
    on_timeout: Literal["fail", "continue"] | RetryPolicy = "fail"
    optional: bool = False
    description: str | None = None

    @field_validator("timeout", mode="before")
    @classmethod
    def _parse_timeout(cls, value):
        return _duration(value)

    @field_validator("on_timeout", mode="before")
    @classmethod
    def _parse_on_timeout(cls, value):
        if isinstance(value, str):
            retry = _RETRY.match(value.strip())
            if retry:
                return {"retry": int(retry.group(1))}
            return value.strip().lower()
        return value

    @property
    def attempts(self) -> int:
        return 1 + self.on_timeout.retry if isinstance(self.on_timeout, RetryPolicy) else 1

    def label(self, index: int) -> str:
        return self.name or f"{self.type}#{index}"


class ApplyStep(_Step):
    mutating: ClassVar[bool] = True
    type: Literal["apply"] = "apply"
    resource: ResourceSpec


class PatchStep(_Step):
    """Either one ``path``/``value`` pair (with ``op``) or a list of JSON-patch style ``ops``."""

    mutating: ClassVar[bool] = True
    type: Literal["patch"] = "patch"
    selector: Selector
    path: str | None = None
    value: Any = None
    op: Literal["add", "replace", "remove"] = "replace"
    ops: list[dict[str, Any]] | None = None

    @model_validator(mode="after")
    def _path_or_ops(self):
        if bool(self.path) == bool(self.ops):
            raise ValueError("patch needs exactly one of path or ops")
        for op in self.patch_ops():
            if "path" not in op:
                raise ValueError("every patch op needs a path")
            split_path(op["path"])
        return self

    def patch_ops(self) -> list[dict]:
        if self.ops:
            return copy.deepcopy(self.ops)
        op = {"op": self.op, "path": self.path}
        if self.op != "remove":
            op["value"] = copy.deepcopy(self.value)
        return [op]


class DeleteStep(_Step):
    mutating: ClassVar[bool] = True
    type: Literal["delete"] = "delete"
    selector: Selector


class WaitForStep(_Step):
    """Wait for an observation predicate, or for a resource condition when ``selector`` is set."""

    type: Literal["waitFor"] = "waitFor"
    condition: str
    selector: Selector | None = None
    interval: float | None = None

    @field_validator("interval", mode="before")
    @classmethod
    def _parse_interval(cls, value):
        return _duration(value)

    @property
    def on_resource(self) -> bool:
        return self.selector is not None


class CheckpointStep(_Step):
    type: Literal["checkpoint"] = "checkpoint"
    label_: str = Field(alias="label")


class InjectStep(_Step):
    """A fault from the built-in library, e.g. ``inject: {fault: hpaMisconfiguration, args: {...}}``."""

    mutating: ClassVar[bool] = True
    type: Literal["inject"] = "inject"
    fault: str
    args: dict[str, Any] = Field(default_factory=dict)
    expected_signature: str | None = None

    def build(self):
        from srebench.generators.fault.inject_virtual import build_fault

        return build_fault(self.fault, self.args)


Step = Annotated[
    Union[ApplyStep, PatchStep, DeleteStep, WaitForStep, CheckpointStep, InjectStep],
    Field(discriminator="type"),
]


class Prerequisite(_Model):
    """A cluster add-on a scenario depends on (metrics-server, ArgoCD, ...)."""

    name: str
    url: str | None = None
    namespace: str | None = None
    resources: list[ResourceSpec] = Field(default_factory=list)
    steps: list[Step] = Field(default_factory=list)

    @field_validator("steps", mode="before")
    @classmethod
    def _parse_steps(cls, value):
        return [untag(s, STEP_TYPES, wrap=STEP_WRAP) for s in value or []]


class FaultSignature(_Model):
    condition: str
    detection_window: float = DEFAULT_DETECTION_WINDOW

    @field_validator("detection_window", mode="before")
    @classmethod
    def _parse_window(cls, value):
        return _duration(value)


class ScenarioDefinition(_Model):
    id: str
    title: str
    description: str = ""
    namespace: str | None = None
    cleanup_namespace: bool = True
    parameters: dict[str, Any] = Field(default_factory=dict)
    prerequisites: list[Prerequisite] = Field(default_factory=list)
    baseline_manifests: list[ResourceSpec] = Field(default_factory=list)
    observations: list[ObservationTarget] = Field(default_factory=list)
    steps: list[Step]
    baseline_predicate: str | None = None
    fault_signature: FaultSignature
    recovery_predicate: str
    remediation: list[Step] = Field(default_factory=list)
    timeout: float = DEFAULT_TIMEOUT
    poll_interval: float | None = None
    tags: list[str] = Field(default_factory=list)

    @field_validator("steps", "remediation", mode="before")
    @classmethod
    def _parse_steps(cls, value):
        return [untag(s, STEP_TYPES, wrap=STEP_WRAP) for s in value or []]

    @field_validator("observations", mode="before")
    @classmethod
    def _parse_observations(cls, value):
        return [parse_target(t) for t in value or []]

    @field_validator("timeout", "poll_interval", mode="before")
    @classmethod
    def _parse_durations(cls, value):
        return _duration(value)

    @field_validator("id")
    @classmethod
    def _check_id(cls, value):
        if not _ID.match(value):
            raise ValueError(f"scenario id {value!r} must be lowercase letters, digits and dashes")
        return value

    @model_validator(mode="after")
    def _check_structure(self):
        names = [o.name for o in self.observations]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate observation names: {', '.join(duplicates)}")
        known = set(names)

        phases = [s.phase for s in self.steps]
        if "fault" in phases and "baseline" in phases[phases.index("fault") :]:
            raise ValueError("baseline steps must come before every fault step")
        if not any(s.mutating and s.phase == "fault" for s in self.steps):
            raise ValueError("a scenario needs at least one mutating fault step (apply, patch, delete or inject)")

        _check_predicate(self.fault_signature.condition, known, "faultSignature.condition")
        _check_predicate(self.recovery_predicate, known, "recoveryPredicate")
        if self.baseline_predicate:
            _check_predicate(self.baseline_predicate, known, "baselinePredicate")
        for where, steps in (("steps", self.steps), ("remediation", self.remediation)):
            for i, step in enumerate(steps):
                if isinstance(step, WaitForStep) and not step.on_resource:
                    _check_predicate(step.condition, known, f"{where}[{i}] ({step.label(i)})")
                if isinstance(step, InjectStep):
                    try:
                        step.build()
                    except ValueError as e:
                        raise ValueError(f"{where}[{i}]: {e}") from e
        return self

    def steps_in_phase(self, phase: str) -> list[tuple[int, Step]]:
        if phase not in STEP_PHASES:
            raise ValueError(f"unknown phase {phase!r}")
        return [(i, s) for i, s in enumerate(self.steps) if s.phase == phase]

    def observation_names(self) -> list[str]:
        return [o.name for o in self.observations]

    @classmethod
    def from_document(cls, document: dict, params: dict | None = None, source: str | None = None):
        """Validate a parsed document, substituting ``${param}`` placeholders first.

        ``params`` override the document's parameter defaults; unknown names are rejected.
        """
        where = f" ({source})" if source else ""
        if not isinstance(document, dict):
            raise ScenarioValidationError(f"scenario document must be a mapping{where}")

        defaults = dict(document.get("parameters") or {})
        unknown = sorted(set(params or {}) - set(defaults))
        if unknown:
            raise ScenarioValidationError(f"unknown parameter(s) {', '.join(unknown)}{where}")
        effective = {**defaults, **(params or {})}

        body = substitute({k: v for k, v in document.items() if k != "parameters"}, effective)
        body["parameters"] = effective
        try:
            return cls.model_validate(body)
        except ValidationError as e:
            raise ScenarioValidationError(f"invalid scenario{where}:\n{e}") from e
