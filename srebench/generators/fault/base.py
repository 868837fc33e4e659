import logging
import time
from dataclasses import dataclass, field
from typing import Any, Literal

from srebench.conductor.trace import FAULT_INJECTED
from srebench.service.resources import ResourceSpec, Selector

logger = logging.getLogger("all.srebench.fault")


@dataclass(frozen=True)
class FaultSpec:
    """One deliberate mutation, plus the symptom it is expected to cause."""

    action: Literal["apply", "patch", "delete"]
    description: str
    resource: ResourceSpec | None = None
    selector: Selector | None = None
    ops: tuple = ()
    expected_signature: str | None = None
    parameters: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.action == "apply" and self.resource is None:
            raise ValueError("an apply fault needs a resource")
        if self.action in ("patch", "delete") and self.selector is None:
            raise ValueError(f"a {self.action} fault needs a selector")
        if self.action == "patch" and not self.ops:
            raise ValueError("a patch fault needs at least one op")


@dataclass(frozen=True)
class FaultRecord:
    step_index: int | None
    description: str
    expected_signature: str | None
    injected_at: float
    parameters: dict[str, Any]
    result: dict[str, Any]

    def to_detail(self) -> dict:
        return {
            "description": self.description,
            "expectedSignature": self.expected_signature,
            "injectedAt": round(self.injected_at, 3),
            "parameters": self.parameters,
            "result": self.result,
        }


class FaultInjector:
    """Applies fault steps through a ManifestApplier and records each one in the trace."""

    def __init__(self, applier, trace=None, namespace: str | None = None, params: dict | None = None, labels=None):
        self.applier = applier
        self.trace = trace
        self.namespace = namespace
        self.params = dict(params or {})
        self.labels = dict(labels or {})
        self.records: list[FaultRecord] = []

    def inject(self, fault: FaultSpec, step_index: int | None = None, state: str = "FaultInjecting"):
        logger.info(f"Injecting fault: {fault.description}")
        if fault.action == "apply":
            result = self.applier.apply(fault.resource, self.namespace, self.params, self.labels)
        elif fault.action == "patch":
            result = self.applier.patch(fault.selector, list(fault.ops), self.namespace)
        else:
            result = self.applier.delete(fault.selector, self.namespace)

        changed = result.changed if hasattr(result, "changed") else not result.already_absent
        if not changed:
            logger.warning(f"Fault '{fault.description}' did not change any object")

        record = FaultRecord(
            step_index=step_index,
            description=fault.description,
            expected_signature=fault.expected_signature,
            injected_at=time.time(),
            parameters=dict(fault.parameters),
            result=result.to_dict(),
        )
        self.records.append(record)
        if self.trace is not None:
            self.trace.append(FAULT_INJECTED, state, step_index=step_index, **record.to_detail())
        return result
