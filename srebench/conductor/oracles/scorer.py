"""Turn a finished run's trace and last snapshot into a ScoreReport.

Scoring is pure: no cluster access, no clock, identical inputs give byte-identical reports.
"""

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from srebench.conductor.constants import State
from srebench.conductor.oracles.predicate import Predicate
from srebench.conductor.trace import FAULT_INJECTED, REMEDIATION, ExecutionTrace
from srebench.observer.snapshot import thaw


class _ReportModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Deviation(_ReportModel):
    kind: str
    description: str
    status: str | None = None
    observed: Any = None
    expected: Any = None
    note: str | None = None
    step_index: int | None = None


class Failure(_ReportModel):
    reason: str
    state: str | None = None
    step_index: int | None = None
    step: str | None = None


class ScoreReport(_ReportModel):
    scenario_id: str
    run_id: str
    outcome: str
    passed: bool
    time_to_detect: float | None = None
    time_to_recover: float | None = None
    predicate_details: dict = Field(default_factory=dict)
    deviations: list[Deviation] = Field(default_factory=list)
    failure: Failure | None = None
    faults: list[dict] = Field(default_factory=list)
    remediation: dict | None = None
    transitions: list[dict] = Field(default_factory=list)

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, indent=2)


def _duration(start, end) -> float | None:
    if start is None or end is None:
        return None
    return round(end.timestamp - start.timestamp, 3)


def _transition_to(transitions, state: State):
    for entry in transitions:
        if entry.state == state.value:
            return entry
    return None


def score(trace: ExecutionTrace, final_snapshot, predicate) -> ScoreReport:
    if not isinstance(predicate, Predicate):
        predicate = Predicate(predicate)

    transitions = trace.transitions()
    outcome = transitions[-1].state if transitions else State.PROVISIONING.value
    result = predicate.evaluate(final_snapshot)

    deviations = [
        Deviation(
            kind="predicate",
            description=c.clause,
            status=c.status,
            observed=thaw(c.left),
            expected=thaw(c.right),
            note=c.note,
        )
        for c in result.deviations()
    ]
    if not result.passed and not deviations:
        deviations.append(Deviation(kind="predicate", description=result.expression, status=result.status))

    failure = None
    if outcome != State.RECOVERED.value:
        last = transitions[-1] if transitions else None
        if outcome == State.FAILED.value and last is not None:
            failure = Failure(
                reason=last.detail.get("reason") or last.error or "unknown",
                state=last.detail.get("from"),
                step_index=last.step_index,
                step=last.detail.get("step"),
            )
            deviations.insert(
                0,
                Deviation(
                    kind="failure",
                    description=failure.reason,
                    status="fail",
                    step_index=failure.step_index,
                    note=f"run failed in state {failure.state}" if failure.state else None,
                ),
            )
        elif outcome == State.TIMED_OUT.value:
            deviations.insert(
                0,
                Deviation(
                    kind="timeout",
                    description="recovery predicate did not hold before the scenario timeout",
                    status="fail",
                ),
            )

    faults = [
        {"stepIndex": e.step_index, **thaw(e.detail)}
        for e in trace.entries
        if e.action == FAULT_INJECTED
    ]
    remediation = None
    remediation_entry = trace.first(REMEDIATION)
    if remediation_entry is not None:
        remediation = {"stepIndex": remediation_entry.step_index, **thaw(remediation_entry.detail)}

    fault_start = _transition_to(transitions, State.FAULT_INJECTING)
    degraded = _transition_to(transitions, State.DEGRADED)
    recovered = _transition_to(transitions, State.RECOVERED)

    return ScoreReport(
        scenario_id=trace.scenario_id,
        run_id=trace.run_id,
        outcome=outcome,
        passed=outcome == State.RECOVERED.value and result.passed,
        time_to_detect=_duration(fault_start, degraded),
        time_to_recover=_duration(degraded, recovered),
        predicate_details=result.to_dict(),
        deviations=deviations,
        failure=failure,
        faults=faults,
        remediation=remediation,
        transitions=[
            {
                "from": e.detail.get("from"),
                "to": e.state,
                "reason": e.detail.get("reason"),
                "timestamp": round(e.timestamp, 3),
            }
            for e in transitions
        ],
    )
