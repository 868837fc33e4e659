"""The scenario state machine.

Provisioning -> BaselineDeploying -> BaselineHealthy -> FaultInjecting -> Degraded
    -> (Remediating) -> Recovered | TimedOut, with Failed reachable from every non-terminal state.

``Failed`` means the scenario infrastructure broke (cluster, baseline, fault never manifested,
cancellation). ``TimedOut`` means the incident was never resolved. Every run ends with a
ScoreReport, a persisted trace, and the handle released if the engine acquired it.
"""

import dataclasses
import logging
import threading
import time
import uuid
from pathlib import Path

from srebench.conductor.constants import NAMESPACE_PREFIX, TERMINAL_STATES, TRANSITIONS, State
from srebench.conductor.oracles.predicate import compile_predicate
from srebench.conductor.oracles.scorer import ScoreReport, score
from srebench.conductor.scenarios.definition import (
    ApplyStep,
    CheckpointStep,
    DeleteStep,
    InjectStep,
    PatchStep,
    RetryPolicy,
    ScenarioDefinition,
    WaitForStep,
)
from srebench.conductor.trace import NOTE, REMEDIATION, SNAPSHOT, STEP, TRANSITION, ExecutionTrace
from srebench.config import Settings, get_settings
from srebench.errors import FatalApplyError, IllegalTransitionError, PredicateTimeout, SREBenchError, ScenarioCancelled
from srebench.generators.fault.base import FaultSpec
from srebench.generators.fault.inject_virtual import VirtualizationFaultInjector
from srebench.observer.collector import ObservationCollector
from srebench.service.applier import ManifestApplier
from srebench.service.cluster import ClusterConfig, acquire
from srebench.service.resources import MANAGED_BY_LABEL, RUN_LABEL, SCENARIO_LABEL, Outcome
from srebench.utils.sigint_aware_section import CancellationToken

logger = logging.getLogger("all.srebench.engine")


class StepFailed(SREBenchError):
    def __init__(self, reason: str, step_index: int | None = None, step: str | None = None):
        super().__init__(reason)
        self.reason = reason
        self.step_index = step_index
        self.step = step


def new_run_id() -> str:
    return uuid.uuid4().hex[:8]


def run_namespace(scenario_id: str, run_id: str) -> str:
    return f"{NAMESPACE_PREFIX}-{scenario_id[:40].rstrip('-')}-{run_id}"


class ScenarioEngine:
    def __init__(
        self,
        definition: ScenarioDefinition,
        cluster,
        settings: Settings | None = None,
        cancel: CancellationToken | None = None,
        store=None,
        remediate: bool = False,
        run_id: str | None = None,
        namespace: str | None = None,
    ):
        """``cluster`` is either a ClusterConfig (the engine acquires and releases the cluster) or
        an already acquired ClusterHandle (left to the caller)."""
        self.definition = definition
        self.cluster = cluster
        self.settings = settings or get_settings()
        self.cancel = cancel or CancellationToken()
        self.store = store
        self.remediate = remediate
        self.run_id = run_id or new_run_id()
        self.namespace = namespace or definition.namespace or run_namespace(definition.id, self.run_id)
        self.poll_interval = definition.poll_interval or self.settings.poll_interval
        self.labels = {MANAGED_BY_LABEL: "srebench", SCENARIO_LABEL: definition.id, RUN_LABEL: self.run_id}

        self.trace = ExecutionTrace(self.run_id, definition.id)
        self.state: State | None = None
        self.handle = None
        self.applier = None
        self.collector = None
        self.injector = None
        self.last_snapshot = None
        self.report: ScoreReport | None = None
        self.trace_path: Path | None = None

        self._owns_handle = False
        self._namespace_created = False
        self._lock = threading.Lock()
        self._remediation_requested = threading.Event()
        self._remediation_note = None
        self._started = None
        self._deadline = None

    # state machine

    def _transition(self, new: State, reason: str, step_index=None, step=None, snapshot=None, error=None, **extra):
        with self._lock:
            old = self.state
            allowed = TRANSITIONS.get(old, set()) if old is not None else {State.PROVISIONING}
            if new not in allowed:
                raise IllegalTransitionError(f"Illegal transition {old} -> {new}")
            self.state = new
        self.trace.append(
            TRANSITION,
            new.value,
            step_index=step_index,
            observed_state=snapshot,
            error=error,
            **{"from": old.value if old else None, "reason": reason, "step": step, **extra},
        )
        logger.info(f"[{self.definition.id}/{self.run_id}] {old or '-'} -> {new}: {reason}")

    def _fail(self, reason: str, step_index=None, step=None, **extra):
        if self.state in TERMINAL_STATES:
            return
        self._transition(State.FAILED, reason, step_index=step_index, step=step, error=reason, **extra)

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def status(self) -> dict:
        elapsed = time.monotonic() - self._started if self._started else 0.0
        remaining = max(0.0, self._deadline - time.monotonic()) if self._deadline else None
        return {
            "runId": self.run_id,
            "scenarioId": self.definition.id,
            "state": self.state.value if self.state else None,
            "namespace": self.namespace,
            "elapsed": round(elapsed, 1),
            "remaining": round(remaining, 1) if remaining is not None else None,
            "remediationRequested": self._remediation_requested.is_set(),
            "traceLength": len(self.trace),
        }

    def notify_remediation(self, note: str | None = None, agent: str | None = None) -> bool:
        """An agent reports it has remediated the incident. Returns False once the run is over."""
        if self.terminal:
            return False
        self._remediation_note = {"note": note, "agent": agent, "source": "agent"}
        self._remediation_requested.set()
        logger.info(f"Remediation reported by {agent or 'agent'}: {note or '-'}")
        return True

    # run

    def run(self) -> ScoreReport:
        self._started = time.monotonic()
        self._deadline = self._started + self.definition.timeout
        self._transition(State.PROVISIONING, "run started", timeout=self.definition.timeout)
        try:
            self._provision()
            self._deploy_baseline()
            self._inject_faults()
            self._await_degradation()
            self._await_recovery()
        except PredicateTimeout as e:
            self._transition(State.TIMED_OUT, str(e), snapshot=e.snapshot)
        except ScenarioCancelled as e:
            self._fail(f"cancelled: {e}", cancelled=True)
        except StepFailed as e:
            self._fail(e.reason, step_index=e.step_index, step=e.step)
        except SREBenchError as e:
            self._fail(f"{type(e).__name__}: {e}")
        except Exception as e:
            logger.exception("Unexpected engine error")
            self._fail(f"internal error: {type(e).__name__}: {e}")
        finally:
            self._teardown()

        self.report = score(self.trace, self.last_snapshot, self.definition.recovery_predicate)
        self._persist()
        return self.report

    def _provision(self):
        if isinstance(self.cluster, ClusterConfig):
            self.handle = acquire(self.cluster, cancel=self.cancel)
            self._owns_handle = True
        else:
            self.handle = self.cluster
        self.applier = ManifestApplier(self.handle, self.settings, self.cancel)
        self.collector = ObservationCollector(
            self.handle,
            namespace=self.namespace,
            settings=self.settings,
            cancel=self.cancel,
            params=self.definition.parameters,
            applier=self.applier,
        )
        self.injector = VirtualizationFaultInjector(
            self.applier, self.trace, self.namespace, self.definition.parameters, self.labels
        )
        self._transition(State.BASELINE_DEPLOYING, f"cluster '{self.handle.name}' ready")

    def _deploy_baseline(self):
        kubectl = self.handle.kubectl
        for prereq in self.definition.prerequisites:
            self._install_prerequisite(prereq)

        self._namespace_created = kubectl.create_namespace_if_not_exist(self.namespace, labels=self.labels)
        self.trace.append(STEP, self.state.value, kind="namespace", namespace=self.namespace)

        for spec in self.definition.baseline_manifests:
            self.cancel.raise_if_cancelled()
            try:
                result = self.applier.apply(spec, self.namespace, self.definition.parameters, self.labels)
            except FatalApplyError as e:
                raise StepFailed(f"baseline manifest {spec.kind}/{spec.name}: {e}") from e
            self.trace.append(STEP, self.state.value, kind="baselineManifest", result=result.to_dict())

        for index, step in self.definition.steps_in_phase("baseline"):
            self._run_step(index, step)

        snapshot = None
        if self.definition.baseline_predicate:
            result, snapshot = self._poll_until(
                self.definition.baseline_predicate,
                deadline=time.monotonic() + self.definition.fault_signature.detection_window,
                label="baseline",
            )
            if not result.passed:
                raise StepFailed(f"baseline predicate did not hold ({result.status}): {result.expression}")
        elif self.definition.observations:
            snapshot = self._snapshot("baseline")
        self._transition(State.BASELINE_HEALTHY, "baseline deployed", snapshot=snapshot)

    def _install_prerequisite(self, prereq):
        kubectl = self.handle.kubectl
        logger.info(f"Installing prerequisite '{prereq.name}'")
        namespace = prereq.namespace or self.namespace
        if prereq.namespace:
            kubectl.create_namespace_if_not_exist(prereq.namespace)
        if prereq.url:
            try:
                kubectl.apply_url(prereq.url, prereq.namespace)
            except RuntimeError as e:
                raise StepFailed(f"prerequisite {prereq.name}: {e}") from e
        for spec in prereq.resources:
            try:
                self.applier.apply(spec, namespace, self.definition.parameters)
            except FatalApplyError as e:
                raise StepFailed(f"prerequisite {prereq.name}: {e}") from e
        for index, step in enumerate(prereq.steps):
            self._run_step(index, step, namespace=namespace, context=f"prerequisite {prereq.name}")
        self.trace.append(STEP, self.state.value, kind="prerequisite", name=prereq.name)

    def _inject_faults(self):
        self._transition(State.FAULT_INJECTING, "injecting fault")
        for index, step in self.definition.steps_in_phase("fault"):
            self._run_step(index, step, fault=True)

    def _await_degradation(self):
        window = self.definition.fault_signature.detection_window
        result, snapshot = self._poll_until(
            self.definition.fault_signature.condition,
            deadline=time.monotonic() + window,
            label="detect",
        )
        if not result.passed:
            raise StepFailed(f"fault did not manifest within {window:g}s ({result.status}): {result.expression}")
        self._transition(State.DEGRADED, "fault signature observed", snapshot=snapshot)

    def _await_recovery(self):
        if self.remediate and self.definition.remediation:
            self._begin_remediation({"source": "scripted", "note": "reference remediation"})
            for index, step in enumerate(self.definition.remediation):
                self._run_step(index, step, context="remediation")

        predicate = compile_predicate(self.definition.recovery_predicate)
        while True:
            if self._remediation_requested.is_set() and self.state == State.DEGRADED:
                self._begin_remediation(self._remediation_note or {"source": "agent"})

            snapshot = self._snapshot("recovery")
            result = predicate.evaluate(snapshot)
            self.trace.append(
                SNAPSHOT,
                self.state.value,
                observed_state=snapshot,
                predicate=self.definition.recovery_predicate,
                status=result.status,
            )
            if result.passed:
                self._transition(State.RECOVERED, "recovery predicate holds", snapshot=snapshot)
                return
            if time.monotonic() >= self._deadline:
                raise PredicateTimeout(
                    f"recovery predicate did not hold within {self.definition.timeout:g}s ({result.status})",
                    snapshot=snapshot,
                )
            delay = min(self.poll_interval, max(0.0, self._deadline - time.monotonic()))
            if self.cancel.sleep_jittered(delay, self.settings.poll_jitter):
                self.cancel.raise_if_cancelled()

    def _begin_remediation(self, detail: dict):
        self.trace.append(REMEDIATION, self.state.value, **detail)
        if self.state == State.DEGRADED:
            self._transition(State.REMEDIATING, f"remediation started ({detail.get('source')})")

    # steps

    def _run_step(self, index: int, step, fault: bool = False, namespace: str | None = None, context: str = None):
        namespace = namespace or self.namespace
        label = step.label(index)
        where = f"{context}: {label}" if context else label
        last_reason = None
        for attempt in range(1, step.attempts + 1):
            self.cancel.raise_if_cancelled()
            start = time.monotonic()
            try:
                ok, detail = self._execute(index, step, namespace, fault)
            except FatalApplyError as e:
                if step.optional:
                    self.trace.append(NOTE, self.state.value, step_index=index, error=str(e), step=where, skipped=True)
                    logger.warning(f"Optional step {where} failed, skipping: {e}")
                    return
                raise StepFailed(f"{where}: {e}", step_index=index, step=label) from e

            elapsed = round(time.monotonic() - start, 3)
            self.trace.append(
                STEP,
                self.state.value,
                step_index=index,
                observed_state=detail.pop("snapshot", None),
                step=where,
                type=step.type,
                ok=ok,
                attempt=attempt,
                elapsed=elapsed,
                **detail,
            )
            if ok:
                return
            last_reason = detail.get("reason", "timed out")
            if attempt < step.attempts:
                logger.warning(f"Step {where} {last_reason}, retrying ({attempt}/{step.attempts - 1})")

        if step.optional or step.on_timeout == "continue":
            logger.warning(f"Step {where} {last_reason}, continuing")
            self.trace.append(NOTE, self.state.value, step_index=index, step=where, continued=True)
            return
        attempts = f" after {step.attempts} attempts" if isinstance(step.on_timeout, RetryPolicy) else ""
        raise StepFailed(f"{where}: {last_reason}{attempts}", step_index=index, step=label)

    def _execute(self, index: int, step, namespace: str, fault: bool) -> tuple[bool, dict]:
        params = self.definition.parameters
        signature = self.definition.fault_signature.condition

        if isinstance(step, WaitForStep):
            return self._wait(step, namespace)

        if isinstance(step, CheckpointStep):
            snapshot = self._snapshot(step.label_)
            return True, {"snapshot": snapshot, "checkpoint": step.label_}

        if isinstance(step, InjectStep):
            spec = step.build()
            if step.expected_signature:
                spec = dataclasses.replace(spec, expected_signature=step.expected_signature)
            result = self.injector.inject(spec, index, state=self.state.value)
            return True, {"result": result.to_dict()}

        if fault:
            if isinstance(step, ApplyStep):
                spec = FaultSpec("apply", f"apply {step.resource.kind}/{step.resource.name}", resource=step.resource)
            elif isinstance(step, PatchStep):
                spec = FaultSpec(
                    "patch", f"patch {step.selector.describe()}", selector=step.selector, ops=tuple(step.patch_ops())
                )
            else:
                spec = FaultSpec("delete", f"delete {step.selector.describe()}", selector=step.selector)
            spec = dataclasses.replace(spec, expected_signature=signature, parameters=dict(params))
            result = self.injector.inject(spec, index, state=self.state.value)
            return True, {"result": result.to_dict()}

        if isinstance(step, ApplyStep):
            result = self.applier.apply(step.resource, namespace, params, self.labels)
        elif isinstance(step, PatchStep):
            result = self.applier.patch(step.selector, step.patch_ops(), namespace)
        elif isinstance(step, DeleteStep):
            result = self.applier.delete(step.selector, namespace)
        else:
            raise StepFailed(f"unsupported step type {step.type}", step_index=index)
        return True, {"result": result.to_dict()}

    def _wait(self, step: WaitForStep, namespace: str) -> tuple[bool, dict]:
        interval = step.interval or self.poll_interval
        if step.on_resource:
            waited = self.applier.wait_for_condition(
                step.selector, step.condition, step.timeout, interval=interval, namespace=namespace
            )
            if waited.outcome == Outcome.ERRORED:
                raise FatalApplyError(f"waiting for {step.selector.describe()} {step.condition}: {waited.error}")
            detail = {"wait": waited.to_dict()}
            if waited.outcome == Outcome.TIMED_OUT:
                detail["reason"] = f"{step.selector.describe()} not {step.condition} after {step.timeout:g}s"
            return waited.outcome == Outcome.READY, detail

        result, snapshot = self._poll_until(
            step.condition, deadline=time.monotonic() + step.timeout, label=step.name, interval=interval
        )
        detail = {"snapshot": snapshot, "predicate": result.to_dict()}
        if not result.passed:
            detail["reason"] = f"'{step.condition}' did not hold after {step.timeout:g}s ({result.status})"
        return result.passed, detail

    # observation

    def _snapshot(self, label: str | None, targets=None):
        snapshot = self.collector.snapshot(targets if targets is not None else self.definition.observations, label)
        self.last_snapshot = snapshot
        return snapshot

    def _poll_until(self, expression: str, deadline: float, label: str | None = None, interval: float | None = None):
        """Snapshot and evaluate until the predicate passes or the deadline passes."""
        predicate = compile_predicate(expression)
        refs = predicate.references
        targets = [o for o in self.definition.observations if o.name in refs]
        interval = interval or self.poll_interval
        while True:
            snapshot = self._snapshot(label, targets)
            result = predicate.evaluate(snapshot)
            self.trace.append(
                SNAPSHOT,
                self.state.value,
                observed_state=snapshot,
                predicate=expression,
                status=result.status,
            )
            remaining = deadline - time.monotonic()
            if result.passed or remaining <= 0:
                return result, snapshot
            if self.cancel.sleep_jittered(min(interval, remaining), self.settings.poll_jitter):
                self.cancel.raise_if_cancelled()

    # teardown

    def _teardown(self):
        if self.collector is not None:
            self.collector.close()
        if self.handle is None:
            return
        ephemeral = self._owns_handle and self.handle.ephemeral
        if self._namespace_created and self.definition.cleanup_namespace and not ephemeral:
            try:
                self.handle.kubectl.delete_namespace(self.namespace)
            except Exception as e:
                logger.warning(f"Could not delete namespace {self.namespace}: {e}")
                self.trace.append(NOTE, self.state.value, error=f"namespace cleanup failed: {e}")
        if self._owns_handle:
            try:
                self.handle.release()
            except SREBenchError as e:
                logger.error(f"Releasing cluster '{self.handle.name}' failed: {e}")
                self.trace.append(NOTE, self.state.value, error=f"cluster release failed: {e}")

    def _persist(self):
        traces_dir = Path(self.settings.results_dir) / "traces"
        try:
            self.trace_path = self.trace.persist(traces_dir / f"{self.definition.id}_{self.run_id}.jsonl")
        except OSError as e:
            logger.error(f"Could not write trace: {e}")
        if self.store is not None:
            self.store.append(self.report)
