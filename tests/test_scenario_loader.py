import json

import pytest
import yaml
from conftest import broken_image_document

from srebench.conductor.scenarios.definition import (
    CheckpointStep,
    InjectStep,
    PatchStep,
    RetryPolicy,
    ScenarioDefinition,
    WaitForStep,
)
from srebench.conductor.scenarios.registry import ScenarioRegistry, load_scenario
from srebench.errors import ScenarioNotFoundError, ScenarioValidationError

BUILTIN = [
    "broken-image",
    "canary-misweighting",
    "expired-secret",
    "hpa-misconfiguration",
    "metrics-cardinality-explosion",
    "networkpolicy-lockout",
    "stale-configmap",
]


def test_document_is_parsed_into_typed_steps():
    definition = ScenarioDefinition.from_document(broken_image_document())

    assert definition.id == "broken-web"
    assert definition.timeout == 1.0
    wait, patch = definition.steps
    assert isinstance(wait, WaitForStep) and wait.on_resource and wait.phase == "baseline"
    assert wait.timeout == 2.0
    assert isinstance(patch, PatchStep) and patch.phase == "fault"
    assert patch.patch_ops() == [
        {"op": "replace", "path": "spec.template.spec.containers[0].image", "value": "nonexistent-registry.io/web:v2"}
    ]
    assert definition.observation_names() == ["pods", "image"]
    assert [i for i, _ in definition.steps_in_phase("fault")] == [1]


def test_params_override_defaults_and_keep_types():
    doc = broken_image_document()
    doc["parameters"]["replicas"] = 2
    doc["baselineManifests"][0]["spec"]["replicas"] = "${replicas}"

    definition = ScenarioDefinition.from_document(doc, params={"replicas": 5, "image": "invalid.example/x:1"})

    assert definition.parameters["replicas"] == 5
    assert definition.baseline_manifests[0].body["spec"]["replicas"] == 5
    assert definition.steps[1].value == "invalid.example/x:1"


def test_unknown_param_is_rejected():
    with pytest.raises(ScenarioValidationError, match="unknown parameter"):
        ScenarioDefinition.from_document(broken_image_document(), params={"nope": 1})


def test_snake_case_keys_are_accepted():
    doc = broken_image_document()
    doc["recovery_predicate"] = doc.pop("recoveryPredicate")
    doc["baseline_manifests"] = doc.pop("baselineManifests")
    definition = ScenarioDefinition.from_document(doc)
    assert definition.recovery_predicate.startswith("pods.allReady")


@pytest.mark.parametrize(
    "mutate, message",
    [
        (lambda d: d.update(recoveryPredicate="pods.allReady and"), "recoveryPredicate"),
        (lambda d: d.update(recoveryPredicate="missing.value == 1"), "unknown observation"),
        (lambda d: d["steps"].pop(), "mutating fault step"),
        (lambda d: d["steps"].append({"phase": "baseline", "checkpoint": "late"}), "baseline steps must come before"),
        (lambda d: d["observations"].append(dict(d["observations"][0])), "duplicate observation"),
        (lambda d: d.update(timeout="soon"), "duration"),
        (lambda d: d.update(id="Broken_Web"), "lowercase"),
        (lambda d: d["steps"].append({"inject": {"fault": "noSuchFault"}}), "unknown fault"),
    ],
)
def test_structural_errors(mutate, message):
    doc = broken_image_document()
    mutate(doc)
    with pytest.raises(ScenarioValidationError, match=message):
        ScenarioDefinition.from_document(doc)


def test_step_options():
    doc = broken_image_document()
    doc["steps"].insert(1, {"name": "snap", "phase": "baseline", "checkpoint": "before"})
    doc["steps"].append(
        {"waitFor": {"condition": "pods.total > 0", "timeout": "30s"}, "onTimeout": "retry(2)", "optional": True}
    )
    doc["steps"].append({"inject": {"fault": "scaleToZero", "args": {"deployment": "web"}}})

    definition = ScenarioDefinition.from_document(doc)

    checkpoint = definition.steps[1]
    assert isinstance(checkpoint, CheckpointStep) and checkpoint.label_ == "before"
    wait = definition.steps[3]
    assert wait.on_timeout == RetryPolicy(retry=2)
    assert wait.attempts == 3 and wait.optional and not wait.on_resource
    inject = definition.steps[4]
    assert isinstance(inject, InjectStep)
    assert inject.build().ops[0]["path"] == "spec.replicas"
    assert inject.label(4) == "inject#4"


def test_patch_needs_path_or_ops():
    doc = broken_image_document()
    doc["steps"][1]["patch"]["ops"] = [{"op": "remove", "path": "metadata.labels.app"}]
    with pytest.raises(ScenarioValidationError, match="exactly one of path or ops"):
        ScenarioDefinition.from_document(doc)


def test_registry_lists_builtin_catalog():
    entries = ScenarioRegistry().list()
    assert [e.id for e in entries] == BUILTIN
    assert all(e.builtin and e.title for e in entries)


@pytest.mark.parametrize("scenario_id", BUILTIN)
def test_builtin_scenarios_validate(scenario_id):
    definition = ScenarioRegistry().get(scenario_id)
    assert definition.id == scenario_id
    assert definition.steps_in_phase("fault")
    assert definition.recovery_predicate
    assert definition.remediation


def test_hpa_scenario_magnitudes_are_parameters():
    definition = ScenarioRegistry().get("hpa-misconfiguration", params={"target_cpu": 10, "max_replicas": 50})
    inject = [s for _, s in definition.steps_in_phase("fault") if isinstance(s, InjectStep)][0]
    fault = inject.build()
    assert fault.parameters == {"hpa": "web-app", "targetCpu": 10, "maxReplicas": 50}
    assert definition.prerequisites[0].name == "metrics-server"


def test_canary_scenario_watches_the_rollout():
    definition = ScenarioRegistry().get("canary-misweighting", params={"bad_weight": 50})
    targets = {o.name: o for o in definition.observations}

    assert targets["canaryWeight"].type == "resourceField"
    assert targets["canaryWeight"].selector.kind == "Rollout"
    assert targets["canaryWeight"].selector.api_version == "argoproj.io/v1alpha1"
    assert targets["pods"].selector.kind == "Rollout"
    assert definition.prerequisites[0].name == "argo-rollouts"

    (_, fault), = definition.steps_in_phase("fault")
    assert isinstance(fault, PatchStep)
    assert fault.ops[0] == {"op": "replace", "path": "spec.strategy.canary.steps[0].setWeight", "value": 50}


def test_cardinality_scenario_queries_prometheus_in_cluster():
    definition = ScenarioRegistry().get("metrics-cardinality-explosion")
    targets = {o.name: o for o in definition.observations}

    assert targets["series"].type == "metricQuery"
    assert targets["series"].service == "prometheus:9090" and targets["series"].url is None
    prereq = definition.prerequisites[0]
    assert [r.kind for r in prereq.resources] == ["ClusterRole"]
    assert "series.value > 50" in definition.fault_signature.condition

    manifests = {m.kind + "/" + m.name: m.render("srebench-x-r1", definition.parameters) for m in definition.baseline_manifests}
    binding = manifests["RoleBinding/prometheus-discovery"]
    assert binding["subjects"][0]["namespace"] == "srebench-x-r1"
    assert "names: [srebench-x-r1]" in manifests["ConfigMap/prometheus-config"]["data"]["prometheus.yml"]
    exporter = manifests["Deployment/api-service"]["spec"]["template"]["spec"]["containers"][0]
    assert exporter["env"] == [{"name": "SERIES", "value": "5"}]
    assert "while [ $i -lt $SERIES ]" in exporter["args"][0]


def test_metric_query_needs_a_single_endpoint():
    doc = broken_image_document()
    doc["observations"].append(
        {"name": "m", "metricQuery": {"query": "up", "url": "http://prom:9090", "service": "prometheus:9090"}}
    )
    with pytest.raises(ScenarioValidationError, match="url or service"):
        ScenarioDefinition.from_document(doc)


def test_user_directory_and_files(tmp_path, monkeypatch):
    doc = broken_image_document(id="custom-web")
    (tmp_path / "custom.yaml").write_text(yaml.safe_dump(doc))
    (tmp_path / "notes.txt").write_text("ignored")
    monkeypatch.setenv("SREBENCH_SCENARIO_PATH", str(tmp_path))

    registry = ScenarioRegistry()
    assert "custom-web" in registry.entries()
    assert not registry.entries()["custom-web"].builtin
    assert registry.get("custom-web").title == doc["title"]

    as_json = tmp_path / "other.json"
    as_json.write_text(json.dumps(broken_image_document(id="json-web")))
    assert load_scenario(as_json).id == "json-web"
    assert registry.resolve(str(as_json)) == as_json


def test_duplicate_ids_across_directories(tmp_path):
    for sub in ("a", "b"):
        (tmp_path / sub).mkdir()
        (tmp_path / sub / "s.yaml").write_text(yaml.safe_dump(broken_image_document()))
    registry = ScenarioRegistry([tmp_path / "a", tmp_path / "b"])
    with pytest.raises(ScenarioValidationError, match="Duplicate scenario id"):
        registry.entries()


def test_unknown_scenario(tmp_path):
    with pytest.raises(ScenarioNotFoundError):
        ScenarioRegistry([tmp_path]).get("does-not-exist")


def test_unparseable_file(tmp_path):
    bad = tmp_path / "bad.yaml"
    bad.write_text("id: [unclosed")
    with pytest.raises(ScenarioValidationError, match="Cannot parse"):
        load_scenario(bad)
