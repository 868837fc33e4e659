import argparse
import csv
import json
from unittest.mock import MagicMock, patch

import pytest

import main as cli
from srebench.conductor.oracles.scorer import ScoreReport
from srebench.conductor.result_store import ResultStore
from srebench.service.cluster import ClusterConfig

BUILTIN = [
    "broken-image",
    "canary-misweighting",
    "expired-secret",
    "hpa-misconfiguration",
    "metrics-cardinality-explosion",
    "networkpolicy-lockout",
    "stale-configmap",
]


@pytest.fixture(autouse=True)
def isolated_dirs(tmp_path, monkeypatch):
    monkeypatch.setenv("SREBENCH_RESULTS_DIR", str(tmp_path / "results"))
    monkeypatch.setenv("SREBENCH_LOGS_DIR", str(tmp_path / "logs"))
    monkeypatch.delenv("SREBENCH_SCENARIO_PATH", raising=False)
    return tmp_path


def report(scenario_id="broken-image", outcome="TimedOut", run_id="r1"):
    return ScoreReport(
        scenario_id=scenario_id,
        run_id=run_id,
        outcome=outcome,
        passed=outcome == "Recovered",
        time_to_detect=12.5,
        transitions=[{"from": None, "to": "Provisioning", "reason": "run started", "timestamp": 1.0}],
    )


def fake_engine(outcome="TimedOut"):
    def build(definition, cluster, **kwargs):
        engine = MagicMock()
        engine.trace_path = None
        engine.run.return_value = report(definition.id, outcome, kwargs["run_id"])
        build.calls.append((definition, cluster, kwargs))
        return engine

    build.calls = []
    return build


def test_list_json(capsys):
    assert cli.main(["list", "--json"]) == 0
    entries = json.loads(capsys.readouterr().out)
    assert [e["id"] for e in entries] == BUILTIN


def test_list_table(capsys):
    assert cli.main(["list"]) == 0
    assert "Scenarios" in capsys.readouterr().out


@pytest.mark.parametrize(
    "argv",
    [
        [],
        ["run"],
        ["run", "broken-image", "--timeout", "soon"],
        ["run", "broken-image", "--timeout", "0"],
        ["run", "broken-image", "--cluster", "dev", "--ephemeral"],
        ["run", "broken-image", "--param", "no-equals-sign"],
        ["batch"],
        ["export"],
    ],
)
def test_invalid_invocations_exit_3(argv):
    with pytest.raises(SystemExit) as info:
        cli.main(argv)
    assert info.value.code == 3


@pytest.mark.parametrize(
    "argv",
    [
        ["run", "no-such-scenario"],
        ["run", "broken-image", "--param", "nope=1"],
        ["batch", "broken-image", "no-such-scenario"],
        ["batch", "broken-image", "--parallel", "0"],
    ],
)
def test_invalid_scenarios_exit_3_before_touching_a_cluster(argv):
    with patch.object(cli, "ScenarioEngine") as engine:
        assert cli.main(argv) == 3
    engine.assert_not_called()


def test_run_prints_json_and_returns_outcome_code(capsys, tmp_path):
    build = fake_engine("TimedOut")
    output = tmp_path / "out" / "report.json"
    with patch.object(cli, "ScenarioEngine", side_effect=build):
        code = cli.main(
            ["run", "broken-image", "--cluster", "dev", "--json", "--param", "replicas=3", "--output", str(output)]
        )

    assert code == 1
    printed = json.loads(capsys.readouterr().out)
    assert printed["outcome"] == "TimedOut" and printed["scenarioId"] == "broken-image"
    assert json.loads(output.read_text()) == printed

    definition, cluster, kwargs = build.calls[0]
    assert definition.parameters["replicas"] == 3
    assert isinstance(cluster, ClusterConfig) and cluster.name == "dev" and not cluster.ephemeral
    assert kwargs["remediate"] is False
    assert kwargs["store"].path == tmp_path / "results" / "results.jsonl"


def test_run_timeout_override_and_ephemeral(tmp_path):
    build = fake_engine("Recovered")
    with patch.object(cli, "ScenarioEngine", side_effect=build):
        code = cli.main(["run", "broken-image", "--ephemeral", "--keep-cluster", "--remediate", "--timeout", "2m"])

    assert code == 0
    definition, cluster, kwargs = build.calls[0]
    assert definition.timeout == 120.0
    assert cluster.ephemeral and cluster.keep
    assert cluster.name.startswith("srebench-broken-image-")
    assert kwargs["remediate"] is True


def test_batch_returns_worst_exit_code(capsys):
    outcomes = iter(["Recovered", "Failed"])

    def build(definition, cluster, **kwargs):
        engine = MagicMock()
        engine.trace_path = None
        engine.run.return_value = report(definition.id, next(outcomes), kwargs["run_id"])
        return engine

    with patch.object(cli, "ScenarioEngine", side_effect=build):
        code = cli.main(["batch", "broken-image", "stale-configmap", "--cluster", "dev"])

    assert code == 2
    out = capsys.readouterr().out
    assert "stale-configmap" in out and "Results appended to" in out


def test_export_csv(tmp_path, capsys):
    results = tmp_path / "results"
    store = ResultStore(results)
    store.append(report("broken-image", "Recovered"))
    store.append(report("stale-configmap", "TimedOut", run_id="r2"))
    target = tmp_path / "export.csv"

    assert cli.main(["export", "--csv", str(target), "--results-dir", str(results)]) == 0

    with open(target) as f:
        rows = list(csv.DictReader(f))
    assert [r["scenarioId"] for r in rows] == ["broken-image", "stale-configmap"]
    assert "transitions" not in rows[0]
    assert "Exported 2 result(s)" in capsys.readouterr().out


def test_export_without_results(tmp_path, capsys):
    assert cli.main(["export", "--csv", str(tmp_path / "empty.csv")]) == 0
    assert "No results found" in capsys.readouterr().out


@pytest.mark.parametrize(
    "text, expected",
    [("max_replicas=50", ("max_replicas", 50)), ("flag=true", ("flag", True)), ("image=nginx:1.25", ("image", "nginx:1.25")), ("empty=", ("empty", ""))],
)
def test_param_arg(text, expected):
    assert cli._param_arg(text) == expected


def test_param_arg_rejects_missing_key():
    with pytest.raises(argparse.ArgumentTypeError):
        cli._param_arg("=3")


@pytest.mark.parametrize("outcome, code", [("Recovered", 0), ("TimedOut", 1), ("Failed", 2)])
def test_exit_code(outcome, code):
    assert cli.exit_code(report(outcome=outcome)) == code
