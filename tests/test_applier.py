import base64
from unittest.mock import patch

import pytest
from conftest import web_deployment
from kubernetes.client.rest import ApiException
from kubernetes.dynamic.exceptions import ResourceNotFoundError

from srebench.errors import FatalApplyError, ScenarioCancelled, TransientApplyError
from srebench.service.applier import ManifestApplier, _expand_ops, classify_api_error
from srebench.service.resources import Outcome, ResourceSpec, Selector

NS = "demo"


@pytest.fixture
def applier(cluster, settings, cancel):
    return ManifestApplier(cluster, settings, cancel)


def test_apply_is_idempotent(applier, cluster):
    spec = ResourceSpec.model_validate(web_deployment())

    first = applier.apply(spec, NS, labels={"team": "sre"})
    second = applier.apply(spec, NS, labels={"team": "sre"})

    assert first.action == "created" and first.changed
    assert second.action == "unchanged" and not second.changed
    assert [c for c in cluster.calls if c[0] != "delete"] == [("create", "Deployment", "web")]
    assert cluster.get("Deployment", "web", NS)["metadata"]["labels"] == {"app": "web", "team": "sre"}


def test_apply_configures_changed_object(applier, cluster):
    applier.apply(ResourceSpec.model_validate(web_deployment()), NS)
    result = applier.apply(ResourceSpec.model_validate(web_deployment(replicas=4)), NS)

    assert result.action == "configured"
    assert cluster.get("Deployment", "web", NS)["spec"]["replicas"] == 4


def test_secret_string_data_reapply_is_unchanged(applier, cluster):
    secret = {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": "db-credentials", "namespace": NS},
        "stringData": {"password": "validpassword123"},
    }
    assert applier.apply(secret).action == "created"
    assert cluster.get("Secret", "db-credentials", NS)["data"]["password"] == base64.b64encode(
        b"validpassword123"
    ).decode()
    assert applier.apply(secret).action == "unchanged"


def test_transient_errors_are_retried(applier, cluster):
    cluster.fail_next("create", "Deployment", 503, times=2)

    result = applier.apply(ResourceSpec.model_validate(web_deployment()), NS)

    assert result.action == "created"
    assert result.attempts == 3


def test_retry_exhaustion_is_fatal(applier, cluster, settings):
    cluster.fail_next("get", "Deployment", 429, times=10)

    with pytest.raises(FatalApplyError) as info:
        applier.apply(ResourceSpec.model_validate(web_deployment()), NS)

    assert info.value.attempts == settings.apply_max_attempts
    assert "giving up" in str(info.value)


def test_rejected_manifest_is_fatal_immediately(applier, cluster):
    cluster.fail_next("create", "Deployment", 422)

    with pytest.raises(FatalApplyError) as info:
        applier.apply(ResourceSpec.model_validate(web_deployment()), NS)

    assert info.value.status == 422
    assert info.value.attempts == 1


def test_invalid_manifest(applier):
    with pytest.raises(FatalApplyError, match="metadata.name"):
        applier.apply({"apiVersion": "v1", "kind": "ConfigMap", "metadata": {}})


def test_patch_only_sends_changes(applier, cluster):
    applier.apply(ResourceSpec.model_validate(web_deployment()), NS)
    ops = [{"op": "replace", "path": "spec.template.spec.containers[0].image", "value": "nginx:1.26"}]
    selector = Selector(kind="Deployment", name="web")

    first = applier.patch(selector, ops, NS)
    second = applier.patch(selector, ops, NS)

    assert first.action == "patched"
    assert second.action == "unchanged"
    assert [c for c in cluster.calls if c[0] == "patch"] == [("patch", "Deployment", "web")]


def test_patch_creates_missing_parents(applier, cluster):
    applier.apply(ResourceSpec.model_validate(web_deployment()), NS)
    path = "spec.template.metadata.annotations['srebench.io/restarted-by']"

    applier.patch(Selector(kind="Deployment", name="web"), [{"op": "replace", "path": path, "value": "test"}], NS)

    annotations = cluster.get("Deployment", "web", NS)["spec"]["template"]["metadata"]["annotations"]
    assert annotations == {"srebench.io/restarted-by": "test"}


def test_patch_without_target_is_fatal(applier):
    with pytest.raises(FatalApplyError, match="no matching object"):
        applier.patch(Selector(kind="Deployment", name="ghost"), [{"op": "remove", "path": "spec.replicas"}], NS)


def test_expand_ops_append_is_idempotent():
    live = {"spec": {"args": ["--a"]}}
    ops = [{"op": "add", "path": "spec.args[-]", "value": "--a"}]
    assert _expand_ops(live, ops) == []
    assert _expand_ops({"spec": {}}, ops) == [
        {"op": "add", "path": "/spec/args", "value": []},
        {"op": "add", "path": "/spec/args/-", "value": "--a"},
    ]


def test_expand_ops_remove_missing_is_skipped():
    assert _expand_ops({"data": {}}, [{"op": "remove", "path": "data['gone']"}]) == []


def test_delete_tolerates_absent(applier, cluster):
    applier.apply(ResourceSpec.model_validate(web_deployment()), NS)
    selector = Selector(kind="Deployment", name="web")

    first = applier.delete(selector, NS)
    second = applier.delete(selector, NS)

    assert first.deleted == ("web",) and not first.already_absent
    assert second.already_absent
    assert cluster.get("Deployment", "web", NS) is None


def test_wait_for_condition_ready(applier):
    applier.apply(ResourceSpec.model_validate(web_deployment()), NS)
    result = applier.wait_for_condition(Selector(kind="Deployment", name="web"), "Available", timeout=1, namespace=NS)
    assert result.outcome == Outcome.READY
    assert result.polls == 1


def test_wait_for_condition_times_out(applier):
    applier.apply(ResourceSpec.model_validate(web_deployment(image="invalid.example/web:1")), NS)
    result = applier.wait_for_condition(
        Selector(kind="Deployment", name="web"), "Available", timeout=0.1, interval=0.02, namespace=NS
    )
    assert result.outcome == Outcome.TIMED_OUT
    assert result.polls > 1


def test_wait_for_condition_fatal_error(applier, cluster):
    cluster.fail_next("get", "Deployment", 403)
    result = applier.wait_for_condition(Selector(kind="Deployment", name="web"), "exists", timeout=1, namespace=NS)
    assert result.outcome == Outcome.ERRORED
    assert "403" in result.error


def test_wait_for_condition_polls_until_crd_is_served(applier, cluster):
    fake_resource = cluster.resource
    lookups = []

    def resource(api_version, kind):
        lookups.append(kind)
        if kind == "Rollout" and len(lookups) <= 2:
            raise ResourceNotFoundError(f"No matches found for {{'api_version': '{api_version}', 'kind': '{kind}'}}")
        if kind == "Rollout" and len(lookups) == 3:
            cluster.add({"apiVersion": "argoproj.io/v1alpha1", "kind": "Rollout", "metadata": {"name": "web", "namespace": NS}})
        return fake_resource(api_version, kind)

    with patch.object(cluster, "resource", side_effect=resource):
        result = applier.wait_for_condition(
            Selector(kind="Rollout", name="web"), "exists", timeout=2, interval=0.02, namespace=NS
        )

    assert result.outcome == Outcome.READY
    assert result.polls == 3


def test_wait_for_condition_observes_cancellation(applier, cancel):
    cancel.cancel("stop")
    with pytest.raises(ScenarioCancelled):
        applier.wait_for_condition(Selector(kind="Deployment", name="web"), "exists", timeout=5, namespace=NS)


def test_detect_drift(applier, cluster):
    config = ResourceSpec.model_validate(
        {"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "app-config"}, "data": {"flag": "on"}}
    )
    assert applier.detect_drift(config, NS).present is False
    assert applier.detect_drift(config, NS).drifted

    applier.apply(config, NS)
    assert not applier.detect_drift(config, NS).drifted

    applier.patch(Selector(kind="ConfigMap", name="app-config"), [{"op": "remove", "path": "data.flag"}], NS)
    report = applier.detect_drift(config, NS)
    assert report.drifted and report.differences == ("data.flag",)


def test_manual_source_of_truth_never_drifts(applier):
    spec = ResourceSpec.model_validate(
        {"manifest": {"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "x"}}, "sourceOfTruth": "manual"}
    )
    assert not applier.detect_drift(spec, NS).drifted


@pytest.mark.parametrize(
    "exc, expected",
    [
        (ApiException(status=409), TransientApplyError),
        (ApiException(status=503), TransientApplyError),
        (ApiException(status=404), FatalApplyError),
        (ApiException(status=422), FatalApplyError),
        (ConnectionError("reset"), TransientApplyError),
        (RuntimeError("boom"), FatalApplyError),
    ],
)
def test_classify_api_error(exc, expected):
    assert isinstance(classify_api_error(exc, "op"), expected)
