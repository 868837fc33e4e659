import base64
import copy
import threading

import pytest
from kubernetes.client.rest import ApiException

from srebench.config import get_settings
from srebench.service.kubectl import JSON_PATCH, KubeCtl
from srebench.service.resources import is_namespaced
from srebench.utils.jsonpath import apply_json_patch
from srebench.utils.sigint_aware_section import CancellationToken

BAD_IMAGE_MARKERS = ("nonexistent", "invalid")


def merge_patch(target, patch):
    """RFC 7386 merge patch."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    out = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            out.pop(key, None)
        else:
            out[key] = merge_patch(out.get(key), value)
    return out


def _matches(labels: dict, label_selector: str | None) -> bool:
    if not label_selector:
        return True
    for term in label_selector.split(","):
        key, _, value = term.partition("=")
        if labels.get(key.strip()) != value.strip():
            return False
    return True


def _normalize_secret(obj: dict):
    if obj.get("kind") == "Secret" and "stringData" in obj:
        data = obj.setdefault("data", {}) or {}
        for key, value in (obj.pop("stringData") or {}).items():
            data[key] = base64.b64encode(str(value).encode()).decode()
        obj["data"] = data


class FakeResult:
    def __init__(self, data):
        self._data = data

    def to_dict(self):
        return copy.deepcopy(self._data)


class FakeResource:
    """Stands in for a dynamic-client resource; objects live in the owning FakeCluster."""

    def __init__(self, cluster, api_version, kind):
        self.cluster = cluster
        self.api_version = api_version
        self.kind = kind
        self.namespaced = is_namespaced(kind)

    def _key(self, name, namespace):
        return (self.kind, (namespace or "default") if self.namespaced else None, name)

    def get(self, name=None, namespace=None, label_selector=None, **kwargs):
        self.cluster.maybe_fail("get", self.kind)
        with self.cluster.lock:
            if name is not None:
                obj = self.cluster.objects.get(self._key(name, namespace))
                if obj is None:
                    raise ApiException(status=404, reason="Not Found")
                return FakeResult(obj)
            items = [
                o
                for (kind, ns, _), o in sorted(self.cluster.objects.items(), key=lambda kv: str(kv[0]))
                if kind == self.kind
                and (namespace is None or ns == namespace)
                and _matches((o.get("metadata") or {}).get("labels") or {}, label_selector)
            ]
            return FakeResult({"items": items})

    def create(self, body, namespace=None, **kwargs):
        self.cluster.maybe_fail("create", self.kind)
        obj = copy.deepcopy(body)
        metadata = obj.setdefault("metadata", {})
        if self.namespaced:
            metadata["namespace"] = namespace or metadata.get("namespace") or "default"
        _normalize_secret(obj)
        key = self._key(metadata["name"], metadata.get("namespace"))
        with self.cluster.lock:
            if key in self.cluster.objects:
                raise ApiException(status=409, reason="AlreadyExists")
            metadata["generation"] = 1
            self.cluster.objects[key] = obj
            self.cluster.calls.append(("create", self.kind, metadata["name"]))
        self.cluster.reconcile()
        return FakeResult(obj)

    def patch(self, body, name, namespace=None, content_type=None, **kwargs):
        self.cluster.maybe_fail("patch", self.kind)
        key = self._key(name, namespace)
        with self.cluster.lock:
            live = self.cluster.objects.get(key)
            if live is None:
                raise ApiException(status=404, reason="Not Found")
            if content_type == JSON_PATCH:
                patched = apply_json_patch(live, body)
            else:
                patched = merge_patch(live, body)
            _normalize_secret(patched)
            if patched.get("spec") != live.get("spec"):
                patched["metadata"]["generation"] = (live["metadata"].get("generation") or 1) + 1
            self.cluster.objects[key] = patched
            self.cluster.calls.append(("patch", self.kind, name))
        self.cluster.reconcile()
        return FakeResult(patched)

    def delete(self, name, namespace=None, **kwargs):
        self.cluster.maybe_fail("delete", self.kind)
        with self.cluster.lock:
            if self.cluster.objects.pop(self._key(name, namespace), None) is None:
                raise ApiException(status=404, reason="Not Found")
            self.cluster.calls.append(("delete", self.kind, name))
        self.cluster.reconcile()
        return FakeResult({})


class FakeCluster:
    """An in-memory API server with a toy Deployment controller.

    Deployments get ``replicas`` pods labelled with their matchLabels; an image containing
    "nonexistent" or "invalid" leaves the pods in ErrImagePull.
    """

    def __init__(self, name="fake"):
        self.name = name
        self.objects = {}
        self.calls = []
        self.failures = []
        self.lock = threading.RLock()
        self.released = False
        self.ephemeral = False
        self.keep = False
        self.request_timeout = 10.0
        self._kubectl = None
        self.controllers = [deployment_controller]

    @property
    def kubectl(self):
        if self._kubectl is None:
            self._kubectl = KubeCtl(self)
        return self._kubectl

    def resource(self, api_version, kind):
        return FakeResource(self, api_version, kind)

    def kubectl_args(self):
        return ["kubectl", "--context", self.name]

    def fail_next(self, verb, kind, status, times=1):
        """Make the next ``times`` calls of ``verb`` on ``kind`` raise ApiException(status)."""
        self.failures.append([verb, kind, status, times])

    def maybe_fail(self, verb, kind):
        with self.lock:
            for failure in self.failures:
                if failure[0] == verb and failure[1] == kind and failure[3] > 0:
                    failure[3] -= 1
                    raise ApiException(status=failure[2], reason="Injected")

    def reconcile(self):
        with self.lock:
            for controller in self.controllers:
                controller(self)

    def add(self, obj):
        obj = copy.deepcopy(obj)
        metadata = obj.setdefault("metadata", {})
        namespaced = is_namespaced(obj["kind"])
        if namespaced:
            metadata.setdefault("namespace", "default")
        with self.lock:
            self.objects[(obj["kind"], metadata.get("namespace") if namespaced else None, metadata["name"])] = obj
        self.reconcile()
        return obj

    def get(self, kind, name, namespace="default"):
        return self.objects.get((kind, namespace if is_namespaced(kind) else None, name))

    def release(self):
        self.released = True


def _pod(name, namespace, labels, image, owner):
    bad = any(marker in image for marker in BAD_IMAGE_MARKERS)
    container_state = (
        {"waiting": {"reason": "ErrImagePull", "message": f"failed to pull {image}"}}
        if bad
        else {"running": {"startedAt": "2024-01-01T00:00:00Z"}}
    )
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": name, "namespace": namespace, "labels": dict(labels), "ownerName": owner},
        "spec": {"containers": [{"name": "main", "image": image}]},
        "status": {
            "phase": "Pending" if bad else "Running",
            "conditions": [{"type": "Ready", "status": "False" if bad else "True"}],
            "containerStatuses": [
                {"name": "main", "ready": not bad, "restartCount": 0, "image": image, "state": container_state}
            ],
        },
    }


def deployment_controller(cluster):
    for key in [k for k in cluster.objects if k[0] == "Pod"]:
        if cluster.objects[key]["metadata"].get("ownerName"):
            del cluster.objects[key]
    for (kind, namespace, name), dep in list(cluster.objects.items()):
        if kind != "Deployment":
            continue
        spec = dep.get("spec") or {}
        labels = ((spec.get("template") or {}).get("metadata") or {}).get("labels") or {}
        image = spec["template"]["spec"]["containers"][0]["image"]
        replicas = spec.get("replicas", 1)
        ready = 0
        for i in range(replicas):
            pod = _pod(f"{name}-{i}", namespace, labels, image, name)
            cluster.objects[("Pod", namespace, pod["metadata"]["name"])] = pod
            ready += pod["status"]["phase"] == "Running"
        dep["status"] = {
            "observedGeneration": dep["metadata"].get("generation", 1),
            "replicas": replicas,
            "updatedReplicas": replicas,
            "readyReplicas": ready,
            "availableReplicas": ready,
            "conditions": [{"type": "Available", "status": "True" if ready == replicas else "False"}],
        }


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def settings(tmp_path):
    return get_settings(
        poll_interval=0.02,
        poll_jitter=0.0,
        observation_workers=4,
        observation_timeout=2.0,
        observation_retries=2,
        apply_max_attempts=3,
        apply_backoff_initial=0.001,
        apply_backoff_max=0.01,
        results_dir=tmp_path / "results",
        logs_dir=tmp_path / "logs",
        prometheus_url=None,
    )


@pytest.fixture
def cancel():
    return CancellationToken()


def web_deployment(name="web", image="nginx:1.25-alpine", replicas=2, namespace=None):
    manifest = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name, "labels": {"app": name}},
        "spec": {
            "replicas": replicas,
            "selector": {"matchLabels": {"app": name}},
            "template": {
                "metadata": {"labels": {"app": name}},
                "spec": {"containers": [{"name": name, "image": image}]},
            },
        },
    }
    if namespace:
        manifest["metadata"]["namespace"] = namespace
    return manifest


def broken_image_document(**overrides):
    doc = {
        "id": "broken-web",
        "title": "web rolled out with a bad image",
        "parameters": {"image": "nonexistent-registry.io/web:v2", "good_image": "nginx:1.25-alpine"},
        "baselineManifests": [web_deployment(image="${good_image}")],
        "observations": [
            {"name": "pods", "podPhase": {"selector": {"kind": "Deployment", "name": "web"}}},
            {
                "name": "image",
                "resourceField": {
                    "selector": {"kind": "Deployment", "name": "web"},
                    "jsonPath": "spec.template.spec.containers[0].image",
                },
            },
        ],
        "steps": [
            {
                "name": "web-available",
                "phase": "baseline",
                "waitFor": {"selector": {"kind": "Deployment", "name": "web"}, "condition": "Available", "timeout": 2},
            },
            {
                "name": "bad-image",
                "patch": {
                    "selector": {"kind": "Deployment", "name": "web"},
                    "path": "spec.template.spec.containers[0].image",
                    "value": "${image}",
                },
            },
        ],
        "baselinePredicate": "pods.allReady",
        "faultSignature": {
            "condition": 'pods.reasons contains "ErrImagePull" or pods.reasons contains "ImagePullBackOff"',
            "detectionWindow": 2,
        },
        "recoveryPredicate": "pods.allReady and len(pods.reasons) == 0",
        "remediation": [
            {
                "name": "roll-back",
                "patch": {
                    "selector": {"kind": "Deployment", "name": "web"},
                    "path": "spec.template.spec.containers[0].image",
                    "value": "${good_image}",
                },
            }
        ],
        "timeout": 1,
        "pollInterval": 0.02,
        "cleanupNamespace": True,
    }
    doc.update(overrides)
    return doc
