"""Observation targets. Each one reads a single piece of cluster state and never mutates anything."""

from typing import Annotated, Literal, Union

from pydantic import Field, TypeAdapter, model_validator

from srebench.errors import ObservationUnavailable
from srebench.service.kubectl import KubeCtl
from srebench.service.resources import ResourceSpec, Selector, _Model, untag
from srebench.utils.jsonpath import get_path

ARGOCD_API_VERSION = "argoproj.io/v1alpha1"

TARGET_TYPES = ("podPhase", "resourceField", "metricQuery", "applicationSyncStatus", "drift")


class _Target(_Model):
    name: str
    description: str | None = None

    def observe(self, ctx):
        raise NotImplementedError


class PodPhase(_Target):
    """Phase, readiness and waiting reasons of the pods behind a selector.

    The selector may point at pods directly or at a workload (Deployment, StatefulSet, ...), in
    which case its ``spec.selector.matchLabels`` are used.
    """

    type: Literal["podPhase"] = "podPhase"
    selector: Selector

    def _pods(self, ctx) -> list[dict]:
        selector = self.selector.bind(ctx.namespace)
        if selector.kind == "Pod":
            return ctx.kubectl.find(selector)

        owners = ctx.kubectl.find(selector)
        pods = []
        for owner in owners:
            match = get_path(owner, "spec.selector.matchLabels") or {}
            if not match:
                continue
            label_selector = ",".join(f"{k}={v}" for k, v in sorted(match.items()))
            pods.extend(ctx.kubectl.list_pods(selector.namespace, label_selector))
        return pods

    def observe(self, ctx):
        pods = [p for p in self._pods(ctx) if not (p.get("metadata") or {}).get("deletionTimestamp")]
        summaries = sorted((KubeCtl.pod_summary(p) for p in pods), key=lambda s: s["name"] or "")
        phases = {}
        for s in summaries:
            phases[s["phase"]] = phases.get(s["phase"], 0) + 1
        ready = sum(1 for s in summaries if s["ready"])
        return {
            "total": len(summaries),
            "ready": ready,
            "notReady": len(summaries) - ready,
            "allReady": bool(summaries) and ready == len(summaries),
            "phases": dict(sorted(phases.items())),
            "reasons": sorted({s["reason"] for s in summaries if s["reason"]}),
            "restarts": sum(s["restarts"] for s in summaries),
            "pods": summaries,
        }


class ResourceField(_Target):
    """A field of the selected object(s). No match yields ``None``; several matches a list."""

    type: Literal["resourceField"] = "resourceField"
    selector: Selector
    json_path: str

    def observe(self, ctx):
        objs = ctx.kubectl.find(self.selector.bind(ctx.namespace))
        if not objs:
            return None
        values = [get_path(o, self.json_path) for o in objs]
        return values[0] if len(values) == 1 else values


class MetricQuery(_Target):
    """An instant PromQL query.

    Goes to the in-cluster ``service`` (``[namespace/]name[:port]``) through the API server proxy when
    one is named, otherwise to ``url`` or the configured Prometheus.
    """

    type: Literal["metricQuery"] = "metricQuery"
    query: str
    url: str | None = None
    service: str | None = None

    @model_validator(mode="after")
    def _one_endpoint(self):
        if self.url and self.service:
            raise ValueError(f"metricQuery {self.name}: set url or service, not both")
        return self

    def observe(self, ctx):
        if self.service:
            return ctx.prometheus_service(ctx.render(self.service)).query(ctx.render(self.query))
        url = self.url or ctx.settings.prometheus_url
        if not url:
            raise ObservationUnavailable("no Prometheus URL configured (set PROMETHEUS_URL or target.url)")
        return ctx.prometheus(url).query(ctx.render(self.query))


class ApplicationSyncStatus(_Target):
    """Sync and health of an ArgoCD Application."""

    type: Literal["applicationSyncStatus"] = "applicationSyncStatus"
    application: str
    namespace: str = "argocd"

    def observe(self, ctx):
        app = ctx.kubectl.get(ARGOCD_API_VERSION, "Application", self.application, self.namespace)
        if app is None:
            return {"exists": False, "sync": None, "health": None, "revision": None}
        status = app.get("status") or {}
        return {
            "exists": True,
            "sync": get_path(status, "sync.status"),
            "health": get_path(status, "health.status"),
            "revision": get_path(status, "sync.revision"),
        }


class Drift(_Target):
    """Live state against a git-sourced manifest."""

    type: Literal["drift"] = "drift"
    resource: ResourceSpec

    def observe(self, ctx):
        return ctx.applier.detect_drift(self.resource, ctx.namespace, ctx.params).to_dict()


ObservationTarget = Annotated[
    Union[PodPhase, ResourceField, MetricQuery, ApplicationSyncStatus, Drift],
    Field(discriminator="type"),
]

_adapter = TypeAdapter(ObservationTarget)


def parse_target(data) -> ObservationTarget:
    """Build a target from either ``{type: podPhase, ...}`` or ``{podPhase: {...}}``."""
    if isinstance(data, _Target):
        return data
    return _adapter.validate_python(untag(data, TARGET_TYPES, wrap={"drift": "resource"}))
