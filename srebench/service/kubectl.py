"""Interface to the Kubernetes API of one ClusterHandle."""

from __future__ import annotations

import logging
import subprocess

from kubernetes.client.rest import ApiException

logger = logging.getLogger("all.srebench.kubectl")

MERGE_PATCH = "application/merge-patch+json"
JSON_PATCH = "application/json-patch+json"


class KubeCtl:
    def __init__(self, handle, request_timeout: float | None = None):
        """Bind to a ClusterHandle; every call goes through its client and context.

        Every API call is bounded by ``request_timeout`` (the handle's default when omitted).
        """
        self.handle = handle
        self.request_timeout = request_timeout if request_timeout is not None else handle.request_timeout

    def _resource(self, api_version: str, kind: str):
        return self.handle.resource(api_version, kind)

    @staticmethod
    def _scope(resource, namespace):
        return namespace if resource.namespaced else None

    def get(self, api_version: str, kind: str, name: str, namespace: str | None = None) -> dict | None:
        """Fetch one object as a dict, or None when it does not exist."""
        resource = self._resource(api_version, kind)
        try:
            return resource.get(
                name=name, namespace=self._scope(resource, namespace), _request_timeout=self.request_timeout
            ).to_dict()
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def list(
        self, api_version: str, kind: str, namespace: str | None = None, label_selector: str | None = None
    ) -> list[dict]:
        resource = self._resource(api_version, kind)
        kwargs = {"namespace": self._scope(resource, namespace), "_request_timeout": self.request_timeout}
        if label_selector:
            kwargs["label_selector"] = label_selector
        result = resource.get(**kwargs).to_dict()
        return sorted(result.get("items") or [], key=lambda o: (o.get("metadata") or {}).get("name", ""))

    def find(self, selector) -> list[dict]:
        """All objects matched by a Selector (by name, or by label selector)."""
        if selector.name:
            obj = self.get(selector.api_version, selector.kind, selector.name, selector.namespace)
            return [obj] if obj is not None else []
        return self.list(selector.api_version, selector.kind, selector.namespace, selector.label_selector)

    def create(self, manifest: dict) -> dict:
        resource = self._resource(manifest["apiVersion"], manifest["kind"])
        namespace = (manifest.get("metadata") or {}).get("namespace")
        return resource.create(
            body=manifest, namespace=self._scope(resource, namespace), _request_timeout=self.request_timeout
        ).to_dict()

    def patch(
        self,
        api_version: str,
        kind: str,
        name: str,
        namespace: str | None,
        body,
        content_type: str = MERGE_PATCH,
    ) -> dict:
        resource = self._resource(api_version, kind)
        return resource.patch(
            body=body,
            name=name,
            namespace=self._scope(resource, namespace),
            content_type=content_type,
            _request_timeout=self.request_timeout,
        ).to_dict()

    def delete(self, api_version: str, kind: str, name: str, namespace: str | None = None):
        resource = self._resource(api_version, kind)
        resource.delete(
            name=name,
            namespace=self._scope(resource, namespace),
            propagation_policy="Foreground",
            _request_timeout=self.request_timeout,
        )

    def list_pods(self, namespace: str, label_selector: str | None = None) -> list[dict]:
        """Return all pods within a namespace, optionally filtered by label selector."""
        return self.list("v1", "Pod", namespace, label_selector)

    def namespace_exists(self, namespace: str) -> bool:
        return self.get("v1", "Namespace", namespace) is not None

    def create_namespace_if_not_exist(self, namespace: str, labels: dict | None = None) -> bool:
        """Create a namespace if it doesn't exist. Returns True when it was created."""
        if self.namespace_exists(namespace):
            logger.info(f"Namespace '{namespace}' already exists.")
            return False
        body = {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": namespace, "labels": labels or {}}}
        try:
            self.create(body)
        except ApiException as e:
            if e.status == 409:
                return False
            raise
        logger.info(f"Namespace '{namespace}' created.")
        return True

    def delete_namespace(self, namespace: str):
        """Delete a namespace; a missing namespace is not an error."""
        try:
            self.delete("v1", "Namespace", namespace)
            logger.info(f"Namespace '{namespace}' deletion requested.")
        except ApiException as e:
            if e.status == 404:
                logger.info(f"Namespace '{namespace}' not found.")
            else:
                raise

    def exec_command(self, args: list[str], input_data: str | None = None, timeout: float | None = 300):
        """Run ``kubectl`` pinned to this handle's kubeconfig and context."""
        command = self.handle.kubectl_args() + list(args)
        logger.debug(f"$ {' '.join(command)}")
        return subprocess.run(command, input=input_data, capture_output=True, text=True, timeout=timeout)

    def apply_url(self, url: str, namespace: str | None = None) -> str:
        args = ["apply", "-f", url]
        if namespace:
            args += ["-n", namespace]
        out = self.exec_command(args)
        if out.returncode != 0:
            raise RuntimeError(f"kubectl apply -f {url} failed: {out.stderr.strip()}")
        return out.stdout

    @staticmethod
    def is_ready(pod: dict) -> bool:
        status = pod.get("status") or {}
        if status.get("phase") != "Running":
            return False
        for cond in status.get("conditions") or []:
            if cond.get("type") == "Ready":
                return cond.get("status") == "True"
        statuses = status.get("containerStatuses") or []
        return bool(statuses) and all(cs.get("ready") for cs in statuses)

    @staticmethod
    def pod_reason(pod: dict) -> str | None:
        """The most specific reason a pod is not healthy (ErrImagePull, CrashLoopBackOff, Evicted, ...)."""
        status = pod.get("status") or {}
        for key in ("initContainerStatuses", "containerStatuses"):
            for cs in status.get(key) or []:
                state = cs.get("state") or {}
                waiting = state.get("waiting") or {}
                if waiting.get("reason"):
                    return waiting["reason"]
                terminated = state.get("terminated") or {}
                if terminated.get("reason") and terminated["reason"] != "Completed":
                    return terminated["reason"]
        if status.get("reason"):
            return status["reason"]
        if status.get("phase") == "Pending":
            for cond in status.get("conditions") or []:
                if cond.get("type") == "PodScheduled" and cond.get("status") == "False":
                    return cond.get("reason") or "Unschedulable"
        return None

    @classmethod
    def pod_summary(cls, pod: dict) -> dict:
        status = pod.get("status") or {}
        return {
            "name": (pod.get("metadata") or {}).get("name"),
            "phase": status.get("phase") or "Unknown",
            "ready": cls.is_ready(pod),
            "reason": cls.pod_reason(pod),
            "restarts": sum(cs.get("restartCount") or 0 for cs in status.get("containerStatuses") or []),
        }
