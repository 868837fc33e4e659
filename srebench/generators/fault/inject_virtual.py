"""Inject faults at the Kubernetes object layer: images, policies, autoscalers, config and secrets."""

import base64
import logging

from srebench.generators.fault.base import FaultInjector, FaultSpec
from srebench.service.resources import ResourceSpec, Selector

logger = logging.getLogger("all.srebench.fault")

NONEXISTENT_IMAGE = "nonexistent-registry.invalid/app:does-not-exist"


class VirtualizationFaultInjector(FaultInjector):
    ############# FAULT LIBRARY ################
    # Each builder returns a FaultSpec; magnitudes are parameters so one scenario can inject
    # different severities.

    # V.1 - incorrect_image: point a workload at an image that cannot be pulled
    @staticmethod
    def incorrect_image(deployment: str, image: str = NONEXISTENT_IMAGE, container: int = 0) -> FaultSpec:
        return FaultSpec(
            action="patch",
            description=f"set image of deployment/{deployment} container {container} to {image}",
            selector=Selector(kind="Deployment", name=deployment),
            ops=({"op": "replace", "path": f"spec.template.spec.containers[{container}].image", "value": image},),
            expected_signature="ErrImagePull or ImagePullBackOff on the new pods",
            parameters={"deployment": deployment, "image": image, "container": container},
        )

    # V.2 - deny_all_network_policy: lock every selected pod out of the network
    @staticmethod
    def deny_all_network_policy(
        name: str = "deny-all", match_labels: dict | None = None, policy_types: tuple = ("Ingress", "Egress")
    ) -> FaultSpec:
        manifest = {
            "apiVersion": "networking.k8s.io/v1",
            "kind": "NetworkPolicy",
            "metadata": {"name": name},
            "spec": {
                "podSelector": {"matchLabels": dict(match_labels)} if match_labels else {},
                "policyTypes": list(policy_types),
            },
        }
        return FaultSpec(
            action="apply",
            description=f"deny-all NetworkPolicy {name} ({', '.join(policy_types)})",
            resource=ResourceSpec.model_validate({"manifest": manifest, "sourceOfTruth": "manual"}),
            expected_signature="selected pods lose ingress/egress connectivity",
            parameters={"name": name, "matchLabels": dict(match_labels or {}), "policyTypes": list(policy_types)},
        )

    # V.3 - hpa_misconfiguration: an aggressive CPU target and a runaway replica ceiling
    @staticmethod
    def hpa_misconfiguration(hpa: str, target_cpu: int = 5, max_replicas: int = 500) -> FaultSpec:
        if target_cpu <= 0 or max_replicas <= 0:
            raise ValueError("target_cpu and max_replicas must be positive")
        return FaultSpec(
            action="patch",
            description=f"hpa/{hpa} target CPU {target_cpu}%, maxReplicas {max_replicas}",
            selector=Selector(kind="HorizontalPodAutoscaler", name=hpa),
            ops=(
                {"op": "replace", "path": "spec.maxReplicas", "value": max_replicas},
                {
                    "op": "replace",
                    "path": "spec.metrics",
                    "value": [
                        {
                            "type": "Resource",
                            "resource": {
                                "name": "cpu",
                                "target": {"type": "Utilization", "averageUtilization": target_cpu},
                            },
                        }
                    ],
                },
            ),
            expected_signature="currentReplicas keeps climbing toward maxReplicas",
            parameters={"hpa": hpa, "targetCpu": target_cpu, "maxReplicas": max_replicas},
        )

    # V.4 - configmap_drop_keys: a stale ConfigMap missing keys the application reads
    @staticmethod
    def configmap_drop_keys(configmap: str, keys: list[str]) -> FaultSpec:
        if not keys:
            raise ValueError("configmap_drop_keys needs at least one key")
        return FaultSpec(
            action="patch",
            description=f"drop {', '.join(keys)} from configmap/{configmap}",
            selector=Selector(kind="ConfigMap", name=configmap),
            ops=tuple({"op": "remove", "path": f"data['{key}']"} for key in keys),
            expected_signature="pods restarted against the ConfigMap fail on the missing keys",
            parameters={"configmap": configmap, "keys": list(keys)},
        )

    # V.5 - secret_rotation: rotate credentials without updating their consumers
    @staticmethod
    def secret_rotation(secret: str, values: dict[str, str]) -> FaultSpec:
        if not values:
            raise ValueError("secret_rotation needs at least one value")
        ops = tuple(
            {
                "op": "replace",
                "path": f"data['{key}']",
                "value": base64.b64encode(str(value).encode()).decode(),
            }
            for key, value in sorted(values.items())
        )
        return FaultSpec(
            action="patch",
            description=f"rotate {', '.join(sorted(values))} in secret/{secret}",
            selector=Selector(kind="Secret", name=secret),
            ops=ops,
            expected_signature="consumers authenticate with stale credentials",
            parameters={"secret": secret, "keys": sorted(values)},
        )

    # V.6 - scale_to_zero: remove every replica of a workload
    @staticmethod
    def scale_to_zero(deployment: str) -> FaultSpec:
        return FaultSpec(
            action="patch",
            description=f"scale deployment/{deployment} to 0 replicas",
            selector=Selector(kind="Deployment", name=deployment),
            ops=({"op": "replace", "path": "spec.replicas", "value": 0},),
            expected_signature="no ready pods behind the service",
            parameters={"deployment": deployment},
        )


# name used in scenario documents -> builder
FAULT_LIBRARY = {
    "incorrectImage": VirtualizationFaultInjector.incorrect_image,
    "denyAllNetworkPolicy": VirtualizationFaultInjector.deny_all_network_policy,
    "hpaMisconfiguration": VirtualizationFaultInjector.hpa_misconfiguration,
    "configMapDropKeys": VirtualizationFaultInjector.configmap_drop_keys,
    "secretRotation": VirtualizationFaultInjector.secret_rotation,
    "scaleToZero": VirtualizationFaultInjector.scale_to_zero,
}


def build_fault(name: str, args: dict) -> FaultSpec:
    """Build a library fault from a scenario document (``args`` keys may be camelCase)."""
    if name not in FAULT_LIBRARY:
        raise ValueError(f"unknown fault '{name}', expected one of {', '.join(sorted(FAULT_LIBRARY))}")
    kwargs = {_snake(k): v for k, v in (args or {}).items()}
    try:
        return FAULT_LIBRARY[name](**kwargs)
    except TypeError as e:
        raise ValueError(f"invalid arguments for fault '{name}': {e}") from e


def _snake(name: str) -> str:
    return "".join(f"_{c.lower()}" if c.isupper() else c for c in name).lstrip("_")
