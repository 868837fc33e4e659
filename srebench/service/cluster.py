"""Cluster acquisition: create a disposable kind cluster or bind to an existing context.

Every component receives a ``ClusterHandle``; nothing else loads kubeconfig or relies on the
ambient ``kubectl`` context.
"""

import logging
import os
import shutil
import subprocess
import tempfile
import threading
import time
from pathlib import Path

import yaml
from kubernetes import client
from kubernetes import config as k8s_config
from kubernetes.config.config_exception import ConfigException
from kubernetes.dynamic import DynamicClient
from pydantic import BaseModel
from tenacity import Retrying, retry_if_not_exception_type, stop_after_attempt, stop_after_delay, wait_exponential

from srebench.errors import ClusterUnreachableError, ProvisioningError, ScenarioCancelled

logger = logging.getLogger("all.srebench.cluster")

DEFAULT_KUBECONFIG = Path(os.path.expanduser("~/.kube/config"))

PROBE_REQUEST_TIMEOUT = 5
DEFAULT_REQUEST_TIMEOUT = 10.0
MAX_CLUSTER_NAME = 40


class ClusterConfig(BaseModel):
    name: str | None = None
    context: str | None = None
    kubeconfig: Path | None = None
    ephemeral: bool = False
    workers: int = 2
    node_image: str | None = None
    probe_timeout: float = 30.0
    probe_attempts: int = 5
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    keep: bool = False

    @classmethod
    def existing(cls, cluster: str | None = None, kubeconfig: str | None = None, context: str | None = None, **kw):
        return cls(name=cluster, context=context, kubeconfig=Path(kubeconfig) if kubeconfig else None, **kw)

    @classmethod
    def disposable(cls, name: str, run_id: str | None = None, **kw):
        # kind cluster names must be valid DNS labels; the run id suffix always survives truncation
        name = name.lower()
        if run_id:
            suffix = f"-{run_id.lower()}"
            name = name[: MAX_CLUSTER_NAME - len(suffix)].rstrip("-") + suffix
        return cls(name=name[:MAX_CLUSTER_NAME].rstrip("-"), ephemeral=True, **kw)


def dependency_check(binaries: list[str]):
    for b in binaries:
        if shutil.which(b) is None:
            logger.error(f"Required dependency '{b}' not found.")
            raise ProvisioningError(f"Required dependency '{b}' not found.")


def run_command(args: list[str], input_data: str | None = None, timeout: float | None = None):
    logger.debug(f"$ {' '.join(args)}")
    return subprocess.run(args, input=input_data, capture_output=True, text=True, timeout=timeout)


class KindProvisioner:
    """Creates and deletes kind clusters with a private kubeconfig file."""

    def __init__(self, name: str, workers: int = 2, node_image: str | None = None):
        self.name = name
        self.workers = workers
        self.node_image = node_image
        self.kubeconfig = Path(tempfile.gettempdir()) / f"srebench-kind-{name}.kubeconfig"

    @property
    def context(self) -> str:
        return f"kind-{self.name}"

    def cluster_config(self) -> str:
        control_plane = {
            "role": "control-plane",
            "kubeadmConfigPatches": [
                "kind: InitConfiguration\nnodeRegistration:\n  kubeletExtraArgs:\n    node-labels: \"ingress-ready=true\"\n"
            ],
        }
        nodes = [control_plane] + [{"role": "worker"} for _ in range(self.workers)]
        if self.node_image:
            for node in nodes:
                node["image"] = self.node_image
        return yaml.safe_dump({"kind": "Cluster", "apiVersion": "kind.x-k8s.io/v1alpha4", "nodes": nodes})

    def create(self) -> Path:
        dependency_check(["kind"])
        if self.exists():
            raise ProvisioningError(f"kind cluster '{self.name}' already exists; refusing to reuse or delete it")

        logger.info(f"Creating kind cluster '{self.name}' ({self.workers} workers)")
        out = run_command(
            [
                "kind",
                "create",
                "cluster",
                "--name",
                self.name,
                "--kubeconfig",
                str(self.kubeconfig),
                "--config",
                "-",
                "--wait",
                "120s",
            ],
            input_data=self.cluster_config(),
        )
        if out.returncode != 0:
            raise ProvisioningError(f"kind create cluster '{self.name}' failed: {out.stderr.strip()}")
        return self.kubeconfig

    def delete(self):
        out = run_command(["kind", "delete", "cluster", "--name", self.name, "--kubeconfig", str(self.kubeconfig)])
        if out.returncode != 0:
            raise ProvisioningError(f"kind delete cluster '{self.name}' failed: {out.stderr.strip()}")
        self.kubeconfig.unlink(missing_ok=True)
        logger.info(f"Deleted kind cluster '{self.name}'")

    def exists(self) -> bool:
        out = run_command(["kind", "get", "clusters"])
        if out.returncode != 0:
            return False
        return self.name in {line.strip() for line in out.stdout.splitlines()}


def resolve_context(kubeconfig: Path, cluster: str | None, context: str | None) -> str:
    """Pick the kubeconfig context for ``--cluster NAME`` (``NAME`` or ``kind-NAME``)."""
    try:
        contexts, active = k8s_config.list_kube_config_contexts(config_file=str(kubeconfig))
    except (ConfigException, OSError) as e:
        raise ClusterUnreachableError(f"Cannot read kubeconfig {kubeconfig}: {e}") from e

    names = {c["name"] for c in contexts or []}
    if context:
        if context not in names:
            raise ClusterUnreachableError(f"Context '{context}' not found in {kubeconfig}")
        return context
    if cluster:
        for candidate in (cluster, f"kind-{cluster}"):
            if candidate in names:
                return candidate
        raise ClusterUnreachableError(f"Could not find a context for cluster '{cluster}' in {kubeconfig}")
    if not active:
        raise ClusterUnreachableError(f"No current context in {kubeconfig}")
    return active["name"]


class ClusterHandle:
    def __init__(
        self,
        name: str,
        api_client,
        context: str | None = None,
        kubeconfig: Path | None = None,
        provisioner: KindProvisioner | None = None,
        keep: bool = False,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ):
        self.name = name
        self.api_client = api_client
        self.context = context
        self.kubeconfig = kubeconfig
        self.provisioner = provisioner
        self.keep = keep
        self.request_timeout = request_timeout
        self.released = False
        self._dynamic = None
        self._kubectl = None
        self._lock = threading.Lock()

    @property
    def ephemeral(self) -> bool:
        return self.provisioner is not None

    @property
    def dynamic(self) -> DynamicClient:
        with self._lock:
            if self._dynamic is None:
                self._dynamic = DynamicClient(self.api_client)
            return self._dynamic

    @property
    def kubectl(self):
        from srebench.service.kubectl import KubeCtl

        if self._kubectl is None:
            self._kubectl = KubeCtl(self)
        return self._kubectl

    def resource(self, api_version: str, kind: str):
        return self.dynamic.resources.get(api_version=api_version, kind=kind)

    def kubectl_args(self) -> list[str]:
        args = ["kubectl"]
        if self.kubeconfig:
            args += ["--kubeconfig", str(self.kubeconfig)]
        if self.context:
            args += ["--context", self.context]
        return args

    def probe(self, attempts: int = 5, timeout: float = 30.0, cancel=None):
        """Ping ``/version`` with exponential backoff; raise ClusterUnreachableError when it stays silent."""

        def _sleep(seconds):
            if cancel is None:
                time.sleep(seconds)
            elif cancel.wait(seconds):
                raise ScenarioCancelled(cancel.reason or "cancelled")

        retrying = Retrying(
            stop=stop_after_attempt(attempts) | stop_after_delay(timeout),
            wait=wait_exponential(multiplier=0.5, max=8),
            retry=retry_if_not_exception_type(ScenarioCancelled),
            sleep=_sleep,
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    version = client.VersionApi(self.api_client).get_code(_request_timeout=PROBE_REQUEST_TIMEOUT)
        except ScenarioCancelled:
            raise
        except Exception as e:
            raise ClusterUnreachableError(
                f"Control plane of '{self.name}' did not respond after {attempts} attempts: {e}"
            ) from e
        logger.info(f"Cluster '{self.name}' reachable (Kubernetes {version.git_version})")
        return version

    def exists(self) -> bool:
        if self.provisioner is None:
            return True
        return self.provisioner.exists()

    def release(self):
        """Tear down an ephemeral cluster; pre-existing clusters are left alone. Idempotent."""
        with self._lock:
            if self.released:
                return
            self.released = True
        try:
            self.api_client.close()
        except Exception as e:
            logger.debug(f"Closing API client failed: {e}")
        if self.provisioner is None:
            return
        if self.keep:
            logger.info(f"Keeping kind cluster '{self.name}' (context {self.context})")
            return
        self.provisioner.delete()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


def acquire(config: ClusterConfig, cancel=None) -> ClusterHandle:
    provisioner = None
    if config.ephemeral:
        if not config.name:
            raise ProvisioningError("An ephemeral cluster needs a name")
        provisioner = KindProvisioner(config.name, workers=config.workers, node_image=config.node_image)
        kubeconfig = provisioner.create()
        context = provisioner.context
    else:
        env_kubeconfig = os.environ.get("KUBECONFIG", "").split(os.pathsep)[0]
        kubeconfig = config.kubeconfig or Path(env_kubeconfig or DEFAULT_KUBECONFIG)
        context = resolve_context(kubeconfig, config.name, config.context)

    try:
        api_client = k8s_config.new_client_from_config(config_file=str(kubeconfig), context=context)
    except (ConfigException, OSError) as e:
        if provisioner is not None:
            provisioner.delete()
        raise ClusterUnreachableError(f"Cannot build a client for context '{context}': {e}") from e

    handle = ClusterHandle(
        name=config.name or context,
        api_client=api_client,
        context=context,
        kubeconfig=kubeconfig,
        provisioner=provisioner,
        keep=config.keep,
        request_timeout=config.request_timeout,
    )
    try:
        handle.probe(attempts=config.probe_attempts, timeout=config.probe_timeout, cancel=cancel)
    except (ClusterUnreachableError, ScenarioCancelled):
        handle.release()
        raise
    return handle
