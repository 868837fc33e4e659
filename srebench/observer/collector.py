"""Bounded-parallel, read-only snapshots of a scenario's observation targets."""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait

from srebench.config import Settings, get_settings
from srebench.errors import ObservationUnavailable, ScenarioCancelled, TransientApplyError
from srebench.observer.snapshot import ObservedField, Snapshot
from srebench.observer.targets import parse_target
from srebench.service.applier import ManifestApplier, classify_api_error
from srebench.service.kubectl import KubeCtl
from srebench.service.resources import substitute
from srebench.service.telemetry.prometheus import PrometheusClient, ServiceProxyPrometheusClient
from srebench.utils.sigint_aware_section import CancellationToken

logger = logging.getLogger("all.srebench.observer")

# granularity at which an in-flight snapshot notices cancellation
WAIT_SLICE = 0.25
RETRY_PAUSE = 0.2


class ObservationCollector:
    def __init__(
        self,
        handle,
        namespace: str | None = None,
        settings: Settings | None = None,
        cancel: CancellationToken | None = None,
        params: dict | None = None,
        applier: ManifestApplier | None = None,
    ):
        self.handle = handle
        self.namespace = namespace
        self.settings = settings or get_settings()
        # a hung read must hand its worker back to the pool within one observation timeout
        self.kubectl = KubeCtl(handle, request_timeout=self.settings.observation_timeout)
        self.cancel = cancel or CancellationToken()
        self.params = dict(params or {})
        self.applier = applier or ManifestApplier(handle, self.settings, self.cancel)
        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.observation_workers, thread_name_prefix="srebench-observe"
        )
        self._prometheus: dict[str, PrometheusClient] = {}
        self._lock = threading.Lock()

    def prometheus(self, url: str) -> PrometheusClient:
        with self._lock:
            if url not in self._prometheus:
                self._prometheus[url] = PrometheusClient(url, timeout=self.settings.observation_timeout)
            return self._prometheus[url]

    def prometheus_service(self, service: str) -> PrometheusClient:
        key = f"service:{service}"
        with self._lock:
            if key not in self._prometheus:
                self._prometheus[key] = ServiceProxyPrometheusClient(
                    self.handle, service, namespace=self.namespace, timeout=self.settings.observation_timeout
                )
            return self._prometheus[key]

    def render(self, text: str) -> str:
        params = {"namespace": self.namespace, **self.params} if self.namespace else self.params
        return substitute(text, params)

    def _resolve(self, target) -> ObservedField:
        """Observe one target; transient read errors get one more local attempt."""
        attempts = max(1, self.settings.observation_retries)
        for attempt in range(1, attempts + 1):
            try:
                return ObservedField.ok(target.observe(self))
            except ObservationUnavailable as e:
                return ObservedField.unknown(str(e))
            except Exception as e:
                err = classify_api_error(e, f"observe {target.name}")
                if isinstance(err, TransientApplyError) and attempt < attempts:
                    logger.debug(f"{err}, retrying")
                    if self.cancel.wait(RETRY_PAUSE):
                        return ObservedField.unknown("cancelled")
                    continue
                logger.warning(f"Observation '{target.name}' unavailable: {err}")
                return ObservedField.unknown(str(err))
        return ObservedField.unknown(f"observe {target.name}: no attempts left")

    def snapshot(self, targets, label: str | None = None) -> Snapshot:
        """Resolve every target independently; failures and slow targets become ``unknown``.

        Never raises for a target's sake. Raises ScenarioCancelled when the run is cancelled while
        targets are still in flight.
        """
        self.cancel.raise_if_cancelled()
        targets = [parse_target(t) for t in targets]
        start = time.time()
        deadline = time.monotonic() + self.settings.observation_timeout

        futures = {self._executor.submit(self._resolve, t): t for t in targets}
        fields = {}
        pending = set(futures)
        while pending:
            if self.cancel.cancelled:
                for f in pending:
                    f.cancel()
                raise ScenarioCancelled(self.cancel.reason or "cancelled")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            done, pending = wait(pending, timeout=min(WAIT_SLICE, remaining), return_when=FIRST_COMPLETED)
            for f in done:
                fields[futures[f].name] = f.result()

        for f in pending:
            f.cancel()
            target = futures[f]
            logger.warning(f"Observation '{target.name}' timed out after {self.settings.observation_timeout}s")
            fields[target.name] = ObservedField.unknown(
                f"timed out after {self.settings.observation_timeout}s"
            )

        snapshot = Snapshot(taken_at=start, label=label, fields=fields, duration=time.time() - start)
        if snapshot.unknown:
            logger.debug(f"Snapshot '{label}' has unknown fields: {', '.join(snapshot.unknown)}")
        return snapshot

    def close(self):
        self._executor.shutdown(wait=False, cancel_futures=True)
        for client in self._prometheus.values():
            client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
