import json
import logging
import math
import os

import requests
from kubernetes.client.rest import ApiException
from requests.adapters import HTTPAdapter
from urllib3.exceptions import HTTPError as Urllib3HTTPError
from urllib3.util.retry import Retry

from srebench.errors import ObservationUnavailable

logger = logging.getLogger("all.srebench.prometheus")

REQUEST_TIMEOUT = float(os.getenv("SREBENCH_PROMETHEUS_TIMEOUT", 10))
RETRY_TOTAL = int(os.getenv("SREBENCH_PROMETHEUS_RETRIES", 2))
RETRY_BACKOFF_FACTOR = float(os.getenv("SREBENCH_PROMETHEUS_BACKOFF", 0.3))


def _number(raw):
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return raw
    if math.isnan(value) or math.isinf(value):
        return None
    return int(value) if value.is_integer() else value


class PrometheusClient:
    """Read-only client for the Prometheus HTTP query API."""

    def __init__(self, url: str, timeout: float = REQUEST_TIMEOUT):
        self.url = url.rstrip("/")
        self.timeout = timeout
        self.session = self.create_retrying_session()

    def create_retrying_session(self) -> requests.Session:
        session = requests.Session()
        retries = Retry(
            total=RETRY_TOTAL,
            backoff_factor=RETRY_BACKOFF_FACTOR,
            status_forcelist=[500, 502, 503, 504],
            allowed_methods=["GET"],
        )
        adapter = HTTPAdapter(max_retries=retries)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def _fetch(self, expr: str) -> dict:
        try:
            response = self.session.get(f"{self.url}/api/v1/query", params={"query": expr}, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            raise ObservationUnavailable(f"Prometheus query failed: {e}") from e
        except ValueError as e:
            raise ObservationUnavailable(f"Prometheus returned invalid JSON: {e}") from e

    def query(self, expr: str) -> dict:
        """Run an instant query.

        Returns ``{"value": <first sample or None>, "count": n, "samples": [{"labels", "value"}]}``.
        Scalar and string results have a single unlabeled sample.
        """
        payload = self._fetch(expr)
        if payload.get("status") != "success":
            raise ObservationUnavailable(f"Prometheus error: {payload.get('error', 'unknown error')}")

        data = payload.get("data") or {}
        result_type = data.get("resultType")
        result = data.get("result")
        if result_type in ("scalar", "string"):
            samples = [{"labels": {}, "value": _number(result[1])}]
        elif result_type == "vector":
            samples = [{"labels": r.get("metric") or {}, "value": _number(r["value"][1])} for r in result or []]
        elif result_type == "matrix":
            samples = [
                {"labels": r.get("metric") or {}, "value": _number(r["values"][-1][1]) if r.get("values") else None}
                for r in result or []
            ]
        else:
            raise ObservationUnavailable(f"Unsupported Prometheus result type {result_type!r}")

        samples.sort(key=lambda s: sorted(s["labels"].items()))
        return {
            "value": samples[0]["value"] if samples else None,
            "count": len(samples),
            "samples": samples,
        }

    def close(self):
        self.session.close()


def parse_service(service: str, default_namespace: str | None = None) -> tuple[str, str, str]:
    """Split ``[namespace/]name[:port]`` into its parts (port defaults to 9090)."""
    namespace, _, rest = service.rpartition("/")
    name, _, port = rest.partition(":")
    namespace = namespace or default_namespace
    if not namespace or not name:
        raise ValueError(f"invalid Prometheus service {service!r}, expected [namespace/]name[:port]")
    return namespace, name, port or "9090"


class ServiceProxyPrometheusClient(PrometheusClient):
    """Queries an in-cluster Prometheus through the API server's service proxy.

    Uses the ClusterHandle's credentials, so nothing has to be port-forwarded or exposed.
    """

    def __init__(self, handle, service: str, namespace: str | None = None, timeout: float = REQUEST_TIMEOUT):
        ns, name, port = parse_service(service, namespace)
        self.handle = handle
        self.service = f"{ns}/{name}:{port}"
        self.url = f"/api/v1/namespaces/{ns}/services/{name}:{port}/proxy"
        self.timeout = timeout
        self.session = None

    def _fetch(self, expr: str) -> dict:
        try:
            response = self.handle.dynamic.request(
                "GET", f"{self.url}/api/v1/query", query_params=[("query", expr)], _request_timeout=self.timeout
            )
            return json.loads(response.data)
        except ApiException as e:
            raise ObservationUnavailable(
                f"Prometheus query via service {self.service} failed: HTTP {e.status} {e.reason}"
            ) from e
        except Urllib3HTTPError as e:
            raise ObservationUnavailable(f"Prometheus query via service {self.service} failed: {e}") from e
        except ValueError as e:
            raise ObservationUnavailable(f"Prometheus returned invalid JSON: {e}") from e

    def close(self):
        pass
