"""Idempotent apply / patch / delete with retry of transient API failures.

Transient failures (conflicts, throttling, 5xx, dropped connections) are retried with jittered
exponential backoff; everything else surfaces at once as ``FatalApplyError``.
"""

import base64
import copy
import logging
import random
import time

from kubernetes.client.rest import ApiException
from kubernetes.dynamic.exceptions import ResourceNotFoundError
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_random_exponential
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from srebench.config import Settings, get_settings
from srebench.errors import FatalApplyError, SREBenchError, ScenarioCancelled, TransientApplyError
from srebench.service.kubectl import JSON_PATCH, MERGE_PATCH
from srebench.service.resources import (
    ApplyResult,
    DeleteResult,
    DriftReport,
    Outcome,
    ResourceSpec,
    Selector,
    WaitResult,
)
from srebench.utils.jsonpath import apply_json_patch, diff_paths, get_path, has_path, is_subset, split_path, to_pointer
from srebench.utils.sigint_aware_section import CancellationToken

logger = logging.getLogger("all.srebench.applier")

TRANSIENT_STATUSES = frozenset({409, 429, 500, 502, 503, 504})


def classify_api_error(exc: Exception, what: str) -> SREBenchError:
    """Map a client-side exception onto Transient/FatalApplyError."""
    if isinstance(exc, SREBenchError):
        return exc
    if isinstance(exc, ApiException):
        status = exc.status
        reason = exc.reason or ""
        if status in TRANSIENT_STATUSES:
            return TransientApplyError(f"{what}: HTTP {status} {reason}".strip(), status=status)
        return FatalApplyError(f"{what}: HTTP {status} {reason}".strip(), status=status)
    if isinstance(exc, (Urllib3HTTPError, ConnectionError, TimeoutError)):
        return TransientApplyError(f"{what}: {type(exc).__name__}: {exc}")
    if isinstance(exc, ResourceNotFoundError):
        return FatalApplyError(f"{what}: unknown resource type ({exc})")
    return FatalApplyError(f"{what}: {type(exc).__name__}: {exc}")


def _comparable(manifest: dict) -> dict:
    """What the API server will echo back for ``manifest`` (Secret stringData shows up as data)."""
    if manifest.get("kind") != "Secret" or "stringData" not in manifest:
        return manifest
    out = copy.deepcopy(manifest)
    data = out.setdefault("data", {}) or {}
    for key, value in (out.pop("stringData") or {}).items():
        data[key] = base64.b64encode(str(value).encode()).decode()
    out["data"] = data
    return out


def _validate_manifest(manifest: dict):
    missing = [k for k in ("apiVersion", "kind") if not manifest.get(k)]
    if not (manifest.get("metadata") or {}).get("name"):
        missing.append("metadata.name")
    if missing:
        raise FatalApplyError(f"invalid manifest, missing {', '.join(missing)}")


def _expand_ops(live: dict, ops: list[dict]) -> list[dict]:
    """Normalize ops to JSON pointers, creating missing parents and turning replace-on-missing into add."""
    doc = copy.deepcopy(live)
    out = []
    for op in ops:
        kind = op.get("op", "replace")
        if kind not in ("add", "replace", "remove"):
            raise FatalApplyError(f"unsupported patch op {kind!r}")
        tokens = split_path(op["path"])
        if not tokens:
            raise FatalApplyError("patching the object root is not supported")

        for depth in range(1, len(tokens)):
            if not has_path(doc, tokens[:depth]):
                child = tokens[depth]
                empty = [] if isinstance(child, int) or child == "-" else {}
                parent_op = {"op": "add", "path": to_pointer(tokens[:depth]), "value": empty}
                out.append(parent_op)
                doc = apply_json_patch(doc, [parent_op])

        if kind == "add" and tokens[-1] == "-" and op.get("value") in (get_path(doc, tokens[:-1]) or []):
            # appending a value the list already holds
            continue

        pointer = to_pointer(tokens)
        if kind == "replace" and not has_path(doc, tokens):
            kind = "add"
        normalized = {"op": kind, "path": pointer}
        if kind != "remove":
            normalized["value"] = copy.deepcopy(op.get("value"))
        elif not has_path(doc, tokens):
            # removing an absent field is already satisfied
            continue
        out.append(normalized)
        doc = apply_json_patch(doc, [normalized])
    return out


class ManifestApplier:
    def __init__(self, handle, settings: Settings | None = None, cancel: CancellationToken | None = None):
        self.handle = handle
        self.kubectl = handle.kubectl
        self.settings = settings or get_settings()
        self.cancel = cancel or CancellationToken()

    def _sleep(self, seconds: float):
        if self.cancel.wait(seconds):
            raise ScenarioCancelled(self.cancel.reason or "cancelled")

    def _with_retry(self, what: str, fn):
        """Run ``fn`` until it succeeds or fails non-transiently; return ``(result, attempts)``."""
        attempts = 0

        def _log_retry(retry_state):
            exc = retry_state.outcome.exception()
            logger.warning(f"{what}: transient failure on attempt {retry_state.attempt_number} ({exc}), retrying")

        retrying = Retrying(
            stop=stop_after_attempt(self.settings.apply_max_attempts),
            wait=wait_random_exponential(
                multiplier=self.settings.apply_backoff_initial, max=self.settings.apply_backoff_max
            ),
            retry=retry_if_exception_type(TransientApplyError),
            before_sleep=_log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    self.cancel.raise_if_cancelled()
                    try:
                        result = fn()
                    except SREBenchError:
                        raise
                    except Exception as e:
                        raise classify_api_error(e, what) from e
        except TransientApplyError as e:
            raise FatalApplyError(
                f"{what}: giving up after {attempts} attempts: {e}", status=e.status, attempts=attempts
            ) from e
        except FatalApplyError as e:
            e.attempts = attempts
            raise
        return result, attempts

    def apply(self, spec, namespace: str | None = None, params: dict | None = None, labels: dict | None = None):
        """Create the object, or merge-patch it when the live object differs. Re-applying is a no-op."""
        if isinstance(spec, ResourceSpec):
            manifest = spec.render(namespace, params, labels)
        else:
            manifest = copy.deepcopy(spec)
        _validate_manifest(manifest)

        api_version, kind = manifest["apiVersion"], manifest["kind"]
        name = manifest["metadata"]["name"]
        ns = manifest["metadata"].get("namespace")
        what = f"apply {kind}/{name}"

        def _apply():
            live = self.kubectl.get(api_version, kind, name, ns)
            if live is None:
                self.kubectl.create(manifest)
                return "created"
            if is_subset(_comparable(manifest), live):
                return "unchanged"
            self.kubectl.patch(api_version, kind, name, ns, manifest, content_type=MERGE_PATCH)
            return "configured"

        action, attempts = self._with_retry(what, _apply)
        logger.info(f"{kind}/{name} {action}")
        return ApplyResult(action=action, kind=kind, name=name, namespace=ns, attempts=attempts)

    def patch(self, selector: Selector, ops: list[dict], namespace: str | None = None) -> ApplyResult:
        """JSON-patch every object the selector matches. Ops that change nothing are not sent."""
        if namespace:
            selector = selector.bind(namespace)
        what = f"patch {selector.describe()}"

        def _patch():
            targets = self.kubectl.find(selector)
            if not targets:
                raise FatalApplyError(f"{what}: no matching object", status=404)
            changed = []
            for live in targets:
                name = live["metadata"]["name"]
                try:
                    expanded = _expand_ops(live, ops)
                    patched = apply_json_patch(live, expanded)
                except (KeyError, IndexError, ValueError, TypeError) as e:
                    raise FatalApplyError(f"{what}: invalid patch for {name}: {e}") from e
                if patched == live:
                    continue
                self.kubectl.patch(
                    selector.api_version, selector.kind, name, selector.namespace, expanded, content_type=JSON_PATCH
                )
                changed.append(name)
            return [t["metadata"]["name"] for t in targets], changed

        (names, changed), attempts = self._with_retry(what, _patch)
        action = "patched" if changed else "unchanged"
        logger.info(f"{selector.describe()} {action} ({len(changed)}/{len(names)} objects changed)")
        return ApplyResult(
            action=action,
            kind=selector.kind,
            name=",".join(changed or names),
            namespace=selector.namespace,
            attempts=attempts,
        )

    def delete(self, selector: Selector, namespace: str | None = None) -> DeleteResult:
        """Delete every matching object. Objects that are already gone count as success."""
        if namespace:
            selector = selector.bind(namespace)
        what = f"delete {selector.describe()}"

        def _delete():
            deleted = []
            for live in self.kubectl.find(selector):
                name = live["metadata"]["name"]
                try:
                    self.kubectl.delete(selector.api_version, selector.kind, name, selector.namespace)
                except ApiException as e:
                    if e.status != 404:
                        raise
                    continue
                deleted.append(name)
            return tuple(deleted)

        deleted, attempts = self._with_retry(what, _delete)
        if deleted:
            logger.info(f"Deleted {selector.kind} {', '.join(deleted)}")
        else:
            logger.info(f"{selector.describe()} already absent")
        return DeleteResult(
            kind=selector.kind,
            target=selector.name or selector.label_selector,
            namespace=selector.namespace,
            deleted=deleted,
            attempts=attempts,
        )

    def wait_for_condition(
        self,
        selector: Selector,
        predicate,
        timeout: float,
        interval: float | None = None,
        namespace: str | None = None,
    ) -> WaitResult:
        """Poll the selected objects until ``predicate`` holds.

        ``predicate`` is either a callable over the list of matching objects or a condition name
        (``exists``, ``absent``, ``Ready``, ``Available`` or any status condition type). Polling is
        jittered and returns early with ScenarioCancelled when the run is cancelled.
        """
        if namespace:
            selector = selector.bind(namespace)
        check = predicate if callable(predicate) else condition_check(selector.kind, predicate)
        interval = interval if interval is not None else self.settings.poll_interval
        jitter = self.settings.poll_jitter

        start = time.monotonic()
        deadline = start + timeout
        polls = 0
        last_error = None
        while True:
            self.cancel.raise_if_cancelled()
            polls += 1
            try:
                if check(self.kubectl.find(selector)):
                    elapsed = time.monotonic() - start
                    logger.info(f"{selector.describe()} satisfied after {elapsed:.1f}s ({polls} polls)")
                    return WaitResult(Outcome.READY, elapsed, polls)
            except ResourceNotFoundError as e:
                # the CRD may still be registering; discovery is refreshed on the next poll
                last_error = f"wait {selector.describe()}: resource type not served yet ({e})"
                logger.debug(last_error)
            except Exception as e:
                err = classify_api_error(e, f"wait {selector.describe()}")
                if not isinstance(err, TransientApplyError):
                    return WaitResult(Outcome.ERRORED, time.monotonic() - start, polls, error=str(err))
                last_error = str(err)
                logger.debug(last_error)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return WaitResult(Outcome.TIMED_OUT, time.monotonic() - start, polls, error=last_error)
            delay = min(remaining, max(0.0, interval * random.uniform(1 - jitter, 1 + jitter)))
            self._sleep(delay)

    def detect_drift(self, spec: ResourceSpec, namespace: str | None = None, params: dict | None = None):
        """Compare the live object against the rendered spec."""
        manifest = _comparable(spec.render(namespace, params))
        ns = manifest["metadata"].get("namespace")
        live, _ = self._with_retry(
            f"drift {spec.kind}/{spec.name}",
            lambda: self.kubectl.get(spec.api_version, spec.kind, spec.name, ns),
        )
        if live is None:
            return DriftReport(spec.kind, spec.name, spec.source_of_truth, present=False)
        return DriftReport(
            spec.kind, spec.name, spec.source_of_truth, present=True, differences=tuple(diff_paths(manifest, live))
        )


def _condition_true(obj: dict, condition: str) -> bool:
    for cond in (obj.get("status") or {}).get("conditions") or []:
        if cond.get("type") == condition:
            return cond.get("status") == "True"
    return False


def _workload_ready(obj: dict) -> bool:
    spec = obj.get("spec") or {}
    status = obj.get("status") or {}
    desired = spec.get("replicas", 1)
    if (status.get("observedGeneration") or 0) < ((obj.get("metadata") or {}).get("generation") or 0):
        return False
    return (
        (status.get("readyReplicas") or 0) >= desired
        and (status.get("updatedReplicas") or 0) >= desired
        and (status.get("replicas") or 0) == (status.get("readyReplicas") or 0)
    )


def condition_check(kind: str, condition: str):
    """Build a predicate over matching objects for a named condition."""
    from srebench.service.kubectl import KubeCtl

    if condition == "exists":
        return lambda objs: bool(objs)
    if condition == "absent":
        return lambda objs: not objs
    if kind == "Pod" and condition in ("Ready", "Available"):
        return lambda objs: bool(objs) and all(KubeCtl.is_ready(o) for o in objs)
    if kind in ("Deployment", "StatefulSet", "ReplicaSet") and condition == "Ready":
        return lambda objs: bool(objs) and all(_workload_ready(o) for o in objs)
    return lambda objs: bool(objs) and all(_condition_true(o, condition) for o in objs)
