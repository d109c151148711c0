"""
Kubernetes service layer, the OrchestrationAPI implementation.

Design principles:
  - Absence is a value: 404 on a read returns None, on a delete returns False
  - Clean error handling: translates K8s API exceptions to domain errors
  - Every call carries a request timeout so a probe can never hang
"""
import base64
import binascii
import logging
from typing import Callable, Optional

import urllib3
from kubernetes import client, config
from kubernetes.client import ApiException

from release_converger.config import Settings, settings
from release_converger.errors import ConfigError, ConvergerError, PatchRejected, TransientIOError
from release_converger.services.base import WorkloadStatus

logger = logging.getLogger("kubernetes_service")

_TRANSIENT_STATUSES = {0, 409, 429}

# kind -> (api group, method suffix)
_KINDS = {
    "secret": ("core", "secret"),
    "service": ("core", "service"),
    "serviceaccount": ("core", "service_account"),
    "configmap": ("core", "config_map"),
    "persistentvolumeclaim": ("core", "persistent_volume_claim"),
    "pod": ("core", "pod"),
    "statefulset": ("apps", "stateful_set"),
    "deployment": ("apps", "deployment"),
    "networkpolicy": ("networking", "network_policy"),
    "poddisruptionbudget": ("policy", "pod_disruption_budget"),
}


def _decode(data: Optional[dict[str, str]]) -> dict[str, str]:
    """Decode secret data. Keys whose value is not base64 UTF-8 text are left out."""
    decoded = {}
    for key, value in (data or {}).items():
        try:
            decoded[key] = base64.b64decode(value).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            logger.warning(f"Secret key {key} is not UTF-8 text, treating it as unset")
    return decoded


class KubernetesOrchestrationAPI:
    def __init__(self, cfg: Settings = settings, request_timeout: Optional[int] = None):
        self._cfg = cfg
        self._timeout = request_timeout or cfg.PROBE_TIMEOUT
        self._loaded = False
        self._apis: dict = {}

    def _ensure_k8s(self):
        """Load Kubernetes config exactly once."""
        if self._loaded:
            return
        try:
            if self._cfg.IN_CLUSTER:
                config.load_incluster_config()
            else:
                config.load_kube_config(config_file=self._cfg.KUBECONFIG or None)
        except config.ConfigException as e:
            raise ConfigError(f"cannot load Kubernetes config: {e}") from e
        self._loaded = True

    def _api(self, group: str):
        if group not in self._apis:
            self._ensure_k8s()
            self._apis[group] = {
                "core": client.CoreV1Api,
                "apps": client.AppsV1Api,
                "networking": client.NetworkingV1Api,
                "policy": client.PolicyV1Api,
            }[group]()
        return self._apis[group]

    def _method(self, verb: str, kind: str) -> Callable:
        try:
            group, suffix = _KINDS[kind]
        except KeyError:
            raise ConvergerError(f"unsupported resource kind: {kind}")
        return getattr(self._api(group), f"{verb}_namespaced_{suffix}")

    def _call(self, what: str, fn: Callable, *args, missing_ok: bool = False, **kwargs):
        try:
            return fn(*args, _request_timeout=self._timeout, **kwargs)
        except ApiException as e:
            if e.status == 404 and missing_ok:
                return None
            if e.status in _TRANSIENT_STATUSES or (e.status or 0) >= 500:
                raise TransientIOError(f"{what}: {e.status} {e.reason}") from e
            raise ConvergerError(f"{what}: {e.status} {e.reason}") from e
        except urllib3.exceptions.HTTPError as e:
            raise TransientIOError(f"{what}: {e}") from e

    # --- reads ---

    def get_workload(self, namespace: str, kind: str, name: str) -> Optional[WorkloadStatus]:
        obj = self._call(f"read {kind}/{name}", self._method("read", kind), name, namespace, missing_ok=True)
        if obj is None:
            return None
        return WorkloadStatus(
            ready_replicas=obj.status.ready_replicas or 0,
            replicas=obj.status.replicas or 0,
        )

    def get_secret(self, namespace: str, name: str) -> Optional[dict[str, str]]:
        obj = self._call(f"read secret/{name}", self._api("core").read_namespaced_secret,
                         name, namespace, missing_ok=True)
        if obj is None:
            return None
        return _decode(obj.data)

    def get_annotations(self, namespace: str, kind: str, name: str) -> Optional[dict[str, str]]:
        obj = self._call(f"read {kind}/{name}", self._method("read", kind), name, namespace, missing_ok=True)
        if obj is None:
            return None
        return dict(obj.metadata.annotations or {})

    def list_resources(self, namespace: str, kind: str, label_selector: str) -> list[str]:
        result = self._call(f"list {kind} -l {label_selector}", self._method("list", kind),
                            namespace, label_selector=label_selector)
        return [item.metadata.name for item in result.items]

    # --- writes ---

    def put_secret(self, namespace: str, name: str, values: dict[str, str]) -> None:
        """Overwrite the given keys of a secret, leaving its other keys alone."""
        body = {"stringData": dict(values)}
        patched = self._call(f"patch secret/{name}", self._api("core").patch_namespaced_secret,
                             name, namespace, body, missing_ok=True)
        if patched is None:
            self._call(
                f"create secret/{name}", self._api("core").create_namespaced_secret, namespace,
                client.V1Secret(metadata=client.V1ObjectMeta(name=name), string_data=dict(values)),
            )
            logger.info(f"Secret {name} created in {namespace}")
        else:
            logger.info(f"Secret {name} updated in {namespace} ({len(values)} keys)")

    def patch_annotations(self, namespace: str, kind: str, name: str, annotations: dict[str, str]) -> None:
        body = {"metadata": {"annotations": dict(annotations)}}
        try:
            self._call(f"patch {kind}/{name}", self._method("patch", kind), name, namespace, body)
        except TransientIOError:
            raise
        except ConvergerError as e:
            raise PatchRejected(str(e)) from e

    def clear_finalizers(self, namespace: str, kind: str, name: str) -> None:
        body = {"metadata": {"finalizers": None}}
        self._call(f"clear finalizers {kind}/{name}", self._method("patch", kind),
                   name, namespace, body, missing_ok=True)

    def delete_resource(self, namespace: str, kind: str, name: str) -> bool:
        """Delete, ignore 404. Returns False when the object was already gone."""
        result = self._call(f"delete {kind}/{name}", self._method("delete", kind), name, namespace,
                            missing_ok=True, grace_period_seconds=0,
                            propagation_policy="Foreground")
        if result is None:
            logger.info(f"{kind}/{name} already gone in {namespace}")
            return False
        logger.info(f"Deleted {kind}/{name} in {namespace}")
        return True

    # --- diagnostics ---

    def pod_status(self, namespace: str, label_selector: str) -> list[str]:
        """One line per pod: phase plus the waiting reason of any unready container."""
        pods = self._call(f"list pods -l {label_selector}", self._api("core").list_namespaced_pod,
                          namespace, label_selector=label_selector)
        if not pods.items:
            return ["No pods found"]
        lines = []
        for pod in pods.items:
            line = f"{pod.metadata.name}: {pod.status.phase}"
            for cs in (pod.status.container_statuses or []):
                if cs.ready:
                    continue
                if cs.state and cs.state.waiting:
                    line += f" [{cs.name}: {cs.state.waiting.reason}]"
                else:
                    line += f" [{cs.name}: not ready]"
            lines.append(line)
        return lines

    def recent_events(self, namespace: str, name_prefix: str, limit: int = 10) -> list[str]:
        events = self._call(f"list events in {namespace}", self._api("core").list_namespaced_event, namespace)
        related = [
            e for e in events.items
            if (e.involved_object.name or "").startswith(name_prefix)
        ]
        related.sort(key=lambda e: str(e.last_timestamp or e.event_time or ""))
        return [
            f"{e.type} {e.reason} {e.involved_object.kind}/{e.involved_object.name}: {e.message}"
            for e in related[-limit:]
        ]

    def pod_log_tail(self, namespace: str, label_selector: str, lines: int = 50) -> str:
        pods = self._call(f"list pods -l {label_selector}", self._api("core").list_namespaced_pod,
                          namespace, label_selector=label_selector)
        if not pods.items:
            return ""
        name = pods.items[0].metadata.name
        log = self._call(f"read log pod/{name}", self._api("core").read_namespaced_pod_log,
                         name, namespace, tail_lines=lines, missing_ok=True)
        return log or ""
