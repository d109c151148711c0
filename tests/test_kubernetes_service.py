import base64
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import urllib3
from kubernetes import config as k8s_config
from kubernetes.client import ApiException

from release_converger.classifier import classify
from release_converger.config import Settings
from release_converger.errors import ConfigError, ConvergerError, PatchRejected, TransientIOError
from release_converger.models import DesiredState, DriftClass, ReleaseStatus
from release_converger.prober import StateProber
from release_converger.retry import RetryPolicy
from release_converger.services.kubernetes_service import KubernetesOrchestrationAPI
from tests.fakes import make_spec


@pytest.fixture
def apis():
    return {"core": MagicMock(), "apps": MagicMock(), "networking": MagicMock(), "policy": MagicMock()}


@pytest.fixture
def k8s(apis):
    api = KubernetesOrchestrationAPI(Settings(), request_timeout=5)
    api._loaded = True
    api._apis = apis
    return api


def _meta(name, annotations=None):
    return SimpleNamespace(name=name, annotations=annotations)


def test_get_workload(k8s, apis):
    apis["apps"].read_namespaced_stateful_set.return_value = SimpleNamespace(
        status=SimpleNamespace(ready_replicas=None, replicas=1),
    )
    workload = k8s.get_workload("infra", "statefulset", "redis-master")
    assert workload.ready_replicas == 0
    assert workload.replicas == 1
    apis["apps"].read_namespaced_stateful_set.assert_called_once_with("redis-master", "infra", _request_timeout=5)


def test_missing_objects_are_none(k8s, apis):
    apis["apps"].read_namespaced_deployment.side_effect = ApiException(status=404, reason="Not Found")
    apis["core"].read_namespaced_secret.side_effect = ApiException(status=404, reason="Not Found")
    assert k8s.get_workload("infra", "deployment", "api") is None
    assert k8s.get_secret("infra", "redis") is None


def test_get_secret_decodes(k8s, apis):
    encoded = base64.b64encode(b"s3cret").decode()
    apis["core"].read_namespaced_secret.return_value = SimpleNamespace(data={"redis-password": encoded})
    assert k8s.get_secret("infra", "redis") == {"redis-password": "s3cret"}


def test_undecodable_secret_value_reads_as_unset(k8s, apis):
    apis["core"].read_namespaced_secret.return_value = SimpleNamespace(data={
        "rabbitmq-password": base64.b64encode(b"pw").decode(),
        "erlang-cookie": base64.b64encode(b"\xff\xfe").decode(),
        "broken": "not base64!",
    })
    assert k8s.get_secret("infra", "rabbitmq") == {"rabbitmq-password": "pw"}


def test_binary_credential_is_observed_as_drift(k8s, apis):
    packages = MagicMock()
    packages.status.return_value = ReleaseStatus.DEPLOYED
    apis["apps"].read_namespaced_stateful_set.return_value = SimpleNamespace(
        status=SimpleNamespace(ready_replicas=1, replicas=1),
    )
    apis["core"].read_namespaced_secret.return_value = SimpleNamespace(data={
        "rabbitmq-password": base64.b64encode(b"pw").decode(),
        "erlang-cookie": base64.b64encode(b"\xff\xfe").decode(),
    })
    spec = make_spec(credential_keys=["rabbitmq-password", "erlang-cookie"], ownership_resources=[])
    observed = StateProber(packages, k8s, RetryPolicy(3, 0, 0)).probe(spec)
    assert observed.current_secret_values == {"rabbitmq-password": "pw", "erlang-cookie": ""}
    desired = DesiredState(target_secret_values={"rabbitmq-password": "pw", "erlang-cookie": "cookie"})
    assert classify(observed, desired) == DriftClass.HEALTHY_DRIFTED


def test_get_annotations(k8s, apis):
    apis["networking"].read_namespaced_network_policy.return_value = SimpleNamespace(
        metadata=_meta("redis", {"meta.helm.sh/release-name": "redis"}),
    )
    assert k8s.get_annotations("infra", "networkpolicy", "redis") == {"meta.helm.sh/release-name": "redis"}


@pytest.mark.parametrize("status", [0, 409, 429, 500, 503])
def test_transient_statuses(k8s, apis, status):
    apis["core"].read_namespaced_secret.side_effect = ApiException(status=status, reason="boom")
    with pytest.raises(TransientIOError):
        k8s.get_secret("infra", "redis")


def test_connection_errors_are_transient(k8s, apis):
    apis["core"].read_namespaced_secret.side_effect = urllib3.exceptions.MaxRetryError(None, "/api", "refused")
    with pytest.raises(TransientIOError):
        k8s.get_secret("infra", "redis")


def test_forbidden_is_not_transient(k8s, apis):
    apis["core"].read_namespaced_secret.side_effect = ApiException(status=403, reason="Forbidden")
    with pytest.raises(ConvergerError) as exc:
        k8s.get_secret("infra", "redis")
    assert not isinstance(exc.value, TransientIOError)


def test_unsupported_kind(k8s):
    with pytest.raises(ConvergerError, match="unsupported"):
        k8s.get_annotations("infra", "ingress", "web")


def test_list_resources(k8s, apis):
    apis["core"].list_namespaced_persistent_volume_claim.return_value = SimpleNamespace(
        items=[SimpleNamespace(metadata=_meta("data-redis-0")), SimpleNamespace(metadata=_meta("data-redis-1"))],
    )
    names = k8s.list_resources("infra", "persistentvolumeclaim", "app.kubernetes.io/instance=redis")
    assert names == ["data-redis-0", "data-redis-1"]
    apis["core"].list_namespaced_persistent_volume_claim.assert_called_once_with(
        "infra", label_selector="app.kubernetes.io/instance=redis", _request_timeout=5,
    )


def test_put_secret_patches_existing(k8s, apis):
    k8s.put_secret("infra", "redis", {"redis-password": "x"})
    apis["core"].patch_namespaced_secret.assert_called_once_with(
        "redis", "infra", {"stringData": {"redis-password": "x"}}, _request_timeout=5,
    )
    apis["core"].create_namespaced_secret.assert_not_called()


def test_put_secret_creates_missing(k8s, apis):
    apis["core"].patch_namespaced_secret.side_effect = ApiException(status=404, reason="Not Found")
    k8s.put_secret("infra", "redis", {"redis-password": "x"})
    (namespace, body), _ = apis["core"].create_namespaced_secret.call_args
    assert namespace == "infra"
    assert body.metadata.name == "redis"
    assert body.string_data == {"redis-password": "x"}


def test_patch_annotations(k8s, apis):
    k8s.patch_annotations("infra", "service", "redis", {"meta.helm.sh/release-name": "redis"})
    apis["core"].patch_namespaced_service.assert_called_once_with(
        "redis", "infra", {"metadata": {"annotations": {"meta.helm.sh/release-name": "redis"}}}, _request_timeout=5,
    )


def test_refused_patch_is_rejected(k8s, apis):
    apis["policy"].patch_namespaced_pod_disruption_budget.side_effect = ApiException(status=422, reason="Invalid")
    with pytest.raises(PatchRejected):
        k8s.patch_annotations("infra", "poddisruptionbudget", "redis", {})


def test_transient_patch_failure_stays_transient(k8s, apis):
    apis["core"].patch_namespaced_service.side_effect = ApiException(status=503, reason="Unavailable")
    with pytest.raises(TransientIOError):
        k8s.patch_annotations("infra", "service", "redis", {})


def test_delete_resource(k8s, apis):
    apis["core"].delete_namespaced_persistent_volume_claim.side_effect = [
        SimpleNamespace(status="Success"),
        ApiException(status=404, reason="Not Found"),
    ]
    assert k8s.delete_resource("infra", "persistentvolumeclaim", "data-redis-0") is True
    assert k8s.delete_resource("infra", "persistentvolumeclaim", "data-redis-0") is False
    apis["core"].delete_namespaced_persistent_volume_claim.assert_called_with(
        "data-redis-0", "infra", grace_period_seconds=0, propagation_policy="Foreground", _request_timeout=5,
    )


def test_clear_finalizers(k8s, apis):
    k8s.clear_finalizers("infra", "statefulset", "redis-master")
    apis["apps"].patch_namespaced_stateful_set.assert_called_once_with(
        "redis-master", "infra", {"metadata": {"finalizers": None}}, _request_timeout=5,
    )


def _pod(name, phase, containers):
    statuses = [
        SimpleNamespace(
            name=c, ready=ready,
            state=SimpleNamespace(waiting=SimpleNamespace(reason=reason) if reason else None),
        )
        for c, ready, reason in containers
    ]
    return SimpleNamespace(metadata=_meta(name), status=SimpleNamespace(phase=phase, container_statuses=statuses))


def test_pod_status(k8s, apis):
    apis["core"].list_namespaced_pod.return_value = SimpleNamespace(items=[
        _pod("redis-master-0", "Pending", [("redis", False, "ImagePullBackOff"), ("metrics", True, None)]),
        _pod("redis-master-1", "Running", [("redis", False, None)]),
    ])
    assert k8s.pod_status("infra", "app.kubernetes.io/instance=redis") == [
        "redis-master-0: Pending [redis: ImagePullBackOff]",
        "redis-master-1: Running [redis: not ready]",
    ]


def test_pod_status_without_pods(k8s, apis):
    apis["core"].list_namespaced_pod.return_value = SimpleNamespace(items=[])
    assert k8s.pod_status("infra", "app=none") == ["No pods found"]
    assert k8s.pod_log_tail("infra", "app=none") == ""


def test_recent_events(k8s, apis):
    def event(name, ts, message):
        return SimpleNamespace(
            type="Warning", reason="Failed", message=message, last_timestamp=ts, event_time=None,
            involved_object=SimpleNamespace(kind="Pod", name=name),
        )

    apis["core"].list_namespaced_event.return_value = SimpleNamespace(items=[
        event("redis-master-0", "2024-01-01T00:00:02Z", "second"),
        event("postgresql-0", "2024-01-01T00:00:03Z", "other service"),
        event("redis-master-0", "2024-01-01T00:00:01Z", "first"),
    ])
    assert k8s.recent_events("infra", "redis", limit=5) == [
        "Warning Failed Pod/redis-master-0: first",
        "Warning Failed Pod/redis-master-0: second",
    ]


def test_pod_log_tail(k8s, apis):
    apis["core"].list_namespaced_pod.return_value = SimpleNamespace(items=[SimpleNamespace(metadata=_meta("redis-0"))])
    apis["core"].read_namespaced_pod_log.return_value = "ready to accept connections"
    assert k8s.pod_log_tail("infra", "app=redis", lines=20) == "ready to accept connections"
    apis["core"].read_namespaced_pod_log.assert_called_once_with("redis-0", "infra", tail_lines=20, _request_timeout=5)


def test_unloadable_kubeconfig_is_a_config_error(monkeypatch):
    def broken(config_file=None):
        raise k8s_config.ConfigException("Invalid kube-config file. No configuration found.")

    monkeypatch.setattr(k8s_config, "load_kube_config", broken)
    api = KubernetesOrchestrationAPI(Settings(IN_CLUSTER=False), request_timeout=5)
    with pytest.raises(ConfigError, match="Kubernetes config"):
        api.get_secret("infra", "redis")
