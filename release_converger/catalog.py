"""
Built-in service catalog, in run order.

The three datastores are independent of each other: a failure of one never
stops the others. A service that needs another lists it in depends_on.
"""
from typing import Iterable, Optional

from release_converger.errors import ConfigError
from release_converger.models import ResourceRef, ServiceSpec, WorkloadSelector

_OWNED_KINDS = ("secret", "service", "serviceaccount", "networkpolicy", "poddisruptionbudget")


def _owned(release: str, workload: str) -> list[ResourceRef]:
    refs = [ResourceRef(kind=kind, name=release) for kind in _OWNED_KINDS]
    refs.append(ResourceRef(kind="statefulset", name=workload))
    return refs


def builtin_services(namespace: str) -> list[ServiceSpec]:
    return [
        ServiceSpec(
            name="postgresql",
            namespace=namespace,
            chart_ref="bitnami/postgresql",
            workload=WorkloadSelector(
                kind="statefulset",
                name="postgresql",
                pod_selector="app.kubernetes.io/instance=postgresql",
            ),
            secret_name="postgresql",
            credential_keys=["postgres-password", "password"],
            credential_value_paths={
                "postgres-password": "auth.postgresPassword",
                "password": "auth.password",
            },
            resource_requests={"memory": "512Mi", "cpu": "250m"},
            persistence_size="20Gi",
            storage_selector="app.kubernetes.io/instance=postgresql",
            ownership_resources=_owned("postgresql", "postgresql"),
            extra_values={
                "auth.username": "admin_user",
                "auth.database": "postgres",
                "primary.priorityClassName": "db-critical",
                "metrics.enabled": True,
            },
        ),
        ServiceSpec(
            name="redis",
            namespace=namespace,
            chart_ref="bitnami/redis",
            workload=WorkloadSelector(
                kind="statefulset",
                name="redis-master",
                pod_selector="app.kubernetes.io/instance=redis,app.kubernetes.io/component=master",
            ),
            secret_name="redis",
            credential_keys=["redis-password"],
            credential_value_paths={"redis-password": "auth.password"},
            resource_requests={"memory": "256Mi", "cpu": "100m"},
            persistence_size="8Gi",
            storage_selector="app.kubernetes.io/instance=redis",
            ownership_resources=_owned("redis", "redis-master"),
            extra_values={
                "architecture": "standalone",
                "master.priorityClassName": "db-critical",
                "metrics.enabled": True,
            },
        ),
        ServiceSpec(
            name="rabbitmq",
            namespace=namespace,
            chart_ref="bitnami/rabbitmq",
            workload=WorkloadSelector(
                kind="statefulset",
                name="rabbitmq",
                pod_selector="app.kubernetes.io/instance=rabbitmq",
            ),
            secret_name="rabbitmq",
            credential_keys=["rabbitmq-password"],
            credential_value_paths={"rabbitmq-password": "auth.password"},
            resource_requests={"memory": "512Mi", "cpu": "250m"},
            persistence_size="10Gi",
            storage_selector="app.kubernetes.io/instance=rabbitmq",
            image_tag="latest",
            ownership_resources=_owned("rabbitmq", "rabbitmq"),
            extra_values={
                "auth.username": "user",
                "resources.limits.memory": "1Gi",
                "resources.limits.cpu": "500m",
                "priorityClassName": "db-critical",
                "metrics.enabled": True,
            },
        ),
    ]


def order_services(specs: Iterable[ServiceSpec]) -> list[ServiceSpec]:
    """
    Stable topological order over depends_on. Dependencies outside the given
    set are ignored; a cycle is a configuration error.
    """
    pending = list(specs)
    names = {s.name for s in pending}
    ordered: list[ServiceSpec] = []
    placed: set = set()
    while pending:
        ready = [s for s in pending if all(d in placed or d not in names for d in s.depends_on)]
        if not ready:
            raise ConfigError(f"dependency cycle among: {', '.join(s.name for s in pending)}")
        for spec in ready:
            ordered.append(spec)
            placed.add(spec.name)
            pending.remove(spec)
    return ordered


def select_services(
    names: Optional[Iterable[str]],
    namespace: str,
    only: str = "all",
) -> list[ServiceSpec]:
    """Pick catalog services by name (all when empty), narrowed by ONLY_COMPONENT."""
    catalog = {s.name: s for s in builtin_services(namespace)}
    wanted = list(names or [])
    if only and only != "all":
        wanted = [only] if not wanted or only in wanted else []
        if not wanted:
            raise ConfigError(f"ONLY_COMPONENT={only} excludes every requested service")
    unknown = [n for n in wanted if n not in catalog]
    if unknown:
        raise ConfigError(f"unknown service(s): {', '.join(unknown)}; known: {', '.join(catalog)}")
    if not wanted:
        return order_services(catalog.values())
    return order_services(s for s in catalog.values() if s.name in wanted)
