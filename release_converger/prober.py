"""
State prober: reads live platform state for one service.

Every query runs, even after an earlier one failed, so a ProbeError lists all
of what could not be read. An ObservedState is only built when every query
completed; the classifier never sees a partial state.
"""
import logging

from release_converger.errors import ConvergerError, ProbeError
from release_converger.models import ObservedState, ReleaseStatus, ResourceRef, ServiceSpec
from release_converger.retry import RetryPolicy
from release_converger.services.base import (
    RELEASE_NAME_ANNOTATION,
    RELEASE_NAMESPACE_ANNOTATION,
    OrchestrationAPI,
    PackageManager,
)

logger = logging.getLogger("prober")

_FAILED = object()


def ownership_matches(annotations: dict[str, str], release: str, namespace: str) -> bool:
    return (
        annotations.get(RELEASE_NAME_ANNOTATION) == release
        and annotations.get(RELEASE_NAMESPACE_ANNOTATION) == namespace
    )


class StateProber:
    def __init__(self, packages: PackageManager, platform: OrchestrationAPI, retry: RetryPolicy):
        self.packages = packages
        self.platform = platform
        self.retry = retry

    def _query(self, label: str, failures: dict, fn, *args):
        try:
            value, _ = self.retry.call(fn, *args)
            return value
        except ConvergerError as e:
            logger.warning(f"probe query '{label}' failed: {e}")
            failures[label] = str(e)
            return _FAILED

    def _ready_replicas(self, spec: ServiceSpec) -> int:
        workload = self.platform.get_workload(spec.namespace, spec.workload.kind, spec.workload.name)
        return workload.ready_replicas if workload else 0

    def probe(self, spec: ServiceSpec) -> ObservedState:
        failures: dict = {}
        ns = spec.namespace

        status = self._query("release status", failures, self.packages.status, spec.release, ns)
        ready = self._query("workload", failures, self._ready_replicas, spec)
        secret = self._query("secret", failures, self.platform.get_secret, ns, spec.secret_name)

        violations: list[ResourceRef] = []
        for ref in spec.ownership_resources:
            annotations = self._query(f"ownership {ref}", failures,
                                      self.platform.get_annotations, ns, ref.kind, ref.name)
            if annotations is _FAILED or annotations is None:
                continue
            if not ownership_matches(annotations, spec.release, ns):
                violations.append(ref)

        if failures:
            raise ProbeError(spec.name, failures)

        secret = secret or {}
        observed = ObservedState(
            release_exists=status != ReleaseStatus.ABSENT,
            release_status=status,
            workload_ready_replicas=ready,
            current_secret_values={key: secret.get(key, "") for key in spec.credential_keys},
            ownership_annotations_valid=not violations,
            ownership_violations=violations,
        )
        logger.info(
            f"[{spec.name}] observed status={status.value} ready={ready} "
            f"ownership={'ok' if not violations else ', '.join(map(str, violations))}"
        )
        return observed

    def probe_ready_replicas(self, spec: ServiceSpec) -> int:
        """Re-read only the workload's ready replica count."""
        failures: dict = {}
        ready = self._query("workload", failures, self._ready_replicas, spec)
        if failures:
            raise ProbeError(spec.name, failures)
        return ready
