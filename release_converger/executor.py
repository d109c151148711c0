"""
Executor: performs one planned action against the platform.

Dispatch is table driven on ActionKind. Every platform call goes through the
shared RetryPolicy; a TransientIOError that survives it is escalated to
FatalConvergeError, and a rejected converge is never retried.

Data loss is explicit: only DestroyAndReinstall deletes storage claims, and it
refuses to run unless the caller enabled cleanup mode.
"""
import logging
import math
import signal
import threading
import time
from contextlib import contextmanager
from typing import Callable

from release_converger.errors import ConvergerError, FatalConvergeError, PatchRejected, TransientIOError
from release_converger.models import (
    PENDING_STATUSES,
    ActionKind,
    Decision,
    DesiredState,
    ExecutionResult,
    ObservedState,
    ServiceSpec,
)
from release_converger.retry import RetryPolicy
from release_converger.services.base import (
    RELEASE_NAME_ANNOTATION,
    RELEASE_NAMESPACE_ANNOTATION,
    OrchestrationAPI,
    PackageManager,
)

logger = logging.getLogger("executor")


def render_values(spec: ServiceSpec, desired: DesiredState) -> dict:
    """Flat (dotted) chart values for a converge."""
    values: dict = dict(spec.extra_values)
    for key, path in spec.credential_value_paths.items():
        if key in desired.target_secret_values:
            values[path] = desired.target_secret_values[key]
    for resource, amount in spec.resource_requests.items():
        values[f"resources.requests.{resource}"] = amount
    if spec.persistence_size:
        values["persistence.enabled"] = True
        values["persistence.size"] = spec.persistence_size
    if desired.target_image_tag:
        values["image.tag"] = desired.target_image_tag
    return values


@contextmanager
def deferred_interrupts(reason: str):
    """Hold SIGINT until the block finishes; re-raise it afterwards."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return
    received = []

    def _hold(signum, frame):
        logger.warning(f"Interrupt received during {reason}; finishing first")
        received.append(signum)

    previous = signal.signal(signal.SIGINT, _hold)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)
    if received:
        raise KeyboardInterrupt


class Executor:
    def __init__(
        self,
        packages: PackageManager,
        platform: OrchestrationAPI,
        retry: RetryPolicy,
        converge_timeout: int = 600,
        deletion_timeout: int = 120,
        poll_interval: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.packages = packages
        self.platform = platform
        self.retry = retry
        self.converge_timeout = converge_timeout
        self.deletion_timeout = deletion_timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._retries = 0
        self._handlers: dict[ActionKind, Callable] = {
            ActionKind.UNLOCK_STUCK_OPERATION: self._unlock_stuck_operation,
            ActionKind.REPAIR_OWNERSHIP: self._repair_ownership,
            ActionKind.SYNC_SECRET_ONLY: self._sync_secret_only,
            ActionKind.UPGRADE: self._upgrade,
            ActionKind.FRESH_INSTALL: self._fresh_install,
            ActionKind.DESTROY_AND_REINSTALL: self._destroy_and_reinstall,
            ActionKind.SKIP: self._skip,
        }

    def _call(self, fn, *args, **kwargs):
        value, retries = self.retry.call(fn, *args, **kwargs)
        self._retries += retries
        return value

    def execute(
        self,
        spec: ServiceSpec,
        decision: Decision,
        observed: ObservedState,
        desired: DesiredState,
    ) -> ExecutionResult:
        self._retries = 0
        handler = self._handlers[decision.action]
        logger.info(f"[{spec.name}] {decision.classification.value} -> {decision.action.value}: {decision.rationale}")
        try:
            result = handler(spec, observed, desired)
        except TransientIOError as e:
            raise FatalConvergeError(
                f"{spec.name}: {decision.action.value} still failing after "
                f"{self.retry.max_attempts} attempts: {e}",
                decision=decision,
                observed=observed,
            ) from e
        except FatalConvergeError as e:
            raise e.with_context(decision=decision, observed=observed)
        except ConvergerError as e:
            raise FatalConvergeError(
                f"{spec.name}: {decision.action.value} failed: {e}",
                decision=decision,
                observed=observed,
            ) from e
        return result.model_copy(update={"retries_used": self._retries})

    # --- actions ---

    def _skip(self, spec, observed, desired) -> ExecutionResult:
        return ExecutionResult(succeeded=True, final_ready_replicas=observed.workload_ready_replicas)

    def _unlock_stuck_operation(self, spec, observed, desired) -> ExecutionResult:
        """Delete Helm's pending release records. Missing records are fine."""
        deleted = []
        for status in sorted(PENDING_STATUSES, key=lambda s: s.value):
            selector = f"owner=helm,name={spec.release},status={status.value}"
            for name in self._call(self.platform.list_resources, spec.namespace, "secret", selector):
                if self._call(self.platform.delete_resource, spec.namespace, "secret", name):
                    deleted.append(name)
        logger.warning(f"[{spec.name}] Helm lock removed ({len(deleted)} pending release records deleted)")
        return ExecutionResult(
            succeeded=True,
            final_ready_replicas=observed.workload_ready_replicas,
            log_excerpt="\n".join(f"deleted secret/{name}" for name in deleted),
        )

    def _repair_ownership(self, spec, observed, desired) -> ExecutionResult:
        """Annotate in place; delete and let helm recreate only when the patch is refused."""
        annotations = {
            RELEASE_NAME_ANNOTATION: spec.release,
            RELEASE_NAMESPACE_ANNOTATION: spec.namespace,
        }
        lines = []
        for ref in observed.ownership_violations:
            try:
                self._call(self.platform.patch_annotations, spec.namespace, ref.kind, ref.name, annotations)
                logger.info(f"[{spec.name}] Added Helm ownership annotations to {ref}")
                lines.append(f"annotated {ref}")
            except PatchRejected as e:
                logger.warning(f"[{spec.name}] Patch of {ref} rejected ({e}); deleting so Helm recreates it")
                self._call(self.platform.clear_finalizers, spec.namespace, ref.kind, ref.name)
                self._call(self.platform.delete_resource, spec.namespace, ref.kind, ref.name)
                lines.append(f"deleted {ref}")
        return ExecutionResult(
            succeeded=True,
            final_ready_replicas=observed.workload_ready_replicas,
            log_excerpt="\n".join(lines),
        )

    def _sync_secret_only(self, spec, observed, desired) -> ExecutionResult:
        """Stage new credentials; the running workload keeps the old ones until restart."""
        changed = {
            key: value for key, value in desired.target_secret_values.items()
            if observed.current_secret_values.get(key, "") != value
        }
        self._call(self.platform.put_secret, spec.namespace, spec.secret_name, dict(desired.target_secret_values))
        logger.info(
            f"[{spec.name}] Secret {spec.secret_name} updated ({', '.join(sorted(changed))}); "
            f"takes effect on next pod restart"
        )
        return ExecutionResult(
            succeeded=True,
            final_ready_replicas=observed.workload_ready_replicas,
            staged=True,
            log_excerpt=f"updated keys: {', '.join(sorted(changed))}",
        )

    def _converge(self, spec, desired, reset_values: bool) -> ExecutionResult:
        result = self._call(
            self.packages.converge,
            spec.release,
            spec.namespace,
            spec.chart_ref,
            render_values(spec, desired),
            version=desired.target_chart_version,
            timeout=self.converge_timeout,
            reset_values=reset_values,
        )
        return ExecutionResult(succeeded=True, log_excerpt=result.tail())

    def _upgrade(self, spec, observed, desired) -> ExecutionResult:
        return self._converge(spec, desired, reset_values=True)

    def _fresh_install(self, spec, observed, desired) -> ExecutionResult:
        return self._converge(spec, desired, reset_values=False)

    def _destroy_and_reinstall(self, spec, observed, desired) -> ExecutionResult:
        if not desired.cleanup_mode:
            raise FatalConvergeError(f"{spec.name}: refusing to delete storage without cleanup mode")

        logger.warning(f"[{spec.name}] CLEANUP MODE: deleting release, workload and storage claims")
        with deferred_interrupts(f"{spec.name} destroy-and-reinstall"):
            self._call(self.packages.uninstall, spec.release, spec.namespace, timeout=self.converge_timeout)
            self._call(self.platform.delete_resource, spec.namespace, spec.workload.kind, spec.workload.name)
            claims = []
            if spec.storage_selector:
                claims = self._call(self.platform.list_resources, spec.namespace,
                                    "persistentvolumeclaim", spec.storage_selector)
                for claim in claims:
                    self._call(self.platform.delete_resource, spec.namespace, "persistentvolumeclaim", claim)
            logger.warning(f"[{spec.name}] Deleted {len(claims)} storage claims")
            self._wait_for_deletion(spec)
            result = self._converge(spec, desired, reset_values=False)
        return result

    def _remaining(self, spec) -> list[str]:
        remaining = []
        if self._call(self.platform.get_workload, spec.namespace, spec.workload.kind, spec.workload.name):
            remaining.append(f"{spec.workload.kind}/{spec.workload.name}")
        if spec.storage_selector:
            claims = self._call(self.platform.list_resources, spec.namespace,
                                "persistentvolumeclaim", spec.storage_selector)
            remaining += [f"persistentvolumeclaim/{claim}" for claim in claims]
        return remaining

    def _wait_for_deletion(self, spec) -> None:
        """Block until the workload and its claims are gone, so the reinstall binds fresh volumes."""
        checks = max(1, math.ceil(self.deletion_timeout / max(self.poll_interval, 0.001)))
        for attempt in range(checks + 1):
            remaining = self._remaining(spec)
            if not remaining:
                return
            if attempt < checks:
                logger.info(f"[{spec.name}] waiting for {', '.join(remaining)} to terminate")
                self._sleep(self.poll_interval)
        raise FatalConvergeError(
            f"{spec.name}: {', '.join(remaining)} still terminating after {self.deletion_timeout}s; "
            f"not reinstalling onto old storage",
        )
