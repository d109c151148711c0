"""
Reconciler: drives one convergence pass per service, in dependency order.

Per service:
  1. Probe live state
  2. Classify and plan; structural repairs (unlock, ownership) are executed
     and followed by a fresh probe until a terminal action is planned
  3. Execute the terminal action
  4. Verify

A failing service stops its own remaining stages. The run stops early only on
a ProbeError or when a later service depends on the one that failed.
"""
import logging
import time
from typing import Iterable, Optional

from release_converger.catalog import order_services
from release_converger.classifier import classify
from release_converger.errors import FatalConvergeError, ProbeError, VerificationTimeout
from release_converger.executor import Executor
from release_converger.models import (
    ConvergePolicy,
    DesiredState,
    RunReport,
    ServiceOutcome,
    ServiceReport,
    ServiceSpec,
)
from release_converger.planner import plan
from release_converger.prober import StateProber
from release_converger.resolver import resolve
from release_converger.services.events import EventPublisher
from release_converger.services.metrics import RunMetrics
from release_converger.verifier import PostActionVerifier

logger = logging.getLogger("reconciler")

# Unlock, then ownership repair, then one spare pass.
MAX_STRUCTURAL_PASSES = 3


class Reconciler:
    def __init__(
        self,
        prober: StateProber,
        executor: Executor,
        verifier: PostActionVerifier,
        events: Optional[EventPublisher] = None,
        metrics: Optional[RunMetrics] = None,
    ):
        self.prober = prober
        self.executor = executor
        self.verifier = verifier
        self.events = events or EventPublisher()
        self.metrics = metrics or RunMetrics()

    def converge_service(self, spec: ServiceSpec, desired: DesiredState) -> ServiceReport:
        """
        Converge one service. Returns its report; raises ProbeError when the
        platform cannot be read.
        """
        self.events.publish(spec.name, "CONVERGE_START", f"Converging {spec.name}", "Probing")
        observed = self.prober.probe(spec)
        retries = 0

        for attempt in range(MAX_STRUCTURAL_PASSES + 1):
            decision = plan(classify(observed, desired), desired)
            if not decision.action.is_structural:
                break
            if attempt == MAX_STRUCTURAL_PASSES:
                message = (
                    f"{decision.classification.value} persists after "
                    f"{MAX_STRUCTURAL_PASSES} repairs"
                )
                logger.error(f"[{spec.name}] {message}")
                self.events.publish(spec.name, "CONVERGE_FAILED", message, "Failed")
                return ServiceReport(
                    service=spec.name,
                    outcome=ServiceOutcome.FAILED,
                    classification=decision.classification,
                    action=decision.action,
                    ready_replicas=observed.workload_ready_replicas,
                    retries_used=retries,
                    message=message,
                )
            self.events.publish(spec.name, decision.action.value.upper(), decision.rationale, "Repairing")
            try:
                retries += self.executor.execute(spec, decision, observed, desired).retries_used
            except FatalConvergeError as e:
                return self._failed(spec, e, retries)
            observed = self.prober.probe(spec)

        self.events.publish(spec.name, decision.action.value.upper(), decision.rationale, "Converging")
        try:
            result = self.executor.execute(spec, decision, observed, desired)
        except FatalConvergeError as e:
            return self._failed(spec, e, retries)
        retries += result.retries_used

        try:
            result = self.verifier.verify(spec, decision, result)
        except VerificationTimeout as e:
            logger.warning(f"[{spec.name}] {e}")
            self.events.publish(spec.name, "VERIFY_TIMEOUT", str(e), "Degraded")
            return ServiceReport(
                service=spec.name,
                outcome=ServiceOutcome.WARNING,
                classification=decision.classification,
                action=decision.action,
                verification="timeout",
                ready_replicas=e.ready_replicas,
                retries_used=retries,
                message=str(e),
                diagnostics=e.diagnostics,
            )

        if decision.warning:
            outcome, verification = ServiceOutcome.WARNING, "skipped-unhealthy"
        elif result.staged:
            outcome, verification = ServiceOutcome.STAGED, "staged"
        elif decision.action.guarantees_readiness:
            outcome, verification = ServiceOutcome.SUCCEEDED, "ready"
        else:
            outcome, verification = ServiceOutcome.SKIPPED, "unchanged"

        if decision.warning:
            logger.warning(f"[{spec.name}] {decision.rationale}")
        self.events.publish(spec.name, "CONVERGE_DONE", f"{decision.action.value}: {verification}", outcome.value)
        return ServiceReport(
            service=spec.name,
            outcome=outcome,
            classification=decision.classification,
            action=decision.action,
            verification=verification,
            ready_replicas=result.final_ready_replicas,
            retries_used=retries,
            message=decision.rationale,
        )

    def _failed(self, spec: ServiceSpec, error: FatalConvergeError, retries: int) -> ServiceReport:
        decision = error.decision
        logger.error(f"[{spec.name}] {error}")
        if error.log_tail:
            logger.warning(f"[{spec.name}] === Helm output (tail) ===\n{error.log_tail}")
        self.events.publish(spec.name, "CONVERGE_FAILED", str(error)[:150], "Failed")
        return ServiceReport(
            service=spec.name,
            outcome=ServiceOutcome.FAILED,
            classification=decision.classification if decision else None,
            action=decision.action if decision else None,
            ready_replicas=error.observed.workload_ready_replicas if error.observed else 0,
            retries_used=retries,
            message=str(error),
            diagnostics={"log_tail": error.log_tail} if error.log_tail else {},
        )

    def converge_all(self, specs: Iterable[ServiceSpec], policy: ConvergePolicy) -> RunReport:
        """
        Converge every service. Desired states are resolved up front so a
        missing credential fails the run before anything is touched.
        """
        started = time.monotonic()
        ordered = order_services(specs)
        desired: dict[str, DesiredState] = {s.name: resolve(s, policy) for s in ordered}
        if policy.cleanup_mode:
            logger.warning("CLEANUP MODE ENABLED - absent releases will have orphaned storage deleted")

        report = RunReport()
        for index, spec in enumerate(ordered):
            remaining = ordered[index + 1:]
            try:
                service_report = self.converge_service(spec, desired[spec.name])
            except ProbeError as e:
                logger.error(f"[{spec.name}] {e}")
                service_report = ServiceReport(service=spec.name, outcome=ServiceOutcome.FAILED, message=str(e))
                self._record(report, service_report)
                self._abort(report, remaining, f"aborted: platform unreachable while probing {spec.name}")
                break

            self._record(report, service_report)
            if service_report.outcome == ServiceOutcome.FAILED:
                dependents = [s.name for s in remaining if spec.name in s.depends_on]
                if dependents:
                    logger.error(f"{spec.name} failed; {', '.join(dependents)} depend on it - aborting run")
                    self._abort(report, remaining, f"aborted: dependency {spec.name} failed")
                    break

        report.duration_seconds = round(time.monotonic() - started, 3)
        self.metrics.record_run(report)
        logger.info(f"Run finished: {report.status} in {report.duration_seconds}s")
        return report

    def _record(self, report: RunReport, service_report: ServiceReport):
        report.services.append(service_report)
        self.metrics.record_service(service_report)

    def _abort(self, report: RunReport, remaining: list[ServiceSpec], message: str):
        report.aborted = True
        for spec in remaining:
            self._record(report, ServiceReport(
                service=spec.name,
                outcome=ServiceOutcome.NOT_ATTEMPTED,
                message=message,
            ))
