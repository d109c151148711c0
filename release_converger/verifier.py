"""
Post-action verifier.

Convergence of a stateful workload finishes after helm returns, so the
verifier allows one settle delay and a single re-check. It never loops and
never remediates; on failure it hands back the diagnostics unmodified.
"""
import logging
import time
from typing import Callable

from release_converger.errors import ConvergerError, VerificationTimeout
from release_converger.models import Decision, ExecutionResult, ServiceSpec
from release_converger.prober import StateProber
from release_converger.services.base import OrchestrationAPI

logger = logging.getLogger("verifier")


class PostActionVerifier:
    def __init__(
        self,
        prober: StateProber,
        platform: OrchestrationAPI,
        settle_seconds: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.prober = prober
        self.platform = platform
        self.settle_seconds = settle_seconds
        self._sleep = sleep

    def verify(self, spec: ServiceSpec, decision: Decision, result: ExecutionResult) -> ExecutionResult:
        observed = self.prober.probe(spec)
        ready = observed.workload_ready_replicas

        if not decision.action.guarantees_readiness:
            return result.model_copy(update={"final_ready_replicas": ready})

        if ready < 1:
            logger.info(f"[{spec.name}] not ready yet; re-checking in {self.settle_seconds}s")
            self._sleep(self.settle_seconds)
            ready = self.prober.probe_ready_replicas(spec)

        if ready >= 1:
            logger.info(f"[{spec.name}] ready ({ready} replicas)")
            return result.model_copy(update={"succeeded": True, "final_ready_replicas": ready})

        logger.error(f"[{spec.name}] workload not ready after {decision.action.value}")
        raise VerificationTimeout(
            spec.name,
            ready,
            diagnostics=self.collect_diagnostics(spec, result),
            decision=decision,
            observed=observed,
        )

    def collect_diagnostics(self, spec: ServiceSpec, result: ExecutionResult) -> dict:
        """Helm log tail, pod status, pod log tail and recent events. Best effort."""
        ns = spec.namespace
        selector = spec.workload.pod_selector
        bundle: dict = {"log_tail": result.log_excerpt}
        collectors = {
            "pods": lambda: self.platform.pod_status(ns, selector),
            "pod_log_tail": lambda: self.platform.pod_log_tail(ns, selector),
            "events": lambda: self.platform.recent_events(ns, spec.name),
        }
        for name, collect in collectors.items():
            try:
                bundle[name] = collect()
            except ConvergerError as e:
                bundle[name] = f"unavailable: {e}"
        return bundle
