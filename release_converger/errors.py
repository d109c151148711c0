"""
Error taxonomy for a convergence run.

ProbeError aborts the whole run: nothing can be classified without state.
FatalConvergeError stops one service; it carries the Helm log tail.
TransientIOError is retried by the RetryPolicy and escalated when exhausted.
VerificationTimeout is a warning: the run continues, the report is degraded.
ConfigError is raised before any platform mutation happens.
"""

from typing import Optional


class ConvergerError(Exception):
    """Base class for all convergence errors."""

    def __init__(self, message: str, decision=None, observed=None):
        super().__init__(message)
        self.decision = decision
        self.observed = observed

    def with_context(self, decision=None, observed=None) -> "ConvergerError":
        """Attach the Decision / ObservedState that led to the failure."""
        if decision is not None:
            self.decision = decision
        if observed is not None:
            self.observed = observed
        return self


class ConfigError(ConvergerError):
    """Missing credentials, unknown service names, invalid settings."""


class TransientIOError(ConvergerError):
    """A platform call failed in a way that is worth retrying."""


class ProbeError(ConvergerError):
    """The platform could not be read. Carries every failed probe query."""

    def __init__(self, service: str, failures: Optional[dict] = None):
        self.service = service
        self.failures = dict(failures or {})
        detail = "; ".join(f"{k}: {v}" for k, v in self.failures.items())
        super().__init__(f"Platform unreachable while probing {service}: {detail}")


class FatalConvergeError(ConvergerError):
    """A converge was rejected or transient failures were exhausted."""

    def __init__(self, message: str, log_tail: str = "", decision=None, observed=None):
        super().__init__(message, decision=decision, observed=observed)
        self.log_tail = log_tail


class PatchRejected(ConvergerError):
    """The platform refused an in-place metadata patch."""


class VerificationTimeout(ConvergerError):
    """The workload did not become ready within the bounded wait."""

    def __init__(self, service: str, ready_replicas: int, diagnostics: Optional[dict] = None,
                 decision=None, observed=None):
        super().__init__(
            f"{service}: workload not ready after converge ({ready_replicas} ready replicas)",
            decision=decision,
            observed=observed,
        )
        self.service = service
        self.ready_replicas = ready_replicas
        self.diagnostics = dict(diagnostics or {})
