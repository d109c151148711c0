"""
Prometheus metrics for a convergence run.

A batch job has no /metrics endpoint to scrape, so metrics live on a private
registry and are written in the textfile-collector format when
METRICS_TEXTFILE is set.
"""
import logging

from prometheus_client import CollectorRegistry, Counter, Gauge, write_to_textfile

from release_converger.models import RunReport, ServiceReport

logger = logging.getLogger("metrics")

_RUN_STATUSES = ("ok", "degraded", "failed")


class RunMetrics:
    def __init__(self):
        self.registry = CollectorRegistry()
        self.actions = Counter(
            "release_converger_actions_total",
            "Actions taken per service",
            ["service", "classification", "action", "outcome"],
            registry=self.registry,
        )
        self.retries = Counter(
            "release_converger_retries_total",
            "Transient failures retried per service",
            ["service"],
            registry=self.registry,
        )
        self.ready = Gauge(
            "release_converger_ready_replicas",
            "Ready replicas observed after convergence",
            ["service"],
            registry=self.registry,
        )
        self.run_status = Gauge(
            "release_converger_run_status",
            "1 for the status of the last run",
            ["status"],
            registry=self.registry,
        )
        self.duration = Gauge(
            "release_converger_run_duration_seconds",
            "Wall time of the last run",
            registry=self.registry,
        )

    def record_service(self, report: ServiceReport):
        self.actions.labels(
            service=report.service,
            classification=report.classification.value if report.classification else "none",
            action=report.action.value if report.action else "none",
            outcome=report.outcome.value,
        ).inc()
        if report.retries_used:
            self.retries.labels(service=report.service).inc(report.retries_used)
        self.ready.labels(service=report.service).set(report.ready_replicas)

    def record_run(self, report: RunReport):
        for status in _RUN_STATUSES:
            self.run_status.labels(status=status).set(1 if report.status == status else 0)
        self.duration.set(report.duration_seconds)

    def write(self, path: str):
        if not path:
            return
        write_to_textfile(path, self.registry)
        logger.info(f"Metrics written to {path}")
