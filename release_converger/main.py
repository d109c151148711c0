"""
release-converger: converge Helm-managed platform services.

Usage:
    release-converger                       # every catalog service
    release-converger rabbitmq              # one service
    release-converger --only redis          # same as ONLY_COMPONENT=redis
    release-converger --cleanup postgresql  # allow orphan storage cleanup
    release-converger --json                # machine-readable report

Exit status: 0 when every service converged or was already converged,
1 when any service failed or ended degraded, 2 on configuration errors.
"""
import argparse
import dataclasses
import json
import logging
import sys
from typing import Optional

from release_converger.catalog import select_services
from release_converger.config import Settings, policy_from_env, settings
from release_converger.errors import ConfigError
from release_converger.executor import Executor
from release_converger.models import RunReport
from release_converger.prober import StateProber
from release_converger.reconciler import Reconciler
from release_converger.retry import RetryPolicy
from release_converger.services.events import EventPublisher
from release_converger.services.helm_service import HelmPackageManager
from release_converger.services.kubernetes_service import KubernetesOrchestrationAPI
from release_converger.services.metrics import RunMetrics
from release_converger.verifier import PostActionVerifier

logger = logging.getLogger("release-converger")


def build_reconciler(cfg: Settings, metrics: Optional[RunMetrics] = None) -> Reconciler:
    retry = RetryPolicy.from_settings(cfg)
    packages = HelmPackageManager(helm_bin=cfg.HELM_BIN, probe_timeout=cfg.PROBE_TIMEOUT)
    platform = KubernetesOrchestrationAPI(cfg)
    prober = StateProber(packages, platform, retry)
    return Reconciler(
        prober=prober,
        executor=Executor(packages, platform, retry, converge_timeout=cfg.CONVERGE_TIMEOUT,
                          deletion_timeout=cfg.DELETION_TIMEOUT),
        verifier=PostActionVerifier(prober, platform, settle_seconds=cfg.SETTLE_SECONDS),
        events=EventPublisher(cfg.REDIS_URL),
        metrics=metrics,
    )


def format_report(report: RunReport) -> str:
    lines = [f"{'SERVICE':<14} {'CLASSIFICATION':<20} {'ACTION':<22} {'OUTCOME':<14} READY"]
    for s in report.services:
        lines.append(
            f"{s.service:<14} "
            f"{(s.classification.value if s.classification else '-'):<20} "
            f"{(s.action.value if s.action else '-'):<22} "
            f"{s.outcome.value:<14} {s.ready_replicas}"
        )
        if s.message and s.outcome.value in ("failed", "warning", "not-attempted"):
            lines.append(f"  {s.message}")
        for name, value in s.diagnostics.items():
            text = "\n    ".join(value) if isinstance(value, list) else str(value)
            if text:
                lines.append(f"  [{name}]\n    {text}")
    lines.append(f"Run status: {report.status} ({report.duration_seconds}s)")
    return "\n".join(lines)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="release-converger",
        description="Converge Helm-managed stateful services to their desired state",
    )
    parser.add_argument("services", nargs="*", help="Services to converge (default: all)")
    parser.add_argument("--only", default=None, help="Restrict the run to one service (ONLY_COMPONENT)")
    parser.add_argument("--namespace", default=None, help="Namespace of the services (INFRA_NAMESPACE)")
    parser.add_argument("--cleanup", action="store_true", default=None,
                        help="Delete orphaned workload and storage before installing an absent release")
    parser.add_argument("--force", action="store_true", default=None,
                        help="Upgrade unhealthy releases even when credentials match")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None, cfg: Settings = settings, reconciler: Optional[Reconciler] = None) -> int:
    args = parse_args(argv)

    # --- Logging ---
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )

    overrides = {}
    if args.namespace:
        overrides["NAMESPACE"] = args.namespace
    if args.only:
        overrides["ONLY_COMPONENT"] = args.only
    if args.cleanup:
        overrides["ENABLE_CLEANUP"] = True
    if args.force:
        overrides["FORCE_INSTALL"] = True
    cfg = dataclasses.replace(cfg, **overrides)

    try:
        specs = select_services(args.services, cfg.NAMESPACE, only=cfg.ONLY_COMPONENT)
        policy = policy_from_env([s.name for s in specs], cfg)
        logger.info(
            f"Converging {', '.join(s.name for s in specs)} in {cfg.NAMESPACE} "
            f"(cleanup={policy.cleanup_mode}, force={policy.force_install})"
        )
        if reconciler is None:
            reconciler = build_reconciler(cfg)
        report = reconciler.converge_all(specs, policy)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 2

    if args.json:
        print(json.dumps(report.model_dump(mode="json") | {"status": report.status}, indent=2))
    else:
        print(format_report(report))

    reconciler.metrics.write(cfg.METRICS_TEXTFILE)
    return report.exit_code


# --- Entry point ---
if __name__ == "__main__":
    sys.exit(main())
