"""
Configuration module: all settings from env vars with sensible defaults.
Follows 12-factor app methodology.

Credentials are not stored on Settings; policy_from_env() reads them into a
ConvergePolicy so they never end up in a repr or a log line.
"""
import os
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

from release_converger.models import ConvergePolicy


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    # Kubernetes
    KUBECONFIG: str = os.environ.get("KUBECONFIG", "")
    IN_CLUSTER: bool = _flag(os.environ.get("IN_CLUSTER", "false"))
    NAMESPACE: str = os.environ.get("INFRA_NAMESPACE", "infra")

    # Helm
    HELM_BIN: str = os.environ.get("HELM_BIN", "helm")
    CONVERGE_TIMEOUT: int = int(os.environ.get("CONVERGE_TIMEOUT", "600"))
    DELETION_TIMEOUT: int = int(os.environ.get("DELETION_TIMEOUT", "120"))
    PROBE_TIMEOUT: int = int(os.environ.get("PROBE_TIMEOUT", "10"))

    # Run mode. Cleanup is off by default to prevent accidental data loss.
    ENABLE_CLEANUP: bool = _flag(os.environ.get("ENABLE_CLEANUP", "false"))
    FORCE_INSTALL: bool = _flag(os.environ.get("FORCE_INSTALL", "false"))
    ONLY_COMPONENT: str = os.environ.get("ONLY_COMPONENT", "all")

    # Verification and retries
    SETTLE_SECONDS: float = float(os.environ.get("SETTLE_SECONDS", "10"))
    RETRY_MAX_ATTEMPTS: int = int(os.environ.get("RETRY_MAX_ATTEMPTS", "3"))
    RETRY_BACKOFF: float = float(os.environ.get("RETRY_BACKOFF", "2.0"))
    RETRY_MAX_BACKOFF: float = float(os.environ.get("RETRY_MAX_BACKOFF", "10.0"))

    # Credentials: every service reuses the master secret unless overridden
    MASTER_SECRET_ENV: str = os.environ.get("MASTER_SECRET_ENV", "POSTGRES_PASSWORD")

    # Observability (both optional)
    REDIS_URL: str = os.environ.get("REDIS_URL", "")
    METRICS_TEXTFILE: str = os.environ.get("METRICS_TEXTFILE", "")


settings = Settings()


def env_prefix(service: str) -> str:
    return service.upper().replace("-", "_")


def policy_from_env(
    services: Iterable[str],
    cfg: Settings = settings,
    environ: Optional[Mapping[str, str]] = None,
) -> ConvergePolicy:
    """
    Build the resolver policy for the given service names.

    Per service:
      <SERVICE>_PASSWORD        credential override for every key of the service
      <SERVICE>_KEY_<KEY>       credential override for one key (dashes -> underscores)
      <SERVICE>_CHART_VERSION   chart version pin
      <SERVICE>_IMAGE_TAG       image tag
      FORCE_<SERVICE>_INSTALL   force an upgrade of an unhealthy release
    """
    env = os.environ if environ is None else environ
    overrides: dict = {}
    chart_versions: dict = {}
    image_tags: dict = {}
    forced: list = []

    for name in services:
        prefix = env_prefix(name)
        if env.get(f"{prefix}_PASSWORD"):
            overrides[name] = env[f"{prefix}_PASSWORD"]
        for var, value in env.items():
            if not value or not var.startswith(f"{prefix}_KEY_"):
                continue
            key = var[len(f"{prefix}_KEY_"):].lower().replace("_", "-")
            overrides[f"{name}.{key}"] = value
        if env.get(f"{prefix}_CHART_VERSION"):
            chart_versions[name] = env[f"{prefix}_CHART_VERSION"]
        if env.get(f"{prefix}_IMAGE_TAG"):
            image_tags[name] = env[f"{prefix}_IMAGE_TAG"]
        if _flag(env.get(f"FORCE_{prefix}_INSTALL")):
            forced.append(name)

    return ConvergePolicy(
        master_secret=env.get(cfg.MASTER_SECRET_ENV) or None,
        credential_overrides=overrides,
        chart_versions=chart_versions,
        image_tags=image_tags,
        cleanup_mode=cfg.ENABLE_CLEANUP,
        force_install=cfg.FORCE_INSTALL,
        force_services=forced,
    )
