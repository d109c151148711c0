"""
Helm wrapper, the PackageManager implementation.

Release status comes from `helm status -o json` and is returned as a
ReleaseStatus; callers never see helm's text output. Values are written to a
private temporary file and passed with -f so credentials stay off the command
line and out of the logs.

Does NOT use --wait: helm creates the resources and returns, the verifier
does the (bounded) readiness wait.
"""
import json as _json
import logging
import os
import subprocess
import tempfile
from typing import Optional

from release_converger.errors import ConfigError, ConvergerError, FatalConvergeError, TransientIOError
from release_converger.models import ReleaseStatus
from release_converger.services.base import HelmResult

logger = logging.getLogger("helm")

# Helm errors worth retrying: the API server was briefly unavailable.
_TRANSIENT_MARKERS = (
    "kubernetes cluster unreachable",
    "connection refused",
    "connection reset by peer",
    "i/o timeout",
    "tls handshake timeout",
    "etcdserver: request timed out",
    "the server is currently unable to handle the request",
    "too many requests",
)

_NOT_FOUND_MARKER = "release: not found"

# Helm statuses outside the engine's vocabulary.
_STATUS_ALIASES = {
    "uninstalled": ReleaseStatus.ABSENT,
    "superseded": ReleaseStatus.FAILED,
    "uninstalling": ReleaseStatus.FAILED,
    "unknown": ReleaseStatus.FAILED,
}

_SUBPROCESS_GRACE = 60


def _text(output) -> str:
    if isinstance(output, bytes):
        return output.decode("utf-8", errors="replace")
    return output or ""


def is_transient(stderr: str) -> bool:
    text = (stderr or "").lower()
    return any(marker in text for marker in _TRANSIENT_MARKERS)


def parse_status(payload: str) -> ReleaseStatus:
    """Map `helm status -o json` output to a ReleaseStatus."""
    try:
        raw = _json.loads(payload).get("info", {}).get("status", "unknown")
    except (ValueError, AttributeError):
        logger.warning("helm status returned unparseable output")
        return ReleaseStatus.FAILED
    try:
        return ReleaseStatus(raw)
    except ValueError:
        status = _STATUS_ALIASES.get(raw, ReleaseStatus.FAILED)
        logger.warning(f"helm status '{raw}' treated as {status.value}")
        return status


def nest_values(flat: dict) -> dict:
    """Expand dotted keys ({'auth.password': 'x'}) into nested chart values."""
    nested: dict = {}
    for path, value in flat.items():
        node = nested
        parts = path.split(".")
        for part in parts[:-1]:
            node = node.setdefault(part, {})
            if not isinstance(node, dict):
                raise ConfigError(f"value path '{path}' collides with a scalar value")
        node[parts[-1]] = value
    return nested


class HelmPackageManager:
    def __init__(self, helm_bin: str = "helm", probe_timeout: int = 10):
        self.helm_bin = helm_bin
        self.probe_timeout = probe_timeout

    def _run(self, args: list, timeout: int, mutating: bool = False) -> HelmResult:
        """
        Execute a Helm CLI command. Never raises on a non-zero exit.

        A read that times out is transient. A mutating command that times out
        was killed mid-operation and may have left the release pending, so it
        raises FatalConvergeError and is not retried.
        """
        cmd = [self.helm_bin] + args
        logger.info(f"helm> {' '.join(cmd)}")
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            if mutating:
                partial = HelmResult(-1, _text(e.stdout), _text(e.stderr))
                raise FatalConvergeError(
                    f"helm {args[0]} did not return within {timeout}s; release may be left pending",
                    log_tail=partial.tail(),
                ) from e
            raise TransientIOError(f"helm {args[0]} did not return within {timeout}s") from e
        except FileNotFoundError as e:
            raise ConfigError(f"helm binary not found: {self.helm_bin}") from e
        if proc.stdout:
            logger.debug(f"helm stdout: {proc.stdout[:800]}")
        if proc.stderr:
            logger.warning(f"helm stderr: {proc.stderr[:800]}")
        return HelmResult(proc.returncode, proc.stdout or "", proc.stderr or "")

    def status(self, release: str, namespace: str) -> ReleaseStatus:
        r = self._run(["status", release, "-n", namespace, "-o", "json"], timeout=self.probe_timeout)
        if r.returncode == 0:
            return parse_status(r.stdout)
        if _NOT_FOUND_MARKER in r.stderr.lower():
            return ReleaseStatus.ABSENT
        if is_transient(r.stderr):
            raise TransientIOError(f"helm status {release}: {r.stderr.strip()[:300]}")
        raise ConvergerError(f"helm status {release} failed (rc={r.returncode}): {r.stderr.strip()[:300]}")

    def converge(
        self,
        release: str,
        namespace: str,
        chart_ref: str,
        values: dict,
        version: Optional[str] = None,
        timeout: int = 600,
        reset_values: bool = False,
    ) -> HelmResult:
        """
        Install or upgrade a release (`helm upgrade --install`).

        A non-zero exit with a transient cause raises TransientIOError so the
        retry policy can try again; any other failure is a rejected
        configuration and raises FatalConvergeError with the log tail.
        """
        fd, values_path = tempfile.mkstemp(prefix=f"{release}-values-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as fh:
                _json.dump(nest_values(values), fh)
            args = [
                "upgrade", "--install", release, chart_ref,
                "-n", namespace,
                "-f", values_path,
                "--timeout", f"{timeout}s",
            ]
            if version:
                args += ["--version", version]
            if reset_values:
                args.append("--reset-values")
            r = self._run(args, timeout=timeout + _SUBPROCESS_GRACE, mutating=True)
        finally:
            os.unlink(values_path)

        if r.returncode == 0:
            logger.info(f"Helm release {release} converged")
            return r
        if is_transient(r.stderr):
            raise TransientIOError(f"helm upgrade --install {release}: {r.stderr.strip()[:300]}")
        raise FatalConvergeError(
            f"Helm converge of {release} rejected (rc={r.returncode}): {r.stderr.strip()[:300]}",
            log_tail=r.tail(),
        )

    def uninstall(self, release: str, namespace: str, timeout: int = 600) -> HelmResult:
        """Uninstall a release. A release that is already gone is not an error."""
        r = self._run(
            ["uninstall", release, "-n", namespace, "--wait", "--timeout", f"{timeout}s"],
            timeout=timeout + _SUBPROCESS_GRACE,
            mutating=True,
        )
        if r.returncode == 0:
            logger.info(f"Helm release {release} uninstalled")
            return r
        if _NOT_FOUND_MARKER in r.stderr.lower() or "not found" in r.stderr.lower():
            logger.info(f"Helm release {release} not found, skipping uninstall")
            return r
        if is_transient(r.stderr):
            raise TransientIOError(f"helm uninstall {release}: {r.stderr.strip()[:300]}")
        raise FatalConvergeError(
            f"Helm uninstall of {release} failed (rc={r.returncode})",
            log_tail=r.tail(),
        )
