"""
Contracts the engine depends on.

The engine never talks to helm or the Kubernetes API directly; it goes through
these two protocols. Absence is a normal return value (ABSENT / None), never
an exception. Adapters translate platform failures into the error taxonomy:
TransientIOError for anything worth retrying, PatchRejected for a refused
metadata patch, FatalConvergeError for a rejected converge.
"""
from dataclasses import dataclass
from typing import Optional, Protocol

from release_converger.models import ReleaseStatus

RELEASE_NAME_ANNOTATION = "meta.helm.sh/release-name"
RELEASE_NAMESPACE_ANNOTATION = "meta.helm.sh/release-namespace"


@dataclass(frozen=True)
class HelmResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""

    def tail(self, lines: int = 50) -> str:
        text = "\n".join(part for part in (self.stdout, self.stderr) if part)
        return "\n".join(text.splitlines()[-lines:])


@dataclass(frozen=True)
class WorkloadStatus:
    ready_replicas: int
    replicas: int


class PackageManager(Protocol):
    def status(self, release: str, namespace: str) -> ReleaseStatus:
        ...

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
        ...

    def uninstall(self, release: str, namespace: str, timeout: int = 600) -> HelmResult:
        ...


class OrchestrationAPI(Protocol):
    def get_workload(self, namespace: str, kind: str, name: str) -> Optional[WorkloadStatus]:
        ...

    def get_secret(self, namespace: str, name: str) -> Optional[dict[str, str]]:
        ...

    def put_secret(self, namespace: str, name: str, values: dict[str, str]) -> None:
        ...

    def get_annotations(self, namespace: str, kind: str, name: str) -> Optional[dict[str, str]]:
        ...

    def patch_annotations(self, namespace: str, kind: str, name: str, annotations: dict[str, str]) -> None:
        ...

    def clear_finalizers(self, namespace: str, kind: str, name: str) -> None:
        ...

    def delete_resource(self, namespace: str, kind: str, name: str) -> bool:
        ...

    def list_resources(self, namespace: str, kind: str, label_selector: str) -> list[str]:
        ...

    def pod_status(self, namespace: str, label_selector: str) -> list[str]:
        ...

    def recent_events(self, namespace: str, name_prefix: str, limit: int = 10) -> list[str]:
        ...

    def pod_log_tail(self, namespace: str, label_selector: str, lines: int = 50) -> str:
        ...
