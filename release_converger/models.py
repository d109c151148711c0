"""
Value objects threaded through one convergence pass.

ServiceSpec and DesiredState are built once per run and never change.
ObservedState is captured at probe time and again at verify time.
Decision and ExecutionResult are single use.
"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ReleaseStatus(str, Enum):
    DEPLOYED = "deployed"
    PENDING_UPGRADE = "pending-upgrade"
    PENDING_INSTALL = "pending-install"
    PENDING_ROLLBACK = "pending-rollback"
    FAILED = "failed"
    ABSENT = "absent"

    @property
    def is_pending(self) -> bool:
        return self in PENDING_STATUSES


PENDING_STATUSES = frozenset({
    ReleaseStatus.PENDING_UPGRADE,
    ReleaseStatus.PENDING_INSTALL,
    ReleaseStatus.PENDING_ROLLBACK,
})


class DriftClass(str, Enum):
    OPERATION_STUCK = "OperationStuck"
    ABSENT = "Absent"
    OWNERSHIP_INVALID = "OwnershipInvalid"
    UNHEALTHY_MATCHING = "UnhealthyMatching"
    UNHEALTHY_DRIFTED = "UnhealthyDrifted"
    HEALTHY_MATCHING = "HealthyMatching"
    HEALTHY_DRIFTED = "HealthyDrifted"


class ActionKind(str, Enum):
    UNLOCK_STUCK_OPERATION = "UnlockStuckOperation"
    REPAIR_OWNERSHIP = "RepairOwnership"
    FRESH_INSTALL = "FreshInstall"
    DESTROY_AND_REINSTALL = "DestroyAndReinstall"
    UPGRADE = "Upgrade"
    SYNC_SECRET_ONLY = "SyncSecretOnly"
    SKIP = "Skip"

    @property
    def is_structural(self) -> bool:
        """Structural repairs are followed by a fresh probe and re-classification."""
        return self in (ActionKind.UNLOCK_STUCK_OPERATION, ActionKind.REPAIR_OWNERSHIP)

    @property
    def guarantees_readiness(self) -> bool:
        return self not in (ActionKind.SKIP, ActionKind.SYNC_SECRET_ONLY)


class ServiceOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    STAGED = "staged"
    WARNING = "warning"
    FAILED = "failed"
    NOT_ATTEMPTED = "not-attempted"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class ResourceRef(_Frozen):
    """A namespaced object whose Helm ownership annotations are checked."""
    kind: str = Field(..., description="Lowercase kind, e.g. secret, statefulset")
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.name}"


class WorkloadSelector(_Frozen):
    kind: str = Field(default="statefulset", pattern=r"^(statefulset|deployment)$")
    name: str
    pod_selector: str = Field(..., description="Label selector matching the workload's pods")


class ServiceSpec(_Frozen):
    """Static description of one managed service. The release is named after it."""
    name: str = Field(..., pattern=r"^[a-z][a-z0-9-]*[a-z0-9]$")
    namespace: str
    chart_ref: str
    chart_version: Optional[str] = None
    workload: WorkloadSelector
    secret_name: str
    credential_keys: list[str] = Field(default_factory=list)
    credential_value_paths: dict[str, str] = Field(
        default_factory=dict,
        description="Credential key -> dotted chart value path",
    )
    resource_requests: dict[str, str] = Field(default_factory=dict)
    persistence_size: Optional[str] = None
    storage_selector: Optional[str] = Field(
        default=None,
        description="Label selector of the PersistentVolumeClaims owned by this service",
    )
    image_tag: Optional[str] = None
    ownership_resources: list[ResourceRef] = Field(default_factory=list)
    extra_values: dict[str, object] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list)

    @property
    def release(self) -> str:
        return self.name


class ObservedState(_Frozen):
    release_exists: bool
    release_status: ReleaseStatus
    workload_ready_replicas: int = Field(..., ge=0)
    current_secret_values: dict[str, str]
    ownership_annotations_valid: bool
    ownership_violations: list[ResourceRef] = Field(default_factory=list)

    @model_validator(mode="after")
    def _consistent(self):
        if self.release_exists == (self.release_status == ReleaseStatus.ABSENT):
            raise ValueError(
                f"release_exists={self.release_exists} contradicts status {self.release_status.value}"
            )
        if self.ownership_violations and self.ownership_annotations_valid:
            raise ValueError("ownership violations recorded on a valid ownership state")
        return self


class DesiredState(_Frozen):
    target_secret_values: dict[str, str]
    target_chart_version: Optional[str] = None
    target_image_tag: Optional[str] = None
    cleanup_mode: bool = False
    force_install: bool = False


class ConvergePolicy(_Frozen):
    """Credential and mode inputs to the resolver, loaded from the environment."""
    master_secret: Optional[str] = None
    credential_overrides: dict[str, str] = Field(
        default_factory=dict,
        description="'<service>' or '<service>.<key>' -> value",
    )
    chart_versions: dict[str, str] = Field(default_factory=dict)
    image_tags: dict[str, str] = Field(default_factory=dict)
    cleanup_mode: bool = False
    force_install: bool = False
    force_services: list[str] = Field(default_factory=list)


class Decision(_Frozen):
    classification: DriftClass
    action: ActionKind
    rationale: str
    warning: bool = False


class ExecutionResult(_Frozen):
    succeeded: bool
    final_ready_replicas: int = 0
    log_excerpt: str = ""
    retries_used: int = 0
    staged: bool = False
    diagnostics: dict[str, object] = Field(default_factory=dict)


class ServiceReport(BaseModel):
    service: str
    outcome: ServiceOutcome
    classification: Optional[DriftClass] = None
    action: Optional[ActionKind] = None
    verification: str = ""
    ready_replicas: int = 0
    retries_used: int = 0
    message: str = ""
    diagnostics: dict[str, object] = Field(default_factory=dict)


class RunReport(BaseModel):
    services: list[ServiceReport] = Field(default_factory=list)
    aborted: bool = False
    duration_seconds: float = 0.0

    @property
    def status(self) -> str:
        outcomes = {s.outcome for s in self.services}
        if self.aborted or ServiceOutcome.FAILED in outcomes or ServiceOutcome.NOT_ATTEMPTED in outcomes:
            return "failed"
        if ServiceOutcome.WARNING in outcomes:
            return "degraded"
        return "ok"

    @property
    def exit_code(self) -> int:
        return 0 if self.status == "ok" else 1

    def get(self, service: str) -> Optional[ServiceReport]:
        for s in self.services:
            if s.service == service:
                return s
        return None
