"""
Drift classifier.

Rules are evaluated in priority order and the first match wins. Structural
blockers (a stuck transaction, bad ownership metadata) come before any health
or credential judgment: helm refuses to act on a release in either state.
"""
from release_converger.models import DesiredState, DriftClass, ObservedState


def secrets_drifted(observed: ObservedState, desired: DesiredState) -> bool:
    """Exact comparison of every target credential with its live value."""
    current = observed.current_secret_values
    return any(current.get(key, "") != value for key, value in desired.target_secret_values.items())


def classify(observed: ObservedState, desired: DesiredState) -> DriftClass:
    if observed.release_status.is_pending:
        return DriftClass.OPERATION_STUCK
    if not observed.release_exists:
        return DriftClass.ABSENT
    if not observed.ownership_annotations_valid:
        return DriftClass.OWNERSHIP_INVALID

    drifted = secrets_drifted(observed, desired)
    if observed.workload_ready_replicas < 1:
        return DriftClass.UNHEALTHY_DRIFTED if drifted else DriftClass.UNHEALTHY_MATCHING
    return DriftClass.HEALTHY_DRIFTED if drifted else DriftClass.HEALTHY_MATCHING
