"""
Action planner: one action per classification, least destructive first.

DestroyAndReinstall is only reachable from Absent with cleanup mode on, as a
pre-emptive cleanup of orphans left behind by a lost release. An unhealthy
existing release is upgraded, never destroyed.
"""
from typing import Callable

from release_converger.models import ActionKind, Decision, DesiredState, DriftClass


def _stuck(desired: DesiredState) -> Decision:
    return Decision(
        classification=DriftClass.OPERATION_STUCK,
        action=ActionKind.UNLOCK_STUCK_OPERATION,
        rationale="release transaction is pending; remove the lock and re-classify",
    )


def _ownership(desired: DesiredState) -> Decision:
    return Decision(
        classification=DriftClass.OWNERSHIP_INVALID,
        action=ActionKind.REPAIR_OWNERSHIP,
        rationale="resources carry missing or foreign Helm ownership metadata; repair and re-classify",
    )


def _absent(desired: DesiredState) -> Decision:
    if desired.cleanup_mode:
        return Decision(
            classification=DriftClass.ABSENT,
            action=ActionKind.DESTROY_AND_REINSTALL,
            rationale="release absent and cleanup mode on; remove orphaned workload and storage, then install",
        )
    return Decision(
        classification=DriftClass.ABSENT,
        action=ActionKind.FRESH_INSTALL,
        rationale="release absent; install",
    )


def _healthy_matching(desired: DesiredState) -> Decision:
    return Decision(
        classification=DriftClass.HEALTHY_MATCHING,
        action=ActionKind.SKIP,
        rationale="release healthy and credentials match",
    )


def _healthy_drifted(desired: DesiredState) -> Decision:
    return Decision(
        classification=DriftClass.HEALTHY_DRIFTED,
        action=ActionKind.SYNC_SECRET_ONLY,
        rationale="release healthy but credentials differ; update the secret, effective on next restart",
    )


def _unhealthy_matching(desired: DesiredState) -> Decision:
    if desired.force_install:
        return Decision(
            classification=DriftClass.UNHEALTHY_MATCHING,
            action=ActionKind.UPGRADE,
            rationale="workload not ready and force install requested; upgrade",
        )
    return Decision(
        classification=DriftClass.UNHEALTHY_MATCHING,
        action=ActionKind.SKIP,
        rationale="workload not ready but credentials match; set force install to upgrade",
        warning=True,
    )


def _unhealthy_drifted(desired: DesiredState) -> Decision:
    return Decision(
        classification=DriftClass.UNHEALTHY_DRIFTED,
        action=ActionKind.UPGRADE,
        rationale="workload not ready and credentials differ; upgrade with the target credentials",
    )


PLAN_TABLE: dict[DriftClass, Callable[[DesiredState], Decision]] = {
    DriftClass.OPERATION_STUCK: _stuck,
    DriftClass.OWNERSHIP_INVALID: _ownership,
    DriftClass.ABSENT: _absent,
    DriftClass.HEALTHY_MATCHING: _healthy_matching,
    DriftClass.HEALTHY_DRIFTED: _healthy_drifted,
    DriftClass.UNHEALTHY_MATCHING: _unhealthy_matching,
    DriftClass.UNHEALTHY_DRIFTED: _unhealthy_drifted,
}


def plan(classification: DriftClass, desired: DesiredState) -> Decision:
    return PLAN_TABLE[classification](desired)
