"""Condition bookkeeping for cluster and pool status.

Conditions are unique per type: setting a condition replaces the entry of
the same type in place, and the transition time only moves when the status
actually changes.
"""

from __future__ import annotations

from datetime import UTC, datetime

from .models import Condition, ConditionSeverity, ConditionStatus

# Condition types
ASG_READY = "ASGReady"
LAUNCH_TEMPLATE_READY = "LaunchTemplateReady"
SUBNETS_READY = "SubnetsReady"

# Reasons
WAITING_FOR_CLUSTER_INFRASTRUCTURE = "WaitingForClusterInfrastructure"
WAITING_FOR_BOOTSTRAP_DATA = "WaitingForBootstrapData"
ASG_NOT_FOUND = "ASGNotFound"
ASG_PROVISION_FAILED = "ASGProvisionFailed"
ASG_DELETION_IN_PROGRESS = "ASGDeletionInProgress"
LAUNCH_TEMPLATE_RECONCILE_FAILED = "LaunchTemplateReconcileFailed"
SUBNETS_RECONCILIATION_FAILED = "SubnetsReconciliationFailed"
DELETING = "Deleting"


def get(conditions: list[Condition], condition_type: str) -> Condition | None:
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


def is_true(conditions: list[Condition], condition_type: str) -> bool:
    condition = get(conditions, condition_type)
    return condition is not None and condition.status == ConditionStatus.TRUE


def set_condition(conditions: list[Condition], condition: Condition) -> None:
    """Insert or replace the condition of the same type, in place."""
    now = datetime.now(UTC)
    for i, existing in enumerate(conditions):
        if existing.type != condition.type:
            continue
        if existing.status == condition.status and existing.last_transition_time:
            condition.last_transition_time = existing.last_transition_time
        else:
            condition.last_transition_time = now
        conditions[i] = condition
        return

    condition.last_transition_time = now
    conditions.append(condition)


def mark_true(conditions: list[Condition], condition_type: str) -> None:
    set_condition(conditions, Condition(type=condition_type, status=ConditionStatus.TRUE))


def mark_false(
    conditions: list[Condition],
    condition_type: str,
    reason: str,
    severity: ConditionSeverity,
    message: str = "",
) -> None:
    set_condition(
        conditions,
        Condition(
            type=condition_type,
            status=ConditionStatus.FALSE,
            severity=severity,
            reason=reason,
            message=message,
        ),
    )


def mark_unknown(
    conditions: list[Condition], condition_type: str, reason: str, message: str = ""
) -> None:
    set_condition(
        conditions,
        Condition(
            type=condition_type,
            status=ConditionStatus.UNKNOWN,
            reason=reason,
            message=message,
        ),
    )
