"""Desired vs. observed comparison for autoscaling groups.

Pure functions: nothing here calls the cloud. The only write is
``sync_externally_managed_replicas``, which copies the group's desired
capacity into the pool spec when an external autoscaler owns replicas.
"""

from __future__ import annotations

import logging

from .models import (
    EXTERNAL_AUTOSCALER_ANNOTATION_VALUE,
    REPLICAS_MANAGED_BY_ANNOTATION,
    AutoScalingGroup,
    MachinePool,
)

logger = logging.getLogger(__name__)


def is_externally_managed(pool: MachinePool) -> bool:
    """True when an external autoscaler owns the pool's replica count."""
    return (
        pool.metadata.annotations.get(REPLICAS_MANAGED_BY_ANNOTATION)
        == EXTERNAL_AUTOSCALER_ANNOTATION_VALUE
    )


def desired_processes(pool: MachinePool) -> list[str]:
    if pool.spec.suspend_processes is None:
        return []
    return pool.spec.suspend_processes.resolve()


def needs_update(pool: MachinePool, asg: AutoScalingGroup) -> bool:
    """Decide whether the group's scaling settings must be updated.

    Checks, in order: replicas (skipped when externally managed; unset
    counts as 0 on both sides), max size, min size, capacity rebalance,
    mixed instances policy (deep equality, absent differs from empty), and
    the suspended process set (unordered).
    """
    spec = pool.spec

    if not is_externally_managed(pool):
        desired = spec.replicas if spec.replicas is not None else 0
        observed = asg.desired_capacity if asg.desired_capacity is not None else 0
        if desired != observed:
            return True

    if spec.max_size != asg.max_size:
        return True

    if spec.min_size != asg.min_size:
        return True

    if spec.capacity_rebalance != asg.capacity_rebalance:
        return True

    if spec.mixed_instances_policy != asg.mixed_instances_policy:
        return True

    if set(desired_processes(pool)) != set(asg.currently_suspend_processes):
        return True

    return False


def process_delta(pool: MachinePool, asg: AutoScalingGroup) -> tuple[list[str], list[str]]:
    """Return (to_suspend, to_resume), each sorted and de-duplicated."""
    desired = set(desired_processes(pool))
    observed = set(asg.currently_suspend_processes)
    return sorted(desired - observed), sorted(observed - desired)


def subnets_differ(desired_ids: list[str], asg: AutoScalingGroup) -> bool:
    """Compare subnet membership, ignoring order."""
    return set(desired_ids) != set(asg.subnets)


def sync_externally_managed_replicas(pool: MachinePool, asg: AutoScalingGroup) -> bool:
    """Copy the group's desired capacity into the pool's replicas.

    This is the single place where observed state writes into the pool
    spec. It applies only to externally managed pools, so consumers of the
    spec see the autoscaler's value. Returns True when replicas changed.
    """
    if not is_externally_managed(pool):
        return False

    observed = asg.desired_capacity if asg.desired_capacity is not None else 0
    current = pool.spec.replicas if pool.spec.replicas is not None else 0
    if current == observed:
        return False

    logger.info(
        "Setting replica count from externally managed ASG",
        extra={
            "machine_pool": pool.metadata.key,
            "replicas": current,
            "desired_capacity": observed,
        },
    )
    pool.spec.replicas = observed
    return True
