"""Tests for the desired vs. observed scaling group comparison."""

from collections.abc import Callable
from typing import Any

import pytest

from poolcontroller.differ import (
    is_externally_managed,
    needs_update,
    process_delta,
    subnets_differ,
    sync_externally_managed_replicas,
)
from poolcontroller.models import (
    EXTERNAL_AUTOSCALER_ANNOTATION_VALUE,
    REPLICAS_MANAGED_BY_ANNOTATION,
    AutoScalingGroup,
    InstancesDistribution,
    MachinePool,
    MixedInstancesPolicy,
    OnDemandAllocationStrategy,
    Override,
)

EXTERNAL = {REPLICAS_MANAGED_BY_ANNOTATION: EXTERNAL_AUTOSCALER_ANNOTATION_VALUE}


def converged_asg(**overrides: Any) -> AutoScalingGroup:
    """A group matching a pool with replicas=2, min=1, max=3."""
    fields: dict[str, Any] = {
        "name": "workers",
        "desired_capacity": 2,
        "min_size": 1,
        "max_size": 3,
    }
    fields.update(overrides)
    return AutoScalingGroup(**fields)


@pytest.fixture
def pool(make_pool: Callable[..., MachinePool]) -> MachinePool:
    return make_pool(replicas=2, minSize=1, maxSize=3)


class TestNeedsUpdate:
    """Tests for needs_update."""

    def test_converged(self, pool: MachinePool) -> None:
        """Test that matching settings need no update."""
        assert needs_update(pool, converged_asg()) is False

    @pytest.mark.parametrize(
        "overrides",
        [
            {"desired_capacity": 5},
            {"max_size": 4},
            {"min_size": 0},
            {"capacity_rebalance": True},
            {"mixed_instances_policy": MixedInstancesPolicy()},
            {"currently_suspend_processes": ["Launch"]},
        ],
        ids=["replicas", "max", "min", "rebalance", "mixed-policy", "processes"],
    )
    def test_each_field_triggers_update(self, pool: MachinePool, overrides: dict[str, Any]) -> None:
        """Test that a difference in any compared field needs an update."""
        assert needs_update(pool, converged_asg(**overrides)) is True

    def test_unset_replicas_equals_unset_capacity(self, make_pool: Callable[..., MachinePool]) -> None:
        """Test that unset replicas and unset desired capacity compare as 0."""
        pool = make_pool(minSize=0, maxSize=3)

        assert needs_update(pool, converged_asg(desired_capacity=None, min_size=0)) is False

    def test_zero_replicas_vs_unset_capacity(self, make_pool: Callable[..., MachinePool]) -> None:
        """Test that replicas=0 against an unset capacity is not drift."""
        pool = make_pool(replicas=0, minSize=0, maxSize=3)

        assert needs_update(pool, converged_asg(desired_capacity=None, min_size=0)) is False

    def test_externally_managed_ignores_replicas(self, make_pool: Callable[..., MachinePool]) -> None:
        """Test that replicas are not compared when an autoscaler owns them."""
        pool = make_pool(annotations=EXTERNAL, replicas=2, minSize=1, maxSize=3)

        assert needs_update(pool, converged_asg(desired_capacity=3)) is False

    def test_mixed_policy_deep_equality(self, make_pool: Callable[..., MachinePool]) -> None:
        """Test that equal mixed instance policies are not drift."""
        policy = {
            "instancesDistribution": {"onDemandAllocationStrategy": "prioritized"},
            "overrides": [{"instanceType": "m5.large"}],
        }
        pool = make_pool(replicas=2, minSize=1, maxSize=3, mixedInstancesPolicy=policy)
        observed = MixedInstancesPolicy(
            instances_distribution=InstancesDistribution(
                on_demand_allocation_strategy=OnDemandAllocationStrategy.PRIORITIZED
            ),
            overrides=[Override(instance_type="m5.large")],
        )

        assert needs_update(pool, converged_asg(mixed_instances_policy=observed)) is False

    def test_suspended_process_order_ignored(self, make_pool: Callable[..., MachinePool]) -> None:
        """Test that process sets are compared unordered."""
        pool = make_pool(
            replicas=2,
            minSize=1,
            maxSize=3,
            suspendProcesses={"processes": {"launch": True, "terminate": True}},
        )

        asg = converged_asg(currently_suspend_processes=["Terminate", "Launch"])

        assert needs_update(pool, asg) is False


class TestProcessDelta:
    """Tests for process_delta."""

    def test_suspend_and_resume(self, make_pool: Callable[..., MachinePool]) -> None:
        """Test the delta between desired and observed suspended processes."""
        pool = make_pool(suspendProcesses={"processes": {"launch": True, "terminate": True}})
        asg = AutoScalingGroup(currently_suspend_processes=["Launch", "process3"])

        to_suspend, to_resume = process_delta(pool, asg)

        assert to_suspend == ["Terminate"]
        assert to_resume == ["process3"]

    def test_all_processes(self, make_pool: Callable[..., MachinePool]) -> None:
        """Test that all=true suspends every process not yet suspended."""
        pool = make_pool(suspendProcesses={"all": True})

        to_suspend, to_resume = process_delta(pool, AutoScalingGroup())

        assert len(to_suspend) == 9
        assert to_resume == []

    def test_nothing_desired_resumes_everything(self, make_pool: Callable[..., MachinePool]) -> None:
        """Test that an unset spec resumes whatever is suspended."""
        pool = make_pool()

        to_suspend, to_resume = process_delta(
            pool, AutoScalingGroup(currently_suspend_processes=["HealthCheck", "AZRebalance"])
        )

        assert to_suspend == []
        assert to_resume == ["AZRebalance", "HealthCheck"]


class TestSubnetsDiffer:
    """Tests for subnet membership comparison."""

    def test_order_ignored(self) -> None:
        """Test that reordering subnets is not drift."""
        asg = AutoScalingGroup(subnets=["subnet-1", "subnet-2"])

        assert subnets_differ(["subnet-2", "subnet-1"], asg) is False

    def test_membership_change(self) -> None:
        """Test that a different set is drift."""
        asg = AutoScalingGroup(subnets=["subnet-1", "subnet-2"])

        assert subnets_differ(["subnet-1", "subnet-3"], asg) is True


class TestExternallyManaged:
    """Tests for externally managed replica sync."""

    def test_annotation_detection(self, make_pool: Callable[..., MachinePool]) -> None:
        """Test detection of the external autoscaler annotation."""
        assert is_externally_managed(make_pool(annotations=EXTERNAL)) is True
        assert is_externally_managed(make_pool()) is False
        assert (
            is_externally_managed(make_pool(annotations={REPLICAS_MANAGED_BY_ANNOTATION: "other"}))
            is False
        )

    def test_sync_copies_desired_capacity(self, make_pool: Callable[..., MachinePool]) -> None:
        """Test that replicas 0 become the group's desired capacity of 1."""
        pool = make_pool(annotations=EXTERNAL, replicas=0)

        changed = sync_externally_managed_replicas(pool, AutoScalingGroup(desired_capacity=1))

        assert changed is True
        assert pool.spec.replicas == 1

    def test_sync_noop_when_equal(self, make_pool: Callable[..., MachinePool]) -> None:
        """Test that equal values are left alone."""
        pool = make_pool(annotations=EXTERNAL, replicas=1)

        assert sync_externally_managed_replicas(pool, AutoScalingGroup(desired_capacity=1)) is False

    def test_sync_ignores_managed_pools(self, make_pool: Callable[..., MachinePool]) -> None:
        """Test that pools without the annotation are never written."""
        pool = make_pool(replicas=0)

        assert sync_externally_managed_replicas(pool, AutoScalingGroup(desired_capacity=4)) is False
        assert pool.spec.replicas == 0
