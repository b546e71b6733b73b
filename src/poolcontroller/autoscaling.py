"""AutoScaling group operations.

Converts between the AutoScaling API's dictionaries and the observed-state
model, and exposes the verbs the pool state machine drives: lookup, create,
update, delete, process suspension, tagging and instance refresh.
"""

from __future__ import annotations

import logging
from typing import Any

from botocore.exceptions import ClientError

from .ec2 import EC2Service
from .models import (
    AutoScalingGroup,
    Instance,
    InstancesDistribution,
    MixedInstancesPolicy,
    Override,
    RefreshPreferences,
    ResourceLifecycle,
    cluster_tag_key,
    filter_by_zone,
    filter_private,
)
from .record import EventRecorder
from .scope import MachinePoolScope

logger = logging.getLogger(__name__)

LAUNCH_TEMPLATE_VERSION = "$Latest"
ASG_RESOURCE_TYPE = "auto-scaling-group"

# Instance refresh states that block starting another one
ACTIVE_REFRESH_STATES = frozenset({"Pending", "InProgress", "Cancelling"})


class SubnetResolutionError(Exception):
    """Raised when no subnet can be resolved for a pool."""

    pass


# =============================================================================
# SDK conversion
# =============================================================================


def mixed_instances_policy_from_sdk(raw: dict[str, Any] | None) -> MixedInstancesPolicy | None:
    if raw is None:
        return None

    distribution = None
    raw_distribution = raw.get("InstancesDistribution")
    if raw_distribution is not None:
        distribution = InstancesDistribution(
            on_demand_allocation_strategy=raw_distribution.get("OnDemandAllocationStrategy"),
            spot_allocation_strategy=raw_distribution.get("SpotAllocationStrategy"),
            on_demand_base_capacity=raw_distribution.get("OnDemandBaseCapacity"),
            on_demand_percentage_above_base_capacity=raw_distribution.get(
                "OnDemandPercentageAboveBaseCapacity"
            ),
        )

    overrides = None
    raw_overrides = raw.get("LaunchTemplate", {}).get("Overrides")
    if raw_overrides is not None:
        overrides = [Override(instance_type=o["InstanceType"]) for o in raw_overrides]

    return MixedInstancesPolicy(instances_distribution=distribution, overrides=overrides)


def mixed_instances_policy_to_sdk(
    policy: MixedInstancesPolicy, launch_template_id: str
) -> dict[str, Any]:
    launch_template: dict[str, Any] = {
        "LaunchTemplateSpecification": {
            "LaunchTemplateId": launch_template_id,
            "Version": LAUNCH_TEMPLATE_VERSION,
        }
    }
    if policy.overrides:
        launch_template["Overrides"] = [{"InstanceType": o.instance_type} for o in policy.overrides]

    out: dict[str, Any] = {"LaunchTemplate": launch_template}
    distribution = policy.instances_distribution
    if distribution is not None:
        raw: dict[str, Any] = {}
        if distribution.on_demand_allocation_strategy is not None:
            raw["OnDemandAllocationStrategy"] = distribution.on_demand_allocation_strategy.value
        if distribution.spot_allocation_strategy is not None:
            raw["SpotAllocationStrategy"] = distribution.spot_allocation_strategy.value
        if distribution.on_demand_base_capacity is not None:
            raw["OnDemandBaseCapacity"] = distribution.on_demand_base_capacity
        if distribution.on_demand_percentage_above_base_capacity is not None:
            raw["OnDemandPercentageAboveBaseCapacity"] = (
                distribution.on_demand_percentage_above_base_capacity
            )
        out["InstancesDistribution"] = raw
    return out


def asg_from_sdk(raw: dict[str, Any]) -> AutoScalingGroup:
    """Build the observed-state model from a DescribeAutoScalingGroups entry."""
    zone_identifier = raw.get("VPCZoneIdentifier") or ""
    launch_template = raw.get("LaunchTemplate") or (
        raw.get("MixedInstancesPolicy", {})
        .get("LaunchTemplate", {})
        .get("LaunchTemplateSpecification", {})
    )

    return AutoScalingGroup(
        id=raw.get("AutoScalingGroupARN", ""),
        name=raw["AutoScalingGroupName"],
        tags={t["Key"]: t.get("Value", "") for t in raw.get("Tags", [])},
        desired_capacity=raw.get("DesiredCapacity"),
        min_size=raw.get("MinSize", 0),
        max_size=raw.get("MaxSize", 0),
        default_cool_down=raw.get("DefaultCooldown"),
        capacity_rebalance=raw.get("CapacityRebalance", False),
        mixed_instances_policy=mixed_instances_policy_from_sdk(raw.get("MixedInstancesPolicy")),
        subnets=[s for s in zone_identifier.split(",") if s],
        status=raw.get("Status"),
        instances=[
            Instance(
                id=i["InstanceId"],
                availability_zone=i.get("AvailabilityZone", ""),
                state=i.get("LifecycleState", ""),
            )
            for i in raw.get("Instances", [])
        ],
        currently_suspend_processes=[p["ProcessName"] for p in raw.get("SuspendedProcesses", [])],
        launch_template_id=launch_template.get("LaunchTemplateId"),
    )


# =============================================================================
# Service
# =============================================================================


class ASGService:
    """AutoScaling verbs used by the pool state machine."""

    def __init__(self, client: Any, ec2: EC2Service, recorder: EventRecorder) -> None:
        self._client = client
        self._ec2 = ec2
        self._recorder = recorder

    def get_asg_by_name(self, name: str) -> AutoScalingGroup | None:
        """Look up a group. Absence is None, never an error."""
        out = self._client.describe_auto_scaling_groups(AutoScalingGroupNames=[name])
        groups = out.get("AutoScalingGroups", [])
        if not groups:
            return None
        return asg_from_sdk(groups[0])

    def _group_params(
        self, scope: MachinePoolScope, subnet_ids: list[str], launch_template_id: str
    ) -> dict[str, Any]:
        spec = scope.pool.spec
        params: dict[str, Any] = {
            "AutoScalingGroupName": scope.name,
            "MinSize": spec.min_size,
            "MaxSize": spec.max_size,
            "DefaultCooldown": spec.default_cool_down,
            "CapacityRebalance": spec.capacity_rebalance,
            "VPCZoneIdentifier": ",".join(subnet_ids),
        }
        if spec.mixed_instances_policy is not None:
            params["MixedInstancesPolicy"] = mixed_instances_policy_to_sdk(
                spec.mixed_instances_policy, launch_template_id
            )
        else:
            params["LaunchTemplate"] = {
                "LaunchTemplateId": launch_template_id,
                "Version": LAUNCH_TEMPLATE_VERSION,
            }
        return params

    def create_asg(
        self, scope: MachinePoolScope, subnet_ids: list[str], launch_template_id: str
    ) -> None:
        params = self._group_params(scope, subnet_ids, launch_template_id)
        if scope.pool.spec.replicas is not None:
            params["DesiredCapacity"] = scope.pool.spec.replicas
        params["Tags"] = self._sdk_tags(scope.name, self.desired_tags(scope))

        try:
            self._client.create_auto_scaling_group(**params)
        except ClientError as e:
            self._recorder.warnf(scope.key, "FailedCreate", f"Failed to create ASG {scope.name!r}: {e}")
            raise

        logger.info("Created ASG", extra={"asg": scope.name, "subnets": subnet_ids})
        self._recorder.eventf(scope.key, "SuccessfulCreate", f"Created new ASG {scope.name!r}")

    def update_asg(
        self,
        scope: MachinePoolScope,
        subnet_ids: list[str],
        launch_template_id: str,
        externally_managed: bool,
    ) -> None:
        """Push size, policy and subnets. Desired capacity is left alone for
        externally managed pools so the autoscaler stays authoritative."""
        params = self._group_params(scope, subnet_ids, launch_template_id)
        if scope.pool.spec.replicas is not None and not externally_managed:
            params["DesiredCapacity"] = scope.pool.spec.replicas

        try:
            self._client.update_auto_scaling_group(**params)
        except ClientError as e:
            self._recorder.warnf(scope.key, "FailedUpdate", f"Failed to update ASG {scope.name!r}: {e}")
            raise
        logger.info("Updated ASG", extra={"asg": scope.name})

    def delete_asg(self, name: str) -> None:
        """Request deletion, terminating instances. Does not wait."""
        self._client.delete_auto_scaling_group(AutoScalingGroupName=name, ForceDelete=True)
        logger.info("Deleting ASG", extra={"asg": name})

    def suspend_processes(self, name: str, processes: list[str]) -> None:
        self._client.suspend_processes(AutoScalingGroupName=name, ScalingProcesses=processes)

    def resume_processes(self, name: str, processes: list[str]) -> None:
        self._client.resume_processes(AutoScalingGroupName=name, ScalingProcesses=processes)

    def subnet_ids(self, scope: MachinePoolScope) -> list[str]:
        """Resolve the subnets a pool's group should span.

        Order of precedence: explicit ids and filter lookups from the pool
        spec; else the cluster's private subnets in the pool's zones, in the
        pool's zone order; else all of the cluster's private subnets.

        Raises:
            SubnetResolutionError: If nothing resolves.
        """
        spec = scope.pool.spec
        ids: list[str] = []
        for ref in spec.subnets:
            if ref.id:
                ids.append(ref.id)
            if ref.filters:
                ids.extend(self._ec2.find_subnet_ids(ref.filters))

        if not ids:
            private = filter_private(scope.cluster_subnets())
            if spec.availability_zones:
                for zone in spec.availability_zones:
                    ids.extend(s.id for s in filter_by_zone(private, zone) if s.id)
            else:
                ids = [s.id for s in private if s.id]

        # Preserve first occurrence order
        ids = list(dict.fromkeys(ids))
        if not ids:
            raise SubnetResolutionError(f"no subnets resolved for machine pool {scope.key}")
        return ids

    # =========================================================================
    # Tags
    # =========================================================================

    def desired_tags(self, scope: MachinePoolScope) -> dict[str, str]:
        tags = scope.additional_tags()
        tags[cluster_tag_key(scope.cluster_name)] = ResourceLifecycle.OWNED.value
        tags["Name"] = scope.name
        return tags

    @staticmethod
    def _sdk_tags(name: str, tags: dict[str, str]) -> list[dict[str, Any]]:
        return [
            {
                "ResourceId": name,
                "ResourceType": ASG_RESOURCE_TYPE,
                "Key": key,
                "Value": value,
                "PropagateAtLaunch": True,
            }
            for key, value in sorted(tags.items())
        ]

    def create_tags(self, resource_id: str, tags: dict[str, str]) -> None:
        self._client.create_or_update_tags(Tags=self._sdk_tags(resource_id, tags))

    def delete_tags(self, resource_id: str, keys: list[str]) -> None:
        self._client.delete_tags(
            Tags=[
                {"ResourceId": resource_id, "ResourceType": ASG_RESOURCE_TYPE, "Key": key}
                for key in keys
            ]
        )

    # =========================================================================
    # Instance refresh
    # =========================================================================

    def can_start_instance_refresh(self, name: str) -> bool:
        out = self._client.describe_instance_refreshes(AutoScalingGroupName=name)
        return not any(
            r.get("Status") in ACTIVE_REFRESH_STATES for r in out.get("InstanceRefreshes", [])
        )

    def start_instance_refresh(self, name: str, preferences: RefreshPreferences | None) -> None:
        preferences = preferences or RefreshPreferences()
        raw: dict[str, Any] = {}
        if preferences.instance_warmup is not None:
            raw["InstanceWarmup"] = preferences.instance_warmup
        if preferences.min_healthy_percentage is not None:
            raw["MinHealthyPercentage"] = preferences.min_healthy_percentage

        params: dict[str, Any] = {"AutoScalingGroupName": name, "Strategy": preferences.strategy}
        if raw:
            params["Preferences"] = raw
        self._client.start_instance_refresh(**params)
        logger.info("Started instance refresh", extra={"asg": name})
