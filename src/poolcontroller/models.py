"""Pydantic models for cluster, pool and cloud state with validation.

These models provide:
1. Type-safe YAML parsing (camelCase aliases, snake_case attributes)
2. Validation at the boundary (fail fast, fail loudly)
3. Separate records for desired state (Cluster, MachinePool) and observed
   state (AutoScalingGroup, observed SubnetSpec lists)
"""

from __future__ import annotations

import ipaddress
from datetime import datetime
from enum import Enum
from typing import Annotated

from pydantic import BaseModel, Field, ValidationInfo, field_validator

# =============================================================================
# Well-known names
# =============================================================================

TAG_NAMESPACE = "poolcontroller.io"

MACHINE_POOL_FINALIZER = f"machinepool.{TAG_NAMESPACE}"
CLUSTER_FINALIZER = f"cluster.{TAG_NAMESPACE}"

# Replicas owned by an external autoscaler instead of the spec
REPLICAS_MANAGED_BY_ANNOTATION = "cluster.x-k8s.io/replicas-managed-by"
EXTERNAL_AUTOSCALER_ANNOTATION_VALUE = "external-autoscaler"

NAME_TAG = "Name"
PUBLIC_ROLE_TAG_VALUE = "public"
PRIVATE_ROLE_TAG_VALUE = "private"
SECONDARY_SUBNET_TAG_VALUE = "secondary"

DEFAULT_VPC_CIDR = "10.0.0.0/16"


def cluster_tag_key(cluster_name: str) -> str:
    """Tag key marking a resource as belonging to a cluster."""
    return f"{TAG_NAMESPACE}/cluster/{cluster_name}"


ROLE_TAG_KEY = f"{TAG_NAMESPACE}/role"
SUBNET_ASSOCIATION_TAG_KEY = f"{TAG_NAMESPACE}/association"


class ResourceLifecycle(str, Enum):
    """Ownership of a cloud resource relative to a cluster."""

    OWNED = "owned"
    SHARED = "shared"


class BaseResource(BaseModel):
    """Base model: ignore unknown fields, accept both aliases and field names."""

    model_config = {"extra": "ignore", "populate_by_name": True}


# =============================================================================
# Conditions
# =============================================================================


class ConditionStatus(str, Enum):
    """Status of a condition."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ConditionSeverity(str, Enum):
    """Severity of a condition that is not True."""

    ERROR = "Error"
    WARNING = "Warning"
    INFO = "Info"
    NONE = ""


class Condition(BaseResource):
    """Typed, reasoned status entry, unique per type."""

    type: str
    status: ConditionStatus = ConditionStatus.UNKNOWN
    severity: ConditionSeverity = ConditionSeverity.NONE
    reason: str = ""
    message: str = ""
    last_transition_time: datetime | None = Field(None, alias="lastTransitionTime")


# =============================================================================
# Object metadata
# =============================================================================


class ObjectMeta(BaseResource):
    """Identity and lifecycle metadata shared by all declared objects."""

    name: Annotated[str, Field(min_length=1, max_length=253)]
    namespace: str = "default"
    annotations: dict[str, str] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)
    finalizers: list[str] = Field(default_factory=list)
    deletion_timestamp: datetime | None = Field(None, alias="deletionTimestamp")

    @property
    def key(self) -> str:
        """Namespaced key used by the work queue."""
        return f"{self.namespace}/{self.name}"

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    def add_finalizer(self, finalizer: str) -> bool:
        """Add a single finalizer token. Returns True if it was missing."""
        if finalizer in self.finalizers:
            return False
        self.finalizers.append(finalizer)
        return True

    def remove_finalizer(self, finalizer: str) -> bool:
        """Remove a single finalizer token, leaving all others untouched."""
        if finalizer not in self.finalizers:
            return False
        self.finalizers = [f for f in self.finalizers if f != finalizer]
        return True


# =============================================================================
# Network
# =============================================================================


class AZSelectionScheme(str, Enum):
    """How availability zones are picked when a region offers too many."""

    ORDERED = "Ordered"
    RANDOM = "Random"


class IPv6Spec(BaseResource):
    """IPv6 block of the VPC."""

    cidr_block: str = Field("", alias="cidrBlock")
    pool_id: str = Field("", alias="poolId")
    egress_only_internet_gateway_id: str | None = Field(
        None, alias="egressOnlyInternetGatewayId"
    )


class VPCSpec(BaseResource):
    """VPC the cluster's subnets live in."""

    id: str = ""
    cidr_block: str = Field(DEFAULT_VPC_CIDR, alias="cidrBlock")
    secondary_cidr_block: str | None = Field(None, alias="secondaryCidrBlock")
    ipv6: IPv6Spec | None = None
    internet_gateway_id: str | None = Field(None, alias="internetGatewayId")
    tags: dict[str, str] = Field(default_factory=dict)
    availability_zone_usage_limit: Annotated[int, Field(ge=1)] | None = Field(
        None, alias="availabilityZoneUsageLimit"
    )
    availability_zone_selection: AZSelectionScheme | None = Field(
        None, alias="availabilityZoneSelection"
    )

    @field_validator("cidr_block")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        try:
            ipaddress.IPv4Network(v)
        except ValueError as e:
            raise ValueError(f"cidrBlock must be an IPv4 CIDR: {e}") from e
        return v

    def is_unmanaged(self, cluster_name: str) -> bool:
        """A VPC is unmanaged when it exists and is not tagged as owned by the cluster."""
        return self.id != "" and self.tags.get(cluster_tag_key(cluster_name)) != (
            ResourceLifecycle.OWNED.value
        )

    def is_ipv6_enabled(self) -> bool:
        return self.ipv6 is not None


class SubnetSpec(BaseResource):
    """Desired or observed subnet.

    Two subnets are equal for matching purposes when CIDR block and
    availability zone match, regardless of id.
    """

    id: str = ""
    cidr_block: str = Field("", alias="cidrBlock")
    ipv6_cidr_block: str = Field("", alias="ipv6CidrBlock")
    availability_zone: str = Field("", alias="availabilityZone")
    is_public: bool = Field(False, alias="isPublic")
    is_ipv6: bool = Field(False, alias="isIpv6")
    route_table_id: str | None = Field(None, alias="routeTableId")
    nat_gateway_id: str | None = Field(None, alias="natGatewayId")
    tags: dict[str, str] = Field(default_factory=dict)

    def equals(self, other: SubnetSpec) -> bool:
        return (
            self.cidr_block == other.cidr_block
            and self.availability_zone == other.availability_zone
        )

    def role(self) -> str | None:
        return self.tags.get(ROLE_TAG_KEY)


def find_equal(subnets: list[SubnetSpec], spec: SubnetSpec) -> SubnetSpec | None:
    """Find the subnet matching spec by id (when set) or by CIDR and zone."""
    for subnet in subnets:
        if spec.id and subnet.id == spec.id:
            return subnet
        if subnet.equals(spec):
            return subnet
    return None


def filter_public(subnets: list[SubnetSpec]) -> list[SubnetSpec]:
    return [s for s in subnets if s.is_public]


def filter_private(subnets: list[SubnetSpec]) -> list[SubnetSpec]:
    return [s for s in subnets if not s.is_public]


def filter_by_zone(subnets: list[SubnetSpec], zone: str) -> list[SubnetSpec]:
    return [s for s in subnets if s.availability_zone == zone]


class NetworkSpec(BaseResource):
    """Network topology declared for a cluster."""

    vpc: VPCSpec = Field(default_factory=VPCSpec)
    subnets: list[SubnetSpec] = Field(default_factory=list)
    tag_unmanaged_network_resources: bool = Field(
        False, alias="tagUnmanagedNetworkResources"
    )


class ClusterSpec(BaseResource):
    """Desired cluster-level infrastructure."""

    region: str | None = None
    network: NetworkSpec = Field(default_factory=NetworkSpec)
    additional_tags: dict[str, str] = Field(default_factory=dict, alias="additionalTags")


class ClusterStatus(BaseResource):
    """Observed cluster-level state written by the operator."""

    infrastructure_ready: bool = Field(False, alias="infrastructureReady")
    conditions: list[Condition] = Field(default_factory=list)
    failure_reason: str | None = Field(None, alias="failureReason")
    failure_message: str | None = Field(None, alias="failureMessage")


class Cluster(BaseResource):
    """A cluster: network topology plus the readiness signal pools wait for."""

    metadata: ObjectMeta
    spec: ClusterSpec = Field(default_factory=ClusterSpec)
    status: ClusterStatus = Field(default_factory=ClusterStatus)


# =============================================================================
# Machine pool (desired)
# =============================================================================

# Process names in the order the AutoScaling API documents them
ALL_PROCESSES: tuple[str, ...] = (
    "Launch",
    "Terminate",
    "AddToLoadBalancer",
    "AlarmNotification",
    "AZRebalance",
    "HealthCheck",
    "InstanceRefresh",
    "ReplaceUnhealthy",
    "ScheduledActions",
)


class Processes(BaseResource):
    """Explicit per-process suspend flags."""

    launch: bool | None = None
    terminate: bool | None = None
    add_to_load_balancer: bool | None = Field(None, alias="addToLoadBalancer")
    alarm_notification: bool | None = Field(None, alias="alarmNotification")
    az_rebalance: bool | None = Field(None, alias="azRebalance")
    health_check: bool | None = Field(None, alias="healthCheck")
    instance_refresh: bool | None = Field(None, alias="instanceRefresh")
    replace_unhealthy: bool | None = Field(None, alias="replaceUnhealthy")
    scheduled_actions: bool | None = Field(None, alias="scheduledActions")

    def flags(self) -> dict[str, bool | None]:
        """Map API process names to their flag."""
        return {
            "Launch": self.launch,
            "Terminate": self.terminate,
            "AddToLoadBalancer": self.add_to_load_balancer,
            "AlarmNotification": self.alarm_notification,
            "AZRebalance": self.az_rebalance,
            "HealthCheck": self.health_check,
            "InstanceRefresh": self.instance_refresh,
            "ReplaceUnhealthy": self.replace_unhealthy,
            "ScheduledActions": self.scheduled_actions,
        }


class SuspendProcesses(BaseResource):
    """Which scaling processes should be suspended.

    With ``all`` every process is suspended, except the ones explicitly set
    to false in ``processes``.
    """

    all: bool = False
    processes: Processes | None = None

    def resolve(self) -> list[str]:
        """Resolve to a sorted, de-duplicated list of process names."""
        flags = self.processes.flags() if self.processes else {}
        if self.all:
            names = {p for p in ALL_PROCESSES if flags.get(p) is not False}
        else:
            names = {p for p, v in flags.items() if v}
        return sorted(names)


class OnDemandAllocationStrategy(str, Enum):
    PRIORITIZED = "prioritized"
    LOWEST_PRICE = "lowest-price"


class SpotAllocationStrategy(str, Enum):
    LOWEST_PRICE = "lowest-price"
    CAPACITY_OPTIMIZED = "capacity-optimized"
    CAPACITY_OPTIMIZED_PRIORITIZED = "capacity-optimized-prioritized"
    PRICE_CAPACITY_OPTIMIZED = "price-capacity-optimized"


class InstancesDistribution(BaseResource):
    """On-demand / spot split of a mixed-instances policy."""

    on_demand_allocation_strategy: OnDemandAllocationStrategy | None = Field(
        None, alias="onDemandAllocationStrategy"
    )
    spot_allocation_strategy: SpotAllocationStrategy | None = Field(
        None, alias="spotAllocationStrategy"
    )
    on_demand_base_capacity: Annotated[int, Field(ge=0)] | None = Field(
        None, alias="onDemandBaseCapacity"
    )
    on_demand_percentage_above_base_capacity: Annotated[int, Field(ge=0, le=100)] | None = (
        Field(None, alias="onDemandPercentageAboveBaseCapacity")
    )


class Override(BaseResource):
    instance_type: Annotated[str, Field(min_length=1)] = Field(alias="instanceType")


class MixedInstancesPolicy(BaseResource):
    """Allocation strategy and instance-type overrides for a group."""

    instances_distribution: InstancesDistribution | None = Field(
        None, alias="instancesDistribution"
    )
    overrides: list[Override] | None = None


class AMIReference(BaseResource):
    """Image to launch: an explicit id, or the newest image matching a name pattern."""

    id: str | None = None
    name_pattern: str | None = Field(None, alias="namePattern")
    owner: str | None = None


class LaunchTemplateSpec(BaseResource):
    """Instance settings rendered into the pool's launch template."""

    name: str | None = None
    ami: AMIReference = Field(default_factory=AMIReference)
    instance_type: str = Field("t3.medium", alias="instanceType")
    iam_instance_profile: str | None = Field(None, alias="iamInstanceProfile")
    ssh_key_name: str | None = Field(None, alias="sshKeyName")
    additional_security_groups: list[str] = Field(
        default_factory=list, alias="additionalSecurityGroups"
    )


class RefreshPreferences(BaseResource):
    """Instance refresh behaviour after a launch template change."""

    disable: bool = False
    strategy: str = "Rolling"
    instance_warmup: int | None = Field(None, alias="instanceWarmup")
    min_healthy_percentage: Annotated[int, Field(ge=0, le=100)] | None = Field(
        None, alias="minHealthyPercentage"
    )


class SubnetReference(BaseResource):
    """Subnet selected by id or by EC2 filters."""

    id: str | None = None
    filters: dict[str, list[str]] = Field(default_factory=dict)


class MachinePoolSpec(BaseResource):
    """Desired state of a pool, owned by the caller.

    The operator writes back only ``provider_id``, ``provider_id_list`` and
    ``replicas`` (the latter solely for externally managed pools).
    """

    cluster_name: Annotated[str, Field(min_length=1)] = Field(alias="clusterName")
    replicas: Annotated[int, Field(ge=0)] | None = None
    min_size: Annotated[int, Field(ge=0)] = Field(1, alias="minSize")
    max_size: Annotated[int, Field(ge=0)] = Field(1, alias="maxSize")
    default_cool_down: int = Field(300, alias="defaultCoolDown")
    capacity_rebalance: bool = Field(False, alias="capacityRebalance")
    mixed_instances_policy: MixedInstancesPolicy | None = Field(
        None, alias="mixedInstancesPolicy"
    )
    suspend_processes: SuspendProcesses | None = Field(None, alias="suspendProcesses")
    provider_id: str = Field("", alias="providerID")
    provider_id_list: list[str] = Field(default_factory=list, alias="providerIDList")
    bootstrap_data_secret_name: str | None = Field(None, alias="bootstrapDataSecretName")
    availability_zones: list[str] = Field(default_factory=list, alias="availabilityZones")
    subnets: list[SubnetReference] = Field(default_factory=list)
    additional_tags: dict[str, str] = Field(default_factory=dict, alias="additionalTags")
    launch_template: LaunchTemplateSpec = Field(
        default_factory=LaunchTemplateSpec, alias="launchTemplate"
    )
    refresh_preferences: RefreshPreferences | None = Field(None, alias="refreshPreferences")

    @field_validator("max_size")
    @classmethod
    def validate_max_size(cls, v: int, info: ValidationInfo) -> int:
        min_size = info.data.get("min_size")
        if min_size is not None and v < min_size:
            raise ValueError(f"maxSize ({v}) must not be lower than minSize ({min_size})")
        return v


class InstanceStatus(BaseResource):
    id: str
    availability_zone: str = Field("", alias="availabilityZone")
    state: str = ""


class MachinePoolStatus(BaseResource):
    """Observed pool state written back by the operator."""

    ready: bool = False
    replicas: int = 0
    conditions: list[Condition] = Field(default_factory=list)
    instances: list[InstanceStatus] = Field(default_factory=list)
    launch_template_id: str = Field("", alias="launchTemplateID")
    launch_template_version: str | None = Field(None, alias="launchTemplateVersion")
    asg_status: str | None = Field(None, alias="asgStatus")
    failure_reason: str | None = Field(None, alias="failureReason")
    failure_message: str | None = Field(None, alias="failureMessage")


class MachinePool(BaseResource):
    """A pool of identical instances backed by one autoscaling group."""

    metadata: ObjectMeta
    spec: MachinePoolSpec
    status: MachinePoolStatus = Field(default_factory=MachinePoolStatus)


# =============================================================================
# Observed cloud state
# =============================================================================


class ASGStatus(str, Enum):
    """Lifecycle status reported by the AutoScaling API."""

    DELETE_IN_PROGRESS = "Delete in progress"


class Instance(BaseResource):
    id: str
    availability_zone: str = Field("", alias="availabilityZone")
    state: str = ""


class AutoScalingGroup(BaseResource):
    """The cloud's current view of a scaling group. Rebuilt on every pass."""

    id: str = ""
    name: str = ""
    tags: dict[str, str] = Field(default_factory=dict)
    desired_capacity: int | None = Field(None, alias="desiredCapacity")
    max_size: int = Field(0, alias="maxSize")
    min_size: int = Field(0, alias="minSize")
    default_cool_down: int | None = Field(None, alias="defaultCoolDown")
    capacity_rebalance: bool = Field(False, alias="capacityRebalance")
    mixed_instances_policy: MixedInstancesPolicy | None = Field(
        None, alias="mixedInstancesPolicy"
    )
    subnets: list[str] = Field(default_factory=list)
    status: str | None = None
    instances: list[Instance] = Field(default_factory=list)
    currently_suspend_processes: list[str] = Field(
        default_factory=list, alias="currentlySuspendProcesses"
    )
    launch_template_id: str | None = Field(None, alias="launchTemplateID")


class LaunchTemplate(BaseResource):
    """Observed latest version of a launch template."""

    id: str
    name: str
    version: str = ""
    image_id: str | None = Field(None, alias="imageID")
    instance_type: str | None = Field(None, alias="instanceType")
    iam_instance_profile: str | None = Field(None, alias="iamInstanceProfile")
    ssh_key_name: str | None = Field(None, alias="sshKeyName")
    security_group_ids: list[str] = Field(default_factory=list, alias="securityGroupIDs")
    user_data_hash: str | None = Field(None, alias="userDataHash")
    tags: dict[str, str] = Field(default_factory=dict)
