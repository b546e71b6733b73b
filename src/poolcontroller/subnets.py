"""Subnet topology planning and reconciliation.

This module:
1. Plans a deterministic default layout (one public and one private subnet
   per availability zone) when a managed network declares no subnets
2. Discovers existing subnets and classifies them public or private
3. Matches declared subnets against existing ones by CIDR and zone, syncing
   tags on matches and creating what is missing
4. Deletes the subnets of a managed VPC on cluster teardown

Managed vs. unmanaged networks:
- A managed network's VPC is owned by the cluster. Missing subnets are
  created, and it must end up with at least one public and one private
  subnet.
- An unmanaged network's VPC belongs to someone else. Every subnet must
  already exist, and tagging failures only produce a warning.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable, Sequence
from typing import TypeVar

from botocore.exceptions import ClientError

from . import awserrors, conditions
from .cidr import CIDRSplitError, split_into_subnets_ipv4, split_into_subnets_ipv6
from .ec2 import EC2Service, tags_to_map
from .models import (
    NAME_TAG,
    PRIVATE_ROLE_TAG_VALUE,
    PUBLIC_ROLE_TAG_VALUE,
    SECONDARY_SUBNET_TAG_VALUE,
    SUBNET_ASSOCIATION_TAG_KEY,
    AZSelectionScheme,
    ResourceLifecycle,
    SubnetSpec,
    VPCSpec,
    filter_private,
    filter_public,
    find_equal,
)
from .record import EventRecorder
from .retry import Backoff, with_retry
from .scope import ClusterScope
from .tags import Builder, BuildParams

logger = logging.getLogger(__name__)

T = TypeVar("T")

INTERNAL_LOAD_BALANCER_TAG = "kubernetes.io/role/internal-elb"
EXTERNAL_LOAD_BALANCER_TAG = "kubernetes.io/role/elb"
DEFAULT_MAX_NUM_AZS = 3

# Placeholder resource id used while building tags for a subnet that does not exist yet
TEMPORARY_RESOURCE_ID = "temporary-resource-id"

MAIN_ROUTE_TABLE_KEY = "main"


class NetworkConfigurationError(Exception):
    """Raised when the declared network cannot be honoured.

    This is a configuration problem, not a cloud failure: retrying will not
    help until the cluster spec is corrected.
    """

    pass


def cloud_provider_tag_key(cluster_name: str) -> str:
    return f"kubernetes.io/cluster/{cluster_name}"


# =============================================================================
# Default layout
# =============================================================================


def select_zones(
    zones: Sequence[str],
    limit: int = DEFAULT_MAX_NUM_AZS,
    selection: AZSelectionScheme = AZSelectionScheme.ORDERED,
    shuffle: Callable[[list[str]], None] = random.shuffle,
) -> list[str]:
    """Pick at most limit zones. Zone order is preserved when no cut is needed."""
    selected = list(zones)
    if len(selected) <= limit:
        return selected

    match selection:
        case AZSelectionScheme.RANDOM:
            shuffle(selected)
        case AZSelectionScheme.ORDERED:
            selected.sort()

    return selected[:limit]


def plan_default_subnets(vpc: VPCSpec, zones: Sequence[str]) -> list[SubnetSpec]:
    """Compute one public and one private subnet per zone.

    The VPC block is split into len(zones)+1 equal blocks. Block 0 is split
    again into one public subnet per zone, blocks 1..N become the private
    subnets in zone order. With IPv6 enabled the public /64s are allocated
    after the last top-level block so they never overlap the private ones.

    Raises:
        NetworkConfigurationError: If the blocks cannot be split.
    """
    if not zones:
        raise NetworkConfigurationError("no availability zones to plan subnets in")

    num_subnets = len(zones) + 1
    try:
        subnet_cidrs = split_into_subnets_ipv4(vpc.cidr_block, num_subnets)
        public_cidrs = split_into_subnets_ipv4(str(subnet_cidrs[0]), len(zones))
        private_cidrs = subnet_cidrs[1:]

        public_ipv6: list = []
        private_ipv6: list = []
        if vpc.is_ipv6_enabled():
            ipv6_cidrs = split_into_subnets_ipv6(vpc.ipv6.cidr_block, num_subnets)
            public_ipv6 = split_into_subnets_ipv6(str(ipv6_cidrs[-1]), len(zones))
            private_ipv6 = ipv6_cidrs[1:]
    except CIDRSplitError as e:
        raise NetworkConfigurationError(f"failed splitting VPC CIDR into subnets: {e}") from e

    subnets: list[SubnetSpec] = []
    for i, zone in enumerate(zones):
        public = SubnetSpec(cidr_block=str(public_cidrs[i]), availability_zone=zone, is_public=True)
        private = SubnetSpec(
            cidr_block=str(private_cidrs[i]), availability_zone=zone, is_public=False
        )
        if vpc.is_ipv6_enabled():
            public.ipv6_cidr_block = str(public_ipv6[i])
            public.is_ipv6 = True
            private.ipv6_cidr_block = str(private_ipv6[i])
            private.is_ipv6 = True
        subnets.extend([public, private])

    return subnets


def plan_secondary_subnets(cidr_block: str, zones: Sequence[str], limit: int) -> list[SubnetSpec]:
    """Split the secondary block into private subnets, one per zone."""
    try:
        cidrs = split_into_subnets_ipv4(cidr_block, limit)
    except CIDRSplitError as e:
        raise NetworkConfigurationError(f"failed splitting secondary CIDR: {e}") from e

    return [
        SubnetSpec(
            cidr_block=str(cidr),
            availability_zone=zone,
            is_public=False,
            tags={SUBNET_ASSOCIATION_TAG_KEY: SECONDARY_SUBNET_TAG_VALUE},
        )
        for cidr, zone in zip(cidrs, zones)
    ]


# =============================================================================
# Reconciler
# =============================================================================


class SubnetReconciler:
    """Converges a cluster's subnets against EC2."""

    def __init__(
        self,
        scope: ClusterScope,
        ec2: EC2Service,
        recorder: EventRecorder,
        backoff: Backoff,
        shuffle: Callable[[list[str]], None] = random.shuffle,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._scope = scope
        self._ec2 = ec2
        self._recorder = recorder
        self._backoff = backoff
        self._shuffle = shuffle
        self._sleep = sleep

    def _retry(self, operation: Callable[[], T], *codes: str) -> T:
        return with_retry(operation, awserrors.retry_on(*codes), self._backoff, sleep=self._sleep)

    def reconcile_subnets(self) -> None:
        """Match declared subnets to existing ones and create the rest.

        The resulting subnet list is written back to the cluster scope even
        when the pass fails part way, so ids discovered so far are kept.

        Raises:
            NetworkConfigurationError: On unmatched subnets in an unmanaged VPC
                or a missing public/private subnet in a managed VPC.
            ClientError: On any cloud failure that is not retried away.
        """
        scope = self._scope
        logger.info("Reconciling subnets", extra={"cluster": scope.name})

        subnets = [s.model_copy(deep=True) for s in scope.subnets]
        try:
            self._reconcile(subnets)
        finally:
            scope.set_subnets(subnets)

        logger.debug(
            "Reconciled subnets",
            extra={"cluster": scope.name, "subnets": [s.id for s in subnets]},
        )
        conditions.mark_true(scope.conditions, conditions.SUBNETS_READY)

    def _reconcile(self, subnets: list[SubnetSpec]) -> None:
        scope = self._scope
        unmanaged = scope.vpc.is_unmanaged(scope.name)
        existing: list[SubnetSpec] = []

        # Discovering first lets unmanaged resources get tagged
        if scope.tag_unmanaged_network_resources:
            existing = self.describe_vpc_subnets()

        if not subnets:
            if unmanaged:
                message = "no subnets specified, you must specify the subnets when using an unmanaged vpc"
                self._recorder.warnf(scope.key, "FailedNoSubnets", message)
                raise NetworkConfigurationError(message)

            logger.info("No subnets specified, setting defaults", extra={"cluster": scope.name})
            try:
                subnets.extend(self.get_default_subnets())
            except (NetworkConfigurationError, ClientError) as e:
                self._recorder.warnf(
                    scope.key, "FailedDefaultSubnets", f"Failed getting default subnets: {e}"
                )
                raise

        if not scope.tag_unmanaged_network_resources:
            existing = self.describe_vpc_subnets()

        if scope.secondary_cidr_block:
            zones = self._ec2.describe_availability_zones()
            for secondary in plan_secondary_subnets(
                scope.secondary_cidr_block, zones, scope.az_usage_limit
            ):
                if find_equal(existing, secondary) is None:
                    subnets.append(secondary)

        for i, subnet in enumerate(subnets):
            match = find_equal(existing, subnet)
            if match is not None:
                self._ensure_tags(match, subnet.tags, unmanaged)
                subnets[i] = match.model_copy(deep=True)
            elif unmanaged:
                self._recorder.warnf(
                    scope.key,
                    "FailedMatchSubnet",
                    f"Using unmanaged VPC and failed to find existing subnet for specified "
                    f"subnet id {subnet.id!r}, cidr {subnet.cidr_block!r}",
                )
                raise NetworkConfigurationError(
                    f"using unmanaged vpc and subnet {subnet.id} (cidr {subnet.cidr_block}) "
                    f"specified but it doesn't exist in vpc {scope.vpc.id}"
                )

        if not unmanaged:
            if not filter_private(subnets):
                self._recorder.warnf(
                    scope.key, "FailedNoPrivateSubnet", "Expected at least 1 private subnet but got 0"
                )
                raise NetworkConfigurationError("expected at least 1 private subnet but got 0")
            if not filter_public(subnets):
                self._recorder.warnf(
                    scope.key, "FailedNoPublicSubnet", "Expected at least 1 public subnet but got 0"
                )
                raise NetworkConfigurationError("expected at least 1 public subnet but got 0")
        elif not subnets:
            self._recorder.warnf(scope.key, "FailedNoSubnet", "Expected at least 1 subnet but got 0")
            raise NetworkConfigurationError("expected at least 1 subnet but got 0")

        if unmanaged:
            return

        for i, subnet in enumerate(subnets):
            if subnet.id:
                continue
            subnets[i] = self.create_subnet(subnet)

    def _ensure_tags(self, existing: SubnetSpec, manual_tags: dict[str, str], unmanaged: bool) -> None:
        scope = self._scope
        if unmanaged and not scope.tag_unmanaged_network_resources:
            return

        params = self.get_subnet_tag_params(
            unmanaged, existing.id, existing.is_public, existing.availability_zone, manual_tags
        )
        builder = Builder(params, self._ec2)
        try:
            diff = self._retry(lambda: builder.ensure(existing.tags), awserrors.SUBNET_NOT_FOUND)
        except ClientError as e:
            if not unmanaged:
                self._recorder.warnf(
                    scope.key,
                    "FailedTagSubnet",
                    f"Failed tagging managed Subnet {existing.id!r}: {e}",
                )
                raise
            # Tagging someone else's subnet may not be permitted; keep going
            self._recorder.warnf(
                scope.key,
                "FailedTagSubnet",
                f"Failed tagging unmanaged Subnet {existing.id!r}: {e}",
            )
            return

        existing.tags = {
            k: v for k, v in existing.tags.items() if k not in diff.to_delete
        } | diff.to_create

    def get_default_subnets(self) -> list[SubnetSpec]:
        scope = self._scope
        zones = self._ec2.describe_availability_zones()
        limit = scope.az_usage_limit
        if len(zones) > limit:
            logger.debug(
                "Region has more zones than the usage limit, picking zones",
                extra={"region": scope.region, "limit": limit},
            )
        zones = select_zones(zones, limit, scope.az_selection, self._shuffle)
        return plan_default_subnets(scope.vpc, zones)

    def describe_vpc_subnets(self) -> list[SubnetSpec]:
        """Describe the VPC's subnets and classify them.

        A subnet is public when tagged with the public role, or when its
        route table (explicit association, else the VPC main table) routes
        to an internet gateway.
        """
        vpc_id = self._scope.vpc.id
        raw_subnets = self._ec2.describe_subnets(vpc_id, object_key=self._scope.key)
        route_tables = self._route_tables_by_subnet(vpc_id)
        nat_gateways = {
            ngw["SubnetId"]: ngw["NatGatewayId"]
            for ngw in self._ec2.describe_nat_gateways(vpc_id)
            if ngw.get("SubnetId")
        }

        subnets: list[SubnetSpec] = []
        for raw in raw_subnets:
            subnet_id = raw["SubnetId"]
            spec = SubnetSpec(
                id=subnet_id,
                cidr_block=raw.get("CidrBlock", ""),
                availability_zone=raw.get("AvailabilityZone", ""),
                tags=tags_to_map(raw.get("Tags")),
            )
            for association in raw.get("Ipv6CidrBlockAssociationSet", []):
                if association.get("Ipv6CidrBlockState", {}).get("State") == "associated":
                    spec.ipv6_cidr_block = association.get("Ipv6CidrBlock", "")
                    spec.is_ipv6 = True

            if spec.role() == PUBLIC_ROLE_TAG_VALUE:
                spec.is_public = True

            table = route_tables.get(subnet_id) or route_tables.get(MAIN_ROUTE_TABLE_KEY)
            if table is not None:
                spec.route_table_id = table.get("RouteTableId")
                for route in table.get("Routes", []):
                    if (route.get("GatewayId") or "").startswith("igw"):
                        spec.is_public = True

            spec.nat_gateway_id = nat_gateways.get(subnet_id)
            subnets.append(spec)

        return subnets

    def _route_tables_by_subnet(self, vpc_id: str) -> dict[str, dict]:
        tables: dict[str, dict] = {}
        for table in self._ec2.describe_route_tables(vpc_id):
            for association in table.get("Associations", []):
                if association.get("Main"):
                    tables[MAIN_ROUTE_TABLE_KEY] = table
                if association.get("SubnetId"):
                    tables[association["SubnetId"]] = table
        return tables

    def create_subnet(self, subnet: SubnetSpec) -> SubnetSpec:
        """Create a subnet, wait for it, then set its launch attributes."""
        scope = self._scope
        ipv6 = scope.vpc.is_ipv6_enabled()
        params = self.get_subnet_tag_params(
            False, TEMPORARY_RESOURCE_ID, subnet.is_public, subnet.availability_zone, subnet.tags
        )
        desired_tags = Builder(params, self._ec2).desired

        out = self._ec2.create_subnet(
            vpc_id=scope.vpc.id,
            cidr_block=subnet.cidr_block,
            availability_zone=subnet.availability_zone,
            tags=desired_tags,
            ipv6_cidr_block=subnet.ipv6_cidr_block if ipv6 else None,
            object_key=scope.key,
        )
        subnet_id = out["SubnetId"]
        logger.info(
            "Created subnet",
            extra={
                "subnet_id": subnet_id,
                "public": subnet.is_public,
                "az": subnet.availability_zone,
                "cidr": subnet.cidr_block,
                "ipv6": ipv6,
                "ipv6_cidr": subnet.ipv6_cidr_block,
            },
        )

        self._ec2.wait_until_subnet_available(subnet_id)

        # One attribute per call
        if ipv6:
            self._modify_attribute(subnet_id, assign_ipv6_address_on_creation=True)
        if subnet.is_public:
            self._modify_attribute(subnet_id, map_public_ip_on_launch=True)

        created = SubnetSpec(
            id=subnet_id,
            availability_zone=out.get("AvailabilityZone", subnet.availability_zone),
            cidr_block=out.get("CidrBlock", subnet.cidr_block),
            is_public=subnet.is_public,
            tags=desired_tags,
        )
        for association in out.get("Ipv6CidrBlockAssociationSet", []):
            if association.get("Ipv6CidrBlockState", {}).get("State") == "associated":
                created.ipv6_cidr_block = association.get("Ipv6CidrBlock", "")
                created.is_ipv6 = True
        if ipv6 and not created.is_ipv6:
            created.ipv6_cidr_block = subnet.ipv6_cidr_block
            created.is_ipv6 = True
        return created

    def _modify_attribute(self, subnet_id: str, **attribute: bool) -> None:
        try:
            self._retry(
                lambda: self._ec2.modify_subnet_attribute(subnet_id, **attribute),
                awserrors.SUBNET_NOT_FOUND,
            )
        except ClientError as e:
            self._recorder.warnf(
                self._scope.key,
                "FailedModifySubnetAttributes",
                f"Failed modifying managed Subnet {subnet_id!r} attributes: {e}",
            )
            raise
        self._recorder.eventf(
            self._scope.key,
            "SuccessfulModifySubnetAttributes",
            f"Modified managed Subnet {subnet_id!r} attributes",
        )

    def delete_subnets(self) -> None:
        """Delete every subnet of a managed VPC. Unmanaged VPCs are left alone."""
        scope = self._scope
        if scope.vpc.is_unmanaged(scope.name):
            logger.debug("Skipping subnets deletion in unmanaged mode", extra={"cluster": scope.name})
            return

        for raw in self._ec2.describe_subnets(scope.vpc.id, object_key=scope.key):
            self._ec2.delete_subnet(raw["SubnetId"], scope.vpc.id, object_key=scope.key)

    def get_subnet_tag_params(
        self,
        unmanaged: bool,
        resource_id: str,
        public: bool,
        zone: str,
        manual_tags: dict[str, str],
    ) -> BuildParams:
        """Tags for a subnet.

        Managed: ownership, role, Name (explicit tag wins over
        ``<cluster>-subnet-<role>-<zone>``), load balancer role, cloud
        provider tag, additional and manual tags. Unmanaged: load balancer
        role, cloud provider and additional tags, and only when tagging of
        unmanaged resources is enabled.
        """
        scope = self._scope
        role = PUBLIC_ROLE_TAG_VALUE if public else PRIVATE_ROLE_TAG_VALUE
        additional: dict[str, str] = {}

        if not unmanaged or scope.tag_unmanaged_network_resources:
            additional = scope.additional_tags
            if public:
                additional[EXTERNAL_LOAD_BALANCER_TAG] = "1"
            else:
                additional[INTERNAL_LOAD_BALANCER_TAG] = "1"
            additional[cloud_provider_tag_key(scope.name)] = ResourceLifecycle.SHARED.value

        if unmanaged:
            return BuildParams(resource_id=resource_id, additional=additional)

        additional.update(manual_tags)
        name = manual_tags.get(NAME_TAG) or f"{scope.name}-subnet-{role}-{zone}"
        return BuildParams(
            resource_id=resource_id,
            cluster_name=scope.name,
            lifecycle=ResourceLifecycle.OWNED,
            name=name,
            role=role,
            additional=additional,
        )
