"""EC2 operations used by the subnet planner and the pool state machine.

Thin, synchronous wrappers over a boto3 EC2 client. Failures that an
operator should see are recorded as events before the ``ClientError``
propagates; callers decide whether the failure is transient (see retry.py).
"""

from __future__ import annotations

import base64
import hashlib
import logging
from dataclasses import dataclass
from typing import Any

from botocore.exceptions import ClientError

from . import awserrors
from .models import (
    AMIReference,
    LaunchTemplate,
    LaunchTemplateSpec,
    ObjectMeta,
    ResourceLifecycle,
    cluster_tag_key,
)
from .record import EventRecorder
from .tags import Builder, BuildParams

logger = logging.getLogger(__name__)

SUBNET_STATES = ["pending", "available"]


class ImageNotFoundError(Exception):
    """Raised when no AMI matches the configured lookup."""

    pass


def tags_to_map(tags: list[dict[str, str]] | None) -> dict[str, str]:
    """Convert an EC2 ``[{"Key": k, "Value": v}]`` list to a dict."""
    return {t["Key"]: t.get("Value", "") for t in tags or []}


def map_to_tags(tags: dict[str, str]) -> list[dict[str, str]]:
    return [{"Key": k, "Value": v} for k, v in sorted(tags.items())]


def user_data_hash(user_data: bytes) -> str:
    return hashlib.sha256(user_data).hexdigest()


@dataclass
class LaunchTemplateResult:
    """Outcome of one launch template reconciliation."""

    id: str
    version: str
    created: bool = False
    new_version: bool = False
    user_data_only: bool = False

    @property
    def needs_instance_refresh(self) -> bool:
        """A new version that changes more than user data rolls the instances."""
        return self.new_version and not self.user_data_only


class EC2Service:
    """EC2 verbs scoped to one cluster."""

    def __init__(self, client: Any, recorder: EventRecorder, cluster_name: str) -> None:
        self._client = client
        self._recorder = recorder
        self._cluster_name = cluster_name
        self._cluster_key = ObjectMeta(name=cluster_name).key

    @property
    def client(self) -> Any:
        return self._client

    # =========================================================================
    # Subnets
    # =========================================================================

    def describe_subnets(self, vpc_id: str, object_key: str = "") -> list[dict[str, Any]]:
        """List pending and available subnets of the VPC.

        When the VPC id is not known yet, subnets are found by the cluster
        ownership tag instead. Failures are recorded against object_key,
        defaulting to the cluster in the default namespace.
        """
        filters = [{"Name": "state", "Values": SUBNET_STATES}]
        if vpc_id:
            filters.append({"Name": "vpc-id", "Values": [vpc_id]})
        else:
            filters.append(
                {"Name": "tag-key", "Values": [cluster_tag_key(self._cluster_name)]}
            )

        subnets: list[dict[str, Any]] = []
        try:
            paginator = self._client.get_paginator("describe_subnets")
            for page in paginator.paginate(Filters=filters):
                subnets.extend(page.get("Subnets", []))
        except ClientError as e:
            self._recorder.eventf(
                object_key or self._cluster_key,
                "FailedDescribeSubnet",
                f"Failed to describe subnets in vpc {vpc_id!r}: {e}",
            )
            raise
        return subnets

    def find_subnet_ids(self, filters: dict[str, list[str]]) -> list[str]:
        """Resolve subnet ids matching arbitrary EC2 filters."""
        ec2_filters = [{"Name": name, "Values": values} for name, values in sorted(filters.items())]
        ids: list[str] = []
        paginator = self._client.get_paginator("describe_subnets")
        for page in paginator.paginate(Filters=ec2_filters):
            ids.extend(s["SubnetId"] for s in page.get("Subnets", []))
        return ids

    def describe_route_tables(self, vpc_id: str) -> list[dict[str, Any]]:
        if not vpc_id:
            return []
        tables: list[dict[str, Any]] = []
        paginator = self._client.get_paginator("describe_route_tables")
        for page in paginator.paginate(Filters=[{"Name": "vpc-id", "Values": [vpc_id]}]):
            tables.extend(page.get("RouteTables", []))
        return tables

    def describe_nat_gateways(self, vpc_id: str) -> list[dict[str, Any]]:
        if not vpc_id:
            return []
        gateways: list[dict[str, Any]] = []
        paginator = self._client.get_paginator("describe_nat_gateways")
        for page in paginator.paginate(
            Filters=[
                {"Name": "vpc-id", "Values": [vpc_id]},
                {"Name": "state", "Values": ["pending", "available"]},
            ]
        ):
            gateways.extend(page.get("NatGateways", []))
        return gateways

    def describe_availability_zones(self) -> list[str]:
        """Return the names of available standard zones in the region."""
        out = self._client.describe_availability_zones(
            Filters=[
                {"Name": "state", "Values": ["available"]},
                {"Name": "zone-type", "Values": ["availability-zone"]},
            ]
        )
        return [z["ZoneName"] for z in out.get("AvailabilityZones", [])]

    def create_subnet(
        self,
        vpc_id: str,
        cidr_block: str,
        availability_zone: str,
        tags: dict[str, str],
        ipv6_cidr_block: str | None = None,
        object_key: str = "",
    ) -> dict[str, Any]:
        """Create a subnet and return the raw EC2 description."""
        event_key = object_key or self._cluster_key
        params: dict[str, Any] = {
            "VpcId": vpc_id,
            "CidrBlock": cidr_block,
            "AvailabilityZone": availability_zone,
            "TagSpecifications": [{"ResourceType": "subnet", "Tags": map_to_tags(tags)}],
        }
        if ipv6_cidr_block:
            params["Ipv6CidrBlock"] = ipv6_cidr_block

        try:
            out = self._client.create_subnet(**params)
        except ClientError as e:
            self._recorder.warnf(
                event_key, "FailedCreateSubnet", f"Failed creating new managed Subnet: {e}"
            )
            raise
        subnet = out["Subnet"]
        self._recorder.eventf(
            event_key,
            "SuccessfulCreateSubnet",
            f"Created new managed Subnet {subnet['SubnetId']!r}",
        )
        return subnet

    def wait_until_subnet_available(self, subnet_id: str) -> None:
        waiter = self._client.get_waiter("subnet_available")
        waiter.wait(SubnetIds=[subnet_id])

    def modify_subnet_attribute(
        self,
        subnet_id: str,
        map_public_ip_on_launch: bool | None = None,
        assign_ipv6_address_on_creation: bool | None = None,
    ) -> None:
        """Set exactly one subnet attribute. EC2 rejects multi-attribute updates."""
        params: dict[str, Any] = {"SubnetId": subnet_id}
        if map_public_ip_on_launch is not None:
            params["MapPublicIpOnLaunch"] = {"Value": map_public_ip_on_launch}
        if assign_ipv6_address_on_creation is not None:
            params["AssignIpv6AddressOnCreation"] = {"Value": assign_ipv6_address_on_creation}
        if len(params) != 2:
            raise ValueError("exactly one subnet attribute must be modified per call")
        self._client.modify_subnet_attribute(**params)

    def delete_subnet(self, subnet_id: str, vpc_id: str = "", object_key: str = "") -> None:
        event_key = object_key or self._cluster_key
        try:
            self._client.delete_subnet(SubnetId=subnet_id)
        except ClientError as e:
            self._recorder.warnf(
                event_key,
                "FailedDeleteSubnet",
                f"Failed to delete managed Subnet {subnet_id!r}: {e}",
            )
            raise
        logger.info("Deleted subnet", extra={"subnet_id": subnet_id, "vpc_id": vpc_id})
        self._recorder.eventf(
            event_key, "SuccessfulDeleteSubnet", f"Deleted managed Subnet {subnet_id!r}"
        )

    # =========================================================================
    # Tags
    # =========================================================================

    def create_tags(self, resource_id: str, tags: dict[str, str]) -> None:
        self._client.create_tags(Resources=[resource_id], Tags=map_to_tags(tags))

    def delete_tags(self, resource_id: str, keys: list[str]) -> None:
        self._client.delete_tags(Resources=[resource_id], Tags=[{"Key": k} for k in keys])

    # =========================================================================
    # Launch templates
    # =========================================================================

    def get_launch_template(self, name: str) -> LaunchTemplate | None:
        """Return the latest version of the named template, or None if absent."""
        try:
            templates = self._client.describe_launch_templates(LaunchTemplateNames=[name])
            versions = self._client.describe_launch_template_versions(
                LaunchTemplateName=name, Versions=["$Latest"]
            )
        except ClientError as e:
            if awserrors.code(e) in (
                awserrors.LAUNCH_TEMPLATE_NAME_NOT_FOUND,
                awserrors.LAUNCH_TEMPLATE_NAME_MALFORMED,
            ):
                return None
            raise

        if not templates.get("LaunchTemplates") or not versions.get("LaunchTemplateVersions"):
            return None

        template = templates["LaunchTemplates"][0]
        latest = versions["LaunchTemplateVersions"][0]
        data = latest.get("LaunchTemplateData", {})

        hash_value = None
        if data.get("UserData"):
            hash_value = user_data_hash(base64.b64decode(data["UserData"]))

        return LaunchTemplate(
            id=template["LaunchTemplateId"],
            name=template["LaunchTemplateName"],
            version=str(latest.get("VersionNumber", "")),
            image_id=data.get("ImageId"),
            instance_type=data.get("InstanceType"),
            iam_instance_profile=data.get("IamInstanceProfile", {}).get("Name"),
            ssh_key_name=data.get("KeyName"),
            security_group_ids=data.get("SecurityGroupIds", []),
            user_data_hash=hash_value,
            tags=tags_to_map(template.get("Tags")),
        )

    def discover_launch_template_ami(self, ami: AMIReference) -> str:
        """Resolve the image id: explicit id, else the newest name-pattern match."""
        if ami.id:
            return ami.id
        if not ami.name_pattern:
            raise ImageNotFoundError("launch template needs either ami.id or ami.namePattern")

        params: dict[str, Any] = {
            "Filters": [
                {"Name": "name", "Values": [ami.name_pattern]},
                {"Name": "state", "Values": ["available"]},
            ]
        }
        if ami.owner:
            params["Owners"] = [ami.owner]

        images = self._client.describe_images(**params).get("Images", [])
        if not images:
            raise ImageNotFoundError(f"no AMI found matching {ami.name_pattern!r}")

        newest = max(images, key=lambda image: image.get("CreationDate", ""))
        return newest["ImageId"]

    def create_launch_template(
        self, name: str, data: dict[str, Any], tags: dict[str, str]
    ) -> tuple[str, str]:
        out = self._client.create_launch_template(
            LaunchTemplateName=name,
            LaunchTemplateData=data,
            TagSpecifications=[{"ResourceType": "launch-template", "Tags": map_to_tags(tags)}],
        )
        template = out["LaunchTemplate"]
        return template["LaunchTemplateId"], str(template.get("LatestVersionNumber", 1))

    def create_launch_template_version(self, template_id: str, data: dict[str, Any]) -> str:
        out = self._client.create_launch_template_version(
            LaunchTemplateId=template_id, LaunchTemplateData=data
        )
        return str(out["LaunchTemplateVersion"]["VersionNumber"])

    def delete_launch_template(self, template_id: str) -> None:
        try:
            self._client.delete_launch_template(LaunchTemplateId=template_id)
        except ClientError as e:
            if awserrors.is_not_found(e):
                return
            raise

    def reconcile_launch_template(
        self,
        name: str,
        spec: LaunchTemplateSpec,
        user_data: bytes,
        additional_tags: dict[str, str],
    ) -> LaunchTemplateResult:
        """Create the template, or add a version when the rendered data differ.

        Raises:
            ImageNotFoundError: If the AMI cannot be resolved.
            ClientError: On any EC2 failure.
        """
        image_id = self.discover_launch_template_ami(spec.ami)
        data = launch_template_data(image_id, spec, user_data)
        existing = self.get_launch_template(name)

        tag_params = BuildParams(
            resource_id=existing.id if existing else "",
            cluster_name=self._cluster_name,
            lifecycle=ResourceLifecycle.OWNED,
            additional=dict(additional_tags),
        )

        if existing is None:
            template_id, version = self.create_launch_template(
                name, data, Builder(tag_params, self).desired
            )
            logger.info(
                "Created launch template",
                extra={"launch_template": name, "launch_template_id": template_id},
            )
            return LaunchTemplateResult(id=template_id, version=version, created=True)

        Builder(tag_params, self).ensure(existing.tags)

        changed = launch_template_changes(existing, image_id, spec, user_data_hash(user_data))
        if not changed:
            return LaunchTemplateResult(id=existing.id, version=existing.version)

        version = self.create_launch_template_version(existing.id, data)
        logger.info(
            "Created launch template version",
            extra={
                "launch_template": name,
                "launch_template_id": existing.id,
                "version": version,
                "changed": sorted(changed),
            },
        )
        return LaunchTemplateResult(
            id=existing.id,
            version=version,
            new_version=True,
            user_data_only=changed == {"userData"},
        )


def launch_template_data(image_id: str, spec: LaunchTemplateSpec, user_data: bytes) -> dict[str, Any]:
    """Render the LaunchTemplateData request body."""
    data: dict[str, Any] = {
        "ImageId": image_id,
        "InstanceType": spec.instance_type,
        "UserData": base64.b64encode(user_data).decode("ascii"),
    }
    if spec.iam_instance_profile:
        data["IamInstanceProfile"] = {"Name": spec.iam_instance_profile}
    if spec.ssh_key_name:
        data["KeyName"] = spec.ssh_key_name
    if spec.additional_security_groups:
        data["SecurityGroupIds"] = list(spec.additional_security_groups)
    return data


def launch_template_changes(
    existing: LaunchTemplate, image_id: str, spec: LaunchTemplateSpec, data_hash: str
) -> set[str]:
    """Name the launch template fields that differ from the latest version."""
    changed: set[str] = set()
    if existing.image_id != image_id:
        changed.add("imageId")
    if existing.instance_type != spec.instance_type:
        changed.add("instanceType")
    if existing.ssh_key_name != spec.ssh_key_name:
        changed.add("sshKeyName")
    if existing.iam_instance_profile != spec.iam_instance_profile:
        changed.add("iamInstanceProfile")
    if sorted(existing.security_group_ids) != sorted(spec.additional_security_groups):
        changed.add("securityGroups")
    if existing.user_data_hash != data_hash:
        changed.add("userData")
    return changed
