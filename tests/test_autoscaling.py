"""Tests for AutoScaling conversion and service verbs."""

from collections.abc import Callable

import pytest
from aws_mock import MockAutoScalingClient, MockAWSState, MockEC2Client
from conftest import CLUSTER_NAME

from poolcontroller.autoscaling import (
    ASGService,
    SubnetResolutionError,
    asg_from_sdk,
    mixed_instances_policy_to_sdk,
)
from poolcontroller.config import Config
from poolcontroller.ec2 import EC2Service
from poolcontroller.models import (
    Cluster,
    MachinePool,
    MixedInstancesPolicy,
    OnDemandAllocationStrategy,
    RefreshPreferences,
    SpotAllocationStrategy,
)
from poolcontroller.record import EventRecorder
from poolcontroller.scope import MachinePoolScope


@pytest.fixture
def service(
    ec2_client: MockEC2Client, asg_client: MockAutoScalingClient, recorder: EventRecorder
) -> ASGService:
    return ASGService(asg_client, EC2Service(ec2_client, recorder, CLUSTER_NAME), recorder)


@pytest.fixture
def cluster(make_cluster: Callable[..., Cluster]) -> Cluster:
    return make_cluster(
        network={
            "subnets": [
                {"id": "subnet-priv-a", "availabilityZone": "us-east-1a", "cidrBlock": "10.0.0.0/18"},
                {"id": "subnet-priv-b", "availabilityZone": "us-east-1b", "cidrBlock": "10.0.64.0/18"},
                {
                    "id": "subnet-pub-a",
                    "availabilityZone": "us-east-1a",
                    "cidrBlock": "10.0.128.0/20",
                    "isPublic": True,
                },
            ]
        }
    )


class TestAsgFromSdk:
    """Tests for asg_from_sdk."""

    def test_full_group(self) -> None:
        """Test conversion of a described group."""
        asg = asg_from_sdk(
            {
                "AutoScalingGroupName": "workers",
                "AutoScalingGroupARN": "arn:aws:autoscaling:us-east-1:1:autoScalingGroup:x",
                "MinSize": 1,
                "MaxSize": 3,
                "DesiredCapacity": 2,
                "VPCZoneIdentifier": "subnet-1,subnet-2",
                "Status": "Delete in progress",
                "Tags": [{"Key": "Name", "Value": "workers"}],
                "Instances": [
                    {"InstanceId": "i-1", "AvailabilityZone": "us-east-1a", "LifecycleState": "InService"}
                ],
                "SuspendedProcesses": [{"ProcessName": "Launch", "SuspensionReason": "User"}],
                "LaunchTemplate": {"LaunchTemplateId": "lt-1", "Version": "$Latest"},
            }
        )

        assert asg.name == "workers"
        assert asg.desired_capacity == 2
        assert asg.subnets == ["subnet-1", "subnet-2"]
        assert asg.tags == {"Name": "workers"}
        assert asg.instances[0].id == "i-1"
        assert asg.currently_suspend_processes == ["Launch"]
        assert asg.launch_template_id == "lt-1"
        assert asg.mixed_instances_policy is None

    def test_mixed_policy_group(self) -> None:
        """Test that the template id and policy come from the mixed policy."""
        asg = asg_from_sdk(
            {
                "AutoScalingGroupName": "workers",
                "MixedInstancesPolicy": {
                    "LaunchTemplate": {
                        "LaunchTemplateSpecification": {"LaunchTemplateId": "lt-2"},
                        "Overrides": [{"InstanceType": "m5.large"}, {"InstanceType": "m5a.large"}],
                    },
                    "InstancesDistribution": {
                        "OnDemandAllocationStrategy": "prioritized",
                        "SpotAllocationStrategy": "capacity-optimized",
                        "OnDemandBaseCapacity": 1,
                    },
                },
            }
        )

        assert asg.launch_template_id == "lt-2"
        assert asg.subnets == []
        policy = asg.mixed_instances_policy
        assert policy is not None
        assert [o.instance_type for o in policy.overrides or []] == ["m5.large", "m5a.large"]
        assert policy.instances_distribution is not None
        assert policy.instances_distribution.on_demand_allocation_strategy == (
            OnDemandAllocationStrategy.PRIORITIZED
        )
        assert policy.instances_distribution.spot_allocation_strategy == (
            SpotAllocationStrategy.CAPACITY_OPTIMIZED
        )

    def test_policy_to_sdk(self) -> None:
        """Test that only set distribution fields are rendered."""
        policy = MixedInstancesPolicy.model_validate(
            {
                "instancesDistribution": {"onDemandPercentageAboveBaseCapacity": 0},
                "overrides": [{"instanceType": "c5.large"}],
            }
        )

        raw = mixed_instances_policy_to_sdk(policy, "lt-1")

        assert raw == {
            "LaunchTemplate": {
                "LaunchTemplateSpecification": {"LaunchTemplateId": "lt-1", "Version": "$Latest"},
                "Overrides": [{"InstanceType": "c5.large"}],
            },
            "InstancesDistribution": {"OnDemandPercentageAboveBaseCapacity": 0},
        }


class TestSubnetIds:
    """Tests for subnet resolution precedence."""

    def test_explicit_ids_and_filters(
        self,
        service: ASGService,
        make_pool: Callable[..., MachinePool],
        cluster: Cluster,
        config: Config,
        aws_state: MockAWSState,
    ) -> None:
        """Test that pool subnets win, filters resolve and duplicates collapse."""
        aws_state.add_subnet("vpc-1", "10.0.0.0/24", "us-east-1a", tags={"tier": "app"}, subnet_id="subnet-f")
        pool = make_pool(
            subnets=[{"id": "subnet-x"}, {"filters": {"tag:tier": ["app"]}}, {"id": "subnet-x"}]
        )

        ids = service.subnet_ids(MachinePoolScope(pool, cluster, config))

        assert ids == ["subnet-x", "subnet-f"]

    def test_private_subnets_in_pool_zones(
        self,
        service: ASGService,
        make_pool: Callable[..., MachinePool],
        cluster: Cluster,
        config: Config,
    ) -> None:
        """Test that zones narrow the cluster's private subnets."""
        pool = make_pool(availabilityZones=["us-east-1b"])

        assert service.subnet_ids(MachinePoolScope(pool, cluster, config)) == ["subnet-priv-b"]

    def test_private_subnets_follow_pool_zone_order(
        self,
        service: ASGService,
        make_pool: Callable[..., MachinePool],
        cluster: Cluster,
        config: Config,
    ) -> None:
        """Test that subnets are listed zone by zone in the pool's order."""
        pool = make_pool(availabilityZones=["us-east-1b", "us-east-1a", "us-east-1b"])

        ids = service.subnet_ids(MachinePoolScope(pool, cluster, config))

        assert ids == ["subnet-priv-b", "subnet-priv-a"]

    def test_all_private_subnets(
        self,
        service: ASGService,
        make_pool: Callable[..., MachinePool],
        cluster: Cluster,
        config: Config,
    ) -> None:
        """Test that without zones all private subnets are used."""
        ids = service.subnet_ids(MachinePoolScope(make_pool(), cluster, config))

        assert ids == ["subnet-priv-a", "subnet-priv-b"]

    def test_nothing_resolves(
        self,
        service: ASGService,
        make_pool: Callable[..., MachinePool],
        cluster: Cluster,
        config: Config,
    ) -> None:
        """Test that an empty resolution is an error."""
        pool = make_pool(availabilityZones=["us-east-1c"])

        with pytest.raises(SubnetResolutionError):
            service.subnet_ids(MachinePoolScope(pool, cluster, config))


class TestService:
    """Tests for service verbs against the mock client."""

    def test_get_absent_is_none(self, service: ASGService) -> None:
        """Test that a missing group is None, not an error."""
        assert service.get_asg_by_name("missing") is None

    def test_create_with_mixed_policy(
        self,
        service: ASGService,
        make_pool: Callable[..., MachinePool],
        cluster: Cluster,
        config: Config,
        aws_state: MockAWSState,
    ) -> None:
        """Test that a mixed policy replaces the plain launch template."""
        pool = make_pool(mixedInstancesPolicy={"overrides": [{"instanceType": "m5.large"}]})

        service.create_asg(MachinePoolScope(pool, cluster, config), ["subnet-priv-a"], "lt-1")

        params = aws_state.calls_to("create_auto_scaling_group")[0]
        assert "LaunchTemplate" not in params
        assert params["MixedInstancesPolicy"]["LaunchTemplate"]["LaunchTemplateSpecification"] == {
            "LaunchTemplateId": "lt-1",
            "Version": "$Latest",
        }
        assert "DesiredCapacity" not in params

    def test_tag_writer(self, service: ASGService, aws_state: MockAWSState) -> None:
        """Test that tags are written and removed on the group."""
        aws_state.add_group("workers", Tags=[{"Key": "old", "Value": "1", "PropagateAtLaunch": True}])

        service.create_tags("workers", {"team": "a"})
        service.delete_tags("workers", ["old"])

        assert aws_state.group_tags("workers") == {"team": "a"}
        written = aws_state.calls_to("create_or_update_tags")[0]["Tags"][0]
        assert written["ResourceType"] == "auto-scaling-group"
        assert written["PropagateAtLaunch"] is True

    def test_instance_refresh_gate(self, service: ASGService, aws_state: MockAWSState) -> None:
        """Test that only finished refreshes allow a new one."""
        aws_state.instance_refreshes["workers"] = [{"InstanceRefreshId": "r-0", "Status": "Successful"}]
        assert service.can_start_instance_refresh("workers") is True

        aws_state.instance_refreshes["workers"].append({"InstanceRefreshId": "r-1", "Status": "Cancelling"})
        assert service.can_start_instance_refresh("workers") is False

    def test_instance_refresh_defaults(self, service: ASGService, aws_state: MockAWSState) -> None:
        """Test that a refresh without preferences uses the rolling strategy."""
        service.start_instance_refresh("workers", None)
        service.start_instance_refresh("workers", RefreshPreferences(instance_warmup=60))

        calls = aws_state.calls_to("start_instance_refresh")
        assert calls[0] == {"AutoScalingGroupName": "workers", "Strategy": "Rolling"}
        assert calls[1]["Preferences"] == {"InstanceWarmup": 60}
