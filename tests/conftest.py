"""Pytest configuration and fixtures."""

import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for aws_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from aws_mock import MockAutoScalingClient, MockAWSState, MockEC2Client  # noqa: E402

from poolcontroller.config import Config  # noqa: E402
from poolcontroller.models import Cluster, MachinePool  # noqa: E402
from poolcontroller.record import EventRecorder  # noqa: E402
from poolcontroller.retry import Backoff  # noqa: E402

CLUSTER_NAME = "test-cluster"
REGION = "us-east-1"
BOOTSTRAP_SECRET = "workers-bootstrap"


@pytest.fixture
def aws_state() -> MockAWSState:
    return MockAWSState(region=REGION)


@pytest.fixture
def ec2_client(aws_state: MockAWSState) -> MockEC2Client:
    return MockEC2Client(aws_state)


@pytest.fixture
def asg_client(aws_state: MockAWSState) -> MockAutoScalingClient:
    return MockAutoScalingClient(aws_state)


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def fast_backoff() -> Backoff:
    """Three attempts, no waiting."""
    return Backoff(steps=3, base_seconds=0.0, factor=1.0, jitter=0.0)


@pytest.fixture
def config(tmp_path: Path) -> Config:
    specs_dir = tmp_path / "specs"
    bootstrap_dir = tmp_path / "bootstrap"
    specs_dir.mkdir()
    bootstrap_dir.mkdir()
    (bootstrap_dir / BOOTSTRAP_SECRET).write_bytes(b"#!/bin/bash\necho join\n")
    return Config(
        cluster_name=CLUSTER_NAME,
        region=REGION,
        specs_dir=specs_dir,
        bootstrap_data_dir=bootstrap_dir,
    )


@pytest.fixture
def make_cluster() -> Callable[..., Cluster]:
    """Build a Cluster from camelCase spec fields."""

    def factory(name: str = CLUSTER_NAME, **spec: Any) -> Cluster:
        return Cluster.model_validate({"metadata": {"name": name}, "spec": spec})

    return factory


@pytest.fixture
def make_pool() -> Callable[..., MachinePool]:
    """Build a MachinePool from camelCase spec fields."""

    def factory(
        name: str = "workers",
        annotations: dict[str, str] | None = None,
        **spec: Any,
    ) -> MachinePool:
        body: dict[str, Any] = {
            "clusterName": CLUSTER_NAME,
            "bootstrapDataSecretName": BOOTSTRAP_SECRET,
            "launchTemplate": {"ami": {"id": "ami-0123456789abcdef0"}},
        }
        body.update(spec)
        return MachinePool.model_validate(
            {"metadata": {"name": name, "annotations": annotations or {}}, "spec": body}
        )

    return factory
