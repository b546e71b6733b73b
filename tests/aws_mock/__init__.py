"""AWS API mock for integration testing.

In-memory implementations of the EC2 and AutoScaling client calls the
operator makes, so reconcilers can run end to end without AWS.

Key Features:
- Shared state between the EC2 and AutoScaling clients
- Single-page paginators and an immediate subnet waiter
- Call log for asserting which APIs were hit, in order
- Error injection raising real botocore ClientError instances

Usage:
    from aws_mock import MockAWSState, MockEC2Client, MockAutoScalingClient

    state = MockAWSState()
    ec2 = MockEC2Client(state)
    state.fail("create_subnet", "UnauthorizedOperation")
"""

from .autoscaling import MockAutoScalingClient
from .ec2 import MockEC2Client, MockPaginator, MockWaiter
from .state import InjectedFailure, MockAWSState, client_error

__all__ = [
    "InjectedFailure",
    "MockAWSState",
    "MockAutoScalingClient",
    "MockEC2Client",
    "MockPaginator",
    "MockWaiter",
    "client_error",
]
