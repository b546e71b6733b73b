"""AWS error code classification.

botocore raises ``ClientError`` for every service-side failure; the code
that matters lives in ``err.response["Error"]["Code"]``. The helpers here
keep that lookup in one place so retry classifiers and not-found checks
read the same way across services.
"""

from __future__ import annotations

from collections.abc import Callable

from botocore.exceptions import ClientError

# EC2
SUBNET_NOT_FOUND = "InvalidSubnetID.NotFound"
VPC_NOT_FOUND = "InvalidVpcID.NotFound"
ROUTE_TABLE_NOT_FOUND = "InvalidRouteTableID.NotFound"
GATEWAY_NOT_FOUND = "InvalidGatewayID.NotFound"
NAT_GATEWAY_NOT_FOUND = "NatGatewayNotFound"
LAUNCH_TEMPLATE_NAME_NOT_FOUND = "InvalidLaunchTemplateName.NotFoundException"
LAUNCH_TEMPLATE_ID_NOT_FOUND = "InvalidLaunchTemplateId.NotFound"
LAUNCH_TEMPLATE_NAME_MALFORMED = "InvalidLaunchTemplateName.MalformedException"
DEPENDENCY_VIOLATION = "DependencyViolation"
RESOURCE_NOT_FOUND = "InvalidResourceID.NotFound"

# AutoScaling
VALIDATION_ERROR = "ValidationError"
RESOURCE_IN_USE = "ResourceInUse"
SCALING_ACTIVITY_IN_PROGRESS = "ScalingActivityInProgress"
INSTANCE_REFRESH_IN_PROGRESS = "InstanceRefreshInProgress"

# Shared
AUTH_FAILURE = "AuthFailure"
UNAUTHORIZED_OPERATION = "UnauthorizedOperation"
ACCESS_DENIED = "AccessDenied"
THROTTLING = "Throttling"
REQUEST_LIMIT_EXCEEDED = "RequestLimitExceeded"

_NOT_FOUND_CODES = frozenset(
    {
        SUBNET_NOT_FOUND,
        VPC_NOT_FOUND,
        ROUTE_TABLE_NOT_FOUND,
        GATEWAY_NOT_FOUND,
        NAT_GATEWAY_NOT_FOUND,
        LAUNCH_TEMPLATE_NAME_NOT_FOUND,
        LAUNCH_TEMPLATE_ID_NOT_FOUND,
        RESOURCE_NOT_FOUND,
    }
)

_PERMISSION_CODES = frozenset({AUTH_FAILURE, UNAUTHORIZED_OPERATION, ACCESS_DENIED})

_THROTTLE_CODES = frozenset({THROTTLING, REQUEST_LIMIT_EXCEEDED})


def code(err: BaseException) -> str | None:
    """Return the AWS error code of err, or None if it is not a ClientError."""
    if not isinstance(err, ClientError):
        return None
    return err.response.get("Error", {}).get("Code")


def message(err: BaseException) -> str:
    if not isinstance(err, ClientError):
        return str(err)
    return err.response.get("Error", {}).get("Message", str(err))


def is_not_found(err: BaseException) -> bool:
    return code(err) in _NOT_FOUND_CODES


def is_permission_denied(err: BaseException) -> bool:
    return code(err) in _PERMISSION_CODES


def is_throttled(err: BaseException) -> bool:
    return code(err) in _THROTTLE_CODES


def retry_on(*codes: str) -> Callable[[BaseException], bool]:
    """Build a retry classifier approving errors whose code is one of codes.

    Throttling is always retryable.

    Example:
        with_retry(create, retry_on(awserrors.SUBNET_NOT_FOUND), backoff)
    """
    wanted = frozenset(codes)

    def classify(err: BaseException) -> bool:
        return code(err) in wanted or is_throttled(err)

    return classify
