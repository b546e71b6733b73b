"""Credential enforcement: no static keys.

The operator authenticates only through the default boto3 credential
chain's role-based providers (EC2 instance profile, ECS task role, web
identity / IRSA). Long-lived access keys in the environment are refused
at startup.

SECURITY INVARIANTS:
1. AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY and AWS_SESSION_TOKEN must never
   be present in the environment
2. Every boto3 session is created through ``get_session``
"""

from __future__ import annotations

import logging
import os

import boto3

logger = logging.getLogger(__name__)

# Environment variables that indicate static credentials
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "AWS_SESSION_TOKEN",
)

STATIC_CREDENTIALS_MESSAGE = """
SECURITY VIOLATION: static AWS credentials detected ({env_var}).

This operator only authenticates with role-based credentials (instance
profile, task role or web identity). Remove all credential environment
variables and attach an IAM role with the required EC2 and AutoScaling
permissions instead.
"""


class StaticCredentialsError(Exception):
    """Raised when static credentials are present.

    This is a fatal security error that prevents operator startup.
    """

    pass


def enforce_role_based_credentials() -> None:
    """Refuse to start when static credentials are set.

    Raises:
        StaticCredentialsError: If any forbidden variable is set.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Static credentials detected",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise StaticCredentialsError(STATIC_CREDENTIALS_MESSAGE.format(env_var=env_var))

    logger.info(
        "Role-based credentials verified",
        extra={"security_event": "static_credentials_absent"},
    )


def get_session(region: str) -> boto3.session.Session:
    """Create a boto3 session after verifying no static keys are set.

    Raises:
        StaticCredentialsError: If static credentials are present.
    """
    enforce_role_based_credentials()
    return boto3.session.Session(region_name=region)


def log_security_audit_event(
    event_type: str,
    cluster_name: str,
    target_resource: str | None = None,
    action: str | None = None,
    result: str | None = None,
) -> None:
    """Log a security-relevant audit event with structured fields."""
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "cluster": cluster_name,
            "target_resource": target_resource,
            "action": action,
            "result": result,
        },
    )
