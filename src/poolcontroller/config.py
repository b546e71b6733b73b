"""Operator settings read from the environment.

Every setting is validated when the configuration is constructed so the
operator refuses to start with a configuration it cannot honour.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when one or more settings are invalid."""

    pass


# Bounds and defaults
DEFAULT_RECONCILE_INTERVAL_SECONDS = 300
MIN_RECONCILE_INTERVAL_SECONDS = 10
MAX_RECONCILE_INTERVAL_SECONDS = 3600

DEFAULT_WORKER_COUNT = 4
MAX_WORKER_COUNT = 64

# Retry primitive for transient cloud errors (resource not yet visible, etc.)
DEFAULT_RETRY_STEPS = 10
DEFAULT_RETRY_BASE_SECONDS = 1.0
DEFAULT_RETRY_FACTOR = 1.5
DEFAULT_RETRY_JITTER = 1.0

# Requeue backoff for failed reconciliation passes
DEFAULT_REQUEUE_BASE_SECONDS = 5.0
DEFAULT_REQUEUE_MAX_SECONDS = 300.0

# Default subnet planning
DEFAULT_AZ_USAGE_LIMIT = 3

MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max spec file
MAX_BOOTSTRAP_DATA_SIZE_BYTES = 16 * 1024  # EC2 user data limit

VALID_CLUSTER_NAME_PATTERN = r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$"
VALID_REGION_PATTERN = r"^[a-z]{2}(-gov)?-[a-z]+-\d$"


@dataclass(frozen=True)
class RetryConfig:
    """Exponential backoff settings for the retry primitive."""

    steps: int = DEFAULT_RETRY_STEPS
    base_seconds: float = DEFAULT_RETRY_BASE_SECONDS
    factor: float = DEFAULT_RETRY_FACTOR
    jitter: float = DEFAULT_RETRY_JITTER


@dataclass(frozen=True)
class SecurityConfig:
    """Security-related configuration with safe defaults.

    Static access keys are never accepted; see security.py. That rule is
    not configurable.
    """

    # Audit events go to the JSON log stream
    enable_audit_logging: bool = True


@dataclass(frozen=True)
class Config:
    """Settings for one operator process, bound to a single cluster and region.

    Construction validates every field and raises ConfigurationError listing
    all problems at once.
    """

    # Required fields
    cluster_name: str
    region: str

    # Paths
    specs_dir: Path = field(default_factory=lambda: Path("/specs"))
    bootstrap_data_dir: Path = field(default_factory=lambda: Path("/bootstrap"))

    # Timing
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS
    requeue_base_seconds: float = DEFAULT_REQUEUE_BASE_SECONDS
    requeue_max_seconds: float = DEFAULT_REQUEUE_MAX_SECONDS

    # Concurrency
    worker_count: int = DEFAULT_WORKER_COUNT

    # Subnet planning
    az_usage_limit: int = DEFAULT_AZ_USAGE_LIMIT

    retry: RetryConfig = field(default_factory=RetryConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.cluster_name:
            errors.append("CLUSTER_NAME is required")
        elif not re.match(VALID_CLUSTER_NAME_PATTERN, self.cluster_name):
            errors.append(
                f"CLUSTER_NAME must match pattern {VALID_CLUSTER_NAME_PATTERN}: {self.cluster_name}"
            )

        if not self.region:
            errors.append("AWS_REGION is required")
        elif not re.match(VALID_REGION_PATTERN, self.region):
            errors.append(f"AWS_REGION must be a valid AWS region: {self.region}")

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if not (1 <= self.worker_count <= MAX_WORKER_COUNT):
            errors.append(f"WORKER_COUNT must be between 1 and {MAX_WORKER_COUNT}")

        if self.az_usage_limit < 1:
            errors.append("AZ_USAGE_LIMIT must be at least 1")

        if self.retry.steps < 1:
            errors.append("RETRY_STEPS must be at least 1")
        if self.retry.base_seconds < 0 or self.retry.factor < 1.0 or self.retry.jitter < 0:
            errors.append("RETRY_BASE_SECONDS and RETRY_JITTER must be >= 0, RETRY_FACTOR >= 1")

        if self.requeue_base_seconds <= 0:
            errors.append("REQUEUE_BASE_SECONDS must be positive")
        elif self.requeue_max_seconds < self.requeue_base_seconds:
            errors.append("REQUEUE_MAX_SECONDS must not be lower than REQUEUE_BASE_SECONDS")

        if not self.specs_dir.exists():
            errors.append(f"Specs directory does not exist: {self.specs_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            CLUSTER_NAME: Name of the cluster whose pools are reconciled
            AWS_REGION: Target AWS region
            SPECS_DIR: Path to YAML cluster/pool specs (default: /specs)
            BOOTSTRAP_DATA_DIR: Path to bootstrap data files (default: /bootstrap)
            RECONCILE_INTERVAL: Seconds between periodic resyncs (default: 300)
            WORKER_COUNT: Resources reconciled concurrently (default: 4)
            AZ_USAGE_LIMIT: Default availability zone limit for subnet planning (default: 3)

        Retry Variables:
            RETRY_STEPS: Attempts for transient cloud errors (default: 10)
            RETRY_BASE_SECONDS: Initial retry delay (default: 1.0)
            RETRY_FACTOR: Delay multiplier per attempt (default: 1.5)
            RETRY_JITTER: Jitter fraction added to each delay (default: 1.0)
            REQUEUE_BASE_SECONDS: First requeue delay after a failed pass (default: 5)
            REQUEUE_MAX_SECONDS: Requeue delay ceiling (default: 300)

        Security Variables:
            ENABLE_AUDIT_LOGGING: Enable JSON audit logs (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            cluster_name=os.environ.get("CLUSTER_NAME", ""),
            region=os.environ.get("AWS_REGION", os.environ.get("AWS_DEFAULT_REGION", "")),
            specs_dir=Path(os.environ.get("SPECS_DIR", "/specs")),
            bootstrap_data_dir=Path(os.environ.get("BOOTSTRAP_DATA_DIR", "/bootstrap")),
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            requeue_base_seconds=get_float("REQUEUE_BASE_SECONDS", DEFAULT_REQUEUE_BASE_SECONDS),
            requeue_max_seconds=get_float("REQUEUE_MAX_SECONDS", DEFAULT_REQUEUE_MAX_SECONDS),
            worker_count=get_int("WORKER_COUNT", DEFAULT_WORKER_COUNT),
            az_usage_limit=get_int("AZ_USAGE_LIMIT", DEFAULT_AZ_USAGE_LIMIT),
            retry=RetryConfig(
                steps=get_int("RETRY_STEPS", DEFAULT_RETRY_STEPS),
                base_seconds=get_float("RETRY_BASE_SECONDS", DEFAULT_RETRY_BASE_SECONDS),
                factor=get_float("RETRY_FACTOR", DEFAULT_RETRY_FACTOR),
                jitter=get_float("RETRY_JITTER", DEFAULT_RETRY_JITTER),
            ),
            security=SecurityConfig(
                enable_audit_logging=get_bool("ENABLE_AUDIT_LOGGING", True),
            ),
        )
