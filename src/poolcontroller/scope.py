"""Per-pass views over a cluster and a machine pool.

A scope bundles the object being reconciled with the configuration and the
related objects a pass needs, and exposes the derived values (zone limits,
merged tags, bootstrap data) so reconcilers never reach into raw specs.
"""

from __future__ import annotations

import logging
from pathlib import Path

from .config import MAX_BOOTSTRAP_DATA_SIZE_BYTES, Config
from .models import (
    AZSelectionScheme,
    Cluster,
    Condition,
    MachinePool,
    SubnetSpec,
    VPCSpec,
)

logger = logging.getLogger(__name__)


class BootstrapDataError(Exception):
    """Raised when a referenced bootstrap data file cannot be used."""

    pass


class ClusterScope:
    """Network-level view of one cluster."""

    def __init__(self, cluster: Cluster, config: Config) -> None:
        self._cluster = cluster
        self._config = config

    @property
    def cluster(self) -> Cluster:
        return self._cluster

    @property
    def name(self) -> str:
        return self._cluster.metadata.name

    @property
    def key(self) -> str:
        return self._cluster.metadata.key

    @property
    def region(self) -> str:
        return self._cluster.spec.region or self._config.region

    @property
    def vpc(self) -> VPCSpec:
        return self._cluster.spec.network.vpc

    @property
    def subnets(self) -> list[SubnetSpec]:
        return self._cluster.spec.network.subnets

    def set_subnets(self, subnets: list[SubnetSpec]) -> None:
        self._cluster.spec.network.subnets = subnets

    @property
    def secondary_cidr_block(self) -> str | None:
        return self.vpc.secondary_cidr_block

    @property
    def tag_unmanaged_network_resources(self) -> bool:
        return self._cluster.spec.network.tag_unmanaged_network_resources

    @property
    def additional_tags(self) -> dict[str, str]:
        """A fresh copy of the user-supplied tags; callers may mutate it."""
        return dict(self._cluster.spec.additional_tags)

    @property
    def az_usage_limit(self) -> int:
        if self.vpc.availability_zone_usage_limit is not None:
            return self.vpc.availability_zone_usage_limit
        return self._config.az_usage_limit

    @property
    def az_selection(self) -> AZSelectionScheme:
        return self.vpc.availability_zone_selection or AZSelectionScheme.ORDERED

    @property
    def conditions(self) -> list[Condition]:
        return self._cluster.status.conditions


class MachinePoolScope:
    """View of one pool and the cluster it belongs to."""

    def __init__(self, pool: MachinePool, cluster: Cluster | None, config: Config) -> None:
        self._pool = pool
        self._cluster = cluster
        self._config = config

    @property
    def pool(self) -> MachinePool:
        return self._pool

    @property
    def cluster(self) -> Cluster | None:
        return self._cluster

    @property
    def config(self) -> Config:
        return self._config

    @property
    def name(self) -> str:
        return self._pool.metadata.name

    @property
    def key(self) -> str:
        return self._pool.metadata.key

    @property
    def cluster_name(self) -> str:
        return self._pool.spec.cluster_name

    @property
    def conditions(self) -> list[Condition]:
        return self._pool.status.conditions

    @property
    def launch_template_name(self) -> str:
        return self._pool.spec.launch_template.name or self.name

    def has_failure(self) -> bool:
        status = self._pool.status
        return bool(status.failure_reason) or bool(status.failure_message)

    def infrastructure_ready(self) -> bool:
        return self._cluster is not None and self._cluster.status.infrastructure_ready

    def cluster_subnets(self) -> list[SubnetSpec]:
        if self._cluster is None:
            return []
        return self._cluster.spec.network.subnets

    def additional_tags(self) -> dict[str, str]:
        """Cluster tags overlaid with the pool's own tags."""
        tags: dict[str, str] = {}
        if self._cluster is not None:
            tags.update(self._cluster.spec.additional_tags)
        tags.update(self._pool.spec.additional_tags)
        return tags

    def get_bootstrap_data(self) -> bytes | None:
        """Read the referenced bootstrap data, or None while no reference is set.

        Raises:
            BootstrapDataError: If the reference escapes the bootstrap directory,
                the file is missing, or it exceeds the EC2 user data limit.
        """
        secret_name = self._pool.spec.bootstrap_data_secret_name
        if not secret_name:
            return None

        base = Path(self._config.bootstrap_data_dir).resolve()
        path = (base / secret_name).resolve()
        if base != path and base not in path.parents:
            raise BootstrapDataError(
                f"Bootstrap data reference {secret_name!r} escapes {self._config.bootstrap_data_dir}"
            )
        if not path.is_file():
            raise BootstrapDataError(f"Bootstrap data file not found: {path}")

        size = path.stat().st_size
        if size > MAX_BOOTSTRAP_DATA_SIZE_BYTES:
            raise BootstrapDataError(
                f"Bootstrap data exceeds maximum size of {MAX_BOOTSTRAP_DATA_SIZE_BYTES} bytes: {path}"
            )

        try:
            return path.read_bytes()
        except OSError as e:
            raise BootstrapDataError(f"Failed to read bootstrap data {path}: {e}") from e
