"""Tag building and convergence for EC2 and AutoScaling resources.

``BuildParams`` describes the tags a resource should carry; ``Builder``
turns them into a concrete tag map and, given the tags currently applied,
issues only the create/delete calls needed to converge.

Removal rules:
- Keys reserved by AWS (``aws:`` prefix) are never removed.
- On resources the cluster does not own, nothing is removed. Their tags,
  including role and association tags under our namespace, are set by
  whoever owns the resource; we only add to them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

from .models import (
    NAME_TAG,
    ROLE_TAG_KEY,
    ResourceLifecycle,
    cluster_tag_key,
)

logger = logging.getLogger(__name__)

AWS_RESERVED_PREFIX = "aws:"


class TagWriter(Protocol):
    """Narrow tagging surface implemented by the cloud services."""

    def create_tags(self, resource_id: str, tags: dict[str, str]) -> None: ...

    def delete_tags(self, resource_id: str, keys: list[str]) -> None: ...


@dataclass
class BuildParams:
    """Inputs for the tags of a single resource.

    ``cluster_name`` is empty for resources on unmanaged networks, in which
    case no ownership, role or Name tags are stamped.
    """

    resource_id: str
    cluster_name: str = ""
    lifecycle: ResourceLifecycle | None = None
    name: str | None = None
    role: str | None = None
    additional: dict[str, str] = field(default_factory=dict)

    @property
    def owned(self) -> bool:
        return self.lifecycle == ResourceLifecycle.OWNED


def build(params: BuildParams) -> dict[str, str]:
    """Render params into the desired tag map."""
    tags = dict(params.additional)
    if params.cluster_name and params.lifecycle is not None:
        tags[cluster_tag_key(params.cluster_name)] = params.lifecycle.value
    if params.role:
        tags[ROLE_TAG_KEY] = params.role
    if params.name:
        tags[NAME_TAG] = params.name
    return tags


@dataclass
class TagDiff:
    """Minimal change set turning current tags into desired tags."""

    to_create: dict[str, str] = field(default_factory=dict)
    to_delete: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.to_create and not self.to_delete


def compute_diff(current: dict[str, str], desired: dict[str, str], owned: bool) -> TagDiff:
    """Compute the tags to set and the keys to remove."""
    diff = TagDiff()
    for key, value in desired.items():
        if current.get(key) != value:
            diff.to_create[key] = value

    if not owned:
        return diff

    for key in sorted(current):
        if key in desired or key.startswith(AWS_RESERVED_PREFIX):
            continue
        diff.to_delete.append(key)

    return diff


class Builder:
    """Converges the tags of one resource through a TagWriter."""

    def __init__(self, params: BuildParams, writer: TagWriter) -> None:
        self._params = params
        self._writer = writer

    @property
    def desired(self) -> dict[str, str]:
        return build(self._params)

    def ensure(self, current: dict[str, str]) -> TagDiff:
        """Apply the minimal tag changes. Returns the diff that was applied.

        Raises:
            ClientError: If the cloud rejects a tagging call.
        """
        diff = compute_diff(current, self.desired, self._params.owned)
        if diff.empty:
            return diff

        resource_id = self._params.resource_id
        if diff.to_create:
            self._writer.create_tags(resource_id, diff.to_create)
        if diff.to_delete:
            self._writer.delete_tags(resource_id, diff.to_delete)

        logger.info(
            "Tags converged",
            extra={
                "resource_id": resource_id,
                "tags_created": sorted(diff.to_create),
                "tags_deleted": diff.to_delete,
            },
        )
        return diff
