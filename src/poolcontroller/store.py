"""In-memory object store for clusters and machine pools.

Objects are loaded from spec files but live here between passes, so
status, finalizers and written-back spec fields survive re-reads of the
files. A spec change replaces the user-owned parts of an object and keeps
the rest. Passes work on a checked-out copy, so a file edit loaded while a
pass runs is applied after the pass instead of being overwritten by it.
"""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime

from .differ import is_externally_managed
from .models import Cluster, MachinePool

logger = logging.getLogger(__name__)

CLUSTER_KIND = "Cluster"
MACHINE_POOL_KIND = "MachinePool"


def queue_key(obj: Cluster | MachinePool) -> str:
    """Work queue key: ``<kind>/<namespace>/<name>``."""
    kind = CLUSTER_KIND if isinstance(obj, Cluster) else MACHINE_POOL_KIND
    return f"{kind}/{obj.metadata.key}"


def split_queue_key(key: str) -> tuple[str, str]:
    kind, _, object_key = key.partition("/")
    return kind, object_key


class ObjectStore:
    """Thread-safe store keyed by work queue key."""

    def __init__(self) -> None:
        self._objects: dict[str, Cluster | MachinePool] = {}
        self._lock = threading.Lock()
        self._in_flight: set[str] = set()
        self._pending: dict[str, Cluster | MachinePool] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._objects)

    def get(self, key: str) -> Cluster | MachinePool | None:
        with self._lock:
            return self._objects.get(key)

    def clusters(self) -> list[Cluster]:
        with self._lock:
            return [o for o in self._objects.values() if isinstance(o, Cluster)]

    def machine_pools(self) -> list[MachinePool]:
        with self._lock:
            return [o for o in self._objects.values() if isinstance(o, MachinePool)]

    def find_cluster(self, name: str, namespace: str) -> Cluster | None:
        with self._lock:
            return self._objects.get(f"{CLUSTER_KIND}/{namespace}/{name}")  # type: ignore[return-value]

    def pools_of(self, cluster: Cluster) -> list[MachinePool]:
        return [
            p
            for p in self.machine_pools()
            if p.spec.cluster_name == cluster.metadata.name
            and p.metadata.namespace == cluster.metadata.namespace
        ]

    def upsert(self, obj: Cluster | MachinePool) -> str:
        """Insert a freshly loaded object, or merge it into the stored one.

        On merge the stored object keeps its status, finalizers and
        deletion mark. A recorded failure is cleared, since an edited spec
        is how failures are corrected. A cluster that declares no subnets
        keeps the ones persisted by earlier passes.

        While a pass holds the key, the object is kept aside and merged when
        the pass commits.
        """
        key = queue_key(obj)
        with self._lock:
            if key in self._in_flight:
                self._pending[key] = obj
                return key
            current = self._objects.get(key)
            if current is None:
                self._objects[key] = obj
            else:
                _merge(current, obj)
            return key

    def checkout(self, key: str) -> Cluster | MachinePool | None:
        """Hand a private copy of an object to a pass.

        The copy is written back by ``commit``; edits loaded in between are
        held until then.
        """
        with self._lock:
            obj = self._objects.get(key)
            if obj is None:
                return None
            self._in_flight.add(key)
            return obj.model_copy(deep=True)

    def commit(self, key: str, obj: Cluster | MachinePool) -> None:
        """Store the result of a pass and apply any edit loaded during it."""
        with self._lock:
            self._in_flight.discard(key)
            current = self._objects.get(key)
            if current is None:
                self._pending.pop(key, None)
                return
            if obj.metadata.deletion_timestamp is None:
                obj.metadata.deletion_timestamp = current.metadata.deletion_timestamp
            self._objects[key] = obj
            pending = self._pending.pop(key, None)
            if pending is not None:
                _merge(obj, pending)
        if pending is not None:
            logger.info("Applied spec edit loaded during pass", extra={"key": key})

    def mark_deleting(self, key: str) -> bool:
        """Set the deletion timestamp once. Returns True if newly marked."""
        with self._lock:
            obj = self._objects.get(key)
            if obj is None or obj.metadata.deletion_timestamp is not None:
                return False
            obj.metadata.deletion_timestamp = datetime.now(UTC)
        logger.info("Marked object for deletion", extra={"key": key})
        return True

    def remove_if_finalized(self, key: str) -> bool:
        """Drop a deleting object whose finalizers are all gone."""
        with self._lock:
            obj = self._objects.get(key)
            if obj is None or obj.metadata.deletion_timestamp is None:
                return False
            if obj.metadata.finalizers:
                return False
            del self._objects[key]
        logger.info("Removed finalized object", extra={"key": key})
        return True


def _merge(current: Cluster | MachinePool, obj: Cluster | MachinePool) -> None:
    current.metadata.annotations = obj.metadata.annotations
    current.metadata.labels = obj.metadata.labels
    current.status.failure_reason = None
    current.status.failure_message = None

    if isinstance(current, Cluster) and isinstance(obj, Cluster):
        persisted = current.spec.network.subnets
        current.spec = obj.spec
        if not current.spec.network.subnets:
            current.spec.network.subnets = persisted
    elif isinstance(current, MachinePool) and isinstance(obj, MachinePool):
        written_back = (
            current.spec.provider_id,
            current.spec.provider_id_list,
            current.spec.replicas,
        )
        current.spec = obj.spec
        current.spec.provider_id, current.spec.provider_id_list, replicas = written_back
        if is_externally_managed(current):
            current.spec.replicas = replicas
