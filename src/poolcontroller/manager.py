"""Operator run loop: spec sync, work queue and workers.

The manager:
1. Polls the specs directory and loads changed files into the object store
2. Marks objects whose files vanished as deleting
3. Enqueues every key every reconcile interval, and changed keys at once
4. Runs a fixed number of workers, each executing one blocking pass at a
   time in the default executor

A cluster pass also enqueues the cluster's pools, so pools waiting on
infrastructure readiness move as soon as the cluster does.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any

from . import awserrors
from .autoscaling import ASGService
from .cluster import ClusterReconciler
from .config import Config
from .ec2 import EC2Service
from .machinepool import MachinePoolReconciler
from .models import Cluster, MachinePool
from .record import EventRecorder
from .result import ReconcileResult
from .retry import Backoff
from .scope import ClusterScope, MachinePoolScope
from .security import log_security_audit_event
from .spec_loader import SpecLoadError, list_spec_files, load_spec_file
from .store import (
    CLUSTER_KIND,
    MACHINE_POOL_KIND,
    ObjectStore,
    queue_key,
    split_queue_key,
)
from .workqueue import WorkQueue

logger = logging.getLogger(__name__)

# How often the specs directory is checked for changes
SPEC_POLL_INTERVAL_SECONDS = 5.0


class Manager:
    """Owns the store, the queue and the reconcilers for one cluster."""

    def __init__(
        self,
        config: Config,
        ec2_client: Any,
        autoscaling_client: Any,
        recorder: EventRecorder | None = None,
    ) -> None:
        self._config = config
        self._recorder = recorder or EventRecorder()
        self._store = ObjectStore()
        self._queue = WorkQueue(config.requeue_base_seconds, config.requeue_max_seconds)
        self._backoff = Backoff.from_config(config.retry)

        self._ec2 = EC2Service(ec2_client, self._recorder, config.cluster_name)
        self._asg = ASGService(autoscaling_client, self._ec2, self._recorder)
        self._cluster_reconciler = ClusterReconciler(self._ec2, self._recorder, self._backoff)
        self._pool_reconciler = MachinePoolReconciler(self._ec2, self._asg, self._recorder)

        # path -> (digest, keys defined by the file)
        self._files: dict[Path, tuple[str, list[str]]] = {}
        self._shutdown_event = asyncio.Event()

    @property
    def store(self) -> ObjectStore:
        return self._store

    @property
    def queue(self) -> WorkQueue:
        return self._queue

    @property
    def recorder(self) -> EventRecorder:
        return self._recorder

    # =========================================================================
    # Spec sync
    # =========================================================================

    def sync_specs(self) -> list[str]:
        """Load changed spec files into the store. Returns keys needing a pass.

        A file that fails to load keeps its previous objects; its error is
        logged and retried on the next poll.
        """
        changed: list[str] = []
        seen: set[Path] = set()

        try:
            paths = list_spec_files(self._config.specs_dir)
        except SpecLoadError as e:
            logger.error("Failed to list spec files", extra={"error": str(e)})
            return changed

        for path in paths:
            seen.add(path)
            try:
                spec_file = load_spec_file(path)
            except SpecLoadError as e:
                logger.error("Failed to load spec file", extra={"path": str(path), "error": str(e)})
                continue

            previous = self._files.get(path)
            if previous is not None and previous[0] == spec_file.digest:
                continue

            keys: list[str] = []
            for obj in spec_file.objects:
                if not self._belongs_to_cluster(obj):
                    logger.warning(
                        "Ignoring object of another cluster",
                        extra={"path": str(path), "key": queue_key(obj)},
                    )
                    continue
                keys.append(self._store.upsert(obj))

            if previous is not None:
                for key in set(previous[1]) - set(keys):
                    if self._store.mark_deleting(key):
                        changed.append(key)

            self._files[path] = (spec_file.digest, keys)
            changed.extend(keys)
            logger.info("Spec file changed", extra={"path": str(path), "objects": len(keys)})

        for path in set(self._files) - seen:
            _, keys = self._files.pop(path)
            logger.info("Spec file removed", extra={"path": str(path)})
            for key in keys:
                if self._store.mark_deleting(key):
                    changed.append(key)

        return changed

    def _belongs_to_cluster(self, obj: Cluster | MachinePool) -> bool:
        if isinstance(obj, Cluster):
            return obj.metadata.name == self._config.cluster_name
        return obj.spec.cluster_name == self._config.cluster_name

    # =========================================================================
    # Passes
    # =========================================================================

    def reconcile_key(self, key: str) -> ReconcileResult:
        """Run one blocking pass for a key. Raises on failure."""
        kind, _ = split_queue_key(key)
        obj = self._store.checkout(key)
        if obj is None:
            return ReconcileResult()

        start = time.monotonic()
        try:
            if kind == CLUSTER_KIND and isinstance(obj, Cluster):
                result = self._reconcile_cluster(obj)
            elif kind == MACHINE_POOL_KIND and isinstance(obj, MachinePool):
                result = self._reconcile_pool(obj)
            else:
                logger.warning("Unknown kind in queue key", extra={"key": key})
                return ReconcileResult()
        finally:
            self._store.commit(key, obj)

        if self._store.remove_if_finalized(key) and self._config.security.enable_audit_logging:
            log_security_audit_event(
                event_type="resource_finalized",
                cluster_name=self._config.cluster_name,
                target_resource=key,
                action="delete",
                result="success",
            )

        logger.info(
            "Reconciliation result",
            extra={
                "key": key,
                "duration_seconds": round(time.monotonic() - start, 3),
                "requeue": result.requeue,
                "requeue_after": result.requeue_after,
            },
        )
        return result

    def _reconcile_cluster(self, cluster: Cluster) -> ReconcileResult:
        scope = ClusterScope(cluster, self._config)
        pools_remaining = len(self._store.pools_of(cluster))
        return self._cluster_reconciler.reconcile(scope, pools_remaining)

    def _reconcile_pool(self, pool: MachinePool) -> ReconcileResult:
        cluster = self._store.find_cluster(pool.spec.cluster_name, pool.metadata.namespace)
        scope = MachinePoolScope(pool, cluster, self._config)
        return self._pool_reconciler.reconcile(scope)

    async def _worker(self, worker_id: int) -> None:
        loop = asyncio.get_running_loop()
        while True:
            key = await self._queue.get()
            if key is None:
                return
            try:
                result = await loop.run_in_executor(None, self.reconcile_key, key)
            except Exception as e:
                delay = self._queue.add_rate_limited(key)
                logger.error(
                    "Reconciliation failed",
                    extra={
                        "key": key,
                        "worker": worker_id,
                        "error": str(e),
                        "error_type": type(e).__name__,
                        "permission_denied": awserrors.is_permission_denied(e),
                        "throttled": awserrors.is_throttled(e),
                        "requeues": self._queue.num_requeues(key),
                        "retry_in_seconds": delay,
                    },
                )
            else:
                self._queue.forget(key)
                if result.requeue_after is not None:
                    self._queue.add_after(key, result.requeue_after)
                elif result.requeue:
                    self._queue.add_rate_limited(key)
                self._after_pass(key)
            finally:
                self._queue.done(key)

    def _after_pass(self, key: str) -> None:
        kind, _ = split_queue_key(key)
        if kind != CLUSTER_KIND:
            return
        cluster = self._store.get(key)
        if isinstance(cluster, Cluster):
            for pool in self._store.pools_of(cluster):
                self._queue.add(queue_key(pool))

    def enqueue_all(self) -> None:
        for key in self._store.keys():
            self._queue.add(key)

    # =========================================================================
    # Run loop
    # =========================================================================

    async def run(self) -> None:
        """Run until shutdown is requested."""
        logger.info(
            "Starting manager",
            extra={
                "cluster": self._config.cluster_name,
                "region": self._config.region,
                "specs_dir": str(self._config.specs_dir),
                "interval_seconds": self._config.reconcile_interval_seconds,
                "workers": self._config.worker_count,
            },
        )

        workers = [
            asyncio.create_task(self._worker(i)) for i in range(self._config.worker_count)
        ]

        next_resync = 0.0
        try:
            while not self._shutdown_event.is_set():
                for key in self.sync_specs():
                    self._queue.add(key)

                now = time.monotonic()
                if now >= next_resync:
                    self.enqueue_all()
                    next_resync = now + self._config.reconcile_interval_seconds

                try:
                    await asyncio.wait_for(
                        self._shutdown_event.wait(),
                        timeout=min(SPEC_POLL_INTERVAL_SECONDS, self._config.reconcile_interval_seconds),
                    )
                except TimeoutError:
                    pass
        finally:
            self._queue.shut_down()
            await asyncio.gather(*workers, return_exceptions=True)

        logger.info("Manager shutdown complete", extra={"cluster": self._config.cluster_name})

    def shutdown(self) -> None:
        """Signal the manager to stop."""
        logger.info("Shutdown requested", extra={"cluster": self._config.cluster_name})
        self._shutdown_event.set()
