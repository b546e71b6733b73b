"""Cluster-level network reconciliation.

A cluster pass converges subnets and then flips ``infrastructureReady``,
which machine pools wait on before creating anything. Network
configuration errors are recorded as a failure on the cluster status and
are not retried until the spec is edited; cloud errors propagate for the
work queue to retry.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from botocore.exceptions import ClientError

from . import conditions
from .ec2 import EC2Service
from .models import CLUSTER_FINALIZER, ConditionSeverity
from .record import EventRecorder
from .result import ReconcileResult
from .retry import Backoff
from .scope import ClusterScope
from .subnets import NetworkConfigurationError, SubnetReconciler

logger = logging.getLogger(__name__)

# Poll interval while pools of a deleting cluster still exist
POOLS_REMAINING_REQUEUE_SECONDS = 15.0

INVALID_NETWORK_CONFIGURATION = "InvalidNetworkConfiguration"


class ClusterReconciler:
    """Reconciles the network of one cluster per call."""

    def __init__(
        self,
        ec2: EC2Service,
        recorder: EventRecorder,
        backoff: Backoff,
        subnet_reconciler_factory: Callable[[ClusterScope], SubnetReconciler] | None = None,
    ) -> None:
        self._ec2 = ec2
        self._recorder = recorder
        self._backoff = backoff
        self._subnet_reconciler_factory = subnet_reconciler_factory or self._default_factory

    def _default_factory(self, scope: ClusterScope) -> SubnetReconciler:
        return SubnetReconciler(scope, self._ec2, self._recorder, self._backoff)

    def reconcile(self, scope: ClusterScope, pools_remaining: int = 0) -> ReconcileResult:
        if scope.cluster.metadata.deletion_timestamp is not None:
            return self.reconcile_delete(scope, pools_remaining)
        return self.reconcile_normal(scope)

    def reconcile_normal(self, scope: ClusterScope) -> ReconcileResult:
        cluster = scope.cluster
        log_extra = {"cluster": scope.key}

        if cluster.status.failure_reason or cluster.status.failure_message:
            logger.info(
                "Error state detected, skipping reconciliation",
                extra={
                    **log_extra,
                    "failure_reason": cluster.status.failure_reason,
                    "failure_message": cluster.status.failure_message,
                },
            )
            return ReconcileResult()

        cluster.metadata.add_finalizer(CLUSTER_FINALIZER)

        try:
            self._subnet_reconciler_factory(scope).reconcile_subnets()
        except NetworkConfigurationError as e:
            logger.error("Invalid network configuration", extra={**log_extra, "error": str(e)})
            conditions.mark_false(
                scope.conditions,
                conditions.SUBNETS_READY,
                conditions.SUBNETS_RECONCILIATION_FAILED,
                ConditionSeverity.ERROR,
                str(e),
            )
            cluster.status.failure_reason = INVALID_NETWORK_CONFIGURATION
            cluster.status.failure_message = str(e)
            cluster.status.infrastructure_ready = False
            return ReconcileResult()
        except ClientError as e:
            conditions.mark_false(
                scope.conditions,
                conditions.SUBNETS_READY,
                conditions.SUBNETS_RECONCILIATION_FAILED,
                ConditionSeverity.WARNING,
                str(e),
            )
            raise

        if not cluster.status.infrastructure_ready:
            logger.info("Cluster infrastructure is ready", extra=log_extra)
        cluster.status.infrastructure_ready = True
        return ReconcileResult()

    def reconcile_delete(self, scope: ClusterScope, pools_remaining: int = 0) -> ReconcileResult:
        """Delete subnets once no pool of the cluster remains, then drop the finalizer."""
        log_extra = {"cluster": scope.key}

        if pools_remaining:
            logger.info(
                "Waiting for machine pools to be deleted",
                extra={**log_extra, "pools_remaining": pools_remaining},
            )
            return ReconcileResult(requeue_after=POOLS_REMAINING_REQUEUE_SECONDS)

        scope.cluster.status.infrastructure_ready = False
        self._subnet_reconciler_factory(scope).delete_subnets()
        conditions.mark_false(
            scope.conditions,
            conditions.SUBNETS_READY,
            conditions.DELETING,
            ConditionSeverity.INFO,
        )
        scope.cluster.metadata.remove_finalizer(CLUSTER_FINALIZER)
        logger.info("Cluster network deleted", extra=log_extra)
        return ReconcileResult()
