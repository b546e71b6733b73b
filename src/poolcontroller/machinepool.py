"""Machine pool reconciliation state machine.

Each call to ``reconcile`` runs one pass for one pool against fresh
observed state:

Normal pass:
1. A recorded failure short-circuits the pass
2. The finalizer is added
3. Wait (no error) until cluster infrastructure is ready
4. Wait (no error) until a bootstrap data reference is set
5. Reconcile the launch template
6. Look up the group: create it, or update size/policy/subnets, converge
   tags and apply the suspend/resume delta
7. Mirror the group into status and mark it ready

Delete pass:
- Group absent: delete the launch template, drop our finalizer
- Group deleting: report progress and keep waiting
- Group present: request deletion and check again on a later pass

Cloud errors on the critical path propagate; the work queue requeues the
pool with backoff. Nothing is rolled back: the next pass recomputes the
diff from scratch.
"""

from __future__ import annotations

import logging

from botocore.exceptions import ClientError

from . import conditions, differ
from .autoscaling import ASGService
from .ec2 import EC2Service, ImageNotFoundError, LaunchTemplateResult
from .models import (
    MACHINE_POOL_FINALIZER,
    ASGStatus,
    AutoScalingGroup,
    ConditionSeverity,
    InstanceStatus,
    ResourceLifecycle,
)
from .record import EventRecorder
from .result import ReconcileResult
from .scope import MachinePoolScope
from .tags import Builder, BuildParams

logger = logging.getLogger(__name__)

# Poll interval while waiting for the cloud to finish deleting a group
DELETE_REQUEUE_SECONDS = 15.0

# Poll interval after creating a group, until it is observable
CREATE_REQUEUE_SECONDS = 10.0


def provider_id(availability_zone: str, instance_id: str) -> str:
    return f"aws:///{availability_zone}/{instance_id}"


class MachinePoolReconciler:
    """Drives one pool's autoscaling group toward its spec."""

    def __init__(self, ec2: EC2Service, asg: ASGService, recorder: EventRecorder) -> None:
        self._ec2 = ec2
        self._asg = asg
        self._recorder = recorder

    def reconcile(self, scope: MachinePoolScope) -> ReconcileResult:
        if scope.pool.metadata.deletion_timestamp is not None:
            return self.reconcile_delete(scope)
        return self.reconcile_normal(scope)

    # =========================================================================
    # Normal
    # =========================================================================

    def reconcile_normal(self, scope: MachinePoolScope) -> ReconcileResult:
        pool = scope.pool
        log_extra = {"machine_pool": scope.key, "cluster": scope.cluster_name}
        logger.debug("Reconciling machine pool", extra=log_extra)

        if scope.has_failure():
            logger.info(
                "Error state detected, skipping reconciliation",
                extra={
                    **log_extra,
                    "failure_reason": pool.status.failure_reason,
                    "failure_message": pool.status.failure_message,
                },
            )
            return ReconcileResult()

        pool.metadata.add_finalizer(MACHINE_POOL_FINALIZER)

        if not scope.infrastructure_ready():
            logger.info("Cluster infrastructure is not ready yet", extra=log_extra)
            conditions.mark_false(
                scope.conditions,
                conditions.ASG_READY,
                conditions.WAITING_FOR_CLUSTER_INFRASTRUCTURE,
                ConditionSeverity.INFO,
            )
            return ReconcileResult()

        user_data = scope.get_bootstrap_data()
        if user_data is None:
            logger.info("Bootstrap data secret reference is not yet available", extra=log_extra)
            conditions.mark_false(
                scope.conditions,
                conditions.ASG_READY,
                conditions.WAITING_FOR_BOOTSTRAP_DATA,
                ConditionSeverity.INFO,
            )
            return ReconcileResult()

        launch_template = self._reconcile_launch_template(scope, user_data)

        try:
            asg = self._asg.get_asg_by_name(scope.name)
        except ClientError as e:
            conditions.mark_unknown(
                scope.conditions, conditions.ASG_READY, conditions.ASG_NOT_FOUND, str(e)
            )
            raise

        subnet_ids = self._asg.subnet_ids(scope)

        if asg is None:
            try:
                self._asg.create_asg(scope, subnet_ids, launch_template.id)
            except ClientError as e:
                conditions.mark_false(
                    scope.conditions,
                    conditions.ASG_READY,
                    conditions.ASG_PROVISION_FAILED,
                    ConditionSeverity.ERROR,
                    str(e),
                )
                raise
            return ReconcileResult(requeue_after=CREATE_REQUEUE_SECONDS)

        differ.sync_externally_managed_replicas(pool, asg)
        self._update_pool(scope, asg, subnet_ids, launch_template)

        self._mirror_status(scope, asg)
        pool.status.ready = True
        conditions.mark_true(scope.conditions, conditions.ASG_READY)
        return ReconcileResult()

    def _reconcile_launch_template(
        self, scope: MachinePoolScope, user_data: bytes
    ) -> LaunchTemplateResult:
        pool = scope.pool
        try:
            result = self._ec2.reconcile_launch_template(
                scope.launch_template_name,
                pool.spec.launch_template,
                user_data,
                scope.additional_tags(),
            )
        except (ClientError, ImageNotFoundError) as e:
            conditions.mark_false(
                scope.conditions,
                conditions.LAUNCH_TEMPLATE_READY,
                conditions.LAUNCH_TEMPLATE_RECONCILE_FAILED,
                ConditionSeverity.ERROR,
                str(e),
            )
            self._recorder.warnf(
                scope.key,
                "FailedLaunchTemplateReconcile",
                f"Failed to reconcile launch template: {e}",
            )
            raise

        conditions.mark_true(scope.conditions, conditions.LAUNCH_TEMPLATE_READY)
        pool.status.launch_template_id = result.id
        pool.status.launch_template_version = result.version
        return result

    def _update_pool(
        self,
        scope: MachinePoolScope,
        asg: AutoScalingGroup,
        subnet_ids: list[str],
        launch_template: LaunchTemplateResult,
    ) -> None:
        pool = scope.pool
        externally_managed = differ.is_externally_managed(pool)

        if differ.needs_update(pool, asg) or differ.subnets_differ(subnet_ids, asg):
            self._asg.update_asg(scope, subnet_ids, launch_template.id, externally_managed)

        tag_params = BuildParams(
            resource_id=asg.name,
            cluster_name=scope.cluster_name,
            lifecycle=ResourceLifecycle.OWNED,
            name=scope.name,
            additional=scope.additional_tags(),
        )
        Builder(tag_params, self._asg).ensure(asg.tags)

        to_suspend, to_resume = differ.process_delta(pool, asg)
        if to_suspend:
            logger.info(
                "Suspending processes", extra={"asg": asg.name, "processes": to_suspend}
            )
            self._asg.suspend_processes(asg.name, to_suspend)
        if to_resume:
            logger.info("Resuming processes", extra={"asg": asg.name, "processes": to_resume})
            self._asg.resume_processes(asg.name, to_resume)

        preferences = pool.spec.refresh_preferences
        if launch_template.needs_instance_refresh and not (preferences and preferences.disable):
            if self._asg.can_start_instance_refresh(asg.name):
                self._asg.start_instance_refresh(asg.name, preferences)
            else:
                logger.info(
                    "Instance refresh already in progress, not starting another",
                    extra={"asg": asg.name},
                )

    def _mirror_status(self, scope: MachinePoolScope, asg: AutoScalingGroup) -> None:
        pool = scope.pool
        pool.spec.provider_id = f"aws:///{scope.config.region}/{asg.name}"
        pool.spec.provider_id_list = [
            provider_id(i.availability_zone, i.id) for i in asg.instances
        ]
        pool.status.replicas = len(asg.instances)
        pool.status.instances = [
            InstanceStatus(id=i.id, availability_zone=i.availability_zone, state=i.state)
            for i in asg.instances
        ]
        pool.status.asg_status = asg.status

    # =========================================================================
    # Delete
    # =========================================================================

    def reconcile_delete(self, scope: MachinePoolScope) -> ReconcileResult:
        pool = scope.pool
        log_extra = {"machine_pool": scope.key, "asg": scope.name}
        logger.debug("Handling deleted machine pool", extra=log_extra)

        asg = self._asg.get_asg_by_name(scope.name)

        if asg is None:
            logger.warning("Unable to locate ASG", extra=log_extra)
            self._recorder.eventf(scope.key, "ASGNotFound", "Unable to find matching ASG")
            self._delete_launch_template(scope)
            pool.metadata.remove_finalizer(MACHINE_POOL_FINALIZER)
            return ReconcileResult()

        pool.status.ready = False

        if asg.status == ASGStatus.DELETE_IN_PROGRESS.value:
            logger.info("ASG is already deleting", extra=log_extra)
            conditions.mark_false(
                scope.conditions,
                conditions.ASG_READY,
                conditions.ASG_DELETION_IN_PROGRESS,
                ConditionSeverity.WARNING,
            )
            self._recorder.warnf(
                scope.key, "DeletionInProgress", f"ASG deletion in progress: {asg.name!r}"
            )
            return ReconcileResult(requeue_after=DELETE_REQUEUE_SECONDS)

        logger.info("Deleting ASG", extra=log_extra)
        try:
            self._asg.delete_asg(asg.name)
        except ClientError as e:
            self._recorder.warnf(scope.key, "FailedDelete", f"Failed to delete ASG {asg.name!r}: {e}")
            raise

        conditions.mark_false(
            scope.conditions,
            conditions.ASG_READY,
            conditions.DELETING,
            ConditionSeverity.INFO,
        )
        return ReconcileResult(requeue_after=DELETE_REQUEUE_SECONDS)

    def _delete_launch_template(self, scope: MachinePoolScope) -> None:
        template_id = scope.pool.status.launch_template_id
        if not template_id:
            existing = self._ec2.get_launch_template(scope.launch_template_name)
            if existing is None:
                return
            template_id = existing.id

        self._ec2.delete_launch_template(template_id)
        logger.info(
            "Deleted launch template",
            extra={"machine_pool": scope.key, "launch_template_id": template_id},
        )
        scope.pool.status.launch_template_id = ""
        scope.pool.status.launch_template_version = None
