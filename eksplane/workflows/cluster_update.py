"""Reconciliation of the node pools of a running cluster."""

import logging
from typing import Optional

from pydantic import BaseModel, Field

from eksplane.errors import CombinedError, WorkflowCancelledError
from eksplane.models import RUNNING_MESSAGE, ClusterStatus, NodePool, NodePoolStatus, StackOperation
from eksplane.services.cloudformation import (
    CreateNodePoolStackActivity,
    CreateNodePoolStackInput,
    DeleteStackActivity,
    GetCFStackActivity,
    StackActivityInput,
    StackDescription,
    UpdateNodeGroupActivity,
    UpdateNodeGroupInput,
    WaitCloudFormationStackActivity,
    WaitStackInput,
    cluster_stack_name,
    node_pool_stack_name,
)
from eksplane.services.compute import (
    CalculateNodePoolVersionActivity,
    CalculateNodePoolVersionInput,
    GetAMISizeActivity,
    GetAMISizeInput,
    SelectVolumeSizeActivity,
    SelectVolumeSizeInput,
)
from eksplane.services.status import (
    DeleteStoredNodePoolActivity,
    DeleteStoredNodePoolInput,
    SetNodePoolStatusActivity,
    SetNodePoolStatusInput,
)
from eksplane.workflow import Workflow, WorkflowContext
from eksplane.workflows.common import (
    DEFAULT_ACTIVITY_OPTIONS,
    UPDATE_STACK_OPTIONS,
    WAIT_STACK_OPTIONS,
    set_cluster_status,
)

logger = logging.getLogger(__name__)


class UpdateClusterWorkflowInput(BaseModel):
    organization_id: int = 0
    cluster_id: int
    cluster_name: str
    region: str
    secret_id: str
    deleted: list[str] = Field(default_factory=list)
    created: list[NodePool] = Field(default_factory=list)
    updated: list[NodePool] = Field(default_factory=list)
    tags: dict[str, str] = Field(default_factory=dict)


class UpdateClusterWorkflowResult(BaseModel):
    deleted: list[str] = Field(default_factory=list)
    created: list[str] = Field(default_factory=list)
    updated: list[str] = Field(default_factory=list)


class UpdateClusterWorkflow(Workflow):
    """Delete removed node pools, create new ones and resize the rest.

    Node pools are processed one by one. A failing node pool is marked
    as errored and does not stop the others; all failures are reported
    together and leave the cluster in Warning.
    """

    name = "eks-update-cluster"
    input_model = UpdateClusterWorkflowInput

    def execute(self, ctx: WorkflowContext, input: UpdateClusterWorkflowInput) -> UpdateClusterWorkflowResult:
        ctx = ctx.with_options(DEFAULT_ACTIVITY_OPTIONS)
        result = UpdateClusterWorkflowResult()
        errors: list[BaseException] = []

        try:
            cluster_stack: Optional[StackDescription] = None
            if input.created:
                cluster_stack = ctx.execute_activity(
                    GetCFStackActivity.name,
                    StackActivityInput(
                        secret_id=input.secret_id,
                        region=input.region,
                        stack_name=cluster_stack_name(input.cluster_name),
                    ),
                )

            for name in input.deleted:
                if self._run(ctx, input, name, errors, self._delete_node_pool, name):
                    result.deleted.append(name)

            for node_pool in input.created:
                if self._run(ctx, input, node_pool.name, errors, self._create_node_pool, node_pool, cluster_stack):
                    result.created.append(node_pool.name)

            for node_pool in input.updated:
                if self._run(ctx, input, node_pool.name, errors, self._update_node_pool, node_pool):
                    result.updated.append(node_pool.name)
            ctx.raise_if_cancelled()
        except Exception as e:
            status_ctx = ctx.disconnected() if isinstance(e, WorkflowCancelledError) else ctx
            set_cluster_status(status_ctx, input.cluster_id, ClusterStatus.WARNING, str(e))
            raise

        done_ctx = ctx.disconnected()
        if errors:
            err = CombinedError("failed to update node pools", errors)
            set_cluster_status(done_ctx, input.cluster_id, ClusterStatus.WARNING, str(err))
            raise err

        set_cluster_status(done_ctx, input.cluster_id, ClusterStatus.RUNNING, RUNNING_MESSAGE)
        return result

    def _run(self, ctx: WorkflowContext, input: UpdateClusterWorkflowInput, node_pool_name: str, errors, step, *args) -> bool:
        try:
            step(ctx, input, *args)
        except WorkflowCancelledError:
            raise
        except Exception as e:
            logger.exception("Failed to reconcile node pool %s of cluster %s", node_pool_name, input.cluster_name)
            errors.append(e)
            try:
                self._set_node_pool_status(ctx, input, node_pool_name, NodePoolStatus.ERROR, str(e))
            except Exception:
                logger.exception("Failed to set status of node pool %s to %s", node_pool_name, NodePoolStatus.ERROR.value)
            return False
        return True

    def _delete_node_pool(self, ctx: WorkflowContext, input: UpdateClusterWorkflowInput, name: str) -> None:
        stack_name = node_pool_stack_name(input.cluster_name, name)
        token = ctx.execute_activity(
            DeleteStackActivity.name,
            StackActivityInput(secret_id=input.secret_id, region=input.region, stack_name=stack_name),
        )
        ctx.execute_activity(
            WaitCloudFormationStackActivity.name,
            WaitStackInput(
                secret_id=input.secret_id,
                region=input.region,
                stack_name=stack_name,
                operation=StackOperation.DELETE,
                client_request_token=token or "",
            ),
            WAIT_STACK_OPTIONS,
        )
        ctx.execute_activity(
            DeleteStoredNodePoolActivity.name,
            DeleteStoredNodePoolInput(cluster_id=input.cluster_id, node_pool_name=name),
        )

    def _create_node_pool(
        self,
        ctx: WorkflowContext,
        input: UpdateClusterWorkflowInput,
        node_pool: NodePool,
        cluster_stack: Optional[StackDescription],
    ) -> None:
        outputs = cluster_stack.outputs if cluster_stack else {}

        ami = ctx.execute_activity(
            GetAMISizeActivity.name,
            GetAMISizeInput(secret_id=input.secret_id, region=input.region, image_id=node_pool.image),
        )
        selected = ctx.execute_activity(
            SelectVolumeSizeActivity.name,
            SelectVolumeSizeInput(ami_size=ami.ami_size, optional_volume_size=node_pool.volume_size),
        )
        version = ctx.execute_activity(
            CalculateNodePoolVersionActivity.name,
            CalculateNodePoolVersionInput(image=node_pool.image, volume_size=selected.volume_size),
        )

        stack_name = node_pool_stack_name(input.cluster_name, node_pool.name)
        created = ctx.execute_activity(
            CreateNodePoolStackActivity.name,
            CreateNodePoolStackInput(
                secret_id=input.secret_id,
                region=input.region,
                cluster_name=input.cluster_name,
                node_pool_name=node_pool.name,
                node_pool_version=version.version,
                instance_type=node_pool.instance_type,
                image=node_pool.image,
                spot_price=node_pool.spot_price,
                volume_size=selected.volume_size,
                autoscaling=node_pool.autoscaling,
                min_count=node_pool.min_count,
                max_count=node_pool.max_count,
                count=node_pool.count,
                security_groups=node_pool.security_groups,
                subnet_ids=node_pool.subnet_ids,
                labels=node_pool.labels,
                vpc_id=outputs.get("VpcId", ""),
                node_instance_role_id=outputs.get("NodeInstanceRoleId", ""),
                cluster_security_group=outputs.get("SecurityGroups", ""),
                node_security_group=outputs.get("NodeSecurityGroup", ""),
                cluster_tags=input.tags,
            ),
        )
        ctx.execute_activity(
            WaitCloudFormationStackActivity.name,
            WaitStackInput(
                secret_id=input.secret_id,
                region=input.region,
                stack_name=stack_name,
                operation=StackOperation.CREATE,
                client_request_token=created.client_request_token,
            ),
            WAIT_STACK_OPTIONS,
        )
        self._set_node_pool_status(
            ctx,
            input,
            node_pool.name,
            NodePoolStatus.READY,
            stack_id=created.stack_id,
            volume_size=selected.volume_size,
        )

    def _update_node_pool(self, ctx: WorkflowContext, input: UpdateClusterWorkflowInput, node_pool: NodePool) -> None:
        version = ""
        if node_pool.image:
            version = ctx.execute_activity(
                CalculateNodePoolVersionActivity.name,
                CalculateNodePoolVersionInput(image=node_pool.image, volume_size=node_pool.volume_size),
            ).version

        stack_name = node_pool_stack_name(input.cluster_name, node_pool.name)
        update = ctx.execute_activity(
            UpdateNodeGroupActivity.name,
            UpdateNodeGroupInput(
                secret_id=input.secret_id,
                region=input.region,
                cluster_name=input.cluster_name,
                stack_name=stack_name,
                node_pool_name=node_pool.name,
                node_pool_version=version,
                labels=node_pool.labels,
                min_size=node_pool.min_count,
                max_size=node_pool.max_count,
                desired_capacity=node_pool.count,
                autoscaling=node_pool.autoscaling,
                cluster_tags=input.tags,
            ),
            UPDATE_STACK_OPTIONS,
        )
        if update.node_pool_changed:
            ctx.execute_activity(
                WaitCloudFormationStackActivity.name,
                WaitStackInput(
                    secret_id=input.secret_id,
                    region=input.region,
                    stack_name=stack_name,
                    operation=StackOperation.UPDATE,
                    client_request_token=update.client_request_token,
                ),
                WAIT_STACK_OPTIONS,
            )
        self._set_node_pool_status(ctx, input, node_pool.name, NodePoolStatus.READY)

    def _set_node_pool_status(
        self,
        ctx: WorkflowContext,
        input: UpdateClusterWorkflowInput,
        node_pool_name: str,
        status: NodePoolStatus,
        message: str = "",
        **kwargs,
    ) -> None:
        ctx.execute_activity(
            SetNodePoolStatusActivity.name,
            SetNodePoolStatusInput(
                cluster_id=input.cluster_id,
                node_pool_name=node_pool_name,
                status=status,
                message=message,
                **kwargs,
            ),
        )
