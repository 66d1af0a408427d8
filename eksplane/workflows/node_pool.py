import logging
from enum import Enum

from pydantic import BaseModel, Field

from eksplane.errors import WorkflowCancelledError
from eksplane.models import RUNNING_MESSAGE, ClusterStatus, NodePoolStatus, NodePoolUpdateRequest, StackOperation
from eksplane.services.cloudformation import (
    GetCFStackActivity,
    StackActivityInput,
    UpdateNodeGroupActivity,
    UpdateNodeGroupInput,
    WaitCloudFormationStackActivity,
    WaitStackInput,
)
from eksplane.services.compute import (
    CalculateNodePoolVersionActivity,
    CalculateNodePoolVersionInput,
    GetAMISizeActivity,
    GetAMISizeInput,
    SelectVolumeSizeActivity,
    SelectVolumeSizeInput,
)
from eksplane.services.status import SetNodePoolStatusActivity, SetNodePoolStatusInput
from eksplane.workflow import Workflow, WorkflowContext
from eksplane.workflows.common import (
    DEFAULT_ACTIVITY_OPTIONS,
    UPDATE_STACK_OPTIONS,
    WAIT_STACK_OPTIONS,
    set_cluster_status,
)

logger = logging.getLogger(__name__)


class NodePoolUpdateState(str, Enum):
    START = "start"
    INFRA_INTROSPECTION = "infra_introspection"
    VOLUME_SIZE_SELECTION = "volume_size_selection"
    VERSION_RECALCULATED = "version_recalculated"
    STACK_UPDATE_SUBMITTED = "stack_update_submitted"
    WAITING_FOR_STACK_COMPLETE = "waiting_for_stack_complete"
    DONE = "done"


class NodePoolUpdateResult(BaseModel):
    states: list[NodePoolUpdateState] = Field(default_factory=list)
    node_pool_version: str = ""
    node_pool_changed: bool = False
    image: str = ""
    volume_size: int = 0


class UpdateNodePoolWorkflow(Workflow):
    """Roll a node pool stack to a new image or volume size.

    The final status write always runs: Running on success, Warning with
    the error on failure. A cancelled run writes it through a context
    detached from the cancellation.
    """

    name = "eks-update-node-pool"
    input_model = NodePoolUpdateRequest

    def execute(self, ctx: WorkflowContext, input: NodePoolUpdateRequest) -> NodePoolUpdateResult:
        ctx = ctx.with_options(DEFAULT_ACTIVITY_OPTIONS)
        result = NodePoolUpdateResult(states=[NodePoolUpdateState.START])

        try:
            self._update(ctx, input, result)
            ctx.raise_if_cancelled()
        except Exception as e:
            status_ctx = ctx.disconnected() if isinstance(e, WorkflowCancelledError) else ctx
            message = f"failed to update node pool: {e}"
            self._set_node_pool_status(status_ctx, input, NodePoolStatus.ERROR, message)
            set_cluster_status(status_ctx, input.cluster_id, ClusterStatus.WARNING, message)
            raise

        done_ctx = ctx.disconnected()
        self._set_node_pool_status(
            done_ctx,
            input,
            NodePoolStatus.READY,
            "",
            image=result.image or None,
            volume_size=result.volume_size or None,
        )
        set_cluster_status(done_ctx, input.cluster_id, ClusterStatus.RUNNING, RUNNING_MESSAGE)
        result.states.append(NodePoolUpdateState.DONE)
        return result

    def _update(self, ctx: WorkflowContext, input: NodePoolUpdateRequest, result: NodePoolUpdateResult) -> None:
        self._set_node_pool_status(ctx, input, NodePoolStatus.UPDATING, "")

        effective_image = input.node_image
        effective_volume_size = input.node_volume_size

        if not effective_image or not effective_volume_size:
            stack = ctx.execute_activity(
                GetCFStackActivity.name,
                StackActivityInput(secret_id=input.secret_id, region=input.region, stack_name=input.stack_name),
            )
            result.states.append(NodePoolUpdateState.INFRA_INTROSPECTION)
            if not effective_image:
                effective_image = stack.parameters.get("NodeImageId", "")
            if not effective_volume_size:
                try:
                    effective_volume_size = int(stack.parameters.get("NodeVolumeSize") or 0)
                except ValueError:
                    logger.warning(
                        "Stack %s has an invalid NodeVolumeSize parameter: %s",
                        input.stack_name,
                        stack.parameters.get("NodeVolumeSize"),
                    )
                    effective_volume_size = 0

        volume_size = 0
        if input.node_volume_size > 0:
            ami = ctx.execute_activity(
                GetAMISizeActivity.name,
                GetAMISizeInput(secret_id=input.secret_id, region=input.region, image_id=effective_image),
            )
            selected = ctx.execute_activity(
                SelectVolumeSizeActivity.name,
                SelectVolumeSizeInput(ami_size=ami.ami_size, optional_volume_size=input.node_volume_size),
            )
            volume_size = selected.volume_size
            effective_volume_size = volume_size
            result.states.append(NodePoolUpdateState.VOLUME_SIZE_SELECTION)

        version = ctx.execute_activity(
            CalculateNodePoolVersionActivity.name,
            CalculateNodePoolVersionInput(image=effective_image, volume_size=effective_volume_size),
        )
        result.node_pool_version = version.version
        result.image = effective_image
        result.volume_size = effective_volume_size
        result.states.append(NodePoolUpdateState.VERSION_RECALCULATED)

        update = ctx.execute_activity(
            UpdateNodeGroupActivity.name,
            UpdateNodeGroupInput(
                secret_id=input.secret_id,
                region=input.region,
                cluster_name=input.cluster_name,
                stack_name=input.stack_name,
                node_pool_name=input.node_pool_name,
                node_pool_version=version.version,
                node_image=input.node_image,
                node_volume_size=volume_size,
                max_batch_size=input.options.max_batch_size,
                min_instances_in_service=input.options.max_surge,
                cluster_tags=input.cluster_tags,
            ),
            UPDATE_STACK_OPTIONS,
        )
        result.states.append(NodePoolUpdateState.STACK_UPDATE_SUBMITTED)
        result.node_pool_changed = update.node_pool_changed
        if not update.node_pool_changed:
            logger.info("Node pool %s of cluster %s is unchanged", input.node_pool_name, input.cluster_name)
            return

        result.states.append(NodePoolUpdateState.WAITING_FOR_STACK_COMPLETE)
        ctx.execute_activity(
            WaitCloudFormationStackActivity.name,
            WaitStackInput(
                secret_id=input.secret_id,
                region=input.region,
                stack_name=input.stack_name,
                operation=StackOperation.UPDATE,
                client_request_token=update.client_request_token,
            ),
            WAIT_STACK_OPTIONS,
        )

    def _set_node_pool_status(
        self,
        ctx: WorkflowContext,
        input: NodePoolUpdateRequest,
        status: NodePoolStatus,
        message: str,
        **kwargs,
    ) -> None:
        try:
            ctx.execute_activity(
                SetNodePoolStatusActivity.name,
                SetNodePoolStatusInput(
                    cluster_id=input.cluster_id,
                    node_pool_name=input.node_pool_name,
                    status=status,
                    message=message,
                    **kwargs,
                ),
            )
        except Exception:
            logger.exception("Failed to set status of node pool %s to %s", input.node_pool_name, status.value)
