"""Kubernetes version upgrade of an EKS control plane and its managed addons."""

import logging
from enum import Enum
from typing import Sequence

from pydantic import BaseModel, Field

from eksplane.errors import WorkflowCancelledError, unwrap_error
from eksplane.models import RUNNING_MESSAGE, UPDATING_MESSAGE, ClusterStatus, ClusterVersionUpdateRequest
from eksplane.services.eks import (
    UpdateAddonActivity,
    UpdateAddonInput,
    UpdateClusterVersionActivity,
    UpdateClusterVersionInput,
    WaitUpdateActivity,
    WaitUpdateInput,
)
from eksplane.services.status import SaveClusterVersionActivity, SaveClusterVersionInput
from eksplane.workflow import Workflow, WorkflowContext
from eksplane.workflows.common import CLUSTER_VERSION_OPTIONS, set_cluster_status

logger = logging.getLogger(__name__)


class ClusterVersionUpdateState(str, Enum):
    NEW = "new"
    VERSION_UPDATE_SUBMITTED = "version_update_submitted"
    WAITING_FOR_COMPLETION = "waiting_for_completion"
    VERSION_PERSISTED = "version_persisted"
    RUNNING = "running"
    WARNING = "warning"


class ClusterVersionUpdateResult(BaseModel):
    states: list[ClusterVersionUpdateState] = Field(default_factory=list)
    updated_addons: list[str] = Field(default_factory=list)


class UpdateClusterVersionWorkflow(Workflow):
    """Linear pipeline: submit, wait, update addons, persist version, Running.

    Any failure moves the cluster to Warning. The workflow itself never
    retries, every activity retries on its own.
    """

    name = "eks-update-cluster-version"
    input_model = ClusterVersionUpdateRequest

    def __init__(self, addon_names: Sequence[str] = ()):
        self.addon_names = list(addon_names)

    def execute(self, ctx: WorkflowContext, input: ClusterVersionUpdateRequest) -> ClusterVersionUpdateResult:
        ctx = ctx.with_options(CLUSTER_VERSION_OPTIONS)
        result = ClusterVersionUpdateResult(states=[ClusterVersionUpdateState.NEW])

        def _enter(state: ClusterVersionUpdateState) -> None:
            logger.info("Cluster %s version update: %s", input.cluster_name, state.value)
            result.states.append(state)

        try:
            set_cluster_status(ctx, input.cluster_id, ClusterStatus.UPDATING, UPDATING_MESSAGE)

            update = ctx.execute_activity(
                UpdateClusterVersionActivity.name,
                UpdateClusterVersionInput(
                    secret_id=input.secret_id,
                    region=input.region,
                    cluster_name=input.cluster_name,
                    version=input.version,
                ),
            )
            _enter(ClusterVersionUpdateState.VERSION_UPDATE_SUBMITTED)

            _enter(ClusterVersionUpdateState.WAITING_FOR_COMPLETION)
            if update.update_id:
                self._wait(ctx, input, update.update_id)

            for addon_name in self.addon_names:
                if self._update_addon(ctx, input, addon_name):
                    result.updated_addons.append(addon_name)

            ctx.execute_activity(
                SaveClusterVersionActivity.name,
                SaveClusterVersionInput(cluster_id=input.cluster_id, version=input.version),
            )
            _enter(ClusterVersionUpdateState.VERSION_PERSISTED)
            ctx.raise_if_cancelled()
        except Exception as e:
            status_ctx = ctx.disconnected() if isinstance(e, WorkflowCancelledError) else ctx
            set_cluster_status(status_ctx, input.cluster_id, ClusterStatus.WARNING, str(unwrap_error(e)))
            _enter(ClusterVersionUpdateState.WARNING)
            raise

        set_cluster_status(ctx.disconnected(), input.cluster_id, ClusterStatus.RUNNING, RUNNING_MESSAGE)
        _enter(ClusterVersionUpdateState.RUNNING)
        return result

    def _wait(self, ctx: WorkflowContext, input: ClusterVersionUpdateRequest, update_id: str, addon_name: str = "") -> None:
        ctx.execute_activity(
            WaitUpdateActivity.name,
            WaitUpdateInput(
                secret_id=input.secret_id,
                region=input.region,
                cluster_name=input.cluster_name,
                update_id=update_id,
                addon_name=addon_name,
            ),
        )

    def _update_addon(self, ctx: WorkflowContext, input: ClusterVersionUpdateRequest, addon_name: str) -> bool:
        output = ctx.execute_activity(
            UpdateAddonActivity.name,
            UpdateAddonInput(
                secret_id=input.secret_id,
                region=input.region,
                cluster_name=input.cluster_name,
                kubernetes_version=input.version,
                addon_name=addon_name,
            ),
        )
        if output.addon_not_installed or not output.update_id:
            return False
        self._wait(ctx, input, output.update_id, addon_name)
        return True
