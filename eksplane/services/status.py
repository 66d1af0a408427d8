"""Activities reading and writing stored cluster and node pool state."""

import logging
from typing import Optional

from pydantic import BaseModel

from eksplane.database import Database
from eksplane.models import ClusterStatus, NodePoolStatus
from eksplane.workflow import Activity, ActivityContext

logger = logging.getLogger(__name__)


class SetClusterStatusInput(BaseModel):
    cluster_id: int
    status: ClusterStatus
    message: str = ""


class SetClusterStatusActivity(Activity):
    name = "set-cluster-status"

    def __init__(self, database: Database):
        self.database = database

    def execute(self, ctx: ActivityContext, input: SetClusterStatusInput) -> None:
        logger.info("Cluster %d status: %s (%s)", input.cluster_id, input.status.value, input.message)
        self.database.set_cluster_status(input.cluster_id, input.status, input.message)


class SaveClusterVersionInput(BaseModel):
    cluster_id: int
    version: str


class SaveClusterVersionActivity(Activity):
    name = "save-cluster-version"

    def __init__(self, database: Database):
        self.database = database

    def execute(self, ctx: ActivityContext, input: SaveClusterVersionInput) -> None:
        self.database.set_cluster_version(input.cluster_id, input.version)


class SetNodePoolStatusInput(BaseModel):
    cluster_id: int
    node_pool_name: str
    status: NodePoolStatus
    message: str = ""
    stack_id: Optional[str] = None
    image: Optional[str] = None
    volume_size: Optional[int] = None


class SetNodePoolStatusActivity(Activity):
    """Update the status row of a node pool, unknown node pools are skipped."""

    name = "set-node-pool-status"

    def __init__(self, database: Database):
        self.database = database

    def execute(self, ctx: ActivityContext, input: SetNodePoolStatusInput) -> None:
        node_pool = self.database.set_node_pool_status(
            input.cluster_id,
            input.node_pool_name,
            input.status,
            input.message,
            stack_id=input.stack_id,
            image=input.image,
            volume_size=input.volume_size,
        )
        if node_pool is None:
            logger.warning(
                "Node pool %s of cluster %d not found, status %s not saved",
                input.node_pool_name,
                input.cluster_id,
                input.status.value,
            )


class DeleteStoredNodePoolInput(BaseModel):
    cluster_id: int
    node_pool_name: str


class DeleteStoredNodePoolActivity(Activity):
    name = "delete-stored-node-pool"

    def __init__(self, database: Database):
        self.database = database

    def execute(self, ctx: ActivityContext, input: DeleteStoredNodePoolInput) -> None:
        if not self.database.delete_node_pool(input.cluster_id, input.node_pool_name):
            logger.info("Node pool %s of cluster %d was already deleted", input.node_pool_name, input.cluster_id)
