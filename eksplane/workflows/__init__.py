from eksplane.workflows.cluster_update import UpdateClusterWorkflow, UpdateClusterWorkflowInput
from eksplane.workflows.cluster_version import ClusterVersionUpdateState, UpdateClusterVersionWorkflow
from eksplane.workflows.node_pool import NodePoolUpdateState, UpdateNodePoolWorkflow

__all__ = [
    "ClusterVersionUpdateState",
    "NodePoolUpdateState",
    "UpdateClusterVersionWorkflow",
    "UpdateClusterWorkflow",
    "UpdateClusterWorkflowInput",
    "UpdateNodePoolWorkflow",
]
