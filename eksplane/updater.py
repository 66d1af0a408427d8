"""Entry points starting cluster and node pool update workflows.

Requests are validated synchronously: a request that fails validation or
whose cluster is busy raises before any status is changed.
"""

import logging
from typing import Optional

from eksplane.database import Database
from eksplane.defaults import add_create_defaults
from eksplane.errors import ConfigValidationError, PreconditionFailedError
from eksplane.images import ImageNotFoundError, ImageSelectionCriteria, ImageSelector
from eksplane.models import (
    UPDATING_MESSAGE,
    Cluster,
    ClusterCreateRequest,
    ClusterStatus,
    ClusterUpdateRequest,
    ClusterVersionUpdateRequest,
    NodePoolSpec,
    NodePoolStatus,
    NodePoolUpdateRequest,
    ValidationErrorDetail,
)
from eksplane.nodepools import apply_node_pool_defaults, diff_node_pools
from eksplane.subnets import SubnetResolutionError, resolve_subnet_ids, subnets_for_update
from eksplane.validation import raise_for_errors, validate_cluster_creation, validate_node_pool
from eksplane.workflow import Worker, WorkflowHandle
from eksplane.workflows import (
    UpdateClusterVersionWorkflow,
    UpdateClusterWorkflow,
    UpdateClusterWorkflowInput,
    UpdateNodePoolWorkflow,
)

logger = logging.getLogger(__name__)

UPDATABLE_STATUSES = (ClusterStatus.RUNNING, ClusterStatus.WARNING)


class ClusterUpdater:
    def __init__(self, database: Database, worker: Worker, image_selector: Optional[ImageSelector] = None):
        self.database = database
        self.worker = worker
        self.image_selector = image_selector

    def _get_updatable_cluster(self, cluster_id: int) -> Cluster:
        cluster = self.database.get_cluster(cluster_id)
        if cluster.status not in UPDATABLE_STATUSES:
            raise PreconditionFailedError(
                f"Cluster {cluster.name} is not in {ClusterStatus.RUNNING.value} "
                f"or {ClusterStatus.WARNING.value} state yet (status: {cluster.status.value})"
            )
        return cluster

    def prepare_cluster_creation(self, request: ClusterCreateRequest, region: str) -> ClusterCreateRequest:
        """Fill in the creation defaults of a request and validate the result.

        Node pool images default through the image selector of the updater.
        Raises ConfigValidationError with every problem found.
        """
        request = add_create_defaults(request, region, self.image_selector)
        validate_cluster_creation(request, region)
        return request

    def update_cluster(self, cluster_id: int, request: ClusterUpdateRequest, user_id: str = "") -> WorkflowHandle:
        """Reconcile the node pools of a cluster with the requested set."""
        cluster = self._get_updatable_cluster(cluster_id)
        current = self.database.list_node_pools(cluster_id)
        current_names = {node_pool.name for node_pool in current}

        node_pools: dict[str, NodePoolSpec] = {}
        errors: list[ValidationErrorDetail] = []
        for name, spec in request.node_pools.items():
            spec = apply_node_pool_defaults(spec)
            if name not in current_names and not spec.image:
                spec = spec.model_copy(update={"image": self._default_image(cluster, spec)})
            errors.extend(validate_node_pool(name, spec, for_update=True))
            node_pools[name] = spec
        raise_for_errors(errors)

        changes = diff_node_pools(current, node_pools, created_by=user_id)

        created = []
        if changes.created:
            try:
                cluster_subnets = subnets_for_update(cluster.subnets)
                for node_pool in changes.created:
                    subnet_ids = resolve_subnet_ids(node_pool.name, node_pool.subnet, cluster_subnets)
                    created.append(node_pool.model_copy(update={"subnet_ids": subnet_ids}))
            except SubnetResolutionError as e:
                raise ConfigValidationError([ValidationErrorDetail(field="subnets", message=str(e))]) from e

        for node_pool in created:
            self.database.create_node_pool(cluster_id, node_pool)
        for node_pool in changes.deleted:
            self.database.set_node_pool_status(cluster_id, node_pool.name, NodePoolStatus.DELETING)
        for node_pool in changes.updated:
            self.database.update_node_pool(cluster_id, node_pool)

        self.database.set_cluster_status(cluster_id, ClusterStatus.UPDATING, UPDATING_MESSAGE)

        logger.info(
            "Updating cluster %s: %d node pool(s) to delete, %d to create, %d to update",
            cluster.name,
            len(changes.deleted),
            len(created),
            len(changes.updated),
        )
        return self.worker.start(
            UpdateClusterWorkflow.name,
            UpdateClusterWorkflowInput(
                organization_id=cluster.organization_id,
                cluster_id=cluster.id,
                cluster_name=cluster.name,
                region=cluster.region,
                secret_id=cluster.secret_id,
                deleted=sorted(node_pool.name for node_pool in changes.deleted),
                created=created,
                updated=sorted(changes.updated, key=lambda node_pool: node_pool.name),
                tags=cluster.tags,
            ),
            workflow_id=f"eks-update-cluster-{cluster.id}",
        )

    def update_version(self, request: ClusterVersionUpdateRequest) -> WorkflowHandle:
        """Upgrade the control plane and the managed addons of a cluster."""
        cluster = self._get_updatable_cluster(request.cluster_id)
        if not request.version:
            raise ConfigValidationError(
                [ValidationErrorDetail(field="version", message="target version is required")]
            )

        logger.info("Updating cluster %s from version %s to %s", cluster.name, cluster.version, request.version)
        return self.worker.start(
            UpdateClusterVersionWorkflow.name,
            request,
            workflow_id=f"eks-update-cluster-version-{cluster.id}",
        )

    def update_node_pool(self, request: NodePoolUpdateRequest) -> WorkflowHandle:
        """Roll a node pool to a new image or volume size."""
        cluster = self._get_updatable_cluster(request.cluster_id)
        self.database.get_node_pool(cluster.id, request.node_pool_name)

        self.database.set_cluster_status(cluster.id, ClusterStatus.UPDATING, UPDATING_MESSAGE)

        return self.worker.start(
            UpdateNodePoolWorkflow.name,
            request,
            workflow_id=f"eks-update-node-pool-{cluster.id}-{request.node_pool_name}",
        )

    def _default_image(self, cluster: Cluster, spec: NodePoolSpec) -> str:
        if self.image_selector is None:
            return ""
        try:
            return self.image_selector.select_image(
                ImageSelectionCriteria(
                    region=cluster.region,
                    instance_type=spec.instance_type,
                    kubernetes_version=cluster.version,
                )
            )
        except ImageNotFoundError as e:
            logger.warning("No default image for cluster %s: %s", cluster.name, e)
            return ""
