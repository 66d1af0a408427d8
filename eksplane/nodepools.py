"""Reconciliation of stored node pools against a requested node pool set."""

from eksplane.errors import ConfigValidationError
from eksplane.models import (
    DEFAULT_NODE_MAX_COUNT,
    DEFAULT_NODE_MIN_COUNT,
    ON_DEMAND_SPOT_PRICE,
    NodePool,
    NodePoolChanges,
    NodePoolSpec,
    NodePoolStatus,
    ValidationErrorDetail,
)
from eksplane.validation import validate_node_pool


def apply_node_pool_defaults(spec: NodePoolSpec) -> NodePoolSpec:
    """Fill in scaling bounds the user left at zero.

    Autoscaling node pools must set their maximum explicitly, so only
    fixed size node pools get default bounds.
    """
    update: dict = {}
    if not spec.autoscaling:
        if spec.min_count == 0:
            update["min_count"] = DEFAULT_NODE_MIN_COUNT
        if spec.max_count == 0:
            update["max_count"] = DEFAULT_NODE_MAX_COUNT
    if spec.count == 0:
        update["count"] = update.get("min_count", spec.min_count)
    return spec.model_copy(update=update) if update else spec


def diff_node_pools(
    current: list[NodePool],
    requested: dict[str, NodePoolSpec],
    created_by: str = "",
) -> NodePoolChanges:
    """Partition current and requested node pools into deleted, created and updated.

    Every name ends up in exactly one partition. Validation problems of
    all new node pools are collected into a single ConfigValidationError.
    """
    current_by_name = {node_pool.name: node_pool for node_pool in current}
    changes = NodePoolChanges()
    errors: list[ValidationErrorDetail] = []

    for node_pool in current:
        if node_pool.name not in requested:
            changes.deleted.append(node_pool)

    for name, spec in requested.items():
        existing = current_by_name.get(name)
        if existing is None:
            node_pool_errors = [e for e in validate_node_pool(name, spec) if _is_missing_field(e)]
            if node_pool_errors:
                errors.extend(node_pool_errors)
                continue
            changes.created.append(_new_node_pool(name, spec, created_by))
        else:
            changes.updated.append(_updated_node_pool(existing, spec))

    if errors:
        raise ConfigValidationError(errors)

    return changes


def _is_missing_field(error: ValidationErrorDetail) -> bool:
    return error.field.endswith((".instance_type", ".image"))


def _new_node_pool(name: str, spec: NodePoolSpec, created_by: str) -> NodePool:
    return NodePool(
        name=name,
        created_by=created_by,
        instance_type=spec.instance_type,
        image=spec.image,
        volume_size=spec.volume_size,
        spot_price=spec.spot_price or ON_DEMAND_SPOT_PRICE,
        autoscaling=spec.autoscaling,
        min_count=spec.min_count,
        max_count=spec.max_count,
        count=spec.count,
        security_groups=list(spec.security_groups),
        subnet=spec.subnet,
        labels=dict(spec.labels),
        status=NodePoolStatus.CREATING,
    )


def _updated_node_pool(existing: NodePool, spec: NodePoolSpec) -> NodePool:
    # Launch configuration is immutable here, only scaling and labels change.
    return existing.model_copy(
        update={
            "autoscaling": spec.autoscaling,
            "min_count": spec.min_count,
            "max_count": spec.max_count,
            "count": spec.count,
            "labels": dict(spec.labels),
            "status": NodePoolStatus.UPDATING,
            "status_message": "",
        }
    )
